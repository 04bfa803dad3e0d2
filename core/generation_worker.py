import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.config import cfg
from core.db import DB
from core.events import E, log_event
from core.generation_service import generate_question, map_difficulty
from core.log import get_logger, trace_ctx
from core.models.knowledge_point import DEFAULT_KNOWLEDGE_LEVEL, KnowledgePoint
from core.models.material import Material
from core.task_store import (
    TASK_STATUS_COMPLETED,
    TASK_STATUS_TERMINAL,
    claim_task,
    complete_task,
    fail_task,
    get_task,
    list_pending_tasks,
    task_knowledge_point_ids,
    task_question_types,
    update_task_progress,
)

logger = get_logger(__name__)

QuestionGenerator = Callable[[str, str, str, Optional[str]], Dict[str, Any]]

CANDIDATE_STATUS = "pending"


class GenerationTaskError(Exception):
    pass


@dataclass
class WorkerSettings:
    max_retries: int = 3
    retry_delay_seconds: float = 2.0
    # 全部调用次数上限 = question_count * attempt_factor
    attempt_factor: int = 2


def _safe_int(value: Any, default: int, min_value: int = 1, max_value: int = 9999) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = default
    return max(min_value, min(max_value, parsed))


def _safe_float(value: Any, default: float, min_value: float = 0.0, max_value: float = 60.0) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        parsed = default
    return max(min_value, min(max_value, parsed))


def load_worker_settings() -> WorkerSettings:
    return WorkerSettings(
        max_retries=_safe_int(cfg.get("generation.max_retries", 3), default=3, min_value=1, max_value=10),
        retry_delay_seconds=_safe_float(cfg.get("generation.retry_delay_seconds", 2.0), default=2.0),
        attempt_factor=_safe_int(cfg.get("generation.attempt_factor", 2), default=2, min_value=1, max_value=10),
    )


@dataclass
class QueueSettings:
    workers: int = 2
    idle_sleep_seconds: float = 1.0
    batch_size: int = 5


def load_queue_settings() -> QueueSettings:
    return QueueSettings(
        workers=_safe_int(cfg.get("generation.queue_workers", 2), default=2, min_value=1, max_value=8),
        idle_sleep_seconds=_safe_float(cfg.get("generation.queue_idle_sleep_seconds", 1.0), default=1.0, min_value=0.2, max_value=10.0),
        batch_size=_safe_int(cfg.get("generation.queue_batch_size", 5), default=5, min_value=1, max_value=20),
    )


def progress_for(successful: int, total: int) -> int:
    """已成功数映射到 10-90 区间，claim 占 10，完成写 100。"""
    if total <= 0:
        return 10
    return int(math.floor(successful / total * 80)) + 10


def _load_material_content(session, task) -> str:
    material = session.query(Material).filter(Material.id == task.material_id).first()
    if not material:
        raise GenerationTaskError("教材不存在")
    content = str(material.content or "").strip()
    if not content:
        raise GenerationTaskError("教材内容为空")
    return content


def _load_knowledge_points(session, task) -> List[KnowledgePoint]:
    ids = task_knowledge_point_ids(task)
    if not ids:
        return []
    rows = session.query(KnowledgePoint).filter(KnowledgePoint.id.in_(ids)).all()
    by_id = {row.id: row for row in rows}
    # 保持请求顺序，轮转选择依赖该顺序
    return [by_id[x] for x in ids if x in by_id]


def _check_generated(question: Any) -> Dict[str, Any]:
    if not isinstance(question, dict):
        raise GenerationTaskError("生成结果为空")
    for key in ("stem", "options", "correct_answer"):
        if not question.get(key):
            raise GenerationTaskError(f"生成结果缺少 {key}")
    return question


def _build_candidate(
    task,
    question: Dict[str, Any],
    question_type: str,
    knowledge_point: Optional[KnowledgePoint],
) -> Dict[str, Any]:
    return {
        "id": f"temp_{uuid.uuid4().hex}",
        "task_id": task.id,
        "question_type": question_type,
        "difficulty": map_difficulty(task.difficulty),
        "stem": question.get("stem", ""),
        "options": question.get("options", {}),
        "correct_answer": question.get("correct_answer", ""),
        "analysis": question.get("analysis", {}),
        "quality_score": question.get("quality_score", 0.5),
        "knowledge_point_id": knowledge_point.id if knowledge_point else None,
        "knowledge_level": (knowledge_point.level if knowledge_point else "") or DEFAULT_KNOWLEDGE_LEVEL,
        "status": CANDIDATE_STATUS,
        "created_at": datetime.now().isoformat(),
    }


def _generate_questions(
    session,
    task,
    settings: WorkerSettings,
    generator: QuestionGenerator,
) -> Dict[str, Any]:
    question_types = task_question_types(task)
    if not question_types:
        raise GenerationTaskError("未指定题型")
    total = int(task.question_count or 0)
    if total <= 0:
        raise GenerationTaskError("题目数量无效")

    content = _load_material_content(session, task)
    knowledge_points = _load_knowledge_points(session, task)

    difficulty = map_difficulty(task.difficulty)
    ceiling = total * settings.attempt_factor
    attempts = 0
    questions: List[Dict[str, Any]] = []

    while len(questions) < total and attempts < ceiling:
        # 以成功数取模，失败后同一槽位保持原题型与知识点
        slot = len(questions)
        question_type = question_types[slot % len(question_types)]
        knowledge_point = knowledge_points[slot % len(knowledge_points)] if knowledge_points else None

        generated = None
        for retry in range(1, settings.max_retries + 1):
            if attempts >= ceiling:
                break
            attempts += 1
            try:
                generated = _check_generated(
                    generator(
                        content,
                        question_type,
                        difficulty,
                        knowledge_point.title if knowledge_point else None,
                    )
                )
                break
            except Exception as e:
                log_event(
                    logger,
                    E.GENERATION_SLOT_RETRY,
                    level="warning",
                    task_id=task.id,
                    slot=slot + 1,
                    retry=retry,
                    attempts=attempts,
                    error=str(e),
                )
                if retry < settings.max_retries and attempts < ceiling and settings.retry_delay_seconds > 0:
                    time.sleep(settings.retry_delay_seconds)

        if generated is not None:
            questions.append(_build_candidate(task, generated, question_type, knowledge_point))
        else:
            log_event(logger, E.GENERATION_SLOT_ABANDON, level="warning", task_id=task.id, slot=slot + 1)

        update_task_progress(session, task.id, progress_for(len(questions), total))

    if len(questions) < total:
        log_event(
            logger,
            E.GENERATION_ATTEMPTS_EXHAUSTED,
            level="warning",
            task_id=task.id,
            generated=len(questions),
            requested=total,
            attempts=attempts,
        )

    return {
        "generated_count": len(questions),
        "success_rate": round(len(questions) / total * 100, 2),
        "attempts": attempts,
        "questions": questions,
    }


def process_generation_task(
    session,
    task_id: str,
    settings: Optional[WorkerSettings] = None,
    generator: Optional[QuestionGenerator] = None,
) -> Tuple[bool, str]:
    """执行一个生成任务。不向外抛出异常，失败写入任务状态并返回 (False, 原因)。"""
    settings = settings or load_worker_settings()
    generator = generator or generate_question

    with trace_ctx(str(task_id or "")[:8]):
        task = get_task(session, task_id)
        if not task:
            log_event(logger, E.GENERATION_TASK_SKIP, level="warning", task_id=task_id, reason="not_found")
            return False, "任务不存在"
        if str(task.status or "").strip().lower() in TASK_STATUS_TERMINAL:
            log_event(logger, E.GENERATION_TASK_SKIP, task_id=task_id, reason=task.status)
            return task.status == TASK_STATUS_COMPLETED, "任务已处理"
        if not claim_task(session, task):
            log_event(logger, E.GENERATION_TASK_SKIP, task_id=task_id, reason="claimed")
            return False, "任务状态已变更"

        try:
            result = _generate_questions(session, task, settings, generator)
            if complete_task(session, task.id, result):
                return True, "任务完成"
            return False, "任务状态已变更"
        except GenerationTaskError as e:
            message = str(e or "任务失败").strip() or "任务失败"
        except Exception as e:
            logger.exception("处理生成任务失败 task_id=%s", str(task.id or ""))
            message = f"系统异常: {str(e)}"

        fail_task(session, task.id, message)
        return False, message


def run_generation_task(
    task_id: str,
    settings: Optional[WorkerSettings] = None,
    generator: Optional[QuestionGenerator] = None,
) -> Tuple[bool, str]:
    session = DB.get_session()
    try:
        return process_generation_task(session, task_id, settings=settings, generator=generator)
    finally:
        session.close()


def process_pending_generation_tasks(
    session,
    limit: int = 10,
    settings: Optional[WorkerSettings] = None,
    generator: Optional[QuestionGenerator] = None,
) -> Dict[str, Any]:
    tasks = list_pending_tasks(session, limit=limit)
    details = []
    success = 0
    failed = 0
    for task in tasks:
        ok, message = process_generation_task(session, task.id, settings=settings, generator=generator)
        if ok:
            success += 1
        else:
            failed += 1
        session.refresh(task)
        details.append(
            {
                "id": task.id,
                "status": task.status,
                "message": message,
            }
        )
    return {
        "total": len(tasks),
        "success": success,
        "failed": failed,
        "details": details,
    }
