import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from core.events import E, log_event
from core.log import get_logger
from core.models.generation_task import GenerationTask

logger = get_logger(__name__)

TASK_STATUS_PENDING = "pending"
TASK_STATUS_PROCESSING = "processing"
TASK_STATUS_COMPLETED = "completed"
TASK_STATUS_FAILED = "failed"
TASK_STATUS_TERMINAL = {
    TASK_STATUS_COMPLETED,
    TASK_STATUS_FAILED,
}
TASK_STATUSES = (
    TASK_STATUS_PENDING,
    TASK_STATUS_PROCESSING,
    TASK_STATUS_COMPLETED,
    TASK_STATUS_FAILED,
)

CLAIMED_PROGRESS = 10


def _parse_json(text: Any) -> Dict[str, Any]:
    try:
        payload = json.loads(str(text or "{}"))
        return payload if isinstance(payload, dict) else {}
    except ValueError:
        return {}


def _parse_json_list(text: Any) -> List[Any]:
    try:
        payload = json.loads(str(text or "[]"))
        return payload if isinstance(payload, list) else []
    except ValueError:
        return []


def _status_list(statuses: Optional[Sequence[str]]) -> List[str]:
    return [str(x or "").strip().lower() for x in (statuses or []) if str(x or "").strip()]


def task_question_types(task: GenerationTask) -> List[str]:
    return [str(x) for x in _parse_json_list(task.question_types) if str(x or "").strip()]


def task_knowledge_point_ids(task: GenerationTask) -> List[str]:
    return [str(x) for x in _parse_json_list(task.knowledge_point_ids) if str(x or "").strip()]


def task_result(task: GenerationTask) -> Dict[str, Any]:
    return _parse_json(task.result_json)


def create_task(
    session,
    owner_id: str,
    material_id: str,
    question_count: int,
    question_types: Sequence[str],
    difficulty: str = "medium",
    knowledge_point_ids: Optional[Sequence[str]] = None,
) -> GenerationTask:
    now = datetime.now()
    task = GenerationTask(
        id=str(uuid.uuid4()),
        owner_id=str(owner_id or "").strip(),
        material_id=str(material_id or "").strip(),
        question_count=int(question_count),
        question_types=json.dumps(list(question_types or []), ensure_ascii=False),
        difficulty=str(difficulty or "medium").strip(),
        knowledge_point_ids=json.dumps(list(knowledge_point_ids or []), ensure_ascii=False),
        status=TASK_STATUS_PENDING,
        progress=0,
        status_message="任务已进入队列",
        created_at=now,
        updated_at=now,
        started_at=None,
        completed_at=None,
    )
    session.add(task)
    session.commit()
    session.refresh(task)
    log_event(logger, E.GENERATION_TASK_CREATE, task_id=task.id, owner=task.owner_id, count=task.question_count)
    return task


def get_task(session, task_id: str) -> Optional[GenerationTask]:
    return session.query(GenerationTask).filter(GenerationTask.id == str(task_id or "").strip()).first()


def get_owned_task(session, task_id: str, owner_id: str) -> Optional[GenerationTask]:
    return session.query(GenerationTask).filter(
        GenerationTask.id == str(task_id or "").strip(),
        GenerationTask.owner_id == str(owner_id or "").strip(),
    ).first()


def count_tasks(
    session,
    owner_id: str = "",
    statuses: Optional[Sequence[str]] = None,
) -> int:
    query = session.query(GenerationTask)
    owner = str(owner_id or "").strip()
    if owner:
        query = query.filter(GenerationTask.owner_id == owner)
    status_list = _status_list(statuses)
    if status_list:
        query = query.filter(GenerationTask.status.in_(status_list))
    return int(query.count() or 0)


def list_tasks(
    session,
    owner_id: str,
    statuses: Optional[Sequence[str]] = None,
    limit: int = 30,
) -> List[GenerationTask]:
    query = session.query(GenerationTask).filter(GenerationTask.owner_id == str(owner_id or "").strip())
    status_list = _status_list(statuses)
    if status_list:
        query = query.filter(GenerationTask.status.in_(status_list))
    return query.order_by(GenerationTask.created_at.desc()).limit(max(1, int(limit or 30))).all()


def list_pending_tasks(session, limit: int = 10) -> List[GenerationTask]:
    return session.query(GenerationTask).filter(
        GenerationTask.status == TASK_STATUS_PENDING,
    ).order_by(GenerationTask.created_at.asc()).limit(max(1, int(limit or 10))).all()


def claim_task(session, task: GenerationTask, now: Optional[datetime] = None) -> bool:
    """pending → processing 的条件更新；受影响行数为 0 说明已被其他执行者领取。"""
    now = now or datetime.now()
    try:
        affected = session.query(GenerationTask).filter(
            GenerationTask.id == task.id,
            GenerationTask.status == TASK_STATUS_PENDING,
        ).update(
            {
                GenerationTask.status: TASK_STATUS_PROCESSING,
                GenerationTask.progress: CLAIMED_PROGRESS,
                GenerationTask.status_message: "任务处理中",
                GenerationTask.error_message: None,
                GenerationTask.started_at: now,
                GenerationTask.updated_at: now,
            },
            synchronize_session=False,
        )
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("领取生成任务失败 task_id=%s", str(task.id or ""))
        return False
    if int(affected or 0) <= 0:
        return False
    session.refresh(task)
    log_event(logger, E.GENERATION_TASK_CLAIM, task_id=task.id)
    return True


def update_task_progress(session, task_id: str, progress: int) -> bool:
    """仅在处理中且进度不回退时写入。"""
    value = max(0, min(100, int(progress)))
    affected = session.query(GenerationTask).filter(
        GenerationTask.id == task_id,
        GenerationTask.status == TASK_STATUS_PROCESSING,
        GenerationTask.progress <= value,
    ).update(
        {
            GenerationTask.progress: value,
            GenerationTask.updated_at: datetime.now(),
        },
        synchronize_session=False,
    )
    session.commit()
    if int(affected or 0) > 0:
        log_event(logger, E.GENERATION_TASK_PROGRESS, level="debug", task_id=task_id, progress=value)
        return True
    return False


def complete_task(session, task_id: str, result: Dict[str, Any]) -> bool:
    now = datetime.now()
    affected = session.query(GenerationTask).filter(
        GenerationTask.id == task_id,
        GenerationTask.status == TASK_STATUS_PROCESSING,
    ).update(
        {
            GenerationTask.status: TASK_STATUS_COMPLETED,
            GenerationTask.progress: 100,
            GenerationTask.status_message: "任务完成",
            GenerationTask.error_message: None,
            GenerationTask.result_json: json.dumps(result or {}, ensure_ascii=False),
            GenerationTask.updated_at: now,
            GenerationTask.completed_at: now,
        },
        synchronize_session=False,
    )
    session.commit()
    if int(affected or 0) <= 0:
        return False
    log_event(
        logger,
        E.GENERATION_TASK_COMPLETE,
        task_id=task_id,
        generated=(result or {}).get("generated_count", 0),
        success_rate=(result or {}).get("success_rate", 0),
    )
    return True


def fail_task(session, task_id: str, message: str) -> bool:
    """写入失败状态。失败路径本身出错只记录日志，不再向上抛出。"""
    text = str(message or "任务失败").strip() or "任务失败"
    now = datetime.now()
    try:
        session.rollback()
        row = get_task(session, task_id)
        if not row:
            return False
        row.status = TASK_STATUS_FAILED
        row.progress = 0
        row.status_message = "任务失败"
        row.error_message = text[:2000]
        row.result_json = json.dumps({"error": text, "timestamp": now.isoformat()}, ensure_ascii=False)
        row.updated_at = now
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("写入任务失败状态出错 task_id=%s", str(task_id or ""))
        return False
    log_event(logger, E.GENERATION_TASK_FAIL, level="warning", task_id=task_id, error=text)
    return True


def reset_task(session, task: GenerationTask, question_count: Optional[int] = None) -> GenerationTask:
    """重新生成：任务回到 pending，进度与结果清空；部分重新生成时同时改写题目数量。"""
    now = datetime.now()
    task.status = TASK_STATUS_PENDING
    task.progress = 0
    task.status_message = "任务已重新进入队列"
    task.error_message = None
    task.result_json = None
    task.started_at = None
    task.completed_at = None
    task.updated_at = now
    if question_count:
        task.question_count = int(question_count)
    session.commit()
    session.refresh(task)
    log_event(logger, E.GENERATION_TASK_RESET, task_id=task.id, question_count=task.question_count)
    return task


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def serialize_task(task: GenerationTask, include_result: bool = False) -> Dict[str, Any]:
    data = {
        "id": task.id,
        "owner_id": task.owner_id,
        "material_id": task.material_id,
        "question_count": int(task.question_count or 0),
        "question_types": task_question_types(task),
        "difficulty": task.difficulty or "",
        "knowledge_point_ids": task_knowledge_point_ids(task),
        "status": task.status,
        "progress": int(task.progress or 0),
        "status_message": task.status_message or "",
        "error_message": task.error_message or "",
        "created_at": _iso(task.created_at),
        "updated_at": _iso(task.updated_at),
        "started_at": _iso(task.started_at),
        "completed_at": _iso(task.completed_at),
    }
    if include_result:
        data["result"] = task_result(task)
    return data


def task_status_payload(task: GenerationTask) -> Dict[str, Any]:
    result = task_result(task)
    data = {
        "id": task.id,
        "status": task.status,
        "progress": int(task.progress or 0),
        "question_count": int(task.question_count or 0),
        "generated_count": int(result.get("generated_count", 0) or 0),
        "status_message": task.status_message or "",
        "created_at": _iso(task.created_at),
        "completed_at": _iso(task.completed_at),
    }
    if task.status == TASK_STATUS_COMPLETED:
        data["success_rate"] = result.get("success_rate", 0)
        data["questions"] = result.get("questions", [])
    if task.status == TASK_STATUS_FAILED:
        data["error"] = result.get("error") or task.error_message or ""
    return data
