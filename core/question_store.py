import csv
import io
import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from core.events import E, log_event
from core.generation_service import (
    EXPECTED_OPTION_COUNTS,
    map_difficulty,
    normalize_question_type,
)
from core.log import get_logger
from core.models.generation_task import GenerationTask
from core.models.knowledge_point import DEFAULT_KNOWLEDGE_LEVEL, KNOWLEDGE_LEVELS
from core.models.question import Question
from core.review_metadata import load_review_metadata

logger = get_logger(__name__)

QUESTION_STATUS_PENDING = "pending"
QUESTION_STATUS_AI_REVIEWING = "ai_reviewing"
QUESTION_STATUS_AI_APPROVED = "ai_approved"
QUESTION_STATUS_AI_REJECTED = "ai_rejected"
QUESTION_STATUS_APPROVED = "approved"
QUESTION_STATUS_REJECTED = "rejected"
QUESTION_STATUSES = (
    QUESTION_STATUS_PENDING,
    QUESTION_STATUS_AI_REVIEWING,
    QUESTION_STATUS_AI_APPROVED,
    QUESTION_STATUS_AI_REJECTED,
    QUESTION_STATUS_APPROVED,
    QUESTION_STATUS_REJECTED,
)


class QuestionNotFoundError(Exception):
    """试题不存在、不属于当前用户或不处于要求的状态，三者对调用方不做区分。"""


class ReviewValidationError(Exception):
    pass


def _parse_json(text: Any) -> Dict[str, Any]:
    try:
        payload = json.loads(str(text or "{}"))
        return payload if isinstance(payload, dict) else {}
    except ValueError:
        return {}


def clean_ids(ids: Sequence[Any]) -> List[str]:
    seen = set()
    result: List[str] = []
    for raw in ids or []:
        value = str(raw or "").strip()
        if value and value not in seen:
            seen.add(value)
            result.append(value)
    return result


def owned_questions_query(session, owner_id: str):
    """按任务创建者过滤的试题查询；无任务的试题对任何用户都不可见。"""
    return session.query(Question).join(
        GenerationTask, Question.task_id == GenerationTask.id
    ).filter(GenerationTask.owner_id == str(owner_id or "").strip())


def get_owned_question(
    session,
    question_id: str,
    owner_id: str,
    statuses: Optional[Sequence[str]] = None,
) -> Optional[Question]:
    query = owned_questions_query(session, owner_id).filter(Question.id == str(question_id or "").strip())
    if statuses:
        query = query.filter(Question.status.in_(list(statuses)))
    return query.first()


def resolve_eligible_ids(
    session,
    ids: Sequence[Any],
    owner_id: str,
    statuses: Optional[Sequence[str]] = None,
) -> List[str]:
    """返回请求 ID 中存在、归属当前用户且处于源状态的子集，保持请求顺序。"""
    requested = clean_ids(ids)
    if not requested:
        return []
    query = owned_questions_query(session, owner_id).filter(Question.id.in_(requested))
    if statuses:
        query = query.filter(Question.status.in_(list(statuses)))
    found = {row.id for row in query.with_entities(Question.id).all()}
    return [x for x in requested if x in found]


def conditional_bulk_update(
    session,
    ids: Sequence[str],
    source_statuses: Sequence[str],
    values: Dict[Any, Any],
) -> int:
    """WHERE id IN ids AND status IN source_statuses 的单条更新，返回受影响行数。"""
    id_list = list(ids or [])
    if not id_list:
        return 0
    payload = dict(values)
    payload.setdefault(Question.updated_at, datetime.now())
    affected = session.query(Question).filter(
        Question.id.in_(id_list),
        Question.status.in_(list(source_statuses)),
    ).update(payload, synchronize_session=False)
    session.commit()
    return int(affected or 0)


def _dump(value: Any) -> str:
    return json.dumps(value if value is not None else {}, ensure_ascii=False)


def _question_row(task_id: Optional[str], payload: Dict[str, Any], status: str, now: datetime) -> Question:
    question_type = normalize_question_type(payload.get("question_type"))
    if not question_type:
        raise ReviewValidationError(f"不支持的题型: {payload.get('question_type')}")
    stem = str(payload.get("stem") or "").strip()
    if not stem:
        raise ReviewValidationError("题干不能为空")
    options = payload.get("options")
    if not isinstance(options, dict) or not options:
        raise ReviewValidationError("选项格式错误")
    answer = str(payload.get("correct_answer") or "").strip().upper()
    if not answer:
        raise ReviewValidationError("缺少正确答案")
    try:
        quality_score = float(payload.get("quality_score", 0.5))
    except (TypeError, ValueError):
        quality_score = 0.5
    return Question(
        id=str(uuid.uuid4()),
        task_id=task_id,
        question_type=question_type,
        stem=stem,
        options=_dump(options),
        correct_answer=answer,
        analysis=_dump(payload.get("analysis") or {}),
        difficulty=map_difficulty(payload.get("difficulty")),
        knowledge_level=str(payload.get("knowledge_level") or DEFAULT_KNOWLEDGE_LEVEL),
        knowledge_point_id=payload.get("knowledge_point_id") or None,
        quality_score=max(0.0, min(1.0, quality_score)),
        status=status,
        ai_review=None,
        manual_review=None,
        created_at=now,
        updated_at=now,
    )


def _owned_task_or_raise(session, task_id: str, owner_id: str) -> GenerationTask:
    task = session.query(GenerationTask).filter(
        GenerationTask.id == str(task_id or "").strip(),
        GenerationTask.owner_id == str(owner_id or "").strip(),
    ).first()
    if not task:
        raise QuestionNotFoundError("任务不存在")
    return task


def submit_candidates(
    session,
    owner_id: str,
    task_id: str,
    candidates: Sequence[Dict[str, Any]],
) -> List[Question]:
    """候选试题提交审核：校验任务归属后批量写入，状态为 ai_reviewing。"""
    if not candidates:
        raise ReviewValidationError("提交的试题为空")
    task = _owned_task_or_raise(session, task_id, owner_id)
    now = datetime.now()
    rows = [_question_row(task.id, item, QUESTION_STATUS_AI_REVIEWING, now) for item in candidates]
    session.add_all(rows)
    session.commit()
    log_event(logger, E.QUESTION_SUBMIT, task_id=task.id, owner=owner_id, count=len(rows))
    return rows


def create_question(session, owner_id: str, payload: Dict[str, Any]) -> Question:
    """客户端直接录入，初始状态 pending，必须挂在调用者的任务下。"""
    task = _owned_task_or_raise(session, payload.get("task_id"), owner_id)
    row = _question_row(task.id, payload, QUESTION_STATUS_PENDING, datetime.now())
    expected = EXPECTED_OPTION_COUNTS.get(row.question_type)
    if expected and len(_parse_json(row.options)) != expected:
        raise ReviewValidationError(f"{row.question_type}应有{expected}个选项")
    session.add(row)
    session.commit()
    session.refresh(row)
    log_event(logger, E.QUESTION_CREATE, question_id=row.id, task_id=task.id, owner=owner_id)
    return row


def _like_pattern(keyword: str) -> str:
    escaped = keyword.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _apply_filters(query, status: str = "", question_type: str = "", difficulty: str = "", keyword: str = ""):
    if status:
        query = query.filter(Question.status == status)
    if question_type:
        normalized = normalize_question_type(question_type)
        query = query.filter(Question.question_type == (normalized or question_type))
    if difficulty:
        query = query.filter(Question.difficulty == map_difficulty(difficulty))
    if keyword:
        query = query.filter(Question.stem.like(_like_pattern(keyword), escape="\\"))
    return query


def list_owned_questions(
    session,
    owner_id: str,
    status: str = "",
    question_type: str = "",
    difficulty: str = "",
    task_id: str = "",
    keyword: str = "",
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    query = _apply_filters(owned_questions_query(session, owner_id), status, question_type, difficulty, keyword)
    if task_id:
        query = query.filter(Question.task_id == task_id)
    total = int(query.count() or 0)
    page = max(1, int(page or 1))
    limit = max(1, min(100, int(limit or 20)))
    rows = query.order_by(Question.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "list": [serialize_question(row) for row in rows],
        "total": total,
        "page": page,
        "limit": limit,
    }


def list_bank_questions(
    session,
    question_type: str = "",
    difficulty: str = "",
    keyword: str = "",
    page: int = 1,
    limit: int = 20,
) -> Dict[str, Any]:
    """已发布题库：仅 approved。"""
    query = _apply_filters(
        session.query(Question),
        QUESTION_STATUS_APPROVED,
        question_type,
        difficulty,
        keyword,
    )
    total = int(query.count() or 0)
    page = max(1, int(page or 1))
    limit = max(1, min(100, int(limit or 20)))
    rows = query.order_by(Question.created_at.desc()).offset((page - 1) * limit).limit(limit).all()
    return {
        "list": [serialize_question(row) for row in rows],
        "total": total,
        "page": page,
        "limit": limit,
    }


def question_stats(session, owner_id: str) -> Dict[str, int]:
    stats = {status: 0 for status in QUESTION_STATUSES}
    rows = owned_questions_query(session, owner_id).with_entities(Question.status).all()
    for (status,) in rows:
        key = str(status or "")
        stats[key] = stats.get(key, 0) + 1
    stats["total"] = len(rows)
    return stats


def delete_owned_question(session, question_id: str, owner_id: str) -> bool:
    row = get_owned_question(session, question_id, owner_id)
    if not row:
        return False
    session.delete(row)
    session.commit()
    log_event(logger, E.QUESTION_DELETE, question_id=question_id, owner=owner_id)
    return True


# 已发布或已驳回的试题不可再编辑
EDITABLE_STATUSES = (
    QUESTION_STATUS_PENDING,
    QUESTION_STATUS_AI_REVIEWING,
    QUESTION_STATUS_AI_APPROVED,
    QUESTION_STATUS_AI_REJECTED,
)


def _edit_values(question: Question, changes: Dict[str, Any]) -> Dict[Any, Any]:
    values: Dict[Any, Any] = {}
    if changes.get("stem") is not None:
        stem = str(changes["stem"]).strip()
        if not stem:
            raise ReviewValidationError("题干不能为空")
        values[Question.stem] = stem
    if changes.get("options") is not None:
        options = changes["options"]
        expected = EXPECTED_OPTION_COUNTS.get(question.question_type)
        if not isinstance(options, dict) or not options:
            raise ReviewValidationError("选项格式错误")
        if expected and len(options) != expected:
            raise ReviewValidationError(f"{question.question_type}应有{expected}个选项")
        values[Question.options] = _dump(options)
    if changes.get("correct_answer") is not None:
        answer = str(changes["correct_answer"]).strip().upper()
        if not answer:
            raise ReviewValidationError("缺少正确答案")
        values[Question.correct_answer] = answer
    if changes.get("analysis") is not None:
        values[Question.analysis] = _dump(changes["analysis"])
    if changes.get("difficulty") is not None:
        values[Question.difficulty] = map_difficulty(changes["difficulty"])
    if changes.get("knowledge_level") is not None:
        level = str(changes["knowledge_level"]).strip()
        if level not in KNOWLEDGE_LEVELS:
            raise ReviewValidationError(f"知识点分级无效: {level}")
        values[Question.knowledge_level] = level
    if "knowledge_point_id" in changes:
        values[Question.knowledge_point_id] = changes["knowledge_point_id"] or None
    return values


def update_owned_question(session, question_id: str, owner_id: str, changes: Dict[str, Any]) -> Question:
    """编辑未终结的试题内容，状态不变；写入以读取时的状态为条件。"""
    row = get_owned_question(session, question_id, owner_id, statuses=EDITABLE_STATUSES)
    if not row:
        raise QuestionNotFoundError("试题不存在或已终审")
    values = _edit_values(row, changes)
    if not values:
        raise ReviewValidationError("没有需要更新的字段")
    if conditional_bulk_update(session, [row.id], [row.status], values) == 0:
        raise QuestionNotFoundError("试题状态已变更")
    session.expire_all()
    row = session.get(Question, row.id)
    log_event(logger, E.QUESTION_UPDATE, question_id=row.id, owner=owner_id, fields=len(values))
    return row


EXPORT_FORMATS = ("json", "csv")
CSV_HEADERS = ["ID", "题型", "难度", "知识点分级", "题干", "选项", "正确答案", "解析", "质量评分", "状态", "创建时间"]


def export_owned_questions(session, owner_id: str, ids: Optional[Sequence[Any]] = None) -> List[Question]:
    """导出调用者的试题；未指定 ID 时导出全部。"""
    query = owned_questions_query(session, owner_id)
    requested = clean_ids(ids or [])
    if requested:
        query = query.filter(Question.id.in_(requested))
    rows = query.order_by(Question.created_at.desc()).all()
    log_event(logger, E.QUESTION_EXPORT, owner=owner_id, requested=len(requested), count=len(rows))
    return rows


def questions_to_csv(rows: Sequence[Question]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer)
    writer.writerow(CSV_HEADERS)
    for row in rows:
        data = serialize_question(row)
        writer.writerow(
            [
                data["id"],
                data["question_type"],
                data["difficulty"],
                data["knowledge_level"],
                data["stem"],
                json.dumps(data["options"], ensure_ascii=False),
                data["correct_answer"],
                json.dumps(data["analysis"], ensure_ascii=False),
                data["quality_score"],
                data["status"],
                data["created_at"] or "",
            ]
        )
    return buffer.getvalue()


def delete_task_questions(session, task_id: str, owner_id: str, ids: Sequence[Any]) -> int:
    """部分重新生成前删除任务下指定的试题，已发布试题保留。"""
    eligible = resolve_eligible_ids(session, ids, owner_id, statuses=EDITABLE_STATUSES + (QUESTION_STATUS_REJECTED,))
    if not eligible:
        return 0
    deleted = session.query(Question).filter(
        Question.id.in_(eligible),
        Question.task_id == task_id,
        Question.status != QUESTION_STATUS_APPROVED,
    ).delete(synchronize_session=False)
    session.commit()
    log_event(logger, E.QUESTION_DELETE, task_id=task_id, owner=owner_id, count=int(deleted or 0))
    return int(deleted or 0)


def serialize_question(question: Question) -> Dict[str, Any]:
    metadata = load_review_metadata(question)
    return {
        "id": question.id,
        "task_id": question.task_id,
        "question_type": question.question_type,
        "stem": question.stem,
        "options": _parse_json(question.options),
        "correct_answer": question.correct_answer,
        "analysis": _parse_json(question.analysis),
        "difficulty": question.difficulty,
        "knowledge_level": question.knowledge_level,
        "knowledge_point_id": question.knowledge_point_id,
        "quality_score": float(question.quality_score or 0),
        "status": question.status,
        "metadata": metadata.model_dump(),
        "created_at": question.created_at.isoformat() if question.created_at else None,
        "updated_at": question.updated_at.isoformat() if question.updated_at else None,
    }


def question_payload(question: Question) -> Dict[str, Any]:
    """评分服务使用的试题视图，选项与解析已解析为 dict。"""
    return {
        "id": question.id,
        "question_type": question.question_type,
        "stem": question.stem or "",
        "options": _parse_json(question.options),
        "correct_answer": question.correct_answer or "",
        "analysis": _parse_json(question.analysis),
        "quality_score": float(question.quality_score or 0),
    }


def get_bank_question(session, question_id: str) -> Optional[Question]:
    return session.query(Question).filter(
        Question.id == str(question_id or "").strip(),
        Question.status == QUESTION_STATUS_APPROVED,
    ).first()
