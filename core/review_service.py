"""
试题审核状态机

    pending ──approve/reject──▶ approved / rejected            （直接审核）
    ai_reviewing ──AI 评分──▶ ai_approved / ai_rejected
    ai_approved ──人工审核──▶ approved / rejected

所有写操作都是 "id + 源状态" 的条件更新，受影响行数为 0 时抛出 QuestionNotFoundError，
并发下同一道题只会有一个审核结果生效。
"""

from typing import Any, Dict, Optional, Sequence

from core.config import cfg
from core.events import E, log_event
from core.log import get_logger
from core.models.question import Question
from core.question_store import (
    QUESTION_STATUS_AI_APPROVED,
    QUESTION_STATUS_AI_REJECTED,
    QUESTION_STATUS_AI_REVIEWING,
    QUESTION_STATUS_APPROVED,
    QUESTION_STATUS_PENDING,
    QUESTION_STATUS_REJECTED,
    QuestionNotFoundError,
    ReviewValidationError,
    conditional_bulk_update,
    get_owned_question,
    question_payload,
)
from core.review_engine import Scorer, review_one
from core.review_metadata import AIReviewRecord, ManualReviewRecord, ReviewResult, dump_record

logger = get_logger(__name__)

ACTION_APPROVE = "approve"
ACTION_REJECT = "reject"
MANUAL_ACTIONS = {
    ACTION_APPROVE: QUESTION_STATUS_APPROVED,
    ACTION_REJECT: QUESTION_STATUS_REJECTED,
}

AI_STAGE_STATUSES = (
    QUESTION_STATUS_AI_REVIEWING,
    QUESTION_STATUS_AI_APPROVED,
    QUESTION_STATUS_AI_REJECTED,
)

REVIEW_TRANSITIONS = {
    QUESTION_STATUS_PENDING: {QUESTION_STATUS_APPROVED, QUESTION_STATUS_REJECTED},
    QUESTION_STATUS_AI_REVIEWING: {QUESTION_STATUS_AI_APPROVED, QUESTION_STATUS_AI_REJECTED},
    QUESTION_STATUS_AI_APPROVED: {QUESTION_STATUS_APPROVED, QUESTION_STATUS_REJECTED},
}


def can_transition(source: str, target: str) -> bool:
    return target in REVIEW_TRANSITIONS.get(source, set())


def ai_review_restricted() -> bool:
    return bool(cfg.get("review.ai_review_restricted", True))


def ai_review_sources(restricted: Optional[bool] = None) -> Sequence[str]:
    if restricted is None:
        restricted = ai_review_restricted()
    if restricted:
        return (QUESTION_STATUS_AI_REVIEWING,)
    return AI_STAGE_STATUSES


def normalize_action(action: Any) -> str:
    value = str(action or "").strip().lower()
    if value not in MANUAL_ACTIONS:
        raise ReviewValidationError("审核操作无效，仅支持 approve / reject")
    return value


def ai_review_values(result: ReviewResult, reviewer: str = "ai") -> Dict[Any, Any]:
    """AI 评分结果对应的列更新；只写 ai_review，不触碰 manual_review。"""
    return {
        Question.status: QUESTION_STATUS_AI_APPROVED if result.passed else QUESTION_STATUS_AI_REJECTED,
        Question.quality_score: result.score / 100.0,
        Question.ai_review: dump_record(AIReviewRecord.from_result(result, reviewer=reviewer)),
    }


def manual_review_values(action: str, reason: str, reviewer: str) -> Dict[Any, Any]:
    return {
        Question.status: MANUAL_ACTIONS[action],
        Question.manual_review: dump_record(ManualReviewRecord.build(action, reason, reviewer)),
    }


def ai_review_question(
    session,
    question_id: str,
    owner_id: str,
    scorer: Optional[Scorer] = None,
    restricted: Optional[bool] = None,
) -> Dict[str, Any]:
    sources = ai_review_sources(restricted)
    question = get_owned_question(session, question_id, owner_id, statuses=sources)
    if not question:
        log_event(logger, E.REVIEW_NOT_ELIGIBLE, question_id=question_id, stage="ai")
        raise QuestionNotFoundError("试题不存在或当前状态不允许AI审核")

    result = review_one(question_payload(question), scorer=scorer)
    values = ai_review_values(result)
    if conditional_bulk_update(session, [question.id], sources, values) <= 0:
        raise QuestionNotFoundError("试题状态已变更")

    status = values[Question.status]
    log_event(logger, E.REVIEW_AI, question_id=question.id, score=result.score, passed=result.passed, status=status)
    return {
        "id": question.id,
        "status": status,
        "quality_score": values[Question.quality_score],
        "review": result.model_dump(),
    }


def manual_review_question(
    session,
    question_id: str,
    owner_id: str,
    action: str,
    reason: str = "",
) -> Dict[str, Any]:
    action = normalize_action(action)
    sources = (QUESTION_STATUS_AI_APPROVED,)
    question = get_owned_question(session, question_id, owner_id, statuses=sources)
    if not question:
        log_event(logger, E.REVIEW_NOT_ELIGIBLE, question_id=question_id, stage="manual")
        raise QuestionNotFoundError("试题不存在或未通过AI审核")

    values = manual_review_values(action, reason, owner_id)
    if conditional_bulk_update(session, [question.id], sources, values) <= 0:
        raise QuestionNotFoundError("试题状态已变更")

    log_event(logger, E.REVIEW_MANUAL, question_id=question.id, action=action, reviewer=owner_id)
    return {
        "id": question.id,
        "status": MANUAL_ACTIONS[action],
        "action": action,
        "reason": str(reason or "").strip(),
    }


def _direct_review(session, question_id: str, owner_id: str, action: str, reason: str) -> Dict[str, Any]:
    sources = (QUESTION_STATUS_PENDING,)
    question = get_owned_question(session, question_id, owner_id, statuses=sources)
    if not question:
        log_event(logger, E.REVIEW_NOT_ELIGIBLE, question_id=question_id, stage="direct")
        raise QuestionNotFoundError("试题不存在或已审核")

    values = manual_review_values(action, reason, owner_id)
    if conditional_bulk_update(session, [question.id], sources, values) <= 0:
        raise QuestionNotFoundError("试题状态已变更")

    event = E.REVIEW_APPROVE if action == ACTION_APPROVE else E.REVIEW_REJECT
    log_event(logger, event, question_id=question.id, reviewer=owner_id)
    return {
        "id": question.id,
        "status": MANUAL_ACTIONS[action],
        "reason": str(reason or "").strip(),
    }


def approve_question(session, question_id: str, owner_id: str, reason: str = "审核通过") -> Dict[str, Any]:
    return _direct_review(session, question_id, owner_id, ACTION_APPROVE, reason)


def reject_question(session, question_id: str, owner_id: str, reason: str = "") -> Dict[str, Any]:
    return _direct_review(session, question_id, owner_id, ACTION_REJECT, reason)
