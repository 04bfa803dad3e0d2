from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.config import cfg
from core.db import DB
from core.events import E, log_event
from core.log import get_logger
from core.models.question import Question
from core.question_store import (
    QUESTION_STATUS_AI_APPROVED,
    QUESTION_STATUS_PENDING,
    QuestionNotFoundError,
    ReviewValidationError,
    clean_ids,
    conditional_bulk_update,
    question_payload,
    resolve_eligible_ids,
)
from core.review_engine import Scorer, review_batch
from core.review_metadata import ReviewResult
from core.review_service import (
    ACTION_APPROVE,
    ACTION_REJECT,
    MANUAL_ACTIONS,
    ai_review_sources,
    ai_review_values,
    manual_review_values,
    normalize_action,
)

logger = get_logger(__name__)

BATCH_APPROVE_REASON = "批量审核通过"


def _require_ids(ids: Sequence[Any]) -> List[str]:
    requested = clean_ids(ids)
    if not requested:
        raise ReviewValidationError("请选择要操作的试题")
    return requested


def _eligible_or_raise(session, requested: List[str], owner_id: str, statuses: Optional[Sequence[str]]) -> List[str]:
    eligible = resolve_eligible_ids(session, requested, owner_id, statuses=statuses)
    if not eligible:
        raise QuestionNotFoundError("没有符合条件的试题")
    return eligible


def _update_workers() -> int:
    try:
        return max(1, min(32, int(cfg.get("review.batch_update_workers", 8) or 8)))
    except (TypeError, ValueError):
        return 8


def _apply_ai_review(question_id: str, result: ReviewResult, sources: Sequence[str]) -> Tuple[str, int]:
    session = DB.get_session()
    try:
        return question_id, conditional_bulk_update(session, [question_id], sources, ai_review_values(result))
    finally:
        session.close()


def batch_ai_review(
    session,
    ids: Sequence[Any],
    owner_id: str,
    scorer: Optional[Scorer] = None,
    restricted: Optional[bool] = None,
) -> Dict[str, Any]:
    """批量 AI 审核：逐题评分，各题更新并发执行且互不影响。"""
    requested = _require_ids(ids)
    sources = ai_review_sources(restricted)
    eligible = _eligible_or_raise(session, requested, owner_id, sources)

    rows = session.query(Question).filter(Question.id.in_(eligible)).all()
    by_id = {row.id: row for row in rows}
    payloads = [question_payload(by_id[x]) for x in eligible if x in by_id]
    reviews = review_batch(payloads, scorer=scorer)

    affected: Dict[str, int] = {}
    update_failed = 0
    if reviews:
        with ThreadPoolExecutor(max_workers=min(_update_workers(), len(reviews))) as pool:
            futures = {
                question_id: pool.submit(_apply_ai_review, question_id, result, sources)
                for question_id, result in reviews.items()
            }
            for question_id, future in futures.items():
                try:
                    _, count = future.result()
                    affected[question_id] = count
                except Exception:
                    logger.exception("批量AI审核更新失败 question_id=%s", question_id)
                    update_failed += 1

    # 仅列出实际写入的试题，评分或更新失败只计入汇总数
    results = []
    approved = 0
    rejected = 0
    for question_id in eligible:
        result = reviews.get(question_id)
        if result is None or affected.get(question_id, 0) <= 0:
            continue
        if result.passed:
            approved += 1
        else:
            rejected += 1
        results.append(
            {
                "id": question_id,
                "score": result.score,
                "passed": result.passed,
                "status": ai_review_values(result)[Question.status],
            }
        )

    updated_count = approved + rejected
    failed = (len(eligible) - len(reviews)) + update_failed
    summary = {
        "requested": len(requested),
        "eligible": len(eligible),
        "reviewed": len(reviews),
        "updated": updated_count,
        "failed": failed,
        "skipped": len(requested) - len(eligible) + (len(reviews) - update_failed - updated_count),
        "approved": approved,
        "rejected": rejected,
        "results": results,
    }
    log_event(
        logger,
        E.BATCH_AI_REVIEW,
        owner=owner_id,
        requested=summary["requested"],
        updated=updated_count,
        failed=failed,
        skipped=summary["skipped"],
    )
    return summary


def _bulk_transition(
    session,
    ids: Sequence[Any],
    owner_id: str,
    sources: Sequence[str],
    action: str,
    reason: str,
    event: str,
) -> Dict[str, Any]:
    requested = _require_ids(ids)
    eligible = _eligible_or_raise(session, requested, owner_id, sources)
    updated = conditional_bulk_update(session, eligible, sources, manual_review_values(action, reason, owner_id))
    summary = {
        "requested": len(requested),
        "eligible": len(eligible),
        "updated": updated,
        "skipped": len(requested) - updated,
        "status": MANUAL_ACTIONS[action],
    }
    log_event(logger, event, owner=owner_id, requested=summary["requested"], updated=updated, skipped=summary["skipped"])
    return summary


def batch_manual_review(
    session,
    ids: Sequence[Any],
    owner_id: str,
    action: str,
    reason: str = "",
) -> Dict[str, Any]:
    action = normalize_action(action)
    return _bulk_transition(
        session,
        ids,
        owner_id,
        (QUESTION_STATUS_AI_APPROVED,),
        action,
        reason,
        E.BATCH_MANUAL_REVIEW,
    )


def batch_approve(session, ids: Sequence[Any], owner_id: str, reason: str = BATCH_APPROVE_REASON) -> Dict[str, Any]:
    return _bulk_transition(
        session,
        ids,
        owner_id,
        (QUESTION_STATUS_PENDING,),
        ACTION_APPROVE,
        reason or BATCH_APPROVE_REASON,
        E.BATCH_APPROVE,
    )


def batch_reject(session, ids: Sequence[Any], owner_id: str, reason: str = "") -> Dict[str, Any]:
    return _bulk_transition(
        session,
        ids,
        owner_id,
        (QUESTION_STATUS_PENDING,),
        ACTION_REJECT,
        reason,
        E.BATCH_REJECT,
    )


def batch_delete(session, ids: Sequence[Any], owner_id: str) -> Dict[str, Any]:
    requested = _require_ids(ids)
    eligible = _eligible_or_raise(session, requested, owner_id, None)
    deleted = session.query(Question).filter(Question.id.in_(eligible)).delete(synchronize_session=False)
    session.commit()
    summary = {
        "requested": len(requested),
        "eligible": len(eligible),
        "deleted": int(deleted or 0),
        "skipped": len(requested) - int(deleted or 0),
    }
    log_event(logger, E.BATCH_DELETE, owner=owner_id, requested=summary["requested"], deleted=summary["deleted"])
    return summary
