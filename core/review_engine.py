from typing import Any, Callable, Dict, List, Optional, Sequence

from core.config import cfg
from core.events import E, log_event
from core.log import get_logger
from core.review_metadata import ReviewResult
from core.scoring_service import score_question

logger = get_logger(__name__)

Scorer = Callable[[Dict[str, Any]], ReviewResult]


class ScoringServiceError(Exception):
    pass


def _scoring_retries() -> int:
    try:
        return max(0, min(5, int(cfg.get("review.scoring_retries", 2) or 0)))
    except (TypeError, ValueError):
        return 2


def review_one(question: Dict[str, Any], scorer: Optional[Scorer] = None) -> ReviewResult:
    """对单道试题评分，评分服务出错时重试，仍失败则抛出 ScoringServiceError。"""
    scorer = scorer or score_question
    attempts = 1 + _scoring_retries()
    last_error: Optional[Exception] = None
    for attempt in range(1, attempts + 1):
        try:
            result = scorer(question)
            if not isinstance(result, ReviewResult):
                result = ReviewResult(**dict(result))
            return result
        except Exception as e:
            last_error = e
            log_event(
                logger,
                E.AI_SCORE_FAIL,
                level="warning",
                question_id=question.get("id", ""),
                attempt=attempt,
                error=str(e),
            )
    raise ScoringServiceError(f"AI 评分失败: {last_error}")


def review_batch(
    questions: Sequence[Dict[str, Any]],
    scorer: Optional[Scorer] = None,
) -> Dict[str, ReviewResult]:
    """逐题调用评分服务；评分失败的试题不出现在结果中。"""
    results: Dict[str, ReviewResult] = {}
    failed: List[str] = []
    for question in questions:
        question_id = str(question.get("id") or "")
        try:
            results[question_id] = review_one(question, scorer=scorer)
        except ScoringServiceError:
            failed.append(question_id)
    if failed:
        log_event(logger, E.BATCH_ITEM_FAIL, level="warning", stage="scoring", count=len(failed), ids=",".join(failed))
    return results
