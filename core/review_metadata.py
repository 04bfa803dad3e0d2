import json
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ReviewResult(BaseModel):
    score: float = Field(default=0, ge=0, le=100)
    passed: bool = False
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


class AIReviewRecord(BaseModel):
    score: float = 0
    passed: bool = False
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    reviewer: str = "ai"
    reviewed_at: str = ""

    @classmethod
    def from_result(cls, result: ReviewResult, reviewer: str = "ai", now: Optional[datetime] = None) -> "AIReviewRecord":
        return cls(
            score=result.score,
            passed=result.passed,
            issues=list(result.issues),
            suggestions=list(result.suggestions),
            reviewer=reviewer,
            reviewed_at=(now or datetime.now()).isoformat(),
        )


class ManualReviewRecord(BaseModel):
    action: str
    reason: str = ""
    reviewer: str = ""
    reviewed_at: str = ""

    @classmethod
    def build(cls, action: str, reason: str, reviewer: str, now: Optional[datetime] = None) -> "ManualReviewRecord":
        return cls(
            action=action,
            reason=str(reason or "").strip(),
            reviewer=str(reviewer or "").strip(),
            reviewed_at=(now or datetime.now()).isoformat(),
        )


class QuestionReviewMetadata(BaseModel):
    ai_review: Optional[AIReviewRecord] = None
    manual_review: Optional[ManualReviewRecord] = None


def dump_record(record: Optional[BaseModel]) -> Optional[str]:
    if record is None:
        return None
    return json.dumps(record.model_dump(), ensure_ascii=False)


def _load(text: Any) -> Optional[Dict[str, Any]]:
    if not text:
        return None
    try:
        payload = json.loads(str(text))
    except ValueError:
        return None
    return payload if isinstance(payload, dict) else None


def load_ai_review(text: Any) -> Optional[AIReviewRecord]:
    payload = _load(text)
    return AIReviewRecord(**payload) if payload is not None else None


def load_manual_review(text: Any) -> Optional[ManualReviewRecord]:
    payload = _load(text)
    return ManualReviewRecord(**payload) if payload is not None else None


def load_review_metadata(question) -> QuestionReviewMetadata:
    return QuestionReviewMetadata(
        ai_review=load_ai_review(getattr(question, "ai_review", None)),
        manual_review=load_manual_review(getattr(question, "manual_review", None)),
    )
