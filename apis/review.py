from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from core.auth import get_current_user
from core.batch_service import batch_ai_review, batch_approve, batch_manual_review, batch_reject
from core.db import DB
from core.log import get_logger
from core.question_store import (
    QUESTION_STATUS_AI_APPROVED,
    QUESTION_STATUS_AI_REJECTED,
    QUESTION_STATUS_AI_REVIEWING,
    QuestionNotFoundError,
    ReviewValidationError,
    list_owned_questions,
    question_stats,
    serialize_question,
    submit_candidates,
)
from core.review_engine import ScoringServiceError
from core.review_service import (
    ai_review_question,
    approve_question,
    manual_review_question,
    reject_question,
)
from .base import success_response, error_response

logger = get_logger(__name__)

router = APIRouter(prefix="/review", tags=["试题审核"])


class SubmitRequest(BaseModel):
    task_id: str = Field(..., min_length=1)
    questions: List[Dict[str, Any]] = Field(default_factory=list)


class ManualReviewRequest(BaseModel):
    action: str
    reason: str = ""


class RejectRequest(BaseModel):
    reason: str = ""


class BatchIdsRequest(BaseModel):
    question_ids: List[str] = Field(default_factory=list)


class BatchManualReviewRequest(BaseModel):
    question_ids: List[str] = Field(default_factory=list)
    action: str
    reason: str = ""


class BatchRejectRequest(BaseModel):
    question_ids: List[str] = Field(default_factory=list)
    reason: str = ""


def _owner(current_user: dict) -> str:
    return current_user.get("username", "")


def _run(session, func, *args, **kwargs):
    """执行审核操作并把领域异常映射为 HTTP 错误。"""
    try:
        return func(session, *args, **kwargs)
    except QuestionNotFoundError as e:
        session.rollback()
        raise HTTPException(status_code=404, detail=str(e) or "试题不存在")
    except ReviewValidationError as e:
        session.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    except ScoringServiceError as e:
        session.rollback()
        raise HTTPException(status_code=502, detail=str(e))


async def _list_by_status(status: str, page: int, limit: int, task_id: str, current_user: dict):
    session = DB.get_session()
    try:
        return success_response(
            list_owned_questions(
                session,
                _owner(current_user),
                status=status,
                task_id=task_id,
                page=page,
                limit=limit,
            )
        )
    except Exception as e:
        logger.exception("查询审核列表失败 status=%s", status)
        return error_response(code=500, message=str(e))
    finally:
        session.close()


@router.get("/pending", summary="待人工审核（AI 已通过）")
async def list_pending_manual(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    task_id: str = Query(default=""),
    current_user: dict = Depends(get_current_user),
):
    return await _list_by_status(QUESTION_STATUS_AI_APPROVED, page, limit, task_id, current_user)


@router.get("/ai-pending", summary="AI 审核中")
async def list_ai_pending(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    task_id: str = Query(default=""),
    current_user: dict = Depends(get_current_user),
):
    return await _list_by_status(QUESTION_STATUS_AI_REVIEWING, page, limit, task_id, current_user)


@router.get("/ai-rejected", summary="AI 审核未通过")
async def list_ai_rejected(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    task_id: str = Query(default=""),
    current_user: dict = Depends(get_current_user),
):
    return await _list_by_status(QUESTION_STATUS_AI_REJECTED, page, limit, task_id, current_user)


@router.post("/submit", summary="提交候选试题进入 AI 审核")
async def submit_for_review(payload: SubmitRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        rows = _run(session, submit_candidates, _owner(current_user), payload.task_id, payload.questions)
        return success_response(
            {
                "count": len(rows),
                "questions": [serialize_question(row) for row in rows],
            },
            message="试题已提交审核",
        )
    finally:
        session.close()


@router.post("/ai-review/{question_id}", summary="AI 审核单题")
@router.post("/{question_id}/auto-review", summary="AI 审核单题（兼容路径）", include_in_schema=False)
async def ai_review(question_id: str, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        data = _run(session, ai_review_question, question_id, _owner(current_user))
        return success_response(data, message="AI 审核完成")
    finally:
        session.close()


@router.post("/{question_id}/manual-review", summary="人工审核单题")
async def manual_review(
    question_id: str,
    payload: ManualReviewRequest,
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        data = _run(session, manual_review_question, question_id, _owner(current_user), payload.action, payload.reason)
        return success_response(data, message="审核完成")
    finally:
        session.close()


@router.post("/approve/{question_id}", summary="直接通过")
async def approve(question_id: str, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        data = _run(session, approve_question, question_id, _owner(current_user))
        return success_response(data, message="试题已通过")
    finally:
        session.close()


@router.post("/reject/{question_id}", summary="直接驳回")
async def reject(question_id: str, payload: RejectRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        data = _run(session, reject_question, question_id, _owner(current_user), payload.reason)
        return success_response(data, message="试题已驳回")
    finally:
        session.close()


@router.post("/batch-ai-review", summary="批量 AI 审核")
@router.post("/batch-auto-review", summary="批量 AI 审核（兼容路径）", include_in_schema=False)
async def batch_ai_review_api(payload: BatchIdsRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        data = _run(session, batch_ai_review, payload.question_ids, _owner(current_user))
        return success_response(data, message=f"AI 审核完成，更新{data['updated']}道试题")
    finally:
        session.close()


@router.post("/batch-manual-review", summary="批量人工审核")
async def batch_manual_review_api(payload: BatchManualReviewRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        data = _run(
            session,
            batch_manual_review,
            payload.question_ids,
            _owner(current_user),
            payload.action,
            payload.reason,
        )
        return success_response(data, message=f"已审核{data['updated']}道试题")
    finally:
        session.close()


@router.post("/batch-approve", summary="批量直接通过")
async def batch_approve_api(payload: BatchIdsRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        data = _run(session, batch_approve, payload.question_ids, _owner(current_user))
        return success_response(data, message=f"已通过{data['updated']}道试题")
    finally:
        session.close()


@router.post("/batch-reject", summary="批量直接驳回")
async def batch_reject_api(payload: BatchRejectRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        data = _run(session, batch_reject, payload.question_ids, _owner(current_user), payload.reason)
        return success_response(data, message=f"已驳回{data['updated']}道试题")
    finally:
        session.close()


@router.get("/stats", summary="审核统计")
async def review_stats(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        return success_response(question_stats(session, _owner(current_user)))
    except Exception as e:
        logger.exception("审核统计失败")
        return error_response(code=500, message=str(e))
    finally:
        session.close()
