from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from core.auth import get_current_user
from core.batch_service import batch_delete
from core.db import DB
from core.question_store import (
    EXPORT_FORMATS,
    QuestionNotFoundError,
    ReviewValidationError,
    create_question,
    delete_owned_question,
    export_owned_questions,
    get_bank_question,
    get_owned_question,
    list_bank_questions,
    list_owned_questions,
    questions_to_csv,
    serialize_question,
    update_owned_question,
)
from .base import success_response

router = APIRouter(prefix="/questions", tags=["题库"])


class QuestionCreateRequest(BaseModel):
    task_id: str = Field(..., min_length=1)
    question_type: str
    stem: str = Field(..., min_length=1)
    options: Dict[str, str]
    correct_answer: str = Field(..., min_length=1)
    analysis: Dict[str, Any] = Field(default_factory=dict)
    difficulty: str = "中"
    knowledge_point_id: Optional[str] = None
    knowledge_level: Optional[str] = None


class QuestionUpdateRequest(BaseModel):
    stem: Optional[str] = None
    options: Optional[Dict[str, str]] = None
    correct_answer: Optional[str] = None
    analysis: Optional[Dict[str, Any]] = None
    difficulty: Optional[str] = None
    knowledge_level: Optional[str] = None
    knowledge_point_id: Optional[str] = None


class ExportRequest(BaseModel):
    question_ids: List[str] = Field(default_factory=list)
    format: str = "json"


class BatchDeleteRequest(BaseModel):
    question_ids: List[str] = Field(default_factory=list)


def _owner(current_user: dict) -> str:
    return current_user.get("username", "")


@router.get("", summary="题库列表（已发布）")
async def list_questions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    question_type: str = Query(default=""),
    difficulty: str = Query(default=""),
    keyword: str = Query(default=""),
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        return success_response(
            list_bank_questions(
                session,
                question_type=question_type,
                difficulty=difficulty,
                keyword=keyword,
                page=page,
                limit=limit,
            )
        )
    finally:
        session.close()


@router.get("/mine", summary="我的试题")
async def list_my_questions(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: str = Query(default=""),
    question_type: str = Query(default=""),
    difficulty: str = Query(default=""),
    task_id: str = Query(default=""),
    keyword: str = Query(default=""),
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        return success_response(
            list_owned_questions(
                session,
                _owner(current_user),
                status=status,
                question_type=question_type,
                difficulty=difficulty,
                task_id=task_id,
                keyword=keyword,
                page=page,
                limit=limit,
            )
        )
    finally:
        session.close()


@router.get("/{question_id}", summary="试题详情")
async def get_question(question_id: str, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        # 已发布试题对所有登录用户可见
        row = get_owned_question(session, question_id, _owner(current_user)) or get_bank_question(session, question_id)
        if not row:
            raise HTTPException(status_code=404, detail="试题不存在")
        return success_response(serialize_question(row))
    finally:
        session.close()


@router.post("", summary="录入试题")
async def create_question_api(payload: QuestionCreateRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        row = create_question(session, _owner(current_user), payload.model_dump())
        return success_response(serialize_question(row), message="试题已创建")
    except QuestionNotFoundError as e:
        session.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except ReviewValidationError as e:
        session.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        session.close()


@router.put("/{question_id}", summary="编辑试题")
async def update_question_api(
    question_id: str,
    payload: QuestionUpdateRequest,
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        row = update_owned_question(
            session,
            question_id,
            _owner(current_user),
            payload.model_dump(exclude_unset=True),
        )
        return success_response(serialize_question(row), message="试题已更新")
    except QuestionNotFoundError as e:
        session.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except ReviewValidationError as e:
        session.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        session.close()


@router.post("/export", summary="导出试题")
async def export_questions(payload: ExportRequest, current_user: dict = Depends(get_current_user)):
    fmt = str(payload.format or "json").strip().lower()
    if fmt not in EXPORT_FORMATS:
        raise HTTPException(status_code=400, detail=f"不支持的导出格式: {payload.format}")
    session = DB.get_session()
    try:
        rows = export_owned_questions(session, _owner(current_user), payload.question_ids)
        if fmt == "csv":
            return Response(
                content=questions_to_csv(rows),
                media_type="text/csv; charset=utf-8",
                headers={"Content-Disposition": "attachment; filename=questions.csv"},
            )
        return success_response({"list": [serialize_question(row) for row in rows], "total": len(rows)})
    finally:
        session.close()


@router.delete("/{question_id}", summary="删除试题")
async def delete_question(question_id: str, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        if not delete_owned_question(session, question_id, _owner(current_user)):
            raise HTTPException(status_code=404, detail="试题不存在")
        return success_response({"id": question_id}, message="试题已删除")
    finally:
        session.close()


@router.delete("", summary="批量删除试题")
async def delete_questions(payload: BatchDeleteRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        data = batch_delete(session, payload.question_ids, _owner(current_user))
        return success_response(data, message=f"已删除{data['deleted']}道试题")
    except QuestionNotFoundError as e:
        session.rollback()
        raise HTTPException(status_code=404, detail=str(e))
    except ReviewValidationError as e:
        session.rollback()
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        session.close()
