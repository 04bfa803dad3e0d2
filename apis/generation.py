from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from core.auth import get_current_user
from core.config import cfg
from core.db import DB
from core.generation_service import GenerationServiceError, normalize_question_types, provider_config
from core.material_service import get_owned_material, missing_knowledge_point_ids
from core.question_store import delete_task_questions
from core.task_store import (
    TASK_STATUSES,
    count_tasks,
    create_task,
    get_owned_task,
    list_tasks,
    reset_task,
    serialize_task,
    task_status_payload,
)
from jobs.generation_queue import queue_size, submit_generation_task, workers_started
from .base import success_response

router = APIRouter(prefix="/generation", tags=["AI出题"])


class GenerationTaskCreateRequest(BaseModel):
    material_id: str = Field(..., min_length=1)
    question_count: int = Field(default=5, ge=1)
    question_types: List[str] = Field(default_factory=lambda: ["单选题"])
    difficulty: str = "medium"
    knowledge_point_ids: List[str] = Field(default_factory=list)


class RegenerateRequest(BaseModel):
    question_ids: List[str] = Field(default_factory=list)


def _owner(current_user: dict) -> str:
    return current_user.get("username", "")


def _max_question_count() -> int:
    try:
        return max(1, int(cfg.get("generation.max_question_count", 50) or 50))
    except (TypeError, ValueError):
        return 50


def _parse_status_filter(raw: str) -> List[str]:
    values = [x.strip().lower() for x in str(raw or "").split(",") if x.strip()]
    return [x for x in values if x in TASK_STATUSES]


@router.post("/tasks", summary="创建出题任务")
async def create_generation_task(payload: GenerationTaskCreateRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        owner_id = _owner(current_user)
        max_count = _max_question_count()
        if payload.question_count > max_count:
            raise HTTPException(status_code=400, detail=f"单次最多生成{max_count}道题")
        if not payload.question_types:
            raise HTTPException(status_code=400, detail="请至少选择一种题型")
        try:
            question_types = normalize_question_types(payload.question_types)
        except GenerationServiceError as e:
            raise HTTPException(status_code=400, detail=str(e))

        if not get_owned_material(session, payload.material_id, owner_id):
            raise HTTPException(status_code=404, detail="教材不存在")
        missing = missing_knowledge_point_ids(session, payload.knowledge_point_ids)
        if missing:
            raise HTTPException(status_code=400, detail=f"知识点不存在: {','.join(missing)}")

        task = create_task(
            session,
            owner_id=owner_id,
            material_id=payload.material_id,
            question_count=payload.question_count,
            question_types=question_types,
            difficulty=payload.difficulty,
            knowledge_point_ids=payload.knowledge_point_ids,
        )
        submit_generation_task(task.id)
        return success_response(
            {
                "id": task.id,
                "status": task.status,
                "progress": int(task.progress or 0),
            },
            message="任务已创建",
        )
    finally:
        session.close()


@router.get("/tasks", summary="获取出题任务列表")
async def list_generation_tasks(
    status: str = Query(default=""),
    limit: int = Query(default=30, ge=1, le=100),
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        owner_id = _owner(current_user)
        statuses = _parse_status_filter(status)
        rows = list_tasks(session, owner_id=owner_id, statuses=statuses, limit=limit)
        return success_response(
            {
                "list": [serialize_task(row, include_result=False) for row in rows],
                "total": count_tasks(session, owner_id=owner_id, statuses=statuses),
            }
        )
    finally:
        session.close()


@router.get("/tasks/{task_id}/status", summary="查询出题任务进度")
async def get_generation_task_status(task_id: str, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        row = get_owned_task(session, task_id, _owner(current_user))
        if not row:
            raise HTTPException(status_code=404, detail="任务不存在")
        return success_response(task_status_payload(row))
    finally:
        session.close()


@router.get("/tasks/{task_id}", summary="获取出题任务详情")
async def get_generation_task(task_id: str, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        row = get_owned_task(session, task_id, _owner(current_user))
        if not row:
            raise HTTPException(status_code=404, detail="任务不存在")
        return success_response(serialize_task(row, include_result=True))
    finally:
        session.close()


@router.post("/tasks/{task_id}/regenerate", summary="重新生成")
async def regenerate_generation_task(
    task_id: str,
    payload: Optional[RegenerateRequest] = None,
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        owner = _owner(current_user)
        row = get_owned_task(session, task_id, owner)
        if not row:
            raise HTTPException(status_code=404, detail="任务不存在")
        question_count = None
        if payload and payload.question_ids:
            # 只重新生成指定的试题：先删除，再按删除数量出题
            question_count = delete_task_questions(session, row.id, owner, payload.question_ids)
            if question_count == 0:
                raise HTTPException(status_code=404, detail="没有可重新生成的试题")
        row = reset_task(session, row, question_count=question_count)
        submit_generation_task(row.id)
        return success_response(
            {
                "id": row.id,
                "status": row.status,
                "progress": int(row.progress or 0),
                "question_count": int(row.question_count or 0),
            },
            message="任务已重新进入队列",
        )
    finally:
        session.close()


@router.get("/ai-status", summary="AI 服务状态")
async def get_ai_status(current_user: dict = Depends(get_current_user)):
    data = provider_config(include_secret=False)
    data["queue_size"] = queue_size()
    data["workers_started"] = workers_started()
    return success_response(data)
