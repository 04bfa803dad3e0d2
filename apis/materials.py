from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from core.auth import get_current_user
from core.db import DB
from core.material_service import (
    MaterialError,
    create_knowledge_point,
    create_material,
    get_owned_material,
    list_knowledge_points,
    list_materials,
    serialize_knowledge_point,
    serialize_material,
)
from .base import success_response

router = APIRouter(prefix="/materials", tags=["教材"])


class MaterialCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    content: str = Field(..., min_length=1)


class KnowledgePointCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=255)
    description: str = ""
    level: str = "HR掌握"


def _owner(current_user: dict) -> str:
    return current_user.get("username", "")


@router.post("", summary="创建文本教材")
async def create_material_api(payload: MaterialCreateRequest, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        row = create_material(session, _owner(current_user), payload.title, payload.content)
        return success_response(serialize_material(row), message="教材已创建")
    except MaterialError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        session.close()


@router.get("", summary="获取教材列表")
async def list_materials_api(
    limit: int = Query(default=50, ge=1, le=200),
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        rows = list_materials(session, _owner(current_user), limit=limit)
        return success_response([serialize_material(row) for row in rows])
    finally:
        session.close()


@router.get("/knowledge-points", summary="获取知识点列表")
async def list_knowledge_points_api(current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        return success_response([serialize_knowledge_point(row) for row in list_knowledge_points(session)])
    finally:
        session.close()


@router.post("/knowledge-points", summary="创建知识点")
async def create_knowledge_point_api(
    payload: KnowledgePointCreateRequest,
    current_user: dict = Depends(get_current_user),
):
    session = DB.get_session()
    try:
        row = create_knowledge_point(session, payload.title, payload.description, payload.level)
        return success_response(serialize_knowledge_point(row), message="知识点已创建")
    except MaterialError as e:
        raise HTTPException(status_code=400, detail=str(e))
    finally:
        session.close()


@router.get("/{material_id}", summary="获取教材详情")
async def get_material_api(material_id: str, current_user: dict = Depends(get_current_user)):
    session = DB.get_session()
    try:
        row = get_owned_material(session, material_id, _owner(current_user))
        if not row:
            raise HTTPException(status_code=404, detail="教材不存在")
        return success_response(serialize_material(row, include_content=True))
    finally:
        session.close()
