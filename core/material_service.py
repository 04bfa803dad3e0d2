import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from core.events import E, log_event
from core.log import get_logger
from core.models.knowledge_point import DEFAULT_KNOWLEDGE_LEVEL, KNOWLEDGE_LEVELS, KnowledgePoint
from core.models.material import Material

logger = get_logger(__name__)


class MaterialError(Exception):
    pass


def create_material(session, owner_id: str, title: str, content: str) -> Material:
    title_text = str(title or "").strip()
    content_text = str(content or "").strip()
    if not title_text:
        raise MaterialError("教材标题不能为空")
    if not content_text:
        raise MaterialError("教材内容不能为空")
    now = datetime.now()
    row = Material(
        id=str(uuid.uuid4()),
        owner_id=str(owner_id or "").strip(),
        title=title_text[:255],
        content=content_text,
        created_at=now,
        updated_at=now,
    )
    session.add(row)
    session.commit()
    session.refresh(row)
    log_event(logger, E.MATERIAL_CREATE, material_id=row.id, owner=row.owner_id, length=len(content_text))
    return row


def get_owned_material(session, material_id: str, owner_id: str) -> Optional[Material]:
    return session.query(Material).filter(
        Material.id == str(material_id or "").strip(),
        Material.owner_id == str(owner_id or "").strip(),
    ).first()


def list_materials(session, owner_id: str, limit: int = 50) -> List[Material]:
    return session.query(Material).filter(
        Material.owner_id == str(owner_id or "").strip(),
    ).order_by(Material.created_at.desc()).limit(max(1, int(limit or 50))).all()


def create_knowledge_point(session, title: str, description: str = "", level: str = DEFAULT_KNOWLEDGE_LEVEL) -> KnowledgePoint:
    title_text = str(title or "").strip()
    if not title_text:
        raise MaterialError("知识点名称不能为空")
    level_text = str(level or "").strip() or DEFAULT_KNOWLEDGE_LEVEL
    if level_text not in KNOWLEDGE_LEVELS:
        raise MaterialError(f"知识点等级无效: {level_text}")
    row = KnowledgePoint(
        id=str(uuid.uuid4()),
        title=title_text[:255],
        description=str(description or "").strip(),
        level=level_text,
        created_at=datetime.now(),
    )
    session.add(row)
    session.commit()
    session.refresh(row)
    return row


def list_knowledge_points(session) -> List[KnowledgePoint]:
    return session.query(KnowledgePoint).order_by(KnowledgePoint.created_at.asc()).all()


def missing_knowledge_point_ids(session, ids: Sequence[str]) -> List[str]:
    wanted = [str(x) for x in ids or [] if str(x or "").strip()]
    if not wanted:
        return []
    found = {row.id for row in session.query(KnowledgePoint.id).filter(KnowledgePoint.id.in_(wanted)).all()}
    return [x for x in wanted if x not in found]


def serialize_material(material: Material, include_content: bool = False) -> Dict[str, Any]:
    data = {
        "id": material.id,
        "title": material.title,
        "length": len(material.content or ""),
        "created_at": material.created_at.isoformat() if material.created_at else None,
        "updated_at": material.updated_at.isoformat() if material.updated_at else None,
    }
    if include_content:
        data["content"] = material.content or ""
    return data


def serialize_knowledge_point(point: KnowledgePoint) -> Dict[str, Any]:
    return {
        "id": point.id,
        "title": point.title,
        "description": point.description or "",
        "level": point.level or DEFAULT_KNOWLEDGE_LEVEL,
    }
