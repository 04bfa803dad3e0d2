from .base import Base, Column, String, DateTime, Text

KNOWLEDGE_LEVELS = ("HR掌握", "全员掌握", "全员熟悉", "全员了解")
DEFAULT_KNOWLEDGE_LEVEL = "HR掌握"


class KnowledgePoint(Base):
    from_attributes = True
    __tablename__ = "knowledge_points"

    id = Column(String(255), primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    level = Column(String(32), default=DEFAULT_KNOWLEDGE_LEVEL)
    created_at = Column(DateTime)
