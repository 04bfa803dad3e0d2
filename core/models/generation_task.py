from .base import Base, Column, String, DateTime, Integer, Text


class GenerationTask(Base):
    from_attributes = True
    __tablename__ = "generation_tasks"

    id = Column(String(255), primary_key=True, index=True)
    owner_id = Column(String(50), index=True, nullable=False)
    material_id = Column(String(255), index=True, nullable=False)
    question_count = Column(Integer, nullable=False, default=1)
    # JSON 数组，规范题型名
    question_types = Column(Text, nullable=False)
    difficulty = Column(String(32), default="medium")
    knowledge_point_ids = Column(Text, nullable=True)
    status = Column(String(32), default="pending", index=True)
    progress = Column(Integer, default=0)
    status_message = Column(String(500), default="")
    error_message = Column(Text, nullable=True)
    result_json = Column(Text, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
