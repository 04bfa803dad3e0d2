from .base import Base, Column, String, DateTime, Float, Text


class Question(Base):
    from_attributes = True
    __tablename__ = "questions"

    id = Column(String(255), primary_key=True, index=True)
    task_id = Column(String(255), index=True, nullable=True)
    question_type = Column(String(32), nullable=False)
    stem = Column(Text, nullable=False)
    # {"A": "...", "B": "..."}
    options = Column(Text, nullable=False)
    correct_answer = Column(String(32), nullable=False)
    # {"textbook": "...", "explanation": "...", "conclusion": "..."}
    analysis = Column(Text, nullable=True)
    difficulty = Column(String(8), default="中")
    knowledge_level = Column(String(32), default="HR掌握")
    knowledge_point_id = Column(String(255), nullable=True)
    quality_score = Column(Float, default=0.5)
    status = Column(String(32), default="pending", index=True)
    # 审核记录各占一列，互不覆盖
    ai_review = Column(Text, nullable=True)
    manual_review = Column(Text, nullable=True)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
