from .base import Base, Column, String, DateTime, Text


class Material(Base):
    from_attributes = True
    __tablename__ = "materials"

    id = Column(String(255), primary_key=True, index=True)
    owner_id = Column(String(50), index=True, nullable=False)
    title = Column(String(255), nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(DateTime)
    updated_at = Column(DateTime)
