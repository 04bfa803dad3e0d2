from sqlalchemy import Column, DateTime, Float, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()

__all__ = ["Base", "Column", "DateTime", "Float", "Integer", "String", "Text"]
