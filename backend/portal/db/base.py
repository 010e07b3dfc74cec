"""声明式基类与公共列"""
import uuid
from datetime import datetime

from sqlalchemy import Column, DateTime, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def new_uuid() -> str:
    return str(uuid.uuid4())


def uuid_pk() -> Column:
    """字符串 UUID 主键（与 Supabase 表结构一致）"""
    return Column(String(36), primary_key=True, default=new_uuid)


def created_at_column() -> Column:
    return Column(DateTime, default=datetime.utcnow, index=True)


def updated_at_column() -> Column:
    return Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
