"""SQLAlchemy ORM models."""

from __future__ import annotations

from sqlalchemy import (
    Column,
    DateTime,
    func,
    Index,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class PlanRunORM(Base):
    __tablename__ = "plan_runs"

    id = Column(String(36), primary_key=True)
    environment = Column(String(63), nullable=False, index=True)
    namespace = Column(String(63), nullable=False)
    status = Column(String(20), nullable=False, index=True)
    stages_data = Column(JSON, nullable=False, default=list)
    failed_stage = Column(String(63), nullable=True)
    error_kind = Column(String(50), nullable=True, default="")
    error_message = Column(Text, nullable=True, default="")
    completed_at = Column(DateTime(timezone=True), nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        Index("ix_plan_runs_environment_created", "environment", "created_at"),
    )
