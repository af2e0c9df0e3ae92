"""
SQLAlchemy models for the tasks table.
"""
import uuid

from sqlalchemy import Column, DateTime, Enum, Index, String, Text, Uuid
from sqlalchemy.orm import declarative_base

from taskflow.models.task import TaskPriority, TaskStatus, utcnow

Base = declarative_base()


def _enum_column(enum_cls):
    # Stored as plain text so both PostgreSQL and SQLite accept the schema
    return Enum(
        enum_cls,
        values_callable=lambda x: [e.value for e in x],
        native_enum=False,
        length=32,
    )


class TaskRow(Base):
    __tablename__ = "tasks"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    title = Column(String(255), nullable=False)
    description = Column(Text)
    status = Column(_enum_column(TaskStatus), nullable=False, default=TaskStatus.PENDING)
    priority = Column(_enum_column(TaskPriority), nullable=False, default=TaskPriority.MEDIUM)
    due_date = Column(DateTime)
    user_id = Column(Uuid(as_uuid=True), nullable=False, index=True)

    # Audit fields
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_tasks_status_due_date", "status", "due_date"),
        Index("idx_tasks_created_at", "created_at"),
    )
