import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from studygate.app.db.base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_api_key_hash", "api_key_hash"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    email: Mapped[str] = mapped_column(String, unique=True)
    api_key_hash: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Assignment(Base):
    __tablename__ = "assignments"
    __table_args__ = (
        Index("idx_assignments_user_created", "user_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(ForeignKey("users.id"))
    title: Mapped[str] = mapped_column(String(255))
    original_text: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    steps: Mapped[list["ChecklistStep"]] = relationship(
        back_populates="assignment",
        order_by="ChecklistStep.step_number",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def __repr__(self) -> str:
        return f"<Assignment(id={self.id}, title={self.title!r})>"


class ChecklistStep(Base):
    __tablename__ = "checklist_steps"
    __table_args__ = (
        Index("idx_checklist_steps_assignment", "assignment_id", "step_number"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    assignment_id: Mapped[str] = mapped_column(ForeignKey("assignments.id"))
    step_number: Mapped[int] = mapped_column(Integer)
    title: Mapped[str] = mapped_column(String(255))
    description: Mapped[str] = mapped_column(Text, default="")
    completed: Mapped[bool] = mapped_column(Boolean, default=False)
    # Ordered [{"role": "user"|"assistant", "content": str}, ...]
    chat_history: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    assignment: Mapped[Assignment] = relationship(back_populates="steps")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "assignment_id": self.assignment_id,
            "step_number": self.step_number,
            "title": self.title,
            "description": self.description,
            "completed": self.completed,
            "chat_history": list(self.chat_history or []),
        }


class AdmissionEvent(Base):
    """One admitted call of a rate-limited action for one caller.

    Rows are append-only; occurred_at is epoch seconds from the store clock.
    """

    __tablename__ = "admission_events"
    __table_args__ = (
        Index("idx_admission_events_key_time", "key", "occurred_at"),
        Index("idx_admission_events_time", "occurred_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    occurred_at: Mapped[float] = mapped_column(Float, nullable=False)
