from __future__ import annotations

from typing import Any

from pydantic import BaseModel
from sqlalchemy import Integer, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class StoredRecord(Base):
    """One record of the local store; fields are kept as a JSON document."""
    __tablename__ = "records"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(40), unique=True, nullable=False, index=True)
    table_name: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    fields_json: Mapped[str] = mapped_column(Text, default="{}")


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class ConflictDetail(BaseModel):
    current_initiative: str
    team_id: str | None = None
    team_name: str | None = None


class ConflictDecision(BaseModel):
    allowed: bool
    conflict: ConflictDetail | None = None
    degraded: bool = False
    reason: str | None = None


class CascadeResult(BaseModel):
    success: bool
    memberships_found: int = 0
    memberships_updated: int = 0
    participations_found: int = 0
    participations_updated: int = 0
    participations_skipped: int = 0
    failed: list[str] = []
    error: str | None = None


class Submission(BaseModel):
    id: str
    created_time: str
    team_id: str | None = None
    member_ids: list[str] = []
    milestone_id: str | None = None
    comments: str = ""
    link: str = ""
    attachments: list[Any] = []
    matched_by: str = ""
