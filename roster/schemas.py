"""Pydantic request/response schemas for the Roster API."""
from __future__ import annotations

from pydantic import BaseModel, field_validator

from roster.models import CascadeResult, ConflictDetail, Submission


class OperationOut(BaseModel):
    success: bool
    error: str | None = None


class ConflictOut(OperationOut):
    allowed: bool = True
    conflict: ConflictDetail | None = None
    degraded: bool = False
    reason: str | None = None


class CascadeOut(CascadeResult):
    pass


class SubmissionListOut(OperationOut):
    team_id: str | None = None
    milestone_id: str | None = None
    count: int = 0
    submissions: list[Submission] = []


class LeaveProgramRequest(BaseModel):
    participation_id: str | None = None
    cohort_id: str | None = None
    initiative_id: str | None = None

    @field_validator("participation_id", "cohort_id", "initiative_id")
    @classmethod
    def blank_to_none(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        return v or None
