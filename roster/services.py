"""Shared operations for the Roster API and MCP server.

Every operation returns a JSON-serializable dict carrying a ``success``
flag, with ``error`` set when it is false. Identity resolution is the one
place that raises to the caller.
"""
from __future__ import annotations

import logging
from typing import Any

from roster.cascade import ALL_TEAMS, MembershipCascade
from roster.config import Settings
from roster.conflicts import ConflictDetector
from roster.errors import NotAuthenticated, ProfileNotFound
from roster.formulas import EqIgnoreCase
from roster.invalidation import CacheInvalidationCoordinator
from roster.reconciler import SubmissionReconciler
from roster.store import Record, RecordStore

log = logging.getLogger(__name__)

EMAIL_FIELD = "Email"


async def resolve_contact(
    store: RecordStore, contact_id: str | None = None, email: str | None = None,
) -> Record:
    """Find the contact record for a session identity."""
    contact_id = (contact_id or "").strip()
    email = (email or "").strip()
    if not contact_id and not email:
        raise NotAuthenticated("No contact id or email supplied")
    if contact_id:
        contact = await store.find("contacts", contact_id)
        if contact is None:
            raise ProfileNotFound(f"No contact record {contact_id}")
        return contact
    matches = await store.select("contacts", EqIgnoreCase(EMAIL_FIELD, email), max_records=1)
    if not matches:
        raise ProfileNotFound(f"No contact record for {email}")
    return matches[0]


async def check_conflict(
    store: RecordStore, contact_id: str, initiative_name: str, settings: Settings | None = None,
) -> dict[str, Any]:
    if not initiative_name or not initiative_name.strip():
        return {"success": False, "error": "Initiative name is required"}
    decision = await ConflictDetector(store, settings).check(contact_id, initiative_name.strip())
    return {"success": True, **decision.model_dump()}


async def leave_team(
    store: RecordStore,
    contact_id: str,
    team_id: str = ALL_TEAMS,
    coordinator: CacheInvalidationCoordinator | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    cascade = MembershipCascade(store, coordinator, settings)
    result = await cascade.leave(contact_id, team_id or ALL_TEAMS)
    return result.model_dump()


async def leave_program(
    store: RecordStore,
    contact_id: str,
    *,
    participation_id: str | None = None,
    cohort_id: str | None = None,
    initiative_id: str | None = None,
    coordinator: CacheInvalidationCoordinator | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    cascade = MembershipCascade(store, coordinator, settings)
    result = await cascade.leave_program(
        contact_id, participation_id=participation_id, cohort_id=cohort_id, initiative_id=initiative_id,
    )
    return result.model_dump()


async def withdraw_invitation(
    store: RecordStore,
    member_id: str,
    team_id: str,
    coordinator: CacheInvalidationCoordinator | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    cascade = MembershipCascade(store, coordinator, settings)
    result = await cascade.withdraw_invitation(member_id, team_id)
    return {"success": result.success, "error": result.error}


async def list_submissions(
    store: RecordStore, team_id: str, milestone_id: str | None = None, settings: Settings | None = None,
) -> dict[str, Any]:
    if not team_id:
        return {"success": False, "error": "Team ID is required"}
    submissions = await SubmissionReconciler(store, settings).find_submissions(team_id, milestone_id)
    return {
        "success": True,
        "team_id": team_id,
        "milestone_id": milestone_id,
        "count": len(submissions),
        "submissions": [s.model_dump() for s in submissions],
    }
