from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from roster import services
from roster.cascade import ALL_TEAMS
from roster.config import get_settings
from roster.errors import RosterError
from roster.invalidation import CacheInvalidationCoordinator
from roster.store import RecordStore, build_store

log = logging.getLogger(__name__)

_store: RecordStore | None = None


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def roster_lifespan(server: FastMCP) -> AsyncIterator[None]:
    global _store
    _store = build_store()
    try:
        yield
    finally:
        await _store.aclose()
        _store = None


mcp = FastMCP(
    "Roster",
    instructions=(
        "Roster keeps team membership, cohort participation and program enrollment "
        "consistent for the student-program dashboard. Call check_conflict before "
        "enrolling a contact in a team-based initiative, leave_team to remove a contact "
        "from a team, and list_submissions to see a team's milestone work."
    ),
    lifespan=roster_lifespan,
    json_response=True,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _get_store() -> RecordStore:
    global _store
    if _store is None:
        _store = build_store()
    return _store


def _error(exc: RosterError) -> dict:
    return {"success": False, "error": str(exc)}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("roster://overview")
def roster_overview() -> str:
    """Overview of Roster: data model, rules, and workflow."""
    return json.dumps({
        "system": "Roster: participation consistency for the student-program dashboard",
        "data_model": {
            "contact": "A person. Linked to memberships and participations.",
            "team": "A group of contacts inside a cohort. Members are linked through the Members table.",
            "membership": "Contact x Team with Status Active, Inactive or Invited. Missing status counts as Active.",
            "participation": "Contact x Cohort with Capacity (Participant or staff roles) and Status.",
            "cohort": "One run of an initiative. Only Active cohorts count for conflicts.",
            "initiative": "A program. Team-based unless its participation type says otherwise.",
            "submission": "Milestone work uploaded by a team or one of its members.",
        },
        "rules": [
            "A contact may be active in only one team-based, non-exempt initiative.",
            f"Initiatives whose name contains any of {get_settings().exempt_initiatives} are exempt.",
            "Leaving never deletes records; it marks them Inactive and can be repeated safely.",
        ],
        "workflow": [
            "1. check_conflict(contact_id, initiative_name) before enrollment.",
            "2. leave_team(contact_id, team_id) to leave one team, or team_id='unknown' for all.",
            "3. list_submissions(team_id, milestone_id) to review a team's uploads.",
        ],
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
async def check_conflict(contact_id: str, initiative_name: str) -> dict:
    """Check whether a contact may enroll in an initiative without breaking the one-active-team-initiative rule."""
    try:
        contact = await services.resolve_contact(_get_store(), contact_id=contact_id)
    except RosterError as exc:
        return _error(exc)
    return await services.check_conflict(_get_store(), contact.id, initiative_name)


@mcp.tool()
async def leave_team(contact_id: str, team_id: str = ALL_TEAMS) -> dict:
    """Deactivate a contact's membership and participation for a team. team_id='unknown' leaves every team."""
    try:
        contact = await services.resolve_contact(_get_store(), contact_id=contact_id)
    except RosterError as exc:
        return _error(exc)
    return await services.leave_team(
        _get_store(), contact.id, team_id, CacheInvalidationCoordinator.from_settings(),
    )


@mcp.tool()
async def list_submissions(team_id: str, milestone_id: str | None = None) -> dict:
    """List a team's submissions, newest first, optionally for a single milestone."""
    try:
        return await services.list_submissions(_get_store(), team_id, milestone_id)
    except RosterError as exc:
        return _error(exc)


def main():
    """Run the Roster MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
