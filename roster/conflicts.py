"""Single-active-initiative conflict detection.

A contact may be an active participant in only one team-based, non-exempt
initiative at a time. ``ConflictDetector.check`` answers whether enrolling
in a candidate initiative would break that rule. It is read-only, and a
store failure produces a policy decision instead of an exception.
"""
from __future__ import annotations

import logging
from typing import Any, Mapping

from roster.config import Settings, get_settings
from roster.errors import RecordSchemaMismatch, StoreError
from roster.formulas import And, Eq, EqIgnoreCase, Has, active_or_blank
from roster.models import ConflictDecision, ConflictDetail
from roster.relations import ACTIVE, read_relation, read_status, read_text, relation_ids
from roster.store import Record, RecordStore

log = logging.getLogger(__name__)

PARTICIPANT = "Participant"
COHORT_FIELDS = ("Cohorts", "Cohort")
TEAM_BASED_MARKERS = ("team", "group", "collaborative")


def is_team_based(participation_type: Any) -> bool:
    if isinstance(participation_type, (list, tuple)):
        participation_type = participation_type[0] if participation_type else ""
    if not isinstance(participation_type, str):
        return False
    normalized = participation_type.strip().lower()
    return any(marker in normalized for marker in TEAM_BASED_MARKERS)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("yes", "true", "1", "checked")
    return bool(value)


def participant_formula(contact_id: str):
    """Active-or-blank Participant-capacity participations of a contact."""
    return And(Has("Contacts", contact_id), Eq("Capacity", PARTICIPANT), active_or_blank())


class ConflictDetector:
    def __init__(self, store: RecordStore, settings: Settings | None = None):
        self.store = store
        self.settings = settings or get_settings()

    def is_exempt(self, name: str, fields: Mapping[str, Any] | None = None) -> bool:
        if fields is not None and _truthy(fields.get("Exempt")):
            return True
        lowered = (name or "").lower()
        return any(marker.lower() in lowered for marker in self.settings.exempt_initiatives)

    def _degraded(self, reason: str) -> ConflictDecision:
        if self.settings.fail_open:
            log.warning("Conflict check failed open: %s", reason)
            return ConflictDecision(allowed=True, degraded=True, reason=reason)
        log.warning("Conflict check failed closed: %s", reason)
        return ConflictDecision(allowed=False, degraded=True, reason=reason)

    async def check(self, contact_id: str, initiative_name: str) -> ConflictDecision:
        """Decide whether *contact_id* may enroll in *initiative_name*."""
        if self.is_exempt(initiative_name):
            return ConflictDecision(allowed=True, reason="exempt")
        try:
            return await self._check(contact_id, initiative_name)
        except StoreError as exc:
            return self._degraded(str(exc))

    async def _check(self, contact_id: str, initiative_name: str) -> ConflictDecision:
        candidates = await self.store.select("initiatives", EqIgnoreCase("Name", initiative_name), max_records=1)
        if not candidates:
            log.info("Initiative %r not found, allowing enrollment", initiative_name)
            return ConflictDecision(allowed=True, reason="unknown initiative")
        candidate = candidates[0].fields
        if self.is_exempt(initiative_name, candidate):
            return ConflictDecision(allowed=True, reason="exempt")
        if not is_team_based(candidate.get("Participation Type")):
            return ConflictDecision(allowed=True, reason="individual initiative")

        participations = await self.store.select("participation", participant_formula(contact_id))
        log.debug("Contact %s has %d candidate participation(s)", contact_id, len(participations))

        cohorts: dict[str, Record | None] = {}
        initiatives: dict[str, Record | None] = {}
        target = initiative_name.strip().casefold()

        for participation in participations:
            try:
                cohort_ids = relation_ids(participation.fields, COHORT_FIELDS)
                fallback_initiative = read_relation(participation.fields, "Initiative").first
            except RecordSchemaMismatch as exc:
                log.warning("Skipping participation %s: %s", participation.id, exc)
                continue

            for cohort_id in cohort_ids:
                if cohort_id not in cohorts:
                    cohorts[cohort_id] = await self.store.find("cohorts", cohort_id)
                cohort = cohorts[cohort_id]
                if cohort is None or read_status(cohort.fields) != ACTIVE:
                    continue
                try:
                    initiative_id = read_relation(cohort.fields, "Initiative").first or fallback_initiative
                except RecordSchemaMismatch as exc:
                    log.warning("Skipping cohort %s: %s", cohort_id, exc)
                    continue
                if not initiative_id:
                    continue
                if initiative_id not in initiatives:
                    initiatives[initiative_id] = await self.store.find("initiatives", initiative_id)
                initiative = initiatives[initiative_id]
                if initiative is None:
                    continue

                name = read_text(initiative.fields, "Name")
                if not name or name.casefold() == target:
                    continue
                if self.is_exempt(name, initiative.fields):
                    continue
                if not is_team_based(initiative.fields.get("Participation Type")):
                    continue
                detail = await self._conflict_detail(name, participation)
                log.info("Contact %s conflicts with active initiative %r", contact_id, name)
                return ConflictDecision(allowed=False, conflict=detail)

        return ConflictDecision(allowed=True)

    async def _conflict_detail(self, name: str, participation: Record) -> ConflictDetail:
        try:
            team_id = read_relation(participation.fields, "Team").first
        except RecordSchemaMismatch:
            team_id = None
        if not team_id:
            return ConflictDetail(current_initiative=name)
        team_name = None
        try:
            team = await self.store.find("teams", team_id)
        except StoreError as exc:
            log.warning("Could not resolve team %s for conflict detail: %s", team_id, exc)
            team = None
        if team is not None:
            team_name = read_text(team.fields, "Name", "Team Name") or None
        return ConflictDetail(current_initiative=name, team_id=team_id, team_name=team_name)
