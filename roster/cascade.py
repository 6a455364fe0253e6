"""Leave cascade.

The store has no multi-record transactions, so a leave is run as a saga of
ordered, individually idempotent steps:

1. find the contact's live memberships (current schema, then legacy records
   without a status, then the contact's own ``Members`` links)
2. mark each membership ``Inactive``
3. work out which cohorts are currently active
4. mark the contact's live Participant participations in those cohorts
   ``Inactive``
5. publish cache invalidation

Every write is a single-record update. A failed write is logged and counted
but never stops the sweep, and re-running a leave is always safe because
only live records are ever selected.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable

from roster.config import Settings, get_settings
from roster.conflicts import COHORT_FIELDS, PARTICIPANT, participant_formula
from roster.errors import PartialCascadeFailure, RecordSchemaMismatch, StoreError, TeamNotFound
from roster.formulas import And, Eq, Has
from roster.invalidation import MEMBERSHIPS, PARTICIPATION, CacheInvalidationCoordinator
from roster.models import CascadeResult
from roster.relations import ACTIVE, INACTIVE, INVITED, is_active, read_relation, read_status, relation_ids
from roster.store import Record, RecordStore

log = logging.getLogger(__name__)

ALL_TEAMS = "unknown"


@dataclass
class _Tally:
    """Aggregates the outcome of one saga run."""
    memberships_found: int = 0
    memberships_updated: int = 0
    participations_found: int = 0
    participations_updated: int = 0
    participations_skipped: int = 0
    failed: list[str] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return self.memberships_updated + self.participations_updated

    @property
    def intended(self) -> int:
        return self.succeeded + len(self.failed)

    def result(self, action: str) -> CascadeResult:
        success = self.intended == 0 or self.succeeded > 0
        if self.failed and success:
            log.warning("%s partially failed: %s", action, PartialCascadeFailure(self.failed, self.succeeded))
        error = None if success else f"{action} failed: none of {self.intended} record update(s) succeeded"
        if error:
            log.error(error)
        return CascadeResult(
            success=success,
            memberships_found=self.memberships_found,
            memberships_updated=self.memberships_updated,
            participations_found=self.participations_found,
            participations_updated=self.participations_updated,
            participations_skipped=self.participations_skipped,
            failed=list(self.failed),
            error=error,
        )


class MembershipCascade:
    def __init__(
        self,
        store: RecordStore,
        coordinator: CacheInvalidationCoordinator | None = None,
        settings: Settings | None = None,
    ):
        self.store = store
        self.coordinator = coordinator or CacheInvalidationCoordinator()
        self.settings = settings or get_settings()

    # -- leave team -----------------------------------------------------------

    async def leave(self, contact_id: str, team_id: str = ALL_TEAMS) -> CascadeResult:
        """Deactivate the contact's memberships and participations for a team.

        ``team_id`` of ``"unknown"`` means every team the contact is active in.
        """
        tally = _Tally()
        scoped = bool(team_id) and team_id != ALL_TEAMS
        team = await self._load_team(team_id) if scoped else None

        memberships = await self._find_memberships(contact_id, team_id if scoped else None, tally)
        tally.memberships_found = len(memberships)
        for record in memberships:
            if await self._deactivate("members", record, tally):
                tally.memberships_updated += 1

        team_cohorts = self._team_cohorts(team, memberships)
        # Without any cohort to scope by, a confirmed membership widens the sweep
        # to participations that name no team at all
        unlinked_in_scope = not team_cohorts and bool(memberships)
        if scoped and unlinked_in_scope:
            log.info("No cohorts known for team %s; including participations without a team link", team_id)

        try:
            participations = await self.store.select("participation", participant_formula(contact_id))
        except StoreError as exc:
            log.warning("Could not list participations for %s: %s", contact_id, exc)
            tally.failed.append(f"participation:{contact_id}")
            participations = []

        if scoped:
            participations = [
                p for p in participations
                if self._in_team_scope(p, team_id, team_cohorts, unlinked_in_scope)
            ]
        await self._deactivate_participations(participations, tally)

        result = tally.result(f"Leave of {contact_id} from {team_id}")
        log.info(
            "Leave %s/%s: %d/%d membership(s), %d/%d participation(s), %d failure(s)",
            contact_id, team_id, result.memberships_updated, result.memberships_found,
            result.participations_updated, result.participations_found, len(result.failed),
        )
        await self.coordinator.invalidate({MEMBERSHIPS, PARTICIPATION})
        return result

    async def _load_team(self, team_id: str) -> Record | None:
        try:
            team = await self.store.find("teams", team_id)
        except StoreError as exc:
            log.warning("Could not load team %s: %s", team_id, exc)
            return None
        if team is None:
            log.warning("%s; continuing with membership sweep", TeamNotFound(team_id))
        return team

    @staticmethod
    def _team_cohorts(team: Record | None, memberships: Iterable[Record]) -> set[str]:
        """Cohorts linked from the team record or from the memberships themselves."""
        cohorts: set[str] = set()
        for record in ([team] if team is not None else []) + list(memberships):
            try:
                cohorts.update(relation_ids(record.fields, COHORT_FIELDS))
            except RecordSchemaMismatch as exc:
                log.warning("Ignoring cohort link of %s: %s", record.id, exc)
        return cohorts

    @staticmethod
    def _in_team_scope(record: Record, team_id: str, team_cohorts: set[str], include_unlinked: bool = False) -> bool:
        try:
            team = read_relation(record.fields, "Team")
            if team.contains(team_id):
                return True
            if include_unlinked:
                return not team.ids
            return bool(team_cohorts.intersection(relation_ids(record.fields, COHORT_FIELDS)))
        except RecordSchemaMismatch as exc:
            log.warning("Skipping participation %s: %s", record.id, exc)
            return False

    async def _find_memberships(self, contact_id: str, team_id: str | None, tally: _Tally) -> list[Record]:
        scope = [Has("Contact", contact_id)]
        if team_id:
            scope.append(Has("Team", team_id))

        try:
            active = await self.store.select("members", And(*scope, Eq("Status", ACTIVE)))
            if active:
                return active
            # Legacy records predate the Status field
            unfiltered = await self.store.select("members", And(*scope))
        except StoreError as exc:
            log.warning("Membership query failed for %s: %s", contact_id, exc)
            tally.failed.append(f"members:{contact_id}")
            unfiltered = []
        legacy = [r for r in unfiltered if is_active(r.fields)]
        if legacy:
            log.info("Found %d status-less membership(s) for %s", len(legacy), contact_id)
            return legacy
        return await self._memberships_from_contact(contact_id, team_id, tally)

    async def _memberships_from_contact(self, contact_id: str, team_id: str | None, tally: _Tally) -> list[Record]:
        try:
            contact = await self.store.find("contacts", contact_id)
            if contact is None:
                return []
            member_ids = read_relation(contact.fields, "Members").ids
            found = []
            for member_id in member_ids:
                record = await self.store.find("members", member_id)
                if record is None or not is_active(record.fields):
                    continue
                if team_id and not read_relation(record.fields, "Team").contains(team_id):
                    continue
                found.append(record)
            return found
        except StoreError as exc:
            log.warning("Could not read membership links of contact %s: %s", contact_id, exc)
            tally.failed.append(f"contacts:{contact_id}")
            return []
        except RecordSchemaMismatch as exc:
            log.warning("Ignoring membership links of contact %s: %s", contact_id, exc)
            return []

    # -- participations -------------------------------------------------------

    async def _active_cohorts(self) -> set[str] | None:
        """Ids of active cohorts, or None when the listing failed."""
        try:
            records = await self.store.select("cohorts", Eq("Status", ACTIVE))
        except StoreError as exc:
            log.warning("Active cohort listing failed, falling back to lookups: %s", exc)
            return None
        return {r.id for r in records}

    async def _cohort_active(self, cohort_id: str, cache: dict[str, bool]) -> bool:
        if cohort_id not in cache:
            cohort = await self.store.find("cohorts", cohort_id)
            cache[cohort_id] = cohort is not None and read_status(cohort.fields) == ACTIVE
        return cache[cohort_id]

    async def _deactivate_participations(self, participations: list[Record], tally: _Tally) -> None:
        if not participations:
            return
        active_cohorts = await self._active_cohorts()
        lookups: dict[str, bool] = {}
        for record in participations:
            try:
                cohort_ids = relation_ids(record.fields, COHORT_FIELDS)
            except RecordSchemaMismatch as exc:
                log.warning("Skipping participation %s: %s", record.id, exc)
                tally.participations_skipped += 1
                continue

            if active_cohorts is not None:
                eligible = any(c in active_cohorts for c in cohort_ids)
            else:
                try:
                    eligible = False
                    for cohort_id in cohort_ids:
                        if await self._cohort_active(cohort_id, lookups):
                            eligible = True
                            break
                except StoreError as exc:
                    log.warning("Could not resolve cohorts of participation %s: %s", record.id, exc)
                    tally.failed.append(f"participation:{record.id}")
                    continue

            if not eligible:
                log.debug("Participation %s is in no active cohort, leaving untouched", record.id)
                tally.participations_skipped += 1
                continue
            tally.participations_found += 1
            if await self._deactivate("participation", record, tally):
                tally.participations_updated += 1

    async def _deactivate(self, table: str, record: Record, tally: _Tally) -> bool:
        try:
            await self.store.update(table, record.id, {"Status": INACTIVE})
        except StoreError as exc:
            log.warning("Failed to deactivate %s record %s: %s", table, record.id, exc)
            tally.failed.append(f"{table}:{record.id}")
            return False
        log.debug("Deactivated %s record %s", table, record.id)
        return True

    # -- leave program --------------------------------------------------------

    async def leave_program(
        self,
        contact_id: str,
        *,
        participation_id: str | None = None,
        cohort_id: str | None = None,
        initiative_id: str | None = None,
    ) -> CascadeResult:
        """Deactivate Participant participations selected by id, cohort or initiative."""
        if not (participation_id or cohort_id or initiative_id):
            return CascadeResult(
                success=False, error="A participation, cohort or initiative id is required",
            )

        tally = _Tally()
        if participation_id:
            try:
                record = await self.store.find("participation", participation_id)
            except StoreError as exc:
                log.warning("Could not load participation %s: %s", participation_id, exc)
                return CascadeResult(success=False, error="Participation record could not be loaded")
            error = self._ownership_error(record, contact_id)
            if error:
                return CascadeResult(success=False, error=error)
            if is_active(record.fields):
                tally.participations_found = 1
                if await self._deactivate("participation", record, tally):
                    tally.participations_updated = 1
        else:
            try:
                candidates = await self.store.select("participation", participant_formula(contact_id))
            except StoreError as exc:
                log.warning("Could not list participations for %s: %s", contact_id, exc)
                return CascadeResult(success=False, error="Participation records could not be loaded")
            for record in self._select_program(candidates, cohort_id, initiative_id):
                tally.participations_found += 1
                if await self._deactivate("participation", record, tally):
                    tally.participations_updated += 1

        result = tally.result(f"Leave program for {contact_id}")
        await self.coordinator.invalidate({PARTICIPATION})
        return result

    @staticmethod
    def _ownership_error(record: Record | None, contact_id: str) -> str | None:
        if record is None:
            return "Participation record not found"
        try:
            if not read_relation(record.fields, "Contacts").contains(contact_id):
                return "Participation record does not belong to this contact"
        except RecordSchemaMismatch:
            return "Participation record has an unreadable contact link"
        if read_relation(record.fields, "Capacity").first != PARTICIPANT:
            return "Only participant records can be left"
        return None

    @staticmethod
    def _select_program(
        records: Iterable[Record], cohort_id: str | None, initiative_id: str | None,
    ) -> list[Record]:
        selected = []
        for record in records:
            try:
                in_cohort = bool(cohort_id) and cohort_id in relation_ids(record.fields, COHORT_FIELDS)
                in_initiative = bool(initiative_id) and read_relation(record.fields, "Initiative").contains(initiative_id)
            except RecordSchemaMismatch as exc:
                log.warning("Skipping participation %s: %s", record.id, exc)
                continue
            if in_cohort or in_initiative:
                selected.append(record)
        return selected

    # -- invitations ----------------------------------------------------------

    async def withdraw_invitation(self, member_id: str, team_id: str) -> CascadeResult:
        """Delete an ``Invited`` membership and its invitation tokens."""
        try:
            record = await self.store.find("members", member_id)
        except StoreError as exc:
            log.warning("Could not load membership %s: %s", member_id, exc)
            return CascadeResult(success=False, error="Membership record could not be loaded")
        if record is None:
            return CascadeResult(success=False, error="Membership record not found")
        try:
            in_team = read_relation(record.fields, "Team").contains(team_id)
        except RecordSchemaMismatch:
            in_team = False
        if not in_team:
            return CascadeResult(success=False, error="Member does not belong to this team")
        if read_status(record.fields) != INVITED:
            return CascadeResult(success=False, error="Only invited members can be withdrawn")

        try:
            await self.store.delete("members", member_id)
        except StoreError as exc:
            log.warning("Could not delete invited membership %s: %s", member_id, exc)
            return CascadeResult(
                success=False, memberships_found=1, failed=[f"members:{member_id}"],
                error="Invitation could not be withdrawn",
            )
        log.info("Withdrew invitation %s from team %s", member_id, team_id)

        try:
            invites = await self.store.select("invites", Has("Member", member_id))
            for invite in invites:
                await self.store.delete("invites", invite.id)
        except StoreError as exc:
            log.warning("Invitation token cleanup for %s failed: %s", member_id, exc)

        await self.coordinator.invalidate({MEMBERSHIPS})
        return CascadeResult(success=True, memberships_found=1, memberships_updated=1)
