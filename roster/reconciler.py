"""Submission reconciliation.

Submissions written over several schema generations link to their team,
member and milestone under different field names and shapes. The reconciler
tries a fixed sequence of matching strategies and uses the first one that
finds anything:

1. direct ``Team`` field match
2. match through the team's member contacts (``Member`` field)
3. direct match against historical team field names

Milestone association is resolved from a fixed priority list of fields, so
the same record always yields the same canonical milestone id.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping

from roster.config import Settings, get_settings
from roster.errors import RecordSchemaMismatch, StoreError
from roster.formulas import Has, has_any
from roster.models import Submission
from roster.relations import is_active, read_first_relation, read_relation, read_text, relation_ids
from roster.store import Record, RecordStore
from roster.utils import chunked

log = logging.getLogger(__name__)

TEAM_FIELD = "Team"
TEAM_FIELD_VARIANTS = ("Team Record ID", "Teams", "team", "teams", "Team ID")
MEMBER_FIELD = "Member"
MILESTONE_FIELDS = ("Milestone", "Deliverable")
MILESTONE_FIELD_VARIANTS = ("Milestone Record ID", "Milestones", "milestone", "milestones", "Milestone ID")
CREATED_TIME_FIELDS = ("Created Time", "Created", "createdTime", "Created At", "created_time")
ATTACHMENT_FIELDS = ("Attachment", "Attachments", "File")

DIRECT = "team"
MEMBERS = "member"
ALTERNATE = "alternate_team_field"


def canonical_milestone(fields: Mapping[str, Any]) -> str | None:
    """First non-empty milestone id across the milestone fields, in priority order."""
    _, rel = read_first_relation(fields, MILESTONE_FIELDS + MILESTONE_FIELD_VARIANTS)
    return rel.first


def created_time(fields: Mapping[str, Any]) -> str | None:
    return read_text(fields, *CREATED_TIME_FIELDS) or None


def _attachments(fields: Mapping[str, Any]) -> list[Any]:
    for name in ATTACHMENT_FIELDS:
        value = fields.get(name)
        if isinstance(value, list) and value:
            return value
        if value:
            return [value]
    return []


class SubmissionReconciler:
    def __init__(self, store: RecordStore, settings: Settings | None = None):
        self.store = store
        self.settings = settings or get_settings()

    async def find_submissions(self, team_id: str, milestone_id: str | None = None) -> list[Submission]:
        """Submissions of a team, optionally for one milestone, newest first."""
        if not team_id:
            return []
        strategies: list[tuple[str, Callable[[str], Awaitable[list[Record]]]]] = [
            (DIRECT, self._match_team_field),
            (MEMBERS, self._match_members),
            (ALTERNATE, self._match_alternate_fields),
        ]
        records: list[Record] = []
        matched_by = ""
        for name, strategy in strategies:
            try:
                records = await strategy(team_id)
            except StoreError as exc:
                log.warning("Submission strategy %r failed for team %s: %s", name, team_id, exc)
                records = []
            if records:
                matched_by = name
                break
        log.debug("Team %s: %d submission record(s) via %r", team_id, len(records), matched_by or "none")

        submissions = []
        for record in records:
            submission = self._to_submission(record, team_id, matched_by)
            if submission is None:
                continue
            if milestone_id and submission.milestone_id != milestone_id:
                continue
            submissions.append(submission)
        # Newest first; equal timestamps stay in ascending id order
        submissions.sort(key=lambda s: s.id)
        submissions.sort(key=lambda s: s.created_time, reverse=True)
        return submissions

    # -- strategies ----------------------------------------------------------

    @staticmethod
    def _linked(records: list[Record], field_names: tuple[str, ...], ids: set[str]) -> list[Record]:
        """Keep records whose fields really link one of *ids*."""
        kept = []
        for record in records:
            try:
                if ids.intersection(relation_ids(record.fields, field_names)):
                    kept.append(record)
            except RecordSchemaMismatch as exc:
                log.warning("Excluding submission %s: %s", record.id, exc)
        return kept

    async def _match_team_field(self, team_id: str) -> list[Record]:
        records = await self.store.select("submissions", Has(TEAM_FIELD, team_id))
        return self._linked(records, (TEAM_FIELD,), {team_id})

    async def _match_alternate_fields(self, team_id: str) -> list[Record]:
        # One query per variant: a formula naming a field the table lacks is rejected outright
        seen: dict[str, Record] = {}
        for name in TEAM_FIELD_VARIANTS:
            try:
                records = await self.store.select("submissions", Has(name, team_id))
            except StoreError as exc:
                if exc.status_code != 422:
                    raise
                log.debug("Submissions table has no field %r", name)
                continue
            for record in self._linked(records, (name,), {team_id}):
                seen.setdefault(record.id, record)
        return list(seen.values())

    async def _match_members(self, team_id: str) -> list[Record]:
        contact_ids = await self.team_contact_ids(team_id)
        if not contact_ids:
            return []
        batches = list(chunked(contact_ids, self.settings.member_batch_size))
        results = await asyncio.gather(
            *(self.store.select("submissions", has_any(MEMBER_FIELD, batch)) for batch in batches)
        )
        seen: dict[str, Record] = {}
        for batch_records in results:
            for record in batch_records:
                seen.setdefault(record.id, record)
        linked = self._linked(list(seen.values()), (MEMBER_FIELD,), set(contact_ids))
        return [r for r in linked if self._not_other_team(r, team_id)]

    @staticmethod
    def _not_other_team(record: Record, team_id: str) -> bool:
        """False when the submission's own team field names only other teams."""
        try:
            _, team = read_first_relation(record.fields, (TEAM_FIELD,) + TEAM_FIELD_VARIANTS)
        except RecordSchemaMismatch as exc:
            log.warning("Excluding submission %s: %s", record.id, exc)
            return False
        if team.ids and not team.contains(team_id):
            log.debug("Submission %s belongs to team %s, not %s", record.id, team.first, team_id)
            return False
        return True

    async def team_contact_ids(self, team_id: str) -> list[str]:
        """Contact ids of the team's current members.

        Live rows of the Members table win; the team record's own ``Members``
        field is only read when the table has no rows for the team at all.
        """
        contact_ids: dict[str, None] = {}
        memberships = await self.store.select("members", Has("Team", team_id))
        for record in memberships:
            if not is_active(record.fields):
                continue
            try:
                for cid in read_relation(record.fields, "Contact").ids:
                    contact_ids.setdefault(cid, None)
            except RecordSchemaMismatch as exc:
                log.warning("Ignoring membership %s: %s", record.id, exc)
        if memberships:
            return list(contact_ids)

        team = await self.store.find("teams", team_id)
        if team is None:
            log.info("Team %s not found while resolving members", team_id)
            return []
        try:
            return list(read_relation(team.fields, "Members").ids)
        except RecordSchemaMismatch as exc:
            log.warning("Ignoring member list of team %s: %s", team_id, exc)
            return []

    # -- shaping -------------------------------------------------------------

    @staticmethod
    def _to_submission(record: Record, team_id: str, matched_by: str) -> Submission | None:
        fields = record.fields
        created = created_time(fields)
        if not created:
            log.warning("Dropping submission %s: no creation time", record.id)
            return None
        try:
            milestone = canonical_milestone(fields)
            _, team = read_first_relation(fields, (TEAM_FIELD,) + TEAM_FIELD_VARIANTS)
            members = read_relation(fields, MEMBER_FIELD).ids
        except RecordSchemaMismatch as exc:
            log.warning("Excluding submission %s: %s", record.id, exc)
            return None
        return Submission(
            id=record.id,
            created_time=created,
            team_id=team.first or team_id,
            member_ids=list(members),
            milestone_id=milestone,
            comments=read_text(fields, "Comments"),
            link=read_text(fields, "Link"),
            attachments=_attachments(fields),
            matched_by=matched_by,
        )

