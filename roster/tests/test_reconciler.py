"""Tests for submission reconciliation across schema generations."""
from __future__ import annotations

from unittest.mock import patch

import pytest

from roster.errors import StoreError

T0 = "2024-03-01T10:00:00.000Z"
T1 = "2024-03-02T10:00:00.000Z"
T2 = "2024-03-03T10:00:00.000Z"


def _reconciler(store, settings):
    from roster.reconciler import SubmissionReconciler
    return SubmissionReconciler(store, settings)


# ---------------------------------------------------------------------------
# Tests: canonical milestone
# ---------------------------------------------------------------------------


class TestCanonicalMilestone:
    def test_direct_milestone_wins(self):
        from roster.reconciler import canonical_milestone
        assert canonical_milestone({"Milestone": ["m1"], "Deliverable": ["m2"]}) == "m1"

    def test_empty_milestone_falls_back_to_deliverable(self):
        from roster.reconciler import canonical_milestone
        assert canonical_milestone({"Milestone": [], "Deliverable": ["m9"]}) == "m9"

    def test_alternate_field_names(self):
        from roster.reconciler import canonical_milestone
        assert canonical_milestone({"Milestone Record ID": "m3"}) == "m3"
        assert canonical_milestone({"milestones": [{"id": "m4"}]}) == "m4"

    def test_independent_of_field_order(self):
        from roster.reconciler import canonical_milestone
        a = {"Milestones": ["mB"], "Deliverable": ["mA"]}
        b = {"Deliverable": ["mA"], "Milestones": ["mB"]}
        assert canonical_milestone(a) == canonical_milestone(b) == "mA"

    def test_absent(self):
        from roster.reconciler import canonical_milestone
        assert canonical_milestone({"Comments": "hi"}) is None


# ---------------------------------------------------------------------------
# Tests: strategies
# ---------------------------------------------------------------------------


class TestFindSubmissions:
    @pytest.mark.asyncio
    async def test_scalar_team_field_matches(self, store, settings, seed):
        seed("submissions", "s1", {"Team": "t1", "Created Time": T0, "Comments": "Pitch deck"})

        result = await _reconciler(store, settings).find_submissions("t1")

        assert [s.id for s in result] == ["s1"]
        assert result[0].matched_by == "team"
        assert result[0].team_id == "t1"
        assert result[0].comments == "Pitch deck"

    @pytest.mark.asyncio
    async def test_deliverable_fallback_for_milestone_filter(self, store, settings, seed):
        seed("submissions", "s2", {"Team": ["t1"], "Milestone": [], "Deliverable": ["m9"], "Created Time": T0})
        seed("submissions", "s3", {"Team": ["t1"], "Milestone": ["m1"], "Created Time": T1})

        result = await _reconciler(store, settings).find_submissions("t1", "m9")

        assert [s.id for s in result] == ["s2"]
        assert result[0].milestone_id == "m9"

    @pytest.mark.asyncio
    async def test_repeated_calls_are_deterministic(self, store, settings, seed):
        seed("submissions", "s4", {
            "Team": ["t1"], "Milestones": ["mB"], "Deliverable": ["mA"], "Created Time": T0,
        })
        reconciler = _reconciler(store, settings)

        runs = [await reconciler.find_submissions("t1", "mA") for _ in range(3)]

        assert all([s.id for s in run] == ["s4"] for run in runs)
        assert all(run[0].milestone_id == "mA" for run in runs)

    @pytest.mark.asyncio
    async def test_member_strategy_used_when_direct_is_empty(self, store, settings, seed):
        seed("members", "m1", {"Contact": ["c7"], "Team": ["t2"], "Status": "Active"})
        seed("submissions", "s5", {"Member": ["c7"], "Created Time": T0, "Link": "https://example.org/demo"})
        seed("submissions", "s6", {"Member": ["c99"], "Created Time": T0})

        result = await _reconciler(store, settings).find_submissions("t2")

        assert [s.id for s in result] == ["s5"]
        assert result[0].matched_by == "member"
        assert result[0].member_ids == ["c7"]
        assert result[0].link == "https://example.org/demo"

    @pytest.mark.asyncio
    async def test_member_strategy_uses_team_members_field(self, store, settings, seed):
        seed("teams", "t5", {"Name": "Solo", "Members": ["c8"]})
        seed("submissions", "s7", {"Member": "c8", "Created Time": T0})

        result = await _reconciler(store, settings).find_submissions("t5")

        assert [s.id for s in result] == ["s7"]

    @pytest.mark.asyncio
    async def test_invited_members_do_not_count(self, store, settings, seed):
        seed("members", "m1", {"Contact": ["c7"], "Team": ["t2"], "Status": "Invited"})
        seed("submissions", "s5", {"Member": ["c7"], "Created Time": T0})
        result = await _reconciler(store, settings).find_submissions("t2")
        assert result == []

    @pytest.mark.asyncio
    async def test_previous_team_work_not_attributed_to_new_team(self, store, settings, seed):
        seed("members", "mA", {"Contact": ["c1"], "Team": ["tA"], "Status": "Inactive"})
        seed("members", "mB", {"Contact": ["c1"], "Team": ["tB"], "Status": "Active"})
        seed("submissions", "s1", {"Team": "tA", "Member": ["c1"], "Created Time": T0})
        seed("submissions", "s2", {"Member": ["c1"], "Created Time": T1})

        result = await _reconciler(store, settings).find_submissions("tB")

        assert [s.id for s in result] == ["s2"]
        assert result[0].team_id == "tB"

    @pytest.mark.asyncio
    async def test_former_members_do_not_count(self, store, settings, seed):
        seed("members", "m1", {"Contact": ["c7"], "Team": ["t2"], "Status": "Inactive"})
        seed("teams", "t2", {"Name": "Gliders", "Members": ["c7"]})
        seed("submissions", "s5", {"Member": ["c7"], "Created Time": T0})
        assert await _reconciler(store, settings).find_submissions("t2") == []

    @pytest.mark.asyncio
    async def test_alternate_team_field(self, store, settings, seed):
        seed("submissions", "s8", {"Team Record ID": "t3", "Created Time": T0})

        result = await _reconciler(store, settings).find_submissions("t3")

        assert [s.id for s in result] == ["s8"]
        assert result[0].matched_by == "alternate_team_field"
        assert result[0].team_id == "t3"

    @pytest.mark.asyncio
    async def test_direct_match_short_circuits(self, store, settings, seed):
        seed("members", "m1", {"Contact": ["c7"], "Team": ["t1"], "Status": "Active"})
        seed("submissions", "s1", {"Team": ["t1"], "Created Time": T0})
        seed("submissions", "s9", {"Member": ["c7"], "Created Time": T1})

        result = await _reconciler(store, settings).find_submissions("t1")

        assert [s.id for s in result] == ["s1"]

    @pytest.mark.asyncio
    async def test_member_ids_are_batched(self, store, settings, seed):
        for i in range(5):
            seed("members", f"m{i}", {"Contact": [f"c{i}"], "Team": ["t4"], "Status": "Active"})
        seed("submissions", "s10", {"Member": ["c4"], "Created Time": T0})
        seed("submissions", "s11", {"Member": ["c0"], "Created Time": T1})

        with patch.object(store, "select", wraps=store.select) as spy:
            result = await _reconciler(store, settings).find_submissions("t4")

        member_queries = [
            c for c in spy.await_args_list
            if c.args[0] == "submissions" and "Member" in str(c.args[1])
        ]
        assert len(member_queries) == 3
        assert [s.id for s in result] == ["s11", "s10"]

    @pytest.mark.asyncio
    async def test_unknown_team_is_empty(self, store, settings, seed):
        seed("submissions", "s1", {"Team": ["t1"], "Created Time": T0})
        assert await _reconciler(store, settings).find_submissions("tNone") == []


# ---------------------------------------------------------------------------
# Tests: validation and ordering
# ---------------------------------------------------------------------------


class TestSubmissionShaping:
    @pytest.mark.asyncio
    async def test_newest_first_with_stable_ties(self, store, settings, seed):
        seed("submissions", "sB", {"Team": ["t1"], "Created Time": T1})
        seed("submissions", "sC", {"Team": ["t1"], "Created Time": T2})
        seed("submissions", "sA", {"Team": ["t1"], "Created Time": T1})

        result = await _reconciler(store, settings).find_submissions("t1")

        assert [s.id for s in result] == ["sC", "sA", "sB"]

    @pytest.mark.asyncio
    async def test_created_time_variants(self, store, settings, seed):
        seed("submissions", "s1", {"Team": ["t1"], "createdTime": T0})
        seed("submissions", "s2", {"Team": ["t1"], "Created": T1})
        result = await _reconciler(store, settings).find_submissions("t1")
        assert [s.id for s in result] == ["s2", "s1"]

    @pytest.mark.asyncio
    async def test_missing_created_time_dropped(self, store, settings, seed):
        seed("submissions", "s1", {"Team": ["t1"], "Created Time": T0})
        seed("submissions", "s2", {"Team": ["t1"]})
        result = await _reconciler(store, settings).find_submissions("t1")
        assert [s.id for s in result] == ["s1"]

    @pytest.mark.asyncio
    async def test_malformed_milestone_excluded(self, store, settings, seed):
        seed("submissions", "s1", {"Team": ["t1"], "Created Time": T0})
        seed("submissions", "s2", {"Team": ["t1"], "Milestone": True, "Created Time": T1})
        result = await _reconciler(store, settings).find_submissions("t1")
        assert [s.id for s in result] == ["s1"]

    @pytest.mark.asyncio
    async def test_attachments_normalized(self, store, settings, seed):
        seed("submissions", "s1", {
            "Team": ["t1"], "Created Time": T0,
            "Attachment": [{"url": "https://files.example.org/a.pdf", "filename": "a.pdf"}],
        })
        result = await _reconciler(store, settings).find_submissions("t1")
        assert result[0].attachments[0]["filename"] == "a.pdf"

    @pytest.mark.asyncio
    async def test_failing_strategy_falls_through(self, store, settings, seed):
        seed("submissions", "s8", {"Team Record ID": "t3", "Created Time": T0})
        original_select = store.select

        async def select(table, formula=None, **kwargs):
            if table == "members":
                raise StoreError("members unavailable", status_code=503, retryable=True)
            return await original_select(table, formula, **kwargs)

        with patch.object(store, "select", side_effect=select):
            result = await _reconciler(store, settings).find_submissions("t3")

        assert [s.id for s in result] == ["s8"]
