"""Tests for relation-field normalization and formula compilation."""
from __future__ import annotations

import pytest

from roster.errors import RecordSchemaMismatch


# =========================================================================
# normalize_relation
# =========================================================================

class TestNormalizeRelation:
    def test_absent(self):
        from roster.relations import ABSENT, normalize_relation
        assert normalize_relation("Team", None) is ABSENT

    def test_scalar(self):
        from roster.relations import Scalar, normalize_relation
        rel = normalize_relation("Team", " t1 ")
        assert rel == Scalar("t1")
        assert rel.ids == ("t1",)
        assert rel.contains("t1")

    def test_blank_string_is_absent(self):
        from roster.relations import ABSENT, normalize_relation
        assert normalize_relation("Team", "  ") is ABSENT

    def test_list(self):
        from roster.relations import Many, normalize_relation
        rel = normalize_relation("Team", ["t1", "", None, "t2"])
        assert rel == Many(("t1", "t2"))
        assert rel.first == "t1"

    def test_empty_list(self):
        from roster.relations import Many, normalize_relation
        rel = normalize_relation("Milestone", [])
        assert rel == Many(())
        assert rel.first is None
        assert rel.ids == ()

    def test_object_items(self):
        from roster.relations import normalize_relation
        assert normalize_relation("Team", [{"id": "t1"}, {"id": "t2", "name": "x"}]).ids == ("t1", "t2")
        assert normalize_relation("Team", {"id": "t3"}).ids == ("t3",)

    def test_numbers_become_ids(self):
        from roster.relations import normalize_relation
        assert normalize_relation("Points", 7).ids == ("7",)

    @pytest.mark.parametrize("value", [True, 3.5, {"name": "no id"}, [["nested"]]])
    def test_unexpected_shapes_raise(self, value):
        from roster.relations import normalize_relation
        with pytest.raises(RecordSchemaMismatch) as info:
            normalize_relation("Team", value)
        assert info.value.field == "Team"


class TestReaders:
    def test_read_first_relation_priority(self):
        from roster.relations import Many, read_first_relation
        fields = {"B": ["b1"], "A": [], "C": "c1"}
        assert read_first_relation(fields, ("A", "B", "C")) == ("B", Many(("b1",)))
        assert read_first_relation(fields, ("C", "B"))[1].first == "c1"
        assert read_first_relation(fields, ("X",))[0] is None

    def test_relation_ids_union(self):
        from roster.relations import relation_ids
        fields = {"Cohorts": ["k1", "k2"], "Cohort": "k1"}
        assert relation_ids(fields, ("Cohorts", "Cohort")) == ("k1", "k2")

    def test_read_status(self):
        from roster.relations import read_status
        assert read_status({"Status": "active"}) == "Active"
        assert read_status({"status": ["Inactive"]}) == "Inactive"
        assert read_status({"Status": ""}) is None
        assert read_status({}) is None

    def test_is_active(self):
        from roster.relations import is_active
        assert is_active({}) is True
        assert is_active({"Status": "Active"}) is True
        assert is_active({"Status": "Inactive"}) is False
        assert is_active({"Status": "Invited"}) is False

    def test_read_text(self):
        from roster.relations import read_text
        assert read_text({"Team Name": "Rovers"}, "Name", "Team Name") == "Rovers"
        assert read_text({"Name": ["", "Lookup"]}, "Name") == "Lookup"
        assert read_text({}, "Name", default="?") == "?"


# =========================================================================
# Formulas
# =========================================================================

class TestFormulaCompile:
    def test_eq(self):
        from roster.formulas import Eq
        assert Eq("Status", "Active").compile() == '{Status}="Active"'

    def test_has(self):
        from roster.formulas import Has
        assert Has("Contact", "rec1").compile() == 'FIND("rec1", ARRAYJOIN({Contact})) > 0'

    def test_quotes_are_escaped(self):
        from roster.formulas import Eq
        assert Eq("Name", 'say "hi"').compile() == '{Name}="say \\"hi\\""'

    def test_ignore_case(self):
        from roster.formulas import EqIgnoreCase
        assert EqIgnoreCase("Email", "Ada@Example.org").compile() == 'LOWER({Email})="ada@example.org"'

    def test_groups(self):
        from roster.formulas import And, Blank, Eq, Or, active_or_blank
        assert active_or_blank().compile() == 'OR({Status}="Active", {Status}="")'
        assert And(Eq("A", "1")).compile() == '{A}="1"'
        assert And(Eq("A", "1"), Or(Eq("B", "2"), Blank("C"))).compile() == (
            'AND({A}="1", OR({B}="2", {C}=""))'
        )

    def test_empty_group_rejected(self):
        from roster.formulas import Or
        with pytest.raises(ValueError):
            Or()

    def test_str_is_compiled(self):
        from roster.formulas import Has
        assert str(Has("Member", "c1")) == Has("Member", "c1").compile()


class TestFormulaMatches:
    def test_has_scalar_and_list(self):
        from roster.formulas import Has
        assert Has("Team", "t1").matches({"Team": "t1"})
        assert Has("Team", "t1").matches({"Team": ["t0", "t1"]})
        assert not Has("Team", "t1").matches({"Team": ["t10"]})
        assert not Has("Team", "t1").matches({})

    def test_malformed_field_never_matches(self):
        from roster.formulas import Has
        assert not Has("Team", "t1").matches({"Team": True})

    def test_blank(self):
        from roster.formulas import Blank
        assert Blank("Status").matches({})
        assert Blank("Status").matches({"Status": " "})
        assert Blank("Status").matches({"Status": []})
        assert not Blank("Status").matches({"Status": "Active"})

    def test_active_or_blank(self):
        from roster.formulas import active_or_blank
        f = active_or_blank()
        assert f.matches({})
        assert f.matches({"Status": "Active"})
        assert not f.matches({"Status": "Inactive"})

    def test_ignore_case(self):
        from roster.formulas import EqIgnoreCase
        assert EqIgnoreCase("Email", "ADA@example.org").matches({"Email": "ada@EXAMPLE.org"})

    def test_has_any(self):
        from roster.formulas import has_any
        f = has_any("Member", ["c1", "c2"])
        assert f.matches({"Member": ["c2"]})
        assert not f.matches({"Member": ["c3"]})


class TestChunked:
    def test_chunks(self):
        from roster.utils import chunked
        assert list(chunked(["a", "b", "c", "d", "e"], 2)) == [["a", "b"], ["c", "d"], ["e"]]

    def test_invalid_size(self):
        from roster.utils import chunked
        with pytest.raises(ValueError):
            list(chunked(["a"], 0))

    def test_json_parse(self):
        from roster.utils import json_parse
        assert json_parse('{"a": 1}') == {"a": 1}
        assert json_parse("bad", []) == []
        assert json_parse(None) == {}
