"""Tests for VersionControlEngine, the deep module owning the context lifecycle.

Runs the engine directly against the in-memory SQLite store with a
steppable clock, bypassing the HTTP stack. Covers commit and copy-forward,
the single-current rule, temporal lookup, history, diff, rollback, field
history, tagging and integrity checks.
"""

import hashlib
from datetime import timedelta
from unittest.mock import patch

import pytest

from contextvc.core.field_types import FieldSource, FieldType
from contextvc.exceptions import (
    ConsistencyError,
    NoCurrentVersionError,
    NoVersionAtTimeError,
    StoreError,
    ValidationError,
    VersionNotFoundError,
)
from contextvc.models import ContextChange, ContextVersion, StateField
from contextvc.schemas.version import FieldUpdate
from contextvc.services.snapshot import DiffType
from contextvc.services.version_control import compute_content_hash, normalize_tags

from tests.conftest import T0, field

OWNER = "founder-1"


def _values(state):
    return {name: f.field_value for name, f in state.items()}


def _seed(engine, clock):
    """Three commits one hour apart: create icp+mrr, update mrr, add team."""
    v1 = engine.commit(OWNER, "Initial context", [field("icp", "SMB"), field("mrr", 1000, "number")])
    clock.advance(hours=1)
    v2 = engine.commit(OWNER, "MRR grew", [field("mrr", 2500, "number")])
    clock.advance(hours=1)
    v3 = engine.commit(OWNER, "Hired", [field("team", ["ana", "bo"], "array")])
    return v1, v2, v3


class TestCommit:

    def test_first_commit(self, engine):
        version = engine.commit(OWNER, "Initial context", [field("icp", "SMB")])
        assert version.parent_id is None
        assert version.sequence == 1
        assert version.is_current is True
        assert version.author == "system"
        assert version.created_at == T0
        assert _values(engine.get_state(version.id)) == {"icp": "SMB"}

    def test_child_points_at_parent(self, engine, clock):
        v1, v2, v3 = _seed(engine, clock)
        assert v2.parent_id == v1.id
        assert v3.parent_id == v2.id
        assert [v1.sequence, v2.sequence, v3.sequence] == [1, 2, 3]

    def test_every_version_is_a_full_snapshot(self, engine, clock):
        v1, v2, v3 = _seed(engine, clock)
        assert _values(engine.get_state(v1.id)) == {"icp": "SMB", "mrr": 1000}
        assert _values(engine.get_state(v2.id)) == {"icp": "SMB", "mrr": 2500}
        assert _values(engine.get_state(v3.id)) == {"icp": "SMB", "mrr": 2500, "team": ["ana", "bo"]}

    def test_copied_fields_keep_their_metadata(self, engine, clock):
        v1, v2, _ = _seed(engine, clock)
        icp_v1 = engine.get_state(v1.id)["icp"]
        icp_v2 = engine.get_state(v2.id)["icp"]
        assert icp_v2 == icp_v1
        assert icp_v2.updated_at == T0
        assert engine.get_state(v2.id)["mrr"].updated_at == T0 + timedelta(hours=1)

    def test_change_rows_only_for_written_fields(self, engine, db, clock):
        v1, v2, _ = _seed(engine, clock)
        v2_changes = db.query(ContextChange).filter(ContextChange.version_id == v2.id).all()
        assert [(c.field_name, c.change_type, c.old_value, c.new_value) for c in v2_changes] == [
            ("mrr", "update", 1000, 2500)
        ]
        v1_changes = db.query(ContextChange).filter(ContextChange.version_id == v1.id).all()
        assert sorted((c.field_name, c.change_type) for c in v1_changes) == [("icp", "create"), ("mrr", "create")]

    def test_rewriting_same_value_is_still_logged(self, engine, db, clock):
        engine.commit(OWNER, "one", [field("icp", "SMB")])
        clock.advance(minutes=1)
        v2 = engine.commit(OWNER, "two", [field("icp", "SMB")])
        changes = db.query(ContextChange).filter(ContextChange.version_id == v2.id).all()
        assert [(c.change_type, c.old_value, c.new_value) for c in changes] == [("update", "SMB", "SMB")]

    def test_type_and_source_of_written_field_replaced(self, engine, clock):
        engine.commit(OWNER, "one", [field("launch", "Q3")])
        clock.advance(minutes=1)
        v2 = engine.commit(OWNER, "two", [field("launch", "2024-09-01", "date", "api_crm")])
        launch = engine.get_state(v2.id)["launch"]
        assert launch.field_type == FieldType.DATE
        assert launch.source == FieldSource.API_CRM

    def test_accepts_field_update_models(self, engine):
        update = FieldUpdate(field_name="mrr", field_value=10, field_type=FieldType.NUMBER)
        version = engine.commit(OWNER, "typed", [update])
        assert _values(engine.get_state(version.id)) == {"mrr": 10}

    def test_author_and_tags(self, engine):
        version = engine.commit(
            OWNER, "tagged", [field("a", "1")], tags=[" q1 ", "strategy", "q1", ""], author="ana"
        )
        assert version.author == "ana"
        assert version.tags == ["q1", "strategy"]

    def test_content_hash(self, engine):
        version = engine.commit(OWNER, "hash me", [field("a", "1")])
        expected = hashlib.sha1(f"{OWNER}hash me{T0.isoformat()}".encode()).hexdigest()
        assert version.content_hash == expected
        assert compute_content_hash(OWNER, "hash me", T0) == expected
        assert version.short_hash == expected[:7]

    def test_created_at_never_goes_backwards(self, engine, clock):
        clock.advance(minutes=10)
        v1 = engine.commit(OWNER, "later", [field("a", "1")])
        clock.set(T0)
        v2 = engine.commit(OWNER, "clock skew", [field("a", "2")])
        assert v2.created_at == v1.created_at
        assert engine.get_current(OWNER).id == v2.id
        assert engine.get_state_at(OWNER, v1.created_at).version.id == v2.id

    def test_message_and_owner_are_stripped(self, engine):
        version = engine.commit(f"  {OWNER} ", "  hello  ", [field("a", "1")])
        assert version.owner_id == OWNER
        assert version.message == "hello"


class TestCommitValidation:

    @pytest.mark.parametrize("message", ["", "   ", None])
    def test_empty_message(self, engine, message):
        with pytest.raises(ValidationError):
            engine.commit(OWNER, message, [field("a", "1")])

    def test_empty_owner(self, engine):
        with pytest.raises(ValidationError):
            engine.commit(" ", "msg", [field("a", "1")])

    def test_no_updates(self, engine):
        with pytest.raises(ValidationError):
            engine.commit(OWNER, "msg", [])

    def test_duplicate_field_names(self, engine):
        with pytest.raises(ValidationError) as exc_info:
            engine.commit(OWNER, "msg", [field("a", "1"), field("a", "2")])
        assert exc_info.value.details == {"field": "a"}

    def test_value_does_not_match_type(self, engine):
        with pytest.raises(ValidationError):
            engine.commit(OWNER, "msg", [field("mrr", "lots", "number")])

    def test_unknown_type_tag(self, engine):
        with pytest.raises(ValidationError):
            engine.commit(OWNER, "msg", [field("a", "1", "currency")])

    def test_null_value(self, engine):
        with pytest.raises(ValidationError):
            engine.commit(OWNER, "msg", [field("a", None)])

    def test_non_string_tag(self, engine):
        with pytest.raises(ValidationError):
            engine.commit(OWNER, "msg", [field("a", "1")], tags=[1])

    def test_nothing_written_on_rejection(self, engine, db, clock):
        engine.commit(OWNER, "ok", [field("a", "1")])
        clock.advance(minutes=1)
        with pytest.raises(ValidationError):
            engine.commit(OWNER, "bad", [field("b", "2"), field("c", "x", "boolean")])
        assert db.query(ContextVersion).count() == 1
        assert db.query(ContextChange).count() == 1

    def test_normalize_tags_keeps_first_seen_order(self):
        assert normalize_tags(["b", "a", "b", " a "]) == ["b", "a"]


class TestCommitAtomicity:

    def test_store_failure_leaves_previous_state(self, engine, store, db, clock):
        v1 = engine.commit(OWNER, "ok", [field("a", "1")])
        clock.advance(minutes=1)
        with patch.object(store, "add_changes", side_effect=StoreError("write failed")):
            with pytest.raises(StoreError):
                engine.commit(OWNER, "doomed", [field("a", "2")])
        assert db.query(ContextVersion).count() == 1
        assert db.query(StateField).count() == 1
        assert engine.get_current(OWNER).id == v1.id

    def test_flag_failure_rolls_back_new_rows(self, engine, store, db, clock):
        v1 = engine.commit(OWNER, "ok", [field("a", "1")])
        clock.advance(minutes=1)
        with patch.object(store, "mark_current", side_effect=StoreError("flag failed")):
            with pytest.raises(StoreError):
                engine.commit(OWNER, "doomed", [field("a", "2")])
        assert [v.id for v in db.query(ContextVersion).all()] == [v1.id]
        assert engine.get_current(OWNER).id == v1.id


class TestCurrentVersion:

    def test_no_commits_yet(self, engine):
        with pytest.raises(NoCurrentVersionError) as exc_info:
            engine.get_current(OWNER)
        assert exc_info.value.status_code == 404
        assert engine.get_current_optional(OWNER) is None

    def test_exactly_one_current_after_many_commits(self, engine, db, clock):
        _seed(engine, clock)
        current = db.query(ContextVersion).filter(ContextVersion.is_current.is_(True)).all()
        assert len(current) == 1
        assert engine.get_current(OWNER).message == "Hired"

    def test_current_state(self, engine, clock):
        _, _, v3 = _seed(engine, clock)
        state = engine.get_current_state(OWNER)
        assert state.version.id == v3.id
        assert set(state.fields) == {"icp", "mrr", "team"}

    def test_owners_isolated(self, engine):
        engine.commit("a", "msg", [field("x", "1")])
        engine.commit("b", "msg", [field("y", "1")])
        assert set(engine.get_current_state("a").fields) == {"x"}
        assert set(engine.get_current_state("b").fields) == {"y"}

    def test_two_current_versions_is_a_consistency_error(self, engine, store, clock):
        v1 = engine.commit(OWNER, "one", [field("a", "1")])
        clock.advance(minutes=1)
        v2 = engine.commit(OWNER, "two", [field("a", "2")])
        with patch.object(store, "find_current", return_value=[v1, v2]):
            with pytest.raises(ConsistencyError) as exc_info:
                engine.get_current(OWNER)
            assert exc_info.value.details["version_ids"] == sorted([v1.id, v2.id])
            with pytest.raises(ConsistencyError):
                engine.commit(OWNER, "three", [field("a", "3")])
        assert engine.get_current(OWNER).id == v2.id

    def test_concurrent_commits_from_same_parent(self, engine, store, db, clock):
        parent = engine.commit(OWNER, "base", [field("a", "1"), field("b", "1")])
        clock.advance(minutes=1)
        first = engine.commit(OWNER, "first writer", [field("a", "2")])
        clock.advance(seconds=1)
        # Second writer read the current version before the first one flipped it.
        with patch.object(store, "find_current", return_value=[parent]):
            second = engine.commit(OWNER, "second writer", [field("b", "2")])

        assert first.parent_id == parent.id
        assert second.parent_id == parent.id
        assert engine.get_current(OWNER).id == second.id
        assert _values(engine.get_state(second.id)) == {"a": "1", "b": "2"}
        assert len(engine.get_history(OWNER)) == 3
        assert [c.new_value for c in engine.get_field_history(OWNER, "a")] == ["2", "1"]
        assert db.query(ContextVersion).filter(ContextVersion.is_current.is_(True)).count() == 1


class TestPointReads:

    def test_missing_version(self, engine):
        with pytest.raises(VersionNotFoundError):
            engine.get_version("missing")
        with pytest.raises(VersionNotFoundError):
            engine.get_state("missing")

    def test_version_state(self, engine, clock):
        v1, _, _ = _seed(engine, clock)
        state = engine.get_version_state(v1.id)
        assert state.version.id == v1.id
        assert _values(state.fields) == {"icp": "SMB", "mrr": 1000}


class TestTemporalReads:

    def test_before_first_commit(self, engine, clock):
        _seed(engine, clock)
        with pytest.raises(NoVersionAtTimeError):
            engine.get_state_at(OWNER, T0 - timedelta(seconds=1))

    def test_between_commits(self, engine, clock):
        v1, v2, _ = _seed(engine, clock)
        state = engine.get_state_at(OWNER, T0 + timedelta(minutes=90))
        assert state.version.id == v2.id
        assert _values(state.fields) == {"icp": "SMB", "mrr": 2500}

    def test_exact_creation_instant_is_inclusive(self, engine, clock):
        v1, v2, _ = _seed(engine, clock)
        assert engine.get_state_at(OWNER, v2.created_at).version.id == v2.id

    def test_iso_string_with_offset(self, engine, clock):
        v1, _, _ = _seed(engine, clock)
        assert engine.get_state_at(OWNER, "2024-01-01T14:30:00+02:00").version.id == v1.id

    def test_far_future_is_current(self, engine, clock):
        _, _, v3 = _seed(engine, clock)
        assert engine.get_state_at(OWNER, "2099-01-01T00:00:00Z").version.id == v3.id

    def test_malformed_timestamp(self, engine, clock):
        _seed(engine, clock)
        with pytest.raises(ValidationError):
            engine.get_state_at(OWNER, "last tuesday")

    def test_reconstruction_agrees_with_snapshot(self, engine, clock):
        _seed(engine, clock)
        for minutes in (0, 30, 60, 90, 120, 500):
            at = T0 + timedelta(minutes=minutes)
            assert engine.reconstruct_state_at(OWNER, at) == engine.get_state_at(OWNER, at).fields

    def test_reconstruction_before_history(self, engine, clock):
        _seed(engine, clock)
        with pytest.raises(NoVersionAtTimeError):
            engine.reconstruct_state_at(OWNER, T0 - timedelta(days=1))


class TestHistory:

    def test_newest_first_with_changed_fields(self, engine, clock):
        v1, v2, v3 = _seed(engine, clock)
        history = engine.get_history(OWNER)
        assert [s.version.id for s in history] == [v3.id, v2.id, v1.id]
        assert [s.changed_fields for s in history] == [["team"], ["mrr"], ["icp", "mrr"]]
        assert history[2].change_count == 2

    def test_paging(self, engine, clock):
        v1, v2, _ = _seed(engine, clock)
        assert [s.version.id for s in engine.get_history(OWNER, limit=1, offset=1)] == [v2.id]
        assert [s.version.id for s in engine.get_history(OWNER, limit=5, offset=2)] == [v1.id]

    @pytest.mark.parametrize("limit,offset", [(0, 0), (10_000, 0), (10, -1)])
    def test_bad_paging(self, engine, limit, offset):
        with pytest.raises(ValidationError):
            engine.get_history(OWNER, limit=limit, offset=offset)

    def test_empty_history(self, engine):
        assert engine.get_history(OWNER) == []

    def test_search(self, engine, clock):
        engine.commit(OWNER, "Pivot to enterprise", [field("a", "1")], tags=["strategy"])
        clock.advance(minutes=1)
        engine.commit(OWNER, "Pricing update", [field("a", "2")])
        assert [v.message for v in engine.search_versions(OWNER, "pivot")] == ["Pivot to enterprise"]
        assert [v.message for v in engine.search_versions(OWNER, "strategy")] == ["Pivot to enterprise"]
        with pytest.raises(ValidationError):
            engine.search_versions(OWNER, "  ")

    def test_search_exact_tag_and_literal_query(self, engine, clock):
        engine.commit(OWNER, "Open the Paris office", [field("a", "1")], tags=["café"])
        clock.advance(minutes=1)
        engine.commit(OWNER, "Pricing update", [field("a", "2")])
        assert [v.message for v in engine.search_versions(OWNER, "café")] == ["Open the Paris office"]
        assert engine.search_versions(OWNER, "%") == []
        assert engine.search_versions(OWNER, "_") == []


class TestDiff:

    def test_diff_between_versions(self, engine, clock):
        v1, _, v3 = _seed(engine, clock)
        result = engine.diff(v1.id, v3.id)
        assert [(c.field_name, c.change_type) for c in result.changes] == [
            ("mrr", DiffType.MODIFIED),
            ("team", DiffType.ADDED),
        ]
        assert result.changes[0].old_value == 1000
        assert result.changes[0].new_value == 2500

    def test_reverse_diff_reports_removal(self, engine, clock):
        v1, _, v3 = _seed(engine, clock)
        result = engine.diff(v3.id, v1.id)
        assert [(c.field_name, c.change_type) for c in result.changes] == [
            ("mrr", DiffType.MODIFIED),
            ("team", DiffType.REMOVED),
        ]

    def test_self_diff_is_empty(self, engine, clock):
        v1, _, _ = _seed(engine, clock)
        assert engine.diff(v1.id, v1.id).changes == []

    def test_include_unchanged(self, engine, clock):
        v1, v2, _ = _seed(engine, clock)
        result = engine.diff(v1.id, v2.id, include_unchanged=True)
        assert [(c.field_name, c.change_type) for c in result.changes] == [
            ("icp", DiffType.UNCHANGED),
            ("mrr", DiffType.MODIFIED),
        ]

    def test_missing_side(self, engine, clock):
        v1, _, _ = _seed(engine, clock)
        with pytest.raises(VersionNotFoundError):
            engine.diff(v1.id, "missing")


class TestRollback:

    def test_restores_target_values(self, engine, clock):
        v1, v2, v3 = _seed(engine, clock)
        clock.advance(hours=1)
        restored = engine.rollback(OWNER, v1.id)

        assert restored.parent_id == v3.id
        assert restored.is_current is True
        assert restored.tags == ["rollback"]
        assert restored.author == "system"
        assert restored.message == f"Rollback to {v1.short_hash}: Initial context"
        values = _values(engine.get_state(restored.id))
        assert values["icp"] == "SMB"
        assert values["mrr"] == 1000

    def test_fields_added_after_target_are_kept(self, engine, clock):
        v1, _, _ = _seed(engine, clock)
        clock.advance(hours=1)
        restored = engine.rollback(OWNER, v1.id)
        diff = engine.diff(v1.id, restored.id)
        assert [(c.field_name, c.change_type) for c in diff.changes] == [("team", DiffType.ADDED)]

    def test_second_rollback_to_same_target_changes_nothing(self, engine, clock):
        v1, _, _ = _seed(engine, clock)
        clock.advance(hours=1)
        first = engine.rollback(OWNER, v1.id)
        clock.advance(hours=1)
        second = engine.rollback(OWNER, v1.id)
        assert second.parent_id == first.id
        assert engine.diff(first.id, second.id).changes == []

    def test_reason_overrides_message(self, engine, clock):
        v1, _, _ = _seed(engine, clock)
        restored = engine.rollback(OWNER, v1.id, reason="bad data import")
        assert restored.message == f"Rollback to {v1.short_hash}: bad data import"

    def test_history_untouched_and_every_target_field_logged(self, engine, db, clock):
        v1, v2, v3 = _seed(engine, clock)
        clock.advance(hours=1)
        restored = engine.rollback(OWNER, v1.id)
        assert _values(engine.get_state(v2.id)) == {"icp": "SMB", "mrr": 2500}
        assert [s.version.id for s in engine.get_history(OWNER)] == [restored.id, v3.id, v2.id, v1.id]
        changes = db.query(ContextChange).filter(ContextChange.version_id == restored.id).all()
        assert sorted(c.field_name for c in changes) == ["icp", "mrr"]

    def test_preserves_type_and_source(self, engine, clock):
        v1 = engine.commit(OWNER, "crm", [field("deals", 3, "number", "api_crm")])
        clock.advance(minutes=1)
        engine.commit(OWNER, "manual", [field("deals", 4, "number")])
        clock.advance(minutes=1)
        restored = engine.rollback(OWNER, v1.id)
        deals = engine.get_state(restored.id)["deals"]
        assert deals.field_value == 3
        assert deals.source == FieldSource.API_CRM

    def test_unknown_target(self, engine, clock):
        _seed(engine, clock)
        with pytest.raises(VersionNotFoundError):
            engine.rollback(OWNER, "missing")

    def test_target_of_another_owner(self, engine):
        other = engine.commit("someone-else", "theirs", [field("a", "1")])
        engine.commit(OWNER, "mine", [field("a", "2")])
        with pytest.raises(VersionNotFoundError):
            engine.rollback(OWNER, other.id)


class TestFieldHistory:

    def test_newest_first_and_only_actual_writes(self, engine, clock):
        _seed(engine, clock)
        mrr = engine.get_field_history(OWNER, "mrr")
        assert [(c.change_type, c.old_value, c.new_value) for c in mrr] == [
            ("update", 1000, 2500),
            ("create", None, 1000),
        ]
        assert len(engine.get_field_history(OWNER, "icp")) == 1

    def test_range(self, engine, clock):
        _seed(engine, clock)
        changes = engine.get_field_history(OWNER, "mrr", start=T0 + timedelta(minutes=30))
        assert [c.new_value for c in changes] == [2500]
        changes = engine.get_field_history(OWNER, "mrr", end="2024-01-01T12:30:00Z")
        assert [c.new_value for c in changes] == [1000]

    def test_start_after_end(self, engine):
        with pytest.raises(ValidationError):
            engine.get_field_history(OWNER, "mrr", start="2024-02-01T00:00:00Z", end="2024-01-01T00:00:00Z")

    def test_unknown_field_is_empty(self, engine, clock):
        _seed(engine, clock)
        assert engine.get_field_history(OWNER, "nothing") == []


class TestTags:

    def test_replace_tags_without_change_rows(self, engine, db, clock):
        v1, _, _ = _seed(engine, clock)
        before = db.query(ContextChange).count()
        tagged = engine.tag(v1.id, ["milestone", "milestone", " seed "])
        assert tagged.tags == ["milestone", "seed"]
        assert engine.get_version(v1.id).tags == ["milestone", "seed"]
        assert db.query(ContextChange).count() == before

    def test_missing_version(self, engine):
        with pytest.raises(VersionNotFoundError):
            engine.tag("missing", ["x"])


class TestIntegrity:

    def test_clean_history(self, engine, clock):
        _, _, v3 = _seed(engine, clock)
        report = engine.verify_integrity(OWNER)
        assert report.ok
        assert report.version_count == 3
        assert report.current_version_ids == [v3.id]
        assert report.gaps == []

    def test_detects_dropped_field(self, engine, db, clock):
        v1, v2, _ = _seed(engine, clock)
        db.query(StateField).filter(StateField.version_id == v2.id, StateField.field_name == "icp").delete()
        db.commit()
        report = engine.verify_integrity(OWNER)
        assert not report.ok
        assert [(g.version_id, g.missing_fields) for g in report.gaps] == [(v2.id, ("icp",))]

    def test_empty_owner_history(self, engine):
        report = engine.verify_integrity(OWNER)
        assert report.ok
        assert report.version_count == 0
