"""Tests for src.engine.correlator — mother/child grouping and ungrouping."""

from __future__ import annotations

import pytest

from src.contracts.enums import CorrelationKey
from src.contracts.operation import EventUpdate
from src.engine.correlator import (
    REASON_ALREADY_GROUPED,
    REASON_TOO_FEW,
    CorrelationEngine,
    can_group_events,
    cluster_by_window,
    elect_mother,
)
from src.engine.tree import build_event_tree
from src.shared.config_loader import EngineSettings
from src.shared.errors import ConflictError, NotFoundError, StoreError, ValidationError
from src.stores.memory import InMemoryEventStore
from tests.conftest import fixed_clock, make_event, ts_offset


def _engine(events, window_ms: int = 5000, key=CorrelationKey.SUBSTATION):
    store = InMemoryEventStore(events)
    settings = EngineSettings(correlation_window_ms=window_ms, correlation_key=key)
    return store, CorrelationEngine(store, settings, clock=fixed_clock())


# ═══════════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════════


class TestCanGroupEvents:
    def test_empty_rejected(self):
        check = can_group_events([])
        assert check.can_group is False
        assert check.reason == REASON_TOO_FEW

    def test_single_rejected(self):
        assert can_group_events([make_event()]).reason == REASON_TOO_FEW

    def test_child_rejected(self):
        events = [make_event(id="a"), make_event(id="b", parent_event_id="x")]
        check = can_group_events(events)
        assert check.can_group is False
        assert check.reason == REASON_ALREADY_GROUPED

    def test_mother_rejected(self):
        events = [make_event(id="a", is_mother_event=True), make_event(id="b")]
        assert can_group_events(events).reason == REASON_ALREADY_GROUPED

    def test_count_checked_before_membership(self):
        check = can_group_events([make_event(is_mother_event=True)])
        assert check.reason == REASON_TOO_FEW

    def test_two_standalone_ok(self):
        check = can_group_events([make_event(id="a"), make_event(id="b")])
        assert check.can_group is True
        assert check.reason is None


class TestElectMother:
    def test_earliest_wins(self):
        events = [
            make_event(id="late", timestamp=ts_offset(seconds=60)),
            make_event(id="early", timestamp=ts_offset(seconds=0)),
        ]
        assert elect_mother(events).id == "early"

    def test_tie_broken_by_lowest_id(self):
        events = [make_event(id="b"), make_event(id="a"), make_event(id="c")]
        assert elect_mother(events).id == "a"

    def test_offsets_compared_as_instants(self):
        events = [
            make_event(id="utc", timestamp="2026-03-02T10:00:00Z"),
            make_event(id="plus2", timestamp="2026-03-02T11:30:00+02:00"),
        ]
        assert elect_mother(events).id == "plus2"

    def test_naive_timestamp_taken_as_utc(self):
        events = [
            make_event(id="zulu", timestamp="2026-03-02T10:00:01Z"),
            make_event(id="naive", timestamp="2026-03-02T10:00:00"),
        ]
        assert elect_mother(events).id == "naive"


class TestClusterByWindow:
    def test_window_anchored_at_first_event(self):
        events = [
            make_event(id="a", timestamp=ts_offset(seconds=0)),
            make_event(id="b", timestamp=ts_offset(seconds=4)),
            make_event(id="c", timestamp=ts_offset(seconds=8)),  # 8s from a, not chained via b
        ]
        clusters = cluster_by_window(events, 5000)
        assert [[e.id for e in c] for c in clusters] == [["a", "b"], ["c"]]

    def test_boundary_inclusive(self):
        events = [
            make_event(id="a", timestamp=ts_offset(seconds=0)),
            make_event(id="b", timestamp=ts_offset(seconds=5)),
        ]
        assert len(cluster_by_window(events, 5000)) == 1

    def test_empty(self):
        assert cluster_by_window([], 5000) == []


# ═══════════════════════════════════════════════════════════════════════════
#  Manual grouping
# ═══════════════════════════════════════════════════════════════════════════


class TestManualGrouping:
    def test_groups_under_earliest(self):
        events = [
            make_event(id="b", timestamp=ts_offset(seconds=30)),
            make_event(id="a", timestamp=ts_offset(seconds=0)),
            make_event(id="c", timestamp=ts_offset(seconds=60)),
        ]
        store, engine = _engine(events)
        res = engine.perform_manual_grouping(["b", "a", "c"])

        assert res.mother_event_id == "a"
        assert res.child_event_ids == ["b", "c"]
        assert res.grouping_type == "manual"
        assert res.grouped_at == "2026-03-02T12:00:00Z"

        after = {e.id: e for e in store.list_events()}
        assert [e.id for e in after.values() if e.is_mother_event] == ["a"]
        for cid in ("b", "c"):
            assert after[cid].parent_event_id == "a"
            assert after[cid].is_child_event is True
            assert after[cid].grouping_type == "manual"
            assert after[cid].grouped_at == "2026-03-02T12:00:00Z"
        assert after["a"].parent_event_id is None
        assert after["a"].grouping_type == "manual"
        assert after["a"].grouped_at == "2026-03-02T12:00:00Z"

    def test_mixed_naive_and_zulu_timestamps(self):
        events = [
            make_event(id="a", timestamp="2026-03-02T10:00:05Z"),
            make_event(id="b", timestamp="2026-03-02T10:00:00"),
            make_event(id="c", timestamp="2026-03-02T12:00:10+02:00"),
        ]
        _, engine = _engine(events)
        res = engine.perform_manual_grouping(["a", "b", "c"])
        assert res.mother_event_id == "b"
        assert res.child_event_ids == ["a", "c"]

    def test_unparseable_timestamp_raises_validation(self):
        events = [make_event(id="a"), make_event(id="b", timestamp="yesterday-ish")]
        store, engine = _engine(events)
        with pytest.raises(ValidationError, match="unparseable timestamp.*b"):
            engine.perform_manual_grouping(["a", "b"])
        assert all(e.is_standalone for e in store.list_events())
        assert store.operations() == []

    def test_deterministic_across_retries(self):
        def run():
            events = [
                make_event(id="z", timestamp=ts_offset(seconds=0)),
                make_event(id="y", timestamp=ts_offset(seconds=0)),
                make_event(id="x", timestamp=ts_offset(seconds=1)),
            ]
            _, engine = _engine(events)
            return engine.perform_manual_grouping(["x", "z", "y"]).mother_event_id

        assert run() == run() == "y"

    def test_too_few_raises_validation(self):
        _, engine = _engine([make_event(id="a")])
        with pytest.raises(ValidationError, match="at least two"):
            engine.perform_manual_grouping(["a"])

    def test_duplicate_ids_count_once(self):
        _, engine = _engine([make_event(id="a"), make_event(id="b")])
        with pytest.raises(ValidationError):
            engine.perform_manual_grouping(["a", "a"])

    def test_empty_list_raises_validation(self):
        _, engine = _engine([make_event(id="a")])
        with pytest.raises(ValidationError):
            engine.perform_manual_grouping([])

    def test_unknown_id_raises_not_found(self):
        _, engine = _engine([make_event(id="a")])
        with pytest.raises(NotFoundError) as exc_info:
            engine.perform_manual_grouping(["a", "nope"])
        assert exc_info.value.ids == ["nope"]

    def test_already_grouped_rejected_and_untouched(self, grouped_events):
        store = InMemoryEventStore(grouped_events)
        engine = CorrelationEngine(store)
        with pytest.raises(ValidationError, match="ungroup first"):
            engine.perform_manual_grouping(["M", "S"])
        assert store.get_event("S").parent_event_id is None

    def test_operation_recorded(self):
        store, engine = _engine([make_event(id="a"), make_event(id="b")])
        engine.perform_manual_grouping(["a", "b"], performed_by="op-7")
        ops = store.operations()
        assert len(ops) == 1
        assert ops[0].operation_type == "group"
        assert ops[0].performed_by == "op-7"
        assert ops[0].mother_event_id == "a"


# ═══════════════════════════════════════════════════════════════════════════
#  Automatic grouping
# ═══════════════════════════════════════════════════════════════════════════


class TestAutomaticGrouping:
    def test_example_two_events_same_substation(self):
        events = [
            make_event(id="a", timestamp=ts_offset(seconds=0), substation_id="S1", duration_ms=50),
            make_event(id="b", timestamp=ts_offset(seconds=2), substation_id="S1", duration_ms=80),
        ]
        store, engine = _engine(events, window_ms=5000)
        results = engine.perform_automatic_grouping(events)

        assert len(results) == 1
        assert results[0].mother_event_id == "a"
        assert results[0].child_event_ids == ["b"]
        assert results[0].grouping_type == "automatic"
        assert store.get_event("b").grouping_type == "automatic"
        mother = store.get_event("a")
        assert mother.grouping_type == "automatic"
        assert mother.grouped_at == "2026-03-02T12:00:00Z"

    def test_mixed_naive_and_zulu_timestamps(self):
        events = [
            make_event(id="a", timestamp="2026-03-02T10:00:00"),
            make_event(id="b", timestamp="2026-03-02T10:00:02Z"),
            make_event(id="c", timestamp="2026-03-02T10:00:03"),
        ]
        _, engine = _engine(events, window_ms=5000)
        results = engine.perform_automatic_grouping()
        assert [(r.mother_event_id, r.child_event_ids) for r in results] == [("a", ["b", "c"])]

    def test_unparseable_timestamp_skipped(self, caplog):
        events = [
            make_event(id="a", timestamp=ts_offset(seconds=0)),
            make_event(id="b", timestamp=ts_offset(seconds=1)),
            make_event(id="bad", timestamp="not-a-time"),
        ]
        store, engine = _engine(events)
        with caplog.at_level("WARNING"):
            results = engine.perform_automatic_grouping()
        assert [r.child_event_ids for r in results] == [["b"]]
        assert store.get_event("bad").is_standalone
        assert "unparseable timestamp" in caplog.text

    def test_different_substations_not_grouped(self):
        events = [
            make_event(id="a", substation_id="S1"),
            make_event(id="b", substation_id="S2", timestamp=ts_offset(seconds=1)),
        ]
        _, engine = _engine(events)
        assert engine.perform_automatic_grouping(events) == []

    def test_outside_window_not_grouped(self):
        events = [
            make_event(id="a", timestamp=ts_offset(seconds=0)),
            make_event(id="b", timestamp=ts_offset(seconds=6)),
        ]
        _, engine = _engine(events, window_ms=5000)
        assert engine.perform_automatic_grouping(events) == []

    def test_ten_minute_window_mixed_substations(self):
        events = [
            make_event(id="1", substation_id="sub1", timestamp="2024-12-01T10:00:00Z"),
            make_event(id="2", substation_id="sub1", timestamp="2024-12-01T10:02:00Z"),
            make_event(id="3", substation_id="sub2", timestamp="2024-12-01T10:01:30Z"),
            make_event(id="4", substation_id="sub1", timestamp="2024-12-01T10:15:00Z"),
        ]
        _, engine = _engine(events, window_ms=600_000)
        results = engine.perform_automatic_grouping(events)
        assert [(r.mother_event_id, r.child_event_ids) for r in results] == [("1", ["2"])]

    def test_multiple_clusters_in_one_partition(self):
        events = [
            make_event(id="a", timestamp=ts_offset(seconds=0)),
            make_event(id="b", timestamp=ts_offset(seconds=3)),
            make_event(id="c", timestamp=ts_offset(seconds=100)),
            make_event(id="d", timestamp=ts_offset(seconds=101)),
            make_event(id="e", timestamp=ts_offset(seconds=500)),
        ]
        store, engine = _engine(events)
        results = engine.perform_automatic_grouping(events)
        assert [(r.mother_event_id, r.child_event_ids) for r in results] == [
            ("a", ["b"]),
            ("c", ["d"]),
        ]
        assert store.get_event("e").is_standalone

    def test_substation_circuit_key(self):
        events = [
            make_event(id="a", circuit_id="C1"),
            make_event(id="b", circuit_id="C2", timestamp=ts_offset(seconds=1)),
        ]
        _, by_sub = _engine(events, key=CorrelationKey.SUBSTATION)
        assert len(by_sub.perform_automatic_grouping(events)) == 1

        _, by_circuit = _engine(events, key=CorrelationKey.SUBSTATION_CIRCUIT)
        assert by_circuit.perform_automatic_grouping(events) == []

    def test_already_grouped_events_excluded(self, grouped_events):
        store = InMemoryEventStore(grouped_events)
        engine = CorrelationEngine(store, EngineSettings(correlation_window_ms=600_000))
        assert engine.perform_automatic_grouping(grouped_events) == []

    def test_idempotent_on_same_snapshot(self):
        events = [
            make_event(id="a", timestamp=ts_offset(seconds=0)),
            make_event(id="b", timestamp=ts_offset(seconds=1)),
        ]
        store, engine = _engine(events)
        snapshot = store.list_events()
        assert len(engine.perform_automatic_grouping(snapshot)) == 1
        assert engine.perform_automatic_grouping(snapshot) == []
        assert len(store.operations()) == 1

    def test_defaults_to_store_contents(self):
        events = [
            make_event(id="a", timestamp=ts_offset(seconds=0)),
            make_event(id="b", timestamp=ts_offset(seconds=1)),
        ]
        _, engine = _engine(events)
        assert len(engine.perform_automatic_grouping()) == 1

    def test_all_groups_committed_in_single_batch(self):
        events = [
            make_event(id="a", substation_id="S1"),
            make_event(id="b", substation_id="S1", timestamp=ts_offset(seconds=1)),
            make_event(id="c", substation_id="S2"),
            make_event(id="d", substation_id="S2", timestamp=ts_offset(seconds=1)),
        ]

        class FailingStore(InMemoryEventStore):
            def _commit(self, staged, operation):
                raise StoreError("disk full")

        store = FailingStore(events)
        engine = CorrelationEngine(store, EngineSettings(correlation_window_ms=5000))
        with pytest.raises(StoreError):
            engine.perform_automatic_grouping()
        assert all(e.is_standalone for e in store.list_events())


# ═══════════════════════════════════════════════════════════════════════════
#  Ungrouping
# ═══════════════════════════════════════════════════════════════════════════


class TestUngroupEvents:
    def test_dissolves_whole_group(self, event_store):
        engine = CorrelationEngine(event_store)
        assert engine.ungroup_events("M") is True

        forest = build_event_tree(event_store.list_events())
        assert {n.id for n in forest} == {"M", "C1", "C2", "S"}
        for ev in event_store.list_events():
            assert ev.parent_event_id is None
            assert ev.is_mother_event is False
            assert ev.is_child_event is False
            assert ev.grouping_type == "none"
            assert ev.grouped_at is None

    def test_unknown_mother_returns_false(self, event_store):
        assert CorrelationEngine(event_store).ungroup_events("nope") is False

    def test_childless_event_returns_false(self, event_store):
        before = event_store.get_event("S")
        assert CorrelationEngine(event_store).ungroup_events("S") is False
        assert event_store.get_event("S") == before

    def test_round_trip_group_then_ungroup(self):
        events = [make_event(id=str(i), timestamp=ts_offset(seconds=i)) for i in range(4)]
        store, engine = _engine(events)
        res = engine.perform_manual_grouping(["0", "1", "2", "3"])
        assert engine.ungroup_events(res.mother_event_id) is True
        assert all(e.is_standalone for e in store.list_events())


class TestUngroupSpecificEvents:
    def test_detaches_only_listed(self, event_store):
        engine = CorrelationEngine(event_store)
        assert engine.ungroup_specific_events(["C1"]) is True

        assert event_store.get_event("C1").parent_event_id is None
        assert event_store.get_event("C1").is_child_event is False
        assert event_store.get_event("C2").parent_event_id == "M"
        assert event_store.get_event("M").is_mother_event is True

    def test_last_child_demotes_mother(self, event_store):
        engine = CorrelationEngine(event_store)
        engine.ungroup_specific_events(["C1"])
        assert event_store.get_event("M").grouping_type == "manual"
        engine.ungroup_specific_events(["C2"])
        mother = event_store.get_event("M")
        assert mother.is_mother_event is False
        assert mother.grouping_type == "none"
        assert mother.grouped_at is None
        assert mother.is_standalone

    def test_all_children_at_once_demotes_mother(self, event_store):
        CorrelationEngine(event_store).ungroup_specific_events(["C1", "C2"])
        assert event_store.get_event("M").is_mother_event is False

    def test_non_child_rejected_atomically(self, event_store):
        engine = CorrelationEngine(event_store)
        with pytest.raises(ValidationError, match="not part of a group"):
            engine.ungroup_specific_events(["C1", "S"])
        assert event_store.get_event("C1").parent_event_id == "M"

    def test_unknown_id_rejected_atomically(self, event_store):
        engine = CorrelationEngine(event_store)
        with pytest.raises(NotFoundError):
            engine.ungroup_specific_events(["C1", "ghost"])
        assert event_store.get_event("C1").parent_event_id == "M"

    def test_empty_list_rejected(self, event_store):
        with pytest.raises(ValidationError):
            CorrelationEngine(event_store).ungroup_specific_events([])


# ═══════════════════════════════════════════════════════════════════════════
#  Adding children / statistics
# ═══════════════════════════════════════════════════════════════════════════


class TestAddChildrenToMother:
    def test_attaches_standalone_event(self, event_store):
        engine = CorrelationEngine(event_store, clock=fixed_clock())
        res = engine.add_children_to_mother("M", ["S"], performed_by="op-2")

        assert res.mother_event_id == "M"
        assert res.child_event_ids == ["S"]
        assert res.grouping_type == "manual"
        assert res.grouped_at == "2026-03-02T12:00:00Z"

        s = event_store.get_event("S")
        assert s.parent_event_id == "M"
        assert s.is_child_event is True
        assert s.grouping_type == "manual"
        assert s.grouped_at == "2026-03-02T12:00:00Z"

        forest = build_event_tree(event_store.list_events())
        assert [n.id for n in forest] == ["M"]
        assert [c.id for c in forest[0].children] == ["C1", "C2", "S"]

        op = event_store.operations()[-1]
        assert op.operation_type == "add_children"
        assert op.mother_event_id == "M"
        assert op.performed_by == "op-2"

    def test_children_inherit_automatic_type(self):
        events = [
            make_event(id="a", timestamp=ts_offset(seconds=0)),
            make_event(id="b", timestamp=ts_offset(seconds=1)),
            make_event(id="late", timestamp=ts_offset(seconds=3600)),
        ]
        store, engine = _engine(events)
        engine.perform_automatic_grouping()
        res = engine.add_children_to_mother("a", ["late"])
        assert res.grouping_type == "automatic"
        assert store.get_event("late").grouping_type == "automatic"

    def test_target_not_a_mother(self, event_store):
        engine = CorrelationEngine(event_store)
        with pytest.raises(ValidationError, match="not a mother"):
            engine.add_children_to_mother("S", ["C1"])

    def test_unknown_mother(self, event_store):
        with pytest.raises(NotFoundError):
            CorrelationEngine(event_store).add_children_to_mother("ghost", ["S"])

    def test_unknown_child(self, event_store):
        with pytest.raises(NotFoundError) as exc_info:
            CorrelationEngine(event_store).add_children_to_mother("M", ["S", "ghost"])
        assert exc_info.value.ids == ["ghost"]
        assert event_store.get_event("S").is_standalone

    def test_grouped_child_rejected(self, event_store):
        engine = CorrelationEngine(event_store)
        with pytest.raises(ValidationError, match="ungroup first"):
            engine.add_children_to_mother("M", ["S", "C1"])
        with pytest.raises(ValidationError, match="ungroup first"):
            engine.add_children_to_mother("M", ["M"])
        assert event_store.get_event("S").is_standalone

    def test_other_substation_rejected(self, grouped_events):
        store = InMemoryEventStore([*grouped_events, make_event(id="X", substation_id="SS-99")])
        engine = CorrelationEngine(store)
        with pytest.raises(ValidationError, match="X"):
            engine.add_children_to_mother("M", ["S", "X"])
        assert store.get_event("S").is_standalone
        assert store.get_event("X").is_standalone

    def test_empty_list_rejected(self, event_store):
        with pytest.raises(ValidationError):
            CorrelationEngine(event_store).add_children_to_mother("M", [])


class TestGroupingStatistics:
    def test_fixture_counts(self, event_store):
        stats = CorrelationEngine(event_store).grouping_statistics()
        assert stats.total_groups == 1
        assert stats.manual_groups == 1
        assert stats.automatic_groups == 0
        assert stats.total_grouped_events == 3

    def test_manual_and_automatic(self):
        events = [
            make_event(id="a", substation_id="S1"),
            make_event(id="b", substation_id="S1", timestamp=ts_offset(seconds=1)),
            make_event(id="c", substation_id="S2"),
            make_event(id="d", substation_id="S2", timestamp=ts_offset(seconds=1)),
            make_event(id="e", substation_id="S3"),
        ]
        _, engine = _engine(events)
        engine.perform_manual_grouping(["a", "b"])
        engine.perform_automatic_grouping()
        stats = engine.grouping_statistics()
        assert (stats.total_groups, stats.manual_groups, stats.automatic_groups) == (2, 1, 1)
        assert stats.total_grouped_events == 4

    def test_empty_store(self):
        stats = CorrelationEngine(InMemoryEventStore()).grouping_statistics()
        assert stats.total_groups == 0
        assert stats.total_grouped_events == 0


# ═══════════════════════════════════════════════════════════════════════════
#  Concurrent modification
# ═══════════════════════════════════════════════════════════════════════════


class InterleavedStore(InMemoryEventStore):
    """Applies *interleave* right before the next batch, as a concurrent writer would."""

    def __init__(self, events, interleave):
        super().__init__(events)
        self._interleave = list(interleave)

    def batch_update_events(self, updates, operation=None):
        if self._interleave:
            pending, self._interleave = self._interleave, []
            super().batch_update_events(pending)
        super().batch_update_events(updates, operation)


class TestConflicts:
    def test_manual_grouping_conflict(self):
        store = InterleavedStore(
            [make_event(id="a"), make_event(id="b", timestamp=ts_offset(seconds=1))],
            [EventUpdate("b", {"is_mother_event": True})],
        )
        engine = CorrelationEngine(store, clock=fixed_clock())
        with pytest.raises(ConflictError):
            engine.perform_manual_grouping(["a", "b"])
        assert store.get_event("a").is_standalone
        assert store.get_event("a").grouping_type == "none"
        assert store.operations() == []

    def test_ungroup_specific_conflict(self, grouped_events):
        store = InterleavedStore(
            grouped_events,
            [EventUpdate("C1", {"parent_event_id": None, "is_child_event": False})],
        )
        engine = CorrelationEngine(store)
        with pytest.raises(ConflictError):
            engine.ungroup_specific_events(["C1", "C2"])
        assert store.get_event("C2").parent_event_id == "M"
        assert store.get_event("M").is_mother_event is True
        assert store.operations() == []

    def test_ungroup_whole_group_conflict(self, grouped_events):
        store = InterleavedStore(grouped_events, [EventUpdate("C1", {"parent_event_id": "S"})])
        engine = CorrelationEngine(store)
        with pytest.raises(ConflictError):
            engine.ungroup_events("M")
        assert store.get_event("C2").parent_event_id == "M"
        assert store.get_event("M").grouping_type == "manual"

    def test_add_children_conflict(self, grouped_events):
        store = InterleavedStore(grouped_events, [EventUpdate("M", {"is_mother_event": False})])
        engine = CorrelationEngine(store)
        with pytest.raises(ConflictError):
            engine.add_children_to_mother("M", ["S"])
        assert store.get_event("S").is_standalone
        assert store.operations() == []

    def test_stale_expectation_raises_conflict(self, event_store):
        with pytest.raises(ConflictError):
            event_store.batch_update_events(
                [
                    EventUpdate("S", {"is_mother_event": True}, expect={"is_mother_event": False}),
                    EventUpdate("C1", {"parent_event_id": "S"}, expect={"parent_event_id": None}),
                ]
            )
        assert event_store.get_event("S").is_mother_event is False
        assert event_store.get_event("C1").parent_event_id == "M"
