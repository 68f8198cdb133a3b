"""
Tests for hexagons/processor.py: two-phase processing, subdivision and retries.

The search client is a scripted fake (see conftest.py); cells are real H3
ids around San Francisco so coverage and splitting run for real.
"""

import h3
import pytest

from backend.database import HexgridStore
from conftest import FakeSearchClient, run
from hexagons.processor import HexagonProcessor, ProcessorState
from hexagons.runs import RunRegistry
from hexagons.status import CellStatus, HexagonProcessingStatus
from yelp.quota_manager import QuotaManager


# ---------------------------------------------------------------------------
# Phase 1
# ---------------------------------------------------------------------------


def test_normal_cell_is_fetched(make_processor, cell_b):
    processor = make_processor(FakeSearchClient(counts={cell_b: 50}))

    result = run(processor.process_hexagon_with_coverage(cell_b))

    assert result.status is CellStatus.FETCHED
    assert result.total_businesses == 50
    assert result.resolution == 7
    assert result.search_points_count == 7
    assert result.needs_subdivision is False
    assert processor.get_hexagon_status(cell_b) is result


def test_dense_cell_is_split_and_children_queued(make_processor, cell_a, cell_b):
    client = FakeSearchClient(counts={cell_a: 300, cell_b: 50})
    processor = make_processor(client)

    run(processor.process_hexagon_with_coverage(cell_a))
    run(processor.process_hexagon_with_coverage(cell_b))

    parent = processor.get_hexagon_status(cell_a)
    children = sorted(h3.cell_to_children(cell_a, 8))
    assert parent.status is CellStatus.SPLIT
    assert parent.needs_subdivision is True
    assert parent.child_h3_ids == children

    stats = processor.get_processing_stats()
    assert stats["subdivisionQueue"] == len(children)
    assert stats["parentChildRelationships"] == 1
    assert processor.get_subdivision_queue_status()["queuedCount"] == len(children)
    for child in processor.get_child_hexagons(cell_a):
        assert child.status is CellStatus.QUEUED
        assert child.parent_h3_id == cell_a
        assert processor.get_parent_hexagon(child.h3_id) is parent


def test_failed_cell_is_recorded_not_raised(make_processor, cell_a):
    processor = make_processor(FakeSearchClient(failures={cell_a: -1}))

    result = run(processor.process_hexagon_with_coverage(cell_a))

    assert result.status is CellStatus.FAILED
    assert "500" in result.error
    assert result.total_businesses is None
    assert processor.get_processing_stats()["failed"] == 1


def test_invalid_cell_fails_without_searching(make_processor):
    client = FakeSearchClient()
    processor = make_processor(client)

    result = run(processor.process_hexagon_with_coverage("not-a-cell"))

    assert result.status is CellStatus.FAILED
    assert client.calls == []


def test_processed_cells_are_not_searched_again(make_processor, cell_a, cell_b):
    client = FakeSearchClient(failures={cell_b: -1})
    processor = make_processor(client)

    run(processor.process_two_phase_algorithm([cell_b]))
    run(processor.process_two_phase_algorithm([cell_b]))

    assert client.calls == [cell_b]
    assert processor.get_hexagon_status(cell_b).status is CellStatus.FAILED


def test_run_counters_track_calls(make_processor, cell_a, cell_b):
    processor = make_processor(FakeSearchClient(counts={cell_a: 10, cell_b: 20}, failures={cell_b: -1}))
    progress = RunRegistry().create(2, 21)

    run(processor.process_two_phase_algorithm([cell_a, cell_b], run=progress))

    assert progress.phase1_processed == 2
    assert progress.processed_hexagons == 2
    assert progress.actual_api_calls == 14
    assert progress.tiles_fetched == 1
    assert progress.last_restaurant_count == 10


# ---------------------------------------------------------------------------
# Phase 2
# ---------------------------------------------------------------------------


def test_end_to_end_dense_and_normal(make_processor, cell_a, cell_b):
    processor = make_processor(FakeSearchClient(counts={cell_a: 300, cell_b: 50}))
    progress = RunRegistry().create(2, 21)

    result = run(processor.process_unified_pipeline([cell_a, cell_b], run=progress))

    children = processor.get_child_hexagons(cell_a)
    assert len(children) == 7
    assert all(c.status is CellStatus.FETCHED for c in children)
    assert processor.get_hexagon_status(cell_b).status is CellStatus.FETCHED
    assert processor.get_hexagon_status(cell_b).total_businesses == 50

    assert result.summary["totalHexagons"] == 2 + 7
    assert result.summary["subdivisionCount"] == 7
    assert result.summary["resolutionCounts"] == {7: 2, 8: 7}
    assert processor.get_processing_stats()["split"] == 1
    assert progress.phase2_total == 7
    assert progress.processed_hexagons == 9
    assert progress.total_hexagons == 9

    two_phase_stats = run(processor.process_two_phase_algorithm([])).final_stats
    assert two_phase_stats["totalProcessed"] == 0


def test_final_stats_count_phase_two(make_processor, cell_a, cell_b):
    processor = make_processor(FakeSearchClient(counts={cell_a: 300, cell_b: 50}))

    result = run(processor.process_two_phase_algorithm([cell_a, cell_b]))

    assert result.final_stats["totalProcessed"] == 2 + 7
    assert result.final_stats["totalSplit"] == 1
    # children default to 10 each; the split parent is reported through them
    assert result.final_stats["totalBusinesses"] == 7 * 10 + 50
    assert result.final_stats["coverageQuality"] == "excellent"


def test_dense_child_is_not_split_again(make_processor, cell_a):
    child = sorted(h3.cell_to_children(cell_a, 8))[0]
    processor = make_processor(FakeSearchClient(counts={cell_a: 300, child: 500}))

    run(processor.process_two_phase_algorithm([cell_a]))

    record = processor.get_hexagon_status(child)
    assert record.status is CellStatus.DENSE
    assert record.needs_subdivision is True
    assert processor.get_child_hexagons(child) == []
    assert processor.get_processing_stats()["parentChildRelationships"] == 1


@pytest.mark.parametrize("child_first", [True, False])
def test_child_in_same_batch_as_parent_is_counted_once(make_processor, cell_a, child_first):
    child = sorted(h3.cell_to_children(cell_a, 8))[0]
    client = FakeSearchClient(counts={cell_a: 300, child: 40})
    processor = make_processor(client)
    batch = [child, cell_a] if child_first else [cell_a, child]

    result = run(processor.process_two_phase_algorithm(batch))

    record = processor.get_hexagon_status(child)
    assert record.status is CellStatus.FETCHED
    assert record.parent_h3_id == cell_a
    assert processor.get_parent_hexagon(child).h3_id == cell_a
    assert client.calls.count(child) == 1
    assert len(result.phase2_results) == 6

    # the six other children default to 10 each
    assert result.final_stats["totalBusinesses"] == 40 + 6 * 10
    merged = processor.get_merged_results()
    assert [m["h3Id"] for m in merged] == [cell_a]
    assert merged[0]["totalBusinesses"] == 100


def test_subdivision_denied_when_quota_is_short(make_processor, cell_a):
    quota = QuotaManager(daily_limit=50)
    client = FakeSearchClient(counts={cell_a: 300})
    processor = make_processor(client, quota=quota)

    result = run(processor.process_two_phase_algorithm([cell_a]))

    assert result.phase2_results == []
    assert client.calls == [cell_a]
    assert processor.get_subdivision_queue_status()["queuedCount"] == 7


def test_subdivision_batch_cap(make_processor):
    processor = make_processor()

    assert processor.check_subdivision_quota(100).can_process
    denied = processor.check_subdivision_quota(101)
    assert not denied.can_process
    assert any("smaller batches" in r for r in denied.recommendations)


def test_subdivision_uses_higher_overlap(make_processor):
    assert make_processor().check_subdivision_quota(7).estimated_calls == 98


def test_per_cell_check_leaves_cells_queued(make_processor, cell_a):
    # each search burns 30 units: 110 left after the parent admits the batch of 98,
    # then children run while at least 11 units remain
    quota = QuotaManager(daily_limit=140)
    client = FakeSearchClient(counts={cell_a: 300}, quota_manager=quota, calls_per_search=30)
    processor = make_processor(client, quota=quota)

    result = run(processor.process_two_phase_algorithm([cell_a]))

    queued = [c for c in processor.get_child_hexagons(cell_a) if c.status is CellStatus.QUEUED]
    assert len(result.phase2_results) == 4
    assert len(queued) == 3
    assert processor.get_subdivision_queue_status()["queuedCount"] == 3


def test_handle_dense_hexagon_requires_processing_record(make_processor, cell_a):
    processor = make_processor()

    with pytest.raises(ValueError):
        processor.handle_dense_hexagon(cell_a)


# ---------------------------------------------------------------------------
# Aggregation and merged results
# ---------------------------------------------------------------------------


def _state_with_children(statuses_and_counts):
    state = ProcessorState()
    parent = HexagonProcessingStatus(
        h3_id="parent", resolution=7, status=CellStatus.SPLIT, total_businesses=300, needs_subdivision=True
    )
    child_ids = [f"child-{i}" for i in range(len(statuses_and_counts))]
    parent.child_h3_ids = child_ids
    state.records["parent"] = parent
    state.completed["parent"] = parent
    state.parent_children["parent"] = child_ids
    for child_id, (status, count) in zip(child_ids, statuses_and_counts):
        child = HexagonProcessingStatus(
            h3_id=child_id, resolution=8, status=status, total_businesses=count, parent_h3_id="parent"
        )
        state.records[child_id] = child
        state.child_parent[child_id] = "parent"
        if status is CellStatus.FAILED:
            state.failed[child_id] = child
        elif status is not CellStatus.QUEUED:
            state.completed[child_id] = child
    return state


def _processor_with_state(state):
    return HexagonProcessor(FakeSearchClient(), QuotaManager(daily_limit=10000), state=state)


def test_aggregation_with_failed_child_is_poor():
    state = _state_with_children(
        [(CellStatus.FETCHED, 10), (CellStatus.FETCHED, 20), (CellStatus.FAILED, None)]
    )
    aggregate = _processor_with_state(state).get_aggregated_child_results("parent")

    assert aggregate.total_businesses == 30
    assert aggregate.failed_children == 1
    assert aggregate.completed_children == 2
    assert aggregate.coverage_quality == "poor"


def test_aggregation_without_children_is_excellent():
    aggregate = _processor_with_state(ProcessorState()).get_aggregated_child_results("nobody")

    assert aggregate.total_businesses == 0
    assert aggregate.coverage_quality == "excellent"


def test_aggregation_counts_dense_children_as_completed():
    state = _state_with_children([(CellStatus.FETCHED, 10), (CellStatus.DENSE, 400)])
    aggregate = _processor_with_state(state).get_aggregated_child_results("parent")

    assert aggregate.total_businesses == 410
    assert aggregate.coverage_quality == "excellent"


def test_aggregation_with_pending_children_is_fair():
    state = _state_with_children([(CellStatus.FETCHED, 10), (CellStatus.QUEUED, None)])
    processor = _processor_with_state(state)

    assert processor.get_aggregated_child_results("parent").coverage_quality == "fair"
    assert not processor.are_all_children_processed("parent")


def test_merged_results_list_top_level_cells_once(make_processor, cell_a, cell_b):
    processor = make_processor(FakeSearchClient(counts={cell_a: 300, cell_b: 50}))
    run(processor.process_unified_pipeline([cell_a, cell_b]))

    merged = processor.get_merged_results()

    assert [m["h3Id"] for m in merged] == [cell_a, cell_b]
    parent = merged[0]
    assert parent["isParent"] is True
    assert parent["totalBusinesses"] == 70
    assert parent["coverageQuality"] == "excellent"
    assert parent["childrenSummary"]["totalChildren"] == 7
    assert merged[1]["totalBusinesses"] == 50
    assert merged[1]["childrenSummary"] is None


def test_merged_results_are_idempotent(make_processor, cell_a, cell_b):
    processor = make_processor(FakeSearchClient(counts={cell_a: 300, cell_b: 50}))
    run(processor.process_unified_pipeline([cell_a, cell_b]))

    assert processor.get_merged_results() == processor.get_merged_results()
    assert processor.get_hexagon_status(cell_a).total_businesses == 300


def test_parent_keeps_own_count_until_children_finish(make_processor, cell_a):
    processor = make_processor(FakeSearchClient(counts={cell_a: 300}), quota=QuotaManager(daily_limit=50))
    run(processor.process_two_phase_algorithm([cell_a]))

    assert processor.get_merged_results()[0]["totalBusinesses"] == 300


def test_results_by_resolution(make_processor, cell_a, cell_b):
    processor = make_processor(FakeSearchClient(counts={cell_a: 300, cell_b: 50}))
    run(processor.process_unified_pipeline([cell_a, cell_b]))

    grouped = processor.get_results_by_resolution()
    assert len(grouped[7]) == 2
    assert len(grouped[8]) == 7
    assert len(processor.get_hexagons_by_resolution(8)) == 7
    assert len(processor.get_hexagons_by_status(CellStatus.SPLIT)) == 1


# ---------------------------------------------------------------------------
# Retries and errors
# ---------------------------------------------------------------------------


def test_process_with_retry_succeeds_on_third_attempt(make_processor, sleeper):
    processor = make_processor(rng=lambda: 0.5)
    attempts = []

    async def flaky():
        attempts.append(1)
        if len(attempts) < 3:
            raise RuntimeError("boom")
        return "ok"

    assert run(processor.process_with_retry(flaky, max_retries=3)) == "ok"
    assert len(attempts) == 3
    assert sleeper.delays == [1.5, 2.5]


def test_process_with_retry_raises_last_error(make_processor, sleeper):
    processor = make_processor()
    attempts = []

    async def broken():
        attempts.append(1)
        raise RuntimeError(f"boom {len(attempts)}")

    with pytest.raises(RuntimeError, match="boom 3"):
        run(processor.process_with_retry(broken, max_retries=3, base_delay=1.0))
    assert len(attempts) == 3
    assert sleeper.delays == [1.0, 2.0]


def test_retry_failed_hexagons_recovers(make_processor, cell_b):
    client = FakeSearchClient(counts={cell_b: 50}, failures={cell_b: 1})
    processor = make_processor(client)
    run(processor.process_hexagon_with_coverage(cell_b))

    summary = run(processor.retry_failed_hexagons())

    assert summary == {"retriedCount": 1, "successCount": 1, "stillFailedCount": 0}
    record = processor.get_hexagon_status(cell_b)
    assert record.status is CellStatus.FETCHED
    assert record.retry_count == 1
    assert record.total_businesses == 50
    assert record.error is None
    assert processor.get_error_summary()["totalErrors"] == 0


def test_retry_failed_hexagons_uses_two_second_base(make_processor, sleeper, cell_b):
    client = FakeSearchClient(failures={cell_b: -1})
    processor = make_processor(client)
    run(processor.process_hexagon_with_coverage(cell_b))

    summary = run(processor.retry_failed_hexagons(max_retries=2))

    assert summary["stillFailedCount"] == 1
    assert sleeper.delays == [2.0]
    assert len(client.calls) == 3
    assert processor.get_hexagon_status(cell_b).retry_count == 1


def test_error_summary_flags_rate_limits(make_processor, ring_cells):
    client = FakeSearchClient(
        failures={c: -1 for c in ring_cells}, error_message="Rate limit exceeded (HTTP 429)"
    )
    processor = make_processor(client)
    run(processor.process_two_phase_algorithm(ring_cells))

    summary = processor.get_error_summary()
    assert summary["totalErrors"] == len(ring_cells)
    assert summary["errorTypes"] == {"Rate limit exceeded (HTTP 429)": len(ring_cells)}
    assert any("Rate limit" in r for r in summary["recommendations"])
    assert summary["failedHexagons"][0]["retryCount"] == 0


def test_coverage_recommendations_mention_splits(make_processor, cell_a):
    processor = make_processor(FakeSearchClient(counts={cell_a: 300}))
    run(processor.process_unified_pipeline([cell_a]))

    recommendations = processor.get_coverage_optimization_recommendations()
    assert any("split" in r for r in recommendations)


def test_clear_history(make_processor, cell_a):
    processor = make_processor(FakeSearchClient(counts={cell_a: 300}))
    run(processor.process_unified_pipeline([cell_a]))

    processor.clear_history()

    assert processor.get_processing_stats()["total"] == 0
    assert processor.get_merged_results() == []
    assert processor.get_hexagon_status(cell_a) is None


# ---------------------------------------------------------------------------
# Cache and persistence
# ---------------------------------------------------------------------------


@pytest.fixture
def store(tmp_path):
    store = HexgridStore(str(tmp_path / "hexgrid.db"))
    store.init()
    return store


def test_fresh_hextile_is_served_from_cache(make_processor, store, cell_b):
    store.upsert_hextile(cell_b, None, "fetched", 7, yelp_total_businesses=42)
    client = FakeSearchClient()
    processor = make_processor(client, store=store)
    progress = RunRegistry().create(1, 11)

    record = run(processor.process_hexagon_with_coverage(cell_b, run=progress))

    assert client.calls == []
    assert record.from_cache is True
    assert record.total_businesses == 42
    assert record.status is CellStatus.FETCHED
    assert progress.tiles_skipped == 1
    assert progress.actual_api_calls == 0


def test_failed_hextile_is_not_cached(make_processor, store, cell_b):
    store.upsert_hextile(cell_b, None, "failed", 7)
    client = FakeSearchClient(counts={cell_b: 5})
    processor = make_processor(client, store=store)

    run(processor.process_hexagon_with_coverage(cell_b))

    assert client.calls == [cell_b]
    assert store.get_hextile(cell_b)["yelp_total_businesses"] == 5


def test_outcomes_are_persisted(make_processor, store, cell_a, cell_b):
    processor = make_processor(FakeSearchClient(counts={cell_a: 300, cell_b: 50}), store=store)

    run(processor.process_unified_pipeline([cell_a, cell_b]))

    assert store.get_hextile(cell_a)["status"] == "dense"
    assert store.get_hextile(cell_a)["yelp_total_businesses"] == 300
    assert store.get_hextile(cell_b)["status"] == "fetched"
    child = sorted(h3.cell_to_children(cell_a, 8))[0]
    assert store.get_hextile(child)["resolution"] == 8
