from __future__ import annotations

import threading
from collections import Counter
from dataclasses import replace

import pytest

from plazas.domain.models import AllocationRequest, OutcomeKind
from plazas.repository.data_repository import DataRepository, StoreUnavailableError
from plazas.services.allocation_service import (
    AllocationEngine,
    AssignmentNotFoundError,
    RequestNotFoundError,
)
from plazas.services.coordinator_service import ConsistencyCoordinator
from plazas.utils.config import get_settings


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(
        get_settings(),
        database_path=tmp_path / filename,
        coordinator_backoff_base_seconds=0.0,
        coordinator_backoff_cap_seconds=0.0,
    )


def _build_engine(tmp_path, filename: str = "engine.db") -> tuple[AllocationEngine, DataRepository]:
    settings = _build_test_settings(tmp_path, filename)
    repository = DataRepository(settings)
    repository.initialize_database()
    coordinator = ConsistencyCoordinator(
        repository=repository,
        settings=settings,
        sleep=lambda _seconds: None,
    )
    engine = AllocationEngine(repository=repository, settings=settings, coordinator=coordinator)
    return engine, repository


def _add_facility(repository: DataRepository, facility_id: str, capacity: int) -> None:
    repository.upsert_facility(facility_id=facility_id, name=f"School {facility_id}", capacity=capacity)


def _outcomes_for(repository: DataRepository, priority_key: int) -> list[OutcomeKind]:
    return [record.outcome for record in repository.list_history(priority_key=priority_key)]


def _assert_ledger_consistent(repository: DataRepository) -> None:
    counts = Counter(item.facility_id for item in repository.list_assignments())
    for facility in repository.list_facilities():
        assert facility.occupied == counts.get(facility.facility_id, 0)
        assert facility.occupied <= facility.capacity


def test_higher_priority_request_displaces_lowest_priority_holder(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 1)

    engine.submit_request(priority_key=10, preferences=["F"], submitter="applicant-10")
    first = engine.process_pending()
    assert first.assigned_count == 1
    assert repository.get_assignment(10).facility_id == "F"

    engine.submit_request(priority_key=5, preferences=["F"], submitter="applicant-5")
    second = engine.process_pending()

    assert second.assigned_count == 1
    assert second.displaced_count == 1
    assert repository.get_assignment(5).facility_id == "F"
    assert repository.get_assignment(10) is None

    requeued = repository.find_pending_request(10)
    assert requeued is not None
    assert requeued.preferences == ("F",)
    assert requeued.displaced_from == "F"
    assert OutcomeKind.DISPLACED in _outcomes_for(repository, 10)
    assert repository.get_facility("F").occupied == 1
    _assert_ledger_consistent(repository)


def test_displaced_request_is_left_for_a_later_pass(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 1)
    engine.submit_request(priority_key=10, preferences=["F"], submitter="applicant-10")
    engine.process_pending()
    engine.submit_request(priority_key=5, preferences=["F"], submitter="applicant-5")

    displacing_pass = engine.process_pending()
    assert displacing_pass.processed_count == 1

    follow_up = engine.process_pending()
    assert follow_up.processed_count == 1
    assert follow_up.unassignable_count == 1
    assert repository.find_pending_request(10) is None
    assert _outcomes_for(repository, 10)[-1] is OutcomeKind.UNASSIGNABLE


def test_lower_priority_request_never_displaces(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 1)
    engine.submit_request(priority_key=3, preferences=["F"], submitter="applicant-3")
    engine.process_pending()

    engine.submit_request(priority_key=7, preferences=["F"], submitter="applicant-7")
    summary = engine.process_pending()

    assert summary.unassignable_count == 1
    assert repository.get_assignment(3).facility_id == "F"
    assert repository.get_assignment(7) is None
    assert repository.find_pending_request(7) is None
    assert _outcomes_for(repository, 7) == [OutcomeKind.UNASSIGNABLE]


def test_falls_through_preferences_in_order(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "A", 1)
    _add_facility(repository, "B", 1)
    engine.submit_request(priority_key=1, preferences=["A"], submitter="applicant-1")
    engine.submit_request(priority_key=2, preferences=["A", "B"], submitter="applicant-2")

    summary = engine.process_pending()

    assert summary.assigned_count == 2
    assert repository.get_assignment(1).facility_id == "A"
    assert repository.get_assignment(2).facility_id == "B"


def test_process_one_is_idempotent(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 2)
    request = engine.submit_request(priority_key=4, preferences=["F"], submitter="applicant-4")

    first = engine.process_one(request)
    history_after_first = repository.list_history()
    second = engine.process_one(request)

    assert first.kind is OutcomeKind.ASSIGNED
    assert second.kind is OutcomeKind.ALREADY_RESOLVED
    assert repository.list_history() == history_after_first
    assert repository.get_facility("F").occupied == 1
    assert len(repository.list_assignments()) == 1


def test_process_priority_key_reports_missing_and_resolved(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 1)
    engine.submit_request(priority_key=8, preferences=["F"], submitter="applicant-8")

    assert engine.process_priority_key(8).kind is OutcomeKind.ASSIGNED
    assert engine.process_priority_key(8).kind is OutcomeKind.ALREADY_RESOLVED
    with pytest.raises(RequestNotFoundError):
        engine.process_priority_key(99)


def test_full_reprocessing_is_deterministic_across_rebuild(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "A", 2)
    _add_facility(repository, "B", 1)
    for key, preferences in [(6, ["A"]), (2, ["B", "A"]), (9, ["A", "B"]), (4, ["A"]), (1, ["B"])]:
        engine.submit_request(priority_key=key, preferences=preferences, submitter=f"applicant-{key}")
    snapshot = repository.list_pending_requests()

    first = engine.process_all(snapshot)
    first_assignments = {(item.priority_key, item.facility_id) for item in repository.list_assignments()}
    engine.rebalance()
    second = engine.process_all(snapshot)
    second_assignments = {(item.priority_key, item.facility_id) for item in repository.list_assignments()}

    assert first_assignments == second_assignments == {(1, "B"), (2, "A"), (4, "A")}
    assert first.assigned_count == second.assigned_count == 3
    assert first.unassignable_count == 2
    _assert_ledger_consistent(repository)


def test_full_reprocessing_never_displaces_and_clears_previous_assignments(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 1)
    engine.submit_request(priority_key=10, preferences=["F"], submitter="applicant-10")
    engine.process_pending()

    replay = [
        AllocationRequest(priority_key=5, preferences=("F",), submitted_at="2026-03-01T09:00:00+00:00"),
        AllocationRequest(priority_key=10, preferences=("F",), submitted_at="2026-03-01T09:00:01+00:00"),
    ]
    summary = engine.process_all(replay)

    assert summary.assigned_count == 1
    assert summary.displaced_count == 0
    assert summary.unassignable_count == 1
    assert [item.priority_key for item in repository.list_assignments()] == [5]


def test_seeded_demo_pass_respects_capacity_and_uniqueness(tmp_path):
    engine, repository = _build_engine(tmp_path)
    repository.seed_demo_data_if_empty()

    summary = engine.process_pending()

    keys = [item.priority_key for item in repository.list_assignments()]
    assert len(keys) == len(set(keys))
    assert summary.processed_count == summary.assigned_count + summary.unassignable_count
    assert summary.assigned_count == len(keys)
    assert summary.assigned_count <= sum(item.capacity for item in repository.list_facilities())
    _assert_ledger_consistent(repository)


def test_invalid_preferences_are_unassignable_without_facility_attempts(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 1)
    repository.create_request(
        AllocationRequest(priority_key=1, preferences=(), submitted_at="2026-03-01T09:00:00+00:00")
    )
    repository.create_request(
        AllocationRequest(priority_key=2, preferences=("NOPE",), submitted_at="2026-03-01T09:00:01+00:00")
    )

    summary = engine.process_pending()

    assert summary.unassignable_count == 2
    assert repository.get_facility("F").occupied == 0
    messages = {record.priority_key: record.message for record in repository.list_history()}
    assert messages[1].startswith("Invalid request")
    assert "NOPE" in messages[2]
    assert repository.list_pending_requests() == []


def test_history_failure_does_not_roll_back_assignment(tmp_path, monkeypatch):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 1)
    engine.submit_request(priority_key=1, preferences=["F"], submitter="applicant-1")

    def broken_append_history(**kwargs):
        raise StoreUnavailableError("history table is read-only")

    monkeypatch.setattr(repository, "append_history", broken_append_history)
    summary = engine.process_pending()

    assert summary.assigned_count == 1
    assert repository.get_assignment(1).facility_id == "F"


def test_store_outage_escapes_the_engine(tmp_path, monkeypatch):
    engine, repository = _build_engine(tmp_path)

    def unavailable():
        raise StoreUnavailableError("disk gone")

    monkeypatch.setattr(repository, "list_pending_requests", unavailable)
    with pytest.raises(StoreUnavailableError):
        engine.process_pending()


def test_submission_during_a_pass_joins_that_pass(tmp_path, monkeypatch):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 5)
    engine.submit_request(priority_key=1, preferences=["F"], submitter="applicant-1")

    submitted: list[int] = []
    original_append = repository.append_history

    def append_and_submit(**kwargs):
        record_id = original_append(**kwargs)
        if not submitted:
            submitted.append(engine.submit_request(priority_key=2, preferences=["F"]).priority_key)
        return record_id

    monkeypatch.setattr(repository, "append_history", append_and_submit)
    summary = engine.process_pending()

    assert submitted == [2]
    assert summary.processed_count == 2
    assert summary.assigned_count == 2
    assert len(repository.list_history()) == 2


def test_release_assignment_frees_the_seat(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 1)
    engine.submit_request(priority_key=1, preferences=["F"], submitter="applicant-1")
    engine.process_pending()

    released = engine.release_assignment(1)

    assert released.facility_id == "F"
    assert repository.get_facility("F").occupied == 0
    assert _outcomes_for(repository, 1)[-1] is OutcomeKind.RELEASED
    with pytest.raises(AssignmentNotFoundError):
        engine.release_assignment(1)


def test_reassign_moves_assignment_back_to_pending(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "A", 1)
    _add_facility(repository, "B", 1)
    engine.submit_request(priority_key=3, preferences=["A"], submitter="applicant-3")
    engine.process_pending()

    requeued = engine.reassign(3, preferences=["B"])

    assert requeued.preferences == ("B",)
    assert repository.get_assignment(3) is None
    assert repository.get_facility("A").occupied == 0
    assert _outcomes_for(repository, 3)[-1] is OutcomeKind.REASSIGNING

    engine.process_pending()
    assert repository.get_assignment(3).facility_id == "B"


def test_correct_overcommit_evicts_lowest_priority_holders(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 3)
    for key in (1, 2, 3):
        engine.submit_request(priority_key=key, preferences=["F"], submitter=f"applicant-{key}")
    engine.process_pending()
    _add_facility(repository, "F", 1)

    report = engine.correct_overcommit()

    assert report.evicted_count == 2
    assert report.facility_ids == ["F"]
    assert [item.priority_key for item in repository.list_assignments()] == [1]
    assert [item.priority_key for item in repository.list_pending_requests()] == [2, 3]
    assert all(item.displaced_from == "F" for item in repository.list_pending_requests())
    assert _outcomes_for(repository, 3)[-1] is OutcomeKind.EVICTED
    _assert_ledger_consistent(repository)


def test_displacement_is_refused_at_an_overcommitted_facility(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 2)
    for key in (10, 20):
        engine.submit_request(priority_key=key, preferences=["F"], submitter=f"applicant-{key}")
    engine.process_pending()
    _add_facility(repository, "F", 1)
    engine.submit_request(priority_key=1, preferences=["F"], submitter="applicant-1")

    summary = engine.process_pending()

    assert summary.assigned_count == 0
    assert summary.displaced_count == 0
    assert summary.unassignable_count == 1
    assert sorted(item.priority_key for item in repository.list_assignments()) == [10, 20]
    assert repository.get_facility("F").occupied == 2
    assert "correct_overcommit" in repository.list_history(priority_key=1)[-1].message

    engine.correct_overcommit()

    assert [item.priority_key for item in repository.list_assignments()] == [10]
    _assert_ledger_consistent(repository)


def test_invalid_request_for_an_assigned_key_is_already_resolved(tmp_path):
    engine, repository = _build_engine(tmp_path)
    _add_facility(repository, "F", 1)
    engine.submit_request(priority_key=3, preferences=["F"], submitter="applicant-3")
    engine.process_pending()
    repository.create_request(
        AllocationRequest(priority_key=3, preferences=(), submitted_at="2026-03-02T09:00:00+00:00")
    )

    summary = engine.process_pending()

    assert summary.already_resolved_count == 1
    assert summary.unassignable_count == 0
    assert OutcomeKind.UNASSIGNABLE not in _outcomes_for(repository, 3)
    assert repository.list_pending_requests() == []
    assert repository.get_assignment(3).facility_id == "F"


def test_concurrent_incremental_passes_keep_occupancy_exact(tmp_path):
    settings = replace(
        _build_test_settings(tmp_path, "race.db"),
        coordinator_max_attempts=25,
        coordinator_backoff_base_seconds=0.001,
        coordinator_backoff_cap_seconds=0.01,
    )
    repository = DataRepository(settings)
    repository.initialize_database()
    capacities = {"A": 3, "B": 2, "C": 4}
    for facility_id, capacity in capacities.items():
        _add_facility(repository, facility_id, capacity)

    submitter = AllocationEngine(repository=repository, settings=settings)
    facility_ids = list(capacities)
    for key in range(1, 31):
        first = facility_ids[key % 3]
        second = facility_ids[(key + 1) % 3]
        submitter.submit_request(
            priority_key=key,
            preferences=[first, second],
            submitter=f"applicant-{key}",
        )

    start = threading.Barrier(6)
    errors: list[Exception] = []

    def run_passes() -> None:
        engine = AllocationEngine(repository=DataRepository(settings), settings=settings)
        start.wait()
        try:
            for _ in range(3):
                engine.process_pending()
        except Exception as exc:
            errors.append(exc)

    workers = [threading.Thread(target=run_passes) for _ in range(6)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join(timeout=60)

    assert errors == []
    assignments = repository.list_assignments()
    keys = [item.priority_key for item in assignments]
    assert len(keys) == len(set(keys))
    counts = Counter(item.facility_id for item in assignments)
    for facility in repository.list_facilities():
        assert facility.occupied <= facility.capacity
        assert facility.occupied == counts.get(facility.facility_id, 0)
    accounted = set(keys) | {item.priority_key for item in repository.list_pending_requests()}
    accounted |= {
        record.priority_key
        for record in repository.list_history()
        if record.outcome is OutcomeKind.UNASSIGNABLE
    }
    assert accounted == set(range(1, 31))
