from __future__ import annotations

from dataclasses import replace

import pytest

from plazas.domain.models import AllocationRequest, OutcomeKind
from plazas.repository.data_repository import DataRepository
from plazas.services.allocation_service import AllocationEngine, DuplicateRequestError
from plazas.services.dedup_service import DeduplicationGuard
from plazas.utils.config import get_settings


SUBMITTED_AT = "2026-03-02T08:30:00+00:00"


def _build_test_settings(tmp_path, filename: str):
    get_settings.cache_clear()
    return replace(get_settings(), database_path=tmp_path / filename)


def _build_repository(tmp_path) -> DataRepository:
    repository = DataRepository(_build_test_settings(tmp_path, "dedup.db"))
    repository.initialize_database()
    repository.upsert_facility(facility_id="F", name="IES Test", capacity=5)
    return repository


def _copy(priority_key: int = 12, submitter: str = "family-garcia") -> AllocationRequest:
    return AllocationRequest(
        priority_key=priority_key,
        preferences=("F",),
        submitted_at=SUBMITTED_AT,
        submitter=submitter,
    )


def test_scan_keeps_the_most_recently_created_copy(tmp_path):
    repository = _build_repository(tmp_path)
    stored = [repository.create_request(_copy()) for _ in range(3)]
    other = repository.create_request(_copy(priority_key=3, submitter="family-lopez"))

    duplicates, survivors = DeduplicationGuard(repository).scan(repository.list_pending_requests())

    assert sorted(item.request_id for item in duplicates) == [stored[0].request_id, stored[1].request_id]
    assert [item.request_id for item in survivors] == [other.request_id, stored[2].request_id]


def test_pass_removes_duplicates_and_tombstone_blocks_resurrection(tmp_path):
    repository = _build_repository(tmp_path)
    engine = AllocationEngine(repository=repository, settings=_build_test_settings(tmp_path, "dedup.db"))
    for _ in range(3):
        repository.create_request(_copy())

    summary = engine.process_pending()

    assert summary.duplicate_count == 2
    assert summary.assigned_count == 1
    assert [item.priority_key for item in repository.list_assignments()] == [12]
    assert repository.list_pending_requests() == []

    # A stale writer re-creates one of the deleted copies.
    repository.create_request(_copy())
    follow_up = engine.process_pending()

    assert follow_up.duplicate_count == 1
    assert follow_up.processed_count == 0
    assert repository.list_pending_requests() == []
    assert len(repository.list_assignments()) == 1
    outcomes = [record.outcome for record in repository.list_history(priority_key=12)]
    assert outcomes.count(OutcomeKind.DUPLICATE_REMOVED) == 3
    assert outcomes.count(OutcomeKind.ASSIGNED) == 1


def test_remove_duplicates_reports_counts(tmp_path):
    repository = _build_repository(tmp_path)
    engine = AllocationEngine(repository=repository, settings=_build_test_settings(tmp_path, "dedup.db"))
    for _ in range(4):
        repository.create_request(_copy())

    report = engine.remove_duplicates()

    assert report.duplicate_count == 3
    assert report.removed_count == 3
    assert len(repository.list_pending_requests()) == 1
    assert engine.remove_duplicates().duplicate_count == 0


def test_submission_of_an_identical_request_is_rejected(tmp_path):
    repository = _build_repository(tmp_path)
    engine = AllocationEngine(repository=repository, settings=_build_test_settings(tmp_path, "dedup.db"))
    engine.submit_request(
        priority_key=12,
        preferences=["F"],
        submitter="family-garcia",
        submitted_at=SUBMITTED_AT,
    )

    with pytest.raises(DuplicateRequestError):
        engine.submit_request(
            priority_key=12,
            preferences=["F"],
            submitter="family-garcia",
            submitted_at=SUBMITTED_AT,
        )
    assert len(repository.list_pending_requests()) == 1


def test_resolved_fingerprint_is_a_duplicate(tmp_path):
    repository = _build_repository(tmp_path)
    engine = AllocationEngine(repository=repository, settings=_build_test_settings(tmp_path, "dedup.db"))
    request = repository.create_request(_copy())
    guard = DeduplicationGuard(repository)
    assert not guard.is_duplicate(request)

    engine.process_one(request)

    assert guard.is_duplicate(request)
    assert guard.is_duplicate(_copy())
    assert not guard.is_duplicate(_copy(submitter="family-lopez"))
