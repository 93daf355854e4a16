"""Allocation engine: priority-ordered matching of requests to facility seats."""

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from threading import Lock
from typing import Iterator, Optional, Sequence

from plazas.domain.constraints import InvalidRequestError, validate_request
from plazas.domain.models import (
    AllocationRequest,
    Assignment,
    DedupReport,
    Outcome,
    OutcomeKind,
    OvercommitReport,
    RebalanceReport,
    Summary,
)
from plazas.repository.data_repository import (
    ConcurrentModificationError,
    DataRepository,
    StoreUnavailableError,
    utc_now,
)
from plazas.services.coordinator_service import (
    ClaimResult,
    ClaimStatus,
    ConsistencyCoordinator,
    RetriesExhaustedError,
)
from plazas.services.dedup_service import DeduplicationGuard
from plazas.services.history_service import HistoryRecorder
from plazas.services.ledger_service import CapacityLedger
from plazas.services.request_queue import RequestQueue
from plazas.utils.config import Settings, get_settings
from plazas.utils.logger import get_logger


logger = get_logger(__name__)


class RequestNotFoundError(LookupError):
    """Raised when no pending request exists for a priority key."""


class AssignmentNotFoundError(LookupError):
    """Raised when no active assignment exists for a priority key."""


class DuplicateRequestError(ValueError):
    """Raised when a submission matches a pending or deleted fingerprint."""


@dataclass
class _PassTally:
    processed: int = 0
    assigned: int = 0
    unassignable: int = 0
    displaced: int = 0
    already_resolved: int = 0
    duplicates: int = 0

    def add(self, outcome: Outcome) -> None:
        self.processed += 1
        if outcome.kind is OutcomeKind.ASSIGNED:
            self.assigned += 1
            if outcome.displaced_priority_key is not None:
                self.displaced += 1
        elif outcome.kind is OutcomeKind.UNASSIGNABLE:
            self.unassignable += 1
        else:
            self.already_resolved += 1

    def to_summary(self) -> Summary:
        return Summary(
            processed_count=self.processed,
            assigned_count=self.assigned,
            unassignable_count=self.unassignable,
            displaced_count=self.displaced,
            already_resolved_count=self.already_resolved,
            duplicate_count=self.duplicates,
        )


@contextmanager
def _contention_as_outage() -> Iterator[None]:
    # Only claims may give up on a conflict. A coordinated write that cannot
    # commit within the retry budget, or a plain read that hits the busy
    # timeout, means the store is not usable right now.
    try:
        yield
    except (RetriesExhaustedError, ConcurrentModificationError) as exc:
        raise StoreUnavailableError(str(exc)) from exc


class AllocationEngine:
    """Full and incremental allocation passes over the shared store.

    The engine keeps no timing state of its own: periodic passes are driven by
    an external caller (see `BackgroundProcessor`). Per-request problems are
    folded into `Outcome` values; only `StoreUnavailableError` escapes.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
        coordinator: Optional[ConsistencyCoordinator] = None,
        guard: Optional[DeduplicationGuard] = None,
        history: Optional[HistoryRecorder] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._coordinator = coordinator or ConsistencyCoordinator(
            repository=self._repository,
            ledger=CapacityLedger(),
            settings=self._settings,
        )
        self._guard = guard or DeduplicationGuard(self._repository)
        self._history = history or HistoryRecorder(self._repository)
        self._queue_lock = Lock()
        self._active_queues: list[RequestQueue] = []

    @property
    def repository(self) -> DataRepository:
        return self._repository

    @contextmanager
    def _draining(self, queue: RequestQueue) -> Iterator[RequestQueue]:
        with self._queue_lock:
            self._active_queues.append(queue)
        try:
            yield queue
        finally:
            with self._queue_lock:
                self._active_queues.remove(queue)

    def _enqueue_into_active_passes(self, request: AllocationRequest) -> None:
        with self._queue_lock:
            queues = list(self._active_queues)
        for queue in queues:
            queue.enqueue(request)

    # ------------------------------------------------------------------
    # Resolution of a single request
    # ------------------------------------------------------------------

    def _resolve(
        self,
        request: AllocationRequest,
        *,
        allow_displacement: bool,
        require_pending: bool,
    ) -> Outcome:
        key = request.priority_key
        if isinstance(key, int) and not isinstance(key, bool):
            existing = self._repository.get_assignment(key)
            if existing is not None:
                self._coordinator.discard_request(request, require_pending=False)
                return Outcome(
                    kind=OutcomeKind.ALREADY_RESOLVED,
                    priority_key=key,
                    facility_id=existing.facility_id,
                    message="Assignment already exists",
                )

        try:
            preferences = validate_request(request)
        except InvalidRequestError as exc:
            return self._conclude_unassignable(
                request,
                f"Invalid request: {exc}",
                require_pending=require_pending,
            )

        reasons: list[str] = []
        for facility_id in preferences:
            claim = self._coordinator.claim_seat(
                request,
                facility_id,
                allow_displacement=allow_displacement,
                require_pending=require_pending,
            )
            if claim.status is ClaimStatus.ALREADY_RESOLVED:
                return Outcome(
                    kind=OutcomeKind.ALREADY_RESOLVED,
                    priority_key=request.priority_key,
                    facility_id=claim.assignment.facility_id if claim.assignment else None,
                    message=claim.detail,
                )
            if claim.succeeded:
                return self._conclude_assigned(request, claim)
            reasons.append(f"{facility_id}: {claim.detail or claim.status.value}")

        return self._conclude_unassignable(
            request,
            "No seat available at any preferred facility (" + "; ".join(reasons) + ")",
            require_pending=require_pending,
        )

    def _conclude_assigned(self, request: AllocationRequest, claim: ClaimResult) -> Outcome:
        facility_id = claim.facility_id
        displaced_key: Optional[int] = None
        if claim.displaced is not None:
            displaced_key = claim.displaced.priority_key
            self._history.record(
                displaced_key,
                OutcomeKind.DISPLACED,
                (
                    f"Displaced from {facility_id} by priority key {request.priority_key}; "
                    f"re-queued with sole preference {facility_id}"
                ),
                facility_id=facility_id,
            )
            logger.info(
                "Holder displaced | facility_id=%s | displaced_key=%s | by_key=%s",
                facility_id,
                displaced_key,
                request.priority_key,
            )

        self._history.record(
            request.priority_key,
            OutcomeKind.ASSIGNED,
            f"Assigned to {facility_id}",
            facility_id=facility_id,
        )
        logger.info(
            "Request assigned | priority_key=%s | facility_id=%s",
            request.priority_key,
            facility_id,
        )
        return Outcome(
            kind=OutcomeKind.ASSIGNED,
            priority_key=request.priority_key,
            facility_id=facility_id,
            displaced_priority_key=displaced_key,
            message=f"Assigned to {facility_id}",
        )

    def _conclude_unassignable(
        self,
        request: AllocationRequest,
        message: str,
        *,
        require_pending: bool,
    ) -> Outcome:
        still_pending = self._coordinator.discard_request(
            request,
            require_pending=require_pending,
        )
        if not still_pending:
            return Outcome(
                kind=OutcomeKind.ALREADY_RESOLVED,
                priority_key=request.priority_key,
                message="Request is no longer pending",
            )
        self._history.record(request.priority_key, OutcomeKind.UNASSIGNABLE, message)
        logger.info(
            "Request unassignable | priority_key=%s | reason=%s",
            request.priority_key,
            message,
        )
        return Outcome(
            kind=OutcomeKind.UNASSIGNABLE,
            priority_key=request.priority_key,
            message=message,
        )

    def _delete_duplicates(
        self,
        duplicates: Sequence[AllocationRequest],
        survivors: Sequence[AllocationRequest],
    ) -> int:
        keepers = {self._guard.fingerprint(survivor): survivor.request_id for survivor in survivors}
        removed = 0
        for duplicate in duplicates:
            keeper_id = keepers.get(self._guard.fingerprint(duplicate))
            deleted = self._coordinator.remove_duplicate(duplicate, keeper_id)
            if not deleted:
                continue
            removed += 1
            message = (
                f"Duplicate of pending request {keeper_id}"
                if keeper_id is not None
                else "Re-created request matched a deleted fingerprint"
            )
            self._history.record(duplicate.priority_key, OutcomeKind.DUPLICATE_REMOVED, message)
        return removed

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    @_contention_as_outage()
    def process_all(self, requests: Optional[Sequence[AllocationRequest]] = None) -> Summary:
        """Recompute every assignment from scratch in priority order.

        Without arguments the currently pending requests are replayed.
        """
        if requests is None:
            requests = self._repository.list_pending_requests()
        queue = RequestQueue.load(requests)

        cleared = self._coordinator.reset_allocations()
        logger.info(
            "Full reprocessing started | requests=%s | cleared_assignments=%s",
            len(queue),
            cleared,
        )

        tally = _PassTally()
        seen_keys: set[int] = set()
        for request in queue.drain():
            if request.priority_key in seen_keys:
                self._coordinator.discard_request(request, require_pending=False)
                tally.add(
                    Outcome(
                        kind=OutcomeKind.ALREADY_RESOLVED,
                        priority_key=request.priority_key,
                        message="Priority key already processed in this pass",
                    )
                )
                continue
            seen_keys.add(request.priority_key)
            tally.add(self._resolve(request, allow_displacement=False, require_pending=False))

        summary = tally.to_summary()
        logger.info(
            "Full reprocessing completed | processed=%s | assigned=%s | unassignable=%s",
            summary.processed_count,
            summary.assigned_count,
            summary.unassignable_count,
        )
        return summary

    @_contention_as_outage()
    def process_pending(self) -> Summary:
        """Run one incremental pass, displacing lower-priority holders."""
        pending = self._repository.list_pending_requests()
        duplicates, survivors = self._guard.scan(pending)

        tally = _PassTally()
        tally.duplicates = self._delete_duplicates(duplicates, survivors)

        with self._draining(RequestQueue.load(survivors)) as queue:
            for request in queue.drain():
                tally.add(self._resolve(request, allow_displacement=True, require_pending=True))

        summary = tally.to_summary()
        logger.info(
            (
                "Incremental pass completed | processed=%s | assigned=%s | displaced=%s | "
                "unassignable=%s | already_resolved=%s | duplicates=%s"
            ),
            summary.processed_count,
            summary.assigned_count,
            summary.displaced_count,
            summary.unassignable_count,
            summary.already_resolved_count,
            summary.duplicate_count,
        )
        return summary

    @_contention_as_outage()
    def process_one(self, request: AllocationRequest) -> Outcome:
        """Resolve one request immediately, with displacement."""
        if request.request_id is not None and self._guard.is_duplicate(request):
            siblings = self._repository.list_requests_with_fingerprint(
                self._guard.fingerprint(request)
            )
            duplicates, survivors = self._guard.scan(siblings)
            if any(duplicate.request_id == request.request_id for duplicate in duplicates):
                self._delete_duplicates([request], survivors)
                return Outcome(
                    kind=OutcomeKind.ALREADY_RESOLVED,
                    priority_key=request.priority_key,
                    message="Duplicate request discarded",
                )
        return self._resolve(request, allow_displacement=True, require_pending=True)

    @_contention_as_outage()
    def process_priority_key(self, priority_key: int) -> Outcome:
        """`process_one` for the oldest pending request carrying `priority_key`."""
        request = self._repository.find_pending_request(priority_key)
        if request is None:
            existing = self._repository.get_assignment(priority_key)
            if existing is not None:
                return Outcome(
                    kind=OutcomeKind.ALREADY_RESOLVED,
                    priority_key=priority_key,
                    facility_id=existing.facility_id,
                    message="Assignment already exists",
                )
            raise RequestNotFoundError(f"No pending request for priority key {priority_key}")
        return self.process_one(request)

    @_contention_as_outage()
    def rebalance(self) -> RebalanceReport:
        """Reconcile every occupied counter with the assignments."""
        corrections, overcommitted = self._coordinator.rebuild_occupancy()
        if overcommitted:
            logger.warning("Facilities hold more assignments than seats | facility_ids=%s", overcommitted)
        logger.info("Rebalance completed | corrected=%s", len(corrections))
        return RebalanceReport(
            corrected_facility_count=len(corrections),
            overcommitted_facility_ids=overcommitted,
        )

    @_contention_as_outage()
    def remove_duplicates(self) -> DedupReport:
        duplicates, survivors = self._guard.scan(self._repository.list_pending_requests())
        removed = self._delete_duplicates(duplicates, survivors)
        logger.info(
            "Duplicate removal completed | duplicates=%s | removed=%s",
            len(duplicates),
            removed,
        )
        return DedupReport(duplicate_count=len(duplicates), removed_count=removed)

    @_contention_as_outage()
    def submit_request(
        self,
        *,
        priority_key: int,
        preferences: Sequence[str],
        submitter: Optional[str] = None,
        submitted_at: Optional[str] = None,
    ) -> AllocationRequest:
        """Persist a new pending request; reject identical re-submissions."""
        request = AllocationRequest(
            priority_key=priority_key,
            preferences=tuple(preferences),
            submitted_at=submitted_at or utc_now(),
            submitter=submitter,
        )
        if self._guard.is_duplicate(request):
            raise DuplicateRequestError(
                f"Request for priority key {priority_key} was already submitted"
            )
        saved = self._repository.create_request(request)
        self._enqueue_into_active_passes(saved)
        logger.info(
            "Request submitted | priority_key=%s | request_id=%s | preferences=%s",
            saved.priority_key,
            saved.request_id,
            list(saved.preferences),
        )
        return saved

    @_contention_as_outage()
    def release_assignment(self, priority_key: int) -> Assignment:
        """Delete an assignment and free its seat."""
        released, _ = self._coordinator.release_assignment(priority_key)
        if released is None:
            raise AssignmentNotFoundError(f"No assignment for priority key {priority_key}")
        self._history.record(
            priority_key,
            OutcomeKind.RELEASED,
            f"Assignment at {released.facility_id} deleted",
            facility_id=released.facility_id,
        )
        return released

    @_contention_as_outage()
    def reassign(
        self,
        priority_key: int,
        preferences: Optional[Sequence[str]] = None,
    ) -> AllocationRequest:
        """Move an assignment back to the pending set for a later pass."""
        current = self._repository.get_assignment(priority_key)
        if current is None:
            raise AssignmentNotFoundError(f"No assignment for priority key {priority_key}")
        requeue = tuple(preferences) if preferences else (current.facility_id,)
        released, requeued = self._coordinator.release_assignment(
            priority_key,
            requeue_preferences=requeue,
        )
        if released is None or requeued is None:
            raise AssignmentNotFoundError(f"No assignment for priority key {priority_key}")
        self._history.record(
            priority_key,
            OutcomeKind.REASSIGNING,
            f"Manual reassignment; previous facility {released.facility_id}",
            facility_id=released.facility_id,
        )
        self._enqueue_into_active_passes(requeued)
        return requeued

    @_contention_as_outage()
    def correct_overcommit(self) -> OvercommitReport:
        """Evict the lowest-priority holders wherever assignments exceed seats."""
        _, overcommitted = self._coordinator.rebuild_occupancy()
        evicted_count = 0
        for facility_id in overcommitted:
            for holder, _requeued in self._coordinator.evict_excess(facility_id):
                evicted_count += 1
                self._history.record(
                    holder.priority_key,
                    OutcomeKind.EVICTED,
                    f"Removed from over-committed {facility_id}; re-queued with sole preference {facility_id}",
                    facility_id=facility_id,
                )
        if evicted_count:
            logger.warning(
                "Over-commitment corrected | facility_ids=%s | evicted=%s",
                overcommitted,
                evicted_count,
            )
        return OvercommitReport(evicted_count=evicted_count, facility_ids=overcommitted)
