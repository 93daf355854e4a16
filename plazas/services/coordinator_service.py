"""Atomic, retryable read-modify-write sequences over facilities and assignments.

Every change to an assignment or an occupied counter goes through this module.
A claim reads the facility outside the write transaction, then re-reads it
inside `BEGIN IMMEDIATE` and compares versions; a mismatch (or a UNIQUE
violation, or a lock timeout) is a conflict and the whole sequence is replayed
from the read step under one bounded backoff policy.
"""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, TypeVar

from plazas.domain.constraints import RetryPolicy, validate_retry_policy
from plazas.domain.models import (
    AllocationRequest,
    Assignment,
    FacilityCorrection,
    request_fingerprint,
)
from plazas.repository.data_repository import (
    ConcurrentModificationError,
    DataRepository,
    StoreTransaction,
    utc_now,
)
from plazas.services.ledger_service import CapacityLedger, FacilityNotFoundError
from plazas.utils.config import Settings, get_settings
from plazas.utils.logger import get_logger


logger = get_logger(__name__)

T = TypeVar("T")


class RetriesExhaustedError(RuntimeError):
    """Raised when every attempt of a coordinated operation hit a conflict."""


class ClaimStatus(str, Enum):
    ASSIGNED = "ASSIGNED"
    DISPLACED = "DISPLACED"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    CAPACITY_EXCEEDED = "CAPACITY_EXCEEDED"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"


@dataclass(frozen=True)
class ClaimResult:
    status: ClaimStatus
    facility_id: str
    assignment: Optional[Assignment] = None
    displaced: Optional[Assignment] = None
    displaced_request: Optional[AllocationRequest] = None
    detail: str = ""

    @property
    def succeeded(self) -> bool:
        return self.status in (ClaimStatus.ASSIGNED, ClaimStatus.DISPLACED)


def retry_policy_from_settings(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.coordinator_max_attempts,
        backoff_base_seconds=settings.coordinator_backoff_base_seconds,
        backoff_cap_seconds=settings.coordinator_backoff_cap_seconds,
    )


class ConsistencyCoordinator:
    """Runs allocation writes as single transactions with bounded retries."""

    def __init__(
        self,
        repository: DataRepository,
        ledger: Optional[CapacityLedger] = None,
        settings: Optional[Settings] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository
        self._ledger = ledger or CapacityLedger()
        self._policy = policy or retry_policy_from_settings(self._settings)
        validate_retry_policy(self._policy)
        self._sleep = sleep
        self._rng = rng or random.Random()

    @property
    def policy(self) -> RetryPolicy:
        return self._policy

    def run(self, operation: Callable[[], T], *, description: str) -> T:
        """Call `operation` until it commits or the attempt budget is spent."""
        attempt = 0
        while True:
            attempt += 1
            try:
                return operation()
            except ConcurrentModificationError as exc:
                if attempt >= self._policy.max_attempts:
                    logger.warning(
                        "Retries exhausted | operation=%s | attempts=%s | error=%s",
                        description,
                        attempt,
                        exc,
                    )
                    raise RetriesExhaustedError(
                        f"{description} failed after {attempt} attempts: {exc}"
                    ) from exc
                delay = self._policy.next_delay(attempt, self._rng)
                logger.warning(
                    "Commit conflict, retrying | operation=%s | attempt=%s | delay=%.3f | error=%s",
                    description,
                    attempt,
                    delay,
                    exc,
                )
                self._sleep(delay)

    @staticmethod
    def _retire(tx: StoreTransaction, request: AllocationRequest) -> bool:
        """Delete a resolved request and tombstone its fingerprint."""
        if request.request_id is None:
            return False
        deleted = tx.delete_request(request.request_id)
        tx.upsert_tombstone(request_fingerprint(request), None)
        return deleted

    def claim_seat(
        self,
        request: AllocationRequest,
        facility_id: str,
        *,
        allow_displacement: bool,
        require_pending: bool = True,
    ) -> ClaimResult:
        """Reserve a seat at `facility_id` for `request`, displacing if allowed.

        `require_pending` makes a request whose stored row has vanished count
        as already resolved; full reprocessing replays a caller-supplied
        snapshot and turns it off.
        """
        description = f"claim facility={facility_id} priority_key={request.priority_key}"
        try:
            return self.run(
                lambda: self._claim_attempt(
                    request,
                    facility_id,
                    allow_displacement=allow_displacement,
                    require_pending=require_pending,
                ),
                description=description,
            )
        except RetriesExhaustedError as exc:
            return ClaimResult(
                status=ClaimStatus.CONFLICT,
                facility_id=facility_id,
                detail=str(exc),
            )
        except FacilityNotFoundError as exc:
            return ClaimResult(
                status=ClaimStatus.NOT_FOUND,
                facility_id=facility_id,
                detail=str(exc),
            )

    def _claim_attempt(
        self,
        request: AllocationRequest,
        facility_id: str,
        *,
        allow_displacement: bool,
        require_pending: bool,
    ) -> ClaimResult:
        snapshot = self._repository.get_facility(facility_id)
        if snapshot is None:
            return ClaimResult(
                status=ClaimStatus.NOT_FOUND,
                facility_id=facility_id,
                detail=f"Facility {facility_id} not found",
            )

        victim: Optional[Assignment] = None
        if snapshot.is_full:
            if not allow_displacement:
                return ClaimResult(
                    status=ClaimStatus.CAPACITY_EXCEEDED,
                    facility_id=facility_id,
                    detail=f"No seats left at {snapshot.name}",
                )
            if snapshot.occupied > snapshot.capacity:
                return ClaimResult(
                    status=ClaimStatus.CAPACITY_EXCEEDED,
                    facility_id=facility_id,
                    detail=(
                        f"Facility {facility_id} is over-committed "
                        f"({snapshot.occupied}/{snapshot.capacity}); run correct_overcommit"
                    ),
                )
            victim = self._repository.find_lowest_priority_holder(facility_id)
            if victim is None or victim.priority_key <= request.priority_key:
                holder_note = (
                    f"lowest-priority holder is {victim.priority_key}" if victim else "no holders"
                )
                return ClaimResult(
                    status=ClaimStatus.CAPACITY_EXCEEDED,
                    facility_id=facility_id,
                    detail=f"No seats left at {snapshot.name} ({holder_note})",
                )

        now = utc_now()
        with self._repository.transaction() as tx:
            if (
                require_pending
                and request.request_id is not None
                and not tx.request_exists(request.request_id)
            ):
                return ClaimResult(
                    status=ClaimStatus.ALREADY_RESOLVED,
                    facility_id=facility_id,
                    detail="Request is no longer pending",
                )

            existing = tx.get_assignment(request.priority_key)
            if existing is not None:
                self._retire(tx, request)
                return ClaimResult(
                    status=ClaimStatus.ALREADY_RESOLVED,
                    facility_id=existing.facility_id,
                    assignment=existing,
                    detail="Assignment already exists",
                )

            displaced_request: Optional[AllocationRequest] = None
            if victim is None:
                if not self._ledger.try_reserve(tx, facility_id, expected_version=snapshot.version):
                    raise ConcurrentModificationError(
                        f"Facility {facility_id} filled up after version {snapshot.version}"
                    )
            else:
                self._ledger.release(tx, facility_id, expected_version=snapshot.version)
                if not tx.delete_assignment(victim.priority_key):
                    raise ConcurrentModificationError(
                        f"Holder {victim.priority_key} left facility {facility_id} concurrently"
                    )
                if not self._ledger.try_reserve(tx, facility_id):
                    raise ConcurrentModificationError(
                        f"Facility {facility_id} has no seat to hand over after releasing {victim.priority_key}"
                    )
                displaced_request = tx.insert_request(
                    AllocationRequest(
                        priority_key=victim.priority_key,
                        preferences=(facility_id,),
                        submitted_at=now,
                        displaced_from=facility_id,
                    )
                )

            assignment = Assignment(
                priority_key=request.priority_key,
                facility_id=facility_id,
                created_at=now,
                displaced_from=request.displaced_from,
            )
            tx.insert_assignment(assignment)
            self._retire(tx, request)

        return ClaimResult(
            status=ClaimStatus.DISPLACED if victim is not None else ClaimStatus.ASSIGNED,
            facility_id=facility_id,
            assignment=assignment,
            displaced=victim,
            displaced_request=displaced_request,
        )

    def discard_request(self, request: AllocationRequest, *, require_pending: bool = True) -> bool:
        """Remove a request that ends without a seat.

        Returns False only when `require_pending` is set and the stored row
        was already gone, meaning someone else resolved it first.
        """
        if request.request_id is None:
            return True

        def _discard() -> bool:
            with self._repository.transaction() as tx:
                return self._retire(tx, request)

        deleted = self.run(_discard, description=f"discard request_id={request.request_id}")
        return deleted or not require_pending

    def remove_duplicate(self, request: AllocationRequest, keeper_request_id: Optional[int]) -> bool:
        """Delete one duplicate record and remember its fingerprint."""

        def _remove() -> bool:
            with self._repository.transaction() as tx:
                deleted = (
                    tx.delete_request(request.request_id)
                    if request.request_id is not None
                    else False
                )
                tx.upsert_tombstone(request_fingerprint(request), keeper_request_id)
                return deleted

        return self.run(_remove, description=f"remove duplicate request_id={request.request_id}")

    def reset_allocations(self) -> int:
        """Delete every assignment and zero every occupied counter."""

        def _reset() -> int:
            with self._repository.transaction() as tx:
                facilities = tx.list_facilities()
                deleted = tx.delete_all_assignments()
                self._ledger.reset(tx, facilities)
                return deleted

        return self.run(_reset, description="reset allocations")

    def rebuild_occupancy(self) -> tuple[list[FacilityCorrection], list[str]]:
        """Reconcile counters; return corrections and over-committed facility ids."""

        def _rebuild() -> tuple[list[FacilityCorrection], list[str]]:
            with self._repository.transaction() as tx:
                facilities = tx.list_facilities()
                assignments = tx.list_assignments()
                corrections = self._ledger.rebuild(tx, facilities, assignments)
                counts: dict[str, int] = {}
                for assignment in assignments:
                    counts[assignment.facility_id] = counts.get(assignment.facility_id, 0) + 1
                overcommitted = [
                    facility.facility_id
                    for facility in facilities
                    if counts.get(facility.facility_id, 0) > facility.capacity
                ]
                return corrections, overcommitted

        return self.run(_rebuild, description="rebuild occupancy")

    def release_assignment(
        self,
        priority_key: int,
        *,
        requeue_preferences: Optional[tuple[str, ...]] = None,
    ) -> tuple[Optional[Assignment], Optional[AllocationRequest]]:
        """Delete an assignment with its seat; optionally re-queue the holder."""

        def _release() -> tuple[Optional[Assignment], Optional[AllocationRequest]]:
            with self._repository.transaction() as tx:
                assignment = tx.get_assignment(priority_key)
                if assignment is None:
                    return None, None
                tx.delete_assignment(priority_key)
                if tx.get_facility(assignment.facility_id) is not None:
                    self._ledger.release(tx, assignment.facility_id)
                new_request = None
                if requeue_preferences:
                    new_request = tx.insert_request(
                        AllocationRequest(
                            priority_key=priority_key,
                            preferences=tuple(requeue_preferences),
                            submitted_at=utc_now(),
                        )
                    )
                return assignment, new_request

        return self.run(_release, description=f"release priority_key={priority_key}")

    def evict_excess(self, facility_id: str) -> list[tuple[Assignment, AllocationRequest]]:
        """Drop the lowest-priority holders beyond capacity and re-queue them."""

        def _evict() -> list[tuple[Assignment, AllocationRequest]]:
            with self._repository.transaction() as tx:
                facility = tx.get_facility(facility_id)
                if facility is None:
                    return []
                holders = tx.list_assignments_for_facility(facility_id)
                excess = holders[facility.capacity:]
                evicted: list[tuple[Assignment, AllocationRequest]] = []
                now = utc_now()
                for holder in excess:
                    tx.delete_assignment(holder.priority_key)
                    requeued = tx.insert_request(
                        AllocationRequest(
                            priority_key=holder.priority_key,
                            preferences=(facility_id,),
                            submitted_at=now,
                            displaced_from=facility_id,
                        )
                    )
                    evicted.append((holder, requeued))
                self._ledger.rebuild(tx, [facility], holders[: facility.capacity])
                return evicted

        return self.run(_evict, description=f"evict excess facility={facility_id}")
