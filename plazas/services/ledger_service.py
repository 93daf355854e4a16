"""Occupied-seat bookkeeping for facilities.

The `occupied` column is a cache of "how many assignments point here". Every
write goes through a `StoreTransaction` opened by the consistency coordinator,
and `rebuild` can recompute the cache from the assignments at any time.
"""

from __future__ import annotations

from collections import Counter
from typing import Iterable, Optional, Sequence

from plazas.domain.models import Assignment, Facility, FacilityCorrection
from plazas.repository.data_repository import ConcurrentModificationError, StoreTransaction
from plazas.utils.logger import get_logger


logger = get_logger(__name__)


class FacilityNotFoundError(LookupError):
    """Raised when a ledger operation targets a facility that does not exist."""


class CapacityLedger:
    """Reserve, release and reconcile occupied counts inside a transaction."""

    def _load(
        self,
        tx: StoreTransaction,
        facility_id: str,
        expected_version: Optional[int],
    ) -> Facility:
        facility = tx.get_facility(facility_id)
        if facility is None:
            raise FacilityNotFoundError(f"Facility {facility_id} does not exist")
        if expected_version is not None and facility.version != expected_version:
            raise ConcurrentModificationError(
                f"Facility {facility_id} moved from version {expected_version} to {facility.version}"
            )
        return facility

    def try_reserve(
        self,
        tx: StoreTransaction,
        facility_id: str,
        expected_version: Optional[int] = None,
    ) -> bool:
        facility = self._load(tx, facility_id, expected_version)
        if facility.occupied >= facility.capacity:
            return False
        tx.write_occupancy(facility_id, facility.occupied + 1, facility.version)
        return True

    def release(
        self,
        tx: StoreTransaction,
        facility_id: str,
        expected_version: Optional[int] = None,
    ) -> None:
        facility = self._load(tx, facility_id, expected_version)
        tx.write_occupancy(facility_id, max(0, facility.occupied - 1), facility.version)

    def reset(self, tx: StoreTransaction, facilities: Iterable[Facility]) -> None:
        for facility in facilities:
            if facility.occupied != 0:
                tx.write_occupancy(facility.facility_id, 0, facility.version)

    def rebuild(
        self,
        tx: StoreTransaction,
        facilities: Sequence[Facility],
        assignments: Iterable[Assignment],
    ) -> list[FacilityCorrection]:
        """Overwrite drifted counters with the true assignment counts."""
        counts = Counter(assignment.facility_id for assignment in assignments)
        corrections: list[FacilityCorrection] = []
        for facility in facilities:
            actual = counts.get(facility.facility_id, 0)
            if actual == facility.occupied:
                continue
            tx.write_occupancy(facility.facility_id, actual, facility.version)
            correction = FacilityCorrection(
                facility_id=facility.facility_id,
                previous_occupied=facility.occupied,
                corrected_occupied=actual,
                capacity=facility.capacity,
            )
            corrections.append(correction)
            logger.info(
                "Occupancy corrected | facility_id=%s | previous=%s | actual=%s",
                facility.facility_id,
                facility.occupied,
                actual,
            )

        known_ids = {facility.facility_id for facility in facilities}
        orphaned = sorted(set(counts) - known_ids)
        if orphaned:
            logger.warning("Assignments reference unknown facilities | facility_ids=%s", orphaned)
        return corrections
