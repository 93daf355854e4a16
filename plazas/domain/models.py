"""Domain models for seat ("plaza") allocation."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional


class OutcomeKind(str, Enum):
    ASSIGNED = "ASSIGNED"
    DISPLACED = "DISPLACED"
    UNASSIGNABLE = "UNASSIGNABLE"
    ALREADY_RESOLVED = "ALREADY_RESOLVED"
    DUPLICATE_REMOVED = "DUPLICATE_REMOVED"
    RELEASED = "RELEASED"
    REASSIGNING = "REASSIGNING"
    EVICTED = "EVICTED"


@dataclass(frozen=True)
class Facility:
    facility_id: str
    name: str
    capacity: int
    occupied: int = 0
    locality: str = ""
    municipality: str = ""
    version: int = 0

    @property
    def spare_capacity(self) -> int:
        return max(0, self.capacity - self.occupied)

    @property
    def is_full(self) -> bool:
        return self.occupied >= self.capacity


@dataclass(frozen=True)
class AllocationRequest:
    """A pending request; `request_id` is None until the store persists it."""

    priority_key: int
    preferences: tuple[str, ...]
    submitted_at: str
    submitter: Optional[str] = None
    displaced_from: Optional[str] = None
    request_id: Optional[int] = None


@dataclass(frozen=True)
class Assignment:
    priority_key: int
    facility_id: str
    created_at: str
    displaced_from: Optional[str] = None


@dataclass(frozen=True)
class HistoryRecord:
    priority_key: int
    outcome: OutcomeKind
    message: str
    recorded_at: str
    facility_id: Optional[str] = None
    record_id: Optional[int] = None


@dataclass(frozen=True)
class Outcome:
    kind: OutcomeKind
    priority_key: int
    facility_id: Optional[str] = None
    displaced_priority_key: Optional[int] = None
    message: str = ""


@dataclass(frozen=True)
class Summary:
    processed_count: int = 0
    assigned_count: int = 0
    unassignable_count: int = 0
    displaced_count: int = 0
    already_resolved_count: int = 0
    duplicate_count: int = 0


@dataclass(frozen=True)
class FacilityCorrection:
    facility_id: str
    previous_occupied: int
    corrected_occupied: int
    capacity: int

    @property
    def overcommitted(self) -> bool:
        return self.corrected_occupied > self.capacity


@dataclass(frozen=True)
class RebalanceReport:
    corrected_facility_count: int
    overcommitted_facility_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class DedupReport:
    duplicate_count: int
    removed_count: int


@dataclass(frozen=True)
class OvercommitReport:
    evicted_count: int
    facility_ids: list[str] = field(default_factory=list)


def request_fingerprint(request: AllocationRequest) -> str:
    """Identify a submission by who sent it and when, not by its store id."""
    identity = request.submitter or f"priority:{request.priority_key}"
    payload = f"{identity}|{request.submitted_at}".encode("utf-8")
    return hashlib.sha256(payload).hexdigest()
