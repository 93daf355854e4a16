"""Duplicate and resurrected-request detection."""

from __future__ import annotations

from collections import defaultdict
from typing import Iterable, Mapping, Optional

from plazas.domain.models import AllocationRequest, request_fingerprint
from plazas.repository.data_repository import DataRepository, Tombstone
from plazas.utils.logger import get_logger


logger = get_logger(__name__)


def _creation_order(request: AllocationRequest) -> tuple[str, float]:
    # Unsaved requests sort after every stored one.
    request_id = float("inf") if request.request_id is None else float(request.request_id)
    return (request.submitted_at, request_id)


class DeduplicationGuard:
    """Decides which of several identical submissions is allowed to live.

    Two requests are identical when they share a fingerprint (same submitter,
    same submission time). Deliberately deleted fingerprints are remembered as
    tombstones so a stale writer that re-creates one cannot get it processed.
    """

    def __init__(self, repository: DataRepository) -> None:
        self._repository = repository

    @staticmethod
    def fingerprint(request: AllocationRequest) -> str:
        return request_fingerprint(request)

    def is_duplicate(self, request: AllocationRequest) -> bool:
        fingerprint = self.fingerprint(request)
        tombstone = self._repository.get_tombstone(fingerprint)
        if tombstone is not None and (
            request.request_id is None or tombstone.keeper_request_id != request.request_id
        ):
            return True

        siblings = [
            sibling
            for sibling in self._repository.list_requests_with_fingerprint(fingerprint)
            if sibling.request_id != request.request_id
        ]
        if not siblings:
            return False
        if request.request_id is None:
            return True
        newest = max([*siblings, request], key=_creation_order)
        return newest.request_id != request.request_id

    def scan(
        self,
        requests: Iterable[AllocationRequest],
        tombstones: Optional[Mapping[str, Tombstone]] = None,
    ) -> tuple[list[AllocationRequest], list[AllocationRequest]]:
        """Split requests into (duplicates, survivors).

        Within a fingerprint group the most recently created request survives,
        unless a tombstone already names the keeper (or forbids all of them).
        """
        if tombstones is None:
            tombstones = self._repository.list_tombstones()

        groups: dict[str, list[AllocationRequest]] = defaultdict(list)
        for request in requests:
            groups[self.fingerprint(request)].append(request)

        duplicates: list[AllocationRequest] = []
        survivors: list[AllocationRequest] = []
        for fingerprint, group in groups.items():
            tombstone = tombstones.get(fingerprint)
            if tombstone is None:
                keeper: Optional[AllocationRequest] = max(group, key=_creation_order)
            else:
                keeper = next(
                    (
                        request
                        for request in group
                        if request.request_id is not None
                        and request.request_id == tombstone.keeper_request_id
                    ),
                    None,
                )
            for request in group:
                if request is keeper:
                    survivors.append(request)
                else:
                    duplicates.append(request)

        if duplicates:
            logger.info(
                "Duplicate scan completed | duplicates=%s | survivors=%s",
                len(duplicates),
                len(survivors),
            )
        survivors.sort(key=lambda item: (item.priority_key, _creation_order(item)))
        return duplicates, survivors
