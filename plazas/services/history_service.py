"""Best-effort audit trail of allocation outcomes."""

from __future__ import annotations

from typing import Optional

from plazas.domain.models import OutcomeKind
from plazas.repository.data_repository import DataRepository
from plazas.utils.logger import get_logger


logger = get_logger(__name__)


class HistoryRecorder:
    """Append outcome records; a failed write never undoes an allocation."""

    def __init__(self, repository: DataRepository) -> None:
        self._repository = repository

    def record(
        self,
        priority_key: int,
        outcome: OutcomeKind,
        message: str,
        facility_id: Optional[str] = None,
    ) -> bool:
        try:
            self._repository.append_history(
                priority_key=priority_key,
                outcome=outcome,
                message=message,
                facility_id=facility_id,
            )
        except Exception:
            logger.exception(
                "History write failed | priority_key=%s | outcome=%s",
                priority_key,
                outcome.value,
            )
            return False
        logger.debug(
            "History recorded | priority_key=%s | outcome=%s | facility_id=%s",
            priority_key,
            outcome.value,
            facility_id,
        )
        return True
