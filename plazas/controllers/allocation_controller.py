"""HTTP controller layer for requests, assignments and allocation passes."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from plazas.controllers.dependencies import get_allocation_engine, get_repository
from plazas.domain.models import AllocationRequest, Assignment, Outcome, OutcomeKind, Summary
from plazas.repository.data_repository import (
    ConcurrentModificationError,
    DataRepository,
    StoreUnavailableError,
)
from plazas.services.allocation_service import (
    AllocationEngine,
    AssignmentNotFoundError,
    DuplicateRequestError,
    RequestNotFoundError,
)
from plazas.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["allocation"])


def _clean_preferences(value: list[str]) -> list[str]:
    cleaned = [item.strip() for item in value]
    if any(not item for item in cleaned):
        raise ValueError("preferences must not contain blank facility ids")
    return cleaned


class RequestSubmission(BaseModel):
    """Input DTO validated before entering service layer."""

    priority_key: int = Field(ge=0)
    preferences: list[str] = Field(min_length=1)
    submitter: Optional[str] = None
    submitted_at: Optional[str] = None

    @field_validator("preferences")
    @classmethod
    def validate_preferences(cls, value: list[str]) -> list[str]:
        return _clean_preferences(value)


class RequestResponse(BaseModel):
    request_id: int
    priority_key: int
    preferences: list[str]
    submitted_at: str
    submitter: Optional[str] = None
    displaced_from: Optional[str] = None

    @classmethod
    def from_domain(cls, request: AllocationRequest) -> "RequestResponse":
        return cls(
            request_id=request.request_id,
            priority_key=request.priority_key,
            preferences=list(request.preferences),
            submitted_at=request.submitted_at,
            submitter=request.submitter,
            displaced_from=request.displaced_from,
        )


class AssignmentResponse(BaseModel):
    priority_key: int
    facility_id: str
    created_at: str
    displaced_from: Optional[str] = None

    @classmethod
    def from_domain(cls, assignment: Assignment) -> "AssignmentResponse":
        return cls(
            priority_key=assignment.priority_key,
            facility_id=assignment.facility_id,
            created_at=assignment.created_at,
            displaced_from=assignment.displaced_from,
        )


class ReassignRequest(BaseModel):
    preferences: Optional[list[str]] = None

    @field_validator("preferences")
    @classmethod
    def validate_preferences(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        if value is None:
            return None
        if not value:
            raise ValueError("preferences must contain at least one facility id when provided")
        return _clean_preferences(value)


class ProcessOneRequest(BaseModel):
    priority_key: int = Field(ge=0)


class OutcomeResponse(BaseModel):
    kind: OutcomeKind
    priority_key: int
    facility_id: Optional[str] = None
    displaced_priority_key: Optional[int] = None
    message: str = ""

    @classmethod
    def from_domain(cls, outcome: Outcome) -> "OutcomeResponse":
        return cls(
            kind=outcome.kind,
            priority_key=outcome.priority_key,
            facility_id=outcome.facility_id,
            displaced_priority_key=outcome.displaced_priority_key,
            message=outcome.message,
        )


class SummaryResponse(BaseModel):
    processed_count: int = Field(ge=0)
    assigned_count: int = Field(ge=0)
    unassignable_count: int = Field(ge=0)
    displaced_count: int = Field(ge=0)
    already_resolved_count: int = Field(ge=0)
    duplicate_count: int = Field(ge=0)

    @classmethod
    def from_domain(cls, summary: Summary) -> "SummaryResponse":
        return cls(
            processed_count=summary.processed_count,
            assigned_count=summary.assigned_count,
            unassignable_count=summary.unassignable_count,
            displaced_count=summary.displaced_count,
            already_resolved_count=summary.already_resolved_count,
            duplicate_count=summary.duplicate_count,
        )


class RebalanceResponse(BaseModel):
    corrected_facility_count: int = Field(ge=0)
    overcommitted_facility_ids: list[str]


class DedupResponse(BaseModel):
    duplicate_count: int = Field(ge=0)
    removed_count: int = Field(ge=0)


class OvercommitResponse(BaseModel):
    evicted_count: int = Field(ge=0)
    facility_ids: list[str]


class HistoryResponse(BaseModel):
    record_id: int
    priority_key: int
    outcome: OutcomeKind
    message: str
    facility_id: Optional[str] = None
    recorded_at: str


def _unavailable(exc: Exception) -> HTTPException:
    logger.error("Store unavailable | error=%s", exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=str(exc),
    )


@router.get("/requests", response_model=list[RequestResponse], status_code=status.HTTP_200_OK)
def list_requests(
    repository: DataRepository = Depends(get_repository),
) -> list[RequestResponse]:
    try:
        return [RequestResponse.from_domain(item) for item in repository.list_pending_requests()]
    except (StoreUnavailableError, ConcurrentModificationError) as exc:
        raise _unavailable(exc) from exc


@router.post("/requests", response_model=RequestResponse, status_code=status.HTTP_201_CREATED)
def submit_request(
    payload: RequestSubmission,
    engine: AllocationEngine = Depends(get_allocation_engine),
) -> RequestResponse:
    """Persist a pending request; allocation happens on the next pass."""
    try:
        saved = engine.submit_request(
            priority_key=payload.priority_key,
            preferences=payload.preferences,
            submitter=payload.submitter,
            submitted_at=payload.submitted_at,
        )
        return RequestResponse.from_domain(saved)
    except DuplicateRequestError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected request submission failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to submit request",
        ) from exc


@router.get("/assignments", response_model=list[AssignmentResponse], status_code=status.HTTP_200_OK)
def list_assignments(
    repository: DataRepository = Depends(get_repository),
) -> list[AssignmentResponse]:
    try:
        return [AssignmentResponse.from_domain(item) for item in repository.list_assignments()]
    except (StoreUnavailableError, ConcurrentModificationError) as exc:
        raise _unavailable(exc) from exc


@router.delete(
    "/assignments/{priority_key}",
    response_model=AssignmentResponse,
    status_code=status.HTTP_200_OK,
)
def release_assignment(
    priority_key: int,
    engine: AllocationEngine = Depends(get_allocation_engine),
) -> AssignmentResponse:
    try:
        return AssignmentResponse.from_domain(engine.release_assignment(priority_key))
    except AssignmentNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected release failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to release assignment",
        ) from exc


@router.post(
    "/assignments/{priority_key}/reassign",
    response_model=RequestResponse,
    status_code=status.HTTP_200_OK,
)
def reassign(
    priority_key: int,
    payload: ReassignRequest,
    engine: AllocationEngine = Depends(get_allocation_engine),
) -> RequestResponse:
    """Return an assignment to the pending set; the next pass places it again."""
    try:
        requeued = engine.reassign(priority_key, preferences=payload.preferences)
        return RequestResponse.from_domain(requeued)
    except AssignmentNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected reassignment failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reassign",
        ) from exc


@router.get("/history", response_model=list[HistoryResponse], status_code=status.HTTP_200_OK)
def list_history(
    priority_key: Optional[int] = None,
    repository: DataRepository = Depends(get_repository),
) -> list[HistoryResponse]:
    try:
        records = repository.list_history(priority_key=priority_key)
    except (StoreUnavailableError, ConcurrentModificationError) as exc:
        raise _unavailable(exc) from exc
    return [
        HistoryResponse(
            record_id=record.record_id,
            priority_key=record.priority_key,
            outcome=record.outcome,
            message=record.message,
            facility_id=record.facility_id,
            recorded_at=record.recorded_at,
        )
        for record in records
    ]


@router.post("/process_all", response_model=SummaryResponse, status_code=status.HTTP_200_OK)
def process_all(
    engine: AllocationEngine = Depends(get_allocation_engine),
) -> SummaryResponse:
    """Wipe every assignment and replay the pending requests in priority order."""
    try:
        return SummaryResponse.from_domain(engine.process_all())
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected full reprocessing failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to reprocess requests",
        ) from exc


@router.post("/process_pending", response_model=SummaryResponse, status_code=status.HTTP_200_OK)
def process_pending(
    engine: AllocationEngine = Depends(get_allocation_engine),
) -> SummaryResponse:
    try:
        return SummaryResponse.from_domain(engine.process_pending())
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected incremental pass failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process pending requests",
        ) from exc


@router.post("/process_one", response_model=OutcomeResponse, status_code=status.HTTP_200_OK)
def process_one(
    payload: ProcessOneRequest,
    engine: AllocationEngine = Depends(get_allocation_engine),
) -> OutcomeResponse:
    try:
        return OutcomeResponse.from_domain(engine.process_priority_key(payload.priority_key))
    except RequestNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected single request failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to process request",
        ) from exc


@router.post("/rebalance", response_model=RebalanceResponse, status_code=status.HTTP_200_OK)
def rebalance(
    engine: AllocationEngine = Depends(get_allocation_engine),
) -> RebalanceResponse:
    try:
        report = engine.rebalance()
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    return RebalanceResponse(
        corrected_facility_count=report.corrected_facility_count,
        overcommitted_facility_ids=report.overcommitted_facility_ids,
    )


@router.post("/remove_duplicates", response_model=DedupResponse, status_code=status.HTTP_200_OK)
def remove_duplicates(
    engine: AllocationEngine = Depends(get_allocation_engine),
) -> DedupResponse:
    try:
        report = engine.remove_duplicates()
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    return DedupResponse(duplicate_count=report.duplicate_count, removed_count=report.removed_count)


@router.post("/correct_overcommit", response_model=OvercommitResponse, status_code=status.HTTP_200_OK)
def correct_overcommit(
    engine: AllocationEngine = Depends(get_allocation_engine),
) -> OvercommitResponse:
    try:
        report = engine.correct_overcommit()
    except StoreUnavailableError as exc:
        raise _unavailable(exc) from exc
    return OvercommitResponse(evicted_count=report.evicted_count, facility_ids=report.facility_ids)
