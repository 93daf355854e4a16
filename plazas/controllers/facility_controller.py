"""HTTP controller layer for facility catalogue maintenance."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field, field_validator

from plazas.controllers.dependencies import get_repository
from plazas.domain.models import Facility
from plazas.repository.data_repository import (
    ConcurrentModificationError,
    DataRepository,
    StoreUnavailableError,
)
from plazas.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["facilities"])


class FacilityUpsertRequest(BaseModel):
    name: str = Field(min_length=1)
    capacity: int = Field(ge=0)
    locality: str = ""
    municipality: str = ""

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("name must be non-empty")
        return value.strip()


class FacilityResponse(BaseModel):
    facility_id: str
    name: str
    capacity: int = Field(ge=0)
    occupied: int = Field(ge=0)
    spare_capacity: int = Field(ge=0)
    locality: str
    municipality: str
    version: int = Field(ge=0)

    @classmethod
    def from_domain(cls, facility: Facility) -> "FacilityResponse":
        return cls(
            facility_id=facility.facility_id,
            name=facility.name,
            capacity=facility.capacity,
            occupied=facility.occupied,
            spare_capacity=facility.spare_capacity,
            locality=facility.locality,
            municipality=facility.municipality,
            version=facility.version,
        )


@router.get("/facilities", response_model=list[FacilityResponse], status_code=status.HTTP_200_OK)
def list_facilities(
    repository: DataRepository = Depends(get_repository),
) -> list[FacilityResponse]:
    try:
        return [FacilityResponse.from_domain(item) for item in repository.list_facilities()]
    except (StoreUnavailableError, ConcurrentModificationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc


@router.put(
    "/facilities/{facility_id}",
    response_model=FacilityResponse,
    status_code=status.HTTP_200_OK,
)
def upsert_facility(
    facility_id: str,
    payload: FacilityUpsertRequest,
    repository: DataRepository = Depends(get_repository),
) -> FacilityResponse:
    """Create or update a facility; lowering capacity never evicts holders here."""
    try:
        facility = repository.upsert_facility(
            facility_id=facility_id,
            name=payload.name,
            capacity=payload.capacity,
            locality=payload.locality,
            municipality=payload.municipality,
        )
        return FacilityResponse.from_domain(facility)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(exc),
        ) from exc
    except (StoreUnavailableError, ConcurrentModificationError) as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover
        logger.exception("Unexpected facility upsert failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save facility",
        ) from exc
