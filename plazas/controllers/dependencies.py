"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from plazas.repository.data_repository import DataRepository
from plazas.services.allocation_service import AllocationEngine


def get_repository(request: Request) -> DataRepository:
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Repository is not initialized",
        )
    return repository


def get_allocation_engine(request: Request) -> AllocationEngine:
    engine = getattr(request.app.state, "allocation_engine", None)
    if engine is None:
        repository = getattr(request.app.state, "repository", None)
        if repository is not None:
            engine = AllocationEngine(repository=repository)
            request.app.state.allocation_engine = engine
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Allocation engine is not initialized",
        )
    return engine
