from __future__ import annotations

from datetime import date

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from healthlog.api.deps import get_current_user_id, get_entry_service
from healthlog.api.schemas.entries import (
    CreateEntryRequest,
    DailySummaryResponse,
    EntryListResponse,
    EntryResponse,
    UpdateEntryRequest,
)
from healthlog.entries.service import (
    EntryConflictError,
    EntryNotFoundError,
    EntryService,
    entry_snapshot_to_dict,
)

router = APIRouter(prefix="/entries", tags=["entries"])


@router.get("", response_model=EntryListResponse)
def list_entries(
    limit: int = Query(default=30, ge=1, le=365),
    user_id: str = Depends(get_current_user_id),
    service: EntryService = Depends(get_entry_service),
) -> EntryListResponse:
    items = service.list_recent(user_id, limit=limit)
    return EntryListResponse(items=[EntryResponse.model_validate(entry_snapshot_to_dict(item)) for item in items])


@router.get("/dashboard/summary", response_model=DailySummaryResponse)
def get_dashboard_summary(
    day: date | None = None,
    user_id: str = Depends(get_current_user_id),
    service: EntryService = Depends(get_entry_service),
) -> DailySummaryResponse:
    summary = service.get_daily_summary(user_id, day or date.today())
    return DailySummaryResponse(
        day=summary.day,
        calories=summary.calories,
        sleep=summary.sleep,
        workouts=summary.workouts,
        heart_rate=summary.heart_rate,
        steps=summary.steps,
        symptoms=summary.symptoms,
        mood=summary.mood,
        water_intake=summary.water_intake,
        food_intake=summary.food_intake,
    )


@router.post("", response_model=EntryResponse, status_code=status.HTTP_201_CREATED)
def create_entry(
    request: CreateEntryRequest,
    user_id: str = Depends(get_current_user_id),
    service: EntryService = Depends(get_entry_service),
) -> EntryResponse:
    values = request.model_dump(exclude={"entry_date"}, exclude_none=True, mode="json")
    try:
        entry = service.create_entry(user_id, request.entry_date, values)
    except EntryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return EntryResponse.model_validate(entry_snapshot_to_dict(entry))


@router.put("/{entry_id}", response_model=EntryResponse)
def update_entry(
    entry_id: int,
    request: UpdateEntryRequest,
    user_id: str = Depends(get_current_user_id),
    service: EntryService = Depends(get_entry_service),
) -> EntryResponse:
    changes = request.model_dump(exclude_unset=True, exclude_none=True)
    if "food_intake" in changes:
        changes["food_intake"] = [item.model_dump(mode="json") for item in request.food_intake or []]
    if "mood" in changes:
        changes["mood"] = changes["mood"].value
    try:
        entry = service.update_entry(user_id, entry_id, changes)
    except EntryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except EntryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)) from exc
    return EntryResponse.model_validate(entry_snapshot_to_dict(entry))


@router.delete("/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_entry(
    entry_id: int,
    user_id: str = Depends(get_current_user_id),
    service: EntryService = Depends(get_entry_service),
) -> Response:
    try:
        service.delete_entry(user_id, entry_id)
    except EntryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return Response(status_code=status.HTTP_204_NO_CONTENT)
