from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, status

from metaindex.api.errors import failure_to_http
from metaindex.core.config import Settings, get_settings
from metaindex.core.results import Failure
from metaindex.domain.models import EntryPermit, EntryState, RegistryEntry, utcnow
from metaindex.schemas.index import EntryOut, EventOut, PingRequest, StatsOut
from metaindex.services.events import get_event_processor
from metaindex.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


def entry_out(entry: RegistryEntry, settings: Settings) -> EntryOut:
    return EntryOut(
        **entry.model_dump(),
        active=entry.is_active(now=utcnow(), valid_duration=settings.ping_valid_duration),
    )


@router.post("/ping", status_code=status.HTTP_204_NO_CONTENT)
async def receive_ping(
    payload: PingRequest,
    request: Request,
    processor=Depends(get_event_processor),
) -> Response:
    remote_addr = request.client.host if request.client else "unknown"
    try:
        result = await processor.accept_ping(payload.client_url, remote_addr)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if isinstance(result, Failure):
        raise failure_to_http(result)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/entries", response_model=list[EntryOut])
async def list_entries(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
    state: EntryState | None = Query(default=None),
    permit: EntryPermit | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[EntryOut]:
    try:
        rows = await repository.list_entries(state=state, permit=permit, limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [entry_out(row, settings) for row in rows]


@router.get("/entries/{entry_id}", response_model=EntryOut)
async def get_entry(
    entry_id: UUID,
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> EntryOut:
    try:
        entry = await repository.get_entry(entry_id)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="entry not found")
    return entry_out(entry, settings)


@router.get("/entries/{entry_id}/events", response_model=list[EventOut])
async def list_entry_events(
    entry_id: UUID,
    repository=Depends(get_repository),
    limit: int = Query(default=10, ge=1, le=100),
) -> list[EventOut]:
    try:
        entry = await repository.get_entry(entry_id)
        if entry is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="entry not found")
        events = await repository.list_entry_events(entry_id, limit=limit)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [EventOut(**event.model_dump(mode="json")) for event in events]


@router.get("/stats", response_model=StatsOut)
async def get_stats(
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> StatsOut:
    try:
        by_state = await repository.count_entries_by_state()
        active = await repository.count_active_entries(valid_since=utcnow() - settings.ping_valid_duration)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    total = sum(by_state.values())
    return StatsOut(total=total, active=active, inactive=total - active, by_state=by_state)
