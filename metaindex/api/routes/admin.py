from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status

from metaindex.api.errors import failure_to_http
from metaindex.api.routes.index import entry_out
from metaindex.core.config import Settings, get_settings
from metaindex.core.results import Failure
from metaindex.core.security import get_admin_principal
from metaindex.domain.models import utcnow
from metaindex.jobs.recovery import RecoveryScanner
from metaindex.schemas.admin import AdminTriggerRequest, PermitPatchRequest, RecoverySummaryOut
from metaindex.schemas.index import EntryOut
from metaindex.services.events import get_event_processor
from metaindex.services.repository import RepositoryUnavailableError, get_repository

router = APIRouter()


def _require_admin(principal) -> None:
    try:
        principal.require_scopes({"index:admin"})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc


@router.post("/trigger", status_code=status.HTTP_204_NO_CONTENT)
async def trigger_metadata_retrieval(
    request: Request,
    payload: AdminTriggerRequest | None = None,
    principal=Depends(get_admin_principal),
    processor=Depends(get_event_processor),
) -> Response:
    _require_admin(principal)

    client_url = payload.client_url if payload else None
    remote_addr = request.client.host if request.client else None
    try:
        result = await processor.accept_admin_trigger(client_url, remote_addr=remote_addr, actor=principal.subject)
        if isinstance(result, Failure):
            raise failure_to_http(result)
        await processor.trigger_metadata_retrieval(result.value)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/recover", response_model=RecoverySummaryOut)
async def recover_unfinished_events(
    principal=Depends(get_admin_principal),
    processor=Depends(get_event_processor),
) -> RecoverySummaryOut:
    _require_admin(principal)

    try:
        summary = await RecoveryScanner(processor).run()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return RecoverySummaryOut(
        processed=summary.processed,
        failed=summary.failed,
        unsupported=summary.unsupported,
        skipped=summary.skipped,
    )


@router.patch("/entries/{entry_id}", response_model=EntryOut)
async def patch_entry_permit(
    entry_id: UUID,
    payload: PermitPatchRequest,
    principal=Depends(get_admin_principal),
    repository=Depends(get_repository),
    settings: Settings = Depends(get_settings),
) -> EntryOut:
    _require_admin(principal)

    try:
        entry = await repository.get_entry(entry_id)
        if entry is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="entry not found")
        entry.permit = payload.permit
        entry.updated_at = utcnow()
        entry = await repository.save_entry(entry)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return entry_out(entry, settings)
