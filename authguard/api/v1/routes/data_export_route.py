# authguard/api/v1/routes/data_export_route.py

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Response

from authguard.api.deps import (
    get_current_user,
    get_data_export_service,
    get_event_service,
    limit_by_user,
    require_verified_session,
)
from authguard.schemas.data_export_schema import DataExportResponse, DataExportsListResponse
from authguard.services import email_service
from authguard.services.account_event_service import AccountEventType
from authguard.services.data_export_service import DataExportError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/account/data-exports", tags=["Data Export"])


@router.post("", response_model=DataExportResponse, dependencies=[Depends(limit_by_user("data_export"))])
async def create_export(
    background_tasks: BackgroundTasks,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    exports=Depends(get_data_export_service),
    events=Depends(get_event_service),
):
    try:
        export_id, token = await exports.request_export(user["id"])
    except DataExportError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await events.log_event(
        user["id"], AccountEventType.DATA_EXPORT_REQUESTED,
        device_session_id=session["id"], device=session.get("device"),
    )

    try:
        await email_service.send_data_export_requested(user["email"], session.get("device"))
    except Exception as e:
        logger.warning("Data export request email for %s failed: %s", export_id, e)

    background_tasks.add_task(exports.build_export, export_id, user["id"], token, user["email"])
    return {"id": export_id, "status": "pending"}


@router.get("", response_model=DataExportsListResponse)
async def list_exports(
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    exports=Depends(get_data_export_service),
):
    return {"exports": await exports.list_exports(user["id"])}


@router.get("/{export_id}", response_model=DataExportResponse)
async def export_status(
    export_id: str,
    user: dict = Depends(get_current_user),
    session: dict = Depends(require_verified_session),
    exports=Depends(get_data_export_service),
):
    export = await exports.get_export(export_id, user["id"])
    if not export:
        raise HTTPException(status_code=404, detail="Export not found")
    return export


@router.get("/{export_id}/download")
async def download_export(
    export_id: str,
    token: str = Query(..., min_length=16),
    exports=Depends(get_data_export_service),
):
    """Opened from the emailed link; the one-time token is the credential."""
    try:
        filename, content = await exports.open_download(export_id, token)
    except DataExportError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return Response(
        content=content,
        media_type="application/json",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
