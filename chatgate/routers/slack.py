"""Slack integration routes.

Connection lifecycle, the OAuth redirect target, discovery scans and the
analysis job queue.  Gateway errors raised by the services are turned into
HTTP responses by the handler registered in :mod:`chatgate.main`.
"""

from __future__ import annotations

import logging
from typing import List
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException
from fastapi import Query
from fastapi import Request
from fastapi import status
from fastapi.responses import RedirectResponse

from chatgate.crud import crud
from chatgate.errors import GatewayError
from chatgate.gateway import Gateway
from chatgate.gateway import get_gateway
from chatgate.schemas.schemas import AuthenticateResponse
from chatgate.schemas.schemas import CancelRequest
from chatgate.schemas.schemas import ConfigureRequest
from chatgate.schemas.schemas import ConnectionStatusOut
from chatgate.schemas.schemas import JobHistoryOut
from chatgate.schemas.schemas import JobOut
from chatgate.schemas.schemas import JoinChannelResponse
from chatgate.schemas.schemas import RetryResponse
from chatgate.schemas.schemas import ScanHistoryOut
from chatgate.schemas.schemas import ScanResult
from chatgate.schemas.schemas import SchedulerConfigOut
from chatgate.schemas.schemas import SchedulerConfigUpdate
from chatgate.schemas.schemas import SchedulerStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/slack", tags=["slack"])


def _status_out(gateway: Gateway) -> ConnectionStatusOut:
    state = gateway.connection.get_state()
    return ConnectionStatusOut(state=state, status=gateway.connection.get_status(), phase=state.phase)


# ---------------------------------------------------------------------------
# Connection
# ---------------------------------------------------------------------------


@router.get("/status", response_model=ConnectionStatusOut)
async def get_status(gateway: Gateway = Depends(get_gateway)):
    return _status_out(gateway)


@router.post("/configure", response_model=ConnectionStatusOut)
async def configure(body: ConfigureRequest, gateway: Gateway = Depends(get_gateway)):
    await gateway.connection.configure(body.client_id, body.client_secret)
    return _status_out(gateway)


@router.post("/authenticate", response_model=AuthenticateResponse)
async def authenticate(gateway: Gateway = Depends(get_gateway)):
    url = await gateway.connection.authenticate()
    return AuthenticateResponse(authorize_url=url, state=gateway.connection.get_state())


@router.get("/oauth/callback")
async def oauth_callback(
    request: Request,
    code: Optional[str] = Query(None),
    state: Optional[str] = Query(None),
    error: Optional[str] = Query(None),
    gateway: Gateway = Depends(get_gateway),
):
    """Slack redirects here after consent.

    The response is always a redirect to a URL without ``code``/``state`` so
    the authorization code never lingers in the browser history.
    """

    target = gateway.settings.app_public_url or str(request.url_for("get_status"))

    if error:
        # User pressed "Cancel" on the consent screen.
        logger.info("Slack OAuth declined: %s", error)
        return RedirectResponse(_with_query(target, slack="error", reason=error), status_code=status.HTTP_302_FOUND)

    try:
        connection = await gateway.oauth.handle_code(code, state)
    except GatewayError as exc:
        logger.warning("Slack OAuth callback failed: %s", exc.category.value)
        return RedirectResponse(
            _with_query(target, slack="error", reason=exc.category.value),
            status_code=status.HTTP_302_FOUND,
        )

    if not connection.is_connected:
        # A disconnect landed while the code was being exchanged.
        return RedirectResponse(_with_query(target, slack="disconnected"), status_code=status.HTTP_302_FOUND)

    return RedirectResponse(_with_query(target, slack="connected"), status_code=status.HTTP_302_FOUND)


def _with_query(url: str, **params: str) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


@router.post("/disconnect", response_model=ConnectionStatusOut)
async def disconnect(gateway: Gateway = Depends(get_gateway)):
    await gateway.connection.disconnect()
    return _status_out(gateway)


@router.get("/credentials/sync")
async def credential_sync(gateway: Gateway = Depends(get_gateway)):
    return await gateway.connection.check_credential_sync()


@router.post("/channels/{channel_id}/join", response_model=JoinChannelResponse)
async def join_channel(channel_id: str, gateway: Gateway = Depends(get_gateway)):
    conversation = await gateway.connection.join_channel(channel_id)
    return JoinChannelResponse(id=conversation.id, name=conversation.name, is_member=conversation.is_member)


# ---------------------------------------------------------------------------
# Discovery scans
# ---------------------------------------------------------------------------


@router.post("/scan", response_model=ScanResult)
async def run_scan(gateway: Gateway = Depends(get_gateway)):
    result = await gateway.scheduler.run_manual_scan()
    if result.skipped:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=result.error)
    return result


@router.get("/scans", response_model=List[ScanHistoryOut])
async def list_scans(limit: int = Query(50, ge=1, le=500), gateway: Gateway = Depends(get_gateway)):
    return await gateway.database.read(
        lambda db: [ScanHistoryOut.model_validate(row) for row in crud.list_scan_history(db, limit=limit)]
    )


@router.get("/scheduler", response_model=SchedulerConfigOut)
async def get_scheduler_config(gateway: Gateway = Depends(get_gateway)):
    return gateway.scheduler.get_config()


@router.get("/scheduler/status", response_model=SchedulerStatus)
async def get_scheduler_status(gateway: Gateway = Depends(get_gateway)):
    return gateway.scheduler.get_status()


@router.put("/scheduler", response_model=SchedulerConfigOut)
async def update_scheduler_config(body: SchedulerConfigUpdate, gateway: Gateway = Depends(get_gateway)):
    scheduler_changes = body.model_dump(exclude_unset=True, exclude={"discovery"})
    was_running = gateway.scheduler.is_running
    config = await gateway.scheduler.update_config(scheduler_changes, body.discovery)

    # Turning the scheduler on from the API starts it right away.
    if config.scheduler.enabled and not was_running:
        gateway.scheduler.start()
    return gateway.scheduler.get_config()


# ---------------------------------------------------------------------------
# Analysis jobs
# ---------------------------------------------------------------------------


@router.get("/jobs", response_model=List[JobOut])
async def list_jobs(gateway: Gateway = Depends(get_gateway)):
    return gateway.orchestrator.get_active_jobs()


@router.get("/jobs/history", response_model=List[JobHistoryOut])
async def list_job_history(
    limit: int = Query(50, ge=1, le=500),
    status_filter: Optional[str] = Query(None, alias="status"),
    gateway: Gateway = Depends(get_gateway),
):
    return await gateway.database.read(
        lambda db: [JobHistoryOut.model_validate(row) for row in crud.list_job_history(db, limit=limit, status=status_filter)]
    )


@router.post("/jobs/{job_id}/cancel", status_code=status.HTTP_204_NO_CONTENT)
async def cancel_job(job_id: str, body: Optional[CancelRequest] = None, gateway: Gateway = Depends(get_gateway)):
    reason = body.reason if body is not None else CancelRequest().reason
    if not await gateway.orchestrator.cancel(job_id, reason):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")


@router.post("/jobs/{job_id}/retry", response_model=RetryResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_job(job_id: str, gateway: Gateway = Depends(get_gateway)):
    new_job_id = await gateway.orchestrator.retry(job_id)
    return RetryResponse(job_id=new_job_id, retried_from=job_id)
