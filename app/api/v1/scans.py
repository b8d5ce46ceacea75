"""Scan endpoints: start, poll status, read logs and vulnerabilities, cancel."""

from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from app.core.errors import InvalidTransitionError, PersistenceFailure, ScanNotFoundError
from app.schemas.scan import (
    ScanAccepted,
    ScanLogsResponse,
    ScanStatusResponse,
    ScanVulnerabilitiesResponse,
    StartScanRequest,
)
from app.services.lifecycle import ScanLifecycleManager
from app.services.status import ScanStatusService

router = APIRouter()


def get_lifecycle(request: Request) -> ScanLifecycleManager:
    """Lifecycle manager built at startup (see app.main lifespan)."""
    return request.app.state.lifecycle


def get_status_service(request: Request) -> ScanStatusService:
    return request.app.state.status_service


def _not_found(e: ScanNotFoundError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=e.message)


def _unavailable(e: PersistenceFailure) -> HTTPException:
    return HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=e.message)


@router.post("", response_model=ScanAccepted, status_code=status.HTTP_202_ACCEPTED)
async def start_scan(
    body: StartScanRequest,
    lifecycle: Annotated[ScanLifecycleManager, Depends(get_lifecycle)],
) -> ScanAccepted:
    """
    Start a scan of a checked-out workspace.

    Returns immediately with the scan id; poll GET /scans/{scan_id} until the
    status is completed, failed or cancelled.
    """
    try:
        scan_id = await lifecycle.start_scan(body.target, body.mode, body.scanners)
    except PersistenceFailure as e:
        raise _unavailable(e) from e
    return ScanAccepted(scan_id=scan_id, status="pending")


@router.get("/{scan_id}", response_model=ScanStatusResponse)
def get_scan_status(
    scan_id: str,
    service: Annotated[ScanStatusService, Depends(get_status_service)],
) -> ScanStatusResponse:
    """Scan state plus scanner-by-scanner breakdown and severity counts."""
    try:
        return service.get_status(scan_id)
    except ScanNotFoundError as e:
        raise _not_found(e) from e
    except PersistenceFailure as e:
        raise _unavailable(e) from e


@router.get("/{scan_id}/logs", response_model=ScanLogsResponse)
def get_scan_logs(
    scan_id: str,
    service: Annotated[ScanStatusService, Depends(get_status_service)],
    after: Annotated[int | None, Query(ge=0, description="Return only entries with a larger sequence")] = None,
) -> ScanLogsResponse:
    try:
        return service.get_logs(scan_id, after)
    except ScanNotFoundError as e:
        raise _not_found(e) from e
    except PersistenceFailure as e:
        raise _unavailable(e) from e


@router.get("/{scan_id}/vulnerabilities", response_model=ScanVulnerabilitiesResponse)
def get_scan_vulnerabilities(
    scan_id: str,
    service: Annotated[ScanStatusService, Depends(get_status_service)],
) -> ScanVulnerabilitiesResponse:
    """Normalized vulnerabilities, most severe first. Empty until the scan completes."""
    try:
        return service.list_vulnerabilities(scan_id)
    except ScanNotFoundError as e:
        raise _not_found(e) from e
    except PersistenceFailure as e:
        raise _unavailable(e) from e


@router.post("/{scan_id}/cancel", response_model=ScanAccepted)
async def cancel_scan(
    scan_id: str,
    lifecycle: Annotated[ScanLifecycleManager, Depends(get_lifecycle)],
) -> ScanAccepted:
    """Cancel a running scan. 409 when the scan has already finished."""
    try:
        scan = await lifecycle.cancel_scan(scan_id)
    except ScanNotFoundError as e:
        raise _not_found(e) from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message) from e
    except PersistenceFailure as e:
        raise _unavailable(e) from e
    return ScanAccepted(scan_id=scan.id, status=scan.status)
