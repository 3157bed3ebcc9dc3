"""
Certificate management endpoints.

Issue and revoke run over WebSockets so the operation log can be
streamed while the CA exchange is in progress. Plain HTTP covers
listing, the processing status, the renewal schedule and the
node-to-node sync receiver.
"""

import asyncio
import logging
import secrets

from fastapi import APIRouter, Header, HTTPException, WebSocket, WebSocketDisconnect
from pydantic import ValidationError

from config import SandboxViolationError, settings
from core.acme_service import get_cert_info, validate_certificate_key_match
from core.cert_gate import get_cert_gate
from core.cert_logger import CertLogger
from core.cert_manager import CertificateError, CertificateNotFoundError, get_cert_manager
from core.cert_scheduler import get_cert_scheduler
from core.cert_store import get_cert_store
from core.cert_sync import NODE_SECRET_HEADER
from models.certificate import (
    CertificateListResponse,
    CertificateRequest,
    CertificateResponse,
    IssueCertificateRequest,
    ManualCertificateRequest,
    OperationFrame,
    ProcessingStatus,
    SyncCertificatePayload,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/certificates", tags=["SSL Certificates"])


async def _send_frame(websocket: WebSocket, frame: OperationFrame) -> bool:
    """Send one frame; False once the client is gone."""
    try:
        await websocket.send_json(frame.model_dump(mode="json", exclude_none=True))
        return True
    except (WebSocketDisconnect, RuntimeError):
        return False


async def _forward_log(websocket: WebSocket, log: CertLogger) -> None:
    """Relay operation log lines until the log closes or the client leaves."""
    connected = True
    async for line in log.stream():
        if connected:
            connected = await _send_frame(websocket, OperationFrame(status="info", message=line))


async def _wait_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass


async def _close(websocket: WebSocket) -> None:
    try:
        await websocket.close()
    except RuntimeError:
        pass


def _error_message(e: Exception) -> str:
    return getattr(e, "message", None) or str(e) or type(e).__name__


@router.get(
    "/",
    response_model=CertificateListResponse,
    summary="List Managed Certificates",
    description="""
    List every certificate under management, including ones pushed by
    peer nodes (`auto_cert = 2`).

    Key material is never returned. Use `GET /certificates/{cert_id}` to
    include the parsed certificate file.
    """,
)
async def list_certificates() -> CertificateListResponse:
    certs = await get_cert_store().list_certificates()
    return CertificateListResponse(
        certificates=[CertificateResponse.from_certificate(cert) for cert in certs], total=len(certs)
    )


@router.get(
    "/processing",
    response_model=ProcessingStatus,
    summary="Certificate Operation In Progress",
    description="Whether an issue, renew or revoke currently holds the certificate gate.",
)
async def get_processing_status() -> ProcessingStatus:
    return ProcessingStatus(processing=get_cert_gate().is_processing())


@router.websocket("/processing/ws")
async def processing_status_ws(websocket: WebSocket):
    """Stream `{"processing": bool}` on every change, starting with the current value."""
    await websocket.accept()
    gate = get_cert_gate()
    queue = gate.subscribe()
    disconnected = asyncio.create_task(_wait_disconnect(websocket))
    try:
        while True:
            update = asyncio.create_task(queue.get())
            await asyncio.wait({update, disconnected}, return_when=asyncio.FIRST_COMPLETED)
            if not update.done():
                update.cancel()
                break
            await websocket.send_json({"processing": update.result()})
    except (WebSocketDisconnect, RuntimeError):
        pass
    finally:
        logger.debug("Processing status listener disconnected")
        disconnected.cancel()
        gate.unsubscribe(queue)


@router.post(
    "/renewal-check",
    summary="Run Renewal Sweep Now",
    description="""
    Run the auto-renewal sweep immediately instead of waiting for the
    next scheduled run. Returns counts of renewed, skipped and failed
    certificates. Individual outcomes are recorded as notifications.
    """,
)
async def trigger_renewal_check() -> dict:
    return await get_cert_scheduler().trigger_renewal_check()


@router.get(
    "/renewal-schedule",
    summary="Renewal Schedule",
    description="Next run time of each scheduled renewal job.",
)
async def get_renewal_schedule() -> dict:
    scheduler = get_cert_scheduler()
    return {
        "interval_minutes": settings.cert_check_interval_minutes,
        "renewal_interval_days": settings.cert_renewal_interval,
        "jobs": scheduler.get_next_run_times(),
    }


@router.put(
    "/sync",
    response_model=CertificateResponse,
    summary="Receive Certificate From Peer",
    description="""
    Server-to-server endpoint used by fleet sync. The `X-Node-Secret`
    header must match this node's `NODE_SECRET`.

    The certificate and key must match, and both target paths must lie
    under the NGINX configuration root. The stored record is marked as
    synced (`auto_cert = 2`) so this node does not renew it itself.
    """,
    responses={
        401: {"description": "Missing or wrong node secret"},
        400: {"description": "Certificate and key do not match, or a path is outside the configuration root"},
    },
)
async def receive_synced_certificate(
    payload: SyncCertificatePayload,
    x_node_secret: str = Header("", alias=NODE_SECRET_HEADER),
) -> CertificateResponse:
    if not settings.node_secret or not secrets.compare_digest(
        x_node_secret.encode("utf-8"), settings.node_secret.encode("utf-8")
    ):
        raise HTTPException(
            status_code=401,
            detail={
                "error": "invalid_node_secret",
                "message": "Node secret is missing or does not match",
                "suggestion": "Set the peer's token to this node's NODE_SECRET",
            },
        )

    try:
        matches = validate_certificate_key_match(
            payload.ssl_certificate.encode("utf-8"), payload.ssl_certificate_key.encode("utf-8")
        )
    except ValueError as e:
        matches = False
        logger.warning(f"Cannot parse synced certificate {payload.name}: {e}")
    if not matches:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "key_mismatch",
                "message": f"Certificate and private key for {payload.name} do not match",
                "suggestion": "Re-issue the certificate on the sending node",
            },
        )

    try:
        cert = await get_cert_manager().install_synced(payload)
    except SandboxViolationError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "path_not_allowed", "message": e.message, "suggestion": e.suggestion},
        )
    except CertificateError as e:
        raise HTTPException(
            status_code=500,
            detail={"error": "certificate_write_error", "message": e.message, "suggestion": e.suggestion},
        )

    return CertificateResponse.from_certificate(cert)


@router.get(
    "/{cert_id}",
    response_model=CertificateResponse,
    summary="Get Managed Certificate",
    description="""
    Get one managed certificate. When its certificate file can be read,
    `info` carries the subject, issuer, validity window, SANs and
    fingerprint.
    """,
    responses={404: {"description": "Certificate not found"}},
)
async def get_certificate(cert_id: int) -> CertificateResponse:
    cert = await get_cert_store().get(cert_id)
    if cert is None:
        raise HTTPException(
            status_code=404,
            detail={
                "error": "certificate_not_found",
                "message": f"Certificate {cert_id} not found",
                "suggestion": "Use GET /certificates/ to list managed certificates",
            },
        )

    info = None
    if cert.ssl_certificate_path:
        try:
            info = await asyncio.to_thread(get_cert_info, cert.ssl_certificate_path)
        except Exception as e:
            logger.debug(f"Cannot read certificate file for {cert.name}: {e}")
    return CertificateResponse.from_certificate(cert, info=info)


async def _save_manual(data: ManualCertificateRequest, cert_id: int | None = None) -> CertificateResponse:
    try:
        cert = await get_cert_manager().save_manual(data, cert_id)
    except CertificateNotFoundError as e:
        raise HTTPException(
            status_code=404,
            detail={"error": "certificate_not_found", "message": e.message, "suggestion": e.suggestion},
        )
    except SandboxViolationError as e:
        raise HTTPException(
            status_code=400,
            detail={"error": "path_not_allowed", "message": e.message, "suggestion": e.suggestion},
        )
    except CertificateError as e:
        raise HTTPException(
            status_code=500,
            detail={"error": "certificate_write_error", "message": e.message, "suggestion": e.suggestion},
        )
    return CertificateResponse.from_certificate(cert)


@router.post(
    "/",
    response_model=CertificateResponse,
    status_code=201,
    summary="Add Certificate Manually",
    description="""
    Register a certificate obtained outside ACME. The supplied PEM
    bodies are written to the given paths, which must lie under the
    NGINX configuration root. The record does not take part in the
    renewal sweep.
    """,
    responses={400: {"description": "A path is outside the configuration root"}},
)
async def add_certificate(data: ManualCertificateRequest) -> CertificateResponse:
    return await _save_manual(data)


@router.put(
    "/{cert_id}",
    response_model=CertificateResponse,
    summary="Modify Certificate",
    description="""
    Update a certificate's name, paths and sync targets, writing any
    PEM body that is supplied. Empty bodies leave the files on disk
    as they are.
    """,
    responses={
        404: {"description": "Certificate not found"},
        400: {"description": "A path is outside the configuration root"},
    },
)
async def modify_certificate(cert_id: int, data: ManualCertificateRequest) -> CertificateResponse:
    return await _save_manual(data, cert_id)


@router.delete(
    "/{cert_id}",
    summary="Remove Managed Certificate",
    description="""
    Stop managing a certificate. Rows sharing its site config are removed
    with it. Files on disk and the CA-side certificate are left untouched;
    use the revoke WebSocket to revoke.
    """,
    responses={404: {"description": "Certificate not found"}},
)
async def delete_certificate(cert_id: int) -> dict:
    try:
        await get_cert_manager().remove_certificate(cert_id)
    except CertificateNotFoundError as e:
        raise HTTPException(
            status_code=404,
            detail={"error": "certificate_not_found", "message": e.message, "suggestion": e.suggestion},
        )
    return {"success": True, "message": f"Certificate {cert_id} removed"}


async def _prepare_issue(name: str, payload: IssueCertificateRequest) -> CertificateRequest:
    store = get_cert_store()
    cert = await store.first_or_create(name, payload.key_type)
    if payload.sync_node_ids is not None:
        cert.sync_node_ids = payload.sync_node_ids
        await store.save(cert)

    request = CertificateRequest(cert_id=cert.id, **payload.model_dump(exclude={"sync_node_ids"}))
    if cert.ssl_certificate_path:
        try:
            info = await asyncio.to_thread(get_cert_info, cert.ssl_certificate_path)
            request.resource = cert.resource
            request.not_before = info.not_before
        except Exception as e:
            logger.debug(f"No readable certificate for {name}, ordering a new one: {e}")
    return request


async def _finish_log(log: CertLogger, forwarder: asyncio.Task) -> None:
    await log.close()
    await forwarder


@router.websocket("/{name}/issue")
async def issue_certificate_ws(websocket: WebSocket, name: str):
    """
    Issue (or renew) the certificate for site config ``name``.

    The client sends one IssueCertificateRequest frame. The server streams
    `{"status": "info"}` log frames followed by exactly one terminal
    `success` or `error` frame, then closes.
    """
    await websocket.accept()
    try:
        payload = IssueCertificateRequest.model_validate(await websocket.receive_json())
    except WebSocketDisconnect:
        return
    except (ValidationError, ValueError) as e:
        await _send_frame(websocket, OperationFrame(status="error", message=str(e)))
        await _close(websocket)
        return

    try:
        request = await _prepare_issue(name, payload)
        log = CertLogger(request.cert_id)
    except Exception as e:
        logger.error(f"Could not prepare certificate {name}: {e}")
        await _send_frame(websocket, OperationFrame(status="error", message=_error_message(e)))
        await _close(websocket)
        return

    forwarder = asyncio.create_task(_forward_log(websocket, log))
    try:
        await get_cert_manager().issue_certificate(request, log)
        frame = OperationFrame(
            status="success",
            message="Issued certificate successfully",
            ssl_certificate=str(request.get_cert_path()),
            ssl_certificate_key=str(request.get_key_path()),
            key_type=request.key_type,
        )
    except Exception as e:
        frame = OperationFrame(status="error", message=_error_message(e))
    finally:
        await _finish_log(log, forwarder)

    await _send_frame(websocket, frame)
    await _close(websocket)


@router.websocket("/{cert_id}/revoke")
async def revoke_certificate_ws(websocket: WebSocket, cert_id: int):
    """
    Revoke a managed certificate with its CA and stop managing it.

    No request frame is needed. Log frames are streamed, then one terminal
    `success` or `error` frame.
    """
    await websocket.accept()

    store = get_cert_store()
    try:
        cert = await store.get(cert_id)
        if cert is None:
            raise CertificateNotFoundError(f"certificate {cert_id} does not exist")
        request = CertificateRequest.from_certificate(cert)
        log = CertLogger(cert.id)
    except Exception as e:
        await _send_frame(websocket, OperationFrame(status="error", message=f"Certificate not found: {_error_message(e)}"))
        await _close(websocket)
        return

    forwarder = asyncio.create_task(_forward_log(websocket, log))
    try:
        await get_cert_manager().revoke_certificate(request, log)
    except Exception as e:
        await _finish_log(log, forwarder)
        await _send_frame(
            websocket, OperationFrame(status="error", message=f"Failed to revoke certificate: {_error_message(e)}")
        )
        await _close(websocket)
        return

    await _finish_log(log, forwarder)
    try:
        await store.remove(cert)
    except Exception as e:
        logger.error(f"Revoked certificate {cert_id} but could not remove it: {e}")
        frame = OperationFrame(
            status="error", message=f"Certificate revoked but could not be removed: {_error_message(e)}"
        )
    else:
        logger.info(f"Revoked and removed certificate {cert_id} ({cert.name})")
        frame = OperationFrame(status="success", message="Certificate revoked successfully")
    await _send_frame(websocket, frame)
    await _close(websocket)
