"""
Fleet certificate sync.

Pushes a freshly issued certificate to the peer nodes listed on the
managed certificate. Each node is pushed to independently; every
outcome becomes its own notification.
"""

import asyncio
import logging

import httpx
from pydantic import BaseModel, Field

from config import ensure_under_conf_root, settings
from core.node_store import get_node_store
from core.notification import get_notification_store
from models.certificate import ManagedCertificate, SyncCertificatePayload
from models.node import Node

logger = logging.getLogger(__name__)

NODE_SECRET_HEADER = "X-Node-Secret"

# Keeps spawned sync tasks referenced until they finish
_background_tasks: set[asyncio.Task] = set()


class SyncResult(BaseModel):
    node_id: int | None = None
    node_name: str
    status_code: int | None = None
    resp_body: str = ""
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.status_code == 200


def build_sync_payload(cert: ManagedCertificate) -> SyncCertificatePayload:
    """Read the certificate files (inside the configuration root only). Blocking."""
    cert_path = ensure_under_conf_root(cert.ssl_certificate_path)
    key_path = ensure_under_conf_root(cert.ssl_certificate_key_path)
    return SyncCertificatePayload(
        name=cert.name,
        ssl_certificate_path=cert.ssl_certificate_path,
        ssl_certificate_key_path=cert.ssl_certificate_key_path,
        ssl_certificate=cert_path.read_text(),
        ssl_certificate_key=key_path.read_text(),
        key_type=cert.key_type,
    )


async def push_to_node(client: httpx.AsyncClient, node: Node, payload: SyncCertificatePayload) -> SyncResult:
    """PUT the payload to one node. Transport errors are reported, not raised."""
    try:
        response = await client.put(
            f"{node.url}/certificates/sync",
            json=payload.model_dump(mode="json"),
            headers={NODE_SECRET_HEADER: node.token},
        )
    except httpx.HTTPError as e:
        return SyncResult(node_id=node.id, node_name=node.name, error=str(e) or type(e).__name__)
    return SyncResult(node_id=node.id, node_name=node.name, status_code=response.status_code, resp_body=response.text)


async def _notify(cert: ManagedCertificate, result: SyncResult) -> None:
    details = {
        "cert_name": cert.name,
        "env_name": result.node_name,
        "status_code": result.status_code,
        "resp_body": result.error or result.resp_body,
    }
    store = get_notification_store()
    if result.ok:
        await store.success("Sync Certificate Success", "Sync Certificate %{cert_name} to %{env_name} successfully", details)
    else:
        await store.error("Sync Certificate Error", "Sync Certificate %{cert_name} to %{env_name} failed", details)


async def sync_certificate(
    cert: ManagedCertificate, transport: httpx.AsyncBaseTransport | None = None
) -> list[SyncResult]:
    """
    Push ``cert`` to every enabled node in its ``sync_node_ids``.

    Args:
        cert: Managed certificate whose files are on disk
        transport: Optional httpx transport (tests)

    Returns:
        One SyncResult per node, in node id order
    """
    nodes = await get_node_store().get_enabled(cert.sync_node_ids)
    if not nodes:
        return []

    try:
        payload = await asyncio.to_thread(build_sync_payload, cert)
    except Exception as e:
        logger.error(f"Cannot read certificate {cert.name} for sync: {e}")
        await get_notification_store().error(
            "Sync Certificate Error",
            "Sync Certificate %{cert_name} failed: %{error}",
            {"cert_name": cert.name, "error": str(e)},
        )
        return []

    async with httpx.AsyncClient(
        timeout=settings.node_sync_timeout,
        verify=not settings.node_sync_insecure_skip_verify,
        transport=transport,
    ) as client:
        outcomes = await asyncio.gather(*(push_to_node(client, node, payload) for node in nodes), return_exceptions=True)

    results = []
    for node, outcome in zip(nodes, outcomes):
        if isinstance(outcome, BaseException):
            outcome = SyncResult(node_id=node.id, node_name=node.name, error=str(outcome) or type(outcome).__name__)
        results.append(outcome)
        if outcome.ok:
            logger.info(f"Synced certificate {cert.name} to {node.name}")
        else:
            logger.warning(f"Sync of certificate {cert.name} to {node.name} failed: {outcome.error or outcome.status_code}")
        await _notify(cert, outcome)

    return results


def spawn_sync(cert: ManagedCertificate) -> asyncio.Task:
    """Run sync_certificate in the background."""
    task = asyncio.create_task(sync_certificate(cert))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task
