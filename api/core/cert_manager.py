"""
Certificate manager for the certificate lifecycle.

Issue, renew and revoke run as a short state machine behind the global
gate: resolve the ACME account, wire the challenge, talk to the CA,
write the files, update the managed certificate, then hand off to fleet
sync once the gate is released.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path

from config import ensure_under_conf_root
from core.acme_service import AcmeClient, get_cert_info
from core.acme_user_service import get_acme_user_service
from core.cert_gate import get_cert_gate
from core.cert_logger import CertLogger
from core.cert_store import get_cert_store
from core.cert_sync import spawn_sync
from core.challenge import configure_challenge
from core.nginx_control import get_nginx_control
from core.server_tls import get_server_tls
from models.acme_user import ACMEUser
from models.certificate import (
    AutoCertStatus,
    CertificateRequest,
    CertificateResource,
    ManagedCertificate,
    ManualCertificateRequest,
)

logger = logging.getLogger(__name__)

# A previous certificate younger than this is renewed with its existing key
RENEW_WINDOW = timedelta(days=21)


class CertificateError(Exception):
    """Base exception for certificate operations."""

    def __init__(self, message: str, domain: str = None, suggestion: str = None):
        self.message = message
        self.domain = domain
        self.suggestion = suggestion
        super().__init__(message)


class CertificateNotFoundError(CertificateError):
    """Certificate not found."""

    pass


class CertificateConfigError(CertificateError):
    """Certificate request is incomplete."""

    pass


class ResourceIsNilError(CertificateError):
    """No ACME resource to act on."""

    pass


class CertificateFileError(CertificateError):
    """Writing certificate material failed. ``path`` is where to retry."""

    def __init__(self, message: str, path: str, suggestion: str = None):
        super().__init__(message, suggestion=suggestion or f"Check permissions on {path} and retry")
        self.path = path


class CertDirectoryError(CertificateFileError):
    pass


class CertificateWriteError(CertificateFileError):
    pass


class CertificateKeyWriteError(CertificateFileError):
    pass


class OperationState(str, Enum):
    INIT = "init"
    RESOLVE_ACCOUNT = "resolve_account"
    CONFIGURE_CHALLENGE = "configure_challenge"
    OBTAIN = "obtain"
    RENEW = "renew"
    REVOKE = "revoke"
    PERSIST_FILES = "persist_files"
    PERSIST_RECORD = "persist_record"
    SYNC_FLEET = "sync_fleet"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class CertOperation:
    """Progress of one issue or revoke."""

    def __init__(self, kind: str, request: CertificateRequest):
        self.kind = kind
        self.request = request
        self.state = OperationState.INIT
        self.history: list[OperationState] = [OperationState.INIT]
        self.error: Exception | None = None
        self.certificate: ManagedCertificate | None = None
        self.sync_task: asyncio.Task | None = None

    def advance(self, state: OperationState) -> None:
        logger.debug(f"{self.kind} {self.request.server_name}: {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def fail(self, error: Exception) -> None:
        self.error = error
        self.advance(OperationState.FAILED)

    @property
    def succeeded(self) -> bool:
        return self.state == OperationState.SUCCEEDED


def renews_existing(request: CertificateRequest, now: datetime | None = None) -> bool:
    """Whether to renew with the previous resource instead of ordering from scratch."""
    if not request.resource or not request.resource.certificate or not request.not_before:
        return False
    now = now or datetime.now(timezone.utc)
    not_before = request.not_before
    if not_before.tzinfo is None:
        not_before = not_before.replace(tzinfo=timezone.utc)
    return now - not_before <= RENEW_WINDOW


def write_certificate_files(certificate_pem: str, key_pem: str, cert_path: Path, key_path: Path) -> None:
    """
    Write a certificate chain and its private key.

    Both paths are checked against the configuration root before any
    filesystem access. An empty PEM leaves its file untouched. Blocking;
    run in a worker thread.

    Raises:
        SandboxViolationError: A path escapes the configuration root
        CertDirectoryError: The directory could not be created
        CertificateWriteError: The chain could not be written
        CertificateKeyWriteError: The key could not be written
    """
    cert_path = ensure_under_conf_root(cert_path)
    key_path = ensure_under_conf_root(key_path)

    for directory in {cert_path.parent, key_path.parent}:
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise CertDirectoryError(f"Failed to create certificate directory {directory}: {e}", path=str(directory))

    if certificate_pem:
        try:
            cert_path.write_text(certificate_pem)
        except OSError as e:
            raise CertificateWriteError(f"Failed to write certificate {cert_path}: {e}", path=str(cert_path))

    if key_pem:
        try:
            key_path.write_text(key_pem)
            key_path.chmod(0o600)
        except OSError as e:
            raise CertificateKeyWriteError(f"Failed to write private key {key_path}: {e}", path=str(key_path))


class CertManager:
    """
    High-level certificate lifecycle management.

    Every operation holds the global gate for its whole CA exchange, so at
    most one issue, renew or revoke runs at a time in this process.
    """

    def __init__(self):
        self.store = get_cert_store()
        self.users = get_acme_user_service()
        self.gate = get_cert_gate()

    async def _client_for(self, op: CertOperation, log: CertLogger) -> tuple[ACMEUser, AcmeClient]:
        op.advance(OperationState.RESOLVE_ACCOUNT)
        user = await self.users.resolve(op.request.acme_user_id, log)
        log.info("Creating client facilitates communication with the CA server")
        client = await self.users.get_client(user, log)
        return user, client

    async def issue_certificate(self, request: CertificateRequest, log: CertLogger) -> CertOperation:
        """
        Obtain or renew the certificate described by ``request``.

        The previous resource is renewed when its certificate is at most
        21 days old; otherwise a fresh order is placed. On success the
        files are on disk, the managed certificate (if any) is updated and
        fleet sync has been started.

        Raises:
            Whatever failed; the error is also written to ``log``.
        """
        op = CertOperation("issue", request)
        async with self.gate.hold():
            try:
                with log.capture("acme"):
                    await self._issue(op, log)
                op.advance(OperationState.SUCCEEDED)
            except Exception as e:
                logger.error(f"Certificate issue failed for {request.server_name}: {type(e).__name__}: {e}")
                log.error(e)
                op.fail(e)
                raise

        cert = op.certificate
        if cert is not None and cert.sync_node_ids:
            op.sync_task = spawn_sync(cert)
        return op

    async def _issue(self, op: CertOperation, log: CertLogger) -> None:
        request = op.request
        if not request.server_name:
            raise CertificateConfigError(
                "No domains to issue a certificate for", suggestion="Add at least one server_name"
            )

        log.info("Preparing ACME configurations")
        cert_path = request.get_cert_path()
        key_path = request.get_key_path()
        ensure_under_conf_root(cert_path)
        ensure_under_conf_root(key_path)

        user, client = await self._client_for(op, log)

        op.advance(OperationState.CONFIGURE_CHALLENGE)
        previous = request.resource
        async with configure_challenge(request, log) as solver:
            if renews_existing(request):
                op.advance(OperationState.RENEW)
                log.info("Renewing certificate")
                resource = await client.renew(previous, request.server_name, solver, log, request.must_staple)
            else:
                op.advance(OperationState.OBTAIN)
                log.info("Obtaining certificate")
                resource = await client.obtain(
                    request.server_name, request.key_type, solver, log, request.must_staple
                )

        op.advance(OperationState.PERSIST_FILES)
        log.info("Writing certificate to disk")
        await asyncio.to_thread(write_certificate_files, resource.certificate, resource.private_key, cert_path, key_path)
        log.info(f"Certificate written to {cert_path}")
        request.resource = resource

        op.advance(OperationState.PERSIST_RECORD)
        op.certificate = await self._record_issue(request, user, resource, log)

        if request.revoke_old and previous is not None and previous.certificate:
            await self._revoke_superseded(client, previous, log)

        await self.reload_proxy(log)
        self._reload_server_tls(cert_path, key_path, log)

        if op.certificate is not None and op.certificate.sync_node_ids:
            op.advance(OperationState.SYNC_FLEET)
        log.info("Finished")

    async def _record_issue(
        self, request: CertificateRequest, user: ACMEUser, resource: CertificateResource, log: CertLogger
    ) -> ManagedCertificate | None:
        if not request.cert_id:
            return None
        cert = await self.store.get(request.cert_id)
        if cert is None:
            log.info(f"Certificate record {request.cert_id} no longer exists, skipping update")
            return None

        cert.domains = request.server_name
        cert.ssl_certificate_path = str(request.get_cert_path())
        cert.ssl_certificate_key_path = str(request.get_key_path())
        cert.auto_cert = AutoCertStatus.ENABLED
        cert.key_type = request.key_type
        cert.challenge_method = request.challenge_method
        cert.dns_credential_id = request.dns_credential_id
        cert.acme_user_id = user.id
        cert.must_staple = request.must_staple
        cert.disable_cname_following = request.disable_cname_following
        cert.revoke_old = request.revoke_old
        cert.resource = resource
        return await self.store.save(cert)

    async def _revoke_superseded(self, client: AcmeClient, previous: CertificateResource, log: CertLogger) -> None:
        log.info("Revoking old certificate")
        try:
            await client.revoke(previous.certificate)
            log.info("Old certificate revoked")
        except Exception as e:
            logger.warning(f"Failed to revoke old certificate: {e}")
            log.error(f"Failed to revoke old certificate: {e}")

    async def reload_proxy(self, log: CertLogger | None = None) -> None:
        """Reload NGINX. Never raises; problems are logged with their level."""
        if log:
            log.info("Reloading nginx")
        try:
            result = await get_nginx_control().reload()
        except Exception as e:
            logger.warning(f"NGINX reload failed: {e}")
            if log:
                log.error(f"Reload nginx failed: {e}")
            return

        if not result.ok and log:
            log.error(f"Reload nginx failed [{result.level}]: {result.output}")

    def _reload_server_tls(self, cert_path: Path, key_path: Path, log: CertLogger) -> None:
        server_tls = get_server_tls()
        if server_tls.matches(cert_path, key_path):
            if server_tls.reload():
                log.info("Server TLS certificate reloaded")
            else:
                log.error("Failed to reload server TLS certificate")

    async def revoke_certificate(self, request: CertificateRequest, log: CertLogger) -> CertOperation:
        """
        Revoke the certificate in ``request.resource`` with its CA.

        Raises:
            ResourceIsNilError: There is no issued certificate to revoke
        """
        op = CertOperation("revoke", request)
        async with self.gate.hold():
            try:
                with log.capture("acme"):
                    await self._revoke(op, log)
                op.advance(OperationState.SUCCEEDED)
            except Exception as e:
                logger.error(f"Certificate revoke failed for {request.server_name}: {type(e).__name__}: {e}")
                log.error(e)
                op.fail(e)
                raise
        return op

    async def _revoke(self, op: CertOperation, log: CertLogger) -> None:
        request = op.request
        if request.resource is None or not request.resource.certificate:
            raise ResourceIsNilError(
                "resource is nil",
                suggestion="Only certificates issued by this server can be revoked",
            )

        _user, client = await self._client_for(op, log)

        op.advance(OperationState.REVOKE)
        log.info("Revoking certificate")
        await client.revoke(request.resource.certificate)
        log.info("Certificate revoked")

        cert = await self.store.get(request.cert_id) if request.cert_id else None
        if cert is not None and cert.ssl_certificate_path:
            self._reload_server_tls(Path(cert.ssl_certificate_path), Path(cert.ssl_certificate_key_path), log)
        elif request.server_name:
            self._reload_server_tls(request.get_cert_path(), request.get_key_path(), log)
        log.info("Finished")

    async def remove_certificate(self, cert_id: int) -> bool:
        """Delete a managed certificate record. Files on disk are left alone."""
        cert = await self.store.get(cert_id)
        if cert is None:
            raise CertificateNotFoundError(
                f"Certificate {cert_id} not found", suggestion="GET /certificates/ lists managed certificates"
            )
        removed = await self.store.remove(cert)
        logger.info(f"Removed certificate record {cert_id} ({cert.name})")
        return removed

    async def install_synced(self, payload) -> ManagedCertificate:
        """
        Store a certificate pushed by a peer node.

        Raises:
            SandboxViolationError: A target path escapes the configuration root
        """
        cert_path = ensure_under_conf_root(payload.ssl_certificate_path)
        key_path = ensure_under_conf_root(payload.ssl_certificate_key_path)

        await asyncio.to_thread(
            write_certificate_files, payload.ssl_certificate, payload.ssl_certificate_key, cert_path, key_path
        )
        cert = await self.store.upsert_synced(
            payload.name, str(cert_path), str(key_path), payload.key_type
        )
        logger.info(f"Installed synced certificate {payload.name} at {cert_path}")

        await self.reload_proxy()
        if get_server_tls().matches(cert_path, key_path):
            get_server_tls().reload()
        return cert

    async def save_manual(self, data: ManualCertificateRequest, cert_id: int | None = None) -> ManagedCertificate:
        """
        Create or update a hand-managed certificate and write its PEM files.

        Raises:
            CertificateNotFoundError: ``cert_id`` does not exist
            SandboxViolationError: A target path escapes the configuration root
            CertificateFileError: A file could not be written
        """
        cert = None
        if cert_id is not None:
            cert = await self.store.get(cert_id)
            if cert is None:
                raise CertificateNotFoundError(
                    f"Certificate {cert_id} not found", suggestion="GET /certificates/ lists managed certificates"
                )

        cert_path = ensure_under_conf_root(data.ssl_certificate_path)
        key_path = ensure_under_conf_root(data.ssl_certificate_key_path)
        await asyncio.to_thread(
            write_certificate_files, data.ssl_certificate, data.ssl_certificate_key, cert_path, key_path
        )

        cert = cert or ManagedCertificate(auto_cert=AutoCertStatus.DISABLED)
        cert.name = data.name or cert.name or cert_path.parent.name
        cert.ssl_certificate_path = str(cert_path)
        cert.ssl_certificate_key_path = str(key_path)
        cert.key_type = data.key_type
        cert.sync_node_ids = data.sync_node_ids
        try:
            info = await asyncio.to_thread(get_cert_info, cert_path)
            cert.domains = info.dns_names
        except Exception as e:
            logger.debug(f"Cannot read certificate {cert_path}: {e}")

        if cert.id is None:
            cert = await self.store.create(cert)
            logger.info(f"Added certificate {cert.id} ({cert.name}) at {cert_path}")
        else:
            cert = await self.store.save(cert)
            logger.info(f"Updated certificate {cert.id} ({cert.name}) at {cert_path}")
        return cert


# Singleton instance
_cert_manager: CertManager | None = None


def get_cert_manager() -> CertManager:
    """Get the global certificate manager instance."""
    global _cert_manager
    if _cert_manager is None:
        _cert_manager = CertManager()
    return _cert_manager
