"""
Unit tests for the certificate manager.

The ACME client, challenge configuration and NGINX control are mocked;
the gate, the store and the filesystem are real.
"""

import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config import SandboxViolationError
from core.cert_gate import get_cert_gate
from core.cert_logger import CertLogger
from core.cert_manager import (
    CertDirectoryError,
    CertificateConfigError,
    CertificateKeyWriteError,
    CertificateNotFoundError,
    CertificateWriteError,
    OperationState,
    ResourceIsNilError,
    get_cert_manager,
    renews_existing,
    write_certificate_files,
)
from core.cert_store import get_cert_store
from core.nginx_control import ReloadResult
from models.acme_user import ACMEUser
from models.certificate import (
    AutoCertStatus,
    CertificateRequest,
    CertificateResource,
    KeyType,
    SyncCertificatePayload,
)


class TestRenewsExisting:
    NOW = datetime(2026, 5, 1, tzinfo=timezone.utc)

    def _request(self, age_days, certificate="PEM"):
        return CertificateRequest(
            server_name=["example.com"],
            resource=CertificateResource(certificate=certificate),
            not_before=self.NOW - timedelta(days=age_days),
        )

    def test_young_certificate_is_renewed(self):
        assert renews_existing(self._request(20), now=self.NOW) is True

    def test_old_certificate_is_reordered(self):
        assert renews_existing(self._request(22), now=self.NOW) is False

    def test_no_resource_means_obtain(self):
        request = CertificateRequest(server_name=["example.com"], not_before=self.NOW)
        assert renews_existing(request, now=self.NOW) is False

    def test_empty_certificate_means_obtain(self):
        assert renews_existing(self._request(1, certificate=""), now=self.NOW) is False

    def test_naive_not_before_treated_as_utc(self):
        request = self._request(0)
        request.not_before = request.not_before.replace(tzinfo=None)
        assert renews_existing(request, now=self.NOW) is True


class TestWriteCertificateFiles:
    def test_writes_chain_and_private_key(self, conf_root):
        cert_path = conf_root / "ssl" / "example.com_P256" / "fullchain.cer"
        key_path = cert_path.parent / "private.key"

        write_certificate_files("CHAIN", "KEY", cert_path, key_path)

        assert cert_path.read_text() == "CHAIN"
        assert key_path.read_text() == "KEY"
        assert oct(key_path.stat().st_mode & 0o777) == oct(0o600)

    def test_path_outside_root_touches_nothing(self, conf_root, tmp_path):
        outside = tmp_path / "outside" / "fullchain.cer"

        with pytest.raises(SandboxViolationError):
            write_certificate_files("CHAIN", "KEY", conf_root / "ssl" / "fullchain.cer", outside)

        assert not (conf_root / "ssl").exists()
        assert not outside.parent.exists()

    def test_directory_error(self, conf_root):
        (conf_root / "ssl").write_text("not a directory")

        with pytest.raises(CertDirectoryError) as exc_info:
            write_certificate_files("C", "K", conf_root / "ssl" / "a" / "fullchain.cer", conf_root / "ssl" / "a" / "k")
        assert exc_info.value.suggestion

    def test_certificate_write_error(self, conf_root):
        cert_path = conf_root / "ssl" / "fullchain.cer"
        cert_path.mkdir(parents=True)

        with pytest.raises(CertificateWriteError) as exc_info:
            write_certificate_files("C", "K", cert_path, conf_root / "ssl" / "private.key")
        assert exc_info.value.path == str(cert_path)

    def test_key_write_error(self, conf_root):
        key_path = conf_root / "ssl" / "private.key"
        key_path.mkdir(parents=True)

        with pytest.raises(CertificateKeyWriteError):
            write_certificate_files("C", "K", conf_root / "ssl" / "fullchain.cer", key_path)


# Issue / revoke flows


def _user():
    return ACMEUser(id=1, name="ops", email="ops@example.com")


def _resource(make_certificate, domains=("example.com",)):
    cert_pem, key_pem = make_certificate(domains)
    return CertificateResource(domain=domains[0], certificate=cert_pem, private_key=key_pem)


@asynccontextmanager
async def _fake_challenge(request, log):
    log.info("Using HTTP01 challenge provider")
    yield MagicMock()


@pytest.fixture
def acme_client():
    client = MagicMock()
    client.obtain = AsyncMock()
    client.renew = AsyncMock()
    client.revoke = AsyncMock()
    return client


@pytest.fixture
def manager(db, acme_client):
    manager = get_cert_manager()
    manager.users = MagicMock()
    manager.users.resolve = AsyncMock(return_value=_user())
    manager.users.get_client = AsyncMock(return_value=acme_client)
    return manager


@pytest.fixture
def nginx():
    control = MagicMock()
    control.reload = AsyncMock(return_value=ReloadResult(output="", level="info"))
    with patch("core.cert_manager.get_nginx_control", return_value=control):
        yield control


@pytest.fixture
def challenge():
    with patch("core.cert_manager.configure_challenge", _fake_challenge):
        yield


class TestIssue:
    @pytest.mark.asyncio
    async def test_obtain_writes_files_and_updates_record(
        self, manager, acme_client, nginx, challenge, make_certificate, conf_root
    ):
        acme_client.obtain.return_value = _resource(make_certificate)
        cert = await get_cert_store().first_or_create("example.conf", KeyType.EC256)
        request = CertificateRequest(cert_id=cert.id, server_name=["example.com"], key_type=KeyType.EC256)
        log = CertLogger()

        op = await manager.issue_certificate(request, log)

        assert op.succeeded
        assert OperationState.OBTAIN in op.history
        assert OperationState.RENEW not in op.history
        assert request.get_cert_path().read_text() == acme_client.obtain.return_value.certificate

        stored = await get_cert_store().get(cert.id)
        assert stored.auto_cert == AutoCertStatus.ENABLED
        assert stored.domains == ["example.com"]
        assert stored.ssl_certificate_path == str(request.get_cert_path())
        assert stored.acme_user_id == 1
        assert stored.resource.private_key == acme_client.obtain.return_value.private_key

        nginx.reload.assert_awaited_once()
        lines = log.transcript()
        assert "Preparing ACME configurations" in lines
        assert "Obtaining certificate" in lines
        assert lines.rstrip().endswith("Finished")

    @pytest.mark.asyncio
    async def test_recent_certificate_is_renewed(self, manager, acme_client, nginx, challenge, make_certificate):
        previous = _resource(make_certificate)
        acme_client.renew.return_value = _resource(make_certificate)
        request = CertificateRequest(
            server_name=["example.com"],
            resource=previous,
            not_before=datetime.now(timezone.utc) - timedelta(days=3),
        )

        op = await manager.issue_certificate(request, CertLogger())

        assert OperationState.RENEW in op.history
        acme_client.obtain.assert_not_awaited()
        assert acme_client.renew.await_args.args[0] == previous

    @pytest.mark.asyncio
    async def test_reload_failure_does_not_fail_operation(
        self, manager, acme_client, nginx, challenge, make_certificate
    ):
        acme_client.obtain.return_value = _resource(make_certificate)
        nginx.reload.return_value = ReloadResult(output="[emerg] unknown directive", level="emerg")
        log = CertLogger()

        op = await manager.issue_certificate(CertificateRequest(server_name=["example.com"]), log)

        assert op.succeeded
        assert "Reload nginx failed [emerg]: [emerg] unknown directive" in log.transcript()

    @pytest.mark.asyncio
    async def test_acme_failure_is_logged_and_raised(self, manager, acme_client, nginx, challenge):
        acme_client.obtain.side_effect = RuntimeError("urn:ietf:params:acme:error:rateLimited")
        log = CertLogger()

        with pytest.raises(RuntimeError):
            await manager.issue_certificate(CertificateRequest(server_name=["example.com"]), log)

        assert "[ERROR] urn:ietf:params:acme:error:rateLimited" in log.transcript()
        assert get_cert_gate().is_processing() is False
        nginx.reload.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_domains(self, manager, nginx, challenge):
        with pytest.raises(CertificateConfigError):
            await manager.issue_certificate(CertificateRequest(server_name=[]), CertLogger())
        manager.users.resolve.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_revoke_old_failure_only_logged(self, manager, acme_client, nginx, challenge, make_certificate):
        acme_client.obtain.return_value = _resource(make_certificate)
        acme_client.revoke.side_effect = RuntimeError("already revoked")
        request = CertificateRequest(
            server_name=["example.com"], resource=_resource(make_certificate), revoke_old=True
        )
        log = CertLogger()

        op = await manager.issue_certificate(request, log)

        assert op.succeeded
        acme_client.revoke.assert_awaited_once()
        assert "Failed to revoke old certificate: already revoked" in log.transcript()

    @pytest.mark.asyncio
    async def test_sync_started_after_gate_released(self, manager, acme_client, nginx, challenge, make_certificate):
        acme_client.obtain.return_value = _resource(make_certificate)
        cert = await get_cert_store().first_or_create("example.conf", KeyType.RSA2048)
        cert.sync_node_ids = [4]
        await get_cert_store().save(cert)
        seen = []

        def fake_spawn(certificate):
            seen.append((certificate.id, get_cert_gate().is_processing()))
            return None

        with patch("core.cert_manager.spawn_sync", side_effect=fake_spawn):
            op = await manager.issue_certificate(
                CertificateRequest(cert_id=cert.id, server_name=["example.com"]), CertLogger()
            )

        assert seen == [(cert.id, False)]
        assert OperationState.SYNC_FLEET in op.history

    @pytest.mark.asyncio
    async def test_operations_are_serialized(self, manager, acme_client, nginx, challenge, make_certificate):
        import asyncio

        active = 0
        peak = 0

        async def slow_obtain(*args, **kwargs):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            await asyncio.sleep(0.01)
            active -= 1
            return _resource(make_certificate)

        acme_client.obtain.side_effect = slow_obtain

        await asyncio.gather(
            manager.issue_certificate(CertificateRequest(server_name=["a.example.com"]), CertLogger()),
            manager.issue_certificate(CertificateRequest(server_name=["b.example.com"]), CertLogger()),
        )

        assert peak == 1


class TestRevoke:
    @pytest.mark.asyncio
    async def test_missing_resource(self, manager, acme_client):
        log = CertLogger()

        with pytest.raises(ResourceIsNilError) as exc_info:
            await manager.revoke_certificate(CertificateRequest(server_name=["example.com"]), log)

        assert exc_info.value.message == "resource is nil"
        manager.users.get_client.assert_not_awaited()
        acme_client.revoke.assert_not_awaited()
        assert "[ERROR] resource is nil" in log.transcript()

    @pytest.mark.asyncio
    async def test_revoke_calls_ca(self, manager, acme_client, make_certificate):
        resource = _resource(make_certificate)
        log = CertLogger()

        op = await manager.revoke_certificate(
            CertificateRequest(server_name=["example.com"], resource=resource), log
        )

        assert op.succeeded
        acme_client.revoke.assert_awaited_once_with(resource.certificate)
        assert log.transcript().rstrip().endswith("Finished")


class TestRemoveAndSynced:
    @pytest.mark.asyncio
    async def test_remove_unknown_certificate(self, manager):
        with pytest.raises(CertificateNotFoundError):
            await manager.remove_certificate(999)

    @pytest.mark.asyncio
    async def test_install_synced(self, manager, nginx, conf_root, make_certificate):
        cert_pem, key_pem = make_certificate()
        payload = SyncCertificatePayload(
            name="edge",
            ssl_certificate_path=str(conf_root / "ssl" / "edge" / "fullchain.cer"),
            ssl_certificate_key_path=str(conf_root / "ssl" / "edge" / "private.key"),
            ssl_certificate=cert_pem,
            ssl_certificate_key=key_pem,
            key_type="P256",
        )

        cert = await manager.install_synced(payload)

        assert cert.auto_cert == AutoCertStatus.SYNC
        assert (conf_root / "ssl" / "edge" / "fullchain.cer").read_text() == cert_pem
        assert os.stat(conf_root / "ssl" / "edge" / "private.key").st_mode & 0o777 == 0o600
        nginx.reload.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_install_synced_outside_root(self, manager, nginx, tmp_path):
        payload = SyncCertificatePayload(
            name="edge",
            ssl_certificate_path=str(tmp_path / "fullchain.cer"),
            ssl_certificate_key_path=str(tmp_path / "private.key"),
            ssl_certificate="C",
            ssl_certificate_key="K",
        )

        with pytest.raises(SandboxViolationError):
            await manager.install_synced(payload)
        assert not (tmp_path / "fullchain.cer").exists()
