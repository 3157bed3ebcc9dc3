"""
Unit tests for the SQLite-backed stores and ACME account resolution.
"""

from unittest.mock import AsyncMock, patch

import pytest

from config import settings
from core.acme_user_service import AccountResolutionError, get_acme_user_service
from core.cert_logger import CertLogger
from core.cert_store import get_cert_store
from core.dns_credential_store import get_dns_credential_store
from core.node_store import get_node_store
from models.acme_user import DEFAULT_USER_NAME, ACMEUserCreate
from models.certificate import AutoCertStatus, CertificateResource, ChallengeMethod, KeyType, ManagedCertificate
from models.node import Node


class TestCertStore:
    @pytest.mark.asyncio
    async def test_first_or_create_is_idempotent_per_key_type(self, db):
        store = get_cert_store()

        first = await store.first_or_create("example.conf", KeyType.EC256)
        again = await store.first_or_create("example.conf", KeyType.EC256)
        rsa = await store.first_or_create("example.conf", KeyType.RSA2048)

        assert first.id == again.id
        assert rsa.id != first.id
        assert first.filename == "example.conf"
        assert first.auto_cert == AutoCertStatus.DISABLED

    @pytest.mark.asyncio
    async def test_save_round_trips_resource_and_flags(self, db):
        store = get_cert_store()
        cert = await store.first_or_create("example.conf", KeyType.EC256)
        cert.domains = ["example.com"]
        cert.resource = CertificateResource(domain="example.com", certificate="CERT", private_key="KEY")
        cert.sync_node_ids = [2, 3]
        cert.must_staple = True
        await store.save(cert)

        loaded = await store.get(cert.id)

        assert loaded.domains == ["example.com"]
        assert loaded.resource.private_key == "KEY"
        assert loaded.sync_node_ids == [2, 3]
        assert loaded.must_staple is True

    @pytest.mark.asyncio
    async def test_remove_deletes_rows_of_same_site_config(self, db):
        store = get_cert_store()
        ec = await store.first_or_create("example.conf", KeyType.EC256)
        await store.first_or_create("example.conf", KeyType.RSA2048)
        other = await store.first_or_create("other.conf", KeyType.EC256)

        assert await store.remove(ec) is True

        remaining = await store.list_certificates()
        assert [c.id for c in remaining] == [other.id]

    @pytest.mark.asyncio
    async def test_update_log(self, db):
        store = get_cert_store()
        cert = await store.first_or_create("example.conf", KeyType.EC256)

        assert await store.update_log(cert.id, "[INFO] Finished") is True
        assert (await store.get(cert.id)).log == "[INFO] Finished"
        assert await store.update_log(9999, "x") is False

    @pytest.mark.asyncio
    async def test_auto_cert_list_filters_disabled_http_sites(self, db, conf_root):
        store = get_cert_store()
        (conf_root / "sites-enabled").mkdir()
        (conf_root / "sites-enabled" / "enabled.conf").write_text("")

        async def add(name, method=ChallengeMethod.HTTP01, auto=AutoCertStatus.ENABLED):
            return await store.create(
                ManagedCertificate(name=name, filename=name, challenge_method=method, auto_cert=auto)
            )

        enabled = await add("enabled.conf")
        await add("disabled.conf")
        dns = await add("dns-only.conf", method=ChallengeMethod.DNS01)
        await add("manual.conf", auto=AutoCertStatus.DISABLED)
        await add("synced.conf", auto=AutoCertStatus.SYNC)

        result = await store.get_auto_cert_list()

        assert [c.id for c in result] == [enabled.id, dns.id]

    @pytest.mark.asyncio
    async def test_upsert_synced(self, db):
        store = get_cert_store()

        created = await store.upsert_synced("edge", "/etc/nginx/ssl/a.cer", "/etc/nginx/ssl/a.key", KeyType.EC256)
        updated = await store.upsert_synced("edge", "/etc/nginx/ssl/a.cer", "/etc/nginx/ssl/a.key", KeyType.EC384)

        assert updated.id == created.id
        assert updated.auto_cert == AutoCertStatus.SYNC
        assert (await store.get(created.id)).key_type == KeyType.EC384


class TestNodeStore:
    @pytest.mark.asyncio
    async def test_get_enabled_keeps_only_enabled_requested_nodes(self, db):
        store = get_node_store()
        one = await store.create(Node(name="one", url="https://one.example/"))
        await store.create(Node(name="off", url="https://off.example", enabled=False))
        three = await store.create(Node(name="three", url="https://three.example"))

        nodes = await store.get_enabled([three.id, 2, one.id, 42])

        assert [n.name for n in nodes] == ["one", "three"]
        assert nodes[0].url == "https://one.example"

    @pytest.mark.asyncio
    async def test_get_enabled_with_no_ids(self, db):
        assert await get_node_store().get_enabled([]) == []


class TestDnsCredentialStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self, db):
        from models.dns_credential import DNSConfiguration, DNSCredential

        store = get_dns_credential_store()
        credential = await store.create(
            DNSCredential(
                name="cf",
                provider="Cloudflare",
                code="cloudflare",
                configuration=DNSConfiguration(credentials={"CLOUDFLARE_DNS_API_TOKEN": "t"}),
            )
        )

        loaded = await store.get(credential.id)
        assert loaded.configuration.credentials == {"CLOUDFLARE_DNS_API_TOKEN": "t"}
        assert loaded.provider == "Cloudflare"
        assert await store.delete(credential.id) is True


class TestAccountResolution:
    @pytest.mark.asyncio
    async def test_default_user_created_once(self, db, monkeypatch):
        monkeypatch.setattr(settings, "acme_account_email", "ops@example.com")
        service = get_acme_user_service()

        first = await service.get_default_user()
        second = await service.get_default_user()

        assert first.id == second.id
        assert first.name == DEFAULT_USER_NAME
        assert first.email == "ops@example.com"
        assert first.ca_dir == settings.directory_url
        assert first.key["kty"] == "EC"

    @pytest.mark.asyncio
    async def test_resolve_requested_user(self, db):
        service = get_acme_user_service()
        user = await service.create(ACMEUserCreate(name="ops", email="ops@example.com"))

        assert (await service.resolve(user.id, CertLogger())).id == user.id

    @pytest.mark.asyncio
    async def test_resolve_missing_user_falls_back_to_default(self, db):
        service = get_acme_user_service()
        log = CertLogger()

        user = await service.resolve(404, log)

        assert user.name == DEFAULT_USER_NAME
        assert "ACME user 404 not found, falling back to the default account" in log.transcript()

    @pytest.mark.asyncio
    async def test_resolve_fails_without_default(self, db):
        service = get_acme_user_service()
        with patch.object(service, "get_default_user", AsyncMock(side_effect=RuntimeError("disk I/O error"))):
            with pytest.raises(AccountResolutionError) as exc_info:
                await service.resolve(None, CertLogger())
        assert "disk I/O error" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_get_client_registers_unregistered_user(self, db):
        service = get_acme_user_service()
        user = await service.create(ACMEUserCreate(name="ops", email="ops@example.com", ca_dir="https://ca/dir"))
        client = AsyncMock()
        client.register.return_value = {"uri": "https://ca/acct/1"}

        with patch("core.acme_user_service.AcmeClient.for_user", AsyncMock(return_value=client)):
            await service.get_client(user, CertLogger())

        stored = await service.get(user.id)
        assert stored.is_registered is True
        assert stored.registration["resource"] == {"uri": "https://ca/acct/1"}

    @pytest.mark.asyncio
    async def test_get_client_skips_registration_when_current(self, db):
        service = get_acme_user_service()
        user = await service.create(ACMEUserCreate(name="ops", email="ops@example.com", ca_dir="https://ca/dir"))
        user.registration = {"resource": {"uri": "x"}, "email": "ops@example.com", "ca_dir": "https://ca/dir"}
        client = AsyncMock()

        with patch("core.acme_user_service.AcmeClient.for_user", AsyncMock(return_value=client)):
            await service.get_client(user, CertLogger())

        client.register.assert_not_called()
