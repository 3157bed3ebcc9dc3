"""
Endpoint tests for DNS credentials, ACME accounts, nodes and notifications.
"""

import logging
from unittest.mock import AsyncMock, patch

import pytest
from httpx import ASGITransport, AsyncClient

from core.acme_service import ACMERegistrationError
from core.acme_user_service import get_acme_user_service
from core.notification import get_notification_store
from main import app


@pytest.fixture
def client(db):
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


class TestDnsEndpoints:
    @pytest.mark.asyncio
    async def test_list_providers(self, client):
        async with client:
            response = await client.get("/dns/providers")

        codes = [p["code"] for p in response.json()]
        assert "cloudflare" in codes

    @pytest.mark.asyncio
    async def test_unknown_provider(self, client):
        async with client:
            response = await client.get("/dns/providers/route99")
        assert response.status_code == 404
        assert response.json()["detail"]["message"] == "provider not found: route99"

    @pytest.mark.asyncio
    async def test_create_credential_hides_secrets(self, client):
        async with client:
            response = await client.post(
                "/dns/credentials",
                json={
                    "name": "cf",
                    "code": "cloudflare",
                    "configuration": {"credentials": {"CLOUDFLARE_DNS_API_TOKEN": "tok-123"}},
                },
            )
            listing = await client.get("/dns/credentials")

        assert response.status_code == 201
        assert response.json()["credential_keys"] == ["CLOUDFLARE_DNS_API_TOKEN"]
        assert response.json()["provider"] == "Cloudflare"
        assert "tok-123" not in listing.text

    @pytest.mark.asyncio
    async def test_empty_configuration_rejected(self, client):
        async with client:
            response = await client.post("/dns/credentials", json={"name": "cf", "code": "cloudflare"})
        assert response.status_code == 400
        assert response.json()["detail"]["message"] == "environment configuration is empty"

    @pytest.mark.asyncio
    async def test_delete_missing_credential(self, client):
        async with client:
            response = await client.delete("/dns/credentials/12")
        assert response.status_code == 404


class TestAcmeUserEndpoints:
    @pytest.mark.asyncio
    async def test_create_and_list(self, client):
        async with client:
            created = await client.post("/acme-users/", json={"name": "ops", "email": "ops@example.com"})
            listing = await client.get("/acme-users/")

        assert created.status_code == 201
        assert created.json()["registered"] is False
        assert [u["name"] for u in listing.json()] == ["ops"]
        assert '"d"' not in listing.text

    @pytest.mark.asyncio
    async def test_register_missing_user(self, client):
        async with client:
            response = await client.post("/acme-users/7/register")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_register_rejected_by_ca(self, client):
        async with client:
            created = await client.post("/acme-users/", json={"name": "ops"})
            with patch(
                "core.acme_user_service.ACMEUserService.register",
                AsyncMock(side_effect=ACMERegistrationError("Failed to register ACME account: malformed")),
            ):
                response = await client.post(f"/acme-users/{created.json()['id']}/register")

        assert response.status_code == 502
        assert response.json()["detail"]["error"] == "registration_failed"


    @pytest.mark.asyncio
    async def test_update_email_invalidates_registration(self, client):
        async with client:
            created = await client.post(
                "/acme-users/", json={"name": "ops", "email": "ops@example.com", "ca_dir": "https://ca.example/dir"}
            )
            user_id = created.json()["id"]
            service = get_acme_user_service()
            user = await service.get(user_id)
            user.registration = {
                "resource": {"uri": "https://ca.example/acct/1"},
                "email": "ops@example.com",
                "ca_dir": "https://ca.example/dir",
            }
            await service.save(user)

            renamed = await client.put(f"/acme-users/{user_id}", json={"name": "operations"})
            moved = await client.put(f"/acme-users/{user_id}", json={"email": "pki@example.com"})
            missing = await client.put("/acme-users/999", json={"name": "x"})

        assert renamed.json()["registered"] is True
        assert renamed.json()["name"] == "operations"
        assert moved.json()["registered"] is False
        assert moved.json()["email"] == "pki@example.com"
        assert missing.status_code == 404
        stored = await service.get(user_id)
        assert stored.key == user.key


class TestNodeEndpoints:
    @pytest.mark.asyncio
    async def test_create_list_delete(self, client):
        async with client:
            created = await client.post(
                "/nodes/", json={"name": "edge", "url": "https://edge.example/", "token": "s3cret"}
            )
            listing = await client.get("/nodes/")
            deleted = await client.delete(f"/nodes/{created.json()['id']}")
            missing = await client.delete(f"/nodes/{created.json()['id']}")

        assert created.status_code == 201
        assert created.json()["url"] == "https://edge.example"
        assert "s3cret" not in listing.text
        assert deleted.status_code == 200
        assert missing.status_code == 404


class TestNotificationEndpoints:
    @pytest.mark.asyncio
    async def test_filter_and_dismiss(self, client):
        store = get_notification_store()
        error = await store.error("Renew Certificate Error", "Renew certificate %{name} failed", {"name": "a"})
        await store.success("Renew Certificate Success", "Renew certificate %{name} successfully", {"name": "b"})

        async with client:
            errors = await client.get("/notifications/", params={"type": "error"})
            dismissed = await client.delete(f"/notifications/{error.id}")
            remaining = await client.get("/notifications/")

        assert errors.json()["total"] == 1
        assert errors.json()["notifications"][0]["details"] == {"name": "a"}
        assert dismissed.status_code == 200
        assert [n["title"] for n in remaining.json()["notifications"]] == ["Renew Certificate Success"]


class TestMiddleware:
    @pytest.mark.asyncio
    async def test_security_headers(self, client):
        async with client:
            response = await client.get("/nodes/")

        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Cache-Control"] == "no-store"

    @pytest.mark.asyncio
    async def test_access_log_tags_peer_pushes(self, client, caplog):
        with caplog.at_level(logging.INFO, logger="proxy_cert_manager.access"):
            async with client:
                await client.get("/nodes/")
                await client.put("/certificates/sync", json={}, headers={"X-Node-Secret": "x"})

        messages = [r.getMessage() for r in caplog.records if r.name == "proxy_cert_manager.access"]
        assert any(m.startswith("GET /nodes/ 200") and m.endswith("caller=client") for m in messages)
        assert any(m.startswith("PUT /certificates/sync 422") and m.endswith("caller=peer") for m in messages)

    @pytest.mark.asyncio
    async def test_health_is_not_logged(self, client, caplog):
        with caplog.at_level(logging.INFO, logger="proxy_cert_manager.access"):
            async with client:
                await client.get("/health")

        assert not [r for r in caplog.records if r.name == "proxy_cert_manager.access"]


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        async with client:
            response = await client.get("/health")

        body = response.json()
        assert body["status"] == "healthy"
        assert body["certificates"] == {"processing": False}
        assert body["nginx"]["conf_root_exists"] is True
