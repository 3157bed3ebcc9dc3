"""
Unit tests for the renewal scheduler.
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from config import settings
from core.cert_scheduler import CertScheduler, should_renew
from core.cert_store import get_cert_store
from core.notification import get_notification_store
from models.certificate import AutoCertStatus, ChallengeMethod, KeyType, ManagedCertificate
from models.notification import NotificationType

NOW = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)


def _window(age_days, remaining_days):
    return NOW - timedelta(days=age_days), NOW + timedelta(days=remaining_days)


class TestShouldRenew:
    @pytest.mark.parametrize(
        "age,remaining,expected",
        [
            (29, 10, False),
            (29, 5, True),
            (31, 100, True),
            (30, 60, True),
            (10, 6, True),
            (10, 7, False),
        ],
    )
    def test_interval_or_expiry_margin(self, age, remaining, expected):
        not_before, not_after = _window(age, remaining)
        assert should_renew(not_before, not_after, 30, now=NOW) is expected

    def test_partial_days_are_truncated(self):
        not_before = NOW - timedelta(days=29, hours=23)
        not_after = NOW + timedelta(days=6, hours=23)
        assert should_renew(not_before, not_after, 30, now=NOW) is True

        not_after = NOW + timedelta(days=7, hours=1)
        assert should_renew(not_before, not_after, 30, now=NOW) is False


async def _auto_cert(name, domains=("example.com",), path="", method=ChallengeMethod.DNS01):
    return await get_cert_store().create(
        ManagedCertificate(
            name=name,
            filename=name,
            domains=list(domains),
            ssl_certificate_path=path,
            ssl_certificate_key_path=path.replace("fullchain.cer", "private.key") if path else "",
            auto_cert=AutoCertStatus.ENABLED,
            challenge_method=method,
            key_type=KeyType.EC256,
        )
    )


def _write_cert(conf_root, make_certificate, name, age_days):
    not_before = datetime.now(timezone.utc) - timedelta(days=age_days)
    cert_pem, key_pem = make_certificate(("example.com",), not_before=not_before)
    directory = conf_root / "ssl" / name
    directory.mkdir(parents=True)
    (directory / "fullchain.cer").write_text(cert_pem)
    (directory / "private.key").write_text(key_pem)
    return str(directory / "fullchain.cer")


@pytest.fixture
def scheduler(db):
    scheduler = CertScheduler()
    scheduler.cert_manager = MagicMock()
    scheduler.cert_manager.issue_certificate = AsyncMock()
    return scheduler


class TestRenewalSweep:
    @pytest.mark.asyncio
    async def test_sweep_renews_skips_and_reports(self, scheduler, conf_root, make_certificate, monkeypatch):
        monkeypatch.setattr(settings, "cert_renewal_interval", 30)
        old = await _auto_cert("old.conf", path=_write_cert(conf_root, make_certificate, "old", 40))
        await _auto_cert("fresh.conf", path=_write_cert(conf_root, make_certificate, "fresh", 2))
        await _auto_cert("no-domains.conf", domains=())
        await _auto_cert("no-path.conf")

        summary = await scheduler._check_renewals()

        assert summary == {"renewed": 1, "skipped": 1, "failed": 2}
        request, _log = scheduler.cert_manager.issue_certificate.await_args.args
        assert request.cert_id == old.id
        assert request.not_before is not None
        assert request.challenge_method == ChallengeMethod.DNS01

        notifications = (await get_notification_store().list_notifications()).notifications
        titles = sorted(n.title for n in notifications)
        assert titles == ["Renew Certificate Error", "Renew Certificate Error", "Renew Certificate Success"]
        details = [n.details for n in notifications if n.type == NotificationType.ERROR]
        assert {"name": "no-domains.conf", "error": "domains list is empty, try to reopen auto-cert for this config"} in details

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_the_sweep(self, scheduler, conf_root, make_certificate):
        await _auto_cert("a.conf", path=_write_cert(conf_root, make_certificate, "a", 80))
        await _auto_cert("b.conf", path=_write_cert(conf_root, make_certificate, "b", 80))
        scheduler.cert_manager.issue_certificate.side_effect = [RuntimeError("rate limited"), MagicMock()]

        summary = await scheduler._check_renewals()

        assert summary == {"renewed": 1, "skipped": 0, "failed": 1}
        assert scheduler.cert_manager.issue_certificate.await_count == 2

    @pytest.mark.asyncio
    async def test_failure_transcript_saved_to_record(self, scheduler):
        cert = await _auto_cert("no-domains.conf", domains=())

        await scheduler._check_renewals()

        stored = await get_cert_store().get(cert.id)
        assert "[ERROR] domains list is empty" in stored.log

    @pytest.mark.asyncio
    async def test_unreadable_certificate_reported(self, scheduler, conf_root):
        await _auto_cert("missing.conf", path=str(conf_root / "ssl" / "gone" / "fullchain.cer"))

        summary = await scheduler._check_renewals()

        assert summary["failed"] == 1
        scheduler.cert_manager.issue_certificate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_manual_trigger(self, scheduler):
        result = await scheduler.trigger_renewal_check()
        assert result == {
            "status": "completed",
            "message": "Renewal check completed",
            "renewed": 0,
            "skipped": 0,
            "failed": 0,
        }


class TestScheduling:
    @pytest.mark.asyncio
    async def test_start_registers_jobs(self, db):
        scheduler = CertScheduler()
        with patch.object(scheduler.scheduler, "start"):
            await scheduler.start()

        jobs = {job.id: job for job in scheduler.scheduler.get_jobs()}
        assert set(jobs) == {"cert_renewal_check", "cert_initial_check"}
        assert jobs["cert_renewal_check"].max_instances == 1

    @pytest.mark.asyncio
    async def test_start_twice_is_a_no_op(self, db):
        scheduler = CertScheduler()
        with patch.object(scheduler.scheduler, "start") as start:
            await scheduler.start()
            await scheduler.start()
        start.assert_called_once()
