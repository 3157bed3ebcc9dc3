"""
Certificate renewal scheduler.

Background sweep over auto-renewed certificates using APScheduler.
Renewals go through the certificate manager one at a time and report
their outcome as notifications.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from config import settings
from core.acme_service import get_cert_info
from core.cert_logger import CertLogger
from core.cert_manager import CertManager, get_cert_manager
from core.cert_store import CertStore, get_cert_store
from core.notification import NotificationStore, get_notification_store
from models.certificate import CertificateRequest, ManagedCertificate

logger = logging.getLogger(__name__)

# Renew regardless of age once fewer days than this remain
EXPIRY_MARGIN_DAYS = 6


def _whole_days(delta: timedelta) -> int:
    return int(delta.total_seconds() / 86400)


def should_renew(
    not_before: datetime, not_after: datetime, interval_days: int, now: datetime | None = None
) -> bool:
    """
    Renewal policy.

    A certificate is left alone only while it is younger than the renewal
    interval and has more than six whole days left. Either condition
    failing triggers a renewal.
    """
    now = now or datetime.now(timezone.utc)
    age = _whole_days(now - not_before)
    remaining = _whole_days(not_after - now)
    return not (age < interval_days and remaining > EXPIRY_MARGIN_DAYS)


class CertScheduler:
    """
    Background certificate renewal scheduler.

    Runs the renewal sweep every CERT_CHECK_INTERVAL_MINUTES and once
    shortly after startup.
    """

    def __init__(self):
        self.scheduler = AsyncIOScheduler()
        self.cert_manager: CertManager = get_cert_manager()
        self.cert_store: CertStore = get_cert_store()
        self.notifications: NotificationStore = get_notification_store()
        self._started = False

    async def start(self) -> None:
        """Start the renewal scheduler."""
        if self._started:
            logger.warning("Certificate scheduler already started")
            return

        self.scheduler.add_job(
            self._check_renewals,
            IntervalTrigger(minutes=settings.cert_check_interval_minutes),
            id="cert_renewal_check",
            name="Certificate Renewal Check",
            replace_existing=True,
            max_instances=1,
        )

        self.scheduler.add_job(
            self._check_renewals,
            "date",
            run_date=datetime.now() + timedelta(seconds=30),
            id="cert_initial_check",
            name="Initial Certificate Check",
        )

        self.scheduler.start()
        self._started = True
        logger.info("Certificate renewal scheduler started")

    async def stop(self) -> None:
        """Stop the renewal scheduler."""
        if self._started:
            self.scheduler.shutdown(wait=False)
            self._started = False
            logger.info("Certificate renewal scheduler stopped")

    async def _check_renewals(self) -> dict:
        """Run one sweep. A failure on one certificate never stops the others."""
        logger.info("Starting certificate renewal check")
        summary = {"renewed": 0, "skipped": 0, "failed": 0}

        try:
            certs = await self.cert_store.get_auto_cert_list()
        except Exception as e:
            logger.exception(f"Error loading auto-renew certificates: {e}")
            return summary

        for cert in certs:
            try:
                outcome = await self._renew(cert)
            except Exception as e:
                logger.exception(f"Unexpected error renewing certificate {cert.id} ({cert.name}): {e}")
                outcome = "failed"
            summary[outcome] += 1

        logger.info(
            f"Certificate renewal check complete: {summary['renewed']} renewed, "
            f"{summary['skipped']} skipped, {summary['failed']} failed"
        )
        return summary

    async def _report_error(self, cert: ManagedCertificate, log: CertLogger, error: Exception | str) -> None:
        log.error(error)
        await self.notifications.error(
            "Renew Certificate Error",
            "Renew certificate %{name} failed: %{error}",
            {"name": cert.name, "error": str(error)},
        )

    async def _renew(self, cert: ManagedCertificate) -> str:
        log = CertLogger(cert.id)
        try:
            if not cert.domains:
                logger.error(f"Certificate {cert.id} ({cert.name}) has no domains")
                await self._report_error(
                    cert, log, "domains list is empty, try to reopen auto-cert for this config"
                )
                return "failed"

            if not cert.ssl_certificate_path:
                logger.error(f"Certificate {cert.id} ({cert.name}) has no certificate path")
                await self._report_error(cert, log, "ssl certificate path is empty, try to reopen auto-cert for this config")
                return "failed"

            try:
                info = await asyncio.to_thread(get_cert_info, cert.ssl_certificate_path)
            except Exception as e:
                logger.error(f"Cannot read certificate {cert.ssl_certificate_path}: {e}")
                await self._report_error(cert, log, e)
                return "failed"

            if not should_renew(info.not_before, info.not_after, settings.cert_renewal_interval):
                logger.debug(f"Certificate {cert.id} ({cert.name}) does not need renewal yet")
                return "skipped"

            logger.info(f"Auto-renewing certificate {cert.id} ({cert.name}) for {cert.domains}")
            request = CertificateRequest.from_certificate(cert, not_before=info.not_before)
            try:
                await self.cert_manager.issue_certificate(request, log)
            except Exception as e:
                logger.error(f"Failed to renew certificate {cert.id} ({cert.name}): {e}")
                await self.notifications.error(
                    "Renew Certificate Error",
                    "Renew certificate %{name} failed: %{error}",
                    {"name": cert.name, "error": str(e)},
                )
                return "failed"

            await self.notifications.success(
                "Renew Certificate Success", "Renew certificate %{name} successfully", {"name": cert.name}
            )
            return "renewed"
        finally:
            await log.close()

    async def trigger_renewal_check(self) -> dict:
        """
        Manually trigger a renewal check.

        Returns summary of actions taken.
        """
        logger.info("Manual renewal check triggered")
        summary = await self._check_renewals()
        return {"status": "completed", "message": "Renewal check completed", **summary}

    def get_next_run_times(self) -> dict:
        """Get next scheduled run times for all jobs."""
        jobs = {}
        for job in self.scheduler.get_jobs():
            next_run = getattr(job, "next_run_time", None)
            jobs[job.id] = {"name": job.name, "next_run": next_run.isoformat() if next_run else None}
        return jobs


# Singleton instance
_cert_scheduler: CertScheduler | None = None


def get_cert_scheduler() -> CertScheduler:
    """Get the global certificate scheduler instance."""
    global _cert_scheduler
    if _cert_scheduler is None:
        _cert_scheduler = CertScheduler()
    return _cert_scheduler
