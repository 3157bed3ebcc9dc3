"""
Managed certificate storage.

Conversion between ``certs`` rows and ManagedCertificate models, plus
the lookups the lifecycle engine needs: lazy creation on first issue,
the auto-renew list, and upserts for certificates pushed by peers.
"""

import logging
from datetime import datetime

from config import get_conf_path
from core.database import deserialize_json, get_database, serialize_json
from models.certificate import (
    AutoCertStatus,
    CertificateResource,
    ChallengeMethod,
    KeyType,
    ManagedCertificate,
)

logger = logging.getLogger(__name__)


class CertStore:
    """CRUD for managed certificates."""

    def __init__(self):
        self.db = get_database()

    def _db_to_certificate(self, row: dict) -> ManagedCertificate:
        """Convert database row to ManagedCertificate model."""
        resource = deserialize_json(row.get("resource_json"))
        return ManagedCertificate(
            id=row["id"],
            name=row.get("name") or "",
            domains=deserialize_json(row.get("domains_json")) or [],
            filename=row.get("filename") or "",
            ssl_certificate_path=row.get("ssl_certificate_path") or "",
            ssl_certificate_key_path=row.get("ssl_certificate_key_path") or "",
            auto_cert=AutoCertStatus(row["auto_cert"]),
            challenge_method=ChallengeMethod(row.get("challenge_method") or ChallengeMethod.HTTP01.value),
            dns_credential_id=row.get("dns_credential_id"),
            acme_user_id=row.get("acme_user_id"),
            key_type=row.get("key_type"),
            log=row.get("log") or "",
            resource=CertificateResource(**resource) if resource else None,
            sync_node_ids=deserialize_json(row.get("sync_node_ids_json")) or [],
            must_staple=bool(row.get("must_staple")),
            disable_cname_following=bool(row.get("disable_cname_following")),
            revoke_old=bool(row.get("revoke_old")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _certificate_to_db(self, cert: ManagedCertificate) -> dict:
        """Convert ManagedCertificate model to database row (without id)."""
        return {
            "name": cert.name,
            "domains_json": serialize_json(cert.domains),
            "filename": cert.filename,
            "ssl_certificate_path": cert.ssl_certificate_path,
            "ssl_certificate_key_path": cert.ssl_certificate_key_path,
            "auto_cert": cert.auto_cert.value,
            "challenge_method": cert.challenge_method.value,
            "dns_credential_id": cert.dns_credential_id,
            "acme_user_id": cert.acme_user_id,
            "key_type": cert.key_type.value,
            "log": cert.log,
            "resource_json": serialize_json(cert.resource.model_dump()) if cert.resource else None,
            "sync_node_ids_json": serialize_json(cert.sync_node_ids),
            "must_staple": cert.must_staple,
            "disable_cname_following": cert.disable_cname_following,
            "revoke_old": cert.revoke_old,
            "created_at": cert.created_at.isoformat(),
            "updated_at": cert.updated_at.isoformat(),
        }

    async def get(self, cert_id: int) -> ManagedCertificate | None:
        row = await self.db.fetch_one("SELECT * FROM certs WHERE id = ?", (cert_id,))
        if row:
            return self._db_to_certificate(row)
        return None

    async def list_certificates(self) -> list[ManagedCertificate]:
        rows = await self.db.fetch_all("SELECT * FROM certs ORDER BY id")
        return [self._db_to_certificate(row) for row in rows]

    async def create(self, cert: ManagedCertificate) -> ManagedCertificate:
        cert.id = await self.db.insert("certs", self._certificate_to_db(cert))
        return cert

    async def save(self, cert: ManagedCertificate) -> ManagedCertificate:
        """Persist every field of an existing certificate."""
        cert.updated_at = datetime.utcnow()
        await self.db.update("certs", cert.id, self._certificate_to_db(cert))
        return cert

    async def first_or_create(self, name: str, key_type: KeyType) -> ManagedCertificate:
        """
        Find the certificate for a site config and key type, creating it if needed.

        The config name doubles as the filename used to check whether the
        site is enabled.
        """
        row = await self.db.fetch_one(
            "SELECT * FROM certs WHERE name = ? AND filename = ? AND key_type = ? ORDER BY id LIMIT 1",
            (name, name, key_type.value),
        )
        if row:
            return self._db_to_certificate(row)

        cert = await self.create(ManagedCertificate(name=name, filename=name, key_type=key_type))
        logger.info(f"Created certificate record {cert.id} for {name} ({key_type.value})")
        return cert

    async def update_log(self, cert_id: int, log: str) -> bool:
        return await self.db.update(
            "certs", cert_id, {"log": log, "updated_at": datetime.utcnow().isoformat()}
        )

    async def remove(self, cert: ManagedCertificate) -> bool:
        """Delete a certificate; rows sharing its site config go with it."""
        if cert.filename:
            return await self.db.delete("certs", cert.filename, "filename")
        return await self.db.delete("certs", cert.id)

    async def get_auto_cert_list(self) -> list[ManagedCertificate]:
        """
        Certificates the renewal sweep should look at.

        DNS-01 certificates are always included; HTTP-01 ones only while
        their site config is enabled, since the challenge is answered
        through that site.
        """
        rows = await self.db.fetch_all(
            "SELECT * FROM certs WHERE auto_cert = ? ORDER BY id", (AutoCertStatus.ENABLED.value,)
        )
        certs = [self._db_to_certificate(row) for row in rows]

        enabled_dir = get_conf_path("sites-enabled")
        try:
            enabled = {entry.name for entry in enabled_dir.iterdir()}
        except OSError as e:
            logger.warning(f"Cannot read {enabled_dir}: {e}")
            enabled = set()

        return [
            cert
            for cert in certs
            if cert.challenge_method == ChallengeMethod.DNS01 or not cert.filename or cert.filename in enabled
        ]

    async def upsert_synced(
        self, name: str, cert_path: str, key_path: str, key_type: KeyType
    ) -> ManagedCertificate:
        """Find or create the record for a certificate pushed by a peer."""
        row = await self.db.fetch_one(
            """SELECT * FROM certs
               WHERE name = ? AND ssl_certificate_path = ? AND ssl_certificate_key_path = ?
               ORDER BY id LIMIT 1""",
            (name, cert_path, key_path),
        )
        if row:
            cert = self._db_to_certificate(row)
            cert.key_type = key_type
            cert.auto_cert = AutoCertStatus.SYNC
            return await self.save(cert)

        return await self.create(
            ManagedCertificate(
                name=name,
                ssl_certificate_path=cert_path,
                ssl_certificate_key_path=key_path,
                key_type=key_type,
                auto_cert=AutoCertStatus.SYNC,
            )
        )


# Singleton instance
_cert_store: CertStore | None = None


def get_cert_store() -> CertStore:
    """Get the global certificate store instance."""
    global _cert_store
    if _cert_store is None:
        _cert_store = CertStore()
    return _cert_store
