"""DNS credential storage."""

import logging

from core.database import deserialize_json, get_database, serialize_json
from models.dns_credential import DNSConfiguration, DNSCredential

logger = logging.getLogger(__name__)


class DNSCredentialStore:
    def __init__(self):
        self.db = get_database()

    def _row_to_credential(self, row: dict) -> DNSCredential:
        configuration = deserialize_json(row.get("configuration_json")) or {}
        return DNSCredential(
            id=row["id"],
            name=row["name"],
            provider=row.get("provider") or "",
            code=row["code"],
            configuration=DNSConfiguration(**configuration),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def get(self, credential_id: int) -> DNSCredential | None:
        row = await self.db.fetch_one("SELECT * FROM dns_credentials WHERE id = ?", (credential_id,))
        if row:
            return self._row_to_credential(row)
        return None

    async def list_credentials(self) -> list[DNSCredential]:
        rows = await self.db.fetch_all("SELECT * FROM dns_credentials ORDER BY id")
        return [self._row_to_credential(row) for row in rows]

    async def create(self, credential: DNSCredential) -> DNSCredential:
        credential.id = await self.db.insert(
            "dns_credentials",
            {
                "name": credential.name,
                "provider": credential.provider,
                "code": credential.code,
                "configuration_json": serialize_json(credential.configuration.model_dump()),
                "created_at": credential.created_at.isoformat(),
                "updated_at": credential.updated_at.isoformat(),
            },
        )
        logger.info(f"Saved DNS credential {credential.id} ({credential.code})")
        return credential

    async def delete(self, credential_id: int) -> bool:
        return await self.db.delete("dns_credentials", credential_id)


_dns_credential_store: DNSCredentialStore | None = None


def get_dns_credential_store() -> DNSCredentialStore:
    global _dns_credential_store
    if _dns_credential_store is None:
        _dns_credential_store = DNSCredentialStore()
    return _dns_credential_store
