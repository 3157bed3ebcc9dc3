"""
ACME account management.

Stores accounts in the ``acme_users`` table, lazily creates the default
account, and (re-)registers an account with its CA whenever its email
or directory changed since the last registration.
"""

import logging
from datetime import datetime

from config import settings
from core.acme_service import AcmeClient, generate_account_key
from core.cert_logger import CertLogger
from core.database import deserialize_json, get_database, serialize_json
from models.acme_user import DEFAULT_USER_NAME, ACMEUser, ACMEUserCreate, ACMEUserUpdate

logger = logging.getLogger(__name__)


class AccountResolutionError(Exception):
    """No usable ACME account for an operation."""

    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class ACMEUserService:
    """CRUD and registration for ACME accounts."""

    def __init__(self):
        self.db = get_database()

    def _row_to_user(self, row: dict) -> ACMEUser:
        return ACMEUser(
            id=row["id"],
            name=row["name"],
            email=row.get("email") or "",
            ca_dir=row.get("ca_dir") or "",
            registration=deserialize_json(row.get("registration_json")),
            key=deserialize_json(row.get("key_json")),
            proxy=row.get("proxy") or "",
            eab_key_id=row.get("eab_key_id") or "",
            eab_hmac_key=row.get("eab_hmac_key") or "",
            register_on_startup=bool(row.get("register_on_startup")),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _user_to_db(self, user: ACMEUser) -> dict:
        return {
            "name": user.name,
            "email": user.email,
            "ca_dir": user.ca_dir,
            "registration_json": serialize_json(user.registration),
            "key_json": serialize_json(user.key),
            "proxy": user.proxy,
            "eab_key_id": user.eab_key_id,
            "eab_hmac_key": user.eab_hmac_key,
            "register_on_startup": user.register_on_startup,
            "created_at": user.created_at.isoformat(),
            "updated_at": user.updated_at.isoformat(),
        }

    async def get(self, user_id: int) -> ACMEUser | None:
        row = await self.db.fetch_one("SELECT * FROM acme_users WHERE id = ?", (user_id,))
        return self._row_to_user(row) if row else None

    async def list_users(self) -> list[ACMEUser]:
        rows = await self.db.fetch_all("SELECT * FROM acme_users ORDER BY id")
        return [self._row_to_user(row) for row in rows]

    async def create(self, data: ACMEUserCreate) -> ACMEUser:
        """Create an account with a new key. Registration happens on first use."""
        user = ACMEUser(
            name=data.name,
            email=data.email,
            ca_dir=data.ca_dir or settings.directory_url,
            key=generate_account_key().to_json(),
            proxy=data.proxy,
            eab_key_id=data.eab_key_id,
            eab_hmac_key=data.eab_hmac_key,
            register_on_startup=data.register_on_startup,
        )
        user.id = await self.db.insert("acme_users", self._user_to_db(user))
        logger.info(f"Created ACME user {user.id} ({user.name}) for {user.ca_dir}")
        return user

    async def update(self, user: ACMEUser, data: ACMEUserUpdate) -> ACMEUser:
        """Apply ``data`` to ``user``. Registration is redone on next use if the email or directory changed."""
        changes = data.model_dump(exclude_unset=True, exclude_none=True)
        if "ca_dir" in changes:
            changes["ca_dir"] = changes["ca_dir"] or settings.directory_url
        for field, value in changes.items():
            setattr(user, field, value)
        await self.save(user)
        if not user.is_registered and user.registration:
            logger.info(f"ACME user {user.id} ({user.name}) changed email or directory; it will be re-registered")
        return user

    async def save(self, user: ACMEUser) -> ACMEUser:
        user.updated_at = datetime.utcnow()
        await self.db.update("acme_users", user.id, self._user_to_db(user))
        return user

    async def delete(self, user_id: int) -> bool:
        return await self.db.delete("acme_users", user_id)

    async def get_default_user(self) -> ACMEUser:
        """The default account, created from settings the first time it is needed."""
        row = await self.db.fetch_one(
            "SELECT * FROM acme_users WHERE name = ? ORDER BY id LIMIT 1", (DEFAULT_USER_NAME,)
        )
        if row:
            return self._row_to_user(row)

        return await self.create(
            ACMEUserCreate(
                name=DEFAULT_USER_NAME,
                email=settings.acme_account_email,
                ca_dir=settings.directory_url,
            )
        )

    async def resolve(self, user_id: int | None, log: CertLogger) -> ACMEUser:
        """
        Account for an operation: the requested one, else the default.

        Raises:
            AccountResolutionError: Neither account is available
        """
        if user_id:
            user = await self.get(user_id)
            if user is not None:
                return user
            log.info(f"ACME user {user_id} not found, falling back to the default account")

        try:
            return await self.get_default_user()
        except Exception as e:
            raise AccountResolutionError(
                f"Failed to load the default ACME user: {e}",
                suggestion="Check ACME_ACCOUNT_EMAIL and the database",
            )

    async def register(self, user: ACMEUser) -> ACMEUser:
        """Register ``user`` with its CA and store the registration."""
        client = await AcmeClient.for_user(user)
        await self._register_with(client, user)
        return user

    async def _register_with(self, client: AcmeClient, user: ACMEUser) -> None:
        resource = await client.register(user.email, user.eab_key_id, user.eab_hmac_key)
        user.registration = {"resource": resource, "email": user.email, "ca_dir": user.ca_dir}
        await self.save(user)
        logger.info(f"Registered ACME user {user.id} ({user.name})")

    async def get_client(self, user: ACMEUser, log: CertLogger) -> AcmeClient:
        """Client for ``user``, registering first if the account is not registered for its current settings."""
        log.info(f"ACME user: {user.name}, Email: {user.email}, CA Dir: {user.ca_dir}")
        client = await AcmeClient.for_user(user)
        if not user.is_registered:
            log.info("Registering ACME account")
            await self._register_with(client, user)
        return client

    async def register_on_startup(self) -> None:
        """Register every account flagged for it. Failures are logged and skipped."""
        users = await self.db.fetch_all("SELECT * FROM acme_users WHERE register_on_startup = 1 ORDER BY id")
        for row in users:
            user = self._row_to_user(row)
            try:
                await self.register(user)
            except Exception as e:
                logger.error(f"Failed to register ACME user {user.id} ({user.name}) on startup: {e}")


# Singleton instance
_acme_user_service: ACMEUserService | None = None


def get_acme_user_service() -> ACMEUserService:
    """Get the global ACME user service instance."""
    global _acme_user_service
    if _acme_user_service is None:
        _acme_user_service = ACMEUserService()
    return _acme_user_service
