"""
ACME account models.

An account binds a key pair to a CA directory and an optional contact
email. Changing either the email or the directory requires a fresh
registration with the CA.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

DEFAULT_USER_NAME = "System Initial User"


class ACMEUser(BaseModel):
    """ACME account as stored in the ``acme_users`` table."""

    id: int | None = Field(None, description="Database identifier")
    name: str = Field(..., description="Display name")
    email: str = Field(default="", description="Contact email sent to the CA")
    ca_dir: str = Field(default="", description="ACME directory URL")
    registration: dict[str, Any] | None = Field(
        None, description="Registration resource plus the email and directory it was made for"
    )
    key: dict[str, Any] | None = Field(None, description="Account private key as a JWK")
    proxy: str = Field(default="", description="Outbound proxy URL for CA traffic")
    eab_key_id: str = Field(default="", description="External Account Binding key id")
    eab_hmac_key: str = Field(default="", description="External Account Binding HMAC key (base64url)")
    register_on_startup: bool = Field(default=False)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    @property
    def is_registered(self) -> bool:
        """Registered against the current email and directory."""
        if not self.registration or not self.registration.get("resource"):
            return False
        return self.registration.get("email") == self.email and self.registration.get("ca_dir") == self.ca_dir


class ACMEUserCreate(BaseModel):
    name: str = Field(..., min_length=1, description="Display name")
    email: str = Field(default="", description="Contact email")
    ca_dir: str = Field(default="", description="ACME directory URL (empty = configured default)")
    proxy: str = Field(default="")
    eab_key_id: str = Field(default="")
    eab_hmac_key: str = Field(default="")
    register_on_startup: bool = Field(default=False)


class ACMEUserUpdate(BaseModel):
    """Fields left out keep their value. A new email or directory invalidates the registration."""

    name: str | None = Field(None, min_length=1)
    email: str | None = Field(None)
    ca_dir: str | None = Field(None, description="ACME directory URL (empty = configured default)")
    proxy: str | None = Field(None)
    eab_key_id: str | None = Field(None)
    eab_hmac_key: str | None = Field(None)
    register_on_startup: bool | None = Field(None)


class ACMEUserResponse(BaseModel):
    """API view of an account. The private key is never returned."""

    id: int
    name: str
    email: str
    ca_dir: str
    proxy: str
    registered: bool
    account_url: str | None = None
    register_on_startup: bool
    created_at: datetime

    @classmethod
    def from_user(cls, user: ACMEUser) -> "ACMEUserResponse":
        resource = (user.registration or {}).get("resource") or {}
        return cls(
            id=user.id,
            name=user.name,
            email=user.email,
            ca_dir=user.ca_dir,
            proxy=user.proxy,
            registered=user.is_registered,
            account_url=resource.get("uri"),
            register_on_startup=user.register_on_startup,
            created_at=user.created_at,
        )
