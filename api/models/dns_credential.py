"""
DNS credential models.

A credential names a DNS provider by registry code and carries the
environment bindings that provider reads when it is constructed.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class DNSConfiguration(BaseModel):
    credentials: dict[str, str] = Field(default_factory=dict, description="Secret bindings (API tokens, keys)")
    additional: dict[str, str] = Field(default_factory=dict, description="Optional tuning (TTL, timeouts)")

    def to_env(self) -> dict[str, str]:
        env = {k: v for k, v in self.credentials.items() if k}
        env.update({k: v for k, v in self.additional.items() if k})
        return env


class DNSCredential(BaseModel):
    id: int | None = Field(None, description="Database identifier")
    name: str = Field(..., description="Display name")
    provider: str = Field(default="", description="Provider display name")
    code: str = Field(..., description="Provider registry code")
    configuration: DNSConfiguration = Field(default_factory=DNSConfiguration)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class DNSCredentialCreate(BaseModel):
    name: str = Field(..., min_length=1)
    code: str = Field(..., min_length=1, description="Provider registry code, e.g. cloudflare")
    configuration: DNSConfiguration = Field(default_factory=DNSConfiguration)


class DNSCredentialResponse(BaseModel):
    """Credential without its secret values."""

    id: int
    name: str
    provider: str
    code: str
    credential_keys: list[str]
    additional: dict[str, str]
    created_at: datetime

    @classmethod
    def from_credential(cls, credential: DNSCredential) -> "DNSCredentialResponse":
        return cls(
            id=credential.id,
            name=credential.name,
            provider=credential.provider,
            code=credential.code,
            credential_keys=sorted(credential.configuration.credentials),
            additional=credential.configuration.additional,
            created_at=credential.created_at,
        )
