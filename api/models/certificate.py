"""
Certificate models for the lifecycle engine.

Provides Pydantic models for managed certificates, the ACME resource
bundle returned by the CA, the transient request descriptor used by
issue/renew/revoke, and API request/response shapes.
"""

import sys
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, Field, PrivateAttr, field_validator

from config import get_conf_path


class AutoCertStatus(int, Enum):
    """Whether the renewal sweep manages a certificate."""

    DISABLED = -1
    ENABLED = 1
    SYNC = 2  # Pushed to us by another node; renewed by that node


class ChallengeMethod(str, Enum):
    """ACME challenge used to prove domain control."""

    HTTP01 = "http01"
    DNS01 = "dns01"


class KeyType(str, Enum):
    """Certificate private key algorithm and size."""

    RSA2048 = "2048"
    RSA3072 = "3072"
    RSA4096 = "4096"
    EC256 = "P256"
    EC384 = "P384"


DEFAULT_KEY_TYPE = KeyType.RSA2048


def _coerce_key_type(value):
    if value is None or value == "":
        return DEFAULT_KEY_TYPE
    return value


# Empty key types from older clients mean the default
KeyTypeField = Annotated[KeyType, BeforeValidator(_coerce_key_type)]


class CertificateResource(BaseModel):
    """
    Opaque bundle returned by the CA for one issued certificate.

    PEM material is stored exactly as received and never re-derived;
    it is required to renew or revoke later.
    """

    domain: str = Field(default="", description="Primary domain of the order")
    cert_url: str = Field(default="", description="Certificate URL returned by the CA")
    cert_stable_url: str = Field(default="", description="Stable certificate URL")
    private_key: str | None = Field(None, description="PEM private key")
    certificate: str | None = Field(None, description="PEM certificate chain as issued")
    issuer_certificate: str | None = Field(None, description="PEM issuer chain")
    csr: str | None = Field(None, description="PEM certificate signing request")


class ManagedCertificate(BaseModel):
    """
    A certificate under management, as stored in the ``certs`` table.

    Both file paths, when set, must live under the NGINX configuration
    root; every read and write checks this before touching the disk.
    """

    id: int | None = Field(None, description="Database identifier")
    name: str = Field(default="", description="Display name (usually the site config name)")
    domains: list[str] = Field(default_factory=list, description="DNS names covered by the certificate")
    filename: str = Field(default="", description="Site config file this certificate belongs to")
    ssl_certificate_path: str = Field(default="", description="Path of the full chain on disk")
    ssl_certificate_key_path: str = Field(default="", description="Path of the private key on disk")
    auto_cert: AutoCertStatus = Field(default=AutoCertStatus.DISABLED, description="Renewal sweep participation")
    challenge_method: ChallengeMethod = Field(default=ChallengeMethod.HTTP01)
    dns_credential_id: int | None = Field(None, description="DNS credential used for dns01")
    acme_user_id: int | None = Field(None, description="ACME account that issued the certificate")
    key_type: KeyTypeField = Field(default=DEFAULT_KEY_TYPE)
    log: str = Field(default="", description="Transcript of the last lifecycle operation")
    resource: CertificateResource | None = Field(None, description="ACME resource from the last issuance")
    sync_node_ids: list[int] = Field(default_factory=list, description="Nodes that receive a copy after issuance")
    must_staple: bool = Field(default=False)
    disable_cname_following: bool = Field(default=False)
    revoke_old: bool = Field(default=False, description="Revoke the superseded certificate after reissue")
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class CertificateRequest(BaseModel):
    """
    Request descriptor for one issue, renew or revoke operation.

    Derived file paths are computed on first access and then reused for
    the rest of the operation.
    """

    cert_id: int | None = Field(None, description="Managed certificate this operation belongs to")
    server_name: list[str] = Field(default_factory=list, description="Domains to include")
    challenge_method: ChallengeMethod = Field(default=ChallengeMethod.HTTP01)
    dns_credential_id: int | None = Field(None)
    acme_user_id: int | None = Field(None)
    key_type: KeyTypeField = Field(default=DEFAULT_KEY_TYPE)
    resource: CertificateResource | None = Field(None, description="Resource of the previous issuance")
    not_before: datetime | None = Field(None, description="NotBefore of the certificate currently on disk")
    must_staple: bool = Field(default=False)
    disable_cname_following: bool = Field(default=False)
    revoke_old: bool = Field(default=False)

    _cert_dir: Path | None = PrivateAttr(default=None)

    @field_validator("server_name")
    @classmethod
    def strip_server_names(cls, value: list[str]) -> list[str]:
        return [name.strip() for name in value if name and name.strip()]

    def get_cert_dir(self) -> Path:
        """Directory holding this request's certificate files."""
        if self._cert_dir is None:
            dir_name = "_".join(sorted(self.server_name)) + "_" + self.key_type.value
            if sys.platform == "win32":
                dir_name = dir_name.replace("*", "#")
            self._cert_dir = get_conf_path("ssl", dir_name)
        return self._cert_dir

    def get_cert_path(self) -> Path:
        return self.get_cert_dir() / "fullchain.cer"

    def get_key_path(self) -> Path:
        return self.get_cert_dir() / "private.key"

    @classmethod
    def from_certificate(cls, cert: ManagedCertificate, **overrides) -> "CertificateRequest":
        """Build a descriptor that re-runs a managed certificate's last issuance."""
        data = {
            "cert_id": cert.id,
            "server_name": cert.domains,
            "challenge_method": cert.challenge_method,
            "dns_credential_id": cert.dns_credential_id,
            "acme_user_id": cert.acme_user_id,
            "key_type": cert.key_type,
            "resource": cert.resource,
            "must_staple": cert.must_staple,
            "disable_cname_following": cert.disable_cname_following,
            "revoke_old": cert.revoke_old,
        }
        data.update(overrides)
        return cls(**data)


class CertificateInfo(BaseModel):
    """Parsed view of a certificate file."""

    subject_name: str = Field(..., description="Certificate subject")
    issuer_name: str = Field(..., description="Certificate issuer (CA)")
    serial_number: str = Field(..., description="Serial number in hex")
    not_before: datetime = Field(..., description="Certificate valid from")
    not_after: datetime = Field(..., description="Certificate expiry date")
    dns_names: list[str] = Field(default_factory=list, description="Subject Alternative Names")
    fingerprint_sha256: str = Field(..., description="SHA-256 fingerprint of the certificate")


# Request Models


class IssueCertificateRequest(BaseModel):
    """First frame sent by the client on the issue websocket."""

    server_name: list[str] = Field(..., min_length=1, description="Domains to include")
    challenge_method: ChallengeMethod = Field(default=ChallengeMethod.HTTP01)
    dns_credential_id: int | None = Field(None)
    acme_user_id: int | None = Field(None)
    key_type: KeyTypeField = Field(default=DEFAULT_KEY_TYPE)
    must_staple: bool = Field(default=False)
    disable_cname_following: bool = Field(default=False)
    revoke_old: bool = Field(default=False)
    sync_node_ids: list[int] | None = Field(None, description="Replace the certificate's sync targets")


class SyncCertificatePayload(BaseModel):
    """Body of a node-to-node certificate push."""

    name: str = Field(..., description="Certificate name")
    ssl_certificate_path: str = Field(..., description="Where the receiver writes the chain")
    ssl_certificate_key_path: str = Field(..., description="Where the receiver writes the key")
    ssl_certificate: str = Field(..., description="PEM full chain")
    ssl_certificate_key: str = Field(..., description="PEM private key")
    key_type: KeyTypeField = Field(default=DEFAULT_KEY_TYPE)


class ManualCertificateRequest(BaseModel):
    """
    Certificate managed by hand instead of through ACME.

    Both paths are required and must lie under the configuration root.
    A PEM body left empty keeps whatever file is already at its path.
    """

    name: str = Field(default="", description="Display name")
    ssl_certificate_path: str = Field(..., min_length=1, description="Where the chain is written")
    ssl_certificate_key_path: str = Field(..., min_length=1, description="Where the private key is written")
    ssl_certificate: str = Field(default="", description="PEM full chain")
    ssl_certificate_key: str = Field(default="", description="PEM private key")
    key_type: KeyTypeField = Field(default=DEFAULT_KEY_TYPE)
    sync_node_ids: list[int] = Field(default_factory=list, description="Nodes that receive a copy")


# Response Models)


class OperationFrame(BaseModel):
    """One message on an issue/revoke websocket."""

    status: str = Field(..., description="info, success or error")
    message: str = Field(..., description="Log line or terminal message")
    ssl_certificate: str | None = Field(None)
    ssl_certificate_key: str | None = Field(None)
    key_type: KeyType | None = Field(None)


class CertificateResponse(BaseModel):
    """API view of a managed certificate. Never exposes key material."""

    id: int
    name: str
    domains: list[str]
    filename: str
    ssl_certificate_path: str
    ssl_certificate_key_path: str
    auto_cert: AutoCertStatus
    challenge_method: ChallengeMethod
    dns_credential_id: int | None
    acme_user_id: int | None
    key_type: KeyType
    sync_node_ids: list[int]
    must_staple: bool
    disable_cname_following: bool
    revoke_old: bool
    log: str
    created_at: datetime
    updated_at: datetime
    info: CertificateInfo | None = Field(None, description="Parsed certificate file, when readable")

    @classmethod
    def from_certificate(cls, cert: ManagedCertificate, info: CertificateInfo | None = None) -> "CertificateResponse":
        return cls(
            id=cert.id,
            name=cert.name,
            domains=cert.domains,
            filename=cert.filename,
            ssl_certificate_path=cert.ssl_certificate_path,
            ssl_certificate_key_path=cert.ssl_certificate_key_path,
            auto_cert=cert.auto_cert,
            challenge_method=cert.challenge_method,
            dns_credential_id=cert.dns_credential_id,
            acme_user_id=cert.acme_user_id,
            key_type=cert.key_type,
            sync_node_ids=cert.sync_node_ids,
            must_staple=cert.must_staple,
            disable_cname_following=cert.disable_cname_following,
            revoke_old=cert.revoke_old,
            log=cert.log,
            created_at=cert.created_at,
            updated_at=cert.updated_at,
            info=info,
        )


class CertificateListResponse(BaseModel):
    certificates: list[CertificateResponse] = Field(default_factory=list)
    total: int = Field(default=0)


class ProcessingStatus(BaseModel):
    processing: bool = Field(..., description="A certificate operation is in flight")
