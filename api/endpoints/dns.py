"""
DNS provider and credential endpoints.

Providers are the built-in DNS-01 plugins; credentials are stored
environment bindings for one provider, referenced by certificates that
use the dns01 challenge.
"""

import logging

from fastapi import APIRouter, HTTPException

from core.dns_credential_store import get_dns_credential_store
from core.dns_providers import DNSProviderConfig, get_provider, list_providers
from models.dns_credential import DNSCredential, DNSCredentialCreate, DNSCredentialResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dns", tags=["DNS Challenge"])


@router.get(
    "/providers",
    response_model=list[DNSProviderConfig],
    summary="List DNS Providers",
    description="""
    List the DNS-01 providers this server can drive.

    Each entry names the environment variables the provider reads:
    `credentials` are required secrets, `additional` are optional tuning
    values. A DNS credential stores values for exactly these names.
    """,
)
async def get_dns_providers() -> list[DNSProviderConfig]:
    return list_providers()


@router.get(
    "/providers/{code}",
    response_model=DNSProviderConfig,
    summary="Get DNS Provider",
    responses={404: {"description": "Unknown provider code"}},
)
async def get_dns_provider(code: str) -> DNSProviderConfig:
    provider_cls = get_provider(code)
    if provider_cls is None:
        raise HTTPException(
            status_code=404,
            detail={
                "error": "provider_not_found",
                "message": f"provider not found: {code}",
                "suggestion": "Use GET /dns/providers to list supported provider codes",
            },
        )
    return provider_cls.config


@router.get(
    "/credentials",
    response_model=list[DNSCredentialResponse],
    summary="List DNS Credentials",
    description="List stored DNS credentials. Secret values are never returned, only their variable names.",
)
async def list_dns_credentials() -> list[DNSCredentialResponse]:
    credentials = await get_dns_credential_store().list_credentials()
    return [DNSCredentialResponse.from_credential(c) for c in credentials]


@router.post(
    "/credentials",
    response_model=DNSCredentialResponse,
    status_code=201,
    summary="Create DNS Credential",
    description="""
    Store environment bindings for a DNS provider.

    Values are exported to the process environment only while a
    certificate operation that uses this credential holds the
    certificate gate, and removed again afterwards.
    """,
    responses={400: {"description": "Unknown provider or empty configuration"}},
)
async def create_dns_credential(data: DNSCredentialCreate) -> DNSCredentialResponse:
    provider_cls = get_provider(data.code)
    if provider_cls is None:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "provider_not_found",
                "message": f"provider not found: {data.code}",
                "suggestion": "Use GET /dns/providers to list supported provider codes",
            },
        )
    if not data.configuration.to_env():
        raise HTTPException(
            status_code=400,
            detail={
                "error": "empty_configuration",
                "message": "environment configuration is empty",
                "suggestion": f"Provide values for: {', '.join(provider_cls.config.credentials)}",
            },
        )

    credential = await get_dns_credential_store().create(
        DNSCredential(
            name=data.name,
            provider=provider_cls.config.name,
            code=data.code,
            configuration=data.configuration,
        )
    )
    return DNSCredentialResponse.from_credential(credential)


@router.delete(
    "/credentials/{credential_id}",
    summary="Delete DNS Credential",
    responses={404: {"description": "Credential not found"}},
)
async def delete_dns_credential(credential_id: int) -> dict:
    deleted = await get_dns_credential_store().delete(credential_id)
    if not deleted:
        raise HTTPException(
            status_code=404,
            detail={
                "error": "credential_not_found",
                "message": f"DNS credential {credential_id} not found",
                "suggestion": "Use GET /dns/credentials to list stored credentials",
            },
        )
    logger.info(f"Deleted DNS credential {credential_id}")
    return {"success": True, "message": f"DNS credential {credential_id} deleted"}
