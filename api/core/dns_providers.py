"""
DNS-01 provider registry.

Providers are looked up by a short code (``cloudflare``, ``rfc2136``,
``httpreq``) and constructed from environment variables, the same way
a stored DNS credential is injected into the process for the duration
of one certificate operation. Provider calls are blocking and run in a
worker thread alongside the ACME client.
"""

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping
from contextlib import contextmanager
from typing import ClassVar

import cloudflare
import dns.message
import dns.name
import dns.query
import dns.rcode
import dns.rdatatype
import dns.tsigkeyring
import dns.update
import httpx
from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)


class DNSProviderError(Exception):
    """A DNS provider call failed."""

    def __init__(self, message: str, suggestion: str | None = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class DNSProviderInitError(DNSProviderError):
    """Provider could not be constructed from its environment."""

    pass


class DNSProviderConfig(BaseModel):
    """Describes what a provider reads from the environment."""

    code: str = Field(..., description="Registry key")
    name: str = Field(..., description="Display name")
    credentials: dict[str, str] = Field(default_factory=dict, description="Required variables")
    additional: dict[str, str] = Field(default_factory=dict, description="Optional variables")
    links: dict[str, str] = Field(default_factory=dict)


class DNSProvider(ABC):
    """Creates and removes the TXT records of DNS-01 challenges."""

    config: ClassVar[DNSProviderConfig]

    @classmethod
    @abstractmethod
    def from_env(cls, environ: Mapping[str, str]) -> "DNSProvider": ...

    @abstractmethod
    def present(self, fqdn: str, value: str) -> None: ...

    @abstractmethod
    def cleanup(self, fqdn: str, value: str) -> None: ...

    def close(self) -> None:
        """Release clients held by the provider."""

    @classmethod
    def _require(cls, environ: Mapping[str, str], *names: str) -> dict[str, str]:
        missing = [name for name in names if not environ.get(name)]
        if missing:
            raise DNSProviderInitError(
                f"{cls.config.code}: some credentials information are missing: {','.join(missing)}",
                suggestion=f"Set {', '.join(missing)} in the DNS credential",
            )
        return {name: environ[name] for name in names}


_registry: dict[str, type[DNSProvider]] = {}


def register_provider(provider_cls: type[DNSProvider]) -> type[DNSProvider]:
    """Class decorator adding a provider to the registry."""
    _registry[provider_cls.config.code] = provider_cls
    return provider_cls


def get_provider(code: str) -> type[DNSProvider] | None:
    return _registry.get(code)


def list_providers() -> list[DNSProviderConfig]:
    return [provider_cls.config for provider_cls in sorted(_registry.values(), key=lambda p: p.config.code)]


# Environment handling


def set_env(configuration: Mapping[str, str]) -> dict[str, str | None]:
    """Export ``configuration``; returns what it shadowed for clean_env()."""
    previous: dict[str, str | None] = {}
    for key, value in configuration.items():
        previous[key] = os.environ.get(key)
        os.environ[key] = value
    return previous


def clean_env(previous: Mapping[str, str | None]) -> None:
    """Undo set_env(): remove the keys it added and restore shadowed values."""
    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


@contextmanager
def scoped_env(configuration: Mapping[str, str]):
    previous = set_env(configuration)
    try:
        yield
    finally:
        clean_env(previous)


def _ttl(environ: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int(environ.get(name) or default)
    except ValueError:
        raise DNSProviderInitError(f"{name} must be an integer, got {environ.get(name)!r}")


def _seconds(environ: Mapping[str, str], name: str, default: float) -> float:
    try:
        return float(environ.get(name) or default)
    except ValueError:
        raise DNSProviderInitError(f"{name} must be a number of seconds, got {environ.get(name)!r}")


# Providers


@register_provider
class CloudflareProvider(DNSProvider):
    """Cloudflare through the official SDK, authenticated with a scoped API token."""

    config = DNSProviderConfig(
        code="cloudflare",
        name="Cloudflare",
        credentials={"CLOUDFLARE_DNS_API_TOKEN": "API token with DNS:Edit permission"},
        additional={
            "CLOUDFLARE_ZONE_API_TOKEN": "API token with Zone:Read permission (defaults to the DNS token)",
            "CLOUDFLARE_ZONE_ID": "Zone ID, skips zone discovery when set",
            "CLOUDFLARE_TTL": "TTL of the TXT record (default 120)",
        },
        links={"api": "https://developers.cloudflare.com/api/"},
    )

    def __init__(self, dns_token: str, zone_token: str = "", zone_id: str = "", ttl: int = 120):
        self.ttl = ttl
        self.zone_id = zone_id
        self._dns_client = cloudflare.Cloudflare(api_token=dns_token)
        if zone_token and zone_token != dns_token:
            self._zone_client = cloudflare.Cloudflare(api_token=zone_token)
        else:
            self._zone_client = self._dns_client
        self._record_ids: dict[tuple[str, str], tuple[str, str]] = {}

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "CloudflareProvider":
        required = cls._require(environ, "CLOUDFLARE_DNS_API_TOKEN")
        return cls(
            dns_token=required["CLOUDFLARE_DNS_API_TOKEN"],
            zone_token=environ.get("CLOUDFLARE_ZONE_API_TOKEN", ""),
            zone_id=environ.get("CLOUDFLARE_ZONE_ID", ""),
            ttl=_ttl(environ, "CLOUDFLARE_TTL", 120),
        )

    def _api_error(self, action: str, fqdn: str, error: cloudflare.APIError) -> DNSProviderError:
        return DNSProviderError(
            f"cloudflare: {action} {fqdn} failed: {error}",
            suggestion="Check the API token permissions for this zone",
        )

    def _find_zone_id(self, fqdn: str) -> str:
        if self.zone_id:
            return self.zone_id
        labels = fqdn.rstrip(".").split(".")
        for i in range(len(labels) - 1):
            candidate = ".".join(labels[i:])
            zones = list(self._zone_client.zones.list(name=candidate))
            if zones:
                return zones[0].id
        raise DNSProviderError(f"cloudflare: no zone found for {fqdn}", suggestion="Add the domain to Cloudflare")

    def present(self, fqdn: str, value: str) -> None:
        name = fqdn.rstrip(".")
        try:
            zone_id = self._find_zone_id(fqdn)
            record = self._dns_client.dns.records.create(
                zone_id=zone_id, type="TXT", name=name, content=value, ttl=self.ttl
            )
        except cloudflare.APIError as e:
            raise self._api_error("present", fqdn, e) from e
        self._record_ids[(fqdn, value)] = (zone_id, record.id)
        logger.info(f"Created Cloudflare TXT record {name}")

    def cleanup(self, fqdn: str, value: str) -> None:
        name = fqdn.rstrip(".")
        try:
            tracked = self._record_ids.pop((fqdn, value), None)
            if tracked is None:
                zone_id = self._find_zone_id(fqdn)
                matches = [
                    record.id
                    for record in self._dns_client.dns.records.list(zone_id=zone_id, name=name, type="TXT")
                    if getattr(record, "content", None) == value
                ]
                if not matches:
                    logger.debug(f"No Cloudflare TXT record {name} to delete")
                    return
                tracked = (zone_id, matches[0])
            zone_id, record_id = tracked
            self._dns_client.dns.records.delete(record_id, zone_id=zone_id)
        except cloudflare.APIError as e:
            raise self._api_error("cleanup", fqdn, e) from e
        logger.info(f"Deleted Cloudflare TXT record {name}")

    def close(self) -> None:
        self._dns_client.close()
        if self._zone_client is not self._dns_client:
            self._zone_client.close()


@register_provider
class RFC2136Provider(DNSProvider):
    """Dynamic DNS updates (RFC 2136) signed with TSIG."""

    config = DNSProviderConfig(
        code="rfc2136",
        name="RFC2136",
        credentials={
            "RFC2136_NAMESERVER": "Authoritative server, host[:port]",
            "RFC2136_TSIG_KEY": "TSIG key name",
            "RFC2136_TSIG_SECRET": "TSIG secret (base64)",
        },
        additional={
            "RFC2136_TSIG_ALGORITHM": "TSIG algorithm (default hmac-sha256.)",
            "RFC2136_TTL": "TTL of the TXT record (default 120)",
            "RFC2136_DNS_TIMEOUT": "Query timeout in seconds (default 10)",
        },
        links={"rfc": "https://www.rfc-editor.org/rfc/rfc2136"},
    )

    def __init__(
        self,
        nameserver: str,
        key_name: str,
        secret: str,
        algorithm: str = "hmac-sha256.",
        ttl: int = 120,
        timeout: float = 10.0,
    ):
        host, _, port = nameserver.rpartition(":") if nameserver.count(":") == 1 else (nameserver, "", "")
        self.host = host
        self.port = int(port) if port else 53
        self.key_name = key_name
        self.algorithm = algorithm
        self.ttl = ttl
        self.timeout = timeout
        try:
            self.keyring = dns.tsigkeyring.from_text({key_name: secret})
        except Exception as e:
            raise DNSProviderInitError(f"rfc2136: invalid TSIG key: {e}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str]) -> "RFC2136Provider":
        required = cls._require(environ, "RFC2136_NAMESERVER", "RFC2136_TSIG_KEY", "RFC2136_TSIG_SECRET")
        return cls(
            nameserver=required["RFC2136_NAMESERVER"],
            key_name=required["RFC2136_TSIG_KEY"],
            secret=required["RFC2136_TSIG_SECRET"],
            algorithm=environ.get("RFC2136_TSIG_ALGORITHM") or "hmac-sha256.",
            ttl=_ttl(environ, "RFC2136_TTL", 120),
            timeout=_seconds(environ, "RFC2136_DNS_TIMEOUT", 10),
        )

    def _find_zone(self, fqdn: str) -> dns.name.Name:
        """Ask the server for the SOA that owns ``fqdn``."""
        query = dns.message.make_query(fqdn, dns.rdatatype.SOA)
        response = dns.query.tcp(query, self.host, port=self.port, timeout=self.timeout)
        for rrset in response.answer + response.authority:
            if rrset.rdtype == dns.rdatatype.SOA:
                return rrset.name
        raise DNSProviderError(
            f"rfc2136: no SOA found for {fqdn} on {self.host}",
            suggestion="Check that the nameserver is authoritative for this domain",
        )

    def _send(self, fqdn: str, value: str, add: bool) -> None:
        zone = self._find_zone(fqdn)
        name = dns.name.from_text(fqdn).relativize(zone)
        update = dns.update.Update(zone, keyring=self.keyring, keyname=self.key_name, keyalgorithm=self.algorithm)
        if add:
            update.add(name, self.ttl, dns.rdatatype.TXT, value)
        else:
            update.delete(name, dns.rdatatype.TXT, value)

        response = dns.query.tcp(update, self.host, port=self.port, timeout=self.timeout)
        rcode = response.rcode()
        if rcode != dns.rcode.NOERROR:
            raise DNSProviderError(
                f"rfc2136: update of {fqdn} rejected with {dns.rcode.to_text(rcode)}",
                suggestion="Check that the TSIG key may update this zone",
            )

    def present(self, fqdn: str, value: str) -> None:
        self._send(fqdn, value, add=True)
        logger.info(f"Added TXT record {fqdn} via {self.host}")

    def cleanup(self, fqdn: str, value: str) -> None:
        self._send(fqdn, value, add=False)
        logger.info(f"Removed TXT record {fqdn} via {self.host}")


@register_provider
class HTTPReqProvider(DNSProvider):
    """Generic HTTP endpoint that manages TXT records on our behalf."""

    config = DNSProviderConfig(
        code="httpreq",
        name="HTTP request",
        credentials={"HTTPREQ_ENDPOINT": "Base URL receiving /present and /cleanup"},
        additional={
            "HTTPREQ_USERNAME": "Basic auth user",
            "HTTPREQ_PASSWORD": "Basic auth password",
            "HTTPREQ_HTTP_TIMEOUT": "Request timeout in seconds (default 30)",
        },
    )

    def __init__(self, endpoint: str, username: str = "", password: str = "", timeout: float = 30.0, transport=None):
        auth = (username, password) if username and password else None
        self.endpoint = endpoint.rstrip("/")
        self._client = httpx.Client(auth=auth, timeout=timeout, transport=transport)

    @classmethod
    def from_env(cls, environ: Mapping[str, str], transport=None) -> "HTTPReqProvider":
        required = cls._require(environ, "HTTPREQ_ENDPOINT")
        if environ.get("HTTPREQ_MODE"):
            raise DNSProviderInitError(f"httpreq: unsupported mode {environ['HTTPREQ_MODE']!r}")
        return cls(
            endpoint=required["HTTPREQ_ENDPOINT"],
            username=environ.get("HTTPREQ_USERNAME", ""),
            password=environ.get("HTTPREQ_PASSWORD", ""),
            timeout=_seconds(environ, "HTTPREQ_HTTP_TIMEOUT", 30),
            transport=transport,
        )

    def _post(self, action: str, fqdn: str, value: str) -> None:
        fqdn = fqdn if fqdn.endswith(".") else fqdn + "."
        response = self._client.post(f"{self.endpoint}/{action}", json={"fqdn": fqdn, "value": value})
        if response.is_error:
            raise DNSProviderError(
                f"httpreq: {action} {fqdn} failed with {response.status_code}: {response.text}",
                suggestion="Check the endpoint logs",
            )

    def present(self, fqdn: str, value: str) -> None:
        self._post("present", fqdn, value)

    def cleanup(self, fqdn: str, value: str) -> None:
        self._post("cleanup", fqdn, value)

    def close(self) -> None:
        self._client.close()
