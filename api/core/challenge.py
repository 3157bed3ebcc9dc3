"""
Challenge configuration for certificate operations.

Wires either the built-in HTTP-01 responder or a DNS-01 provider taken
from the registry, using a stored DNS credential whose values are
exported to the process environment only while the operation runs.
"""

import logging
import os
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import ClassVar

import dns.exception
import dns.nameserver
import dns.resolver
import josepy as jose
from acme import challenges, messages, standalone

from config import settings
from core.cert_logger import CertLogger
from core.dns_credential_store import get_dns_credential_store
from core.dns_providers import DNSProvider, DNSProviderInitError, get_provider, scoped_env
from models.certificate import CertificateRequest, ChallengeMethod

logger = logging.getLogger(__name__)

CNAME_ENV = "LEGO_DISABLE_CNAME_SUPPORT"
MAX_CNAME_HOPS = 50


def parse_nameserver(value: str) -> tuple[str, int]:
    """Split ``host[:port]`` or ``[v6]:port`` into address and port (default 53)."""
    host, port = value, ""
    if value.startswith("[") and "]" in value:
        host, _, rest = value[1:].partition("]")
        port = rest[1:] if rest.startswith(":") else ""
    elif value.count(":") == 1:
        host, _, port = value.partition(":")
    try:
        return host, int(port) if port else 53
    except ValueError:
        raise ChallengeError(f"Invalid nameserver {value!r}", suggestion="Use host, host:port or [v6]:port")


class ChallengeError(Exception):
    """Challenge could not be configured or answered."""

    def __init__(self, message: str, suggestion: str | None = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class DNSCredentialNotFoundError(ChallengeError):
    pass


class DNSProviderNotFoundError(ChallengeError):
    pass


class DNSConfigurationEmptyError(ChallengeError):
    pass


class DNSProviderSetupError(ChallengeError):
    pass


AuthzItem = tuple[str, messages.ChallengeBody]


class ChallengeSolver(ABC):
    """
    Answers one kind of ACME challenge for a batch of authorizations.

    Both methods are blocking and are called from the worker thread that
    drives the ACME order.
    """

    challenge_type: ClassVar[type[challenges.Challenge]]

    def __init__(self, log: CertLogger):
        self.log = log

    @abstractmethod
    def perform(self, items: list[AuthzItem], account_key: jose.JWK) -> None:
        """Make every challenge in ``items`` answerable."""

    @abstractmethod
    def cleanup(self, items: list[AuthzItem], account_key: jose.JWK) -> None:
        """Undo perform(). Must not raise."""


class Http01Solver(ChallengeSolver):
    """Serves key authorizations from the acme library's standalone server."""

    challenge_type = challenges.HTTP01

    def __init__(self, log: CertLogger, port: int, address: str = ""):
        super().__init__(log)
        self.port = port
        self.address = address
        self._resources: set = set()
        self._servers: standalone.HTTP01DualNetworkedServers | None = None

    def perform(self, items: list[AuthzItem], account_key: jose.JWK) -> None:
        for _domain, challb in items:
            response, validation = challb.response_and_validation(account_key)
            self._resources.add(
                standalone.HTTP01RequestHandler.HTTP01Resource(
                    chall=challb.chall, response=response, validation=validation
                )
            )

        if self._servers is None:
            try:
                self._servers = standalone.HTTP01DualNetworkedServers((self.address, self.port), self._resources)
            except OSError as e:
                raise ChallengeError(
                    f"Could not start HTTP-01 responder on port {self.port}: {e}",
                    suggestion="Free the port or set HTTP_CHALLENGE_PORT",
                )
            self._servers.serve_forever()
            self.log.info(f"HTTP-01 responder listening on port {self.port}")

    def cleanup(self, items: list[AuthzItem], account_key: jose.JWK) -> None:
        if self._servers is not None:
            self._servers.shutdown_and_server_close()
            self._servers = None
            self.log.info("HTTP-01 responder stopped")
        self._resources.clear()


class Dns01Solver(ChallengeSolver):
    """Publishes TXT records through a DNS provider and waits for them to resolve."""

    challenge_type = challenges.DNS01

    def __init__(
        self,
        log: CertLogger,
        provider: DNSProvider,
        nameservers: list[str] | None = None,
        follow_cname: bool = True,
        propagation_timeout: float | None = None,
        propagation_interval: float | None = None,
    ):
        super().__init__(log)
        self.provider = provider
        self.nameservers = nameservers or []
        self.follow_cname = follow_cname
        self.propagation_timeout = propagation_timeout or settings.dns_propagation_timeout
        self.propagation_interval = propagation_interval or settings.dns_propagation_interval
        self._records: list[tuple[str, str]] = []

    def _resolver(self) -> dns.resolver.Resolver:
        resolver = dns.resolver.Resolver(configure=not self.nameservers)
        if self.nameservers:
            resolver.nameservers = [dns.nameserver.Do53Nameserver(*parse_nameserver(ns)) for ns in self.nameservers]
        return resolver

    def resolve_cname(self, fqdn: str) -> str:
        """Follow a CNAME chain from ``fqdn`` to the name that holds the TXT record."""
        resolver = self._resolver()
        seen = {fqdn}
        current = fqdn
        for _ in range(MAX_CNAME_HOPS):
            try:
                answer = resolver.resolve(current, "CNAME")
            except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer, dns.resolver.NoNameservers):
                return current
            except dns.exception.DNSException as e:
                logger.debug(f"CNAME lookup for {current} failed: {e}")
                return current
            target = answer[0].target.to_text(omit_final_dot=True)
            if target in seen:
                return current
            seen.add(target)
            current = target
        return current

    def wait_for_propagation(self, fqdn: str, value: str) -> None:
        resolver = self._resolver()
        deadline = time.monotonic() + self.propagation_timeout
        while True:
            try:
                answer = resolver.resolve(fqdn, "TXT")
                found = {b"".join(rdata.strings).decode() for rdata in answer}
                if value in found:
                    self.log.info(f"TXT record {fqdn} is visible")
                    return
            except dns.exception.DNSException as e:
                logger.debug(f"TXT lookup for {fqdn} failed: {e}")

            if time.monotonic() >= deadline:
                raise ChallengeError(
                    f"Time limit exceeded waiting for TXT record {fqdn} to propagate",
                    suggestion="Raise DNS_PROPAGATION_TIMEOUT or set RECURSIVE_NAMESERVERS",
                )
            time.sleep(self.propagation_interval)

    def perform(self, items: list[AuthzItem], account_key: jose.JWK) -> None:
        for domain, challb in items:
            fqdn = challb.chall.validation_domain_name(domain)
            if self.follow_cname:
                target = self.resolve_cname(fqdn)
                if target != fqdn:
                    self.log.info(f"Following CNAME {fqdn} -> {target}")
                    fqdn = target
            value = challb.chall.validation(account_key)
            self.log.info(f"Presenting TXT record {fqdn}")
            self.provider.present(fqdn, value)
            self._records.append((fqdn, value))

        for fqdn, value in self._records:
            self.wait_for_propagation(fqdn, value)

    def cleanup(self, items: list[AuthzItem], account_key: jose.JWK) -> None:
        while self._records:
            fqdn, value = self._records.pop()
            try:
                self.provider.cleanup(fqdn, value)
            except Exception as e:
                logger.warning(f"Failed to remove TXT record {fqdn}: {e}")
                self.log.error(f"Failed to remove TXT record {fqdn}: {e}")


@asynccontextmanager
async def configure_challenge(request: CertificateRequest, log: CertLogger):
    """
    Yield the solver for ``request``'s challenge method.

    For DNS-01 the credential's environment bindings are exported for the
    lifetime of the context and removed again on exit, whatever happens.
    """
    if request.challenge_method != ChallengeMethod.DNS01:
        log.info("Using HTTP01 challenge provider")
        yield Http01Solver(log, port=settings.http_challenge_port)
        return

    log.info("Using DNS01 challenge provider")
    credential = None
    if request.dns_credential_id:
        credential = await get_dns_credential_store().get(request.dns_credential_id)
    if credential is None:
        raise DNSCredentialNotFoundError(
            f"DNS credential {request.dns_credential_id} not found",
            suggestion="Select an existing DNS credential",
        )

    provider_cls = get_provider(credential.code)
    if provider_cls is None:
        raise DNSProviderNotFoundError(
            f"provider not found: {credential.code}",
            suggestion="GET /dns/providers lists the supported provider codes",
        )

    env = credential.configuration.to_env()
    if not env:
        raise DNSConfigurationEmptyError(
            "environment configuration is empty",
            suggestion=f"Fill in the {provider_cls.config.name} credential values",
        )
    if request.disable_cname_following:
        env[CNAME_ENV] = "true"

    log.info(f"DNS credential: {credential.name} ({provider_cls.config.name})")
    try:
        with scoped_env(env):
            try:
                provider = provider_cls.from_env(os.environ)
            except DNSProviderInitError as e:
                raise DNSProviderSetupError(e.message, suggestion=e.suggestion) from e

            nameservers = settings.nameservers
            if nameservers:
                log.info(f"Using recursive nameservers: {', '.join(nameservers)}")

            try:
                yield Dns01Solver(
                    log,
                    provider,
                    nameservers=nameservers,
                    follow_cname=os.environ.get(CNAME_ENV, "").lower() != "true",
                )
            finally:
                provider.close()
    finally:
        log.info("Environment variables cleaned")
