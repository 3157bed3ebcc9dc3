"""
ACME client wrapper.

Thin layer over the certbot ``acme`` library: account registration,
obtaining and renewing certificates through a challenge solver, and
revocation. The library is synchronous, so every network exchange runs
in a worker thread. Also hosts the key, CSR and certificate helpers.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from pathlib import Path

import josepy as jose
from acme import client, messages
from acme import errors as acme_errors
from acme.client import ClientV2
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import ExtensionOID, NameOID

from config import ensure_under_conf_root, settings
from core.cert_logger import CertLogger
from core.challenge import ChallengeSolver
from models.acme_user import ACMEUser
from models.certificate import CertificateInfo, CertificateResource, KeyType

logger = logging.getLogger(__name__)

PEM_END = "-----END CERTIFICATE-----"


class ACMEError(Exception):
    """Base exception for ACME operations."""

    def __init__(self, message: str, suggestion: str = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class ACMEChallengeError(ACMEError):
    """ACME challenge failed."""

    pass


class ACMEAuthorizationError(ACMEError):
    """ACME authorization failed."""

    pass


class ACMEOrderError(ACMEError):
    """ACME order failed."""

    pass


class ACMERegistrationError(ACMEError):
    """ACME account registration failed."""

    pass


# Key, CSR and certificate helpers


def generate_key(key_type: KeyType):
    """Generate a certificate private key for ``key_type``."""
    if key_type == KeyType.EC256:
        return ec.generate_private_key(ec.SECP256R1())
    if key_type == KeyType.EC384:
        return ec.generate_private_key(ec.SECP384R1())
    return rsa.generate_private_key(public_exponent=65537, key_size=int(key_type.value))


def generate_account_key() -> jose.JWK:
    """New ACME account key (P-256)."""
    return jose.JWKEC(key=ec.generate_private_key(ec.SECP256R1()))


def private_key_to_pem(private_key) -> str:
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


def make_csr(private_key, domains: list[str], must_staple: bool = False) -> bytes:
    """
    Create a CSR for the given domains.

    Args:
        private_key: Key the certificate will be issued for
        domains: DNS names; the first one becomes the common name
        must_staple: Add the TLS Feature (status_request) extension

    Returns:
        PEM-encoded CSR bytes
    """
    builder = x509.CertificateSigningRequestBuilder()
    builder = builder.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])]))
    builder = builder.add_extension(
        x509.SubjectAlternativeName([x509.DNSName(domain) for domain in domains]), critical=False
    )
    if must_staple:
        builder = builder.add_extension(x509.TLSFeature([x509.TLSFeatureType.status_request]), critical=False)

    csr = builder.sign(private_key, hashes.SHA256())
    return csr.public_bytes(serialization.Encoding.PEM)


def split_chain(fullchain_pem: str) -> tuple[str, str]:
    """Split a PEM bundle into (leaf, issuer chain)."""
    parts = [part.strip() for part in fullchain_pem.split(PEM_END) if part.strip()]
    certs = [part + "\n" + PEM_END + "\n" for part in parts]
    if not certs:
        return "", ""
    return certs[0], "".join(certs[1:])


def parse_certificate(cert_pem: bytes) -> CertificateInfo:
    """
    Parse a PEM certificate (the first one in a bundle) and extract details.

    Args:
        cert_pem: PEM-encoded certificate or chain

    Returns:
        CertificateInfo with subject, issuer, validity window and SANs
    """
    cert = x509.load_pem_x509_certificate(cert_pem)

    dns_names = []
    try:
        san_ext = cert.extensions.get_extension_for_oid(ExtensionOID.SUBJECT_ALTERNATIVE_NAME)
        dns_names = san_ext.value.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        pass

    return CertificateInfo(
        subject_name=cert.subject.rfc4514_string(),
        issuer_name=cert.issuer.rfc4514_string(),
        serial_number=format(cert.serial_number, "x"),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        dns_names=dns_names,
        fingerprint_sha256=cert.fingerprint(hashes.SHA256()).hex(),
    )


def get_cert_info(path: str | Path) -> CertificateInfo:
    """Read and parse a certificate file below the NGINX configuration root."""
    cert_path = ensure_under_conf_root(path)
    return parse_certificate(cert_path.read_bytes())


def validate_certificate_key_match(cert_pem: bytes, key_pem: bytes) -> bool:
    """
    Validate that a certificate and private key match.

    Args:
        cert_pem: PEM-encoded certificate
        key_pem: PEM-encoded private key

    Returns:
        True if they match
    """
    cert = x509.load_pem_x509_certificate(cert_pem)
    private_key = serialization.load_pem_private_key(key_pem, password=None)

    public_format = serialization.PublicFormat.SubjectPublicKeyInfo
    cert_bytes = cert.public_key().public_bytes(encoding=serialization.Encoding.PEM, format=public_format)
    key_bytes = private_key.public_key().public_bytes(encoding=serialization.Encoding.PEM, format=public_format)

    return cert_bytes == key_bytes


def _signing_alg(account_key: jose.JWK):
    if isinstance(account_key, jose.JWKEC):
        return jose.ES256
    return jose.RS256


def _describe_failed_authorizations(error: acme_errors.ValidationError) -> str:
    reasons = []
    for authzr in error.failed_authzrs:
        domain = authzr.body.identifier.value
        for challb in authzr.body.challenges:
            if challb.error:
                reasons.append(f"{domain}: {challb.error}")
    return "; ".join(reasons) or str(error)


class AcmeClient:
    """
    ACME operations on behalf of one account.

    Build with ``await AcmeClient.for_user(user)``.
    """

    def __init__(self, acme_client: ClientV2, account_key: jose.JWK):
        self.client = acme_client
        self.account_key = account_key

    @classmethod
    async def for_user(cls, user: ACMEUser) -> "AcmeClient":
        """Create a client for ``user``'s key, CA directory and proxy."""
        if not user.key:
            raise ACMERegistrationError(f"ACME user {user.name} has no account key")

        account_key = jose.JWK.from_json(user.key)
        regr = None
        if user.is_registered:
            regr = messages.RegistrationResource.from_json(user.registration["resource"])
        directory_url = user.ca_dir or settings.directory_url

        def create_client():
            net = client.ClientNetwork(
                account_key, account=regr, alg=_signing_alg(account_key), user_agent=settings.acme_user_agent
            )
            if user.proxy:
                net.session.proxies.update({"http": user.proxy, "https": user.proxy})
            directory = messages.Directory.from_json(net.get(directory_url).json())
            return ClientV2(directory, net=net)

        try:
            acme_client = await asyncio.to_thread(create_client)
        except Exception as e:
            raise ACMEError(
                f"Failed to load ACME directory {directory_url}: {e}",
                suggestion="Check the CA directory URL and the account's proxy setting",
            )
        return cls(acme_client, account_key)

    async def register(self, email: str = "", eab_key_id: str = "", eab_hmac_key: str = "") -> dict:
        """
        Register the account (or recover an existing one for this key).

        Returns:
            The registration resource as JSON
        """

        def do_registration():
            eab = None
            if eab_key_id and eab_hmac_key:
                eab = messages.ExternalAccountBinding.from_data(
                    account_public_key=self.account_key.public_key(),
                    kid=eab_key_id,
                    hmac_key=eab_hmac_key,
                    directory=self.client.directory,
                )
            new_regr = messages.NewRegistration.from_data(
                email=email or None, terms_of_service_agreed=True, external_account_binding=eab
            )
            try:
                regr = self.client.new_account(new_regr)
                logger.info("Created new ACME account")
                return regr
            except acme_errors.ConflictError as conflict:
                logger.info(f"ACME account already exists at {conflict.location}, retrieving")
                existing = messages.RegistrationResource(uri=conflict.location, body=messages.Registration())
                return self.client.query_registration(existing)

        try:
            regr = await asyncio.to_thread(do_registration)
        except messages.Error as e:
            raise ACMERegistrationError(
                f"Failed to register ACME account: {e}",
                suggestion="Check the contact email and External Account Binding credentials",
            )
        return regr.to_json()

    def _process_order(self, csr_pem: bytes, solver: ChallengeSolver, log: CertLogger) -> messages.OrderResource:
        """Create the order, answer its challenges and finalize it. Blocking."""
        order = self.client.new_order(csr_pem)
        challenge_type = solver.challenge_type

        items = []
        for authz in order.authorizations:
            domain = authz.body.identifier.value
            if authz.body.status == messages.STATUS_VALID:
                log.info(f"Authorization for {domain} is already valid")
                continue
            challb = next((c for c in authz.body.challenges if isinstance(c.chall, challenge_type)), None)
            if challb is None:
                raise ACMEChallengeError(
                    f"No {challenge_type.typ} challenge offered for {domain}",
                    suggestion="Use a different challenge method for this domain",
                )
            items.append((domain, challb))

        try:
            solver.perform(items, self.account_key)
            for domain, challb in items:
                log.info(f"Answering {challenge_type.typ} challenge for {domain}")
                self.client.answer_challenge(challb, challb.response(self.account_key))

            deadline = datetime.now() + timedelta(seconds=settings.acme_order_timeout)
            order = self.client.poll_authorizations(order, deadline)
            log.info("All authorizations validated")
            return self.client.finalize_order(order, deadline)
        finally:
            solver.cleanup(items, self.account_key)

    def _to_resource(
        self, order: messages.OrderResource, domains: list[str], key_pem: str, csr_pem: bytes
    ) -> CertificateResource:
        _leaf, issuer = split_chain(order.fullchain_pem)
        cert_url = order.body.certificate or ""
        return CertificateResource(
            domain=domains[0],
            cert_url=cert_url,
            cert_stable_url=cert_url,
            private_key=key_pem,
            certificate=order.fullchain_pem,
            issuer_certificate=issuer,
            csr=csr_pem.decode("utf-8"),
        )

    async def _run(self, func, action: str):
        try:
            return await asyncio.to_thread(func)
        except acme_errors.ValidationError as e:
            raise ACMEAuthorizationError(
                f"Failed to {action}: {_describe_failed_authorizations(e)}",
                suggestion="Check that the challenge is reachable by the CA",
            )
        except acme_errors.TimeoutError as e:
            raise ACMEOrderError(
                f"Failed to {action}: timed out ({e})", suggestion="Raise ACME_ORDER_TIMEOUT or retry later"
            )
        except (messages.Error, acme_errors.Error) as e:
            raise ACMEOrderError(f"Failed to {action}: {e}", suggestion="See the operation log for CA responses")

    async def obtain(
        self,
        domains: list[str],
        key_type: KeyType,
        solver: ChallengeSolver,
        log: CertLogger,
        must_staple: bool = False,
    ) -> CertificateResource:
        """Issue a certificate for ``domains`` with a freshly generated key."""

        def do_obtain():
            private_key = generate_key(key_type)
            csr_pem = make_csr(private_key, domains, must_staple)
            order = self._process_order(csr_pem, solver, log)
            return self._to_resource(order, domains, private_key_to_pem(private_key), csr_pem)

        resource = await self._run(do_obtain, "obtain certificate")
        logger.info(f"Obtained certificate for {domains}")
        return resource

    async def renew(
        self,
        resource: CertificateResource,
        domains: list[str],
        solver: ChallengeSolver,
        log: CertLogger,
        must_staple: bool = False,
    ) -> CertificateResource:
        """Issue a replacement certificate that keeps the previous private key."""
        if not resource.private_key:
            raise ACMEOrderError(
                "Cannot renew: previous resource has no private key",
                suggestion="Issue a new certificate instead",
            )

        def do_renew():
            private_key = serialization.load_pem_private_key(resource.private_key.encode("utf-8"), password=None)
            csr_pem = make_csr(private_key, domains, must_staple)
            order = self._process_order(csr_pem, solver, log)
            return self._to_resource(order, domains, resource.private_key, csr_pem)

        renewed = await self._run(do_renew, "renew certificate")
        logger.info(f"Renewed certificate for {domains}")
        return renewed

    async def revoke(self, certificate_pem: str, reason: int = 0) -> None:
        """
        Revoke a certificate.

        Args:
            certificate_pem: PEM certificate (a bundle is fine; the leaf is revoked)
            reason: Revocation reason code (0 = unspecified)
        """
        cert = x509.load_pem_x509_certificate(certificate_pem.encode("utf-8"))

        def do_revoke():
            self.client.revoke(cert, reason)

        try:
            await asyncio.to_thread(do_revoke)
        except (messages.Error, acme_errors.Error) as e:
            raise ACMEError(
                f"Failed to revoke certificate: {e}", suggestion="Certificate may already be revoked or expired"
            )
        logger.info(f"Revoked certificate {format(cert.serial_number, 'x')}")
