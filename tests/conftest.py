"""
Global test fixtures.

Points the configuration root and the database at a temporary directory
and resets every service singleton, so each test starts from a clean
process state.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from config import settings
from core.database import Database

SINGLETONS = [
    ("core.database", "_db_instance"),
    ("core.cert_store", "_cert_store"),
    ("core.dns_credential_store", "_dns_credential_store"),
    ("core.node_store", "_node_store"),
    ("core.notification", "_notification_store"),
    ("core.acme_user_service", "_acme_user_service"),
    ("core.cert_gate", "_cert_gate"),
    ("core.cert_manager", "_cert_manager"),
    ("core.cert_scheduler", "_cert_scheduler"),
    ("core.nginx_control", "_nginx_control"),
    ("core.server_tls", "_server_tls"),
]


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path, monkeypatch):
    """Temporary conf root and database; fresh singletons."""
    conf_root = tmp_path / "nginx"
    conf_root.mkdir()
    monkeypatch.setattr(settings, "nginx_conf_root", str(conf_root))
    monkeypatch.setattr(settings, "database_path", str(tmp_path / "data" / "test.db"))
    monkeypatch.setattr(settings, "server_ssl_cert", "")
    monkeypatch.setattr(settings, "server_ssl_key", "")
    monkeypatch.setattr(settings, "node_secret", "")
    monkeypatch.setattr(settings, "recursive_nameservers", "")

    import importlib

    for module_name, attr in SINGLETONS:
        monkeypatch.setattr(importlib.import_module(module_name), attr, None)
    yield


@pytest.fixture
def conf_root(isolated_settings):
    """The temporary NGINX configuration root."""
    from config import get_nginx_conf_path

    return get_nginx_conf_path()


@pytest.fixture
def db(isolated_settings):
    """Initialized SQLite database at the temporary DATABASE_PATH."""
    database = Database()
    asyncio.run(database.initialize())
    return database


@pytest.fixture
def make_certificate():
    """
    Factory for self-signed PEM certificates.

    Returns ``(cert_pem, key_pem)`` as text.
    """

    def _make(domains=("example.com",), not_before=None, not_after=None):
        key = ec.generate_private_key(ec.SECP256R1())
        now = datetime.now(timezone.utc)
        not_before = not_before or now - timedelta(days=1)
        not_after = not_after or not_before + timedelta(days=90)
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domains[0])])
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(not_before)
            .not_valid_after(not_after)
            .add_extension(x509.SubjectAlternativeName([x509.DNSName(d) for d in domains]), critical=False)
            .sign(key, hashes.SHA256())
        )
        cert_pem = cert.public_bytes(serialization.Encoding.PEM).decode()
        key_pem = key.private_bytes(
            serialization.Encoding.PEM, serialization.PrivateFormat.PKCS8, serialization.NoEncryption()
        ).decode()
        return cert_pem, key_pem

    return _make
