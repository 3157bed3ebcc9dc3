"""
Configuration utilities and settings management.

Handles environment variables, path resolution, and the sandbox rule
that keeps every certificate file under the proxy configuration root.
"""

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Configuration
    api_host: str = Field(default="0.0.0.0", alias="API_HOST")
    api_port: int = Field(default=8000, alias="API_PORT")
    api_debug: bool = Field(default=True, alias="API_DEBUG")
    cors_allowed_origins: str = Field(
        default="", alias="CORS_ALLOWED_ORIGINS", description="Comma-separated origins allowed by CORS"
    )

    # NGINX
    nginx_conf_root: str = Field(
        default="/etc/nginx",
        alias="NGINX_CONF_ROOT",
        description="NGINX configuration root; certificate files may only live below it",
    )
    nginx_container_name: str = Field(
        default="", alias="NGINX_CONTAINER_NAME", description="Docker container running NGINX (empty = local)"
    )
    nginx_reload_cmd: str = Field(
        default="nginx -s reload", alias="NGINX_RELOAD_CMD", description="Reload command when NGINX runs locally"
    )
    nginx_operation_timeout: int = Field(
        default=30, alias="NGINX_OPERATION_TIMEOUT", description="Timeout in seconds for NGINX operations"
    )

    # ACME Configuration
    acme_directory_url: str = Field(
        default="https://acme-v02.api.letsencrypt.org/directory",
        alias="ACME_DIRECTORY_URL",
        description="ACME directory URL (production Let's Encrypt)",
    )
    acme_staging_url: str = Field(
        default="https://acme-staging-v02.api.letsencrypt.org/directory",
        alias="ACME_STAGING_URL",
        description="ACME staging directory URL for testing",
    )
    acme_use_staging: bool = Field(
        default=False,
        alias="ACME_USE_STAGING",
        description="Use staging environment to avoid rate limits during testing",
    )
    acme_account_email: str = Field(
        default="", alias="ACME_ACCOUNT_EMAIL", description="Email for the default ACME account"
    )
    acme_user_agent: str = Field(default="proxy-cert-manager/0.1", alias="ACME_USER_AGENT")
    acme_order_timeout: int = Field(
        default=300, alias="ACME_ORDER_TIMEOUT", description="Seconds to wait for authorizations and finalization"
    )

    # Challenges
    http_challenge_port: int = Field(
        default=9180, alias="HTTP_CHALLENGE_PORT", description="Port of the built-in HTTP-01 responder"
    )
    recursive_nameservers: str = Field(
        default="",
        alias="RECURSIVE_NAMESERVERS",
        description="Comma-separated resolvers used for DNS-01 propagation checks",
    )
    dns_propagation_timeout: int = Field(default=120, alias="DNS_PROPAGATION_TIMEOUT")
    dns_propagation_interval: float = Field(default=5.0, alias="DNS_PROPAGATION_INTERVAL")

    # Renewal
    cert_renewal_interval: int = Field(
        default=7, alias="CERT_RENEWAL_INTERVAL", description="Renew certificates older than this many days"
    )
    cert_check_interval_minutes: int = Field(
        default=30, alias="CERT_CHECK_INTERVAL_MINUTES", description="Minutes between renewal sweeps"
    )
    cert_log_queue_size: int = Field(
        default=256, alias="CERT_LOG_QUEUE_SIZE", description="Operation log lines buffered for a live listener"
    )

    # Fleet sync
    node_secret: str = Field(default="", alias="NODE_SECRET", description="Shared secret accepted from peer nodes")
    node_sync_timeout: float = Field(default=10.0, alias="NODE_SYNC_TIMEOUT")
    node_sync_insecure_skip_verify: bool = Field(default=False, alias="NODE_SYNC_INSECURE_SKIP_VERIFY")

    # Management server TLS
    server_ssl_cert: str = Field(default="", alias="SERVER_SSL_CERT")
    server_ssl_key: str = Field(default="", alias="SERVER_SSL_KEY")

    # Persistence
    database_path: str = Field(
        default="/var/lib/proxy-cert-manager/database.db",
        alias="DATABASE_PATH",
        description="Path to SQLite database for certificates, accounts and notifications",
    )

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"  # Ignore extra fields in .env file

    @field_validator("cert_renewal_interval")
    @classmethod
    def clamp_renewal_interval(cls, value: int) -> int:
        return max(value, 1)

    @property
    def directory_url(self) -> str:
        """ACME directory URL based on the staging switch."""
        if self.acme_use_staging:
            return self.acme_staging_url
        return self.acme_directory_url

    @property
    def nameservers(self) -> list[str]:
        return [ns.strip() for ns in self.recursive_nameservers.split(",") if ns.strip()]


# Global settings instance
settings = Settings()


class SandboxViolationError(Exception):
    """A certificate path resolved outside the NGINX configuration root."""

    def __init__(self, message: str, path: str | None = None, suggestion: str | None = None):
        self.message = message
        self.path = path
        self.suggestion = suggestion or f"Keep certificate files under {settings.nginx_conf_root}"
        super().__init__(message)


def get_nginx_conf_path() -> Path:
    """Get the NGINX configuration root."""
    return Path(settings.nginx_conf_root)


def get_conf_path(*parts: str) -> Path:
    """Join path components onto the NGINX configuration root."""
    return get_nginx_conf_path().joinpath(*parts)


def is_under_directory(path: str | Path, root: str | Path) -> bool:
    """Check whether ``path`` resolves inside ``root`` (symlinks and ``..`` included)."""
    try:
        Path(path).resolve().relative_to(Path(root).resolve())
    except ValueError:
        return False
    return True


def ensure_under_conf_root(path: str | Path) -> Path:
    """Return ``path`` as a Path, or raise if it escapes the configuration root."""
    if not path or not is_under_directory(path, get_nginx_conf_path()):
        raise SandboxViolationError(f"Path is not under the nginx conf path: {path}", path=str(path))
    return Path(path)


def ensure_directories():
    """Ensure required directories exist (for development/testing)."""
    Path(settings.database_path).parent.mkdir(parents=True, exist_ok=True)


def is_development_mode() -> bool:
    """Check if we're running in development mode."""
    return settings.api_debug
