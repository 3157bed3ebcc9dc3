"""
Hot-reloadable TLS context for the management server.

When SERVER_SSL_CERT / SERVER_SSL_KEY point at a managed certificate,
issuing or revoking that certificate swaps the context in place. New
handshakes pick up the current context through an SNI callback
installed on the listener's context; a failed reload keeps the old one.
"""

import logging
import ssl
import threading
from pathlib import Path

from config import settings

logger = logging.getLogger(__name__)


class ServerTLS:
    def __init__(self, cert_path: str | None = None, key_path: str | None = None):
        self.cert_path = cert_path if cert_path is not None else settings.server_ssl_cert
        self.key_path = key_path if key_path is not None else settings.server_ssl_key
        self._context: ssl.SSLContext | None = None
        self._lock = threading.Lock()

    @property
    def enabled(self) -> bool:
        return bool(self.cert_path and self.key_path)

    def matches(self, cert_path: str | Path, key_path: str | Path) -> bool:
        """True when the given files are the ones the server presents."""
        if not self.enabled or not cert_path or not key_path:
            return False
        return (
            Path(cert_path).resolve() == Path(self.cert_path).resolve()
            and Path(key_path).resolve() == Path(self.key_path).resolve()
        )

    def _load(self) -> ssl.SSLContext:
        context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        context.load_cert_chain(self.cert_path, self.key_path)
        return context

    def reload(self) -> bool:
        """Load the files into a new context. On failure the current context stays."""
        if not self.enabled:
            return False
        try:
            context = self._load()
        except (OSError, ssl.SSLError) as e:
            logger.error(f"Failed to reload server TLS certificate {self.cert_path}: {e}")
            return False

        with self._lock:
            self._context = context
        logger.info(f"Server TLS certificate reloaded from {self.cert_path}")
        return True

    def get(self) -> ssl.SSLContext | None:
        with self._lock:
            return self._context

    def sni_callback(self, ssl_object: ssl.SSLObject, server_name: str | None, initial_context: ssl.SSLContext):
        """Switch an incoming handshake to the current context."""
        context = self.get()
        if context is not None and context is not initial_context:
            ssl_object.context = context
        return None

    def install(self, listener_context: ssl.SSLContext) -> None:
        """Route handshakes on ``listener_context`` through the reloadable context."""
        self.reload()
        listener_context.sni_callback = self.sni_callback


# Singleton instance
_server_tls: ServerTLS | None = None


def get_server_tls() -> ServerTLS:
    """Get the global server TLS holder."""
    global _server_tls
    if _server_tls is None:
        _server_tls = ServerTLS()
    return _server_tls
