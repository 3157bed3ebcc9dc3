"""
Reverse-proxy reload control.

Reloads NGINX either inside its Docker container (when
NGINX_CONTAINER_NAME is set) or by running NGINX_RELOAD_CMD locally,
and classifies the output by the most severe NGINX log level found.
"""

import asyncio
import logging
import re
import shlex

import docker
from docker.errors import APIError, NotFound
from pydantic import BaseModel, Field

from config import settings

logger = logging.getLogger(__name__)

# Least to most severe
LOG_LEVELS = ["debug", "info", "notice", "warn", "error", "crit", "alert", "emerg"]

_LEVEL_RE = re.compile(r"\[(" + "|".join(LOG_LEVELS) + r")\]")


class NginxControlError(Exception):
    """The reload command could not be run at all."""

    def __init__(self, message: str, suggestion: str | None = None):
        self.message = message
        self.suggestion = suggestion
        super().__init__(message)


class ReloadResult(BaseModel):
    output: str = Field(default="", description="Combined stdout and stderr")
    level: str | None = Field(None, description="Most severe NGINX log level in the output")

    @property
    def ok(self) -> bool:
        return self.level is None or LOG_LEVELS.index(self.level) < LOG_LEVELS.index("error")


def parse_level(output: str) -> str | None:
    """Most severe ``[level]`` tag in NGINX output, if any."""
    found = _LEVEL_RE.findall(output)
    if not found:
        return None
    return max(found, key=LOG_LEVELS.index)


class NginxControl:
    """Runs the NGINX reload and reports what it said."""

    def __init__(self):
        self._client: docker.DockerClient | None = None

    @property
    def client(self) -> docker.DockerClient:
        """Lazy-load Docker client."""
        if self._client is None:
            try:
                self._client = docker.from_env()
            except docker.errors.DockerException as e:
                raise NginxControlError(
                    f"Cannot connect to Docker daemon: {e}",
                    suggestion="Ensure Docker daemon is running and socket is accessible",
                )
        return self._client

    def _exec_in_container_sync(self, command: list[str]) -> tuple[int, str, str]:
        try:
            container = self.client.containers.get(settings.nginx_container_name)
            exec_result = container.exec_run(cmd=command, demux=True)
        except NotFound:
            raise NginxControlError(
                f"Container '{settings.nginx_container_name}' not found",
                suggestion="Ensure the NGINX container is running or unset NGINX_CONTAINER_NAME",
            )
        except APIError as e:
            raise NginxControlError(f"Docker API error: {e}", suggestion="Check Docker daemon status and permissions")

        stdout = exec_result.output[0].decode() if exec_result.output[0] else ""
        stderr = exec_result.output[1].decode() if exec_result.output[1] else ""
        return exec_result.exit_code, stdout, stderr

    async def _run_local(self, command: list[str]) -> tuple[int, str, str]:
        try:
            process = await asyncio.create_subprocess_exec(
                *command, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            raise NginxControlError(f"Cannot run {command[0]}: {e}", suggestion="Check NGINX_RELOAD_CMD")

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=settings.nginx_operation_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise NginxControlError(
                f"'{' '.join(command)}' timed out after {settings.nginx_operation_timeout}s",
                suggestion="Raise NGINX_OPERATION_TIMEOUT",
            )
        return process.returncode, stdout.decode(), stderr.decode()

    async def reload(self) -> ReloadResult:
        """
        Reload NGINX.

        Returns:
            ReloadResult; a non-zero exit without an error tag counts as ``error``

        Raises:
            NginxControlError: The reload could not be started
        """
        if settings.nginx_container_name:
            exit_code, stdout, stderr = await asyncio.to_thread(
                self._exec_in_container_sync, ["nginx", "-s", "reload"]
            )
        else:
            exit_code, stdout, stderr = await self._run_local(shlex.split(settings.nginx_reload_cmd))

        output = (stdout + stderr).strip()
        result = ReloadResult(output=output, level=parse_level(output))
        if exit_code != 0 and result.ok:
            result.level = "error"

        if result.ok:
            logger.info("NGINX reloaded")
        else:
            logger.warning(f"NGINX reload reported [{result.level}]: {output}")
        return result


# Singleton instance
_nginx_control: NginxControl | None = None


def get_nginx_control() -> NginxControl:
    """Get the global NGINX control instance."""
    global _nginx_control
    if _nginx_control is None:
        _nginx_control = NginxControl()
    return _nginx_control
