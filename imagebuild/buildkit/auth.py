"""Registry credentials for solve sessions.

The build daemon asks the client session for credentials whenever it pulls
from or pushes to a registry. :class:`DockerAuthProvider` answers those
requests from a Docker ``config.json``.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "config.json"

# config.json keys delegating to external credential helper binaries
CREDENTIAL_HELPER_KEYS = ("credsStore", "credHelpers")

# Docker Hub is stored under several keys depending on the client version
DOCKER_HUB_ALIASES = (
    "https://index.docker.io/v1/",
    "index.docker.io",
    "docker.io",
    "registry-1.docker.io",
)


class AuthConfigError(Exception):
    """Raised when a Docker config file cannot be parsed."""

    def __init__(self, message: str, code: str = "auth_config_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass(frozen=True)
class Credentials:
    """Username and secret for a registry host. Empty means anonymous."""

    username: str = ""
    secret: str = ""


def default_config_dir() -> Path:
    """Return the Docker config directory used when none is configured."""
    env_dir = os.environ.get("DOCKER_CONFIG")
    if env_dir:
        return Path(env_dir)
    return Path.home() / ".docker"


def _normalize_host(key: str) -> str:
    if key in DOCKER_HUB_ALIASES:
        return "docker.io"
    for prefix in ("https://", "http://"):
        if key.startswith(prefix):
            key = key[len(prefix) :]
    return key.split("/", 1)[0]


def _decode_entry(host: str, entry: dict[str, Any]) -> Credentials:
    username = entry.get("username") or ""
    password = entry.get("password") or ""
    auth = entry.get("auth")
    if auth:
        try:
            decoded = base64.b64decode(auth).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as e:
            raise AuthConfigError(f"invalid auth entry for {host}: {e}") from e
        username, sep, password = decoded.partition(":")
        if not sep:
            raise AuthConfigError(f"invalid auth entry for {host}: missing ':'")

    identity_token = entry.get("identitytoken")
    if identity_token:
        return Credentials(username="", secret=identity_token)
    return Credentials(username=username, secret=password)


class DockerAuthProvider:
    """Session attachable serving registry credentials.

    Args:
        config_dir: Directory containing ``config.json``. Defaults to
            ``$DOCKER_CONFIG`` or ``~/.docker``.
    """

    def __init__(self, config_dir: Path | str | None = None) -> None:
        self.config_dir = Path(config_dir) if config_dir else default_config_dir()
        self._auths: dict[str, Credentials] | None = None

    def _load(self) -> dict[str, Credentials]:
        if self._auths is not None:
            return self._auths

        config_path = self.config_dir / CONFIG_FILENAME
        auths: dict[str, Credentials] = {}
        if not config_path.is_file():
            logger.debug("No registry credentials at %s", config_path)
        else:
            try:
                data = json.loads(config_path.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise AuthConfigError(f"failed to read {config_path}: {e}") from e
            if not isinstance(data, dict):
                raise AuthConfigError(f"{config_path} must contain a JSON object")

            helpers = [key for key in CREDENTIAL_HELPER_KEYS if data.get(key)]
            if helpers:
                logger.warning(
                    "Ignoring %s in %s: credential helpers are not supported, "
                    "only stored auths are used",
                    " and ".join(helpers),
                    config_path,
                )

            for key, entry in (data.get("auths") or {}).items():
                if not isinstance(entry, dict):
                    raise AuthConfigError(f"auth entry for {key} must be an object")
                auths[_normalize_host(key)] = _decode_entry(key, entry)

        self._auths = auths
        return auths

    def credentials(self, host: str) -> Credentials:
        """Look up credentials for a registry host.

        Args:
            host: Registry host as sent by the daemon.

        Returns:
            Credentials for the host, empty for anonymous access.

        Raises:
            AuthConfigError: If the config file is malformed.
        """
        creds = self._load().get(_normalize_host(host), Credentials())
        logger.debug(
            "Serving %s credentials for %s",
            "anonymous" if not creds.secret else "stored",
            host,
        )
        return creds


__all__ = [
    "AuthConfigError",
    "Credentials",
    "DockerAuthProvider",
    "default_config_dir",
]
