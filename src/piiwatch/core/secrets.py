"""Credential references and secret resolution.

Configuration never holds credential values, only references to them. A
reference is resolved at the moment the credential is used (webhook
dispatch, batch encryption) so rotated values are picked up without a
restart and values never sit in settings objects or logs.

Reference syntax:
    ``secret:env:NAME``        environment variable NAME
    ``secret:file:/path``      contents of a file (Docker/Kubernetes secrets)
    ``secret:<backend>:key``   a registered backend by name
    ``plain_key``              every registered backend in order

Examples:
    >>> resolver = SecretsResolver([DictSecretBackend({"teams_password": "pw"})])
    >>> resolver.resolve_reference("secret:dict:teams_password")
    'pw'
    >>> str(resolver.resolve_secret_value("teams_password"))
    '[REDACTED]'

Guardrails:
    - Resolved values are wrapped in SecretValue before they travel
    - Never log a resolved value or a request's Authorization header

Tags:
    secrets, credentials, security, configuration, piiwatch
"""

from __future__ import annotations

import os
import re
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from piiwatch.core.errors import ConfigError, ErrorCategory, PiiWatchError


class MissingSecretError(PiiWatchError):
    """Raised when a secret cannot be resolved from any backend."""

    default_category = ErrorCategory.AUTH
    default_retryable = False

    def __init__(self, key: str, tried_backends: list[str] | None = None):
        self.key = key
        self.tried_backends = tried_backends or []

        msg = f"Secret not found: {key}"
        if tried_backends:
            msg += f" (tried: {', '.join(tried_backends)})"
        super().__init__(msg)


class SecretResolutionError(ConfigError):
    """Raised when a secret reference format is invalid."""


class SecretValue:
    """Wrapper for secret values that prevents accidental logging.

    Example:
        >>> secret = SecretValue("my_password")
        >>> str(secret)
        '[REDACTED]'
        >>> secret.get_secret()
        'my_password'
    """

    __slots__ = ("_value",)

    def __init__(self, value: str):
        self._value = value

    def get_secret(self) -> str:
        """Get the actual secret value."""
        return self._value

    def __str__(self) -> str:
        return "[REDACTED]"

    def __repr__(self) -> str:
        return "SecretValue('[REDACTED]')"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, SecretValue):
            return self._value == other._value
        return False

    def __hash__(self) -> int:
        return hash(self._value)

    def __bool__(self) -> bool:
        return bool(self._value)


# ---------------------------------------------------------------------------
# Secret backends
# ---------------------------------------------------------------------------


class SecretBackend(ABC):
    """Abstract base for secret backends."""

    name: str = "backend"

    @abstractmethod
    def get(self, name: str) -> str | None:
        """Retrieve a secret by name, or None if this backend lacks it."""
        ...


class EnvSecretBackend(SecretBackend):
    """Resolve secrets from environment variables.

    Tries ``{KEY}`` then ``PIIWATCH_SECRET_{KEY}``.
    """

    name = "env"

    def get(self, name: str) -> str | None:
        key_upper = name.upper()
        for pattern in (key_upper, f"PIIWATCH_SECRET_{key_upper}"):
            value = os.environ.get(pattern)
            if value is not None:
                return value
        return None


class FileSecretBackend(SecretBackend):
    """Resolve secrets from files in a directory, caching after first read."""

    name = "file"

    def __init__(self, secrets_dir: str | Path = "/run/secrets"):
        self.secrets_dir = Path(secrets_dir)
        self._cache: dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, name: str) -> str | None:
        with self._lock:
            if name in self._cache:
                return self._cache[name]

        secret_path = self.secrets_dir / name
        if not secret_path.is_file():
            return None

        content = secret_path.read_text().strip()
        with self._lock:
            self._cache[name] = content
        return content

    def clear_cache(self) -> None:
        """Clear the file content cache."""
        with self._lock:
            self._cache.clear()


class DictSecretBackend(SecretBackend):
    """In-memory secret backend for tests and local runs."""

    name = "dict"

    def __init__(self, secrets: dict[str, str] | None = None):
        self._secrets = dict(secrets) if secrets else {}

    def get(self, name: str) -> str | None:
        return self._secrets.get(name)

    def set(self, key: str, value: str) -> None:
        """Set (or rotate) a secret value."""
        self._secrets[key] = value


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

# secret:backend:key  (e.g. secret:env:PIIWATCH_MASTER_KEY)
_FULL_REFERENCE_RE = re.compile(r"^secret:(\w+):(.+)$")

_SENTINEL = object()


def is_reference(value: str) -> bool:
    """Return True when ``value`` uses the ``secret:`` reference syntax."""
    return value.startswith("secret:")


class SecretsResolver:
    """Multi-backend secrets resolver.

    Resolves secrets by trying backends in order until one succeeds.
    """

    def __init__(self, backends: list[SecretBackend] | None = None):
        self._backends: list[SecretBackend] = list(backends) if backends is not None else [EnvSecretBackend()]

    def resolve(self, key: str, default: Any = _SENTINEL) -> str | None:
        """Resolve a plain key against every backend.

        Raises:
            MissingSecretError: If no backend has the secret and no default given
        """
        tried: list[str] = []
        for backend in self._backends:
            tried.append(backend.name)
            value = backend.get(key)
            if value is not None:
                return value

        if default is not _SENTINEL:
            return default

        raise MissingSecretError(key, tried)

    def resolve_reference(self, reference: str) -> str:
        """Resolve a ``secret:<backend>:<key>`` reference or a plain key.

        Raises:
            SecretResolutionError: If the reference format is invalid
            MissingSecretError: If the secret is not found
        """
        full_match = _FULL_REFERENCE_RE.match(reference)
        if full_match:
            return self._resolve_with_backend(full_match.group(1), full_match.group(2))

        if is_reference(reference):
            raise SecretResolutionError(
                f"Invalid secret reference format: '{reference}'. Expected 'secret:<backend>:<key>'."
            )

        value = self.resolve(reference)
        assert value is not None
        return value

    def resolve_secret_value(self, reference: str) -> SecretValue:
        """Resolve a reference and wrap it in SecretValue."""
        return SecretValue(self.resolve_reference(reference))

    def _resolve_with_backend(self, backend_name: str, key: str) -> str:
        if backend_name == "env":
            value = os.environ.get(key)
            if value is not None:
                return value
            raise MissingSecretError(key, ["env"])

        if backend_name == "file":
            path = Path(key)
            if path.is_file():
                return path.read_text().strip()
            raise MissingSecretError(key, ["file"])

        for backend in self._backends:
            if backend.name == backend_name:
                value = backend.get(key)
                if value is not None:
                    return value
                raise MissingSecretError(key, [backend_name])

        raise SecretResolutionError(f"Invalid secret reference format: unknown backend '{backend_name}'")

    def add_backend(self, backend: SecretBackend, priority: int = -1) -> None:
        """Add a backend (``priority`` is the list position, -1 = end)."""
        if priority < 0:
            self._backends.append(backend)
        else:
            self._backends.insert(priority, backend)


__all__ = [
    "MissingSecretError",
    "SecretResolutionError",
    "SecretValue",
    "SecretBackend",
    "EnvSecretBackend",
    "FileSecretBackend",
    "DictSecretBackend",
    "SecretsResolver",
    "is_reference",
]
