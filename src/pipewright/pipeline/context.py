"""Environment context — layered, immutable variable scopes for a build.

Pipeline-level bindings form the root scope; each stage that declares its own
``environment`` gets a child scope via :meth:`EnvironmentContext.child`.
Scopes are never mutated after construction, so a stage and its descendants
always observe the values that were in effect when the stage was entered.

Key exports:
    EnvironmentContext — immutable key/value scope with secret tracking
    CredentialProvider — protocol for resolving secret values
    EnvCredentialProvider — reads credentials from the process environment
"""

from __future__ import annotations

import logging
import os
from collections import ChainMap
from collections.abc import Iterator, Mapping
from types import MappingProxyType
from typing import Protocol

from pipewright.pipeline.errors import ConfigurationError
from pipewright.pipeline.templates import TemplateResolver

logger = logging.getLogger("pipewright.pipeline.context")

MASK = "****"


class EnvironmentContext(Mapping[str, str]):
    """Read-only mapping of variable name → value with parent scopes.

    Usage::

        root = EnvironmentContext({"REGISTRY": "ghcr.io"})
        stage = root.child({"IMAGE": "${REGISTRY}/shop/api"})
        stage["IMAGE"]  # → "ghcr.io/shop/api"
    """

    def __init__(
        self,
        bindings: Mapping[str, str] | None = None,
        *,
        secrets: Mapping[str, str] | None = None,
        parent: EnvironmentContext | None = None,
        literal: bool = False,
    ):
        own: dict[str, str] = {}
        lookup: Mapping[str, str] = parent._values if parent is not None else {}
        resolver = TemplateResolver(ChainMap(own, lookup))
        for key, value in (bindings or {}).items():
            _check_name(key)
            if literal:
                own[key] = str(value)
                continue
            # Later bindings may reference earlier ones and the parent scope
            own[key] = resolver.resolve(str(value))
        for key, value in (secrets or {}).items():
            _check_name(key)
            own[key] = str(value)

        self._parent = parent
        self._own = MappingProxyType(own)
        self._values = MappingProxyType(dict(ChainMap(own, lookup)))
        inherited = parent._secret_names if parent is not None else frozenset()
        shadowed = {k for k in own if k not in (secrets or {})}
        self._secret_names: frozenset[str] = frozenset(
            (inherited - shadowed) | set(secrets or {})
        )

    # ── Mapping protocol ─────────────────────────────────────────────────────

    def __getitem__(self, key: str) -> str:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        shown = {k: (MASK if k in self._secret_names else v) for k, v in self._values.items()}
        return f"EnvironmentContext({shown!r})"

    # ── Scoping ──────────────────────────────────────────────────────────────

    @property
    def parent(self) -> EnvironmentContext | None:
        return self._parent

    @property
    def own(self) -> Mapping[str, str]:
        """Bindings declared in this scope only."""
        return self._own

    def child(
        self,
        bindings: Mapping[str, str] | None = None,
        *,
        secrets: Mapping[str, str] | None = None,
        literal: bool = False,
    ) -> EnvironmentContext:
        """Return a new scope shadowing this one. ``self`` is unchanged.

        With ``literal`` the bindings are stored as given, without resolving
        ``${NAME}`` references. Command output and approver names use this.
        """
        if not bindings and not secrets:
            return self
        return EnvironmentContext(bindings, secrets=secrets, parent=self, literal=literal)

    # ── Resolution ───────────────────────────────────────────────────────────

    def resolve(self, value: str) -> str:
        """Resolve ``${NAME}`` references in a string against this scope."""
        return TemplateResolver(self._values).resolve(value)

    def secret_values(self) -> list[str]:
        """Values of all secret bindings visible from this scope."""
        return [self._values[k] for k in self._secret_names if self._values.get(k)]

    def process_env(self, *, inherit: bool = True) -> dict[str, str]:
        """Build the environment for a subprocess from this scope."""
        env = dict(os.environ) if inherit else {"PATH": os.environ.get("PATH", "")}
        env.update(self._values)
        return env


def mask_secrets(text: str, secrets: list[str]) -> str:
    """Replace every occurrence of each secret value with ``****``."""
    # Longest first so overlapping secrets do not leave partial values behind
    for secret in sorted(set(secrets), key=len, reverse=True):
        if secret:
            text = text.replace(secret, MASK)
    return text


# ── Credential Providers ─────────────────────────────────────────────────────


class CredentialProvider(Protocol):
    """Resolves credential ids to secret values."""

    def get(self, credential_id: str) -> str | None:
        """Return the secret value, or None if unknown."""
        ...


class EnvCredentialProvider:
    """Reads credentials from environment variables of the engine process."""

    def __init__(self, environ: Mapping[str, str] | None = None):
        self._environ = environ if environ is not None else os.environ

    def get(self, credential_id: str) -> str | None:
        return self._environ.get(credential_id)


def resolve_credentials(
    credentials: Mapping[str, str],
    provider: CredentialProvider,
) -> dict[str, str]:
    """Resolve ``{BINDING: credential_id}`` into ``{BINDING: secret}``.

    Raises:
        ConfigurationError: If any credential id cannot be resolved.
    """
    resolved: dict[str, str] = {}
    missing: list[str] = []
    for binding, credential_id in credentials.items():
        value = provider.get(credential_id)
        if value is None:
            missing.append(credential_id)
            continue
        resolved[binding] = value
    if missing:
        msg = f"Unresolved credentials: {sorted(missing)}"
        raise ConfigurationError(msg)
    logger.debug("Resolved %d credentials", len(resolved))
    return resolved


def _check_name(name: str) -> None:
    if not name or not (name[0].isalpha() or name[0] == "_"):
        msg = f"Invalid environment variable name: '{name}'"
        raise ConfigurationError(msg)
