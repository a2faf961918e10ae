"""Secret resolution helpers shared by the pipeline controller and upload transports."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field

DEFAULT_SECRET_ENV = "CI_RELEASE_API_KEY"


class SecretRef(BaseModel):
    """Reference to a credential; ``secure`` holds an encrypted payload, never plaintext."""

    name: str = DEFAULT_SECRET_ENV
    secure: Optional[str] = Field(default=None, repr=False)

    model_config = ConfigDict(frozen=True)


class Secret:
    """Opaque handle around a resolved credential.

    ``repr``/``str`` are masked; only upload transports call :meth:`reveal`.
    """

    __slots__ = ("_value", "source")

    def __init__(self, value: str, source: str = "") -> None:
        self._value = value
        self.source = source

    def reveal(self) -> str:
        return self._value

    def __bool__(self) -> bool:
        return bool(self._value)

    def __repr__(self) -> str:
        return f"Secret(source={self.source!r}, value='***')"

    def __str__(self) -> str:
        return "***"


class SecretResolutionError(LookupError):
    """Raised when no registered resolver produced a value for a secret reference."""


class SecretResolver(Protocol):
    def resolve(self, ref: SecretRef) -> Optional[str]:  # pragma: no cover - interface
        ...


@dataclass(frozen=True)
class SecretAttempt:
    resolver: str
    source: str
    success: bool
    details: dict[str, object] = field(default_factory=dict)


@dataclass(frozen=True)
class SecretResolutionInfo:
    name: str
    secret: Optional[Secret]
    resolver: Optional[str]
    source: Optional[str]
    attempts: List[SecretAttempt]


@dataclass
class _RegisteredResolver:
    priority: int
    resolver: SecretResolver
    name: str
    source: str
    details: dict[str, object]


_resolvers: List[_RegisteredResolver] = []


def register_resolver(
    resolver: SecretResolver,
    priority: int = 0,
    *,
    name: Optional[str] = None,
    source: Optional[str] = None,
    details: Optional[dict[str, object]] = None,
) -> None:
    entry = _RegisteredResolver(
        priority=priority,
        resolver=resolver,
        name=name or resolver.__class__.__name__,
        source=source or (name or resolver.__class__.__name__),
        details=dict(details or {}),
    )
    _resolvers.append(entry)
    _resolvers.sort(key=lambda item: item.priority, reverse=True)


class EnvResolver:
    """Resolve secrets from process environment variables."""

    def resolve(self, ref: SecretRef) -> Optional[str]:
        value = os.getenv(ref.name)
        return value if value else None

    def describe(self) -> dict[str, object]:
        return {"type": "env"}


register_resolver(EnvResolver(), priority=0, name="env", source="env")


class DotEnvResolver:
    """Resolve secrets from a ``.env`` file, read lazily on first use."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._values: Optional[Dict[str, Optional[str]]] = None

    def resolve(self, ref: SecretRef) -> Optional[str]:
        if self._values is None:
            self._values = dotenv_values(self.path) if self.path.exists() else {}
        value = self._values.get(ref.name)
        return value if value else None

    def describe(self) -> dict[str, object]:
        return {
            "type": "dotenv",
            "path": str(self.path),
            "exists": self.path.exists(),
            "loaded": self._values is not None,
        }


def use_dotenv(path: str | Path, *, priority: int = -10) -> None:
    resolver = DotEnvResolver(Path(path))
    register_resolver(
        resolver,
        priority=priority,
        name=f"dotenv:{resolver.path}",
        source="dotenv",
        details={"path": str(resolver.path)},
    )


def resolve_secret_info(ref: SecretRef) -> SecretResolutionInfo:
    attempts: List[SecretAttempt] = []

    for entry in _resolvers:
        details = dict(entry.details)
        describe = getattr(entry.resolver, "describe", None)

        value = entry.resolver.resolve(ref)

        if callable(describe):
            extra = describe()
            if isinstance(extra, dict):
                details.update(extra)

        success = bool(value)
        attempts.append(
            SecretAttempt(
                resolver=entry.name,
                source=entry.source,
                success=success,
                details=details,
            )
        )
        if success:
            return SecretResolutionInfo(
                name=ref.name,
                secret=Secret(str(value), source=entry.source),
                resolver=entry.name,
                source=entry.source,
                attempts=attempts,
            )

    return SecretResolutionInfo(
        name=ref.name,
        secret=None,
        resolver=None,
        source=None,
        attempts=attempts,
    )


def resolve_secret(ref: SecretRef) -> Secret:
    """Resolve ``ref`` through the registered resolvers or raise :class:`SecretResolutionError`."""

    info = resolve_secret_info(ref)
    if info.secret is not None:
        return info.secret

    attempted = []
    for attempt in info.attempts:
        label = attempt.source or attempt.resolver
        path = attempt.details.get("path") if attempt.details else None
        if path:
            label = f"{label}@{path}"
        attempted.append(label)
    summary = ", ".join(attempted) if attempted else "none"
    kind = "encrypted secret" if ref.secure else "secret"
    raise SecretResolutionError(f"Could not resolve {kind} '{ref.name}'. Checked resolvers: {summary}.")
