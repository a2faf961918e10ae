"""Expand global and matrix environment settings into concrete build environments."""

from __future__ import annotations

import re
from typing import Dict, List, Mapping, Optional, Set, Tuple

from ci_release.schemas import ConfigError, MatrixEntry, PipelineConfig, toolchain_variable

from .models import BuildEnvironment

DEFAULT_OS = "linux"
DEFAULT_ARCH = "x86_64"
DEFAULT_TOOLCHAINS = {"rust": "stable"}
TOOLCHAIN_CHANNELS = ("stable", "beta", "nightly")

TARGET_TEMPLATES = {
    "linux": "{arch}-unknown-linux-gnu",
    "osx": "{arch}-apple-darwin",
    "windows": "{arch}-pc-windows-msvc",
    "freebsd": "{arch}-unknown-freebsd",
}

ARCH_ALIASES = {
    "amd64": "x86_64",
    "x86_64": "x86_64",
    "x86-64": "x86_64",
    "arm64": "aarch64",
    "aarch64": "aarch64",
    "i686": "i686",
    "x86": "i686",
}

PATH_ADDITIONS = {"rust": ("$HOME/.cargo/bin",)}

_VERSION_RE = re.compile(r"^\d+(\.\d+){0,2}$")
_DATED_CHANNEL_RE = re.compile(r"^(stable|beta|nightly)-\d{4}-\d{2}-\d{2}$")
_REFERENCE_RE = re.compile(r"\$(?:\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)\}|(?P<bare>[A-Za-z_][A-Za-z0-9_]*))")


def expand_variables(value: str, variables: Mapping[str, str]) -> str:
    """Substitute ``$NAME``/``${NAME}`` references; unknown names are left as written."""

    def _replace(match: re.Match[str]) -> str:
        name = match.group("braced") or match.group("bare")
        if name in variables:
            return variables[name]
        return match.group(0)

    return _REFERENCE_RE.sub(_replace, value)


def path_additions(language: str) -> Tuple[str, ...]:
    return PATH_ADDITIONS.get(language.lower(), ())


def derive_target(os_name: str, arch: str) -> str:
    return TARGET_TEMPLATES[os_name].format(arch=arch)


def resolve_environments(config: PipelineConfig) -> List[BuildEnvironment]:
    """Merge ``global_env`` with each matrix overlay and expand templated values.

    One environment per matrix entry, in matrix order. Raises :class:`ConfigError`
    for unknown OS/toolchain values or when two entries collapse onto the same
    (os, toolchain, target) tuple.
    """

    environments: List[BuildEnvironment] = []
    seen: Set[Tuple[str, str, str]] = set()

    for index, entry in enumerate(config.matrix):
        environment = _resolve_entry(index, entry, config)
        if environment.key in seen:
            raise ConfigError(
                f"Matrix entry {index} duplicates target {environment.name}; each target must be built once."
            )
        seen.add(environment.key)
        environments.append(environment)

    return environments


def _resolve_entry(index: int, entry: MatrixEntry, config: PipelineConfig) -> BuildEnvironment:
    os_name = (entry.os or DEFAULT_OS).lower()
    if os_name not in TARGET_TEMPLATES:
        known = ", ".join(sorted(TARGET_TEMPLATES))
        raise ConfigError(f"Matrix entry {index} uses unknown os '{entry.os}'. Known: {known}.")

    toolchain = entry.toolchain or DEFAULT_TOOLCHAINS.get(config.language.lower())
    if not toolchain:
        raise ConfigError(
            f"Matrix entry {index} does not define a {config.language} toolchain and the language has no default."
        )
    if not _is_known_toolchain(toolchain):
        raise ConfigError(f"Matrix entry {index} references undefined toolchain channel '{toolchain}'.")

    arch = _normalize_arch(entry.arch, index)

    raw: Dict[str, str] = {
        "CI": "true",
        "TRAVIS": "true",
        "TRAVIS_OS_NAME": os_name,
        toolchain_variable(config.language): toolchain,
        "TARGET": derive_target(os_name, arch),
    }
    raw.update(config.global_env)
    raw.update(entry.env)

    resolved: Dict[str, str] = {}
    for name, value in raw.items():
        resolved[name] = expand_variables(value, resolved)

    return BuildEnvironment(
        index=index,
        os=os_name,
        arch=arch,
        toolchain=toolchain,
        target=resolved["TARGET"],
        variables=resolved,
    )


def _normalize_arch(arch: Optional[str], index: int) -> str:
    if not arch:
        return DEFAULT_ARCH
    try:
        return ARCH_ALIASES[arch.lower()]
    except KeyError as exc:
        raise ConfigError(f"Matrix entry {index} uses unknown arch '{arch}'.") from exc


def _is_known_toolchain(toolchain: str) -> bool:
    return (
        toolchain in TOOLCHAIN_CHANNELS
        or bool(_VERSION_RE.match(toolchain))
        or bool(_DATED_CHANNEL_RE.match(toolchain))
    )
