"""Pydantic models describing a pipeline configuration document."""

from __future__ import annotations

import itertools
import logging
import re
import shlex
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..secrets import SecretRef

logger = logging.getLogger(__name__)

STAGE_ORDER = ("before_install", "install", "script", "before_deploy")
BUILD_STAGES = ("before_install", "install", "script")
# Travis keys that are accepted but have no effect on a run.
UNSUPPORTED_KEYS = (
    "cache",
    "before_cache",
    "after_success",
    "after_failure",
    "after_script",
    "after_deploy",
    "addons",
    "branches",
    "dist",
    "sudo",
)

NotifyWhen = Literal["always", "never", "change"]

_CONDITION_RE = re.compile(
    r'^\s*"?\$\{?(?P<var>[A-Za-z_][A-Za-z0-9_]*)\}?"?\s*==?\s*"?(?P<value>[^"\s]+)"?\s*$'
)
_ENV_REFERENCE_RE = re.compile(r"^\$\{?(?P<name>[A-Za-z_][A-Za-z0-9_]*)\}?$")


class ConfigError(ValueError):
    """Raised when a pipeline configuration document is malformed or incomplete."""


class MatrixEntry(BaseModel):
    os: Optional[str] = None
    arch: Optional[str] = None
    toolchain: Optional[str] = None
    env: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, extra="ignore")


class ConditionSpec(BaseModel):
    required_toolchain_version: Optional[str] = None
    tags_only: bool = False

    model_config = ConfigDict(frozen=True, extra="ignore")


class DeploySpec(BaseModel):
    provider: str
    api_key: Optional[SecretRef] = None
    file_glob: bool = False
    file_pattern: str
    skip_cleanup: bool = False
    repo: Optional[str] = None
    draft: bool = False
    prerelease: bool = False
    condition: ConditionSpec = Field(default_factory=ConditionSpec)

    model_config = ConfigDict(frozen=True, extra="ignore")


class EmailNotification(BaseModel):
    recipients: List[str] = Field(default_factory=list)
    on_success: NotifyWhen = "change"
    on_failure: NotifyWhen = "always"

    model_config = ConfigDict(frozen=True, extra="ignore")


class WebhookNotification(BaseModel):
    urls: List[str] = Field(default_factory=list)
    on_success: NotifyWhen = "always"
    on_failure: NotifyWhen = "always"

    model_config = ConfigDict(frozen=True, extra="ignore")


class NotificationSpec(BaseModel):
    email: Optional[EmailNotification] = None
    webhooks: Optional[WebhookNotification] = None

    model_config = ConfigDict(frozen=True, extra="ignore")


class PipelineConfig(BaseModel):
    language: str
    global_env: Dict[str, str] = Field(default_factory=dict)
    matrix: List[MatrixEntry]
    services: List[str] = Field(default_factory=list)
    stages: Dict[str, List[str]]
    deploy: Optional[DeploySpec] = None
    notifications: NotificationSpec = Field(default_factory=NotificationSpec)

    model_config = ConfigDict(frozen=True, extra="ignore")

    @property
    def toolchain_variable(self) -> str:
        return toolchain_variable(self.language)

    def stage_commands(self, stage: str) -> List[str]:
        return list(self.stages.get(stage, []))


def toolchain_variable(language: str) -> str:
    """Name of the variable carrying the selected toolchain, e.g. TRAVIS_RUST_VERSION."""

    normalized = re.sub(r"[^A-Za-z0-9]+", "_", language).strip("_").upper()
    return f"TRAVIS_{normalized}_VERSION"


def load_config(path: str | Path) -> PipelineConfig:
    config_path = Path(path)
    try:
        text = config_path.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"Cannot read pipeline config {config_path}: {exc}") from exc
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc
    return parse_config(document)


def parse_config(document: Any) -> PipelineConfig:
    """Normalize a Travis-style document into a :class:`PipelineConfig`.

    Unknown keys are ignored; Travis keys the controller does not act on
    (``cache``, ``addons`` and the like) are logged as a warning.
    ``language``, at least one matrix entry and a ``script`` stage are required.
    """

    if not isinstance(document, Mapping):
        raise ConfigError("Pipeline config must be a mapping at the top level.")

    language = document.get("language")
    if not language:
        raise ConfigError("Missing required field 'language'.")
    language = str(language)

    env_section = document.get("env")
    if isinstance(env_section, Mapping):
        global_env = parse_env_assignments(env_section.get("global"))
        env_rows = env_section.get("matrix", env_section.get("jobs"))
    else:
        global_env = parse_env_assignments(env_section)
        env_rows = None

    matrix = _parse_matrix(document, language, env_rows)
    if not matrix:
        raise ConfigError("At least one matrix entry is required (matrix.include).")

    ignored = [key for key in UNSUPPORTED_KEYS if key in document]
    if ignored:
        logger.warning("Ignoring unsupported config key(s): %s", ", ".join(ignored))

    stages = _parse_stages(document)
    if "script" not in stages:
        raise ConfigError("Missing required stage 'script'.")

    payload: Dict[str, object] = {
        "language": language,
        "global_env": global_env,
        "matrix": matrix,
        "services": _parse_services(document.get("services")),
        "stages": stages,
        "deploy": _parse_deploy(document.get("deploy"), language),
        "notifications": _parse_notifications(document.get("notifications")),
    }
    try:
        return PipelineConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(f"Invalid pipeline config: {exc}") from exc


def parse_env_assignments(value: Any) -> Dict[str, str]:
    """Parse ``NAME=value`` assignments using shell quoting rules."""

    if value is None:
        return {}
    if isinstance(value, Mapping):
        if "secure" in value:
            logger.warning("Ignoring encrypted env entry; secure values are not decrypted by the controller.")
            return {}
        return {str(key): _scalar(item) for key, item in value.items()}
    if isinstance(value, str):
        try:
            tokens = shlex.split(value, posix=True)
        except ValueError as exc:
            raise ConfigError(f"Cannot parse env assignment {value!r}: {exc}") from exc
        assignments: Dict[str, str] = {}
        for token in tokens:
            if "=" not in token:
                raise ConfigError(f"Expected NAME=value in env assignment (got {token!r}).")
            name, raw_value = token.split("=", 1)
            name = name.strip()
            if not name:
                raise ConfigError(f"Env variable name cannot be empty (in {value!r}).")
            assignments[name] = raw_value
        return assignments
    if isinstance(value, (list, tuple)):
        merged: Dict[str, str] = {}
        for item in value:
            merged.update(parse_env_assignments(item))
        return merged
    raise ConfigError(f"Unsupported env entry {value!r}; expected NAME=value strings or a mapping.")


def _parse_matrix(document: Mapping[str, Any], language: str, env_rows: Any) -> List[Dict[str, object]]:
    section = document.get("matrix", document.get("jobs"))
    raw_entries: List[Any] = []
    if isinstance(section, Mapping):
        raw_entries = list(section.get("include") or [])
    elif isinstance(section, list):
        raw_entries = list(section)
    elif section is not None:
        raise ConfigError("matrix must be a list or a mapping with 'include'.")

    entries = [_parse_matrix_entry(raw, language) for raw in raw_entries]
    if entries:
        return entries

    # No explicit include list: expand top-level os x toolchain x env rows.
    oses = _as_list(document.get("os"))
    toolchains = _as_list(document.get(language))
    rows = _as_list(env_rows)
    if not (oses or toolchains or rows):
        return []
    expanded: List[Dict[str, object]] = []
    for os_name, toolchain, row in itertools.product(oses or [None], toolchains or [None], rows or [None]):
        expanded.append(
            {
                "os": _optional_str(os_name),
                "toolchain": _optional_str(toolchain),
                "env": parse_env_assignments(row),
            }
        )
    return expanded


def _parse_matrix_entry(raw: Any, language: str) -> Dict[str, object]:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Matrix entries must be mappings (got {raw!r}).")
    toolchain = raw.get(language, raw.get("toolchain"))
    return {
        "os": _optional_str(raw.get("os")),
        "arch": _optional_str(raw.get("arch")),
        "toolchain": _optional_str(toolchain),
        "env": parse_env_assignments(raw.get("env")),
    }


def _parse_stages(document: Mapping[str, Any]) -> Dict[str, List[str]]:
    stages: Dict[str, List[str]] = {}
    for name in STAGE_ORDER:
        commands = [str(command) for command in _as_list(document.get(name)) if str(command).strip()]
        if commands:
            stages[name] = commands
    return stages


def _parse_services(raw: Any) -> List[str]:
    services: List[str] = []
    for item in _as_list(raw):
        name = str(item).strip()
        if name and name not in services:
            services.append(name)
    return services


def _parse_deploy(raw: Any, language: str) -> Optional[Dict[str, object]]:
    if raw is None:
        return None
    if isinstance(raw, list):
        if len(raw) != 1:
            raise ConfigError("Only a single deploy entry is supported.")
        raw = raw[0]
    if not isinstance(raw, Mapping):
        raise ConfigError("deploy must be a mapping.")

    provider = raw.get("provider")
    if not provider:
        raise ConfigError("Missing required field 'deploy.provider'.")

    file_pattern = raw.get("file")
    if isinstance(file_pattern, list):
        if len(file_pattern) != 1:
            raise ConfigError("deploy.file must be a single pattern.")
        file_pattern = file_pattern[0]
    if not file_pattern:
        raise ConfigError("Missing required field 'deploy.file'.")

    # YAML 1.1 reads a bare `on:` key as boolean True.
    on_section = raw.get("on", raw.get(True))

    return {
        "provider": str(provider),
        "api_key": _parse_secret_ref(raw.get("api_key")),
        "file_glob": to_bool(raw.get("file_glob")),
        "file_pattern": str(file_pattern),
        "skip_cleanup": to_bool(raw.get("skip_cleanup")),
        "repo": _optional_str(raw.get("repo")),
        "draft": to_bool(raw.get("draft")),
        "prerelease": to_bool(raw.get("prerelease")),
        "condition": _parse_condition(on_section, language),
    }


def _parse_condition(raw: Any, language: str) -> Dict[str, object]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigError("deploy.on must be a mapping.")

    required = raw.get("toolchain_version")
    condition = raw.get("condition")
    if isinstance(condition, list):
        if len(condition) != 1:
            raise ConfigError("Only a single deploy condition is supported.")
        condition = condition[0]
    if condition is not None:
        match = _CONDITION_RE.match(str(condition))
        if not match:
            raise ConfigError(f"Unsupported deploy condition {condition!r}; expected '$VAR = value'.")
        expected = toolchain_variable(language)
        if match.group("var") != expected:
            raise ConfigError(f"Deploy condition must compare {expected} (got {match.group('var')}).")
        required = match.group("value")

    return {
        "tags_only": to_bool(raw.get("tags")),
        "required_toolchain_version": _optional_str(required),
    }


def _parse_secret_ref(raw: Any) -> Optional[SecretRef]:
    if raw is None:
        return None
    if isinstance(raw, Mapping):
        if raw.get("secure"):
            return SecretRef(secure=str(raw["secure"]))
        if raw.get("env"):
            return SecretRef(name=str(raw["env"]))
        raise ConfigError("deploy.api_key mapping must define 'secure' or 'env'.")
    if isinstance(raw, str):
        match = _ENV_REFERENCE_RE.match(raw.strip())
        if match:
            return SecretRef(name=match.group("name"))
    raise ConfigError("deploy.api_key must be an encrypted {secure: ...} value or an environment reference.")


def _parse_notifications(raw: Any) -> Dict[str, object]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise ConfigError("notifications must be a mapping.")

    payload: Dict[str, object] = {}
    email = raw.get("email")
    if email is False:
        payload["email"] = {"recipients": [], "on_success": "never", "on_failure": "never"}
    elif isinstance(email, Mapping):
        payload["email"] = {
            "recipients": [str(item) for item in _as_list(email.get("recipients"))],
            **_notify_when(email),
        }
    elif email is not None:
        payload["email"] = {"recipients": [str(item) for item in _as_list(email)]}

    webhooks = raw.get("webhooks")
    if isinstance(webhooks, Mapping):
        payload["webhooks"] = {
            "urls": [str(item) for item in _as_list(webhooks.get("urls"))],
            **_notify_when(webhooks),
        }
    elif webhooks:
        payload["webhooks"] = {"urls": [str(item) for item in _as_list(webhooks)]}
    return payload


def _notify_when(section: Mapping[str, Any]) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for key in ("on_success", "on_failure"):
        value = section.get(key)
        if value is None:
            continue
        # `never`/`always` are plain strings, but YAML may hand back booleans.
        if isinstance(value, bool):
            value = "always" if value else "never"
        result[key] = str(value)
    return result


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _scalar(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def to_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)
