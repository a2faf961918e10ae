"""Schema definitions for pipeline configuration documents."""

from .config import (
    BUILD_STAGES,
    STAGE_ORDER,
    ConditionSpec,
    ConfigError,
    DeploySpec,
    EmailNotification,
    MatrixEntry,
    NotificationSpec,
    PipelineConfig,
    WebhookNotification,
    load_config,
    parse_config,
    parse_env_assignments,
    to_bool,
    toolchain_variable,
)

__all__ = [
    "BUILD_STAGES",
    "STAGE_ORDER",
    "ConditionSpec",
    "ConfigError",
    "DeploySpec",
    "EmailNotification",
    "MatrixEntry",
    "NotificationSpec",
    "PipelineConfig",
    "WebhookNotification",
    "load_config",
    "parse_config",
    "parse_env_assignments",
    "to_bool",
    "toolchain_variable",
]
