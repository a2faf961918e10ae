"""Configuration, secret and upload building blocks for CI release automation."""

__version__ = "0.1.0"
from .publish import (
    StorageAdapter,
    UploadError,
    UploadRequest,
    UploadResult,
    build_adapter,
)
from .schemas import ConfigError, DeploySpec, PipelineConfig, load_config, parse_config
from .secrets import (
    Secret,
    SecretAttempt,
    SecretRef,
    SecretResolutionError,
    SecretResolutionInfo,
    register_resolver,
    resolve_secret,
    resolve_secret_info,
    use_dotenv,
)

__all__ = [
    "__version__",
    "ConfigError",
    "DeploySpec",
    "PipelineConfig",
    "load_config",
    "parse_config",
    "StorageAdapter",
    "UploadError",
    "UploadRequest",
    "UploadResult",
    "build_adapter",
    "Secret",
    "SecretAttempt",
    "SecretRef",
    "SecretResolutionError",
    "SecretResolutionInfo",
    "register_resolver",
    "resolve_secret",
    "resolve_secret_info",
    "use_dotenv",
]
