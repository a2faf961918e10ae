"""Pipeline controller: build matrix environments, gate deploys and publish release artifacts."""

from .environment import expand_variables, resolve_environments
from .errors import ConfigError, NotifyError, PipelineError, ProvisionError, PublishError, StageError
from .gate import NOT_A_TAG, TOOLCHAIN_MISMATCH, evaluate_gate
from .models import (
    BuildEnvironment,
    EnvironmentReport,
    GateDecision,
    OutcomeKind,
    PipelineOutcome,
    RunEvent,
    RunReport,
    StageResult,
)
from .notify import Notifier
from .pipeline import run_environment, run_pipeline
from .publisher import PublishLedger, ReleasePublisher, RetryPolicy
from .services import ServiceDefinition, ServiceProvisioner
from .stages import Cancellation, StageRunner

__all__ = [
    "BuildEnvironment",
    "Cancellation",
    "ConfigError",
    "EnvironmentReport",
    "GateDecision",
    "NOT_A_TAG",
    "Notifier",
    "NotifyError",
    "OutcomeKind",
    "PipelineError",
    "PipelineOutcome",
    "ProvisionError",
    "PublishError",
    "PublishLedger",
    "ReleasePublisher",
    "RetryPolicy",
    "RunEvent",
    "RunReport",
    "ServiceDefinition",
    "ServiceProvisioner",
    "StageError",
    "StageResult",
    "StageRunner",
    "TOOLCHAIN_MISMATCH",
    "evaluate_gate",
    "expand_variables",
    "resolve_environments",
    "run_environment",
    "run_pipeline",
]
