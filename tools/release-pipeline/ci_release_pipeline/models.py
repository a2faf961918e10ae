from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from ci_release.publish import UploadResult

from .errors import StageError


@dataclass(frozen=True)
class BuildEnvironment:
    index: int
    os: str
    arch: str
    toolchain: str
    target: str
    variables: Mapping[str, str]

    @property
    def name(self) -> str:
        return f"{self.os}/{self.toolchain}/{self.target}"

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.os, self.toolchain, self.target)

    def to_dict(self) -> Dict[str, object]:
        return {
            "index": self.index,
            "name": self.name,
            "os": self.os,
            "arch": self.arch,
            "toolchain": self.toolchain,
            "target": self.target,
            "variables": dict(self.variables),
        }


@dataclass(frozen=True)
class RunEvent:
    ref: str
    is_tag: bool = False
    toolchain_version: Optional[str] = None

    def for_environment(self, environment: BuildEnvironment) -> "RunEvent":
        """Event as seen by one environment: the toolchain falls back to the environment's channel."""

        if self.toolchain_version is not None:
            return self
        return replace(self, toolchain_version=environment.toolchain)

    def variables(self) -> Dict[str, str]:
        return {
            "TRAVIS_BRANCH": self.ref,
            "TRAVIS_TAG": self.ref if self.is_tag else "",
        }

    def to_dict(self) -> Dict[str, object]:
        return {
            "ref": self.ref,
            "is_tag": self.is_tag,
            "toolchain_version": self.toolchain_version,
        }


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    DEPLOY_SKIPPED = "deploy_skipped"
    DEPLOY_FAILED = "deploy_failed"
    FAILED = "failed"
    PROVISION_FAILED = "provision_failed"
    CANCELLED = "cancelled"

    @property
    def severity(self) -> int:
        return _SEVERITY.index(self)


_SEVERITY = [
    OutcomeKind.SUCCESS,
    OutcomeKind.DEPLOY_SKIPPED,
    OutcomeKind.DEPLOY_FAILED,
    OutcomeKind.FAILED,
    OutcomeKind.PROVISION_FAILED,
    OutcomeKind.CANCELLED,
]


@dataclass(frozen=True)
class PipelineOutcome:
    kind: OutcomeKind
    stage: Optional[str] = None
    exit_code: Optional[int] = None
    reason: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def success(cls) -> "PipelineOutcome":
        return cls(kind=OutcomeKind.SUCCESS)

    @classmethod
    def failed(cls, stage: str, exit_code: int) -> "PipelineOutcome":
        return cls(kind=OutcomeKind.FAILED, stage=stage, exit_code=exit_code, error_kind="StageError")

    @classmethod
    def deploy_skipped(cls, reason: str) -> "PipelineOutcome":
        return cls(kind=OutcomeKind.DEPLOY_SKIPPED, reason=reason)

    @classmethod
    def deploy_failed(cls, reason: str, error_kind: str) -> "PipelineOutcome":
        return cls(kind=OutcomeKind.DEPLOY_FAILED, reason=reason, error_kind=f"PublishError({error_kind})")

    @classmethod
    def provision_failed(cls, reason: str, error_kind: str) -> "PipelineOutcome":
        return cls(kind=OutcomeKind.PROVISION_FAILED, reason=reason, error_kind=f"ProvisionError({error_kind})")

    @classmethod
    def cancelled(cls, stage: Optional[str] = None) -> "PipelineOutcome":
        return cls(kind=OutcomeKind.CANCELLED, stage=stage, reason="run cancelled")

    @property
    def is_success(self) -> bool:
        return self.kind in (OutcomeKind.SUCCESS, OutcomeKind.DEPLOY_SKIPPED)

    def describe(self) -> str:
        if self.kind is OutcomeKind.SUCCESS:
            return "success"
        if self.kind is OutcomeKind.DEPLOY_SKIPPED:
            return f"deploy skipped ({self.reason})"
        if self.kind is OutcomeKind.FAILED:
            return f"failed in stage '{self.stage}' (exit {self.exit_code}) [{self.error_kind}]"
        if self.kind is OutcomeKind.CANCELLED:
            where = f" during stage '{self.stage}'" if self.stage else ""
            return f"cancelled{where}"
        return f"{self.kind.value.replace('_', ' ')}: {self.reason} [{self.error_kind}]"

    def to_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"kind": self.kind.value}
        if self.stage is not None:
            payload["stage"] = self.stage
        if self.exit_code is not None:
            payload["exit_code"] = self.exit_code
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.error_kind is not None:
            payload["error_kind"] = self.error_kind
        return payload


def worst_outcome(outcomes: Iterable[PipelineOutcome]) -> PipelineOutcome:
    worst = PipelineOutcome.success()
    for outcome in outcomes:
        if outcome.kind.severity > worst.kind.severity:
            worst = outcome
    return worst


@dataclass(frozen=True)
class GateDecision:
    open: bool
    reason: Optional[str] = None

    @classmethod
    def opened(cls) -> "GateDecision":
        return cls(open=True)

    @classmethod
    def skipped(cls, reason: str) -> "GateDecision":
        return cls(open=False, reason=reason)

    def to_dict(self) -> Dict[str, object]:
        return {"open": self.open, "reason": self.reason}


@dataclass(slots=True)
class StageResult:
    stage: str
    commands_run: int = 0
    exit_code: int = 0
    cancelled: bool = False
    output_tail: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.cancelled

    def raise_for_status(self) -> None:
        if self.exit_code != 0:
            raise StageError(self.stage, self.exit_code)

    def to_dict(self) -> Dict[str, object]:
        return {
            "stage": self.stage,
            "commands_run": self.commands_run,
            "exit_code": self.exit_code,
            "cancelled": self.cancelled,
            "output_tail": self.output_tail,
        }


@dataclass(slots=True)
class PublishReport:
    target_key: str
    selector: str
    files: List[str]
    dry_run: bool = False
    uploads: List[UploadResult] = field(default_factory=list)
    cleaned: bool = False

    def to_dict(self) -> Dict[str, object]:
        return {
            "target_key": self.target_key,
            "selector": self.selector,
            "files": self.files,
            "dry_run": self.dry_run,
            "uploads": [upload.to_dict() for upload in self.uploads],
            "cleaned": self.cleaned,
        }


@dataclass(slots=True)
class EnvironmentReport:
    environment: BuildEnvironment
    outcome: PipelineOutcome
    stages: List[StageResult] = field(default_factory=list)
    gate: Optional[GateDecision] = None
    publish: Optional[PublishReport] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "environment": self.environment.to_dict(),
            "outcome": self.outcome.to_dict(),
            "summary": self.outcome.describe(),
            "stages": [stage.to_dict() for stage in self.stages],
            "gate": self.gate.to_dict() if self.gate else None,
            "publish": self.publish.to_dict() if self.publish else None,
        }


@dataclass(slots=True)
class RunReport:
    event: RunEvent
    environments: List[EnvironmentReport]
    dry_run: bool = False
    outcome: PipelineOutcome = field(init=False)

    def __post_init__(self) -> None:
        self.outcome = worst_outcome(report.outcome for report in self.environments)

    def to_dict(self) -> Dict[str, object]:
        return {
            "event": self.event.to_dict(),
            "outcome": self.outcome.to_dict(),
            "dry_run": self.dry_run,
            "environments": [report.to_dict() for report in self.environments],
        }
