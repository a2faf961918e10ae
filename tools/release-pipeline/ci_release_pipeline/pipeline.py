from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Mapping, Optional

from ci_release.publish import StorageAdapter
from ci_release.schemas import BUILD_STAGES, PipelineConfig
from ci_release.secrets import resolve_secret

from .environment import resolve_environments
from .errors import ProvisionError, PublishError, StageError
from .gate import evaluate_gate
from .models import (
    BuildEnvironment,
    EnvironmentReport,
    PipelineOutcome,
    RunEvent,
    RunReport,
)
from .notify import Notifier
from .publisher import PublishLedger, ReleasePublisher, RetryPolicy, SecretResolverFn
from .services import ServiceProvisioner
from .stages import Cancellation, StageRunner

logger = logging.getLogger(__name__)


def run_pipeline(
    config: PipelineConfig,
    event: RunEvent,
    *,
    workspace_root: str | Path = ".",
    jobs: int = 1,
    dry_run: bool = False,
    service_timeout: float = 60.0,
    cancellation: Optional[Cancellation] = None,
    provisioner: Optional[ServiceProvisioner] = None,
    adapter: Optional[StorageAdapter] = None,
    adapter_options: Optional[Mapping[str, object]] = None,
    secret_resolver: SecretResolverFn = resolve_secret,
    retry: RetryPolicy = RetryPolicy(),
    notifier: Optional[Notifier] = None,
) -> RunReport:
    """Resolve environments, provision services, run stages, gate and publish, then notify.

    Raises :class:`ConfigError` before anything runs when the matrix is invalid.
    Every other failure is recorded on the owning environment's outcome.
    """

    workspace = Path(workspace_root).resolve()
    environments = resolve_environments(config)
    ledger = PublishLedger()
    publisher: Optional[ReleasePublisher] = None
    if config.deploy is not None:
        publisher = ReleasePublisher(
            config.deploy,
            ledger=ledger,
            workspace_root=workspace,
            adapter=adapter,
            adapter_options=adapter_options,
            secret_resolver=secret_resolver,
            retry=retry,
        )

    if dry_run:
        reports = [_plan_environment(config, env, event, publisher) for env in environments]
        return RunReport(event=event, environments=reports, dry_run=True)

    cancel = cancellation or Cancellation()
    service_owner = provisioner or ServiceProvisioner(config.services, timeout=service_timeout)

    with service_owner:
        try:
            service_owner.ensure_all()
        except ProvisionError as exc:
            logger.error("Service provisioning failed: %s", exc)
            outcome = PipelineOutcome.provision_failed(str(exc), exc.kind)
            reports = [EnvironmentReport(environment=env, outcome=outcome) for env in environments]
        else:
            reports = _run_environments(config, environments, event, workspace, publisher, cancel, jobs)

    report = RunReport(event=event, environments=reports)
    logger.info("Run finished: %s", report.outcome.describe())
    (notifier or Notifier(config.notifications)).notify(report)
    return report


def _run_environments(
    config: PipelineConfig,
    environments: List[BuildEnvironment],
    event: RunEvent,
    workspace: Path,
    publisher: Optional[ReleasePublisher],
    cancel: Cancellation,
    jobs: int,
) -> List[EnvironmentReport]:
    def _run(env: BuildEnvironment) -> EnvironmentReport:
        return run_environment(config, env, event, workspace=workspace, publisher=publisher, cancellation=cancel)

    if jobs <= 1 or len(environments) <= 1:
        return [_run(env) for env in environments]
    with ThreadPoolExecutor(max_workers=jobs, thread_name_prefix="ci-env") as executor:
        return list(executor.map(_run, environments))


def run_environment(
    config: PipelineConfig,
    environment: BuildEnvironment,
    event: RunEvent,
    *,
    workspace: Path,
    publisher: Optional[ReleasePublisher],
    cancellation: Cancellation,
) -> EnvironmentReport:
    """Run one environment: build stages, then the gated deploy. Failures stay local to it."""

    report = EnvironmentReport(environment=environment, outcome=PipelineOutcome.success())
    run_variables: Dict[str, str] = dict(event.variables())
    run_variables["TRAVIS_BUILD_DIR"] = str(workspace)

    with StageRunner(
        environment,
        workdir=workspace,
        language=config.language,
        run_variables=run_variables,
        cancellation=cancellation,
    ) as runner:
        for stage in BUILD_STAGES:
            outcome = _run_stage(runner, report, stage, config.stage_commands(stage))
            if outcome is not None:
                report.outcome = outcome
                return report

        if config.deploy is None or publisher is None:
            return report

        report.gate = evaluate_gate(config.deploy.condition, event.for_environment(environment))
        if not report.gate.open:
            logger.info("[%s] deploy skipped: %s", environment.name, report.gate.reason)
            report.outcome = PipelineOutcome.deploy_skipped(report.gate.reason or "gate closed")
            return report

        outcome = _run_stage(runner, report, "before_deploy", config.stage_commands("before_deploy"))
        if outcome is not None:
            report.outcome = outcome
            return report

    if cancellation.cancelled:
        report.outcome = PipelineOutcome.cancelled("deploy")
        return report
    try:
        report.publish = publisher.publish(environment, event)
    except PublishError as exc:
        logger.error("[%s] publish failed: %s", environment.name, exc)
        report.outcome = PipelineOutcome.deploy_failed(str(exc), exc.kind)
    except Exception as exc:
        logger.exception("[%s] publish raised unexpectedly", environment.name)
        report.outcome = PipelineOutcome.deploy_failed(f"{type(exc).__name__}: {exc}", "unexpected")
    return report


def _run_stage(
    runner: StageRunner,
    report: EnvironmentReport,
    stage: str,
    commands: List[str],
) -> Optional[PipelineOutcome]:
    if not commands:
        return None
    result = runner.run_stage(stage, commands)
    report.stages.append(result)
    if result.cancelled:
        return PipelineOutcome.cancelled(stage)
    try:
        result.raise_for_status()
    except StageError as exc:
        return PipelineOutcome.failed(exc.stage, exc.exit_code)
    return None


def _plan_environment(
    config: PipelineConfig,
    environment: BuildEnvironment,
    event: RunEvent,
    publisher: Optional[ReleasePublisher],
) -> EnvironmentReport:
    report = EnvironmentReport(environment=environment, outcome=PipelineOutcome.success())
    if config.deploy is None or publisher is None:
        return report
    report.gate = evaluate_gate(config.deploy.condition, event.for_environment(environment))
    if not report.gate.open:
        report.outcome = PipelineOutcome.deploy_skipped(report.gate.reason or "gate closed")
        return report
    report.publish = publisher.plan(environment, event)
    return report
