from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from dotenv import load_dotenv

from ci_release.schemas import ConfigError, load_config
from ci_release.secrets import use_dotenv

from .models import OutcomeKind, RunEvent, RunReport
from .pipeline import run_pipeline
from .stages import Cancellation

EXIT_CODES: Dict[OutcomeKind, int] = {
    OutcomeKind.SUCCESS: 0,
    OutcomeKind.DEPLOY_SKIPPED: 0,
    OutcomeKind.FAILED: 1,
    OutcomeKind.DEPLOY_FAILED: 3,
    OutcomeKind.PROVISION_FAILED: 4,
    OutcomeKind.CANCELLED: 130,
}
EXIT_CONFIG_ERROR = 2


def _load_local_env(workspace_root: Path) -> None:
    """Load a workspace-local .env into the process and register it as a secret source."""

    env_file = workspace_root / ".env"
    use_dotenv(env_file)
    if env_file.exists():
        load_dotenv(env_file, override=False)


def _env_flag(name: str) -> Optional[bool]:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ci-release-pipeline", description="Build, gate and publish release artifacts")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run the pipeline for a triggering ref")
    run.add_argument("--config", default=os.getenv("CI_RELEASE_CONFIG", ".travis.yml"))
    run.add_argument("--workspace-root", default=".")
    run.add_argument("--ref", help="Triggering branch or tag name")
    run.add_argument("--tag", dest="is_tag", action=argparse.BooleanOptionalAction, default=None)
    run.add_argument("--toolchain-version", default=os.getenv("CI_RELEASE_TOOLCHAIN_VERSION"))
    run.add_argument("--jobs", type=int, default=1, help="Environments to run concurrently")
    run.add_argument("--service-timeout", type=float, default=60.0)
    run.add_argument("--repo", default=os.getenv("TRAVIS_REPO_SLUG"), help="owner/name for the releases provider")
    run.add_argument("--adapter-arg", action="append", help="Extra upload adapter option key=value (repeatable)")
    run.add_argument("--dry-run", action=argparse.BooleanOptionalAction, default=False)
    run.add_argument("--verbose", action="store_true")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "run":
        return _run(args)

    parser.error("Unknown command")
    return 1


def _run(args: argparse.Namespace) -> int:
    workspace = Path(args.workspace_root).resolve()
    _load_local_env(workspace)

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = workspace / config_path

    try:
        event = _resolve_event(args)
        adapter_options = _parse_key_value_args(args.adapter_arg or [])
    except ValueError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    if args.repo:
        adapter_options.setdefault("repo", args.repo)

    cancellation = Cancellation()
    previous = _install_signal_handlers(cancellation)
    try:
        config = load_config(config_path)
        report = run_pipeline(
            config,
            event,
            workspace_root=workspace,
            jobs=args.jobs,
            dry_run=args.dry_run,
            service_timeout=args.service_timeout,
            cancellation=cancellation,
            adapter_options=adapter_options,
        )
    except ConfigError as exc:
        print(f"config error: {exc}", file=sys.stderr)
        return EXIT_CONFIG_ERROR
    finally:
        _restore_signal_handlers(previous)

    print(json.dumps(report.to_dict(), indent=2))
    _print_summary(report)
    return EXIT_CODES[report.outcome.kind]


def _resolve_event(args: argparse.Namespace) -> RunEvent:
    travis_tag = os.getenv("TRAVIS_TAG") or None
    ref = args.ref or os.getenv("CI_RELEASE_REF") or travis_tag or os.getenv("TRAVIS_BRANCH")
    if not ref:
        raise ValueError("A triggering ref is required (--ref or CI_RELEASE_REF).")

    is_tag = args.is_tag
    if is_tag is None:
        is_tag = _env_flag("CI_RELEASE_IS_TAG")
    if is_tag is None:
        is_tag = travis_tag is not None and travis_tag == ref

    return RunEvent(ref=ref, is_tag=is_tag, toolchain_version=args.toolchain_version or None)


def _print_summary(report: RunReport) -> None:
    label = "dry run" if report.dry_run else "run"
    print(f"{label} {report.event.ref}: {report.outcome.describe()}", file=sys.stderr)
    for env_report in report.environments:
        print(f"  {env_report.environment.name}: {env_report.outcome.describe()}", file=sys.stderr)
        if report.dry_run and env_report.publish is not None:
            print(f"    would publish {env_report.publish.selector}", file=sys.stderr)
            for path in env_report.publish.files:
                print(f"      {path}", file=sys.stderr)


def _install_signal_handlers(cancellation: Cancellation) -> List[tuple]:
    if threading.current_thread() is not threading.main_thread():
        return []

    def _handler(signum, frame) -> None:
        logging.getLogger(__name__).warning("Received signal %s; cancelling run", signum)
        cancellation.cancel()

    previous = []
    for signum in (signal.SIGINT, signal.SIGTERM):
        previous.append((signum, signal.signal(signum, _handler)))
    return previous


def _restore_signal_handlers(previous: List[tuple]) -> None:
    for signum, handler in previous:
        signal.signal(signum, handler)


def _parse_key_value_args(values: list[str]) -> dict[str, object]:
    options: dict[str, object] = {}
    for entry in values:
        if "=" not in entry:
            raise ValueError(f"Argument must be key=value (got '{entry}')")
        key, raw_value = entry.split("=", 1)
        options[key.strip()] = raw_value.strip()
    return options


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
