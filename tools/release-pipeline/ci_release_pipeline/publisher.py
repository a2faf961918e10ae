"""Resolve, match and upload release artifacts for one build environment."""

from __future__ import annotations

import glob
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator, List, Mapping, Optional

from ci_release.publish import StorageAdapter, UploadError, UploadRequest, UploadResult, build_adapter
from ci_release.schemas import DeploySpec
from ci_release.secrets import Secret, SecretRef, SecretResolutionError, resolve_secret

from .environment import expand_variables
from .errors import PublishError
from .models import BuildEnvironment, PublishReport, RunEvent

logger = logging.getLogger(__name__)

SecretResolverFn = Callable[[SecretRef], Secret]


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 4
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 30.0

    def delays(self) -> Iterator[float]:
        """Delays between attempts; yields ``attempts - 1`` values."""

        delay = self.base_delay
        for _ in range(max(self.attempts - 1, 0)):
            yield min(delay, self.max_delay)
            delay *= self.factor


class PublishLedger:
    """Run-scoped record of published target keys. ``claim`` is an atomic check-and-insert."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._claimed: set[str] = set()

    def claim(self, key: str) -> None:
        with self._lock:
            if key in self._claimed:
                raise PublishError("duplicate", f"Target '{key}' was already published in this run.")
            self._claimed.add(key)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._claimed

    @property
    def claimed(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._claimed)


class ReleasePublisher:
    def __init__(
        self,
        deploy: DeploySpec,
        *,
        ledger: PublishLedger,
        workspace_root: Path,
        adapter: Optional[StorageAdapter] = None,
        adapter_options: Optional[Mapping[str, object]] = None,
        secret_resolver: SecretResolverFn = resolve_secret,
        retry: RetryPolicy = RetryPolicy(),
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.deploy = deploy
        self.ledger = ledger
        self.workspace_root = Path(workspace_root)
        self._adapter = adapter
        self.adapter_options = dict(adapter_options or {})
        self._secret_resolver = secret_resolver
        self.retry = retry
        self._sleep = sleep

    def resolve_selector(self, environment: BuildEnvironment, event: RunEvent) -> str:
        variables: Dict[str, str] = dict(environment.variables)
        variables.update(event.variables())
        return expand_variables(self.deploy.file_pattern, variables)

    def target_key(self, selector: str) -> str:
        return f"{self.deploy.provider}:{selector}"

    def match_artifacts(self, selector: str) -> List[Path]:
        candidate = Path(selector)
        if not self.deploy.file_glob:
            if not candidate.is_absolute():
                candidate = self.workspace_root / candidate
            return [candidate] if candidate.is_file() else []
        pattern = selector if candidate.is_absolute() else str(Path(glob.escape(str(self.workspace_root))) / selector)
        return [Path(path) for path in sorted(glob.glob(pattern)) if Path(path).is_file()]

    def plan(self, environment: BuildEnvironment, event: RunEvent) -> PublishReport:
        """Would-be publish set; touches neither the ledger nor the provider."""

        selector = self.resolve_selector(environment, event)
        files = self.match_artifacts(selector)
        return PublishReport(
            target_key=self.target_key(selector),
            selector=selector,
            files=[str(path) for path in files],
            dry_run=True,
        )

    def publish(self, environment: BuildEnvironment, event: RunEvent) -> PublishReport:
        selector = self.resolve_selector(environment, event)
        files = self.match_artifacts(selector)
        if not files:
            raise PublishError("no_match", f"No artifacts match '{selector}'.")

        key = self.target_key(selector)
        self.ledger.claim(key)

        adapter = self._build_adapter()
        secret = self._resolve_secret(adapter)
        tag = event.ref

        report = PublishReport(target_key=key, selector=selector, files=[str(path) for path in files])
        for path in files:
            request = UploadRequest.for_file(path, tag=tag, provider=self.deploy.provider)
            report.uploads.append(self._upload_with_retry(adapter, request, secret, environment))

        if not self.deploy.skip_cleanup:
            report.cleaned = self._cleanup(files, environment)
        return report

    def _cleanup(self, files: List[Path], environment: BuildEnvironment) -> bool:
        """Remove uploaded artifacts. Failures are logged; the uploads already happened."""

        removed = 0
        for path in files:
            try:
                path.unlink(missing_ok=True)
            except OSError as exc:
                logger.warning("[%s] could not remove uploaded artifact %s: %s", environment.name, path, exc)
                continue
            removed += 1
        logger.info("[%s] removed %d of %d uploaded artifact(s)", environment.name, removed, len(files))
        return removed == len(files)

    def _build_adapter(self) -> StorageAdapter:
        if self._adapter is not None:
            return self._adapter
        options: Dict[str, object] = {
            "draft": self.deploy.draft,
            "prerelease": self.deploy.prerelease,
            **self.adapter_options,
        }
        if self.deploy.repo:
            options["repo"] = self.deploy.repo
        try:
            return build_adapter(self.deploy.provider, options)
        except ValueError as exc:
            raise PublishError("provider", str(exc)) from exc

    def _resolve_secret(self, adapter: StorageAdapter) -> Optional[Secret]:
        ref = self.deploy.api_key
        if ref is None:
            if adapter.requires_secret:
                raise PublishError("secret", f"Provider '{self.deploy.provider}' requires deploy.api_key.")
            return None
        try:
            return self._secret_resolver(ref)
        except SecretResolutionError as exc:
            raise PublishError("secret", str(exc)) from exc

    def _upload_with_retry(
        self,
        adapter: StorageAdapter,
        request: UploadRequest,
        secret: Optional[Secret],
        environment: BuildEnvironment,
    ) -> UploadResult:
        delays = self.retry.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                result = adapter.upload(request, secret)
            except UploadError as exc:
                delay = next(delays, None) if exc.retryable else None
                if delay is None:
                    raise PublishError(
                        "upload", f"Upload of {request.name} failed after {attempt} attempt(s): {exc}"
                    ) from exc
                logger.warning(
                    "[%s] upload of %s failed (attempt %d/%d): %s; retrying in %.1fs",
                    environment.name,
                    request.name,
                    attempt,
                    self.retry.attempts,
                    exc,
                    delay,
                )
                self._sleep(delay)
                continue
            result.attempts = attempt
            logger.info("[%s] uploaded %s via %s (%s)", environment.name, request.name, result.adapter, result.status)
            return result
