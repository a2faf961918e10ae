"""Start auxiliary services (databases, caches) for the duration of a pipeline run."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .errors import ProvisionError

logger = logging.getLogger(__name__)

CommandRunner = Callable[[Sequence[str]], int]


@dataclass(frozen=True)
class ServiceDefinition:
    name: str
    start: Tuple[str, ...]
    probe: Tuple[str, ...]
    stop: Tuple[str, ...]


BUILTIN_SERVICES: Dict[str, ServiceDefinition] = {
    "postgresql": ServiceDefinition(
        name="postgresql",
        start=("service", "postgresql", "start"),
        probe=("pg_isready", "-q"),
        stop=("service", "postgresql", "stop"),
    ),
    "mysql": ServiceDefinition(
        name="mysql",
        start=("service", "mysql", "start"),
        probe=("mysqladmin", "ping", "--silent"),
        stop=("service", "mysql", "stop"),
    ),
    "redis": ServiceDefinition(
        name="redis",
        start=("service", "redis-server", "start"),
        probe=("redis-cli", "ping"),
        stop=("service", "redis-server", "stop"),
    ),
    "docker": ServiceDefinition(
        name="docker",
        start=("service", "docker", "start"),
        probe=("docker", "info"),
        stop=("service", "docker", "stop"),
    ),
}
BUILTIN_SERVICES["postgres"] = BUILTIN_SERVICES["postgresql"]


def run_service_command(argv: Sequence[str]) -> int:
    try:
        proc = subprocess.run(list(argv), capture_output=True, text=True, check=False)
    except OSError as exc:
        logger.warning("Service command %s could not be started: %s", " ".join(argv), exc)
        return 127
    if proc.returncode != 0 and proc.stderr:
        logger.debug("Service command %s: %s", " ".join(argv), proc.stderr.strip())
    return proc.returncode


class ServiceProvisioner:
    """Scoped owner of the services a run depends on.

    Use as a context manager; ``teardown`` runs on every exit path.
    """

    def __init__(
        self,
        services: Iterable[str],
        *,
        definitions: Optional[Mapping[str, ServiceDefinition]] = None,
        timeout: float = 60.0,
        poll_interval: float = 1.0,
        runner: CommandRunner = run_service_command,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.services = list(services)
        self.definitions = dict(definitions if definitions is not None else BUILTIN_SERVICES)
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._runner = runner
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.RLock()
        self._started: List[ServiceDefinition] = []
        self._ready: set[str] = set()

    def __enter__(self) -> "ServiceProvisioner":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.teardown()

    @property
    def ready(self) -> frozenset[str]:
        with self._lock:
            return frozenset(self._ready)

    def ensure_all(self) -> None:
        for service_id in self.services:
            self.ensure_ready(service_id)

    def ensure_ready(self, service_id: str) -> str:
        """Start ``service_id`` if needed and block until its probe passes."""

        with self._lock:
            if service_id in self._ready:
                return service_id

            definition = self.definitions.get(service_id)
            if definition is None:
                raise ProvisionError(service_id, "unknown", f"Unknown service '{service_id}'.")

            if definition not in self._started:
                logger.info("Starting service %s", service_id)
                code = self._runner(definition.start)
                self._started.append(definition)
                if code != 0:
                    self.teardown()
                    raise ProvisionError(
                        service_id, "start", f"Service '{service_id}' failed to start (exit {code})."
                    )

            deadline = self._clock() + self.timeout
            while self._runner(definition.probe) != 0:
                if self._clock() >= deadline:
                    self.teardown()
                    raise ProvisionError(
                        service_id,
                        "timeout",
                        f"Service '{service_id}' not ready after {self.timeout:g}s.",
                    )
                self._sleep(self.poll_interval)

            logger.info("Service %s is ready", service_id)
            self._ready.add(service_id)
            return service_id

    def teardown(self) -> None:
        with self._lock:
            while self._started:
                definition = self._started.pop()
                self._ready.discard(definition.name)
                logger.info("Stopping service %s", definition.name)
                code = self._runner(definition.stop)
                if code != 0:
                    logger.warning("Service %s did not stop cleanly (exit %s)", definition.name, code)
            self._ready.clear()
