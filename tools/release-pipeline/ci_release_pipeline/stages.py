"""Run pipeline stages as sequences of shell commands."""

from __future__ import annotations

import logging
import os
import re
import shlex
import shutil
import signal
import subprocess
import threading
import time
from collections import deque
from pathlib import Path
from typing import Deque, Dict, Iterable, Mapping, Optional, Set

from .environment import expand_variables, path_additions
from .models import BuildEnvironment, StageResult

logger = logging.getLogger(__name__)

_EXPORT_RE = re.compile(r"^\s*export\s+(?P<name>[A-Za-z_][A-Za-z0-9_]*)=(?P<value>.*)$")


class Cancellation:
    """Cancel token shared by every stage runner of a run."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._runners: Set["StageRunner"] = set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()
        with self._lock:
            runners = list(self._runners)
        for runner in runners:
            runner.terminate()

    def register(self, runner: "StageRunner") -> None:
        with self._lock:
            self._runners.add(runner)

    def unregister(self, runner: "StageRunner") -> None:
        with self._lock:
            self._runners.discard(runner)


class StageRunner:
    """Executes the stages of one build environment, strictly in order.

    Variables set with a bare ``export NAME=value`` command persist for the
    remaining commands and stages of the environment.
    """

    def __init__(
        self,
        environment: BuildEnvironment,
        *,
        workdir: Path,
        language: str,
        run_variables: Optional[Mapping[str, str]] = None,
        cancellation: Optional[Cancellation] = None,
        shell: Optional[str] = None,
        tail_lines: int = 40,
        terminate_grace: float = 10.0,
    ) -> None:
        self.environment = environment
        self.workdir = Path(workdir)
        self.language = language
        self.variables: Dict[str, str] = dict(environment.variables)
        self.variables.update(run_variables or {})
        self.cancellation = cancellation or Cancellation()
        self.shell = shell or shutil.which("bash") or "/bin/sh"
        self.tail_lines = tail_lines
        self.terminate_grace = terminate_grace
        self._process: Optional[subprocess.Popen[str]] = None
        self._lock = threading.Lock()

    def __enter__(self) -> "StageRunner":
        self.cancellation.register(self)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.cancellation.unregister(self)
        self.terminate()

    def process_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self.variables)
        entries = [entry for entry in env.get("PATH", "").split(os.pathsep) if entry]
        for addition in path_additions(self.language):
            expanded = expand_variables(addition, env)
            if expanded not in entries:
                entries.append(expanded)
        env["PATH"] = os.pathsep.join(entries)
        return env

    def run_stage(self, stage: str, commands: Iterable[str]) -> StageResult:
        """Run ``commands`` in order, stopping at the first non-zero exit."""

        result = StageResult(stage=stage)
        tail: Deque[str] = deque(maxlen=self.tail_lines)
        logger.info("[%s] stage %s", self.environment.name, stage)

        for command in commands:
            if self.cancellation.cancelled:
                result.cancelled = True
                break
            result.commands_run += 1
            if self._apply_export(command):
                continue

            exit_code = self._run_command(command, tail)
            if self.cancellation.cancelled:
                result.cancelled = True
                result.exit_code = exit_code
                break
            if exit_code != 0:
                result.exit_code = exit_code
                logger.error(
                    "[%s] stage %s: command exited with %s: %s",
                    self.environment.name,
                    stage,
                    exit_code,
                    command,
                )
                break

        result.output_tail = list(tail)
        return result

    def terminate(self) -> None:
        with self._lock:
            process = self._process
        if process is None or not _group_alive(process):
            return
        logger.warning("[%s] terminating in-flight command (pid %s)", self.environment.name, process.pid)
        # Each command leads its own process group; children started by
        # scripts hold the output pipe open until the whole group is gone.
        _signal_group(process, signal.SIGTERM)
        deadline = time.monotonic() + self.terminate_grace
        while _group_alive(process) and time.monotonic() < deadline:
            time.sleep(0.05)
        _signal_group(process, signal.SIGKILL)
        process.wait()

    def _apply_export(self, command: str) -> bool:
        match = _EXPORT_RE.match(command)
        if not match or "$(" in command or "`" in command:
            return False
        lexer = shlex.shlex(match.group("value"), posix=True, punctuation_chars=True)
        lexer.whitespace_split = True
        try:
            tokens = list(lexer)
        except ValueError:
            return False
        if len(tokens) > 1:
            return False
        value = tokens[0] if tokens else ""
        name = match.group("name")
        self.variables[name] = expand_variables(value, self.process_env())
        logger.info("[%s] export %s", self.environment.name, name)
        return True

    def _run_command(self, command: str, tail: Deque[str]) -> int:
        logger.info("[%s] $ %s", self.environment.name, command)
        try:
            process = subprocess.Popen(
                [self.shell, "-c", command],
                cwd=str(self.workdir),
                env=self.process_env(),
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as exc:
            logger.error("[%s] could not launch command %r: %s", self.environment.name, command, exc)
            tail.append(str(exc))
            return 127

        with self._lock:
            self._process = process
        if self.cancellation.cancelled:
            self.terminate()
        try:
            for line in process.stdout or ():
                line = line.rstrip("\n")
                tail.append(line)
                logger.info("[%s] %s", self.environment.name, line)
            return process.wait()
        finally:
            with self._lock:
                self._process = None


def _signal_group(process: subprocess.Popen[str], signum: int) -> None:
    try:
        os.killpg(process.pid, signum)
    except ProcessLookupError:
        pass


def _group_alive(process: subprocess.Popen[str]) -> bool:
    # Reap the leader first; an unreaped zombie still counts as a group member.
    process.poll()
    try:
        os.killpg(process.pid, 0)
    except ProcessLookupError:
        return False
    return True
