"""
External process execution.

``ProcessRunner`` is the capability every component uses to spawn
commands; ``TaskRun`` implements the task-runner protocol on top of it:
variables file, log/report naming, relocation of the produced files and
pickup of an optional ``output.json``.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import yaml

from ..errors import EngineError, FAILED_TO_EXECUTE_TASK

logger = logging.getLogger(__name__)

NAME_SUFFIX_FORMAT = "%Y%m%d_%H%M%S"
LOGS_FOLDER = "logs"
MASK = "***"


def redact(text: str, secrets: Iterable[str] = ()) -> str:
    """Replace every non-empty secret in ``text`` with a mask."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, MASK)
    return text


class ProcessLaunchError(EngineError):
    """The command could not be started at all."""

    def __init__(self, command: str, reason: str):
        super().__init__(FAILED_TO_EXECUTE_TASK, f"Failed to launch {command}: {reason}")
        self.command = command


class ProcessRunner(ABC):
    """Spawns external commands."""

    @abstractmethod
    def run(
        self,
        command: str,
        args: Sequence[str],
        work_dir: Optional[Path] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> int:
        """Run to completion and return the exit code. Output is logged."""

    @abstractmethod
    def capture(
        self,
        argv: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        secrets: Iterable[str] = (),
    ) -> Tuple[int, str]:
        """Run to completion and return (exit code, combined output).

        Each of ``secrets`` is masked in the returned and logged output.
        """


class SubprocessRunner(ProcessRunner):
    """ProcessRunner backed by ``subprocess.run``.

    No timeout is applied; a hung command blocks the caller. Output is
    decoded as UTF-8 with undecodable bytes replaced.
    """

    def _execute(
        self,
        argv: List[str],
        cwd: Optional[Path],
        env: Optional[Mapping[str, str]],
        secrets: Iterable[str] = (),
    ) -> Tuple[int, str]:
        try:
            completed = subprocess.run(
                argv,
                cwd=str(cwd) if cwd else None,
                env=dict(env) if env is not None else None,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                check=False,
            )
        except OSError as e:
            logger.error(f"Failed to launch {argv[0]}: {e}")
            raise ProcessLaunchError(argv[0], str(e)) from e

        output = redact(completed.stdout or "", secrets)
        if output:
            logger.info(output.rstrip())
        return completed.returncode, output

    def run(self, command, args, work_dir=None, env=None) -> int:
        argv = [command, *args]
        logger.info(f"Running {' '.join(argv)} in {work_dir or os.getcwd()}")
        exit_code, _ = self._execute(argv, work_dir, env)
        logger.info(f"{command} exited with status code {exit_code}")
        return exit_code

    def capture(self, argv, env=None, secrets=()) -> Tuple[int, str]:
        return self._execute(list(argv), None, env, tuple(secrets))


@dataclass
class TaskRunResult:
    """Outcome of one task-runner invocation."""

    exit_code: int
    name_suffix: str
    report_url: str
    output: Optional[Dict[str, Any]] = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


class TaskRun:
    """One invocation of the task runner against an artifact directory."""

    def __init__(
        self,
        runner: ProcessRunner,
        task_dir: Path,
        install_root: Path,
        report_base_url: str,
        clock: Callable[[], datetime],
        task_runner: str = "robot",
    ):
        self.runner = runner
        self.task_dir = Path(task_dir)
        self.install_root = Path(install_root)
        self.report_base_url = report_base_url.rstrip("/")
        self.task_runner = task_runner
        self.name_suffix = clock().strftime(NAME_SUFFIX_FORMAT)

    @property
    def variables_file(self) -> Path:
        return self.task_dir / f"variables_{self.name_suffix}.yml"

    @property
    def log_file(self) -> Path:
        return self.task_dir / f"log_{self.name_suffix}.html"

    @property
    def report_file(self) -> Path:
        return self.task_dir / f"report_{self.name_suffix}.html"

    @property
    def report_url(self) -> str:
        return f"{self.report_base_url}/{self.report_file.name}"

    def write_variables(self, variables: Dict[str, Any], with_json: bool) -> bool:
        """Dump variables to variables_<suffix>.yml (and variables.json)."""
        written = True
        try:
            with self.variables_file.open("w", encoding="utf-8") as fh:
                yaml.safe_dump(variables, fh, default_flow_style=False)
        except OSError as e:
            logger.warning(f"Failed to save the variables file: {e}")
            written = False

        if with_json:
            try:
                with (self.task_dir / "variables.json").open("w", encoding="utf-8") as fh:
                    json.dump(variables, fh, indent=2)
            except OSError as e:
                logger.warning(f"Failed to save the variables file as a json file: {e}")
                written = False
        return written

    def execute(
        self,
        robot_file: str,
        env: Mapping[str, str],
        variables: Optional[Dict[str, Any]] = None,
        with_json: bool = False,
    ) -> TaskRunResult:
        """Run ``robot_file`` and collect its outputs.

        Raises ProcessLaunchError when the runner binary cannot be started;
        the produced files are relocated either way.
        """
        args: List[str] = []
        if variables is not None and self.write_variables(variables, with_json):
            logger.info(f"The task has variable(s) defined in file: {self.variables_file.name}")
            args += ["-V", str(self.variables_file)]
        args += [
            "-l", str(self.log_file),
            "-r", str(self.report_file),
            str(self.task_dir / robot_file),
        ]

        try:
            exit_code = self.runner.run(self.task_runner, args, self.task_dir, env)
        finally:
            self._relocate_outputs()

        return TaskRunResult(
            exit_code=exit_code,
            name_suffix=self.name_suffix,
            report_url=self.report_url,
            output=self._pop_output(),
        )

    def _relocate_outputs(self) -> None:
        logs_dir = self.install_root / LOGS_FOLDER
        logs_dir.mkdir(parents=True, exist_ok=True)
        for produced in (self.log_file, self.report_file, self.variables_file):
            if produced.exists():
                shutil.move(str(produced), str(logs_dir / produced.name))
        for leftover in ("variables.json", "output.xml"):
            (self.task_dir / leftover).unlink(missing_ok=True)

    def _pop_output(self) -> Optional[Dict[str, Any]]:
        output_file = self.task_dir / "output.json"
        if not output_file.exists():
            return None
        try:
            payload = json.loads(output_file.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable output.json: {e}")
            payload = None
        output_file.unlink(missing_ok=True)
        if payload is not None and not isinstance(payload, dict):
            payload = {"output": payload}
        return payload
