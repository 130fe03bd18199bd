"""Data models for gitlab-fusion."""

from __future__ import annotations

import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from gitlab_fusion.constants import (
    DEFAULT_BUILD_FAILURE_EXIT_CODE,
    DEFAULT_SYSTEM_FAILURE_EXIT_CODE,
    READINESS_ATTEMPTS,
    READINESS_INTERVAL,
)
from gitlab_fusion.exceptions import ToolExecutionError, ToolSpawnError


@dataclass(frozen=True)
class CIContext:
    """The slice of the GitLab job environment that names a sandbox."""

    server_host: str
    runner_id: int
    concurrent_project_id: int
    project_path: str = ""

    @property
    def slot_name(self) -> str:
        return f"{self.server_host}-runner-{self.runner_id}-concurrent-{self.concurrent_project_id}"


@dataclass
class StageConfig:
    fusion_app: Path
    vm_images_dir: Path
    ssh_username: str
    ssh_identity_file: Path
    ssh_password: Optional[str] = None
    ssh_port: int = 22
    ssh_attempts: int = READINESS_ATTEMPTS
    ssh_interval: float = READINESS_INTERVAL
    build_failure_exit_code: int = DEFAULT_BUILD_FAILURE_EXIT_CODE
    system_failure_exit_code: int = DEFAULT_SYSTEM_FAILURE_EXIT_CODE

    @property
    def vmrun_path(self) -> Path:
        return self.fusion_app / "Contents" / "Public" / "vmrun"

    @property
    def fusion_info_plist(self) -> Path:
        return self.fusion_app / "Contents" / "Info.plist"


@dataclass
class ExecutionOutcome:
    """Captured result of one ``vmrun`` invocation.

    A nonzero exit is an ordinary outcome, not an exception; call
    :meth:`check` to turn a failure into one.
    """

    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""
    description: str = ""
    spawn_error: Optional[OSError] = None

    @classmethod
    def from_returncode(cls, program: str, returncode: int, stdout: bytes, stderr: bytes) -> "ExecutionOutcome":
        if returncode == 0:
            return cls(exit_code=0, stdout=stdout, stderr=stderr)
        if returncode < 0:
            try:
                name = signal.Signals(-returncode).name
            except ValueError:
                name = str(-returncode)
            description = f"{program} was terminated by signal {name}"
        else:
            description = f"{program} exited with status {returncode}"
        return cls(exit_code=returncode, stdout=stdout, stderr=stderr, description=description)

    @classmethod
    def from_spawn_error(cls, executable: str, error: OSError) -> "ExecutionOutcome":
        return cls(
            exit_code=2,
            stdout=str(error).encode("utf-8"),
            stderr=f'The supplied vmrun, "{executable}", cannot be executed.'.encode("utf-8"),
            description=f"could not start {executable}: {error}",
            spawn_error=error,
        )

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and self.spawn_error is None

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="replace")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="replace")

    def check(self) -> str:
        """Return stdout as text, raising if the invocation failed."""
        if self.spawn_error is not None:
            raise ToolSpawnError(self.stderr_text, exit_code=self.exit_code, stdout=self.stdout_text)
        if self.exit_code != 0:
            message = self.stderr_text.strip() or self.stdout_text.strip() or self.description
            raise ToolExecutionError(
                message,
                exit_code=self.exit_code,
                stdout=self.stdout_text,
                stderr=self.stderr_text,
            )
        return self.stdout_text
