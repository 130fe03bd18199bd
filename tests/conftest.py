"""Shared test fixtures and a stateful stand-in for ``vmrun``."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional

import pytest

from gitlab_fusion import utils
from gitlab_fusion.models import CIContext, ExecutionOutcome, StageConfig


def ok(stdout: str = "") -> ExecutionOutcome:
    return ExecutionOutcome(exit_code=0, stdout=stdout.encode("utf-8"))


def failed(stderr: str, exit_code: int = 255) -> ExecutionOutcome:
    return ExecutionOutcome.from_returncode("vmrun", exit_code, b"", stderr.encode("utf-8"))


class FakeFusion:
    """Answers ``vmrun -T fusion ...`` calls from in-memory state.

    Clones are materialised as empty ``.vmx`` files so the orchestrator's
    existence checks behave as on a real host.
    """

    def __init__(self, ip: Optional[str] = "192.168.64.10") -> None:
        self.snapshots: Dict[str, List[str]] = {}
        self.running: Dict[str, bool] = {}
        self.ip = ip
        self.calls: List[List[str]] = []
        self.fail: Dict[str, ExecutionOutcome] = {}

    def commands(self) -> List[str]:
        return [call[3] for call in self.calls]

    def run(self, argv):
        args = list(argv)
        self.calls.append(args)
        command, path, rest = args[3], args[4], args[5:]
        if command in self.fail:
            return self.fail[command]
        snaps = self.snapshots.setdefault(path, [])
        if command == "listSnapshots":
            lines = [f"Total snapshots: {len(snaps)}", *snaps]
            return ok("\n".join(lines) + "\n")
        if command == "snapshot":
            snaps.append(rest[0])
            return ok()
        if command == "revertToSnapshot":
            if rest[0] not in snaps:
                return failed("Error: Invalid snapshot name")
            return ok()
        if command == "clone":
            destination = Path(rest[0])
            snapshot = rest[2].split("=", 1)[1]
            if snapshot not in snaps:
                return failed("Error: Invalid snapshot name")
            destination.parent.mkdir(parents=True, exist_ok=True)
            destination.write_text(".encoding = \"UTF-8\"\n")
            self.snapshots[str(destination)] = []
            return ok()
        if command == "start":
            self.running[path] = True
            return ok()
        if command == "stop":
            self.running[path] = False
            return ok()
        if command == "getGuestIPAddress":
            if self.ip is None:
                return failed("Error: Unable to get the IP address")
            return ok(self.ip + "\n")
        raise AssertionError(f"Unexpected vmrun command {args}")


@pytest.fixture(autouse=True)
def _quiet_logs(monkeypatch):
    """Keep debug output off unless a test turns it on."""
    monkeypatch.setattr(utils, "_verbose", False)


@pytest.fixture
def fake_fusion() -> FakeFusion:
    return FakeFusion()


@pytest.fixture
def ci_context() -> CIContext:
    return CIContext(
        server_host="gitlab.example.com",
        runner_id=7,
        concurrent_project_id=3,
        project_path="group/project",
    )


@pytest.fixture
def stage_config(tmp_path) -> StageConfig:
    images = tmp_path / "Virtual Machines.localized"
    images.mkdir()
    return StageConfig(
        fusion_app=tmp_path / "VMware Fusion.app",
        vm_images_dir=images,
        ssh_username="buildbot",
        ssh_identity_file=tmp_path / "id_ed25519",
        ssh_attempts=3,
        ssh_interval=0,
    )


@pytest.fixture
def base_image(tmp_path) -> Path:
    path = tmp_path / "base" / "macos-14.vmwarevm" / "macos-14.vmx"
    path.parent.mkdir(parents=True)
    path.write_text(".encoding = \"UTF-8\"\n")
    return path


# Every environment variable the stages read, cleared for a clean slate.
_STAGE_ENV_VARS = [
    "CUSTOM_ENV_CI_SERVER_HOST",
    "CUSTOM_ENV_CI_RUNNER_ID",
    "CUSTOM_ENV_CI_CONCURRENT_PROJECT_ID",
    "CUSTOM_ENV_CI_PROJECT_PATH",
    "BUILD_FAILURE_EXIT_CODE",
    "SYSTEM_FAILURE_EXIT_CODE",
    "LOG_VERBOSE",
]


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    """Clear stage variables and point the settings file somewhere empty."""
    for key in _STAGE_ENV_VARS:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("GITLAB_FUSION_SETTINGS", str(tmp_path / "no-settings.yaml"))


@pytest.fixture
def mock_env(monkeypatch):
    """Helper to set environment variables for tests."""

    def _set(**kwargs):
        for key, value in kwargs.items():
            if value is None:
                monkeypatch.delenv(key, raising=False)
            else:
                monkeypatch.setenv(key, str(value))

    return _set
