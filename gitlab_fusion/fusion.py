"""VMware Fusion control through the ``vmrun`` command line tool."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Callable, Iterable, List, Optional, Sequence, Union

from gitlab_fusion.constants import VMRUN_HOST_TYPE
from gitlab_fusion.models import ExecutionOutcome
from gitlab_fusion.utils import is_valid_ip_address, log


class SubprocessRunner:
    """Run a program to completion, buffering both output streams."""

    def run(self, argv: Sequence[str]) -> ExecutionOutcome:
        try:
            result = subprocess.run(list(argv), capture_output=True, check=False)
        except OSError as exc:
            log("ERROR", f"Could not start {argv[0]}: {exc}")
            return ExecutionOutcome.from_spawn_error(str(argv[0]), exc)
        return ExecutionOutcome.from_returncode(Path(argv[0]).name, result.returncode, result.stdout, result.stderr)


ScriptedResponse = Union[ExecutionOutcome, Callable[[List[str]], ExecutionOutcome]]


class ScriptedRunner:
    """Replay canned outcomes instead of spawning processes.

    Responses are consumed in order; a callable response receives the
    argument vector and returns the outcome. Every argument vector is
    recorded in :attr:`calls`.
    """

    def __init__(self, responses: Iterable[ScriptedResponse] = (), default: Optional[ExecutionOutcome] = None) -> None:
        self._responses: List[ScriptedResponse] = list(responses)
        self.default = default
        self.calls: List[List[str]] = []

    def run(self, argv: Sequence[str]) -> ExecutionOutcome:
        args = list(argv)
        self.calls.append(args)
        if self._responses:
            response = self._responses.pop(0)
        elif self.default is not None:
            response = self.default
        else:
            raise AssertionError(f"No scripted outcome left for {args}")
        if callable(response):
            return response(args)
        return response

    def commands(self) -> List[str]:
        """The vmrun sub-command of every recorded call."""
        return [call[3] if len(call) > 3 else "" for call in self.calls]


class VMRun:
    """The ``vmrun`` executable plus the backend used to launch it."""

    def __init__(self, executable: Path, runner=None) -> None:
        self.executable = Path(executable)
        self.runner = runner if runner is not None else SubprocessRunner()

    def invoke(self, *arguments: str) -> ExecutionOutcome:
        argv = [str(self.executable), "-T", VMRUN_HOST_TYPE, *arguments]
        log("DEBUG", f"Running: {' '.join(argv)}")
        outcome = self.runner.run(argv)
        if outcome.succeeded:
            if outcome.stdout:
                log("DEBUG", f"stdout: {outcome.stdout_text.strip()}")
        else:
            log("DEBUG", f"{outcome.description}: {outcome.stderr_text.strip()}")
        return outcome


class VirtualMachine:
    """A VMware Fusion guest identified by the path of its ``.vmx`` file."""

    def __init__(self, path: Path, vmrun: VMRun) -> None:
        self._path = Path(path)
        self._vmrun = vmrun

    def __repr__(self) -> str:
        return f"VirtualMachine({str(self._path)!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, VirtualMachine):
            return NotImplemented
        return self._path == other._path

    def __hash__(self) -> int:
        return hash(self._path)

    @property
    def exists(self) -> bool:
        return self._path.exists()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def name(self) -> str:
        """The file name of the guest without its extension."""
        return self._path.stem

    @property
    def snapshots(self) -> List[str]:
        """Snapshot names as reported by the tool, header line removed."""
        outcome = self._vmrun.invoke("listSnapshots", str(self._path))
        if not outcome.succeeded:
            return []
        return parse_snapshot_list(outcome.stdout_text)

    def has_snapshot(self, name: str) -> bool:
        return name in self.snapshots

    def snapshot(self, name: str) -> None:
        self._vmrun.invoke("snapshot", str(self._path), name).check()

    def ensure_snapshot(self, name: str) -> bool:
        """Create snapshot ``name`` unless it exists. Returns True if created."""
        if self.has_snapshot(name):
            return False
        self.snapshot(name)
        return True

    def clone(self, destination: Path, clone_name: str, snapshot: str) -> "VirtualMachine":
        """Create a linked clone of ``snapshot`` at ``destination``."""
        self._vmrun.invoke(
            "clone",
            str(self._path),
            str(destination),
            "linked",
            f"-snapshot={snapshot}",
            f"-cloneName={clone_name}",
        ).check()
        return VirtualMachine(destination, self._vmrun)

    def revert(self, snapshot: str) -> None:
        self._vmrun.invoke("revertToSnapshot", str(self._path), snapshot).check()

    def start(self, gui: bool = False) -> None:
        self._vmrun.invoke("start", str(self._path), "gui" if gui else "nogui").check()

    def stop(self) -> None:
        self._vmrun.invoke("stop", str(self._path), "hard").check()

    @property
    def ip(self) -> Optional[str]:
        """The guest's IP address, once guest additions report one.

        ``-wait`` makes the tool block until the guest reports an address,
        which can take minutes right after power on.
        """
        outcome = self._vmrun.invoke("getGuestIPAddress", str(self._path), "-wait")
        if not outcome.succeeded:
            return None
        candidate = outcome.stdout_text.strip()
        if not is_valid_ip_address(candidate):
            log("DEBUG", f"Ignoring unusable guest address {candidate!r}")
            return None
        return candidate


def parse_snapshot_list(output: str) -> List[str]:
    lines = [line for line in output.split("\n") if line.strip()]
    return [line.rstrip("\r") for line in lines[1:]]

