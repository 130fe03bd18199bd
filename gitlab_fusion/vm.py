"""Per-job guest lifecycle: provision, run, and stop a linked clone."""

from __future__ import annotations

import sys
import time
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Tuple

from gitlab_fusion.constants import ROOT_SNAPSHOT_NAME
from gitlab_fusion.exceptions import BuildFailure, FusionError, ToolError
from gitlab_fusion.fusion import VirtualMachine, VMRun
from gitlab_fusion.models import CIContext, StageConfig
from gitlab_fusion.readiness import wait_for_ssh
from gitlab_fusion.ssh import KeyAuthentication, PasswordAuthentication, Session
from gitlab_fusion.status import ProgressReporter
from gitlab_fusion.utils import is_writable_directory, log


def clone_identity(base: VirtualMachine, ctx: CIContext, images_dir: Path) -> Tuple[str, Path]:
    """Name and ``.vmx`` path of the clone serving this runner slot.

    Depends only on its inputs, so every stage of a job finds the same
    clone and concurrent jobs never share one.
    """
    name = f"{base.name}-{ctx.slot_name}"
    return name, Path(images_dir) / f"{name}.vmwarevm" / f"{name}.vmx"


def build_authentication(cfg: StageConfig):
    if cfg.ssh_password:
        return PasswordAuthentication(cfg.ssh_password)
    return KeyAuthentication(cfg.ssh_identity_file)


def _sink(stream: BinaryIO) -> Callable[[bytes], None]:
    def write(data: bytes) -> None:
        stream.write(data)
        stream.flush()

    return write


class VMManager:
    def __init__(
        self,
        cfg: StageConfig,
        ctx: CIContext,
        base_image: Path,
        vmrun: Optional[VMRun] = None,
        progress: Optional[ProgressReporter] = None,
        connect: Callable[..., Session] = Session.connect,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.cfg = cfg
        self.ctx = ctx
        self.vmrun = vmrun if vmrun is not None else VMRun(cfg.vmrun_path)
        self.progress = progress if progress is not None else ProgressReporter()
        self._connect = connect
        self._sleep = sleep
        self.base = VirtualMachine(Path(base_image), self.vmrun)
        self.clone_name, self.clone_path = clone_identity(self.base, ctx, cfg.vm_images_dir)
        self.clone = VirtualMachine(self.clone_path, self.vmrun)
        log("DEBUG", f"The base VMware Fusion guest is {self.base.path}")
        log("DEBUG", f"The cloned VMware Fusion guest is {self.clone.path}")

    @property
    def slot_snapshot_name(self) -> str:
        return self.ctx.slot_name

    # -- prepare ---------------------------------------------------------

    def validate(self) -> None:
        if not is_writable_directory(self.cfg.vm_images_dir):
            raise FusionError(f"{self.cfg.vm_images_dir} does not exist or is not writable")

    def prepare(self) -> None:
        """Bring the clone to its clean per-job state, ready to start.

        Safe to repeat: each step checks the snapshot list or the clone path
        before doing any work.
        """
        self.validate()
        self._ensure_base_snapshots()
        self._ensure_clone()
        self._reset_clone()

    def _ensure_base_snapshots(self) -> None:
        base = self.base
        if not base.has_snapshot(ROOT_SNAPSHOT_NAME):
            self.progress.update(f'Creating snapshot "{ROOT_SNAPSHOT_NAME}" in base guest "{base.name}"...')
            base.snapshot(ROOT_SNAPSHOT_NAME)

        slot = self.slot_snapshot_name
        if not base.has_snapshot(slot):
            self.progress.update(f'Creating snapshot "{slot}" in base guest "{base.name}"...')
            # Every slot snapshot starts from the common root state.
            base.revert(ROOT_SNAPSHOT_NAME)
            base.snapshot(slot)

    def _ensure_clone(self) -> None:
        if self.clone.exists:
            log("DEBUG", f"Reusing existing clone {self.clone_path}")
            return
        self.progress.update(
            f'Cloning from snapshot "{self.slot_snapshot_name}" in base guest "{self.base.name}" '
            f'to "{self.clone_name}"...'
        )
        self.clone = self.base.clone(self.clone_path, self.clone_name, self.slot_snapshot_name)

    def _reset_clone(self) -> None:
        snapshot = self.clone_name
        if self.clone.has_snapshot(snapshot):
            self.progress.update(f'Restoring guest "{self.clone_name}" from snapshot "{snapshot}"...')
            self.clone.revert(snapshot)
        else:
            self.progress.update(f'Creating snapshot "{snapshot}" in guest "{self.clone_name}"...')
            self.clone.snapshot(snapshot)

    def start(self, gui: bool = False) -> None:
        self.progress.update(f'Starting guest "{self.clone_name}"...')
        self.clone.start(gui=gui)

    def guest_ip(self) -> str:
        ip = self.clone.ip
        if ip is None:
            raise FusionError(f'Guest "{self.clone_name}" never resolved an IP address')
        log("DEBUG", f'Guest "{self.clone_name}" has IP address {ip}')
        return ip

    def wait_for_guest_ready(self) -> str:
        """Block until the clone has an address and answers over SSH."""
        self.progress.update(f'Waiting for guest "{self.clone_name}" to become responsive...')
        ip = self.guest_ip()
        wait_for_ssh(
            ip,
            self.cfg.ssh_username,
            build_authentication(self.cfg),
            port=self.cfg.ssh_port,
            attempts=self.cfg.ssh_attempts,
            interval=self.cfg.ssh_interval,
            connect=self._connect,
            sleep=self._sleep,
        )
        return ip

    # -- run -------------------------------------------------------------

    def run_script(
        self,
        script_file: Path,
        sub_stage: str,
        stdout: Optional[BinaryIO] = None,
        stderr: Optional[BinaryIO] = None,
    ) -> int:
        """Execute a runner-generated script in the clone.

        Raises :class:`BuildFailure` when the script exits nonzero.
        """
        log("INFO", f"Run stage {sub_stage} is starting")
        ip = self.guest_ip()
        try:
            script = Path(script_file).read_text()
        except OSError as exc:
            raise FusionError(f"Cannot read script {script_file}: {exc}") from exc
        log("DEBUG", f"Running script:\n{script}")

        out = stdout if stdout is not None else sys.stdout.buffer
        err = stderr if stderr is not None else sys.stderr.buffer
        with self._connect(ip, username=self.cfg.ssh_username, port=self.cfg.ssh_port) as session:
            session.authenticate(build_authentication(self.cfg))
            with session.open_channel() as channel:
                exit_code = channel.execute(script, on_stdout=_sink(out), on_stderr=_sink(err))

        if exit_code != 0:
            log("ERROR", f"Run stage {sub_stage} returned {exit_code}")
            raise BuildFailure(f"Run stage {sub_stage} returned {exit_code}", exit_code)
        log("INFO", f"Run stage {sub_stage} returned {exit_code}")
        return exit_code

    # -- cleanup ---------------------------------------------------------

    def cleanup(self) -> None:
        try:
            self.clone.stop()
        except ToolError as exc:
            log("ERROR", f'Could not stop the VMware Fusion guest "{self.clone_name}": {exc}')
            raise
