"""Wait for a freshly booted guest to accept SSH commands."""

from __future__ import annotations

import time
from typing import Callable

import paramiko  # type: ignore

from gitlab_fusion.constants import (
    DEFAULT_SSH_PORT,
    READINESS_ATTEMPTS,
    READINESS_COMMAND,
    READINESS_INTERVAL,
)
from gitlab_fusion.exceptions import ReadinessExhausted, SecureShellError
from gitlab_fusion.ssh import Session
from gitlab_fusion.utils import log


def attempt_noop(host: str, username: str, authentication, port: int = DEFAULT_SSH_PORT,
                 connect: Callable[..., Session] = Session.connect) -> int:
    """Run the no-op command once on a new session and return its exit code."""
    with connect(host, username=username, port=port) as session:
        session.authenticate(authentication)
        with session.open_channel() as channel:
            return channel.execute(READINESS_COMMAND)


def wait_for_ssh(
    host: str,
    username: str,
    authentication,
    port: int = DEFAULT_SSH_PORT,
    attempts: int = READINESS_ATTEMPTS,
    interval: float = READINESS_INTERVAL,
    connect: Callable[..., Session] = Session.connect,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Poll the guest until a command succeeds over SSH.

    Every attempt starts from a brand-new session; a failed handshake leaves
    nothing worth reusing. Failures of any single attempt are logged and
    retried. Returns the number of attempts used, or raises
    :class:`ReadinessExhausted` once ``attempts`` have all failed.
    """
    for attempt in range(1, attempts + 1):
        try:
            exit_code = attempt_noop(host, username, authentication, port=port, connect=connect)
        except SecureShellError as exc:
            log("DEBUG", f"SSH attempt {attempt}/{attempts} on {host} failed: {exc}")
        except (paramiko.SSHException, OSError, EOFError) as exc:
            log("WARN", f"SSH attempt {attempt}/{attempts} on {host} hit a protocol error: {exc}")
        else:
            if exit_code == 0:
                log("SUCCESS", f"SSH on {host} is ready (attempt {attempt})")
                return attempt
            log("DEBUG", f"SSH attempt {attempt}/{attempts} on {host} exited with {exit_code}")

        if attempt < attempts:
            sleep(interval)

    log("ERROR", f"Waited {attempts} attempts for sshd on {host} to start")
    raise ReadinessExhausted(host, attempts)
