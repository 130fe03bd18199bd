"""Global constants and default paths for gitlab-fusion."""

from __future__ import annotations

import mmap
from pathlib import Path

# Names the driver in the config stage output.
DRIVER_NAME = "gitlab-fusion"
DRIVER_VERSION = "1.0.0"

# Names the root snapshot on every base guest and the per-user support
# directory. Base guests provisioned by earlier releases already carry it.
SUBSYSTEM = "me.lovelett.gitlab-fusion"
ROOT_SNAPSHOT_NAME = SUBSYSTEM

DEFAULT_FUSION_APP = Path("/Applications/VMware Fusion.app")
DEFAULT_VM_IMAGES_DIR = Path.home() / "Virtual Machines.localized"
DEFAULT_SETTINGS_PATH = Path.home() / ".config" / DRIVER_NAME / "settings.yaml"

DEFAULT_SSH_USERNAME = "buildbot"
DEFAULT_SSH_IDENTITY_FILE = Path.home() / "Library" / "Application Support" / SUBSYSTEM / "id_ed25519"
DEFAULT_SSH_PORT = 22
SSH_CONNECT_TIMEOUT = 30.0

# Readiness polling: worst case is attempts * interval seconds.
READINESS_ATTEMPTS = 60
READINESS_INTERVAL = 60.0
READINESS_COMMAND = "echo -n 2>&1"

# Channel demultiplexing
CHANNEL_READ_TIMEOUT = 0.25
CHANNEL_BUFFER_SIZE = 4 * mmap.PAGESIZE

VMRUN_HOST_TYPE = "fusion"

DEFAULT_BUILD_FAILURE_EXIT_CODE = 1
DEFAULT_SYSTEM_FAILURE_EXIT_CODE = 2

DEFAULT_GUEST_HOME = Path("/Users/buildbot")

TRUTHY = {"1", "true", "yes", "on"}

_SENSITIVE_FIELDS = {"ssh_password"}
