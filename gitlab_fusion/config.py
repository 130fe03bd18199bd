"""Settings file loading and environment variable parsing for gitlab-fusion."""

from __future__ import annotations

import json
import plistlib
import socket
from pathlib import Path
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from gitlab_fusion.constants import (
    DEFAULT_BUILD_FAILURE_EXIT_CODE,
    DEFAULT_GUEST_HOME,
    DEFAULT_SETTINGS_PATH,
    DEFAULT_SYSTEM_FAILURE_EXIT_CODE,
    DRIVER_NAME,
    DRIVER_VERSION,
)
from gitlab_fusion.exceptions import ConfigurationError
from gitlab_fusion.models import CIContext
from gitlab_fusion.utils import get_env, log, parse_int_env

# Settings file key -> expected type. Keys mirror the long CLI options.
SETTINGS_KEYS: Dict[str, type] = {
    "vmware_fusion": str,
    "vm_images_path": str,
    "ssh_username": str,
    "ssh_identity_file": str,
    "ssh_password": str,
    "ssh_port": int,
    "ssh_attempts": int,
    "ssh_interval": float,
}


def parse_env() -> CIContext:
    """Read the job identity GitLab Runner exports to custom executors."""
    return CIContext(
        server_host=(get_env("CUSTOM_ENV_CI_SERVER_HOST") or "").strip(),
        runner_id=parse_int_env("CUSTOM_ENV_CI_RUNNER_ID", "0", min_val=0),
        concurrent_project_id=parse_int_env("CUSTOM_ENV_CI_CONCURRENT_PROJECT_ID", "0", min_val=0),
        project_path=(get_env("CUSTOM_ENV_CI_PROJECT_PATH") or "").strip(),
    )


def _exit_code_override(name: str, default: int) -> int:
    """An exit code from GitLab Runner's environment, or ``default``.

    An unusable override never stops a stage from running.
    """
    try:
        return parse_int_env(name, str(default), max_val=255)
    except ConfigurationError as exc:
        log("WARN", f"{exc}; using {default}")
        return default


def build_failure_exit_code() -> int:
    return _exit_code_override("BUILD_FAILURE_EXIT_CODE", DEFAULT_BUILD_FAILURE_EXIT_CODE)


def system_failure_exit_code() -> int:
    return _exit_code_override("SYSTEM_FAILURE_EXIT_CODE", DEFAULT_SYSTEM_FAILURE_EXIT_CODE)


def settings_path() -> Path:
    override = (get_env("GITLAB_FUSION_SETTINGS") or "").strip()
    return Path(override).expanduser() if override else DEFAULT_SETTINGS_PATH


def load_settings(path: Optional[Path] = None, required: bool = False) -> Dict[str, Any]:
    """Load option defaults from a YAML mapping.

    A missing file yields no settings unless ``required`` is set.
    """
    if path is None:
        path = settings_path()
    if not path.exists():
        if required:
            raise ConfigurationError(f"Settings file missing: {path}")
        return {}
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Settings file {path} contains invalid YAML: {exc}")
    except OSError as exc:
        raise ConfigurationError(f"Cannot read settings file {path}: {exc}")
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Settings file {path} must contain a mapping, got {type(data).__name__}")

    settings: Dict[str, Any] = {}
    for key, value in data.items():
        normalized = str(key).replace("-", "_")
        expected = SETTINGS_KEYS.get(normalized)
        if expected is None:
            supported = ", ".join(sorted(SETTINGS_KEYS))
            raise ConfigurationError(f"Unknown setting '{key}' in {path}. Supported: {supported}")
        try:
            settings[normalized] = expected(value)
        except (TypeError, ValueError):
            raise ConfigurationError(f"Setting '{key}' in {path} must be of type {expected.__name__} (got {value!r})")
    log("DEBUG", f"Loaded {len(settings)} setting(s) from {path}")
    return settings


def fusion_version(info_plist: Path) -> str:
    """The VMware Fusion version from its ``Info.plist``, or ``unknown``."""
    try:
        with open(info_plist, "rb") as f:
            info = plistlib.load(f)
    except (OSError, plistlib.InvalidFileException, ValueError):
        return "unknown"
    version = info.get("CFBundleShortVersionString") if isinstance(info, dict) else None
    return str(version) if version else "unknown"


def default_builds_dir(ctx: CIContext) -> str:
    return str(_job_dir(DEFAULT_GUEST_HOME / "builds", ctx))


def default_cache_dir(ctx: CIContext) -> str:
    return str(_job_dir(DEFAULT_GUEST_HOME / "cache", ctx))


def _job_dir(root: Path, ctx: CIContext) -> Path:
    path = root / f"runner-{ctx.runner_id}" / f"concurrent-{ctx.concurrent_project_id}"
    if ctx.project_path:
        path = path / ctx.project_path
    return path


def config_output(
    builds_dir: str,
    cache_dir: str,
    builds_dir_is_shared: bool,
    hostname: Optional[str],
    info_plist: Path,
) -> Dict[str, Any]:
    """The document the config stage hands back to GitLab Runner."""
    return {
        "builds_dir": builds_dir,
        "cache_dir": cache_dir,
        "builds_dir_is_shared": builds_dir_is_shared,
        "hostname": hostname if hostname is not None else socket.gethostname(),
        "driver": {
            "name": DRIVER_NAME,
            "version": f"{DRIVER_VERSION} (VMware Fusion {fusion_version(info_plist)})",
        },
    }


def render_config_output(document: Dict[str, Any]) -> str:
    return json.dumps(document, indent=2, sort_keys=True)
