"""CLI entry points for gitlab-fusion.

GitLab Runner invokes one sub-command per custom executor stage:
https://docs.gitlab.com/runner/executors/custom.html
"""

from __future__ import annotations

import argparse
import dataclasses
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

from gitlab_fusion.config import (
    build_failure_exit_code,
    config_output,
    default_builds_dir,
    default_cache_dir,
    load_settings,
    parse_env,
    render_config_output,
    system_failure_exit_code,
)
from gitlab_fusion.constants import (
    _SENSITIVE_FIELDS,
    DEFAULT_BUILD_FAILURE_EXIT_CODE,
    DEFAULT_FUSION_APP,
    DEFAULT_SSH_IDENTITY_FILE,
    DEFAULT_SSH_PORT,
    DEFAULT_SSH_USERNAME,
    DEFAULT_SYSTEM_FAILURE_EXIT_CODE,
    DEFAULT_VM_IMAGES_DIR,
    READINESS_ATTEMPTS,
    READINESS_INTERVAL,
    TRUTHY,
)
from gitlab_fusion.exceptions import BuildFailure, ConfigurationError, FusionError
from gitlab_fusion.models import CIContext, StageConfig
from gitlab_fusion.utils import get_env_bool, log, set_verbose
from gitlab_fusion.vm import VMManager


def _resolve(args: argparse.Namespace, settings: Dict[str, Any], key: str, default: Any) -> Any:
    """Command line beats settings file beats built-in default."""
    value = getattr(args, key, None)
    if value is not None:
        return value
    return settings.get(key, default)


def build_stage_config(
    args: argparse.Namespace,
    settings: Dict[str, Any],
    build_failure: int = DEFAULT_BUILD_FAILURE_EXIT_CODE,
    system_failure: int = DEFAULT_SYSTEM_FAILURE_EXIT_CODE,
) -> StageConfig:
    cfg = StageConfig(
        fusion_app=Path(_resolve(args, settings, "vmware_fusion", DEFAULT_FUSION_APP)).expanduser(),
        vm_images_dir=Path(_resolve(args, settings, "vm_images_path", DEFAULT_VM_IMAGES_DIR)).expanduser(),
        ssh_username=_resolve(args, settings, "ssh_username", DEFAULT_SSH_USERNAME),
        ssh_identity_file=Path(_resolve(args, settings, "ssh_identity_file", DEFAULT_SSH_IDENTITY_FILE)).expanduser(),
        ssh_password=_resolve(args, settings, "ssh_password", None),
        ssh_port=int(_resolve(args, settings, "ssh_port", DEFAULT_SSH_PORT)),
        ssh_attempts=int(_resolve(args, settings, "ssh_attempts", READINESS_ATTEMPTS)),
        ssh_interval=float(_resolve(args, settings, "ssh_interval", READINESS_INTERVAL)),
        build_failure_exit_code=build_failure,
        system_failure_exit_code=system_failure,
    )
    if not 1 <= cfg.ssh_port <= 65535:
        raise ConfigurationError(f"SSH port must be between 1 and 65535 (got {cfg.ssh_port})")
    if cfg.ssh_attempts < 1:
        raise ConfigurationError(f"SSH attempts must be >= 1 (got {cfg.ssh_attempts})")
    if cfg.ssh_interval < 0:
        raise ConfigurationError(f"SSH interval must be >= 0 (got {cfg.ssh_interval})")
    return cfg


def show_config(cfg: StageConfig) -> None:
    """Print the resolved stage options and exit."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS and value:
            print(f"  {field.name}: ********")
        else:
            print(f"  {field.name}: {value}")


def stage_config(args: argparse.Namespace, cfg: StageConfig, ctx: CIContext) -> int:
    log("DEBUG", "Configuration stage is starting")
    document = config_output(
        builds_dir=args.builds_dir or default_builds_dir(ctx),
        cache_dir=args.cache_dir or default_cache_dir(ctx),
        builds_dir_is_shared=args.builds_dir_is_shared,
        hostname=args.hostname,
        info_plist=cfg.fusion_info_plist,
    )
    rendered = render_config_output(document)
    log("DEBUG", rendered)
    print(rendered, flush=True)
    return 0


def stage_prepare(args: argparse.Namespace, cfg: StageConfig, ctx: CIContext) -> int:
    log("INFO", "Prepare stage is starting")
    vm_mgr = VMManager(cfg, ctx, args.base_vm_path)
    vm_mgr.prepare()
    vm_mgr.start(gui=args.gui)
    vm_mgr.wait_for_guest_ready()
    return 0


def stage_run(args: argparse.Namespace, cfg: StageConfig, ctx: CIContext) -> int:
    vm_mgr = VMManager(cfg, ctx, args.base_vm_path)
    vm_mgr.run_script(args.script_file, args.sub_stage)
    return 0


def stage_cleanup(args: argparse.Namespace, cfg: StageConfig, ctx: CIContext) -> int:
    log("INFO", "Cleanup stage is starting")
    vm_mgr = VMManager(cfg, ctx, args.base_vm_path)
    vm_mgr.cleanup()
    return 0


STAGES = ("config", "prepare", "run", "cleanup")
DEFAULT_STAGE = "run"

_FALSY = {"0", "false", "no", "off"}


def parse_bool(raw: str) -> bool:
    value = raw.strip().lower()
    if value in TRUTHY:
        return True
    if value in _FALSY:
        return False
    raise argparse.ArgumentTypeError(f"expected true or false (got '{raw}')")


def with_default_stage(argv: List[str]) -> List[str]:
    """Insert the ``run`` stage when the arguments name no stage.

    Global options may precede the stage. An empty argument list, or a bare
    request for help, is left alone so the usage text can be shown.
    """
    argv = list(argv)
    index = 0
    while index < len(argv):
        token = argv[index]
        if token in ("-h", "--help"):
            return argv
        if token in ("--verbose", "--show-config") or token.startswith("--settings="):
            index += 1
            continue
        if token == "--settings":
            index += 2
            continue
        if token not in STAGES:
            argv.insert(index, DEFAULT_STAGE)
        return argv
    return argv


def _stage_options() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument(
        "--vmware-fusion",
        type=Path,
        default=None,
        help=f"Fully qualified path to the VMware Fusion application (default: {DEFAULT_FUSION_APP})",
    )
    parent.add_argument(
        "--vm-images-path",
        type=Path,
        default=None,
        help=f"Directory where cloned guests are stored (default: {DEFAULT_VM_IMAGES_DIR})",
    )
    return parent


def _ssh_options() -> argparse.ArgumentParser:
    parent = argparse.ArgumentParser(add_help=False)
    parent.add_argument("--ssh-username", default=None, help=f"User to log in as (default: {DEFAULT_SSH_USERNAME})")
    parent.add_argument(
        "--ssh-identity-file",
        type=Path,
        default=None,
        help=f"Private key for public key authentication (default: {DEFAULT_SSH_IDENTITY_FILE})",
    )
    parent.add_argument(
        "--ssh-password",
        default=None,
        help="Authenticate with this password instead of the identity file",
    )
    parent.add_argument("--ssh-port", type=int, default=None, help=f"SSH port (default: {DEFAULT_SSH_PORT})")
    parent.add_argument(
        "--ssh-attempts",
        type=int,
        default=None,
        help=f"Connection attempts while waiting for the guest (default: {READINESS_ATTEMPTS})",
    )
    parent.add_argument(
        "--ssh-interval",
        type=float,
        default=None,
        help=f"Seconds between connection attempts (default: {int(READINESS_INTERVAL)})",
    )
    return parent


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gitlab-fusion",
        description="A custom GitLab Runner executor that runs jobs inside VMware Fusion guests.",
    )
    parser.add_argument("--settings", type=Path, default=None, help="YAML file with option defaults")
    parser.add_argument("--verbose", action="store_true", help="Show debug output")
    parser.add_argument("--show-config", action="store_true", help="Show resolved options and exit")

    stage = _stage_options()
    ssh = _ssh_options()
    subparsers = parser.add_subparsers(dest="stage", metavar="STAGE")

    config = subparsers.add_parser("config", parents=[stage], help="Called by the config_exec stage")
    config.add_argument("--builds-dir", default=None, help="Base directory for job working directories in the guest")
    config.add_argument("--cache-dir", default=None, help="Base directory for the local cache in the guest")
    config.add_argument(
        "--builds-dir-is-shared",
        type=parse_bool,
        default=False,
        metavar="{true,false}",
        help="Whether the builds directory is shared between concurrent jobs",
    )
    config.add_argument("--hostname", default=None, help="Hostname to associate with job metadata")
    config.set_defaults(handler=stage_config)

    prepare = subparsers.add_parser("prepare", parents=[stage, ssh], help="Called by the prepare_exec stage")
    prepare.add_argument("base_vm_path", type=Path, help="Fully qualified path to the base guest .vmx")
    prepare.add_argument("--gui", action="store_true", help="Start the guest interactively")
    prepare.set_defaults(handler=stage_prepare)

    run = subparsers.add_parser("run", parents=[stage, ssh], help="Called by the run_exec stage")
    run.add_argument("base_vm_path", type=Path, help="Fully qualified path to the base guest .vmx")
    run.add_argument("script_file", type=Path, help="Script generated by GitLab Runner")
    run.add_argument("sub_stage", help="Name of the sub-stage provided by GitLab Runner")
    run.set_defaults(handler=stage_run)

    cleanup = subparsers.add_parser("cleanup", parents=[stage], help="Called by the cleanup_exec stage")
    cleanup.add_argument("base_vm_path", type=Path, help="Fully qualified path to the base guest .vmx")
    cleanup.set_defaults(handler=stage_cleanup)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(with_default_stage(sys.argv[1:] if argv is None else argv))
    if args.verbose or get_env_bool("LOG_VERBOSE"):
        set_verbose(True)

    system_failure = system_failure_exit_code()
    build_failure = build_failure_exit_code()

    if args.stage is None and not args.show_config:
        parser.print_help(sys.stderr)
        return system_failure

    try:
        settings = load_settings(args.settings, required=args.settings is not None)
        cfg = build_stage_config(args, settings, build_failure, system_failure)
        if args.show_config:
            show_config(cfg)
            return 0
        ctx = parse_env()
        log("DEBUG", f"Runner slot: {ctx.slot_name}")
        return args.handler(args, cfg, ctx)
    except BuildFailure:
        return build_failure
    except FusionError as exc:
        log("ERROR", str(exc))
        return system_failure
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return system_failure
