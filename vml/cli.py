"""CLI entry points for vml."""

from __future__ import annotations

import argparse
import threading
from pathlib import Path
from typing import List, Optional, Tuple

from vml import __version__
from vml.config import install_main_config, load_global_config
from vml.exceptions import VmlError
from vml.models import CreateExistsAction, Settings
from vml.orchestrator import Orchestrator
from vml.utils import log


def split_user(target: str) -> Tuple[Optional[str], str]:
    """``user@name`` -> (user, name); a bare name has no user."""
    user, sep, name = target.rpartition("@")
    if not sep:
        return None, target
    return (user or None), name


def _settings_from_args(args: argparse.Namespace) -> Settings:
    values = {
        "memory": args.memory,
        "cpus": args.cpus,
        "disk_size": args.disk_size,
        "network": args.network,
        "bridge": args.bridge,
        "ssh_user": args.ssh_user,
        "ssh_keys": args.ssh_key,
        "login": args.login,
        "password": args.password,
        "hostname": args.hostname,
        "commands": args.cmd,
        "cloud_init": False if args.no_cloud_init else None,
    }
    return Settings(**values)


def _add_settings_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("VM settings (create stores them in vml.toml; run on an existing VM applies them once)")
    group.add_argument("--memory", help="Guest memory, e.g. 2G or 512M")
    group.add_argument("--cpus", type=int, help="Number of virtual CPUs")
    group.add_argument("--disk-size", help="Grow the disk to this size, e.g. 20G")
    group.add_argument("--network", choices=("user", "bridge", "none"))
    group.add_argument("--bridge", help="Host bridge for network=bridge")
    group.add_argument("--ssh-user", help="Login user created by cloud-init")
    group.add_argument("--ssh-key", action="append", metavar="KEY", help="Public key or key file (repeatable)")
    group.add_argument("--login", choices=("key", "password", "both"))
    group.add_argument("--password", help="Password for login=password|both")
    group.add_argument("--hostname")
    group.add_argument("--cmd", action="append", metavar="COMMAND", help="First-boot command (repeatable)")
    group.add_argument("--no-cloud-init", action="store_true", help="Do not build or attach a seed image")


def _add_wait_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--wait-ssh", action="store_true", help="Block until SSH answers")
    parser.add_argument("--timeout", type=float, help="Seconds to wait for SSH (default: wait-ssh-timeout)")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vml", description="Local virtual machine manager built on QEMU")
    parser.add_argument("--version", action="version", version=f"vml {__version__}")
    parser.add_argument("--config-dir", type=Path, help="Directory holding config.toml (default: $VML_CONFIG_DIR)")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND", required=True)

    p = sub.add_parser("create", help="Create a VM")
    p.add_argument("name")
    p.add_argument("-i", "--image", help="Catalog image name")
    p.add_argument(
        "--exists",
        choices=[action.value for action in CreateExistsAction],
        default=CreateExistsAction.FAIL.value,
        help="What to do if the VM already exists",
    )
    _add_settings_arguments(p)

    p = sub.add_parser("run", help="Create a VM if needed and start it")
    p.add_argument("name")
    p.add_argument("-i", "--image", help="Catalog image name")
    _add_wait_arguments(p)
    _add_settings_arguments(p)

    p = sub.add_parser("start", help="Start existing VMs")
    p.add_argument("names", nargs="+", metavar="name")
    _add_wait_arguments(p)

    p = sub.add_parser("stop", help="Stop running VMs")
    p.add_argument("names", nargs="+", metavar="name")
    p.add_argument("-f", "--force", action="store_true", help="Quit the emulator without guest shutdown")
    p.add_argument("--timeout", type=float, help="Seconds to wait for a graceful shutdown")

    p = sub.add_parser("ssh", help="Open an SSH session to a VM")
    p.add_argument("target", metavar="[user@]name")
    p.add_argument("-u", "--user", help="Login user (overrides user@)")
    p.add_argument("-o", "--option", action="append", dest="options", metavar="OPTION", help="ssh -o option")
    p.add_argument("-A", dest="flags", action="append_const", const="-A", help="Forward the agent")
    p.add_argument("-Y", dest="flags", action="append_const", const="-Y", help="Trusted X11 forwarding")
    p.add_argument("command", nargs=argparse.REMAINDER, help="Remote command")

    p = sub.add_parser("list", aliases=["ls"], help="List VMs")
    p.add_argument("names", nargs="*", metavar="name")
    p.add_argument("-r", "--running", action="store_true", help="Only running VMs")
    p.add_argument("--fold", action="store_true", help="Collapse dotted names to their first component")

    p = sub.add_parser("show", help="Show a VM's effective settings and state")
    p.add_argument("name")

    p = sub.add_parser("monitor", help="Run a QEMU monitor command, e.g. 'info block'")
    p.add_argument("name")
    p.add_argument("monitor_command", nargs="+", metavar="command")

    p = sub.add_parser("console", help="Attach to a VM's serial console")
    p.add_argument("name")

    p = sub.add_parser("rm", help="Remove VMs and their disks")
    p.add_argument("names", nargs="+", metavar="name")
    p.add_argument("-f", "--force", action="store_true", help="Stop running VMs first")

    p = sub.add_parser("image", help="Manage base images")
    image_sub = p.add_subparsers(dest="image_command", metavar="ACTION", required=True)
    image_sub.add_parser("list", help="Cached images")
    image_sub.add_parser("available", help="Images in the catalog")
    ip = image_sub.add_parser("pull", help="Download or refresh images")
    ip.add_argument("images", nargs="+", metavar="image")
    ip = image_sub.add_parser("rm", help="Remove cached images")
    ip.add_argument("images", nargs="+", metavar="image")
    ip = image_sub.add_parser("store", help="Save a stopped VM's disk as an image")
    ip.add_argument("name", help="VM whose disk is stored")
    ip.add_argument("-i", "--image", help="Image name (default: VM name with dots as hyphens)")
    ip.add_argument("-f", "--force", action="store_true", help="Replace an existing image")

    return parser


def _print_list(orch: Orchestrator, args: argparse.Namespace) -> None:
    rows = orch.list(running=args.running, names=args.names or None)
    if args.fold:
        for name in dict.fromkeys(vm.folded_name for vm, _ in rows):
            print(name)
        return
    if not rows:
        log("INFO", "No VMs found")
        return
    width = max(len(vm.name) for vm, _ in rows)
    for vm, state in rows:
        print(f"  {vm.name:<{width}}  {state.value}")


def _print_show(info: dict) -> None:
    width = max(len(key) for key in info)
    for key, value in info.items():
        print(f"  {key:<{width}}: {value if value is not None else '-'}")


def _image_command(orch: Orchestrator, args: argparse.Namespace) -> int:
    cache = orch.cache
    if args.image_command == "list":
        cached = cache.list_cached()
        if not cached:
            log("INFO", f"No images cached in {cache.images_dir}")
        for name in cached:
            note = ""
            if name in cache.catalog.entries and cache.is_outdated(name):
                note = "  (outdated)"
            print(f"  {name}{note}")
    elif args.image_command == "available":
        names = cache.catalog.names()
        width = max((len(name) for name in names), default=0)
        cached = set(cache.list_cached())
        for name in names:
            ref = cache.catalog.get(name)
            marker = "*" if name in cached else " "
            print(f"{marker} {name:<{width}}  {ref.description or ''}".rstrip())
    elif args.image_command == "pull":
        for name in args.images:
            cache.pull(name)
            log("SUCCESS", f"Image {name} ready")
    elif args.image_command == "rm":
        for name in args.images:
            cache.remove(name)
    elif args.image_command == "store":
        orch.store_image(args.name, image=args.image, force=args.force)
    return 0


def dispatch(orch: Orchestrator, args: argparse.Namespace, cancel: threading.Event) -> int:
    command = args.command
    if command == "create":
        orch.create(
            args.name,
            image=args.image,
            exists=CreateExistsAction(args.exists),
            overrides=_settings_from_args(args),
        )
    elif command == "run":
        overrides = _settings_from_args(args)
        if not orch.registry.exists(args.name):
            orch.create(args.name, image=args.image, overrides=overrides)
        # For an existing VM the settings apply to this start only.
        orch.run(args.name, wait_ssh=args.wait_ssh, timeout=args.timeout, cancel=cancel, overrides=overrides)
    elif command == "start":
        for name in args.names:
            orch.start(name, wait_ssh=args.wait_ssh, timeout=args.timeout, cancel=cancel)
    elif command == "stop":
        for name in args.names:
            orch.stop(name, force=args.force, timeout=args.timeout)
    elif command == "ssh":
        user, name = split_user(args.target)
        command_args = list(args.command)
        if command_args and command_args[0] == "--":
            command_args = command_args[1:]
        return orch.ssh(
            name,
            user=args.user or user,
            command=command_args,
            options=args.options,
            flags=args.flags,
        )
    elif command in ("list", "ls"):
        _print_list(orch, args)
    elif command == "show":
        _print_show(orch.show(args.name))
    elif command == "monitor":
        output = orch.monitor(args.name, " ".join(args.monitor_command))
        if output:
            print(output.rstrip("\n"))
    elif command == "console":
        return orch.console(args.name)
    elif command == "rm":
        for name in args.names:
            orch.remove(name, force=args.force)
    elif command == "image":
        return _image_command(orch, args)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    cancel = threading.Event()

    try:
        install_main_config(args.config_dir)
        orch = Orchestrator.from_global_config(load_global_config(args.config_dir))
        return dispatch(orch, args, cancel)
    except VmlError as exc:
        log("ERROR", str(exc))
        return 1
    except KeyboardInterrupt:
        cancel.set()
        log("WARN", "Interrupted")
        return 130
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
