from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from pathlib import Path
from typing import Any

from bnetguard.agent import EnforcementAgent
from bnetguard.components import Components, build_components
from bnetguard.config import load_config
from bnetguard.logging_setup import configure_logging
from bnetguard.models import AppConfig, MonitorStatus, to_payload
from bnetguard.platforms import normalize_platform

_COMMANDS = {
    "run",
    "detect",
    "monitor",
    "terminate",
    "block-startup",
    "block-hosts",
    "block-firewall",
    "unblock",
    "rules",
    "dns-info",
    "proxy-info",
    "locations",
    "disable-config",
    "restore-config",
    "registry",
    "service",
}


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", default="config/default.json", help="Path to JSON config")
    parser.add_argument(
        "--platform",
        choices=["windows", "macos", "linux"],
        help="Override the platform from config",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Battle.net process and network control")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run the enforcement agent in console")
    _add_common_args(run_parser)
    run_parser.add_argument("--once", action="store_true", help="Run a single enforcement cycle")
    run_parser.add_argument("--dry-run", action="store_true", help="Log terminations without executing them")

    detect_parser = subparsers.add_parser("detect", help="List running Battle.net processes")
    _add_common_args(detect_parser)

    monitor_parser = subparsers.add_parser("monitor", help="Print detection status periodically")
    _add_common_args(monitor_parser)
    monitor_parser.add_argument("--interval-ms", type=int, help="Polling interval in milliseconds")
    monitor_parser.add_argument("--count", type=int, default=0, help="Stop after this many reports (0 = forever)")

    terminate_parser = subparsers.add_parser("terminate", help="Terminate Battle.net processes")
    _add_common_args(terminate_parser)
    target = terminate_parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--pid", type=int, help="Terminate a single process id")
    target.add_argument("--game", help="Terminate every process of a game")
    target.add_argument("--all", action="store_true", help="Terminate every detected process")
    terminate_parser.add_argument("--name", default="", help="Image name used as fallback with --pid")
    terminate_parser.add_argument("--force", action="store_true", help="Skip the graceful signal")
    terminate_parser.add_argument("--grace-ms", type=int, help="Grace period before escalating")
    terminate_parser.add_argument("--no-launcher", action="store_true", help="Leave the launcher running")
    terminate_parser.add_argument("--no-games", action="store_true", help="Leave games running")
    terminate_parser.add_argument("--dry-run", action="store_true", help="Log terminations without executing them")

    for name, help_text in (
        ("block-startup", "Remove the launcher from auto-start"),
        ("block-firewall", "Provision firewall rules"),
        ("unblock", "Remove hosts file section and firewall rules"),
        ("rules", "Show the blocking rules for this platform"),
        ("dns-info", "Show DNS based blocking options"),
        ("proxy-info", "Show proxy based blocking options"),
        ("locations", "Show resolved config locations"),
        ("disable-config", "Rename the launcher config directory"),
        ("restore-config", "Restore a renamed launcher config directory"),
    ):
        _add_common_args(subparsers.add_parser(name, help=help_text))

    hosts_parser = subparsers.add_parser("block-hosts", help="Redirect domains to loopback in the hosts file")
    _add_common_args(hosts_parser)
    hosts_parser.add_argument("domains", nargs="*", help="Domains to block (defaults to the catalog)")

    registry_parser = subparsers.add_parser("registry", help="Read or modify launcher registry settings")
    _add_common_args(registry_parser)
    registry_parser.add_argument("action", choices=["read", "disable"])

    service_parser = subparsers.add_parser("service", help="Manage Windows service")
    service_parser.add_argument("action", choices=["install", "remove", "start", "stop", "status"])
    service_parser.add_argument("--config", default="config/default.json", help="Path to JSON config")
    service_parser.add_argument("--dry-run", action="store_true", help="Run service in dry-run mode")
    service_parser.add_argument(
        "--manual-start",
        action="store_true",
        help="Install service with manual startup type",
    )
    service_parser.add_argument(
        "--block-network",
        action="store_true",
        help="Apply hosts file and firewall blocks while the service runs",
    )
    service_parser.add_argument(
        "--keep-blocks",
        action="store_true",
        help="Leave network blocks in place when the service stops",
    )

    return parser


def _normalized_argv(raw_argv: list[str]) -> list[str]:
    if not raw_argv or raw_argv[0] not in _COMMANDS:
        return ["run", *raw_argv]
    return raw_argv


def _default_base_dir() -> Path:
    if getattr(sys, "frozen", False):
        return Path(sys.executable).resolve().parent
    return Path(__file__).resolve().parent.parent


def _resolve_config_path(raw_path: str) -> str:
    candidate = Path(raw_path)
    if candidate.is_absolute():
        return str(candidate)

    if candidate.exists():
        return str(candidate.resolve())

    from_base = _default_base_dir() / candidate
    if from_base.exists():
        return str(from_base.resolve())

    return str(candidate)


def _resolve_runtime(args: argparse.Namespace) -> AppConfig:
    config = load_config(_resolve_config_path(args.config))

    platform = getattr(args, "platform", None)
    if platform:
        config = replace(config, platform=normalize_platform(platform))

    return config


def _print(value: Any) -> None:
    print(json.dumps(to_payload(value), indent=2))


async def _monitor(components: Components, interval_ms: int, count: int) -> None:
    done = asyncio.Event()
    seen = 0

    def report(status: MonitorStatus) -> None:
        nonlocal seen
        seen += 1
        _print(status)
        if count and seen >= count:
            done.set()

    components.detector.start_monitoring(report, interval_ms)
    try:
        await done.wait()
    finally:
        components.detector.stop_monitoring()


async def _terminate(args: argparse.Namespace, components: Components) -> Any:
    controller = components.controller
    if args.pid is not None:
        return await controller.terminate_process(
            args.pid,
            force=args.force,
            grace_period_ms=args.grace_ms,
            process_name=args.name,
        )
    if args.game:
        return await controller.terminate_game(args.game, force=args.force, grace_period_ms=args.grace_ms)
    return await controller.terminate_all_processes(
        force=args.force,
        grace_period_ms=args.grace_ms,
        include_launcher=not args.no_launcher,
        include_games=not args.no_games,
    )


async def _dispatch(args: argparse.Namespace, config: AppConfig) -> Any:
    components = build_components(config, dry_run=bool(getattr(args, "dry_run", False)))
    command = args.command

    if command == "detect":
        return await components.detector.detect()
    if command == "monitor":
        await _monitor(components, args.interval_ms or config.monitor_interval_ms, args.count)
        return None
    if command == "terminate":
        return await _terminate(args, components)
    if command == "block-startup":
        return await components.controller.block_launcher_startup()
    if command == "block-hosts":
        return await components.blocker.block_via_hosts_file(args.domains or None)
    if command == "block-firewall":
        return await components.blocker.block_via_firewall()
    if command == "unblock":
        return await components.blocker.unblock_all()
    if command == "rules":
        return components.blocker.get_blocking_rules()
    if command == "dns-info":
        return components.blocker.get_dns_blocking_info()
    if command == "proxy-info":
        return components.blocker.get_proxy_blocking_info()
    if command == "locations":
        return components.resolver.get_config_locations()
    if command == "disable-config":
        return await components.resolver.disable_via_config_rename()
    if command == "restore-config":
        return await components.resolver.restore_config()
    if command == "registry":
        if args.action == "read":
            return await components.resolver.read_registry()
        return await components.resolver.disable_via_registry()

    raise ValueError(f"Unknown command: {command}")


def _run_command(args: argparse.Namespace) -> None:
    config = _resolve_runtime(args)
    configure_logging(config.log_level)

    components = build_components(config, dry_run=args.dry_run)
    agent = EnforcementAgent(
        config=config,
        detector=components.detector,
        controller=components.controller,
        once=args.once,
    )
    agent.run()


def _service_command(args: argparse.Namespace) -> None:
    from bnetguard.service import (
        ServiceSettings,
        install_service,
        remove_service,
        service_status,
        start_service,
        stop_service,
    )

    config_path = _resolve_config_path(args.config)
    configure_logging(load_config(config_path).log_level)

    if args.action == "install":
        settings = ServiceSettings(
            config_path=config_path,
            dry_run=args.dry_run,
            block_network=args.block_network,
            unblock_on_stop=not args.keep_blocks,
        )
        result = install_service(settings, auto_start=not args.manual_start)
    else:
        actions = {
            "remove": remove_service,
            "start": start_service,
            "stop": stop_service,
            "status": service_status,
        }
        result = actions[args.action]()

    _print(result)


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    parsed = parser.parse_args(_normalized_argv(argv if argv is not None else sys.argv[1:]))

    if parsed.command == "run":
        _run_command(parsed)
        return

    if parsed.command == "service":
        _service_command(parsed)
        return

    config = _resolve_runtime(parsed)
    configure_logging(config.log_level)
    try:
        result = asyncio.run(_dispatch(parsed, config))
    except KeyboardInterrupt:
        return

    if result is not None:
        _print(result)


if __name__ == "__main__":
    main()
