from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any, Iterable

from bnetguard.catalog import load_catalog
from bnetguard.models import (
    ActionResult,
    ApplicationCatalog,
    BlockingRule,
    FirewallRule,
    HostsEntryRule,
    Platform,
    PortRange,
)
from bnetguard.platforms import default_hosts_path
from bnetguard.runner import CommandRunner, SubprocessRunner, needs_elevation
from bnetguard.utils import normalize_name

LOGGER = logging.getLogger("bnetguard.network")

HOSTS_BEGIN = "# BEGIN bnetguard block"
HOSTS_END = "# END bnetguard block"

LAUNCHER_RULE = "Block Battle.net Launcher"
LAUNCHER_INBOUND_RULE = "Block Battle.net Launcher Inbound"

PF_INSTRUCTIONS = "Add rules to /etc/pf.conf and run: sudo pfctl -f /etc/pf.conf"

_FIREWALL_NOT_FOUND = "no rules match"


def hosts_entries(domains: Iterable[str], loopback: str = "127.0.0.1") -> list[str]:
    entries: list[str] = []
    for domain in domains:
        entries.append(f"{loopback} {domain}")
        if not domain.startswith("www."):
            entries.append(f"{loopback} www.{domain}")
    return entries


def line_ending(content: str, default: str = "\n") -> str:
    if "\r\n" in content:
        return "\r\n"
    if "\n" in content:
        return "\n"
    return default


def render_hosts(content: str, entries: list[str], newline: str = "\n") -> str:
    """Write the marked section into ``content``, replacing an existing one in place.

    The section uses the line terminator already present in ``content`` and
    falls back to ``newline`` for an empty file.
    """
    eol = line_ending(content, newline)
    section = [f"{HOSTS_BEGIN}{eol}", *(f"{entry}{eol}" for entry in entries), f"{HOSTS_END}{eol}"]

    output: list[str] = []
    inside = False
    placed = False
    for line in content.splitlines(keepends=True):
        marker = line.strip()
        if marker == HOSTS_BEGIN:
            inside = True
            if not placed:
                output.extend(section)
                placed = True
            continue
        if inside:
            if marker == HOSTS_END:
                inside = False
            continue
        output.append(line)

    if not placed:
        if output and not output[-1].endswith("\n"):
            output[-1] += eol
        output.extend(section)

    return "".join(output)


def strip_hosts_section(content: str) -> tuple[str, bool]:
    output: list[str] = []
    inside = False
    found = False
    for line in content.splitlines(keepends=True):
        marker = line.strip()
        if marker == HOSTS_BEGIN:
            inside = True
            found = True
            continue
        if inside:
            if marker == HOSTS_END:
                inside = False
            continue
        output.append(line)
    return "".join(output), found


def _unique_domains(domains: Iterable[str]) -> list[str]:
    output: list[str] = []
    seen: set[str] = set()
    for raw in domains:
        domain = normalize_name(raw).rstrip(".")
        if not domain or domain in seen:
            continue
        seen.add(domain)
        output.append(domain)
    return output


class NetworkBlocker:
    def __init__(
        self,
        platform: Platform,
        catalog: ApplicationCatalog | None = None,
        runner: CommandRunner | None = None,
        hosts_path: str | Path | None = None,
        loopback_address: str = "127.0.0.1",
    ) -> None:
        self._platform = platform
        self._catalog = catalog or load_catalog()
        self._runner = runner or SubprocessRunner()
        self._hosts_path = Path(hosts_path or default_hosts_path(platform))
        self._loopback = loopback_address
        self._default_newline = "\r\n" if platform == "windows" else "\n"

    @property
    def hosts_path(self) -> Path:
        return self._hosts_path

    @property
    def domains(self) -> tuple[str, ...]:
        return self._catalog.domains

    @property
    def ports(self) -> tuple[PortRange, ...]:
        return self._catalog.ports

    def firewall_rules(self) -> list[FirewallRule]:
        if self._platform != "windows":
            return []

        rules: list[FirewallRule] = []
        for path in self._catalog.for_platform("windows").launcher.default_paths:
            rules.append(FirewallRule(direction="out", target=path, rule_name=LAUNCHER_RULE))
            rules.append(FirewallRule(direction="in", target=path, rule_name=LAUNCHER_INBOUND_RULE))
        for domain in self._catalog.domains:
            rules.append(
                FirewallRule(
                    direction="out",
                    target=domain,
                    rule_name=f"Block {domain}",
                    target_kind="remoteip",
                )
            )
        return rules

    def get_blocking_rules(self) -> list[BlockingRule]:
        rules: list[BlockingRule] = [HostsEntryRule(domain=domain) for domain in self._catalog.domains]
        rules.extend(self.firewall_rules())
        return rules

    async def block_via_hosts_file(self, domains: Iterable[str] | None = None) -> ActionResult:
        targets = _unique_domains(self._catalog.domains if domains is None else domains)
        if not targets:
            return ActionResult(success=False, method="hosts file", error="No domains to block")

        entries = hosts_entries(targets, self._loopback)
        try:
            existing = await asyncio.to_thread(self._read_hosts)
            await asyncio.to_thread(self._write_hosts, render_hosts(existing, entries, self._default_newline))
        except OSError as exc:
            LOGGER.warning("Hosts file blocking failed path=%s error=%s", self._hosts_path, exc)
            return ActionResult(
                success=False,
                method="hosts file",
                error=str(exc),
                requires_elevated_privilege=True,
            )

        LOGGER.info("Blocked %s domains via hosts file %s", len(targets), self._hosts_path)
        return ActionResult(
            success=True,
            method="hosts file",
            details={"path": str(self._hosts_path), "domains": len(targets)},
        )

    async def block_via_firewall(self) -> ActionResult:
        if self._platform == "windows":
            return await self._block_windows_firewall()
        if self._platform == "macos":
            return self._macos_pf_instructions()
        return ActionResult(
            success=False,
            method="firewall",
            error=f"Firewall blocking is not applicable on {self._platform}",
            not_supported=True,
        )

    async def unblock_all(self) -> list[ActionResult]:
        results = [await self._unblock_hosts()]
        if self._platform == "windows":
            results.append(await self._unblock_windows_firewall())
        return results

    def get_dns_blocking_info(self) -> dict[str, Any]:
        return {
            "method": "DNS blocking",
            "domains": list(self._catalog.domains),
            "instructions": {
                "router": "Configure router DNS blacklist with Battle.net domains",
                "pihole": "Add domains to Pi-hole blocklist",
                "local_dns": "Set up local DNS server (dnsmasq) to block domains",
            },
            "dns_servers": {
                "opendns": {
                    "primary": "208.67.222.222",
                    "secondary": "208.67.220.220",
                    "family_shield": "Provides content filtering",
                },
                "cloudflare": {
                    "primary": "1.1.1.1",
                    "secondary": "1.0.0.1",
                    "families": "1.1.1.3 (blocks malware and adult content)",
                },
            },
        }

    def get_proxy_blocking_info(self) -> dict[str, Any]:
        return {
            "method": "HTTP/HTTPS proxy",
            "tools": ["Privoxy", "Squid", "mitmproxy"],
            "configuration": {
                "privoxy": {
                    "config": "/etc/privoxy/config",
                    "block_rule": "block pattern battle\\.net",
                    "action_file": "/etc/privoxy/user.action",
                },
                "squid": {
                    "config": "/etc/squid/squid.conf",
                    "acl_rule": "acl battlenet dstdomain .battle.net .blizzard.com",
                    "block_rule": "http_access deny battlenet",
                },
            },
            "system_proxy": {
                "windows": "Settings > Network > Proxy",
                "macos": "System Preferences > Network > Advanced > Proxies",
                "linux": "Network settings or environment variables",
            },
            "ports": [
                {"start": item.start, "end": item.end, "description": item.description}
                for item in self._catalog.ports
            ],
        }

    async def _block_windows_firewall(self) -> ActionResult:
        applied: list[str] = []
        failed: list[dict[str, str]] = []
        elevation = False

        for rule in self.firewall_rules():
            result = await self._runner.run(
                "netsh",
                [
                    "advfirewall",
                    "firewall",
                    "add",
                    "rule",
                    f"name={rule.rule_name}",
                    f"dir={rule.direction}",
                    "action=block",
                    f"{rule.target_kind}={rule.target}",
                    "enable=yes",
                ],
            )
            if result.ok:
                applied.append(f"{rule.rule_name} ({rule.direction}) -> {rule.target}")
                continue

            error = result.output or f"exit code {result.exit_code}"
            LOGGER.debug("Firewall rule %s for %s failed: %s", rule.rule_name, rule.target, error)
            failed.append({"rule": rule.rule_name, "target": rule.target, "error": error})
            elevation = elevation or needs_elevation(error)

        details = {"rules": len(applied), "applied": applied, "failed": failed}
        if not applied:
            LOGGER.warning("No firewall rules could be applied")
            return ActionResult(
                success=False,
                method="Windows Firewall",
                error=failed[0]["error"] if failed else "No firewall rules to apply",
                requires_elevated_privilege=elevation,
                details=details,
            )

        LOGGER.info("Applied %s firewall rules (%s failed)", len(applied), len(failed))
        return ActionResult(success=True, method="Windows Firewall", details=details)

    def _macos_pf_instructions(self) -> ActionResult:
        pf_rules = "\n".join(f"block drop quick from any to {domain}" for domain in self._catalog.domains)
        return ActionResult(
            success=False,
            method="pf",
            error="Requires manual pf configuration",
            details={"pf_rules": pf_rules, "instructions": PF_INSTRUCTIONS},
        )

    async def _unblock_hosts(self) -> ActionResult:
        try:
            existing = await asyncio.to_thread(self._read_hosts)
            cleaned, found = strip_hosts_section(existing)
            if found:
                await asyncio.to_thread(self._write_hosts, cleaned)
        except OSError as exc:
            LOGGER.warning("Hosts file unblock failed path=%s error=%s", self._hosts_path, exc)
            return ActionResult(
                success=False,
                method="hosts file",
                error=str(exc),
                requires_elevated_privilege=True,
            )

        if found:
            LOGGER.info("Removed blocking section from %s", self._hosts_path)
        return ActionResult(success=True, method="hosts file", details={"removed": found})

    async def _unblock_windows_firewall(self) -> ActionResult:
        rule_names = list(dict.fromkeys(rule.rule_name for rule in self.firewall_rules()))
        removed: list[str] = []
        errors: list[str] = []
        elevation = False

        for name in rule_names:
            result = await self._runner.run("netsh", ["advfirewall", "firewall", "delete", "rule", f"name={name}"])
            if result.ok:
                removed.append(name)
            elif _FIREWALL_NOT_FOUND not in result.output.lower():
                errors.append(f"{name}: {result.output or result.exit_code}")
                elevation = elevation or needs_elevation(result.output)

        details = {"removed": removed}
        if errors:
            LOGGER.warning("Failed to delete firewall rules: %s", "; ".join(errors))
            return ActionResult(
                success=False,
                method="Windows Firewall",
                error="; ".join(errors),
                requires_elevated_privilege=elevation,
                details=details,
            )
        return ActionResult(success=True, method="Windows Firewall", details=details)

    # Undecodable bytes and line terminators are written back exactly as read.
    def _read_hosts(self) -> str:
        with self._hosts_path.open("r", encoding="utf-8", errors="surrogateescape", newline="") as handle:
            return handle.read()

    def _write_hosts(self, content: str) -> None:
        with self._hosts_path.open("w", encoding="utf-8", errors="surrogateescape", newline="") as handle:
            handle.write(content)
