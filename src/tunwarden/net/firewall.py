"""Kill switch — firewall rules that only let traffic reach the tunnel server.

Uses netsh on Windows, a dedicated iptables chain on Linux, and a pf
anchor on macOS. ``apply`` always clears any rule set left by a crashed
earlier session before installing its own, so re-applying is idempotent.
"""

from __future__ import annotations

import enum
import logging
import platform
from dataclasses import dataclass

from tunwarden.errors import CommandError, FirewallError, PrivilegeError
from tunwarden.net.commands import CommandRunner

logger = logging.getLogger(__name__)

RULE_PREFIX = "Tunwarden_KS"
IPTABLES_CHAIN = "TUNWARDEN_KS"
PF_ANCHOR = "tunwarden"

LOCAL_RANGES = ("192.168.0.0/16", "10.0.0.0/8", "172.16.0.0/12", "127.0.0.1")


class RuleAction(enum.Enum):
    ALLOW = "allow"
    BLOCK = "block"


@dataclass(frozen=True)
class FirewallRule:
    name: str
    action: RuleAction
    remote: tuple[str, ...] = ()
    protocol: str = ""
    port: int | None = None
    interface: str = ""


@dataclass(frozen=True)
class FirewallParams:
    server_ip: str
    tunnel_interface: str = ""


def build_rules(params: FirewallParams) -> tuple[FirewallRule, ...]:
    """The ordered kill-switch rule set for one session."""
    rules = [
        FirewallRule(f"{RULE_PREFIX}_Block", RuleAction.BLOCK),
        FirewallRule(f"{RULE_PREFIX}_AllowVPN", RuleAction.ALLOW, remote=(params.server_ip,)),
        FirewallRule(f"{RULE_PREFIX}_Lan", RuleAction.ALLOW, remote=LOCAL_RANGES),
        FirewallRule(f"{RULE_PREFIX}_DNS", RuleAction.ALLOW, protocol="udp", port=53),
    ]
    if params.tunnel_interface:
        rules.append(
            FirewallRule(
                f"{RULE_PREFIX}_Tunnel",
                RuleAction.ALLOW,
                interface=params.tunnel_interface,
            )
        )
    return tuple(rules)


class FirewallController:
    """Installs and removes the kill-switch rule set."""

    def __init__(self, runner: CommandRunner, *, system: str | None = None) -> None:
        self._runner = runner
        self._system = system or platform.system()
        self._rules: tuple[FirewallRule, ...] = ()

    @property
    def active_rules(self) -> tuple[FirewallRule, ...]:
        return self._rules

    @property
    def is_active(self) -> bool:
        return bool(self._rules)

    async def apply(self, params: FirewallParams) -> None:
        self._runner.require_elevation("Kill switch")
        await self.revert()

        rules = build_rules(params)
        try:
            if self._system == "Windows":
                await self._apply_netsh(rules)
            elif self._system == "Linux":
                await self._apply_iptables(rules)
            elif self._system == "Darwin":
                await self._apply_pf(rules)
            else:
                raise FirewallError(f"Kill switch is not supported on {self._system}")
        except CommandError as exc:
            logger.error("Kill switch setup failed: %s", exc)
            await self.revert()
            raise FirewallError(f"Failed to apply kill switch: {exc}") from exc
        except PrivilegeError:
            await self.revert()
            raise

        self._rules = rules
        logger.info("Kill switch active: only %s is reachable", params.server_ip)

    async def revert(self) -> None:
        """Remove every kill-switch rule. Missing rules are not an error."""
        self._runner.require_elevation("Kill switch")
        if self._system == "Windows":
            for suffix in ("Block", "AllowVPN", "Lan", "DNS", "Tunnel"):
                await self._runner.run(
                    ["netsh", "advfirewall", "firewall", "delete", "rule", f"name={RULE_PREFIX}_{suffix}"],
                    check=False,
                )
        elif self._system == "Linux":
            await self._runner.run(["iptables", "-D", "OUTPUT", "-j", IPTABLES_CHAIN], check=False)
            await self._runner.run(["iptables", "-F", IPTABLES_CHAIN], check=False)
            await self._runner.run(["iptables", "-X", IPTABLES_CHAIN], check=False)
        elif self._system == "Darwin":
            await self._runner.run(["pfctl", "-a", PF_ANCHOR, "-F", "rules"], check=False)

        if self._rules:
            logger.info("Kill switch removed")
        self._rules = ()

    async def _apply_netsh(self, rules: tuple[FirewallRule, ...]) -> None:
        for rule in rules:
            if rule.interface:
                # netsh rules cannot be scoped to a single adapter by name
                continue
            argv = [
                "netsh", "advfirewall", "firewall", "add", "rule",
                f"name={rule.name}", "dir=out", f"action={rule.action.value}",
            ]
            if rule.remote:
                argv.append(f"remoteip={','.join(rule.remote)}")
            if rule.protocol:
                argv.append(f"protocol={rule.protocol.upper()}")
            if rule.port is not None:
                argv.append(f"remoteport={rule.port}")
            argv.append("enable=yes")
            await self._runner.run(argv, privileged=True)

    async def _apply_iptables(self, rules: tuple[FirewallRule, ...]) -> None:
        await self._runner.run(["iptables", "-N", IPTABLES_CHAIN], privileged=True)
        await self._runner.run(
            ["iptables", "-A", IPTABLES_CHAIN, "-o", "lo", "-j", "ACCEPT"], privileged=True
        )
        # First match wins in iptables, so every allow precedes the drop
        for rule in rules:
            if rule.action is not RuleAction.ALLOW:
                continue
            for argv in _iptables_matches(rule):
                await self._runner.run(
                    ["iptables", "-A", IPTABLES_CHAIN, *argv, "-j", "ACCEPT"],
                    privileged=True,
                )
        await self._runner.run(["iptables", "-A", IPTABLES_CHAIN, "-j", "DROP"], privileged=True)
        await self._runner.run(
            ["iptables", "-I", "OUTPUT", "1", "-j", IPTABLES_CHAIN], privileged=True
        )

    async def _apply_pf(self, rules: tuple[FirewallRule, ...]) -> None:
        lines = []
        for rule in rules:
            if rule.action is RuleAction.BLOCK:
                lines.append("block drop out all")
            elif rule.interface:
                lines.append(f"pass out quick on {rule.interface}")
            elif rule.remote:
                lines.append(f"pass out quick to {{ {', '.join(rule.remote)} }}")
            else:
                lines.append(f"pass out quick proto {rule.protocol} to any port {rule.port}")
        await self._runner.run(
            ["pfctl", "-a", PF_ANCHOR, "-f", "-"],
            privileged=True,
            input="\n".join(lines) + "\n",
        )
        await self._runner.run(["pfctl", "-E"], privileged=True, check=False)


def _iptables_matches(rule: FirewallRule) -> list[list[str]]:
    if rule.interface:
        return [["-o", rule.interface]]
    if rule.remote:
        return [["-d", remote] for remote in rule.remote]
    return [["-p", rule.protocol, "--dport", str(rule.port)]]
