"""Tests for tunnel interface and bypass route management."""

from __future__ import annotations

import asyncio

import pytest

from tunwarden.errors import PrivilegeError, RoutingError
from tunwarden.net.routing import RouteParams, RoutingController, parse_gateway

SERVER = "198.51.100.7"
GATEWAY = "192.168.1.1"


def run_async(coro):
    return asyncio.run(coro)


def _controller(runner, system="Linux", **kwargs):
    kwargs.setdefault("interface_probe", lambda name: True)
    return RoutingController(runner, "/opt/tun2socks", "tun0", system=system, **kwargs)


def _params(dns=("1.1.1.1",)):
    return RouteParams(server_ip=SERVER, gateway=GATEWAY, socks_port=10808, dns_servers=dns)


def test_linux_apply_order(fake_runner):
    controller = _controller(fake_runner)
    run_async(controller.apply(_params()))

    assert fake_runner.calls == [
        ("ip", "route", "add", f"{SERVER}/32", "via", GATEWAY, "metric", "5"),
        ("ip", "addr", "add", "10.0.0.2/24", "dev", "tun0"),
        ("ip", "link", "set", "dev", "tun0", "up"),
        ("ip", "route", "add", "0.0.0.0/1", "dev", "tun0"),
        ("ip", "route", "add", "128.0.0.0/1", "dev", "tun0"),
        ("resolvectl", "dns", "tun0", "1.1.1.1"),
        ("resolvectl", "domain", "tun0", "~."),
    ]
    argv, _ = fake_runner.spawn_calls[0]
    assert argv == (
        "/opt/tun2socks",
        "-device",
        "tun://tun0",
        "-proxy",
        "socks5://127.0.0.1:10808",
        "-loglevel",
        "info",
    )
    assert controller.tunnel_pid == 4242


def test_revert_runs_in_reverse(fake_runner):
    async def scenario():
        controller = _controller(fake_runner)
        await controller.apply(_params())
        fake_runner.calls.clear()
        await controller.revert()
        return controller

    controller = run_async(scenario())
    assert fake_runner.calls == [
        ("resolvectl", "revert", "tun0"),
        ("ip", "route", "del", "128.0.0.0/1", "dev", "tun0"),
        ("ip", "route", "del", "0.0.0.0/1", "dev", "tun0"),
        ("ip", "route", "del", f"{SERVER}/32"),
    ]
    assert fake_runner.spawned[0].terminated
    assert controller.applied_steps == []
    assert controller.tunnel_pid is None


def test_failure_mid_apply_rolls_back(fake_runner):
    fake_runner.fail(["ip", "route", "add", "0.0.0.0/1"])
    controller = _controller(fake_runner)

    with pytest.raises(RoutingError, match="0.0.0.0/1"):
        run_async(controller.apply(_params()))

    assert controller.applied_steps == []
    assert fake_runner.spawned[0].terminated
    assert fake_runner.calls[-1] == ("ip", "route", "del", f"{SERVER}/32")
    assert ("resolvectl", "dns", "tun0", "1.1.1.1") not in fake_runner.calls


def test_not_elevated(runner_factory):
    runner = runner_factory(elevated=False)
    with pytest.raises(PrivilegeError):
        run_async(_controller(runner).apply(_params()))
    assert runner.calls == []
    assert runner.spawn_calls == []


def test_interface_never_appears(fake_runner):
    controller = _controller(fake_runner, interface_probe=lambda name: False, interface_wait=0.01)
    with pytest.raises(RoutingError, match="did not appear"):
        run_async(controller.apply(_params()))
    assert fake_runner.spawned[0].terminated
    assert fake_runner.calls[-1] == ("ip", "route", "del", f"{SERVER}/32")


def test_tunnel_binary_exits_early(fake_runner, process_factory):
    fake_runner.process_factory = lambda: process_factory(exit_code=1)
    controller = _controller(fake_runner, interface_probe=lambda name: False)
    with pytest.raises(RoutingError, match="exited with code 1"):
        run_async(controller.apply(_params()))


def test_no_dns_servers_skips_dns(fake_runner):
    run_async(_controller(fake_runner).apply(_params(dns=())))
    assert fake_runner.commands("resolvectl") == []


def test_windows_commands(fake_runner):
    async def scenario():
        controller = _controller(fake_runner, system="Windows")
        await controller.apply(_params(dns=("1.1.1.1", "1.0.0.1")))
        applied = list(fake_runner.calls)
        await controller.revert()
        return applied

    applied = run_async(scenario())
    assert applied[0] == (
        "route", "add", SERVER, "mask", "255.255.255.255", GATEWAY, "metric", "5",
    )
    assert applied[1][:5] == ("netsh", "interface", "ip", "set", "address")
    assert "name=tun0" in applied[1]
    assert "-ServerAddresses ('1.1.1.1', '1.0.0.1')" in applied[2][-1]
    assert fake_runner.calls[-1] == ("route", "delete", SERVER)


def test_darwin_commands(fake_runner):
    run_async(_controller(fake_runner, system="Darwin").apply(_params()))
    assert fake_runner.calls[0] == ("route", "-n", "add", "-host", SERVER, GATEWAY)
    assert ("ifconfig", "tun0", "10.0.0.2", "10.0.0.1", "up") in fake_runner.calls
    assert fake_runner.commands("resolvectl") == []


def test_revert_collects_failures(fake_runner):
    async def scenario():
        controller = _controller(fake_runner)
        await controller.apply(_params())
        fake_runner.fail(["resolvectl", "revert"])
        with pytest.raises(RoutingError, match="Incomplete tunnel teardown"):
            await controller.revert()
        return controller

    controller = run_async(scenario())
    # Later steps were still undone
    assert fake_runner.calls[-1] == ("ip", "route", "del", f"{SERVER}/32")
    assert controller.applied_steps == []


def test_detect_gateway_skips_tunnel_routes(fake_runner):
    fake_runner.respond(
        ["ip", "-4", "route", "show", "default"],
        stdout=(
            "default via 10.0.0.1 dev tun0\n"
            "default via 192.168.1.1 dev eth0 proto dhcp metric 100\n"
        ),
    )
    assert run_async(_controller(fake_runner).detect_physical_gateway()) == "192.168.1.1"


def test_detect_gateway_empty_output(fake_runner):
    with pytest.raises(RoutingError):
        run_async(_controller(fake_runner).detect_physical_gateway())


def test_detect_gateway_command_failure(fake_runner):
    fake_runner.fail(["ip", "-4", "route"])
    with pytest.raises(RoutingError, match="Gateway detection failed"):
        run_async(_controller(fake_runner).detect_physical_gateway())


@pytest.mark.parametrize(
    "system,output,expected",
    [
        ("Linux", "default dev tun0 scope link\ndefault via 10.1.2.1 dev wlan0", "10.1.2.1"),
        ("Darwin", "   route to: default\ndestination: default\n    gateway: 192.168.0.1\n", "192.168.0.1"),
        ("Windows", "\r\n192.168.1.254\r\n", "192.168.1.254"),
        ("Linux", "", None),
    ],
)
def test_parse_gateway(system, output, expected):
    assert parse_gateway(system, output) == expected
