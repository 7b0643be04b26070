"""Tests for FutureResolver."""

import pytest

from conftest import NETWORK, SENDER
from ignitor.builder import build_module
from ignitor.errors import UnresolvedFutureError
from ignitor.resolver import FutureResolver, placeholder_for
from ignitor.schemas import ExecutionRecord, FutureRef


def confirmed(graph, name, result):
    action = graph.get(name)
    return (
        ExecutionRecord(network=NETWORK, module=graph.name, identity=action.identity, name=name)
        .pending(SENDER, 0, [])
        .submitted(f"0xtx-{name}")
        .confirmed(result)
    )


@pytest.fixture
def nested_graph():
    def define(m):
        token = m.contract("Token")
        oracle = m.contract("Oracle")
        vault = m.contract("Vault", [{"asset": token, "feeds": [oracle, "0xfixed"]}, 7])
        m.call(vault, "setup", after=[oracle])

    graph, _ = build_module("M", define, default_sender=SENDER)
    return graph


class TestResolveArgs:
    """Argument trees resolve against confirmed producers."""

    def test_locker_arguments(self, locker_graph):
        records = {"ETHLockerNFT": confirmed(locker_graph, "ETHLockerNFT", "0xnft")}
        args = FutureResolver(records).resolve_args(locker_graph.get("ETHLocker"))
        assert args == ["0xPyth", "0xnft", "0xPool"]

    def test_nested_containers(self, nested_graph):
        records = {
            "Token": confirmed(nested_graph, "Token", "0xtoken"),
            "Oracle": confirmed(nested_graph, "Oracle", "0xoracle"),
        }
        args = FutureResolver(records).resolve_args(nested_graph.get("Vault"))
        assert args == [{"asset": "0xtoken", "feeds": ["0xoracle", "0xfixed"]}, 7]

    def test_call_target(self, locker_graph):
        records = {
            "ETHLockerNFT": confirmed(locker_graph, "ETHLockerNFT", "0xnft"),
            "ETHLocker": confirmed(locker_graph, "ETHLocker", "0xlocker"),
        }
        resolver = FutureResolver(records)
        call = locker_graph.get("ETHLockerNFT.setMinter")
        assert resolver.resolve_target(call) == "0xnft"
        assert resolver.resolve_args(call) == ["0xlocker"]


class TestUnresolved:
    """Unconfirmed producers are an error outside simulation."""

    def test_missing_producer(self, locker_graph):
        with pytest.raises(UnresolvedFutureError) as exc:
            FutureResolver({}).resolve_args(locker_graph.get("ETHLocker"))
        assert exc.value.future == "ETHLockerModule#ETHLockerNFT"

    def test_submitted_producer_is_not_enough(self, locker_graph):
        action = locker_graph.get("ETHLockerNFT")
        submitted = (
            ExecutionRecord(network=NETWORK, module=locker_graph.name,
                            identity=action.identity, name="ETHLockerNFT")
            .pending(SENDER, 0, [])
            .submitted("0xtx")
        )
        with pytest.raises(UnresolvedFutureError):
            FutureResolver({"ETHLockerNFT": submitted}).resolve_args(locker_graph.get("ETHLocker"))

    def test_after_dependency_checked(self, nested_graph):
        """`after` producers gate resolution even though they are not arguments."""
        records = {
            "Token": confirmed(nested_graph, "Token", "0xtoken"),
            "Vault": confirmed(nested_graph, "Vault", "0xvault"),
        }
        with pytest.raises(UnresolvedFutureError, match="M#Oracle"):
            FutureResolver(records).resolve_args(nested_graph.get("Vault.setup"))


class TestSimulation:
    """Dry runs substitute placeholders."""

    def test_placeholder(self, locker_graph):
        args = FutureResolver({}, simulate=True).resolve_args(locker_graph.get("ETHLocker"))
        assert args == ["0xPyth", "<future:ETHLockerModule#ETHLockerNFT>", "0xPool"]

    def test_placeholder_format(self):
        assert placeholder_for(FutureRef("M", "Token")) == "<future:M#Token>"

    def test_confirmed_values_still_used(self, locker_graph):
        records = {"ETHLockerNFT": confirmed(locker_graph, "ETHLockerNFT", "0xnft")}
        args = FutureResolver(records, simulate=True).resolve_args(locker_graph.get("ETHLocker"))
        assert args[1] == "0xnft"
