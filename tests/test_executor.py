"""Tests for the ignitor executor.

Tests the per-action lifecycle against the simulated chain:
PENDING (nonce reserved) -> SUBMITTED (tx_ref durable) -> CONFIRMED / FAILED

and scheduling: dependency order, bounded concurrency, halt on failure,
cooperative stop and crash recovery from each journaled state.
"""

import threading

import pytest

from conftest import NETWORK, SENDER, FakeClock
from ignitor.builder import build_module
from ignitor.chain import Receipt, ReceiptStatus, SimulatedChainClient, Transaction
from ignitor.errors import (
    ActionTimeoutError,
    CorruptJournalError,
    ExecutionError,
    PermanentError,
    RejectedError,
    RevertedError,
    TransportFailureError,
    UnknownTransactionError,
)
from ignitor.executor import Executor, RetryPolicy
from ignitor.journal import InMemoryJournal
from ignitor.reconcile import ReconciliationEngine
from ignitor.schemas import ActionKind, ActionStatus, ExecutionRecord


def plan_for(graph, journal, allow_drift=False):
    engine = ReconciliationEngine(journal)
    return engine.apply(engine.reconcile(graph, NETWORK, allow_drift=allow_drift))


def execute(graph, journal, client, **kwargs):
    kwargs.setdefault("sleep", lambda s: None)
    return Executor(journal, client, **kwargs).execute(graph, plan_for(graph, journal))


def record_of(journal, graph, name):
    return journal.get(NETWORK, graph.name, graph.get(name).identity)


def single_token():
    def define(m):
        m.contract("Token", [1000])

    graph, _ = build_module("TokenModule", define, default_sender=SENDER)
    return graph


def many_tokens(count):
    def define(m):
        for i in range(count):
            m.contract("Token", [i], id=f"Token{i}")

    graph, _ = build_module("Tokens", define, default_sender=SENDER)
    return graph


# =============================================================================
# SCHEDULING
# =============================================================================


class TestScheduling:
    """Dependency-ordered dispatch."""

    def test_locker_end_to_end(self, journal, client, locker_graph):
        report = execute(locker_graph, journal, client, max_workers=1)

        assert report.success
        assert report.confirmed == ["ETHLockerNFT", "ETHLocker", "ETHLockerNFT.setMinter"]
        assert client.submitted_actions() == [
            "ETHLockerModule#ETHLockerNFT",
            "ETHLockerModule#ETHLocker",
            "ETHLockerModule#ETHLockerNFT.setMinter",
        ]
        nft = record_of(journal, locker_graph, "ETHLockerNFT")
        locker = record_of(journal, locker_graph, "ETHLocker")
        set_minter = record_of(journal, locker_graph, "ETHLockerNFT.setMinter")
        assert {nft.status, locker.status, set_minter.status} == {ActionStatus.CONFIRMED}
        assert locker.resolved_args == ["0xPyth", nft.result, "0xPool"]
        assert set_minter.resolved_args == [locker.result]
        assert client.submissions[2].to == nft.result

    def test_every_action_submitted_once(self, journal, client, vault_graph):
        report = execute(vault_graph, journal, client, max_workers=4)

        submitted = client.submitted_actions()
        assert sorted(submitted) == sorted(a.future_id for a in vault_graph)
        assert submitted.index("VaultModule#Token") < submitted.index("VaultModule#Vault")
        assert submitted.index("VaultModule#Vault") < submitted.index("VaultModule#Vault.init")
        assert sorted(report.confirmed) == sorted(vault_graph.order)

    def test_submit_only_after_dependencies_confirmed(self, journal, vault_graph):
        """At submit time, every producer is CONFIRMED in the journal."""
        violations = []

        class CheckingClient(SimulatedChainClient):
            def submit(self, tx):
                action = vault_graph.get(tx.action.split("#", 1)[1])
                for dep in action.dependencies:
                    record = record_of(journal, vault_graph, dep)
                    if record is None or record.status != ActionStatus.CONFIRMED:
                        violations.append((action.name, dep))
                return super().submit(tx)

        report = execute(vault_graph, journal, CheckingClient(pending_polls=2), max_workers=4)
        assert report.success
        assert violations == []

    def test_rerun_submits_nothing(self, journal, client, vault_graph):
        execute(vault_graph, journal, client)
        before = len(client.submissions)

        report = execute(vault_graph, journal, client)
        assert len(client.submissions) == before
        assert report.confirmed == []
        assert sorted(report.skipped) == sorted(vault_graph.order)
        assert report.success

    def test_results_exported(self, journal, client, locker_graph):
        report = execute(locker_graph, journal, client)
        nft = record_of(journal, locker_graph, "ETHLockerNFT")
        assert report.results(locker_graph)["nft"] == nft.result

    def test_max_workers_validated(self, journal, client):
        with pytest.raises(ValueError):
            Executor(journal, client, max_workers=0)


class TestSequenceNumbers:
    """Per-sender nonce allocation under concurrency."""

    def test_nonces_contiguous_for_one_sender(self, journal, client):
        graph = many_tokens(10)
        report = execute(graph, journal, client, max_workers=4)

        assert report.success
        assert sorted(tx.nonce for tx in client.submissions) == list(range(10))
        assert sorted(record_of(journal, graph, n).nonce for n in graph.order) == list(range(10))

    def test_senders_have_independent_nonces(self, journal, client):
        def define(m):
            m.contract("A", sender="0xalice")
            m.contract("B", sender="0xbob")

        graph, _ = build_module("Pair", define)
        execute(graph, journal, client, max_workers=2)
        assert {(tx.sender, tx.nonce) for tx in client.submissions} == {("0xalice", 0), ("0xbob", 0)}

    def test_senders_submit_in_parallel(self, journal):
        """A slow submit for one sender does not hold up another sender."""
        bob_submitted = threading.Event()

        class GatedClient(SimulatedChainClient):
            def submit(self, tx):
                if tx.sender == "0xalice":
                    assert bob_submitted.wait(5), "0xbob waited behind 0xalice"
                tx_ref = super().submit(tx)
                if tx.sender == "0xbob":
                    bob_submitted.set()
                return tx_ref

        def define(m):
            m.contract("A", sender="0xalice")
            m.contract("B", sender="0xbob")

        graph, _ = build_module("Pair", define)
        client = GatedClient()
        report = execute(graph, journal, client, max_workers=2)

        assert report.success
        assert client.submitted_actions() == ["Pair#B", "Pair#A"]

    def test_default_sender_from_executor(self, journal, client):
        def define(m):
            m.contract("A")

        graph, _ = build_module("NoSender", define)
        execute(graph, journal, client, default_sender="0xrunner")
        assert client.submissions[0].sender == "0xrunner"

    def test_missing_sender_fails_action(self, journal, client):
        def define(m):
            m.contract("A")

        graph, _ = build_module("NoSender", define)
        report = execute(graph, journal, client)
        assert isinstance(report.errors[0], RejectedError)
        assert "no sender" in str(report.errors[0])
        assert client.submissions == []


# =============================================================================
# FAILURES
# =============================================================================


class TestFailures:
    """Failed actions halt dispatch and leave the journal consistent."""

    def test_revert_halts_dependents(self, journal, vault_graph):
        client = SimulatedChainClient(reverts={"VaultModule#Vault": "boom"})
        report = execute(vault_graph, journal, client, max_workers=1)

        assert not report.success
        assert report.failed == ["Vault"]
        assert isinstance(report.errors[0], RevertedError)
        assert report.errors[0].reason == "boom"
        assert report.blocked == ["Other", "Vault.init"]

        vault = record_of(journal, vault_graph, "Vault")
        assert vault.status == ActionStatus.FAILED
        assert vault.error == {"type": "Reverted", "message": "boom"}
        assert record_of(journal, vault_graph, "Token").status == ActionStatus.CONFIRMED
        assert record_of(journal, vault_graph, "Vault.init") is None

    def test_in_flight_action_finishes_after_revert(self, journal):
        """A halt stops dispatch but lets already-submitted actions settle."""
        reverted = threading.Event()

        class OrderedClient(SimulatedChainClient):
            def __init__(self, **kwargs):
                super().__init__(**kwargs)
                self.actions = {}

            def submit(self, tx):
                tx_ref = super().submit(tx)
                self.actions[tx_ref] = tx.action
                return tx_ref

            def get_receipt(self, tx_ref):
                if self.actions.get(tx_ref) == "Mixed#Slow":
                    assert reverted.wait(5), "Slow settled before Bad reverted"
                receipt = super().get_receipt(tx_ref)
                if receipt.status == ReceiptStatus.REVERTED:
                    reverted.set()
                return receipt

        def define(m):
            bad = m.contract("Bad", sender="0xa")
            m.contract("Slow", sender="0xb")
            m.contract("Dependent", [bad], sender="0xa")

        graph, _ = build_module("Mixed", define)
        client = OrderedClient(pending_polls=2, reverts={"Mixed#Bad": "boom"})
        report = execute(graph, journal, client, max_workers=2)

        assert not report.success
        assert report.failed == ["Bad"]
        assert report.confirmed == ["Slow"]
        assert report.blocked == ["Dependent"]
        assert record_of(journal, graph, "Slow").status == ActionStatus.CONFIRMED
        assert record_of(journal, graph, "Bad").status == ActionStatus.FAILED

    def test_retry_after_revert(self, journal, vault_graph):
        client = SimulatedChainClient(reverts={"VaultModule#Vault": "boom"})
        execute(vault_graph, journal, client, max_workers=1)
        client.reverts.clear()

        report = execute(vault_graph, journal, client, max_workers=1)
        assert report.success
        assert report.skipped == ["Token"]
        assert client.submitted_actions().count("VaultModule#Token") == 1
        assert client.submitted_actions().count("VaultModule#Vault") == 2
        assert record_of(journal, vault_graph, "Vault").attempts == 2

    def test_permanent_rejection(self, journal):
        class RejectingClient(SimulatedChainClient):
            def submit(self, tx):
                raise PermanentError("insufficient funds")

        graph = single_token()
        report = execute(graph, journal, RejectingClient())
        assert isinstance(report.errors[0], RejectedError)
        record = record_of(journal, graph, "Token")
        assert record.status == ActionStatus.FAILED
        assert record.error["type"] == "PermanentError"

    def test_deploy_receipt_without_address(self, journal):
        class NoAddressClient(SimulatedChainClient):
            def get_receipt(self, tx_ref):
                return Receipt(status=ReceiptStatus.SUCCESS, result=None)

        graph = single_token()
        report = execute(graph, journal, NoAddressClient())
        assert isinstance(report.errors[0], ExecutionError)
        assert record_of(journal, graph, "Token").status == ActionStatus.SUBMITTED

    def test_journal_failure_is_fatal(self, client):
        class BrokenJournal(InMemoryJournal):
            def _write(self, record, expected_version):
                if record.status == ActionStatus.SUBMITTED:
                    raise CorruptJournalError("disk full")
                super()._write(record, expected_version)

        graph = single_token()
        journal = BrokenJournal()
        with pytest.raises(CorruptJournalError):
            execute(graph, journal, client)


class TestRetries:
    """Transient errors are retried with exponential backoff."""

    def test_submit_retried(self, journal, policy, clock):
        client = SimulatedChainClient(submit_failures={"TokenModule#Token": 2})
        graph = single_token()
        report = execute(graph, journal, client, policy=policy, sleep=clock.sleep, clock=clock)

        assert report.success
        assert clock.sleeps == [0.5, 1.0]
        assert len(client.submissions) == 1

    def test_submit_budget_exhausted(self, journal, policy, clock):
        client = SimulatedChainClient(submit_failures={"TokenModule#Token": 5})
        graph = single_token()
        report = execute(graph, journal, client, policy=policy, sleep=clock.sleep, clock=clock)

        assert isinstance(report.errors[0], TransportFailureError)
        assert report.errors[0].attempts == 3
        record = record_of(journal, graph, "Token")
        assert record.status == ActionStatus.PENDING
        assert record.nonce == 0

        # The reserved nonce was never used, so the next run submits
        report = execute(graph, journal, client, policy=policy, sleep=clock.sleep, clock=clock)
        assert report.success
        assert client.submissions[0].nonce == 0

    def test_receipt_retried(self, journal, policy, clock):
        client = SimulatedChainClient(receipt_failures={"TokenModule#Token": 2})
        graph = single_token()
        report = execute(graph, journal, client, policy=policy, sleep=clock.sleep, clock=clock)
        assert report.success
        assert clock.sleeps == [0.5, 1.0]

    def test_poll_timeout_leaves_submitted(self, journal, policy, clock):
        client = SimulatedChainClient(pending_polls=10)
        graph = single_token()
        report = execute(graph, journal, client, policy=policy, sleep=clock.sleep, clock=clock)

        error = report.errors[0]
        assert isinstance(error, ActionTimeoutError)
        assert clock.sleeps == [1.0, 2.0]
        record = record_of(journal, graph, "Token")
        assert record.status == ActionStatus.SUBMITTED
        assert record.tx_ref == error.tx_ref


# =============================================================================
# CRASH RECOVERY
# =============================================================================


class TestResume:
    """Every journaled state resumes without duplicating on-chain effects."""

    def _time_out(self, journal, client, graph, policy):
        clock = FakeClock()
        client.pending_polls = 10
        execute(graph, journal, client, policy=policy, sleep=clock.sleep, clock=clock)
        client.pending_polls = 0
        return record_of(journal, graph, "Token")

    def test_submitted_and_mined_is_not_resubmitted(self, journal, client, policy):
        graph = single_token()
        submitted = self._time_out(journal, client, graph, policy)

        report = execute(graph, journal, client, policy=policy)
        assert report.success
        assert len(client.submissions) == 1
        record = record_of(journal, graph, "Token")
        assert record.status == ActionStatus.CONFIRMED
        assert record.tx_ref == submitted.tx_ref

    def test_submitted_but_absent_resubmitted_once(self, journal, client, policy):
        graph = single_token()
        submitted = self._time_out(journal, client, graph, policy)
        client.drop(submitted.tx_ref)

        report = execute(graph, journal, client, policy=policy)
        assert report.success
        assert len(client.submissions) == 2
        record = record_of(journal, graph, "Token")
        assert record.status == ActionStatus.CONFIRMED
        assert record.attempts == 2

    def test_submitted_and_reverted(self, journal, client, policy):
        graph = single_token()
        self._time_out(journal, client, graph, policy)
        client.reverts["TokenModule#Token"] = "paused"

        report = execute(graph, journal, client, policy=policy)
        assert isinstance(report.errors[0], RevertedError)
        assert len(client.submissions) == 1
        assert record_of(journal, graph, "Token").status == ActionStatus.FAILED

    def _pending_with_nonce(self, journal, graph, nonce):
        action = graph.get("Token")
        record = journal.upsert(ExecutionRecord(
            network=NETWORK, module=graph.name, identity=action.identity, name="Token",
        ))
        return journal.upsert(record.pending(SENDER, nonce, [1000]))

    def test_pending_with_consumed_nonce_needs_operator(self, journal, client):
        graph = single_token()
        self._pending_with_nonce(journal, graph, 0)
        # Something used nonce 0 without the journal learning the reference
        client.submit(Transaction(
            action="Elsewhere#X", kind=ActionKind.DEPLOY, sender=SENDER, nonce=0, contract="X",
        ))

        report = execute(graph, journal, client)
        assert isinstance(report.errors[0], UnknownTransactionError)
        assert report.errors[0].nonce == 0
        assert len(client.submissions) == 1
        assert record_of(journal, graph, "Token").status == ActionStatus.PENDING

    def test_pending_with_unused_nonce_submits(self, journal, client):
        graph = single_token()
        self._pending_with_nonce(journal, graph, 0)

        report = execute(graph, journal, client)
        assert report.success
        assert client.submissions[0].nonce == 0

    def _sibling_pair(self):
        def define(m):
            m.contract("X")
            m.contract("Y")

        graph, _ = build_module("W", define, default_sender=SENDER)
        return graph

    def test_pending_nonce_used_by_journaled_sibling(self, journal, client):
        """A nonce the journal attributes to another action was never broadcast for this one."""
        graph = self._sibling_pair()
        for name in ("X", "Y"):
            journal.upsert(ExecutionRecord(
                network=NETWORK, module=graph.name, identity=graph.get(name).identity, name=name,
            ))
        journal.upsert(record_of(journal, graph, "X").pending(SENDER, 0, []))
        y = journal.upsert(record_of(journal, graph, "Y").pending(SENDER, 0, []))
        tx_ref = client.submit(Transaction(
            action="W#Y", kind=ActionKind.DEPLOY, sender=SENDER, nonce=0, contract="Y",
        ))
        journal.upsert(y.submitted(tx_ref))

        report = execute(graph, journal, client)
        assert report.success
        assert client.submitted_actions() == ["W#Y", "W#X"]
        x = record_of(journal, graph, "X")
        assert x.status == ActionStatus.CONFIRMED
        assert x.nonce == 1
        assert record_of(journal, graph, "Y").status == ActionStatus.CONFIRMED

    def test_sibling_took_nonce_after_transport_failure(self, journal, client, policy):
        graph = self._sibling_pair()
        client.submit_failures["W#X"] = 3

        first = execute(graph, journal, client, policy=policy, max_workers=2)
        assert isinstance(first.errors[0], TransportFailureError)
        assert record_of(journal, graph, "Y").status == ActionStatus.CONFIRMED

        second = execute(graph, journal, client, policy=policy, max_workers=2)
        assert second.success
        x = record_of(journal, graph, "X")
        y = record_of(journal, graph, "Y")
        assert x.status == ActionStatus.CONFIRMED
        assert x.nonce != y.nonce
        assert client.submitted_actions().count("W#X") == 1

    def test_evicted_twice_times_out(self, journal, policy):
        class EvictingClient(SimulatedChainClient):
            def get_receipt(self, tx_ref):
                self.drop(tx_ref)
                return super().get_receipt(tx_ref)

        client = EvictingClient()
        graph = single_token()
        report = execute(graph, journal, client, policy=policy)

        assert isinstance(report.errors[0], ActionTimeoutError)
        assert len(client.submissions) == 2
        record = record_of(journal, graph, "Token")
        assert record.status == ActionStatus.SUBMITTED
        assert record.tx_ref == report.errors[0].tx_ref


class TestStop:
    """A stop request lets in-flight actions finish and dispatches nothing new."""

    def test_stop_before_start(self, journal, client, locker_graph):
        stop = threading.Event()
        stop.set()
        report = execute(locker_graph, journal, client, stop_event=stop)

        assert client.submissions == []
        assert report.stopped == list(locker_graph.order)
        assert not report.success

    def test_stop_after_first_submission(self, journal, locker_graph):
        stop = threading.Event()

        class StoppingClient(SimulatedChainClient):
            def submit(self, tx):
                tx_ref = super().submit(tx)
                stop.set()
                return tx_ref

        client = StoppingClient(pending_polls=1)
        report = execute(locker_graph, journal, client, max_workers=1, stop_event=stop)

        assert report.confirmed == ["ETHLockerNFT"]
        assert report.stopped == ["ETHLocker", "ETHLockerNFT.setMinter"]
        assert record_of(journal, locker_graph, "ETHLockerNFT").status == ActionStatus.CONFIRMED
        assert record_of(journal, locker_graph, "ETHLocker") is None


class TestSimulate:
    """Validation-only mode."""

    def test_estimates_without_submitting(self, journal, client, locker_graph):
        engine = ReconciliationEngine(journal)
        plan = engine.reconcile(locker_graph, NETWORK)
        report = Executor(journal, client).simulate(locker_graph, plan)

        assert report.success
        assert set(report.estimates) == set(locker_graph.order)
        assert client.submissions == []
        assert journal.load(locker_graph.name, NETWORK) == {}
        assert client.estimates[1].args[1] == "<future:ETHLockerModule#ETHLockerNFT>"

    def test_revert_reported_as_problem(self, journal, locker_graph):
        client = SimulatedChainClient(reverts={"ETHLockerModule#ETHLocker": "bad oracle"})
        plan = ReconciliationEngine(journal).reconcile(locker_graph, NETWORK)
        report = Executor(journal, client).simulate(locker_graph, plan)

        assert not report.success
        assert "bad oracle" in report.problems["ETHLocker"]
        assert "ETHLockerNFT.setMinter" in report.estimates

    def test_confirmed_actions_skipped(self, journal, client, locker_graph):
        execute(locker_graph, journal, client)
        plan = ReconciliationEngine(journal).reconcile(locker_graph, NETWORK)
        report = Executor(journal, client).simulate(locker_graph, plan)
        assert report.estimates == {}
        assert sorted(report.skipped) == sorted(locker_graph.order)


class TestRetryPolicy:
    """Backoff arithmetic."""

    def test_retry_delay_grows_and_caps(self):
        policy = RetryPolicy(backoff_initial_s=1.0, backoff_multiplier=3.0, backoff_max_s=10.0)
        assert [policy.retry_delay(n) for n in (1, 2, 3, 4)] == [1.0, 3.0, 9.0, 10.0]

    def test_poll_delay_starts_at_interval(self):
        policy = RetryPolicy(poll_interval_s=2.0, backoff_multiplier=2.0, backoff_max_s=5.0)
        assert [policy.poll_delay(n) for n in (1, 2, 3)] == [2.0, 4.0, 5.0]

    def test_from_config(self, test_config):
        policy = RetryPolicy.from_config(test_config)
        assert policy.submit_attempts == test_config.submit_attempts
        assert policy.poll_timeout_s == test_config.poll_timeout_s

    def test_invalid_budget(self):
        with pytest.raises(ValueError):
            RetryPolicy(submit_attempts=0)
