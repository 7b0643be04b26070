"""
Executor - Dependency-ordered dispatch of on-chain actions.

The Executor implements:
- Kahn-style scheduling: an action becomes ready once every dependency is
  CONFIRMED; ready actions run on a bounded worker pool
- Per-sender submission locks: nonce allocation, submission and the durable
  SUBMITTED write are serialized per sender, independent senders run in parallel
- A per-action state machine with bounded retries and exponential backoff
- Crash recovery: SUBMITTED records are checked against the chain before
  anything else is done with them
- Cooperative stop: a stop event keeps new actions from being submitted while
  in-flight actions finish polling
- Validation-only mode: transactions are simulated with estimate_gas, nothing
  is submitted and the journal is not touched

Per-action flow:
1. Resolve arguments from confirmed producers (FutureResolver)
2. Reserve a nonce and persist PENDING
3. Submit the transaction, persist SUBMITTED (durable before polling)
4. Poll for a receipt with backoff until the poll timeout
5. Persist CONFIRMED with the result, or FAILED on revert
"""

import heapq
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, TypeVar

from ignitor.chain import ChainClient, Receipt, ReceiptStatus, Transaction
from ignitor.errors import (
    ActionTimeoutError,
    ExecutionError,
    IgnitorError,
    PermanentError,
    RejectedError,
    RevertedError,
    TransientError,
    TransportFailureError,
    UnknownTransactionError,
)
from ignitor.journal import ExecutionJournal
from ignitor.reconcile import Decision, ReconciliationPlan
from ignitor.resolver import FutureResolver
from ignitor.schemas import Action, ActionKind, ActionStatus, ExecutionRecord, ModuleGraph

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry, backoff and timeout settings.

    Attributes:
        submit_attempts: Attempts per submission before TransportFailureError
        poll_attempts: Consecutive transient receipt errors tolerated
        backoff_initial_s: First retry delay
        backoff_multiplier: Delay growth factor per attempt
        backoff_max_s: Upper bound for any delay
        poll_interval_s: First delay between receipt polls
        poll_timeout_s: Budget for one confirmation poll cycle
    """
    submit_attempts: int = 5
    poll_attempts: int = 5
    backoff_initial_s: float = 0.5
    backoff_multiplier: float = 2.0
    backoff_max_s: float = 30.0
    poll_interval_s: float = 2.0
    poll_timeout_s: float = 300.0

    def __post_init__(self):
        if self.submit_attempts < 1 or self.poll_attempts < 1:
            raise ValueError("attempt budgets must be >= 1")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def retry_delay(self, attempt: int) -> float:
        """Delay after failed attempt number `attempt` (1-indexed)."""
        return min(self.backoff_initial_s * self.backoff_multiplier ** (attempt - 1), self.backoff_max_s)

    def poll_delay(self, poll: int) -> float:
        """Delay after pending receipt number `poll` (1-indexed)."""
        return min(self.poll_interval_s * self.backoff_multiplier ** (poll - 1), self.backoff_max_s)

    @classmethod
    def from_config(cls, config: Any) -> "RetryPolicy":
        return cls(
            submit_attempts=config.submit_attempts,
            poll_attempts=config.poll_attempts,
            backoff_initial_s=config.backoff_initial_s,
            backoff_multiplier=config.backoff_multiplier,
            backoff_max_s=config.backoff_max_s,
            poll_interval_s=config.poll_interval_s,
            poll_timeout_s=config.poll_timeout_s,
        )


class _Phase(str, Enum):
    """States of the per-action state machine."""
    START = "start"
    RECOVER = "recover"          # SUBMITTED by an earlier run: ask the chain
    VERIFY_NONCE = "verify_nonce"  # PENDING with a reserved nonce: was it used?
    SUBMIT = "submit"
    POLL = "poll"
    DONE = "done"


class StopRequested(Exception):
    """The stop event was set before the action reached SUBMITTED."""

    def __init__(self, action: str):
        self.action = action
        super().__init__(f"Stopped before submitting '{action}'")


@dataclass
class ExecutionReport:
    """
    Outcome of executing a module on a network.

    Attributes:
        module / network: What was executed
        confirmed: Actions confirmed by this run, in completion order
        skipped: Actions already confirmed before the run
        failed: Actions whose execution raised an ExecutionError
        blocked: Scheduled actions never dispatched (failed dependency or halt)
        stopped: Actions not submitted because a stop was requested
        errors: ExecutionErrors raised by failed actions
        records: Final record per declared name
    """
    module: str
    network: str
    confirmed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    blocked: list[str] = field(default_factory=list)
    stopped: list[str] = field(default_factory=list)
    errors: list[ExecutionError] = field(default_factory=list)
    records: dict[str, ExecutionRecord] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not (self.errors or self.blocked or self.stopped)

    def results(self, graph: ModuleGraph) -> dict[str, Any]:
        """Exported module results (only those whose producer is confirmed)."""
        out = {}
        for export, ref in graph.results.items():
            record = self.records.get(ref.name)
            if record is not None and record.status == ActionStatus.CONFIRMED:
                out[export] = record.result
        return out


@dataclass
class DryRunReport:
    """Outcome of a validation-only run."""
    module: str
    network: str
    estimates: dict[str, int] = field(default_factory=dict)
    resumes: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)
    problems: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return not self.problems


class Executor:
    """
    Execution engine for module graphs.

    Usage:
        executor = Executor(journal=FileJournal(path), client=client, max_workers=4)
        plan = ReconciliationEngine(journal).reconcile(graph, "sepolia")
        report = executor.execute(graph, plan)
    """

    def __init__(
        self,
        journal: ExecutionJournal,
        client: ChainClient,
        max_workers: int = 4,
        policy: Optional[RetryPolicy] = None,
        default_sender: Optional[str] = None,
        stop_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Initialize the executor.

        Args:
            journal: Journal the run writes to (lock held by the caller)
            client: Chain client for submissions and receipts
            max_workers: Upper bound on concurrently executing actions
            policy: Retry/backoff/timeout settings
            default_sender: Sender for actions that don't declare one
            stop_event: When set, no further action enters SUBMITTED
            sleep / clock: Injectable for tests
        """
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self._journal = journal
        self._client = client
        self._max_workers = max_workers
        self._policy = policy or RetryPolicy()
        self._default_sender = default_sender
        self._stop = stop_event or threading.Event()
        self._sleep = sleep
        self._clock = clock
        self._sender_locks: dict[str, threading.Lock] = {}
        self._sender_locks_guard = threading.Lock()

    @property
    def stop_event(self) -> threading.Event:
        return self._stop

    def _sender_lock(self, sender: str) -> threading.Lock:
        with self._sender_locks_guard:
            lock = self._sender_locks.get(sender)
            if lock is None:
                lock = self._sender_locks[sender] = threading.Lock()
            return lock

    def sender_of(self, action: Action) -> Optional[str]:
        return action.description.sender or self._default_sender

    # =========================================================================
    # SCHEDULING
    # =========================================================================

    def execute(self, graph: ModuleGraph, plan: ReconciliationPlan) -> ExecutionReport:
        """
        Bring every scheduled action of `plan` to CONFIRMED.

        Dispatch halts at the first ExecutionError; actions already in flight
        finish, dependents of the failure stay un-dispatched.

        Returns:
            ExecutionReport

        Raises:
            JournalError: If the journal cannot be written (after in-flight
                          actions have finished)
        """
        network = plan.network
        records = plan.records()
        report = ExecutionReport(module=graph.name, network=network, skipped=list(plan.satisfied))
        scheduled = set(plan.scheduled)
        position = {name: i for i, name in enumerate(graph.order)}

        waiting: dict[str, set[str]] = {}
        for name in scheduled:
            waiting[name] = {
                dep for dep in graph.get(name).dependencies
                if records.get(dep) is None or records[dep].status != ActionStatus.CONFIRMED
            }
        ready: list[tuple[int, str]] = [(position[n], n) for n, deps in waiting.items() if not deps]
        heapq.heapify(ready)
        dispatched: set[str] = set()
        halted = False
        fatal: Optional[BaseException] = None

        logger.info(
            f"Executing {graph.name}@{network}: {len(scheduled)} scheduled, "
            f"{len(report.skipped)} already confirmed, max_workers={self._max_workers}"
        )

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="ignitor") as pool:
            in_flight: dict[Future, str] = {}
            while True:
                while ready and not halted and len(in_flight) < self._max_workers:
                    if self._stop.is_set():
                        break
                    _, name = heapq.heappop(ready)
                    dispatched.add(name)
                    action = graph.get(name)
                    snapshot = dict(records)
                    fut = pool.submit(
                        self._run_action, action, network, snapshot, plan.entries[name].decision
                    )
                    in_flight[fut] = name

                if not in_flight:
                    break

                done, _ = wait(in_flight, return_when=FIRST_COMPLETED)
                for fut in done:
                    name = in_flight.pop(fut)
                    try:
                        record = fut.result()
                    except ExecutionError as e:
                        logger.error(f"{e}")
                        report.failed.append(name)
                        report.errors.append(e)
                        halted = True
                        continue
                    except StopRequested:
                        report.stopped.append(name)
                        continue
                    except IgnitorError as e:
                        logger.error(f"Fatal error executing '{name}': {e}")
                        fatal = fatal or e
                        halted = True
                        continue
                    except Exception as e:
                        logger.error(f"Unexpected error executing '{name}': {e}", exc_info=True)
                        fatal = fatal or e
                        halted = True
                        continue

                    records[name] = record
                    report.confirmed.append(name)
                    for child in graph.dependents(name):
                        if child in waiting and name in waiting[child]:
                            waiting[child].discard(name)
                            if not waiting[child] and child not in dispatched:
                                heapq.heappush(ready, (position[child], child))

        report.records = records
        undispatched = [n for n in graph.order if n in scheduled and n not in dispatched]
        if self._stop.is_set() and not halted:
            report.stopped.extend(undispatched)
        else:
            report.blocked = undispatched

        if fatal is not None:
            raise fatal

        logger.info(
            f"Finished {graph.name}@{network}: confirmed={len(report.confirmed)} "
            f"failed={report.failed} blocked={len(report.blocked)} stopped={len(report.stopped)}"
        )
        return report

    # =========================================================================
    # PER-ACTION STATE MACHINE
    # =========================================================================

    def _run_action(
        self,
        action: Action,
        network: str,
        records: dict[str, ExecutionRecord],
        decision: Decision,
    ) -> ExecutionRecord:
        task = _ActionTask(self, action, network, records, decision)
        return task.run()

    def _retry(self, what: str, action: Action, network: str, attempts: int, fn: Callable[[], T]) -> T:
        """Call `fn`, retrying TransientError with backoff up to `attempts` times."""
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except TransientError as e:
                if attempt == attempts:
                    raise TransportFailureError(action.future_id, network, attempts, e) from e
                delay = self._policy.retry_delay(attempt)
                logger.warning(
                    f"{action.future_id}: {what} attempt {attempt}/{attempts} failed: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
                self._sleep(delay)
        raise AssertionError("unreachable")

    # =========================================================================
    # VALIDATION-ONLY MODE
    # =========================================================================

    def simulate(self, graph: ModuleGraph, plan: ReconciliationPlan) -> DryRunReport:
        """
        Build and estimate every scheduled transaction without submitting.

        Unconfirmed producers resolve to placeholders. The journal is not
        written and no nonce is reserved.
        """
        report = DryRunReport(module=graph.name, network=plan.network, skipped=list(plan.satisfied))
        # Producers that will run again resolve to placeholders, not their stale results.
        satisfied = set(plan.satisfied)
        records = {n: r for n, r in plan.records().items() if n in satisfied}
        resolver = FutureResolver(records, simulate=True)
        for action in graph:
            entry = plan.entries[action.name]
            if entry.decision == Decision.SKIP:
                continue
            if entry.decision == Decision.RESUME:
                report.resumes[action.name] = entry.record.tx_ref
                continue
            sender = self.sender_of(action)
            if sender is None:
                report.problems[action.name] = "no sender configured"
                continue
            try:
                tx = build_transaction(action, sender, None, resolver)
                report.estimates[action.name] = self._retry(
                    "estimate", action, plan.network, self._policy.submit_attempts,
                    lambda: self._client.estimate_gas(tx),
                )
            except (PermanentError, TransportFailureError, ValueError) as e:
                report.problems[action.name] = str(e)
        for name, problem in report.problems.items():
            logger.warning(f"[DRY-RUN] {graph.name}#{name}: {problem}")
        return report


def build_transaction(
    action: Action,
    sender: str,
    nonce: Optional[int],
    resolver: FutureResolver,
) -> Transaction:
    """Build the transaction for `action` with resolved arguments."""
    desc = action.description
    args = resolver.resolve_args(action)
    if desc.kind == ActionKind.DEPLOY:
        return Transaction(
            action=action.future_id,
            kind=ActionKind.DEPLOY,
            sender=sender,
            nonce=nonce,
            contract=desc.contract,
            args=args,
            value=desc.value,
        )
    return Transaction(
        action=action.future_id,
        kind=ActionKind.CALL,
        sender=sender,
        nonce=nonce,
        to=resolver.resolve_target(action),
        method=desc.method,
        args=args,
        value=desc.value,
    )


class _ActionTask:
    """
    One action's submit-and-confirm cycle.

    Each `_on_<phase>` handler performs one step and returns the next phase.
    Every loop inside a handler is bounded by an attempt counter or the
    poll timeout.
    """

    def __init__(
        self,
        executor: Executor,
        action: Action,
        network: str,
        records: dict[str, ExecutionRecord],
        decision: Decision,
    ):
        self.executor = executor
        self.action = action
        self.network = network
        self.records = records
        self.decision = decision
        self.policy = executor._policy
        self.client = executor._client
        self.journal = executor._journal
        self.record = records.get(action.name) or ExecutionRecord(
            network=network,
            module=action.module,
            identity=action.identity,
            name=action.name,
        )
        self.resubmitted = False

    @property
    def label(self) -> str:
        return self.action.future_id

    def run(self) -> ExecutionRecord:
        phase = _Phase.START
        while phase != _Phase.DONE:
            handler = getattr(self, f"_on_{phase.value}")
            phase = handler()
        return self.record

    def _save(self, record: ExecutionRecord) -> None:
        self.record = self.journal.upsert(record)

    def _on_start(self) -> _Phase:
        logger.debug(f"{self.label}: {self.decision.value}, journal status {self.record.status.value}")
        if self.record.status == ActionStatus.CONFIRMED:
            return _Phase.DONE
        if self.record.status == ActionStatus.SUBMITTED:
            return _Phase.RECOVER
        if self.record.status == ActionStatus.PENDING and self.record.nonce is not None:
            return _Phase.VERIFY_NONCE
        return _Phase.SUBMIT

    def _on_recover(self) -> _Phase:
        tx_ref = self.record.tx_ref
        receipt = self._get_receipt(tx_ref)
        logger.info(f"{self.label}: resuming {tx_ref}, chain reports {receipt.status.value}")
        if receipt.status == ReceiptStatus.NOT_FOUND:
            if self.resubmitted:
                # Unknown again after the one resubmission: leave SUBMITTED for the operator
                raise ActionTimeoutError(self.label, self.network, tx_ref, 0.0)
            self.resubmitted = True
            logger.warning(f"{self.label}: {tx_ref} is unknown to the chain; resubmitting once")
            return _Phase.SUBMIT
        if receipt.status == ReceiptStatus.PENDING:
            return _Phase.POLL
        return self._settle(receipt)

    def _on_verify_nonce(self) -> _Phase:
        sender = self.record.sender
        nonce = self.record.nonce
        with self.executor._sender_lock(sender):
            next_nonce = self.executor._retry(
                "nonce lookup", self.action, self.network, self.policy.submit_attempts,
                lambda: self.client.next_sequence_number(sender),
            )
            if next_nonce <= nonce:
                return _Phase.SUBMIT
            owner = self._nonce_owner(sender, nonce)
        if owner is None:
            raise UnknownTransactionError(self.label, self.network, sender, nonce)
        logger.info(
            f"{self.label}: nonce {nonce} was used by '{owner.name}' ({owner.tx_ref}); "
            f"this action was never broadcast, submitting with a fresh nonce"
        )
        return _Phase.SUBMIT

    def _nonce_owner(self, sender: str, nonce: int) -> Optional[ExecutionRecord]:
        """Another journaled action of this module that broadcast (sender, nonce)."""
        records = self.journal.load(self.action.module, self.network)
        for record in records.values():
            if record.identity == self.record.identity:
                continue
            if record.sender != sender or record.nonce != nonce:
                continue
            if record.tx_ref is not None or record.status == ActionStatus.CONFIRMED:
                return record
        return None

    def _on_submit(self) -> _Phase:
        sender = self.executor.sender_of(self.action)
        if sender is None:
            raise RejectedError(self.label, self.network, ValueError("no sender configured"))
        resolver = FutureResolver(self.records)

        with self.executor._sender_lock(sender):
            if self.executor._stop.is_set():
                raise StopRequested(self.label)
            nonce = self.executor._retry(
                "nonce lookup", self.action, self.network, self.policy.submit_attempts,
                lambda: self.client.next_sequence_number(sender),
            )
            tx = build_transaction(self.action, sender, nonce, resolver)
            self._save(self.record.pending(sender, nonce, tx.args))
            try:
                tx_ref = self.executor._retry(
                    "submit", self.action, self.network, self.policy.submit_attempts,
                    lambda: self.client.submit(tx),
                )
            except PermanentError as e:
                self._save(self.record.failed(type(e).__name__, str(e)))
                raise RejectedError(self.label, self.network, e) from e
            self._save(self.record.submitted(tx_ref))

        logger.info(f"{self.label}: submitted {tx_ref} from {sender} nonce={nonce}")
        return _Phase.POLL

    def _on_poll(self) -> _Phase:
        tx_ref = self.record.tx_ref
        started = self.executor._clock()
        polls = 0
        while True:
            receipt = self._get_receipt(tx_ref)
            if receipt.status in (ReceiptStatus.SUCCESS, ReceiptStatus.REVERTED):
                return self._settle(receipt)
            if receipt.status == ReceiptStatus.NOT_FOUND:
                # Evicted while polling
                return _Phase.RECOVER
            waited = self.executor._clock() - started
            polls += 1
            delay = self.policy.poll_delay(polls)
            if waited + delay > self.policy.poll_timeout_s:
                # The record stays SUBMITTED with its reference; a later run resumes here.
                raise ActionTimeoutError(self.label, self.network, tx_ref, waited)
            logger.debug(f"{self.label}: {tx_ref} {receipt.status.value}, next poll in {delay:.1f}s")
            self.executor._sleep(delay)

    def _get_receipt(self, tx_ref: str) -> Receipt:
        return self.executor._retry(
            "receipt", self.action, self.network, self.policy.poll_attempts,
            lambda: self.client.get_receipt(tx_ref),
        )

    def _settle(self, receipt: Receipt) -> _Phase:
        if receipt.status == ReceiptStatus.REVERTED:
            reason = receipt.revert_reason or "reverted"
            self._save(self.record.failed("Reverted", reason))
            raise RevertedError(self.label, self.network, receipt.revert_reason)
        if self.action.kind == ActionKind.DEPLOY and not receipt.result:
            # Leave SUBMITTED: the transaction is final but its outcome is unknown.
            raise ExecutionError(
                self.label, self.network, f"receipt for {self.record.tx_ref} has no contract address"
            )
        self._save(self.record.confirmed(receipt.result))
        logger.info(f"{self.label}: confirmed -> {receipt.result}")
        return _Phase.DONE
