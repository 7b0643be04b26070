"""
ReconciliationEngine - Decide what a run must execute.

For a freshly built module graph and a target network, the engine loads the
journal of previous runs and classifies every action:

    SKIP    record with the same identity is CONFIRMED
    NEW     no record for this declared name
    RESUME  record is SUBMITTED: query the chain before anything else
    RETRY   record is PENDING or FAILED from an earlier run
    DRIFT   a live record under the same declared name has another identity
    FORCED  re-executed because of a drift override

Drift is fatal by default: silently replacing a confirmed action could
duplicate irreversible on-chain effects. With `allow_drift=True`, exactly the
drifted actions and their transitive dependents are re-scheduled.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

from ignitor.errors import DriftError
from ignitor.journal import ExecutionJournal, records_by_name
from ignitor.schemas import ActionStatus, ExecutionRecord, ModuleGraph

logger = logging.getLogger(__name__)


class Decision(str, Enum):
    """What a run does with an action."""
    SKIP = "skip"
    NEW = "new"
    RESUME = "resume"
    RETRY = "retry"
    DRIFT = "drift"
    FORCED = "forced"


@dataclass(frozen=True)
class ActionPlan:
    """
    Reconciliation outcome for one action.

    Attributes:
        name: Declared action name
        identity: Identity computed from the current description
        decision: See Decision
        record: Journal record stored under `identity`, if any
        previous: Live record under a different identity for the same name
    """
    name: str
    identity: str
    decision: Decision
    record: Optional[ExecutionRecord] = None
    previous: Optional[ExecutionRecord] = None


@dataclass
class ReconciliationPlan:
    """Reconciliation outcome for a module on a network."""
    module: str
    network: str
    entries: dict[str, ActionPlan] = field(default_factory=dict)
    orphaned: list[ExecutionRecord] = field(default_factory=list)
    overridden: list[str] = field(default_factory=list)

    @property
    def drifted(self) -> list[str]:
        """Drifted actions, whether or not an override re-scheduled them."""
        return sorted(
            {n for n, e in self.entries.items() if e.decision == Decision.DRIFT}
            | set(self.overridden)
        )

    @property
    def scheduled(self) -> list[str]:
        """Actions the executor must bring to CONFIRMED."""
        return [n for n, e in self.entries.items() if e.decision != Decision.SKIP]

    @property
    def satisfied(self) -> list[str]:
        return [n for n, e in self.entries.items() if e.decision == Decision.SKIP]

    def records(self) -> dict[str, ExecutionRecord]:
        """Declared name -> record under the current identity (for resolution)."""
        return {n: e.record for n, e in self.entries.items() if e.record is not None}

    def summary(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for entry in self.entries.values():
            counts[entry.decision.value] = counts.get(entry.decision.value, 0) + 1
        return counts


def _classify_existing(record: ExecutionRecord) -> Decision:
    if record.status == ActionStatus.CONFIRMED:
        return Decision.SKIP
    if record.status == ActionStatus.SUBMITTED:
        return Decision.RESUME
    return Decision.RETRY


class ReconciliationEngine:
    """
    Compares a module graph with its journal.

    `reconcile()` is read-only. `apply()` writes the bookkeeping an override
    needs (superseding replaced identities, archiving forced outcomes) and
    must only be called while holding the journal lock.
    """

    def __init__(self, journal: ExecutionJournal):
        self._journal = journal

    def reconcile(
        self,
        graph: ModuleGraph,
        network: str,
        allow_drift: bool = False,
    ) -> ReconciliationPlan:
        """
        Classify every action of `graph` against the journal.

        Raises:
            DriftError: If drift is detected and `allow_drift` is False
        """
        records = self._journal.load(graph.name, network)
        live = records_by_name(records.values())
        plan = ReconciliationPlan(module=graph.name, network=network)

        for action in graph:
            record = records.get(action.identity)
            previous = live.get(action.name)
            if previous is not None and previous.identity == action.identity:
                previous = None

            if record is not None and record.is_live:
                decision = _classify_existing(record)
            elif previous is None:
                # No live competitor; a superseded record of this identity is
                # brought back by re-running it.
                decision = Decision.NEW if record is None else Decision.RETRY
            elif previous.status == ActionStatus.FAILED:
                decision = Decision.NEW if record is None else Decision.RETRY
            else:
                decision = Decision.DRIFT

            plan.entries[action.name] = ActionPlan(
                name=action.name,
                identity=action.identity,
                decision=decision,
                record=record,
                previous=previous,
            )

        names = set(graph.actions)
        plan.orphaned = sorted(
            (r for r in live.values() if r.name not in names),
            key=lambda r: r.name,
        )
        for orphan in plan.orphaned:
            logger.warning(
                f"{graph.name}@{network}: journal record '{orphan.name}' "
                f"({orphan.status.value}) is no longer declared; leaving it untouched"
            )

        drifted = [n for n, e in plan.entries.items() if e.decision == Decision.DRIFT]
        if drifted:
            if not allow_drift:
                raise DriftError(graph.name, network, sorted(drifted))
            self._force(graph, plan, drifted)

        logger.info(f"Reconciled {graph.name}@{network}: {plan.summary()}")
        return plan

    def _force(self, graph: ModuleGraph, plan: ReconciliationPlan, drifted: list[str]) -> None:
        plan.overridden = sorted(drifted)
        forced = set(drifted) | graph.descendants(drifted)
        for name in graph.order:
            if name not in forced:
                continue
            entry = plan.entries[name]
            if entry.decision == Decision.RESUME:
                # An in-flight transaction is settled against the chain first.
                logger.warning(
                    f"{graph.name}@{plan.network}: '{name}' has a transaction in flight; "
                    f"resuming it instead of forcing re-execution"
                )
                continue
            plan.entries[name] = replace(entry, decision=Decision.FORCED)
        logger.warning(
            f"{graph.name}@{plan.network}: drift override re-schedules {sorted(forced)}"
        )

    def apply(self, plan: ReconciliationPlan) -> ReconciliationPlan:
        """
        Persist the journal changes implied by `plan`.

        - a replaced live record is marked superseded by the new identity
        - an existing record that must run again is archived and reset to PENDING

        Returns:
            The plan with `record` fields reflecting the journal
        """
        for name, entry in list(plan.entries.items()):
            if entry.decision == Decision.SKIP:
                continue
            if entry.previous is not None and entry.decision in (
                Decision.FORCED, Decision.NEW, Decision.RETRY
            ):
                self._journal.upsert(entry.previous.superseded(entry.identity))
            record = entry.record
            if record is not None and (
                entry.decision == Decision.FORCED
                or not record.is_live
            ):
                record = self._journal.upsert(record.reset_for_rerun())
            plan.entries[name] = replace(entry, record=record, previous=None)
        return plan

