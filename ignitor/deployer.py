"""Deployer - Entry point for running a module against a network.

This module ties the engine together:
1. Holds the journal lock for (module, network)
2. Reconciles the module graph with the journal (drift detection)
3. Applies override bookkeeping to the journal
4. Executes the remaining actions
5. Converts the outcome into a DeploymentResult with an exit code

Exit codes:
    0  every action CONFIRMED (or validation passed for dry runs)
    1  the module description is invalid
    2  an action failed, timed out, or the journal could not be used
    3  drift detected without override

Usage:
    from ignitor.deployer import run_deployment

    result = run_deployment(graph, "sepolia", journal=journal, client=client)
    raise SystemExit(result.exit_code)
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Union

from ignitor.chain import ChainClient, create_chain_client
from ignitor.config import IgnitorConfig
from ignitor.errors import IgnitorError
from ignitor.executor import DryRunReport, ExecutionReport, Executor, RetryPolicy
from ignitor.journal import ExecutionJournal, create_journal
from ignitor.reconcile import ReconciliationEngine, ReconciliationPlan
from ignitor.registry import ModuleDefinitions
from ignitor.schemas import ModuleGraph

logger = logging.getLogger(__name__)


@dataclass
class DeploymentResult:
    """
    Outcome of one deployment run.

    Attributes:
        module / network: What was run
        exit_code: 0 success, 1 invalid description, 2 execution failure, 3 drift
        dry_run: Whether this was a validation-only run
        plan: Reconciliation plan, if reconciliation completed
        report: ExecutionReport (or DryRunReport for dry runs)
        error: The error that decided a non-zero exit code
        results: Exported module results known after the run
        duration_s: Wall-clock duration
    """
    module: str
    network: str
    exit_code: int = 0
    dry_run: bool = False
    plan: Optional[ReconciliationPlan] = None
    report: Optional[Union[ExecutionReport, DryRunReport]] = None
    error: Optional[BaseException] = None
    results: dict[str, Any] = field(default_factory=dict)
    duration_s: float = 0.0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def run_deployment(
    graph: ModuleGraph,
    network: str,
    journal: ExecutionJournal,
    client: ChainClient,
    dry_run: bool = False,
    allow_drift: bool = False,
    max_workers: int = 4,
    policy: Optional[RetryPolicy] = None,
    default_sender: Optional[str] = None,
    stop_event: Optional[threading.Event] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> DeploymentResult:
    """
    Run a module graph against a network.

    Dry runs reconcile and simulate without taking the lock or writing to
    the journal.

    Args:
        graph: Validated module graph
        network: Target network identifier
        journal: Execution journal
        client: Chain client for `network`
        dry_run: Validate only, submit nothing
        allow_drift: Re-execute drifted actions and their dependents
        max_workers: Upper bound on concurrently executing actions
        policy: Retry/backoff/timeout settings
        default_sender: Sender for actions that don't name one
        stop_event: Cooperative stop signal (e.g. set from a signal handler)
        sleep: Injectable for tests

    Returns:
        DeploymentResult. Engine errors are reported through `exit_code`
        and `error`; unexpected exceptions propagate.
    """
    result = DeploymentResult(module=graph.name, network=network, dry_run=dry_run)
    engine = ReconciliationEngine(journal)
    executor = Executor(
        journal=journal,
        client=client,
        max_workers=max_workers,
        policy=policy,
        default_sender=default_sender,
        stop_event=stop_event,
        sleep=sleep,
    )
    extra = {"module_name": graph.name, "network": network}
    started = time.monotonic()

    try:
        if dry_run:
            logger.info(f"[DRY-RUN] Validating {graph.name} on {network}", extra=extra)
            result.plan = engine.reconcile(graph, network, allow_drift=allow_drift)
            dry = executor.simulate(graph, result.plan)
            result.report = dry
            if not dry.success:
                result.exit_code = 2
        else:
            with journal.lock(graph.name, network):
                plan = engine.reconcile(graph, network, allow_drift=allow_drift)
                result.plan = engine.apply(plan)
                report = executor.execute(graph, result.plan)
            result.report = report
            result.results = report.results(graph)
            if report.errors:
                result.error = report.errors[0]
                result.exit_code = report.errors[0].exit_code
            elif not report.success:
                result.exit_code = 2
    except IgnitorError as e:
        logger.error(f"{graph.name}@{network}: {e}", extra=extra)
        result.error = e
        result.exit_code = e.exit_code
    finally:
        result.duration_s = time.monotonic() - started

    if result.ok:
        logger.info(f"{graph.name}@{network} completed in {result.duration_s:.1f}s", extra=extra)
    else:
        logger.error(
            f"{graph.name}@{network} finished with exit code {result.exit_code}", extra=extra
        )
    return result


def deploy_module(
    module: str,
    network: str,
    config: IgnitorConfig,
    dry_run: bool = False,
    allow_drift: bool = False,
    max_workers: Optional[int] = None,
    client: Optional[ChainClient] = None,
    journal: Optional[ExecutionJournal] = None,
    stop_event: Optional[threading.Event] = None,
) -> DeploymentResult:
    """
    Load a module definition by name and run it.

    Journal and chain client are created from `config` unless given.
    Invalid or missing definitions produce exit code 1, a chain client that
    cannot be created exit code 2.
    """
    definitions = ModuleDefinitions(config.definitions_path, default_sender=config.default_sender)
    try:
        graph, _ = definitions.load(module)
    except IgnitorError as e:
        logger.error(f"{e}")
        return DeploymentResult(
            module=module, network=network, exit_code=e.exit_code, dry_run=dry_run, error=e
        )

    if journal is None:
        journal = create_journal(config.journal_backend, config.journal_location)
    if client is None:
        try:
            client = create_chain_client(config.chain_client, network, config)
        except (ValueError, ImportError, AttributeError, TypeError) as e:
            logger.error(f"Cannot create chain client '{config.chain_client}': {e}")
            return DeploymentResult(
                module=module, network=network, exit_code=2, dry_run=dry_run, error=e
            )

    return run_deployment(
        graph,
        network,
        journal=journal,
        client=client,
        dry_run=dry_run,
        allow_drift=allow_drift,
        max_workers=max_workers or config.max_workers,
        policy=RetryPolicy.from_config(config),
        default_sender=config.default_sender,
        stop_event=stop_event,
    )
