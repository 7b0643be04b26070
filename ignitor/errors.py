"""
Error classes for ignitor deployments.

The taxonomy maps onto run outcomes:
- GraphError: the module description is invalid. Raised at build time,
  before any chain interaction.
- ExecutionError: an action failed on-chain or could not be confirmed.
- DriftError: the description no longer matches what was already deployed.
- JournalError: the execution journal cannot be used safely.

Retry classification happens at the chain client boundary:
- TransientError: Safe to retry (rate limits, dropped connections, node hiccups)
- PermanentError: Do not retry (malformed transaction, rejected by the node)

Chain clients raise these errors to signal retry behavior.
The executor catches them at the boundary for retry/backoff and journaling.
"""

from typing import Optional


class IgnitorError(Exception):
    """Base exception for ignitor."""

    exit_code = 2


class TransientError(IgnitorError):
    """
    Transient error - safe to retry.

    Examples:
    - RPC rate limit exceeded
    - Connection reset / timeout talking to the node
    - Node temporarily unavailable

    The executor retries submissions and receipt polls that raise
    TransientError according to the configured RetryPolicy.
    """
    pass


class PermanentError(IgnitorError):
    """
    Permanent error - do not retry.

    Examples:
    - Transaction rejected by the node (bad encoding, insufficient funds)
    - Unknown contract artifact

    The executor fails the action immediately when PermanentError is raised.
    """
    pass


# =============================================================================
# GRAPH ERRORS (exit 1)
# =============================================================================


class GraphError(IgnitorError):
    """The module description cannot be turned into a valid action graph."""

    exit_code = 1

    def __init__(self, module: str, message: str):
        self.module = module
        super().__init__(f"Module '{module}': {message}")


class CycleError(GraphError):
    """Dependency edges form a cycle."""

    def __init__(self, module: str, cycle: list[str]):
        self.cycle = cycle
        super().__init__(module, f"dependency cycle: {' -> '.join(cycle)}")


class UnknownReferenceError(GraphError):
    """A future reference names no action declared in the module."""

    def __init__(self, module: str, action: str, reference: str):
        self.action = action
        self.reference = reference
        super().__init__(
            module, f"'{action}' references unknown future '{reference}'"
        )


class DuplicateIdentityError(GraphError):
    """Two actions resolve to the same declared name or identity."""

    def __init__(self, module: str, name: str):
        self.name = name
        super().__init__(
            module,
            f"duplicate action '{name}'; give one of them an explicit id",
        )


# =============================================================================
# EXECUTION ERRORS (exit 2)
# =============================================================================


class ExecutionError(IgnitorError):
    """An action could not be brought to a confirmed state."""

    exit_code = 2

    def __init__(self, action: str, network: str, message: str):
        self.action = action
        self.network = network
        super().__init__(f"Action '{action}' on '{network}' failed: {message}")


class RevertedError(ExecutionError):
    """The transaction was mined and reverted."""

    def __init__(self, action: str, network: str, reason: Optional[str] = None):
        self.reason = reason
        super().__init__(action, network, f"reverted ({reason or 'no reason given'})")


class RejectedError(ExecutionError):
    """The node refused the transaction (PermanentError from the client)."""

    def __init__(self, action: str, network: str, cause: Exception):
        self.cause = cause
        super().__init__(action, network, f"rejected: {cause}")


class ActionTimeoutError(ExecutionError):
    """No receipt arrived within the poll budget; the transaction stays SUBMITTED."""

    def __init__(self, action: str, network: str, tx_ref: str, waited_s: float):
        self.tx_ref = tx_ref
        self.waited_s = waited_s
        super().__init__(
            action, network,
            f"no receipt for {tx_ref} after {waited_s:.1f}s; re-run to resume polling",
        )


class TransportFailureError(ExecutionError):
    """Transient transport errors exhausted the retry budget."""

    def __init__(self, action: str, network: str, attempts: int, cause: Exception):
        self.attempts = attempts
        self.cause = cause
        super().__init__(
            action, network, f"transport failure after {attempts} attempts: {cause}"
        )


class UnknownTransactionError(ExecutionError):
    """
    A transaction may have been broadcast without its reference being recorded.

    Raised on resume when an action's reserved sequence number has already
    been consumed on-chain. Resubmitting could duplicate the action, so an
    operator has to inspect the sender's history.
    """

    def __init__(self, action: str, network: str, sender: str, nonce: int):
        self.sender = sender
        self.nonce = nonce
        super().__init__(
            action, network,
            f"sequence number {nonce} of {sender} was consumed by an unrecorded transaction",
        )


# =============================================================================
# DRIFT (exit 3)
# =============================================================================


class DriftError(IgnitorError):
    """Confirmed actions no longer match the description."""

    exit_code = 3

    def __init__(self, module: str, network: str, drifted: list[str]):
        self.module = module
        self.network = network
        self.drifted = drifted
        super().__init__(
            f"Module '{module}' on '{network}' drifted from its journal: "
            f"{', '.join(drifted)}. Re-run with --allow-drift to redeploy them."
        )


# =============================================================================
# JOURNAL ERRORS (exit 2)
# =============================================================================


class JournalError(IgnitorError):
    """The execution journal cannot be used safely."""

    exit_code = 2


class LockHeldError(JournalError):
    """Another run holds the lock for this (module, network) pair."""

    def __init__(self, module: str, network: str, owner: Optional[str] = None):
        self.module = module
        self.network = network
        self.owner = owner
        held_by = f" (held by {owner})" if owner else ""
        super().__init__(
            f"Journal for '{module}' on '{network}' is locked{held_by}"
        )


class CorruptJournalError(JournalError):
    """Persisted journal data cannot be read."""
    pass


class JournalConflictError(JournalError):
    """A compare-and-set write lost to a concurrent writer."""

    def __init__(self, identity: str, expected: int, actual: int):
        self.identity = identity
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Conflicting write for '{identity}': expected version {expected}, found {actual}"
        )


class UnresolvedFutureError(IgnitorError):
    """
    An action was resolved before all of its producers were confirmed.

    Indicates a scheduling bug; correct scheduling never triggers it.
    """

    def __init__(self, action: str, future: str):
        self.action = action
        self.future = future
        super().__init__(f"Action '{action}' depends on unconfirmed future '{future}'")
