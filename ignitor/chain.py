"""
Chain client interface - the boundary to the distributed ledger.

The engine never talks RPC itself. It needs four operations from the
environment:

    submit(tx) -> tx_ref
    get_receipt(tx_ref) -> Receipt{status, result | revert_reason}
    estimate_gas(tx) -> int
    next_sequence_number(sender) -> int

Clients classify their failures with TransientError (retried by the
executor) and PermanentError (fails the action immediately).

Client discovery:
    - "simulated": the in-process SimulatedChainClient
    - "package.module:factory": a factory called as factory(network, config)
    - any other name: an entry point in the "ignitor.chain_clients" group
"""

import hashlib
import importlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from importlib.metadata import entry_points
from typing import Any, Callable, Optional

from ignitor.errors import PermanentError, TransientError
from ignitor.schemas import ActionKind

logger = logging.getLogger(__name__)

ENTRY_POINT_GROUP = "ignitor.chain_clients"


class ReceiptStatus(str, Enum):
    """On-chain status of a submitted transaction."""
    PENDING = "pending"      # known to the node, not yet final
    SUCCESS = "success"
    REVERTED = "reverted"
    NOT_FOUND = "not_found"  # unknown to the node (never sent or dropped)


@dataclass(frozen=True)
class Receipt:
    """
    Receipt for a submitted transaction.

    Attributes:
        status: See ReceiptStatus
        result: Deployed address (deploys) or return value (calls) on success
        revert_reason: Decoded revert reason when status is REVERTED
        block_number: Block the transaction was included in, if any
    """
    status: ReceiptStatus
    result: Any = None
    revert_reason: Optional[str] = None
    block_number: Optional[int] = None


@dataclass(frozen=True)
class Transaction:
    """
    A transaction built from a resolved action.

    Attributes:
        action: Future id of the action ("Module#Name"), for logs and tracing
        kind: deploy or call
        sender: Sending account
        nonce: Sequence number reserved for this transaction
        contract: Contract artifact name (deploy)
        to: Target contract address (call)
        method: Method name (call)
        args: Fully resolved arguments
        value: Native value attached
    """
    action: str
    kind: ActionKind
    sender: str
    nonce: Optional[int] = None
    contract: Optional[str] = None
    to: Optional[str] = None
    method: Optional[str] = None
    args: list[Any] = field(default_factory=list)
    value: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Serialize to dictionary for JSON output."""
        result: dict[str, Any] = {
            "action": self.action,
            "kind": self.kind.value,
            "sender": self.sender,
            "args": self.args,
            "value": self.value,
        }
        if self.nonce is not None:
            result["nonce"] = self.nonce
        if self.kind == ActionKind.DEPLOY:
            result["contract"] = self.contract
        else:
            result["to"] = self.to
            result["method"] = self.method
        return result


class ChainClient(ABC):
    """
    Abstract base class for chain clients.

    Implementations must be safe to call from several worker threads.
    """

    @abstractmethod
    def submit(self, tx: Transaction) -> str:
        """
        Broadcast a transaction.

        Returns:
            The transaction reference (hash)

        Raises:
            TransientError: If the node could not be reached
            PermanentError: If the node rejected the transaction
        """
        pass

    @abstractmethod
    def get_receipt(self, tx_ref: str) -> Receipt:
        """Look up the current status of a transaction."""
        pass

    @abstractmethod
    def estimate_gas(self, tx: Transaction) -> int:
        """
        Simulate a transaction without submitting it.

        Raises:
            PermanentError: If the simulation reverts
        """
        pass

    @abstractmethod
    def next_sequence_number(self, sender: str) -> int:
        """Next unused sequence number (nonce) for `sender`, pending included."""
        pass


def _digest(*parts: Any) -> str:
    payload = json.dumps(parts, sort_keys=True, default=str, separators=(",", ":"))
    return hashlib.sha256(payload.encode()).hexdigest()


class SimulatedChainClient(ChainClient):
    """
    In-process ledger for development, dry runs and tests.

    Transactions are accepted into a pool and mined after `pending_polls`
    receipt lookups. Deployed addresses and transaction references are
    deterministic in (sender, nonce, payload), so resubmitting the same
    transaction with the same nonce is idempotent.

    Fault injection (keyed by the action's future id "Module#Name"):
        reverts: action -> revert reason; the transaction is mined reverted
        submit_failures: action -> number of TransientErrors raised by submit
        receipt_failures: action -> number of TransientErrors raised by get_receipt
        call_results: action -> return value recorded for a successful call
    """

    def __init__(
        self,
        pending_polls: int = 0,
        reverts: Optional[dict[str, str]] = None,
        submit_failures: Optional[dict[str, int]] = None,
        receipt_failures: Optional[dict[str, int]] = None,
        call_results: Optional[dict[str, Any]] = None,
    ):
        self.pending_polls = pending_polls
        self.reverts = dict(reverts or {})
        self.submit_failures = dict(submit_failures or {})
        self.receipt_failures = dict(receipt_failures or {})
        self.call_results = dict(call_results or {})
        self.submissions: list[Transaction] = []
        self.estimates: list[Transaction] = []
        self._lock = threading.Lock()
        self._nonces: dict[str, int] = {}
        self._txs: dict[str, Transaction] = {}
        self._polls: dict[str, int] = {}
        self._mined: dict[str, Receipt] = {}
        self._block = 0

    def submit(self, tx: Transaction) -> str:
        with self._lock:
            if self.submit_failures.get(tx.action, 0) > 0:
                self.submit_failures[tx.action] -= 1
                raise TransientError(f"simulated connection reset submitting {tx.action}")
            expected = self._nonces.get(tx.sender, 0)
            nonce = expected if tx.nonce is None else tx.nonce
            tx_ref = "0x" + _digest(tx.sender, nonce, tx.to_dict() | {"nonce": nonce})
            if tx_ref in self._txs:
                return tx_ref
            if nonce != expected:
                raise PermanentError(
                    f"nonce {nonce} for {tx.sender} rejected, expected {expected}"
                )
            self._nonces[tx.sender] = expected + 1
            self._txs[tx_ref] = tx
            self._polls[tx_ref] = 0
            self.submissions.append(tx)
            logger.debug(f"Simulated submit {tx.action} nonce={nonce} ref={tx_ref[:12]}")
            return tx_ref

    def get_receipt(self, tx_ref: str) -> Receipt:
        with self._lock:
            if tx_ref in self._mined:
                return self._mined[tx_ref]
            tx = self._txs.get(tx_ref)
            if tx is None:
                return Receipt(status=ReceiptStatus.NOT_FOUND)
            if self.receipt_failures.get(tx.action, 0) > 0:
                self.receipt_failures[tx.action] -= 1
                raise TransientError(f"simulated timeout fetching receipt for {tx.action}")
            self._polls[tx_ref] += 1
            if self._polls[tx_ref] <= self.pending_polls:
                return Receipt(status=ReceiptStatus.PENDING)
            return self._mine(tx_ref, tx)

    def _mine(self, tx_ref: str, tx: Transaction) -> Receipt:
        self._block += 1
        if tx.action in self.reverts:
            receipt = Receipt(
                status=ReceiptStatus.REVERTED,
                revert_reason=self.reverts[tx.action],
                block_number=self._block,
            )
        elif tx.kind == ActionKind.DEPLOY:
            receipt = Receipt(
                status=ReceiptStatus.SUCCESS,
                result=self.address_for(tx.sender, tx_ref),
                block_number=self._block,
            )
        else:
            receipt = Receipt(
                status=ReceiptStatus.SUCCESS,
                result=self.call_results.get(tx.action),
                block_number=self._block,
            )
        self._mined[tx_ref] = receipt
        return receipt

    def estimate_gas(self, tx: Transaction) -> int:
        with self._lock:
            self.estimates.append(tx)
        if tx.action in self.reverts:
            raise PermanentError(f"execution reverted: {self.reverts[tx.action]}")
        base = 500_000 if tx.kind == ActionKind.DEPLOY else 50_000
        return base + 1_000 * len(tx.args)

    def next_sequence_number(self, sender: str) -> int:
        with self._lock:
            return self._nonces.get(sender, 0)

    # -- test helpers ----------------------------------------------------------

    @staticmethod
    def address_for(sender: str, tx_ref: str) -> str:
        return "0x" + _digest("address", sender, tx_ref)[:40]

    def drop(self, tx_ref: str) -> None:
        """Forget a pending transaction, as if the node evicted it."""
        with self._lock:
            tx = self._txs.pop(tx_ref, None)
            self._polls.pop(tx_ref, None)
            if tx is not None and tx_ref not in self._mined:
                self._nonces[tx.sender] = self._nonces.get(tx.sender, 1) - 1

    def submitted_actions(self) -> list[str]:
        with self._lock:
            return [tx.action for tx in self.submissions]


# =============================================================================
# CLIENT FACTORIES
# =============================================================================


def load_client_factory(factory_path: str) -> Callable[..., ChainClient]:
    """
    Load a chain client factory by dotted path string.

    Args:
        factory_path: e.g. "mychain.clients:build_client"

    Returns:
        The callable factory function

    Raises:
        ValueError: If the path is malformed
        ImportError: If the module is not found
        AttributeError: If the function is not found in the module
        TypeError: If the attribute is not callable
    """
    if ":" not in factory_path:
        raise ValueError(f"Factory path must be 'module:function', got: {factory_path}")

    module_path, func_name = factory_path.rsplit(":", 1)
    try:
        module = importlib.import_module(module_path)
    except ImportError as e:
        raise ImportError(f"Cannot import client module '{module_path}': {e}") from e

    try:
        factory = getattr(module, func_name)
    except AttributeError as e:
        raise AttributeError(
            f"Client factory '{func_name}' not found in '{module_path}': {e}"
        ) from e

    if not callable(factory):
        raise TypeError(f"{factory_path} is not callable")
    return factory


def create_chain_client(name: str, network: str, config: Any = None) -> ChainClient:
    """
    Create the chain client named `name` for `network`.

    Args:
        name: "simulated", a "module:function" factory path, or an entry point name
        network: Target network identifier
        config: IgnitorConfig passed through to the factory
    """
    if name == "simulated":
        return SimulatedChainClient()
    if ":" in name:
        factory = load_client_factory(name)
    else:
        matches = [ep for ep in entry_points().select(group=ENTRY_POINT_GROUP) if ep.name == name]
        if not matches:
            raise ValueError(f"Unknown chain client '{name}' (no '{ENTRY_POINT_GROUP}' entry point)")
        factory = matches[0].load()
    client = factory(network, config)
    if not isinstance(client, ChainClient):
        raise TypeError(f"Chain client factory '{name}' returned {type(client).__name__}")
    return client
