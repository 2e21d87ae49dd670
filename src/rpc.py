import itertools
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import requests

from logger import get_logger

logger = get_logger(__name__)

# JSON-RPC error codes returned by solana-validator
SLOT_SKIPPED = -32007
LONG_TERM_STORAGE_SLOT_SKIPPED = -32009
SKIPPED_SLOT_CODES = {SLOT_SKIPPED, LONG_TERM_STORAGE_SLOT_SKIPPED}

TRANSIENT_RPC_CODES = {
    -32004,  # block not available for slot (yet)
    -32005,  # node is unhealthy / behind
    -32014,  # block status not yet available
    -32016,  # minimum context slot has not been reached
    -32603,  # internal error
}
PERMANENT_RPC_CODES = {
    -32600,  # invalid request
    -32601,  # method not found
    -32602,  # invalid params
}

MINIMUM_SLOTS_PER_EPOCH = 32


class RpcError(Exception):
    """
    Base class for RPC failures.
    """
    transient = False

    def __init__(self, message: str, code: Optional[int] = None):
        super().__init__(message)
        self.code = code


class TransientRpcError(RpcError):
    transient = True


class PermanentRpcError(RpcError):
    transient = False


def is_transient(exc: BaseException) -> bool:
    """
    Classification function used by the retry policy.
    """
    if isinstance(exc, RpcError):
        return exc.transient
    return isinstance(exc, (requests.Timeout, requests.ConnectionError))


@dataclass(frozen=True)
class EpochInfo:
    epoch: int
    absolute_slot: int
    slot_index: int
    slots_in_epoch: int

    @property
    def start_slot(self) -> int:
        return self.absolute_slot - self.slot_index


@dataclass(frozen=True)
class EpochSchedule:
    """
    Mirror of getEpochSchedule; maps any slot to its epoch.
    """
    slots_per_epoch: int
    leader_schedule_slot_offset: int
    warmup: bool
    first_normal_epoch: int
    first_normal_slot: int

    def epoch_for_slot(self, slot: int) -> int:
        if slot < self.first_normal_slot:
            # Warmup epochs double in length, starting at MINIMUM_SLOTS_PER_EPOCH.
            length = MINIMUM_SLOTS_PER_EPOCH
            epoch = 0
            start = 0
            while slot >= start + length:
                start += length
                length *= 2
                epoch += 1
            return epoch
        return self.first_normal_epoch + (slot - self.first_normal_slot) // self.slots_per_epoch


@dataclass
class Block:
    """
    A confirmed block as returned by getBlock (jsonParsed). Never persisted.
    """
    slot: int
    blockhash: str
    block_time: Optional[int] = None
    parent_slot: Optional[int] = None
    block_height: Optional[int] = None
    transactions: list = field(default_factory=list)

    @classmethod
    def from_rpc(cls, slot: int, result: dict) -> "Block":
        return cls(
            slot=slot,
            blockhash=result.get("blockhash", ""),
            block_time=result.get("blockTime"),
            parent_slot=result.get("parentSlot"),
            block_height=result.get("blockHeight"),
            transactions=list(result.get("transactions") or []),
        )


@dataclass(frozen=True)
class SlotSkipped:
    """
    The network produced no block for this slot.
    """
    slot: int


BlockOrSkip = Union[Block, SlotSkipped]


class SolanaRpcClient:
    """
    JSON-RPC client for a Solana node. Failures are raised as
    TransientRpcError or PermanentRpcError for the retry policy to sort out.
    """

    def __init__(self, rpc_url: str, timeout: float = 30.0, session: Optional[requests.Session] = None):
        if not rpc_url.strip():
            raise ValueError("rpc_url must be non-empty")
        self.rpc_url = rpc_url
        self.timeout = timeout
        self._session = session or requests.Session()
        self._ids = itertools.count(1)

    def close(self) -> None:
        self._session.close()

    def _call(self, method: str, params: Optional[list] = None) -> Any:
        """
        POST one JSON-RPC request and return its "result".

        Raises TransientRpcError / PermanentRpcError. JSON-RPC level errors are
        raised with their code so callers can special-case them.
        """
        body = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            resp = self._session.post(self.rpc_url, json=body, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as e:
            raise TransientRpcError(f"{method}: {e}") from e
        except requests.RequestException as e:
            raise PermanentRpcError(f"{method}: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise TransientRpcError(f"{method}: HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise PermanentRpcError(f"{method}: HTTP {resp.status_code}")

        try:
            data = resp.json()
        except ValueError as e:
            raise PermanentRpcError(f"{method}: response is not JSON") from e

        error = data.get("error")
        if error:
            code = error.get("code")
            message = f"{method}: RPC error {code}: {error.get('message')}"
            if code in PERMANENT_RPC_CODES:
                raise PermanentRpcError(message, code=code)
            # TRANSIENT_RPC_CODES, skipped-slot codes and unknown server codes
            raise TransientRpcError(message, code=code)
        return data.get("result")

    def get_epoch_info(self) -> EpochInfo:
        result = self._call("getEpochInfo", [{"commitment": "finalized"}])
        try:
            return EpochInfo(
                epoch=int(result["epoch"]),
                absolute_slot=int(result["absoluteSlot"]),
                slot_index=int(result["slotIndex"]),
                slots_in_epoch=int(result["slotsInEpoch"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentRpcError(f"getEpochInfo: unexpected result {result!r}") from e

    def get_current_epoch_start_slot(self) -> int:
        return self.get_epoch_info().start_slot

    def get_epoch_schedule(self) -> EpochSchedule:
        result = self._call("getEpochSchedule")
        try:
            return EpochSchedule(
                slots_per_epoch=int(result["slotsPerEpoch"]),
                leader_schedule_slot_offset=int(result["leaderScheduleSlotOffset"]),
                warmup=bool(result["warmup"]),
                first_normal_epoch=int(result["firstNormalEpoch"]),
                first_normal_slot=int(result["firstNormalSlot"]),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise PermanentRpcError(f"getEpochSchedule: unexpected result {result!r}") from e

    def get_slot(self, commitment: str = "finalized") -> int:
        return int(self._call("getSlot", [{"commitment": commitment}]))

    def get_block(self, slot: int) -> BlockOrSkip:
        """
        Fetch the block at `slot`, or SlotSkipped when the leader produced none.
        """
        config = {
            "encoding": "jsonParsed",
            "transactionDetails": "full",
            "rewards": False,
            "maxSupportedTransactionVersion": 0,
            "commitment": "finalized",
        }
        try:
            result = self._call("getBlock", [slot, config])
        except TransientRpcError as e:
            if e.code in SKIPPED_SLOT_CODES:
                logger.debug("slot_skipped_by_network", slot=slot, code=e.code)
                return SlotSkipped(slot)
            raise
        if result is None:
            return SlotSkipped(slot)
        if not isinstance(result, dict):
            raise PermanentRpcError(f"getBlock: unexpected result type {type(result).__name__}")
        return Block.from_rpc(slot, result)
