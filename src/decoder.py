"""
Turns the raw (jsonParsed) transactions of a block into Transaction and
AccountLink rows.

Only native SOL transfers are decoded. Every other transaction is kept as an
Unsupported row with its raw payload so a future decoder can pick it up.
"""
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from logger import get_logger
from models import AccountLink, AccountRole, Transaction, TransactionKind, TransactionStatus
from rpc import Block

logger = get_logger(__name__)

SYSTEM_PROGRAM_ID = "11111111111111111111111111111111"
COMPUTE_BUDGET_PROGRAM_ID = "ComputeBudget111111111111111111111111111111"


@dataclass(frozen=True)
class NativeTransfer:
    sender: str
    receiver: str
    amount: int


@dataclass
class DecodedTransaction:
    transaction: Transaction
    links: List[AccountLink] = field(default_factory=list)


@dataclass
class DecodedBlock:
    slot: int
    transactions: List[Transaction] = field(default_factory=list)
    links: List[AccountLink] = field(default_factory=list)


def _block_timestamp(block_time: Optional[int]) -> Optional[datetime]:
    if block_time is None:
        return None
    return datetime.fromtimestamp(block_time, tz=timezone.utc)


def _signature(raw: dict) -> Optional[str]:
    try:
        signature = raw["transaction"]["signatures"][0]
    except (KeyError, IndexError, TypeError):
        return None
    return signature if isinstance(signature, str) and signature else None


def _message(raw: dict) -> dict:
    transaction = raw.get("transaction")
    message = transaction.get("message") if isinstance(transaction, dict) else None
    return message if isinstance(message, dict) else {}


def _account_keys(raw: dict) -> List[str]:
    """
    Account keys in message order. jsonParsed gives dicts, json gives strings.
    """
    keys = _message(raw).get("accountKeys")
    if not isinstance(keys, list):
        return []
    out = []
    for key in keys:
        if isinstance(key, dict):
            key = key.get("pubkey")
        if isinstance(key, str) and key:
            out.append(key)
    return out


def _instructions(raw: dict) -> list:
    instructions = _message(raw).get("instructions")
    if not isinstance(instructions, list):
        raise ValueError("message has no instruction list")
    return instructions


def _parse_transfer(instruction: dict) -> Optional[NativeTransfer]:
    parsed = instruction.get("parsed")
    if not isinstance(parsed, dict) or parsed.get("type") != "transfer":
        return None
    info = parsed.get("info") or {}
    sender, receiver, lamports = info.get("source"), info.get("destination"), info.get("lamports")
    if not (isinstance(sender, str) and sender and isinstance(receiver, str) and receiver):
        return None
    if isinstance(lamports, bool) or not isinstance(lamports, int) or lamports < 0:
        return None
    return NativeTransfer(sender=sender, receiver=receiver, amount=lamports)


def match_native_transfer(instructions: list) -> Optional[NativeTransfer]:
    """
    Return the transfer if the instruction list is a plain native transfer:
    exactly one System Program `transfer`, optionally accompanied by Compute
    Budget instructions. Anything else returns None.
    """
    transfer = None
    for instruction in instructions:
        if not isinstance(instruction, dict):
            return None
        program_id = instruction.get("programId")
        if program_id == COMPUTE_BUDGET_PROGRAM_ID:
            continue
        if program_id != SYSTEM_PROGRAM_ID or transfer is not None:
            return None
        transfer = _parse_transfer(instruction)
        if transfer is None:
            return None
    return transfer


def classify(raw: dict) -> Optional[NativeTransfer]:
    """
    Decode the instruction list. Malformed payloads count as unsupported.
    """
    try:
        return match_native_transfer(_instructions(raw))
    except (AttributeError, TypeError, ValueError) as e:
        logger.debug("transaction_unparseable", error=str(e))
        return None


def decode_transaction(raw: dict, slot: int, block_time: Optional[int] = None) -> Optional[DecodedTransaction]:
    """
    Build the Transaction row and its account links for one raw transaction.

    Returns None only when the transaction has no signature, since it cannot
    be keyed; every other failure degrades to an Unsupported record.
    """
    if not isinstance(raw, dict):
        logger.warning("transaction_dropped", slot=slot, reason="not an object")
        return None
    signature = _signature(raw)
    if signature is None:
        logger.warning("transaction_dropped", slot=slot, reason="missing signature")
        return None

    meta = raw.get("meta") if isinstance(raw.get("meta"), dict) else {}
    status = TransactionStatus.FAILURE if meta.get("err") is not None else TransactionStatus.SUCCESS

    transfer = classify(raw)
    tx = Transaction(
        signature=signature,
        slot=slot,
        timestamp=_block_timestamp(block_time),
        raw_payload=json.dumps(raw, separators=(",", ":")),
        status=status,
    )

    links = {}
    keys = _account_keys(raw)
    if keys:
        links[(keys[0], AccountRole.FEE_PAYER)] = None

    if transfer is not None:
        tx.kind = TransactionKind.NATIVE_TRANSFER
        tx.decoded = True
        tx.sender = transfer.sender
        tx.receiver = transfer.receiver
        tx.amount = transfer.amount
        links[(transfer.sender, AccountRole.SENDER)] = None
        links[(transfer.receiver, AccountRole.RECEIVER)] = None
    else:
        tx.kind = TransactionKind.UNSUPPORTED
        tx.decoded = False

    return DecodedTransaction(
        transaction=tx,
        links=[
            AccountLink(account_address=address, transaction_signature=signature, role=role)
            for address, role in links
        ],
    )


def decode_block(block: Block) -> DecodedBlock:
    out = DecodedBlock(slot=block.slot)
    seen = set()
    for raw in block.transactions:
        decoded = decode_transaction(raw, block.slot, block.block_time)
        if decoded is None:
            continue
        signature = decoded.transaction.signature
        if signature in seen:
            continue
        seen.add(signature)
        out.transactions.append(decoded.transaction)
        out.links.extend(decoded.links)

    native = sum(1 for tx in out.transactions if tx.decoded)
    logger.debug(
        "block_decoded",
        slot=block.slot,
        transactions=len(out.transactions),
        native_transfers=native,
        unsupported=len(out.transactions) - native,
    )
    return out
