import json
from datetime import datetime, timezone

from decoder import decode_block, decode_transaction, match_native_transfer
from fakes import COMPUTE_BUDGET, SYSTEM_PROGRAM, block, program_tx, transfer_tx
from models import AccountRole, TransactionKind, TransactionStatus

SIGNATURE = "2xBbzb1SjzSw5VjY92bjRYUB49Exnn45xE7RXRdbgR4XuyKQzJKFkA5kyy98MEDHDCUaQe1qEN4YbyY6jNpUqm1"
SENDER = "tKeYE4wtowRb8yRroZShTipE18YVnqwXjsSAoNsFU6g"
RECEIVER = "84YKYKo7qN54VHFLn6Eo5uBZMKzUY5Q9qB2t1L3drUeQ"

compute_budget_ixs = [
    {"accounts": [], "data": "LKoyXd", "programId": COMPUTE_BUDGET, "stackHeight": None},
    {"accounts": [], "data": "3auSnstjHdqH", "programId": COMPUTE_BUDGET, "stackHeight": None},
]


def _roles(links):
    return {(link.account_address, link.role) for link in links}


def test_decodes_native_transfer():
    raw = transfer_tx("sig-1", "A", "B", 500)

    decoded = decode_transaction(raw, slot=10, block_time=1720421680)

    tx = decoded.transaction
    assert tx.kind == TransactionKind.NATIVE_TRANSFER
    assert tx.decoded is True
    assert tx.sender == "A"
    assert tx.receiver == "B"
    assert tx.amount == 500
    assert tx.slot == 10
    assert tx.status == TransactionStatus.SUCCESS
    assert tx.timestamp == datetime(2024, 7, 8, 6, 54, 40, tzinfo=timezone.utc)
    assert _roles(decoded.links) == {
        ("A", AccountRole.FEE_PAYER),
        ("A", AccountRole.SENDER),
        ("B", AccountRole.RECEIVER),
    }


def test_transfer_with_compute_budget_instructions_is_still_native():
    raw = transfer_tx(SIGNATURE, SENDER, RECEIVER, 967, extra_instructions=compute_budget_ixs)

    decoded = decode_transaction(raw, slot=310176000, block_time=1720421680)

    assert decoded.transaction.signature == SIGNATURE
    assert decoded.transaction.kind == TransactionKind.NATIVE_TRANSFER
    assert decoded.transaction.amount == 967


def test_separate_fee_payer_gets_its_own_link():
    raw = transfer_tx("sig-2", "A", "B", 1, fee_payer="F")

    decoded = decode_transaction(raw, slot=1)

    assert _roles(decoded.links) == {
        ("F", AccountRole.FEE_PAYER),
        ("A", AccountRole.SENDER),
        ("B", AccountRole.RECEIVER),
    }
    assert decoded.transaction.timestamp is None


def test_program_invocation_is_unsupported():
    raw = program_tx("sig-3", "F")

    decoded = decode_transaction(raw, slot=5)

    tx = decoded.transaction
    assert tx.kind == TransactionKind.UNSUPPORTED
    assert tx.decoded is False
    assert tx.sender is None and tx.receiver is None and tx.amount is None
    assert json.loads(tx.raw_payload) == raw
    assert _roles(decoded.links) == {("F", AccountRole.FEE_PAYER)}


def test_two_transfers_are_unsupported():
    raw = transfer_tx("sig-4", "A", "B", 10)
    second = dict(raw["transaction"]["message"]["instructions"][0])
    raw["transaction"]["message"]["instructions"].append(second)

    assert decode_transaction(raw, slot=1).transaction.kind == TransactionKind.UNSUPPORTED


def test_malformed_transfer_degrades_to_unsupported():
    raw = transfer_tx("sig-5", "A", "B", 10)
    raw["transaction"]["message"]["instructions"][0]["parsed"]["info"]["lamports"] = "ten"

    decoded = decode_transaction(raw, slot=1)

    assert decoded.transaction.kind == TransactionKind.UNSUPPORTED
    assert _roles(decoded.links) == {("A", AccountRole.FEE_PAYER)}


def test_missing_message_degrades_to_unsupported():
    raw = {"transaction": {"signatures": ["sig-6"], "message": "garbage"}, "meta": None}

    decoded = decode_transaction(raw, slot=1)

    assert decoded.transaction.kind == TransactionKind.UNSUPPORTED
    assert decoded.links == []


def test_failed_transaction_status():
    raw = transfer_tx("sig-7", "A", "B", 10, err={"InstructionError": [0, "Custom"]})

    assert decode_transaction(raw, slot=1).transaction.status == TransactionStatus.FAILURE


def test_transaction_without_signature_is_dropped():
    raw = transfer_tx("x", "A", "B", 10)
    raw["transaction"]["signatures"] = []

    assert decode_transaction(raw, slot=1) is None


def test_match_native_transfer_rejects_other_system_instructions():
    ix = {
        "parsed": {"info": {"newAccount": "N", "source": "A", "lamports": 1}, "type": "createAccount"},
        "programId": SYSTEM_PROGRAM,
    }
    assert match_native_transfer([ix]) is None
    assert match_native_transfer([]) is None


def test_decode_block_keeps_going_past_bad_transactions():
    txs = [
        transfer_tx("good-1", "A", "B", 1),
        "not a transaction",
        program_tx("odd-1", "C"),
        transfer_tx("good-1", "A", "B", 1),  # duplicate signature
        transfer_tx("good-2", "B", "A", 2),
    ]

    decoded = decode_block(block(42, txs))

    assert [tx.signature for tx in decoded.transactions] == ["good-1", "odd-1", "good-2"]
    assert [tx.kind for tx in decoded.transactions] == [
        TransactionKind.NATIVE_TRANSFER,
        TransactionKind.UNSUPPORTED,
        TransactionKind.NATIVE_TRANSFER,
    ]
    assert {link.transaction_signature for link in decoded.links} == {"good-1", "odd-1", "good-2"}
    assert all(tx.slot == 42 for tx in decoded.transactions)
