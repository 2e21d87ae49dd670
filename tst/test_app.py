from db import commit_slot
from decoder import decode_block
from fakes import block, program_tx, transfer_tx


def _ingest(session, b, epoch=0):
    decoded = decode_block(b)
    commit_slot(session, b.slot, decoded.transactions, decoded.links, epoch)


def test_get_transaction(client, session):
    _ingest(session, block(10, [transfer_tx("sig-1", "A", "B", 500)]))

    resp = client.get("/transaction", params={"tx-id": "sig-1"})
    assert resp.status_code == 200, resp.text
    body = resp.json()

    assert body["signature"] == "sig-1"
    assert body["slot"] == 10
    assert body["kind"] == "NativeTransfer"
    assert body["decoded"] is True
    assert body["sender"] == "A"
    assert body["receiver"] == "B"
    assert body["amount"] == 500
    assert body["status"] == "success"
    assert {(a["account_id"], a["role"]) for a in body["accounts"]} == {
        ("A", "feePayer"),
        ("A", "sender"),
        ("B", "receiver"),
    }
    assert body["raw_payload"]["transaction"]["signatures"] == ["sig-1"]


def test_get_transaction_not_found(client):
    resp = client.get("/transaction", params={"tx-id": "nonexistent"})
    assert resp.status_code == 404, resp.text


def test_get_account_transactions_oldest_first(client, session):
    _ingest(session, block(20, [transfer_tx("recv", "Y", "X", 7)]))
    _ingest(session, block(10, [transfer_tx("send", "X", "Y", 5)]))
    _ingest(session, block(30, [program_tx("unrelated", "Z")]))

    resp = client.get("/accountid", params={"account-id": "X"})
    assert resp.status_code == 200, resp.text
    body = resp.json()

    assert body["total_transactions"] == 2
    assert [(t["signature"], t["slot"]) for t in body["transactions"]] == [("send", 10), ("recv", 20)]

    page = client.get("/accountid", params={"account-id": "X", "limit": 1, "offset": 1}).json()
    assert [t["signature"] for t in page["transactions"]] == ["recv"]


def test_get_account_not_found(client):
    resp = client.get("/accountid", params={"account-id": "nobody"})
    assert resp.status_code == 404, resp.text


def test_status_reports_stored_progress_and_last_error(client, session, sync_status):
    _ingest(session, block(700, [transfer_tx("s", "A", "B", 1)]), epoch=7)
    sync_status.record_commit(700, 7)
    sync_status.record_error(701, TimeoutError("read timed out"))

    resp = client.get("/status")
    assert resp.status_code == 200, resp.text
    body = resp.json()

    assert body["last_synced_slot"] == 700
    assert body["epoch"] == 7
    assert body["ingestion"]["state"] == "stalled"
    assert body["ingestion"]["last_error_slot"] == 701
    assert "read timed out" in body["ingestion"]["last_error"]


def test_status_before_any_ingestion(client):
    body = client.get("/status").json()

    assert body["last_synced_slot"] is None
    assert body["ingestion"]["state"] == "starting"
