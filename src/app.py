import json
from typing import Optional

import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from sqlmodel import Session

from db import (
    account_transactions_page,
    create_db_engine,
    current_sync_status,
    init_db,
    links_for_transaction,
    transaction_by_signature,
)
from logger import configure_logging, get_logger
from models import Transaction
from services import build_walker
from settings import get_settings
from sync_status import SyncStatus
from worker import IngestionWorker

logger = get_logger(__name__)

settings = get_settings()
engine = create_db_engine(settings.database_url)

app = FastAPI(title="Solana slot aggregator")
app.state.sync_status = SyncStatus()
app.state.worker = None


def get_session():
    with Session(engine) as session:
        yield session


def get_sync_status(request: Request) -> SyncStatus:
    return request.app.state.sync_status


@app.on_event("startup")
def on_startup():
    configure_logging(settings.log_level, settings.log_format)
    init_db(engine)
    if settings.ingest_on_startup:
        status = app.state.sync_status
        worker = IngestionWorker(lambda stop: build_walker(settings, engine, status, stop), status)
        worker.start()
        app.state.worker = worker
    logger.info("api_started", server_address=settings.server_address, ingest=settings.ingest_on_startup)


@app.on_event("shutdown")
def on_shutdown():
    worker = app.state.worker
    if worker is not None:
        worker.stop()
        app.state.worker = None


def _transaction_payload(tx: Transaction) -> dict:
    return {
        "signature": tx.signature,
        "slot": tx.slot,
        "timestamp": tx.timestamp,
        "decoded": tx.decoded,
        "kind": tx.kind,
        "sender": tx.sender,
        "receiver": tx.receiver,
        "amount": tx.amount,
        "status": tx.status,
    }


@app.get("/transaction")
def get_transaction(tx_id: str = Query(..., alias="tx-id"), session: Session = Depends(get_session)):
    """
    Look up a single transaction by signature, with its account links and raw payload.
    Example usage: GET /transaction?tx-id=<signature>
    """
    tx = transaction_by_signature(session, tx_id)
    if tx is None:
        raise HTTPException(status_code=404, detail="Transaction not found")

    payload = _transaction_payload(tx)
    payload["accounts"] = [
        {"account_id": link.account_address, "role": link.role}
        for link in links_for_transaction(session, tx.signature)
    ]
    payload["raw_payload"] = json.loads(tx.raw_payload)
    return payload


@app.get("/accountid")
def get_account(
    account_id: str = Query(..., alias="account-id"),
    limit: Optional[int] = Query(None, gt=0),
    offset: int = Query(0, ge=0),
    session: Session = Depends(get_session),
):
    """
    Transactions an account took part in, oldest slot first.
    """
    total, txs = account_transactions_page(session, account_id, limit=limit, offset=offset)
    if total == 0:
        raise HTTPException(status_code=404, detail="Account not found")
    return {
        "account_id": account_id,
        "limit": limit,
        "offset": offset,
        "total_transactions": total,
        "transactions": [_transaction_payload(tx) for tx in txs],
    }


@app.get("/status")
def get_status(session: Session = Depends(get_session), sync_status: SyncStatus = Depends(get_sync_status)):
    """
    Last committed slot as stored, plus the live walker state and its most recent error.
    """
    stored = current_sync_status(session)
    return {
        "last_synced_slot": stored["last_synced_slot"],
        "epoch": stored["epoch"],
        "ingestion": sync_status.snapshot().as_dict(),
    }


def main():
    uvicorn.run(app, host=settings.server_host, port=settings.server_port, log_level=settings.log_level.lower())


if __name__ == "__main__":
    main()
