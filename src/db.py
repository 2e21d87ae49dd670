"""
Persistence layer: the only module that reads or writes the store.

Writes happen one slot at a time through commit_slot(), which is a single
database transaction covering the slot's transactions, their account links
and the sync state row. Reads go through their own sessions; on SQLite the
WAL journal lets them see the last committed slot without waiting on the
writer.
"""
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import event, func
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, col, create_engine, select

from logger import get_logger
from models import AccountLink, SyncState, Transaction, utcnow
from settings import is_memory_sqlite

logger = get_logger(__name__)

SYNC_STATE_ID = 1
# Keeps multi-row INSERTs under SQLite's bound-parameter limit.
INSERT_BATCH_SIZE = 500


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, echo=echo, pool_pre_ping=True)

    kwargs = {"connect_args": {"check_same_thread": False}}
    if is_memory_sqlite(database_url):
        # One shared connection, otherwise every checkout sees an empty database.
        kwargs["poolclass"] = StaticPool
    engine = create_engine(database_url, echo=echo, **kwargs)
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


def init_db(engine: Engine) -> None:
    SQLModel.metadata.create_all(engine)


def _insert_ignore(session: Session, model, rows: List[dict]) -> None:
    """
    INSERT ... ON CONFLICT DO NOTHING, batched. Existing keys are left as they are.
    """
    if not rows:
        return
    dialect = session.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    for start in range(0, len(rows), INSERT_BATCH_SIZE):
        stmt = insert(model.__table__).values(rows[start:start + INSERT_BATCH_SIZE]).on_conflict_do_nothing()
        session.exec(stmt)


def _insert_transactions(session: Session, transactions: Sequence[Transaction]) -> None:
    _insert_ignore(session, Transaction, [tx.model_dump() for tx in transactions])


def _insert_links(session: Session, links: Sequence[AccountLink]) -> None:
    _insert_ignore(session, AccountLink, [link.model_dump() for link in links])


def _advance_sync_state(session: Session, slot: int, epoch: int) -> SyncState:
    state = session.get(SyncState, SYNC_STATE_ID)
    if state is None:
        state = SyncState(id=SYNC_STATE_ID, last_synced_slot=slot, epoch=epoch)
    elif slot > state.last_synced_slot:
        state.last_synced_slot = slot
        state.epoch = epoch
        state.updated_at = utcnow()
    # A slot at or below the cursor is a replay; the cursor never moves back.
    session.add(state)
    return state


def commit_slot(
    session: Session,
    slot: int,
    transactions: Sequence[Transaction],
    links: Sequence[AccountLink],
    epoch: int,
) -> SyncState:
    """
    Persist one slot atomically: transactions, account links and the sync state.

    Re-committing a slot that is already stored is a no-op. If any statement
    fails the whole slot is rolled back and the error re-raised.
    """
    try:
        _insert_transactions(session, transactions)
        _insert_links(session, links)
        state = _advance_sync_state(session, slot, epoch)
        session.commit()
    except Exception:
        session.rollback()
        raise
    return state


def initialize_sync_state(session: Session, start_slot: int, epoch: int) -> SyncState:
    """
    Create the sync state for a cold start so ingestion begins at `start_slot`.
    An existing row is returned untouched.
    """
    state = session.get(SyncState, SYNC_STATE_ID)
    if state is not None:
        return state
    state = SyncState(id=SYNC_STATE_ID, last_synced_slot=start_slot - 1, epoch=epoch)
    session.add(state)
    session.commit()
    session.refresh(state)
    logger.info("sync_state_initialized", start_slot=start_slot, epoch=epoch)
    return state


def get_last_sync_state(session: Session) -> Optional[SyncState]:
    return session.get(SyncState, SYNC_STATE_ID)


def _account_signatures(address: str):
    return select(AccountLink.transaction_signature).where(AccountLink.account_address == address)


def transactions_by_account(
    session: Session,
    address: str,
    limit: Optional[int] = None,
    offset: int = 0,
) -> List[Transaction]:
    """
    Transactions touching `address` in any role, oldest slot first.
    """
    stmt = (
        select(Transaction)
        .where(col(Transaction.signature).in_(_account_signatures(address)))
        .order_by(Transaction.slot, Transaction.signature)
        .offset(offset)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(session.exec(stmt).all())


def account_transactions_page(
    session: Session,
    address: str,
    limit: Optional[int] = None,
    offset: int = 0,
) -> Tuple[int, List[Transaction]]:
    """
    One page of transactions_by_account() together with the total count.

    Both come from a single SELECT (a window count), so they describe the
    same committed slot even while the walker is writing. An empty page falls
    back to a plain count.
    """
    total = func.count().over().label("total")
    stmt = (
        select(Transaction, total)
        .where(col(Transaction.signature).in_(_account_signatures(address)))
        .order_by(Transaction.slot, Transaction.signature)
        .offset(offset)
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    rows = session.exec(stmt).all()
    if not rows:
        return count_transactions_by_account(session, address), []
    return rows[0][1], [tx for tx, _ in rows]


def count_transactions_by_account(session: Session, address: str) -> int:
    stmt = select(func.count(func.distinct(AccountLink.transaction_signature))).where(
        AccountLink.account_address == address
    )
    return session.exec(stmt).one()


def transaction_by_signature(session: Session, signature: str) -> Optional[Transaction]:
    return session.get(Transaction, signature)


def links_for_transaction(session: Session, signature: str) -> List[AccountLink]:
    stmt = (
        select(AccountLink)
        .where(AccountLink.transaction_signature == signature)
        .order_by(AccountLink.role, AccountLink.account_address)
    )
    return list(session.exec(stmt).all())


def current_sync_status(session: Session) -> Dict[str, Optional[int]]:
    state = get_last_sync_state(session)
    if state is None:
        return {"last_synced_slot": None, "epoch": None}
    return {"last_synced_slot": state.last_synced_slot, "epoch": state.epoch}
