from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Text
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_type(enum_cls: type) -> SAEnum:
    # Store the enum values ("feePayer"), not the member names.
    return SAEnum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        length=32,
    )


class TransactionKind(str, Enum):
    NATIVE_TRANSFER = "NativeTransfer"
    UNSUPPORTED = "Unsupported"


class TransactionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class AccountRole(str, Enum):
    SENDER = "sender"
    RECEIVER = "receiver"
    FEE_PAYER = "feePayer"


class Transaction(SQLModel, table=True):
    """
    One on-chain transaction, keyed by its first signature.

    raw_payload is always stored so unsupported transactions can be decoded
    later; decoded/kind/sender/receiver/amount may be rewritten by such a pass.
    """
    __tablename__ = "transactions"

    signature: str = Field(primary_key=True)
    slot: int = Field(sa_type=BigInteger, nullable=False, index=True)
    timestamp: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    raw_payload: str = Field(sa_type=Text, nullable=False)

    decoded: bool = Field(default=False)
    kind: TransactionKind = Field(default=TransactionKind.UNSUPPORTED, sa_type=_enum_type(TransactionKind))
    sender: Optional[str] = None
    receiver: Optional[str] = None
    amount: Optional[int] = Field(default=None, sa_type=BigInteger)  # lamports

    status: TransactionStatus = Field(default=TransactionStatus.SUCCESS, sa_type=_enum_type(TransactionStatus))


class AccountLink(SQLModel, table=True):
    """
    Bridge between an account address and a transaction it took part in.
    """
    __tablename__ = "account_links"

    account_address: str = Field(primary_key=True, index=True)
    transaction_signature: str = Field(primary_key=True, foreign_key="transactions.signature")
    role: AccountRole = Field(primary_key=True, sa_type=_enum_type(AccountRole))


class SyncState(SQLModel, table=True):
    """
    Singleton row holding the ingestion resume point.
    """
    __tablename__ = "sync_state"

    id: int = Field(default=1, primary_key=True)
    last_synced_slot: int = Field(sa_type=BigInteger, nullable=False)
    epoch: int = Field(sa_type=BigInteger, nullable=False)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
