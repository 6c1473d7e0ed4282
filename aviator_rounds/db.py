# db.py
"""
Database Layer – ledger & round history

Responsibilities:
- Async database engine & session lifecycle
- Participant accounts with ledger-safe balances (Decimal arithmetic)
- Append-only transaction log linked to round ids
- Append-only round history with pending settlements

Alignment with Engine:
- SqlBalanceLedger is the BalanceLedger the supervisor reserves stakes
  against and settles credits into
- SqlRoundHistory persists RoundOutcome before any money moves, so a
  failed settlement can be replayed without recomputing the round
"""

from __future__ import annotations

import enum
import logging
import os
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
    relationship,
)

from .engine import Credit, RoundHistoryEntry, RoundOutcome
from .utils import CENT, utc_now

logger = logging.getLogger("aviator.db")

# =====================================================
# CONFIG
# =====================================================

DATABASE_URL = os.getenv(
    "DATABASE_URL",
    "sqlite+aiosqlite:///./aviator.db"
)

# Default starting balance for new demo participants
STARTING_BALANCE = Decimal(os.getenv("STARTING_BALANCE", "1000.00"))

DB_ECHO = os.getenv("DB_ECHO", "").lower() in ("1", "true", "yes")


# =====================================================
# BASE
# =====================================================

class Base(DeclarativeBase):
    pass


# =====================================================
# ENUMS & ERRORS
# =====================================================

class TransactionType(str, enum.Enum):
    BET = "bet"
    WIN = "win"
    REFUND = "refund"


class InsufficientFunds(ValueError):
    """Balance would go negative."""


# =====================================================
# MODELS
# =====================================================

class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    # Identity handed over by the auth collaborator
    participant_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        index=True,
        nullable=False,
    )

    # PRECISION: 18 digits total, 2 after decimal.
    balance: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
        default=STARTING_BALANCE,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )


class Transaction(Base):
    """
    Immutable ledger record (append-only).
    Links financial movement to specific game rounds.
    """

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    type: Mapped[TransactionType] = mapped_column(
        Enum(TransactionType, name="transaction_type"),
        nullable=False,
    )

    # Signed amount: -10.00 for bet, +20.00 for win
    amount: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    balance_after: Mapped[Decimal] = mapped_column(
        Numeric(18, 2),
        nullable=False,
    )

    round_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        index=True,
    )

    # Settlement retries reuse the key, so a credit lands once
    idempotency_key: Mapped[str | None] = mapped_column(
        String(128),
        nullable=True,
        unique=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )


class RoundRecord(Base):
    """Finished round. Written once, never updated."""

    __tablename__ = "rounds"

    round_id: Mapped[int] = mapped_column(Integer, primary_key=True)

    crash_point: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)

    final_multiplier: Mapped[Decimal] = mapped_column(Numeric(8, 2), nullable=False)

    seed: Mapped[str] = mapped_column(String(128), nullable=False)

    commitment: Mapped[str] = mapped_column(String(64), nullable=False)

    voided: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    crashed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    settlements: Mapped[list["SettlementRecord"]] = relationship(
        back_populates="round",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_entry(self) -> RoundHistoryEntry:
        return RoundHistoryEntry(
            round_id=self.round_id,
            crash_point=self.crash_point,
            final_multiplier=self.final_multiplier,
            crashed_at=self.crashed_at,
            seed=self.seed,
            commitment=self.commitment,
            voided=self.voided,
        )


class SettlementRecord(Base):
    """Credit owed by a finished round; `settled` flips once the ledger acks."""

    __tablename__ = "settlements"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    round_id: Mapped[int] = mapped_column(
        ForeignKey("rounds.round_id", ondelete="CASCADE"),
        index=True,
        nullable=False,
    )

    participant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    kind: Mapped[str] = mapped_column(String(16), nullable=False)

    settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)

    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    round: Mapped[RoundRecord] = relationship(back_populates="settlements")


# =====================================================
# ENGINE & SESSION
# =====================================================

engine = create_async_engine(
    DATABASE_URL,
    echo=DB_ECHO,
    # SSL is critical for Postgres in production
    connect_args={"ssl": "require"} if "postgresql" in DATABASE_URL else {},
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    expire_on_commit=False,
)


# =====================================================
# INIT
# =====================================================

async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """
    Creates all tables. Safe to run on every startup.
    """
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


# =====================================================
# REPOSITORY HELPERS
# =====================================================

async def get_or_create_user(
    session: AsyncSession,
    participant_id: str,
    starting_balance: Decimal = STARTING_BALANCE,
) -> User:
    """
    Fetches a participant or creates one with default balance.
    """
    result = await session.execute(
        select(User).where(User.participant_id == participant_id)
    )
    user = result.scalar_one_or_none()

    if user:
        return user

    new_user = User(participant_id=participant_id, balance=starting_balance)
    session.add(new_user)

    try:
        await session.commit()
        await session.refresh(new_user)
        return new_user
    except IntegrityError:
        # Created in parallel by another request
        await session.rollback()
        return await get_or_create_user(session, participant_id, starting_balance)


async def apply_transaction(
    session: AsyncSession,
    user: User,
    amount: Decimal,
    tx_type: TransactionType,
    round_id: int | None = None,
    idempotency_key: str | None = None,
) -> User:
    """
    Atomic balance update + immutable ledger entry.

    `amount` is the signed change in whole cents. A transaction whose
    idempotency key is already recorded is a no-op.

    The balance check and the write are one conditional UPDATE, so two
    overlapping debits cannot both pass against the same balance.
    """
    if amount != amount.quantize(CENT):
        raise ValueError(f"Amount {amount} is not a whole number of cents")

    if idempotency_key is not None:
        seen = await session.execute(
            select(Transaction.id).where(Transaction.idempotency_key == idempotency_key)
        )
        if seen.scalar_one_or_none() is not None:
            logger.info(f"Skipping duplicate ledger entry {idempotency_key}")
            return user

    # round() keeps float-backed NUMERIC columns (SQLite) on exact cents
    new_balance_expr = func.round(User.balance + amount, 2)
    result = await session.execute(
        update(User)
        .where(User.id == user.id, new_balance_expr >= 0)
        .values(balance=new_balance_expr, updated_at=utc_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        await session.rollback()
        raise InsufficientFunds("Insufficient balance")

    refreshed = await session.execute(
        select(User)
        .where(User.id == user.id)
        .execution_options(populate_existing=True)
    )
    user_updated = refreshed.scalar_one()

    session.add(Transaction(
        user_id=user_updated.id,
        type=tx_type,
        amount=amount,
        balance_after=user_updated.balance,
        round_id=round_id,
        idempotency_key=idempotency_key,
    ))
    await session.commit()
    await session.refresh(user_updated)

    return user_updated


# =====================================================
# COLLABORATORS
# =====================================================

class SqlBalanceLedger:
    """
    BalanceLedger backed by the users/transactions tables.

    reserve(): debit the stake when a bet is accepted.
    settle():  signed credit; idempotent when a key is given.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker = AsyncSessionLocal,
        starting_balance: Decimal = STARTING_BALANCE,
    ) -> None:
        self._sessions = session_factory
        self._starting_balance = starting_balance

    async def balance(self, participant_id: str) -> Decimal:
        async with self._sessions() as session:
            user = await get_or_create_user(session, participant_id, self._starting_balance)
            return user.balance

    async def reserve(
        self,
        participant_id: str,
        amount: Decimal,
        round_id: int | None = None,
    ) -> bool:
        async with self._sessions() as session:
            user = await get_or_create_user(session, participant_id, self._starting_balance)
            try:
                await apply_transaction(
                    session, user, -abs(amount), TransactionType.BET, round_id,
                )
            except InsufficientFunds:
                await session.rollback()
                return False
            return True

    async def settle(
        self,
        participant_id: str,
        delta: Decimal,
        round_id: int | None = None,
        key: str | None = None,
        refund: bool = False,
    ) -> None:
        tx_type = TransactionType.REFUND if refund else TransactionType.WIN
        async with self._sessions() as session:
            user = await get_or_create_user(session, participant_id, self._starting_balance)
            await apply_transaction(session, user, delta, tx_type, round_id, key)


class SqlRoundHistory:
    """
    Append-only feed of finished rounds.
    Outcome and owed credits are written in one transaction.
    """

    def __init__(self, session_factory: async_sessionmaker = AsyncSessionLocal) -> None:
        self._sessions = session_factory

    async def append(self, outcome: RoundOutcome) -> None:
        entry = outcome.entry
        async with self._sessions() as session:
            if await session.get(RoundRecord, entry.round_id) is not None:
                # Retried after a lost ack; the first write stands
                return
            record = RoundRecord(
                round_id=entry.round_id,
                crash_point=entry.crash_point,
                final_multiplier=entry.final_multiplier,
                seed=entry.seed,
                commitment=entry.commitment,
                voided=entry.voided,
                crashed_at=entry.crashed_at,
            )
            record.settlements = [
                SettlementRecord(
                    participant_id=credit.participant_id,
                    amount=credit.amount,
                    kind=credit.kind,
                )
                for credit in outcome.credits
            ]
            session.add(record)
            await session.commit()

    async def recent(self, limit: int = 20) -> List[RoundHistoryEntry]:
        async with self._sessions() as session:
            result = await session.execute(
                select(RoundRecord).order_by(RoundRecord.round_id.desc()).limit(limit)
            )
            return [record.to_entry() for record in result.scalars()]

    async def get(self, round_id: int) -> Optional[RoundHistoryEntry]:
        async with self._sessions() as session:
            record = await session.get(RoundRecord, round_id)
            return record.to_entry() if record else None

    async def last_round_id(self) -> int:
        async with self._sessions() as session:
            result = await session.execute(select(func.max(RoundRecord.round_id)))
            return result.scalar_one_or_none() or 0

    async def pending_settlements(self) -> List[Tuple[int, Credit]]:
        async with self._sessions() as session:
            result = await session.execute(
                select(SettlementRecord)
                .where(SettlementRecord.settled.is_(False))
                .order_by(SettlementRecord.round_id, SettlementRecord.participant_id)
            )
            return [
                (s.round_id, Credit(s.participant_id, s.amount, s.kind))
                for s in result.scalars()
            ]

    async def mark_settled(self, round_id: int, participant_id: str) -> None:
        async with self._sessions() as session:
            result = await session.execute(
                select(SettlementRecord).where(
                    SettlementRecord.round_id == round_id,
                    SettlementRecord.participant_id == participant_id,
                )
            )
            for record in result.scalars():
                record.settled = True
                record.settled_at = utc_now()
            await session.commit()
