"""Per-user credit ledger with optimistic read-modify-write transactions."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import logging
from typing import Callable, FrozenSet, Iterable, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.credit_transaction import CreditTransaction
from models.user_ledger import UserLedger


logger = logging.getLogger(__name__)

SIGNUP_TRANSACTION_TYPE = "signup_grant"


class LedgerError(Exception):
    """Base class for ledger business errors."""


class LedgerUserNotFoundError(LedgerError):
    pass


class InsufficientCreditsError(LedgerError):
    pass


class LedgerConflictError(LedgerError):
    """Raised when a write keeps losing to concurrent writers."""


@dataclass(frozen=True)
class LedgerEntry:
    id: str
    credits: int
    timestamp: datetime
    type: str

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "credits": self.credits,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
            "type": self.type,
        }


@dataclass(frozen=True)
class LedgerState:
    """Snapshot of a user ledger row.

    The transaction log itself is not loaded: ``transaction_count`` is its
    length, ``known_transaction_ids`` holds whichever of the ids asked for by
    the caller already exist, and ``appended`` carries the entries this write
    adds to the end of the log.
    """

    user_id: str
    credits: int = 0
    total_credits: int = 0
    transaction_count: int = 0
    email: Optional[str] = None
    name: Optional[str] = None
    created_at: Optional[datetime] = None
    known_transaction_ids: FrozenSet[str] = field(default_factory=frozenset)
    appended: Tuple[LedgerEntry, ...] = ()

    def has_transaction(self, transaction_id: str) -> bool:
        return transaction_id in self.known_transaction_ids or any(
            entry.id == transaction_id for entry in self.appended
        )

    def with_entry(self, entry: LedgerEntry) -> "LedgerState":
        return replace(self, appended=self.appended + (entry,))


LedgerMutation = Callable[[Optional[LedgerState]], Optional[LedgerState]]


def _snapshot(record: UserLedger, known_transaction_ids: FrozenSet[str]) -> LedgerState:
    return LedgerState(
        user_id=record.user_id,
        credits=int(record.credits or 0),
        total_credits=int(record.total_credits or 0),
        transaction_count=int(record.transaction_count or 0),
        email=record.email,
        name=record.name,
        created_at=record.created_at,
        known_transaction_ids=known_transaction_ids,
    )


async def _load_record(db: AsyncSession, user_id: str) -> Optional[UserLedger]:
    result = await db.execute(
        select(UserLedger)
        .where(UserLedger.user_id == user_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def _load_known_transaction_ids(db: AsyncSession, user_id: str, transaction_ids: Tuple[str, ...]) -> FrozenSet[str]:
    if not transaction_ids:
        return frozenset()
    result = await db.execute(
        select(CreditTransaction.id).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.id.in_(transaction_ids),
        )
    )
    return frozenset(result.scalars().all())


def _apply(
    db: AsyncSession,
    record: Optional[UserLedger],
    current: Optional[LedgerState],
    updated: LedgerState,
) -> int:
    offset = current.transaction_count if current else 0
    if updated.transaction_count != offset:
        raise ValueError("Ledger transactions are append-only.")

    if record is None:
        record = UserLedger(user_id=updated.user_id)
        db.add(record)

    record.credits = int(updated.credits)
    record.total_credits = int(updated.total_credits)
    record.transaction_count = offset + len(updated.appended)
    record.email = updated.email
    record.name = updated.name
    for index, entry in enumerate(updated.appended):
        db.add(
            CreditTransaction(
                id=entry.id,
                user_id=updated.user_id,
                position=offset + index,
                credits=int(entry.credits),
                type=entry.type,
                timestamp=entry.timestamp,
            )
        )
    return record.transaction_count


async def transactionally(
    db: AsyncSession,
    user_id: str,
    mutate: LedgerMutation,
    *,
    lookup_transaction_ids: Iterable[str] = (),
    max_attempts: Optional[int] = None,
) -> Optional[LedgerState]:
    """Apply ``mutate`` to the freshest ledger state and commit the result.

    ``mutate`` receives the current snapshot (``None`` when the user has no
    ledger yet) and returns the desired snapshot. Returning the input
    unchanged commits nothing. Write conflicts roll back and re-run
    ``mutate`` against a fresh read; exceptions raised by ``mutate`` roll
    back and propagate. Ids in ``lookup_transaction_ids`` that are already
    on the user's log show up in ``known_transaction_ids``.
    """
    attempts = max(int(max_attempts or settings.LEDGER_TRANSACTION_MAX_ATTEMPTS), 1)
    lookup_ids = tuple(dict.fromkeys(lookup_transaction_ids))
    for attempt in range(1, attempts + 1):
        try:
            record = await _load_record(db, user_id)
            current = None
            if record is not None:
                current = _snapshot(record, await _load_known_transaction_ids(db, user_id, lookup_ids))
            updated = mutate(current)
            if updated is None or updated == current:
                await db.rollback()
                return current
            if updated.credits < 0:
                raise InsufficientCreditsError("Insufficient credits")
            transaction_count = _apply(db, record, current, updated)
            await db.commit()
            return replace(
                updated,
                transaction_count=transaction_count,
                known_transaction_ids=updated.known_transaction_ids | {entry.id for entry in updated.appended},
                appended=(),
            )
        except (StaleDataError, IntegrityError) as exc:
            await db.rollback()
            logger.info(
                "Ledger write conflict for user %s (attempt %s/%s): %s",
                user_id,
                attempt,
                attempts,
                exc.__class__.__name__,
            )
        except Exception:
            await db.rollback()
            raise
    raise LedgerConflictError(f"Ledger update for user {user_id} did not commit after {attempts} attempts.")


async def get_ledger(db: AsyncSession, user_id: str) -> Optional[LedgerState]:
    record = await _load_record(db, user_id)
    if record is None:
        return None
    return _snapshot(record, frozenset())


async def get_transactions(db: AsyncSession, user_id: str, *, limit: Optional[int] = None) -> List[LedgerEntry]:
    """Newest-first slice of the user's transaction log."""
    query = (
        select(CreditTransaction)
        .where(CreditTransaction.user_id == user_id)
        .order_by(CreditTransaction.position.desc())
    )
    if limit:
        query = query.limit(limit)
    result = await db.execute(query)
    return [
        LedgerEntry(id=row.id, credits=int(row.credits), timestamp=row.timestamp, type=row.type)
        for row in result.scalars().all()
    ]


async def grant_credits(
    db: AsyncSession,
    user_id: str,
    *,
    credits: int,
    transaction_id: str,
    transaction_type: str,
) -> LedgerState:
    """Add credits and append one transaction entry; a repeated ``transaction_id`` is a no-op."""
    grant = int(credits)
    if grant <= 0:
        raise ValueError("credits must be greater than 0")

    def _grant(state: Optional[LedgerState]) -> LedgerState:
        entry = LedgerEntry(
            id=transaction_id,
            credits=grant,
            timestamp=datetime.now(timezone.utc),
            type=transaction_type,
        )
        if state is None:
            return LedgerState(user_id=user_id, credits=grant, total_credits=grant).with_entry(entry)
        if state.has_transaction(transaction_id):
            logger.warning("Transaction %s already on ledger for user %s; skipping grant", transaction_id, user_id)
            return state
        return replace(
            state,
            credits=state.credits + grant,
            total_credits=state.total_credits + grant,
        ).with_entry(entry)

    return await transactionally(db, user_id, _grant, lookup_transaction_ids=(transaction_id,))


async def consume_credits(db: AsyncSession, user_id: str, *, cost: int) -> LedgerState:
    """Debit ``cost`` credits; rejects unknown users and insufficient balances without mutation."""
    debit = int(cost)
    if debit <= 0:
        raise ValueError("cost must be greater than 0")

    def _debit(state: Optional[LedgerState]) -> LedgerState:
        if state is None:
            raise LedgerUserNotFoundError("User not found")
        if state.credits < debit:
            raise InsufficientCreditsError("Insufficient credits")
        return replace(state, credits=state.credits - debit)

    return await transactionally(db, user_id, _debit)


async def register_user(
    db: AsyncSession,
    user_id: str,
    *,
    email: str,
    name: Optional[str] = None,
) -> Tuple[LedgerState, bool]:
    """Create the ledger with the signup grant, or refresh the profile of an existing one."""
    signup_credits = max(int(settings.SIGNUP_CREDITS), 0)
    created = False

    def _register(state: Optional[LedgerState]) -> LedgerState:
        nonlocal created
        if state is None:
            created = True
            fresh = LedgerState(
                user_id=user_id,
                credits=signup_credits,
                total_credits=signup_credits,
                email=email,
                name=name or "",
            )
            if signup_credits:
                fresh = fresh.with_entry(
                    LedgerEntry(
                        id=f"signup:{user_id}",
                        credits=signup_credits,
                        timestamp=datetime.now(timezone.utc),
                        type=SIGNUP_TRANSACTION_TYPE,
                    )
                )
            return fresh
        created = False
        return replace(state, email=email, name=name if name is not None else state.name)

    state = await transactionally(db, user_id, _register)
    return state, created
