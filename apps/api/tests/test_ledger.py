import asyncio
from dataclasses import replace

import pytest
from sqlalchemy.future import select

from models.credit_transaction import CreditTransaction
from services.ledger import (
    InsufficientCreditsError,
    LedgerConflictError,
    LedgerUserNotFoundError,
    consume_credits,
    get_ledger,
    get_transactions,
    grant_credits,
    register_user,
    transactionally,
)


async def _grant(session_maker, user_id, credits, transaction_id, transaction_type="checkout_session"):
    async with session_maker() as db:
        return await grant_credits(
            db,
            user_id,
            credits=credits,
            transaction_id=transaction_id,
            transaction_type=transaction_type,
        )


async def _consume(session_maker, user_id, cost):
    async with session_maker() as db:
        return await consume_credits(db, user_id, cost=cost)


async def _ledger(session_maker, user_id):
    async with session_maker() as db:
        return await get_ledger(db, user_id)


async def _history(session_maker, user_id):
    async with session_maker() as db:
        return list(reversed(await get_transactions(db, user_id)))


@pytest.mark.asyncio
async def test_grant_creates_ledger_for_new_user(session_maker):
    state = await _grant(session_maker, "new-user", 5, "evt_new")

    assert state.credits == 5
    assert state.total_credits == 5
    assert state.transaction_count == 1

    stored = await _ledger(session_maker, "new-user")
    assert stored.credits == 5
    assert stored.total_credits == 5
    assert stored.transaction_count == 1
    history = await _history(session_maker, "new-user")
    assert [entry.id for entry in history] == ["evt_new"]
    assert history[0].credits == 5
    assert history[0].type == "checkout_session"


@pytest.mark.asyncio
async def test_grant_appends_to_existing_ledger(session_maker):
    await _grant(session_maker, "repeat-buyer", 5, "evt_1")
    await _consume(session_maker, "repeat-buyer", 2)
    state = await _grant(session_maker, "repeat-buyer", 10, "evt_2", "payment_intent")

    assert state.credits == 13
    assert state.total_credits == 15
    assert state.transaction_count == 2
    history = await _history(session_maker, "repeat-buyer")
    assert [entry.id for entry in history] == ["evt_1", "evt_2"]
    assert history[1].type == "payment_intent"


@pytest.mark.asyncio
async def test_grant_with_known_transaction_id_is_noop(session_maker):
    await _grant(session_maker, "dup-user", 5, "evt_dup")
    state = await _grant(session_maker, "dup-user", 5, "evt_dup")

    assert state.credits == 5
    assert state.total_credits == 5
    assert state.transaction_count == 1

    async with session_maker() as db:
        rows = (await db.execute(select(CreditTransaction).where(CreditTransaction.user_id == "dup-user"))).scalars().all()
    assert len(rows) == 1


@pytest.mark.asyncio
async def test_consume_decrements_credits_only(session_maker):
    await _grant(session_maker, "spender", 5, "evt_spend")
    state = await _consume(session_maker, "spender", 2)

    assert state.credits == 3
    assert state.total_credits == 5
    assert state.transaction_count == 1


@pytest.mark.asyncio
async def test_consume_rejects_insufficient_balance_without_mutation(session_maker):
    await _grant(session_maker, "short-user", 2, "evt_short")

    with pytest.raises(InsufficientCreditsError, match="Insufficient credits"):
        await _consume(session_maker, "short-user", 3)

    stored = await _ledger(session_maker, "short-user")
    assert stored.credits == 2
    assert stored.total_credits == 2


@pytest.mark.asyncio
async def test_consume_exact_balance_reaches_zero(session_maker):
    await _grant(session_maker, "exact-user", 4, "evt_exact")
    state = await _consume(session_maker, "exact-user", 4)
    assert state.credits == 0

    with pytest.raises(InsufficientCreditsError):
        await _consume(session_maker, "exact-user", 1)


@pytest.mark.asyncio
async def test_consume_unknown_user_is_rejected(session_maker):
    with pytest.raises(LedgerUserNotFoundError, match="User not found"):
        await _consume(session_maker, "ghost", 1)
    assert await _ledger(session_maker, "ghost") is None


@pytest.mark.asyncio
async def test_concurrent_grants_and_debits_do_not_lose_updates(session_maker):
    await _grant(session_maker, "busy-user", 10, "evt_seed")

    grants = [_grant(session_maker, "busy-user", 3, f"evt_grant_{index}") for index in range(4)]
    debits = [_consume(session_maker, "busy-user", 2) for _ in range(3)]
    await asyncio.gather(*grants, *debits)

    stored = await _ledger(session_maker, "busy-user")
    assert stored.credits == 10 + 4 * 3 - 3 * 2
    assert stored.total_credits == 10 + 4 * 3
    assert stored.transaction_count == 5
    history = await _history(session_maker, "busy-user")
    assert [entry.id for entry in history][0] == "evt_seed"
    assert sorted(entry.id for entry in history) == sorted(
        ["evt_seed"] + [f"evt_grant_{index}" for index in range(4)]
    )


@pytest.mark.asyncio
async def test_transactionally_rejects_rewriting_history(session_maker):
    await _grant(session_maker, "history-user", 5, "evt_hist")

    async with session_maker() as db:
        with pytest.raises(ValueError, match="append-only"):
            await transactionally(db, "history-user", lambda state: state.__class__(user_id=state.user_id, credits=1))

    stored = await _ledger(session_maker, "history-user")
    assert stored.credits == 5


@pytest.mark.asyncio
async def test_transactionally_gives_up_after_repeated_conflicts(session_maker):
    await _grant(session_maker, "contended", 5, "evt_contended")

    async def _conflicting_mutation_runs(db, calls):
        def _mutate(state):
            calls.append(state.credits)
            return replace(state, credits=state.credits + 1)

        return await transactionally(db, "contended", _mutate, max_attempts=2)

    calls = []
    async with session_maker() as db:
        # Bump the row version behind the session's back before every commit.
        original_commit = db.commit

        async def _commit_after_foreign_write():
            async with session_maker() as other:
                await grant_credits(
                    other,
                    "contended",
                    credits=1,
                    transaction_id=f"evt_foreign_{len(calls)}",
                    transaction_type="checkout_session",
                )
            await original_commit()

        db.commit = _commit_after_foreign_write
        with pytest.raises(LedgerConflictError):
            await _conflicting_mutation_runs(db, calls)

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_register_user_grants_signup_credits_once(session_maker):
    async with session_maker() as db:
        state, created = await register_user(db, "signup-user", email="a@example.com", name="Ada")
    assert created is True
    assert state.credits == 5
    assert state.total_credits == 5
    assert state.transaction_count == 1
    assert [entry.type for entry in await _history(session_maker, "signup-user")] == ["signup_grant"]

    async with session_maker() as db:
        again, created_again = await register_user(db, "signup-user", email="new@example.com")
    assert created_again is False
    assert again.credits == 5
    assert again.email == "new@example.com"
    assert again.name == "Ada"
    assert again.transaction_count == 1


@pytest.mark.asyncio
async def test_transactionally_reads_only_requested_transaction_ids(session_maker):
    for index in range(3):
        await _grant(session_maker, "long-history", 1, f"evt_hist_{index}")

    seen = []

    def _observe(state):
        seen.append(state)
        return state

    async with session_maker() as db:
        result = await transactionally(
            db,
            "long-history",
            _observe,
            lookup_transaction_ids=("evt_hist_1", "evt_unknown"),
        )

    assert seen[0].transaction_count == 3
    assert seen[0].known_transaction_ids == frozenset({"evt_hist_1"})
    assert seen[0].has_transaction("evt_hist_1")
    assert not seen[0].has_transaction("evt_hist_0")
    assert result.credits == 3
