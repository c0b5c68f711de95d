import asyncio

import pytest
from sqlalchemy import func
from sqlalchemy.future import select

from models.audit_log import AuditLogEntry
from models.credit_transaction import CreditTransaction
from models.user import User
from services import ledger
from services.errors import AccountNotFound, InsufficientCredits


async def _create_account(session_maker, account_id="ledger-user", credits=0):
    async with session_maker() as session:
        session.add(User(id=account_id, email=f"{account_id}@example.com", credits=credits))
        await session.commit()


@pytest.mark.asyncio
async def test_ensure_account_grants_signup_bonus_once(session_maker):
    async with session_maker() as session:
        user = await ledger.ensure_account(session, "new-user", "new@example.com")
        assert user.credits == 10
        again = await ledger.ensure_account(session, "new-user", "new@example.com")
        assert again.id == user.id

    async with session_maker() as session:
        entries = await ledger.list_transactions(session, "new-user")
        assert [entry.tx_type for entry in entries] == ["bonus"]
        assert entries[0].amount == 10
        assert entries[0].balance_after == 10


@pytest.mark.asyncio
async def test_balance_matches_transaction_sum(session_maker):
    async with session_maker() as session:
        await ledger.ensure_account(session, "sum-user")
        await ledger.credit(session, "sum-user", 25, "purchase", description="Starter pack")
        await ledger.debit(session, "sum-user", 7, description="Blog Article generation")
        await ledger.credit(session, "sum-user", 3, "refund", description="Refund: bad output")
        await ledger.debit(session, "sum-user", 11)

    async with session_maker() as session:
        balance = await ledger.get_balance(session, "sum-user")
        assert balance == 10 + 25 - 7 + 3 - 11
        assert balance == await ledger.sum_transactions(session, "sum-user")

        entries = await ledger.list_transactions(session, "sum-user")
        assert entries[0].tx_type == "usage"
        assert entries[0].amount == -11
        assert entries[0].balance_after == balance


@pytest.mark.asyncio
async def test_debit_rejects_overdraft_without_side_effects(session_maker):
    await _create_account(session_maker, credits=2)

    async with session_maker() as session:
        with pytest.raises(InsufficientCredits) as exc_info:
            await ledger.debit(session, "ledger-user", 3)
        assert exc_info.value.required == 3
        assert exc_info.value.available == 2

    async with session_maker() as session:
        assert await ledger.get_balance(session, "ledger-user") == 2
        assert await ledger.list_transactions(session, "ledger-user") == []


@pytest.mark.asyncio
async def test_credit_and_debit_validate_amounts(session_maker):
    await _create_account(session_maker, credits=5)

    async with session_maker() as session:
        with pytest.raises(ValueError):
            await ledger.credit(session, "ledger-user", 0, "purchase")
        with pytest.raises(ValueError):
            await ledger.credit(session, "ledger-user", 5, "usage")
        with pytest.raises(ValueError):
            await ledger.debit(session, "ledger-user", -1)


@pytest.mark.asyncio
async def test_unknown_account_raises_not_found(session_maker):
    async with session_maker() as session:
        with pytest.raises(AccountNotFound):
            await ledger.get_balance(session, "ghost")
        with pytest.raises(AccountNotFound):
            await ledger.credit(session, "ghost", 5, "purchase")
        with pytest.raises(AccountNotFound):
            await ledger.debit(session, "ghost", 1)


@pytest.mark.asyncio
async def test_debit_after_stale_balance_read_never_overdraws(session_maker):
    await _create_account(session_maker, credits=3)

    async with session_maker() as first, session_maker() as second:
        # Both callers observe enough credits before either spends them.
        assert await ledger.get_balance(first, "ledger-user") == 3
        assert await ledger.get_balance(second, "ledger-user") == 3
        await first.commit()
        await second.commit()

        await ledger.debit(first, "ledger-user", 3)
        with pytest.raises(InsufficientCredits):
            await ledger.debit(second, "ledger-user", 3)

    async with session_maker() as session:
        assert await ledger.get_balance(session, "ledger-user") == 0
        usage_count = await session.execute(
            select(func.count(CreditTransaction.id)).where(CreditTransaction.tx_type == "usage")
        )
        assert usage_count.scalar() == 1


@pytest.mark.asyncio
async def test_parallel_debits_against_one_cost_balance_succeed_once(session_maker):
    async with session_maker() as session:
        await ledger.ensure_account(session, "parallel-user")
        cost = await ledger.get_balance(session, "parallel-user")
    attempts = 8

    async def spend():
        async with session_maker() as session:
            return await ledger.debit(session, "parallel-user", cost, description="Parallel generation")

    outcomes = await asyncio.gather(*(spend() for _ in range(attempts)), return_exceptions=True)

    succeeded = [outcome for outcome in outcomes if isinstance(outcome, str)]
    rejected = [outcome for outcome in outcomes if isinstance(outcome, InsufficientCredits)]
    assert len(succeeded) == 1
    assert len(rejected) == attempts - 1

    async with session_maker() as session:
        balance = await ledger.get_balance(session, "parallel-user")
        assert balance == 0
        assert balance == await ledger.sum_transactions(session, "parallel-user")
        usage_count = await session.execute(
            select(func.count(CreditTransaction.id)).where(
                CreditTransaction.user_id == "parallel-user",
                CreditTransaction.tx_type == "usage",
            )
        )
        assert usage_count.scalar() == 1


@pytest.mark.asyncio
async def test_list_transactions_is_newest_first_and_paginated(session_maker):
    await _create_account(session_maker)
    async with session_maker() as session:
        for amount in (1, 2, 3, 4):
            await ledger.credit(session, "ledger-user", amount, "purchase")

        first_page = await ledger.list_transactions(session, "ledger-user", limit=2)
        second_page = await ledger.list_transactions(session, "ledger-user", limit=2, offset=2)

    assert [entry.amount for entry in first_page] == [4, 3]
    assert [entry.amount for entry in second_page] == [2, 1]


@pytest.mark.asyncio
async def test_admin_credit_writes_exactly_one_audit_entry(session_maker):
    await _create_account(session_maker, credits=4)

    async with session_maker() as session:
        transaction_id = await ledger.credit(
            session,
            "ledger-user",
            6,
            "adjustment",
            description="Goodwill for outage",
            actor_id="admin-1",
        )
        await ledger.credit(session, "ledger-user", 2, "purchase")

    async with session_maker() as session:
        result = await session.execute(select(AuditLogEntry))
        entries = list(result.scalars().all())
        tx = await session.get(CreditTransaction, transaction_id)

    assert len(entries) == 1
    entry = entries[0]
    assert entry.action == "credit_transaction"
    assert entry.actor_id == "admin-1"
    assert entry.entity_type == "account"
    assert entry.entity_id == "ledger-user"
    assert entry.before_json == {"credits": 4}
    assert entry.after_json == {"credits": 10}
    assert entry.reason == "Goodwill for outage"
    assert tx.actor_id == "admin-1"


@pytest.mark.asyncio
async def test_credit_stats_split_by_type(session_maker):
    async with session_maker() as session:
        await ledger.ensure_account(session, "stats-user")
        await ledger.credit(session, "stats-user", 20, "purchase")
        await ledger.debit(session, "stats-user", 6)
        await ledger.credit(session, "stats-user", 2, "refund")
        stats = await ledger.get_credit_stats(session)

    assert stats == {
        "total_credits_issued": 30,
        "total_credits_used": 6,
        "total_credits_refunded": 2,
        "total_adjustments": 0,
    }
