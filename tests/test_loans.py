"""Tests for player-to-player loans."""

import asyncio

import pytest

from casinoapp.entities import InsufficientFundsError, ValidationError
from casinoapp.loans import LoanRepository, LoanService, LoanSettings, total_owed


@pytest.fixture
def repository(redis_pool):
    return LoanRepository(redis_pool)


@pytest.fixture
def loans(ledger, repository, recording_view):
    return LoanService(ledger, repository, recording_view)


async def _open_loan(loans, ledger, amount=1000, rate=10.0):
    await ledger.add_coins(1, 5000)
    await loans.offer(1, 2, amount, rate, 7, channel_id=10)
    return await loans.accept(2)


def test_total_owed_truncates_interest():
    assert total_owed(1000, 10) == 1100
    assert total_owed(999, 2.5) == 1023
    assert total_owed(500, 0) == 500


@pytest.mark.asyncio
async def test_offer_validation(loans, ledger):
    await ledger.add_coins(1, 100)

    with pytest.raises(ValidationError):
        await loans.offer(1, 1, 50, 5, 7, 10)
    with pytest.raises(ValidationError):
        await loans.offer(1, 2, 0, 5, 7, 10)
    with pytest.raises(ValidationError):
        await loans.offer(1, 2, 50, 150, 7, 10)
    with pytest.raises(ValidationError):
        await loans.offer(1, 2, 50, 5, 0, 10)
    with pytest.raises(InsufficientFundsError):
        await loans.offer(1, 2, 500, 5, 7, 10)

    await loans.offer(1, 2, 50, 5, 7, 10)
    with pytest.raises(ValidationError):
        await loans.offer(3, 2, 50, 5, 7, 10)
    await loans.shutdown()


@pytest.mark.asyncio
async def test_accept_then_repay(loans, ledger, repository):
    loan = await _open_loan(loans, ledger)

    assert await ledger.get_balance(1) == 4000
    assert await ledger.get_balance(2) == 1000
    lent, borrowed = await loans.list_loans(1)
    assert lent == [loan] and borrowed == []
    assert [stored.loan_id for stored in await repository.load_active()] == [loan.loan_id]

    await ledger.add_coins(2, 100)
    paid = await loans.pay(2)

    assert paid is loan and loan.paid
    assert await ledger.get_balance(1) == 5100
    assert await ledger.get_balance(2) == 0
    assert await repository.load_active() == []
    assert (await repository.get(loan.loan_id)).paid
    with pytest.raises(ValidationError):
        await loans.pay(2)
    await loans.shutdown()


@pytest.mark.asyncio
async def test_pay_without_funds_keeps_loan_open(loans, ledger):
    loan = await _open_loan(loans, ledger)

    with pytest.raises(InsufficientFundsError):
        await loans.pay(2, loan.loan_id)
    with pytest.raises(ValidationError):
        await loans.pay(2, "loan_missing")

    assert not loan.paid
    assert (await loans.list_loans(2))[1] == [loan]
    await loans.shutdown()


@pytest.mark.asyncio
async def test_decline_discards_offer(loans, ledger):
    await ledger.add_coins(1, 500)
    await loans.offer(1, 2, 100, 5, 7, 10)

    declined = await loans.decline(2)

    assert declined.amount == 100
    with pytest.raises(ValidationError):
        await loans.accept(2)
    assert await ledger.get_balance(1) == 500


@pytest.mark.asyncio
async def test_unanswered_offer_expires(ledger, repository, recording_view, eventually):
    loans = LoanService(
        ledger, repository, recording_view, LoanSettings(offer_timeout_seconds=0.05)
    )
    await ledger.add_coins(1, 500)
    await loans.offer(1, 2, 100, 5, 7, 10)

    await eventually(lambda: bool(recording_view.notifications))

    assert "expired" in recording_view.notifications[-1][1]
    with pytest.raises(ValidationError):
        await loans.accept(2)


@pytest.mark.asyncio
async def test_collection_records_shortfall_as_debt(loans, ledger, recording_view):
    loan = await _open_loan(loans, ledger)
    await ledger.remove_coins(2, 700)

    collected, remaining = await loans.collect(loan.loan_id)

    assert (collected, remaining) == (300, 800)
    assert await ledger.get_balance(2) == -800
    # The lender only receives what the borrower actually had.
    assert await ledger.get_balance(1) == 4300
    assert "LOAN DEFAULTED" in recording_view.notifications[-1][1]
    assert await loans.collect(loan.loan_id) is None
    await loans.shutdown()


@pytest.mark.asyncio
async def test_pay_and_collect_settle_once(loans, ledger):
    loan = await _open_loan(loans, ledger)
    await ledger.add_coins(2, 100)

    results = await asyncio.gather(
        loans.pay(2, loan.loan_id), loans.collect(loan.loan_id), return_exceptions=True
    )

    settled = [
        result
        for result in results
        if result is not None and not isinstance(result, Exception)
    ]
    assert len(settled) == 1
    assert await ledger.get_balance(1) == 5100
    assert await ledger.get_balance(2) == 0
    await loans.shutdown()


@pytest.mark.asyncio
async def test_restore_reschedules_unpaid_loans(loans, ledger, repository, recording_view):
    loan = await _open_loan(loans, ledger)
    await loans.shutdown()

    restarted = LoanService(ledger, repository, recording_view)
    assert await restarted.restore() == 1

    lent, _ = await restarted.list_loans(1)
    assert [restored.loan_id for restored in lent] == [loan.loan_id]
    assert lent[0].total_owed == 1100
    assert lent[0].due_date == loan.due_date

    await ledger.add_coins(2, 100)
    await restarted.pay(2)
    assert await repository.load_active() == []
    await restarted.shutdown()
