import asyncio
from decimal import Decimal

import pytest

from conftest import ACCOUNT, MILLI, FakeLedger, wait_until
from errors import InvalidInput
from models import Side
from session import NEW_VOTE_EVENT, GameSession


def test_zero_epoch_length_is_fatal(ledger, contract):
    with pytest.raises(InvalidInput):
        GameSession(ledger, contract, block_div=0)


def test_start_loads_round_balance_and_subscribes(ledger, contract):
    ledger.block_number = 300
    contract.totals = {2: (3 * MILLI, 1 * MILLI)}
    contract.balance = 250 * MILLI

    async def scenario():
        session = GameSession(ledger, contract)
        result = await session.start()
        await session.settle()
        snapshot = session.snapshot()
        await session.close()
        return result, snapshot

    result, snapshot = asyncio.run(scenario())
    assert result.success
    assert [name for name, _ in contract.handlers] == [NEW_VOTE_EVENT]
    assert snapshot.round_id == 2 and snapshot.is_active
    assert snapshot.blocks_left == 84
    assert snapshot.red_percent == "75" and snapshot.blue_percent == "25"
    assert (snapshot.red_label, snapshot.blue_label) == ("WINNING", "LOSING")
    assert snapshot.credit_balance == 250


def test_snapshot_before_start_is_none(ledger, contract):
    assert GameSession(ledger, contract).snapshot() is None


def test_new_vote_event_refreshes_totals(ledger, contract):
    ledger.block_number = 300

    async def scenario():
        session = GameSession(ledger, contract)
        await session.start()
        await session.settle()
        contract.totals[2] = (0, 4 * MILLI)
        _, handler = contract.handlers[0]
        await handler({"transactionHash": "0x01"})
        await handler({"transactionHash": "0x01"})
        await session.settle()
        metrics = session.metrics
        await session.close()
        return metrics

    metrics = asyncio.run(scenario())
    assert metrics.blue_total == 4
    assert metrics.blue_percent == 100 and metrics.red_percent == 0


def test_negative_block_is_reported_not_raised(ledger, contract):
    async def scenario():
        session = GameSession(ledger, contract)
        return await session.observe(-3)

    result = asyncio.run(scenario())
    assert not result.success
    assert result.error == "InvalidInput"


def test_set_pending_amount(ledger, contract):
    session = GameSession(ledger, contract)
    assert session.set_pending_amount("12.5").success
    assert session.account.pending_tx_amount == Decimal("12.5")
    result = session.set_pending_amount("lots")
    assert not result.success and result.error == "InvalidInput"
    assert session.account.pending_tx_amount == Decimal("12.5")


@pytest.mark.parametrize("amount", ["NaN", "Infinity", "-Infinity"])
def test_non_finite_amount_is_rejected(ledger, contract, amount):
    session = GameSession(ledger, contract)
    result = session.set_pending_amount(amount)
    assert not result.success and result.error == "InvalidInput"
    assert session.account.pending_tx_amount == 100


@pytest.mark.parametrize("amount", ["NaN", "Infinity"])
def test_non_finite_amount_in_context_is_not_submitted(ledger, contract, amount):
    async def scenario():
        session = GameSession(ledger, contract)
        await session.start(follow_votes=False)
        session.context.account = session.account.model_copy(update={"pending_tx_amount": Decimal(amount)})
        return await session.buy_credits(), await session.withdraw_credits()

    deposit, withdraw = asyncio.run(scenario())
    assert deposit.error == "InvalidInput" and withdraw.error == "InvalidInput"
    assert contract.calls == []


def test_amount_below_one_base_unit_is_not_submitted(ledger, contract):
    async def scenario():
        session = GameSession(ledger, contract)
        await session.start(follow_votes=False)
        assert session.set_pending_amount("1e-20").success
        return await session.buy_credits()

    result = asyncio.run(scenario())
    assert not result.success and result.error == "InvalidInput"
    assert contract.calls == []


def test_vote_submits_amount_and_refreshes(ledger, contract):
    ledger.block_number = 300
    contract.active_round = 2
    contract.balance = 1000 * MILLI

    async def scenario():
        session = GameSession(ledger, contract)
        await session.start(follow_votes=False)
        session.set_pending_amount(100)
        result = await session.cast_vote(Side.BLUE)
        await session.settle()
        return result, session

    result, session = asyncio.run(scenario())
    assert result.success
    assert contract.calls == [("vote", 100 * MILLI, Side.BLUE, ACCOUNT)]
    assert session.metrics.blue_total == 100
    assert session.account.credit_balance == 900


def test_deposit_and_withdraw(ledger, contract):
    ledger.block_number = 300

    async def scenario():
        session = GameSession(ledger, contract)
        await session.start(follow_votes=False)
        session.set_pending_amount(300)
        deposit = await session.buy_credits()
        await session.settle()
        after_deposit = session.account.credit_balance
        session.set_pending_amount(120)
        withdraw = await session.withdraw_credits()
        await session.settle()
        return deposit, withdraw, after_deposit, session.account.credit_balance

    deposit, withdraw, after_deposit, after_withdraw = asyncio.run(scenario())
    assert deposit.success and withdraw.success
    assert after_deposit == 300
    assert after_withdraw == 180


def test_non_positive_amount_is_not_submitted(ledger, contract):
    async def scenario():
        session = GameSession(ledger, contract)
        await session.start(follow_votes=False)
        session.set_pending_amount(0)
        return await session.buy_credits()

    result = asyncio.run(scenario())
    assert result.error == "InvalidInput"
    assert contract.calls == []


def test_no_account_aborts_action(contract):
    ledger = FakeLedger(block_number=300, accounts=[])

    async def scenario():
        session = GameSession(ledger, contract)
        await session.start(follow_votes=False)
        return await session.cast_vote(Side.RED), session

    result, session = asyncio.run(scenario())
    assert not result.success and result.error == "NoAccount"
    assert contract.calls == []
    assert session.account.credit_balance == 0


def test_rejected_transaction_changes_nothing(ledger, contract):
    ledger.block_number = 300
    contract.balance = 50 * MILLI
    contract.reject = True

    async def scenario():
        session = GameSession(ledger, contract)
        await session.start(follow_votes=False)
        await session.settle()
        before = session.context.model_copy()
        result = await session.withdraw_credits()
        await session.settle()
        return result, before, session.context

    result, before, after = asyncio.run(scenario())
    assert result.error == "TransactionFailed"
    assert after == before


def test_claim_then_redundant_claim(ledger, contract):
    ledger.block_number = 300
    contract.earnings = {1: (150 * MILLI, 100 * MILLI, False)}

    async def scenario():
        session = GameSession(ledger, contract)
        await session.start(follow_votes=False)
        session.go_to_previous()
        await session.settle()
        assert session.metrics.claimable
        first = await session.claim_earnings()
        await session.settle()
        balance = session.account.credit_balance
        claimed = session.metrics.claimed
        second = await session.claim_earnings()
        await session.settle()
        return first, second, balance, claimed, session

    first, second, balance, claimed, session = asyncio.run(scenario())
    assert first.success
    assert claimed and balance == 150
    assert not second.success and second.error == "TransactionFailed"
    assert session.account.credit_balance == 150
    assert not session.metrics.claimable


def test_navigation_actions(ledger, contract):
    ledger.block_number = 300

    async def scenario():
        session = GameSession(ledger, contract)
        await session.start(follow_votes=False)
        assert session.go_to_previous().success
        assert session.go_to_previous().success
        assert not session.can_go_previous
        assert session.go_to_previous().success
        at_zero = session.view
        ledger.block_number = 520
        latest = await session.go_to_latest()
        await session.settle()
        return at_zero, latest, session

    at_zero, latest, session = asyncio.run(scenario())
    assert at_zero.viewed_round == 0 and not at_zero.is_active
    assert latest.success
    assert session.view.viewed_round == 4 and session.view.is_active
    assert not session.can_go_next


def test_go_to_unstarted_round_reports_error(ledger, contract):
    ledger.block_number = 300

    async def scenario():
        session = GameSession(ledger, contract)
        await session.start(follow_votes=False)
        return session.go_to(9)

    result = asyncio.run(scenario())
    assert result.error == "InvalidInput"


def test_poll_blocks_reports_each_distinct_snapshot_once(ledger, contract):
    ledger.block_number = 300
    changes = []
    messages = []

    async def scenario():
        session = GameSession(ledger, contract, poll_interval=0)
        task = asyncio.create_task(session.poll_blocks(on_change=changes.append, echo=messages.append))
        await wait_until(lambda: len(changes) == 1)
        for _ in range(20):
            await asyncio.sleep(0)
        unchanged = len(changes)
        ledger.block_number = -1
        await wait_until(lambda: messages)
        ledger.block_number = 301
        await wait_until(lambda: len(changes) == 2)
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        await session.close()
        return unchanged

    assert asyncio.run(scenario()) == 1
    assert [snapshot.blocks_left for snapshot in changes] == [84, 83]
    assert messages[0].startswith("Block poll failed")
