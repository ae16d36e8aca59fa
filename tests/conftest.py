import asyncio
import json

import httpx
import pytest

from errors import TransactionFailed
from ledger_client import TxResult, from_base_unit, to_base_unit
from models import Side

MILLI = 10**15
ACCOUNT = "0x00000000000000000000000000000000000000a1"


async def wait_until(predicate, timeout: float = 1.0) -> None:
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0)


class FakeLedger:
    def __init__(self, block_number: int = 0, accounts: list[str] | None = None) -> None:
        self.block_number = block_number
        self.accounts = [ACCOUNT] if accounts is None else accounts

    async def get_block_number(self) -> int:
        return self.block_number

    async def get_accounts(self) -> list[str]:
        return list(self.accounts)

    def to_base_unit(self, amount, unit):
        return to_base_unit(amount, unit)

    def from_base_unit(self, amount, unit):
        return from_base_unit(amount, unit)

    async def submit(self, tx):
        return TxResult(tx_hash="0x01")


class FakeContract:
    """In-memory contract. Rounds listed in ``gates`` block their reads until the event is set."""

    def __init__(self) -> None:
        self.totals: dict[int, tuple[int, int]] = {}
        self.earnings: dict[int, tuple[int, int, bool]] = {}
        self.balance = 0
        self.active_round = 0
        self.gates: dict[int, asyncio.Event] = {}
        self.calls: list[tuple] = []
        self.reject = False
        self.handlers = []

    async def _wait(self, round_id: int) -> None:
        gate = self.gates.get(round_id)
        if gate is not None:
            await gate.wait()

    def _tx(self, *call) -> TxResult:
        self.calls.append(call)
        if self.reject:
            raise TransactionFailed("rejected")
        return TxResult(tx_hash=f"0x{len(self.calls):02x}")

    async def get_game_totals(self, round_id, *, sender=None):
        await self._wait(round_id)
        return self.totals.get(round_id, (0, 0))

    async def get_earnings(self, round_id, *, sender=None):
        await self._wait(round_id)
        return self.earnings.get(round_id, (0, 0, False))

    async def get_credit_balance(self, *, sender=None):
        return self.balance

    async def cast_vote(self, amount, side, *, sender):
        result = self._tx("vote", amount, side, sender)
        red, blue = self.totals.get(self.active_round, (0, 0))
        if side == Side.RED:
            red += amount
        else:
            blue += amount
        self.totals[self.active_round] = (red, blue)
        self.balance -= amount
        return result

    async def buy_credits(self, amount, *, sender):
        result = self._tx("buy", amount, sender)
        self.balance += amount
        return result

    async def withdraw_credits(self, amount, *, sender):
        result = self._tx("withdraw", amount, sender)
        self.balance -= amount
        return result

    async def claim_earnings(self, round_id, *, sender):
        reward, bet, claimed = self.earnings.get(round_id, (0, 0, False))
        if claimed or reward == 0:
            self.calls.append(("claim", round_id, sender))
            raise TransactionFailed(f"Nothing to claim for round {round_id}")
        result = self._tx("claim", round_id, sender)
        self.earnings[round_id] = (reward, bet, True)
        self.balance += reward
        return result

    def subscribe(self, event_name, handler):
        self.handlers.append((event_name, handler))
        return asyncio.create_task(asyncio.Event().wait())


SELECTORS = {
    "GetGameTotals(uint256)": "00000001",
    "GetEarnings(uint256)": "00000002",
    "GetCreditBalance()": "00000003",
    "CastVote(uint256,bool)": "00000004",
    "BuyCredits()": "00000005",
    "WithdrawCredits(uint256)": "00000006",
    "ClaimEarnings(uint256)": "00000007",
}


def word(value: int) -> str:
    return f"{value:064x}"


class FakeNode:
    """JSON-RPC node behind an httpx.MockTransport."""

    def __init__(self) -> None:
        self.block_number = 300
        self.accounts = [ACCOUNT]
        self.totals: dict[int, tuple[int, int]] = {}
        self.balance = 0
        self.revert = False
        self.requests: list[dict] = []
        self.sent: list[dict] = []
        self.logs: list[dict] = []
        self.log_filters: list[dict] = []
        self.raw_results: dict[str, str] = {}

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        method, params = body["method"], body["params"]
        if method == "eth_blockNumber":
            result = hex(self.block_number)
        elif method == "eth_accounts":
            result = self.accounts
        elif method == "eth_call":
            result = self.call(params[0]["data"])
        elif method == "eth_sendTransaction":
            self.sent.append(params[0])
            result = "0x" + "ab" * 32
        elif method == "eth_getTransactionReceipt":
            result = {"blockNumber": hex(self.block_number), "status": "0x0" if self.revert else "0x1"}
        elif method == "eth_getLogs":
            self.log_filters.append(params[0])
            result = self.get_logs(params[0])
        else:
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32601, "message": "Method not found"}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    def get_logs(self, log_filter: dict) -> list[dict]:
        low, high = int(log_filter["fromBlock"], 16), int(log_filter["toBlock"], 16)
        return [log for log in self.logs if low <= int(log["blockNumber"], 16) <= high]

    def call(self, data: str) -> str:
        selector, args = data[2:10], data[10:]
        if selector in self.raw_results:
            return self.raw_results[selector]
        if selector == SELECTORS["GetGameTotals(uint256)"]:
            red, blue = self.totals.get(int(args, 16), (0, 0))
            return "0x" + word(red) + word(blue)
        if selector == SELECTORS["GetEarnings(uint256)"]:
            return "0x" + word(0) + word(0) + word(0)
        if selector == SELECTORS["GetCreditBalance()"]:
            return "0x" + word(self.balance)
        raise AssertionError(f"unexpected selector {selector}")


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def contract() -> FakeContract:
    return FakeContract()


@pytest.fixture
def node() -> FakeNode:
    return FakeNode()
