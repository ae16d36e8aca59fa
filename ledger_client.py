import asyncio
import itertools
from decimal import Decimal, InvalidOperation
from types import TracebackType
from typing import Any, Awaitable, Callable, Protocol, Self

import httpx
from loguru import logger
from pydantic import BaseModel

from errors import InvalidInput, LedgerClientError, TransactionFailed
from models import Side

UNIT_EXPONENTS = {
    "wei": 0,
    "kwei": 3,
    "mwei": 6,
    "gwei": 9,
    "micro": 12,
    "milli": 15,
    "ether": 18,
}

LogHandler = Callable[[dict], Awaitable[None] | None]


class TxSpec(BaseModel):
    """A transaction for the node to sign with one of its accounts."""

    sender: str
    to: str
    data: str = "0x"
    value: int = 0


class TxResult(BaseModel):
    tx_hash: str
    block_number: int | None = None
    status: int = 1


class LedgerGateway(Protocol):
    async def get_block_number(self) -> int: ...

    async def get_accounts(self) -> list[str]: ...

    def to_base_unit(self, amount: Decimal, unit: str) -> int: ...

    def from_base_unit(self, amount: int, unit: str) -> Decimal: ...

    async def submit(self, tx: TxSpec) -> TxResult: ...


class ContractProxy(Protocol):
    async def get_game_totals(self, round_id: int, *, sender: str | None = None) -> tuple[int, int]: ...

    async def get_earnings(self, round_id: int, *, sender: str | None = None) -> tuple[int, int, bool]: ...

    async def get_credit_balance(self, *, sender: str | None = None) -> int: ...

    async def cast_vote(self, amount: int, side: Side, *, sender: str) -> TxResult: ...

    async def buy_credits(self, amount: int, *, sender: str) -> TxResult: ...

    async def withdraw_credits(self, amount: int, *, sender: str) -> TxResult: ...

    async def claim_earnings(self, round_id: int, *, sender: str) -> TxResult: ...

    def subscribe(self, event_name: str, handler: LogHandler) -> asyncio.Task: ...


def to_base_unit(amount: Decimal | int | str, unit: str) -> int:
    try:
        exponent = UNIT_EXPONENTS[unit]
    except KeyError:
        raise InvalidInput(f"Unknown unit: {unit}") from None
    try:
        value = Decimal(amount)
    except InvalidOperation:
        raise InvalidInput(f"Not a number: {amount!r}") from None
    if not value.is_finite():
        raise InvalidInput(f"Amount must be finite, got {amount}")
    scaled = value.scaleb(exponent)
    if scaled != scaled.to_integral_value():
        raise InvalidInput(f"{amount} {unit} is not a whole number of base units")
    return int(scaled)


def from_base_unit(amount: int, unit: str) -> Decimal:
    try:
        exponent = UNIT_EXPONENTS[unit]
    except KeyError:
        raise InvalidInput(f"Unknown unit: {unit}") from None
    value = Decimal(amount).scaleb(-exponent)
    if value == value.to_integral_value():
        return value.quantize(Decimal(1))
    return value.normalize()


class JsonRpcLedger:
    """Async Ethereum JSON-RPC client. Accounts are managed and signed by the node."""

    def __init__(
        self,
        endpoint: str,
        *,
        timeout: float = 30.0,
        receipt_timeout: float = 120.0,
        poll_interval: float = 1.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._timeout = timeout
        self._receipt_timeout = receipt_timeout
        self._poll_interval = poll_interval
        self._transport = transport
        self._ids = itertools.count(1)
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> Self:
        self._client = httpx.AsyncClient(timeout=self._timeout, transport=self._transport)
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Client not initialized. Use 'async with'.")
        return self._client

    async def request(self, method: str, params: list | None = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        logger.trace(f"RPC {method} {params}")
        try:
            response = await self.client.post(self._endpoint, json=payload)
            response.raise_for_status()
            body = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"RPC {method} failed: {e}")
            raise LedgerClientError(f"RPC {method} failed: {e}") from e
        if body.get("error"):
            error = body["error"]
            raise LedgerClientError(f"RPC {method} error {error.get('code')}: {error.get('message')}")
        return body.get("result")

    async def get_block_number(self) -> int:
        result = await self.request("eth_blockNumber")
        try:
            return int(result, 16)
        except (TypeError, ValueError) as e:
            raise LedgerClientError(f"Malformed block number: {result!r}") from e

    async def get_accounts(self) -> list[str]:
        return list(await self.request("eth_accounts") or [])

    def to_base_unit(self, amount: Decimal, unit: str) -> int:
        return to_base_unit(amount, unit)

    def from_base_unit(self, amount: int, unit: str) -> Decimal:
        return from_base_unit(amount, unit)

    async def call(self, to: str, data: str, *, sender: str | None = None) -> str:
        call = {"to": to, "data": data}
        if sender:
            call["from"] = sender
        return await self.request("eth_call", [call, "latest"])

    async def submit(self, tx: TxSpec) -> TxResult:
        """Send a transaction and wait for its receipt. Rejections and reverts raise TransactionFailed."""
        params = {"from": tx.sender, "to": tx.to, "data": tx.data}
        if tx.value:
            params["value"] = hex(tx.value)
        try:
            tx_hash = await self.request("eth_sendTransaction", [params])
        except LedgerClientError as e:
            raise TransactionFailed(str(e)) from e
        logger.debug(f"Sent transaction {tx_hash}")
        result = await self.wait_for_receipt(tx_hash)
        if result.status != 1:
            raise TransactionFailed(f"Transaction {tx_hash} reverted")
        return result

    async def wait_for_receipt(self, tx_hash: str) -> TxResult:
        start = asyncio.get_running_loop().time()
        time_elapsed = 0.0
        while time_elapsed < self._receipt_timeout:
            receipt = await self.request("eth_getTransactionReceipt", [tx_hash])
            if receipt:
                block_number = receipt.get("blockNumber")
                return TxResult(
                    tx_hash=tx_hash,
                    block_number=int(block_number, 16) if block_number else None,
                    status=int(receipt.get("status", "0x1"), 16),
                )
            await asyncio.sleep(self._poll_interval)
            time_elapsed = asyncio.get_running_loop().time() - start
        raise TransactionFailed(f"No receipt for {tx_hash} within {self._receipt_timeout}s")

    async def get_logs(self, address: str, from_block: int, to_block: int, topic: str | None = None) -> list[dict]:
        log_filter: dict[str, Any] = {"address": address, "fromBlock": hex(from_block), "toBlock": hex(to_block)}
        if topic:
            log_filter["topics"] = [topic]
        return list(await self.request("eth_getLogs", [log_filter]) or [])


def encode_args(*args: int | bool) -> str:
    return "".join(f"{int(arg):064x}" for arg in args)


def decode_words(data: str) -> list[int]:
    raw = data[2:] if data.startswith("0x") else data
    if len(raw) % 64:
        raise ValueError(f"Result is not a whole number of words: {len(raw)} hex digits")
    return [int(raw[i : i + 64], 16) for i in range(0, len(raw), 64)]


class RedVsBlueContract:
    """Calls into the deployed RedVsBlue contract through a JsonRpcLedger."""

    SIGNATURES = {
        "totals": "GetGameTotals(uint256)",
        "earnings": "GetEarnings(uint256)",
        "balance": "GetCreditBalance()",
        "vote": "CastVote(uint256,bool)",
        "buy": "BuyCredits()",
        "withdraw": "WithdrawCredits(uint256)",
        "claim": "ClaimEarnings(uint256)",
    }

    def __init__(
        self,
        ledger: JsonRpcLedger,
        address: str,
        *,
        selectors: dict[str, str],
        topics: dict[str, str] | None = None,
        poll_interval: float = 2.0,
    ) -> None:
        missing = [sig for sig in self.SIGNATURES.values() if sig not in selectors]
        if missing:
            raise LedgerClientError(f"Missing function selectors for: {', '.join(missing)}")
        self._ledger = ledger
        self._address = address
        self._selectors = {sig: sel.removeprefix("0x") for sig, sel in selectors.items()}
        self._topics = topics or {}
        self._poll_interval = poll_interval
        self._watchers: set[asyncio.Task] = set()

    def _calldata(self, name: str, *args: int | bool) -> str:
        return "0x" + self._selectors[self.SIGNATURES[name]] + encode_args(*args)

    async def _read(self, name: str, *args: int | bool, words: int, sender: str | None = None) -> list[int]:
        data = await self._ledger.call(self._address, self._calldata(name, *args), sender=sender)
        try:
            values = decode_words(data or "0x")
        except ValueError as e:
            raise LedgerClientError(f"Malformed {self.SIGNATURES[name]} result: {data!r}") from e
        if len(values) < words:
            raise LedgerClientError(f"{self.SIGNATURES[name]} returned {len(values)} words, expected {words}")
        return values[:words]

    async def _write(self, name: str, *args: int | bool, sender: str, value: int = 0) -> TxResult:
        tx = TxSpec(sender=sender, to=self._address, data=self._calldata(name, *args), value=value)
        return await self._ledger.submit(tx)

    async def get_game_totals(self, round_id: int, *, sender: str | None = None) -> tuple[int, int]:
        red, blue = await self._read("totals", round_id, words=2, sender=sender)
        return red, blue

    async def get_earnings(self, round_id: int, *, sender: str | None = None) -> tuple[int, int, bool]:
        reward, bet, claimed = await self._read("earnings", round_id, words=3, sender=sender)
        return reward, bet, bool(claimed)

    async def get_credit_balance(self, *, sender: str | None = None) -> int:
        (balance,) = await self._read("balance", words=1, sender=sender)
        return balance

    async def cast_vote(self, amount: int, side: Side, *, sender: str) -> TxResult:
        return await self._write("vote", amount, side == Side.BLUE, sender=sender)

    async def buy_credits(self, amount: int, *, sender: str) -> TxResult:
        return await self._write("buy", sender=sender, value=amount)

    async def withdraw_credits(self, amount: int, *, sender: str) -> TxResult:
        return await self._write("withdraw", amount, sender=sender)

    async def claim_earnings(self, round_id: int, *, sender: str) -> TxResult:
        return await self._write("claim", round_id, sender=sender)

    def subscribe(self, event_name: str, handler: LogHandler) -> asyncio.Task:
        """Poll contract logs and call ``handler`` for each one. Delivery is at-least-once."""
        task = asyncio.create_task(self._watch_logs(event_name, handler))
        self._watchers.add(task)
        task.add_done_callback(self._watchers.discard)
        return task

    async def _watch_logs(self, event_name: str, handler: LogHandler) -> None:
        topic = self._topics.get(event_name)
        from_block = await self._ledger.get_block_number() + 1
        logger.debug(f"Watching {event_name} logs from block {from_block}")
        while True:
            await asyncio.sleep(self._poll_interval)
            try:
                latest = await self._ledger.get_block_number()
                if latest < from_block:
                    continue
                logs = await self._ledger.get_logs(self._address, from_block, latest, topic)
            except LedgerClientError as e:
                logger.warning(f"Polling {event_name} logs failed: {e}")
                continue
            for log in logs:
                try:
                    result = handler(log)
                    if asyncio.iscoroutine(result):
                        await result
                except Exception as e:
                    logger.error(f"{event_name} handler failed: {e}")
            from_block = latest + 1

    async def aclose(self) -> None:
        for task in list(self._watchers):
            task.cancel()
        if self._watchers:
            await asyncio.gather(*self._watchers, return_exceptions=True)
