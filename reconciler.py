import asyncio
import itertools

from loguru import logger

from errors import GameClientError, StaleResponseDiscarded
from ledger_client import ContractProxy, LedgerGateway
from models import RoundMetrics, SessionContext


class MetricsReconciler:
    """Fetches round totals, earnings and the credit balance into a SessionContext.

    Every fetch is tagged with the round it was issued for and a sequence
    number. A response is applied only while that round is still viewed and
    no newer fetch for it has been issued; anything else is dropped on
    arrival. In-flight fetches are never cancelled.
    """

    def __init__(
        self,
        context: SessionContext,
        ledger: LedgerGateway,
        contract: ContractProxy,
        *,
        unit: str = "milli",
    ) -> None:
        self._context = context
        self._ledger = ledger
        self._contract = contract
        self._unit = unit
        self._seq = itertools.count(1)
        self._latest_seq: dict[int, int] = {}
        self._latest_balance_seq = 0
        self._tasks: set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def refresh(self, round_id: int) -> list[asyncio.Task]:
        """Start fetching totals and earnings for ``round_id``."""
        view = self._context.view
        if view is not None and view.viewed_round != round_id:
            logger.debug(f"Not refreshing round {round_id}, viewing {view.viewed_round}")
            return []
        seq = next(self._seq)
        self._latest_seq = {round_id: seq}
        if self._context.metrics.round_id != round_id:
            self._context.metrics = RoundMetrics(round_id=round_id)
        logger.debug(f"Refreshing round {round_id} (seq {seq})")
        return [
            self._spawn(self._fetch_totals(round_id, seq)),
            self._spawn(self._fetch_earnings(round_id, seq)),
        ]

    def refresh_balance(self) -> asyncio.Task:
        seq = next(self._seq)
        self._latest_balance_seq = seq
        return self._spawn(self._fetch_balance(seq))

    async def drain(self) -> None:
        """Wait until every fetch issued so far, and any issued meanwhile, has finished."""
        while self._tasks:
            results = await asyncio.gather(*list(self._tasks), return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Fetch failed: {result}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def is_current(self, round_id: int, seq: int) -> bool:
        view = self._context.view
        return view is not None and view.viewed_round == round_id and self._latest_seq.get(round_id) == seq

    def _discard(self, what: str, round_id: int, seq: int) -> None:
        outcome = StaleResponseDiscarded(f"{what} for round {round_id} (seq {seq})")
        logger.debug(f"Discarded stale {outcome}")

    async def _sender(self) -> str | None:
        accounts = await self._ledger.get_accounts()
        return accounts[0] if accounts else None

    async def _fetch_totals(self, round_id: int, seq: int) -> None:
        try:
            red, blue = await self._contract.get_game_totals(round_id, sender=await self._sender())
        except GameClientError as e:
            logger.warning(f"Failed to fetch totals for round {round_id}: {e}")
            return
        if not self.is_current(round_id, seq):
            self._discard("totals", round_id, seq)
            return
        self._context.metrics = self._context.metrics.model_copy(
            update={
                "round_id": round_id,
                "red_total": self._ledger.from_base_unit(red, self._unit),
                "blue_total": self._ledger.from_base_unit(blue, self._unit),
            }
        )
        logger.debug(f"Round {round_id} totals: red {self._context.metrics.red_total}, blue {self._context.metrics.blue_total}")

    async def _fetch_earnings(self, round_id: int, seq: int) -> None:
        try:
            sender = await self._sender()
            if sender is None:
                logger.warning(f"No account to fetch earnings for round {round_id}")
                return
            reward, bet, claimed = await self._contract.get_earnings(round_id, sender=sender)
        except GameClientError as e:
            logger.warning(f"Failed to fetch earnings for round {round_id}: {e}")
            return
        if not self.is_current(round_id, seq):
            self._discard("earnings", round_id, seq)
            return
        self._context.metrics = self._context.metrics.model_copy(
            update={
                "round_id": round_id,
                "reward_amount": self._ledger.from_base_unit(reward, self._unit),
                "bet_amount": self._ledger.from_base_unit(bet, self._unit),
                "claimed": claimed,
            }
        )

    async def _fetch_balance(self, seq: int) -> None:
        try:
            sender = await self._sender()
            if sender is None:
                logger.warning("No account to fetch the credit balance for")
                return
            balance = await self._contract.get_credit_balance(sender=sender)
        except GameClientError as e:
            logger.warning(f"Failed to fetch credit balance: {e}")
            return
        if seq != self._latest_balance_seq:
            logger.debug(f"Discarded stale credit balance (seq {seq})")
            return
        self._context.account = self._context.account.model_copy(
            update={"credit_balance": self._ledger.from_base_unit(balance, self._unit)}
        )
