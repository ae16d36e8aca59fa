import asyncio
from decimal import Decimal, InvalidOperation
from typing import Awaitable, Callable

from loguru import logger
from pydantic import BaseModel

from errors import GameClientError, InvalidInput
from ledger_client import ContractProxy, LedgerGateway
from metrics import format_percent, outcome_labels
from models import AccountState, ActionResult, RoundMetrics, SessionContext, Side, ViewState
from orchestrator import TransactionOrchestrator
from reconciler import MetricsReconciler
from round_state import RoundStateMachine
from rounds import DEFAULT_BLOCK_DIV, check_block_div

NEW_VOTE_EVENT = "NewVoteCast"


def _log(msg: str, echo: Callable[[str], None] | None, level: str = "info") -> None:
    """Log message using echo if provided, otherwise logger."""
    if echo:
        echo(msg)
    else:
        getattr(logger, level)(msg)


class SessionSnapshot(BaseModel):
    """Everything the presentation layer renders for one moment of a session."""

    round_id: int
    latest_round: int
    is_active: bool
    blocks_left: int
    red_total: Decimal
    blue_total: Decimal
    red_percent: str
    blue_percent: str
    red_label: str
    blue_label: str
    reward_amount: Decimal
    bet_amount: Decimal
    net_result: Decimal
    claimable: bool
    claimed: bool
    credit_balance: Decimal
    pending_tx_amount: Decimal


class GameSession:
    """A single viewer's session: state, round navigation and transactions.

    Every public action returns an ActionResult instead of raising, so a
    front end can show the error and let the user retry.
    """

    def __init__(
        self,
        ledger: LedgerGateway,
        contract: ContractProxy,
        *,
        block_div: int = DEFAULT_BLOCK_DIV,
        unit: str = "milli",
        poll_interval: float = 2.0,
    ) -> None:
        check_block_div(block_div)
        self.context = SessionContext()
        self._ledger = ledger
        self._contract = contract
        self._poll_interval = poll_interval
        self.reconciler = MetricsReconciler(self.context, ledger, contract, unit=unit)
        self.rounds = RoundStateMachine(self.context, ledger, self.reconciler, block_div=block_div)
        self.orchestrator = TransactionOrchestrator(self.context, ledger, contract, self.reconciler, unit=unit)
        self._tasks: set[asyncio.Task] = set()

    @property
    def view(self) -> ViewState | None:
        return self.context.view

    @property
    def metrics(self) -> RoundMetrics:
        return self.context.metrics

    @property
    def account(self) -> AccountState:
        return self.context.account

    @property
    def can_go_previous(self) -> bool:
        return self.rounds.can_go_previous

    @property
    def can_go_next(self) -> bool:
        return self.rounds.can_go_next

    def snapshot(self) -> SessionSnapshot | None:
        view, metrics, account = self.view, self.metrics, self.account
        if view is None:
            return None
        red_label, blue_label = outcome_labels(metrics.red_total, metrics.blue_total, view.is_active)
        return SessionSnapshot(
            round_id=view.viewed_round,
            latest_round=view.latest_round,
            is_active=view.is_active,
            blocks_left=view.blocks_left,
            red_total=metrics.red_total,
            blue_total=metrics.blue_total,
            red_percent=format_percent(metrics.red_total, metrics.total),
            blue_percent=format_percent(metrics.blue_total, metrics.total),
            red_label=red_label,
            blue_label=blue_label,
            reward_amount=metrics.reward_amount,
            bet_amount=metrics.bet_amount,
            net_result=metrics.net_result,
            claimable=metrics.claimable,
            claimed=metrics.claimed,
            credit_balance=account.credit_balance,
            pending_tx_amount=account.pending_tx_amount,
        )

    async def _run(self, action: str, coro: Awaitable) -> ActionResult:
        try:
            await coro
        except GameClientError as e:
            logger.error(f"{action} failed: {e}")
            return ActionResult.failed(e)
        return ActionResult.ok(action)

    def _run_sync(self, action: str, fn: Callable[[], object]) -> ActionResult:
        try:
            fn()
        except GameClientError as e:
            logger.error(f"{action} failed: {e}")
            return ActionResult.failed(e)
        return ActionResult.ok(action)

    def set_pending_amount(self, amount: Decimal | int | str) -> ActionResult:
        def _set() -> None:
            try:
                value = Decimal(amount)
            except InvalidOperation:
                raise InvalidInput(f"Not a number: {amount!r}") from None
            if not value.is_finite():
                raise InvalidInput(f"Amount must be finite, got {amount}")
            self.context.account = self.account.model_copy(update={"pending_tx_amount": value})

        return self._run_sync("Set amount", _set)

    async def observe(self, block_number: int | None = None) -> ActionResult:
        """Observe ``block_number``, or the gateway's current block when omitted."""

        async def _observe() -> None:
            number = block_number
            if number is None:
                number = await self._ledger.get_block_number()
            self.rounds.observe(number)

        return await self._run("Observe", _observe())

    def go_to_previous(self) -> ActionResult:
        return self._run_sync("Previous round", self.rounds.go_to_previous)

    def go_to_next(self) -> ActionResult:
        return self._run_sync("Next round", self.rounds.go_to_next)

    def go_to(self, round_id: int) -> ActionResult:
        return self._run_sync(f"Round {round_id}", lambda: self.rounds.go_to(round_id))

    async def go_to_latest(self) -> ActionResult:
        return await self._run("Latest round", self.rounds.go_to_latest())

    async def cast_vote(self, side: Side) -> ActionResult:
        return await self._run(f"Vote {side.name.lower()}", self.orchestrator.cast_vote(side))

    async def buy_credits(self) -> ActionResult:
        return await self._run("Deposit", self.orchestrator.buy_credits())

    async def withdraw_credits(self) -> ActionResult:
        return await self._run("Withdraw", self.orchestrator.withdraw_credits())

    async def claim_earnings(self) -> ActionResult:
        return await self._run("Claim", self.orchestrator.claim_earnings())

    async def start(self, *, follow_votes: bool = True) -> ActionResult:
        """Read the current block, load the credit balance and optionally follow new votes."""
        result = await self.observe()
        if not result.success:
            return result
        self.reconciler.refresh_balance()
        if not follow_votes:
            return result
        task = self._contract.subscribe(NEW_VOTE_EVENT, self._on_new_vote)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return result

    async def _on_new_vote(self, event: dict) -> None:
        logger.debug(f"New vote cast: {event.get('transactionHash', event)}")
        await self.observe()

    async def settle(self) -> None:
        """Wait for all fetches started so far."""
        await self.reconciler.drain()

    async def poll_blocks(
        self,
        *,
        on_change: Callable[[SessionSnapshot], None] | None = None,
        echo: Callable[[str], None] | None = None,
    ) -> None:
        """Observe the current block every poll interval until cancelled."""
        last: SessionSnapshot | None = None
        while True:
            result = await self.observe()
            if not result.success:
                _log(f"Block poll failed: {result.message}", echo, "warning")
            await self.settle()
            snapshot = self.snapshot()
            if snapshot is not None and snapshot != last:
                last = snapshot
                if on_change:
                    on_change(snapshot)
            await asyncio.sleep(self._poll_interval)

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self.settle()
