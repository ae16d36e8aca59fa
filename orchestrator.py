from decimal import Decimal

from loguru import logger

from errors import InvalidInput, LedgerClientError, NoAccount, TransactionFailed
from ledger_client import ContractProxy, LedgerGateway, TxResult
from models import SessionContext, Side
from reconciler import MetricsReconciler


class TransactionOrchestrator:
    """Runs vote, deposit, withdraw and claim against the contract.

    Failures raise ``NoAccount``, ``InvalidInput`` or ``TransactionFailed``
    before anything in the context changes; success only schedules refreshes.
    """

    def __init__(
        self,
        context: SessionContext,
        ledger: LedgerGateway,
        contract: ContractProxy,
        reconciler: MetricsReconciler,
        *,
        unit: str = "milli",
    ) -> None:
        self._context = context
        self._ledger = ledger
        self._contract = contract
        self._reconciler = reconciler
        self._unit = unit

    async def resolve_account(self) -> str:
        try:
            accounts = await self._ledger.get_accounts()
        except LedgerClientError as e:
            raise NoAccount(f"Could not list accounts: {e}") from e
        if not accounts:
            raise NoAccount("At least one account must exist")
        return accounts[0]

    def _pending_amount(self) -> int:
        amount = Decimal(self._context.account.pending_tx_amount)
        if not amount.is_finite() or amount <= 0:
            raise InvalidInput(f"Amount must be positive, got {amount}")
        return self._ledger.to_base_unit(amount, self._unit)

    async def _submit(self, action: str, call) -> TxResult:
        try:
            result = await call
        except LedgerClientError as e:
            raise TransactionFailed(f"{action} failed: {e}") from e
        logger.info(f"{action} confirmed in {result.tx_hash}")
        return result

    async def cast_vote(self, side: Side) -> TxResult:
        sender = await self.resolve_account()
        amount = self._pending_amount()
        result = await self._submit(
            f"Vote {side.name.lower()}", self._contract.cast_vote(amount, side, sender=sender)
        )
        self._reconciler.refresh_balance()
        view = self._context.view
        if view is not None and view.is_active:
            self._reconciler.refresh(view.viewed_round)
        return result

    async def buy_credits(self) -> TxResult:
        sender = await self.resolve_account()
        amount = self._pending_amount()
        result = await self._submit("Deposit", self._contract.buy_credits(amount, sender=sender))
        self._reconciler.refresh_balance()
        return result

    async def withdraw_credits(self) -> TxResult:
        sender = await self.resolve_account()
        amount = self._pending_amount()
        result = await self._submit("Withdraw", self._contract.withdraw_credits(amount, sender=sender))
        self._reconciler.refresh_balance()
        return result

    async def claim_earnings(self) -> TxResult:
        view = self._context.view
        if view is None:
            raise InvalidInput("No round is being viewed yet")
        round_id = view.viewed_round
        sender = await self.resolve_account()
        result = await self._submit(
            f"Claim round {round_id}", self._contract.claim_earnings(round_id, sender=sender)
        )
        self._reconciler.refresh_balance()
        self._reconciler.refresh(round_id)
        return result
