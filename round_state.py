from loguru import logger

from errors import InvalidInput
from ledger_client import LedgerGateway
from models import SessionContext, ViewState
from reconciler import MetricsReconciler
from rounds import check_block_div, offset_of, round_of


class RoundStateMachine:
    """Owns the viewed and latest round of a session.

    The context's ``view`` is None until the first block number is observed
    (uninitialized); afterwards every transition replaces it with a new
    ViewState and asks the reconciler to refresh the viewed round.
    Transitions are synchronous, so two of them never interleave.
    """

    def __init__(
        self,
        context: SessionContext,
        ledger: LedgerGateway,
        reconciler: MetricsReconciler,
        *,
        block_div: int,
    ) -> None:
        self._context = context
        self._ledger = ledger
        self._reconciler = reconciler
        self._block_div = check_block_div(block_div)

    @property
    def view(self) -> ViewState | None:
        return self._context.view

    @property
    def can_go_previous(self) -> bool:
        return self.view is not None and self.view.viewed_round > 0

    @property
    def can_go_next(self) -> bool:
        return self.view is not None and self.view.viewed_round < self.view.latest_round

    def observe(self, block_number: int) -> ViewState:
        """Fold a newly observed block number into the view and refresh the viewed round."""
        latest = round_of(block_number, self._block_div)
        elapsed = offset_of(block_number, self._block_div)
        view = self.view
        if view is None:
            view = ViewState(
                viewed_round=latest,
                latest_round=latest,
                blocks_elapsed=elapsed,
                last_block=block_number,
                block_div=self._block_div,
            )
            logger.info(f"Started at round {latest} ({elapsed}/{self._block_div} blocks)")
        elif block_number < view.last_block:
            logger.debug(f"Ignoring block {block_number}, already seen {view.last_block}")
        else:
            viewed = view.viewed_round
            # Following the active round means moving on with it.
            if view.is_active and latest > view.latest_round:
                viewed = latest
                logger.info(f"Round {latest} started")
            view = view.model_copy(
                update={
                    "viewed_round": viewed,
                    "latest_round": latest,
                    "blocks_elapsed": elapsed,
                    "last_block": block_number,
                }
            )
        self._context.view = view
        self._reconciler.refresh(view.viewed_round)
        return view

    def go_to_previous(self) -> ViewState | None:
        if not self.can_go_previous:
            logger.debug("Already at the first round")
            return self.view
        self._context.view = self.view.model_copy(update={"viewed_round": self.view.viewed_round - 1})
        return self.observe(self.view.last_block)

    def go_to_next(self) -> ViewState | None:
        if not self.can_go_next:
            logger.debug("Already at the latest round")
            return self.view
        self._context.view = self.view.model_copy(update={"viewed_round": self.view.viewed_round + 1})
        self._reconciler.refresh(self.view.viewed_round)
        return self.view

    async def go_to_latest(self) -> ViewState:
        """Re-read the block number and jump to the round it falls in."""
        block_number = await self._ledger.get_block_number()
        latest = round_of(block_number, self._block_div)
        if self.view is not None:
            self._context.view = self.view.model_copy(update={"viewed_round": max(latest, self.view.latest_round)})
        return self.observe(block_number)

    def go_to(self, round_id: int) -> ViewState | None:
        """Jump straight to an already started round."""
        if self.view is None or not 0 <= round_id <= self.view.latest_round:
            raise InvalidInput(f"Round {round_id} has not started yet")
        self._context.view = self.view.model_copy(update={"viewed_round": round_id})
        self._reconciler.refresh(round_id)
        return self.view
