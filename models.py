from decimal import Decimal
from enum import IntEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from metrics import side_percent
from rounds import DEFAULT_BLOCK_DIV, check_block_div


class Side(IntEnum):
    """Side of the game. The value is what the contract expects for ``is_blue``."""

    RED = 0
    BLUE = 1


class GameConfig(BaseModel):
    """Configuration for a game session."""

    rpc_endpoint: str = "http://127.0.0.1:7545"
    contract_address: str | None = None
    block_div: int = DEFAULT_BLOCK_DIV
    unit: Literal["wei", "kwei", "mwei", "gwei", "micro", "milli", "ether"] = "milli"
    poll_interval: float = 2.0
    request_timeout: float = 30.0
    receipt_timeout: float = 120.0
    selectors: dict[str, str] = Field(default_factory=dict)
    """4-byte function selectors keyed by signature, as printed by ``solc --hashes``."""
    topics: dict[str, str] = Field(default_factory=dict)
    """Event topic hashes keyed by event name."""

    @field_validator("block_div")
    @classmethod
    def _block_div_positive(cls, value: int) -> int:
        return check_block_div(value)


class ViewState(BaseModel):
    model_config = ConfigDict(frozen=True)

    viewed_round: int = Field(ge=0)
    latest_round: int = Field(ge=0)
    blocks_elapsed: int = Field(ge=0)
    last_block: int = Field(ge=0)
    block_div: int = DEFAULT_BLOCK_DIV

    @property
    def is_active(self) -> bool:
        return self.viewed_round == self.latest_round

    @property
    def blocks_left(self) -> int:
        return self.block_div - self.blocks_elapsed


class RoundMetrics(BaseModel):
    """Totals and the caller's earnings for the viewed round."""

    model_config = ConfigDict(frozen=True)

    round_id: int | None = None
    red_total: Decimal = Decimal(0)
    blue_total: Decimal = Decimal(0)
    reward_amount: Decimal = Decimal(0)
    bet_amount: Decimal = Decimal(0)
    claimed: bool = False

    @property
    def total(self) -> Decimal:
        return self.red_total + self.blue_total

    @property
    def red_percent(self) -> Decimal:
        return side_percent(self.red_total, self.total)

    @property
    def blue_percent(self) -> Decimal:
        return side_percent(self.blue_total, self.total)

    @property
    def claimable(self) -> bool:
        return not self.claimed and self.reward_amount > 0

    @property
    def net_result(self) -> Decimal:
        return self.reward_amount - self.bet_amount


class AccountState(BaseModel):
    model_config = ConfigDict(frozen=True)

    credit_balance: Decimal = Decimal(0)
    pending_tx_amount: Decimal = Decimal(100)


class SessionContext(BaseModel):
    """Everything a session knows. ``view`` is None until the first block number is read."""

    view: ViewState | None = None
    metrics: RoundMetrics = Field(default_factory=RoundMetrics)
    account: AccountState = Field(default_factory=AccountState)


class ActionResult(BaseModel):
    success: bool
    error: str | None = None
    message: str = ""

    @classmethod
    def ok(cls, message: str = "") -> "ActionResult":
        return cls(success=True, message=message)

    @classmethod
    def failed(cls, exc: Exception) -> "ActionResult":
        return cls(success=False, error=type(exc).__name__, message=str(exc))
