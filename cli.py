import asyncio
import json
import sys
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import click
from loguru import logger
from pydantic import ValidationError

from ledger_client import JsonRpcLedger, RedVsBlueContract
from models import ActionResult, GameConfig, Side
from session import GameSession, SessionSnapshot


def load_hashes(path: Path, contract_name: str = "RedVsBlue") -> tuple[dict[str, str], dict[str, str]]:
    """Read function selectors and event topics.

    Accepts ``solc --combined-json hashes`` output, where the contract is
    picked by name (keys look like ``RedVsBlue.sol:RedVsBlue``), or a plain
    object with ``selectors`` and optional ``topics`` maps.
    """
    data = json.loads(path.read_text())
    if "contracts" in data:
        matches = [
            contract
            for key, contract in data["contracts"].items()
            if key.rpartition(":")[2] == contract_name
        ]
        if not matches:
            raise KeyError(f"No contract named {contract_name}")
        return dict(matches[0]["hashes"]), dict(data.get("topics", {}))
    return dict(data.get("selectors", {})), dict(data.get("topics", {}))


@click.group(context_settings={"auto_envvar_prefix": "RVB"})
@click.option(
    "-v", "--verbose", count=True, help="Verbosity: -v INFO, -vv DEBUG, -vvv TRACE"
)
@click.option("--rpc", "rpc_endpoint", default="http://127.0.0.1:7545", show_default=True)
@click.option("--contract", "contract_address", required=True, help="Deployed RedVsBlue address")
@click.option(
    "--hashes",
    "hashes_file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Selector/topic JSON (solc --combined-json hashes)",
)
@click.option(
    "--contract-name", default="RedVsBlue", show_default=True, help="Contract to read from combined JSON"
)
@click.option("--block-div", default=128, show_default=True, help="Blocks per round")
@click.option("--unit", default="milli", show_default=True, help="Ledger unit of one credit")
@click.option("--poll-interval", default=2.0, show_default=True)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: int,
    rpc_endpoint: str,
    contract_address: str,
    hashes_file: Path,
    contract_name: str,
    block_div: int,
    unit: str,
    poll_interval: float,
) -> None:
    levels = {0: "WARNING", 1: "INFO", 2: "DEBUG"}
    logger.remove()
    logger.add(sys.stderr, level=levels.get(verbose, "TRACE"))

    try:
        selectors, topics = load_hashes(hashes_file, contract_name)
    except (ValueError, KeyError) as e:
        raise click.BadParameter(f"Unreadable hashes file: {e}", param_hint="--hashes") from e
    try:
        ctx.obj = GameConfig(
            rpc_endpoint=rpc_endpoint,
            contract_address=contract_address,
            block_div=block_div,
            unit=unit,
            poll_interval=poll_interval,
            selectors=selectors,
            topics=topics,
        )
    except ValidationError as e:
        raise click.UsageError(str(e)) from e


@asynccontextmanager
async def open_session(config: GameConfig) -> AsyncIterator[GameSession]:
    async with JsonRpcLedger(
        config.rpc_endpoint,
        timeout=config.request_timeout,
        receipt_timeout=config.receipt_timeout,
    ) as ledger:
        contract = RedVsBlueContract(
            ledger,
            config.contract_address,
            selectors=config.selectors,
            topics=config.topics,
            poll_interval=config.poll_interval,
        )
        session = GameSession(
            ledger,
            contract,
            block_div=config.block_div,
            unit=config.unit,
            poll_interval=config.poll_interval,
        )
        try:
            yield session
        finally:
            await session.close()
            await contract.aclose()


def _emit(result: ActionResult, snapshot: SessionSnapshot | None) -> None:
    payload = {"success": result.success}
    if not result.success:
        payload["error"] = result.error
        payload["message"] = result.message
    if snapshot is not None:
        payload.update(snapshot.model_dump(mode="json"))
    click.echo(json.dumps(payload))
    if not result.success:
        raise SystemExit(1)


def _run_action(config: GameConfig, action, *, amount: str | None = None) -> None:
    async def _run() -> tuple[ActionResult, SessionSnapshot | None]:
        async with open_session(config) as session:
            result = await session.start(follow_votes=False)
            if result.success and amount is not None:
                result = session.set_pending_amount(amount)
            if result.success and action is not None:
                result = await action(session)
            await session.settle()
            return result, session.snapshot()

    _emit(*asyncio.run(_run()))


@cli.command("status")
@click.pass_obj
def status_cmd(config: GameConfig) -> None:
    """Show the ongoing round, its totals and your balance."""
    _run_action(config, None)


@cli.command("round")
@click.argument("round_id", type=click.IntRange(min=0))
@click.pass_obj
def round_cmd(config: GameConfig, round_id: int) -> None:
    """Show a past round and your result in it."""

    async def _go(session: GameSession) -> ActionResult:
        return session.go_to(round_id)

    _run_action(config, _go)


@cli.command("vote")
@click.argument("side", type=click.Choice(["red", "blue"], case_sensitive=False))
@click.option("--amount", required=True, help="Credits to wager")
@click.pass_obj
def vote_cmd(config: GameConfig, side: str, amount: str) -> None:
    """Wager credits on a side of the ongoing round."""

    async def _vote(session: GameSession) -> ActionResult:
        return await session.cast_vote(Side[side.upper()])

    _run_action(config, _vote, amount=amount)


@cli.command("deposit")
@click.option("--amount", required=True, help="Credits to buy")
@click.pass_obj
def deposit_cmd(config: GameConfig, amount: str) -> None:
    """Buy credits."""

    async def _deposit(session: GameSession) -> ActionResult:
        return await session.buy_credits()

    _run_action(config, _deposit, amount=amount)


@cli.command("withdraw")
@click.option("--amount", required=True, help="Credits to withdraw")
@click.pass_obj
def withdraw_cmd(config: GameConfig, amount: str) -> None:
    """Withdraw credits back to the account."""

    async def _withdraw(session: GameSession) -> ActionResult:
        return await session.withdraw_credits()

    _run_action(config, _withdraw, amount=amount)


@cli.command("claim")
@click.argument("round_id", type=click.IntRange(min=0))
@click.pass_obj
def claim_cmd(config: GameConfig, round_id: int) -> None:
    """Claim earnings of a finished round."""

    async def _claim(session: GameSession) -> ActionResult:
        result = session.go_to(round_id)
        if not result.success:
            return result
        return await session.claim_earnings()

    _run_action(config, _claim)


@cli.command("watch")
@click.pass_obj
def watch_cmd(config: GameConfig) -> None:
    """Follow the ongoing round, printing a JSON line on every change."""

    async def _watch() -> None:
        async with open_session(config) as session:
            result = await session.start()
            if not result.success:
                _emit(result, None)
            await session.poll_blocks(
                on_change=lambda snapshot: click.echo(json.dumps(snapshot.model_dump(mode="json"))),
                echo=lambda msg: click.echo(msg, err=True),
            )

    try:
        asyncio.run(_watch())
    except KeyboardInterrupt:
        raise SystemExit(130)


if __name__ == "__main__":
    cli()
