"""Gather at a spot until the inventory is full, deposit at the bank, repeat."""

import logging
import time
from collections.abc import Callable

import typer

from loopkeeper.services.cooldown import ErrorKind, classify_error
from loopkeeper.services.executor import (
    ActionExecutor,
    ErrorDirective,
    default_error_policy,
)
from loopkeeper.services.game_client import GameClient
from loopkeeper.workers.base import (
    BANK_COORDS,
    ENV_OPTION,
    EXIT_OK,
    EXTRA_ARGS,
    RECOVERING_OPTION,
    deposit_inventory,
    move_to,
    parse_coordinates,
    prepare,
    run_worker,
    worker_app,
)

logger = logging.getLogger(__name__)

app = worker_app(__doc__)


def gather_policy(error: Exception, attempt: int) -> ErrorDirective:
    kind = classify_error(str(error))
    if kind == ErrorKind.INVENTORY_FULL:
        logger.info("Inventory is full")
        return ErrorDirective.stop()
    if kind == ErrorKind.RESOURCE_MISSING:
        raise error
    return default_error_policy(error, attempt)


def log_gather(result: dict) -> None:
    items = (result.get("details") or {}).get("items") or []
    gathered = ", ".join(f"{item['code']} x{item.get('quantity', 1)}" for item in items)
    logger.info(f"Gathering successful: {gathered or 'nothing'}")


def gather_cycles(
    client: GameClient,
    character: str,
    spot: tuple[int, int],
    bank: tuple[int, int] = BANK_COORDS,
    loops: int = 0,
    max_gathers: int = 0,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Run gather/deposit cycles.

    Args:
        loops: Number of cycles, 0 for no limit
        max_gathers: Gathers per cycle before depositing, 0 for until full
    """
    cycle = 0
    while not loops or cycle < loops:
        cycle += 1
        logger.info(f"Starting loop #{cycle}")

        move_to(client, character, *spot, sleep=sleep)
        executor = ActionExecutor(
            name=character,
            precheck=lambda: client.remaining_cooldown(character),
            sleep=sleep,
        )
        report = executor.execute(
            lambda: client.gather(character),
            on_success=log_gather,
            on_error=gather_policy,
            max_attempts=max_gathers,
        )
        logger.info(f"Gathered {report.successes} times in {report.attempts} attempts")

        move_to(client, character, *bank, sleep=sleep)
        deposit_inventory(client, character, sleep=sleep)
        logger.info(f"Completed loop #{cycle}")

    return EXIT_OK


@app.command(context_settings=EXTRA_ARGS)
def main(
    ctx: typer.Context,
    character: str = typer.Argument(..., help="Character to control"),
    coordinates: str = typer.Argument(..., help="Gathering spot as x,y"),
    loops: int = typer.Option(0, "--loops", help="Deposit cycles, 0 for no limit"),
    gathers: int = typer.Option(
        0, "--gathers", help="Gathers per cycle, 0 for until the inventory is full"
    ),
    bank: str = typer.Option("4,1", "--bank", help="Bank coordinates as x,y"),
    env: str = ENV_OPTION,
    recovering: bool = RECOVERING_OPTION,
):
    """Gather at COORDINATES and deposit at the bank whenever the bag fills."""
    prepare(env, ctx.args)
    spot = parse_coordinates(coordinates)
    bank_coords = parse_coordinates(bank)
    if recovering:
        logger.info(f"[{character}] Resuming gathering after supervisor restart")

    def body() -> int:
        with GameClient() as client:
            return gather_cycles(
                client, character, spot, bank_coords, loops=loops, max_gathers=gathers
            )

    run_worker(body)


if __name__ == "__main__":
    app()
