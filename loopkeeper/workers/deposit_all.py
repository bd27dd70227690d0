"""Walk to the bank and deposit the whole inventory."""

import logging

import typer

from loopkeeper.services.game_client import GameClient
from loopkeeper.workers.base import (
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


@app.command(context_settings=EXTRA_ARGS)
def main(
    ctx: typer.Context,
    character: str = typer.Argument(..., help="Character to control"),
    bank: str = typer.Option("4,1", "--bank", help="Bank coordinates as x,y"),
    env: str = ENV_OPTION,
    recovering: bool = RECOVERING_OPTION,
):
    """Deposit every item CHARACTER carries."""
    prepare(env, ctx.args)
    x, y = parse_coordinates(bank)

    def body() -> int:
        with GameClient() as client:
            move_to(client, character, x, y)
            deposited = deposit_inventory(client, character)
        logger.info(f"[{character}] Deposited {deposited} stacks")
        return EXIT_OK

    run_worker(body)


if __name__ == "__main__":
    app()
