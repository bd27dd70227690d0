"""Fight at a spot, resting whenever HP runs low."""

import logging
import time
from collections.abc import Callable
from typing import Any

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


class FightDone(Exception):
    """Raised by a fight step once the requested number of fights is reached."""


class FightLoop:
    """Alternates fights and rests at one spot.

    Each executor attempt is one step: a rest when HP is below the threshold,
    otherwise a fight. The executor stops on a full inventory so the caller can
    go to the bank.
    """

    def __init__(
        self,
        client: GameClient,
        character: str,
        fights: int = 0,
        heal_at: float = 0.5,
    ):
        self.client = client
        self.character = character
        self.fights = fights
        self.heal_at = heal_at
        self.wins = 0
        self.losses = 0
        self.inventory_full = False
        self.done = False
        self._snapshot: dict[str, Any] = {}

    def needs_rest(self) -> bool:
        hp = self._snapshot.get("hp")
        max_hp = self._snapshot.get("max_hp")
        if hp is None or not max_hp:
            return False
        return hp / max_hp < self.heal_at

    def step(self) -> dict[str, Any]:
        if self.fights and self.wins + self.losses >= self.fights:
            raise FightDone()
        if self.needs_rest():
            logger.info(f"[{self.character}] HP low, resting")
            return self.client.rest(self.character)
        return self.client.fight(self.character)

    def on_success(self, result: dict[str, Any]) -> None:
        self._snapshot = result.get("character") or self._snapshot

        fight = result.get("fight")
        if fight is None:
            logger.info(f"[{self.character}] Rest successful")
            return

        if fight.get("result") == "loss":
            self.losses += 1
        else:
            self.wins += 1
        total = self.wins + self.losses
        logger.info(f"Fight successful ({fight.get('result', 'win')}), loop #{total}")

    def on_error(self, error: Exception, attempt: int) -> ErrorDirective:
        if isinstance(error, FightDone):
            self.done = True
            return ErrorDirective.stop()

        kind = classify_error(str(error))
        if kind == ErrorKind.CHARACTER_DEAD:
            raise error
        if kind == ErrorKind.INVENTORY_FULL:
            self.inventory_full = True
            return ErrorDirective.stop()
        if kind == ErrorKind.MONSTER_MISSING:
            logger.warning(f"[{self.character}] No monster here yet, waiting")
            return ErrorDirective.retry()
        return default_error_policy(error, attempt)


def fight_cycles(
    client: GameClient,
    character: str,
    spot: tuple[int, int],
    fights: int = 0,
    heal_at: float = 0.5,
    bank: tuple[int, int] = BANK_COORDS,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    loop = FightLoop(client, character, fights=fights, heal_at=heal_at)

    while True:
        move_to(client, character, *spot, sleep=sleep)
        loop.inventory_full = False
        executor = ActionExecutor(
            name=character,
            precheck=lambda: client.remaining_cooldown(character),
            sleep=sleep,
        )
        executor.execute(loop.step, on_success=loop.on_success, on_error=loop.on_error)

        if not loop.inventory_full:
            break
        move_to(client, character, *bank, sleep=sleep)
        deposit_inventory(client, character, sleep=sleep)

    logger.info(f"[{character}] Finished with {loop.wins} wins, {loop.losses} losses")
    return EXIT_OK


@app.command(context_settings=EXTRA_ARGS)
def main(
    ctx: typer.Context,
    character: str = typer.Argument(..., help="Character to control"),
    coordinates: str = typer.Argument(..., help="Monster spot as x,y"),
    fights: int = typer.Option(0, "--loops", help="Fights to run, 0 for no limit"),
    heal_at: float = typer.Option(
        0.5, "--heal-at", help="Rest when HP falls below this fraction"
    ),
    env: str = ENV_OPTION,
    recovering: bool = RECOVERING_OPTION,
):
    """Fight at COORDINATES, resting and banking as needed."""
    prepare(env, ctx.args)
    spot = parse_coordinates(coordinates)
    if recovering:
        logger.info(f"[{character}] Resuming fights after supervisor restart")

    def body() -> int:
        with GameClient() as client:
            return fight_cycles(client, character, spot, fights=fights, heal_at=heal_at)

    run_worker(body)


if __name__ == "__main__":
    app()
