"""Shared plumbing for worker programs.

Workers run as ``python -m loopkeeper.workers.<module> <character> [args...]``
and report through their exit code: 0 when done, 1 on a fatal error and 2
when the game refuses to continue (dead character, missing resource).
"""

import logging
import re
import time
from collections.abc import Callable
from typing import Any

import httpx
import typer

from loopkeeper.core.config import load_env
from loopkeeper.core.log import setup_logging
from loopkeeper.services.cooldown import DOMAIN_TERMINAL_KINDS, ErrorKind, classify_error
from loopkeeper.services.executor import with_retry
from loopkeeper.services.game_client import GameApiError, GameClient

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1
EXIT_STOPPED = 2

BANK_COORDS = (4, 1)

# Supervisors may append flags a worker does not know (--no-recycle)
EXTRA_ARGS = {"allow_extra_args": True, "ignore_unknown_options": True}

ENV_OPTION = typer.Option(None, "--env", help="Env file layered over .env")
RECOVERING_OPTION = typer.Option(
    False, "--recovering", help="Set when restarted by supervisor recovery"
)


def worker_app(help_text: str) -> typer.Typer:
    return typer.Typer(help=help_text, add_completion=False)


def parse_coordinates(value: str) -> tuple[int, int]:
    """Parse ``x,y`` or ``(x,y)`` into integers."""
    numbers = re.findall(r"-?\d+", value or "")
    if len(numbers) < 2:
        raise typer.BadParameter(f"Invalid coordinates {value!r}, expected x,y")
    return int(numbers[0]), int(numbers[1])


def prepare(env_file: str | None, extra_args: list[str] | None = None) -> None:
    """Load configuration and logging for a worker process."""
    load_env(env_file)
    setup_logging()
    if extra_args:
        logger.debug(f"Ignoring extra arguments: {extra_args}")


def run_worker(body: Callable[[], int]) -> None:
    """Run a worker body and exit with the code that describes its outcome."""
    try:
        code = body()
    except GameApiError as e:
        if classify_error(str(e)) in DOMAIN_TERMINAL_KINDS:
            logger.error(f"Stopping: {e}")
            raise typer.Exit(EXIT_STOPPED) from e
        logger.error(f"Fatal game error: {e}")
        raise typer.Exit(EXIT_FATAL) from e
    except httpx.HTTPError as e:
        logger.error(f"Connection to game server failed: {e}")
        raise typer.Exit(EXIT_FATAL) from e

    raise typer.Exit(code)


def move_to(
    client: GameClient,
    character: str,
    x: int,
    y: int,
    sleep: Callable[[float], None] = time.sleep,
) -> None:
    """Move a character, skipping the move when it is already there."""
    details = with_retry(lambda: client.get_character(character), sleep=sleep)
    if details.get("x") == x and details.get("y") == y:
        logger.info(f"[{character}] Already at ({x}, {y})")
        return

    client.wait_for_cooldown(character, sleep=sleep)
    logger.info(f"[{character}] Moving to ({x}, {y})")
    try:
        with_retry(lambda: client.move(character, x, y), sleep=sleep)
    except GameApiError as e:
        if classify_error(str(e)) != ErrorKind.ALREADY_AT_DESTINATION:
            raise
        logger.info(f"[{character}] Already at destination")


def deposit_inventory(
    client: GameClient,
    character: str,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Deposit every inventory stack at the bank the character stands on.

    A failed stack is logged and skipped.

    Returns:
        Number of stacks deposited
    """
    details = with_retry(lambda: client.get_character(character), sleep=sleep)
    items: list[dict[str, Any]] = [
        item
        for item in details.get("inventory") or []
        if item and item.get("code") and item.get("quantity", 1) > 0
    ]
    if not items:
        logger.info(f"[{character}] No items to deposit")
        return 0

    deposited = 0
    for item in items:
        code, quantity = item["code"], item.get("quantity", 1)
        client.wait_for_cooldown(character, sleep=sleep)
        try:
            with_retry(
                lambda: client.deposit(character, code, quantity), sleep=sleep
            )
        except GameApiError as e:
            logger.error(f"[{character}] Failed to deposit {code}: {e}")
            continue
        logger.info(f"[{character}] Deposited {code} x{quantity}")
        deposited += 1

    return deposited
