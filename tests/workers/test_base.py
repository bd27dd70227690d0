"""Tests for shared worker plumbing."""

import httpx
import pytest
import typer

from loopkeeper.services.game_client import GameApiError, GameClient
from loopkeeper.workers.base import (
    EXIT_FATAL,
    EXIT_OK,
    EXIT_STOPPED,
    deposit_inventory,
    move_to,
    parse_coordinates,
    run_worker,
)


@pytest.fixture
def client(mocker):
    client = mocker.Mock(spec=GameClient)
    client.remaining_cooldown.return_value = 0.0
    return client


@pytest.mark.parametrize("value", ["2,0", "(2, 0)", " 2 ,0 "])
def test_parse_coordinates(value):
    assert parse_coordinates(value) == (2, 0)


def test_parse_negative_coordinates():
    assert parse_coordinates("-2,13") == (-2, 13)


def test_parse_coordinates_invalid():
    with pytest.raises(typer.BadParameter):
        parse_coordinates("north")


def _exit_code(body):
    with pytest.raises(typer.Exit) as exc_info:
        run_worker(body)
    return exc_info.value.exit_code


def test_run_worker_exit_codes():
    def dead():
        raise GameApiError(498, "Character is dead")

    def server_error():
        raise GameApiError(500, "oops")

    def offline():
        raise httpx.ConnectError("refused")

    assert _exit_code(lambda: EXIT_OK) == EXIT_OK
    assert _exit_code(dead) == EXIT_STOPPED
    assert _exit_code(server_error) == EXIT_FATAL
    assert _exit_code(offline) == EXIT_FATAL


def test_move_to_skips_when_already_there(client, mocker):
    client.get_character.return_value = {"x": 2, "y": 0}

    move_to(client, "Alice", 2, 0, sleep=mocker.Mock())

    client.move.assert_not_called()


def test_move_to_waits_for_cooldown_then_moves(client, mocker):
    client.get_character.return_value = {"x": 4, "y": 1}
    sleep = mocker.Mock()

    move_to(client, "Alice", 2, 0, sleep=sleep)

    client.wait_for_cooldown.assert_called_once_with("Alice", sleep=sleep)
    client.move.assert_called_once_with("Alice", 2, 0)


def test_move_to_tolerates_already_at_destination(client, mocker):
    client.get_character.return_value = {"x": 4, "y": 1}
    client.move.side_effect = GameApiError(490, "Character already at destination.")

    move_to(client, "Alice", 2, 0, sleep=mocker.Mock())

    client.move.assert_called_once()


def test_deposit_inventory(client, mocker):
    client.get_character.return_value = {
        "inventory": [
            {"slot": 1, "code": "copper_ore", "quantity": 12},
            {"slot": 2, "code": "", "quantity": 0},
            {"slot": 3, "code": "ash_wood", "quantity": 3},
        ]
    }

    deposited = deposit_inventory(client, "Alice", sleep=mocker.Mock())

    assert deposited == 2
    assert [call.args for call in client.deposit.call_args_list] == [
        ("Alice", "copper_ore", 12),
        ("Alice", "ash_wood", 3),
    ]


def test_deposit_inventory_skips_failed_stack(client, mocker):
    client.get_character.return_value = {
        "inventory": [
            {"code": "copper_ore", "quantity": 12},
            {"code": "ash_wood", "quantity": 3},
        ]
    }

    def deposit(name, code, quantity):
        if code == "copper_ore":
            raise GameApiError(404, "Item not found")
        return {}

    client.deposit.side_effect = deposit

    deposited = deposit_inventory(client, "Alice", sleep=mocker.Mock())

    assert deposited == 1
    assert client.deposit.call_args_list[-1].args == ("Alice", "ash_wood", 3)


def test_deposit_empty_inventory(client, mocker):
    client.get_character.return_value = {"inventory": []}

    assert deposit_inventory(client, "Alice", sleep=mocker.Mock()) == 0
    client.deposit.assert_not_called()
