"""Tests for the gathering worker."""

import pytest
from typer.testing import CliRunner

from loopkeeper.services.game_client import GameApiError, GameClient
from loopkeeper.workers import gathering_loop
from loopkeeper.workers.gathering_loop import gather_cycles, gather_policy

INVENTORY_FULL = GameApiError(497, "Character inventory is full.")
GATHERED = {
    "cooldown": {"total_seconds": 25},
    "details": {"items": [{"code": "copper_ore", "quantity": 1}]},
}


@pytest.fixture
def client(mocker):
    client = mocker.Mock(spec=GameClient)
    client.remaining_cooldown.return_value = 0.0
    client.get_character.return_value = {
        "x": 4,
        "y": 1,
        "inventory": [{"code": "copper_ore", "quantity": 2}],
    }
    return client


def test_gather_until_full_then_deposit(client, mocker):
    client.gather.side_effect = [GATHERED, GATHERED, INVENTORY_FULL]
    sleep = mocker.Mock()

    code = gather_cycles(client, "Alice", (2, 0), loops=1, sleep=sleep)

    assert code == 0
    assert client.gather.call_count == 3
    client.move.assert_called_once_with("Alice", 2, 0)
    client.deposit.assert_called_once_with("Alice", "copper_ore", 2)


def test_gather_waits_for_action_cooldown(client, mocker):
    client.gather.side_effect = [GATHERED, INVENTORY_FULL]
    sleep = mocker.Mock()

    gather_cycles(client, "Alice", (2, 0), loops=1, sleep=sleep)

    waits = [call.args[0] for call in sleep.call_args_list]
    assert any(24 < wait <= 25 for wait in waits)


def test_max_gathers_per_cycle(client, mocker):
    client.gather.return_value = GATHERED

    gather_cycles(client, "Alice", (2, 0), loops=2, max_gathers=3, sleep=mocker.Mock())

    assert client.gather.call_count == 6
    assert client.deposit.call_count == 2


def test_missing_resource_propagates(client, mocker):
    client.gather.side_effect = GameApiError(598, "Resource not found on this map.")

    with pytest.raises(GameApiError):
        gather_cycles(client, "Alice", (2, 0), loops=1, sleep=mocker.Mock())


def test_persistent_server_error_gives_up(client, mocker):
    client.gather.side_effect = GameApiError(502, "Bad gateway")

    with pytest.raises(GameApiError, match="Bad gateway"):
        gather_cycles(client, "Alice", (2, 0), loops=1, sleep=mocker.Mock())

    assert client.gather.call_count == 6
    client.deposit.assert_not_called()


def test_gather_policy():
    assert gather_policy(INVENTORY_FULL, 1).continue_execution is False
    assert gather_policy(GameApiError(500, "oops"), 1).continue_execution is True
    with pytest.raises(GameApiError):
        gather_policy(GameApiError(598, "Resource not found"), 1)


def test_cli_runs_with_preset_and_extra_args(client, mocker):
    """Unknown trailing flags are ignored and the recovery flag is accepted."""
    mocker.patch.object(gathering_loop, "prepare")
    game_client = mocker.patch.object(gathering_loop, "GameClient")
    game_client.return_value.__enter__.return_value = client
    cycles = mocker.patch.object(gathering_loop, "gather_cycles", return_value=0)

    result = CliRunner().invoke(
        gathering_loop.app,
        ["Alice", "2,0", "--loops", "2", "--recovering", "--no-recycle"],
    )

    assert result.exit_code == 0, result.output
    cycles.assert_called_once_with(
        client, "Alice", (2, 0), (4, 1), loops=2, max_gathers=0
    )


def test_cli_exits_stopped_when_resource_gone(client, mocker):
    mocker.patch.object(gathering_loop, "prepare")
    game_client = mocker.patch.object(gathering_loop, "GameClient")
    game_client.return_value.__enter__.return_value = client
    mocker.patch.object(
        gathering_loop,
        "gather_cycles",
        side_effect=GameApiError(598, "Resource not found on this map."),
    )

    result = CliRunner().invoke(gathering_loop.app, ["Alice", "2,0"])

    assert result.exit_code == 2
