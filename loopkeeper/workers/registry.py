"""Allow-list of worker programs the supervisor may spawn."""

from dataclasses import dataclass

from loopkeeper.core.config import settings
from loopkeeper.core.errors import ValidationError
from loopkeeper.models import TaskKind

_KIND_HINTS: list[tuple[tuple[str, ...], TaskKind]] = [
    (("mining",), TaskKind.MINING),
    (("sunflower", "glowstem", "nettle", "alchemy"), TaskKind.ALCHEMY),
    (("gudgeon", "shrimp", "trout", "bass", "salmon", "fishing"), TaskKind.FISHING),
    (("harvesting", "woodcutting"), TaskKind.WOODCUTTING),
    (("fight", "combat"), TaskKind.COMBAT),
]


def infer_kind(worker_name: str) -> TaskKind:
    """Guess the activity category from a worker name.

    Herbs and fishing spots are "harvested" too, so they are checked before
    the woodcutting hint.
    """
    name = worker_name.lower()
    for hints, kind in _KIND_HINTS:
        if any(hint in name for hint in hints):
            return kind
    return TaskKind.OTHER


@dataclass(frozen=True)
class WorkerDefinition:
    """A spawnable worker program.

    ``preset_args`` are inserted right after the character name, so
    ``copper-mining-loop Bob`` runs the gathering loop at the copper mine.
    """

    name: str
    module: str
    kind: TaskKind
    preset_args: tuple[str, ...] = ()
    description: str = ""


def _define(
    name: str, module: str, preset_args: tuple[str, ...] = (), description: str = ""
) -> WorkerDefinition:
    return WorkerDefinition(
        name=name,
        module=f"loopkeeper.workers.{module}",
        kind=infer_kind(name),
        preset_args=preset_args,
        description=description,
    )


WORKERS: dict[str, WorkerDefinition] = {
    definition.name: definition
    for definition in [
        _define(
            "go-gather-loop",
            "gathering_loop",
            description="Gather at the given coordinates, deposit when full",
        ),
        _define(
            "go-fight-heal-loop",
            "fight_loop",
            description="Fight at the given coordinates, rest when low on HP",
        ),
        _define(
            "go-deposit-all",
            "deposit_all",
            description="Walk to the bank and deposit the whole inventory",
        ),
        _define("copper-mining-loop", "gathering_loop", ("2,0",), "Mine copper ore"),
        _define("iron-mining-loop", "gathering_loop", ("1,7",), "Mine iron ore"),
        _define("coal-mining-loop", "gathering_loop", ("1,6",), "Mine coal"),
        _define("gold-mining-loop", "gathering_loop", ("6,-3",), "Mine gold ore"),
        _define("mithril-mining-loop", "gathering_loop", ("-2,13",), "Mine mithril"),
        _define("ash-harvesting-loop", "gathering_loop", ("-1,0",), "Cut ash"),
        _define("birch-harvesting-loop", "gathering_loop", ("3,5",), "Cut birch"),
        _define("spruce-harvesting-loop", "gathering_loop", ("2,6",), "Cut spruce"),
        _define("maple-harvesting-loop", "gathering_loop", ("1,12",), "Cut maple"),
        _define(
            "deadwood-harvesting-loop", "gathering_loop", ("9,8",), "Cut dead wood"
        ),
        _define("gudgeon-harvesting-loop", "gathering_loop", ("4,2",), "Fish gudgeon"),
        _define("shrimp-harvesting-loop", "gathering_loop", ("5,2",), "Fish shrimp"),
        _define("bass-harvesting-loop", "gathering_loop", ("6,12",), "Fish bass"),
        _define("salmon-harvesting-loop", "gathering_loop", ("-2,-4",), "Fish salmon"),
        _define(
            "sunflower-harvesting-loop", "gathering_loop", ("2,2",), "Pick sunflowers"
        ),
        _define("nettle-harvesting-loop", "gathering_loop", ("7,14",), "Pick nettle"),
        _define(
            "glowstem-harvesting-loop", "gathering_loop", ("1,10",), "Pick glowstem"
        ),
    ]
}


def is_allowed(worker_name: str) -> bool:
    """Check a worker against the registry and the ALLOWED_WORKERS filter."""
    if worker_name not in WORKERS:
        return False
    return not settings.allowed_workers or worker_name in settings.allowed_workers


def get_worker(worker_name: str) -> WorkerDefinition:
    """Get an allowed worker definition.

    Raises:
        ValidationError: If the worker is unknown or not allowed
    """
    if not is_allowed(worker_name):
        raise ValidationError(f"Worker {worker_name} is not allowed")
    return WORKERS[worker_name]


def available_workers() -> list[WorkerDefinition]:
    return [WORKERS[name] for name in sorted(WORKERS) if is_allowed(name)]
