"""Selection rules per ballot type.

Each ballot type maps to exactly one validation function. A rule receives the
ballot's definition and the raw submitted option ids, and returns the normalized
selection: duplicates collapsed, ordered like the ballot's option list. Rules are
pure and never touch the database; callers run them before a voter token is
redeemed so a rejected submission leaves no trace.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass

from voting.errors import BallotConfigurationError, InvalidSelectionCountError, UnknownOptionError

SINGLE = "single"
MULTIPLE = "multiple"

MIN_BALLOT_OPTIONS: int = 2


@dataclass(frozen=True)
class BallotDefinition:
    ballot_id: int
    type: str
    max_selections: int
    option_ids: tuple[int, ...]


def _coerce_option_id(value: object) -> int | None:
    # JSON clients send either numbers or numeric strings.
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _normalize(definition: BallotDefinition, submitted: Iterable[object]) -> list[int]:
    known = set(definition.option_ids)
    selected: set[int] = set()
    for raw in submitted:
        option_id = _coerce_option_id(raw)
        if option_id is None or option_id not in known:
            raise UnknownOptionError(f"option {raw!r} is not on ballot {definition.ballot_id}")
        selected.add(option_id)
    return [option_id for option_id in definition.option_ids if option_id in selected]


def _validate_single(definition: BallotDefinition, submitted: Iterable[object]) -> list[int]:
    normalized = _normalize(definition, submitted)
    if len(normalized) != 1:
        raise InvalidSelectionCountError(
            f"ballot {definition.ballot_id} requires exactly one option, got {len(normalized)}"
        )
    return normalized


def _validate_multiple(definition: BallotDefinition, submitted: Iterable[object]) -> list[int]:
    normalized = _normalize(definition, submitted)
    if not 1 <= len(normalized) <= definition.max_selections:
        raise InvalidSelectionCountError(
            f"ballot {definition.ballot_id} accepts between 1 and {definition.max_selections} options, "
            f"got {len(normalized)}"
        )
    return normalized


RULES: dict[str, Callable[[BallotDefinition, Iterable[object]], list[int]]] = {
    SINGLE: _validate_single,
    MULTIPLE: _validate_multiple,
}


def validate_selection(definition: BallotDefinition, submitted: Iterable[object]) -> list[int]:
    try:
        rule = RULES[str(definition.type)]
    except KeyError as exc:
        raise BallotConfigurationError(f"unsupported ballot type: {definition.type!r}") from exc

    if len(definition.option_ids) < MIN_BALLOT_OPTIONS:
        raise BallotConfigurationError(f"ballot {definition.ballot_id} has fewer than {MIN_BALLOT_OPTIONS} options")
    if definition.type == MULTIPLE and definition.max_selections < 1:
        raise BallotConfigurationError(f"ballot {definition.ballot_id} has max_selections < 1")

    if isinstance(submitted, (str, bytes)):
        raise UnknownOptionError("option ids must be submitted as a list")

    return rule(definition, submitted)
