from __future__ import annotations

from collections import Counter
from collections.abc import Callable, Iterator
from dataclasses import dataclass

from voting.errors import BallotNotFoundError
from voting.models import Ballot, Election, Vote
from voting.rules import MULTIPLE, SINGLE


@dataclass(frozen=True)
class BallotTally:
    ballot_id: int
    # option id -> count; options without votes are absent.
    counts: dict[int, int]
    # Number of vote rows. For multiple-choice ballots this may be smaller than
    # the sum of ``counts``.
    total_votes: int


@dataclass(frozen=True)
class OptionResult:
    option_id: int
    text: str
    order: int
    votes: int


@dataclass(frozen=True)
class BallotResult:
    ballot_id: int
    title: str
    description: str
    type: str
    max_selections: int
    total_votes: int
    options: list[OptionResult]

    def as_dict(self) -> dict[str, object]:
        return {
            "ballot_id": self.ballot_id,
            "title": self.title,
            "description": self.description,
            "type": self.type,
            "max_selections": self.max_selections,
            "total_votes": self.total_votes,
            "options": [
                {"option_id": o.option_id, "text": o.text, "order": o.order, "votes": o.votes} for o in self.options
            ],
        }


def _selections(ballot: Ballot) -> Iterator[list[int]]:
    rows = (
        Vote.objects.filter(election_id=ballot.election_id, ballot=ballot)
        .order_by("pk")
        .values_list("option_ids", flat=True)
    )
    for option_ids in rows.iterator():
        yield [int(option_id) for option_id in option_ids or []]


def _finish(ballot: Ballot, counter: Counter[int], total_votes: int) -> BallotTally:
    return BallotTally(
        ballot_id=int(ballot.pk),
        counts={option_id: counter[option_id] for option_id in sorted(counter)},
        total_votes=total_votes,
    )


def _count_selections(ballot: Ballot) -> BallotTally:
    counter: Counter[int] = Counter()
    total_votes = 0
    for option_ids in _selections(ballot):
        total_votes += 1
        counter.update(option_ids)
    return _finish(ballot, counter, total_votes)


TALLY_STRATEGIES: dict[str, Callable[[Ballot], BallotTally]] = {
    # Both types add one count per selected option; a single-choice vote holds one.
    SINGLE: _count_selections,
    MULTIPLE: _count_selections,
}


def _get_ballot(*, election: Election, ballot_id: object) -> Ballot:
    try:
        pk = int(ballot_id)
    except (TypeError, ValueError) as exc:
        raise BallotNotFoundError(f"ballot {ballot_id!r} not found for this election") from exc

    ballot = Ballot.objects.filter(election=election, pk=pk).first()
    if ballot is None:
        raise BallotNotFoundError(f"ballot {pk} not found for this election")
    return ballot


def tally_ballot(*, election: Election, ballot_id: object) -> BallotTally:
    ballot = _get_ballot(election=election, ballot_id=ballot_id)
    return TALLY_STRATEGIES[str(ballot.type)](ballot)


def ballot_result(*, ballot: Ballot) -> BallotResult:
    tally = TALLY_STRATEGIES[str(ballot.type)](ballot)
    return BallotResult(
        ballot_id=int(ballot.pk),
        title=ballot.title,
        description=ballot.description,
        type=str(ballot.type),
        max_selections=int(ballot.max_selections),
        total_votes=tally.total_votes,
        options=[
            OptionResult(
                option_id=int(option.pk),
                text=option.text,
                order=int(option.order),
                votes=tally.counts.get(int(option.pk), 0),
            )
            for option in ballot.options.all()
        ],
    )


def election_results(*, election: Election) -> list[BallotResult]:
    ballots = Ballot.objects.filter(election=election).prefetch_related("options").order_by("id")
    return [ballot_result(ballot=ballot) for ballot in ballots]


def ballot_results(*, election: Election, ballot_id: object) -> BallotResult:
    return ballot_result(ballot=_get_ballot(election=election, ballot_id=ballot_id))
