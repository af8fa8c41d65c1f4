"""
Voting algorithms.

Every algorithm takes the ballots of a vote (agent id -> Ballot) and returns a
TallyResult. Choices are compared by value; unhashable choices (dicts, lists
outside ranked votes) are tallied under their canonical JSON form.
"""

from typing import Any, Callable, Dict, Hashable, List, Mapping, Optional
from pydantic import BaseModel, Field
import datetime
import json

from colony.errors import StateError
from colony.utils import utcnow

DEFAULT_ROUND_CAP = 100


class Ballot(BaseModel):
    choice: Any
    confidence: float = 1.0
    timestamp: datetime.datetime = Field(default_factory=utcnow)


class TallyResult(BaseModel):
    winner: Any = None
    tally: Dict[Any, float] = Field(default_factory=dict)
    total_votes: int = 0
    total_weight: Optional[float] = None
    rounds: Optional[int] = None
    eliminated: List[Any] = Field(default_factory=list)


VotingAlgorithm = Callable[[Mapping[str, Ballot]], TallyResult]


def _choice_key(choice: Any) -> Hashable:
    try:
        hash(choice)
        return choice
    except TypeError:
        return json.dumps(choice, sort_keys=True, default=str)


def _plurality(ballots: Mapping[str, Ballot], weigh: Callable[[Ballot], float]) -> TallyResult:
    tally: Dict[Hashable, float] = {}
    leader_score: Optional[float] = None
    winner = None

    for ballot in ballots.values():
        key = _choice_key(ballot.choice)
        tally[key] = tally.get(key, 0) + weigh(ballot)

        # strict '>' keeps the first choice to reach a count in the lead
        if leader_score is None or tally[key] > leader_score:
            leader_score = tally[key]
            winner = ballot.choice

    return TallyResult(winner=winner, tally=tally, total_votes=len(ballots))


def majority(ballots: Mapping[str, Ballot]) -> TallyResult:
    """Plurality of recorded choices, one unit per ballot."""
    return _plurality(ballots, lambda ballot: 1)


def weighted(ballots: Mapping[str, Ballot]) -> TallyResult:
    """Plurality where each ballot counts its confidence."""
    result = _plurality(ballots, lambda ballot: ballot.confidence)
    result.total_weight = sum(result.tally.values())
    return result


def ranked(ballots: Mapping[str, Ballot], round_cap: int = DEFAULT_ROUND_CAP) -> TallyResult:
    """
    Instant-runoff over ranked ballots.

    A ballot's choice is a list of options, most preferred first; a scalar
    choice counts as a one-option ranking. An option with more than half of
    all ballots wins. Otherwise the option with the lowest tally is
    eliminated (on ties, the one seen first across the ballots) and its
    ballots move to their next surviving option, until a majority appears or
    one option survives.

    Raises:
        StateError: If no winner emerges within ``round_cap`` rounds
    """
    total_votes = len(ballots)
    threshold = total_votes / 2

    rankings: List[List[Any]] = []
    for ballot in ballots.values():
        choice = ballot.choice
        rankings.append(list(choice) if isinstance(choice, (list, tuple)) else [choice])

    options: List[Any] = []
    for ranking in rankings:
        for option in ranking:
            if option not in options:
                options.append(option)

    tally: Dict[Any, float] = {option: 0 for option in options}
    for ranking in rankings:
        if ranking:
            tally[ranking[0]] += 1

    if not options:
        return TallyResult(winner=None, tally=tally, total_votes=total_votes, rounds=0)

    for option in options:
        if tally[option] > threshold:
            return TallyResult(winner=option, tally=dict(tally), total_votes=total_votes, rounds=1)

    eliminated: List[Any] = []
    current_round = 1

    while True:
        current_round += 1

        lowest = None
        lowest_count = float("inf")
        for option in options:
            if option not in eliminated and tally[option] < lowest_count:
                lowest_count = tally[option]
                lowest = option
        eliminated.append(lowest)

        for index, ranking in enumerate(rankings):
            if ranking and ranking[0] == lowest:
                remaining = [option for option in ranking if option not in eliminated]
                rankings[index] = remaining
                if remaining:
                    tally[remaining[0]] += 1
                tally[lowest] -= 1

        for option in options:
            if option not in eliminated and tally[option] > threshold:
                return TallyResult(winner=option, tally=dict(tally), total_votes=total_votes,
                                   rounds=current_round, eliminated=list(eliminated))

        surviving = [option for option in options if option not in eliminated]
        if len(surviving) == 1:
            return TallyResult(winner=surviving[0], tally=dict(tally), total_votes=total_votes,
                               rounds=current_round, eliminated=list(eliminated))

        if current_round > round_cap or not surviving:
            raise StateError("Ranked choice voting failed to produce a winner")


VOTING_ALGORITHMS: Dict[str, VotingAlgorithm] = {
    "majority": majority,
    "weighted": weighted,
    "ranked": ranked,
}
