# Test the voting algorithms
import pytest

from colony.collective.voting import Ballot, majority, ranked, weighted
from colony.errors import StateError


def ballots(*choices):
    return {f"agent-{i}": Ballot(choice=choice) for i, choice in enumerate(choices)}


def weighted_ballots(*pairs):
    return {f"agent-{i}": Ballot(choice=c, confidence=w) for i, (c, w) in enumerate(pairs)}


class TestMajority:

    def test_plurality(self):
        result = majority(ballots("A", "A", "B"))

        assert result.winner == "A"
        assert result.tally == {"A": 2, "B": 1}
        assert result.total_votes == 3

    def test_first_to_reach_the_top_count_wins_ties(self):
        # A reaches 2 before B does
        assert majority(ballots("B", "A", "A", "B")).winner == "A"

    def test_unhashable_choices(self):
        result = majority(ballots({"plan": 1}, {"plan": 1}, {"plan": 2}))
        assert result.winner == {"plan": 1}

    def test_no_ballots(self):
        result = majority({})
        assert result.winner is None
        assert result.total_votes == 0


class TestWeighted:

    def test_confidence_weights(self):
        result = weighted(weighted_ballots(("A", 0.9), ("B", 0.8), ("A", 0.7)))

        assert result.winner == "A"
        assert result.tally["A"] == pytest.approx(1.6)
        assert result.tally["B"] == pytest.approx(0.8)
        assert result.total_weight == pytest.approx(2.4)

    def test_heavy_minority_wins(self):
        result = weighted(weighted_ballots(("A", 0.2), ("A", 0.2), ("B", 0.9)))
        assert result.winner == "B"

    def test_zero_confidence_counts_nothing(self):
        result = weighted(weighted_ballots(("A", 0.0), ("B", 0.1)))
        assert result.winner == "B"
        assert result.tally["A"] == 0

    def test_all_zero_confidence_still_elects_first_seen(self):
        result = weighted(weighted_ballots(("A", 0.0), ("B", 0.0)))
        assert result.winner == "A"
        assert result.tally == {"A": 0.0, "B": 0.0}


class TestRanked:

    def test_first_round_majority(self):
        result = ranked(ballots(["A", "B"], ["B", "A"], ["A", "B"]))

        assert result.winner == "A"
        assert result.rounds == 1
        assert result.tally == {"A": 2, "B": 1}
        assert result.eliminated == []

    def test_transfers_after_elimination(self):
        result = ranked(ballots(
            ["A", "B", "C"],
            ["A", "C", "B"],
            ["B", "C", "A"],
            ["B", "A", "C"],
            ["C", "B", "A"],
        ))

        # C is eliminated and its ballot moves to B
        assert result.winner == "B"
        assert result.rounds == 2
        assert result.eliminated == ["C"]
        assert result.tally["B"] == 3

    def test_tie_eliminates_first_seen_lowest(self):
        result = ranked(ballots(["A"], ["B"], ["C", "A"], ["D", "B"], ["A"], ["B"]))

        assert result.eliminated[0] == "C"

    def test_scalar_choices_are_single_rankings(self):
        result = ranked(ballots("A", "A", "B"))
        assert result.winner == "A"
        assert result.rounds == 1

    def test_exhausted_ballots(self):
        result = ranked(ballots(["A"], ["B"], ["C"], ["C"]))

        assert result.winner == "C"
        assert result.eliminated == ["A", "B"]

    def test_no_ballots(self):
        result = ranked({})
        assert result.winner is None
        assert result.rounds == 0

    def test_round_cap(self):
        with pytest.raises(StateError):
            ranked(ballots(["A"], ["B"], ["C"], ["D"]), round_cap=1)
