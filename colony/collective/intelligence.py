"""
Collective intelligence: votes with pluggable algorithms, and insight
aggregation into decisions.
"""

from enum import Enum
from functools import partial
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence
from pydantic import BaseModel, ConfigDict, Field, field_validator
import datetime
import logging

from colony.config import Settings, get_settings
from colony.errors import AggregationError, NotFoundError, StateError
from colony.utils import as_utc, generate_id, utcnow
from .consensus import AGGREGATION_ALGORITHMS, AggregationAlgorithm
from .voting import VOTING_ALGORITHMS, Ballot, TallyResult, VotingAlgorithm, ranked

logger = logging.getLogger(__name__)


class VoteStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class BallotRejection(Enum):
    """Why a ballot cannot be cast."""
    CLOSED = "closed"
    DEADLINE_PASSED = "deadline_passed"
    NOT_PARTICIPANT = "not_participant"
    INVALID_CHOICE = "invalid_choice"


class BallotRejectedError(StateError):

    def __init__(self, vote_id: str, agent_id: str, reason: BallotRejection, message: str):
        super().__init__(message)
        self.vote_id = vote_id
        self.agent_id = agent_id
        self.reason = reason


class VoteResult(BaseModel):
    winner: Any = None
    method: str
    participants: List[str] = Field(default_factory=list)
    participant_count: int = 0
    details: TallyResult


class Vote(BaseModel):
    id: str
    topic: str
    description: str = ""
    options: List[Any] = Field(default_factory=list, description="Closed option set; empty means any choice")
    method: str = "majority"
    participants: List[str] = Field(default_factory=list, description="Allowlist; empty means anyone")
    ballots: Dict[str, Ballot] = Field(default_factory=dict)
    status: VoteStatus = VoteStatus.OPEN
    created_at: datetime.datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime.datetime] = None
    deadline: Optional[datetime.datetime] = None
    result: Optional[VoteResult] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("deadline")
    @classmethod
    def deadline_in_utc(cls, v: Optional[datetime.datetime]) -> Optional[datetime.datetime]:
        return as_utc(v) if v is not None else None

    def is_expired(self, now: datetime.datetime) -> bool:
        return self.deadline is not None and now > self.deadline

    def accepts_choice(self, choice: Any) -> bool:
        if not self.options:
            return True
        if isinstance(choice, (list, tuple)):
            # ranked ballots: every ranked option must be on offer
            return bool(choice) and all(option in self.options for option in choice)
        return choice in self.options

    def rejection_for(self, agent_id: str, choice: Any, now: datetime.datetime) -> Optional[BallotRejection]:
        """Return why this ballot would be refused, or None if it can be cast."""
        if self.status is VoteStatus.CLOSED:
            return BallotRejection.CLOSED
        if self.is_expired(now):
            return BallotRejection.DEADLINE_PASSED
        if self.participants and agent_id not in self.participants:
            return BallotRejection.NOT_PARTICIPANT
        if not self.accepts_choice(choice):
            return BallotRejection.INVALID_CHOICE
        return None

    def all_participants_voted(self) -> bool:
        return bool(self.participants) and all(p in self.ballots for p in self.participants)


class Insight(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    task_id: str
    agent_id: str
    content: Any
    confidence: float = 1.0
    evidence: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime.datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class Decision(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    task_id: str
    method: str
    insight_ids: List[str]
    result: Dict[str, Any]
    timestamp: datetime.datetime = Field(default_factory=utcnow)


class CollectiveIntelligence:
    """
    Runs votes and turns per-task insights into decisions.

    Vote lifecycle: ``open`` -> ``closed``, once, on explicit close, on the
    first ballot attempt after the deadline, or when every allowlisted
    participant has voted. Results are computed by the vote's method and
    cached on the vote.

    Args:
        settings: Supplies default methods and the ranked-choice round cap
        clock: Source of "now", used for deadlines and timestamps
    """

    def __init__(self, settings: Optional[Settings] = None,
                 clock: Callable[[], datetime.datetime] = utcnow):
        self.settings = settings or get_settings()
        self.clock = clock
        self.votes: Dict[str, Vote] = {}
        self.insights: Dict[str, List[Insight]] = {}
        self.decisions: Dict[str, Decision] = {}

        self.voting_algorithms: Dict[str, VotingAlgorithm] = dict(VOTING_ALGORITHMS)
        self.voting_algorithms["ranked"] = partial(
            ranked, round_cap=self.settings.collective.ranked_choice_round_cap
        )
        self.aggregation_algorithms: Dict[str, AggregationAlgorithm] = dict(AGGREGATION_ALGORITHMS)

    def register_voting_method(self, name: str, algorithm: VotingAlgorithm, replace: bool = False) -> None:
        if name in self.voting_algorithms and not replace:
            raise ValueError(f"Voting method '{name}' is already registered")
        self.voting_algorithms[name] = algorithm

    def register_aggregation_method(self, name: str, algorithm: AggregationAlgorithm, replace: bool = False) -> None:
        if name in self.aggregation_algorithms and not replace:
            raise ValueError(f"Aggregation method '{name}' is already registered")
        self.aggregation_algorithms[name] = algorithm

    # Votes

    def create_vote(self, topic: str, options: Optional[Sequence[Any]] = None, method: Optional[str] = None,
                    participants: Optional[Sequence[str]] = None,
                    deadline: Optional[datetime.datetime] = None, vote_id: Optional[str] = None,
                    description: str = "", metadata: Optional[Mapping[str, Any]] = None) -> Vote:
        """
        Open a new vote.

        Raises:
            StateError: If ``vote_id`` is already in use
            ValueError: If ``method`` is not a registered voting method
        """
        vote_id = vote_id or generate_id("vote")
        if vote_id in self.votes:
            raise StateError(f"Vote {vote_id} already exists")

        method = method or self.settings.collective.default_vote_method
        if method not in self.voting_algorithms:
            raise ValueError(f"Unknown voting method: {method}")

        vote = Vote(
            id=vote_id,
            topic=topic,
            description=description,
            options=list(options or []),
            method=method,
            participants=list(participants or []),
            created_at=self.clock(),
            deadline=deadline,
            metadata=dict(metadata or {}),
        )
        self.votes[vote_id] = vote

        logger.info("Created vote %s: %s", vote_id, topic)
        return vote

    def get_vote(self, vote_id: str) -> Vote:
        vote = self.votes.get(vote_id)
        if vote is None:
            raise NotFoundError(f"Vote {vote_id} not found")
        return vote

    def list_votes(self, status: Optional[VoteStatus] = None) -> List[Vote]:
        return [v for v in self.votes.values() if status is None or v.status == status]

    def cast_vote(self, vote_id: str, agent_id: str, choice: Any, confidence: float = 1.0) -> Vote:
        """
        Record a ballot.

        Raises:
            NotFoundError: If the vote is unknown
            BallotRejectedError: If the vote is closed or past its deadline
                (which closes it), the agent is not allowlisted, or the
                choice is not on offer
        """
        vote = self.get_vote(vote_id)
        now = self.clock()

        rejection = vote.rejection_for(agent_id, choice, now)
        if rejection is BallotRejection.DEADLINE_PASSED:
            self._close(vote, now)
        if rejection is not None:
            raise BallotRejectedError(vote_id, agent_id, rejection, self._rejection_message(vote, agent_id, choice, rejection))

        vote.ballots[agent_id] = Ballot(choice=choice, confidence=confidence, timestamp=now)
        logger.info("Agent %s voted in %s", agent_id, vote_id)

        if vote.all_participants_voted():
            try:
                self.close_vote(vote_id)
            except StateError as e:
                logger.error("Vote %s closed but produced no result: %s", vote_id, e)

        return vote

    def close_vote(self, vote_id: str) -> VoteResult:
        """
        Close a vote and compute its result. Closing a closed vote returns the
        cached result.

        Raises:
            StateError: If the voting method cannot produce a winner
        """
        vote = self.get_vote(vote_id)
        if vote.status is VoteStatus.OPEN:
            self._close(vote, self.clock())

        if vote.result is None:
            vote.result = self._compute_vote_result(vote)
            logger.info("Closed vote %s with winner %r", vote_id, vote.result.winner)

        return vote.result

    def get_vote_result(self, vote_id: str) -> VoteResult:
        """
        Raises:
            StateError: If the vote is still open
        """
        vote = self.get_vote(vote_id)
        if vote.status is VoteStatus.OPEN and vote.is_expired(self.clock()):
            self._close(vote, self.clock())
        if vote.status is VoteStatus.OPEN:
            raise StateError(f"Vote {vote_id} is not closed yet")
        return self.close_vote(vote_id)

    def _close(self, vote: Vote, now: datetime.datetime) -> None:
        vote.status = VoteStatus.CLOSED
        vote.closed_at = now

    def _compute_vote_result(self, vote: Vote) -> VoteResult:
        algorithm = self.voting_algorithms[vote.method]
        details = algorithm(vote.ballots)
        return VoteResult(
            winner=details.winner,
            method=vote.method,
            participants=list(vote.ballots),
            participant_count=len(vote.ballots),
            details=details,
        )

    @staticmethod
    def _rejection_message(vote: Vote, agent_id: str, choice: Any, rejection: BallotRejection) -> str:
        return {
            BallotRejection.CLOSED: f"Vote {vote.id} is not open",
            BallotRejection.DEADLINE_PASSED: f"Vote {vote.id} deadline has passed",
            BallotRejection.NOT_PARTICIPANT: f"Agent {agent_id} is not allowed to vote in {vote.id}",
            BallotRejection.INVALID_CHOICE: f"Invalid choice: {choice!r}",
        }[rejection]

    # Insights

    def add_insight(self, task_id: str, agent_id: str, content: Any, confidence: Optional[float] = None,
                    evidence: Optional[Mapping[str, Any]] = None,
                    metadata: Optional[Mapping[str, Any]] = None) -> Insight:
        """Append an immutable insight to a task."""
        insight = Insight(
            id=generate_id("insight"),
            task_id=task_id,
            agent_id=agent_id,
            content=content,
            confidence=1.0 if confidence is None else confidence,
            evidence=dict(evidence or {}),
            timestamp=self.clock(),
            metadata=dict(metadata or {}),
        )
        self.insights.setdefault(task_id, []).append(insight)

        logger.info("Added insight from agent %s to task %s", agent_id, task_id)
        return insight

    def get_insights(self, task_id: str) -> List[Insight]:
        return list(self.insights.get(task_id, []))

    def aggregate_insights(self, task_id: str, method: Optional[str] = None) -> Decision:
        """
        Combine a task's insights into a new decision.

        Raises:
            AggregationError: If the task has no insights or none the method can use
            ValueError: If ``method`` is not a registered aggregation method
        """
        method = method or self.settings.collective.default_aggregation_method
        algorithm = self.aggregation_algorithms.get(method)
        if algorithm is None:
            raise ValueError(f"Unknown aggregation method: {method}")

        insights = self.get_insights(task_id)
        if not insights:
            raise AggregationError(f"No insights found for task {task_id}")

        decision = Decision(
            id=generate_id("decision"),
            task_id=task_id,
            method=method,
            insight_ids=[i.id for i in insights],
            result=algorithm(insights),
            timestamp=self.clock(),
        )
        self.decisions[decision.id] = decision

        logger.info("Aggregated %d insights for task %s using %s", len(insights), task_id, method)
        return decision

    def get_decision(self, decision_id: str) -> Decision:
        decision = self.decisions.get(decision_id)
        if decision is None:
            raise NotFoundError(f"Decision {decision_id} not found")
        return decision

    def get_task_decisions(self, task_id: str) -> List[Decision]:
        return [d for d in self.decisions.values() if d.task_id == task_id]
