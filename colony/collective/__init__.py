"""
Collective decision-making: voting and insight aggregation.
"""

from .intelligence import CollectiveIntelligence, Decision, Insight, Vote, VoteResult

__all__ = ["CollectiveIntelligence", "Decision", "Insight", "Vote", "VoteResult"]
