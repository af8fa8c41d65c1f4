"""
Colony: coordination layer for multi-agent systems.

Message protocol and broker, agent registry with request/response, team
formation, and collective decision-making (votes and insight aggregation).
"""

__version__ = "0.1.0"
