"""
Composition root: builds every colony component once and wires them together.
"""

from typing import Callable, Optional
import datetime
import logging

from colony.collective.intelligence import CollectiveIntelligence
from colony.communication.addressing import TeamAddressing
from colony.communication.agents import AgentCommunication
from colony.communication.broker import MessageBroker
from colony.communication.collaboration import CollaborationProtocol
from colony.communication.monitor import MessageMonitor
from colony.config import Settings, get_settings
from colony.orchestrator import Orchestrator
from colony.teams.formation import TeamFormation
from colony.utils import utcnow

logger = logging.getLogger(__name__)


class ColonySystem:
    """
    One protocol, broker, agent directory, team registry and collective
    intelligence, injected into each other.

    Example:
        with ColonySystem() as colony:
            colony.communication.register_agent("agent-1", handler=on_message)
            ...
    """

    def __init__(self, settings: Optional[Settings] = None,
                 clock: Callable[[], datetime.datetime] = utcnow):
        self.settings = settings or get_settings()

        self.protocol = CollaborationProtocol(self.settings)
        self.monitor = MessageMonitor(log_dir=self.settings.log_dir)
        self.broker = MessageBroker(self.protocol, self.settings, self.monitor)
        self.communication = AgentCommunication(self.protocol, self.broker, self.settings)
        self.teams = TeamFormation(agents=self.communication)
        self.addressing = TeamAddressing(self.teams)
        self.collective = CollectiveIntelligence(self.settings, clock=clock)
        self.orchestrator = Orchestrator(self.communication, self.teams, self.collective)

        self.running = False

    def start(self) -> "ColonySystem":
        """Attach team/role addressing and register the orchestrator agent."""
        if self.running:
            return self

        self.addressing.attach(self.broker)
        self.orchestrator.start()
        self.running = True

        logger.info("Colony started (protocol %s)", self.protocol.version)
        return self

    def shutdown(self) -> None:
        """Unregister every agent, drop pending request timers and clear the broker."""
        if not self.running:
            return

        self.communication.shutdown()
        self.addressing.detach(self.broker)
        self.broker.shutdown()
        self.running = False

        logger.info("Colony shut down")

    def __enter__(self) -> "ColonySystem":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()
