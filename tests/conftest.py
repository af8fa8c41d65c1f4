import pytest

from colony.communication.agents import AgentCommunication
from colony.communication.broker import MessageBroker
from colony.communication.collaboration import CollaborationProtocol
from colony.communication.monitor import MessageMonitor
from colony.config import Settings


@pytest.fixture
def settings(tmp_path):
    return Settings(log_dir=tmp_path / "broker_logs")


@pytest.fixture
def protocol(settings):
    return CollaborationProtocol(settings)


@pytest.fixture
def monitor(settings):
    return MessageMonitor(log_dir=settings.log_dir)


@pytest.fixture
def broker(protocol, settings, monitor):
    return MessageBroker(protocol, settings, monitor)


@pytest.fixture
def comm(protocol, broker, settings):
    return AgentCommunication(protocol, broker, settings)
