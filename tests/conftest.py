import pytest

from factories import NOW, RecordingSleep
from leadflow.channels import InMemoryChannelSender
from leadflow.config import LeadflowConfig
from leadflow.engine import build_engine
from leadflow.models import Channel
from leadflow.persistence import InMemoryAutomationRepository


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def repository():
    return InMemoryAutomationRepository()


@pytest.fixture
def senders():
    return {Channel.EMAIL: InMemoryChannelSender(), Channel.SMS: InMemoryChannelSender()}


@pytest.fixture
def sleeper():
    return RecordingSleep()


@pytest.fixture
def engine(repository, senders, sleeper):
    return build_engine(
        config=LeadflowConfig(), repository=repository, senders=senders, sleep=sleeper
    )
