"""
Shared fixtures for the workflow test suite.

Async code is driven with asyncio.run() inside plain sync tests; every
test builds its own in-memory repository.
"""
from datetime import date, timedelta
import pytest

from workflow_core.orchestrator import WorkflowOrchestrator
from workflow_core.repository import InMemoryWorkflowRepository

APPROVERS = ["manager-1", "hr-head"]


class RecordingNotifier:
    """Collects dispatched notifications instead of queueing them."""

    def __init__(self):
        self.sent = []

    async def dispatch(self, notifications):
        self.sent.extend(notifications)
        return len(notifications)


class RecordingAudit:

    def __init__(self):
        self.entries = []

    async def log_action(self, **entry):
        self.entries.append(entry)


@pytest.fixture
def repository():
    return InMemoryWorkflowRepository()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def audit():
    return RecordingAudit()


@pytest.fixture
def orchestrator(repository, notifier, audit):
    return WorkflowOrchestrator(repository, notifier=notifier, audit=audit)


@pytest.fixture
def upcoming_monday():
    """A Monday at least two weeks out, so Mon-Wed is three working days."""
    today = date.today()
    return today + timedelta(days=14 + (7 - today.weekday()) % 7)


@pytest.fixture
def past_monday():
    """Monday of last week."""
    today = date.today()
    return today - timedelta(days=today.weekday() + 7)
