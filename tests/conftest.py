"""
Shared fixtures for the governance test suite.
"""

from __future__ import annotations

import pytest

from tests.helpers import ManualClock
from tribunal.event_bus import EventBus
from tribunal.models import Action, Proposal


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def make_proposal(clock):
    """Factory for valid proposals; override any field by keyword."""
    counter = iter(range(1, 10_000))

    def _make(
        pid: str | None = None,
        action_type: str = "read_file",
        content: str = "cat README.md",
        irreversible: bool = False,
        **overrides,
    ) -> Proposal:
        fields = {
            "id": pid or f"p-{next(counter)}",
            "requested_by": "agent:test",
            "action": Action(type=action_type, content=content, irreversible=irreversible),
            "risk_score": 0.1,
            "estimated_cost": 10.0,
            "created_at": clock(),
        }
        fields.update(overrides)
        return Proposal(**fields)

    return _make
