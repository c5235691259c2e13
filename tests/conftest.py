"""Shared fixtures for the PDL test suite."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Sequence

import pytest

from pdl.models import PDLCycle, Phase, Project, Roadmap, Sprint
from pdl.storage import PrivateStore, SharedStore


FIXED_NOW = datetime(2025, 1, 6, 9, 0, tzinfo=timezone.utc)


class RecordingBroadcaster:
    """Stands in for the hub and records every publish call."""

    def __init__(self):
        self.events: List[Dict[str, Any]] = []

    def publish(self, project_name, message_type, payload, session_id=None):
        self.events.append({
            "project_name": project_name,
            "type": message_type,
            "payload": payload,
            "session_id": session_id,
        })
        return 1

    def broadcast_log_update(self, project_name, session_id, log_entry):
        return self.publish(project_name, "log_update", log_entry, session_id=session_id)

    def of_type(self, message_type):
        return [event for event in self.events if event["type"] == message_type]


def make_phase(
    phase_id: str,
    name: str = "",
    sprint_ids: Sequence[str] = (),
    status: str = "not_started",
    duration_weeks: int = 4,
) -> Phase:
    phase = Phase(
        phase_id=phase_id,
        phase_name=name or phase_id.upper(),
        status=status,
        duration_weeks=duration_weeks,
    )
    for number, sprint_id in enumerate(sprint_ids, start=1):
        phase.sprints.append(
            Sprint(
                sprint_id=sprint_id,
                sprint_name=f"Sprint {sprint_id}",
                sprint_number=number,
                phase_id=phase_id,
                pdl_cycles=[PDLCycle.start(sprint_id)],
            )
        )
    return phase


def seed_project(store, name: str, phases: Sequence[Phase]) -> Project:
    """Write a project with the given phases straight into a store."""
    project = Project(
        project_name=name,
        roadmap=Roadmap(roadmap_id=f"roadmap-{name}", project_name=name, phases=list(phases)),
    )
    assert store._replace_sync(name, project)
    return project


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def private_store(tmp_path):
    return PrivateStore(tmp_path / "data")


@pytest.fixture
def shared_store(tmp_path):
    return SharedStore(tmp_path / "shared")


@pytest.fixture
def recorder():
    return RecordingBroadcaster()
