"""Data models for PDL roadmap tracking.

This module contains the entity shapes of the Project aggregate:
projects, roadmaps, phases, sprints, PDL cycles and their stages, tasks,
milestones, the activity log and linked documentation. Models carry
structure and validation only; every mutation that has to preserve
ordering or numbering lives in the engine.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple


PHASE_STATUSES = ("not_started", "in_progress", "completed", "blocked")
SPRINT_STATUSES = ("planning", "active", "completed", "cancelled")
TASK_STATUSES = ("todo", "in_progress", "done", "blocked")
MILESTONE_STATUSES = ("pending", "achieved", "missed")

DEFAULT_PHASE_WEEKS = 4
DEFAULT_SPRINT_DAYS = 14

PDL_STAGE_COUNT = 7

PDL_STAGE_NAMES: Dict[int, str] = {
    1: "Discovery & Ideation",
    2: "Definition & Scoping",
    3: "Design & Prototyping",
    4: "Development & Implementation",
    5: "Testing & Quality Assurance",
    6: "Launch & Deployment",
    7: "Post-Launch: Growth & Iteration",
}

PDL_STAGE_PRIMARY_DRIVERS: Dict[int, str] = {
    1: "Product Manager",
    2: "Product Manager",
    3: "Product Designer",
    4: "Engineering Manager",
    5: "QA Engineers",
    6: "Engineering Manager",
    7: "Product Manager",
}

PDL_STAGE_KEY_ACTIVITIES: Dict[int, List[str]] = {
    1: ["Research", "User interviews", "Market analysis", "Ideation workshops"],
    2: ["Requirements gathering", "Scoping", "Technical feasibility", "Resource planning"],
    3: ["Wireframing", "Prototyping", "User testing", "Design iterations"],
    4: ["Coding", "Code reviews", "Integration", "Documentation"],
    5: ["Test planning", "Test execution", "Bug tracking", "Performance testing"],
    6: ["Deployment prep", "Release notes", "Go-live", "Monitoring setup"],
    7: ["Metrics analysis", "User feedback", "Optimization", "Feature planning"],
}


def new_id() -> str:
    """Generate a globally unique entity identifier."""
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(moment: datetime) -> str:
    """Render a datetime as an ISO-8601 UTC string with a trailing Z."""
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse an ISO-8601 string produced by to_iso (or any offset-aware one)."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def now_iso() -> str:
    return to_iso(utc_now())


def new_session_id(moment: Optional[datetime] = None) -> str:
    """Sortable session identifier: compact UTC timestamp plus a random suffix."""
    stamp = (moment or utc_now()).astimezone(timezone.utc).strftime("%Y%m%dT%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:8]}"


@dataclass(slots=True)
class Task:
    """A unit of work tracked inside a PDL cycle."""

    task_id: str
    description: str
    assignee: str = ""
    status: str = "todo"
    story_points: int = 0
    stage_number: Optional[int] = None
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "description": self.description,
            "assignee": self.assignee,
            "status": self.status,
            "story_points": self.story_points,
            "stage_number": self.stage_number,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Task":
        return cls(
            task_id=data["task_id"],
            description=data.get("description", ""),
            assignee=data.get("assignee", ""),
            status=data.get("status", "todo"),
            story_points=data.get("story_points", 0),
            stage_number=data.get("stage_number"),
            created_at=data.get("created_at", now_iso()),
            updated_at=data.get("updated_at", now_iso()),
        )

    def validate(self) -> List[str]:
        issues = []
        if not self.task_id:
            issues.append("Task ID is required")
        if not self.description:
            issues.append("Task description is required")
        if self.status not in TASK_STATUSES:
            issues.append(f"Invalid task status: {self.status}")
        if self.story_points < 0:
            issues.append("Story points cannot be negative")
        return issues


@dataclass(slots=True)
class PDLStage:
    """One of the seven fixed stages of a PDL cycle."""

    stage_number: int
    stage_name: str
    status: str = "not_started"
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    primary_driver: str = ""
    completion_percentage: int = 0
    key_activities: List[str] = field(default_factory=list)
    deliverables: List[str] = field(default_factory=list)
    blockers: List[str] = field(default_factory=list)
    notes: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage_number": self.stage_number,
            "stage_name": self.stage_name,
            "status": self.status,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "primary_driver": self.primary_driver,
            "completion_percentage": self.completion_percentage,
            "key_activities": list(self.key_activities),
            "deliverables": list(self.deliverables),
            "blockers": list(self.blockers),
            "notes": self.notes,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PDLStage":
        return cls(
            stage_number=data["stage_number"],
            stage_name=data.get("stage_name", PDL_STAGE_NAMES.get(data["stage_number"], "")),
            status=data.get("status", "not_started"),
            start_date=data.get("start_date"),
            end_date=data.get("end_date"),
            primary_driver=data.get("primary_driver", ""),
            completion_percentage=data.get("completion_percentage", 0),
            key_activities=data.get("key_activities", []),
            deliverables=data.get("deliverables", []),
            blockers=data.get("blockers", []),
            notes=data.get("notes", ""),
        )

    def complete(self, at: str) -> None:
        self.status = "completed"
        self.completion_percentage = 100
        self.end_date = at

    def begin(self, at: str) -> None:
        self.status = "in_progress"
        self.start_date = at


@dataclass(slots=True)
class PDLCycle:
    """One pass through the seven PDL stages within a sprint."""

    cycle_id: str
    sprint_id: str
    cycle_number: int
    stages: List[PDLStage]
    current_stage: int = 1
    start_date: str = field(default_factory=now_iso)
    end_date: Optional[str] = None
    cycle_velocity: int = 0
    tasks: List[Task] = field(default_factory=list)

    @classmethod
    def start(cls, sprint_id: str, cycle_number: int = 1, at: Optional[str] = None) -> "PDLCycle":
        """Create a cycle with stage 1 in progress and the rest not started."""
        started = at or now_iso()
        stages = []
        for number in range(1, PDL_STAGE_COUNT + 1):
            stages.append(
                PDLStage(
                    stage_number=number,
                    stage_name=PDL_STAGE_NAMES[number],
                    status="in_progress" if number == 1 else "not_started",
                    start_date=started if number == 1 else None,
                    primary_driver=PDL_STAGE_PRIMARY_DRIVERS[number],
                    key_activities=list(PDL_STAGE_KEY_ACTIVITIES[number]),
                )
            )
        return cls(
            cycle_id=new_id(),
            sprint_id=sprint_id,
            cycle_number=cycle_number,
            stages=stages,
            current_stage=1,
            start_date=started,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "sprint_id": self.sprint_id,
            "cycle_number": self.cycle_number,
            "current_stage": self.current_stage,
            "stages": [stage.to_dict() for stage in self.stages],
            "start_date": self.start_date,
            "end_date": self.end_date,
            "cycle_velocity": self.cycle_velocity,
            "tasks": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PDLCycle":
        return cls(
            cycle_id=data["cycle_id"],
            sprint_id=data.get("sprint_id", ""),
            cycle_number=data.get("cycle_number", 1),
            stages=[PDLStage.from_dict(item) for item in data.get("stages", [])],
            current_stage=data.get("current_stage", 1),
            start_date=data.get("start_date", now_iso()),
            end_date=data.get("end_date"),
            cycle_velocity=data.get("cycle_velocity", 0),
            tasks=[Task.from_dict(item) for item in data.get("tasks", [])],
        )

    def stage(self, stage_number: int) -> PDLStage:
        """Return the stage with the given 1-based number."""
        if not 1 <= stage_number <= PDL_STAGE_COUNT:
            raise ValueError(f"PDL stage number must be 1-{PDL_STAGE_COUNT}, got: {stage_number}")
        return self.stages[stage_number - 1]

    @property
    def is_finished(self) -> bool:
        return self.end_date is not None


@dataclass(slots=True)
class Sprint:
    """A time-boxed unit of work owned by exactly one phase."""

    sprint_id: str
    sprint_name: str
    sprint_number: int
    phase_id: str
    start_date: str = field(default_factory=now_iso)
    end_date: str = ""
    duration_days: int = DEFAULT_SPRINT_DAYS
    status: str = "planning"
    pdl_cycles: List[PDLCycle] = field(default_factory=list)
    velocity: int = 0
    burn_down: List[int] = field(default_factory=list)
    retrospective: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sprint_id": self.sprint_id,
            "sprint_name": self.sprint_name,
            "sprint_number": self.sprint_number,
            "phase_id": self.phase_id,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "duration_days": self.duration_days,
            "status": self.status,
            "pdl_cycles": [cycle.to_dict() for cycle in self.pdl_cycles],
            "velocity": self.velocity,
            "burn_down": list(self.burn_down),
            "retrospective": self.retrospective,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sprint":
        return cls(
            sprint_id=data["sprint_id"],
            sprint_name=data.get("sprint_name", ""),
            sprint_number=data.get("sprint_number", 0),
            phase_id=data.get("phase_id", ""),
            start_date=data.get("start_date", now_iso()),
            end_date=data.get("end_date", ""),
            duration_days=data.get("duration_days", DEFAULT_SPRINT_DAYS),
            status=data.get("status", "planning"),
            pdl_cycles=[PDLCycle.from_dict(item) for item in data.get("pdl_cycles", [])],
            velocity=data.get("velocity", 0),
            burn_down=data.get("burn_down", []),
            retrospective=data.get("retrospective", ""),
        )

    @property
    def current_cycle(self) -> Optional[PDLCycle]:
        return self.pdl_cycles[-1] if self.pdl_cycles else None

    def task_count(self) -> int:
        return sum(len(cycle.tasks) for cycle in self.pdl_cycles)


@dataclass(slots=True)
class Phase:
    """A coarse-grained roadmap segment containing sprints."""

    phase_id: str
    phase_name: str
    phase_description: str = ""
    objective: str = ""
    duration_weeks: int = DEFAULT_PHASE_WEEKS
    status: str = "not_started"
    completion_percentage: int = 0
    start_date: str = ""
    end_date: str = ""
    sprints: List[Sprint] = field(default_factory=list)
    deliverables: List[str] = field(default_factory=list)
    success_metrics: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "phase_id": self.phase_id,
            "phase_name": self.phase_name,
            "phase_description": self.phase_description,
            "objective": self.objective,
            "duration_weeks": self.duration_weeks,
            "status": self.status,
            "completion_percentage": self.completion_percentage,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "sprints": [sprint.to_dict() for sprint in self.sprints],
            "deliverables": list(self.deliverables),
            "success_metrics": list(self.success_metrics),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Phase":
        return cls(
            phase_id=data["phase_id"],
            phase_name=data.get("phase_name", ""),
            phase_description=data.get("phase_description", ""),
            objective=data.get("objective", ""),
            duration_weeks=data.get("duration_weeks", DEFAULT_PHASE_WEEKS),
            status=data.get("status", "not_started"),
            completion_percentage=data.get("completion_percentage", 0),
            start_date=data.get("start_date", ""),
            end_date=data.get("end_date", ""),
            sprints=[Sprint.from_dict(item) for item in data.get("sprints", [])],
            deliverables=data.get("deliverables", []),
            success_metrics=data.get("success_metrics", []),
        )

    def summary(self) -> Dict[str, Any]:
        """Compact view used in operation results and broadcast payloads."""
        return {
            "phase_id": self.phase_id,
            "phase_name": self.phase_name,
            "status": self.status,
            "completion_percentage": self.completion_percentage,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "sprint_count": len(self.sprints),
        }


@dataclass(slots=True)
class Milestone:
    """A dated checkpoint attached to a roadmap phase."""

    milestone_id: str
    name: str
    phase_id: str
    target_date: str
    description: str = ""
    achieved_date: Optional[str] = None
    status: str = "pending"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "milestone_id": self.milestone_id,
            "name": self.name,
            "description": self.description,
            "target_date": self.target_date,
            "achieved_date": self.achieved_date,
            "phase_id": self.phase_id,
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Milestone":
        return cls(
            milestone_id=data["milestone_id"],
            name=data.get("name", ""),
            phase_id=data.get("phase_id", ""),
            target_date=data.get("target_date", ""),
            description=data.get("description", ""),
            achieved_date=data.get("achieved_date"),
            status=data.get("status", "pending"),
        )


@dataclass(slots=True)
class Roadmap:
    """Ordered phases of a project; array position is the sequence."""

    roadmap_id: str
    project_name: str
    vision: str = ""
    timeline_start: str = ""
    timeline_end: str = ""
    phases: List[Phase] = field(default_factory=list)
    milestones: List[Milestone] = field(default_factory=list)
    overall_progress: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roadmap_id": self.roadmap_id,
            "project_name": self.project_name,
            "vision": self.vision,
            "timeline_start": self.timeline_start,
            "timeline_end": self.timeline_end,
            "phases": [phase.to_dict() for phase in self.phases],
            "milestones": [milestone.to_dict() for milestone in self.milestones],
            "overall_progress": self.overall_progress,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Roadmap":
        return cls(
            roadmap_id=data["roadmap_id"],
            project_name=data.get("project_name", ""),
            vision=data.get("vision", ""),
            timeline_start=data.get("timeline_start", ""),
            timeline_end=data.get("timeline_end", ""),
            phases=[Phase.from_dict(item) for item in data.get("phases", [])],
            milestones=[Milestone.from_dict(item) for item in data.get("milestones", [])],
            overall_progress=data.get("overall_progress", 0),
        )

    def find_phase(self, phase_id: str) -> Optional[Phase]:
        for phase in self.phases:
            if phase.phase_id == phase_id:
                return phase
        return None

    def locate_sprint(self, sprint_id: str) -> Optional[Tuple[Phase, int]]:
        """Return the owning phase and index of a sprint, if present."""
        for phase in self.phases:
            for index, sprint in enumerate(phase.sprints):
                if sprint.sprint_id == sprint_id:
                    return phase, index
        return None

    def all_sprints(self) -> List[Sprint]:
        return [sprint for phase in self.phases for sprint in phase.sprints]

    def current_phase(self) -> Optional[Phase]:
        for phase in self.phases:
            if phase.status == "in_progress":
                return phase
        return None

    def validate(self) -> List[str]:
        """Check numbering, ownership and identifier uniqueness."""
        issues = []
        seen_ids = set()

        for phase in self.phases:
            if phase.phase_id in seen_ids:
                issues.append(f"Duplicate identifier: {phase.phase_id}")
            seen_ids.add(phase.phase_id)
            if phase.status not in PHASE_STATUSES:
                issues.append(f"Invalid phase status: {phase.status}")

            numbers = [sprint.sprint_number for sprint in phase.sprints]
            if numbers != list(range(1, len(phase.sprints) + 1)):
                issues.append(
                    f"Sprint numbers in phase '{phase.phase_name}' are {numbers}, "
                    f"expected 1..{len(phase.sprints)}"
                )

            for sprint in phase.sprints:
                if sprint.sprint_id in seen_ids:
                    issues.append(f"Duplicate identifier: {sprint.sprint_id}")
                seen_ids.add(sprint.sprint_id)
                if sprint.phase_id != phase.phase_id:
                    issues.append(
                        f"Sprint '{sprint.sprint_name}' references phase {sprint.phase_id} "
                        f"but lives in {phase.phase_id}"
                    )
                if sprint.status not in SPRINT_STATUSES:
                    issues.append(f"Invalid sprint status: {sprint.status}")

        return issues


@dataclass(slots=True)
class ActivityLogEntry:
    """Append-only record of something that happened to a project."""

    timestamp: str
    actor: str
    action: str
    details: str
    phase_id: Optional[str] = None
    sprint_id: Optional[str] = None
    session_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "actor": self.actor,
            "action": self.action,
            "details": self.details,
            "phase_id": self.phase_id,
            "sprint_id": self.sprint_id,
            "session_id": self.session_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ActivityLogEntry":
        return cls(
            timestamp=data.get("timestamp", now_iso()),
            actor=data.get("actor", "system"),
            action=data.get("action", ""),
            details=data.get("details", ""),
            phase_id=data.get("phase_id"),
            sprint_id=data.get("sprint_id"),
            session_id=data.get("session_id"),
        )


@dataclass(slots=True)
class DocumentationEntry:
    """A document produced while working on a project, phase or task."""

    doc_id: str
    name: str
    path: str
    summary_brief: str = ""
    creating_agent: str = ""
    phase_id: Optional[str] = None
    task_id: Optional[str] = None
    session_id: Optional[str] = None
    created_at: str = field(default_factory=now_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "doc_id": self.doc_id,
            "name": self.name,
            "path": self.path,
            "summary_brief": self.summary_brief,
            "creating_agent": self.creating_agent,
            "phase_id": self.phase_id,
            "task_id": self.task_id,
            "session_id": self.session_id,
            "created_at": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DocumentationEntry":
        return cls(
            doc_id=data["doc_id"],
            name=data.get("name", ""),
            path=data.get("path", ""),
            summary_brief=data.get("summary_brief", ""),
            creating_agent=data.get("creating_agent", ""),
            phase_id=data.get("phase_id"),
            task_id=data.get("task_id"),
            session_id=data.get("session_id"),
            created_at=data.get("created_at", now_iso()),
        )

    def matches(self, search: str) -> bool:
        """Case-insensitive search over name, summary and path."""
        needle = search.lower()
        return any(needle in value.lower() for value in (self.name, self.summary_brief, self.path))


@dataclass(slots=True)
class Project:
    """The aggregate root; persisted and replaced as one document."""

    project_name: str
    description: str = ""
    created_at: str = field(default_factory=now_iso)
    updated_at: str = field(default_factory=now_iso)
    team_composition: Dict[str, Any] = field(default_factory=dict)
    roadmap: Optional[Roadmap] = None
    activity_log: List[ActivityLogEntry] = field(default_factory=list)
    documentation: List[DocumentationEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "project_name": self.project_name,
            "description": self.description,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "team_composition": dict(self.team_composition),
            "roadmap": self.roadmap.to_dict() if self.roadmap else None,
            "activity_log": [entry.to_dict() for entry in self.activity_log],
            "documentation": [doc.to_dict() for doc in self.documentation],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        roadmap = data.get("roadmap")
        return cls(
            project_name=data["project_name"],
            description=data.get("description", ""),
            created_at=data.get("created_at", now_iso()),
            updated_at=data.get("updated_at", now_iso()),
            team_composition=data.get("team_composition") or {},
            roadmap=Roadmap.from_dict(roadmap) if roadmap else None,
            activity_log=[ActivityLogEntry.from_dict(item) for item in data.get("activity_log", [])],
            documentation=[DocumentationEntry.from_dict(item) for item in data.get("documentation") or []],
        )

    def log_activity(
        self,
        action: str,
        details: str,
        *,
        actor: str = "system",
        phase_id: Optional[str] = None,
        sprint_id: Optional[str] = None,
        session_id: Optional[str] = None,
        at: Optional[str] = None,
    ) -> ActivityLogEntry:
        """Append an entry to the activity log and bump updated_at."""
        entry = ActivityLogEntry(
            timestamp=at or now_iso(),
            actor=actor,
            action=action,
            details=details,
            phase_id=phase_id,
            sprint_id=sprint_id,
            session_id=session_id,
        )
        self.activity_log.append(entry)
        self.updated_at = entry.timestamp
        return entry

    def summary(self) -> Dict[str, Any]:
        roadmap = self.roadmap
        return {
            "project_name": self.project_name,
            "description": self.description,
            "updated_at": self.updated_at,
            "has_roadmap": roadmap is not None,
            "phase_count": len(roadmap.phases) if roadmap else 0,
            "sprint_count": len(roadmap.all_sprints()) if roadmap else 0,
            "overall_progress": roadmap.overall_progress if roadmap else 0,
        }
