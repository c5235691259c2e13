"""Structural manipulation of project roadmaps.

Every operation follows the same path: load the whole Project aggregate
from the storage port, apply exactly one structural change to the
in-memory copy, restore the derived invariants (sprint numbering, phase
date chaining, overall progress), validate, write the aggregate back
with a single ``replace`` and only then publish the change.
"""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple

from .errors import InvariantViolation, NotFound, StorageFailure
from .models import (
    DEFAULT_PHASE_WEEKS,
    DEFAULT_SPRINT_DAYS,
    ActivityLogEntry,
    PDLCycle,
    Phase,
    Project,
    Roadmap,
    Sprint,
    Task,
    new_id,
    new_session_id,
    parse_iso,
    to_iso,
    utc_now,
)
from .pdl_logging import log_performance, log_structural_change
from .storage import StoragePort


logger = logging.getLogger("pdl.engine")


# ----------------------------------------------------------------------
# Invariant-restoring passes
# ----------------------------------------------------------------------


def renumber_sprints(phase: Phase) -> Phase:
    """Set every sprint number to its 1-based array position."""
    for index, sprint in enumerate(phase.sprints, start=1):
        sprint.sprint_number = index
    return phase


def renumber_cycles(sprint: Sprint) -> Sprint:
    for index, cycle in enumerate(sprint.pdl_cycles, start=1):
        cycle.cycle_number = index
    return sprint


def recalculate_phase_dates(roadmap: Roadmap, now: Optional[datetime] = None) -> Roadmap:
    """Chain phase dates from ``now`` in array order.

    A completed phase keeps its recorded dates and the chain resumes from
    its end date. Every other phase starts where the previous one ended
    and lasts ``duration_weeks``.
    """
    cursor = now or utc_now()

    for phase in roadmap.phases:
        if phase.status == "completed" and phase.end_date:
            cursor = parse_iso(phase.end_date)
            continue
        end = cursor + timedelta(weeks=phase.duration_weeks)
        phase.start_date = to_iso(cursor)
        phase.end_date = to_iso(end)
        cursor = end

    if roadmap.phases:
        roadmap.timeline_start = roadmap.phases[0].start_date
        roadmap.timeline_end = roadmap.phases[-1].end_date
    return roadmap


def refresh_overall_progress(roadmap: Roadmap) -> int:
    """Overall progress is the rounded mean of phase completion."""
    if not roadmap.phases:
        roadmap.overall_progress = 0
    else:
        total = sum(phase.completion_percentage for phase in roadmap.phases)
        roadmap.overall_progress = int(math.floor(total / len(roadmap.phases) + 0.5))
    return roadmap.overall_progress


def _clamp(position: Optional[int], length: int) -> int:
    if position is None:
        return length
    return max(0, min(int(position), length))


def positive_int(value: Any, default: int, label: str) -> int:
    if value is None:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{label} must be an integer, got: {value!r}") from e
    if number <= 0:
        raise ValueError(f"{label} must be positive, got: {number}")
    return number


def required_name(fields: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = fields.get(key)
        if value and str(value).strip():
            return str(value).strip()
    raise ValueError(f"A non-empty {keys[0]} is required")


# ----------------------------------------------------------------------
# Shared load / commit plumbing
# ----------------------------------------------------------------------


class AggregateOperations:
    """Load, validate, persist and publish Project aggregates.

    Every log entry written through one instance carries its
    ``session_id``, so a server process and everything it changed can be
    told apart from other sessions sharing the same store.
    """

    def __init__(
        self,
        storage: StoragePort,
        broadcaster: Any = None,
        clock: Callable[[], datetime] = utc_now,
        session_id: Optional[str] = None,
    ):
        self.storage = storage
        self.broadcaster = broadcaster
        self.clock = clock
        self.session_id = session_id or new_session_id(clock())

    def now(self) -> datetime:
        return self.clock()

    async def load_project(self, project_name: str) -> Project:
        project = await self.storage.fetch(project_name)
        if project is None:
            raise NotFound(f"Project '{project_name}' not found")
        return project

    async def _load(self, project_name: str) -> Tuple[Project, Roadmap]:
        project = await self.load_project(project_name)
        if project.roadmap is None:
            raise NotFound(f"Project '{project_name}' has no roadmap; create one with create_roadmap")
        return project, project.roadmap

    async def iter_projects(self, names: Optional[Sequence[str]] = None) -> AsyncIterator[Project]:
        """Yield every readable project; unreadable documents are logged and skipped."""
        if names is None:
            names = await self.storage.list_all()
        for name in names:
            try:
                project = await self.storage.fetch(name)
            except StorageFailure as e:
                logger.error(f"Skipping unreadable project '{name}': {e}")
                continue
            if project is not None:
                yield project

    def _log(self, project: Project, action: str, details: str, **refs: Any) -> ActivityLogEntry:
        """Append an activity entry stamped with this session and the engine clock."""
        return project.log_activity(
            action,
            details,
            session_id=self.session_id,
            at=to_iso(self.now()),
            **refs,
        )

    async def _commit(
        self,
        project: Project,
        event_type: str,
        payload: Dict[str, Any],
        entry: Optional[ActivityLogEntry] = None,
    ) -> None:
        """Validate, write back and publish. The write is the commit point."""
        if project.roadmap is not None:
            issues = project.roadmap.validate()
            if issues:
                raise InvariantViolation("; ".join(issues))

        stored = await self.storage.replace(project.project_name, project)
        if not stored:
            raise StorageFailure(f"Could not persist project '{project.project_name}'")

        if self.broadcaster is None:
            return
        self.broadcaster.publish(project.project_name, event_type, payload, session_id=self.session_id)
        if entry is not None:
            self.broadcaster.broadcast_log_update(project.project_name, entry.session_id, {"entry": entry.to_dict()})

    @staticmethod
    def _find_phase(roadmap: Roadmap, phase_id: str) -> Phase:
        phase = roadmap.find_phase(phase_id)
        if phase is None:
            raise NotFound(f"Phase '{phase_id}' not found")
        return phase

    @staticmethod
    def _locate_sprint(roadmap: Roadmap, sprint_id: str) -> Tuple[Phase, int]:
        located = roadmap.locate_sprint(sprint_id)
        if located is None:
            raise NotFound(f"Sprint '{sprint_id}' not found")
        return located

    @staticmethod
    def _locate_task(roadmap: Roadmap, task_id: str) -> Tuple[Phase, Sprint, Task]:
        for phase in roadmap.phases:
            for sprint in phase.sprints:
                for cycle in sprint.pdl_cycles:
                    for task in cycle.tasks:
                        if task.task_id == task_id:
                            return phase, sprint, task
        raise NotFound(f"Task '{task_id}' not found")

    def _restore(self, roadmap: Roadmap) -> None:
        recalculate_phase_dates(roadmap, self.now())
        refresh_overall_progress(roadmap)

    def _new_sprint(self, phase: Phase, name: str, duration_days: int) -> Sprint:
        started = self.now()
        sprint_id = new_id()
        return Sprint(
            sprint_id=sprint_id,
            sprint_name=name,
            sprint_number=len(phase.sprints) + 1,
            phase_id=phase.phase_id,
            start_date=to_iso(started),
            end_date=to_iso(started + timedelta(days=duration_days)),
            duration_days=duration_days,
            status="planning",
            pdl_cycles=[PDLCycle.start(sprint_id, 1, at=to_iso(started))],
        )


# ----------------------------------------------------------------------
# Structural operations
# ----------------------------------------------------------------------


class RoadmapEngine(AggregateOperations):
    """Insert, delete and reorder phases and sprints."""

    @log_performance("insert_phase")
    async def insert_phase(
        self,
        project_name: str,
        phase_spec: Dict[str, Any],
        position: Optional[int] = None,
    ) -> Dict[str, Any]:
        project, roadmap = await self._load(project_name)

        phase = Phase(
            phase_id=new_id(),
            phase_name=required_name(phase_spec, "name", "phase_name"),
            phase_description=phase_spec.get("description", phase_spec.get("phase_description", "")),
            objective=phase_spec.get("objective", ""),
            duration_weeks=positive_int(phase_spec.get("duration_weeks"), DEFAULT_PHASE_WEEKS, "duration_weeks"),
            status="not_started",
            deliverables=list(phase_spec.get("deliverables", [])),
            success_metrics=list(phase_spec.get("success_metrics", [])),
        )

        index = _clamp(position, len(roadmap.phases))
        roadmap.phases.insert(index, phase)
        self._restore(roadmap)

        entry = self._log(
            project,
            "phase_inserted",
            f"Inserted phase '{phase.phase_name}' at position {index}",
            phase_id=phase.phase_id,
        )
        await self._commit(
            project,
            "phase_update",
            {"action": "phase_inserted", "phase": phase.to_dict(), "position": index},
            entry,
        )
        log_structural_change("phase_inserted", project_name, phase_id=phase.phase_id, position=index)

        return {
            "success": True,
            "project_name": project_name,
            "inserted_phase": phase.to_dict(),
            "position": index,
            "message": f"Phase '{phase.phase_name}' inserted at position {index}",
        }

    @log_performance("delete_phase")
    async def delete_phase(
        self,
        project_name: str,
        phase_id: str,
        reassign_to: Optional[str] = None,
    ) -> Dict[str, Any]:
        project, roadmap = await self._load(project_name)
        phase = self._find_phase(roadmap, phase_id)

        target: Optional[Phase] = None
        if reassign_to is not None:
            if reassign_to == phase_id:
                raise InvariantViolation("A phase cannot reassign its sprints to itself")
            target = self._find_phase(roadmap, reassign_to)

        sprint_count = len(phase.sprints)
        milestones = [m for m in roadmap.milestones if m.phase_id == phase_id]

        if target is not None:
            for sprint in phase.sprints:
                sprint.phase_id = target.phase_id
                target.sprints.append(sprint)
            renumber_sprints(target)
            for milestone in milestones:
                milestone.phase_id = target.phase_id
        else:
            roadmap.milestones = [m for m in roadmap.milestones if m.phase_id != phase_id]

        roadmap.phases.remove(phase)
        self._restore(roadmap)

        reassigned = sprint_count if target else 0
        discarded = 0 if target else sprint_count
        if target:
            details = f"Deleted phase '{phase.phase_name}', moved {reassigned} sprints to '{target.phase_name}'"
        else:
            details = f"Deleted phase '{phase.phase_name}', discarded {discarded} sprints"
        entry = self._log(project, "phase_deleted", details, phase_id=phase_id)

        await self._commit(
            project,
            "phase_update",
            {
                "action": "phase_deleted",
                "phase_id": phase_id,
                "reassigned_to": reassign_to,
                "sprints_reassigned": reassigned,
                "sprints_discarded": discarded,
            },
            entry,
        )
        log_structural_change(
            "phase_deleted",
            project_name,
            phase_id=phase_id,
            reassigned_to=reassign_to,
            sprints_reassigned=reassigned,
            sprints_discarded=discarded,
        )
        if discarded:
            logger.warning(f"Discarded {discarded} sprints with phase {phase_id} in '{project_name}'")

        return {
            "success": True,
            "project_name": project_name,
            "deleted_phase": phase.summary(),
            "sprints_reassigned": reassigned,
            "sprints_discarded": discarded,
            "milestones_discarded": 0 if target else len(milestones),
            "reassigned_to": reassign_to,
            "message": details,
        }

    @log_performance("reorder_phases")
    async def reorder_phases(self, project_name: str, phase_order: Sequence[str]) -> Dict[str, Any]:
        project, roadmap = await self._load(project_name)

        by_id = {phase.phase_id: phase for phase in roadmap.phases}
        unknown = [phase_id for phase_id in phase_order if phase_id not in by_id]
        if unknown:
            raise NotFound(f"Unknown phase ids: {', '.join(unknown)}")

        ordered: List[Phase] = []
        seen = set()
        for phase_id in phase_order:
            if phase_id in seen:
                continue
            seen.add(phase_id)
            ordered.append(by_id[phase_id])
        appended = [phase for phase in roadmap.phases if phase.phase_id not in seen]

        roadmap.phases = ordered + appended
        self._restore(roadmap)

        new_order = [phase.phase_id for phase in roadmap.phases]
        appended_ids = [phase.phase_id for phase in appended]
        entry = self._log(
            project,
            "phases_reordered",
            f"Reordered {len(ordered)} phases" + (f", appended {len(appended)} omitted" if appended else ""),
        )
        await self._commit(
            project,
            "phase_update",
            {"action": "phases_reordered", "new_order": new_order, "appended": appended_ids},
            entry,
        )
        log_structural_change("phases_reordered", project_name, new_order=new_order, appended=appended_ids)

        return {
            "success": True,
            "project_name": project_name,
            "new_order": new_order,
            "appended": appended_ids,
            "message": f"Phases reordered; {len(appended_ids)} omitted phases kept at the end",
        }

    @log_performance("insert_sprint")
    async def insert_sprint(
        self,
        project_name: str,
        phase_id: str,
        sprint_spec: Dict[str, Any],
        position: Optional[int] = None,
    ) -> Dict[str, Any]:
        project, roadmap = await self._load(project_name)
        phase = self._find_phase(roadmap, phase_id)

        sprint = self._new_sprint(
            phase,
            required_name(sprint_spec, "sprint_name", "name"),
            positive_int(sprint_spec.get("duration_days"), DEFAULT_SPRINT_DAYS, "duration_days"),
        )
        index = _clamp(position, len(phase.sprints))
        phase.sprints.insert(index, sprint)
        renumber_sprints(phase)
        refresh_overall_progress(roadmap)

        entry = self._log(
            project,
            "sprint_inserted",
            f"Inserted sprint '{sprint.sprint_name}' into '{phase.phase_name}' as #{sprint.sprint_number}",
            phase_id=phase_id,
            sprint_id=sprint.sprint_id,
        )
        await self._commit(
            project,
            "sprint_update",
            {"action": "sprint_inserted", "phase_id": phase_id, "sprint": sprint.to_dict(), "position": index},
            entry,
        )
        log_structural_change("sprint_inserted", project_name, phase_id=phase_id, sprint_id=sprint.sprint_id)

        return {
            "success": True,
            "project_name": project_name,
            "phase_name": phase.phase_name,
            "inserted_sprint": sprint.to_dict(),
            "position": index,
            "message": f"Sprint '{sprint.sprint_name}' inserted as sprint {sprint.sprint_number}",
        }

    @log_performance("delete_sprint")
    async def delete_sprint(
        self,
        project_name: str,
        sprint_id: str,
        reassign_to: Optional[str] = None,
    ) -> Dict[str, Any]:
        project, roadmap = await self._load(project_name)
        phase, index = self._locate_sprint(roadmap, sprint_id)
        sprint = phase.sprints[index]

        target: Optional[Sprint] = None
        if reassign_to is not None:
            if reassign_to == sprint_id:
                raise InvariantViolation("A sprint cannot reassign its PDL cycles to itself")
            target_phase, target_index = self._locate_sprint(roadmap, reassign_to)
            target = target_phase.sprints[target_index]

        cycle_count = len(sprint.pdl_cycles)
        task_count = sprint.task_count()

        if target is not None:
            for cycle in sprint.pdl_cycles:
                cycle.sprint_id = target.sprint_id
                target.pdl_cycles.append(cycle)
            renumber_cycles(target)

        del phase.sprints[index]
        renumber_sprints(phase)
        refresh_overall_progress(roadmap)

        if target:
            details = (
                f"Deleted sprint '{sprint.sprint_name}', moved {cycle_count} PDL cycles "
                f"to '{target.sprint_name}'"
            )
        else:
            details = (
                f"Deleted sprint '{sprint.sprint_name}', discarded {cycle_count} PDL cycles "
                f"and {task_count} tasks"
            )
        entry = self._log(project, "sprint_deleted", details, phase_id=phase.phase_id, sprint_id=sprint_id)

        result = {
            "success": True,
            "project_name": project_name,
            "deleted_sprint": {
                "sprint_id": sprint.sprint_id,
                "sprint_name": sprint.sprint_name,
                "phase_id": phase.phase_id,
            },
            "cycles_reassigned": cycle_count if target else 0,
            "tasks_reassigned": task_count if target else 0,
            "cycles_discarded": 0 if target else cycle_count,
            "tasks_discarded": 0 if target else task_count,
            "reassigned_to": reassign_to,
            "message": details,
        }
        await self._commit(
            project,
            "sprint_update",
            {"action": "sprint_deleted", **{k: v for k, v in result.items() if k not in ("success", "message")}},
            entry,
        )
        log_structural_change("sprint_deleted", project_name, sprint_id=sprint_id, reassigned_to=reassign_to)
        return result

    @log_performance("reorder_sprints")
    async def reorder_sprints(self, project_name: str, moves: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        """Move sprints within or across phases.

        Each move is ``{sprint_id, target_phase_id, position}``; position is
        optional and defaults to the end. Every identifier is checked before
        anything is mutated, so a bad move leaves the roadmap untouched.
        """
        project, roadmap = await self._load(project_name)

        for move in moves:
            if not move.get("sprint_id") or not move.get("target_phase_id"):
                raise ValueError("Each move needs sprint_id and target_phase_id")
            self._locate_sprint(roadmap, move["sprint_id"])
            self._find_phase(roadmap, move["target_phase_id"])

        touched = set()
        moved: List[Dict[str, Any]] = []
        for move in moves:
            source, index = self._locate_sprint(roadmap, move["sprint_id"])
            target = self._find_phase(roadmap, move["target_phase_id"])

            sprint = source.sprints.pop(index)
            sprint.phase_id = target.phase_id
            position = _clamp(move.get("position"), len(target.sprints))
            target.sprints.insert(position, sprint)

            touched.update((source.phase_id, target.phase_id))
            moved.append({
                "sprint_id": sprint.sprint_id,
                "from_phase_id": source.phase_id,
                "to_phase_id": target.phase_id,
                "position": position,
            })

        renumbered = [phase.phase_id for phase in roadmap.phases if phase.phase_id in touched]
        for phase in roadmap.phases:
            if phase.phase_id in touched:
                renumber_sprints(phase)
        refresh_overall_progress(roadmap)

        entry = self._log(project, "sprints_reordered", f"Moved {len(moved)} sprints")
        await self._commit(
            project,
            "sprint_update",
            {"action": "sprints_reordered", "moved_sprints": moved, "phases_renumbered": renumbered},
            entry,
        )
        log_structural_change("sprints_reordered", project_name, moved=len(moved), phases=renumbered)

        return {
            "success": True,
            "project_name": project_name,
            "moved_sprints": moved,
            "phases_renumbered": renumbered,
            "message": f"Moved {len(moved)} sprints across {len(renumbered)} phases",
        }

    @log_performance("reorder_phase_sprints")
    async def reorder_phase_sprints(
        self,
        project_name: str,
        phase_id: str,
        sprint_order: Sequence[str],
    ) -> Dict[str, Any]:
        project, roadmap = await self._load(project_name)
        phase = self._find_phase(roadmap, phase_id)

        by_id = {sprint.sprint_id: sprint for sprint in phase.sprints}
        unknown = [sprint_id for sprint_id in sprint_order if sprint_id not in by_id]
        if unknown:
            raise NotFound(f"Sprints not in phase '{phase.phase_name}': {', '.join(unknown)}")

        ordered: List[Sprint] = []
        seen = set()
        for sprint_id in sprint_order:
            if sprint_id not in seen:
                seen.add(sprint_id)
                ordered.append(by_id[sprint_id])
        appended = [sprint for sprint in phase.sprints if sprint.sprint_id not in seen]

        phase.sprints = ordered + appended
        renumber_sprints(phase)

        new_order = [sprint.sprint_id for sprint in phase.sprints]
        appended_ids = [sprint.sprint_id for sprint in appended]
        entry = self._log(
            project,
            "phase_sprints_reordered",
            f"Reordered sprints of '{phase.phase_name}'",
            phase_id=phase_id,
        )
        await self._commit(
            project,
            "sprint_update",
            {"action": "phase_sprints_reordered", "phase_id": phase_id, "new_order": new_order},
            entry,
        )
        log_structural_change("phase_sprints_reordered", project_name, phase_id=phase_id, new_order=new_order)

        return {
            "success": True,
            "project_name": project_name,
            "phase_id": phase_id,
            "new_order": new_order,
            "appended": appended_ids,
            "message": f"Sprints of '{phase.phase_name}' reordered",
        }
