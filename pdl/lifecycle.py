"""Project, roadmap, sprint and PDL cycle lifecycle operations.

These share the load/commit/publish plumbing of the structural engine
but change content rather than structure: creating projects and
roadmaps, updating phase progress, walking a sprint through the seven
PDL stages and tracking tasks.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict, Optional, Sequence

from .errors import NotFound
from .models import (
    DEFAULT_PHASE_WEEKS,
    DEFAULT_SPRINT_DAYS,
    MILESTONE_STATUSES,
    PDL_STAGE_COUNT,
    PDL_STAGE_NAMES,
    PHASE_STATUSES,
    SPRINT_STATUSES,
    TASK_STATUSES,
    Milestone,
    PDLCycle,
    Phase,
    Project,
    Roadmap,
    Sprint,
    Task,
    new_id,
    parse_iso,
    to_iso,
)
from .engine import (
    AggregateOperations,
    positive_int,
    required_name,
    recalculate_phase_dates,
    renumber_sprints,
)
from .pdl_logging import log_performance, observability_hooks


logger = logging.getLogger("pdl.lifecycle")


def _check_status(value: str, allowed: Sequence[str], label: str) -> str:
    if value not in allowed:
        raise ValueError(f"Invalid {label} status '{value}'. Must be one of: {', '.join(allowed)}")
    return value


def _check_percentage(value: Any) -> int:
    number = int(value)
    if not 0 <= number <= 100:
        raise ValueError(f"completion_percentage must be between 0 and 100, got: {number}")
    return number


class ProjectTracker(AggregateOperations):
    """Content-level operations on a project and its roadmap."""

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    @log_performance("create_project")
    async def create_project(
        self,
        project_name: str,
        description: str = "",
        team_composition: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not project_name or not project_name.strip():
            raise ValueError("Project name cannot be empty")
        project_name = project_name.strip()
        if await self.storage.fetch(project_name) is not None:
            raise ValueError(f"Project '{project_name}' already exists")

        created = to_iso(self.now())
        project = Project(
            project_name=project_name,
            description=description,
            created_at=created,
            updated_at=created,
            team_composition=dict(team_composition or {}),
        )
        entry = self._log(project, "project_created", f"Project '{project_name}' initialized")
        await self._commit(project, "project_update", {"action": "project_created", "project": project.summary()}, entry)
        observability_hooks.log_project_event("project_created", project_name=project_name)

        return {
            "success": True,
            "project": project.to_dict(),
            "message": f"Project '{project_name}' initialized",
        }

    async def get_project(self, project_name: str) -> Dict[str, Any]:
        project = await self.load_project(project_name)
        return {"success": True, "project": project.to_dict()}

    async def list_projects(self, include_summary: bool = True) -> Dict[str, Any]:
        names = await self.storage.list_all()
        if not include_summary:
            return {"success": True, "projects": list(names), "count": len(names)}
        projects = [project.summary() async for project in self.iter_projects(names)]
        return {"success": True, "projects": projects, "count": len(projects)}

    # ------------------------------------------------------------------
    # Roadmaps
    # ------------------------------------------------------------------

    @log_performance("create_roadmap")
    async def create_roadmap(
        self,
        project_name: str,
        vision: str,
        phases: Sequence[Dict[str, Any]],
        milestones: Optional[Sequence[Dict[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """Create (or replace) the roadmap of a project.

        Phases are chained from now and the first one starts in progress.
        Each milestone names a ``phase_index`` and lands ``weeks_into_phase``
        weeks after that phase starts; milestones pointing at a missing
        phase are skipped.
        """
        project = await self.load_project(project_name)
        if not phases:
            raise ValueError("A roadmap needs at least one phase")

        roadmap_phases = []
        for index, definition in enumerate(phases):
            roadmap_phases.append(
                Phase(
                    phase_id=new_id(),
                    phase_name=required_name(definition, "name", "phase_name"),
                    phase_description=definition.get("description", ""),
                    objective=definition.get("objective", ""),
                    duration_weeks=positive_int(definition.get("duration_weeks"), DEFAULT_PHASE_WEEKS, "duration_weeks"),
                    status="in_progress" if index == 0 else "not_started",
                    deliverables=list(definition.get("deliverables", [])),
                    success_metrics=list(definition.get("success_metrics", [])),
                )
            )

        roadmap = Roadmap(
            roadmap_id=new_id(),
            project_name=project_name,
            vision=vision,
            phases=roadmap_phases,
        )
        recalculate_phase_dates(roadmap, self.now())

        for definition in milestones or []:
            phase_index = definition.get("phase_index", 0)
            if not 0 <= phase_index < len(roadmap_phases):
                logger.warning(f"Skipping milestone '{definition.get('name')}' with phase_index {phase_index}")
                continue
            phase = roadmap_phases[phase_index]
            target = parse_iso(phase.start_date) + timedelta(weeks=definition.get("weeks_into_phase", 0))
            roadmap.milestones.append(
                Milestone(
                    milestone_id=new_id(),
                    name=definition.get("name", ""),
                    description=definition.get("description", ""),
                    phase_id=phase.phase_id,
                    target_date=to_iso(target),
                )
            )

        project.roadmap = roadmap
        entry = self._log(
            project,
            "roadmap_created",
            f"Roadmap created with {len(roadmap.phases)} phases and {len(roadmap.milestones)} milestones",
        )
        await self._commit(project, "project_update", {"action": "roadmap_created", "roadmap": roadmap.to_dict()}, entry)

        return {
            "success": True,
            "project_name": project_name,
            "roadmap": roadmap.to_dict(),
            "message": f"Roadmap created with {len(roadmap.phases)} phases",
        }

    async def get_roadmap(self, project_name: str, include_details: bool = True) -> Dict[str, Any]:
        _, roadmap = await self._load(project_name)
        response: Dict[str, Any] = {
            "success": True,
            "project_name": project_name,
            "roadmap": roadmap.to_dict(),
        }
        if not include_details:
            return response

        current = roadmap.current_phase()
        if current is not None:
            response["current_phase"] = current.to_dict()
            active = next((sprint for sprint in current.sprints if sprint.status == "active"), None)
            if active is not None:
                response["current_sprint"] = active.to_dict()
                if active.current_cycle is not None:
                    response["current_pdl_cycle"] = active.current_cycle.to_dict()
        return response

    @log_performance("update_roadmap_phase")
    async def update_roadmap_phase(
        self,
        project_name: str,
        phase_id: str,
        updates: Dict[str, Any],
    ) -> Dict[str, Any]:
        project, roadmap = await self._load(project_name)
        phase = self._find_phase(roadmap, phase_id)

        if updates.get("status") is not None:
            phase.status = _check_status(updates["status"], PHASE_STATUSES, "phase")
        if updates.get("completion_percentage") is not None:
            phase.completion_percentage = _check_percentage(updates["completion_percentage"])
        if updates.get("deliverables") is not None:
            phase.deliverables = list(updates["deliverables"])
        if updates.get("success_metrics") is not None:
            phase.success_metrics = list(updates["success_metrics"])

        self._restore(roadmap)
        entry = self._log(
            project,
            "phase_updated",
            f"Updated roadmap phase '{phase.phase_name}'",
            phase_id=phase_id,
        )
        await self._commit(project, "phase_update", {"action": "phase_updated", "phase": phase.summary()}, entry)

        return {
            "success": True,
            "project_name": project_name,
            "updated_phase": phase.summary(),
            "overall_progress": roadmap.overall_progress,
            "message": f"Updated roadmap phase '{phase.phase_name}'",
        }

    @log_performance("update_milestone")
    async def update_milestone(
        self,
        project_name: str,
        milestone_id: str,
        status: str,
    ) -> Dict[str, Any]:
        project, roadmap = await self._load(project_name)
        milestone = next((m for m in roadmap.milestones if m.milestone_id == milestone_id), None)
        if milestone is None:
            raise NotFound(f"Milestone '{milestone_id}' not found")

        milestone.status = _check_status(status, MILESTONE_STATUSES, "milestone")
        milestone.achieved_date = to_iso(self.now()) if status == "achieved" else None

        entry = self._log(
            project,
            "milestone_updated",
            f"Milestone '{milestone.name}' marked {status}",
            phase_id=milestone.phase_id,
        )
        await self._commit(project, "phase_update", {"action": "milestone_updated", "milestone": milestone.to_dict()}, entry)
        return {
            "success": True,
            "project_name": project_name,
            "milestone": milestone.to_dict(),
            "message": f"Milestone '{milestone.name}' marked {status}",
        }

    # ------------------------------------------------------------------
    # Sprints and PDL cycles
    # ------------------------------------------------------------------

    @log_performance("create_sprint")
    async def create_sprint(
        self,
        project_name: str,
        phase_id: str,
        sprint_name: str,
        duration_days: int = DEFAULT_SPRINT_DAYS,
    ) -> Dict[str, Any]:
        project, roadmap = await self._load(project_name)
        phase = self._find_phase(roadmap, phase_id)

        sprint = self._new_sprint(
            phase,
            required_name({"sprint_name": sprint_name}, "sprint_name"),
            positive_int(duration_days, DEFAULT_SPRINT_DAYS, "duration_days"),
        )
        phase.sprints.append(sprint)
        renumber_sprints(phase)

        entry = self._log(
            project,
            "sprint_created",
            f"Sprint '{sprint.sprint_name}' created in phase '{phase.phase_name}'",
            phase_id=phase_id,
            sprint_id=sprint.sprint_id,
        )
        await self._commit(project, "sprint_update", {"action": "sprint_created", "sprint": sprint.to_dict()}, entry)

        return {
            "success": True,
            "project_name": project_name,
            "sprint": sprint.to_dict(),
            "message": f"Sprint '{sprint.sprint_name}' created with initial PDL cycle",
        }

    @log_performance("update_sprint")
    async def update_sprint(
        self,
        project_name: str,
        sprint_id: str,
        updates: Dict[str, Any],
    ) -> Dict[str, Any]:
        """Update sprint status, velocity, burn-down or retrospective."""
        project, roadmap = await self._load(project_name)
        phase, index = self._locate_sprint(roadmap, sprint_id)
        sprint = phase.sprints[index]

        if updates.get("status") is not None:
            sprint.status = _check_status(updates["status"], SPRINT_STATUSES, "sprint")
        if updates.get("velocity") is not None:
            sprint.velocity = int(updates["velocity"])
        if updates.get("burn_down") is not None:
            sprint.burn_down = [int(point) for point in updates["burn_down"]]
        if updates.get("retrospective") is not None:
            sprint.retrospective = str(updates["retrospective"])

        entry = self._log(
            project,
            "sprint_updated",
            f"Updated sprint '{sprint.sprint_name}'",
            phase_id=phase.phase_id,
            sprint_id=sprint_id,
        )
        await self._commit(project, "sprint_update", {"action": "sprint_updated", "sprint": sprint.to_dict()}, entry)
        return {
            "success": True,
            "project_name": project_name,
            "sprint": sprint.to_dict(),
            "message": f"Updated sprint '{sprint.sprint_name}'",
        }

    def _current_cycle(self, sprint: Sprint) -> PDLCycle:
        cycle = sprint.current_cycle
        if cycle is None:
            raise NotFound(f"Sprint '{sprint.sprint_name}' has no PDL cycle")
        return cycle

    @log_performance("update_sprint_pdl")
    async def update_sprint_pdl(
        self,
        project_name: str,
        sprint_id: str,
        stage_number: int,
        updates: Dict[str, Any],
    ) -> Dict[str, Any]:
        project, roadmap = await self._load(project_name)
        phase, index = self._locate_sprint(roadmap, sprint_id)
        sprint = phase.sprints[index]
        cycle = self._current_cycle(sprint)
        stage = cycle.stage(stage_number)

        if updates.get("status") is not None:
            stage.status = _check_status(updates["status"], PHASE_STATUSES, "PDL stage")
        if updates.get("completion_percentage") is not None:
            stage.completion_percentage = _check_percentage(updates["completion_percentage"])
        if updates.get("blockers") is not None:
            stage.blockers = list(updates["blockers"])
        if updates.get("deliverables") is not None:
            stage.deliverables = list(updates["deliverables"])
        if updates.get("notes"):
            stage.notes = updates["notes"]

        entry = self._log(
            project,
            "sprint_pdl_updated",
            f"Updated PDL stage {stage_number} in sprint '{sprint.sprint_name}'",
            phase_id=phase.phase_id,
            sprint_id=sprint_id,
        )
        await self._commit(
            project,
            "pdl_update",
            {"action": "stage_updated", "sprint_id": sprint_id, "cycle_id": cycle.cycle_id, "stage": stage.to_dict()},
            entry,
        )

        return {
            "success": True,
            "sprint_id": sprint_id,
            "pdl_cycle_id": cycle.cycle_id,
            "stage": stage.to_dict(),
            "message": f"Updated PDL stage {stage_number}: {PDL_STAGE_NAMES[stage_number]}",
        }

    @log_performance("advance_pdl_cycle")
    async def advance_pdl_cycle(
        self,
        project_name: str,
        sprint_id: str,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Complete the current stage and start the next one.

        Completing stage 7 closes the cycle; an active sprint then starts a
        fresh cycle, any other sprint keeps the finished one as its last.
        """
        project, roadmap = await self._load(project_name)
        phase, index = self._locate_sprint(roadmap, sprint_id)
        sprint = phase.sprints[index]
        cycle = self._current_cycle(sprint)
        if cycle.is_finished:
            raise ValueError(f"PDL cycle {cycle.cycle_number} of sprint '{sprint.sprint_name}' is already complete")

        at = to_iso(self.now())
        current = cycle.stage(cycle.current_stage)
        current.complete(at)
        if notes:
            current.notes = notes

        if cycle.current_stage < PDL_STAGE_COUNT:
            cycle.current_stage += 1
            cycle.stage(cycle.current_stage).begin(at)
            result_cycle = cycle
            message = f"Advanced to PDL stage {cycle.current_stage}: {PDL_STAGE_NAMES[cycle.current_stage]}"
        else:
            cycle.end_date = at
            if sprint.status == "active":
                result_cycle = PDLCycle.start(sprint.sprint_id, len(sprint.pdl_cycles) + 1, at=at)
                sprint.pdl_cycles.append(result_cycle)
                message = (
                    f"Completed PDL cycle {cycle.cycle_number} and started new cycle {result_cycle.cycle_number}"
                )
            else:
                result_cycle = cycle
                message = f"Completed final PDL cycle {cycle.cycle_number} for sprint"

        entry = self._log(
            project,
            "pdl_advanced",
            message,
            phase_id=phase.phase_id,
            sprint_id=sprint_id,
        )
        await self._commit(
            project,
            "pdl_update",
            {"action": "cycle_advanced", "sprint_id": sprint_id, "pdl_cycle": result_cycle.to_dict()},
            entry,
        )

        return {
            "success": True,
            "sprint_id": sprint_id,
            "pdl_cycle": result_cycle.to_dict(),
            "message": message,
        }

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @log_performance("create_task")
    async def create_task(
        self,
        project_name: str,
        sprint_id: str,
        description: str,
        stage_number: Optional[int] = None,
        assignee: str = "",
        story_points: int = 0,
    ) -> Dict[str, Any]:
        project, roadmap = await self._load(project_name)
        phase, index = self._locate_sprint(roadmap, sprint_id)
        sprint = phase.sprints[index]
        cycle = self._current_cycle(sprint)
        if stage_number is not None:
            cycle.stage(stage_number)

        task = Task(
            task_id=new_id(),
            description=description.strip() if description else "",
            assignee=assignee,
            story_points=story_points,
            stage_number=stage_number if stage_number is not None else cycle.current_stage,
            created_at=to_iso(self.now()),
            updated_at=to_iso(self.now()),
        )
        issues = task.validate()
        if issues:
            raise ValueError("; ".join(issues))
        cycle.tasks.append(task)

        entry = self._log(
            project,
            "task_created",
            f"Task created in sprint '{sprint.sprint_name}': {task.description}",
            phase_id=phase.phase_id,
            sprint_id=sprint_id,
        )
        await self._commit(
            project,
            "pdl_update",
            {"action": "task_created", "sprint_id": sprint_id, "task": task.to_dict()},
            entry,
        )
        return {
            "success": True,
            "sprint_id": sprint_id,
            "task": task.to_dict(),
            "message": f"Task '{task.description}' created",
        }

    @log_performance("update_task")
    async def update_task(
        self,
        project_name: str,
        task_id: str,
        status: Optional[str] = None,
        assignee: Optional[str] = None,
        story_points: Optional[int] = None,
    ) -> Dict[str, Any]:
        project, roadmap = await self._load(project_name)
        phase, sprint, task = self._locate_task(roadmap, task_id)

        if status is not None:
            task.status = _check_status(status, TASK_STATUSES, "task")
        if assignee is not None:
            task.assignee = assignee
        if story_points is not None:
            if story_points < 0:
                raise ValueError("Story points cannot be negative")
            task.story_points = story_points
        task.updated_at = to_iso(self.now())

        entry = self._log(
            project,
            "task_updated",
            f"Task '{task.description}' is {task.status}",
            phase_id=phase.phase_id,
            sprint_id=sprint.sprint_id,
        )
        await self._commit(
            project,
            "pdl_update",
            {"action": "task_updated", "sprint_id": sprint.sprint_id, "task": task.to_dict()},
            entry,
        )
        return {
            "success": True,
            "task": task.to_dict(),
            "message": f"Task '{task.description}' updated",
        }
