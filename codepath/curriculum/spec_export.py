"""
Portable spec document exchanged with the external task client.

Shape:
    {
      "version": 1,
      "metadata": {"name", "repository", "pathId", "estimatedDuration"},
      "phases": [{"name", "dayRange": [start, end],
                  "tasks": [{"id", "title", "type", "files", "estimatedMinutes",
                             "objectives", "prerequisites"}]}]
    }

Export is pure: the same path state always renders to the same bytes.
"""

import json
import logging
from typing import Literal, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from codepath.core.exceptions import InvalidInputError, SpecExportError
from codepath.curriculum.estimation import estimate_difficulty
from codepath.curriculum.models import DayRange, LearningPath, Phase, Task, TaskType
from codepath.curriculum.task_graph import TaskGraph

logger = logging.getLogger(__name__)

SPEC_VERSION = 1

# Complexity assumed for phases a revision introduces
NEW_PHASE_COMPLEXITY_SCORE = 0.5


class SpecTask(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    id: str = Field(min_length=1)
    title: str = Field(min_length=1)
    type: TaskType
    files: list[str] = Field(default_factory=list)
    estimated_minutes: int = Field(alias="estimatedMinutes", ge=0)
    objectives: list[str] = Field(default_factory=list)
    prerequisites: list[str] = Field(default_factory=list)


class SpecPhase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str = Field(min_length=1)
    day_range: tuple[int, int] = Field(alias="dayRange")
    tasks: list[SpecTask] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_day_range(self):
        start, end = self.day_range
        if start < 1 or end < start:
            raise ValueError(f"Invalid dayRange {list(self.day_range)} for phase {self.name}")
        return self


class SpecMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str
    repository: str
    path_id: str = Field(alias="pathId")
    estimated_duration: int = Field(alias="estimatedDuration", ge=0)


class ExportedSpec(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    version: Literal[1]
    metadata: SpecMetadata
    phases: list[SpecPhase]

    @model_validator(mode="after")
    def check_task_references(self):
        ids = [task.id for phase in self.phases for task in phase.tasks]
        duplicates = sorted({task_id for task_id in ids if ids.count(task_id) > 1})
        if duplicates:
            raise ValueError(f"Duplicate task ids: {', '.join(duplicates)}")
        known = set(ids)
        for phase in self.phases:
            for task in phase.tasks:
                unknown = [p for p in task.prerequisites if p not in known]
                if unknown:
                    raise ValueError(f"Task {task.id} requires unknown tasks: {', '.join(unknown)}")
        return self

    def to_document(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


def export_spec(path: LearningPath) -> dict:
    """
    Render a learning path as the portable spec document.

    Raises:
        SpecExportError: The path cannot be expressed as a valid spec
    """
    document = {
        "version": SPEC_VERSION,
        "metadata": {
            "name": path.name,
            "repository": path.repository_id,
            "pathId": path.id,
            "estimatedDuration": path.estimated_minutes,
        },
        "phases": [
            {
                "name": phase.name,
                "dayRange": [phase.day_range.start_day, phase.day_range.end_day],
                "tasks": [
                    {
                        "id": task.id,
                        "title": task.title,
                        "type": task.type,
                        "files": list(task.files),
                        "estimatedMinutes": task.estimated_minutes,
                        "objectives": list(task.objectives),
                        "prerequisites": list(task.prerequisites),
                    }
                    for task in phase.tasks
                ],
            }
            for phase in path.phases
        ],
    }
    try:
        return ExportedSpec.model_validate(document).to_document()
    except ValidationError as e:
        logger.error(f"❌ Learning path {path.id} produced an invalid spec: {e}", exc_info=True)
        raise SpecExportError(f"Learning path {path.id} cannot be exported: {e}") from e


def render_spec(path: LearningPath) -> bytes:
    """Canonical JSON bytes of the exported spec."""
    return json.dumps(export_spec(path), sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def parse_spec(document: Union[dict, str, bytes]) -> ExportedSpec:
    """
    Validate an incoming spec document.

    Raises:
        InvalidInputError: Not JSON, or not a valid spec
    """
    try:
        if isinstance(document, (str, bytes)):
            return ExportedSpec.model_validate_json(document)
        return ExportedSpec.model_validate(document)
    except ValidationError as e:
        raise InvalidInputError(f"Invalid spec document: {e}") from e


def path_from_spec(current: LearningPath, spec: ExportedSpec) -> LearningPath:
    """
    Rebuild a path from a revised spec, keeping what the spec cannot express
    (task difficulty and domain, phase complexity) from the current path.

    The result has `version` bumped by one.

    Raises:
        InvalidInputError: The spec belongs to another path, or orders a task
            before a prerequisite from a later phase
        CyclicCurriculumError: The revised prerequisites form a cycle
    """
    if spec.metadata.path_id != current.id:
        raise InvalidInputError(f"Spec belongs to path {spec.metadata.path_id}, not {current.id}")

    current_phases = {phase.name: phase for phase in current.phases}
    current_tasks = {task.id: task for task in current.tasks()}

    phases = []
    for index, spec_phase in enumerate(spec.phases):
        existing = current_phases.get(spec_phase.name)
        domain = existing.domain if existing else spec_phase.name
        score = existing.complexity_score if existing else NEW_PHASE_COMPLEXITY_SCORE
        tasks = []
        for spec_task in spec_phase.tasks:
            previous = current_tasks.get(spec_task.id)
            if previous is not None and previous.type == spec_task.type:
                difficulty = previous.difficulty
            else:
                difficulty = estimate_difficulty(spec_task.type, score)
            tasks.append(
                Task(
                    id=spec_task.id,
                    title=spec_task.title,
                    type=spec_task.type,
                    files=list(spec_task.files),
                    estimated_minutes=spec_task.estimated_minutes,
                    difficulty=difficulty,
                    prerequisites=list(spec_task.prerequisites),
                    objectives=list(spec_task.objectives),
                    domain=domain,
                )
            )
        phases.append(
            Phase(
                id=existing.id if existing else f"phase-{index + 1}",
                name=spec_phase.name,
                domain=domain,
                complexity=existing.complexity if existing else "intermediate",
                complexity_score=score,
                tasks=tasks,
                day_range=DayRange(start_day=spec_phase.day_range[0], end_day=spec_phase.day_range[1]),
                prerequisites=list(existing.prerequisites) if existing else [],
                estimated_minutes=sum(task.estimated_minutes for task in tasks),
            )
        )

    # Cycle gate, then order each phase's tasks without moving them across phases
    all_tasks = [task for phase in phases for task in phase.tasks]
    graph = TaskGraph.from_tasks(all_tasks)
    phase_of = {task.id: index for index, phase in enumerate(phases) for task in phase.tasks}
    position = {task.id: index for index, task in enumerate(all_tasks)}
    flattened = graph.topological_order(key=lambda task: (phase_of[task.id], position[task.id]))
    for task in flattened:
        for prerequisite in task.prerequisites:
            if phase_of[prerequisite] > phase_of[task.id]:
                raise InvalidInputError(
                    f"Task {task.id} requires {prerequisite} from a later phase"
                )
    for index, phase in enumerate(phases):
        phase.tasks = [task for task in flattened if phase_of[task.id] == index]

    return current.model_copy(
        update={
            "name": spec.metadata.name,
            "phases": phases,
            "estimated_minutes": sum(phase.estimated_minutes for phase in phases),
            "version": current.version + 1,
        }
    )

