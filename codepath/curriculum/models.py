"""
Curriculum structures: learner profile, tasks, phases and learning paths.

A LearningPath exclusively owns its Phases, and each Phase owns its Tasks;
deleting a path deletes both. Progress records only reference task ids.
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from codepath.config import settings
from codepath.models import ComplexityRating, utc_now

TaskType = Literal["read", "analyze", "implement", "test"]
TASK_TYPES: tuple[str, ...] = ("read", "analyze", "implement", "test")

SkillLevel = Literal["beginner", "intermediate", "advanced"]
PathStatus = Literal["draft", "active", "completed"]


class LearnerProfile(BaseModel):
    learner_id: str = Field(min_length=1)
    skill_level: SkillLevel = "intermediate"
    daily_minutes: int = Field(default_factory=lambda: settings.default_daily_minutes, ge=1)
    focus_domains: list[str] = Field(default_factory=list)


class Task(BaseModel):
    id: str
    title: str
    type: TaskType
    files: list[str] = Field(default_factory=list)
    estimated_minutes: int = Field(default=0, ge=0)
    difficulty: int = Field(default=1, ge=1, le=10)
    prerequisites: list[str] = Field(default_factory=list)
    objectives: list[str] = Field(default_factory=list)
    domain: str

    def definition(self) -> tuple:
        """Fields a curriculum revision can change; a change re-opens completed work."""
        return (
            self.title,
            self.type,
            tuple(self.files),
            self.estimated_minutes,
            tuple(self.objectives),
            tuple(sorted(self.prerequisites)),
        )


class DayRange(BaseModel):
    start_day: int = Field(ge=1)
    end_day: int = Field(ge=1)

    @model_validator(mode="after")
    def check_order(self):
        if self.end_day < self.start_day:
            raise ValueError("end_day must not precede start_day")
        return self


class Phase(BaseModel):
    id: str
    name: str
    domain: str
    complexity: ComplexityRating = "beginner"
    complexity_score: float = 0.0
    tasks: list[Task] = Field(default_factory=list)
    day_range: DayRange
    prerequisites: list[str] = Field(default_factory=list)  # phase ids
    estimated_minutes: int = 0


class LearningPath(BaseModel):
    id: str
    name: str
    repository_id: str
    learner_id: str
    phases: list[Phase] = Field(default_factory=list)
    status: PathStatus = "draft"
    estimated_minutes: int = 0
    daily_minutes: int = Field(default_factory=lambda: settings.default_daily_minutes, ge=1)
    created_at: datetime = Field(default_factory=utc_now)
    version: int = 1

    def tasks(self) -> list[Task]:
        """Every task in flattened (phase, then in-phase) order."""
        return [task for phase in self.phases for task in phase.tasks]

    def task(self, task_id: str) -> Task | None:
        for task in self.tasks():
            if task.id == task_id:
                return task
        return None

    def task_ids(self) -> list[str]:
        return [task.id for task in self.tasks()]
