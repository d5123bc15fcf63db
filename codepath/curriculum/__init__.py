from codepath.curriculum.models import LearnerProfile, LearningPath, Phase, Task
from codepath.curriculum.planner import CurriculumPlanner

__all__ = ["CurriculumPlanner", "LearnerProfile", "LearningPath", "Phase", "Task"]
