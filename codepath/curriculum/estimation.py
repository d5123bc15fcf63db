"""
Utility functions for estimating learning time and difficulty of curriculum tasks.
"""
import logging
import math
from typing import Dict, List

from codepath.curriculum.models import DayRange, LearningPath

logger = logging.getLogger(__name__)

# Minutes every task of a type costs regardless of its files
BASE_MINUTES: Dict[str, int] = {
    "read": 10,
    "analyze": 20,
    "implement": 45,
    "test": 30,
}

# Extra minutes per referenced source line
MINUTES_PER_LINE: Dict[str, float] = {
    "read": 0.05,
    "analyze": 0.1,
    "implement": 0.08,
    "test": 0.06,
}

COMPLEXITY_MULTIPLIER: Dict[str, float] = {
    "beginner": 1.0,
    "intermediate": 1.3,
    "advanced": 1.6,
}

SKILL_MULTIPLIER: Dict[str, float] = {
    "beginner": 1.5,
    "intermediate": 1.0,
    "advanced": 0.75,
}

TYPE_WEIGHT: Dict[str, float] = {
    "read": 1.0,
    "analyze": 2.0,
    "implement": 3.0,
    "test": 2.5,
}

ROUNDING_MINUTES = 5


def estimate_minutes(task_type: str, line_count: int, complexity: str, skill_level: str) -> int:
    """
    Estimate the minutes a learner needs for one task.

    Formula:
        (base[type] + lines * rate[type]) * complexity multiplier * skill multiplier,
        rounded to the nearest 5 minutes, never below 5.
    """
    raw = BASE_MINUTES[task_type] + max(0, line_count) * MINUTES_PER_LINE[task_type]
    raw *= COMPLEXITY_MULTIPLIER[complexity] * SKILL_MULTIPLIER[skill_level]
    rounded = int(round(raw / ROUNDING_MINUTES)) * ROUNDING_MINUTES
    return max(ROUNDING_MINUTES, rounded)


def estimate_difficulty(task_type: str, complexity_score: float) -> int:
    """Difficulty on a 1-10 scale from task type weight and domain complexity score."""
    score = TYPE_WEIGHT[task_type] * 1.5 + min(max(complexity_score, 0.0), 1.0) * 5
    return min(10, max(1, int(round(score))))


def day_ranges(phase_minutes: List[int], daily_minutes: int) -> List[DayRange]:
    """
    Day span of each phase when phases are studied back to back at
    `daily_minutes` per day. Day numbers start at 1.
    """
    ranges = []
    elapsed = 0
    for minutes in phase_minutes:
        start_day = elapsed // daily_minutes + 1
        elapsed += minutes
        end_day = max(start_day, math.ceil(elapsed / daily_minutes))
        ranges.append(DayRange(start_day=start_day, end_day=end_day))
    return ranges


def format_duration(minutes: int) -> str:
    """
    Format a duration as a human-readable string.
    """
    if minutes < 60:
        return f"~{minutes} minutes"
    hours = minutes / 60
    if hours < 24:
        return f"~{hours:.1f} hours ({minutes} minutes)"
    return f"~{hours:.0f} hours ({minutes / 60 / 8:.1f} working days)"


def log_path_estimate(path: LearningPath):
    """
    Log the time estimate for a learning path.
    """
    logger.info(f"")
    logger.info(f"🔮 [TIME ESTIMATION] Learning path {path.id} for learner {path.learner_id}")
    for phase in path.phases:
        logger.info(
            f"   📘 {phase.name}: {len(phase.tasks)} tasks, {format_duration(phase.estimated_minutes)} "
            f"(days {phase.day_range.start_day}-{phase.day_range.end_day})"
        )
    logger.info(f"   ⏱️  TOTAL ESTIMATED TIME: {format_duration(path.estimated_minutes)}")
    logger.info(f"   📅 Daily budget: {path.daily_minutes} minutes")
    logger.info(f"")
