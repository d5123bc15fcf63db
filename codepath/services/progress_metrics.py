"""
Learner progress roll-up: counts, confidence trend and at-risk score.
"""

import logging
from typing import Dict, List, Optional

from codepath.config import settings
from codepath.models import LearnerMetrics, ProgressRecord

logger = logging.getLogger(__name__)

TREND_WEIGHT = 0.4
OVERRUN_WEIGHT = 0.4
CONFIDENCE_WEIGHT = 0.2


def confidence_trend(history: List[float], window: Optional[int] = None) -> float:
    """
    Mean of the later half minus mean of the earlier half of the last
    `window` confidence values. Fewer than two values have no trend.
    """
    window = window or settings.risk_confidence_window
    recent = history[-window:]
    if len(recent) < 2:
        return 0.0
    middle = len(recent) // 2
    earlier, later = recent[:middle], recent[middle:]
    return sum(later) / len(later) - sum(earlier) / len(earlier)


def risk_score(trend: float, time_ratio: float, average_confidence: Optional[float]) -> float:
    """
    0.4 * falling confidence + 0.4 * time overrun + 0.2 * low confidence, in [0, 1].
    """
    falling = min(1.0, 2 * max(0.0, -trend))
    overrun = min(1.0, max(0.0, time_ratio - 1))
    low_confidence = 1 - average_confidence if average_confidence is not None else 0.0
    return round(TREND_WEIGHT * falling + OVERRUN_WEIGHT * overrun + CONFIDENCE_WEIGHT * low_confidence, 4)


def compute_metrics(
    learner_id: str,
    records: List[ProgressRecord],
    estimates: Dict[str, int],
    confidence_history: List[float],
) -> LearnerMetrics:
    """
    Args:
        records: Every progress record of the learner
        estimates: task id -> estimated minutes, for tasks of registered paths
        confidence_history: Confidence values of accepted updates, oldest first
    """
    touched = [record for record in records if record.status != "not_started" or record.time_spent_minutes]
    confidences = [record.confidence for record in records if record.confidence is not None]
    average_confidence = round(sum(confidences) / len(confidences), 4) if confidences else None

    time_spent = sum(record.time_spent_minutes for record in records)
    estimated = sum(estimates.get(record.task_id, 0) for record in touched)
    time_ratio = round(time_spent / estimated, 4) if estimated else 0.0

    trend = round(confidence_trend(confidence_history), 4)
    risk = risk_score(trend, time_ratio, average_confidence)

    return LearnerMetrics(
        learner_id=learner_id,
        completed_tasks=sum(1 for record in records if record.status == "completed"),
        in_progress_tasks=sum(1 for record in records if record.status == "in_progress"),
        blocked_tasks=sum(1 for record in records if record.status == "blocked"),
        average_confidence=average_confidence,
        total_time_spent_minutes=time_spent,
        estimated_minutes_touched=estimated,
        time_ratio=time_ratio,
        confidence_trend=trend,
        risk_score=risk,
        at_risk=risk >= settings.risk_threshold,
    )
