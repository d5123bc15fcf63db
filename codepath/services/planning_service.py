"""
Planning Service
Runs domain analysis and curriculum planning for a (repository, learner) pair.

Concurrent requests for the same pair share one in-flight planning task;
different pairs plan in parallel.
"""

import asyncio
import logging
import time
from typing import Dict, Optional, Tuple

from codepath.curriculum.models import LearnerProfile, LearningPath
from codepath.curriculum.planner import CurriculumPlanner
from codepath.services.domain_analyzer import DomainAnalyzer, get_domain_analyzer
from codepath.services.sync_coordinator import SyncCoordinator, get_sync_coordinator

logger = logging.getLogger(__name__)

# Lazy singleton instance
_planning_service_instance = None


def get_planning_service() -> 'PlanningService':
    global _planning_service_instance

    if _planning_service_instance is None:
        _planning_service_instance = PlanningService()

    return _planning_service_instance


class PlanningService:
    def __init__(
        self,
        analyzer: Optional[DomainAnalyzer] = None,
        planner: Optional[CurriculumPlanner] = None,
        coordinator: Optional[SyncCoordinator] = None,
    ):
        self.analyzer = analyzer or get_domain_analyzer()
        self.planner = planner or CurriculumPlanner()
        self.coordinator = coordinator or get_sync_coordinator()
        self._in_flight: Dict[Tuple[str, str], asyncio.Task] = {}

    async def create_path(self, repository_id: str, learner: LearnerProfile) -> LearningPath:
        """
        Analyze the repository, plan a path for the learner and register it
        for progress sync. Callers arriving while the same pair is being
        planned receive that result instead of starting another run.
        """
        key = (repository_id, learner.learner_id)
        in_flight = self._in_flight.get(key)
        if in_flight is not None:
            logger.info(f"⏳ Joining in-flight planning for repository_id={repository_id} learner={learner.learner_id}")
            return await asyncio.shield(in_flight)

        task = asyncio.create_task(self._plan(repository_id, learner))
        self._in_flight[key] = task
        task.add_done_callback(lambda done: self._forget(key, done))
        return await asyncio.shield(task)

    def _forget(self, key: Tuple[str, str], task: asyncio.Task) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]

    async def _plan(self, repository_id: str, learner: LearnerProfile) -> LearningPath:
        start_time = time.time()
        analysis = await self.analyzer.analyze(repository_id)
        path = self.planner.plan(analysis, learner)
        path = await self.coordinator.register_plan(path)
        logger.info(f"🎉 Learning path {path.id} ready in {time.time() - start_time:.2f}s")
        return path
