"""
Tests for PlanningService
"""
import asyncio

import pytest

from codepath.core.exceptions import NotFoundError
from codepath.curriculum.models import LearnerProfile


class TestPlanningService:
    """Test cases for PlanningService.create_path"""

    @pytest.mark.asyncio
    async def test_create_path_registers_active_path(self, planning, pipeline, coordinator, sample_files):
        await pipeline.ingest("repo", sample_files)

        path = await planning.create_path("repo", LearnerProfile(learner_id="u1"))

        assert path.status == "active"
        assert [phase.domain for phase in path.phases] == ["models", "auth", "api"]
        assert coordinator.get_path(path.id) == path

    @pytest.mark.asyncio
    async def test_concurrent_requests_share_one_run(self, planning, analyzer, pipeline, sample_files, monkeypatch):
        await pipeline.ingest("repo", sample_files)
        calls = []
        analyze = analyzer.analyze

        async def counting_analyze(repository_id):
            calls.append(repository_id)
            await asyncio.sleep(0.01)
            return await analyze(repository_id)

        monkeypatch.setattr(analyzer, "analyze", counting_analyze)
        learner = LearnerProfile(learner_id="u1")

        paths = await asyncio.gather(*(planning.create_path("repo", learner) for _ in range(5)))

        assert calls == ["repo"]
        assert all(path == paths[0] for path in paths)
        assert planning._in_flight == {}

    @pytest.mark.asyncio
    async def test_different_learners_plan_separately(self, planning, analyzer, pipeline, sample_files, monkeypatch):
        await pipeline.ingest("repo", sample_files)
        calls = []
        analyze = analyzer.analyze

        async def counting_analyze(repository_id):
            calls.append(repository_id)
            return await analyze(repository_id)

        monkeypatch.setattr(analyzer, "analyze", counting_analyze)

        first, second = await asyncio.gather(
            planning.create_path("repo", LearnerProfile(learner_id="u1")),
            planning.create_path("repo", LearnerProfile(learner_id="u2")),
        )

        assert len(calls) == 2
        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_unknown_repository(self, planning):
        with pytest.raises(NotFoundError):
            await planning.create_path("missing", LearnerProfile(learner_id="u1"))

        assert planning._in_flight == {}

    @pytest.mark.asyncio
    async def test_replanning_revises_existing_path(self, planning, pipeline, coordinator, sample_files):
        await pipeline.ingest("repo", sample_files)
        learner = LearnerProfile(learner_id="u1")
        path = await planning.create_path("repo", learner)
        task_id = path.phases[0].tasks[0].id
        document = coordinator.export_spec(path.id)
        document["phases"][0]["tasks"][0]["objectives"] = ["Something else entirely"]
        await coordinator.import_spec(path.id, document)
        await coordinator.start_task("u1", task_id)
        await coordinator.complete_task("u1", task_id)

        replanned = await planning.create_path("repo", learner)

        assert replanned.version == 3
        assert replanned.task(task_id) == path.task(task_id)
        assert coordinator.get_record("u1", task_id).status == "in_progress"
