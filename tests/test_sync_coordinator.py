"""
Tests for SyncCoordinator: conflict rule, state machine, spec round-trips and metrics
"""
import asyncio
import itertools
import logging
from datetime import datetime, timedelta, timezone

import pytest

from codepath.core.exceptions import InvalidStateError, NotFoundError
from codepath.curriculum.spec_export import export_spec, render_spec
from codepath.models import ProgressRecord, ProgressUpdate
from codepath.services.sync_coordinator import SyncCoordinator, resolve_conflict


def update(status: str, revision: int, task_id: str = "repo/auth-001", **kwargs) -> ProgressUpdate:
    return ProgressUpdate(learnerId="u1", taskId=task_id, status=status, revision=revision, **kwargs)


class TestResolveConflict:
    """Test cases for the conflict rule"""

    def test_higher_revision_wins(self):
        current = ProgressRecord(learner_id="u1", task_id="t", status="completed", sync_revision=2)

        accepted, _ = resolve_conflict(current, update("in_progress", 3))

        assert accepted

    def test_lower_revision_is_stale(self):
        current = ProgressRecord(learner_id="u1", task_id="t", status="in_progress", sync_revision=2)

        accepted, reason = resolve_conflict(current, update("completed", 1))

        assert not accepted
        assert reason.startswith("stale revision")

    def test_equal_revision_more_advanced_status(self):
        current = ProgressRecord(learner_id="u1", task_id="t", status="in_progress", sync_revision=2)

        assert resolve_conflict(current, update("blocked", 2))[0]
        assert not resolve_conflict(current, update("not_started", 2))[0]

    def test_equal_revision_equal_status(self):
        stored_at = datetime(2026, 1, 1, tzinfo=timezone.utc)
        current = ProgressRecord(
            learner_id="u1", task_id="t", status="in_progress", sync_revision=2, updated_at=stored_at
        )

        accepted, reason = resolve_conflict(current, update("in_progress", 2))
        assert not accepted
        assert reason.startswith("duplicate delivery")

        later = update("in_progress", 2, occurredAt=stored_at + timedelta(minutes=1))
        assert resolve_conflict(current, later)[0]


class TestApplyUpdate:
    """Test cases for SyncCoordinator.apply_update"""

    @pytest.mark.asyncio
    async def test_stale_duplicate_is_discarded(self, coordinator, registered_path, caplog):
        caplog.set_level(logging.INFO, logger="codepath.services.sync_coordinator")

        first = await coordinator.apply_update(update("completed", 2))
        second = await coordinator.apply_update(update("in_progress", 1))

        assert first.accepted
        assert not second.accepted
        record = coordinator.get_record("u1", "repo/auth-001")
        assert record.status == "completed"
        assert record.revision == 1
        assert record.sync_revision == 2
        assert record.completed_at is not None
        assert any("Discarded update" in message for message in caplog.messages)

    @pytest.mark.asyncio
    async def test_any_delivery_order_converges(self, coordinator, registered_path):
        updates = [
            update("in_progress", 1, confidence=0.4, timeSpent=10),
            update("blocked", 2, confidence=0.3, timeSpent=25),
            update("in_progress", 3, confidence=0.5, timeSpent=30),
            update("completed", 4, confidence=0.8, timeSpent=45),
        ]

        finals = set()
        for order in itertools.permutations(updates):
            store_coordinator = SyncCoordinator(store=type(coordinator.store)())
            store_coordinator.register_path(registered_path)
            for item in order:
                await store_coordinator.apply_update(item)
            record = store_coordinator.get_record("u1", "repo/auth-001")
            finals.add((record.status, record.sync_revision, record.confidence, record.time_spent_minutes))

        assert finals == {("completed", 4, 0.8, 45)}

    @pytest.mark.asyncio
    async def test_concurrent_delivery_converges(self, coordinator, registered_path):
        updates = [update(status, revision) for revision, status in
                   enumerate(["in_progress", "blocked", "in_progress", "completed"], start=1)]

        await asyncio.gather(*(coordinator.apply_update(item) for item in reversed(updates)))

        record = coordinator.get_record("u1", "repo/auth-001")
        assert record.status == "completed"
        assert record.sync_revision == 4

    @pytest.mark.asyncio
    async def test_unknown_task(self, coordinator, registered_path):
        with pytest.raises(NotFoundError):
            await coordinator.apply_update(update("completed", 1, task_id="billing-001"))

    @pytest.mark.asyncio
    async def test_unknown_learner(self, coordinator, registered_path):
        with pytest.raises(NotFoundError):
            await coordinator.apply_update(
                ProgressUpdate(learnerId="u2", taskId="repo/auth-001", status="completed", revision=1)
            )

    @pytest.mark.asyncio
    async def test_unknown_status(self, coordinator, registered_path):
        with pytest.raises(InvalidStateError):
            await coordinator.apply_update(update("archived", 1))

    @pytest.mark.asyncio
    async def test_accepted_update_is_persisted(self, coordinator, registered_path, path_store):
        await coordinator.apply_update(update("in_progress", 1, notes="started offline"))

        stored = path_store.get_record("u1", "repo/auth-001")
        assert stored.status == "in_progress"
        assert stored.notes == "started offline"
        assert stored.origin == "external"
        assert stored.started_at is not None


class TestLocalTransitions:
    """Test cases for the local state machine"""

    @pytest.mark.asyncio
    async def test_happy_path(self, coordinator, registered_path):
        started = await coordinator.start_task("u1", "repo/auth-001", time_spent_minutes=5)
        blocked = await coordinator.block_task("u1", "repo/auth-001", notes="needs a key")
        unblocked = await coordinator.unblock_task("u1", "repo/auth-001", time_spent_minutes=10)
        completed = await coordinator.complete_task("u1", "repo/auth-001", confidence=0.9)

        assert [r.status for r in (started, blocked, unblocked, completed)] == [
            "in_progress", "blocked", "in_progress", "completed",
        ]
        assert [r.sync_revision for r in (started, blocked, unblocked, completed)] == [1, 2, 3, 4]
        assert completed.time_spent_minutes == 15
        assert completed.notes == "needs a key"
        assert completed.origin == "local"
        assert completed.started_at == started.started_at

    @pytest.mark.asyncio
    async def test_invalid_transitions(self, coordinator, registered_path):
        with pytest.raises(InvalidStateError):
            await coordinator.complete_task("u1", "repo/auth-001")

        await coordinator.start_task("u1", "repo/auth-001")
        await coordinator.complete_task("u1", "repo/auth-001")

        with pytest.raises(InvalidStateError):
            await coordinator.block_task("u1", "repo/auth-001")
        with pytest.raises(InvalidStateError):
            await coordinator.start_task("u1", "repo/auth-001")
        with pytest.raises(InvalidStateError):
            await coordinator.transition("u1", "repo/auth-001", "archive")

    @pytest.mark.asyncio
    async def test_reopen(self, coordinator, registered_path):
        await coordinator.start_task("u1", "repo/auth-001")
        await coordinator.complete_task("u1", "repo/auth-001")

        reopened = await coordinator.reopen_task("u1", "repo/auth-001")

        assert reopened.status == "in_progress"
        assert reopened.completed_at is None

    @pytest.mark.asyncio
    async def test_local_write_outranks_stale_external(self, coordinator, registered_path):
        await coordinator.start_task("u1", "repo/auth-001")
        await coordinator.complete_task("u1", "repo/auth-001")

        result = await coordinator.apply_update(update("in_progress", 1))

        assert not result.accepted
        assert coordinator.get_record("u1", "repo/auth-001").status == "completed"

    @pytest.mark.asyncio
    async def test_path_completes_with_its_tasks(self, coordinator, registered_path):
        for task_id in registered_path.task_ids():
            await coordinator.start_task("u1", task_id)
            await coordinator.complete_task("u1", task_id)

        assert coordinator.get_path(registered_path.id).status == "completed"

        await coordinator.reopen_task("u1", "repo/auth-001")
        assert coordinator.get_path(registered_path.id).status == "active"


class TestPaths:
    """Test cases for path registration and spec round-trips"""

    def test_register_activates(self, registered_path, coordinator, path_store):
        assert registered_path.status == "active"
        assert path_store.get_path(registered_path.id).status == "active"
        assert coordinator.get_path(registered_path.id).id == registered_path.id

    def test_get_unknown_path(self, coordinator):
        with pytest.raises(NotFoundError):
            coordinator.get_path("missing")

    def test_load_paths_restores_sync_universe(self, registered_path, path_store):
        fresh = SyncCoordinator(store=path_store)

        assert fresh.load_paths() == 1
        assert fresh.get_record("u1", "repo/auth-002").status == "not_started"

    @pytest.mark.asyncio
    async def test_delete_path_keeps_records(self, coordinator, registered_path, path_store):
        await coordinator.start_task("u1", "repo/auth-001")

        coordinator.delete_path(registered_path.id)

        assert path_store.get_path(registered_path.id) is None
        assert path_store.get_record("u1", "repo/auth-001").status == "in_progress"
        with pytest.raises(NotFoundError):
            await coordinator.start_task("u1", "repo/auth-002")

    def test_export_is_byte_identical(self, coordinator, registered_path):
        assert coordinator.render_spec(registered_path.id) == coordinator.render_spec(registered_path.id)
        assert coordinator.export_spec(registered_path.id) == export_spec(registered_path)

    @pytest.mark.asyncio
    async def test_unaltered_reimport_changes_nothing(self, coordinator, registered_path, path_store):
        await coordinator.start_task("u1", "repo/auth-001")
        before = render_spec(path_store.get_path(registered_path.id))

        result = await coordinator.import_spec(registered_path.id, coordinator.export_spec(registered_path.id))

        assert not result.changed
        assert result.version == registered_path.version
        assert render_spec(path_store.get_path(registered_path.id)) == before
        assert coordinator.get_record("u1", "repo/auth-001").sync_revision == 1

    @pytest.mark.asyncio
    async def test_revision_reopens_changed_completed_tasks(self, coordinator, registered_path):
        for task_id in ("repo/auth-001", "repo/auth-002"):
            await coordinator.start_task("u1", task_id)
            await coordinator.complete_task("u1", task_id)

        document = coordinator.export_spec(registered_path.id)
        tasks = document["phases"][0]["tasks"]
        tasks[0]["objectives"] = ["List every claim and its meaning"]
        tasks.append(
            {
                "id": "repo/auth-005",
                "title": "Review token expiry",
                "type": "analyze",
                "files": ["auth/jwt.ts"],
                "estimatedMinutes": 20,
                "objectives": [],
                "prerequisites": ["repo/auth-004"],
            }
        )

        result = await coordinator.import_spec(registered_path.id, document)

        assert result.changed
        assert result.version == registered_path.version + 1
        assert result.added_tasks == ["repo/auth-005"]
        assert result.changed_tasks == ["repo/auth-001"]
        assert result.reopened == ["repo/auth-001"]
        assert coordinator.get_record("u1", "repo/auth-001").status == "in_progress"
        assert coordinator.get_record("u1", "repo/auth-002").status == "completed"
        assert coordinator.get_record("u1", "repo/auth-005").status == "not_started"

    @pytest.mark.asyncio
    async def test_removed_task_keeps_its_record(self, coordinator, registered_path, path_store):
        await coordinator.start_task("u1", "repo/auth-004")
        document = coordinator.export_spec(registered_path.id)
        document["phases"][0]["tasks"] = document["phases"][0]["tasks"][:3]

        result = await coordinator.import_spec(registered_path.id, document)

        assert result.removed_tasks == ["repo/auth-004"]
        assert path_store.get_record("u1", "repo/auth-004").status == "in_progress"
        with pytest.raises(NotFoundError):
            await coordinator.apply_update(update("completed", 5, task_id="repo/auth-004"))


class TestMetrics:
    """Test cases for learner roll-up metrics"""

    @pytest.mark.asyncio
    async def test_metrics_follow_accepted_updates(self, coordinator, registered_path):
        await coordinator.apply_update(update("completed", 1, confidence=0.8, timeSpent=10))
        await coordinator.apply_update(update("in_progress", 1, task_id="repo/auth-002", confidence=0.6, timeSpent=20))

        metrics = coordinator.metrics("u1")

        assert metrics.completed_tasks == 1
        assert metrics.in_progress_tasks == 1
        assert metrics.average_confidence == 0.7
        assert metrics.total_time_spent_minutes == 30
        estimated = registered_path.task("repo/auth-001").estimated_minutes + registered_path.task("repo/auth-002").estimated_minutes
        assert metrics.estimated_minutes_touched == estimated

    @pytest.mark.asyncio
    async def test_falling_confidence_and_overrun_flag_risk(self, coordinator, registered_path):
        await coordinator.apply_update(update("in_progress", 1, confidence=0.9, timeSpent=5))
        await coordinator.apply_update(update("in_progress", 2, confidence=0.8, timeSpent=100))
        await coordinator.apply_update(update("blocked", 3, confidence=0.2, timeSpent=400))
        await coordinator.apply_update(update("blocked", 4, confidence=0.1, timeSpent=600))

        metrics = coordinator.metrics("u1")

        assert metrics.confidence_trend < 0
        assert metrics.time_ratio > 1
        assert metrics.at_risk


class TestLearnerPaths:
    """Test cases for one learner following several repositories"""

    @pytest.fixture
    def two_paths(self, coordinator, auth_analysis):
        from codepath.curriculum.models import LearnerProfile
        from codepath.curriculum.planner import CurriculumPlanner

        learner = LearnerProfile(learner_id="u1")
        paths = []
        for repository_id in ("repo-1", "repo-2"):
            analysis = auth_analysis.model_copy(update={"repository_id": repository_id})
            paths.append(coordinator.register_path(CurriculumPlanner().plan(analysis, learner)))
        return paths

    def test_task_ids_do_not_collide(self, two_paths):
        first, second = two_paths

        assert set(first.task_ids()).isdisjoint(second.task_ids())
        assert first.task_ids()[0] == "repo-1/auth-001"

    @pytest.mark.asyncio
    async def test_progress_stays_with_its_path(self, coordinator, two_paths):
        first, second = two_paths

        await coordinator.start_task("u1", "repo-2/auth-001")
        await coordinator.complete_task("u1", "repo-2/auth-001")

        assert coordinator.get_record("u1", "repo-1/auth-001").status == "not_started"
        assert coordinator.get_path(second.id).status == "active"

    @pytest.mark.asyncio
    async def test_deleting_one_path_keeps_the_other(self, coordinator, two_paths):
        first, second = two_paths

        coordinator.delete_path(second.id)
        result = await coordinator.apply_update(update("completed", 1, task_id="repo-1/auth-001"))

        assert result.accepted
        assert coordinator.get_record("u1", "repo-1/auth-001").status == "completed"
        with pytest.raises(NotFoundError):
            await coordinator.apply_update(update("completed", 1, task_id="repo-2/auth-001"))

    def test_task_owned_by_another_path_is_rejected(self, coordinator, two_paths):
        first, _ = two_paths
        clashing = first.model_copy(update={"id": "another-path"})

        with pytest.raises(InvalidStateError, match="already belong"):
            coordinator.register_path(clashing)


class TestRegisterPlan:
    """Test cases for re-planning a path that already exists"""

    @pytest.mark.asyncio
    async def test_first_plan_is_registered(self, coordinator, auth_analysis):
        from codepath.curriculum.models import LearnerProfile
        from codepath.curriculum.planner import CurriculumPlanner

        path = CurriculumPlanner().plan(auth_analysis, LearnerProfile(learner_id="u1"))

        registered = await coordinator.register_plan(path)

        assert registered.version == 1
        assert registered.status == "active"
        assert coordinator.get_path(path.id) == registered

    @pytest.mark.asyncio
    async def test_unchanged_plan_keeps_version(self, coordinator, registered_path, auth_analysis):
        from codepath.curriculum.models import LearnerProfile
        from codepath.curriculum.planner import CurriculumPlanner

        replanned = await coordinator.register_plan(
            CurriculumPlanner().plan(auth_analysis, LearnerProfile(learner_id="u1"))
        )

        assert replanned == registered_path

    @pytest.mark.asyncio
    async def test_replan_is_a_revision(self, coordinator, registered_path, auth_analysis, path_store):
        from codepath.curriculum.models import LearnerProfile
        from codepath.curriculum.planner import CurriculumPlanner

        planned_title = registered_path.task("repo/auth-001").title
        document = coordinator.export_spec(registered_path.id)
        document["phases"][0]["tasks"][0]["title"] = "Read the claim types"
        imported = await coordinator.import_spec(registered_path.id, document)
        await coordinator.start_task("u1", "repo/auth-001")
        await coordinator.complete_task("u1", "repo/auth-001")

        replanned = await coordinator.register_plan(
            CurriculumPlanner().plan(auth_analysis, LearnerProfile(learner_id="u1"))
        )

        assert imported.version == 2
        assert replanned.version == 3
        assert replanned.created_at == registered_path.created_at
        assert replanned.task("repo/auth-001").title == planned_title
        assert path_store.get_path(registered_path.id).version == 3
        record = coordinator.get_record("u1", "repo/auth-001")
        assert record.status == "in_progress"
        assert record.notes == "Re-opened by curriculum revision v3"
