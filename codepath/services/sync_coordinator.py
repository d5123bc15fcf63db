"""
Sync Coordinator
Keeps learner progress consistent between this service and the external task client.

Conflict rule for inbound updates of one (learner, task) pair: an update is
accepted when its declared revision is higher than the stored one, or equal
with a strictly higher status rank (not_started < in_progress < blocked <
completed), or equal with an equal rank and a strictly later occurredAt.
Anything else is discarded and logged; discards are results, not errors.

External updates are snapshots of the client's state at their revision, so
the revision order decides between them and the local state machine does not
apply. Local transitions (start, complete, block, unblock, reopen) follow the
state machine and declare the next revision themselves.
"""

import asyncio
import logging
import time
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from codepath.core.exceptions import InvalidStateError, NotFoundError
from codepath.curriculum.models import LearningPath
from codepath.curriculum.spec_export import ExportedSpec, export_spec, parse_spec, path_from_spec, render_spec
from codepath.models import (
    PROGRESS_STATUSES,
    STATUS_RANK,
    ImportResult,
    LearnerMetrics,
    ProgressRecord,
    ProgressUpdate,
    SyncResult,
    utc_now,
)
from codepath.services.path_store import get_path_store
from codepath.services.progress_metrics import compute_metrics

logger = logging.getLogger(__name__)

Pair = Tuple[str, str]

# action -> (allowed current statuses, resulting status)
LOCAL_TRANSITIONS: Dict[str, Tuple[Tuple[str, ...], str]] = {
    "start": (("not_started",), "in_progress"),
    "complete": (("in_progress",), "completed"),
    "block": (("in_progress",), "blocked"),
    "unblock": (("blocked",), "in_progress"),
    "reopen": (("completed",), "in_progress"),
}

# Lazy singleton instance
_sync_coordinator_instance = None


def get_sync_coordinator() -> 'SyncCoordinator':
    global _sync_coordinator_instance

    if _sync_coordinator_instance is None:
        _sync_coordinator_instance = SyncCoordinator()

    return _sync_coordinator_instance


def resolve_conflict(current: ProgressRecord, update: ProgressUpdate) -> Tuple[bool, str]:
    """Decide whether an inbound update supersedes the stored record."""
    if update.revision > current.sync_revision:
        return True, f"revision {update.revision} supersedes {current.sync_revision}"
    if update.revision < current.sync_revision:
        return False, f"stale revision {update.revision} < stored {current.sync_revision}"

    incoming_rank, stored_rank = STATUS_RANK[update.status], STATUS_RANK[current.status]
    if incoming_rank > stored_rank:
        return True, f"status {update.status} outranks {current.status} at revision {update.revision}"
    if incoming_rank < stored_rank:
        return False, f"status {update.status} ranks below stored {current.status} at revision {update.revision}"

    if update.occurred_at and current.updated_at and update.occurred_at > current.updated_at:
        return True, f"later occurrence at revision {update.revision}"
    return False, f"duplicate delivery at revision {update.revision}"


class SyncCoordinator:
    def __init__(self, store=None):
        self.store = store or get_path_store()
        self._pair_locks: Dict[Pair, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._path_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._paths: Dict[str, LearningPath] = {}
        # learner_id -> task_id -> path_id
        self._learner_tasks: Dict[str, Dict[str, str]] = defaultdict(dict)
        self._records: Dict[Pair, ProgressRecord] = {}
        self._confidence_history: Dict[str, List[float]] = defaultdict(list)
        self._metrics: Dict[str, LearnerMetrics] = {}

    # ============================================
    # Learning paths
    # ============================================

    def _install(self, path: LearningPath) -> None:
        previous = self._paths.get(path.id)
        if previous is not None:
            tasks = self._learner_tasks[previous.learner_id]
            for task_id in previous.task_ids():
                if tasks.get(task_id) == path.id:
                    del tasks[task_id]
        self._paths[path.id] = path
        for task_id in path.task_ids():
            self._learner_tasks[path.learner_id][task_id] = path.id

    def _check_ownership(self, path: LearningPath) -> None:
        owners = self._learner_tasks.get(path.learner_id, {})
        clashes = sorted(task_id for task_id in path.task_ids() if owners.get(task_id) not in (None, path.id))
        if clashes:
            raise InvalidStateError(
                f"Tasks {', '.join(clashes)} already belong to another learning path of learner {path.learner_id}"
            )

    def register_path(self, path: LearningPath) -> LearningPath:
        """
        Persist a learning path and make its tasks the learner's sync universe.

        Raises:
            InvalidStateError: A task id already belongs to another path of the learner
        """
        self._check_ownership(path)
        if path.status == "draft":
            path = path.model_copy(update={"status": "active"})
        self.store.save_path(path)
        self._install(path)
        logger.info(
            f"📌 Registered learning path {path.id} v{path.version} "
            f"({len(path.task_ids())} tasks) for learner={path.learner_id}"
        )
        return path

    async def register_plan(self, path: LearningPath) -> LearningPath:
        """
        Register a freshly planned path. Planning a (repository, learner) pair
        that already has a path is a curriculum revision of that path: the
        version moves forward and completed tasks whose definition changed
        are re-opened. A plan equal to the current path changes nothing.
        """
        async with self._path_locks[path.id]:
            try:
                current = self.get_path(path.id)
            except NotFoundError:
                return self.register_path(path)

            candidate = path.model_copy(
                update={"version": current.version, "status": current.status, "created_at": current.created_at}
            )
            if render_spec(candidate) == render_spec(current):
                logger.info(f"📌 Re-planned path {path.id} is unchanged (v{current.version})")
                return current

            revised, added, removed, changed = self._install_revision(
                current, candidate.model_copy(update={"version": current.version + 1})
            )

        reopened = await self._reopen_changed(revised, changed)
        logger.info(
            f"📌 Re-planned path {path.id} as v{revised.version}: {len(added)} added, "
            f"{len(removed)} removed, {len(changed)} changed, {len(reopened)} re-opened"
        )
        return self.get_path(path.id)

    def load_paths(self) -> int:
        """Install every persisted path (startup)."""
        paths = self.store.list_paths()
        for path in paths:
            self._install(path)
        if paths:
            logger.info(f"📂 Loaded {len(paths)} persisted learning paths")
        return len(paths)

    def get_path(self, path_id: str) -> LearningPath:
        path = self._paths.get(path_id)
        if path is None:
            path = self.store.get_path(path_id)
            if path is None:
                raise NotFoundError(f"Learning path {path_id} not found")
            self._install(path)
        return path

    def delete_path(self, path_id: str) -> None:
        """Delete a path with its phases and tasks; progress records are kept."""
        path = self.get_path(path_id)
        self.store.delete_path(path_id)
        tasks = self._learner_tasks[path.learner_id]
        for task_id in path.task_ids():
            if tasks.get(task_id) == path_id:
                del tasks[task_id]
        del self._paths[path_id]
        logger.info(f"🗑️  Deleted learning path {path_id}")

    def export_spec(self, path_id: str) -> dict:
        return export_spec(self.get_path(path_id))

    def render_spec(self, path_id: str) -> bytes:
        return render_spec(self.get_path(path_id))

    async def import_spec(self, path_id: str, document) -> ImportResult:
        """
        Apply a spec document coming back from the external client.

        An unaltered document changes nothing. An altered one is a curriculum
        revision: the path is rebuilt and versioned, completed tasks whose
        definition changed are re-opened, removed tasks keep their records.

        Raises:
            NotFoundError: Unknown path
            InvalidInputError: Malformed document or one for another path
            CyclicCurriculumError: Revised prerequisites form a cycle
        """
        async with self._path_locks[path_id]:
            current = self.get_path(path_id)
            incoming = parse_spec(document)
            if incoming == ExportedSpec.model_validate(export_spec(current)):
                logger.info(f"📄 Spec for path {path_id} is unchanged (v{current.version})")
                return ImportResult(path_id=path_id, changed=False, version=current.version)

            revised = path_from_spec(current, incoming)
            revised, added, removed, changed = self._install_revision(current, revised)

        reopened = await self._reopen_changed(revised, changed)

        return ImportResult(
            path_id=path_id,
            changed=True,
            version=revised.version,
            added_tasks=added,
            removed_tasks=removed,
            changed_tasks=changed,
            reopened=reopened,
        )

    def _install_revision(
        self, current: LearningPath, revised: LearningPath
    ) -> Tuple[LearningPath, List[str], List[str], List[str]]:
        """Persist a revised path; returns it with the added, removed and changed task ids."""
        old_tasks = {task.id: task for task in current.tasks()}
        new_tasks = {task.id: task for task in revised.tasks()}
        added = sorted(set(new_tasks) - set(old_tasks))
        removed = sorted(set(old_tasks) - set(new_tasks))
        changed = sorted(
            task_id
            for task_id in set(new_tasks) & set(old_tasks)
            if new_tasks[task_id].definition() != old_tasks[task_id].definition()
        )

        revised = revised.model_copy(update={"status": "active"})
        self._check_ownership(revised)
        self.store.save_path(revised)
        self._install(revised)
        logger.info(
            f"📄 Installed revision v{revised.version} of path {revised.id}: "
            f"{len(added)} added, {len(removed)} removed, {len(changed)} changed"
        )
        return revised, added, removed, changed

    async def _reopen_changed(self, path: LearningPath, changed: List[str]) -> List[str]:
        reopened = []
        for task_id in changed:
            record = self._current_record(path.learner_id, task_id)
            if record.status == "completed":
                await self.reopen_task(
                    path.learner_id, task_id, notes=f"Re-opened by curriculum revision v{path.version}"
                )
                reopened.append(task_id)
        return reopened

    # ============================================
    # Progress records
    # ============================================

    def _path_for_task(self, learner_id: str, task_id: str) -> str:
        path_id = self._learner_tasks.get(learner_id, {}).get(task_id)
        if path_id is None:
            raise NotFoundError(f"Task {task_id} is not part of any learning path of learner {learner_id}")
        return path_id

    def _current_record(self, learner_id: str, task_id: str) -> ProgressRecord:
        key = (learner_id, task_id)
        record = self._records.get(key)
        if record is None:
            record = self.store.get_record(learner_id, task_id)
            if record is None:
                record = ProgressRecord(learner_id=learner_id, task_id=task_id)
            self._records[key] = record
        return record

    def _commit(self, record: ProgressRecord, confidence: Optional[float]) -> None:
        # Persist first: a failed write leaves the in-memory view untouched
        self.store.save_record(record)
        self._records[record.key] = record
        if confidence is not None:
            self._confidence_history[record.learner_id].append(confidence)
        self._metrics[record.learner_id] = self._compute_metrics(record.learner_id)
        self._refresh_path_status(record.learner_id, record.task_id)

    def _refresh_path_status(self, learner_id: str, task_id: str) -> None:
        path_id = self._learner_tasks.get(learner_id, {}).get(task_id)
        path = self._paths.get(path_id) if path_id else None
        if path is None:
            return
        all_done = all(self._current_record(learner_id, t).status == "completed" for t in path.task_ids())
        status = "completed" if all_done else "active"
        if status != path.status:
            updated = path.model_copy(update={"status": status})
            self.store.save_path(updated)
            self._paths[path.id] = updated
            logger.info(f"🏁 Learning path {path.id} is now {status}")

    async def apply_update(self, update: ProgressUpdate) -> SyncResult:
        """
        Apply one inbound progress update.

        Raises:
            NotFoundError: Task is not part of the learner's paths
            InvalidStateError: Status is not a known progress status
        """
        self._path_for_task(update.learner_id, update.task_id)
        if update.status not in PROGRESS_STATUSES:
            raise InvalidStateError(
                f"Unknown status {update.status!r}; expected one of {', '.join(PROGRESS_STATUSES)}"
            )

        async with self._pair_locks[(update.learner_id, update.task_id)]:
            current = self._current_record(update.learner_id, update.task_id)
            accepted, reason = resolve_conflict(current, update)
            if not accepted:
                logger.info(
                    f"🚫 Discarded update learner={update.learner_id} task={update.task_id} "
                    f"status={update.status} revision={update.revision}: {reason}"
                )
                return SyncResult(accepted=False, reason=reason, record=current)

            record = self._next_record(
                current,
                status=update.status,
                declared_revision=update.revision,
                origin="external",
                at=update.occurred_at,
                confidence=update.confidence,
                time_spent_minutes=update.time_spent_minutes,
                notes=update.notes,
            )
            self._commit(record, update.confidence)

        logger.info(
            f"✅ Applied update learner={update.learner_id} task={update.task_id} "
            f"status={record.status} revision={record.sync_revision}: {reason}"
        )
        return SyncResult(accepted=True, reason=reason, record=record)

    def _next_record(
        self,
        current: ProgressRecord,
        *,
        status: str,
        declared_revision: int,
        origin: str,
        at: Optional[datetime],
        confidence: Optional[float],
        time_spent_minutes: int,
        notes: Optional[str],
    ) -> ProgressRecord:
        now = at or utc_now()
        started_at = current.started_at
        if status != "not_started" and started_at is None:
            started_at = now
        if status == "not_started":
            started_at = None
        return current.model_copy(
            update={
                "status": status,
                "started_at": started_at,
                "completed_at": now if status == "completed" else None,
                "updated_at": now,
                "confidence": confidence,
                "time_spent_minutes": time_spent_minutes,
                "notes": notes,
                "revision": current.revision + 1,
                "sync_revision": declared_revision,
                "origin": origin,
            }
        )

    async def transition(
        self,
        learner_id: str,
        task_id: str,
        action: str,
        confidence: Optional[float] = None,
        time_spent_minutes: int = 0,
        notes: Optional[str] = None,
    ) -> ProgressRecord:
        """
        Local state-machine transition. Time spent is added to the total.

        Raises:
            NotFoundError: Unknown task
            InvalidStateError: Action not allowed from the current status
        """
        if action not in LOCAL_TRANSITIONS:
            raise InvalidStateError(f"Unknown transition {action!r}")
        self._path_for_task(learner_id, task_id)
        allowed, target = LOCAL_TRANSITIONS[action]

        async with self._pair_locks[(learner_id, task_id)]:
            current = self._current_record(learner_id, task_id)
            if current.status not in allowed:
                raise InvalidStateError(
                    f"Cannot {action} task {task_id} while it is {current.status}"
                )
            record = self._next_record(
                current,
                status=target,
                declared_revision=current.sync_revision + 1,
                origin="local",
                at=None,
                confidence=confidence if confidence is not None else current.confidence,
                time_spent_minutes=current.time_spent_minutes + max(0, time_spent_minutes),
                notes=notes if notes is not None else current.notes,
            )
            self._commit(record, confidence)

        logger.info(f"✅ {action} learner={learner_id} task={task_id}: {current.status} -> {target}")
        return record

    async def start_task(self, learner_id: str, task_id: str, **kwargs) -> ProgressRecord:
        return await self.transition(learner_id, task_id, "start", **kwargs)

    async def complete_task(self, learner_id: str, task_id: str, **kwargs) -> ProgressRecord:
        return await self.transition(learner_id, task_id, "complete", **kwargs)

    async def block_task(self, learner_id: str, task_id: str, **kwargs) -> ProgressRecord:
        return await self.transition(learner_id, task_id, "block", **kwargs)

    async def unblock_task(self, learner_id: str, task_id: str, **kwargs) -> ProgressRecord:
        return await self.transition(learner_id, task_id, "unblock", **kwargs)

    async def reopen_task(self, learner_id: str, task_id: str, **kwargs) -> ProgressRecord:
        return await self.transition(learner_id, task_id, "reopen", **kwargs)

    def get_record(self, learner_id: str, task_id: str) -> ProgressRecord:
        """Stored record, or a fresh not_started one for a known task without progress."""
        key = (learner_id, task_id)
        if key not in self._records and self.store.get_record(learner_id, task_id) is None:
            self._path_for_task(learner_id, task_id)
        return self._current_record(learner_id, task_id)

    def list_records(self, learner_id: str) -> List[ProgressRecord]:
        return self.store.list_records(learner_id)

    # ============================================
    # Metrics
    # ============================================

    def _compute_metrics(self, learner_id: str) -> LearnerMetrics:
        start_time = time.time()
        estimates: Dict[str, int] = {}
        for task_id, path_id in self._learner_tasks.get(learner_id, {}).items():
            task = self._paths[path_id].task(task_id)
            if task is not None:
                estimates[task_id] = task.estimated_minutes
        metrics = compute_metrics(
            learner_id,
            self.store.list_records(learner_id),
            estimates,
            self._confidence_history.get(learner_id, []),
        )
        logger.debug(f"   Recomputed metrics for learner={learner_id} in {time.time() - start_time:.3f}s")
        if metrics.at_risk:
            logger.warning(f"⚠️  Learner {learner_id} is at risk (score={metrics.risk_score})")
        return metrics

    def metrics(self, learner_id: str) -> LearnerMetrics:
        if learner_id not in self._metrics:
            self._metrics[learner_id] = self._compute_metrics(learner_id)
        return self._metrics[learner_id]
