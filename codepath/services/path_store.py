"""
Persistence for learning paths and progress records.

Both stores expose the same methods. Every write covers exactly one entity
(a path document or one progress row), so a failed write never leaves a
half-updated entity behind. Phases and tasks live inside the path document
and go with it on delete; progress records reference tasks by id only and
outlive the path.
"""

import logging
from typing import Dict, List, Optional, Tuple

from supabase import Client

from codepath.config import settings
from codepath.core.supabase_client import get_supabase_client
from codepath.curriculum.models import LearningPath
from codepath.models import ProgressRecord

logger = logging.getLogger(__name__)

PATHS_TABLE = "learning_paths"
RECORDS_TABLE = "progress_records"

# Lazy singleton instance
_path_store_instance = None


class InMemoryPathStore:
    def __init__(self):
        self._paths: Dict[str, LearningPath] = {}
        self._records: Dict[Tuple[str, str], ProgressRecord] = {}

    def save_path(self, path: LearningPath) -> None:
        self._paths[path.id] = path.model_copy(deep=True)

    def get_path(self, path_id: str) -> Optional[LearningPath]:
        path = self._paths.get(path_id)
        return path.model_copy(deep=True) if path else None

    def list_paths(self) -> List[LearningPath]:
        return [self._paths[path_id].model_copy(deep=True) for path_id in sorted(self._paths)]

    def delete_path(self, path_id: str) -> bool:
        return self._paths.pop(path_id, None) is not None

    def save_record(self, record: ProgressRecord) -> None:
        self._records[record.key] = record.model_copy()

    def get_record(self, learner_id: str, task_id: str) -> Optional[ProgressRecord]:
        record = self._records.get((learner_id, task_id))
        return record.model_copy() if record else None

    def list_records(self, learner_id: str) -> List[ProgressRecord]:
        return [
            record.model_copy()
            for key, record in sorted(self._records.items())
            if key[0] == learner_id
        ]


class SupabasePathStore:
    """
    Supabase tables:
        learning_paths(id, repository_id, learner_id, version, document jsonb)
        progress_records(learner_id, task_id, ...ProgressRecord columns), unique (learner_id, task_id)
    """

    def __init__(self, client: Optional[Client] = None):
        self.client = client or get_supabase_client()

    def save_path(self, path: LearningPath) -> None:
        self.client.table(PATHS_TABLE).upsert(
            {
                "id": path.id,
                "repository_id": path.repository_id,
                "learner_id": path.learner_id,
                "version": path.version,
                "document": path.model_dump(mode="json"),
            },
            on_conflict="id",
        ).execute()
        logger.debug(f"   Saved learning path {path.id} v{path.version}")

    def get_path(self, path_id: str) -> Optional[LearningPath]:
        response = self.client.table(PATHS_TABLE).select("document").eq("id", path_id).execute()
        if not response.data:
            return None
        return LearningPath.model_validate(response.data[0]["document"])

    def list_paths(self) -> List[LearningPath]:
        response = self.client.table(PATHS_TABLE).select("document").order("id").execute()
        return [LearningPath.model_validate(row["document"]) for row in (response.data or [])]

    def delete_path(self, path_id: str) -> bool:
        response = self.client.table(PATHS_TABLE).delete().eq("id", path_id).execute()
        return bool(response.data)

    def save_record(self, record: ProgressRecord) -> None:
        self.client.table(RECORDS_TABLE).upsert(
            record.model_dump(mode="json"),
            on_conflict="learner_id,task_id",
        ).execute()

    def get_record(self, learner_id: str, task_id: str) -> Optional[ProgressRecord]:
        response = (
            self.client.table(RECORDS_TABLE)
            .select("*")
            .eq("learner_id", learner_id)
            .eq("task_id", task_id)
            .execute()
        )
        if not response.data:
            return None
        return ProgressRecord.model_validate(response.data[0])

    def list_records(self, learner_id: str) -> List[ProgressRecord]:
        response = (
            self.client.table(RECORDS_TABLE)
            .select("*")
            .eq("learner_id", learner_id)
            .order("task_id", desc=False)
            .execute()
        )
        return [ProgressRecord.model_validate(row) for row in (response.data or [])]


def get_path_store():
    """
    Get or create the configured store (`PERSISTENCE_BACKEND`: memory | supabase).
    """
    global _path_store_instance

    if _path_store_instance is None:
        if settings.persistence_backend == "supabase":
            logger.info("💾 Using Supabase persistence for learning paths")
            _path_store_instance = SupabasePathStore()
        else:
            logger.info("💾 Using in-memory persistence for learning paths")
            _path_store_instance = InMemoryPathStore()

    return _path_store_instance
