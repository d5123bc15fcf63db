import asyncio
import logging
import posixpath
import time
from typing import Dict, List, Optional

from codepath.config import settings
from codepath.core.exceptions import InvalidInputError, NotFoundError
from codepath.models import IndexReport, IngestionReport, RejectedFile, SourceFile
from codepath.services.retrieval_engine import RetrievalEngine, get_retrieval_engine
from codepath.utils.text_chunking import chunk_file

logger = logging.getLogger(__name__)

# Lazy singleton instances
_snapshot_store_instance = None
_ingestion_pipeline_instance = None


class RepositorySnapshotStore:
    """Latest accepted files per repository, partitioned by repository id."""

    def __init__(self):
        self._files: Dict[str, Dict[str, SourceFile]] = {}

    def put(self, repository_id: str, files: List[SourceFile]) -> None:
        self._files[repository_id] = {f.file_path: f for f in files}

    def get(self, repository_id: str) -> Optional[List[SourceFile]]:
        files = self._files.get(repository_id)
        if files is None:
            return None
        return [files[path] for path in sorted(files)]

    def paths(self, repository_id: str) -> set:
        return set(self._files.get(repository_id, {}))

    def delete(self, repository_id: str) -> None:
        self._files.pop(repository_id, None)


def get_snapshot_store() -> RepositorySnapshotStore:
    global _snapshot_store_instance

    if _snapshot_store_instance is None:
        _snapshot_store_instance = RepositorySnapshotStore()

    return _snapshot_store_instance


def get_ingestion_pipeline() -> 'IngestionPipeline':
    global _ingestion_pipeline_instance

    if _ingestion_pipeline_instance is None:
        _ingestion_pipeline_instance = IngestionPipeline()

    return _ingestion_pipeline_instance


def normalize_path(file_path: str) -> str:
    path = file_path.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return posixpath.normpath(path) if path else ""


def _rejection_reason(source_file: SourceFile) -> Optional[str]:
    path = source_file.file_path
    if not path:
        return "empty file path"
    if path.startswith("/") or path == ".." or path.startswith("../"):
        return "path escapes repository root"
    if "\x00" in source_file.content:
        return "binary content"
    size = len(source_file.content.encode("utf-8"))
    if size > settings.max_file_bytes:
        return f"file exceeds {settings.max_file_bytes} bytes ({size})"
    return None


class IngestionPipeline:
    def __init__(
        self,
        engine: Optional[RetrievalEngine] = None,
        snapshots: Optional[RepositorySnapshotStore] = None,
    ):
        self.engine = engine or get_retrieval_engine()
        self.snapshots = snapshots or get_snapshot_store()

    async def ingest(self, repository_id: str, files: List[SourceFile]) -> IngestionReport:
        """
        Chunk and index a flat list of repository files.

        Files missing from a re-ingest are retired from the index. The report
        always carries per-item counts; a batch never collapses to pass/fail.
        """
        if not repository_id or not repository_id.strip():
            raise InvalidInputError("repository_id must not be empty")

        start_time = time.time()
        logger.info(f"🚀 Starting ingestion for repository_id={repository_id} ({len(files)} files)")
        report = IngestionReport(repository_id=repository_id, files_received=len(files))

        # Step 1: validate the intake tuples
        accepted: Dict[str, SourceFile] = {}
        for source_file in files:
            normalized = source_file.model_copy(update={"file_path": normalize_path(source_file.file_path)})
            reason = _rejection_reason(normalized)
            if reason is None and normalized.file_path in accepted:
                reason = "duplicate file path"
            if reason is not None:
                report.rejected.append(RejectedFile(file_path=source_file.file_path, reason=reason))
                logger.warning(f"⚠️  Rejected {source_file.file_path!r}: {reason}")
                continue
            accepted[normalized.file_path] = normalized

        report.files_accepted = len(accepted)
        report.files_rejected = len(report.rejected)
        logger.info(f"✅ Step 1/3: Accepted {report.files_accepted} files, rejected {report.files_rejected}")

        # Step 2: chunk everything before touching the index
        chunked = {
            path: chunk_file(repository_id=repository_id, source_file=source_file)
            for path, source_file in accepted.items()
        }
        total_fragments = sum(len(fragments) for fragments in chunked.values())
        if total_fragments > settings.max_fragments_per_repository:
            raise InvalidInputError(
                f"Repository produces {total_fragments} fragments, limit is {settings.max_fragments_per_repository}"
            )
        logger.info(f"✂️  Step 2/3: Created {total_fragments} fragments")

        # Step 3: sync each file, retire files that disappeared
        previous_paths = self.snapshots.paths(repository_id) | self.engine.indexed_files(repository_id)
        removed_paths = sorted(previous_paths - set(accepted))
        results: List[IndexReport] = await asyncio.gather(
            *(self.engine.sync_file(repository_id, path, fragments) for path, fragments in chunked.items()),
            *(self.engine.remove_file(repository_id, path) for path in removed_paths),
        )
        index_report = IndexReport()
        for result in results:
            index_report = index_report.merge(result)

        report.fragments_succeeded = index_report.succeeded
        report.fragments_unchanged = index_report.unchanged
        report.fragments_retired = index_report.retired
        report.fragments_pending = index_report.pending
        report.fragments_failed = index_report.failed

        self.snapshots.put(repository_id, list(accepted.values()))

        if report.files_received and not report.files_accepted:
            report.status = "failed"
        elif report.fragments_failed and not (report.fragments_succeeded or report.fragments_unchanged):
            report.status = "failed"
        elif report.files_rejected or report.fragments_pending or report.fragments_failed:
            report.status = "partial"
        else:
            report.status = "ready"

        duration = time.time() - start_time
        logger.info(f"🎉 Ingestion finished for repository_id={repository_id} in {duration:.2f}s")
        logger.info(f"📊 Ingestion Summary:")
        logger.info(f"   • Files accepted/rejected: {report.files_accepted}/{report.files_rejected}")
        logger.info(f"   • Fragments succeeded: {report.fragments_succeeded}")
        logger.info(f"   • Fragments unchanged: {report.fragments_unchanged}")
        logger.info(f"   • Fragments retired: {report.fragments_retired}")
        logger.info(f"   • Fragments pending: {report.fragments_pending}")
        logger.info(f"   • Fragments failed: {report.fragments_failed}")
        logger.info(f"   • Status: {report.status}")

        return report

    def remove(self, repository_id: str) -> int:
        """
        Forget an ingested repository: its snapshot, indexed and pending fragments.

        Raises:
            NotFoundError: Nothing was ever ingested for the repository
        """
        if self.snapshots.get(repository_id) is None and not self.engine.indexed_files(repository_id):
            raise NotFoundError(f"Repository {repository_id} has not been ingested")

        removed = self.engine.remove_repository(repository_id)
        self.snapshots.delete(repository_id)
        logger.info(f"🗑️  Removed repository_id={repository_id} ({removed} fragments)")
        return removed
