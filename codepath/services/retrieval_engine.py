"""
Retrieval Engine: fragment indexing and tenant-scoped similarity queries.

Fragments are addressed by slot (repository, file, ordinal). A slot holds at
most one fragment identity; re-indexing identical content is a no-op, changed
content retires the previous identity of that slot and writes the new one.
Embedding failures that survive the retry budget park fragments as
`index_pending` instead of failing the batch.
"""

import asyncio
import logging
import time
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from codepath.config import settings
from codepath.core.exceptions import InvalidInputError, TransientProviderError
from codepath.models import CodeFragment, IndexReport, ScoredFragment
from codepath.services.embedding_service import get_embedding_service
from codepath.services.qdrant_service import QdrantService, fragment_from_payload, get_qdrant_service
from codepath.utils.retry import call_with_retry

logger = logging.getLogger(__name__)

Slot = Tuple[str, str, int]

# Lazy singleton instance
_retrieval_engine_instance = None


def get_retrieval_engine() -> 'RetrievalEngine':
    global _retrieval_engine_instance

    if _retrieval_engine_instance is None:
        _retrieval_engine_instance = RetrievalEngine()

    return _retrieval_engine_instance


class RetrievalEngine:
    def __init__(self, embedding_service=None, qdrant_service: Optional[QdrantService] = None):
        self._embedding_service = embedding_service
        self._qdrant_service = qdrant_service
        # At most one writer per slot; different slots write concurrently
        self._slot_locks: Dict[Slot, asyncio.Lock] = defaultdict(asyncio.Lock)
        # repository_id -> slot -> fragment waiting for an embedding
        self._pending: Dict[str, Dict[Slot, CodeFragment]] = defaultdict(dict)

    @property
    def embedding_service(self):
        if self._embedding_service is None:
            self._embedding_service = get_embedding_service()
        return self._embedding_service

    @property
    def qdrant(self) -> QdrantService:
        if self._qdrant_service is None:
            self._qdrant_service = get_qdrant_service()
        return self._qdrant_service

    # ============================================
    # Indexing
    # ============================================

    def _current_id(self, slot: Slot) -> Optional[str]:
        repository_id, file_path, ordinal = slot
        pending = self._pending[repository_id].get(slot)
        if pending is not None:
            return pending.id
        return self.qdrant.slot_point_id(repository_id, file_path, ordinal)

    def _is_pending(self, fragment: CodeFragment) -> bool:
        pending = self._pending[fragment.repository_id].get(fragment.slot)
        return pending is not None and pending.id == fragment.id

    async def _embed_batch(self, batch: List[CodeFragment]) -> Optional[List[List[float]]]:
        try:
            return await call_with_retry(
                self.embedding_service.embed_texts,
                [fragment.embedding_text() for fragment in batch],
                operation=f"embedding batch of {len(batch)} fragments",
            )
        except TransientProviderError as e:
            logger.warning(f"⚠️  Embedding exhausted retries, {len(batch)} fragments marked index_pending: {e}")
            return None

    async def _write_slot(
        self,
        fragment: CodeFragment,
        embedding: Optional[List[float]],
        report: IndexReport,
    ) -> None:
        slot = fragment.slot
        async with self._slot_locks[slot]:
            repository_id = fragment.repository_id
            stored_id = self.qdrant.slot_point_id(*slot)

            if stored_id == fragment.id:
                # Written meanwhile by a concurrent batch
                self._pending[repository_id].pop(slot, None)
                report.unchanged += 1
                return

            previous_pending = self._pending[repository_id].get(slot)
            if previous_pending is not None and previous_pending.id != fragment.id:
                report.retired += 1

            try:
                if embedding is not None:
                    self.qdrant.upsert_fragments([fragment], [embedding])
                    self._pending[repository_id].pop(slot, None)
                    report.succeeded += 1
                else:
                    self._pending[repository_id][slot] = fragment
                    report.pending += 1
                    report.pending_ids.append(fragment.id)

                if stored_id is not None:
                    self.qdrant.delete_points([stored_id])
                    report.retired += 1
            except Exception as e:
                logger.error(f"❌ Failed to write fragment {fragment.file_path}#{fragment.ordinal}: {e}", exc_info=True)
                report.failed += 1

    async def index(self, repository_id: str, fragments: List[CodeFragment]) -> IndexReport:
        """
        Index fragments for one repository.

        Idempotent per fragment identity: a slot already holding the same id is
        left alone. Changed content retires only that slot's previous identity.

        Returns:
            IndexReport with succeeded / unchanged / retired / pending / failed counts
        """
        start_time = time.time()
        report = IndexReport()

        foreign = [f for f in fragments if f.repository_id != repository_id]
        if foreign:
            raise InvalidInputError(
                f"{len(foreign)} fragments belong to another repository than {repository_id}"
            )

        # Last submission wins when a batch repeats a slot
        by_slot: Dict[Slot, CodeFragment] = {}
        for fragment in fragments:
            by_slot[fragment.slot] = fragment

        to_embed: List[CodeFragment] = []
        for slot, fragment in by_slot.items():
            if self._current_id(slot) == fragment.id and not self._is_pending(fragment):
                report.unchanged += 1
            else:
                to_embed.append(fragment)

        logger.info(
            f"📥 Indexing {len(by_slot)} fragments for repository_id={repository_id} "
            f"({report.unchanged} unchanged, {len(to_embed)} to embed)"
        )

        batch_size = max(1, settings.embedding_batch_size)
        batches = [to_embed[i:i + batch_size] for i in range(0, len(to_embed), batch_size)]
        embedded = await asyncio.gather(*(self._embed_batch(batch) for batch in batches))

        writes = []
        for batch, embeddings in zip(batches, embedded):
            for position, fragment in enumerate(batch):
                vector = embeddings[position] if embeddings is not None else None
                writes.append(self._write_slot(fragment, vector, report))
        await asyncio.gather(*writes)

        duration = time.time() - start_time
        logger.info(
            f"✅ Indexed repository_id={repository_id} in {duration:.2f}s: "
            f"succeeded={report.succeeded}, unchanged={report.unchanged}, retired={report.retired}, "
            f"pending={report.pending}, failed={report.failed}"
        )
        return report

    async def sync_file(
        self, repository_id: str, file_path: str, fragments: List[CodeFragment]
    ) -> IndexReport:
        """
        Replace one file's fragments: index the new set and retire every slot of
        the file beyond it (the file shrank or became empty).
        """
        if any(f.file_path != file_path for f in fragments):
            raise InvalidInputError(f"sync_file received fragments of files other than {file_path}")

        report = await self.index(repository_id, fragments)
        report = report.merge(await self._retire_file_slots(repository_id, file_path, keep=len(fragments)))
        return report

    async def remove_file(self, repository_id: str, file_path: str) -> IndexReport:
        return await self._retire_file_slots(repository_id, file_path, keep=0)

    async def _retire_file_slots(self, repository_id: str, file_path: str, keep: int) -> IndexReport:
        report = IndexReport()
        stored = self.qdrant.list_file_slots(repository_id, file_path)
        for ordinal, point_id in sorted(stored.items()):
            if ordinal < keep:
                continue
            async with self._slot_locks[(repository_id, file_path, ordinal)]:
                self.qdrant.delete_points([point_id])
                report.retired += 1

        pending = self._pending[repository_id]
        for slot in [s for s in pending if s[1] == file_path and s[2] >= keep]:
            del pending[slot]
            report.retired += 1

        if report.retired:
            logger.info(f"🗑️  Retired {report.retired} stale fragments of {file_path}")
        return report

    async def retry_pending(self, repository_id: str) -> IndexReport:
        """Re-embed every index_pending fragment of a repository."""
        pending = list(self._pending[repository_id].values())
        if not pending:
            return IndexReport()
        logger.info(f"🔁 Retrying {len(pending)} index_pending fragments for repository_id={repository_id}")
        return await self.index(repository_id, pending)

    def pending(self, repository_id: str) -> List[CodeFragment]:
        return sorted(self._pending[repository_id].values(), key=lambda f: (f.file_path, f.ordinal))

    def fragment_count(self, repository_id: str) -> int:
        return self.qdrant.count(repository_id)

    def indexed_files(self, repository_id: str) -> set:
        return self.qdrant.list_file_paths(repository_id) | {
            slot[1] for slot in self._pending[repository_id]
        }

    def remove_repository(self, repository_id: str) -> int:
        """Drop every stored and pending fragment of one repository; returns how many."""
        removed = self.qdrant.delete_by_repository(repository_id)
        removed += len(self._pending.pop(repository_id, {}))
        logger.info(f"🗑️  Removed {removed} fragments of repository_id={repository_id}")
        return removed

    def get_fragments(self, repository_id: str, fragment_ids: List[str]) -> List[CodeFragment]:
        return [f for f in self.qdrant.retrieve(fragment_ids) if f.repository_id == repository_id]

    # ============================================
    # Querying
    # ============================================

    async def query(
        self,
        repository_id: str,
        text: str,
        k: int,
        file_paths: Optional[List[str]] = None,
    ) -> List[ScoredFragment]:
        """
        Up to k fragments of one repository ranked by descending cosine similarity.

        Fewer stored fragments than k returns all of them; an empty repository
        returns an empty list. `file_paths` narrows the search to those files.
        """
        if k < 1:
            raise InvalidInputError(f"k must be at least 1, got {k}")
        if not text or not text.strip():
            raise InvalidInputError("Query text must not be empty")

        start_time = time.time()
        if self.qdrant.count(repository_id) == 0:
            logger.info(f"🔍 No indexed fragments for repository_id={repository_id}")
            return []

        embeddings = await call_with_retry(
            self.embedding_service.embed_texts,
            [text],
            operation="query embedding",
        )
        if not embeddings:
            raise InvalidInputError("Failed to generate embedding for query")

        points = self.qdrant.search(repository_id, embeddings[0], limit=k, file_paths=file_paths)
        results = [
            ScoredFragment(fragment=fragment_from_payload(point.id, point.payload), score=float(point.score))
            for point in points
        ]
        results.sort(key=lambda r: (-r.score, r.fragment.file_path, r.fragment.ordinal))

        logger.info(
            f"✅ Query returned {len(results)} fragments for repository_id={repository_id} "
            f"in {time.time() - start_time:.3f}s"
        )
        return results
