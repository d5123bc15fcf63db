"""
Domain Analyzer
Clusters a repository's files into conceptual domains and rates each one.

Grouping starts from the directory layout, is corrected by the import graph,
and small groups are folded into the group they talk to most.
"""

import heapq
import logging
import math
import posixpath
import time
from collections import Counter, defaultdict
from typing import Dict, List, Optional

from codepath.config import settings
from codepath.core.exceptions import NotFoundError, TransientProviderError
from codepath.models import ComplexityRating, Domain, DomainAnalysis
from codepath.services.import_graph import ImportGraph
from codepath.services.ingestion_pipeline import RepositorySnapshotStore, get_snapshot_store
from codepath.services.retrieval_engine import RetrievalEngine, get_retrieval_engine

logger = logging.getLogger(__name__)

# Directories that hold code rather than name a concept
CONTAINER_DIRS = {"src", "app", "lib", "pkg", "packages", "source", "internal"}

MAX_KEY_FILES = 6
REPRESENTATIVE_FRAGMENTS = 3

BEGINNER_THRESHOLD = 0.34
ADVANCED_THRESHOLD = 0.67

# Lazy singleton instance
_domain_analyzer_instance = None


def get_domain_analyzer() -> 'DomainAnalyzer':
    global _domain_analyzer_instance

    if _domain_analyzer_instance is None:
        _domain_analyzer_instance = DomainAnalyzer()

    return _domain_analyzer_instance


def initial_group(file_path: str) -> str:
    """
    Name of the directory-based group of a file.

    `src/auth/jwt.ts` -> `auth`; root-level `main.py` -> `main`.
    """
    parts = file_path.split("/")
    directories = parts[:-1]
    while directories and directories[0].lower() in CONTAINER_DIRS:
        directories = directories[1:]
    if directories:
        return directories[0]

    stem = posixpath.splitext(parts[-1])[0]
    if stem in ("__init__", "index", ""):
        return "root"
    return stem


def rate_complexity(score: float) -> ComplexityRating:
    if score < BEGINNER_THRESHOLD:
        return "beginner"
    if score < ADVANCED_THRESHOLD:
        return "intermediate"
    return "advanced"


def complexity_score(file_count: int, average_lines: float, average_fan_out: float) -> float:
    """Weighted blend of saturating curves, always in [0, 1)."""
    size = 1 - math.exp(-file_count / 8)
    length = 1 - math.exp(-average_lines / 150)
    coupling = 1 - math.exp(-average_fan_out / 3)
    return round(0.4 * size + 0.35 * length + 0.25 * coupling, 4)


def _ordered_by_dependencies(nodes: List[str], depends_on: Dict[str, set], key) -> List[str]:
    """
    Kahn's algorithm: dependencies first, ready nodes ordered by `key`.
    A cycle is broken by releasing its lowest-keyed node.
    """
    remaining = {node: {d for d in depends_on.get(node, set()) if d in nodes and d != node} for node in nodes}
    dependants: Dict[str, set] = defaultdict(set)
    for node, deps in remaining.items():
        for dep in deps:
            dependants[dep].add(node)

    heap = [(key(node), node) for node, deps in remaining.items() if not deps]
    heapq.heapify(heap)
    order: List[str] = []
    placed = set()
    while len(order) < len(nodes):
        if not heap:
            node = min((n for n in nodes if n not in placed), key=key)
            logger.debug(f"   Breaking dependency cycle at {node}")
            heapq.heappush(heap, (key(node), node))
        _, node = heapq.heappop(heap)
        if node in placed:
            continue
        placed.add(node)
        order.append(node)
        for dependant in sorted(dependants[node]):
            deps = remaining[dependant]
            deps.discard(node)
            if not deps and dependant not in placed:
                heapq.heappush(heap, (key(dependant), dependant))
    return order


class DomainAnalyzer:
    def __init__(
        self,
        engine: Optional[RetrievalEngine] = None,
        snapshots: Optional[RepositorySnapshotStore] = None,
    ):
        self._engine = engine
        self.snapshots = snapshots or get_snapshot_store()

    @property
    def engine(self) -> RetrievalEngine:
        if self._engine is None:
            self._engine = get_retrieval_engine()
        return self._engine

    async def analyze(self, repository_id: str) -> DomainAnalysis:
        """
        Partition an ingested repository into rated, ordered domains.

        Raises:
            NotFoundError: Repository was never ingested
        """
        files = self.snapshots.get(repository_id)
        if files is None:
            raise NotFoundError(f"Repository {repository_id} has not been ingested")

        start_time = time.time()
        logger.info(f"🧭 Analyzing domains for repository_id={repository_id} ({len(files)} files)")

        graph = ImportGraph(files)
        file_lines = {f.file_path: len(f.content.splitlines()) for f in files}

        groups = self._group_files(graph)
        logger.info(f"✅ Step 1/3: Clustered {len(files)} files into {len(groups)} domains")

        domains = self._build_domains(groups, graph, file_lines)
        logger.info(f"✅ Step 2/3: Rated and ordered {len(domains)} domains")

        await self._attach_representatives(repository_id, domains)
        logger.info(f"✅ Step 3/3: Selected representative fragments")

        membership = {path: domain.name for domain in domains for path in domain.files}
        domain_dependencies = {
            domain.name: sorted(
                {
                    membership[target]
                    for path in domain.files
                    for target in graph.imports.get(path, [])
                    if membership.get(target) not in (None, domain.name)
                }
            )
            for domain in domains
        }

        analysis = DomainAnalysis(
            repository_id=repository_id,
            domains=domains,
            file_imports={path: list(targets) for path, targets in graph.imports.items()},
            file_lines=file_lines,
            domain_dependencies=domain_dependencies,
        )

        duration = time.time() - start_time
        logger.info(f"🎉 Domain analysis finished in {duration:.2f}s")
        for domain in domains:
            logger.debug(
                f"   • {domain.position}: {domain.name} ({len(domain.files)} files, "
                f"score={domain.complexity_score}, {domain.complexity})"
            )
        return analysis

    # ============================================
    # Grouping
    # ============================================

    def _group_files(self, graph: ImportGraph) -> Dict[str, List[str]]:
        assignment = {path: initial_group(path) for path in graph.paths}
        importers = graph.importers()

        def neighbours(path: str) -> List[str]:
            return graph.imports.get(path, []) + importers.get(path, [])

        # Files with no ties to their own group follow their strict-majority neighbour group
        initial = dict(assignment)
        for path in graph.paths:
            edges = [initial[n] for n in neighbours(path) if n != path]
            if not edges or initial[path] in edges:
                continue
            group, count = sorted(Counter(edges).items(), key=lambda item: (-item[1], item[0]))[0]
            if count * 2 > len(edges):
                logger.debug(f"   Moving {path} from {initial[path]} to {group}")
                assignment[path] = group

        groups: Dict[str, List[str]] = defaultdict(list)
        for path, group in assignment.items():
            groups[group].append(path)

        # Fold groups below the minimum size into their most connected neighbour
        minimum = max(1, settings.min_domain_files)
        while len(groups) > 1:
            small = sorted((name for name, members in groups.items() if len(members) < minimum),
                           key=lambda name: (len(groups[name]), name))
            if not small:
                break
            name = small[0]
            members = set(groups[name])
            edge_counts: Counter = Counter()
            for path in members:
                for neighbour in neighbours(path):
                    if neighbour not in members:
                        edge_counts[assignment[neighbour]] += 1
            target = sorted(
                (other for other in groups if other != name),
                key=lambda other: (-edge_counts[other], -len(groups[other]), other),
            )[0]
            logger.debug(f"   Merging small group {name} into {target}")
            for path in groups.pop(name):
                assignment[path] = target
                groups[target].append(path)

        return {name: sorted(members) for name, members in groups.items()}

    # ============================================
    # Rating and ordering
    # ============================================

    def _build_domains(
        self,
        groups: Dict[str, List[str]],
        graph: ImportGraph,
        file_lines: Dict[str, int],
    ) -> List[Domain]:
        membership = {path: name for name, members in groups.items() for path in members}

        scores: Dict[str, float] = {}
        for name, members in groups.items():
            total_lines = sum(file_lines[path] for path in members)
            fan_out = sum(len(graph.imports.get(path, [])) for path in members) / len(members)
            scores[name] = complexity_score(len(members), total_lines / len(members), fan_out)

        depends_on = {
            name: {
                membership[target]
                for path in members
                for target in graph.imports.get(path, [])
                if membership[target] != name
            }
            for name, members in groups.items()
        }
        order = _ordered_by_dependencies(sorted(groups), depends_on, key=lambda name: (scores[name], name))

        domains = []
        for position, name in enumerate(order):
            members = groups[name]
            domains.append(
                Domain(
                    name=name,
                    files=members,
                    key_files=self._key_files(members, graph, file_lines),
                    complexity_score=scores[name],
                    complexity=rate_complexity(scores[name]),
                    position=position,
                    total_lines=sum(file_lines[path] for path in members),
                )
            )
        return domains

    def _key_files(self, members: List[str], graph: ImportGraph, file_lines: Dict[str, int]) -> List[str]:
        """Most depended-upon files of a domain, in dependency order (imported first)."""
        member_set = set(members)
        depends_on = {path: set(graph.imports.get(path, [])) & member_set for path in members}
        in_degree = Counter(target for path in members for target in depends_on[path])

        selected = sorted(members, key=lambda path: (-in_degree[path], -file_lines[path], path))[:MAX_KEY_FILES]
        return _ordered_by_dependencies(
            selected, depends_on, key=lambda path: (-in_degree[path], path)
        )

    async def _attach_representatives(self, repository_id: str, domains: List[Domain]) -> None:
        for domain in domains:
            stems = " ".join(posixpath.splitext(posixpath.basename(path))[0] for path in domain.key_files)
            try:
                results = await self.engine.query(
                    repository_id,
                    f"{domain.name} {stems}",
                    REPRESENTATIVE_FRAGMENTS,
                    file_paths=domain.files,
                )
            except TransientProviderError as e:
                logger.warning(f"⚠️  No representative fragments for domain {domain.name}: {e}")
                continue
            domain.representative_fragment_ids = [result.fragment.id for result in results]

