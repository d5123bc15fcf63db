"""
Curriculum Planner
Turns a domain analysis and a learner profile into a dependency-ordered learning path.

Steps:
1. Order domains (declared background domains first, then complexity)
2. Materialize each domain's task subgraph from its template variant
3. Link entry tasks to the background domains they build on
4. Cycle-check and topologically sort the whole task graph
5. Estimate durations and difficulty, roll up to phases and the path
"""

import logging
import time
import uuid
from typing import Dict, List, Optional

from codepath.core.exceptions import InvalidInputError
from codepath.curriculum.estimation import (
    day_ranges,
    estimate_difficulty,
    estimate_minutes,
    log_path_estimate,
)
from codepath.curriculum.models import LearnerProfile, LearningPath, Phase, Task
from codepath.curriculum.task_graph import TaskGraph, ordered, verify_order
from codepath.curriculum.templates import (
    ALL_OTHER_DOMAINS,
    TemplateRegistry,
    TemplateVariant,
    registry as default_registry,
    slugify,
)
from codepath.models import Domain, DomainAnalysis

logger = logging.getLogger(__name__)

PATH_NAMESPACE = uuid.UUID("6f1c1b8e-5d2a-4c1e-9b7f-3a8d2e4c5f60")

# Focus domains are ordered as if they were this much simpler
FOCUS_SCORE_BONUS = 0.5


def path_id_for(repository_id: str, learner_id: str) -> str:
    return str(uuid.uuid5(PATH_NAMESPACE, f"{repository_id}:{learner_id}"))


def task_prefix(repository_id: str, domain_slug: str) -> str:
    """Task ids are `{repository}/{domain}-NNN`, unique across one learner's paths."""
    return f"{slugify(repository_id)}/{domain_slug}"


def _unique_slugs(domains: List[Domain]) -> Dict[str, str]:
    slugs: Dict[str, str] = {}
    used = set()
    for domain in sorted(domains, key=lambda d: d.name):
        base = slugify(domain.name)
        slug, n = base, 2
        while slug in used:
            slug = f"{base}{n}"
            n += 1
        used.add(slug)
        slugs[domain.name] = slug
    return slugs


class CurriculumPlanner:
    def __init__(self, templates: Optional[TemplateRegistry] = None):
        self.templates = templates or default_registry

    def background_domains(
        self, domains: List[Domain], variants: Dict[str, TemplateVariant]
    ) -> Dict[str, List[str]]:
        """Domain -> present domains its template declares as background."""
        background: Dict[str, List[str]] = {}
        for domain in domains:
            variant = variants[domain.name]
            required = []
            for other in domains:
                if other.name == domain.name:
                    continue
                other_variant = variants[other.name].name
                if other_variant in variant.background or (
                    ALL_OTHER_DOMAINS in variant.background and other_variant != variant.name
                ):
                    required.append(other.name)
            background[domain.name] = sorted(required)
        return background

    def plan(self, analysis: DomainAnalysis, learner: LearnerProfile) -> LearningPath:
        """
        Build the learning path for one learner.

        Deterministic: identical inputs give identical task ids, prerequisites
        and ordering.

        Raises:
            InvalidInputError: The analysis has no domains
            CyclicCurriculumError: Declared domain or task prerequisites form a cycle
            InvariantViolationError: A task ended up before one of its prerequisites
        """
        if not analysis.domains:
            raise InvalidInputError(f"Repository {analysis.repository_id} has no domains to plan")

        start_time = time.time()
        logger.info(
            f"🗺️  Planning curriculum for learner={learner.learner_id} "
            f"repository_id={analysis.repository_id} ({len(analysis.domains)} domains)"
        )

        domains = {domain.name: domain for domain in analysis.domains}
        variants = {name: self.templates.select(domain) for name, domain in domains.items()}
        background = self.background_domains(analysis.domains, variants)
        focus = set(learner.focus_domains)

        def domain_key(name: str) -> tuple:
            domain = domains[name]
            score = domain.complexity_score - (FOCUS_SCORE_BONUS if name in focus else 0.0)
            return (score, domain.position, name)

        # Step 1: domain order, declared background domains are hard constraints
        domain_order = ordered(domains, {name: set(deps) for name, deps in background.items()}, key=domain_key)
        domain_rank = {name: rank for rank, name in enumerate(domain_order)}
        logger.info(f"✅ Step 1/5: Domain order: {' -> '.join(domain_order)}")

        # Step 2: one subgraph per domain
        slugs = _unique_slugs(analysis.domains)
        subgraphs = {}
        for name in domain_order:
            domain = domains[name]
            subgraphs[name] = variants[name].build(
                domain,
                domain.key_files or domain.files,
                analysis.file_imports,
                task_prefix(analysis.repository_id, slugs[name]),
            )
        logger.info(f"✅ Step 2/5: Materialized {sum(len(s.tasks) for s in subgraphs.values())} tasks from templates")

        # Step 3: cross-domain background edges on entry tasks
        tasks: Dict[str, Task] = {}
        sequence: Dict[str, int] = {}
        for name in domain_order:
            subgraph = subgraphs[name]
            background_exits = [subgraphs[other].exit_id for other in background[name] if subgraphs[other].exit_id]
            for task in subgraph.tasks:
                prerequisites = list(task.prerequisites)
                if task.id in subgraph.entry_ids:
                    prerequisites.extend(background_exits)
                tasks[task.id] = task.model_copy(update={"prerequisites": sorted(set(prerequisites))})
                sequence[task.id] = len(sequence)
        logger.info(f"✅ Step 3/5: Linked background domains")

        # Step 4: estimates first, the sort breaks ties on difficulty
        for task_id, task in tasks.items():
            domain = domains[task.domain]
            line_count = sum(analysis.file_lines.get(path, 0) for path in task.files)
            tasks[task_id] = task.model_copy(
                update={
                    "estimated_minutes": estimate_minutes(task.type, line_count, domain.complexity, learner.skill_level),
                    "difficulty": estimate_difficulty(task.type, domain.complexity_score),
                }
            )

        graph = TaskGraph.from_tasks(tasks.values())
        flattened = graph.topological_order(
            key=lambda task: (domain_rank[task.domain], task.difficulty, sequence[task.id])
        )
        verify_order(flattened)
        logger.info(f"✅ Step 4/5: Ordered {len(flattened)} tasks")

        # Step 5: phases and roll-up
        phase_tasks: Dict[str, List[Task]] = {name: [] for name in domain_order}
        for task in flattened:
            phase_tasks[task.domain].append(task)

        phase_minutes = [sum(t.estimated_minutes for t in phase_tasks[name]) for name in domain_order]
        ranges = day_ranges(phase_minutes, learner.daily_minutes)
        phases = []
        for name, minutes, day_range in zip(domain_order, phase_minutes, ranges):
            domain = domains[name]
            phases.append(
                Phase(
                    id=f"phase-{slugs[name]}",
                    name=name,
                    domain=name,
                    complexity=domain.complexity,
                    complexity_score=domain.complexity_score,
                    tasks=phase_tasks[name],
                    day_range=day_range,
                    prerequisites=[f"phase-{slugs[other]}" for other in background[name]],
                    estimated_minutes=minutes,
                )
            )

        path = LearningPath(
            id=path_id_for(analysis.repository_id, learner.learner_id),
            name=f"{analysis.repository_id} learning path",
            repository_id=analysis.repository_id,
            learner_id=learner.learner_id,
            phases=phases,
            estimated_minutes=sum(phase_minutes),
            daily_minutes=learner.daily_minutes,
        )
        logger.info(f"✅ Step 5/5: Estimated {path.estimated_minutes} minutes over {len(phases)} phases")

        duration = time.time() - start_time
        logger.info(f"🎉 Planned learning path {path.id} in {duration:.3f}s")
        log_path_estimate(path)
        return path
