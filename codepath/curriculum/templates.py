"""
Task templates: pure functions turning one domain into a subgraph of tasks.

Variants are registered by name with a matcher on the domain. The planner
asks the registry for the best match, so supporting a new kind of domain
means registering a variant here or in a plugin module, not editing the
planner.

Every variant produces the same shape of chain: one read or analyze task per
key file (dependency order), then implement, then test. Variants differ in
wording and in the background domains they declare: the entry tasks of a
domain require the final read/analyze task of each background domain present.
"""

import logging
import posixpath
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from codepath.curriculum.models import Task
from codepath.models import Domain

logger = logging.getLogger(__name__)

# Background marker meaning "every other domain in the path"
ALL_OTHER_DOMAINS = "*"


@dataclass
class TaskSubgraph:
    """Tasks of one domain with their intra-domain prerequisites filled in."""

    tasks: List[Task]
    entry_ids: List[str] = field(default_factory=list)
    exit_id: Optional[str] = None


TemplateBuilder = Callable[[Domain, List[str], Dict[str, List[str]], str], TaskSubgraph]


@dataclass(frozen=True)
class TemplateVariant:
    name: str
    matcher: Callable[[Domain], bool]
    build: TemplateBuilder
    background: Tuple[str, ...] = ()
    priority: int = 0


@dataclass(frozen=True)
class ChainWording:
    read_objectives: Tuple[str, ...]
    analyze_objectives: Tuple[str, ...]
    implement_title: str
    implement_objectives: Tuple[str, ...]
    test_title: str
    test_objectives: Tuple[str, ...]


def slugify(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")
    return slug or "domain"


def file_label(file_path: str) -> str:
    """`src/auth/jwt.ts` -> `jwt`; index and package init files take their directory name."""
    directory, filename = posixpath.split(file_path)
    stem = posixpath.splitext(filename)[0]
    if stem in ("index", "__init__", "mod") and directory:
        return posixpath.basename(directory)
    return stem


def build_chain(
    domain: Domain,
    key_files: List[str],
    imports: Dict[str, List[str]],
    slug: str,
    wording: ChainWording,
) -> TaskSubgraph:
    """
    read/analyze per key file -> implement -> test.

    A key file importing nothing from its own domain becomes a `read` task
    with no prerequisites. Otherwise it becomes an `analyze` task requiring
    the tasks of the files it imports and the previous task of the chain.
    """
    domain_files = set(domain.files)
    tasks: List[Task] = []
    file_tasks: Dict[str, str] = {}

    def next_id() -> str:
        return f"{slug}-{len(tasks) + 1:03d}"

    previous: Optional[str] = None
    for path in key_files:
        local_imports = [target for target in imports.get(path, []) if target in domain_files and target != path]
        label = file_label(path)
        task_id = next_id()
        if not local_imports:
            task = Task(
                id=task_id,
                title=f"Read {label}",
                type="read",
                files=[path],
                objectives=[objective.format(label=label, domain=domain.name) for objective in wording.read_objectives],
                domain=domain.name,
            )
        else:
            prerequisites = [file_tasks[target] for target in local_imports if target in file_tasks]
            if previous and previous not in prerequisites:
                prerequisites.append(previous)
            task = Task(
                id=task_id,
                title=f"Analyze {label}",
                type="analyze",
                files=[path],
                prerequisites=sorted(prerequisites),
                objectives=[objective.format(label=label, domain=domain.name) for objective in wording.analyze_objectives],
                domain=domain.name,
            )
        tasks.append(task)
        file_tasks[path] = task_id
        previous = task_id

    study_ids = [task.id for task in tasks]
    implement_id = next_id()
    tasks.append(
        Task(
            id=implement_id,
            title=wording.implement_title.format(domain=domain.name),
            type="implement",
            files=list(key_files),
            prerequisites=list(study_ids),
            objectives=[objective.format(domain=domain.name) for objective in wording.implement_objectives],
            domain=domain.name,
        )
    )
    tasks.append(
        Task(
            id=next_id(),
            title=wording.test_title.format(domain=domain.name),
            type="test",
            files=list(key_files),
            prerequisites=[implement_id],
            objectives=[objective.format(domain=domain.name) for objective in wording.test_objectives],
            domain=domain.name,
        )
    )

    return TaskSubgraph(
        tasks=tasks,
        entry_ids=[task.id for task in tasks if not task.prerequisites],
        exit_id=study_ids[-1] if study_ids else implement_id,
    )


class TemplateRegistry:
    def __init__(self):
        self._variants: Dict[str, TemplateVariant] = {}

    def register(
        self,
        name: str,
        matcher: Callable[[Domain], bool],
        background: Tuple[str, ...] = (),
        priority: int = 0,
    ):
        """Decorator registering a template builder under `name`."""

        def decorator(build: TemplateBuilder) -> TemplateBuilder:
            if name in self._variants:
                logger.warning(f"⚠️  Replacing task template variant '{name}'")
            self._variants[name] = TemplateVariant(
                name=name,
                matcher=matcher,
                build=build,
                background=tuple(background),
                priority=priority,
            )
            return build

        return decorator

    def names(self) -> List[str]:
        return sorted(self._variants)

    def get(self, name: str) -> TemplateVariant:
        return self._variants[name]

    def select(self, domain: Domain) -> TemplateVariant:
        """Highest-priority matching variant, ties by name; `default` when none match."""
        candidates = [variant for variant in self._variants.values() if variant.name != "default" and variant.matcher(domain)]
        if candidates:
            return sorted(candidates, key=lambda variant: (-variant.priority, variant.name))[0]
        return self._variants["default"]


def name_matcher(*names: str) -> Callable[[Domain], bool]:
    accepted = {slugify(name) for name in names}
    return lambda domain: slugify(domain.name) in accepted


registry = TemplateRegistry()
register_template = registry.register


DEFAULT_WORDING = ChainWording(
    read_objectives=("Explain what {label} defines and who uses it",),
    analyze_objectives=(
        "Trace how {label} uses the modules it imports",
        "Identify the main control flow of {label}",
    ),
    implement_title="Extend the {domain} module",
    implement_objectives=("Add a small feature to {domain} following its existing conventions",),
    test_title="Test the {domain} module",
    test_objectives=("Write tests covering the behaviour you added to {domain}",),
)


@register_template("default", matcher=lambda domain: True)
def default_template(domain: Domain, key_files: List[str], imports: Dict[str, List[str]], slug: str) -> TaskSubgraph:
    return build_chain(domain, key_files, imports, slug, DEFAULT_WORDING)


@register_template(
    "models",
    matcher=name_matcher("models", "model", "schemas", "schema", "entities", "types", "database", "db"),
    priority=10,
)
def models_template(domain: Domain, key_files: List[str], imports: Dict[str, List[str]], slug: str) -> TaskSubgraph:
    return build_chain(
        domain,
        key_files,
        imports,
        slug,
        ChainWording(
            read_objectives=("List the entities and fields declared in {label}",),
            analyze_objectives=("Map the relationships {label} builds on top of other entities",),
            implement_title="Add a field to the {domain} data model",
            implement_objectives=("Extend an entity and keep every consumer consistent",),
            test_title="Test the {domain} data model",
            test_objectives=("Cover validation and serialization of the changed entity",),
        ),
    )


@register_template(
    "auth",
    matcher=name_matcher("auth", "authentication", "authorization", "security", "session", "sessions", "login"),
    background=("models",),
    priority=10,
)
def auth_template(domain: Domain, key_files: List[str], imports: Dict[str, List[str]], slug: str) -> TaskSubgraph:
    return build_chain(
        domain,
        key_files,
        imports,
        slug,
        ChainWording(
            read_objectives=("Describe the credentials and claims defined in {label}",),
            analyze_objectives=(
                "Trace how {label} issues and verifies credentials",
                "Find where failed verification is reported",
            ),
            implement_title="Add a rule to the {domain} flow",
            implement_objectives=("Add a permission or token check without weakening existing checks",),
            test_title="Test the {domain} flow",
            test_objectives=("Cover accepted, expired and forged credentials",),
        ),
    )


@register_template(
    "middleware",
    matcher=name_matcher("middleware", "middlewares", "interceptors", "guards"),
    background=("auth",),
    priority=10,
)
def middleware_template(domain: Domain, key_files: List[str], imports: Dict[str, List[str]], slug: str) -> TaskSubgraph:
    return build_chain(
        domain,
        key_files,
        imports,
        slug,
        ChainWording(
            read_objectives=("Explain where {label} sits in the request pipeline",),
            analyze_objectives=("Trace what {label} does before and after the handler runs",),
            implement_title="Add a {domain} step",
            implement_objectives=("Insert a new step into the pipeline at the right position",),
            test_title="Test the {domain} pipeline",
            test_objectives=("Cover requests that pass and requests that are stopped",),
        ),
    )


@register_template(
    "api",
    matcher=name_matcher("api", "routes", "routers", "router", "controllers", "handlers", "endpoints", "views"),
    background=("models", "auth"),
    priority=10,
)
def api_template(domain: Domain, key_files: List[str], imports: Dict[str, List[str]], slug: str) -> TaskSubgraph:
    return build_chain(
        domain,
        key_files,
        imports,
        slug,
        ChainWording(
            read_objectives=("List the endpoints {label} exposes and their inputs",),
            analyze_objectives=("Follow a request through {label} down to the code it calls",),
            implement_title="Add an endpoint to {domain}",
            implement_objectives=("Expose a new endpoint reusing the existing validation and error handling",),
            test_title="Test the new {domain} endpoint",
            test_objectives=("Cover success, invalid input and not-found responses",),
        ),
    )


@register_template(
    "tests",
    matcher=name_matcher("tests", "test", "__tests__", "spec", "specs", "e2e"),
    background=(ALL_OTHER_DOMAINS,),
    priority=10,
)
def tests_template(domain: Domain, key_files: List[str], imports: Dict[str, List[str]], slug: str) -> TaskSubgraph:
    return build_chain(
        domain,
        key_files,
        imports,
        slug,
        ChainWording(
            read_objectives=("Explain the fixtures and helpers {label} provides",),
            analyze_objectives=("Identify which behaviour {label} pins down and how",),
            implement_title="Add a missing test case",
            implement_objectives=("Find an untested branch and cover it",),
            test_title="Run and stabilise the test suite",
            test_objectives=("Run the whole suite and fix any flaky test you meet",),
        ),
    )
