"""
Task graph arena: tasks stored by id, prerequisite edges stored as id pairs.

Cycle detection is mandatory before ordering; a cycle is reported with the
ids that form it and no edge is ever dropped to make the graph orderable.
"""

import heapq
import logging
from typing import Callable, Dict, Iterable, List, Optional, Set

from codepath.core.exceptions import CyclicCurriculumError, InvalidInputError, InvariantViolationError
from codepath.curriculum.models import Task

logger = logging.getLogger(__name__)


def find_cycle(nodes: Iterable[str], prerequisites: Dict[str, Set[str]]) -> Optional[List[str]]:
    """
    First cycle found by depth-first search, as `[a, b, ..., a]`.

    `prerequisites[x]` holds the nodes x depends on. Nodes are visited in
    sorted order so the reported cycle is deterministic.
    """
    WHITE, GREY, BLACK = 0, 1, 2
    colour = {node: WHITE for node in nodes}

    for root in sorted(colour):
        if colour[root] != WHITE:
            continue
        stack = [(root, iter(sorted(prerequisites.get(root, ()))))]
        path = [root]
        colour[root] = GREY
        while stack:
            node, children = stack[-1]
            child = next(children, None)
            if child is None:
                stack.pop()
                path.pop()
                colour[node] = BLACK
                continue
            if child not in colour:
                continue
            if colour[child] == GREY:
                cycle = path[path.index(child):] + [child]
                # Report in dependency direction: prerequisite -> dependant
                return list(reversed(cycle))
            if colour[child] == WHITE:
                colour[child] = GREY
                path.append(child)
                stack.append((child, iter(sorted(prerequisites.get(child, ())))))
    return None


def ordered(nodes: Iterable[str], prerequisites: Dict[str, Set[str]], key: Callable[[str], tuple]) -> List[str]:
    """
    Topological order, prerequisites first; among ready nodes the smallest
    `key` goes next.

    Raises:
        CyclicCurriculumError: The prerequisites contain a cycle
    """
    nodes = list(nodes)
    cycle = find_cycle(nodes, prerequisites)
    if cycle:
        raise CyclicCurriculumError(cycle)

    node_set = set(nodes)
    waiting = {node: {p for p in prerequisites.get(node, ()) if p in node_set} for node in nodes}
    dependants: Dict[str, List[str]] = {node: [] for node in nodes}
    for node, prereqs in waiting.items():
        for prereq in prereqs:
            dependants[prereq].append(node)

    heap = [(key(node), node) for node, prereqs in waiting.items() if not prereqs]
    heapq.heapify(heap)
    result = []
    while heap:
        _, node = heapq.heappop(heap)
        result.append(node)
        for dependant in dependants[node]:
            waiting[dependant].discard(node)
            if not waiting[dependant]:
                heapq.heappush(heap, (key(dependant), dependant))
    return result


class TaskGraph:
    def __init__(self):
        self._tasks: Dict[str, Task] = {}
        self._prerequisites: Dict[str, Set[str]] = {}

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task]) -> 'TaskGraph':
        graph = cls()
        tasks = list(tasks)
        for task in tasks:
            graph.add_task(task)
        for task in tasks:
            for prerequisite in task.prerequisites:
                graph.add_edge(prerequisite, task.id)
        return graph

    def __len__(self) -> int:
        return len(self._tasks)

    def __contains__(self, task_id: str) -> bool:
        return task_id in self._tasks

    def add_task(self, task: Task) -> None:
        if task.id in self._tasks:
            raise InvalidInputError(f"Duplicate task id {task.id}")
        self._tasks[task.id] = task
        self._prerequisites[task.id] = set()

    def add_edge(self, prerequisite: str, dependant: str) -> None:
        for task_id in (prerequisite, dependant):
            if task_id not in self._tasks:
                raise InvalidInputError(f"Unknown task {task_id} in prerequisite edge")
        self._prerequisites[dependant].add(prerequisite)

    def task(self, task_id: str) -> Task:
        return self._tasks[task_id]

    def prerequisites(self, task_id: str) -> Set[str]:
        return set(self._prerequisites[task_id])

    def find_cycle(self) -> Optional[List[str]]:
        return find_cycle(self._tasks, self._prerequisites)

    def topological_order(self, key: Callable[[Task], tuple]) -> List[Task]:
        """All tasks, prerequisites first, ties broken by `key(task)`."""
        order = ordered(self._tasks, self._prerequisites, key=lambda task_id: key(self._tasks[task_id]))
        logger.debug(f"   Ordered {len(order)} tasks")
        return [self._tasks[task_id] for task_id in order]


def verify_order(tasks: List[Task]) -> None:
    """
    Every prerequisite appears before its dependant.

    Raises:
        InvariantViolationError: A task precedes one of its prerequisites
    """
    seen = set()
    known = {task.id for task in tasks}
    for task in tasks:
        for prerequisite in task.prerequisites:
            if prerequisite in known and prerequisite not in seen:
                raise InvariantViolationError(
                    f"Task {task.id} is ordered before its prerequisite {prerequisite}"
                )
        seen.add(task.id)
