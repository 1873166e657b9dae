"""
Dependency and hierarchy validation.

Pure checks over an in-memory ``path -> task`` mapping. Nothing here
touches storage or mutates its inputs; callers decide what to do with
the returned violations.
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

import networkx as nx

from taskgraph.config import ValidationSettings
from taskgraph.exceptions import CycleDetectedError, InvalidPathError, ValidationError
from taskgraph.logging_config import get_logger
from taskgraph.models import TaskStatus
from taskgraph.schemas import TaskRead
from taskgraph.services.graph import build_dependency_graph

logger = get_logger(__name__)

PATH_SEGMENT_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
MAX_SEGMENT_LENGTH = 50
MAX_PATH_LENGTH = 255
MAX_PATH_SEGMENTS = 7


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class ViolationCode(str, Enum):
    MISSING_DEPENDENCY = "MISSING_DEPENDENCY"
    SELF_DEPENDENCY = "SELF_DEPENDENCY"
    CIRCULAR_DEPENDENCY = "CIRCULAR_DEPENDENCY"
    CYCLE_CHECK_INCONCLUSIVE = "CYCLE_CHECK_INCONCLUSIVE"
    DEPENDENCY_INVALID_STATE = "DEPENDENCY_INVALID_STATE"
    DEPENDENCIES_INCOMPLETE = "DEPENDENCIES_INCOMPLETE"
    TOO_MANY_DEPENDENCIES = "TOO_MANY_DEPENDENCIES"
    PARENT_NOT_FOUND = "PARENT_NOT_FOUND"
    SELF_PARENT = "SELF_PARENT"
    PARENT_INVALID_STATE = "PARENT_INVALID_STATE"
    HIERARCHY_CYCLE = "HIERARCHY_CYCLE"
    MAX_DEPTH_EXCEEDED = "MAX_DEPTH_EXCEEDED"
    MAX_CHILDREN_EXCEEDED = "MAX_CHILDREN_EXCEEDED"
    INVALID_PATH = "INVALID_PATH"
    INCOMPLETE_SUBTASKS = "INCOMPLETE_SUBTASKS"


@dataclass
class Violation:
    code: ViolationCode
    message: str
    path: str
    severity: Severity = Severity.ERROR
    context: dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR


def path_error(path: str) -> str | None:
    """Reason the path is malformed, or None if it is well formed."""
    if not path:
        return "path is empty"
    if len(path) > MAX_PATH_LENGTH:
        return f"path exceeds {MAX_PATH_LENGTH} characters"
    segments = path.split("/")
    if len(segments) > MAX_PATH_SEGMENTS:
        return f"path has {len(segments)} segments (max {MAX_PATH_SEGMENTS})"
    for segment in segments:
        if not segment:
            return "path contains an empty segment"
        if len(segment) > MAX_SEGMENT_LENGTH:
            return f"segment '{segment[:20]}...' exceeds {MAX_SEGMENT_LENGTH} characters"
        if not PATH_SEGMENT_RE.match(segment):
            return f"segment '{segment}' contains invalid characters"
    return None


def find_dependency_cycle(
    graph: nx.DiGraph,
    start: str,
    max_depth: int,
) -> tuple[list[str] | None, bool]:
    """
    Depth-first search from ``start`` along dependency edges.

    Returns ``(cycle, inconclusive)``. ``cycle`` lists the identities from
    ``start`` back to itself when ``start`` depends on itself transitively.
    ``inconclusive`` is True when some branch was cut at ``max_depth``
    without finding a cycle.

    Only a return to ``start`` counts: cycles elsewhere in the graph belong
    to other tasks, and shared ancestors (diamonds) are legal.
    """
    if start not in graph:
        return None, False

    # Edges run dependency -> dependent, so dependencies are predecessors
    stack: list[tuple[str, Any]] = [(start, iter(graph.predecessors(start)))]
    active = {start}
    finished: set[str] = set()
    truncated = False

    while stack:
        node, dependencies = stack[-1]
        for dependency in dependencies:
            if dependency == start:
                return [entry for entry, _ in stack] + [start], False
            if dependency in active or dependency in finished:
                continue
            if len(stack) >= max_depth:
                truncated = True
                continue
            active.add(dependency)
            stack.append((dependency, iter(graph.predecessors(dependency))))
            break
        else:
            stack.pop()
            active.discard(node)
            finished.add(node)

    return None, truncated


def validate_task(
    task: TaskRead,
    tasks: Mapping[str, TaskRead],
    *,
    settings: ValidationSettings,
    allow_missing: bool = False,
    graph: nx.DiGraph | None = None,
) -> list[Violation]:
    """
    Check a task's prospective state against the rest of the graph.

    ``tasks`` is the current view; ``task`` overrides any entry with the
    same path. With ``allow_missing`` references to identities outside the
    view are tolerated (deferred creation inside a batch).
    """
    lookup = dict(tasks)
    lookup[task.path] = task
    violations: list[Violation] = []

    def add(code: ViolationCode, message: str, severity: Severity = Severity.ERROR, **context):
        violations.append(Violation(code, message, task.path, severity, context))

    reason = path_error(task.path)
    if reason:
        add(ViolationCode.INVALID_PATH, f"Invalid path '{task.path}': {reason}", reason=reason)

    violations.extend(_dependency_violations(task, lookup, settings, allow_missing, graph))
    violations.extend(_hierarchy_violations(task, lookup, settings, allow_missing))
    return violations


def _dependency_violations(
    task: TaskRead,
    lookup: dict[str, TaskRead],
    settings: ValidationSettings,
    allow_missing: bool,
    graph: nx.DiGraph | None,
) -> list[Violation]:
    violations: list[Violation] = []

    def add(code: ViolationCode, message: str, severity: Severity = Severity.ERROR, **context):
        violations.append(Violation(code, message, task.path, severity, context))

    if len(task.dependencies) > settings.max_dependencies:
        add(
            ViolationCode.TOO_MANY_DEPENDENCIES,
            f"Task has {len(task.dependencies)} dependencies (max {settings.max_dependencies})",
            count=len(task.dependencies),
            limit=settings.max_dependencies,
        )

    has_self_loop = False
    for dependency_path in task.dependencies:
        if dependency_path == task.path:
            has_self_loop = True
            add(ViolationCode.SELF_DEPENDENCY, "Task cannot depend on itself")
            continue

        dependency = lookup.get(dependency_path)
        if dependency is None:
            if not allow_missing:
                add(
                    ViolationCode.MISSING_DEPENDENCY,
                    f"Dependency '{dependency_path}' does not exist",
                    dependency=dependency_path,
                )
            continue

        if dependency.status.is_terminal_failure:
            add(
                ViolationCode.DEPENDENCY_INVALID_STATE,
                f"Dependency '{dependency_path}' is {dependency.status.value}",
                dependency=dependency_path,
                status=dependency.status.value,
            )
        if task.status == TaskStatus.COMPLETED and dependency.status != TaskStatus.COMPLETED:
            add(
                ViolationCode.DEPENDENCIES_INCOMPLETE,
                f"Cannot complete task while dependency '{dependency_path}' is "
                f"{dependency.status.value}",
                dependency=dependency_path,
                status=dependency.status.value,
            )

    if has_self_loop or not task.dependencies:
        return violations

    # A caller-supplied graph must already reflect `lookup`
    if graph is None:
        graph = build_dependency_graph(lookup.values())

    cycle, inconclusive = find_dependency_cycle(
        graph, task.path, settings.max_dependency_depth
    )
    if cycle:
        add(
            ViolationCode.CIRCULAR_DEPENDENCY,
            f"Circular dependency detected: {' -> '.join(cycle)}",
            cycle=cycle,
        )
    elif inconclusive:
        add(
            ViolationCode.CYCLE_CHECK_INCONCLUSIVE,
            f"Cycle check stopped at depth {settings.max_dependency_depth}; "
            "deeper dependency chains were not inspected",
            Severity.WARNING,
            max_depth=settings.max_dependency_depth,
        )
    return violations


def _hierarchy_violations(
    task: TaskRead,
    lookup: dict[str, TaskRead],
    settings: ValidationSettings,
    allow_missing: bool,
) -> list[Violation]:
    violations: list[Violation] = []

    def add(code: ViolationCode, message: str, **context):
        violations.append(Violation(code, message, task.path, Severity.ERROR, context))

    if task.status == TaskStatus.COMPLETED:
        open_children = [
            child for child in task.subtasks
            if child in lookup and not lookup[child].status.is_terminal
        ]
        if open_children:
            add(
                ViolationCode.INCOMPLETE_SUBTASKS,
                f"Cannot complete task with {len(open_children)} unfinished subtask(s)",
                subtasks=open_children,
            )

    if not task.parent_path:
        return violations

    if task.parent_path == task.path:
        add(ViolationCode.SELF_PARENT, "Task cannot be its own parent")
        return violations

    parent = lookup.get(task.parent_path)
    if parent is None:
        if not allow_missing:
            add(
                ViolationCode.PARENT_NOT_FOUND,
                f"Parent '{task.parent_path}' does not exist",
                parent=task.parent_path,
            )
        return violations

    if parent.status.is_terminal_failure and not task.status.is_terminal:
        add(
            ViolationCode.PARENT_INVALID_STATE,
            f"Parent '{parent.path}' is {parent.status.value} and cannot take "
            "unfinished subtasks",
            parent=parent.path,
            status=parent.status.value,
        )

    siblings = set(parent.subtasks) | {task.path}
    if len(siblings) > settings.max_children:
        add(
            ViolationCode.MAX_CHILDREN_EXCEEDED,
            f"Parent '{parent.path}' would have {len(siblings)} subtasks "
            f"(max {settings.max_children})",
            parent=parent.path,
            limit=settings.max_children,
        )

    # Walk up the ancestor chain; `seen` guards against cycles above us
    depth = 1
    seen = {task.path}
    current: TaskRead | None = parent
    while current is not None:
        if current.path in seen:
            if current.path == task.path:
                add(
                    ViolationCode.HIERARCHY_CYCLE,
                    f"Task '{task.path}' would become its own ancestor",
                )
            break
        seen.add(current.path)
        depth += 1
        if depth > settings.max_hierarchy_depth:
            add(
                ViolationCode.MAX_DEPTH_EXCEEDED,
                f"Hierarchy depth exceeds {settings.max_hierarchy_depth}",
                limit=settings.max_hierarchy_depth,
            )
            break
        current = lookup.get(current.parent_path) if current.parent_path else None

    return violations


def validate_batch(
    pending: Iterable[TaskRead],
    tasks: Mapping[str, TaskRead],
    *,
    settings: ValidationSettings,
    allow_missing: bool = False,
) -> dict[str, list[Violation]]:
    """
    Validate several prospective tasks together.

    Every pending task is visible to every other, so forward references
    inside the batch resolve. Only tasks with violations appear in the result.
    """
    pending = list(pending)
    lookup = dict(tasks)
    for task in pending:
        lookup[task.path] = task

    graph = build_dependency_graph(lookup.values())
    results: dict[str, list[Violation]] = {}
    for task in pending:
        violations = validate_task(
            task, lookup, settings=settings, allow_missing=allow_missing, graph=graph
        )
        if violations:
            results[task.path] = violations
    return results


def raise_for_violations(violations: Iterable[Violation]) -> None:
    """
    Raise for ERROR violations; log warnings.

    A lone cycle or path problem surfaces as its dedicated exception type.
    """
    violations = list(violations)
    for warning in (v for v in violations if not v.is_error):
        logger.warning(f"{warning.code.value} for {warning.path}: {warning.message}")

    errors = [v for v in violations if v.is_error]
    if not errors:
        return

    first = errors[0]
    if len(errors) == 1 and first.code == ViolationCode.CIRCULAR_DEPENDENCY:
        raise CycleDetectedError(first.context.get("cycle", [first.path]))
    if len(errors) == 1 and first.code == ViolationCode.INVALID_PATH:
        raise InvalidPathError(first.path, first.context.get("reason", first.message))

    summary = "; ".join(v.message for v in errors[:5])
    raise ValidationError(f"Validation failed: {summary}", violations=errors)
