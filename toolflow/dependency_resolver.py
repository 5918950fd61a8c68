import re
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .errors import PlanInvalid
from .schemas import ToolDependency, ToolExecution


# Known tool relationships. Tools not listed keep whatever the proposer declared.
TOOL_DEPENDENCY_PATTERNS: Dict[str, Dict[str, Any]] = {
    "execute_web-search": {"can_run_in_parallel": True},
    "execute_knowledge-search-v2": {"can_run_in_parallel": True},
    "execute_github-tools": {"can_run_in_parallel": True},
    "execute_web-scraper": {
        "can_run_in_parallel": False,
        "depends_on": ["execute_web-search"],
        "needs_input": {"url": "urls[0]"},
    },
    "execute_jira-tools": {"can_run_in_parallel": True},
    "execute_gmail-tools": {"can_run_in_parallel": True},
}

_INDEX_RE = re.compile(r"^([^\[\]]*)\[(\d+)\]$")


def detect_dependencies(executions: Iterable[ToolExecution]) -> List[ToolExecution]:
    """Return copies of ``executions`` with pattern-derived dependencies added."""
    updated = [execution.model_copy(deep=True) for execution in executions]
    for execution in updated:
        pattern = TOOL_DEPENDENCY_PATTERNS.get(execution.tool)
        if not pattern:
            continue
        execution.can_run_in_parallel = bool(pattern.get("can_run_in_parallel", True)) and execution.can_run_in_parallel
        needs_input: Dict[str, str] = pattern.get("needs_input") or {}
        for upstream_tool in pattern.get("depends_on") or []:
            upstream = next(
                (e for e in updated if e.tool == upstream_tool and e.id != execution.id),
                None,
            )
            if upstream is None:
                continue
            for parameter, source in needs_input.items():
                if execution.parameters.get(parameter):
                    continue
                already = any(
                    dep.tool_id == upstream.id and dep.parameter == parameter
                    for dep in execution.dependencies
                )
                if not already:
                    execution.dependencies.append(
                        ToolDependency(tool_id=upstream.id, parameter=parameter, source_parameter=source)
                    )
                execution.can_run_in_parallel = False
    return updated


def resolve_execution_groups(executions: List[ToolExecution]) -> List[List[str]]:
    """Order executions into groups whose dependencies sit in strictly earlier groups.

    Within a round of ready executions the order is priority descending, then
    insertion order. An execution that is not parallel-eligible always gets a
    group of its own. Raises ``PlanInvalid`` for duplicate ids, unknown
    dependency ids and cycles; no partial result is returned.
    """
    index_of: Dict[str, int] = {}
    duplicates: List[str] = []
    for idx, execution in enumerate(executions):
        if execution.id in index_of:
            duplicates.append(execution.id)
        else:
            index_of[execution.id] = idx
    if duplicates:
        raise PlanInvalid(
            f"Duplicate execution ids: {', '.join(sorted(set(duplicates)))}",
            sorted(set(duplicates)),
        )

    missing: Dict[str, List[str]] = {}
    for execution in executions:
        unknown = [dep_id for dep_id in execution.dependency_ids if dep_id not in index_of]
        if unknown:
            missing[execution.id] = unknown
    if missing:
        detail = "; ".join(f"{eid} -> {', '.join(deps)}" for eid, deps in missing.items())
        raise PlanInvalid(f"Unresolved dependencies: {detail}", list(missing), {"missing": missing})

    placed: set[str] = set()
    remaining = list(executions)
    groups: List[List[str]] = []
    while remaining:
        ready = [e for e in remaining if all(dep_id in placed for dep_id in e.dependency_ids)]
        if not ready:
            stuck = [e.id for e in remaining]
            raise PlanInvalid(f"Dependency cycle among: {', '.join(stuck)}", stuck)
        ready.sort(key=lambda e: (-e.priority, index_of[e.id]))
        batch: List[str] = []
        for execution in ready:
            if execution.can_run_in_parallel:
                batch.append(execution.id)
                continue
            if batch:
                groups.append(batch)
                batch = []
            groups.append([execution.id])
        if batch:
            groups.append(batch)
        ready_ids = {e.id for e in ready}
        placed.update(ready_ids)
        remaining = [e for e in remaining if e.id not in ready_ids]
    return groups


def get_nested_value(obj: Any, path: str) -> Any:
    """Read ``a.b[0].c`` style paths; returns None when any hop is missing."""
    current = obj
    for key in path.split("."):
        if current is None:
            return None
        match = _INDEX_RE.match(key)
        if match:
            name, index = match.group(1), int(match.group(2))
            if name:
                current = current.get(name) if isinstance(current, Mapping) else None
            if not isinstance(current, (list, tuple)) or index >= len(current):
                return None
            current = current[index]
        elif isinstance(current, Mapping):
            current = current.get(key)
        else:
            return None
    return current


def inject_dependency_parameters(
    execution: ToolExecution,
    completed: Mapping[str, ToolExecution],
) -> Dict[str, Any]:
    """Build the parameters for ``execution`` with upstream results fed in."""
    parameters = dict(execution.parameters)
    for dep in execution.dependencies:
        if not dep.parameter:
            continue
        source = completed.get(dep.tool_id)
        if source is None or source.result is None:
            continue
        path = dep.source_parameter or "result"
        value: Optional[Any]
        if path == "result":
            value = source.result
        else:
            value = get_nested_value(source.result, path)
        if value is not None:
            parameters[dep.parameter] = value
    return parameters
