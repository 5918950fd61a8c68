import uuid
from typing import Any, Dict, Iterable, List, Optional, Union

from .dependency_resolver import detect_dependencies, resolve_execution_groups
from .schemas import MultiToolPlan, ProposedExecution, ToolExecution


def new_plan_id() -> str:
    return f"plan-{uuid.uuid4().hex[:12]}"


def build_plan(
    title: str,
    executions: Iterable[Union[ProposedExecution, Dict[str, Any]]],
    *,
    description: str = "",
    plan_id: Optional[str] = None,
    detect: bool = True,
) -> MultiToolPlan:
    """Turn proposed tool calls into a resolved, pending plan.

    Raises ``PlanInvalid`` when dependencies cannot be ordered.
    """
    plan_id = plan_id or new_plan_id()
    steps: List[ToolExecution] = []
    for idx, item in enumerate(executions, start=1):
        proposed = item if isinstance(item, ProposedExecution) else ProposedExecution.model_validate(item)
        data = proposed.model_dump()
        data["id"] = proposed.id or f"{plan_id}-exec-{idx}"
        steps.append(ToolExecution.model_validate(data))
    if detect:
        steps = detect_dependencies(steps)
    groups = resolve_execution_groups(steps)
    return MultiToolPlan(
        id=plan_id,
        title=title,
        description=description,
        executions=steps,
        execution_groups=groups,
        total_estimated_time=sum(step.estimated_duration for step in steps),
    )
