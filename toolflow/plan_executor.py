import asyncio
import inspect
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from .clock import Clock, SystemClock
from .dependency_resolver import inject_dependency_parameters, resolve_execution_groups
from .errors import PlanCancelled, ToolExecutionFailure, ToolflowError
from .schemas import GatewayResponse, MultiToolPlan, ToolExecution
from .tool_gateway import ToolGateway


logger = logging.getLogger("uvicorn.error")

StepCallback = Callable[[ToolExecution], Union[None, Awaitable[None]]]
PlanCallback = Callable[[str, MultiToolPlan], Union[None, Awaitable[None]]]


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


def format_final_result(results: List[Any]) -> str:
    if not results:
        return "Plan completed successfully"
    last = results[-1]
    if isinstance(last, str):
        return last
    return json.dumps(last, ensure_ascii=True, default=str)


class PlanExecutor:
    """Walks a resolved plan group by group, stopping at the first failed step.

    Steps run one at a time in resolved order unless ``parallel_groups`` is set,
    in which case the steps of one group are started together. Groups are
    always sequential. Gateway failures are not retried here.
    """

    def __init__(
        self,
        gateway: ToolGateway,
        *,
        clock: Optional[Clock] = None,
        parallel_groups: bool = False,
        bus: Optional[Any] = None,
        run_id: Optional[str] = None,
    ) -> None:
        self.gateway = gateway
        self.clock = clock or SystemClock()
        self.parallel_groups = parallel_groups
        self._bus = bus
        self._bus_run_id = run_id

    async def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        if not self._bus or not self._bus_run_id:
            return
        try:
            await self._bus.emit(self._bus_run_id, event_type, payload)
        except Exception as exc:
            logger.warning("Run %s event %s not delivered: %s", self._bus_run_id, event_type, exc)

    async def run(
        self,
        plan: MultiToolPlan,
        on_step_update: Optional[StepCallback] = None,
        on_plan_complete: Optional[PlanCallback] = None,
        stop_event: Optional[asyncio.Event] = None,
    ) -> MultiToolPlan:
        if plan.status != "pending":
            raise ToolflowError(f"Plan {plan.id} is {plan.status}; only pending plans can run", "plan_not_pending")
        if not plan.execution_groups:
            plan.execution_groups = resolve_execution_groups(plan.executions)

        plan.mark_executing(self.clock.now())
        logger.info("Plan %s started with %s groups", plan.id, len(plan.execution_groups))
        await self._emit("plan_started", {"plan_id": plan.id, "groups": plan.execution_groups})
        completed: Dict[str, ToolExecution] = {}
        results: List[Any] = []
        step_index = 0

        async def notify(execution: ToolExecution) -> None:
            if on_step_update:
                await _maybe_await(on_step_update(execution))
            await self._emit(
                "step_update",
                {
                    "plan_id": plan.id,
                    "execution_id": execution.id,
                    "tool": execution.tool,
                    "status": execution.status,
                    "error": execution.error,
                },
            )

        async def start_step(execution: ToolExecution) -> Dict[str, Any]:
            params = inject_dependency_parameters(execution, completed)
            execution.parameters = params
            execution.mark_executing(self.clock.now())
            await notify(execution)
            return params

        async def finish_step(execution: ToolExecution, params: Dict[str, Any]) -> None:
            response = await self._call_gateway(execution, params)
            if response.status == "completed":
                execution.mark_completed(response.result, self.clock.now())
            else:
                execution.mark_failed(response.error or "Unknown error", self.clock.now())
            await notify(execution)

        try:
            for group_index, group in enumerate(plan.execution_groups):
                plan.current_group_index = group_index
                steps = [plan.get_execution(eid) for eid in group]
                if self.parallel_groups and len(steps) > 1:
                    await self._check_stop(plan, steps[0], stop_event)
                    plan.current_execution_index = step_index
                    prepared = [await start_step(step) for step in steps]
                    await asyncio.gather(*(finish_step(step, params) for step, params in zip(steps, prepared)))
                    step_index += len(steps)
                    failed = next((step for step in steps if step.status == "failed"), None)
                    if failed:
                        await self._fail(plan, failed)
                else:
                    for step in steps:
                        await self._check_stop(plan, step, stop_event)
                        plan.current_execution_index = step_index
                        params = await start_step(step)
                        await finish_step(step, params)
                        step_index += 1
                        if step.status == "failed":
                            await self._fail(plan, step)
                for step in steps:
                    completed[step.id] = step
                    results.append(step.result)
        except (ToolExecutionFailure, PlanCancelled):
            raise
        except BaseException as exc:
            if plan.status == "executing":
                plan.mark_failed(f"Plan aborted: {str(exc) or exc.__class__.__name__}", self.clock.now())
            raise

        final_result = format_final_result([r for r in results if r is not None])
        plan.mark_completed(final_result, self.clock.now())
        logger.info("Plan %s completed (%s steps)", plan.id, len(plan.executions))
        await self._emit("plan_completed", {"plan_id": plan.id, "result": final_result})
        if on_plan_complete:
            await _maybe_await(on_plan_complete(final_result, plan))
        return plan

    async def _call_gateway(self, execution: ToolExecution, params: Dict[str, Any]) -> GatewayResponse:
        try:
            return await self.gateway.execute(execution.tool, params)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Tool %s raised: %s", execution.tool, exc)
            return GatewayResponse(status="failed", error=str(exc) or exc.__class__.__name__)

    async def _check_stop(
        self,
        plan: MultiToolPlan,
        step: ToolExecution,
        stop_event: Optional[asyncio.Event],
    ) -> None:
        if stop_event is None or not stop_event.is_set():
            return
        message = f'Plan stopped before step "{step.label}"'
        plan.mark_failed(message, self.clock.now())
        logger.info("Plan %s cancelled", plan.id)
        await self._emit("plan_failed", {"plan_id": plan.id, "error": message})
        raise PlanCancelled(message, plan.id)

    async def _fail(self, plan: MultiToolPlan, step: ToolExecution) -> None:
        message = f'Step "{step.label}" failed: {step.error}'
        plan.mark_failed(message, self.clock.now())
        logger.info("Plan %s failed at %s: %s", plan.id, step.id, step.error)
        await self._emit("plan_failed", {"plan_id": plan.id, "execution_id": step.id, "error": message})
        raise ToolExecutionFailure(message, step.id, step.tool)
