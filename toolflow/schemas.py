import json
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


ExecutionStatus = Literal["pending", "executing", "completed", "failed"]
PlanStatus = Literal["pending", "executing", "completed", "failed"]
ProgressStatus = Literal["pending", "starting", "executing", "completed", "failed"]
ToolEventStatus = Literal["executing", "completed", "failed"]
MessageRole = Literal["user", "assistant", "system"]

MESSAGE_TYPES = {
    "analysis",
    "planning",
    "execution",
    "tool-update",
    "response",
    "step-executing",
    "step-completed",
    "loop-start",
    "loop-reflection",
    "loop-enhancement",
    "loop-complete",
    "tool-executing",
}

TERMINAL_STATUSES = {"completed", "failed"}

_NEXT_STATUS: Dict[str, set] = {
    "pending": {"executing"},
    "executing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}


def _check_transition(kind: str, ident: str, current: str, target: str) -> None:
    if target not in _NEXT_STATUS.get(current, set()):
        raise ValueError(f"{kind} {ident} cannot move from {current} to {target}")


def display_name_for(tool: str) -> str:
    cleaned = tool.replace("execute_", "", 1).replace("_", " ").replace("-", " ")
    return " ".join(part[:1].upper() + part[1:] for part in cleaned.split())


class ToolDependency(BaseModel):
    tool_id: str
    parameter: Optional[str] = None
    source_parameter: str = "result"


class ToolExecution(BaseModel):
    id: str
    tool: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[ToolDependency] = Field(default_factory=list)
    status: ExecutionStatus = "pending"
    result: Any = None
    error: Optional[str] = None
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    can_run_in_parallel: bool = True
    priority: int = 0
    estimated_duration: float = 0.0

    @property
    def dependency_ids(self) -> List[str]:
        seen: List[str] = []
        for dep in self.dependencies:
            if dep.tool_id not in seen:
                seen.append(dep.tool_id)
        return seen

    @property
    def label(self) -> str:
        return self.description or self.tool

    def mark_executing(self, at: float) -> None:
        _check_transition("Execution", self.id, self.status, "executing")
        self.status = "executing"
        self.start_time = at

    def mark_completed(self, result: Any, at: float) -> None:
        _check_transition("Execution", self.id, self.status, "completed")
        self.status = "completed"
        self.result = result
        self.end_time = at

    def mark_failed(self, error: str, at: float) -> None:
        _check_transition("Execution", self.id, self.status, "failed")
        self.status = "failed"
        self.error = error
        self.end_time = at


class ProposedExecution(BaseModel):
    """A tool call as proposed by a planner, before ids and groups are assigned."""

    id: Optional[str] = None
    tool: str
    description: str = ""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    dependencies: List[ToolDependency] = Field(default_factory=list)
    can_run_in_parallel: bool = True
    priority: int = 0
    estimated_duration: float = 0.0


class MultiToolPlan(BaseModel):
    id: str
    title: str
    description: str = ""
    executions: List[ToolExecution] = Field(default_factory=list)
    execution_groups: List[List[str]] = Field(default_factory=list)
    status: PlanStatus = "pending"
    current_execution_index: int = 0
    current_group_index: int = 0
    total_estimated_time: float = 0.0
    start_time: Optional[float] = None
    end_time: Optional[float] = None
    error: Optional[str] = None
    final_result: Optional[str] = None

    def get_execution(self, execution_id: str) -> ToolExecution:
        for execution in self.executions:
            if execution.id == execution_id:
                return execution
        raise KeyError(execution_id)

    def mark_executing(self, at: float) -> None:
        _check_transition("Plan", self.id, self.status, "executing")
        self.status = "executing"
        self.start_time = at

    def mark_completed(self, final_result: str, at: float) -> None:
        _check_transition("Plan", self.id, self.status, "completed")
        self.status = "completed"
        self.final_result = final_result
        self.end_time = at

    def mark_failed(self, error: str, at: float) -> None:
        _check_transition("Plan", self.id, self.status, "failed")
        self.status = "failed"
        self.error = error
        self.end_time = at


class ToolProgressItem(BaseModel):
    id: str
    name: str
    display_name: str
    status: ProgressStatus = "starting"
    parameters: Dict[str, Any] = Field(default_factory=dict)
    progress: int = 0
    start_time: float
    end_time: Optional[float] = None
    result: Any = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


class ToolUsage(BaseModel):
    name: str = "Unknown Tool"
    success: bool = False
    result: Any = None
    error: Optional[str] = None


class ConversationMessage(BaseModel):
    id: str
    role: MessageRole
    content: str
    created_at: datetime
    updated_at: Optional[datetime] = None
    message_type: Optional[str] = None
    tools_used: Optional[List[ToolUsage]] = None
    ai_reasoning: Optional[str] = None
    loop_iteration: int = 0
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def last_activity(self) -> datetime:
        if self.updated_at and self.updated_at > self.created_at:
            return self.updated_at
        return self.created_at


class GatewayResponse(BaseModel):
    status: Literal["completed", "failed"]
    result: Any = None
    error: Optional[str] = None

    model_config = {"extra": "ignore"}


class ToolStatusEvent(BaseModel):
    event_id: str
    tool_name: str
    display_name: str
    status: ToolEventStatus
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None


class ToolEventPayload(BaseModel):
    """Wire shape of a ``tool-executing`` message body."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    tool_name: str = Field(alias="toolName", min_length=1)
    display_name: Optional[str] = Field(default=None, alias="displayName")
    status: ToolEventStatus
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: Optional[str] = None
    tool_call_id: Optional[str] = Field(default=None, alias="toolCallId")

    @field_validator("parameters", mode="before")
    @classmethod
    def _none_parameters(cls, value: Any) -> Any:
        return {} if value is None else value


class ToolEventParseFailure(BaseModel):
    reason: str
    raw: str = ""


def parse_tool_event(
    raw: Union[str, Dict[str, Any]], fallback_id: str
) -> Union[ToolStatusEvent, ToolEventParseFailure]:
    """Parse a tool status payload into an event or an explicit failure."""
    if isinstance(raw, str):
        text = raw.strip()
        if not text.startswith("{"):
            return ToolEventParseFailure(reason="not_json_object", raw=raw[:200])
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            return ToolEventParseFailure(reason=f"invalid_json: {exc.msg}", raw=raw[:200])
    else:
        data = raw
        text = json.dumps(raw, ensure_ascii=True, default=str)
    if not isinstance(data, dict):
        return ToolEventParseFailure(reason="not_json_object", raw=text[:200])
    try:
        payload = ToolEventPayload.model_validate(data)
    except ValidationError as exc:
        fields = ",".join(str(err["loc"][0]) for err in exc.errors() if err.get("loc"))
        return ToolEventParseFailure(reason=f"invalid_fields: {fields}", raw=text[:200])
    call_id = payload.tool_call_id or fallback_id
    return ToolStatusEvent(
        event_id=f"{call_id}:{payload.status}",
        tool_name=payload.tool_name,
        display_name=payload.display_name or display_name_for(payload.tool_name),
        status=payload.status,
        parameters=payload.parameters,
        result=payload.result,
        error=payload.error,
    )


class MessageCreate(BaseModel):
    id: Optional[str] = None
    role: MessageRole
    content: str = Field(min_length=1)
    message_type: Optional[str] = None
    tools_used: Optional[List[ToolUsage]] = None
    ai_reasoning: Optional[str] = None
    loop_iteration: int = 0
    created_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class PlanCreate(BaseModel):
    title: str
    description: str = ""
    session_id: Optional[str] = None
    executions: List[ProposedExecution] = Field(min_length=1)
