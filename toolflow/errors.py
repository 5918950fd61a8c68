"""
Error taxonomy for plan execution and conversation sync.
"""

from typing import Any, Dict, List, Optional


class ToolflowError(Exception):
    """Base exception for all toolflow errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}


class PlanInvalid(ToolflowError):
    """Raised when a plan cannot be resolved (missing or cyclic dependency)."""

    def __init__(self, message: str, execution_ids: List[str], details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "plan_invalid", details)
        self.execution_ids = list(execution_ids)


class ToolExecutionFailure(ToolflowError):
    """Raised when a plan step fails; the plan is aborted."""

    def __init__(self, message: str, execution_id: str, tool: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "tool_failed", details)
        self.execution_id = execution_id
        self.tool = tool


class PlanCancelled(ToolflowError):
    """Raised when a stop event is set while a plan is running."""

    def __init__(self, message: str, plan_id: str):
        super().__init__(message, "plan_cancelled")
        self.plan_id = plan_id


class PersistenceConflict(ToolflowError):
    """A write collided with an already stored message. Always benign."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "duplicate", details)


class TransientSyncFailure(ToolflowError):
    """A poll or dedup lookup failed; the next tick retries."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "transient", details)
