"""Enforcement extension lifecycle and its approval protocol."""

from kidguard.extension.approval import (
    ApprovalProtocol,
    ApprovalRequest,
    ApprovalResponse,
    CommandApprovalProtocol,
    ManualApprovalProtocol,
    Operation,
    ResponseKind,
)
from kidguard.extension.lifecycle import (
    ExtensionLifecycleManager,
    ExtensionState,
    LifecycleError,
    LifecycleStatus,
    ReplacementAction,
    is_permission_error,
)

__all__ = [
    "ApprovalProtocol",
    "ApprovalRequest",
    "ApprovalResponse",
    "CommandApprovalProtocol",
    "ExtensionLifecycleManager",
    "ExtensionState",
    "LifecycleError",
    "LifecycleStatus",
    "ManualApprovalProtocol",
    "Operation",
    "ResponseKind",
    "ReplacementAction",
    "is_permission_error",
]
