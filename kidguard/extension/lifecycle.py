"""Extension lifecycle state machine.

The enforcement extension is installed, enabled, disabled and removed only
through the host's approval protocol. Every mutating call issues one request
and returns immediately; the state then moves when responses arrive through
``deliver``. Responses for anything but the current request are stale and
ignored.
"""

import json
import logging
import re
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Optional

from kidguard.extension.approval import (
    ApprovalProtocol,
    ApprovalRequest,
    ApprovalResponse,
    Operation,
    ResponseKind,
)
from kidguard.sync.snapshot import atomic_write_text

logger = logging.getLogger(__name__)

PERMISSION_PATTERN = re.compile(
    r"permission|not\s+permitted|denied|unauthori[sz]ed|not\s+authori[sz]ed|authori[sz]ation|entitlement",
    re.IGNORECASE,
)


class ExtensionState(Enum):
    NOT_INSTALLED = "not_installed"
    INSTALLING = "installing"
    WAITING_FOR_APPROVAL = "waiting_for_approval"
    INSTALLED_ENABLED = "installed_enabled"
    INSTALLED_DISABLED = "installed_disabled"
    UNINSTALLING = "uninstalling"
    WILL_COMPLETE_AFTER_REBOOT = "will_complete_after_reboot"


INSTALLED_STATES = (ExtensionState.INSTALLED_ENABLED, ExtensionState.INSTALLED_DISABLED)

COMPLETED_STATE = {
    Operation.INSTALL: ExtensionState.INSTALLED_DISABLED,
    Operation.UNINSTALL: ExtensionState.NOT_INSTALLED,
    Operation.ENABLE: ExtensionState.INSTALLED_ENABLED,
    Operation.DISABLE: ExtensionState.INSTALLED_DISABLED,
}


class ReplacementAction(Enum):
    REPLACE = "replace"
    CANCEL = "cancel"


class LifecycleError(Exception):
    """A lifecycle operation is not valid in the current state."""


def is_permission_error(reason: Optional[str]) -> bool:
    """Whether a failure reason reads like a permission/authorization problem."""
    return bool(reason) and PERMISSION_PATTERN.search(reason) is not None


@dataclass
class PendingOperation:
    sequence: int
    operation: Operation
    previous_state: ExtensionState


@dataclass(frozen=True)
class LifecycleStatus:
    state: ExtensionState
    pending_operation: Optional[Operation]
    last_error: Optional[str]
    permission_required: bool
    sequence: int

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "pending_operation": self.pending_operation.value if self.pending_operation else None,
            "last_error": self.last_error,
            "permission_required": self.permission_required,
            "sequence": self.sequence,
        }


class ExtensionLifecycleManager:
    """Tracks the extension's state and drives it through the approval protocol.

    Safe to call from any thread; responses from the protocol usually arrive
    on a helper thread.
    """

    def __init__(
        self,
        protocol: ApprovalProtocol,
        extension_id: str,
        state_path: Optional[Path] = None,
    ) -> None:
        self.protocol = protocol
        self.extension_id = extension_id
        self.state_path = Path(state_path).expanduser() if state_path else None
        self._lock = threading.Lock()
        self._state = ExtensionState.NOT_INSTALLED
        self._sequence = 0
        self._pending: Optional[PendingOperation] = None
        self._last_error: Optional[str] = None
        self._permission_required = False
        self._load()
        protocol.attach(self.deliver)

    # --- persistence ---

    def _load(self) -> None:
        if self.state_path is None or not self.state_path.exists():
            return
        try:
            data = json.loads(self.state_path.read_text(encoding="utf-8"))
            self._state = ExtensionState(data["state"])
            self._sequence = int(data.get("sequence", 0))
            self._last_error = data.get("last_error")
            self._permission_required = bool(data.get("permission_required", False))
            pending = data.get("pending")
            if pending:
                self._pending = PendingOperation(
                    sequence=int(pending["sequence"]),
                    operation=Operation(pending["operation"]),
                    previous_state=ExtensionState(pending["previous_state"]),
                )
        except (OSError, ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable lifecycle state {self.state_path}: {e}")
            self._state = ExtensionState.NOT_INSTALLED
            self._pending = None
            return
        logger.info(f"Restored extension state: {self._state.value}")

    def _save(self) -> None:
        if self.state_path is None:
            return
        data = {
            "state": self._state.value,
            "sequence": self._sequence,
            "last_error": self._last_error,
            "permission_required": self._permission_required,
            "pending": None,
        }
        if self._pending is not None:
            data["pending"] = {
                "sequence": self._pending.sequence,
                "operation": self._pending.operation.value,
                "previous_state": self._pending.previous_state.value,
            }
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_text(self.state_path, json.dumps(data, indent=2))
        except OSError as e:
            logger.error(f"Cannot persist lifecycle state to {self.state_path}: {e}")

    # --- queries ---

    def current_state(self) -> ExtensionState:
        with self._lock:
            return self._state

    def status(self) -> LifecycleStatus:
        with self._lock:
            return LifecycleStatus(
                state=self._state,
                pending_operation=self._pending.operation if self._pending else None,
                last_error=self._last_error,
                permission_required=self._permission_required,
                sequence=self._sequence,
            )

    # --- operations ---

    def _begin(self, operation: Operation, transient: Optional[ExtensionState]) -> ApprovalRequest:
        # Caller holds the lock
        self._sequence += 1
        previous = self._pending.previous_state if self._pending else self._state
        self._pending = PendingOperation(self._sequence, operation, previous)
        if transient is not None:
            self._state = transient
        self._last_error = None
        self._permission_required = False
        self._save()
        return ApprovalRequest(self._sequence, operation, self.extension_id)

    def _check_pending(self, operation: Operation) -> bool:
        """True when ``operation`` is already in flight. Raises on a conflicting one."""
        if self._pending is None:
            return False
        if self._pending.operation == operation:
            return True
        raise LifecycleError(
            f"Cannot {operation.value}: {self._pending.operation.value} is still pending"
        )

    def _submit(self, request: ApprovalRequest) -> None:
        logger.info(f"Requesting {request.operation.value} of {request.extension_id} (#{request.sequence})")
        self.protocol.submit(request)

    def install(self) -> ExtensionState:
        """Request installation. A no-op when already installed."""
        with self._lock:
            if self._state in INSTALLED_STATES or self._check_pending(Operation.INSTALL):
                return self._state
            request = self._begin(Operation.INSTALL, ExtensionState.INSTALLING)
            state = self._state
        self._submit(request)
        return state

    def uninstall(self) -> ExtensionState:
        """Request removal. A no-op when not installed."""
        with self._lock:
            if self._state == ExtensionState.NOT_INSTALLED or self._check_pending(Operation.UNINSTALL):
                return self._state
            request = self._begin(Operation.UNINSTALL, ExtensionState.UNINSTALLING)
            state = self._state
        self._submit(request)
        return state

    def enable(self) -> ExtensionState:
        """Request enabling the installed extension."""
        return self._toggle(Operation.ENABLE, ExtensionState.INSTALLED_ENABLED)

    def disable(self) -> ExtensionState:
        """Request disabling the installed extension."""
        return self._toggle(Operation.DISABLE, ExtensionState.INSTALLED_DISABLED)

    def _toggle(self, operation: Operation, target: ExtensionState) -> ExtensionState:
        with self._lock:
            if self._check_pending(operation) or self._state == target:
                return self._state
            if self._state not in INSTALLED_STATES:
                raise LifecycleError(f"Cannot {operation.value}: extension is {self._state.value}")
            request = self._begin(operation, None)
            state = self._state
        self._submit(request)
        return state

    def resume(self) -> ExtensionState:
        """Re-issue a request left pending by a previous run (e.g. before a reboot)."""
        with self._lock:
            if self._pending is None:
                return self._state
            operation = self._pending.operation
            logger.info(f"Re-verifying pending {operation.value} after restart")
            request = self._begin(operation, None)
            state = self._state
        self._submit(request)
        return state

    def deliver(self, response: ApprovalResponse) -> bool:
        """Apply a host response. Returns False if it was stale and ignored."""
        with self._lock:
            pending = self._pending
            if pending is None or response.sequence != pending.sequence:
                logger.debug(f"Discarding stale approval response #{response.sequence}: {response.kind.value}")
                return False

            if response.kind == ResponseKind.COMPLETED:
                self._state = COMPLETED_STATE[pending.operation]
                self._pending = None
            elif response.kind == ResponseKind.WILL_COMPLETE_AFTER_REBOOT:
                self._state = ExtensionState.WILL_COMPLETE_AFTER_REBOOT
            elif response.kind == ResponseKind.NEEDS_USER_APPROVAL:
                self._state = ExtensionState.WAITING_FOR_APPROVAL
            else:
                self._state = pending.previous_state
                self._pending = None
                self._permission_required = is_permission_error(response.reason)
                reason = response.reason or "unknown error"
                self._last_error = f"Permission required: {reason}" if self._permission_required else reason
                logger.error(f"{pending.operation.value} failed: {self._last_error}")

            self._save()
            state = self._state

        logger.info(f"Extension {pending.operation.value} -> {state.value}")
        return True

    def replacement_action(self, existing: str, replacement: str) -> ReplacementAction:
        """Answer the host's "replace existing extension?" query. Always replace."""
        logger.info(f"Replacing extension version {existing} with {replacement}")
        return ReplacementAction.REPLACE
