"""Approval protocol between the lifecycle manager and the host.

The host (a privileged helper, or a person) answers install/uninstall/
enable/disable requests asynchronously. One request may get several
responses, e.g. ``needs_user_approval`` followed later by ``completed``.
"""

import json
import logging
import subprocess
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class Operation(Enum):
    INSTALL = "install"
    UNINSTALL = "uninstall"
    ENABLE = "enable"
    DISABLE = "disable"


class ResponseKind(Enum):
    COMPLETED = "completed"
    WILL_COMPLETE_AFTER_REBOOT = "will_complete_after_reboot"
    NEEDS_USER_APPROVAL = "needs_user_approval"
    FAILED = "failed"


@dataclass(frozen=True)
class ApprovalRequest:
    """One request to the host, tagged with a monotonically increasing sequence."""

    sequence: int
    operation: Operation
    extension_id: str

    def to_dict(self) -> dict:
        return {
            "sequence": self.sequence,
            "operation": self.operation.value,
            "extension_id": self.extension_id,
        }


@dataclass(frozen=True)
class ApprovalResponse:
    """Host answer for the request with the same sequence number."""

    sequence: int
    kind: ResponseKind
    reason: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict, sequence: int) -> "ApprovalResponse":
        """Parse a helper response line; ``sequence`` is used if the line omits it."""
        kind = ResponseKind(str(data.get("result", data.get("kind", ""))).lower())
        reason = data.get("reason")
        raw_sequence = data.get("sequence")
        return cls(
            sequence=int(raw_sequence) if raw_sequence is not None else sequence,
            kind=kind,
            reason=str(reason) if reason is not None else None,
        )


ResponseCallback = Callable[[ApprovalResponse], object]


class ApprovalProtocol:
    """Base class: submits requests and reports responses through a callback."""

    def __init__(self) -> None:
        self._callback: Optional[ResponseCallback] = None

    def attach(self, callback: ResponseCallback) -> None:
        self._callback = callback

    def _deliver(self, response: ApprovalResponse) -> None:
        if self._callback is None:
            logger.warning(f"Dropping approval response with no receiver: {response}")
            return
        self._callback(response)

    def submit(self, request: ApprovalRequest) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class ManualApprovalProtocol(ApprovalProtocol):
    """Records requests and lets a controller answer them by hand."""

    def __init__(self) -> None:
        super().__init__()
        self.requests: list[ApprovalRequest] = []

    @property
    def last_request(self) -> Optional[ApprovalRequest]:
        return self.requests[-1] if self.requests else None

    def submit(self, request: ApprovalRequest) -> None:
        logger.info(f"Approval needed: {request.operation.value} (#{request.sequence})")
        self.requests.append(request)

    def respond(
        self,
        kind: ResponseKind,
        reason: Optional[str] = None,
        sequence: Optional[int] = None,
    ) -> None:
        """Answer a request; defaults to the most recent one."""
        if sequence is None:
            if self.last_request is None:
                raise ValueError("No request to respond to")
            sequence = self.last_request.sequence
        self._deliver(ApprovalResponse(sequence=sequence, kind=kind, reason=reason))


class CommandApprovalProtocol(ApprovalProtocol):
    """Runs a privileged helper command per request.

    The request is written to the helper's stdin as one JSON object. The
    helper prints one JSON object per line, each with a ``result`` of
    completed, will_complete_after_reboot, needs_user_approval or failed and
    an optional ``reason``. There is no timeout: approval may take as long as
    the user needs.
    """

    def __init__(self, command: list[str]) -> None:
        super().__init__()
        if not command:
            raise ValueError("Approval helper command is empty")
        self.command = list(command)
        self._procs: list[subprocess.Popen] = []
        self._lock = threading.Lock()

    def submit(self, request: ApprovalRequest) -> None:
        thread = threading.Thread(
            target=self._run,
            args=(request,),
            name=f"approval-{request.sequence}",
            daemon=True,
        )
        thread.start()

    def _run(self, request: ApprovalRequest) -> None:
        try:
            proc = subprocess.Popen(
                self.command,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as e:
            self._deliver(ApprovalResponse(request.sequence, ResponseKind.FAILED, f"Cannot run helper: {e}"))
            return

        with self._lock:
            self._procs.append(proc)

        terminal = False
        try:
            assert proc.stdin is not None and proc.stdout is not None
            try:
                proc.stdin.write(json.dumps(request.to_dict()) + "\n")
                proc.stdin.close()
            except BrokenPipeError:
                # Helper exited without reading the request; its output still counts
                pass

            for line in proc.stdout:
                line = line.strip()
                if not line:
                    continue
                try:
                    response = ApprovalResponse.from_dict(json.loads(line), request.sequence)
                except (json.JSONDecodeError, ValueError, AttributeError, TypeError) as e:
                    logger.warning(f"Ignoring helper output {line!r}: {e}")
                    continue
                terminal = response.kind in (ResponseKind.COMPLETED, ResponseKind.FAILED)
                self._deliver(response)

            returncode = proc.wait()
            stderr = proc.stderr.read().strip() if proc.stderr else ""
        except OSError as e:
            returncode, stderr = -1, str(e)
        finally:
            with self._lock:
                if proc in self._procs:
                    self._procs.remove(proc)

        if not terminal and returncode != 0:
            reason = stderr or f"helper exited with status {returncode}"
            self._deliver(ApprovalResponse(request.sequence, ResponseKind.FAILED, reason))

    def close(self) -> None:
        """Terminate any helpers still running."""
        with self._lock:
            procs = list(self._procs)
        for proc in procs:
            if proc.poll() is None:
                proc.terminate()
