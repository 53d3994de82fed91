"""Error taxonomy shared by the conversation core and every surface.

Each class carries a ``kind`` (the name surfaced in ``error`` stream events
and HTTP error bodies) and a ``retryable`` flag consulted by the
conversation's provider retry loop.

Propagation:
  - tool-local failures never escape the tool executor; they become
    ToolResults and are fed back to the model
  - provider failures are retried while ``retryable`` and otherwise end the
    conversation as ``failed``
  - CancellationRequested ends the conversation as ``cancelled``; it is a
    normal terminal state, not a failure
"""

from typing import Any, Dict, Optional


class AgentError(Exception):
    """Base class for every error the agent core raises on purpose."""

    kind = "AgentError"
    retryable = False

    def __init__(self, message: str = ""):
        self.message = message or self.kind
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message}


class ProviderUnavailable(AgentError):
    """Network or auth failure talking to the model backend."""

    kind = "ProviderUnavailable"
    retryable = True


class ProviderRateLimited(AgentError):
    """The backend throttled us; ``retry_after`` is its hint in seconds."""

    kind = "ProviderRateLimited"
    retryable = True

    def __init__(self, message: str = "", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        if self.retry_after is not None:
            data["retry_after"] = self.retry_after
        return data


class MalformedUpstreamResponse(AgentError):
    kind = "MalformedUpstreamResponse"


class ToolExecutionFailed(AgentError):
    """Raised by tool handlers; the executor turns it into a failed ToolResult.

    ``output`` carries whatever the tool produced before failing (e.g. the
    stdout of a command with a non-zero exit).
    """

    kind = "ToolExecutionFailed"

    def __init__(self, message: str = "", output: str = "", metadata: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.output = output
        self.metadata = dict(metadata or {})


class ToolTimeout(ToolExecutionFailed):
    kind = "ToolTimeout"


class TurnBudgetExceeded(AgentError):
    kind = "TurnBudgetExceeded"

    def __init__(self, budget: int):
        super().__init__(f"Turn budget of {budget} model round-trips exceeded")
        self.budget = budget


class SessionNotFound(AgentError):
    kind = "SessionNotFound"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionLimitReached(AgentError):
    kind = "SessionLimitReached"

    def __init__(self, limit: int):
        super().__init__(f"Maximum number of sessions reached: {limit}")
        self.limit = limit


class InvalidRequest(AgentError):
    kind = "InvalidRequest"


class CancellationRequested(AgentError):
    """Raised at a cancellation checkpoint once the token has fired."""

    kind = "CancellationRequested"

    def __init__(self, reason: str = "cancelled"):
        super().__init__(reason)
        self.reason = reason
