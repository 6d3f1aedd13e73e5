from typing import Any, Optional


class PonderError(Exception):
    """Base class for agent core errors"""


class ToolRegistrationError(PonderError):
    """Tool definition rejected at registration time"""


class SessionBusyError(PonderError):
    """A run is already active for the session"""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} already has an active run")
        self.session_id = session_id


class SessionNotFoundError(PonderError):
    """No persisted or live state for the session"""

    def __init__(self, session_id: str):
        super().__init__(f"Unknown session: {session_id}")
        self.session_id = session_id


class RunCancelled(PonderError):
    """The run's cancellation token fired; not a failure"""


class AgentRunError(PonderError):
    """Loop-level failure after the degradation policy gave up"""

    def __init__(self, message: str, error_type: str, partial: Optional[Any] = None):
        super().__init__(message)
        self.error_type = error_type
        self.partial = partial


class AgentTimeoutError(AgentRunError):
    """Every attempt, degraded ones included, ran past its timeout"""

    def __init__(self, message: str, partial: Optional[Any] = None):
        super().__init__(message, error_type="timeout", partial=partial)
