from typing import Dict, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
import asyncio
import structlog

from ponder.domain.errors import SessionBusyError
from ponder.domain.models.agent_state import utcnow
from ponder.domain.orchestration.cancellation import CancellationToken

logger = structlog.get_logger(__name__)


@dataclass
class ActiveRun:
    """Book-keeping for one in-flight run"""
    session_id: str
    request_id: str
    token: CancellationToken = field(default_factory=CancellationToken)
    started_at: datetime = field(default_factory=utcnow)


class SessionRegistry:
    """Tracks in-flight runs and their cancellation tokens; one run per session"""

    def __init__(self):
        self.active_runs: Dict[str, ActiveRun] = {}
        self._lock = asyncio.Lock()

    async def register(self, session_id: str, request_id: str) -> ActiveRun:
        """Start tracking a run; a second concurrent run on the same session is refused"""

        async with self._lock:
            if session_id in self.active_runs:
                raise SessionBusyError(session_id)
            run = ActiveRun(session_id=session_id, request_id=request_id)
            self.active_runs[session_id] = run

        logger.debug("Run registered", session_id=session_id, request_id=request_id)
        return run

    async def cancel(self, session_id: str, reason: str = "cancelled by caller") -> bool:
        """Fire the run's cancellation token"""

        async with self._lock:
            run = self.active_runs.get(session_id)
        if run is None:
            return False
        run.token.cancel(reason)
        logger.info("Run cancellation requested", session_id=session_id, request_id=run.request_id)
        return True

    async def complete(self, session_id: str, request_id: Optional[str] = None) -> None:
        """Stop tracking a run"""

        async with self._lock:
            run = self.active_runs.get(session_id)
            if run is not None and (request_id is None or run.request_id == request_id):
                del self.active_runs[session_id]

    async def get(self, session_id: str) -> Optional[ActiveRun]:
        async with self._lock:
            return self.active_runs.get(session_id)

    async def cancel_all(self, reason: str = "shutdown") -> int:
        """Cancel every run, e.g. on host shutdown"""

        async with self._lock:
            runs = list(self.active_runs.values())
        for run in runs:
            run.token.cancel(reason)
        if runs:
            logger.info("Cancelled all runs", count=len(runs), reason=reason)
        return len(runs)

    async def active_sessions(self) -> List[str]:
        async with self._lock:
            return list(self.active_runs.keys())

    def active_count(self) -> int:
        return len(self.active_runs)
