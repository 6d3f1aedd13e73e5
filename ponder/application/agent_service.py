from typing import Any, Callable, Dict, List, Optional, Set
import asyncio
import inspect
import uuid
import structlog

from ponder.config import AgentSettings
from ponder.domain.context.context_manager import ContextBuilder
from ponder.domain.context.memory.episodic_memory import get_memory_summary
from ponder.domain.context.memory.knowledge_store import KnowledgeStore
from ponder.domain.context.state.kv_store import KeyValueStore
from ponder.domain.context.state.state_manager import SessionStateManager, serialize_state
from ponder.domain.errors import RunCancelled, SessionNotFoundError
from ponder.domain.models.agent_state import AgentState, AgentStatus, TrajectoryStatus
from ponder.domain.models.trajectory_log import TrajectoryLog
from ponder.domain.orchestration.cancellation import CancellationToken
from ponder.domain.orchestration.core.degradation import DegradationPolicy, RunConfig
from ponder.domain.orchestration.core.main_agent import AgentOrchestrator, RunResult
from ponder.domain.orchestration.session_registry import SessionRegistry
from ponder.domain.rag.agentic_rag import AgenticRAG, RAGConfig, SearchProvider
from ponder.domain.reasoning.reasoning_model import ReasoningModel
from ponder.domain.streaming.streaming_handler import OutputChannel
from ponder.domain.tokens.token_tracker import format_usage, get_remaining_budget, is_warning_threshold
from ponder.domain.tool.tool_executor import ToolExecutor
from ponder.domain.tool.tool_handlers import register_default_tools
from ponder.domain.tool.tool_registry import ToolRegistry
from ponder.infrastructure.observability.logging import agent_logger, bind_run_context, clear_run_context
from ponder.infrastructure.tokenizer import TokenCounter, make_token_counter

logger = structlog.get_logger(__name__)


class AgentService:
    """Composes the execution core: sessions, runs, persistence and cancellation.

    Every run persists the session after each status update without waiting
    for the write; pending writes are flushed and a final save is made when
    the run ends, so durable state is at most one step behind.
    """

    def __init__(
        self,
        model: ReasoningModel,
        settings: Optional[AgentSettings] = None,
        store: Optional[KeyValueStore] = None,
        registry: Optional[ToolRegistry] = None,
        search_provider: Optional[SearchProvider] = None,
        knowledge_store: Optional[KnowledgeStore] = None,
        token_counter: Optional[TokenCounter] = None,
    ):
        self.settings = settings or AgentSettings()
        self.token_counter = token_counter or make_token_counter(self.settings.tokenizer_encoding)

        self.state_manager = SessionStateManager(store)
        self.sessions = SessionRegistry()

        if registry is None:
            registry = ToolRegistry()
            rag = None
            if search_provider is not None or knowledge_store is not None:
                rag = AgenticRAG(
                    model,
                    search_provider,
                    knowledge_store,
                    RAGConfig(
                        max_retries=self.settings.rag_max_retries,
                        relevance_threshold=self.settings.rag_relevance_threshold,
                        max_results=self.settings.rag_max_results,
                    ),
                    self.token_counter,
                )
            register_default_tools(registry, model, rag, self.token_counter)
        self.registry = registry

        self.executor = ToolExecutor(self.registry, self.settings.tool_timeout_seconds)
        self.orchestrator = AgentOrchestrator(model, self.registry, self.executor, self.token_counter)
        self.policy = DegradationPolicy.from_settings(self.settings)
        self.context_builder = ContextBuilder(self.token_counter)

        self.logs: Dict[str, TrajectoryLog] = {}
        self._pending_writes: Dict[str, Set[asyncio.Task]] = {}
        self._write_locks: Dict[str, asyncio.Lock] = {}

    async def start(self) -> List[str]:
        """Terminate runs that a previous process left in the running state"""

        recovered = await self.state_manager.recover_interrupted_sessions()
        logger.info("Agent service started", recovered_sessions=len(recovered))
        return recovered

    async def shutdown(self) -> None:
        """Cancel in-flight runs and wait for their writes"""

        await self.sessions.cancel_all("shutdown")
        for session_id in list(self._pending_writes):
            await self._flush(session_id)
        logger.info("Agent service stopped")

    def _new_state(self, session_id: Optional[str] = None) -> AgentState:
        return self.state_manager.create_session(
            budget=self.settings.token_budget,
            max_context_tokens=self.settings.max_context_tokens,
            warning_ratio=self.settings.warning_ratio,
            session_id=session_id,
        )

    async def create_session(self) -> AgentState:
        state = self._new_state()
        await self.state_manager.save_state(state)
        agent_logger.log_session_event(state.session_id, "created", {"budget": state.token_usage.budget})
        return state

    async def get_session(self, session_id: str) -> AgentState:
        state = await self.state_manager.load_state(session_id)
        if state is None:
            raise SessionNotFoundError(session_id)
        return state

    async def resume_or_create(self, session_id: str) -> AgentState:
        """Stored state for a session, or a clean one under the same id if none is usable"""

        state = await self.state_manager.load_state(session_id)
        if state is None:
            state = self._new_state(session_id)
            agent_logger.log_session_event(session_id, "started_fresh")
        else:
            agent_logger.log_session_event(session_id, "resumed")
        return state

    async def list_sessions(self) -> List[str]:
        return await self.state_manager.list_sessions()

    async def clear_all_sessions(self) -> int:
        await self.sessions.cancel_all("sessions cleared")
        self.logs.clear()
        return await self.state_manager.clear_all_sessions()

    async def describe_session(self, session_id: str) -> Dict[str, Any]:
        """Summary used by the status endpoint"""

        state = await self.get_session(session_id)
        active = await self.sessions.get(session_id)
        trajectory = state.trajectory
        return {
            "session_id": session_id,
            "active": active is not None,
            "request_id": trajectory.request_id if trajectory else None,
            "goal": trajectory.goal if trajectory else None,
            "status": trajectory.status.value if trajectory else None,
            "steps": len(trajectory.steps) if trajectory else 0,
            "token_usage": {
                "input": state.token_usage.session_total.input,
                "output": state.token_usage.session_total.output,
                "budget": state.token_usage.budget,
                "remaining": get_remaining_budget(state.token_usage),
                "warning": is_warning_threshold(state.token_usage),
                "summary": format_usage(state.token_usage),
            },
            "context": self.context_builder.get_context_summary(state.context),
            "memory": get_memory_summary(state.memory),
            "last_updated": state.last_updated.isoformat(),
        }

    async def run_goal(
        self,
        session_id: str,
        goal: str,
        on_status: Optional[Callable[[AgentStatus], Any]] = None,
        output: Optional[OutputChannel] = None,
        request_id: Optional[str] = None,
    ) -> RunResult:
        """Drive one goal to completion, failure or cancellation.

        Raises ``SessionBusyError`` when the session already has a run, and
        ``AgentRunError`` / ``AgentTimeoutError`` once degraded retries are
        exhausted; those carry the partial ``RunResult``.
        """

        request_id = request_id or f"req_{uuid.uuid4().hex[:12]}"
        active = await self.sessions.register(session_id, request_id)
        bind_run_context(session_id, request_id)

        run = None
        state = None
        try:
            # must load before claim: an unclaimed running record is terminated on load
            state = await self.resume_or_create(session_id)
            self.state_manager.claim(session_id)

            async def persist_and_forward(status: AgentStatus) -> None:
                self._persist(state, active.token)
                if on_status is not None:
                    outcome = on_status(status)
                    if inspect.isawaitable(outcome):
                        await outcome

            run = self.orchestrator.prepare_run(
                state,
                goal,
                RunConfig.from_settings(self.settings),
                active.token,
                request_id=request_id,
                on_status=persist_and_forward,
                output=output,
            )
            agent_logger.log_session_event(session_id, "run_started", {"request_id": request_id})

            result = await self.policy.execute(self.orchestrator, run)
            agent_logger.log_session_event(
                session_id, "run_finished", {"request_id": request_id, "outcome": result.outcome.value}
            )
            return result
        finally:
            if run is not None:
                self.logs[session_id] = run.log
            if state is not None and state.trajectory is not None and not state.trajectory.is_terminal:
                state.trajectory.finish(TrajectoryStatus.TERMINATED)
            if output is not None and not output.closed:
                await output.close()
            await self._flush(session_id)
            if state is not None:
                state.touch()
                await self.state_manager.save_state(state)
            self.state_manager.release(session_id)
            await self.sessions.complete(session_id, request_id)
            clear_run_context()

    async def cancel_run(self, session_id: str) -> bool:
        return await self.sessions.cancel(session_id, "cancelled by caller")

    async def end_session(self, session_id: str) -> None:
        """Cancel any active run and discard the session's state"""

        await self.sessions.cancel(session_id, "session ended")
        await self._flush(session_id)
        await self.state_manager.clear_state(session_id)
        self.logs.pop(session_id, None)
        agent_logger.log_session_event(session_id, "ended")

    def get_log(self, session_id: str) -> Optional[TrajectoryLog]:
        return self.logs.get(session_id)

    def _persist(self, state: AgentState, token: CancellationToken) -> None:
        """Schedule a write of the state as it is right now"""

        session_id = state.session_id
        payload = serialize_state(state)
        lock = self._write_locks.setdefault(session_id, asyncio.Lock())

        async def write() -> None:
            async with lock:
                await token.guard(self.state_manager.save_serialized(session_id, payload))

        task = asyncio.ensure_future(write())
        pending = self._pending_writes.setdefault(session_id, set())
        pending.add(task)
        task.add_done_callback(lambda t: self._write_done(session_id, t))

    def _write_done(self, session_id: str, task: asyncio.Task) -> None:
        self._pending_writes.get(session_id, set()).discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, RunCancelled):
            logger.debug("State write skipped after cancellation", session_id=session_id)
        elif error is not None:
            logger.error("State write failed", session_id=session_id, error=str(error))

    async def _flush(self, session_id: str) -> None:
        pending = list(self._pending_writes.get(session_id, ()))
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        if not self._pending_writes.get(session_id):
            self._pending_writes.pop(session_id, None)
            self._write_locks.pop(session_id, None)
