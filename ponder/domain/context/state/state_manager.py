from typing import Any, Dict, List, Optional, Set
import json
import uuid
import structlog
from pydantic import ValidationError

from ponder.domain.context.memory.episodic_memory import create_episodic_memory
from ponder.domain.context.state.kv_store import InMemoryKeyValueStore, KeyValueStore
from ponder.domain.models.agent_state import (
    AgentContext, AgentState, EpisodicMemory, TrajectoryStatus, utcnow
)
from ponder.domain.models.persisted_state import (
    AGENT_STATE_VERSION, PersistedAgentState, SerializedContext, SerializedMemory
)
from ponder.domain.tokens.token_tracker import DEFAULT_BUDGET, DEFAULT_WARNING_RATIO, create_token_usage

logger = structlog.get_logger(__name__)

STATE_KEY_PREFIX = "agent_state_"
DEFAULT_MAX_CONTEXT_TOKENS = 128000


def state_key(session_id: str) -> str:
    return f"{STATE_KEY_PREFIX}{session_id}"


def new_session_id() -> str:
    return f"session_{uuid.uuid4().hex}"


def to_persisted(state: AgentState) -> PersistedAgentState:
    """Storage form: reflection ids in the context, error counts as pairs"""

    context = state.context
    return PersistedAgentState(
        version=AGENT_STATE_VERSION,
        session_id=state.session_id,
        trajectory=state.trajectory,
        context=SerializedContext(
            grounding=context.grounding,
            history=context.history,
            reflection_ids=[r.id for r in context.reflections],
            token_count=context.token_count,
            max_tokens=context.max_tokens,
        ),
        memory=SerializedMemory(
            session_id=state.memory.session_id,
            reflections=state.memory.reflections,
            error_counts=sorted(state.memory.error_counts.items()),
        ),
        token_usage=state.token_usage,
        timestamp=state.last_updated,
    )


def from_persisted(persisted: PersistedAgentState) -> AgentState:
    """Rehydrate; context reflections are looked up in memory and dropped if missing"""

    by_id = {r.id: r for r in persisted.memory.reflections}
    reflections = [by_id[rid] for rid in persisted.context.reflection_ids if rid in by_id]

    return AgentState(
        session_id=persisted.session_id,
        trajectory=persisted.trajectory,
        context=AgentContext(
            grounding=persisted.context.grounding,
            history=persisted.context.history,
            reflections=reflections,
            token_count=persisted.context.token_count,
            max_tokens=persisted.context.max_tokens,
        ),
        memory=EpisodicMemory(
            session_id=persisted.memory.session_id,
            reflections=persisted.memory.reflections,
            error_counts=dict(persisted.memory.error_counts),
        ),
        token_usage=persisted.token_usage,
        last_updated=persisted.timestamp,
    )


def serialize_state(state: AgentState) -> str:
    """Deterministic JSON encoding; equal states encode to identical strings"""

    payload = to_persisted(state).model_dump(mode="json")
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def migrate_record(record: Dict[str, Any]) -> Dict[str, Any]:
    """Upgrade an older record to the current version"""

    # version 1 is the first persisted layout
    return record


def deserialize_state(raw: Optional[str]) -> Optional[AgentState]:
    """Parse and validate a stored record; anything malformed is treated as absent"""

    if not raw:
        return None
    try:
        record = json.loads(raw)
    except (TypeError, ValueError):
        logger.warning("Discarding unparseable session record")
        return None

    if not isinstance(record, dict) or not isinstance(record.get("version"), int):
        logger.warning("Discarding session record without version")
        return None
    if record["version"] > AGENT_STATE_VERSION:
        logger.warning("Discarding session record from a newer version", version=record["version"])
        return None
    if record["version"] < AGENT_STATE_VERSION:
        record = migrate_record(record)

    try:
        persisted = PersistedAgentState.model_validate(record)
    except ValidationError as e:
        logger.warning("Discarding invalid session record", errors=e.error_count())
        return None
    return from_persisted(persisted)


class SessionStateManager:
    """Persists AgentState through a key-value store.

    One manager corresponds to one host-process lifetime. Runs started by
    this process ``claim`` their session; a record found in ``running`` state
    that nobody here has claimed was interrupted by a restart and is
    terminated on load.
    """

    def __init__(self, store: Optional[KeyValueStore] = None):
        self.store: KeyValueStore = store or InMemoryKeyValueStore()
        self._owned: Set[str] = set()

    def create_session(
        self,
        budget: int = DEFAULT_BUDGET,
        max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS,
        warning_ratio: float = DEFAULT_WARNING_RATIO,
        session_id: Optional[str] = None,
    ) -> AgentState:
        """Fresh session, with a generated id unless one is given; nothing is persisted yet"""

        session_id = session_id or new_session_id()
        state = AgentState(
            session_id=session_id,
            context=AgentContext(max_tokens=max_context_tokens),
            memory=create_episodic_memory(session_id),
            token_usage=create_token_usage(budget, warning_ratio),
        )
        logger.info("Session created", session_id=session_id, budget=budget)
        return state

    def claim(self, session_id: str) -> None:
        """Mark a session as having a run owned by this process"""

        self._owned.add(session_id)

    def release(self, session_id: str) -> None:
        self._owned.discard(session_id)

    async def save_state(self, state: AgentState) -> None:
        """Overwrite the stored record; last writer wins"""

        await self.save_serialized(state.session_id, serialize_state(state))

    async def save_serialized(self, session_id: str, payload: str) -> None:
        await self.store.set(state_key(session_id), payload)

    async def load_state(self, session_id: str) -> Optional[AgentState]:
        """Load a session, or None if absent or invalid"""

        state = deserialize_state(await self.store.get(state_key(session_id)))
        if state is None:
            return None
        return await self._recover(state)

    async def _recover(self, state: AgentState) -> AgentState:
        trajectory = state.trajectory
        if (
            trajectory is not None
            and trajectory.status == TrajectoryStatus.RUNNING
            and state.session_id not in self._owned
        ):
            trajectory.finish(TrajectoryStatus.TERMINATED)
            state.last_updated = utcnow()
            await self.save_state(state)
            logger.warning(
                "Terminated interrupted run",
                session_id=state.session_id,
                request_id=trajectory.request_id,
            )
        return state

    async def clear_state(self, session_id: str) -> None:
        await self.store.remove(state_key(session_id))
        logger.info("Session state cleared", session_id=session_id)

    async def list_sessions(self) -> List[str]:
        """Ids of every stored session"""

        keys = await self.store.keys(STATE_KEY_PREFIX)
        return sorted(key[len(STATE_KEY_PREFIX):] for key in keys)

    async def clear_all_sessions(self) -> int:
        """Remove every stored session; returns how many were removed"""

        session_ids = await self.list_sessions()
        for session_id in session_ids:
            await self.store.remove(state_key(session_id))
        logger.info("All session state cleared", count=len(session_ids))
        return len(session_ids)

    async def recover_interrupted_sessions(self) -> List[str]:
        """Startup sweep: terminate every unowned running session"""

        recovered = []
        for session_id in await self.list_sessions():
            raw = await self.store.get(state_key(session_id))
            state = deserialize_state(raw)
            if state is None or state.trajectory is None:
                continue
            if state.trajectory.status == TrajectoryStatus.RUNNING and session_id not in self._owned:
                await self._recover(state)
                recovered.append(session_id)
        return recovered
