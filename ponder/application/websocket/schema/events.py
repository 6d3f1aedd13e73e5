from typing import Dict, Any, Optional, Literal
from pydantic import BaseModel, Field
from datetime import datetime
from enum import Enum

from ponder.domain.models.agent_state import AgentStatus, utcnow


class EventType(str, Enum):
    """WebSocket event types"""
    STATUS = "status"
    MARKDOWN = "markdown"
    RESULT = "result"
    ERROR = "error"
    CONNECTION = "connection"
    USER_MESSAGE = "user_message"
    CANCEL = "cancel"


class BaseEvent(BaseModel):
    """Base event model for all WebSocket messages"""
    type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    session_id: Optional[str] = None


class StatusEvent(BaseEvent):
    """Phase update emitted after every transition of the loop"""
    type: Literal[EventType.STATUS] = EventType.STATUS
    payload: AgentStatus


class MarkdownEvent(BaseEvent):
    """Partial answer text as it streams"""
    type: Literal[EventType.MARKDOWN] = EventType.MARKDOWN
    payload: str


class ResultPayload(BaseModel):
    outcome: str
    response: str
    request_id: str
    status: str
    efficiency: Optional[float] = None


class ResultEvent(BaseEvent):
    """Final outcome of a run"""
    type: Literal[EventType.RESULT] = EventType.RESULT
    payload: ResultPayload


class ErrorEvent(BaseEvent):
    """Error event"""
    type: Literal[EventType.ERROR] = EventType.ERROR
    payload: Dict[str, Any]
    error_code: Optional[str] = None


class ConnectionEvent(BaseEvent):
    """Connection status event"""
    type: Literal[EventType.CONNECTION] = EventType.CONNECTION
    status: Literal["connected", "disconnected"]


class UserMessage(BaseEvent):
    """A goal submitted by the client"""
    type: Literal[EventType.USER_MESSAGE] = EventType.USER_MESSAGE
    content: str = Field(min_length=1)
    metadata: Optional[Dict[str, Any]] = None


class CancelRequest(BaseEvent):
    """Client asks to cancel the session's active run"""
    type: Literal[EventType.CANCEL] = EventType.CANCEL
