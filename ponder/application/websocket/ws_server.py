from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import ValidationError
import asyncio
import structlog

from ponder.application.agent_service import AgentService
from ponder.application.websocket.connection_manager import ConnectionManager
from ponder.application.websocket.schema.events import (
    EventType, MarkdownEvent, ResultEvent, ResultPayload, StatusEvent, UserMessage
)
from ponder.domain.errors import AgentRunError, SessionBusyError
from ponder.domain.models.agent_state import AgentStatus
from ponder.domain.orchestration.core.main_agent import RunResult
from ponder.domain.streaming.streaming_handler import OutputChannel, TokenBuffer

logger = structlog.get_logger(__name__)

router = APIRouter()


def result_event(session_id: str, result: RunResult) -> ResultEvent:
    return ResultEvent(
        session_id=session_id,
        payload=ResultPayload(
            outcome=result.outcome.value,
            response=result.response,
            request_id=result.request_id,
            status=result.trajectory.status.value,
            efficiency=result.trajectory.efficiency,
        ),
    )


@router.websocket("/ws/sessions/{session_id}")
async def agent_websocket(websocket: WebSocket, session_id: str):
    """Goal submission, status streaming and cancellation for one session"""

    service: AgentService = websocket.app.state.service
    connections: ConnectionManager = websocket.app.state.connections

    await connections.connect(websocket, session_id)
    run_task = None

    try:
        while True:
            data = await websocket.receive_json()
            event_type = data.get("type")

            try:
                if event_type == EventType.USER_MESSAGE:
                    message = UserMessage(**data)
                    if run_task is not None and not run_task.done():
                        await connections.send_error(session_id, "A run is already in progress", "session_busy")
                        continue
                    run_task = asyncio.create_task(
                        process_user_message(service, connections, session_id, message)
                    )

                elif event_type == EventType.CANCEL:
                    if not await service.cancel_run(session_id):
                        await connections.send_error(session_id, "No active run to cancel", "no_active_run")

                else:
                    await connections.send_error(session_id, f"Unsupported event type: {event_type}", "unsupported_event")

            except ValidationError as e:
                await connections.send_error(session_id, f"Invalid message: {e}", "invalid_message")

    except WebSocketDisconnect:
        logger.info("Client disconnected", session_id=session_id)
    finally:
        if run_task is not None and not run_task.done():
            await service.cancel_run(session_id)
            await asyncio.gather(run_task, return_exceptions=True)
        await connections.disconnect(session_id)


async def process_user_message(
    service: AgentService,
    connections: ConnectionManager,
    session_id: str,
    message: UserMessage,
):
    """Run a goal, forwarding status updates and partial answer text to the client"""

    output = OutputChannel()
    buffer = TokenBuffer()

    async def forward_status(status: AgentStatus) -> None:
        await connections.send_event(session_id, StatusEvent(session_id=session_id, payload=status))

    async def forward_output() -> None:
        async for piece in output:
            chunk = buffer.push(piece)
            if chunk:
                await connections.send_event(session_id, MarkdownEvent(session_id=session_id, payload=chunk))
        rest = buffer.flush()
        if rest:
            await connections.send_event(session_id, MarkdownEvent(session_id=session_id, payload=rest))

    forwarder = asyncio.create_task(forward_output())
    try:
        result = await service.run_goal(session_id, message.content, on_status=forward_status, output=output)
        await forwarder
        await connections.send_event(session_id, result_event(session_id, result))

    except SessionBusyError as e:
        await connections.send_error(session_id, str(e), "session_busy")

    except AgentRunError as e:
        await forwarder
        await connections.send_error(session_id, str(e), e.error_type)
        if isinstance(e.partial, RunResult):
            await connections.send_event(session_id, result_event(session_id, e.partial))

    finally:
        if not output.closed:
            await output.close()
        await asyncio.gather(forwarder, return_exceptions=True)
