from typing import Annotated, Any, Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field
import structlog

from ponder.application.agent_service import AgentService
from ponder.domain.errors import AgentRunError, AgentTimeoutError, SessionBusyError, SessionNotFoundError
from ponder.domain.orchestration.core.main_agent import RunResult
from ponder.domain.trajectory.trajectory_logger import export_log

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


class RunRequest(BaseModel):
    goal: str = Field(min_length=1)
    request_id: Optional[str] = None


class RunResponse(BaseModel):
    session_id: str
    request_id: str
    outcome: str
    status: str
    response: str
    steps: int
    efficiency: Optional[float] = None
    error: Optional[str] = None
    error_type: Optional[str] = None


def get_service(request: Request) -> AgentService:
    return request.app.state.service


def to_run_response(result: RunResult, error: Optional[AgentRunError] = None) -> RunResponse:
    return RunResponse(
        session_id=result.session_id,
        request_id=result.request_id,
        outcome=result.outcome.value,
        status=result.trajectory.status.value,
        response=result.response,
        steps=len(result.trajectory.steps),
        efficiency=result.trajectory.efficiency,
        error=str(error) if error else None,
        error_type=error.error_type if error else None,
    )


@router.post("", status_code=201)
async def create_session(service: Annotated[AgentService, Depends(get_service)]) -> Dict[str, Any]:
    state = await service.create_session()
    return {
        "session_id": state.session_id,
        "websocket_url": f"/ws/sessions/{state.session_id}",
        "budget": state.token_usage.budget,
    }


@router.get("")
async def list_sessions(service: Annotated[AgentService, Depends(get_service)]) -> Dict[str, List[str]]:
    return {"sessions": await service.list_sessions()}


@router.get("/{session_id}")
async def get_session(session_id: str, service: Annotated[AgentService, Depends(get_service)]) -> Dict[str, Any]:
    try:
        return await service.describe_session(session_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))


@router.delete("/{session_id}", status_code=204)
async def end_session(session_id: str, service: Annotated[AgentService, Depends(get_service)]) -> Response:
    await service.end_session(session_id)
    return Response(status_code=204)


@router.post("/{session_id}/runs")
async def run_goal(
    session_id: str,
    request: RunRequest,
    service: Annotated[AgentService, Depends(get_service)],
):
    """Run a goal to the end and return the answer"""

    try:
        await service.get_session(session_id)
        result = await service.run_goal(session_id, request.goal, request_id=request.request_id)
    except SessionNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except AgentRunError as e:
        logger.warning("Run ended with an error", session_id=session_id, error_type=e.error_type)
        status_code = 504 if isinstance(e, AgentTimeoutError) else 502
        if isinstance(e.partial, RunResult):
            body = to_run_response(e.partial, e).model_dump()
        else:
            body = {"detail": str(e), "error_type": e.error_type}
        return JSONResponse(status_code=status_code, content=body)

    return to_run_response(result)


@router.delete("/{session_id}/runs")
async def cancel_run(session_id: str, service: Annotated[AgentService, Depends(get_service)]) -> Dict[str, Any]:
    cancelled = await service.cancel_run(session_id)
    if not cancelled:
        raise HTTPException(status_code=404, detail=f"No active run for session {session_id}")
    return {"session_id": session_id, "cancelled": True}


@router.get("/{session_id}/log")
async def get_log(
    session_id: str,
    service: Annotated[AgentService, Depends(get_service)],
    format: str = "json",
):
    """Trajectory log of the session's most recent run"""

    log = service.get_log(session_id)
    if log is None:
        raise HTTPException(status_code=404, detail=f"No trajectory log for session {session_id}")
    if format == "text":
        return PlainTextResponse(export_log(log))
    return log.model_dump(mode="json")
