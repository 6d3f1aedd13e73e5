from typing import TypedDict, Dict, Any, List, Optional, Callable, Set
from dataclasses import dataclass, field
from enum import Enum
from langgraph.graph import StateGraph, END
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage
from pydantic import BaseModel
import inspect
import json
import math
import uuid
import structlog

from ponder.domain.context.context_manager import ContextBuilder
from ponder.domain.context.context_ranker import ContextRanker
from ponder.domain.context.memory.episodic_memory import (
    format_reflections_for_context, get_error_count, get_relevant_reflections,
    is_repeated_error, mark_reflection_applied, normalize_value, store_reflection
)
from ponder.domain.context.memory.reflection_generator import ReflectionGenerator
from ponder.domain.errors import RunCancelled
from ponder.domain.models.agent_state import (
    AgentPhase, AgentState, AgentStatus, AgentStep, AgentTrajectory, ContextEntryType,
    StepType, TokenCounts, ToolCall, ToolFailure, TrajectoryStatus
)
from ponder.domain.models.trajectory_log import TrajectoryLog
from ponder.domain.orchestration.cancellation import CancellationToken
from ponder.domain.orchestration.core.degradation import RunConfig, degrade_config, is_search_failure
from ponder.domain.orchestration.core.prompts import (
    OBSERVATION_SYSTEM_PROMPT, SYNTHESIS_SYSTEM_TEMPLATE, SynthesisStreamFilter,
    build_observation_prompt, build_reasoning_prompt, build_synthesis_prompt, build_system_prompt,
    extract_synthesis, is_goal_achieved, language_name, parse_agent_response, render_tool_result
)
from ponder.domain.reasoning.reasoning_model import ReasoningModel, ReasoningResponse, complete
from ponder.domain.streaming.streaming_handler import OutputChannel
from ponder.domain.tokens.token_tracker import is_budget_exceeded, reset_current_operation, track_usage
from ponder.domain.tool.tool_definitions import SEARCH_TOOLS
from ponder.domain.tool.tool_executor import ToolExecutor
from ponder.domain.tool.tool_registry import ToolRegistry, format_tools_for_prompt, serialize_tool_call
from ponder.domain.trajectory.trajectory_logger import (
    calculate_efficiency, create_trajectory_log, log_error, log_observation, log_reflection,
    log_thought, log_tool_call, log_tool_result, set_optimal_steps, update_token_usage
)
from ponder.infrastructure.observability.logging import agent_logger
from ponder.infrastructure.tokenizer import TokenCounter

logger = structlog.get_logger(__name__)

StatusSink = Callable[[AgentStatus], Any]

THINKING = "thinking"
EXECUTING = "executing"
ANALYZING = "analyzing"
REFLECTING = "reflecting"
SYNTHESIZING = "synthesizing"


class RunOutcome(str, Enum):
    """How a run ended"""
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunResult(BaseModel):
    """What a caller gets back from a run"""
    outcome: RunOutcome
    session_id: str
    request_id: str
    response: str
    trajectory: AgentTrajectory
    log: TrajectoryLog


@dataclass
class RunContext:
    """Mutable per-run state threaded through the graph nodes.

    ``state`` is the session's AgentState; nodes replace its fields but never
    the object itself, so status sinks holding a reference see every change.
    """
    state: AgentState
    goal: str
    config: RunConfig
    cancel_token: CancellationToken
    log: TrajectoryLog
    request_id: str
    on_status: Optional[StatusSink] = None
    output: Optional[OutputChannel] = None
    phase: AgentPhase = AgentPhase.IDLE
    step_number: int = 0
    pending_call: Optional[ToolCall] = None
    last_call: Optional[ToolCall] = None
    last_result: Any = None
    synthesis: Optional[str] = None
    streamed: bool = False
    goal_achieved: bool = False
    halt_reason: Optional[str] = None
    retry_counts: Dict[str, int] = field(default_factory=dict)
    inject_reflections: bool = False
    reflection_focus: Optional[ToolCall] = None
    alternative_hint: Optional[str] = None

    @property
    def session_id(self) -> str:
        return self.state.session_id

    @property
    def trajectory(self) -> AgentTrajectory:
        return self.state.trajectory

    @property
    def disabled_tools(self) -> Set[str]:
        return self.config.disabled_tools


class WorkflowState(TypedDict):
    """State for the workflow graph"""
    run: RunContext
    next_phase: str


def retry_key(tool_call: ToolCall) -> str:
    """Identity of an action for retry counting: tool name plus normalized parameters"""

    params = {str(k): normalize_value(v) for k, v in tool_call.parameters.items()}
    return f"{tool_call.name}:{json.dumps(params, sort_keys=True, default=str)}"


def get_final_response(trajectory: Optional[AgentTrajectory]) -> str:
    """Best human-facing answer a trajectory holds, partial results included"""

    if trajectory is None:
        return "[No result - no trajectory]"

    status = trajectory.status.value
    for step_type in (StepType.SYNTHESIS, StepType.OBSERVATION, StepType.THOUGHT):
        for step in reversed(trajectory.steps):
            if step.type != step_type or not step.content.strip():
                continue
            if step_type == StepType.SYNTHESIS:
                return step.content
            if step_type == StepType.OBSERVATION:
                return f"[Partial Result - {status}]\n{step.content}"
            return f"[Incomplete - {status}]\n{step.content}"
    return f"[No result - {status}]"


class AgentOrchestrator:
    """Think, act, observe, reflect loop on a LangGraph state machine"""

    def __init__(
        self,
        model: ReasoningModel,
        registry: ToolRegistry,
        executor: Optional[ToolExecutor] = None,
        token_counter: Optional[TokenCounter] = None,
    ):
        self.model = model
        self.registry = registry
        self.executor = executor or ToolExecutor(registry)
        self.token_counter = token_counter
        self.context_builder = ContextBuilder(token_counter)
        self.ranker = ContextRanker()
        self.reflector = ReflectionGenerator(model, token_counter)
        self.workflow = self._create_workflow()

    def _create_workflow(self):
        """Create the phase graph"""

        workflow = StateGraph(WorkflowState)

        workflow.add_node(THINKING, self.thinking_node)
        workflow.add_node(EXECUTING, self.executing_node)
        workflow.add_node(ANALYZING, self.analyzing_node)
        workflow.add_node(REFLECTING, self.reflecting_node)
        workflow.add_node(SYNTHESIZING, self.synthesizing_node)

        workflow.set_entry_point(THINKING)

        workflow.add_conditional_edges(
            THINKING,
            self.route_next_phase,
            {EXECUTING: EXECUTING, SYNTHESIZING: SYNTHESIZING}
        )
        workflow.add_conditional_edges(
            EXECUTING,
            self.route_next_phase,
            {ANALYZING: ANALYZING, SYNTHESIZING: SYNTHESIZING}
        )
        workflow.add_conditional_edges(
            ANALYZING,
            self.route_next_phase,
            {THINKING: THINKING, REFLECTING: REFLECTING, SYNTHESIZING: SYNTHESIZING}
        )
        workflow.add_conditional_edges(
            REFLECTING,
            self.route_next_phase,
            {THINKING: THINKING, SYNTHESIZING: SYNTHESIZING}
        )
        workflow.add_edge(SYNTHESIZING, END)

        return workflow.compile()

    def route_next_phase(self, state: WorkflowState) -> str:
        return state["next_phase"]

    def prepare_run(
        self,
        state: AgentState,
        goal: str,
        config: RunConfig,
        cancel_token: CancellationToken,
        request_id: Optional[str] = None,
        on_status: Optional[StatusSink] = None,
        output: Optional[OutputChannel] = None,
    ) -> RunContext:
        """Start a fresh trajectory for a goal on an existing session"""

        request_id = request_id or f"req_{uuid.uuid4().hex[:12]}"
        state.trajectory = AgentTrajectory(request_id=request_id, goal=goal)

        if state.context.history or state.context.grounding.current_goal:
            context = self.context_builder.set_goal(state.context, goal)
        else:
            context = self.context_builder.create_context(goal, config.max_context_tokens)
        context = self.context_builder.resize(context, config.max_context_tokens)
        state.context = self.context_builder.add_message(context, ContextEntryType.USER, goal)
        state.token_usage = reset_current_operation(state.token_usage)
        state.touch()

        return RunContext(
            state=state,
            goal=goal,
            config=config,
            cancel_token=cancel_token,
            log=create_trajectory_log(request_id),
            request_id=request_id,
            on_status=on_status,
            output=output,
        )

    async def execute(self, run: RunContext) -> RunResult:
        """One attempt of the loop; the trajectory is finished when it returns"""

        if run.config.attempt == 0 and run.step_number == 0:
            await self._emit(run, AgentPhase.IDLE)

        try:
            await self.workflow.ainvoke(
                {"run": run, "next_phase": THINKING},
                config={"recursion_limit": run.config.max_steps * 5 + 10},
            )
        except RunCancelled:
            return await self.cancelled(run)
        except Exception:
            if run.cancel_token.cancelled:
                return await self.cancelled(run)
            raise

        await self._emit(run, AgentPhase.DONE)
        return await self._close(run, self._outcome(run))

    async def cancelled(self, run: RunContext) -> RunResult:
        """Terminate the trajectory after an external cancellation"""

        run.trajectory.finish(TrajectoryStatus.TERMINATED)
        logger.info(
            "Run cancelled",
            session_id=run.session_id,
            request_id=run.request_id,
            reason=run.cancel_token.reason,
        )
        return await self._close(run, RunOutcome.CANCELLED)

    async def fail(self, run: RunContext, message: str) -> RunResult:
        """Give up on the run, keeping whatever partial result exists"""

        run.trajectory.finish(TrajectoryStatus.FAILED)
        logger.error("Run failed", session_id=run.session_id, request_id=run.request_id, error=message)
        return await self._close(run, RunOutcome.FAILED)

    def record_error(self, run: RunContext, message: str, context_state: Optional[Dict[str, Any]] = None) -> None:
        run.log = log_error(run.log, run.step_number, message, context_state)

    def degrade(self, run: RunContext, context_ratio: float) -> None:
        """Shrink the context ceiling and remaining steps for a re-entry"""

        run.config = degrade_config(run.config, run.step_number, context_ratio)
        run.state.context = self.context_builder.resize(run.state.context, run.config.max_context_tokens)
        run.pending_call = None

    async def thinking_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Ask the model for the next tool call or the final answer"""

        run = state["run"]
        if self._budget_exhausted(run):
            return self._halt(run, "token budget exhausted")
        if run.step_number >= run.config.max_steps:
            return self._halt(run, "step limit reached")

        run.step_number += 1
        await self._enter(run, AgentPhase.THINKING)

        tools = self.ranker.order_tools(run.goal, self.registry.get_tool_schemas(exclude=run.disabled_tools))
        reflections = format_reflections_for_context(self._focused_reflections(run)) if run.inject_reflections else ""
        system_prompt = build_system_prompt(run.goal, format_tools_for_prompt(tools), reflections, run.config.language)
        context_text = self.context_builder.render(run.state.context, include_reflections=not run.inject_reflections)
        messages = [
            SystemMessage(content=system_prompt),
            HumanMessage(content=build_reasoning_prompt(context_text, run.last_result, run.alternative_hint)),
        ]

        response = await self._call_model(run, messages)
        parsed = parse_agent_response(response.text)
        thought = parsed.thought or (parsed.tool_call.reasoning if parsed.tool_call else "") or response.text.strip()

        run.trajectory.add_step(AgentStep(
            step_number=run.step_number,
            type=StepType.THOUGHT,
            content=thought,
            token_count=response.usage.total,
        ))
        run.log = log_thought(run.log, run.step_number, thought)
        if response.text.strip():
            run.state.context = self.context_builder.add_message(
                run.state.context, ContextEntryType.ASSISTANT, response.text.strip()
            )
        run.alternative_hint = None

        if parsed.synthesis:
            run.synthesis = parsed.synthesis
            run.goal_achieved = True
            return {"next_phase": SYNTHESIZING}

        if parsed.tool_call is not None:
            run.pending_call = parsed.tool_call
            self._apply_relevant_reflections(run, parsed.tool_call)
            return {"next_phase": EXECUTING}

        # plain prose with neither tag is taken as the answer
        if response.text.strip():
            run.synthesis = response.text.strip()
            run.goal_achieved = True
        return {"next_phase": SYNTHESIZING}

    async def executing_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Validate and run the pending tool call"""

        run = state["run"]
        if self._budget_exhausted(run):
            return self._halt(run, "token budget exhausted")

        tool_call = run.pending_call
        await self._enter(run, AgentPhase.EXECUTING, current_tool=tool_call.name)

        result = await self.executor.execute_tool(
            tool_call,
            run.cancel_token,
            session_id=run.session_id,
            exclude=run.disabled_tools,
        )
        if result.token_count:
            self._spend(run, TokenCounts(input=result.token_count))

        run.trajectory.add_step(AgentStep(
            step_number=run.step_number,
            type=StepType.ACTION,
            content=f"Executed {tool_call.name}",
            tool_call=tool_call,
            tool_result=result,
            token_count=result.token_count,
        ))
        run.log = log_tool_call(run.log, run.step_number, tool_call)
        run.log = log_tool_result(run.log, run.step_number, result)

        outcome = render_tool_result(result) if result.success else f"Error: {result.error}"
        run.state.context = self.context_builder.add_message(
            run.state.context, ContextEntryType.TOOL, f"{tool_call.name} -> {outcome}"
        )

        run.last_call = tool_call
        run.last_result = result
        run.pending_call = None
        return {"next_phase": ANALYZING}

    async def analyzing_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Decide whether the last result finishes the goal, needs more steps, or failed"""

        run = state["run"]
        if self._budget_exhausted(run):
            return self._halt(run, "token budget exhausted")

        await self._enter(run, AgentPhase.ANALYZING)
        tool_call, result = run.last_call, run.last_result

        if is_search_failure(tool_call, result) and not SEARCH_TOOLS <= run.disabled_tools:
            run.disabled_tools.update(SEARCH_TOOLS)
            run.state.context = self.context_builder.record_key_decision(
                run.state.context, "Web search is unavailable; continue without it"
            )
            logger.warning("Retrieval disabled for the rest of the run", session_id=run.session_id)

        if isinstance(result, ToolFailure):
            return {"next_phase": REFLECTING}

        run.inject_reflections = False
        run.reflection_focus = None

        messages = [
            SystemMessage(content=OBSERVATION_SYSTEM_PROMPT),
            HumanMessage(content=build_observation_prompt(tool_call, result, run.goal)),
        ]
        response = await self._call_model(run, messages, stream=False)
        observation = response.text.strip()

        run.trajectory.add_step(AgentStep(
            step_number=run.step_number,
            type=StepType.OBSERVATION,
            content=observation,
            token_count=response.usage.total,
        ))
        run.log = log_observation(run.log, run.step_number, observation)
        if observation:
            run.state.context = self.context_builder.add_message(
                run.state.context, ContextEntryType.OBSERVATION, observation
            )

        if is_goal_achieved(observation, run.goal):
            run.goal_achieved = True
            run.state.context = self.context_builder.mark_subtask_complete(
                run.state.context, tool_call.reasoning or f"{tool_call.name} for: {run.goal}"
            )
            return {"next_phase": SYNTHESIZING}
        return {"next_phase": THINKING}

    async def reflecting_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Learn from a failed action before the next thinking pass"""

        run = state["run"]
        if self._budget_exhausted(run):
            return self._halt(run, "token budget exhausted")

        await self._enter(run, AgentPhase.REFLECTING)
        tool_call, result = run.last_call, run.last_result

        key = retry_key(tool_call)
        run.retry_counts[key] = run.retry_counts.get(key, 0) + 1
        if run.retry_counts[key] > run.config.max_retries:
            run.log = log_error(
                run.log,
                run.step_number,
                f"Retry limit reached for {tool_call.name}: {result.error}",
                {"tool": tool_call.name, "retries": run.retry_counts[key]},
            )
            return {"next_phase": THINKING}

        reflection, usage = await self.reflector.generate_reflection(
            tool_call, result.error, run.state.context, run.cancel_token
        )
        self._spend(run, usage)
        run.state.memory = store_reflection(run.state.memory, reflection)

        content = f"{reflection.analysis} Suggested fix: {reflection.suggested_fix}"
        run.trajectory.add_step(AgentStep(
            step_number=run.step_number,
            type=StepType.REFLECTION,
            content=content,
            token_count=usage.total,
        ))
        run.log = log_reflection(run.log, run.step_number, content, trigger_condition=reflection.error_type)

        repeated = is_repeated_error(reflection.error_type, run.state.memory)
        agent_logger.log_reflection(
            run.session_id,
            reflection.error_type,
            repeated,
            get_error_count(reflection.error_type, run.state.memory),
        )

        if repeated:
            run.inject_reflections = True
            run.reflection_focus = tool_call
            alternative, alt_usage = await self.reflector.suggest_alternative(
                tool_call,
                run.state.memory,
                self.registry.tool_names(exclude=run.disabled_tools),
                run.cancel_token,
            )
            self._spend(run, alt_usage)
            run.alternative_hint = serialize_tool_call(alternative)

        return {"next_phase": THINKING}

    async def synthesizing_node(self, state: WorkflowState) -> Dict[str, Any]:
        """Produce the final answer and close the trajectory"""

        run = state["run"]
        await self._enter(run, AgentPhase.SYNTHESIZING)

        answer = run.synthesis
        if answer is None and run.goal_achieved and not self._budget_exhausted(run):
            language = language_name(run.config.language)
            messages = [
                SystemMessage(content=SYNTHESIS_SYSTEM_TEMPLATE.format(language=language)),
                HumanMessage(content=build_synthesis_prompt(
                    self.context_builder.render(run.state.context), run.goal
                )),
            ]
            response = await self._call_model(run, messages)
            answer = extract_synthesis(response.text) or response.text.strip() or None

        if answer:
            if run.output is not None and not run.streamed:
                await run.output.send(answer)
                run.streamed = True
            run.trajectory.add_step(AgentStep(
                step_number=run.step_number,
                type=StepType.SYNTHESIS,
                content=answer,
            ))

        completed = bool(answer) and run.goal_achieved
        run.trajectory.finish(TrajectoryStatus.COMPLETED if completed else TrajectoryStatus.FAILED)
        if not completed:
            logger.warning(
                "Run ended without reaching the goal",
                session_id=run.session_id,
                reason=run.halt_reason or "no answer produced",
            )

        actions = sum(1 for step in run.trajectory.steps if step.type == StepType.ACTION)
        optimal = min(3, math.ceil(actions / 2) + 1)
        run.log = set_optimal_steps(run.log, optimal)
        run.trajectory.efficiency = calculate_efficiency(run.log, optimal)
        return {"next_phase": END}

    def _outcome(self, run: RunContext) -> RunOutcome:
        if run.trajectory.status == TrajectoryStatus.COMPLETED:
            return RunOutcome.COMPLETED
        if run.trajectory.status == TrajectoryStatus.TERMINATED:
            return RunOutcome.CANCELLED
        return RunOutcome.FAILED

    async def _close(self, run: RunContext, outcome: RunOutcome) -> RunResult:
        await self._emit(run, AgentPhase.IDLE)
        if run.output is not None:
            await run.output.close()
        return RunResult(
            outcome=outcome,
            session_id=run.session_id,
            request_id=run.request_id,
            response=get_final_response(run.trajectory),
            trajectory=run.trajectory,
            log=run.log,
        )

    def _budget_exhausted(self, run: RunContext) -> bool:
        return is_budget_exceeded(run.state.token_usage)

    def _halt(self, run: RunContext, reason: str) -> Dict[str, Any]:
        run.halt_reason = reason
        logger.info("Loop halted", session_id=run.session_id, step_number=run.step_number, reason=reason)
        return {"next_phase": SYNTHESIZING}

    async def _enter(self, run: RunContext, phase: AgentPhase, current_tool: Optional[str] = None) -> None:
        run.cancel_token.raise_if_cancelled()
        agent_logger.log_phase_transition(run.session_id, run.phase.value, phase.value, run.step_number)
        await self._emit(run, phase, current_tool)

    async def _emit(self, run: RunContext, phase: AgentPhase, current_tool: Optional[str] = None) -> None:
        """Publish a status update to the run's sink"""

        run.phase = phase
        run.state.touch()
        if run.on_status is None:
            return
        status = AgentStatus(
            session_id=run.session_id,
            phase=phase,
            step_number=run.step_number,
            max_steps=run.config.max_steps,
            token_usage=run.state.token_usage.session_total,
            current_tool=current_tool,
        )
        outcome = run.on_status(status)
        if inspect.isawaitable(outcome):
            await outcome

    def _spend(self, run: RunContext, usage: TokenCounts) -> None:
        """Account tokens on the session, the trajectory and the log"""

        run.state.token_usage = track_usage(run.state.token_usage, usage.input, usage.output)
        run.trajectory.total_tokens = run.trajectory.total_tokens.plus(usage)
        run.log = update_token_usage(run.log, usage)

    async def _call_model(
        self,
        run: RunContext,
        messages: List[BaseMessage],
        stream: bool = True,
    ) -> ReasoningResponse:
        """Model call under the run's token; synthesis text is streamed to the output channel"""

        stream_filter = SynthesisStreamFilter()

        async def forward(piece: str) -> None:
            text = stream_filter.feed(piece)
            if text:
                await run.output.send(text)
                run.streamed = True

        on_text = forward if stream and run.output is not None else None
        response = await complete(
            self.model,
            messages,
            run.cancel_token,
            on_text=on_text,
            token_counter=self.token_counter,
        )
        if on_text is not None:
            tail = stream_filter.flush()
            if tail:
                await run.output.send(tail)
                run.streamed = True

        self._spend(run, response.usage)
        return response

    def _focused_reflections(self, run: RunContext):
        memory = run.state.memory
        if run.reflection_focus is not None:
            relevant = get_relevant_reflections(run.reflection_focus, memory)
            if relevant:
                return relevant
        return memory.reflections

    def _apply_relevant_reflections(self, run: RunContext, tool_call: ToolCall) -> None:
        """Pull reflections matching the candidate call into the context"""

        relevant = get_relevant_reflections(tool_call, run.state.memory)
        if not relevant:
            return
        memory = run.state.memory
        for reflection in relevant:
            memory = mark_reflection_applied(memory, reflection.id)
        run.state.memory = memory
        ids = {r.id for r in relevant}
        applied = [r for r in memory.reflections if r.id in ids]
        run.state.context = self.context_builder.attach_reflections(run.state.context, applied)
