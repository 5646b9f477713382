"""Turn-based agent loop: model responses interleaved with tool execution.

One ``AgentLoop`` may serve many runs concurrently. Everything a run
mutates lives in its own ``RunContext``; the loop object itself only holds
shared, stateless collaborators. Serialization per session is the
``RunQueue``'s job.
"""

import json
import re
import secrets
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field, replace
from typing import Any, Literal

from claw_lite.abort import AbortSignal
from claw_lite.config import Config, get_config
from claw_lite.context_window import ContextWindowManager
from claw_lite.event_stream import AgentEvent, EventStream, EventSubscriber, stamp_event
from claw_lite.exceptions import (
    ClawLiteError,
    LLMError,
    NoResponseError,
    RunAbortedError,
    ToolNotFoundError,
    is_context_overflow_error,
)
from claw_lite.hooks import (
    AgentHooks,
    HookContext,
    HookOutcome,
    HookRegistry,
    HookStage,
    invoke_hook,
    read_override,
)
from claw_lite.instructions import InstructionLoader
from claw_lite.llm import LLMProvider, Message, ToolCall, ToolDefinition
from claw_lite.logging import get_logger
from claw_lite.task_planner import TaskPlan, TaskPlanner, WorkingSummary
from claw_lite.token_estimator import TokenEstimator
from claw_lite.tool_extraction import ToolCallExtractor, default_tool_call_extractor
from claw_lite.tools.bridge import ToolBridge, ToolCallContext

log = get_logger(__name__)

RunStatus = Literal["completed", "error", "timeout", "aborted"]

NO_REPLY_RE = re.compile(r"\bNO_REPLY\b")
TOOLING_HEADING_RE = re.compile(r"^##\s+Tooling", re.MULTILINE)
TOOL_PROMPT_TEMPLATE = "tool_system_prompt.md"


def _now_ms() -> int:
    return int(time.time() * 1000)


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip().lower()


def default_format_tool_result(result: Any) -> str:
    """Strings pass through; everything else is rendered as indented JSON."""
    if isinstance(result, str):
        return result
    try:
        return json.dumps(result, indent=2)
    except (TypeError, ValueError):
        return str(result)


@dataclass
class ToolExecutionResult:
    tool_call_id: str
    tool_name: str
    args: dict[str, Any]
    duration_ms: int
    success: bool
    result: Any = None
    error: str | None = None


@dataclass
class RunOptions:
    session_id: str | None = None
    run_id: str | None = None
    signal: AbortSignal | None = None
    on_event: EventSubscriber | None = None


@dataclass
class RunContext:
    """State owned by exactly one run."""

    run_id: str | None
    session_id: str
    system_prompt: str
    tools: list[ToolDefinition]
    stream: EventStream
    signal: AbortSignal
    streaming: bool = False
    messages: list[Message] = field(default_factory=list)
    plan: TaskPlan | None = None
    summary: WorkingSummary | None = None
    turn: int = 0
    compaction_attempts: int = 0
    tool_executions: list[ToolExecutionResult] = field(default_factory=list)
    messaging_outputs: list[str] = field(default_factory=list)

    def hook_context(self, prompt: str = "", model: str = "") -> HookContext:
        return HookContext(
            run_id=self.run_id,
            session_id=self.session_id,
            prompt=prompt,
            system_prompt=self.system_prompt,
            messages=self.messages,
            tools=self.tools,
            model=model,
        )


@dataclass
class AgentResult:
    response: str
    messages: list[Message]
    tool_executions: list[ToolExecutionResult]
    turns: int
    duration_ms: int
    run_id: str | None
    session_id: str
    started_at: int
    ended_at: int
    status: RunStatus = "completed"
    error: str | None = None
    plan: TaskPlan | None = None
    summary: WorkingSummary | None = None


@dataclass
class ContentDelta:
    """Incremental assistant text from a streaming response."""

    text: str


@dataclass
class FinalMessage:
    """The complete assistant reply; always the last item of a response."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)


ResponseItem = ContentDelta | FinalMessage


def count_turns(messages: list[Message]) -> int:
    """Count assistant messages that directly follow a user message."""
    turns = 0
    last_role: str | None = None
    for message in messages:
        if message.role == "assistant" and last_role == "user":
            turns += 1
        last_role = message.role
    return turns


async def _next_or_none(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return None


class AgentLoop:
    """Drive a multi-turn dialogue between a model and a set of tools."""

    def __init__(
        self,
        provider: LLMProvider,
        tool_bridge: ToolBridge | None = None,
        config: Config | None = None,
        context_manager: ContextWindowManager | None = None,
        estimator: TokenEstimator | None = None,
        hooks: AgentHooks | HookRegistry | None = None,
        extractor: ToolCallExtractor | None = None,
        planner: TaskPlanner | None = None,
        format_tool_result: Callable[[Any], str] | None = None,
        instructions: InstructionLoader | None = None,
        model: str | None = None,
    ):
        self.config = config or get_config()
        self.provider = provider
        self.tool_bridge = tool_bridge
        self.model = model or getattr(provider, "model", None) or self.config.model.model
        self.estimator = estimator or TokenEstimator.for_model(self.model)
        self.context_manager = context_manager or ContextWindowManager(
            self.config.context, estimator=self.estimator
        )
        if isinstance(hooks, HookRegistry):
            hooks = hooks.get_hooks()
        self.hooks = hooks or AgentHooks()
        self.extractor = extractor or default_tool_call_extractor()
        self.planner = planner or TaskPlanner(
            self.config.planner,
            max_context_tokens=self.config.context.max_tokens,
            reserved_tokens=self.config.context.reserved_tokens,
            estimator=self.estimator,
        )
        self.format_tool_result = format_tool_result or default_format_tool_result
        self.instructions = instructions or InstructionLoader()

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def run(
        self,
        prompt: str,
        system_prompt: str,
        tools: list[ToolDefinition] | None = None,
        options: RunOptions | None = None,
    ) -> AgentResult:
        """Run the loop for one user prompt.

        Handled failures (model errors, overflow after retries, aborts)
        resolve with a non-``completed`` status. Unexpected exceptions are
        reported as an ``error`` event and re-raised.
        """
        options = options or RunOptions()
        started_at = _now_ms()
        session_id = options.session_id or self.config.agent.session_id
        stream = EventStream(options.on_event)

        ctx = RunContext(
            run_id=options.run_id,
            session_id=session_id,
            system_prompt=system_prompt,
            tools=list(tools or []),
            stream=stream,
            signal=options.signal or AbortSignal(),
            streaming=bool(options.on_event) and self.config.agent.streaming,
        )
        user_message = Message(role="user", content=prompt)
        ctx.messages.append(user_message)

        status: RunStatus = "completed"
        error_text: str | None = None
        hook_ctx = ctx.hook_context(prompt, self.model)
        try:
            self._emit(ctx, AgentEvent(type="agent_start"))
            if tools is None and self.tool_bridge is not None:
                ctx.tools = list(await self.tool_bridge.list_tools())
                hook_ctx.tools = ctx.tools
            log.info("Run started", run_id=ctx.run_id or "n/a", session_id=session_id, tools=len(ctx.tools))
            await self._run_before_agent_start(ctx, hook_ctx)
            self._maybe_plan(ctx, hook_ctx.prompt)

            self._emit(ctx, AgentEvent(type="turn_start"))
            self._emit(ctx, AgentEvent(type="message_start", message=user_message))
            self._emit(ctx, AgentEvent(type="message_end", message=user_message))

            await self._run_turns(ctx)
        except RunAbortedError as e:
            status = "timeout" if e.reason == "timeout" else "aborted"
            error_text = str(e)
            log.warning("Run aborted", run_id=ctx.run_id or "n/a", reason=e.reason)
            self._emit(ctx, AgentEvent(type="error", error=error_text))
        except ClawLiteError as e:
            status = "error"
            error_text = str(e)
            log.error("Run failed", run_id=ctx.run_id or "n/a", error=error_text)
            self._emit(ctx, AgentEvent(type="error", error=error_text))
        except Exception as e:
            log.exception("Run crashed", run_id=ctx.run_id or "n/a")
            self._emit(ctx, AgentEvent(type="error", error=str(e) or type(e).__name__))
            self._emit(ctx, AgentEvent(type="agent_end"))
            stream.end()
            raise

        ended_at = _now_ms()
        result = AgentResult(
            response=self._extract_final_response(ctx),
            messages=ctx.messages,
            tool_executions=ctx.tool_executions,
            turns=count_turns(ctx.messages),
            duration_ms=ended_at - started_at,
            run_id=ctx.run_id,
            session_id=session_id,
            started_at=started_at,
            ended_at=ended_at,
            status=status,
            error=error_text,
            plan=ctx.plan,
            summary=ctx.summary,
        )

        hook_ctx.messages = ctx.messages
        await self._run_after_agent_end(ctx, hook_ctx, result)
        self._emit(ctx, AgentEvent(type="agent_end"))
        stream.end()

        log.info(
            "Run finished",
            run_id=ctx.run_id or "n/a",
            session_id=session_id,
            status=status,
            turns=result.turns,
            tool_calls=len(ctx.tool_executions),
            duration_ms=result.duration_ms,
        )
        return result

    # ------------------------------------------------------------------
    # Turns
    # ------------------------------------------------------------------

    async def _run_turns(self, ctx: RunContext) -> None:
        agent_cfg = self.config.agent
        while ctx.turn < agent_cfg.max_turns:
            ctx.turn += 1
            if ctx.turn > 1:
                self._emit(ctx, AgentEvent(type="turn_start"))

            await self._maybe_compact(ctx)
            assistant = await self._respond_with_overflow_retry(ctx)
            ctx.messages.append(assistant)

            tool_calls = self.extractor.extract(assistant)
            if tool_calls:
                assistant.metadata["has_tool_call"] = True
                if not assistant.tool_calls:
                    assistant.tool_calls = list(tool_calls)

            if tool_calls and ctx.turn <= agent_cfg.max_tool_calls:
                for call in tool_calls:
                    await self._handle_tool_call(ctx, call)
                continue

            if tool_calls:
                log.info(
                    "Tool call ceiling reached, ending turn",
                    run_id=ctx.run_id or "n/a",
                    turn=ctx.turn,
                    skipped=len(tool_calls),
                )
            self._emit(ctx, AgentEvent(type="turn_end", message=assistant))
            self._advance_plan(ctx)
            break

    async def _respond_with_overflow_retry(self, ctx: RunContext) -> Message:
        while True:
            try:
                return await self._get_assistant_response(ctx)
            except RunAbortedError:
                raise
            except Exception as e:
                retryable = (
                    is_context_overflow_error(e)
                    and ctx.compaction_attempts < self.config.agent.max_compaction_retries
                )
                if not retryable:
                    if isinstance(e, ClawLiteError):
                        raise
                    raise LLMError(str(e) or type(e).__name__) from e
                ctx.compaction_attempts += 1
                log.warning(
                    "Context overflow, compacting and retrying",
                    run_id=ctx.run_id or "n/a",
                    attempt=ctx.compaction_attempts,
                    max_attempts=self.config.agent.max_compaction_retries,
                    error=str(e),
                )
                await self._maybe_compact(ctx, reason="retry", force=True)

    # ------------------------------------------------------------------
    # Model responses
    # ------------------------------------------------------------------

    def _effective_system_prompt(self, ctx: RunContext) -> str:
        """Append the tool listing unless the prompt already carries one."""
        if not ctx.tools or TOOLING_HEADING_RE.search(ctx.system_prompt):
            return ctx.system_prompt
        descriptions = "\n".join(f"- {tool.name}: {tool.description}" for tool in ctx.tools)
        section = self.instructions.render(TOOL_PROMPT_TEMPLATE, tool_descriptions=descriptions)
        return f"{ctx.system_prompt}\n\n{section}" if ctx.system_prompt else section

    async def _response_items(self, ctx: RunContext) -> AsyncIterator[ResponseItem]:
        """Yield content deltas (streaming only) and then one ``FinalMessage``."""
        system_prompt = self._effective_system_prompt(ctx)
        timeout = self.config.agent.timeout_ms / 1000
        request = dict(
            tools=ctx.tools or None,
            temperature=self.config.model.temperature,
            max_tokens=self.config.model.max_tokens,
            system_prompt=system_prompt,
            model=self.model,
            timeout=timeout,
        )

        if not ctx.streaming:
            response = await ctx.signal.guard(self.provider.complete(list(ctx.messages), **request))
            if response is None:
                raise NoResponseError()
            yield FinalMessage(content=response.content or "", tool_calls=list(response.tool_calls))
            return

        content_parts: list[str] = []
        tool_calls: list[ToolCall] = []
        iterator = self.provider.complete_streaming(list(ctx.messages), **request).__aiter__()
        try:
            while True:
                delta = await ctx.signal.guard(_next_or_none(iterator))
                if delta is None:
                    break
                if delta.tool_calls:
                    tool_calls.extend(delta.tool_calls)
                if delta.content:
                    content_parts.append(delta.content)
                    yield ContentDelta(delta.content)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        if tool_calls:
            log.debug("Streaming returned tool calls", count=len(tool_calls))
        yield FinalMessage(content="".join(content_parts), tool_calls=tool_calls)

    async def _get_assistant_response(self, ctx: RunContext) -> Message:
        assistant = Message(role="assistant", content="")
        self._emit(ctx, AgentEvent(type="message_start", message=assistant))

        try:
            async for item in self._response_items(ctx):
                if isinstance(item, ContentDelta):
                    assistant.content += item.text
                    self._emit(ctx, AgentEvent(type="message_update", message=replace(assistant)))
                else:
                    assistant.content = item.content
                    assistant.tool_calls = item.tool_calls
        except Exception as e:
            self._emit(ctx, AgentEvent(type="message_end", message=assistant, error=str(e) or type(e).__name__))
            raise

        self._emit(ctx, AgentEvent(type="message_end", message=assistant))
        return assistant

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    async def _maybe_compact(self, ctx: RunContext, reason: str = "preflight", force: bool = False) -> None:
        if not force and self.context_manager.fits(ctx.messages, ctx.system_prompt, self.model):
            return

        if ctx.summary is not None and self._apply_summary_context(ctx, reason):
            return

        original_count = len(ctx.messages)
        result = self.context_manager.compress_history(ctx.messages, ctx.system_prompt, self.model)
        ctx.messages = result.messages

        log.info(
            "Context compacted",
            run_id=ctx.run_id or "n/a",
            reason=reason,
            strategy=result.strategy_used,
            original_messages=original_count,
            compressed_messages=len(result.messages),
        )
        self._emit(ctx, AgentEvent(
            type="compaction",
            original_messages=original_count,
            compressed_messages=len(result.messages),
            compression_ratio=result.compression_ratio,
            compaction_reason=reason,
        ))

    def _apply_summary_context(self, ctx: RunContext, reason: str) -> bool:
        """Replace history with the working summary plus the last two messages."""
        summary_text = ctx.summary.render() if ctx.summary else ""
        if not summary_text.strip():
            return False

        tail = ctx.messages[-2:]
        ctx.messages = [Message(role="user", content=summary_text), *tail]
        log.info("Context replaced by working summary", run_id=ctx.run_id or "n/a", reason=reason)
        self._emit(ctx, AgentEvent(
            type="context_replace",
            summary=ctx.summary,
            replace_reason=f"summary_{reason}",
        ))
        return True

    # ------------------------------------------------------------------
    # Tools
    # ------------------------------------------------------------------

    def _new_tool_call_id(self) -> str:
        return f"tool_{_now_ms()}_{secrets.token_hex(5)[:9]}"

    async def _handle_tool_call(self, ctx: RunContext, call: ToolCall) -> None:
        execution = await self._execute_tool_call(ctx, call)
        ctx.tool_executions.append(execution)

        if execution.success:
            content = f"Tool {execution.tool_name} result: {self.format_tool_result(execution.result)}"
        else:
            content = f"Tool {execution.tool_name} error: {execution.error}"
        ctx.messages.append(Message(role="user", content=content))

        self._emit(ctx, AgentEvent(
            type="tool_result" if execution.success else "tool_error",
            tool_call_id=execution.tool_call_id,
            tool_name=execution.tool_name,
            args=execution.args,
            result=execution.result,
            error=execution.error,
            duration_ms=execution.duration_ms,
        ))

        await self._run_after_tool_call(ctx, execution)

        if ctx.summary is not None:
            change = (
                f"Tool {execution.tool_name} completed"
                if execution.success
                else f"Tool {execution.tool_name} failed: {execution.error or 'unknown error'}"
            )
            ctx.summary = self.planner.update_working_summary(ctx.summary, changes=[change])
            self._emit(ctx, AgentEvent(type="summary_update", summary=ctx.summary))

    async def _execute_tool_call(self, ctx: RunContext, call: ToolCall) -> ToolExecutionResult:
        start = time.time()
        tool_call_id = self._new_tool_call_id()
        self._emit(ctx, AgentEvent(
            type="tool_execution_start",
            tool_call_id=tool_call_id,
            tool_name=call.name,
            args=call.arguments,
        ))

        arguments = call.arguments
        try:
            if not any(tool.name == call.name for tool in ctx.tools):
                raise ToolNotFoundError(call.name)
            if self.tool_bridge is None:
                raise ClawLiteError("Tool bridge not configured")

            arguments = await self._run_before_tool_call(ctx, call)
            result = await ctx.signal.guard(self.tool_bridge.execute(
                call.name,
                arguments,
                ToolCallContext(
                    tool_call_id=tool_call_id,
                    start_time=start,
                    session_id=ctx.session_id,
                    signal=ctx.signal,
                ),
            ))
        except RunAbortedError:
            raise
        except Exception as e:
            duration_ms = int((time.time() - start) * 1000)
            log.warning(
                "Tool failed",
                run_id=ctx.run_id or "n/a",
                tool=call.name,
                duration_ms=duration_ms,
                error=str(e),
            )
            return ToolExecutionResult(
                tool_call_id=tool_call_id,
                tool_name=call.name,
                args=arguments,
                duration_ms=duration_ms,
                success=False,
                error=str(e) or type(e).__name__,
            )

        duration_ms = int((time.time() - start) * 1000)
        log.info("Tool completed", run_id=ctx.run_id or "n/a", tool=call.name, duration_ms=duration_ms)
        self._emit(ctx, AgentEvent(
            type="tool_update",
            tool_call_id=tool_call_id,
            tool_name=call.name,
            args=arguments,
            result=self.format_tool_result(result),
            duration_ms=duration_ms,
        ))
        self._record_messaging_output(ctx, call.name, result)
        return ToolExecutionResult(
            tool_call_id=tool_call_id,
            tool_name=call.name,
            args=arguments,
            duration_ms=duration_ms,
            success=True,
            result=result,
        )

    def _record_messaging_output(self, ctx: RunContext, tool_name: str, result: Any) -> None:
        if tool_name not in self.config.agent.messaging_tool_names:
            return
        formatted = self.format_tool_result(result).strip()
        if not formatted:
            return
        ctx.messaging_outputs.append(formatted)
        limit = self.config.agent.messaging_history_limit
        if len(ctx.messaging_outputs) > limit:
            del ctx.messaging_outputs[: len(ctx.messaging_outputs) - limit]

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def _maybe_plan(self, ctx: RunContext, prompt: str) -> None:
        if not self.config.planner.enabled:
            return
        decision = self.planner.should_plan(prompt, ctx.system_prompt)
        if not decision.should_plan:
            return
        ctx.plan = self.planner.create_plan(prompt)
        ctx.summary = self.planner.create_working_summary(ctx.plan)
        log.info(
            "Plan created",
            run_id=ctx.run_id or "n/a",
            reason=decision.reason,
            steps=len(ctx.plan.steps),
        )
        self._emit(ctx, AgentEvent(type="plan_created", plan=ctx.plan, summary=ctx.summary))

    def _advance_plan(self, ctx: RunContext) -> None:
        if ctx.plan is None or ctx.summary is None:
            return
        finished, upcoming = self.planner.advance(ctx.plan)
        if finished is None:
            return
        ctx.summary = self.planner.update_working_summary(
            ctx.summary,
            changes=[f"Completed step: {finished.title}"],
            next_step=upcoming.title if upcoming else None,
        )
        self._emit(ctx, AgentEvent(type="plan_step", step=finished, plan=ctx.plan))
        self._emit(ctx, AgentEvent(type="summary_update", summary=ctx.summary))

    # ------------------------------------------------------------------
    # Final response
    # ------------------------------------------------------------------

    def _extract_final_response(self, ctx: RunContext) -> str:
        last_assistant = next((msg for msg in reversed(ctx.messages) if msg.role == "assistant"), None)
        cleaned = ""
        if last_assistant is not None:
            cleaned = NO_REPLY_RE.sub("", last_assistant.content or "").strip()

        if cleaned:
            if self._is_duplicate_messaging_reply(ctx, cleaned):
                return ""
            return cleaned

        failures = [execution for execution in ctx.tool_executions if not execution.success]
        if not failures or len(failures) != len(ctx.tool_executions):
            return ""
        if len(failures) == 1:
            failure = failures[0]
            return f"A tool failed: {failure.tool_name} - {failure.error or 'unknown error'}"
        details = "\n".join(
            f"- {failure.tool_name}: {failure.error or 'unknown error'}" for failure in failures
        )
        return f"Multiple tools failed:\n{details}"

    def _is_duplicate_messaging_reply(self, ctx: RunContext, reply: str) -> bool:
        normalized = _normalize_text(reply)
        if not normalized:
            return False
        return any(_normalize_text(output) == normalized for output in ctx.messaging_outputs)

    # ------------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------------

    def _report_hook(self, ctx: RunContext, outcome: HookOutcome) -> None:
        if outcome.ok:
            return
        self._emit(ctx, AgentEvent(
            type="warning",
            hook=outcome.stage,
            message=outcome.hook_name,
            error=outcome.error,
        ))

    async def _invoke(self, ctx: RunContext, stage: HookStage, hook: Callable[..., Any], *args: Any) -> HookOutcome:
        outcome = await invoke_hook(stage, hook, *args)
        self._report_hook(ctx, outcome)
        return outcome

    async def _run_before_agent_start(self, ctx: RunContext, hook_ctx: HookContext) -> None:
        for hook in self.hooks.before_agent_start:
            outcome = await self._invoke(ctx, "before_agent_start", hook, hook_ctx)
            if not outcome.ok or outcome.value is None:
                continue
            prompt = read_override(outcome.value, "prompt")
            if prompt:
                if ctx.messages and ctx.messages[0].role == "user" and ctx.messages[0].content == hook_ctx.prompt:
                    ctx.messages[0].content = prompt
                hook_ctx.prompt = prompt
            system_prompt = read_override(outcome.value, "system_prompt")
            if system_prompt:
                ctx.system_prompt = system_prompt
                hook_ctx.system_prompt = system_prompt
            messages = read_override(outcome.value, "messages")
            if messages:
                ctx.messages = list(messages)
                hook_ctx.messages = ctx.messages

    async def _run_after_agent_end(self, ctx: RunContext, hook_ctx: HookContext, result: AgentResult) -> None:
        for hook in self.hooks.after_agent_end:
            await self._invoke(ctx, "after_agent_end", hook, hook_ctx, result)

    async def _run_before_tool_call(self, ctx: RunContext, call: ToolCall) -> dict[str, Any]:
        hook_ctx = ctx.hook_context(model=self.model)
        current = call
        for hook in self.hooks.before_tool_call:
            outcome = await self._invoke(ctx, "before_tool_call", hook, hook_ctx, current)
            if not outcome.ok:
                continue
            arguments = read_override(outcome.value, "arguments")
            if arguments is not None:
                current = replace(current, arguments=arguments)
        return current.arguments

    async def _run_after_tool_call(self, ctx: RunContext, execution: ToolExecutionResult) -> None:
        hook_ctx = ctx.hook_context(model=self.model)
        for hook in self.hooks.after_tool_call:
            await self._invoke(ctx, "after_tool_call", hook, hook_ctx, execution)

    # ------------------------------------------------------------------

    def _emit(self, ctx: RunContext, event: AgentEvent) -> None:
        ctx.stream.push(stamp_event(event, ctx.run_id, ctx.session_id))
