"""
Scenario Agent - One Hypothesis, One Investigation Loop

A scenario agent investigates a single hypothesis with native tool calling:
1. Build the prompt from hypothesis, tool-call history and new observations
2. Ask the model for the next action
3. Tool call -> execute it, append a ToolInvocation, feed the result back, loop
4. Conclusion (``conclude`` tool or plain text) -> Concluded
5. Iteration or wall-clock budget exhausted -> Failed (BudgetExceeded); a tool
   call still running when the wall clock runs out is cancelled

State machine: Spawned -> Investigating -> {Concluded, Failed, Killed}

Every iteration is written to the session's durable scenario log before the
loop advances, so a killed or crashed agent leaves an inspectable trace. The
kill flag is checked between iterations and between tool calls, never while a
tool call is in flight.
"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any

import structlog

from debugforce.core.domain.errors import (
    BudgetExceededError,
    DebugForceError,
    ModelProtocolError,
)
from debugforce.core.domain.events import CONCLUDE_TOOL_NAME, Action, ActionType
from debugforce.core.domain.models import (
    ScenarioRun,
    ScenarioStatus,
    Session,
    ToolInvocation,
)
from debugforce.core.interfaces.llm import LLMProviderProtocol
from debugforce.core.interfaces.session_store import SessionStoreProtocol
from debugforce.core.interfaces.tools import ToolProtocol
from debugforce.core.tools.conclude_tool import ConcludeTool
from debugforce.infrastructure.tools.tool_converter import (
    assistant_tool_calls_to_message,
    tool_result_to_message,
    tools_to_openai_format,
)

UpdateCallback = Callable[[ScenarioRun], Awaitable[None]]

_LOG_RESULT_CHARS = 2000


class ScenarioAgent:
    """
    Investigates one ScenarioRun.

    The agent is the only writer of its ScenarioRun while it is running. It
    reads (never writes) the session's observation list.
    """

    def __init__(
        self,
        run: ScenarioRun,
        session: Session,
        llm_provider: LLMProviderProtocol,
        tools: list[ToolProtocol],
        store: SessionStoreProtocol,
        system_prompt: str,
        model_alias: str = "scenario",
        max_iterations: int = 20,
        wall_clock_seconds: float = 600,
        max_protocol_errors: int = 3,
        max_consecutive_tool_failures: int = 5,
        kill_event: asyncio.Event | None = None,
        on_update: UpdateCallback | None = None,
    ):
        """
        Initialize ScenarioAgent with injected dependencies.

        Args:
            run: Scenario run to drive (must belong to ``session``)
            session: Owning session (source of context and observations)
            llm_provider: Protocol for LLM completions with tool calling
            tools: Tools available to the model (``conclude`` is always added)
            store: Session store receiving the per-iteration log
            system_prompt: Scenario system prompt
            model_alias: Model alias for LLM calls
            max_iterations: Iteration budget
            wall_clock_seconds: Wall-clock budget
            max_protocol_errors: Malformed replies fed back before failing
            max_consecutive_tool_failures: Tool errors in a row before failing
            kill_event: Set by the orchestrator to request a kill
            on_update: Awaited after every state change of the run
        """
        self.run = run
        self.session = session
        self.llm_provider = llm_provider
        self.store = store
        self.system_prompt = system_prompt
        self.model_alias = model_alias
        self.max_iterations = max_iterations
        self.wall_clock_seconds = wall_clock_seconds
        self.max_protocol_errors = max_protocol_errors
        self.max_consecutive_tool_failures = max_consecutive_tool_failures
        self.kill_event = kill_event or asyncio.Event()
        self.on_update = on_update
        self.logger = structlog.get_logger().bind(
            component="scenario_agent", session_id=session.id, scenario_id=run.id
        )

        self.tools: dict[str, ToolProtocol] = {tool.name: tool for tool in tools}
        if CONCLUDE_TOOL_NAME not in self.tools:
            self.tools[CONCLUDE_TOOL_NAME] = ConcludeTool()
        self._openai_tools = tools_to_openai_format(self.tools)

        self._seen_observations = 0
        self.partial_conclusion: str | None = None

    async def investigate(self) -> ScenarioRun:
        """
        Run the investigation loop to a terminal state.

        Never raises for scenario-level failures; those end in Failed. Task
        cancellation propagates so the orchestrator can force-kill.
        """
        run = self.run
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.wall_clock_seconds

        if self.kill_event.is_set():
            return await self._kill()

        run.transition(ScenarioStatus.INVESTIGATING)
        await self._log("investigation started", payload={"hypothesis": run.hypothesis})
        await self._notify()
        self.logger.info("scenario_started", hypothesis=run.hypothesis[:100])

        messages = self._build_initial_messages()
        protocol_errors = 0
        consecutive_failures = 0

        try:
            while True:
                if self.kill_event.is_set():
                    return await self._kill()
                if run.iterations >= self.max_iterations:
                    return await self._fail(
                        BudgetExceededError(f"Iteration budget exhausted ({self.max_iterations})")
                    )
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return await self._fail(
                        BudgetExceededError(f"Wall-clock budget exhausted ({self.wall_clock_seconds}s)")
                    )

                run.iterations += 1
                step = run.iterations
                self._inject_observations(messages)
                self.logger.info("scenario_step", step=step)

                try:
                    result = await asyncio.wait_for(
                        self.llm_provider.complete(
                            messages=messages,
                            model=self.model_alias,
                            tools=self._openai_tools,
                            tool_choice="auto",
                            temperature=0.2,
                        ),
                        timeout=remaining,
                    )
                except asyncio.TimeoutError:
                    return await self._fail(
                        BudgetExceededError(f"Wall-clock budget exhausted ({self.wall_clock_seconds}s)")
                    )

                if not result.get("success"):
                    consecutive_failures += 1
                    await self._log(
                        f"step {step}: model call failed",
                        level="warning",
                        payload={"step": step, "error": result.get("error")},
                    )
                    if consecutive_failures >= self.max_consecutive_tool_failures:
                        return await self._fail(
                            ModelProtocolError(f"Model provider failed repeatedly: {result.get('error')}")
                        )
                    messages.append({
                        "role": "user",
                        "content": f"[System Error: {result.get('error')}. Please try again.]",
                    })
                    continue

                content = result.get("content")
                tool_calls = result.get("tool_calls") or []
                if content and tool_calls:
                    self.partial_conclusion = content

                actions = self._parse_actions(result)
                if tool_calls:
                    messages.append(assistant_tool_calls_to_message(tool_calls, content))

                for action in actions:
                    if action.type == ActionType.CONCLUDE:
                        return await self._conclude(action, step)

                    if action.type == ActionType.INVALID:
                        protocol_errors += 1
                        await self._log(
                            f"step {step}: unusable model output ({action.error})",
                            level="warning",
                            payload={"step": step, "action": "invalid", "tool": action.tool, "error": action.error},
                        )
                        self._feed_back_error(messages, action)
                        if protocol_errors > self.max_protocol_errors:
                            return await self._fail(
                                ModelProtocolError(
                                    f"Model produced {protocol_errors} unusable replies; last: {action.error}"
                                )
                            )
                        continue

                    if self.kill_event.is_set():
                        # answer the remaining tool calls so the history stays well-formed
                        messages.append(
                            tool_result_to_message(
                                action.tool_call_id, action.tool, {"success": False, "error": "cancelled"}
                            )
                        )
                        continue

                    invocation = await self._dispatch(action, timeout=deadline - loop.time())
                    messages.append(
                        tool_result_to_message(action.tool_call_id, action.tool, invocation["result"])
                    )
                    if invocation["ok"]:
                        consecutive_failures = 0
                    else:
                        consecutive_failures += 1
                    await self._log(
                        f"step {step}: {action.tool} -> {'ok' if invocation['ok'] else 'error'}",
                        level="info" if invocation["ok"] else "warning",
                        payload={
                            "step": step,
                            "action": "tool_call",
                            "tool": action.tool,
                            "arguments": action.tool_input,
                            "ok": invocation["ok"],
                            "result": _summarize_result(invocation["result"]),
                        },
                    )
                    await self._notify()

                    if invocation["budget_exhausted"]:
                        return await self._fail(
                            BudgetExceededError(
                                f"Wall-clock budget exhausted during {action.tool} ({self.wall_clock_seconds}s)"
                            )
                        )

                    if consecutive_failures >= self.max_consecutive_tool_failures:
                        code = invocation["result"].get("error_code") or "ToolError"
                        run.failure_reason = (
                            f"{code}: {consecutive_failures} consecutive tool failures"
                        )
                        return await self._fail(None)

        except asyncio.CancelledError:
            self.logger.warning("scenario_cancelled", step=run.iterations)
            raise
        except Exception as e:
            self.logger.error("scenario_crashed", error=str(e), error_type=type(e).__name__)
            run.failure_reason = f"{type(e).__name__}: {e}"
            return await self._fail(None)

    def _build_initial_messages(self) -> list[dict[str, Any]]:
        session = self.session
        lines = [
            f"Investigate the hypothesis: {self.run.hypothesis}",
            "",
            f"Reported error:\n{session.original_error}",
        ]
        if session.file_path:
            lines.append(f"\nFile: {session.file_path}")
        if session.context:
            lines.append(f"\nContext:\n{session.context}")
        if session.observations:
            lines.append("\nObservations:")
            lines.extend(f"- {o.text}" for o in session.observations)
        self._seen_observations = len(session.observations)

        return [
            {"role": "system", "content": self.system_prompt},
            {"role": "user", "content": "\n".join(lines)},
        ]

    def _inject_observations(self, messages: list[dict[str, Any]]) -> None:
        """Append observations added since the previous iteration."""
        observations = self.session.observations
        if len(observations) <= self._seen_observations:
            return
        new = observations[self._seen_observations:]
        self._seen_observations = len(observations)
        text = "\n".join(f"- {o.text}" for o in new)
        messages.append({
            "role": "user",
            "content": f"[New observation from the investigator]\n{text}",
        })
        self.logger.info("observations_injected", count=len(new))

    def _parse_actions(self, result: dict[str, Any]) -> list[Action]:
        tool_calls = result.get("tool_calls") or []
        if not tool_calls:
            content = (result.get("content") or "").strip()
            if content:
                # plain text is an answer, but without an explicit confirmation
                return [Action(type=ActionType.CONCLUDE, conclusion=content, confirmed=False)]
            return [Action(type=ActionType.INVALID, error="empty response: call a tool or conclude")]

        actions = []
        for call in tool_calls:
            function = call.get("function") or {}
            name = function.get("name")
            call_id = call.get("id")
            raw_args = function.get("arguments") or "{}"
            try:
                args = json.loads(raw_args) if isinstance(raw_args, str) else dict(raw_args)
            except (json.JSONDecodeError, TypeError, ValueError) as e:
                actions.append(Action(
                    type=ActionType.INVALID, tool=name, tool_call_id=call_id,
                    error=f"arguments for '{name}' are not valid JSON: {e}",
                ))
                continue
            if not isinstance(args, dict):
                actions.append(Action(
                    type=ActionType.INVALID, tool=name, tool_call_id=call_id,
                    error=f"arguments for '{name}' must be a JSON object",
                ))
                continue
            if name not in self.tools:
                actions.append(Action(
                    type=ActionType.INVALID, tool=name, tool_call_id=call_id,
                    error=f"unknown tool '{name}'; available: {', '.join(sorted(self.tools))}",
                ))
                continue

            if name == CONCLUDE_TOOL_NAME:
                conclusion = args.get("conclusion")
                if not isinstance(conclusion, str) or not conclusion.strip():
                    actions.append(Action(
                        type=ActionType.INVALID, tool=name, tool_call_id=call_id,
                        error="conclude requires a non-empty 'conclusion'",
                    ))
                    continue
                actions.append(Action(
                    type=ActionType.CONCLUDE,
                    tool_call_id=call_id,
                    conclusion=conclusion.strip(),
                    confirmed=bool(args.get("confirmed", False)),
                    confidence=_clamp_confidence(args.get("confidence")),
                ))
                continue

            actions.append(Action(
                type=ActionType.TOOL_CALL, tool=name, tool_input=args, tool_call_id=call_id,
            ))
        return actions

    def _feed_back_error(self, messages: list[dict[str, Any]], action: Action) -> None:
        error = {"success": False, "error": action.error, "error_code": ModelProtocolError.code}
        if action.tool_call_id:
            messages.append(tool_result_to_message(action.tool_call_id, action.tool or "unknown", error))
        else:
            messages.append({"role": "user", "content": f"[System Error: {action.error}]"})

    async def _dispatch(self, action: Action, timeout: float | None = None) -> dict[str, Any]:
        """Execute one tool call, bounded by what is left of the wall-clock budget."""
        tool = self.tools[action.tool]
        budget_exhausted = False
        try:
            self.logger.info("tool_execute", tool=action.tool, args_keys=list(action.tool_input.keys()))
            task = asyncio.ensure_future(tool.execute(**action.tool_input))
            try:
                done, _ = await asyncio.wait({task}, timeout=max(timeout, 0) if timeout is not None else None)
            except asyncio.CancelledError:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                raise
            if task in done:
                result = task.result()
            else:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
                budget_exhausted = True
                self.logger.warning("tool_budget_exceeded", tool=action.tool)
                result = {
                    "success": False,
                    "error": "wall-clock budget exhausted before the tool call finished",
                    "error_code": BudgetExceededError.code,
                }
        except DebugForceError as e:
            result = {"success": False, "error": e.message, "error_code": e.code}
        except TypeError as e:
            # wrong argument names for the tool's signature
            result = {"success": False, "error": f"invalid arguments: {e}", "error_code": "InvalidArguments"}
        except Exception as e:
            self.logger.error("tool_exception", tool=action.tool, error=str(e))
            result = {"success": False, "error": str(e), "error_code": type(e).__name__}

        ok = _is_ok(result)
        self.run.record_invocation(ToolInvocation(
            tool_name=action.tool,
            arguments=action.tool_input,
            ok=ok,
            output=None if not ok else _strip_status(result),
            error=None if ok else str(result.get("error")),
            error_code=None if ok else result.get("error_code"),
        ))
        self.logger.info("tool_complete", tool=action.tool, ok=ok)
        return {"ok": ok, "result": result, "budget_exhausted": budget_exhausted}

    async def _conclude(self, action: Action, step: int) -> ScenarioRun:
        run = self.run
        run.conclusion = action.conclusion
        run.confirmed = action.confirmed
        run.confidence = action.confidence
        run.transition(ScenarioStatus.CONCLUDED)
        await self._log(
            f"step {step}: concluded ({'confirmed' if run.confirmed else 'not confirmed'})",
            payload={
                "step": step,
                "action": "conclude",
                "conclusion": run.conclusion,
                "confirmed": run.confirmed,
                "confidence": run.confidence,
            },
        )
        await self._notify()
        self.logger.info("scenario_concluded", confirmed=run.confirmed, steps=step)
        return run

    async def _fail(self, error: DebugForceError | None) -> ScenarioRun:
        run = self.run
        if error is not None:
            run.failure_reason = f"{error.code}: {error.message}"
        run.conclusion = run.conclusion or self.partial_conclusion
        run.transition(ScenarioStatus.FAILED)
        await self._log(f"failed: {run.failure_reason}", level="error", payload={"reason": run.failure_reason})
        await self._notify()
        self.logger.warning("scenario_failed", reason=run.failure_reason)
        return run

    async def _kill(self) -> ScenarioRun:
        run = self.run
        run.failure_reason = "killed"
        run.conclusion = run.conclusion or self.partial_conclusion
        run.transition(ScenarioStatus.KILLED)
        await self._log(
            f"killed after {run.iterations} iterations",
            level="warning",
            payload={"partial_conclusion": run.conclusion},
        )
        await self._notify()
        self.logger.info("scenario_killed", steps=run.iterations)
        return run

    async def _log(
        self,
        message: str,
        level: str = "info",
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.run.latest_log = message
        await self.store.append_log(self.session.id, self.run.id, message, level=level, payload=payload)

    async def _notify(self) -> None:
        if self.on_update is not None:
            await self.on_update(self.run)


def _is_ok(result: dict[str, Any]) -> bool:
    """
    Ok(output) vs Err(reason) for a tool result.

    Sandbox results carry an exit code: the investigated code failing is an
    Ok result. Only tool-level errors (with an error code, or without an exit
    code) are Err.
    """
    if result.get("error_code"):
        return False
    if "exit_code" in result:
        return True
    return bool(result.get("success"))


def _strip_status(result: dict[str, Any]) -> Any:
    if set(result) <= {"success", "output"}:
        return result.get("output")
    return {k: v for k, v in result.items() if k != "success"}


def _summarize_result(result: dict[str, Any]) -> dict[str, Any]:
    summary = {}
    for key, value in result.items():
        if isinstance(value, str) and len(value) > _LOG_RESULT_CHARS:
            value = value[:_LOG_RESULT_CHARS] + "..."
        summary[key] = value
    return summary


def _clamp_confidence(value: Any) -> float | None:
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, min(1.0, confidence))
