"""
Runs hooks for session events and merges what they return.
"""

import asyncio
import re
from typing import Any

import structlog

from ..cancellation import AbortSignal
from ..errors import AbortError, HookTimeoutError
from .base import (
    DECISION_PRIORITY,
    TOOL_EVENTS,
    HookCallback,
    HookContext,
    HookEvent,
    HookInput,
    HookMatcher,
    HookOutput,
    HookResult,
    HooksConfig,
    PermissionDecision,
    PreToolUseResult,
)

logger = structlog.get_logger()


def _hook_name(hook: HookCallback) -> str:
    return getattr(hook, "__name__", None) or type(hook).__name__


class HooksManager:
    """Runs the hooks configured for a session.

    Hooks run one after another in configuration order. A hook that raises
    or times out is logged and skipped. A hook returning ``continue_=False``
    stops the remaining hooks for that event.
    """

    def __init__(
        self,
        config: HooksConfig | None = None,
        session_id: str = "",
        cwd: str | None = None,
    ):
        self.session_id = session_id
        self.cwd = cwd
        self._config: dict[HookEvent, list[HookMatcher]] = {}
        for event, matchers in (config or {}).items():
            self._config.setdefault(HookEvent(event), []).extend(matchers)

    def has_hooks(self, event: HookEvent) -> bool:
        return bool(self._config.get(event))

    def _matchers_for(self, event: HookEvent, tool_name: str | None = None) -> list[HookMatcher]:
        matched = []
        for matcher in self._config.get(event, []):
            if matcher.matcher and event in TOOL_EVENTS:
                try:
                    if not re.search(matcher.matcher, tool_name or ""):
                        continue
                except re.error as e:
                    logger.warning("Invalid hook matcher regex", matcher=matcher.matcher, error=str(e))
                    continue
            matched.append(matcher)
        return matched

    async def _invoke(
        self,
        hook: HookCallback,
        timeout: float,
        hook_input: HookInput,
        tool_use_id: str | None,
        signal: AbortSignal | None,
    ) -> HookOutput | None:
        name = _hook_name(hook)
        hook_signal = AbortSignal.linked(signal)
        try:
            try:
                return await asyncio.wait_for(hook(hook_input, tool_use_id, HookContext(signal=hook_signal)), timeout)
            except asyncio.TimeoutError as e:
                hook_signal.abort("timeout")
                raise HookTimeoutError(name, timeout) from e
        except HookTimeoutError as e:
            logger.warning("Hook timed out", hook=name, hook_event=hook_input.hook_event_name.value, error=e.message)
        except AbortError:
            raise
        except Exception as e:
            logger.warning("Hook failed", hook=name, hook_event=hook_input.hook_event_name.value, error=str(e))
        finally:
            hook_signal.detach(signal)
        return None

    async def _run(
        self,
        hook_input: HookInput,
        tool_use_id: str | None = None,
        signal: AbortSignal | None = None,
    ) -> list[HookOutput]:
        outputs: list[HookOutput] = []
        for matcher in self._matchers_for(hook_input.hook_event_name, hook_input.tool_name):
            for hook in matcher.hooks:
                if signal is not None:
                    signal.raise_if_aborted()
                output = await self._invoke(hook, matcher.timeout, hook_input, tool_use_id, signal)
                if output is None:
                    continue
                outputs.append(output)
                if not output.continue_:
                    logger.info(
                        "Hook halted processing",
                        hook=_hook_name(hook),
                        hook_event=hook_input.hook_event_name.value,
                        reason=output.stop_reason,
                    )
                    return outputs
        return outputs

    def _input(self, event: HookEvent, **kwargs: Any) -> HookInput:
        return HookInput(hook_event_name=event, session_id=self.session_id, cwd=self.cwd, **kwargs)

    @staticmethod
    def _merge(outputs: list[HookOutput], result: HookResult) -> HookResult:
        system_messages = []
        contexts = []
        for output in outputs:
            if output.system_message:
                system_messages.append(output.system_message)
            specific = output.hook_specific_output
            if specific is not None and specific.additional_context:
                contexts.append(specific.additional_context)
            if not output.continue_:
                result.continue_ = False
                result.stop_reason = output.stop_reason
        result.system_message = "\n".join(system_messages) or None
        result.additional_context = "\n\n".join(contexts) or None
        result.outputs = outputs
        return result

    async def run_pre_tool_use(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_use_id: str,
        signal: AbortSignal | None = None,
    ) -> PreToolUseResult:
        """Run PreToolUse hooks and merge their permission decisions.

        The strictest decision wins (deny > ask > allow). A rewritten input
        is kept only when the merged decision is allow.
        """
        hook_input = self._input(HookEvent.PRE_TOOL_USE, tool_name=tool_name, tool_input=tool_input)
        outputs = await self._run(hook_input, tool_use_id, signal)
        result = self._merge(outputs, PreToolUseResult())

        for output in outputs:
            specific = output.hook_specific_output
            if specific is None or specific.permission_decision is None:
                continue
            try:
                decision = PermissionDecision(specific.permission_decision)
            except ValueError:
                logger.warning(
                    "Ignoring unknown permission decision",
                    tool_name=tool_name,
                    decision=str(specific.permission_decision),
                )
                continue
            if DECISION_PRIORITY[decision] > DECISION_PRIORITY[result.decision]:
                result.decision = decision
                result.reason = specific.permission_decision_reason
            elif decision == result.decision and result.reason is None:
                result.reason = specific.permission_decision_reason
            if decision == PermissionDecision.ALLOW and specific.updated_input is not None:
                result.updated_input = specific.updated_input

        if result.decision != PermissionDecision.ALLOW:
            result.updated_input = None
        return result

    async def run_post_tool_use(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        tool_response: Any,
        tool_use_id: str,
        signal: AbortSignal | None = None,
    ) -> HookResult:
        hook_input = self._input(
            HookEvent.POST_TOOL_USE,
            tool_name=tool_name,
            tool_input=tool_input,
            tool_response=tool_response,
        )
        return self._merge(await self._run(hook_input, tool_use_id, signal), HookResult())

    async def run_user_prompt_submit(self, prompt: str, signal: AbortSignal | None = None) -> HookResult:
        hook_input = self._input(HookEvent.USER_PROMPT_SUBMIT, prompt=prompt)
        return self._merge(await self._run(hook_input, None, signal), HookResult())

    async def run_stop(self, signal: AbortSignal | None = None, stop_hook_active: bool = False) -> HookResult:
        hook_input = self._input(HookEvent.STOP, stop_hook_active=stop_hook_active)
        return self._merge(await self._run(hook_input, None, signal), HookResult())

    async def run_pre_compact(self, trigger: str = "auto", signal: AbortSignal | None = None) -> HookResult:
        hook_input = self._input(HookEvent.PRE_COMPACT, trigger=trigger)
        return self._merge(await self._run(hook_input, None, signal), HookResult())
