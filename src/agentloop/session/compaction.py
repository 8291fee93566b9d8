"""
Conversation Compaction - keep a session inside its token budget.

Two strategies, cheapest first:

- pruning replaces the content of old tool results with a short placeholder,
  leaving the conversation structure intact;
- hard compaction drops everything but the first user message and the most
  recent turns, optionally inserting a summary of what was dropped.

Token counts are estimates (characters / 4); no tokenizer is involved.
"""

import copy
import json
import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import structlog

from ..llm.base import (
    ImageBlock,
    LLMRequest,
    Message,
    ModelConfig,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
)

if TYPE_CHECKING:
    from ..llm.base import BaseProvider

logger = structlog.get_logger()

CHARS_PER_TOKEN = 4

DEFAULT_MAX_CONTEXT_TOKENS = 100_000
DEFAULT_COMPACTION_THRESHOLD = 0.8
DEFAULT_KEEP_RECENT_TURNS = 5
PRUNE_MINIMUM = 20_000
PRUNE_PROTECT = 40_000
PROTECTED_TOOLS = ("skill", "Skill")
PROTECTED_USER_TURNS = 2
IMAGE_TOKEN_ESTIMATE = 1_000

PRUNED_PLACEHOLDER = "[Output pruned to save context space]"

SUMMARY_SYSTEM_PROMPT = "You are a conversation summarizer. Create concise, fact-preserving summaries."


@dataclass
class CompactionConfig:
    """Configuration for conversation compaction."""

    enabled: bool = True
    max_context_tokens: int = DEFAULT_MAX_CONTEXT_TOKENS
    compaction_threshold: float = DEFAULT_COMPACTION_THRESHOLD
    keep_recent_turns: int = DEFAULT_KEEP_RECENT_TURNS
    prune_tool_outputs: bool = True
    prune_minimum: int = PRUNE_MINIMUM
    prune_protect: int = PRUNE_PROTECT
    protected_tools: tuple[str, ...] = PROTECTED_TOOLS
    summarize: bool = False
    summary_model: str | None = None


@dataclass
class CompactionResult:
    """Result of a compaction operation."""

    messages: list[Message]
    removed_count: int = 0
    tokens_saved: int = 0
    pruned_count: int = 0
    summary: str | None = None
    strategy: str = "none"

    @property
    def compacted(self) -> bool:
        return self.strategy != "none"


@dataclass
class TokenEstimate:
    total: int = 0
    input: int = 0
    output: int = 0
    by_message: list[int] = field(default_factory=list)


def estimate_tokens(text: str) -> int:
    """Estimate tokens for a piece of text."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_block_tokens(block: object) -> int:
    if isinstance(block, TextBlock):
        return estimate_tokens(block.text)
    if isinstance(block, ToolUseBlock):
        return estimate_tokens(block.name) + estimate_tokens(json.dumps(block.input))
    if isinstance(block, ToolResultBlock):
        if isinstance(block.content, str):
            return estimate_tokens(block.content)
        return sum(estimate_block_tokens(b) for b in block.content)
    if isinstance(block, ImageBlock):
        return IMAGE_TOKEN_ESTIMATE
    return 0


def estimate_message_tokens(message: Message) -> int:
    if isinstance(message.content, str):
        return estimate_tokens(message.content)
    return sum(estimate_block_tokens(b) for b in message.content)


def estimate_conversation_tokens(messages: list[Message]) -> TokenEstimate:
    """Estimate tokens, split into model input (user/system) and output (assistant)."""
    estimate = TokenEstimate()
    for message in messages:
        tokens = estimate_message_tokens(message)
        estimate.by_message.append(tokens)
        estimate.total += tokens
        if message.role == "assistant":
            estimate.output += tokens
        else:
            estimate.input += tokens
    return estimate


def needs_compaction(messages: list[Message], config: CompactionConfig | None = None) -> bool:
    config = config or CompactionConfig()
    if not config.enabled:
        return False
    threshold = config.max_context_tokens * config.compaction_threshold
    return estimate_conversation_tokens(messages).total > threshold


def _tool_names(messages: list[Message]) -> dict[str, str]:
    names = {}
    for message in messages:
        for block in message.tool_uses:
            names[block.id] = block.name
    return names


def prune_tool_outputs(
    messages: list[Message],
    config: CompactionConfig | None = None,
) -> tuple[list[Message], int, int]:
    """Replace old tool outputs with a placeholder.

    Walks backwards from the newest message. The two most recent user turns
    are never touched. Older tool results are kept until ``prune_protect``
    tokens of tool output have been seen; everything older than that is
    pruned, unless it belongs to a protected tool. Nothing changes unless at
    least ``prune_minimum`` tokens would be saved.

    Returns ``(messages, pruned_count, tokens_saved)``. The input list is
    never modified.
    """
    config = config or CompactionConfig()
    protected = set(config.protected_tools)
    names = _tool_names(messages)

    user_turns = 0
    seen = 0
    saved = 0
    targets: list[tuple[int, int]] = []

    for i in range(len(messages) - 1, -1, -1):
        message = messages[i]
        if message.role == "user":
            user_turns += 1
        if user_turns <= PROTECTED_USER_TURNS or isinstance(message.content, str):
            continue

        for j, block in enumerate(message.content):
            if not isinstance(block, ToolResultBlock):
                continue
            if names.get(block.tool_use_id) in protected:
                continue
            if isinstance(block.content, str) and block.content == PRUNED_PLACEHOLDER:
                continue
            tokens = estimate_block_tokens(block)
            seen += tokens
            if seen > config.prune_protect:
                targets.append((i, j))
                saved += tokens - estimate_tokens(PRUNED_PLACEHOLDER)

    if not targets or saved < config.prune_minimum:
        return list(messages), 0, 0

    pruned = list(messages)
    for i, j in targets:
        if pruned[i] is messages[i]:
            pruned[i] = copy.deepcopy(messages[i])
        block = pruned[i].content[j]
        pruned[i].content[j] = ToolResultBlock(
            tool_use_id=block.tool_use_id,
            content=PRUNED_PLACEHOLDER,
            is_error=block.is_error,
        )

    logger.info("Pruned tool outputs", pruned=len(targets), tokens_saved=saved)
    return pruned, len(targets), saved


def is_turn_start(message: Message) -> bool:
    """A user message that starts a turn, as opposed to one carrying tool results."""
    return message.role == "user" and not message.tool_results


def create_summary_message(summary: str) -> Message:
    return Message(
        role="assistant",
        content=(
            f"[Session Summary]\n\n{summary}\n\n"
            "[Previous conversation context has been compacted. Continuing from summary above.]"
        ),
    )


def _recent_window_start(messages: list[Message], keep_turns: int) -> int:
    """Index where the last ``keep_turns`` user messages begin.

    Every user message counts, tool results included, so a single prompt
    followed by a long tool loop still has a window to cut at.
    """
    start = 0
    turns = 0
    for i in range(len(messages) - 1, -1, -1):
        if messages[i].role == "user":
            turns += 1
            if turns >= keep_turns:
                start = i
                break

    # Tool results must stay with the assistant message that made the calls.
    while start > 0 and messages[start].tool_results:
        start -= 1
    return start


def compact_messages(
    messages: list[Message],
    keep_turns: int = DEFAULT_KEEP_RECENT_TURNS,
    summary: str | None = None,
) -> list[Message]:
    """Keep the first user message and the last ``keep_turns`` turns.

    A turn is any user message. When the window would open on tool results,
    it is widened back to the assistant message holding the calls, so no
    kept tool result is separated from its tool call. Conversations of at
    most ``keep_turns * 2 + 1`` messages are returned unchanged.
    """
    if len(messages) <= keep_turns * 2 + 1:
        return list(messages)

    first = messages[0]
    start = _recent_window_start(messages, keep_turns)
    if start == 0 or (start == 1 and first.role == "user"):
        return list(messages)

    result: list[Message] = []
    if first.role == "user":
        result.append(first)
    if summary:
        result.append(create_summary_message(summary))
    result.extend(m for m in messages[start:] if m is not first)
    return result


def generate_summary_prompt(messages: list[Message]) -> str:
    """Build the prompt used to ask a model for a conversation summary."""
    transcript_parts = []
    for message in messages:
        role = message.role.upper()
        if isinstance(message.content, str):
            transcript_parts.append(f"{role}: {message.content[:300]}")
            continue
        for block in message.content:
            if isinstance(block, TextBlock):
                transcript_parts.append(f"{role}: {block.text[:300]}")
            elif isinstance(block, ToolUseBlock):
                transcript_parts.append(f"{role} called {block.name}: {json.dumps(block.input)[:200]}")
            elif isinstance(block, ToolResultBlock):
                transcript_parts.append(f"TOOL RESULT: {block.text[:200]}")

    transcript = "\n".join(transcript_parts)

    return f"""Summarize the following conversation into a concise context block.
Preserve:
- Any specific facts, names, dates, or numbers mentioned
- The user's requests and what was accomplished
- Files, commands and tool results that matter for what comes next
- Open tasks and decisions still pending

Keep it under 500 words.

Conversation:
{transcript}

Summary:"""


def fallback_summary(messages: list[Message]) -> str:
    """Create a basic summary without a model (when summarization fails)."""
    parts = ["Earlier in this conversation:"]

    user_messages = [m for m in messages if is_turn_start(m)]
    assistant_count = sum(1 for m in messages if m.role == "assistant")
    tool_count = sum(len(m.tool_uses) for m in messages)

    parts.append(f"[{len(user_messages)} user messages, {assistant_count} assistant responses, {tool_count} tool calls summarized]")

    if user_messages:
        parts.append(f"First topic: {user_messages[0].text[:150]}")
        if len(user_messages) > 1:
            parts.append(f"Last topic before this: {user_messages[-1].text[:150]}")

    tools_used = sorted({b.name for m in messages for b in m.tool_uses})
    if tools_used:
        parts.append(f"Tools used: {', '.join(tools_used)}")

    return "\n".join(parts)


async def summarize_messages(
    provider: "BaseProvider",
    messages: list[Message],
    model_config: ModelConfig,
) -> str:
    """Ask the provider for a summary, falling back to a local one on failure."""
    request = LLMRequest(
        messages=[Message(role="user", content=generate_summary_prompt(messages))],
        config=ModelConfig(model=model_config.model, max_tokens=1024),
        system_prompt=SUMMARY_SYSTEM_PROMPT,
    )
    try:
        response = await provider.complete(request)
        summary = response.text.strip()
        if summary:
            return summary
        logger.warning("Summarization returned no text, using fallback")
    except Exception as e:
        logger.error("Compaction summarization failed, using fallback", error=str(e))
    return fallback_summary(messages)


class SessionCompactor:
    """Applies pruning, then hard compaction, when a conversation is too large."""

    def __init__(self, config: CompactionConfig | None = None):
        self.config = config or CompactionConfig()

    def needs_compaction(self, messages: list[Message]) -> bool:
        return needs_compaction(messages, self.config)

    async def compact(
        self,
        messages: list[Message],
        provider: "BaseProvider | None" = None,
        model_config: ModelConfig | None = None,
    ) -> CompactionResult:
        if not self.needs_compaction(messages):
            return CompactionResult(messages=list(messages))

        before = estimate_conversation_tokens(messages).total
        logger.info(
            "Starting conversation compaction",
            message_count=len(messages),
            estimated_tokens=before,
            threshold=int(self.config.max_context_tokens * self.config.compaction_threshold),
        )

        current = list(messages)
        pruned_count = 0
        if self.config.prune_tool_outputs:
            current, pruned_count, _ = prune_tool_outputs(current, self.config)
            if pruned_count and not self.needs_compaction(current):
                return self._result(messages, current, before, "prune", pruned_count)

        summary = None
        if self.config.summarize and provider is not None and model_config is not None:
            start = _recent_window_start(current, self.config.keep_recent_turns)
            dropped = current[1:start] if current and current[0].role == "user" else current[:start]
            if dropped:
                summary_config = ModelConfig(model=self.config.summary_model or model_config.model)
                summary = await summarize_messages(provider, dropped, summary_config)

        compacted = compact_messages(current, self.config.keep_recent_turns, summary)
        strategy = "compact" if len(compacted) < len(current) else ("prune" if pruned_count else "none")
        return self._result(messages, compacted, before, strategy, pruned_count, summary if strategy == "compact" else None)

    def _result(
        self,
        original: list[Message],
        compacted: list[Message],
        before: int,
        strategy: str,
        pruned_count: int,
        summary: str | None = None,
    ) -> CompactionResult:
        after = estimate_conversation_tokens(compacted).total
        original_ids = {m.id for m in original}
        kept = sum(1 for m in compacted if m.id in original_ids)
        result = CompactionResult(
            messages=compacted,
            removed_count=len(original) - kept,
            tokens_saved=max(0, before - after),
            pruned_count=pruned_count,
            summary=summary,
            strategy=strategy,
        )
        logger.info(
            "Compaction complete",
            strategy=strategy,
            original=len(original),
            compacted=len(compacted),
            tokens_saved=result.tokens_saved,
        )
        return result
