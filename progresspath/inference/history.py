from __future__ import annotations

"""
Bound the conversation history sent with each turn.

Design intent:
- Send the full history while it is small.
- Past the message or token budget, summarize the older part and keep the
  most recent messages verbatim.
"""

from dataclasses import dataclass, field
from typing import Optional, Sequence

from progresspath.internal_core.contracts import GoalKind, Message, Sender

# ~4 characters per token; the provider does the real count.
TOKENS_PER_CHAR = 0.25


def estimate_tokens(text: str) -> int:
    return max(1, int(len(text or "") * TOKENS_PER_CHAR))


@dataclass(frozen=True)
class HistoryMessage:
    sender: Sender
    body: str


@dataclass(frozen=True)
class HistoryWindow:
    older: list[HistoryMessage]
    recent: list[HistoryMessage]

    @property
    def needs_summary(self) -> bool:
        return bool(self.older)


@dataclass(frozen=True)
class TurnContext:
    goal_text: str
    goal_kind: GoalKind
    steps: list[str]
    progress: int
    terminal_progress: int
    off_topic_count: int
    history: list[HistoryMessage] = field(default_factory=list)
    summary: Optional[str] = None


def to_history(messages: Sequence[Message]) -> list[HistoryMessage]:
    return [HistoryMessage(sender=item.sender, body=item.body) for item in messages]


def split_history(
    messages: Sequence[HistoryMessage],
    *,
    max_messages: int = 50,
    max_tokens: int = 8000,
    tail_messages: int = 40,
) -> HistoryWindow:
    items = list(messages)
    total_tokens = sum(estimate_tokens(item.body) for item in items)
    over_budget = len(items) > max_messages or total_tokens > max_tokens
    if not over_budget or len(items) <= tail_messages:
        return HistoryWindow(older=[], recent=items)
    return HistoryWindow(older=items[:-tail_messages], recent=items[-tail_messages:])
