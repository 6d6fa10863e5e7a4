"""
Summarization engine: condenses the oldest entries of a long thread into one summary entry.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional

from ..exceptions import InvalidInputError
from ..models.core import MemoryEntry, MemoryType
from ..utils.bedrock_llm import BedrockLLM
from ..utils.config import SummarizationConfig
from ..utils.json_utils import clean_llm_text
from ..utils.logging_config import get_logger
from ..utils.timestamp_utils import to_millis, utc_now

logger = get_logger(__name__)

SUMMARY_SYSTEM_PROMPT = """You condense an agent's memory of a conversation thread.
Write a concise summary of the entries that follow. Focus on:
1. Key topics discussed
2. Important decisions or conclusions reached
3. Facts and preferences stated by the user
4. Open questions or next steps
Keep it brief but complete enough to continue the conversation later. Reply with the summary text only."""

STRATEGY_HINTS = {
    'recent': 'Give the most weight to the latest entries.',
    'important': 'Give the most weight to entries marked with high importance.',
    'balanced': 'Balance recent context against high-importance entries.',
}

PREVIEW_CHARS = 100


class SummaryStrategy(str, Enum):
    BALANCED = 'balanced'
    RECENT = 'recent'
    IMPORTANT = 'important'


class Summarizer(ABC):
    """Condenses formatted entry texts into summary prose."""

    @abstractmethod
    def condense(self, texts: List[str], strategy: str) -> str:
        pass


class BedrockSummarizer(Summarizer):
    """Summarizer backed by a Bedrock Converse model."""

    def __init__(self, llm: BedrockLLM):
        self.llm = llm

    def condense(self, texts: List[str], strategy: str) -> str:
        prompt = f'{SUMMARY_SYSTEM_PROMPT}\n{STRATEGY_HINTS.get(strategy, "")}'
        messages = [{'role': 'user', 'content': [{'text': '\n'.join(texts)}]}]
        response, usage = self.llm.generate_response(messages=messages, system_prompt=prompt)
        logger.debug(f'Summary generated with usage {usage}')
        return clean_llm_text(response)


@dataclass
class SummaryPlan:
    """Entries chosen for one summarization pass.

    ``window`` is every entry that the summary replaces; ``included`` is the subset whose
    text fits the input budget. The rest are in ``dropped`` and are replaced without being
    quoted.
    """
    thread_id: str
    strategy: SummaryStrategy
    window: List[MemoryEntry] = field(default_factory=list)
    included: List[MemoryEntry] = field(default_factory=list)
    dropped: List[MemoryEntry] = field(default_factory=list)


def format_entry(entry: MemoryEntry) -> str:
    return f'[{entry.type.value}] {entry.content}'


class SummarizationEngine:
    """Plans and condenses summaries for threads over ``max_messages`` entries.

    Summarized originals are deleted by the caller once the summary entry is stored; the
    summary keeps their ids in ``metadata['summarized_ids']``.
    """

    def __init__(self, config: Optional[SummarizationConfig] = None, summarizer: Optional[Summarizer] = None):
        self.config = config or SummarizationConfig()
        self.summarizer = summarizer
        try:
            SummaryStrategy(self.config.strategy)
        except ValueError as e:
            raise InvalidInputError(f'Invalid summarization strategy: {self.config.strategy}', operation='summarize') from e

    def should_summarize(self, entries: List[MemoryEntry]) -> bool:
        return len(entries) > self.config.max_messages

    def _prioritize(self, window: List[MemoryEntry], strategy: SummaryStrategy) -> List[MemoryEntry]:
        """Order the window by how much each entry deserves a place in the summary input."""
        if strategy is SummaryStrategy.RECENT:
            return sorted(window, key=lambda e: e.creation_key, reverse=True)
        if strategy is SummaryStrategy.IMPORTANT:
            return sorted(window, key=lambda e: (e.importance, e.creation_key), reverse=True)

        # balanced: equal weight to importance and chronological rank within the window
        chronological = sorted(window, key=lambda e: e.creation_key)
        span = max(len(chronological) - 1, 1)
        recency = {entry.id: rank / span for rank, entry in enumerate(chronological)}
        return sorted(window, key=lambda e: (0.5 * e.importance + 0.5 * recency[e.id], e.creation_key), reverse=True)

    def plan(self, thread_id: str, entries: List[MemoryEntry], strategy: Optional[str] = None) -> Optional[SummaryPlan]:
        """
        Select the summarization window for a thread.

        Args:
            thread_id: Thread being summarized
            entries: All current entries of the thread
            strategy: Override of the configured strategy

        Returns:
            SummaryPlan, or None when fewer than two non-summary entries are available
        """
        strategy = SummaryStrategy(strategy or self.config.strategy)
        candidates = sorted((e for e in entries if e.type is not MemoryType.SUMMARY), key=lambda e: e.creation_key)
        window = candidates[:self.config.max_messages]
        if len(window) < 2:
            return None

        included = []
        budget = self.config.max_input_chars
        used = 0
        for entry in self._prioritize(window, strategy):
            size = len(format_entry(entry)) + 1
            if included and used + size > budget:
                continue
            included.append(entry)
            used += size

        included_ids = {e.id for e in included}
        plan = SummaryPlan(thread_id=thread_id,
                           strategy=strategy,
                           window=window,
                           included=sorted(included, key=lambda e: e.creation_key),
                           dropped=[e for e in window if e.id not in included_ids])
        logger.debug(f'Summary plan for thread {thread_id}: window={len(window)}, included={len(plan.included)}, '
                     f'dropped={len(plan.dropped)}')
        return plan

    def fallback_summary(self, plan: SummaryPlan) -> str:
        """Deterministic extractive summary used when no LLM is available or it fails."""
        counts = {}
        for entry in plan.window:
            counts[entry.type.value] = counts.get(entry.type.value, 0) + 1
        breakdown = ', '.join(f'{count} {kind}' for kind, count in sorted(counts.items()))
        lines = [f'Thread summary ({len(plan.window)} entries: {breakdown}).', 'Key entries:']
        for entry in plan.included[-3:]:
            preview = entry.content[:PREVIEW_CHARS]
            suffix = '...' if len(entry.content) > PREVIEW_CHARS else ''
            lines.append(f'- [{entry.type.value}] {preview}{suffix}')
        return '\n'.join(lines)

    def condense(self, plan: SummaryPlan) -> str:
        """Produce summary text for a plan. Blocking when backed by an LLM."""
        if self.summarizer is None:
            return self.fallback_summary(plan)
        try:
            text = self.summarizer.condense([format_entry(e) for e in plan.included], plan.strategy.value)
        except Exception as e:
            logger.error(f'Summarization failed for thread {plan.thread_id}, using fallback: {e}')
            return self.fallback_summary(plan)
        if not text or not text.strip():
            logger.warning(f'Summarizer returned empty text for thread {plan.thread_id}, using fallback')
            return self.fallback_summary(plan)
        return text.strip()

    def build_summary_entry(self, plan: SummaryPlan, text: str, entry_id: str, now: Optional[datetime] = None) -> MemoryEntry:
        """Build the summary entry that replaces the plan's window."""
        now = now or utc_now()
        tags: List[str] = []
        for entry in plan.window:
            tags.extend(entry.tags)
        users = {entry.user_id for entry in plan.window}

        return MemoryEntry(id=entry_id,
                           thread_id=plan.thread_id,
                           content=text,
                           type=MemoryType.SUMMARY,
                           user_id=users.pop() if len(users) == 1 else None,
                           importance=max(entry.importance for entry in plan.window),
                           tags=tags,
                           metadata={
                               'summarized_ids': [entry.id for entry in plan.window],
                               'summarized_count': len(plan.window),
                               'dropped_count': len(plan.dropped),
                               'strategy': plan.strategy.value,
                               'period_start': to_millis(plan.window[0].created_at),
                               'period_end': to_millis(plan.window[-1].created_at),
                           },
                           created_at=now)
