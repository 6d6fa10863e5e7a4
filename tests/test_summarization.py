"""Tests for the summarization engine and the Bedrock summarizer."""
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from threadmem.exceptions import InvalidInputError
from threadmem.models.core import MemoryEntry, MemoryType
from threadmem.services.summarization import BedrockSummarizer, SummarizationEngine, Summarizer, SummaryStrategy
from threadmem.utils.config import SummarizationConfig

EPOCH = datetime(2024, 1, 1, tzinfo=timezone.utc)


def entries(count, thread_id='t1', content='entry', **kwargs):
    return [
        MemoryEntry(id=f'e{i}',
                    thread_id=thread_id,
                    content=f'{content} {i}',
                    importance=kwargs.get('importance', [0.5] * count)[i],
                    user_id=kwargs.get('user_id'),
                    tags=[f'tag{i}'],
                    created_at=EPOCH + timedelta(minutes=i)) for i in range(count)
    ]


class FixedSummarizer(Summarizer):

    def __init__(self, text):
        self.text = text

    def condense(self, texts, strategy):
        if isinstance(self.text, Exception):
            raise self.text
        return self.text


class TestPlan:

    def test_window_is_oldest_non_summary_entries(self):
        engine = SummarizationEngine(SummarizationConfig(max_messages=3))
        thread = entries(5)
        thread.insert(0, MemoryEntry(id='old-summary', thread_id='t1', content='earlier', type=MemoryType.SUMMARY,
                                     created_at=EPOCH - timedelta(days=1)))

        plan = engine.plan('t1', thread)

        assert [e.id for e in plan.window] == ['e0', 'e1', 'e2']
        assert plan.strategy is SummaryStrategy.BALANCED

    def test_needs_two_entries(self):
        engine = SummarizationEngine()

        assert engine.plan('t1', entries(1)) is None
        assert engine.plan('t1', []) is None

    def test_should_summarize_above_max_messages(self):
        engine = SummarizationEngine(SummarizationConfig(max_messages=3))

        assert not engine.should_summarize(entries(3))
        assert engine.should_summarize(entries(4))

    def test_budget_keeps_first_priority_entry_and_drops_rest(self):
        engine = SummarizationEngine(SummarizationConfig(max_messages=10, max_input_chars=30))
        thread = entries(4, content='x' * 20)

        plan = engine.plan('t1', thread, strategy='recent')

        assert [e.id for e in plan.included] == ['e3']
        assert {e.id for e in plan.dropped} == {'e0', 'e1', 'e2'}
        assert len(plan.window) == 4

    def test_important_strategy_prefers_high_importance(self):
        engine = SummarizationEngine(SummarizationConfig(max_messages=10, max_input_chars=100))
        thread = entries(4, content='y' * 20, importance=[0.9, 0.1, 0.2, 0.8])

        plan = engine.plan('t1', thread, strategy='important')

        assert [e.id for e in plan.included] == ['e0', 'e3']

    def test_invalid_strategy(self):
        with pytest.raises(InvalidInputError):
            SummarizationEngine(SummarizationConfig(strategy='random'))


class TestCondense:

    def test_uses_summarizer_text(self):
        engine = SummarizationEngine(summarizer=FixedSummarizer('  Short summary.  '))

        assert engine.condense(engine.plan('t1', entries(3))) == 'Short summary.'

    @pytest.mark.parametrize('summarizer', [None, FixedSummarizer(RuntimeError('throttled')), FixedSummarizer('   ')])
    def test_falls_back_to_extractive_summary(self, summarizer):
        engine = SummarizationEngine(summarizer=summarizer)
        plan = engine.plan('t1', entries(3))

        text = engine.condense(plan)

        assert text.startswith('Thread summary (3 entries: 3 conversation).')
        assert '- [conversation] entry 2' in text

    def test_summary_entry(self):
        engine = SummarizationEngine()
        plan = engine.plan('t1', entries(3, importance=[0.2, 0.7, 0.4], user_id='u1'))
        now = EPOCH + timedelta(hours=1)

        summary = engine.build_summary_entry(plan, 'summary text', 's1', now=now)

        assert summary.type is MemoryType.SUMMARY
        assert summary.importance == 0.7
        assert summary.tags == ['tag0', 'tag1', 'tag2']
        assert summary.user_id == 'u1'
        assert summary.created_at == now
        assert summary.metadata['summarized_ids'] == ['e0', 'e1', 'e2']
        assert summary.metadata['strategy'] == 'balanced'

    def test_summary_entry_mixed_users(self):
        engine = SummarizationEngine()
        thread = entries(2)
        thread[0].user_id = 'u1'
        thread[1].user_id = 'u2'

        summary = engine.build_summary_entry(engine.plan('t1', thread), 'text', 's1')

        assert summary.user_id is None


class TestBedrockSummarizer:

    def test_condense_calls_llm(self):
        llm = MagicMock()
        llm.generate_response.return_value = ('```\nThe user likes tea.\n```', {'inputTokens': 10})

        text = BedrockSummarizer(llm).condense(['[fact] likes tea'], 'recent')

        assert text == 'The user likes tea.'
        kwargs = llm.generate_response.call_args.kwargs
        assert kwargs['messages'] == [{'role': 'user', 'content': [{'text': '[fact] likes tea'}]}]
        assert 'latest entries' in kwargs['system_prompt']
