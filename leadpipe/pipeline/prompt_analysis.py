"""
Step: promptAnalysis — run a user-written prompt over every untagged row.

The prompt may reference row fields as {{field}} (dotted paths allowed). The
answer lands in promptAnalysis; filter rules on 'analysis' read it.
"""
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict

from leadpipe.config import MAX_CONCURRENT_REQUESTS, BATCH_DELAY_SECONDS, RETRY_MAX_RETRIES, RETRY_BASE_DELAY
from leadpipe.pipeline.base import StepResult, UsageSummary, is_tagged, row_value
from leadpipe.pipeline.chunking import ChunkedStepAdapter
from leadpipe.pipeline.errors import StepConfigError
from leadpipe.pipeline.fetch import call_with_retries, run_bounded
from leadpipe.services import llm
from leadpipe.services.circuit_breaker import CircuitOpenError

logger = logging.getLogger('pipeline.prompt_analysis')

SYSTEM_PROMPT = "You are a B2B research assistant. Answer concisely and only from the data provided."

_PLACEHOLDER_RE = re.compile(r'\{\{\s*([\w.]+)\s*\}\}')


def render_prompt(template: str, row: Dict[str, Any]) -> str:
    """Replace {{field}} placeholders with row values; missing fields render as ''."""
    def _sub(match):
        value = row_value(row, match.group(1))
        return '' if value is None else str(value)
    return _PLACEHOLDER_RE.sub(_sub, template)


class PromptAnalysisAdapter(ChunkedStepAdapter):
    step_id = 'promptAnalysis'
    description = 'Custom LLM prompt over each row (OpenAI)'
    apis = ['OpenAI']
    api_tool = 'OpenAI'
    est_seconds_per_row = 1.0
    analysis_field = 'promptAnalysis'

    def __init__(
        self,
        analyzer: Callable[..., Any] = None,
        max_workers: int = MAX_CONCURRENT_REQUESTS,
        batch_delay: float = BATCH_DELAY_SECONDS,
        max_retries: int = RETRY_MAX_RETRIES,
        retry_delay: float = RETRY_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        chunker=None,
    ):
        self.analyzer = analyzer or llm.chat
        self.max_workers = max_workers
        self.batch_delay = batch_delay
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        if chunker is not None:
            self.chunker = chunker

    def process(self, rows, config, events):
        if not (config.get('prompt') or '').strip():
            raise StepConfigError("promptAnalysis requires a non-empty 'prompt' in its config")
        return super().process(rows, config, events)

    def process_rows(self, rows, config, events):
        usage = UsageSummary()
        work = [row for row in rows if not is_tagged(row)]
        template = config['prompt']
        model = config.get('model')
        max_tokens = int(config.get('maxTokens') or 500)

        def analyze(row):
            prompt = render_prompt(template, row)
            text, tokens = call_with_retries(
                self.analyzer, prompt, system=SYSTEM_PROMPT, model=model, max_tokens=max_tokens,
                max_retries=self.max_retries, base_delay=self.retry_delay,
                no_retry=(CircuitOpenError, llm.LLMNotConfigured),
                sleep=self.sleep, label='prompt analysis',
            )
            return {'text': text, 'tokens': tokens or 0}

        def on_error(row, exc):
            return {'error': str(exc)}

        def on_batch_done(done, total):
            events.progress(done / total * 100 if total else 100, f"Analyzed {done}/{total} rows")

        outcomes = run_bounded(
            work, analyze,
            max_workers=self.max_workers, batch_delay=self.batch_delay, sleep=self.sleep,
            on_error=on_error, on_batch_done=on_batch_done,
        )

        stamp = datetime.now(timezone.utc).isoformat()
        for row, outcome in zip(work, outcomes):
            usage.api_calls += 1
            if 'error' in outcome:
                row['promptAnalysisError'] = outcome['error']
                usage.errors += 1
                continue
            row['promptAnalysis'] = outcome['text']
            row['analysisTimestamp'] = stamp
            usage.tokens_used += outcome['tokens']

        events.log(f"Prompt analysis done — {len(work) - usage.errors} analyzed, {usage.errors} errors")
        return StepResult(data=rows, analytics=usage)


ADAPTERS: Dict[str, type] = {
    'promptAnalysis': PromptAnalysisAdapter,
}
