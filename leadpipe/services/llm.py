"""
OpenAI chat helpers used by the text-analysis steps.
"""
import logging
from typing import Tuple

from leadpipe.config import OPENAI_MODEL

logger = logging.getLogger('services.llm')


class LLMNotConfigured(RuntimeError):
    """No OpenAI client: OPENAI_API_KEY is unset."""


def _client():
    from leadpipe.extensions import openai_client
    if openai_client is None:
        raise LLMNotConfigured("OpenAI API key not configured")
    return openai_client


def is_configured() -> bool:
    from leadpipe.extensions import openai_client
    return openai_client is not None


def chat(prompt: str, system: str = None, model: str = None,
         temperature: float = 0.2, max_tokens: int = 500) -> Tuple[str, int]:
    """
    Single-turn chat completion through the 'openai' circuit breaker.

    Returns (text, total_tokens).
    """
    from leadpipe.services.circuit_breaker import get_breaker

    messages = []
    if system:
        messages.append({'role': 'system', 'content': system})
    messages.append({'role': 'user', 'content': prompt})

    client = _client()
    response = get_breaker('openai').call(
        client.chat.completions.create,
        model=model or OPENAI_MODEL,
        messages=messages,
        temperature=temperature,
        max_tokens=max_tokens,
    )
    text = ''
    if response.choices:
        text = (response.choices[0].message.content or '').strip()
    tokens = response.usage.total_tokens if getattr(response, 'usage', None) else 0
    return text, tokens or 0
