import os
import re
import json
import math
from typing import Optional, Tuple, Any

from openai import OpenAI

# USD per 1K tokens
MODEL_PRICING = {
    'gpt-4o-mini': {'input': 0.00015, 'output': 0.0006},
    'gpt-4o': {'input': 0.0025, 'output': 0.01},
    'gpt-4': {'input': 0.03, 'output': 0.06},
    'gpt-3.5-turbo': {'input': 0.0015, 'output': 0.002},
}

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```")


def get_openai_client() -> Optional[OpenAI]:
    """Return an OpenAI client, or None when OPENAI_API_KEY is not set."""
    api_key = os.getenv('OPENAI_API_KEY')
    if not api_key:
        return None
    return OpenAI(api_key=api_key)


def parse_model_json_output(text: Optional[str]) -> Tuple[Optional[Any], Optional[str]]:
    """Try to parse JSON text that may be wrapped in code fences.

    Returns (parsed_json_or_none, raw_text)
    """
    if not text:
        return None, text

    candidate = text.strip()
    match = _FENCE_RE.search(candidate)
    if match:
        candidate = match.group(1).strip()

    try:
        return json.loads(candidate), text
    except (ValueError, TypeError):
        return None, text


def estimate_tokens(text: str) -> int:
    # ~4 characters per token for English text
    return math.ceil(len(text) / 4)


def calculate_cost(model: str, input_tokens: int, output_tokens: int) -> float:
    rates = MODEL_PRICING.get(model) or MODEL_PRICING['gpt-4o-mini']
    return (input_tokens * rates['input'] + output_tokens * rates['output']) / 1000
