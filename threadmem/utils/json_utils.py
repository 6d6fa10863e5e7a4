"""
JSON utilities for persisting checkpoint state and cleaning LLM responses.
"""

import json
from datetime import datetime
from decimal import Decimal
from typing import Any


def _default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Decimal):
        # DynamoDB returns numbers as Decimal
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    raise TypeError(f'Object of type {type(value).__name__} is not JSON serializable')


def dumps(value: Any) -> str:
    """Serialize state to a compact JSON string.

    Args:
        value: JSON-compatible value; datetimes, Decimals and sets are converted

    Returns:
        JSON string

    Raises:
        TypeError: If the value contains an unsupported type
    """
    return json.dumps(value, default=_default, separators=(',', ':'), sort_keys=True)


def loads(text: str) -> Any:
    """Deserialize a JSON string produced by ``dumps``."""
    return json.loads(text)


def clean_llm_text(response: str) -> str:
    """Strip code block markers and surrounding whitespace from an LLM response.

    Args:
        response: Raw LLM response

    Returns:
        Cleaned text
    """
    response = response.strip()

    if response.startswith('```'):
        first_newline = response.find('\n')
        response = response[first_newline + 1:] if first_newline != -1 else response[3:]

    if response.endswith('```'):
        response = response[:-3]

    return response.strip()
