"""
Helpers for reading JSON out of free-text model replies.

Model output is untrusted: callers validate the returned dict against a
pydantic schema and substitute a complete default when anything is off.
"""

import json
import re
from typing import Any, Dict

FENCE_PATTERN = re.compile(r'```(?:json)?\s*|\s*```')


class MalformedOutputError(ValueError):
    """Raised when no JSON object can be recovered from a model reply."""


def extract_json_object(response: str) -> Dict[str, Any]:
    """Parse a JSON object from a model reply with multiple fallback strategies."""
    if not isinstance(response, str) or not response.strip():
        raise MalformedOutputError("empty response")

    # Strategy 1: direct parse once markdown fences are removed
    cleaned = FENCE_PATTERN.sub('', response).strip()
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    # Strategy 2: outermost {...} span embedded in prose
    start = cleaned.find('{')
    end = cleaned.rfind('}')
    if start != -1 and end > start:
        try:
            parsed = json.loads(cleaned[start:end + 1])
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    raise MalformedOutputError(f"no JSON object in response: {response[:80]!r}")
