"""Helpers for parsing structured chat model output."""

import json
import re
from typing import TypeVar

from pydantic import BaseModel

T = TypeVar("T", bound=BaseModel)


def _strip_llm_fences(raw_output: str) -> str:
    """Strip markdown code fences from model output.

    Handles: ```json ... ```, ``` ... ```, leading/trailing whitespace.
    """
    cleaned = raw_output.strip()

    fence_match = re.search(r"```(?:json)?\s*\n?(.*?)```", cleaned, re.DOTALL)
    if fence_match:
        return fence_match.group(1).strip()

    if cleaned.startswith("```json"):
        cleaned = cleaned[7:]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


def _first_json_object(text: str) -> str:
    """Cut the first {...} block out of prose-wrapped output."""
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return text
    return text[start : end + 1]


def parse_llm_json_dict(raw_output: str) -> dict:
    """
    Parse model output as a JSON object.

    Handles common response quirks:
    - Markdown code fences (```json ... ```)
    - Leading/trailing whitespace
    - Prose before or after the object

    Raises:
        json.JSONDecodeError: If JSON parsing fails after cleanup
        ValueError: If the payload is not a JSON object
    """
    cleaned = _strip_llm_fences(raw_output)
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError:
        parsed = json.loads(_first_json_object(cleaned))

    if not isinstance(parsed, dict):
        raise ValueError("Expected a JSON object")
    return parsed


def parse_llm_json(raw_output: str, model: type[T]) -> T:
    """
    Parse model output as JSON and validate against a Pydantic model.

    Raises:
        json.JSONDecodeError: If JSON parsing fails after cleanup
        pydantic.ValidationError: If parsed JSON doesn't match schema
    """
    return model.model_validate(parse_llm_json_dict(raw_output))
