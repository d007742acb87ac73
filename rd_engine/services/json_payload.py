"""Helpers for pulling structured JSON out of free-form model responses."""
from __future__ import annotations

import json
from typing import Any


def _strip_code_fence(raw_text: str) -> str:
    text = raw_text.strip()
    if text.startswith("```"):
        parts = text.split("```")
        if len(parts) >= 2:
            text = parts[1]
        if text.startswith("json"):
            text = text[4:]
        text = text.strip()
    return text


def extract_json_object(raw_text: str) -> dict[str, Any]:
    text = _strip_code_fence(raw_text)
    start = text.find("{")
    end = text.rfind("}")
    if start < 0 or end <= start:
        raise json.JSONDecodeError("object not found", text, 0)
    parsed = json.loads(text[start : end + 1])
    if not isinstance(parsed, dict):
        raise json.JSONDecodeError("not an object", text, 0)
    return parsed


def extract_json_value(raw_text: str) -> Any:
    """Parse the outermost JSON array or object, whichever opens first."""
    text = _strip_code_fence(raw_text)
    array_start = text.find("[")
    object_start = text.find("{")
    if array_start >= 0 and (object_start < 0 or array_start < object_start):
        end = text.rfind("]")
        if end > array_start:
            return json.loads(text[array_start : end + 1])
    if object_start >= 0:
        return extract_json_object(text)
    raise json.JSONDecodeError("no JSON value found", text, 0)


def unit_float(value: Any, default: float) -> float:
    """Coerce to a float in [0, 1]; non-numeric values fall back to ``default``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if value != value:  # NaN
        return default
    return min(max(float(value), 0.0), 1.0)


def clean_text(value: Any, default: str = "") -> str:
    if not isinstance(value, str):
        return default
    return value.strip()


def normalize_text_list(raw_values: Any, *, max_items: int = 50, min_len: int = 1) -> list[str]:
    if not isinstance(raw_values, list):
        return []
    cleaned: list[str] = []
    seen: set[str] = set()
    for item in raw_values:
        if not isinstance(item, str):
            continue
        value = " ".join(item.split()).strip()
        if len(value) < min_len:
            continue
        key = value.lower()
        if key in seen:
            continue
        seen.add(key)
        cleaned.append(value)
        if len(cleaned) >= max_items:
            break
    return cleaned
