from __future__ import annotations

import json

import pytest

from rd_engine.services.json_payload import (
    extract_json_object,
    extract_json_value,
    normalize_text_list,
    unit_float,
)


def test_extract_json_object_strips_code_fence_and_prose():
    text = 'Sure!\n```json\n{"a": 1, "b": {"c": 2}}\n```'
    assert extract_json_object(text) == {"a": 1, "b": {"c": 2}}


def test_extract_json_object_raises_when_missing():
    with pytest.raises(json.JSONDecodeError):
        extract_json_object("no braces at all")


def test_extract_json_value_prefers_whichever_opens_first():
    assert extract_json_value('Findings: [{"claim": "x"}]') == [{"claim": "x"}]
    assert extract_json_value('{"findings": [1, 2]}') == {"findings": [1, 2]}


def test_extract_json_value_rejects_broken_array():
    with pytest.raises(json.JSONDecodeError):
        extract_json_value("[{'claim': 'single quotes are not JSON'}]")


@pytest.mark.parametrize(
    ("value", "expected"),
    [(0.4, 0.4), (7, 1.0), (-2, 0.0), ("0.9", 0.5), (True, 0.5), (float("nan"), 0.5), (None, 0.5)],
)
def test_unit_float_clamps_and_defaults(value, expected):
    assert unit_float(value, 0.5) == expected


def test_normalize_text_list_dedupes_case_insensitively():
    raw = ["  Pricing   data ", "pricing data", 3, "", "Vendor roadmaps"]
    assert normalize_text_list(raw) == ["Pricing data", "Vendor roadmaps"]
    assert normalize_text_list("not a list") == []
    assert normalize_text_list(["a", "b", "c"], max_items=2) == ["a", "b"]
