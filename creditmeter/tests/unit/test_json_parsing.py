from __future__ import annotations

from creditmeter.services.credits.metering import JSON_ONLY_INSTRUCTION, safe_parse_json, with_json_instruction


def test_safe_parse_json_direct_and_fenced() -> None:
    assert safe_parse_json('{"a": 1}') == {"a": 1}
    assert safe_parse_json('```json\n{"a": [1, 2]}\n```') == {"a": [1, 2]}
    assert safe_parse_json("```\n[1, 2]\n```") == [1, 2]


def test_safe_parse_json_extracts_from_surrounding_prose() -> None:
    assert safe_parse_json('Sure! Here it is: {"name": "x"} Hope that helps.') == {"name": "x"}
    assert safe_parse_json("Results: [3, 4] done") == [3, 4]


def test_safe_parse_json_returns_none_on_garbage() -> None:
    assert safe_parse_json("no json here") is None
    assert safe_parse_json("{broken") is None
    assert safe_parse_json(None) is None


def test_json_instruction_is_appended() -> None:
    prompt = with_json_instruction("List three colors")
    assert prompt.startswith("List three colors")
    assert prompt.endswith(JSON_ONLY_INSTRUCTION)
