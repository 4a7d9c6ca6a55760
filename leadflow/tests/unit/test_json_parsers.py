from __future__ import annotations

from leadflow.services.attribution.parsers import (
    classify_json,
    parse_consent_scopes,
    parse_event_lead_score,
    parse_json_array,
    parse_json_object,
    parse_number,
    parse_pipeline_stages,
)


def test_double_encoded_object_is_decoded_once() -> None:
    shape = classify_json('{"lead_score": 12}')
    assert shape.kind == "object"
    assert shape.decoded is True
    assert parse_json_object('{"a": 1}') == {"a": 1}
    # A string holding a JSON string is not unwrapped further.
    assert parse_json_object('"{\\"a\\": 1}"') == {}


def test_wrong_shapes_parse_to_empty_values() -> None:
    assert parse_json_object([1, 2]) == {}
    assert parse_json_object("not json") == {}
    assert parse_json_array({"a": 1}) == []
    assert parse_json_array("[1, 2]") == [1, 2]
    assert classify_json(True).kind == "flag"


def test_numbers_accept_numeric_text_only() -> None:
    assert parse_number(3) == 3.0
    assert parse_number(" 4.5 ") == 4.5
    assert parse_number("abc") is None
    assert parse_number(True) is None
    assert parse_number(float("nan")) is None


def test_consent_scopes_from_list_or_csv() -> None:
    assert parse_consent_scopes(["Marketing", " analytics "]) == frozenset({"marketing", "analytics"})
    assert parse_consent_scopes("marketing,analytics") == frozenset({"marketing", "analytics"})
    assert parse_consent_scopes('["marketing"]') == frozenset({"marketing"})
    assert parse_consent_scopes(None) == frozenset()


def test_event_lead_score_ignores_non_numeric_values() -> None:
    assert parse_event_lead_score({"lead_score": 15}) == 15.0
    assert parse_event_lead_score('{"lead_score": "20"}') == 20.0
    assert parse_event_lead_score({"lead_score": "high"}) == 0.0
    assert parse_event_lead_score({"lead_score": -5}) == 0.0


def test_pipeline_stages_skip_invalid_and_duplicate_entries() -> None:
    stages = parse_pipeline_stages(
        [
            {"id": "qualified", "label": "Qualified", "value_cents": 15000},
            {"id": "qualified", "label": "Again", "value_cents": 1},
            {"label": "no id"},
            {"id": "spam", "is_junk": True},
            "garbage",
        ]
    )
    assert [stage.id for stage in stages] == ["qualified", "spam"]
    assert stages[0].value_cents == 15000
    assert stages[1].is_junk is True
    assert stages[1].value_cents == 0
