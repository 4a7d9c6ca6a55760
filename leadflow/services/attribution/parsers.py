"""Parsers for the loosely-typed JSON columns the pipeline reads.

Every raw value is first classified into one tagged shape. The only
fallback is a single decode of a JSON-encoded string, which covers values
written double-encoded by older clients; anything else that does not match
the expected shape parses to the documented empty value.
"""
from __future__ import annotations

from dataclasses import dataclass
import json
import math
from typing import Any, Literal


ShapeKind = Literal["missing", "object", "array", "number", "text", "flag", "invalid"]


@dataclass(frozen=True)
class JsonShape:
    kind: ShapeKind
    value: Any = None
    # True when the value was recovered from a JSON-encoded string.
    decoded: bool = False


def _classify(raw: Any) -> ShapeKind:
    if raw is None:
        return "missing"
    if isinstance(raw, bool):
        return "flag"
    if isinstance(raw, dict):
        return "object"
    if isinstance(raw, (list, tuple)):
        return "array"
    if isinstance(raw, (int, float)):
        return "number" if math.isfinite(float(raw)) else "invalid"
    if isinstance(raw, str):
        return "text"
    return "invalid"


def classify_json(raw: Any) -> JsonShape:
    kind = _classify(raw)
    if kind == "text":
        stripped = raw.strip()
        if stripped[:1] in {"{", "["}:
            try:
                decoded = json.loads(stripped)
            except ValueError:
                return JsonShape("text", raw)
            inner = _classify(decoded)
            if inner in {"object", "array"}:
                return JsonShape(inner, decoded, decoded=True)
    return JsonShape(kind, raw)


def parse_json_object(raw: Any) -> dict[str, Any]:
    shape = classify_json(raw)
    return dict(shape.value) if shape.kind == "object" else {}


def parse_json_array(raw: Any) -> list[Any]:
    shape = classify_json(raw)
    return list(shape.value) if shape.kind == "array" else []


def parse_number(raw: Any) -> float | None:
    shape = classify_json(raw)
    if shape.kind == "number":
        return float(shape.value)
    if shape.kind == "text":
        try:
            value = float(shape.value.strip())
        except ValueError:
            return None
        return value if math.isfinite(value) else None
    return None


def parse_consent_scopes(raw: Any) -> frozenset[str]:
    scopes: set[str] = set()
    shape = classify_json(raw)
    if shape.kind == "array":
        candidates = parse_json_array(raw)
    elif shape.kind == "text":
        candidates = shape.value.split(",")
    else:
        candidates = []
    for item in candidates:
        if isinstance(item, str) and item.strip():
            scopes.add(item.strip().lower())
    return frozenset(scopes)


def parse_event_lead_score(metadata: Any) -> float:
    # Per-event score written by the tracker; non-numeric values count as zero.
    value = parse_number(parse_json_object(metadata).get("lead_score"))
    return max(0.0, value) if value is not None else 0.0


@dataclass(frozen=True)
class PipelineStage:
    id: str
    label: str
    value_cents: int
    is_junk: bool = False


def _parse_stage(item: Any) -> PipelineStage | None:
    entry = parse_json_object(item)
    stage_id = entry.get("id")
    if not isinstance(stage_id, str) or not stage_id.strip():
        return None
    cents = parse_number(entry.get("value_cents"))
    return PipelineStage(
        id=stage_id.strip(),
        label=str(entry.get("label") or stage_id).strip(),
        value_cents=max(0, int(round(cents))) if cents is not None else 0,
        is_junk=entry.get("is_junk") is True,
    )


def parse_pipeline_stages(raw: Any) -> list[PipelineStage]:
    stages: list[PipelineStage] = []
    seen: set[str] = set()
    for item in parse_json_array(raw):
        stage = _parse_stage(item)
        if stage is None or stage.id in seen:
            continue
        seen.add(stage.id)
        stages.append(stage)
    return stages
