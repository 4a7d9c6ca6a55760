from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any


SCORE_VERSION = "v1.1"

CONVERSION_POINTS = 20
INTERACTION_POINTS = 5
BONUS_CAP = 40

DEDUCT_NO_CLICK_ID = 25
DEDUCT_FAST = 20
DEDUCT_SINGLE_EVENT = 10

FAST_ELAPSED_S = 30
SUSPICIOUS_CONFIDENCE = 50

STATUS_INTENT = "intent"
STATUS_SUSPICIOUS = "suspicious"


@dataclass(frozen=True)
class ScoreInputs:
    conversion_count: int
    interaction_count: int
    # Largest per-event lead_score seen in the session, not a sum.
    bonus_from_events: float
    has_click_id: bool
    elapsed_seconds: float
    event_count: int


@dataclass(frozen=True)
class ConfidenceDeductions:
    no_click_id: int
    fast: int
    single: int

    @property
    def total(self) -> int:
        return self.no_click_id + self.fast + self.single


@dataclass(frozen=True)
class LeadScore:
    conversion_points: int
    interaction_points: int
    bonus_raw: float
    bonus_capped: float
    raw_score: float
    final_score: int
    capped_at_100: bool
    confidence: int
    deductions: ConfidenceDeductions
    elapsed_seconds: float
    event_count: int
    has_click_id: bool

    def breakdown(self) -> dict[str, Any]:
        # Each derived value appears once; the stored snapshot is exactly this dict.
        data = asdict(self)
        data["version"] = SCORE_VERSION
        data["bonus_cap"] = BONUS_CAP
        return data


def _clamp(value: float, low: int, high: int) -> float:
    return max(low, min(high, value))


def compute_lead_score(inputs: ScoreInputs) -> LeadScore:
    """Score one matched session.

    Conversions are worth 20 points and interactions 5; the strongest single
    event bonus is added but never more than ``BONUS_CAP``. Confidence starts
    at 100 and loses points for missing click ids, very fast calls and
    single-event sessions.
    """
    conversion_points = max(0, int(inputs.conversion_count)) * CONVERSION_POINTS
    interaction_points = max(0, int(inputs.interaction_count)) * INTERACTION_POINTS
    bonus_raw = max(0.0, float(inputs.bonus_from_events))
    bonus_capped = min(bonus_raw, float(BONUS_CAP))
    raw_score = conversion_points + interaction_points + bonus_capped
    final_score = int(round(_clamp(raw_score, 0, 100)))

    deductions = ConfidenceDeductions(
        no_click_id=0 if inputs.has_click_id else DEDUCT_NO_CLICK_ID,
        fast=DEDUCT_FAST if inputs.elapsed_seconds < FAST_ELAPSED_S else 0,
        single=DEDUCT_SINGLE_EVENT if inputs.event_count <= 1 else 0,
    )
    confidence = int(_clamp(100 - deductions.total, 0, 100))
    return LeadScore(
        conversion_points=conversion_points,
        interaction_points=interaction_points,
        bonus_raw=bonus_raw,
        bonus_capped=bonus_capped,
        raw_score=raw_score,
        final_score=final_score,
        capped_at_100=raw_score > 100,
        confidence=confidence,
        deductions=deductions,
        elapsed_seconds=float(inputs.elapsed_seconds),
        event_count=int(inputs.event_count),
        has_click_id=bool(inputs.has_click_id),
    )


def derive_call_status(score: LeadScore) -> str:
    if score.elapsed_seconds < FAST_ELAPSED_S or score.confidence < SUSPICIOUS_CONFIDENCE:
        return STATUS_SUSPICIOUS
    return STATUS_INTENT


def star_rating(score: float) -> int:
    # Operator scores arrive on a 0-100 scale (stars * 20).
    return int(_clamp(round(score / 20), 0, 5))
