from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
import re

from sqlalchemy.ext.asyncio import AsyncSession

from leadflow.domain.models import Call, Site
from leadflow.services.attribution.matcher import AttributionMatcher, MatchResult
from leadflow.services.attribution.store import ScoreWrite, SqlAttributionStore
from leadflow.services.results import Ok, report
from leadflow.services.telemetry import record_outcome


logger = logging.getLogger(__name__)

OUTCOME_NO_MATCH = "no_match"
OUTCOME_NO_CONSENT = "no_consent"
OUTCOME_RECORDED = "recorded"

_PHONE_CHARS = re.compile(r"[^\d+]")


@dataclass(frozen=True)
class CallEventInput:
    fingerprint: str
    phone_number: str | None = None
    click_id: str | None = None
    intent_action: str | None = None
    intent_target: str | None = None
    intent_stamp: str | None = None
    intent_page_url: str | None = None


@dataclass(frozen=True)
class CallEventOutcome:
    outcome: str
    call_id: str | None = None
    match: MatchResult | None = None


def normalize_phone_target(raw: str | None) -> str | None:
    if not raw:
        return None
    target = raw.strip()
    if target.lower().startswith("tel:"):
        return _PHONE_CHARS.sub("", target[4:])
    if re.match(r"^\+?\d[\d\s().-]{6,}$", target):
        return _PHONE_CHARS.sub("", target)
    return target


def infer_intent_action(target: str | None) -> str:
    lowered = (target or "").lower()
    if "wa.me" in lowered or "whatsapp.com" in lowered:
        return "whatsapp"
    return "phone"


async def record_call_event(
    session: AsyncSession,
    *,
    site: Site,
    payload: CallEventInput,
    now: datetime,
    matcher: AttributionMatcher | None = None,
) -> CallEventOutcome:
    """Match a signed call event to a session and store the scored call.

    No match and missing analytics consent both resolve to a silent outcome
    so callers cannot tell them apart.
    """
    matcher = matcher or AttributionMatcher(SqlAttributionStore(session))
    result = report(
        await matcher.match(
            tenant_id=site.id,
            fingerprint=payload.fingerprint,
            as_of=now,
            click_id=payload.click_id,
        ),
        component="attribution_match",
        logger=logger,
        tenant=site.id,
    )
    match = result.value if isinstance(result, Ok) else None
    if match is None:
        record_outcome("call_event", OUTCOME_NO_MATCH)
        return CallEventOutcome(outcome=OUTCOME_NO_MATCH)
    if not match.analytics_consent:
        record_outcome("call_event", OUTCOME_NO_CONSENT)
        return CallEventOutcome(outcome=OUTCOME_NO_CONSENT)

    target = payload.intent_target or payload.phone_number
    call = Call(
        tenant_id=site.id,
        phone_number=normalize_phone_target(payload.phone_number),
        click_id=payload.click_id or match.click_id,
        currency=site.currency,
        intent_action=payload.intent_action or infer_intent_action(target),
        intent_target=normalize_phone_target(target),
        intent_stamp=payload.intent_stamp,
        intent_page_url=payload.intent_page_url,
        version=1,
        created_at=now,
        updated_at=now,
    )
    session.add(call)
    await session.flush()
    # The score goes through the same store the match was read from.
    await matcher.store.write_score(
        tenant_id=site.id,
        call_id=call.id,
        score=ScoreWrite(
            session_id=match.session_id,
            fingerprint=payload.fingerprint,
            lead_score=match.lead_score,
            confidence=match.confidence,
            status=match.status,
            breakdown=match.breakdown,
            marketing_consent=match.marketing_consent,
            matched_at=now,
        ),
    )
    record_outcome("call_event", OUTCOME_RECORDED)
    logger.info(
        "call_event_recorded tenant=%s call=%s status=%s score=%s",
        site.id,
        call.id,
        match.status,
        match.lead_score,
    )
    return CallEventOutcome(outcome=OUTCOME_RECORDED, call_id=call.id, match=match)
