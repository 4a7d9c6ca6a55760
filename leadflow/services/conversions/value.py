from __future__ import annotations

from dataclasses import dataclass, field
import math
from typing import Any

from leadflow.services.attribution.parsers import parse_json_object


def _default_weights() -> dict[int, float]:
    return {3: 0.5, 4: 0.8, 5: 1.0}


@dataclass(frozen=True)
class OciConfig:
    # Reference value for a 5-star conversion, in currency units.
    base_value: float = 500.0
    currency: str = "TRY"
    # Calls rated below this star count are never sent.
    min_star: int = 3
    weights: dict[int, float] = field(default_factory=_default_weights)


DEFAULT_OCI_CONFIG = OciConfig()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def parse_oci_config(raw: Any) -> OciConfig:
    """Read a site's ``oci_config`` column; each bad or missing field falls back alone."""
    cfg = parse_json_object(raw)
    if not cfg:
        return OciConfig()

    base_raw = cfg.get("base_value")
    if _is_number(base_raw) and base_raw > 0:
        base_value = float(base_raw)
    else:
        base_value = DEFAULT_OCI_CONFIG.base_value

    currency_raw = cfg.get("currency")
    if isinstance(currency_raw, str) and len(currency_raw.strip()) >= 3:
        currency = currency_raw.strip().upper()[:3]
    else:
        currency = DEFAULT_OCI_CONFIG.currency

    min_star_raw = cfg.get("min_star")
    if _is_number(min_star_raw) and 1 <= min_star_raw <= 5:
        min_star = int(round(min_star_raw))
    else:
        min_star = DEFAULT_OCI_CONFIG.min_star

    weights: dict[int, float] = {}
    raw_weights = cfg.get("weights")
    if isinstance(raw_weights, dict):
        for key, value in raw_weights.items():
            try:
                star = int(str(key), 10)
            except ValueError:
                continue
            if 1 <= star <= 5 and _is_number(value) and value >= 0:
                weights[star] = float(value)
    return OciConfig(
        base_value=float(base_value),
        currency=currency,
        min_star=min_star,
        weights=weights or _default_weights(),
    )


def compute_conversion_value(star: float | None, sale_amount: float | None, config: OciConfig) -> float | None:
    """Conversion value in currency units, or None when the call must not be sent.

    A positive operator-entered amount always wins. Otherwise the star rating
    must reach ``min_star``; unknown stars use weight 1.0.
    """
    if sale_amount is not None and math.isfinite(sale_amount) and sale_amount > 0:
        return round(float(sale_amount), 2)
    if star is None or not math.isfinite(star):
        return None
    rounded = int(round(star))
    if rounded < config.min_star:
        return None
    weight = config.weights.get(rounded, 1.0)
    return round(config.base_value * weight, 2)


def to_cents(value: float) -> int:
    return int(round(value * 100))
