"""Tri-state results for best-effort operations.

Lookups and cache corrections that are allowed to fail without failing the
caller return one of these instead of swallowing exceptions, so every
degraded path is logged and counted in one place.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Generic, TypeVar, Union

from leadflow.services.telemetry import record_outcome


T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Degraded(Generic[T]):
    # Usable fallback value plus the reason the primary path was skipped.
    reason: str
    value: T | None = None


@dataclass(frozen=True)
class Err:
    reason: str
    error: Exception | None = None


Result = Union[Ok[T], Degraded[T], Err]


def is_ok(result: object) -> bool:
    return isinstance(result, Ok)


def value_or(result: Result[T], default: T) -> T:
    if isinstance(result, Ok):
        return result.value
    if isinstance(result, Degraded) and result.value is not None:
        return result.value
    return default


def report(result: Result[T], *, component: str, logger: logging.Logger, **context: object) -> Result[T]:
    # Count and log non-ok outcomes; returns the result unchanged for chaining.
    if isinstance(result, Ok):
        return result
    suffix = " ".join(f"{key}={value}" for key, value in context.items())
    if isinstance(result, Degraded):
        record_outcome(component, "degraded")
        logger.warning("%s_degraded reason=%s %s", component, result.reason, suffix)
    else:
        record_outcome(component, "error")
        logger.error("%s_error reason=%s %s", component, result.reason, suffix, exc_info=result.error)
    return result
