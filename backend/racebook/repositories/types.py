"""Shared repository DTOs."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class OutcomeSpec:
    label: str
    driver_id: str | None = None
    outcome_id: str | None = None
