"""
Pricing config: typed wrappers over proxyshop.core.config.settings.
"""
from __future__ import annotations

import json
from decimal import ROUND_HALF_UP, Decimal

from proxyshop.core.config import settings
from proxyshop.services.provisioning.base import Price

CENT = Decimal("0.01")


def get_markup_schedule() -> dict[int, int]:
    """Return {max_days: markup_percent}."""
    raw = json.loads(settings.markup_schedule)
    return {int(k): int(v) for k, v in raw.items()}


def get_markup_tail_percent() -> int:
    return settings.markup_tail_percent


def calc_markup_percent(period_days: int) -> int:
    """First bracket whose upper bound covers the period; longer rentals get the tail percent."""
    schedule = get_markup_schedule()
    for max_days in sorted(schedule.keys()):
        if period_days <= max_days:
            return schedule[max_days]
    return get_markup_tail_percent()


def apply_markup(base: Decimal, period_days: int) -> Price:
    base = Decimal(base).quantize(CENT, rounding=ROUND_HALF_UP)
    percent = calc_markup_percent(period_days)
    markup = (base * Decimal(percent) / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    return Price(base=base, markup_percent=percent, markup=markup, total=base + markup)
