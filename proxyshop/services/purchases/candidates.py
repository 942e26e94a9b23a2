import logging

from proxyshop.services.provisioning.base import ResourceRecord

logger = logging.getLogger(__name__)

STRATEGY_KEYS = "candidate_keys"
STRATEGY_ORDER = "order_id"
STRATEGY_NEWEST = "newest"


def _numeric_key(record: ResourceRecord) -> int:
    try:
        return int(record.key or 0)
    except (TypeError, ValueError):
        return 0


def select_candidates(
    records: list[ResourceRecord],
    candidate_keys: list[str],
    order_id: str | None,
    quantity: int,
    exclude: set[str] | None = None,
) -> tuple[list[ResourceRecord], str]:
    """
    Strict priority: known unit keys, else units of the order, else the newest
    `quantity` units. The last one can hand out units of a concurrent order,
    so it is logged every time it is used.
    """
    exclude = exclude or set()
    pool = [r for r in records if r.key not in exclude]

    if candidate_keys:
        wanted = {str(k) for k in candidate_keys}
        return [r for r in pool if r.key in wanted], STRATEGY_KEYS

    if order_id:
        return [r for r in pool if r.order_id == str(order_id)], STRATEGY_ORDER

    newest = sorted(pool, key=_numeric_key, reverse=True)[:max(quantity, 0)]
    logger.warning(
        "candidates_newest_fallback",
        extra={"strategy": STRATEGY_NEWEST, "quantity": quantity, "count": len(newest)},
    )
    return newest, STRATEGY_NEWEST
