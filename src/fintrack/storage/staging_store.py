from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from ..bend.models import Transaction, TransactionCount
from ..bend.transactions import DEFAULT_SORT_BY, DEFAULT_SORT_ORDER, TransactionFilters


def transactions_filename(
    filters: TransactionFilters,
    date_from: datetime,
    date_to: datetime,
    *,
    now: datetime | None = None,
) -> str:
    """
    transactions_<from>_to_<to>[_account_<id>].json for plain fetches,
    bend_transactions_<time_filter|advanced>_..._<stamp>.json when any
    advanced filter is in play.
    """
    if not has_advanced_filters(filters):
        name = f"transactions_{date_from:%Y-%m-%d}_to_{date_to:%Y-%m-%d}"
        if filters.account_id:
            name += f"_account_{filters.account_id}"
        return name + ".json"

    parts = ["bend_transactions", filters.time_filter or "advanced"]
    if filters.account_id:
        parts.append("account-" + filters.account_id)
    if filters.category_id:
        parts.append("cat-" + filters.category_id)
    if filters.subcategory_id:
        parts.append("subcat-" + filters.subcategory_id)
    if filters.sort_by and filters.sort_by != DEFAULT_SORT_BY:
        parts.append("sort-" + filters.sort_by)
    if filters.sort_order and filters.sort_order != DEFAULT_SORT_ORDER:
        parts.append(filters.sort_order)
    parts.append(f"{now or datetime.now():%Y%m%d_%H%M%S}")
    return "_".join(parts) + ".json"


def has_advanced_filters(filters: TransactionFilters) -> bool:
    return bool(
        filters.time_filter
        or filters.category_id
        or filters.subcategory_id
        or (filters.sort_by and filters.sort_by != DEFAULT_SORT_BY)
        or (filters.sort_order and filters.sort_order != DEFAULT_SORT_ORDER)
        or filters.include_detailed
        or filters.or_category
    )


class StagingStore:
    """
    Raw fetched pages written as flat JSON files:

      ./staging/<filename>.json

    {
      "transactions": [...], "counts": [...], "fetched_at": "...",
      "date_range": {"from": "...", "to": "..."}, "total_count": N
    }
    """

    def __init__(self, root_dir: Path | str | None = None):
        self.root_dir = Path(root_dir) if root_dir else Path("staging")
        self.root_dir.mkdir(parents=True, exist_ok=True)

    def save_transactions(
        self,
        filename: str,
        transactions: Iterable[Transaction],
        counts: Iterable[TransactionCount],
        date_from: datetime,
        date_to: datetime,
    ) -> Path:
        txs = [t.model_dump(mode="json") for t in transactions]
        payload = {
            "transactions": txs,
            "counts": [c.model_dump(mode="json") for c in counts],
            "fetched_at": datetime.now(tz=timezone.utc).isoformat(),
            "date_range": {"from": date_from.isoformat(), "to": date_to.isoformat()},
            "total_count": len(txs),
        }
        path = self.root_dir / filename
        tmp = path.with_suffix(".json.tmp")
        tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        tmp.replace(path)
        return path

    def load(self, filename: str) -> dict | None:
        path = self.root_dir / filename
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))
