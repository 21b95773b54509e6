from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from .models import Transaction, TransactionCount, TransactionsPage

if TYPE_CHECKING:
    from .client import BendClient

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
DEFAULT_SORT_BY = "txn_timestamp"
DEFAULT_SORT_ORDER = "DESC"


@dataclass(frozen=True)
class TransactionFilters:
    limit: int = 0
    after: str = ""
    count_by: str = ""  # month / week / day
    time_filter: str = ""  # this_month, last_month, ...
    include: str = ""

    sort_by: str = ""
    sort_order: str = ""
    start_date: datetime | None = None
    end_date: datetime | None = None

    account_id: str = ""
    category_id: str = ""
    subcategory_id: str = ""

    include_count_by: bool = False
    include_detailed: bool = False
    or_category: bool = False

    def next_page(self, cursor: str) -> "TransactionFilters":
        return replace(self, after=cursor)


def _rfc3339(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat(timespec="seconds").replace("+00:00", "Z")


def build_query_params(filters: TransactionFilters) -> list[tuple[str, str]]:
    """Only set fields are sent; zero/empty values are omitted entirely."""
    params: list[tuple[str, str]] = []

    if filters.limit > 0:
        params.append(("limit", str(filters.limit)))
    if filters.after:
        params.append(("after", filters.after))
    if filters.count_by:
        params.append(("count_by", filters.count_by))
    if filters.time_filter:
        params.append(("time_filter", filters.time_filter))
    if filters.include:
        params.append(("include[]", filters.include))

    if filters.sort_by:
        params.append(("sort_by", filters.sort_by))
    if filters.sort_order:
        params.append(("sort_order", filters.sort_order))

    if filters.start_date is not None:
        params.append(("start_date", _rfc3339(filters.start_date)))
    if filters.end_date is not None:
        params.append(("end_date", _rfc3339(filters.end_date)))

    if filters.category_id:
        params.append(("category_id", filters.category_id))
    if filters.account_id:
        params.append(("account_id[]", filters.account_id))
    if filters.subcategory_id:
        params.append(("subcategory_id", filters.subcategory_id))

    if filters.include_count_by:
        params.append(("include[]", "count_by_totals"))
    if filters.include_detailed:
        params.append(("include[]", "detailed_search_summary"))

    if filters.or_category:
        params.append(("or[]", "subcategory_id"))
        params.append(("or[]", "category_id"))

    return params


def curl_filters(
    start_date: datetime,
    end_date: datetime,
    category_id: str = "",
    subcategory_id: str = "",
) -> TransactionFilters:
    return TransactionFilters(
        sort_by=DEFAULT_SORT_BY,
        sort_order=DEFAULT_SORT_ORDER,
        start_date=start_date,
        end_date=end_date,
        count_by="month",
        include_count_by=True,
        include_detailed=True,
        or_category=True,
        category_id=category_id,
        subcategory_id=subcategory_id,
    )


@dataclass(frozen=True)
class TransactionSet:
    transactions: list[Transaction] = field(default_factory=list)
    counts: list[TransactionCount] = field(default_factory=list)
    total: int = 0
    pages: int = 0


def fetch_transactions(client: BendClient, user_id: str, filters: TransactionFilters) -> TransactionsPage:
    return client.transactions_page(user_id, filters)


def fetch_all_transactions(
    client: BendClient,
    user_id: str,
    filters: TransactionFilters | None = None,
) -> TransactionSet:
    """
    Follow the `after` cursor until it comes back empty or a page is shorter
    than the requested limit. Any failing page fails the whole fetch.
    """
    filters = filters or TransactionFilters(limit=DEFAULT_PAGE_SIZE)

    transactions: list[Transaction] = []
    counts: list[TransactionCount] = []
    total = 0
    pages = 0

    while True:
        page = client.transactions_page(user_id, filters)
        pages += 1

        transactions.extend(page.transactions)
        counts.extend(page.counts)
        total = page.total

        logger.debug("Fetched page %s: %s transactions, cursor=%r", pages, len(page.transactions), page.after)

        if not page.after or len(page.transactions) < filters.limit:
            break
        filters = filters.next_page(page.after)

    return TransactionSet(transactions=transactions, counts=counts, total=total, pages=pages)
