"""Transaction pagination and multi-account aggregation."""

from txnsync.tools.sync.aggregator import (
    AccountCursor,
    AggregationQuery,
    AggregationResult,
    MultiAccountAggregator,
    RunState,
    merge_transactions,
)
from txnsync.tools.sync.paginator import AccountPaginator, TransactionPage
from txnsync.tools.sync.throttle import RequestThrottle

__all__ = [
    "AccountCursor",
    "AccountPaginator",
    "AggregationQuery",
    "AggregationResult",
    "MultiAccountAggregator",
    "RequestThrottle",
    "RunState",
    "TransactionPage",
    "merge_transactions",
]
