"""Pure reductions over transaction sets."""

from txnsync.analytics.summary import FinancialSummary, summarize

__all__ = ["FinancialSummary", "summarize"]
