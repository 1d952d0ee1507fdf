from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import replace
from decimal import Decimal
from typing import TypeVar

from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
import typer

from txnsync.core.config import load_engine_config_from_env
from txnsync.core.errors import PartialFailureError, SyncError
from txnsync.engine import SyncEngine
from txnsync.infra.clients.auth import StaticCredentialProvider
from txnsync.models.transaction import Transaction

# Load environment variables from .env
load_dotenv()

app = typer.Typer(
    help="txnsync: multi-account transaction sync and cache CLI.",
    no_args_is_help=True,
)

console = Console()
T = TypeVar("T")

TOKEN_OPTION = typer.Option(
    None, "--token", envvar="TXNSYNC_TOKEN", help="Static bearer token to use"
)
RULES_OPTION = typer.Option(
    None, "--rules", help="YAML category rule file (overrides TXNSYNC_RULES_PATH)"
)


def _build_engine(token: str | None, rules_path: str | None = None) -> SyncEngine:
    config = load_engine_config_from_env()
    if rules_path:
        config = replace(config, rules_path=rules_path)
    credentials = StaticCredentialProvider(token) if token else None
    return SyncEngine.from_config(config, credentials=credentials)


def _run(
    token: str | None,
    action: Callable[[SyncEngine], Awaitable[T]],
    rules_path: str | None = None,
) -> T:
    async def _impl() -> T:
        engine = _build_engine(token, rules_path)
        try:
            return await action(engine)
        finally:
            await engine.aclose()

    try:
        return asyncio.run(_impl())
    except PartialFailureError as e:
        console.print(f"[red]No data:[/red] {e}")
        raise typer.Exit(code=2) from e
    except SyncError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(code=1) from e


def _format_amount(amount: Decimal) -> str:
    return f"{amount:,.2f}"


def _transactions_table(transactions: list[Transaction], engine: SyncEngine) -> Table:
    table = Table(show_lines=False)
    table.add_column("Date")
    table.add_column("Account")
    table.add_column("Description")
    table.add_column("Category")
    table.add_column("Amount", justify="right")
    for txn in transactions:
        result = engine.classify(txn)
        table.add_row(
            txn.occurred_on.isoformat(),
            txn.account_name or txn.account_id,
            txn.description,
            result.category.value,
            _format_amount(txn.amount),
        )
    return table


@app.command("accounts")
def accounts_cmd(
    entity_id: str = typer.Argument(..., help="Bank entity identifier"),
    token: str | None = TOKEN_OPTION,
) -> None:
    """List the accounts linked to an entity."""

    async def _impl(engine: SyncEngine) -> None:
        accounts = await engine.fetch_accounts(entity_id)
        if not accounts:
            console.print("No accounts found.")
            return
        table = Table()
        table.add_column("ID")
        table.add_column("Name")
        table.add_column("Type")
        table.add_column("Currency")
        table.add_column("Balance", justify="right")
        for account in accounts:
            table.add_row(
                account.id,
                account.name,
                account.type or "",
                account.currency_code or "",
                _format_amount(account.balance) if account.balance is not None else "",
            )
        console.print(table)

    _run(token, _impl)


@app.command("transactions")
def transactions_cmd(
    entity_id: str = typer.Argument(..., help="Bank entity identifier"),
    account_id: str = typer.Argument(..., help="Account identifier"),
    start_date: str = typer.Option(..., "--from", help="Start date (YYYY-MM-DD)"),
    end_date: str = typer.Option(..., "--to", help="End date (YYYY-MM-DD)"),
    page: int = typer.Option(1, min=1, help="Page number"),
    page_size: int | None = typer.Option(None, min=1, help="Records per page"),
    token: str | None = TOKEN_OPTION,
    rules: str | None = RULES_OPTION,
) -> None:
    """Fetch one page of transactions for a single account."""

    async def _impl(engine: SyncEngine) -> None:
        result = await engine.fetch_transactions(
            entity_id, account_id, start_date, end_date, page, page_size
        )
        console.print(_transactions_table(result.transactions, engine))
        console.print(
            f"{len(result.transactions)} shown, total {result.total_count}, "
            f"more available: {result.has_more}"
        )

    _run(token, _impl, rules)


@app.command("sync")
def sync_cmd(
    entity_id: str = typer.Argument(..., help="Bank entity identifier"),
    start_date: str = typer.Option(..., "--from", help="Start date (YYYY-MM-DD)"),
    end_date: str = typer.Option(..., "--to", help="End date (YYYY-MM-DD)"),
    account: list[str] | None = typer.Option(  # noqa: B008
        None, "--account", "-a", help="Account id (repeatable); defaults to all"
    ),
    page: int = typer.Option(1, min=1, help="Page of the merged result"),
    page_size: int | None = typer.Option(None, min=1, help="Records per page"),
    refresh: bool = typer.Option(False, "--refresh", help="Ignore a fresh cache entry"),
    token: str | None = TOKEN_OPTION,
    rules: str | None = RULES_OPTION,
) -> None:
    """Fetch, merge and cache transactions across accounts."""

    async def _impl(engine: SyncEngine) -> None:
        accounts = await engine.fetch_accounts(entity_id)
        account_ids = list(account) if account else [a.id for a in accounts]
        if not account_ids:
            console.print("No accounts to sync.")
            return
        result = await engine.fetch_transactions_multi_account(
            entity_id,
            account_ids,
            start_date,
            end_date,
            page,
            page_size,
            force_refresh=refresh,
        )
        console.print(_transactions_table(result.transactions, engine))
        source = "expired cache" if result.stale else "cache" if result.from_cache else "API"
        console.print(
            f"{len(result.transactions)} shown of {result.total_count} (source: {source}), "
            f"more available: {result.has_more}"
        )
        if result.failed_account_ids:
            console.print(
                f"[yellow]Partial result, failed accounts:[/yellow] "
                f"{', '.join(result.failed_account_ids)}"
            )

    _run(token, _impl, rules)


@app.command("summary")
def summary_cmd(
    entity_id: str = typer.Argument(..., help="Bank entity identifier"),
    start_date: str = typer.Option(..., "--from", help="Start date (YYYY-MM-DD)"),
    end_date: str = typer.Option(..., "--to", help="End date (YYYY-MM-DD)"),
    full: bool = typer.Option(False, "--full", help="Include income and pending in category totals"),
    token: str | None = TOKEN_OPTION,
    rules: str | None = RULES_OPTION,
) -> None:
    """Summarize income, expenses and category totals across all accounts."""

    async def _impl(engine: SyncEngine) -> None:
        accounts = await engine.fetch_accounts(entity_id)
        if not accounts:
            console.print("No accounts found.")
            return
        await engine.fetch_transactions_multi_account(
            entity_id, [a.id for a in accounts], start_date, end_date
        )
        summary = engine.summarize(engine.aggregator.transactions, full_breakdown=full)

        totals = Table(title="Totals")
        totals.add_column("Metric")
        totals.add_column("Amount", justify="right")
        totals.add_row("Income", _format_amount(summary.income))
        totals.add_row("Expenses", _format_amount(summary.expenses))
        totals.add_row("Pending", _format_amount(summary.pending_amount))
        totals.add_row("Balance", _format_amount(summary.balance))
        console.print(totals)

        categories = Table(title="By category")
        categories.add_column("Category")
        categories.add_column("Amount", justify="right")
        for category, amount in summary.category_totals.items():
            categories.add_row(category.value, _format_amount(amount))
        console.print(categories)

    _run(token, _impl, rules)


@app.command("clear-cache")
def clear_cache_cmd(
    older_than_ms: int | None = typer.Option(
        None, "--older-than-ms", help="Only remove entries older than this age"
    ),
    transactions_only: bool = typer.Option(
        False, "--transactions-only", help="Keep cached account lists"
    ),
) -> None:
    """Remove cached entries."""
    config = load_engine_config_from_env()

    async def _impl(engine: SyncEngine) -> int:
        if older_than_ms is not None:
            return await engine.clear_old_cache(older_than_ms)
        if transactions_only:
            return await engine.clear_transactions_cache()
        return await engine.clear_all_cache()

    async def _with_engine() -> int:
        # Clearing never talks to the API, so any placeholder token will do.
        engine = SyncEngine.from_config(config, credentials=StaticCredentialProvider(""))
        try:
            return await _impl(engine)
        finally:
            await engine.aclose()

    removed = asyncio.run(_with_engine())
    console.print(f"Removed {removed} cache entr{'y' if removed == 1 else 'ies'}.")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
