"""ledgerctl -- Typer-based operator interface to the credit ledger.

Provides commands for opening and inspecting accounts, manual balance
corrections, loading the pricing table, cost estimates, consistency checks,
replaying stored webhook payloads and serving the HTTP API.  Human-readable
output goes to *stderr* via Rich; ``--json`` writes machine-readable results
to *stdout* so that scripts can compose cleanly.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from decimal import Decimal
from pathlib import Path
from typing import Any, TypeVar

import typer
from ledger_engine.config import LedgerSettings, load_ledger_settings
from ledger_engine.errors import InsufficientBalanceError, LedgerError, StoreUnavailableError
from ledger_engine.ledger.models import AccountKind
from ledger_engine.money import format_amount, to_minor
from ledger_engine.services import LedgerServices, build_services
from ledger_engine.state.database import session_scope
from ledger_engine.state.repository import PricingRepository
from ledger_engine.state.sqlite_adapter import create_local_tables
from rich.console import Console
from rich.logging import RichHandler

from cli.display import (
    display_account,
    display_cost,
    display_pricing,
    display_receipt,
    display_reconcile_result,
    display_reports,
    display_transactions,
)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# App & global state
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="ledgerctl",
    help="Credit ledger operator tools.",
    no_args_is_help=True,
)
console = Console(stderr=True)

# Mutable global options populated by the Typer callback.
_json_output: bool = False
_database_url: str | None = None


# ---------------------------------------------------------------------------
# Callback -- global options
# ---------------------------------------------------------------------------


@app.callback()
def _global_options(
    json_mode: bool = typer.Option(
        False,
        "--json/--no-json",
        help="Emit structured JSON to stdout instead of human-readable output.",
    ),
    database_url: str | None = typer.Option(
        None,
        "--database-url",
        help="Ledger database URL (defaults to LEDGER_DATABASE_URL).",
        envvar="LEDGER_DATABASE_URL",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log ledger operations to stderr.",
    ),
) -> None:
    """Global options applied to every command."""
    global _json_output, _database_url  # noqa: PLW0603
    _json_output = json_mode
    _database_url = database_url
    if verbose:
        logging.basicConfig(
            level=logging.INFO,
            format="%(message)s",
            handlers=[RichHandler(console=console, show_path=False)],
            force=True,
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _settings() -> LedgerSettings:
    if _database_url:
        return load_ledger_settings(database_url=_database_url)
    return load_ledger_settings()


def _run(operation: Callable[[LedgerServices], Awaitable[T]]) -> T:
    """Run *operation* against freshly built services and dispose them.

    Local SQLite databases get their tables on first use.  Ledger errors are
    printed and turned into exit code 3.
    """

    async def _main() -> T:
        services = build_services(_settings())
        try:
            if services.settings.database_url.startswith("sqlite"):
                await create_local_tables(services.engine)
            return await operation(services)
        finally:
            await services.dispose()

    try:
        return asyncio.run(_main())
    except InsufficientBalanceError as exc:
        console.print(
            f"[red]Insufficient balance on {exc.account_id}: requested "
            f"{format_amount(exc.requested)}, available {format_amount(exc.available)}[/red]"
        )
        raise typer.Exit(code=3) from exc
    except StoreUnavailableError as exc:
        console.print(f"[red]{exc}[/red]")
        if exc.outcome_unknown:
            console.print("[yellow]The outcome is unknown; look the reference up before retrying.[/yellow]")
        raise typer.Exit(code=3) from exc
    except LedgerError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=3) from exc


def _parse_amount(value: str, label: str) -> int:
    """Parse a decimal currency string into minor units, exiting on failure."""
    try:
        return to_minor(value)
    except (TypeError, ValueError) as exc:
        console.print(f"[red]Invalid {label} '{value}': {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _read_json(path: Path, **kwargs: Any) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"), **kwargs)
    except (OSError, json.JSONDecodeError) as exc:
        console.print(f"[red]Failed to read {path}: {exc}[/red]")
        raise typer.Exit(code=3) from exc


def _write_json(data: Any) -> None:
    sys.stdout.write(json.dumps(data, indent=2, default=str) + "\n")


def _account_json(account: Any) -> dict[str, Any]:
    return {
        "account_id": account.account_id,
        "kind": account.kind.value,
        "owner_id": account.owner_id,
        "balance": account.balance,
        "purchased_credits": account.purchased_credits,
        "subscription_credits": account.subscription_credits,
        "updated_at": account.updated_at.isoformat(),
    }


def _receipt_json(receipt: Any) -> dict[str, Any]:
    return {
        "transaction_id": receipt.transaction_id,
        "account_id": receipt.account_id,
        "type": receipt.type.value,
        "amount": receipt.amount,
        "balance_after": receipt.balance_after,
        "external_reference": receipt.external_reference,
        "duplicate": receipt.duplicate,
    }


def _report_json(report: Any) -> dict[str, Any]:
    return {
        "account_id": report.account_id,
        "balance": report.balance,
        "purchased_credits": report.purchased_credits,
        "transactions_total": report.transactions_total,
        "transaction_count": report.transaction_count,
        "consistent": report.consistent,
    }


# ---------------------------------------------------------------------------
# init-db
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db() -> None:
    """Create the ledger tables (idempotent)."""

    async def _op(services: LedgerServices) -> str:
        await create_local_tables(services.engine)
        return services.settings.database_url

    url = _run(_op)
    if _json_output:
        _write_json({"initialised": True})
    else:
        console.print(f"[green]Ledger tables ready[/green] ({url.split('@')[-1]})")


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


@app.command("open-account")
def open_account(
    account_id: str = typer.Argument(..., help="Identifier of the new account."),
    kind: AccountKind = typer.Option(AccountKind.PERSONAL, "--kind", help="personal or organization."),
    owner_id: str | None = typer.Option(None, "--owner", help="Owning user of an organization account."),
    welcome: str | None = typer.Option(
        None,
        "--welcome",
        help="Welcome credits in currency units (defaults to LEDGER_WELCOME_CREDITS).",
    ),
) -> None:
    """Open an account and grant its welcome credits."""
    welcome_minor = _parse_amount(welcome, "welcome credits") if welcome is not None else None
    if welcome_minor is not None and welcome_minor < 0:
        console.print("[red]Welcome credits must be non-negative[/red]")
        raise typer.Exit(code=3)

    async def _op(services: LedgerServices) -> Any:
        initial = welcome_minor if welcome_minor is not None else services.settings.welcome_credits_minor
        return await services.ledger.open_account(account_id, kind, owner_id=owner_id, initial_credits=initial)

    account = _run(_op)
    if _json_output:
        _write_json(_account_json(account))
    else:
        display_account(console, account)


@app.command()
def balance(account_id: str = typer.Argument(..., help="Account to show.")) -> None:
    """Show an account's balances."""

    async def _op(services: LedgerServices) -> Any:
        return await services.ledger.get_account(account_id)

    account = _run(_op)
    if _json_output:
        _write_json(_account_json(account))
    else:
        display_account(console, account)


@app.command()
def history(
    account_id: str = typer.Argument(..., help="Account whose transactions to list."),
    limit: int = typer.Option(20, "--limit", help="Page size.", min=1, max=500),
    offset: int = typer.Option(0, "--offset", help="Entries to skip.", min=0),
) -> None:
    """List an account's transactions, newest first."""

    async def _op(services: LedgerServices) -> Any:
        return await services.ledger.list_transactions(account_id, limit=limit, offset=offset)

    transactions = _run(_op)
    if _json_output:
        _write_json(
            [
                {
                    "transaction_id": t.transaction_id,
                    "type": t.type.value,
                    "amount": t.amount,
                    "balance_after": t.balance_after,
                    "description": t.description,
                    "external_reference": t.external_reference,
                    "metadata": t.metadata,
                    "created_at": t.created_at.isoformat(),
                }
                for t in transactions
            ]
        )
    else:
        display_transactions(console, account_id, transactions)


@app.command()
def verify(
    account_id: str | None = typer.Argument(None, help="Account to check."),
    all_accounts: bool = typer.Option(False, "--all", help="Check every account."),
) -> None:
    """Check that balances equal the sum of their transactions.

    Exits with code 1 when any account is inconsistent.
    """
    if (account_id is None) == (not all_accounts):
        console.print("[red]Pass exactly one of ACCOUNT_ID or --all.[/red]")
        raise typer.Exit(code=3)

    async def _op(services: LedgerServices) -> list[Any]:
        if account_id is not None:
            return [await services.ledger.verify(account_id)]
        accounts = await services.ledger.list_accounts()
        return [await services.ledger.verify(a.account_id) for a in accounts]

    reports = _run(_op)
    if _json_output:
        _write_json([_report_json(r) for r in reports])
    elif reports:
        display_reports(console, reports)
    else:
        console.print("[yellow]No accounts.[/yellow]")

    if any(not r.consistent for r in reports):
        raise typer.Exit(code=1)


@app.command()
def adjust(
    account_id: str = typer.Argument(..., help="Account to correct."),
    delta: str = typer.Argument(..., help="Signed amount in currency units; put -- before negative values, e.g. -- -1.00."),
    reason: str = typer.Option(..., "--reason", help="Why the correction is made."),
    actor: str = typer.Option(..., "--actor", help="Operator performing the correction."),
    ref: str | None = typer.Option(None, "--ref", help="Idempotency reference for the correction."),
) -> None:
    """Credit or debit an account manually.

    Debits larger than the balance are capped at the balance.
    """
    delta_minor = _parse_amount(delta, "delta")

    async def _op(services: LedgerServices) -> Any:
        return await services.ledger.adjust_admin(account_id, delta_minor, reason, actor, external_ref=ref)

    receipt = _run(_op)
    if _json_output:
        _write_json(_receipt_json(receipt))
    else:
        display_receipt(console, receipt)


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------

_PRICING_FIELDS = ("model_id", "provider", "input_price_per_million", "output_price_per_million")


@app.command("pricing-load")
def pricing_load(
    pricing_file: Path = typer.Argument(
        ...,
        help="JSON file with a list of model prices.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
) -> None:
    """Insert or update pricing rows from a JSON file.

    Each entry needs ``model_id``, ``provider``, ``input_price_per_million``
    and ``output_price_per_million``; ``markup_multiplier`` and
    ``is_active`` are optional.  Prices are per million tokens in currency
    units.
    """
    entries = _read_json(pricing_file, parse_float=Decimal)
    if not isinstance(entries, list):
        console.print("[red]Pricing file must contain a JSON list.[/red]")
        raise typer.Exit(code=3)

    rows: list[dict[str, Any]] = []
    for idx, entry in enumerate(entries):
        missing = [f for f in _PRICING_FIELDS if not isinstance(entry, dict) or entry.get(f) in (None, "")]
        if missing:
            console.print(f"[red]Entry {idx} is missing {', '.join(missing)}[/red]")
            raise typer.Exit(code=3)
        try:
            input_price = Decimal(str(entry["input_price_per_million"]))
            output_price = Decimal(str(entry["output_price_per_million"]))
            markup = entry.get("markup_multiplier")
            markup = Decimal(str(markup)) if markup is not None else None
        except ArithmeticError as exc:
            console.print(f"[red]Entry {idx} has an invalid price: {exc}[/red]")
            raise typer.Exit(code=3) from exc
        if input_price < 0 or output_price < 0 or (markup is not None and markup < 1):
            console.print(f"[red]Entry {idx}: prices must be non-negative and markups at least 1[/red]")
            raise typer.Exit(code=3)
        rows.append(
            {
                "model_id": str(entry["model_id"]),
                "provider": str(entry["provider"]),
                "input_price_per_million": input_price,
                "output_price_per_million": output_price,
                "markup_multiplier": markup,
                "is_active": bool(entry.get("is_active", True)),
            }
        )

    async def _op(services: LedgerServices) -> None:
        async with session_scope(services.engine) as session:
            repo = PricingRepository(session)
            for row in rows:
                await repo.upsert(**row)

    _run(_op)
    if _json_output:
        _write_json({"loaded": len(rows), "models": [r["model_id"] for r in rows]})
    else:
        console.print(f"[green]Loaded {len(rows)} pricing row(s).[/green]")


@app.command("pricing-list")
def pricing_list() -> None:
    """List active models with their effective markup."""

    async def _op(services: LedgerServices) -> Any:
        return await services.catalog.resolver()

    resolver = _run(_op)
    models = resolver.models()
    if _json_output:
        _write_json(
            [
                {
                    "model_id": m.model_id,
                    "provider": m.provider,
                    "input_price_per_million": str(m.input_price_per_million),
                    "output_price_per_million": str(m.output_price_per_million),
                    "markup_multiplier": str(
                        resolver.default_markup if m.markup_multiplier is None else m.markup_multiplier
                    ),
                }
                for m in models
            ]
        )
    else:
        display_pricing(console, models, resolver.default_markup)


@app.command()
def estimate(
    model_id: str = typer.Argument(..., help="Model to price."),
    input_tokens: int = typer.Option(0, "--input", help="Input token count.", min=0),
    output_tokens: int = typer.Option(0, "--output", help="Output token count.", min=0),
    markup: str | None = typer.Option(None, "--markup", help="Markup multiplier override."),
) -> None:
    """Price a model call without charging anyone."""
    markup_multiplier: Decimal | None = None
    if markup is not None:
        try:
            markup_multiplier = Decimal(markup)
        except ArithmeticError as exc:
            console.print(f"[red]Invalid markup '{markup}'[/red]")
            raise typer.Exit(code=3) from exc

    async def _op(services: LedgerServices) -> Any:
        return await services.charger.estimate(
            model_id, input_tokens, output_tokens, markup_multiplier=markup_multiplier
        )

    cost = _run(_op)
    if _json_output:
        _write_json(
            {
                "model_id": cost.model_id,
                "input_tokens": cost.input_tokens,
                "output_tokens": cost.output_tokens,
                "base_cost": str(cost.base_cost),
                "markup_multiplier": str(cost.markup_multiplier),
                "billed": cost.billed_minor,
            }
        )
    else:
        display_cost(console, cost)


# ---------------------------------------------------------------------------
# replay-webhook
# ---------------------------------------------------------------------------


@app.command("replay-webhook")
def replay_webhook(
    event_file: Path = typer.Argument(
        ...,
        help="JSON file holding one provider event.",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
    ),
) -> None:
    """Run a stored provider event through the reconciler.

    The signature is not checked; the payload is trusted as given.  Events
    already processed are reported as duplicates and change nothing.
    """
    raw = _read_json(event_file)
    if not isinstance(raw, dict):
        console.print("[red]Event file must contain a JSON object.[/red]")
        raise typer.Exit(code=3)

    async def _op(services: LedgerServices) -> Any:
        return await services.reconciler.reconcile(raw)

    result = _run(_op)
    if _json_output:
        _write_json(
            {
                "event_id": result.event_id,
                "event_type": result.event_type,
                "status": result.status.value,
                "detail": result.detail,
                "receipts": [_receipt_json(r) for r in result.receipts],
            }
        )
    else:
        display_reconcile_result(console, result)


# ---------------------------------------------------------------------------
# serve
# ---------------------------------------------------------------------------


@app.command()
def serve(
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind.", envvar="API_HOST"),
    port: int = typer.Option(8000, "--port", help="Port to listen on.", envvar="API_PORT"),
    reload: bool = typer.Option(False, "--reload", help="Restart on source changes."),
) -> None:
    """Run the ledger HTTP API with uvicorn.

    The API reads its own ``API_*`` settings; ``--database-url`` is passed
    on as ``API_DATABASE_URL``.
    """
    import os

    import uvicorn

    if _database_url:
        os.environ["API_DATABASE_URL"] = _database_url

    uvicorn_config = uvicorn.Config(
        "api.main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="info",
        access_log=False,
    )
    server = uvicorn.Server(uvicorn_config)

    console.print(f"[green]✓[/green] Ledger API starting on http://{host}:{port}")
    console.print(f"[green]✓[/green] OpenAPI docs at http://{host}:{port}/docs")
    console.print(f"[green]✓[/green] Readiness probe at http://{host}:{port}/ready")

    try:
        server.run()
    except KeyboardInterrupt:
        console.print("[yellow]Ledger API stopped.[/yellow]")
