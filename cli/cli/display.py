"""Rich output formatting for ``ledgerctl``.

All functions write to a :class:`rich.console.Console` instance (typically
bound to *stderr*) so that machine-readable output on *stdout* is never
polluted with human-readable decoration.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from ledger_engine.money import format_amount
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

if TYPE_CHECKING:
    from ledger_engine.ledger.models import AccountSnapshot, LedgerReport, LedgerTransaction, Receipt
    from ledger_engine.pricing.models import BilledCost, PricingModel
    from ledger_engine.webhooks.reconciler import ReconcileResult


# ---------------------------------------------------------------------------
# Colour mapping
# ---------------------------------------------------------------------------

_STATUS_COLOURS: dict[str, str] = {
    "processed": "green",
    "duplicate": "dim",
    "ignored": "yellow",
    "rejected": "red",
}


def _coloured_status(status: str) -> str:
    """Return a Rich markup string with the status colour-coded."""
    colour = _STATUS_COLOURS.get(status, "white")
    return f"[{colour}]{status}[/{colour}]"


def _signed_amount(minor: int) -> str:
    colour = "green" if minor > 0 else "red"
    sign = "+" if minor > 0 else ""
    return f"[{colour}]{sign}{format_amount(minor)}[/{colour}]"


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def display_account(console: Console, account: AccountSnapshot) -> None:
    """Render one account's balances in a panel.

    Parameters
    ----------
    console:
        Rich console to write to (typically stderr).
    account:
        The account snapshot to display.
    """
    lines = [
        f"[bold]Kind:[/bold]          {account.kind.value}",
        f"[bold]Owner:[/bold]         {account.owner_id or '-'}",
        f"[bold]Balance:[/bold]       {format_amount(account.balance)}",
        f"[bold]Purchased:[/bold]     {format_amount(account.purchased_credits)}",
        f"[bold]Subscription:[/bold]  {format_amount(account.subscription_credits)}",
        f"[bold]Updated:[/bold]       {account.updated_at:%Y-%m-%d %H:%M:%S}",
    ]
    console.print(Panel("\n".join(lines), title=account.account_id, border_style="blue"))


def display_transactions(console: Console, account_id: str, transactions: Sequence[LedgerTransaction]) -> None:
    """Render a page of an account's history, newest first."""
    if not transactions:
        console.print("[dim]No transactions.[/dim]")
        return

    table = Table(title=f"Transactions: {account_id}", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Created", style="dim")
    table.add_column("Type")
    table.add_column("Amount", justify="right")
    table.add_column("Balance", justify="right")
    table.add_column("Reference", style="dim")
    table.add_column("Description")

    for txn in transactions:
        table.add_row(
            f"{txn.created_at:%Y-%m-%d %H:%M:%S}",
            txn.type.value,
            _signed_amount(txn.amount),
            format_amount(txn.balance_after),
            txn.external_reference or "-",
            txn.description,
        )

    console.print(table)


def display_receipt(console: Console, receipt: Receipt) -> None:
    """Print a one-line summary of a ledger mutation."""
    if receipt.duplicate:
        console.print(
            f"[dim]Already recorded[/dim] {receipt.type.value} on [bold]{receipt.account_id}[/bold] "
            f"(ref {receipt.external_reference})"
        )
        return
    console.print(
        f"{receipt.type.value} {_signed_amount(receipt.amount)} on [bold]{receipt.account_id}[/bold], "
        f"balance now {format_amount(receipt.balance_after)}"
    )


def display_reports(console: Console, reports: Sequence[LedgerReport]) -> None:
    """Render balance-versus-log checks, flagging mismatches in red."""
    table = Table(title="Ledger verification", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Account", style="bold")
    table.add_column("Balance", justify="right")
    table.add_column("Log total", justify="right")
    table.add_column("Purchased", justify="right")
    table.add_column("Entries", justify="right")
    table.add_column("Status")

    for report in reports:
        status = "[green]OK[/green]" if report.consistent else "[red]MISMATCH[/red]"
        table.add_row(
            report.account_id,
            format_amount(report.balance),
            format_amount(report.transactions_total),
            format_amount(report.purchased_credits),
            str(report.transaction_count),
            status,
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Pricing
# ---------------------------------------------------------------------------


def display_pricing(console: Console, models: Sequence[PricingModel], default_markup: object) -> None:
    """Render the active pricing table with each model's effective markup."""
    if not models:
        console.print("[yellow]No active pricing models.[/yellow]")
        return

    table = Table(title="Pricing (per million tokens)", show_lines=False, pad_edge=True, expand=False)
    table.add_column("Provider", style="dim")
    table.add_column("Model", style="bold")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    table.add_column("Markup", justify="right")

    for model in models:
        markup = model.markup_multiplier if model.markup_multiplier is not None else f"{default_markup} (default)"
        table.add_row(
            model.provider,
            model.model_id,
            str(model.input_price_per_million),
            str(model.output_price_per_million),
            str(markup),
        )

    console.print(table)


def display_cost(console: Console, cost: BilledCost) -> None:
    """Print the breakdown of a priced model call."""
    console.print(
        f"[bold]{cost.model_id}[/bold]: {cost.input_tokens:,} in / {cost.output_tokens:,} out, "
        f"provider cost {cost.base_cost.normalize()} x {cost.markup_multiplier.normalize()} "
        f"= [bold]{format_amount(cost.billed_minor, places=5)}[/bold] ({cost.billed_minor} minor units)"
    )


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


def display_reconcile_result(console: Console, result: ReconcileResult) -> None:
    """Render the outcome of a reconciled provider event."""
    console.print(
        f"Event [bold]{result.event_id}[/bold] ({result.event_type}): {_coloured_status(result.status.value)}"
        + (f" - {result.detail}" if result.detail else "")
    )
    for receipt in result.receipts:
        display_receipt(console, receipt)
