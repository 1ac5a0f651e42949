"""Walnut CLI - multi-mint Cashu wallet."""

import asyncio
import sys
from datetime import datetime
from functools import partial
from typing import Annotated, Optional

import typer
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Settings, load_settings, set_mints_in_env
from .lightning import decode_invoice
from .storage import JsonFileStore
from .transactions import TransactionStatus
from .types import (
    AlreadyExistsError,
    CurrencyUnit,
    ValidationError,
    WalletError,
)
from .wallet import TransactionResult, Wallet

app = typer.Typer(
    name="walnut",
    help="Walnut - multi-mint Cashu wallet",
    rich_markup_mode="markdown",
)
mints_app = typer.Typer(help="Manage mints")
app.add_typer(mints_app, name="mints")
console = Console()

STATUS_STYLES = {
    TransactionStatus.COMPLETED: "green",
    TransactionStatus.PENDING: "yellow",
    TransactionStatus.PREPARED_OFFLINE: "yellow",
    TransactionStatus.ERROR: "red",
    TransactionStatus.BLOCKED: "red",
    TransactionStatus.EXPIRED: "dim",
    TransactionStatus.REVERTED: "dim",
}


@app.callback()
def main(
    verbose: Annotated[
        bool, typer.Option("--verbose", "-v", help="Show debug logging")
    ] = False,
) -> None:
    settings = load_settings()
    levels = {"": "DEBUG" if verbose else settings.log_level}
    if settings.mint_debug:
        # Log every request sent to a mint
        levels["walnut.mint"] = "DEBUG"
    logger.remove()
    logger.add(
        sys.stderr,
        level="DEBUG",
        filter=levels,
        format="{time:YYYY-MM-DD HH:mm:ss} - {name} - {level} - {message}",
    )
    logger.enable("walnut")


def open_wallet(settings: Settings) -> Wallet:
    """Load the wallet stored under the configured data directory."""
    decoder = partial(decode_invoice, default_expiry=settings.invoice_expiry)
    return Wallet.load(
        JsonFileStore(settings.store_path),
        timeout=settings.timeout,
        invoice_decoder=decoder,
    )


async def _ready_wallet() -> Wallet:
    settings = load_settings()
    wallet = open_wallet(settings)
    await wallet.ensure_mints(settings.mint_urls)
    return wallet


def handle_wallet_error(e: Exception) -> None:
    """Handle common wallet errors with user-friendly messages."""
    if isinstance(e, WalletError):
        detail = e.params.get("message")
        console.print(f"[red]{e.name}: {e.message}[/red]")
        if detail:
            console.print(f"[dim]{detail}[/dim]")
    else:
        console.print(f"[red]Error: {e}[/red]")


def print_result(result: TransactionResult) -> None:
    if result.error is None:
        console.print(f"[green]{result.message}[/green]")
        return
    # Partial success still completes the transaction
    completed = (
        result.transaction is not None
        and result.transaction.status == TransactionStatus.COMPLETED
    )
    color = "yellow" if completed else "red"
    console.print(f"[{color}]{result.error['name']}: {result.error['message']}[/{color}]")
    error_token = result.error.get("params", {}).get("errorToken")
    if error_token:
        console.print(Panel(error_token, title="Ecash that could not be received"))


def run(coro_factory) -> None:
    try:
        asyncio.run(coro_factory())
    except Exception as e:
        handle_wallet_error(e)
        raise typer.Exit(1)


def _pick_mint(wallet: Wallet, amount: int, unit: CurrencyUnit) -> str:
    candidates = [
        mb
        for mb in wallet.proofs.get_mint_balances_with_enough_balance(amount, unit)
        if not wallet.mints.is_blocked(mb.mint_url)
    ]
    if not candidates:
        raise ValidationError("Not enough funds available", {"amount": amount})
    return candidates[0].mint_url


# ───────────────────────────── Balance ─────────────────────────────────


@app.command()
def balance(
    unit: Annotated[
        Optional[str], typer.Option("--unit", "-u", help="Filter by currency unit")
    ] = None,
) -> None:
    """Show balance per mint and unit."""

    async def _balance() -> None:
        async with await _ready_wallet() as wallet:
            balances = wallet.get_balances(unit)  # type: ignore[arg-type]

            table = Table(title="Balances")
            table.add_column("Mint", style="cyan")
            table.add_column("Unit")
            table.add_column("Amount", justify="right", style="green")
            for mint_balance in balances.mint_balances:
                blocked = wallet.mints.is_blocked(mint_balance.mint_url)
                name = mint_balance.mint_url + (" [red](blocked)[/red]" if blocked else "")
                for mint_unit, amount in mint_balance.balances.items():
                    table.add_row(name, mint_unit, str(amount))
            console.print(table)
            console.print(
                f"Total: [bold]{balances.total_balance}[/bold]  "
                f"Pending: {balances.total_pending_balance}"
            )

    run(_balance)


# ───────────────────────────── Mints ─────────────────────────────────


@mints_app.command("add")
def mints_add(
    url: Annotated[str, typer.Argument(help="Mint URL")],
    save_env: Annotated[
        bool, typer.Option("--save-env", help="Also add the mint to CASHU_MINTS in .env")
    ] = False,
) -> None:
    """Register a mint."""

    async def _add() -> None:
        async with await _ready_wallet() as wallet:
            record = await wallet.add_mint(url)
            console.print(
                f"[green]Added {record.mint_url} ({', '.join(record.units)})[/green]"
            )
            if save_env:
                set_mints_in_env([m.mint_url for m in wallet.mints.all()])

    run(_add)


@mints_app.command("list")
def mints_list() -> None:
    """List registered mints."""

    async def _list() -> None:
        async with await _ready_wallet() as wallet:
            table = Table(title="Mints")
            table.add_column("Mint", style="cyan")
            table.add_column("Units")
            table.add_column("Keysets")
            table.add_column("Blocked")
            for record in wallet.mints.all():
                table.add_row(
                    record.mint_url,
                    ", ".join(record.units),
                    str(len(record.keysets)),
                    "yes" if record.is_blocked else "",
                )
            console.print(table)

    run(_list)


@mints_app.command("block")
def mints_block(url: Annotated[str, typer.Argument(help="Mint URL")]) -> None:
    """Refuse ecash from a mint."""

    async def _block() -> None:
        async with await _ready_wallet() as wallet:
            wallet.block_mint(url)
            console.print(f"[yellow]Blocked {url}[/yellow]")

    run(_block)


@mints_app.command("unblock")
def mints_unblock(url: Annotated[str, typer.Argument(help="Mint URL")]) -> None:
    """Trust a previously blocked mint again."""

    async def _unblock() -> None:
        async with await _ready_wallet() as wallet:
            wallet.unblock_mint(url)
            console.print(f"[green]Unblocked {url}[/green]")

    run(_unblock)


@mints_app.command("remove")
def mints_remove(url: Annotated[str, typer.Argument(help="Mint URL")]) -> None:
    """Forget a mint that holds no ecash."""

    async def _remove() -> None:
        async with await _ready_wallet() as wallet:
            wallet.remove_mint(url)
            console.print(f"Removed {url}")

    run(_remove)


# ───────────────────────────── Operations ─────────────────────────────────


@app.command()
def topup(
    amount: Annotated[int, typer.Argument(help="Amount to top up")],
    mint_url: Annotated[
        Optional[str], typer.Option("--mint", "-m", help="Mint URL")
    ] = None,
    unit: Annotated[str, typer.Option("--unit", "-u", help="Currency unit")] = "sat",
    memo: Annotated[str, typer.Option("--memo", help="Memo")] = "",
) -> None:
    """Create a Lightning invoice to top up the wallet.

    Run `walnut check` after paying it to claim the ecash.
    """

    async def _topup() -> None:
        async with await _ready_wallet() as wallet:
            target = mint_url or next(
                (m.mint_url for m in wallet.mints.all() if not m.is_blocked), None
            )
            if target is None:
                raise ValidationError("No mint configured, add one with `walnut mints add`")
            result = await wallet.topup(target, amount, unit, memo)  # type: ignore[arg-type]
            print_result(result)
            if result.encoded_invoice:
                console.print(Panel(result.encoded_invoice, title="Lightning invoice"))

    run(_topup)


@app.command()
def check() -> None:
    """Claim paid top-ups and settle pending sends and payments."""

    async def _check() -> None:
        async with await _ready_wallet() as wallet:
            topups = await wallet.check_pending_topups()
            spent = await wallet.check_pending_spent()
            console.print(
                f"Top-ups: {topups['completed']} completed, "
                f"{topups['pending']} pending, {topups['expired']} expired"
            )
            console.print(
                f"Claimed sends/payments: {spent['spent_count']} proofs "
                f"({spent['spent_amount']})"
            )

    run(_check)


@app.command()
def send(
    amount: Annotated[int, typer.Argument(help="Amount to send")],
    mint_url: Annotated[
        Optional[str], typer.Option("--mint", "-m", help="Mint to send from")
    ] = None,
    unit: Annotated[str, typer.Option("--unit", "-u", help="Currency unit")] = "sat",
    memo: Annotated[str, typer.Option("--memo", help="Memo for the receiver")] = "",
) -> None:
    """Create an ecash token to share."""

    async def _send() -> None:
        async with await _ready_wallet() as wallet:
            source = mint_url or _pick_mint(wallet, amount, unit)  # type: ignore[arg-type]
            result = await wallet.send(source, amount, unit, memo)  # type: ignore[arg-type]
            print_result(result)
            if result.encoded_token:
                console.print(Panel(result.encoded_token, title="Ecash token"))

    run(_send)


@app.command()
def receive(
    token: Annotated[str, typer.Argument(help="Cashu token to receive")],
    memo: Annotated[str, typer.Option("--memo", help="Memo")] = "",
    offline: Annotated[
        bool,
        typer.Option("--offline", help="Store the token and redeem it later"),
    ] = False,
) -> None:
    """Receive an ecash token into the wallet."""

    async def _receive() -> None:
        if offline:
            # No mint is contacted, so configured mints are not checked either
            async with open_wallet(load_settings()) as wallet:
                print_result(await wallet.receive_offline_prepare(token, memo))
            return
        async with await _ready_wallet() as wallet:
            print_result(await wallet.receive(token, memo))

    run(_receive)


@app.command()
def redeem(
    transaction_id: Annotated[
        Optional[int],
        typer.Argument(help="Id of a token received offline (default: all)"),
    ] = None,
) -> None:
    """Redeem tokens that were received offline."""

    async def _redeem() -> None:
        async with await _ready_wallet() as wallet:
            if transaction_id is not None:
                print_result(await wallet.receive_offline_complete(transaction_id))
                return
            results = await wallet.receive_offline_pending()
            if not results:
                console.print("No offline tokens to redeem")
            for result in results:
                print_result(result)

    run(_redeem)


@app.command()
def pay(
    invoice: Annotated[str, typer.Argument(help="Lightning invoice (bolt11)")],
    mint_url: Annotated[
        Optional[str], typer.Option("--mint", "-m", help="Mint to pay from")
    ] = None,
) -> None:
    """Pay a Lightning invoice."""

    async def _pay() -> None:
        async with await _ready_wallet() as wallet:
            try:
                request = wallet.payment_requests.add_payment_request(invoice, "cli")
                payment_hash = request.payment_hash
            except AlreadyExistsError as e:
                payment_hash = e.params["paymentHash"]
            print_result(await wallet.pay_payment_request(payment_hash, mint_url))

    run(_pay)


@app.command()
def revert(
    transaction_id: Annotated[int, typer.Argument(help="Id of a pending send")],
) -> None:
    """Take back ecash from a send nobody claimed."""

    async def _revert() -> None:
        async with await _ready_wallet() as wallet:
            print_result(await wallet.revert(transaction_id))

    run(_revert)


@app.command()
def sweep() -> None:
    """Remove proofs the mints report as already spent."""

    async def _sweep() -> None:
        async with await _ready_wallet() as wallet:
            summary = await wallet.check_spent()
            console.print(
                f"Removed {summary['spent_count']} spent proofs "
                f"worth {summary['spent_amount']}"
            )

    run(_sweep)


@app.command()
def history(
    limit: Annotated[int, typer.Option("--limit", "-n", help="Rows to show")] = 20,
) -> None:
    """Show recent transactions."""

    async def _history() -> None:
        async with await _ready_wallet() as wallet:
            table = Table(title="Transactions")
            table.add_column("Id", justify="right")
            table.add_column("Date")
            table.add_column("Type")
            table.add_column("Amount", justify="right")
            table.add_column("Fee", justify="right")
            table.add_column("Status")
            table.add_column("Mint", style="dim")
            for tx in wallet.transactions.get_recent(limit):
                style = STATUS_STYLES.get(tx.status, "")
                table.add_row(
                    str(tx.id),
                    datetime.fromtimestamp(tx.created_at).strftime("%Y-%m-%d %H:%M"),
                    tx.type.value,
                    f"{tx.amount} {tx.unit}",
                    str(tx.fee),
                    f"[{style}]{tx.status.value}[/{style}]" if style else tx.status.value,
                    tx.mint or "",
                )
            console.print(table)

    run(_history)


def cli() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    cli()
