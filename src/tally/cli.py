import logging
import shutil
from contextlib import contextmanager
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from tally.categorizer import AutoCategorizer, recategorize
from tally.db import get_connection, init_db
from tally.documents import FilenameExtractor, LocalDocumentProvider
from tally.errors import TallyError
from tally.importer import ImportService
from tally.invoices import InvoiceService
from tally.matcher import InvoiceMatcher
from tally.models import CandidateTransaction, ImportJob, Upload
from tally.plugins import apply_plugin_hooks, load_plugins, seed_plugin_categories
from tally.resolver import FieldResolver
from tally.settings import DEFAULTS, get_data_dir, load_import_config, load_match_config, load_settings, save_settings
from tally.stores import SqliteCategoryStore, SqliteImportStore, SqliteInvoiceStore, SqliteTransactionStore

app = typer.Typer(help="Tally: import bank statements and match them with invoices.", invoke_without_command=True)

imports_app = typer.Typer(help="Review, confirm and cancel imports.")
app.add_typer(imports_app, name="imports")
categories_app = typer.Typer(help="Browse categories.")
app.add_typer(categories_app, name="categories")
transactions_app = typer.Typer(help="Browse transactions.")
app.add_typer(transactions_app, name="transactions")
invoices_app = typer.Typer(help="Register invoices and link them to transactions.")
app.add_typer(invoices_app, name="invoices")

console = Console()

_plugin_hooks = load_plugins(app)


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else load_settings().get("log_level", "WARNING")
    logging.basicConfig(
        level=level,
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging")):
    """Tally: import bank statements and match them with invoices."""
    setup_logging(verbose)


def get_db_path() -> Path:
    return get_data_dir() / "tally.db"


def get_invoice_dir() -> Path:
    return get_data_dir() / "invoices"


@contextmanager
def _session():
    """Open the database and turn tally errors into a clean exit."""
    conn = get_connection(get_db_path())
    try:
        yield conn
    except TallyError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    finally:
        conn.close()


def _categorizer(conn) -> AutoCategorizer:
    return AutoCategorizer(SqliteCategoryStore(conn))


def _import_service(conn) -> ImportService:
    resolver = FieldResolver()
    categorizer = _categorizer(conn)
    apply_plugin_hooks(_plugin_hooks, resolver, categorizer)
    return ImportService(
        SqliteImportStore(conn),
        SqliteTransactionStore(conn),
        categorizer,
        config=load_import_config(),
        resolver=resolver,
    )


def _invoice_service(conn) -> InvoiceService:
    return InvoiceService(
        SqliteInvoiceStore(conn),
        SqliteTransactionStore(conn),
        LocalDocumentProvider(get_invoice_dir()),
        FilenameExtractor(),
        InvoiceMatcher(load_match_config()),
    )


def _owner() -> int:
    return int(load_settings()["owner_id"])


def _archive_path(job: ImportJob) -> Path:
    return get_data_dir() / "imports" / f"{job.id}-{job.file_name}"


@app.command()
def init(
    data_dir: str = typer.Option(None, "--data-dir", help="Path for Tally data (default: ~/Documents/tally)"),
):
    """Set up Tally: choose a data directory and initialize the database."""
    settings = load_settings()

    if data_dir:
        settings["data_dir"] = str(Path(data_dir).expanduser().resolve())
    elif settings == DEFAULTS:
        chosen = typer.prompt("Data directory", default=settings["data_dir"])
        settings["data_dir"] = str(Path(chosen).expanduser().resolve())

    save_settings(settings)

    resolved = Path(settings["data_dir"])
    resolved.mkdir(parents=True, exist_ok=True)
    (resolved / "imports").mkdir(exist_ok=True)
    (resolved / "invoices").mkdir(exist_ok=True)

    conn = get_connection(resolved / "tally.db")
    init_db(conn)
    seed_plugin_categories(SqliteCategoryStore(conn), _plugin_hooks)
    conn.close()

    typer.echo(f"Initialized tally at {resolved}")


# --- Import ---


def _preview_table(title: str, rows: list[CandidateTransaction]) -> Table:
    table = Table(title=title)
    table.add_column("Row", style="dim")
    table.add_column("Date")
    table.add_column("Description")
    table.add_column("Amount", justify="right")
    table.add_column("Category", style="dim")
    for c in rows:
        color = "red" if c.type.value == "expense" else "green"
        table.add_row(
            str(c.row_index), c.date, c.description,
            f"[{color}]{c.original_amount:,.2f}[/{color}]",
            str(c.category_id) if c.category_id is not None else "",
        )
    return table


def _confirm(service: ImportService, job: ImportJob, content: bytes) -> None:
    candidates, _ = service.read_candidates(job.file_name, content)
    outcome = service.confirm_import(job.owner_id, job.id, candidates)
    typer.echo(f"{outcome.imported} imported, {outcome.failed} failed ({outcome.status.value})")
    for error in outcome.errors:
        typer.echo(f"  row {error.row_index}: {error.message}")


@app.command("import")
def import_cmd(
    file: Path = typer.Argument(exists=True, dir_okay=False, help="Bank statement to import (csv, xls, xlsx or qif)"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Commit without asking"),
):
    """Preview a bank statement and commit it."""
    content = file.read_bytes()
    with _session() as conn:
        service = _import_service(conn)
        job = service.start_import(_owner(), Upload(file_name=file.name, content=content))

        dest = _archive_path(job)
        dest.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(file, dest)

        console.print(_preview_table(f"Import {job.id}: {job.file_name}", job.preview_sample))
        typer.echo(f"{job.total_rows} rows detected, {job.skipped_rows} skipped")

        if yes or typer.confirm("Import these transactions?", default=False):
            _confirm(service, job, content)
        else:
            typer.echo(f"Import {job.id} left pending. Run 'tally imports confirm {job.id}' to commit it.")


@imports_app.command("list")
def imports_list(limit: int = typer.Option(20, help="Number of imports to show")):
    """Show recent imports, newest first."""
    with _session() as conn:
        jobs = _import_service(conn).list_imports(_owner(), limit)

    table = Table(title="Imports")
    table.add_column("ID", style="dim")
    table.add_column("File")
    table.add_column("Status")
    table.add_column("Rows", justify="right")
    table.add_column("Imported", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Skipped", justify="right")
    table.add_column("Created")
    for j in jobs:
        table.add_row(
            str(j.id), j.file_name, j.status.value, str(j.total_rows),
            str(j.successful_rows), str(j.failed_rows), str(j.skipped_rows), j.created_at or "",
        )
    console.print(table)


@imports_app.command("show")
def imports_show(import_id: int = typer.Argument(help="Import ID")):
    """Show an import with its preview sample and error log."""
    with _session() as conn:
        job = _import_service(conn).get_import(_owner(), import_id)

    typer.echo(f"Import {job.id}: {job.file_name} ({job.file_type}, {job.file_size} bytes)")
    typer.echo(f"Status: {job.status.value}")
    typer.echo(
        f"Rows: {job.total_rows} detected, {job.successful_rows} imported, "
        f"{job.failed_rows} failed, {job.skipped_rows} skipped"
    )
    console.print(_preview_table("Preview", job.preview_sample))
    for error in job.error_log:
        typer.echo(f"  row {error.row_index}: {error.message}")


@imports_app.command("confirm")
def imports_confirm(import_id: int = typer.Argument(help="Import ID")):
    """Commit a pending import from its archived file."""
    with _session() as conn:
        service = _import_service(conn)
        job = service.get_import(_owner(), import_id)
        archived = _archive_path(job)
        if not archived.exists():
            typer.echo(f"Archived file not found: {archived}", err=True)
            raise typer.Exit(1)
        _confirm(service, job, archived.read_bytes())


@imports_app.command("cancel")
def imports_cancel(import_id: int = typer.Argument(help="Import ID")):
    """Cancel an import and remove the transactions it created."""
    with _session() as conn:
        job = _import_service(conn).cancel_import(_owner(), import_id)
    typer.echo(f"Import {job.id} cancelled")


# --- Categorize ---


@app.command()
def categorize():
    """Re-run keyword categorization on uncategorized expenses."""
    with _session() as conn:
        result = recategorize(_owner(), SqliteTransactionStore(conn), _categorizer(conn))
    typer.echo(f"{result['categorized']} categorized, {result['still_uncategorized']} still uncategorized")


@categories_app.command("list")
def categories_list():
    """List active categories."""
    with _session() as conn:
        categories = SqliteCategoryStore(conn).list_active()

    table = Table(title="Categories")
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Type")
    for c in categories:
        table.add_row(str(c.id), c.name, c.category_type)
    console.print(table)


@transactions_app.command("list")
def transactions_list(limit: int = typer.Option(50, help="Number of transactions to show")):
    """List recent active transactions."""
    with _session() as conn:
        rows = SqliteTransactionStore(conn).list_for_owner(_owner(), limit)
        names = {c.id: c.name for c in SqliteCategoryStore(conn).list_active()}

    table = Table(title="Transactions")
    table.add_column("ID", style="dim")
    table.add_column("Date")
    table.add_column("Description")
    table.add_column("Amount", justify="right")
    table.add_column("Category")
    for t in rows:
        color = "red" if t.type.value == "expense" else "green"
        table.add_row(
            str(t.id), t.date, t.description, f"[{color}]{t.amount:,.2f}[/{color}]",
            names.get(t.category_id, ""),
        )
    console.print(table)


# --- Invoices ---


@invoices_app.command("add")
def invoices_add(document: str = typer.Argument(help="File name inside the invoices directory")):
    """Register an invoice document."""
    with _session() as conn:
        invoice = _invoice_service(conn).register_document(_owner(), document)
    typer.echo(f"Invoice {invoice.id}: {invoice.file_name}")


@invoices_app.command("extract")
def invoices_extract(invoice_id: int = typer.Argument(help="Invoice ID")):
    """Extract number, date, amount and vendor for an invoice."""
    with _session() as conn:
        invoice = _invoice_service(conn).extract(_owner(), invoice_id)
    typer.echo(
        f"Invoice {invoice.id}: vendor={invoice.vendor or '-'} date={invoice.invoice_date or '-'} "
        f"amount={invoice.invoice_amount if invoice.invoice_amount is not None else '-'}"
    )


@invoices_app.command("list")
def invoices_list():
    """List registered invoices."""
    with _session() as conn:
        invoices = _invoice_service(conn).list_invoices(_owner())

    table = Table(title="Invoices")
    table.add_column("ID", style="dim")
    table.add_column("File")
    table.add_column("Vendor")
    table.add_column("Date")
    table.add_column("Amount", justify="right")
    table.add_column("Extraction")
    for i in invoices:
        table.add_row(
            str(i.id), i.file_name, i.vendor or "", i.invoice_date or "",
            f"{i.invoice_amount:,.2f}" if i.invoice_amount is not None else "",
            i.extraction_status.value,
        )
    console.print(table)


@invoices_app.command("suggest")
def invoices_suggest(transaction_id: int = typer.Argument(help="Transaction ID")):
    """Rank unlinked invoices for a transaction."""
    with _session() as conn:
        suggestions = _invoice_service(conn).suggest_invoices(_owner(), transaction_id)

    if not suggestions:
        typer.echo("No matching invoices.")
        return

    table = Table(title=f"Suggestions for transaction {transaction_id}")
    table.add_column("Invoice", style="dim")
    table.add_column("Score", justify="right")
    table.add_column("Reasons")
    for s in suggestions:
        table.add_row(str(s.invoice_id), f"{s.score:.2f}", "; ".join(s.reasons))
    console.print(table)


@invoices_app.command("link")
def invoices_link(
    transaction_id: int = typer.Argument(help="Transaction ID"),
    invoice_id: int = typer.Argument(help="Invoice ID"),
    suggested: bool = typer.Option(False, "--suggested", help="Record the link as accepted from a suggestion"),
):
    """Link an invoice to a transaction."""
    with _session() as conn:
        _invoice_service(conn).link(
            _owner(), transaction_id, invoice_id, "suggested" if suggested else "manual",
        )
    typer.echo(f"Linked invoice {invoice_id} to transaction {transaction_id}")


@invoices_app.command("unlink")
def invoices_unlink(
    transaction_id: int = typer.Argument(help="Transaction ID"),
    invoice_id: int = typer.Argument(help="Invoice ID"),
):
    """Remove the link between an invoice and a transaction."""
    with _session() as conn:
        removed = _invoice_service(conn).unlink(_owner(), transaction_id, invoice_id)
    if not removed:
        typer.echo("No such link.")
        raise typer.Exit(1)
    typer.echo(f"Unlinked invoice {invoice_id} from transaction {transaction_id}")


@invoices_app.command("verify")
def invoices_verify(
    transaction_id: int = typer.Argument(help="Transaction ID"),
    invoice_id: int = typer.Argument(help="Invoice ID"),
):
    """Mark a link as checked by you."""
    with _session() as conn:
        verified = _invoice_service(conn).verify(_owner(), transaction_id, invoice_id)
    if not verified:
        typer.echo("No such link.")
        raise typer.Exit(1)
    typer.echo(f"Verified invoice {invoice_id} for transaction {transaction_id}")


@invoices_app.command("delete")
def invoices_delete(invoice_id: int = typer.Argument(help="Invoice ID")):
    """Delete an invoice record and its links."""
    with _session() as conn:
        _invoice_service(conn).delete_invoice(_owner(), invoice_id)
    typer.echo(f"Deleted invoice {invoice_id}")
