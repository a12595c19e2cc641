"""signstamp CLI: multi-party document signing from the command line.

Usage:
    signstamp template add <template.json>
    signstamp signature add-drawn <png> --owner <user-id>
    signstamp create <pdf> --template <template-id> --title "Contract"
    signstamp sign <document-id> <signatory-id> --signature <record-id> --actor-id u1 --actor-name "Ana"
    signstamp status <document-id>
    signstamp download <document-id> -o signed.pdf
    signstamp serve [--port 8410]
"""

import logging
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from .config import load_config
from .errors import MissingDraft, SigningError, StorageError
from .models import (
    Actor,
    DocumentStatus,
    SignatureKind,
    SignatureRecord,
    SignedStatus,
    StyledSignature,
    Template,
)
from .renderer import FONT_FILES
from .service import SigningService
from .store import DocumentStore

console = Console()

STATUS_COLORS = {
    DocumentStatus.DRAFT: "dim",
    DocumentStatus.PENDING: "yellow",
    DocumentStatus.PENDING_SIGNATURES: "blue",
    DocumentStatus.COMPLETED: "green",
    DocumentStatus.CANCELLED: "red",
}


def _fail(message: str) -> None:
    console.print(f"[red]{message}[/]")
    sys.exit(1)


@click.group()
@click.option(
    "--data-dir",
    type=click.Path(),
    default=None,
    help="signstamp data directory (default: $SIGNSTAMP_HOME or ~/.signstamp)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log placement details")
@click.pass_context
def main(ctx: click.Context, data_dir: Optional[str], verbose: bool) -> None:
    """signstamp: multi-party document signing."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    ctx.ensure_object(dict)
    config = load_config(Path(data_dir) if data_dir else None)
    ctx.obj["service"] = SigningService(DocumentStore(config.data_dir), config)


# ---------------------------------------------------------------------------
# Templates
# ---------------------------------------------------------------------------

@main.group()
def template() -> None:
    """Signatory layout templates."""


@template.command("add")
@click.argument("path", type=click.Path(exists=True))
@click.pass_context
def template_add(ctx: click.Context, path: str) -> None:
    """Import a template from a JSON file."""
    service: SigningService = ctx.obj["service"]
    tpl = Template.model_validate_json(Path(path).read_text(encoding="utf-8"))
    service.store.save_template(tpl)
    console.print(f"[green]Saved template[/] {tpl.name} ({tpl.template_id})")


@template.command("list")
@click.pass_context
def template_list(ctx: click.Context) -> None:
    """List all templates."""
    service: SigningService = ctx.obj["service"]
    tpls = service.store.list_templates()

    if not tpls:
        console.print("[dim]No templates found.[/]")
        return

    table = Table(title="signstamp Templates")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Name", style="cyan")
    table.add_column("Signatories")
    table.add_column("Order", justify="center")
    table.add_column("Created")

    for t in tpls:
        table.add_row(
            t.template_id[:12],
            t.name,
            ", ".join(s.label for s in t.signatories) or "—",
            "sequential" if t.sequential_signing else "parallel",
            t.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Signature records
# ---------------------------------------------------------------------------

@main.group()
def signature() -> None:
    """Manage users' signature records."""


@signature.command("add-drawn")
@click.argument("png", type=click.Path(exists=True))
@click.option("--owner", required=True, help="Owning user ID")
@click.option("--name", default="Signature", help="Display name")
@click.pass_context
def signature_add_drawn(ctx: click.Context, png: str, owner: str, name: str) -> None:
    """Register a drawn signature from a PNG file."""
    service: SigningService = ctx.obj["service"]
    record = SignatureRecord.drawn(owner, Path(png).read_bytes(), name=name)
    try:
        record = service.add_signature(record)
    except SigningError as exc:
        _fail(str(exc))
    console.print(f"[green]Saved signature[/] {record.record_id}")


@signature.command("add-styled")
@click.option("--owner", required=True, help="Owning user ID")
@click.option("--text", required=True, help="Text to render")
@click.option("--font", default="Allura", type=click.Choice(sorted(FONT_FILES)), help="Handwriting font")
@click.option("--color", default="#000000", help="Ink colour")
@click.option("--size", default=48, help="Font size")
@click.option("--name", default="Signature", help="Display name")
@click.pass_context
def signature_add_styled(
    ctx: click.Context,
    owner: str,
    text: str,
    font: str,
    color: str,
    size: int,
    name: str,
) -> None:
    """Register a styled text signature."""
    service: SigningService = ctx.obj["service"]
    record = SignatureRecord(
        owner_id=owner,
        name=name,
        kind=SignatureKind.STYLED,
        styled=StyledSignature(text=text, font=font, color=color, size=size),
    )
    try:
        record = service.add_signature(record)
    except SigningError as exc:
        _fail(str(exc))
    console.print(f"[green]Saved signature[/] {record.record_id}")


@signature.command("list")
@click.option("--owner", default=None, help="Filter by owner")
@click.pass_context
def signature_list(ctx: click.Context, owner: Optional[str]) -> None:
    """List signature records."""
    service: SigningService = ctx.obj["service"]
    records = service.store.list_signatures(owner)

    if not records:
        console.print("[dim]No signatures found.[/]")
        return

    table = Table(title="Signatures")
    table.add_column("ID", style="dim")
    table.add_column("Owner", style="cyan")
    table.add_column("Name")
    table.add_column("Kind")
    table.add_column("Default", justify="center")
    table.add_column("Active", justify="center")

    for r in records:
        table.add_row(
            r.record_id,
            r.owner_id,
            r.name,
            r.kind.value,
            "*" if r.is_default else "",
            "[green]yes[/]" if r.active else "[red]no[/]",
        )

    console.print(table)


@signature.command("default")
@click.argument("record_id")
@click.option("--owner", required=True, help="Owning user ID")
@click.pass_context
def signature_default(ctx: click.Context, record_id: str, owner: str) -> None:
    """Make a record the owner's default signature."""
    service: SigningService = ctx.obj["service"]
    try:
        service.set_default_signature(record_id, owner)
    except SigningError as exc:
        _fail(str(exc))
    console.print(f"[green]Default signature set[/] {record_id}")


@signature.command("remove")
@click.argument("record_id")
@click.option("--owner", required=True, help="Owning user ID")
@click.option("--deactivate", is_flag=True, help="Deactivate instead of deleting")
@click.pass_context
def signature_remove(ctx: click.Context, record_id: str, owner: str, deactivate: bool) -> None:
    """Delete (or deactivate) a signature record."""
    service: SigningService = ctx.obj["service"]
    try:
        if deactivate:
            service.deactivate_signature(record_id, owner)
        else:
            service.delete_signature(record_id, owner)
    except SigningError as exc:
        _fail(str(exc))
    console.print(f"[green]{'Deactivated' if deactivate else 'Deleted'}[/] {record_id}")


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------

@main.command()
@click.argument("pdf", type=click.Path(exists=True))
@click.option("--template", "template_id", required=True, help="Template ID")
@click.option("--title", default=None, help="Document title")
@click.pass_context
def create(ctx: click.Context, pdf: str, template_id: str, title: Optional[str]) -> None:
    """Register a generated PDF and open it for signing."""
    service: SigningService = ctx.obj["service"]
    pdf_path = Path(pdf)
    try:
        tpl = service.store.load_template(template_id)
    except FileNotFoundError:
        _fail(f"Template not found: {template_id}")

    doc = service.create_document(title or pdf_path.stem, pdf_path.read_bytes(), template=tpl)
    console.print(
        Panel(
            f"[bold green]Document created[/]\n\n"
            f"  Document:    {doc.title}\n"
            f"  ID:          {doc.document_id}\n"
            f"  Signatories: {len(doc.signatories)}\n"
            f"  Status:      {doc.status.value}",
            title="signstamp",
            border_style="green",
        )
    )


@main.command()
@click.argument("document_id")
@click.argument("signatory_id")
@click.option("--signature", "record_id", required=True, help="Signature record ID")
@click.option("--actor-id", required=True, help="Signing user ID")
@click.option("--actor-name", required=True, help="Signing user's full name")
@click.pass_context
def sign(
    ctx: click.Context,
    document_id: str,
    signatory_id: str,
    record_id: str,
    actor_id: str,
    actor_name: str,
) -> None:
    """Sign a document as one of its signatories."""
    service: SigningService = ctx.obj["service"]
    try:
        result = service.sign(
            document_id, signatory_id, record_id, Actor(id=actor_id, full_name=actor_name)
        )
    except FileNotFoundError:
        _fail(f"Document not found: {document_id}")
    except SigningError as exc:
        _fail(str(exc))
    except (MissingDraft, StorageError) as exc:
        _fail(f"Signature recorded but finalization failed: {exc}")

    color = "green" if result.completed else "blue"
    console.print(
        Panel(
            f"[bold {color}]Signed![/]\n\n"
            f"  Document: {document_id}\n"
            f"  Signer:   {actor_name}\n"
            f"  Status:   {result.status.value}",
            title="signstamp",
            border_style=color,
        )
    )


@main.command()
@click.argument("document_id")
@click.pass_context
def status(ctx: click.Context, document_id: str) -> None:
    """Show who has signed and who is being waited on."""
    service: SigningService = ctx.obj["service"]
    try:
        st = service.status(document_id)
    except FileNotFoundError:
        _fail(f"Document not found: {document_id}")

    color = STATUS_COLORS.get(st.status, "white")
    table = Table(
        title=(
            f"{document_id[:12]} [{color}]{st.status.value}[/] "
            f"({st.total_required - st.pending_count}/{st.total_required} required)"
        )
    )
    table.add_column("Order", justify="right")
    table.add_column("Signatory", style="cyan")
    table.add_column("Required", justify="center")
    table.add_column("Status")
    table.add_column("Waiting for")

    for s in st.signatories:
        if isinstance(s.status, SignedStatus):
            state = (
                f"[green]signed[/] by {s.status.entry.signed_by_name} "
                f"{s.status.entry.signed_at.strftime('%Y-%m-%d %H:%M')}"
            )
        elif s.can_sign_now:
            state = "[yellow]ready[/]"
        else:
            state = "[dim]pending[/]"
        table.add_row(
            str(s.order),
            f"{s.label} [dim]{s.signatory_id[:8]}[/]",
            "yes" if s.required else "no",
            state,
            ", ".join(s.waiting_for) or "—",
        )

    console.print(table)


@main.command("list")
@click.option("--status", "status_filter", default=None, help="Filter by status")
@click.pass_context
def list_docs(ctx: click.Context, status_filter: Optional[str]) -> None:
    """List all documents."""
    service: SigningService = ctx.obj["service"]
    docs = service.store.list_documents(
        status=DocumentStatus(status_filter) if status_filter else None
    )

    if not docs:
        console.print("[dim]No documents found.[/]")
        return

    table = Table(title="signstamp Documents")
    table.add_column("ID", style="dim", max_width=12)
    table.add_column("Title", style="cyan")
    table.add_column("Status", justify="center")
    table.add_column("Signed", justify="right")
    table.add_column("Created")

    for doc in docs:
        color = STATUS_COLORS.get(doc.status, "white")
        table.add_row(
            doc.document_id[:12],
            doc.title,
            f"[{color}]{doc.status.value}[/]",
            f"{len(doc.entries)}/{len(doc.signatories)}",
            doc.created_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@main.command()
@click.argument("document_id")
@click.option("--output", "-o", required=True, type=click.Path(), help="Where to write the PDF")
@click.pass_context
def download(ctx: click.Context, document_id: str, output: str) -> None:
    """Write the final PDF (or the draft while pending) to a file."""
    service: SigningService = ctx.obj["service"]
    try:
        data = service.download(document_id)
    except FileNotFoundError as exc:
        _fail(str(exc))
    except StorageError as exc:
        _fail(f"Could not read PDF: {exc}")
    Path(output).write_bytes(data)
    console.print(f"[green]Wrote[/] {output} ({len(data)} bytes)")


@main.command()
@click.argument("document_id")
@click.option("--reason", default=None, help="Why the document is cancelled")
@click.pass_context
def cancel(ctx: click.Context, document_id: str, reason: Optional[str]) -> None:
    """Cancel a document that is still collecting signatures."""
    service: SigningService = ctx.obj["service"]
    try:
        doc = service.cancel(document_id, reason=reason)
    except FileNotFoundError:
        _fail(f"Document not found: {document_id}")
    except SigningError as exc:
        _fail(str(exc))
    console.print(f"[red]Cancelled[/] {doc.document_id}")


@main.command()
@click.argument("document_id")
@click.pass_context
def finalize(ctx: click.Context, document_id: str) -> None:
    """Retry finalization of a completed document."""
    service: SigningService = ctx.obj["service"]
    try:
        doc = service.finalize(document_id)
    except FileNotFoundError:
        _fail(f"Document not found: {document_id}")
    except (SigningError, MissingDraft, StorageError) as exc:
        _fail(str(exc))
    console.print(f"[green]Finalized[/] {doc.document_id} -> {doc.final_blob_ref.key}")


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@main.command()
@click.argument("document_id")
@click.pass_context
def audit(ctx: click.Context, document_id: str) -> None:
    """Show the audit trail for a document."""
    service: SigningService = ctx.obj["service"]
    entries = service.store.get_audit_trail(document_id)

    if not entries:
        console.print("[dim]No audit entries found.[/]")
        return

    table = Table(title="Audit Trail")
    table.add_column("Time", style="dim")
    table.add_column("Action", style="cyan")
    table.add_column("Actor")
    table.add_column("Details")

    for e in entries:
        table.add_row(
            e.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            e.action.value,
            e.actor_name or e.actor_id or "—",
            e.details,
        )

    console.print(table)


# ---------------------------------------------------------------------------
# Serve
# ---------------------------------------------------------------------------

@main.command()
@click.option("--host", default="127.0.0.1", help="Bind address")
@click.option("--port", default=8410, help="Port")
def serve(host: str, port: int) -> None:
    """Start the signstamp API server."""
    import uvicorn

    console.print(
        f"[bold]signstamp API[/] listening on [cyan]http://{host}:{port}[/]"
    )
    uvicorn.run("signstamp.api:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
