"""Burn completed signatures into the pristine draft.

Finalization always starts from ``original_draft_blob_ref``, never from the
draft that may already carry a preview, so running it again cannot stamp a
page twice. A signatory or signature record that can no longer be resolved
is skipped with a warning: the document is legitimately complete and a
missing stamp is preferred over no final artifact at all.
"""

import io
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError

from .config import StampConfig
from .coordinates import resolve_placement
from .errors import IncompleteDocument, MissingDraft, PageGeometryError
from .models import (
    AuditAction,
    AuditEntry,
    DocumentArtifact,
    DocumentStatus,
    SignatureEntry,
    SignatureRecord,
)
from .overlay import OverlayCompositor
from .renderer import render_signature
from .store import BlobStore

logger = logging.getLogger("signstamp.finalizer")

RecordLookup = Callable[[str], Optional[SignatureRecord]]


def page_geometry(reader: PdfReader, tolerance: float) -> tuple[float, int]:
    """Return the uniform page height and page count of a draft.

    Raises:
        PageGeometryError: If the draft has no pages or page heights differ.
    """
    pages = reader.pages
    if len(pages) == 0:
        raise PageGeometryError("Draft has no pages")
    height = float(pages[0].mediabox.height)
    for i, page in enumerate(pages):
        h = float(page.mediabox.height)
        if abs(h - height) > tolerance:
            raise PageGeometryError(
                f"Page {i + 1} is {h:.1f}pt tall but page 1 is {height:.1f}pt; "
                "signature placement needs a uniform page height"
            )
    return height, len(pages)


class DocumentFinalizer:
    """Produces the stamped artifact for a completed document.

    Args:
        blobs: Where the pristine draft is read from and the result written.
        lookup_record: Resolves a signature record ID, or returns None.
        config: Rendering settings.
        renderer: Turns a signature record into PNG bytes.
    """

    def __init__(
        self,
        blobs: BlobStore,
        lookup_record: RecordLookup,
        config: StampConfig,
        renderer: Callable[[SignatureRecord, StampConfig], bytes] = render_signature,
    ) -> None:
        self.blobs = blobs
        self.lookup_record = lookup_record
        self.config = config
        self.renderer = renderer
        self.compositor = OverlayCompositor(config)

    def render(
        self,
        document: DocumentArtifact,
        entries: Optional[list[SignatureEntry]] = None,
    ) -> bytes:
        """Stamp ``entries`` (default: all entries) onto a copy of the pristine draft.

        Raises:
            MissingDraft: If the pristine draft is absent or unreadable.
            PageGeometryError: If the draft breaks the uniform page height rule.
            StorageError: If the blob store fails.
        """
        if document.original_draft_blob_ref is None:
            raise MissingDraft(document.document_id, "no pristine draft recorded")
        try:
            pdf_data = self.blobs.get_pristine(document.original_draft_blob_ref)
        except FileNotFoundError as exc:
            raise MissingDraft(document.document_id, str(exc)) from exc

        try:
            reader = PdfReader(io.BytesIO(pdf_data))
            writer = PdfWriter(clone_from=reader)
        except PdfReadError as exc:
            raise MissingDraft(document.document_id, f"draft is not a readable PDF: {exc}") from exc

        page_height, total_pages = page_geometry(reader, self.config.page_height_tolerance)
        logger.info(
            "Rendering %s: page_height=%.1f preview_page_height=%.1f pages=%d",
            document.document_id[:8], page_height, document.preview_page_height, total_pages,
        )

        stamped = 0
        for entry in document.entries if entries is None else entries:
            if self._stamp_entry(document, entry, writer, page_height, total_pages):
                stamped += 1

        out = io.BytesIO()
        writer.write(out)
        logger.info("Stamped %d signature(s) onto %s", stamped, document.document_id[:8])
        return out.getvalue()

    def finalize(self, document: DocumentArtifact) -> DocumentArtifact:
        """Produce and store the final artifact.

        A document that already has ``final_blob_ref`` is returned unchanged.

        Returns:
            An updated copy with ``final_blob_ref`` set.

        Raises:
            IncompleteDocument: If required signatures are still missing.
            MissingDraft, PageGeometryError, StorageError: See ``render``.
        """
        if document.final_blob_ref is not None:
            logger.debug("Document %s already finalized", document.document_id[:8])
            return document
        if not document.is_complete:
            raise IncompleteDocument(document.document_id)

        pdf_data = self.render(document)
        ref = self.blobs.put(
            pdf_data,
            {
                "document_id": document.document_id,
                "kind": "final",
                "filename": f"{document.title}-signed.pdf",
            },
        )

        doc = document.model_copy(deep=True)
        now = datetime.now(timezone.utc)
        doc.final_blob_ref = ref
        doc.status = DocumentStatus.COMPLETED
        doc.completed_at = doc.completed_at or now
        doc.audit_trail.append(
            AuditEntry(
                document_id=doc.document_id,
                action=AuditAction.FINALIZED,
                timestamp=now,
                details=f"Final artifact {ref.key[:8]} with {len(doc.entries)} signature(s)",
            )
        )
        return doc

    def _stamp_entry(
        self,
        document: DocumentArtifact,
        entry: SignatureEntry,
        writer: PdfWriter,
        page_height: float,
        total_pages: int,
    ) -> bool:
        signatory = document.signatory(entry.signatory_id)
        if signatory is None:
            logger.warning(
                "Skipping entry for unknown signatory %s on %s",
                entry.signatory_id, document.document_id[:8],
            )
            return False

        record = self.lookup_record(entry.signature_record_id)
        if record is None:
            logger.warning(
                "Skipping %s: signature record %s not found",
                signatory.label, entry.signature_record_id,
            )
            return False

        try:
            image_png = self.renderer(record, self.config)
        except ValueError as exc:
            logger.warning("Skipping %s: %s", signatory.label, exc)
            return False

        box = entry.custom_box or signatory.box
        placement = resolve_placement(
            box, document.preview_page_height, page_height, total_pages
        )
        logger.info(
            "Signature %s: stored_y=%.1f absolute_y=%.1f page=%d",
            signatory.label, box.y, placement.absolute_y, placement.page_index + 1,
        )
        self.compositor.stamp(
            writer.pages[placement.page_index], image_png, placement, signatory, entry
        )
        return True
