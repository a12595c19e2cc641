"""Signing workflow operations exposed to the API and CLI.

``SigningService`` binds the stateless engine to storage. Each mutation
runs under the document's lock and is saved with a version check, so two
signers racing on one document cannot both append from the same starting
state. The finalizer is triggered through ``claim_finalization``, which
succeeds for exactly one caller per document.
"""

import logging
from typing import Optional

from .config import StampConfig
from .engine import SigningEngine, SigningStatus, SignResult
from .errors import (
    IncompleteDocument,
    MissingDraft,
    SignatureInUse,
    SigningError,
    StorageError,
    UnknownSignatureRecord,
)
from .finalizer import DocumentFinalizer
from .models import (
    Actor,
    AuditAction,
    AuditEntry,
    BlobRef,
    DocumentArtifact,
    SignatoryDescriptor,
    SignatureBox,
    SignatureRecord,
    Template,
)
from .store import DocumentStore

logger = logging.getLogger("signstamp.service")


class SigningService:
    """Document signing workflow backed by a ``DocumentStore``.

    Args:
        store: Record and blob storage.
        config: Engine and rendering settings.
    """

    def __init__(self, store: DocumentStore, config: StampConfig) -> None:
        self.store = store
        self.config = config
        self.engine = SigningEngine()
        self.finalizer = DocumentFinalizer(store.blobs, store.load_signature, config)

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def create_document(
        self,
        title: str,
        draft_pdf: bytes,
        template: Optional[Template] = None,
        signatories: Optional[list[SignatoryDescriptor]] = None,
        preview_page_height: Optional[float] = None,
        sequential_signing: Optional[bool] = None,
        actor: Optional[Actor] = None,
    ) -> DocumentArtifact:
        """Register a generated draft and open it for signing.

        The draft is stored twice: once as the pristine reference the
        finalizer reads, once as the draft served for download.
        """
        if template is not None:
            signatories = [s.model_copy(deep=True) for s in template.signatories]
            preview_page_height = preview_page_height or template.preview_page_height
            if sequential_signing is None:
                sequential_signing = template.sequential_signing

        pristine = self.store.blobs.put_pristine(draft_pdf, {"kind": "pristine", "title": title})
        draft = self.store.blobs.put(draft_pdf, {"kind": "draft", "title": title})

        doc = DocumentArtifact(
            title=title,
            template_id=template.template_id if template else None,
            preview_page_height=preview_page_height or self.config.default_page_height,
            sequential_signing=True if sequential_signing is None else sequential_signing,
            signatories=signatories or [],
            draft_blob_ref=draft,
            original_draft_blob_ref=pristine,
        )
        doc = self.engine.open_for_signing(doc, actor)
        doc = self.store.save_document(doc, expected_version=0)
        self._record_audit(doc, start=0)

        if doc.is_complete:
            doc = self.finalize(doc.document_id)
        logger.info("Created document %s (%s)", doc.title, doc.document_id[:8])
        return doc

    def sign(
        self,
        document_id: str,
        signatory_id: str,
        signature_record_id: str,
        actor: Actor,
        custom_box: Optional[SignatureBox] = None,
    ) -> SignResult:
        """Sign a document and finalize it if this was the last required signature.

        Raises:
            FileNotFoundError: If the document doesn't exist.
            SigningError: Any referential or state rejection; nothing is saved.
            MissingDraft, StorageError: If finalization fails. The signature
                itself stays recorded and ``finalize`` can be retried.
        """
        with self.store.lock(document_id):
            doc = self.store.load_document(document_id)
            record = self.store.load_signature(signature_record_id)
            updated = self.engine.sign(
                doc,
                signatory_id,
                record,
                actor,
                record_id=signature_record_id,
                custom_box=custom_box,
            )
            updated = self.store.save_document(updated, expected_version=doc.version)
            self._record_audit(updated, start=len(doc.audit_trail))

        if updated.is_complete:
            updated = self.finalize(document_id)
        elif self.config.preview_on_sign:
            self._refresh_preview(document_id)

        return SignResult(status=updated.status, completed=updated.is_complete)

    def finalize(self, document_id: str) -> DocumentArtifact:
        """Run the finalizer once for a completed document.

        A second call, or a call racing with another finalization, returns
        the document as stored without rendering again.
        """
        doc = self.store.load_document(document_id)
        if doc.final_blob_ref is not None:
            return doc
        if not doc.is_complete:
            raise IncompleteDocument(document_id)
        if not self.store.claim_finalization(document_id):
            logger.info("Finalization of %s already claimed", document_id[:8])
            return self.store.load_document(document_id)

        try:
            with self.store.lock(document_id):
                doc = self.store.load_document(document_id)
                finalized = self.finalizer.finalize(doc)
                finalized = self.store.save_document(finalized, expected_version=doc.version)
                self._record_audit(finalized, start=len(doc.audit_trail))
        except BaseException:
            self.store.release_finalization(document_id)
            raise

        logger.info(
            "Finalized document %s -> %s",
            document_id[:8], finalized.final_blob_ref.key[:8],
        )
        return finalized

    def cancel(
        self,
        document_id: str,
        actor: Optional[Actor] = None,
        reason: Optional[str] = None,
    ) -> DocumentArtifact:
        with self.store.lock(document_id):
            doc = self.store.load_document(document_id)
            cancelled = self.engine.cancel(doc, actor, reason)
            if cancelled is doc:
                return doc
            cancelled = self.store.save_document(cancelled, expected_version=doc.version)
            self._record_audit(cancelled, start=len(doc.audit_trail))
        return cancelled

    def status(self, document_id: str) -> SigningStatus:
        return self.engine.summarize(self.store.load_document(document_id))

    def download(self, document_id: str, actor: Optional[Actor] = None) -> bytes:
        """Final artifact if finalized, otherwise the current draft.

        Raises:
            FileNotFoundError: If the document or its blob doesn't exist.
            StorageError: If the blob cannot be read.
        """
        doc = self.store.load_document(document_id)
        ref: Optional[BlobRef] = doc.final_blob_ref or doc.draft_blob_ref
        if ref is None:
            raise FileNotFoundError(f"Document {document_id} has no PDF")
        data = self.store.blobs.get(ref)
        self.store.append_audit(
            AuditEntry(
                document_id=document_id,
                action=AuditAction.DOWNLOADED,
                actor_id=actor.id if actor else None,
                actor_name=actor.full_name if actor else None,
                details="final" if doc.final_blob_ref else "draft",
            )
        )
        return data

    # ------------------------------------------------------------------
    # Signature records
    # ------------------------------------------------------------------

    def add_signature(self, record: SignatureRecord) -> SignatureRecord:
        """Validate that a record renders, then store it."""
        try:
            self.finalizer.renderer(record, self.config)
        except ValueError as exc:
            raise UnknownSignatureRecord(record.record_id, f"cannot be rendered: {exc}") from exc
        if not self.store.list_signatures(record.owner_id):
            record = record.model_copy(update={"is_default": True})
        self.store.save_signature(record)
        return record

    def set_default_signature(self, record_id: str, owner_id: str) -> SignatureRecord:
        record = self._owned_record(record_id, owner_id)
        record = record.model_copy(update={"is_default": True})
        self.store.save_signature(record)
        return record

    def deactivate_signature(self, record_id: str, owner_id: str) -> SignatureRecord:
        record = self._owned_record(record_id, owner_id)
        record = record.model_copy(update={"active": False, "is_default": False})
        self.store.save_signature(record)
        return record

    def delete_signature(self, record_id: str, owner_id: str) -> None:
        """Delete a signature record that no document references.

        Raises:
            UnknownSignatureRecord: If the owner has no such record.
            SignatureInUse: If any document entry references it.
        """
        self._owned_record(record_id, owner_id)
        users = [
            d.document_id
            for d in self.store.list_documents()
            if any(e.signature_record_id == record_id for e in d.entries)
        ]
        if users:
            raise SignatureInUse(record_id, users)
        self.store.delete_signature(record_id)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _owned_record(self, record_id: str, owner_id: str) -> SignatureRecord:
        record = self.store.load_signature(record_id)
        if record is None or record.owner_id != owner_id:
            raise UnknownSignatureRecord(record_id)
        return record

    def _refresh_preview(self, document_id: str) -> None:
        """Re-render the served draft with the signatures collected so far.

        The signature is already committed, so a failed preview only keeps
        the previous draft and is logged.
        """
        try:
            with self.store.lock(document_id):
                doc = self.store.load_document(document_id)
                data = self.finalizer.render(doc)
                ref = self.store.blobs.put(data, {"document_id": document_id, "kind": "preview"})
                doc = doc.model_copy(update={"draft_blob_ref": ref})
                self.store.save_document(doc, expected_version=doc.version)
        except (SigningError, MissingDraft, StorageError) as exc:
            logger.warning("Preview of %s not refreshed: %s", document_id[:8], exc)

    def _record_audit(self, doc: DocumentArtifact, start: int) -> None:
        for entry in doc.audit_trail[start:]:
            self.store.append_audit(entry)
