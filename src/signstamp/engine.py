"""signstamp signing engine: the per-document signing state machine.

Stateless. All state lives in the ``DocumentArtifact``; the engine takes a
document in and returns an updated copy, so a rejected call never leaves a
half-applied change behind.

Turn order is derived from the descriptors and entries every time it is
needed: a required signatory may sign once every required signatory with a
strictly lower ``order`` has signed. Optional signatories may sign at any
time while the document is open.
"""

import logging
from datetime import datetime, timezone
from typing import Optional, Union

from pydantic import BaseModel, Field

from .errors import (
    AlreadySigned,
    NotAssigned,
    NotPending,
    OutOfTurn,
    UnknownSignatory,
    UnknownSignatureRecord,
)
from .models import (
    SIGNABLE_STATUSES,
    Actor,
    AuditAction,
    AuditEntry,
    DocumentArtifact,
    DocumentStatus,
    PendingStatus,
    SignatoryDescriptor,
    SignatoryStatus,
    SignatureBox,
    SignatureEntry,
    SignatureRecord,
    SignedStatus,
)

logger = logging.getLogger("signstamp.engine")


# ---------------------------------------------------------------------------
# Turn order
# ---------------------------------------------------------------------------

def blocking_signatories(
    document: DocumentArtifact, signatory: SignatoryDescriptor
) -> list[SignatoryDescriptor]:
    """Required signatories with a lower order that have not signed yet.

    Empty when the document signs in parallel or ``signatory`` is optional.
    """
    if not document.sequential_signing or not signatory.required:
        return []
    signed = {e.signatory_id for e in document.entries}
    blocking = [
        s
        for s in document.signatories
        if s.required and s.order < signatory.order and s.signatory_id not in signed
    ]
    return sorted(blocking, key=lambda s: s.order)


def waiting_for(document: DocumentArtifact, signatory_id: str) -> list[str]:
    """Labels of the signatories ``signatory_id`` must wait for.

    Raises:
        UnknownSignatory: If the signatory is not on the document.
    """
    signatory = document.signatory(signatory_id)
    if signatory is None:
        raise UnknownSignatory(signatory_id)
    return [s.label for s in blocking_signatories(document, signatory)]


def can_sign_now(document: DocumentArtifact, signatory: SignatoryDescriptor) -> bool:
    return (
        document.status in SIGNABLE_STATUSES
        and document.entry_for(signatory.signatory_id) is None
        and not blocking_signatories(document, signatory)
    )


def next_signatory(document: DocumentArtifact) -> Optional[SignatoryDescriptor]:
    """First pending signatory, by order, that may sign right now."""
    for s in sorted(document.signatories, key=lambda s: s.order):
        if can_sign_now(document, s):
            return s
    return None


# ---------------------------------------------------------------------------
# Status reporting
# ---------------------------------------------------------------------------

class SignatoryState(BaseModel):
    """Where one signatory stands, for UI surfaces."""

    signatory_id: str
    label: str
    order: int
    required: bool
    status: SignatoryStatus
    can_sign_now: bool
    waiting_for: list[str] = Field(default_factory=list)


class SigningStatus(BaseModel):
    """Signing progress of a whole document."""

    document_id: str
    status: DocumentStatus
    pending_count: int
    completed_count: int
    total_required: int
    signatories: list[SignatoryState]
    next_signatory_id: Optional[str] = None
    finalized: bool = False


class SignResult(BaseModel):
    status: DocumentStatus
    completed: bool


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class SigningEngine:
    """Applies sign and cancel events to documents."""

    def open_for_signing(
        self, document: DocumentArtifact, actor: Optional[Actor] = None
    ) -> DocumentArtifact:
        """Move a freshly generated draft into the signing workflow.

        A document without required signatories is complete immediately.
        """
        doc = document.model_copy(deep=True)
        now = datetime.now(timezone.utc)
        doc.audit_trail.append(
            AuditEntry(
                document_id=doc.document_id,
                action=AuditAction.CREATED,
                actor_id=actor.id if actor else None,
                actor_name=actor.full_name if actor else None,
                timestamp=now,
                details=f"Document created: {doc.title}",
            )
        )
        if doc.is_complete:
            self._complete(doc, now)
        else:
            doc.status = DocumentStatus.PENDING
        return doc

    def sign(
        self,
        document: DocumentArtifact,
        signatory_id: str,
        record: Optional[SignatureRecord],
        actor: Actor,
        record_id: Optional[str] = None,
        custom_box: Optional[SignatureBox] = None,
    ) -> DocumentArtifact:
        """Record that ``actor`` signed as ``signatory_id``.

        Args:
            document: The document being signed.
            signatory_id: Descriptor the actor signs for.
            record: The signature record the actor chose, or None if it
                could not be found.
            actor: Who is signing.
            record_id: ID the caller asked for, used in error messages when
                ``record`` is None.
            custom_box: Optional placement override for this entry.

        Returns:
            An updated copy of the document.

        Raises:
            NotPending, UnknownSignatory, AlreadySigned, NotAssigned,
            OutOfTurn, UnknownSignatureRecord.
        """
        if document.status not in SIGNABLE_STATUSES:
            raise NotPending(document.document_id, document.status.value)

        signatory = document.signatory(signatory_id)
        if signatory is None:
            raise UnknownSignatory(signatory_id)
        if document.entry_for(signatory_id) is not None:
            raise AlreadySigned(signatory.label)
        if signatory.assigned_user_id and signatory.assigned_user_id != actor.id:
            raise NotAssigned(signatory.label, actor.id)

        blocking = blocking_signatories(document, signatory)
        if blocking:
            raise OutOfTurn(signatory.label, [s.label for s in blocking])

        self._validate_record(record, record_id, actor)

        doc = document.model_copy(deep=True)
        now = datetime.now(timezone.utc)
        entry = SignatureEntry(
            signatory_id=signatory_id,
            signature_record_id=record.record_id,
            signed_by_id=actor.id,
            signed_by_name=actor.full_name,
            signed_at=now,
            custom_box=custom_box,
        )
        doc.entries.append(entry)
        doc.audit_trail.append(
            AuditEntry(
                document_id=doc.document_id,
                action=AuditAction.SIGNED,
                actor_id=actor.id,
                actor_name=actor.full_name,
                timestamp=now,
                details=f"Signed as {signatory.label}",
            )
        )

        if doc.is_complete:
            self._complete(doc, now)
        else:
            doc.status = DocumentStatus.PENDING_SIGNATURES

        logger.info(
            "%s signed document %s as %s (%d/%d required)",
            actor.full_name,
            doc.document_id[:8],
            signatory.label,
            sum(1 for s in doc.required_signatories if doc.entry_for(s.signatory_id)),
            len(doc.required_signatories),
        )
        return doc

    def cancel(
        self,
        document: DocumentArtifact,
        actor: Optional[Actor] = None,
        reason: Optional[str] = None,
    ) -> DocumentArtifact:
        """Cancel a document that is not yet completed.

        Cancelling an already-cancelled document is a no-op.

        Raises:
            NotPending: If the document is completed.
        """
        if document.status == DocumentStatus.CANCELLED:
            return document
        if document.status == DocumentStatus.COMPLETED:
            raise NotPending(document.document_id, document.status.value)

        doc = document.model_copy(deep=True)
        now = datetime.now(timezone.utc)
        doc.status = DocumentStatus.CANCELLED
        doc.cancelled_at = now
        doc.cancellation_reason = reason
        doc.audit_trail.append(
            AuditEntry(
                document_id=doc.document_id,
                action=AuditAction.CANCELLED,
                actor_id=actor.id if actor else None,
                actor_name=actor.full_name if actor else None,
                timestamp=now,
                details=f"Cancelled: {reason}" if reason else "Cancelled",
            )
        )
        logger.info("Document %s cancelled", doc.document_id[:8])
        return doc

    def summarize(self, document: DocumentArtifact) -> SigningStatus:
        """Per-signatory progress for a document."""
        states = []
        for s in sorted(document.signatories, key=lambda s: s.order):
            status: Union[PendingStatus, SignedStatus] = document.signatory_status(s.signatory_id)
            states.append(
                SignatoryState(
                    signatory_id=s.signatory_id,
                    label=s.label,
                    order=s.order,
                    required=s.required,
                    status=status,
                    can_sign_now=can_sign_now(document, s),
                    waiting_for=(
                        [b.label for b in blocking_signatories(document, s)]
                        if isinstance(status, PendingStatus)
                        else []
                    ),
                )
            )

        required = document.required_signatories
        pending_required = [s for s in required if document.entry_for(s.signatory_id) is None]
        nxt = next_signatory(document)
        return SigningStatus(
            document_id=document.document_id,
            status=document.status,
            pending_count=len(pending_required),
            completed_count=len(document.entries),
            total_required=len(required),
            signatories=states,
            next_signatory_id=nxt.signatory_id if nxt else None,
            finalized=document.final_blob_ref is not None,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_record(
        record: Optional[SignatureRecord], record_id: Optional[str], actor: Actor
    ) -> None:
        if record is None:
            raise UnknownSignatureRecord(record_id or "?")
        if not record.active:
            raise UnknownSignatureRecord(record.record_id, "is inactive")
        if record.owner_id != actor.id:
            raise UnknownSignatureRecord(record.record_id, f"does not belong to {actor.id}")

    @staticmethod
    def _complete(doc: DocumentArtifact, now: datetime) -> None:
        doc.status = DocumentStatus.COMPLETED
        doc.completed_at = now
        doc.audit_trail.append(
            AuditEntry(
                document_id=doc.document_id,
                action=AuditAction.COMPLETED,
                timestamp=now,
                details="All required signatories have signed.",
            )
        )
