"""Core data models for signstamp.

A document is generated elsewhere as a paginated PDF; signstamp tracks which
signatories have signed it and, once every required signatory is done,
burns the signature images into a copy of the pristine draft.

Signature boxes are authored against a preview rendering whose page height
is recorded once (``preview_page_height``). Box ``y`` values are absolute,
measured from the top of the whole stacked document at preview scale.
"""

import base64
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class DocumentStatus(str, Enum):
    """Lifecycle states for a generated document."""

    DRAFT = "draft"
    PENDING = "pending"
    PENDING_SIGNATURES = "pending_signatures"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


SIGNABLE_STATUSES = frozenset({DocumentStatus.PENDING, DocumentStatus.PENDING_SIGNATURES})


class SignatureKind(str, Enum):
    """How a signature record is rendered."""

    DRAWN = "drawn"
    STYLED = "styled"


class DatePosition(str, Enum):
    """Where the signing date caption goes, if anywhere."""

    NONE = "none"
    LEFT = "left"
    RIGHT = "right"


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    CREATED = "created"
    SIGNED = "signed"
    COMPLETED = "completed"
    FINALIZED = "finalized"
    CANCELLED = "cancelled"
    DOWNLOADED = "downloaded"


# ---------------------------------------------------------------------------
# Blob references
# ---------------------------------------------------------------------------

class BlobRef(BaseModel):
    """Reference to a write-once blob in the blob store."""

    key: str

    model_config = {"frozen": True}


class PristineDraftRef(BaseModel):
    """Reference to the untouched draft produced before any signing.

    Deliberately not a ``BlobRef`` subclass: only the finalizer reads it,
    through ``BlobStore.get_pristine``.
    """

    key: str

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Signature records
# ---------------------------------------------------------------------------

_DATA_URI = re.compile(r"^data:image/\w+;base64,")


class StyledSignature(BaseModel):
    """Text rendered in a handwriting font."""

    text: str
    font: str = "Allura"
    color: str = "#000000"
    size: int = 48


class SignatureRecord(BaseModel):
    """A reusable, user-owned signature.

    Attributes:
        record_id: Unique identifier.
        owner_id: User who owns the record.
        name: Display name (e.g. "Formal", "Initials").
        kind: Drawn image or styled text.
        image_data: Base64 PNG for drawn records. A data-URI prefix is allowed.
        styled: Text rendering spec for styled records.
        active: Inactive records can no longer be used to sign.
        is_default: The owner's default record.
        created_at: Creation timestamp.
    """

    record_id: str = Field(default_factory=lambda: str(uuid4()))
    owner_id: str
    name: str = "Signature"
    kind: SignatureKind
    image_data: Optional[str] = None
    styled: Optional[StyledSignature] = None
    active: bool = True
    is_default: bool = False
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )

    @property
    def image_bytes(self) -> bytes:
        """Decoded PNG bytes of a drawn record."""
        if not self.image_data:
            raise ValueError(f"Signature {self.record_id} has no image data")
        return base64.b64decode(_DATA_URI.sub("", self.image_data))

    @classmethod
    def drawn(cls, owner_id: str, png: bytes, **kwargs) -> "SignatureRecord":
        return cls(
            owner_id=owner_id,
            kind=SignatureKind.DRAWN,
            image_data=base64.b64encode(png).decode("ascii"),
            **kwargs,
        )


# ---------------------------------------------------------------------------
# Signatories
# ---------------------------------------------------------------------------

class SignatureBox(BaseModel):
    """Rectangle where a signature is placed.

    ``y`` is measured from the top of the entire logical document at the
    preview page height. ``x``, ``width`` and ``height`` are in points.
    """

    x: float = 100.0
    y: float = 100.0
    width: float = 200.0
    height: float = 60.0


class SignatoryDescriptor(BaseModel):
    """A party configured to sign a specific document.

    Attributes:
        signatory_id: Unique identifier.
        label: Caption shown to users and optionally stamped on the page.
        order: Sequential turn (ascending).
        required: Whether completion waits for this signatory.
        box: Placement box.
        show_label: Stamp ``label`` under the signature.
        show_signer_name: Stamp the signer's full name under the signature.
        date_position: Alignment of the date caption, or none.
        assigned_user_id: When set, only this user may sign.
    """

    signatory_id: str = Field(default_factory=lambda: str(uuid4()))
    label: str
    order: int = 0
    required: bool = True
    box: SignatureBox = Field(default_factory=SignatureBox)
    show_label: bool = True
    show_signer_name: bool = False
    date_position: DatePosition = DatePosition.RIGHT
    assigned_user_id: Optional[str] = None


class SignatureEntry(BaseModel):
    """Immutable record that a signatory signed."""

    signatory_id: str
    signature_record_id: str
    signed_by_id: str
    signed_by_name: str
    signed_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    custom_box: Optional[SignatureBox] = None

    model_config = {"frozen": True}


class PendingStatus(BaseModel):
    state: Literal["pending"] = "pending"


class SignedStatus(BaseModel):
    state: Literal["signed"] = "signed"
    entry: SignatureEntry


SignatoryStatus = Annotated[
    Union[PendingStatus, SignedStatus], Field(discriminator="state")
]


class Actor(BaseModel):
    """The user performing an action."""

    id: str
    full_name: str


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """Immutable audit log entry."""

    entry_id: str = Field(default_factory=lambda: str(uuid4()))
    document_id: str
    action: AuditAction
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    details: str = ""


# ---------------------------------------------------------------------------
# Template
# ---------------------------------------------------------------------------

class Template(BaseModel):
    """Signatory layout shared by every document generated from it.

    Attributes:
        template_id: Unique identifier.
        name: Template name (e.g. "Employment contract").
        preview_page_height: Page height of the preview the boxes were drawn on.
        sequential_signing: Required signatories sign in ascending order.
        signatories: Signatory descriptors copied into each document.
        created_at: Creation timestamp.
    """

    template_id: str = Field(default_factory=lambda: str(uuid4()))
    name: str
    preview_page_height: float = 792.0
    sequential_signing: bool = True
    signatories: list[SignatoryDescriptor] = Field(default_factory=list)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )


# ---------------------------------------------------------------------------
# Document artifact (the main entity)
# ---------------------------------------------------------------------------

class DocumentArtifact(BaseModel):
    """A generated document moving through the signing workflow.

    Attributes:
        document_id: Unique identifier.
        title: Human-readable title.
        status: Current lifecycle status.
        template_id: Template the signatories were copied from (if any).
        preview_page_height: Page height the signature boxes were authored at.
        sequential_signing: Enforce ascending order among required signatories.
        draft_blob_ref: Draft served before completion (may hold a preview).
        original_draft_blob_ref: Pristine draft, read only by the finalizer.
        final_blob_ref: Stamped artifact, set exactly once.
        signatories: Fixed at creation.
        entries: Append-only signature entries.
        audit_trail: Chronological event log.
        version: Incremented on every save, used for compare-and-swap.
    """

    document_id: str = Field(default_factory=lambda: str(uuid4()))
    title: str
    status: DocumentStatus = DocumentStatus.DRAFT
    template_id: Optional[str] = None
    preview_page_height: float = 792.0
    sequential_signing: bool = True
    draft_blob_ref: Optional[BlobRef] = None
    original_draft_blob_ref: Optional[PristineDraftRef] = None
    final_blob_ref: Optional[BlobRef] = None
    signatories: list[SignatoryDescriptor] = Field(default_factory=list)
    entries: list[SignatureEntry] = Field(default_factory=list)
    audit_trail: list[AuditEntry] = Field(default_factory=list)
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    version: int = 0

    def signatory(self, signatory_id: str) -> Optional[SignatoryDescriptor]:
        for s in self.signatories:
            if s.signatory_id == signatory_id:
                return s
        return None

    def entry_for(self, signatory_id: str) -> Optional[SignatureEntry]:
        for e in self.entries:
            if e.signatory_id == signatory_id:
                return e
        return None

    def signatory_status(self, signatory_id: str) -> Union[PendingStatus, SignedStatus]:
        entry = self.entry_for(signatory_id)
        if entry is None:
            return PendingStatus()
        return SignedStatus(entry=entry)

    @property
    def required_signatories(self) -> list[SignatoryDescriptor]:
        return [s for s in self.signatories if s.required]

    @property
    def is_complete(self) -> bool:
        """Every required signatory has an entry."""
        signed = {e.signatory_id for e in self.entries}
        return all(s.signatory_id in signed for s in self.required_signatories)
