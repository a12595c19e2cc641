"""signstamp REST API: FastAPI server for multi-party document signing.

Authentication is handled upstream; callers pass the acting user's id and
full name with each mutating request.
"""

import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from .config import load_config
from .engine import SigningStatus, SignResult
from .errors import (
    AlreadySigned,
    ConcurrentModification,
    IncompleteDocument,
    MissingDraft,
    NotAssigned,
    NotPending,
    OutOfTurn,
    PageGeometryError,
    SignatureInUse,
    SigningError,
    StorageError,
    UnknownSignatory,
    UnknownSignatureRecord,
)
from .models import (
    Actor,
    AuditEntry,
    DocumentArtifact,
    DocumentStatus,
    SignatureBox,
    SignatureKind,
    SignatureRecord,
    StyledSignature,
    Template,
)
from .service import SigningService
from .store import DocumentStore

logger = logging.getLogger("signstamp.api")

app = FastAPI(
    title="signstamp",
    description="Multi-party document signing with signature overlays.",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_service() -> SigningService:
    config = load_config()
    return SigningService(DocumentStore(config.data_dir), config)


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class CreateSignatureRequest(BaseModel):
    """Request body for registering a signature record."""

    owner_id: str
    name: str = "Signature"
    kind: SignatureKind
    image_data: Optional[str] = None
    styled: Optional[StyledSignature] = None


class SignRequest(BaseModel):
    """Request body for signing a document."""

    signatory_id: str
    signature_record_id: str
    actor_id: str
    actor_name: str
    custom_box: Optional[SignatureBox] = None


class CancelRequest(BaseModel):
    actor_id: Optional[str] = None
    actor_name: Optional[str] = None
    reason: Optional[str] = None


_STATUS_CODES: list[tuple[type, int]] = [
    (UnknownSignatory, 404),
    (UnknownSignatureRecord, 404),
    (NotPending, 409),
    (AlreadySigned, 409),
    (OutOfTurn, 409),
    (SignatureInUse, 409),
    (IncompleteDocument, 409),
    (NotAssigned, 403),
    (PageGeometryError, 422),
    (MissingDraft, 500),
    (ConcurrentModification, 409),
    (StorageError, 503),
    (SigningError, 400),
]


def _http_error(exc: Exception) -> HTTPException:
    for exc_type, code in _STATUS_CODES:
        if isinstance(exc, exc_type):
            detail: object = str(exc)
            if isinstance(exc, OutOfTurn):
                detail = {"message": str(exc), "waiting_for": exc.waiting_for}
            return HTTPException(status_code=code, detail=detail)
    return HTTPException(status_code=500, detail=str(exc))


def _load(service: SigningService, document_id: str) -> DocumentArtifact:
    try:
        return service.store.load_document(document_id)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Document not found")


# ---------------------------------------------------------------------------
# Template endpoints
# ---------------------------------------------------------------------------

@app.post("/api/templates", response_model=Template, status_code=201)
async def create_template(
    template: Template, service: SigningService = Depends(get_service)
) -> Template:
    """Create a signatory layout template."""
    service.store.save_template(template)
    return template


@app.get("/api/templates", response_model=list[Template])
async def list_templates(service: SigningService = Depends(get_service)) -> list[Template]:
    return service.store.list_templates()


@app.get("/api/templates/{template_id}", response_model=Template)
async def get_template(
    template_id: str, service: SigningService = Depends(get_service)
) -> Template:
    try:
        return service.store.load_template(template_id)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="Template not found")


@app.delete("/api/templates/{template_id}", status_code=204)
async def delete_template(
    template_id: str, service: SigningService = Depends(get_service)
) -> None:
    if not service.store.delete_template(template_id):
        raise HTTPException(status_code=404, detail="Template not found")


# ---------------------------------------------------------------------------
# Signature record endpoints
# ---------------------------------------------------------------------------

@app.post("/api/signatures", response_model=SignatureRecord, status_code=201)
async def create_signature(
    req: CreateSignatureRequest, service: SigningService = Depends(get_service)
) -> SignatureRecord:
    """Register a drawn or styled signature for a user."""
    record = SignatureRecord(
        owner_id=req.owner_id,
        name=req.name,
        kind=req.kind,
        image_data=req.image_data,
        styled=req.styled,
    )
    try:
        return service.add_signature(record)
    except SigningError as exc:
        raise HTTPException(status_code=400, detail=str(exc))


@app.get("/api/signatures", response_model=list[SignatureRecord])
async def list_signatures(
    owner_id: Optional[str] = Query(None, description="Filter by owner"),
    service: SigningService = Depends(get_service),
) -> list[SignatureRecord]:
    return service.store.list_signatures(owner_id)


@app.post("/api/signatures/{record_id}/default", response_model=SignatureRecord)
async def set_default_signature(
    record_id: str,
    owner_id: str = Query(...),
    service: SigningService = Depends(get_service),
) -> SignatureRecord:
    try:
        return service.set_default_signature(record_id, owner_id)
    except SigningError as exc:
        raise _http_error(exc)


@app.post("/api/signatures/{record_id}/deactivate", response_model=SignatureRecord)
async def deactivate_signature(
    record_id: str,
    owner_id: str = Query(...),
    service: SigningService = Depends(get_service),
) -> SignatureRecord:
    try:
        return service.deactivate_signature(record_id, owner_id)
    except SigningError as exc:
        raise _http_error(exc)


@app.delete("/api/signatures/{record_id}", status_code=204)
async def delete_signature(
    record_id: str,
    owner_id: str = Query(...),
    service: SigningService = Depends(get_service),
) -> None:
    """Delete a signature record no document references."""
    try:
        service.delete_signature(record_id, owner_id)
    except SigningError as exc:
        raise _http_error(exc)


# ---------------------------------------------------------------------------
# Document endpoints
# ---------------------------------------------------------------------------

@app.post("/api/documents", response_model=DocumentArtifact, status_code=201)
async def create_document(
    title: str = Form(...),
    template_id: str = Form(...),
    file: UploadFile = File(...),
    service: SigningService = Depends(get_service),
) -> DocumentArtifact:
    """Register a generated PDF draft and open it for signing."""
    try:
        template = service.store.load_template(template_id)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail=f"Template {template_id} not found")

    pdf_data = await file.read()
    try:
        return service.create_document(title, pdf_data, template=template)
    except (SigningError, MissingDraft, StorageError) as exc:
        raise _http_error(exc)


@app.get("/api/documents", response_model=list[DocumentArtifact])
async def list_documents(
    status: Optional[str] = Query(None, description="Filter by status"),
    service: SigningService = Depends(get_service),
) -> list[DocumentArtifact]:
    status_filter = DocumentStatus(status) if status else None
    return service.store.list_documents(status=status_filter)


@app.get("/api/documents/{document_id}", response_model=DocumentArtifact)
async def get_document(
    document_id: str, service: SigningService = Depends(get_service)
) -> DocumentArtifact:
    return _load(service, document_id)


@app.post("/api/documents/{document_id}/sign", response_model=SignResult)
async def sign_document(
    document_id: str,
    req: SignRequest,
    service: SigningService = Depends(get_service),
) -> SignResult:
    """Sign as one signatory. The last required signature finalizes the document."""
    _load(service, document_id)
    try:
        return service.sign(
            document_id,
            req.signatory_id,
            req.signature_record_id,
            Actor(id=req.actor_id, full_name=req.actor_name),
            custom_box=req.custom_box,
        )
    except (SigningError, MissingDraft, StorageError) as exc:
        raise _http_error(exc)


@app.get("/api/documents/{document_id}/status", response_model=SigningStatus)
async def document_status(
    document_id: str, service: SigningService = Depends(get_service)
) -> SigningStatus:
    _load(service, document_id)
    return service.status(document_id)


@app.get("/api/documents/{document_id}/pdf")
async def download_pdf(
    document_id: str, service: SigningService = Depends(get_service)
) -> Response:
    """Download the final artifact, or the draft while signatures are pending."""
    _load(service, document_id)
    try:
        pdf_data = service.download(document_id)
    except FileNotFoundError:
        raise HTTPException(status_code=404, detail="No PDF attached")
    except StorageError as exc:
        raise _http_error(exc)
    return Response(content=pdf_data, media_type="application/pdf")


@app.post("/api/documents/{document_id}/cancel", response_model=DocumentArtifact)
async def cancel_document(
    document_id: str,
    req: CancelRequest,
    service: SigningService = Depends(get_service),
) -> DocumentArtifact:
    _load(service, document_id)
    actor = (
        Actor(id=req.actor_id, full_name=req.actor_name or req.actor_id)
        if req.actor_id
        else None
    )
    try:
        return service.cancel(document_id, actor, req.reason)
    except (SigningError, StorageError) as exc:
        raise _http_error(exc)


@app.post("/api/documents/{document_id}/finalize", response_model=DocumentArtifact)
async def finalize_document(
    document_id: str, service: SigningService = Depends(get_service)
) -> DocumentArtifact:
    """Retry finalization of a completed document. No-op once finalized."""
    _load(service, document_id)
    try:
        return service.finalize(document_id)
    except (SigningError, MissingDraft, StorageError) as exc:
        raise _http_error(exc)


@app.get("/api/documents/{document_id}/audit", response_model=list[AuditEntry])
async def get_audit_trail(
    document_id: str, service: SigningService = Depends(get_service)
) -> list[AuditEntry]:
    return service.store.get_audit_trail(document_id)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health() -> dict:
    return {
        "status": "ok",
        "service": "signstamp",
        "version": "0.1.0",
    }
