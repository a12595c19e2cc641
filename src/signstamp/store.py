"""Filesystem-backed storage for signstamp.

Everything lives on disk as JSON + PDF files under the data directory.
No database required.

Directory layout::

    ~/.signstamp/
    ├── config.json         # Optional settings
    ├── blobs/              # Write-once PDFs (<id>.pdf + <id>.json metadata)
    ├── templates/          # Signatory layouts (JSON)
    ├── signatures/         # User signature records (JSON)
    ├── documents/
    │   └── <doc-id>/
    │       ├── document.json
    │       └── finalize.claim   (while/after finalization runs)
    ├── locks/              # Per-document OS file locks
    └── audit/              # Append-only audit logs (JSONL)
"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional
from uuid import uuid4

from filelock import FileLock, Timeout

from .config import DEFAULT_SIGNSTAMP_DIR
from .errors import ConcurrentModification, StorageError
from .models import (
    AuditEntry,
    BlobRef,
    DocumentArtifact,
    DocumentStatus,
    PristineDraftRef,
    SignatureRecord,
    Template,
)

logger = logging.getLogger("signstamp.store")

LOCK_TIMEOUT = 30.0


def _atomic_write(path: Path, data: bytes) -> None:
    """Write ``data`` to ``path`` so readers never see a partial file."""
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


# ---------------------------------------------------------------------------
# Blobs
# ---------------------------------------------------------------------------

class BlobStore:
    """Write-once PDF storage.

    Args:
        base_dir: Directory holding the blobs.
    """

    def __init__(self, base_dir: Path) -> None:
        self.base = base_dir
        self.base.mkdir(parents=True, exist_ok=True)

    def put(self, data: bytes, metadata: Optional[dict] = None) -> BlobRef:
        """Store bytes under a fresh key.

        Raises:
            StorageError: If the blob cannot be written.
        """
        key = str(uuid4())
        meta = dict(metadata or {})
        meta.setdefault("created_at", datetime.now(timezone.utc).isoformat())
        meta["size"] = len(data)
        try:
            _atomic_write(self.base / f"{key}.pdf", data)
            _atomic_write(
                self.base / f"{key}.json",
                json.dumps(meta, indent=2).encode("utf-8"),
            )
        except OSError as exc:
            raise StorageError(f"Could not write blob {key}: {exc}") from exc
        logger.debug("Stored blob %s (%d bytes)", key[:8], len(data))
        return BlobRef(key=key)

    def put_pristine(self, data: bytes, metadata: Optional[dict] = None) -> PristineDraftRef:
        """Store a pristine draft and return its dedicated reference type."""
        return PristineDraftRef(key=self.put(data, metadata).key)

    def get(self, ref: BlobRef) -> bytes:
        """Read a blob.

        Raises:
            FileNotFoundError: If the blob does not exist.
            StorageError: If it exists but cannot be read.
        """
        if isinstance(ref, PristineDraftRef):
            raise TypeError("Pristine drafts are read with get_pristine()")
        return self._read(ref.key)

    def get_pristine(self, ref: PristineDraftRef) -> bytes:
        """Read a pristine draft. Only the finalizer calls this."""
        if not isinstance(ref, PristineDraftRef):
            raise TypeError(f"Expected PristineDraftRef, got {type(ref).__name__}")
        return self._read(ref.key)

    def metadata(self, ref: BlobRef) -> dict:
        path = self.base / f"{ref.key}.json"
        if not path.exists():
            return {}
        return json.loads(path.read_text(encoding="utf-8"))

    def _read(self, key: str) -> bytes:
        path = self.base / f"{key}.pdf"
        if not path.exists():
            raise FileNotFoundError(f"Blob not found: {key}")
        try:
            return path.read_bytes()
        except OSError as exc:
            raise StorageError(f"Could not read blob {key}: {exc}") from exc


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

class DocumentStore:
    """Filesystem CRUD for templates, documents, signature records and audit logs.

    Args:
        base_dir: Root directory for all signstamp data.
        lock_timeout: Seconds to wait for another process holding a
            document lock before giving up with ``StorageError``.
    """

    def __init__(
        self,
        base_dir: Optional[Path] = None,
        lock_timeout: float = LOCK_TIMEOUT,
    ) -> None:
        self.base = base_dir or DEFAULT_SIGNSTAMP_DIR
        self.lock_timeout = lock_timeout
        self._held = threading.local()
        self._templates_dir = self.base / "templates"
        self._documents_dir = self.base / "documents"
        self._signatures_dir = self.base / "signatures"
        self._audit_dir = self.base / "audit"
        self._locks_dir = self.base / "locks"

        for d in (
            self._templates_dir,
            self._documents_dir,
            self._signatures_dir,
            self._audit_dir,
            self._locks_dir,
        ):
            d.mkdir(parents=True, exist_ok=True)

        self.blobs = BlobStore(self.base / "blobs")

    # ------------------------------------------------------------------
    # Templates
    # ------------------------------------------------------------------

    def save_template(self, template: Template) -> Path:
        path = self._templates_dir / f"{template.template_id}.json"
        _atomic_write(path, template.model_dump_json(indent=2).encode("utf-8"))
        logger.info("Saved template %s (%s)", template.name, template.template_id[:8])
        return path

    def load_template(self, template_id: str) -> Template:
        """Load a template by ID.

        Raises:
            FileNotFoundError: If the template doesn't exist.
        """
        path = self._templates_dir / f"{template_id}.json"
        if not path.exists():
            raise FileNotFoundError(f"Template not found: {template_id}")
        return Template.model_validate_json(path.read_text(encoding="utf-8"))

    def list_templates(self) -> list[Template]:
        """List all templates, newest first."""
        templates = []
        for f in self._templates_dir.glob("*.json"):
            try:
                templates.append(Template.model_validate_json(f.read_text(encoding="utf-8")))
            except Exception as exc:
                logger.warning("Skipping invalid template %s: %s", f.name, exc)
        templates.sort(key=lambda t: t.created_at, reverse=True)
        return templates

    def delete_template(self, template_id: str) -> bool:
        path = self._templates_dir / f"{template_id}.json"
        if path.exists():
            path.unlink()
            logger.info("Deleted template %s", template_id[:8])
            return True
        return False

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self, document_id: str) -> Iterator[None]:
        """Serialize mutations of one document across threads and processes.

        Backed by an OS file lock on ``locks/<document_id>.lock``. Re-entrant
        within a thread: nested calls reuse the lock already held.

        Raises:
            StorageError: If the lock is not acquired within ``lock_timeout``.
        """
        held: dict[str, FileLock] = self._held.__dict__.setdefault("locks", {})
        if document_id in held:
            yield
            return

        file_lock = FileLock(str(self._locks_dir / f"{document_id}.lock"))
        try:
            file_lock.acquire(timeout=self.lock_timeout)
        except Timeout as exc:
            raise StorageError(
                f"Document {document_id} is locked by another writer"
            ) from exc

        held[document_id] = file_lock
        try:
            yield
        finally:
            del held[document_id]
            file_lock.release()

    def save_document(
        self,
        document: DocumentArtifact,
        expected_version: Optional[int] = None,
    ) -> DocumentArtifact:
        """Persist a document, bumping its version.

        Args:
            document: Document to persist.
            expected_version: When given, the stored version must still be
                this value or the write is refused.

        Returns:
            The document as stored (with its new version).

        Raises:
            ConcurrentModification: If the stored version moved on.
            StorageError: If the document cannot be written.
        """
        doc_dir = self._documents_dir / document.document_id
        doc_dir.mkdir(parents=True, exist_ok=True)
        json_path = doc_dir / "document.json"

        with self.lock(document.document_id):
            if expected_version is not None:
                current = self._stored_version(json_path)
                if current != expected_version:
                    raise ConcurrentModification(
                        document.document_id, expected_version, current
                    )
            saved = document.model_copy(update={"version": document.version + 1})
            try:
                _atomic_write(json_path, saved.model_dump_json(indent=2).encode("utf-8"))
            except OSError as exc:
                raise StorageError(
                    f"Could not save document {document.document_id}: {exc}"
                ) from exc

        logger.debug("Saved document %s v%d", saved.document_id[:8], saved.version)
        return saved

    def load_document(self, document_id: str) -> DocumentArtifact:
        """Load a document by ID.

        Raises:
            FileNotFoundError: If the document doesn't exist.
        """
        json_path = self._documents_dir / document_id / "document.json"
        if not json_path.exists():
            raise FileNotFoundError(f"Document not found: {document_id}")
        return DocumentArtifact.model_validate_json(json_path.read_text(encoding="utf-8"))

    def list_documents(
        self, status: Optional[DocumentStatus] = None
    ) -> list[DocumentArtifact]:
        """List documents, optionally filtered by status, newest first."""
        documents = []
        for doc_dir in self._documents_dir.iterdir():
            json_path = doc_dir / "document.json"
            if not json_path.exists():
                continue
            try:
                doc = DocumentArtifact.model_validate_json(json_path.read_text(encoding="utf-8"))
            except Exception as exc:
                logger.warning("Skipping invalid document %s: %s", doc_dir.name, exc)
                continue
            if status is None or doc.status == status:
                documents.append(doc)
        documents.sort(key=lambda d: d.created_at, reverse=True)
        return documents

    def claim_finalization(self, document_id: str) -> bool:
        """Atomically claim the right to finalize a document.

        Returns:
            True for exactly one caller; False if already claimed.
        """
        path = self._documents_dir / document_id / "finalize.claim"
        path.parent.mkdir(parents=True, exist_ok=True)
        try:
            fd = os.open(path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(datetime.now(timezone.utc).isoformat())
        return True

    def release_finalization(self, document_id: str) -> None:
        """Drop a claim after a failed finalization so it can be retried."""
        (self._documents_dir / document_id / "finalize.claim").unlink(missing_ok=True)

    @staticmethod
    def _stored_version(json_path: Path) -> int:
        if not json_path.exists():
            return 0
        data = json.loads(json_path.read_text(encoding="utf-8"))
        return int(data.get("version", 0))

    # ------------------------------------------------------------------
    # Signature records
    # ------------------------------------------------------------------

    def save_signature(self, record: SignatureRecord) -> Path:
        """Save a signature record.

        Marking a record default clears the flag on the owner's other records.
        """
        if record.is_default:
            for other in self.list_signatures(record.owner_id):
                if other.record_id != record.record_id and other.is_default:
                    self._write_signature(other.model_copy(update={"is_default": False}))
        path = self._write_signature(record)
        logger.info("Saved signature %s for %s", record.record_id[:8], record.owner_id)
        return path

    def load_signature(self, record_id: str) -> Optional[SignatureRecord]:
        path = self._signatures_dir / f"{record_id}.json"
        if not path.exists():
            return None
        return SignatureRecord.model_validate_json(path.read_text(encoding="utf-8"))

    def list_signatures(self, owner_id: Optional[str] = None) -> list[SignatureRecord]:
        records = []
        for f in self._signatures_dir.glob("*.json"):
            try:
                record = SignatureRecord.model_validate_json(f.read_text(encoding="utf-8"))
            except Exception as exc:
                logger.warning("Skipping invalid signature %s: %s", f.name, exc)
                continue
            if owner_id is None or record.owner_id == owner_id:
                records.append(record)
        records.sort(key=lambda r: r.created_at)
        return records

    def delete_signature(self, record_id: str) -> bool:
        path = self._signatures_dir / f"{record_id}.json"
        if path.exists():
            path.unlink()
            logger.info("Deleted signature %s", record_id[:8])
            return True
        return False

    def _write_signature(self, record: SignatureRecord) -> Path:
        path = self._signatures_dir / f"{record.record_id}.json"
        _atomic_write(path, record.model_dump_json(indent=2).encode("utf-8"))
        return path

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def append_audit(self, entry: AuditEntry) -> None:
        """Append an audit entry to the document's JSONL log."""
        log_path = self._audit_dir / f"{entry.document_id}.jsonl"
        with open(log_path, "a", encoding="utf-8") as f:
            f.write(entry.model_dump_json() + "\n")

    def get_audit_trail(self, document_id: str) -> list[AuditEntry]:
        """Load the full audit trail for a document, oldest first."""
        log_path = self._audit_dir / f"{document_id}.jsonl"
        if not log_path.exists():
            return []

        entries = []
        for line in log_path.read_text(encoding="utf-8").strip().splitlines():
            try:
                entries.append(AuditEntry.model_validate_json(line))
            except Exception:
                logger.warning("Skipping malformed audit line for %s", document_id[:8])
        return sorted(entries, key=lambda e: e.timestamp)
