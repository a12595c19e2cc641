"""Exception taxonomy for signstamp.

Referential and state errors derive from ``SigningError`` (a ``ValueError``)
and are rejected before anything is mutated. Storage problems derive from
``StorageError`` (a ``RuntimeError``) and are surfaced to the caller, never
retried here.
"""

from typing import Optional


class SigningError(ValueError):
    """Base class for errors the caller can show to a user."""


class NotPending(SigningError):
    """The document is not accepting signatures."""

    def __init__(self, document_id: str, status: str) -> None:
        super().__init__(f"Document {document_id} is {status}, not open for signing")
        self.document_id = document_id
        self.status = status


class UnknownSignatory(SigningError):
    def __init__(self, signatory_id: str) -> None:
        super().__init__(f"Signatory {signatory_id} not found in document")
        self.signatory_id = signatory_id


class UnknownSignatureRecord(SigningError):
    def __init__(self, record_id: str, reason: str = "not found") -> None:
        super().__init__(f"Signature {record_id} {reason}")
        self.record_id = record_id


class AlreadySigned(SigningError):
    def __init__(self, label: str) -> None:
        super().__init__(f"{label} has already signed")
        self.label = label


class OutOfTurn(SigningError):
    """A lower-order required signatory has not signed yet."""

    def __init__(self, label: str, waiting_for: list[str]) -> None:
        super().__init__(
            f"{label} must wait for: {', '.join(waiting_for)}"
        )
        self.label = label
        self.waiting_for = waiting_for


class NotAssigned(SigningError):
    def __init__(self, label: str, actor_id: str) -> None:
        super().__init__(f"User {actor_id} is not assigned to sign as {label}")
        self.label = label
        self.actor_id = actor_id


class IncompleteDocument(SigningError):
    def __init__(self, document_id: str) -> None:
        super().__init__(f"Document {document_id} still has required signatures pending")
        self.document_id = document_id


class SignatureInUse(SigningError):
    def __init__(self, record_id: str, document_ids: list[str]) -> None:
        super().__init__(
            f"Signature {record_id} is used by {len(document_ids)} document(s)"
        )
        self.record_id = record_id
        self.document_ids = document_ids


class PageGeometryError(SigningError):
    """The draft does not satisfy the uniform page height precondition."""


class MissingDraft(RuntimeError):
    def __init__(self, document_id: str, detail: Optional[str] = None) -> None:
        msg = f"Pristine draft for document {document_id} is missing"
        if detail:
            msg = f"{msg}: {detail}"
        super().__init__(msg)
        self.document_id = document_id


class StorageError(RuntimeError):
    """A blob or record could not be read or written."""


class ConcurrentModification(StorageError):
    def __init__(self, document_id: str, expected: int, found: int) -> None:
        super().__init__(
            f"Document {document_id} changed concurrently "
            f"(expected version {expected}, found {found})"
        )
        self.document_id = document_id
        self.expected = expected
        self.found = found
