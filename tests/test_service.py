"""Tests for the signing workflow service."""

import io
import logging
import multiprocessing
import threading
import time

import pytest
from pypdf import PdfReader, PdfWriter

from signstamp.config import StampConfig
from signstamp.errors import (
    IncompleteDocument,
    MissingDraft,
    NotPending,
    OutOfTurn,
    SignatureInUse,
    UnknownSignatureRecord,
)
from signstamp.models import (
    Actor,
    AuditAction,
    DocumentStatus,
    SignatoryDescriptor,
    SignatureKind,
    SignatureRecord,
    StyledSignature,
    Template,
)
from signstamp.service import SigningService
from signstamp.store import DocumentStore

from conftest import make_png


def _images_per_page(pdf: bytes) -> list[int]:
    return [len(page.images) for page in PdfReader(io.BytesIO(pdf)).pages]


def _finalized_count(service, document_id: str) -> int:
    actions = [e.action for e in service.store.get_audit_trail(document_id)]
    return actions.count(AuditAction.FINALIZED)


def _sign_in_process(data_dir, document_id, signatory_id, record_id, actor):
    """Sign from a fresh store and service, as a second server process would."""
    service = SigningService(
        DocumentStore(data_dir), StampConfig(data_dir=data_dir, font_dirs=[])
    )
    service.sign(document_id, signatory_id, record_id, actor)


@pytest.fixture
def template(tmp_store, three_signatories) -> Template:
    t = Template(name="Employment contract", signatories=three_signatories)
    tmp_store.save_template(t)
    return t


@pytest.fixture
def document(service, template, sample_pdf):
    return service.create_document("Contract", sample_pdf, template=template)


@pytest.fixture
def parallel_document(service, sample_pdf, signatures, ana, bruno):
    """Two-signatory document open to both signers at once."""
    doc = service.create_document(
        "Parallel",
        sample_pdf,
        signatories=[
            SignatoryDescriptor(signatory_id="a", label="A", assigned_user_id=ana.id),
            SignatoryDescriptor(signatory_id="b", label="B", assigned_user_id=bruno.id),
        ],
        sequential_signing=False,
    )
    records = {actor.id: signatures[actor.id].record_id for actor in (ana, bruno)}
    return doc, records


class TestCreateDocument:
    def test_copies_template(self, document, template):
        assert document.status == DocumentStatus.PENDING
        assert document.template_id == template.template_id
        assert [s.label for s in document.signatories] == ["Employee", "Manager", "Director"]
        assert document.version == 1

    def test_stores_pristine_and_draft_separately(self, service, document, sample_pdf):
        assert document.draft_blob_ref.key != document.original_draft_blob_ref.key
        assert service.store.blobs.get(document.draft_blob_ref) == sample_pdf

    def test_audit_persisted(self, service, document):
        trail = service.store.get_audit_trail(document.document_id)
        assert [e.action for e in trail] == [AuditAction.CREATED]

    def test_zero_required_finalized_at_creation(self, service, sample_pdf):
        doc = service.create_document(
            "Notice",
            sample_pdf,
            signatories=[SignatoryDescriptor(label="Witness", required=False)],
        )
        assert doc.status == DocumentStatus.COMPLETED
        assert doc.final_blob_ref is not None


class TestSignWorkflow:
    def test_full_workflow_finalizes(
        self, service, document, signatures, ana, bruno, carla
    ):
        doc_id = document.document_id
        r1 = service.sign(doc_id, "employee", signatures[ana.id].record_id, ana)
        assert r1.status == DocumentStatus.PENDING_SIGNATURES
        assert not r1.completed

        # Draft is served unstamped until completion.
        assert _images_per_page(service.download(doc_id)) == [0, 0, 0]

        service.sign(doc_id, "manager", signatures[bruno.id].record_id, bruno)
        r3 = service.sign(doc_id, "director", signatures[carla.id].record_id, carla)
        assert r3.completed
        assert r3.status == DocumentStatus.COMPLETED

        doc = service.store.load_document(doc_id)
        assert doc.final_blob_ref is not None
        assert _images_per_page(service.download(doc_id)) == [1, 1, 1]

        actions = [e.action for e in service.store.get_audit_trail(doc_id)]
        assert actions.count(AuditAction.SIGNED) == 3
        assert AuditAction.COMPLETED in actions
        assert AuditAction.FINALIZED in actions

    def test_out_of_turn_leaves_document_unchanged(
        self, service, document, signatures, bruno
    ):
        with pytest.raises(OutOfTurn):
            service.sign(
                document.document_id, "manager", signatures[bruno.id].record_id, bruno
            )
        doc = service.store.load_document(document.document_id)
        assert doc.entries == []
        assert doc.version == document.version

    def test_unknown_record(self, service, document, ana):
        with pytest.raises(UnknownSignatureRecord):
            service.sign(document.document_id, "employee", "nope", ana)

    def test_missing_document(self, service, ana):
        with pytest.raises(FileNotFoundError):
            service.sign("nonexistent", "employee", "r", ana)

    def test_preview_on_sign(self, service, document, signatures, ana):
        service.config.preview_on_sign = True
        service.sign(document.document_id, "employee", signatures[ana.id].record_id, ana)
        doc = service.store.load_document(document.document_id)
        assert doc.draft_blob_ref != document.draft_blob_ref
        assert _images_per_page(service.download(document.document_id)) == [1, 0, 0]

    def test_preview_failure_keeps_signature(self, service, signatures, ana, caplog):
        # Mixed page heights cannot be stamped; the signature must still stick.
        writer = PdfWriter()
        writer.add_blank_page(612, 792)
        writer.add_blank_page(612, 842)
        buf = io.BytesIO()
        writer.write(buf)

        doc = service.create_document(
            "Mixed pages",
            buf.getvalue(),
            signatories=[
                SignatoryDescriptor(signatory_id="a", label="A"),
                SignatoryDescriptor(signatory_id="b", label="B", order=1),
            ],
        )
        service.config.preview_on_sign = True

        with caplog.at_level(logging.WARNING, logger="signstamp.service"):
            result = service.sign(doc.document_id, "a", signatures[ana.id].record_id, ana)

        assert result.status == DocumentStatus.PENDING_SIGNATURES
        stored = service.store.load_document(doc.document_id)
        assert len(stored.entries) == 1
        assert stored.draft_blob_ref == doc.draft_blob_ref
        assert "not refreshed" in caplog.text


class TestConcurrentSigning:
    """Signers racing on one document never lose an entry."""

    def test_concurrent_signers_both_recorded(self, service, parallel_document, ana, bruno):
        doc, records = parallel_document
        errors = []

        def _sign(signatory_id, actor):
            try:
                service.sign(doc.document_id, signatory_id, records[actor.id], actor)
            except Exception as exc:
                errors.append(exc)

        threads = [
            threading.Thread(target=_sign, args=("a", ana)),
            threading.Thread(target=_sign, args=("b", bruno)),
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        final = service.store.load_document(doc.document_id)
        assert len(final.entries) == 2
        assert final.final_blob_ref is not None
        assert _finalized_count(service, doc.document_id) == 1

    @pytest.mark.skipif(
        "fork" not in multiprocessing.get_all_start_methods(),
        reason="needs fork",
    )
    def test_signers_in_separate_processes(
        self, service, parallel_document, ana, bruno, monkeypatch
    ):
        doc, records = parallel_document

        # Widen the window between the version check and the write.
        read_version = DocumentStore._stored_version

        def _slow_version(json_path):
            version = read_version(json_path)
            time.sleep(0.3)
            return version

        monkeypatch.setattr(DocumentStore, "_stored_version", staticmethod(_slow_version))

        ctx = multiprocessing.get_context("fork")
        procs = [
            ctx.Process(
                target=_sign_in_process,
                args=(service.store.base, doc.document_id, sid, records[actor.id], actor),
            )
            for sid, actor in (("a", ana), ("b", bruno))
        ]
        for p in procs:
            p.start()
        for p in procs:
            p.join(timeout=60)

        assert [p.exitcode for p in procs] == [0, 0]
        final = service.store.load_document(doc.document_id)
        assert sorted(e.signatory_id for e in final.entries) == ["a", "b"]
        assert final.final_blob_ref is not None
        assert _finalized_count(service, doc.document_id) == 1


class TestFinalize:
    def test_incomplete(self, service, document):
        with pytest.raises(IncompleteDocument):
            service.finalize(document.document_id)

    def test_idempotent(self, service, document, signatures, ana, bruno, carla):
        doc_id = document.document_id
        service.sign(doc_id, "employee", signatures[ana.id].record_id, ana)
        service.sign(doc_id, "manager", signatures[bruno.id].record_id, bruno)
        service.sign(doc_id, "director", signatures[carla.id].record_id, carla)

        first = service.store.load_document(doc_id)
        again = service.finalize(doc_id)
        assert again.final_blob_ref == first.final_blob_ref
        finalized = [
            e for e in service.store.get_audit_trail(doc_id)
            if e.action == AuditAction.FINALIZED
        ]
        assert len(finalized) == 1

    def test_failure_keeps_signature_and_allows_retry(
        self, service, sample_pdf, signatures, ana
    ):
        doc = service.create_document(
            "T", sample_pdf, signatories=[SignatoryDescriptor(signatory_id="a", label="A")]
        )
        pristine = service.store.blobs.base / f"{doc.original_draft_blob_ref.key}.pdf"
        pristine.rename(pristine.with_suffix(".bak"))

        with pytest.raises(MissingDraft):
            service.sign(doc.document_id, "a", signatures[ana.id].record_id, ana)

        stored = service.store.load_document(doc.document_id)
        assert stored.status == DocumentStatus.COMPLETED
        assert len(stored.entries) == 1
        assert stored.final_blob_ref is None

        pristine.with_suffix(".bak").rename(pristine)
        assert service.finalize(doc.document_id).final_blob_ref is not None


class TestCancel:
    def test_cancel_then_sign(self, service, document, signatures, ana):
        cancelled = service.cancel(
            document.document_id, Actor(id="admin", full_name="Admin"), "Withdrawn"
        )
        assert cancelled.status == DocumentStatus.CANCELLED
        with pytest.raises(NotPending):
            service.sign(document.document_id, "employee", signatures[ana.id].record_id, ana)
        trail = service.store.get_audit_trail(document.document_id)
        assert trail[-1].action == AuditAction.CANCELLED


class TestStatusAndDownload:
    def test_status(self, service, document, signatures, ana):
        service.sign(document.document_id, "employee", signatures[ana.id].record_id, ana)
        st = service.status(document.document_id)
        assert st.pending_count == 2
        assert st.next_signatory_id == "manager"

    def test_download_audited(self, service, document, ana):
        service.download(document.document_id, actor=ana)
        trail = service.store.get_audit_trail(document.document_id)
        assert trail[-1].action == AuditAction.DOWNLOADED
        assert trail[-1].details == "draft"


class TestSignatureManagement:
    def test_first_record_is_default(self, service, ana):
        first = service.add_signature(SignatureRecord.drawn(ana.id, make_png()))
        second = service.add_signature(SignatureRecord.drawn(ana.id, make_png("red")))
        assert first.is_default
        assert not second.is_default

        service.set_default_signature(second.record_id, ana.id)
        defaults = [r for r in service.store.list_signatures(ana.id) if r.is_default]
        assert [r.record_id for r in defaults] == [second.record_id]

    def test_add_styled(self, service, ana):
        record = service.add_signature(
            SignatureRecord(
                owner_id=ana.id,
                kind=SignatureKind.STYLED,
                styled=StyledSignature(text="Ana Souza"),
            )
        )
        assert service.store.load_signature(record.record_id) is not None

    def test_add_unrenderable(self, service, ana):
        with pytest.raises(UnknownSignatureRecord):
            service.add_signature(SignatureRecord.drawn(ana.id, b"garbage"))

    def test_other_owner_cannot_manage(self, service, ana, bruno):
        record = service.add_signature(SignatureRecord.drawn(ana.id, make_png()))
        with pytest.raises(UnknownSignatureRecord):
            service.delete_signature(record.record_id, bruno.id)

    def test_deactivated_cannot_sign(self, service, document, ana):
        record = service.add_signature(SignatureRecord.drawn(ana.id, make_png()))
        service.deactivate_signature(record.record_id, ana.id)
        with pytest.raises(UnknownSignatureRecord):
            service.sign(document.document_id, "employee", record.record_id, ana)

    def test_delete_in_use(self, service, document, signatures, ana):
        record_id = signatures[ana.id].record_id
        service.sign(document.document_id, "employee", record_id, ana)
        with pytest.raises(SignatureInUse):
            service.delete_signature(record_id, ana.id)

    def test_delete_unused(self, service, ana):
        record = service.add_signature(SignatureRecord.drawn(ana.id, make_png()))
        service.delete_signature(record.record_id, ana.id)
        assert service.store.load_signature(record.record_id) is None
