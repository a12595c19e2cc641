"""Shared fixtures for signstamp tests."""

import io

import pytest
from PIL import Image
from reportlab.lib.pagesizes import letter
from reportlab.pdfgen import canvas

from signstamp.config import StampConfig
from signstamp.models import Actor, SignatoryDescriptor, SignatureBox, SignatureRecord


def make_pdf(pages: int = 3, pagesize: tuple[float, float] = letter) -> bytes:
    """Render a plain multi-page PDF with reportlab."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=pagesize, invariant=1)
    for i in range(pages):
        c.drawString(72, pagesize[1] - 72, f"Page {i + 1}")
        c.showPage()
    c.save()
    return buf.getvalue()


def make_png(color: str = "black", size: tuple[int, int] = (200, 60)) -> bytes:
    """A solid-colour PNG signature."""
    buf = io.BytesIO()
    Image.new("RGBA", size, color).save(buf, format="PNG")
    return buf.getvalue()


@pytest.fixture
def config(tmp_path):
    return StampConfig(data_dir=tmp_path, font_dirs=[])


@pytest.fixture
def tmp_store(tmp_path):
    """Create a temporary DocumentStore."""
    from signstamp.store import DocumentStore

    return DocumentStore(base_dir=tmp_path)


@pytest.fixture
def service(tmp_store, config):
    from signstamp.service import SigningService

    return SigningService(tmp_store, config)


@pytest.fixture
def sample_pdf() -> bytes:
    """Three US-letter pages (612x792)."""
    return make_pdf(3)


@pytest.fixture
def sample_png() -> bytes:
    return make_png()


@pytest.fixture
def ana() -> Actor:
    return Actor(id="u-ana", full_name="Ana Souza")


@pytest.fixture
def bruno() -> Actor:
    return Actor(id="u-bruno", full_name="Bruno Lima")


@pytest.fixture
def carla() -> Actor:
    return Actor(id="u-carla", full_name="Carla Dias")


@pytest.fixture
def three_signatories() -> list[SignatoryDescriptor]:
    """Employee, manager and director signing in order on pages 1-3."""
    return [
        SignatoryDescriptor(
            signatory_id="employee",
            label="Employee",
            order=0,
            box=SignatureBox(x=72, y=600, width=200, height=80),
        ),
        SignatoryDescriptor(
            signatory_id="manager",
            label="Manager",
            order=1,
            box=SignatureBox(x=72, y=1400, width=200, height=80),
        ),
        SignatoryDescriptor(
            signatory_id="director",
            label="Director",
            order=2,
            box=SignatureBox(x=320, y=2000, width=200, height=80),
        ),
    ]


@pytest.fixture
def signatures(tmp_store, ana, bruno, carla) -> dict[str, SignatureRecord]:
    """One stored drawn signature per actor, each in its own colour."""
    records = {}
    for actor, color in ((ana, "red"), (bruno, "green"), (carla, "blue")):
        record = SignatureRecord.drawn(actor.id, make_png(color), name=actor.full_name)
        tmp_store.save_signature(record)
        records[actor.id] = record
    return records
