"""Tests for signature rendering and page overlays."""

import io
from datetime import datetime, timezone

import pytest
from PIL import Image
from pypdf import PdfReader

from signstamp.config import StampConfig
from signstamp.coordinates import resolve_placement
from signstamp.models import (
    DatePosition,
    SignatoryDescriptor,
    SignatureBox,
    SignatureEntry,
    SignatureKind,
    SignatureRecord,
    StyledSignature,
)
from signstamp.overlay import (
    OverlayCompositor,
    build_overlay,
    caption_lines,
    fit_image,
    format_signed_at,
)
from signstamp.renderer import find_font, render_signature, render_styled

from conftest import make_pdf


def _entry(**kwargs) -> SignatureEntry:
    data = dict(
        signatory_id="s1",
        signature_record_id="r1",
        signed_by_id="u1",
        signed_by_name="Ana Souza",
        signed_at=datetime(2024, 3, 5, 14, 30, tzinfo=timezone.utc),
    )
    data.update(kwargs)
    return SignatureEntry(**data)


class TestRenderer:
    def test_drawn_passthrough(self, config, sample_png):
        record = SignatureRecord.drawn("u1", sample_png)
        assert render_signature(record, config) == sample_png

    def test_drawn_invalid_image(self, config):
        record = SignatureRecord.drawn("u1", b"not a png")
        with pytest.raises(ValueError):
            render_signature(record, config)

    def test_styled_without_spec(self, config):
        record = SignatureRecord(owner_id="u1", kind=SignatureKind.STYLED)
        with pytest.raises(ValueError):
            render_signature(record, config)

    def test_styled_falls_back_to_default_font(self, config, caplog):
        spec = StyledSignature(text="Ana Souza", font="Allura", color="#1a237e", size=32)
        with caplog.at_level("WARNING", logger="signstamp.renderer"):
            png = render_styled(spec, config)
        with Image.open(io.BytesIO(png)) as img:
            assert img.format == "PNG"
            assert img.mode == "RGBA"
            assert img.width > img.height
        assert "not found" in caplog.text

    def test_find_font(self, tmp_path):
        (tmp_path / "GreatVibes-Regular.ttf").write_bytes(b"")
        assert find_font("Great Vibes", [tmp_path]) == tmp_path / "GreatVibes-Regular.ttf"
        assert find_font("Allura", [tmp_path]) is None


class TestCaptions:
    def test_all_lines(self, config):
        sig = SignatoryDescriptor(
            label="Employee", show_signer_name=True, date_position=DatePosition.LEFT
        )
        lines = caption_lines(sig, _entry(), config)
        assert [c.text for c in lines] == [
            "Employee",
            "Signed by: Ana Souza",
            "Signed: 05/03/2024 14:30",
        ]
        assert lines[0].size == 8
        assert lines[1].size == 7
        assert lines[2].align == "left"

    def test_no_captions(self, config):
        sig = SignatoryDescriptor(
            label="Employee", show_label=False, date_position=DatePosition.NONE
        )
        assert caption_lines(sig, _entry(), config) == []

    def test_display_timezone(self, tmp_path):
        config = StampConfig(data_dir=tmp_path, display_timezone="America/Sao_Paulo")
        assert format_signed_at(_entry(), config) == "05/03/2024 11:30"


class TestFitImage:
    def test_wide_image(self):
        assert fit_image(400, 100, 200, 100) == pytest.approx((200, 50))

    def test_tall_image(self):
        assert fit_image(100, 400, 200, 100) == pytest.approx((25, 100))


class TestBuildOverlay:
    def test_single_page_overlay(self, config, sample_png):
        placement = resolve_placement(SignatureBox(y=100), 792, 792, total_pages=1)
        pdf = build_overlay(
            sample_png,
            placement,
            SignatoryDescriptor(label="Employee"),
            _entry(),
            page_width=612,
            page_height=792,
            config=config,
        )
        reader = PdfReader(io.BytesIO(pdf))
        assert len(reader.pages) == 1
        assert float(reader.pages[0].mediabox.height) == 792

    def test_degenerate_box_is_clamped(self, config, sample_png, caplog):
        sig = SignatoryDescriptor(
            label="Tiny", show_signer_name=True, date_position=DatePosition.RIGHT
        )
        placement = resolve_placement(
            SignatureBox(y=100, width=50, height=20), 792, 792, total_pages=1
        )
        with caplog.at_level("WARNING", logger="signstamp.overlay"):
            pdf = build_overlay(sample_png, placement, sig, _entry(), 612, 792, config)
        assert pdf.startswith(b"%PDF")
        assert "too small" in caplog.text


class TestCompositor:
    def test_stamp_adds_image_to_page(self, config, sample_png):
        reader = PdfReader(io.BytesIO(make_pdf(2)))
        page = reader.pages[1]
        assert len(page.images) == 0

        placement = resolve_placement(SignatureBox(y=900), 792, 792, total_pages=2)
        OverlayCompositor(config).stamp(
            page, sample_png, placement, SignatoryDescriptor(label="Employee"), _entry()
        )
        assert len(page.images) == 1
        assert "Employee" in page.extract_text()
