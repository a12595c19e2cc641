"""Composite a signature onto a single page of the working document.

Each signature gets its own page-sized overlay drawn with reportlab: the
signature image fitted into the upper part of the box and up to three
caption lines (label, signer name, date) stacked beneath it. The overlay is
then merged onto the target pypdf page, which keeps the page's own content
and draws the overlay on top.
"""

import io
import logging
from zoneinfo import ZoneInfo

from PIL import Image
from pydantic import BaseModel
from pypdf import PageObject, PdfReader
from reportlab.lib.colors import HexColor
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .config import StampConfig
from .coordinates import ResolvedPlacement
from .models import DatePosition, SignatoryDescriptor, SignatureEntry

logger = logging.getLogger("signstamp.overlay")

MIN_FIT = 1.0


class Caption(BaseModel):
    """One line of text stamped under a signature."""

    text: str
    size: int
    color: str = "#000000"
    align: str = "center"


def caption_lines(
    signatory: SignatoryDescriptor,
    entry: SignatureEntry,
    config: StampConfig,
) -> list[Caption]:
    """Build the caption lines a signatory's box asks for, top to bottom."""
    lines: list[Caption] = []
    if signatory.show_label:
        lines.append(Caption(text=signatory.label, size=config.label_font_size))
    if signatory.show_signer_name and entry.signed_by_name:
        lines.append(
            Caption(
                text=f"Signed by: {entry.signed_by_name}",
                size=config.caption_font_size,
                color="#333333",
            )
        )
    if signatory.date_position != DatePosition.NONE:
        lines.append(
            Caption(
                text=f"Signed: {format_signed_at(entry, config)}",
                size=config.caption_font_size,
                color="#666666",
                align=signatory.date_position.value,
            )
        )
    return lines


def format_signed_at(entry: SignatureEntry, config: StampConfig) -> str:
    signed_at = entry.signed_at.astimezone(ZoneInfo(config.display_timezone))
    return signed_at.strftime(config.date_format)


def fit_image(
    img_width: float, img_height: float, box_width: float, box_height: float
) -> tuple[float, float]:
    """Largest size with the image's aspect ratio that fits the box."""
    ratio = min(box_width / img_width, box_height / img_height)
    return img_width * ratio, img_height * ratio


def build_overlay(
    image_png: bytes,
    placement: ResolvedPlacement,
    signatory: SignatoryDescriptor,
    entry: SignatureEntry,
    page_width: float,
    page_height: float,
    config: StampConfig,
) -> bytes:
    """Draw a one-page PDF holding the signature and its captions.

    Args:
        image_png: Rendered signature.
        placement: Target box on the page, bottom-left origin.
        signatory: Supplies caption flags.
        entry: Supplies signer name and date.
        page_width: Width of the target page.
        page_height: Height of the target page.
        config: Caption fonts and sizes.

    Returns:
        PDF bytes of a single page the size of the target page.
    """
    captions = caption_lines(signatory, entry, config)
    caption_space = len(captions) * config.caption_line_height

    fit_width = placement.width
    fit_height = placement.height - caption_space
    if fit_height < MIN_FIT or fit_width < MIN_FIT:
        logger.warning(
            "Signature box for %s is too small (%.1fx%.1f) for %d caption line(s); "
            "clamping image area to %.0f pt",
            signatory.label, placement.width, placement.height, len(captions), MIN_FIT,
        )
        fit_width = max(fit_width, MIN_FIT)
        fit_height = max(fit_height, MIN_FIT)

    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=(page_width, page_height), invariant=1)

    with Image.open(io.BytesIO(image_png)) as img:
        if img.mode not in ("RGB", "RGBA", "L"):
            img = img.convert("RGBA")
        draw_width, draw_height = fit_image(img.width, img.height, fit_width, fit_height)
        c.drawImage(
            ImageReader(img),
            placement.x,
            placement.y_from_bottom + caption_space,
            width=draw_width,
            height=draw_height,
            mask="auto",
        )

        for i, caption in enumerate(captions):
            baseline = (
                placement.y_from_bottom
                + caption_space
                - (i + 1) * config.caption_line_height
                + 3
            )
            c.setFont(config.caption_font, caption.size)
            c.setFillColor(HexColor(caption.color))
            if caption.align == "left":
                c.drawString(placement.x, baseline, caption.text)
            elif caption.align == "right":
                c.drawRightString(placement.x + placement.width, baseline, caption.text)
            else:
                c.drawCentredString(placement.x + placement.width / 2, baseline, caption.text)

        c.showPage()
        c.save()

    logger.debug(
        "Overlay for %s: image %.1fx%.1f at (%.1f, %.1f), %d caption(s)",
        signatory.label, draw_width, draw_height,
        placement.x, placement.y_from_bottom + caption_space, len(captions),
    )
    return buf.getvalue()


def merge_overlay(page: PageObject, overlay_pdf: bytes) -> None:
    """Stack the first page of ``overlay_pdf`` on top of ``page``.

    The overlay is drawn from the origin, so it is shifted onto pages whose
    media box does not start at (0, 0).
    """
    overlay = PdfReader(io.BytesIO(overlay_pdf))
    left = float(page.mediabox.left)
    bottom = float(page.mediabox.bottom)
    if left or bottom:
        page.merge_translated_page(overlay.pages[0], left, bottom)
    else:
        page.merge_page(overlay.pages[0])


class OverlayCompositor:
    """Stamps signatures onto pages using the configured caption style."""

    def __init__(self, config: StampConfig) -> None:
        self.config = config

    def stamp(
        self,
        page: PageObject,
        image_png: bytes,
        placement: ResolvedPlacement,
        signatory: SignatoryDescriptor,
        entry: SignatureEntry,
    ) -> None:
        """Draw one signature onto ``page`` in place."""
        overlay = build_overlay(
            image_png,
            placement,
            signatory,
            entry,
            page_width=float(page.mediabox.width),
            page_height=float(page.mediabox.height),
            config=self.config,
        )
        merge_overlay(page, overlay)
