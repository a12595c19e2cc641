"""Map authored signature boxes onto pages of the rendered draft.

Boxes are drawn once against a preview whose page height may differ from
the real render, and the real render may run to more or fewer pages than
the preview did. ``y`` is therefore scaled to the actual page height,
treated as an offset into the stacked document, split into a page index
and a page-local offset, and finally flipped to the bottom-left origin
used by PDF drawing operations.

Page clamping is best-effort: when content renders shorter than the
preview, a box past the last page is pinned to the last page. That keeps
the signature on the document but its position there is not guaranteed to
match the author's intent.
"""

import logging
import math

from pydantic import BaseModel

from .models import SignatureBox

logger = logging.getLogger("signstamp.coordinates")


class ResolvedPlacement(BaseModel):
    """A box resolved to one physical page, bottom-left origin."""

    page_index: int
    x: float
    y_from_bottom: float
    width: float
    height: float
    scale: float
    absolute_y: float
    clamped: bool = False


def resolve_placement(
    box: SignatureBox,
    preview_page_height: float,
    actual_page_height: float,
    total_pages: int,
) -> ResolvedPlacement:
    """Resolve which page a box lands on and where.

    Args:
        box: Authored box, ``y`` absolute at preview scale.
        preview_page_height: Page height the box was authored against.
        actual_page_height: Uniform page height of the rendered draft.
        total_pages: Number of pages in the rendered draft.

    Returns:
        The placement on the target page.

    Raises:
        ValueError: If a height is not positive or there are no pages.
    """
    if preview_page_height <= 0 or actual_page_height <= 0:
        raise ValueError("Page heights must be positive")
    if total_pages < 1:
        raise ValueError("Document has no pages")

    scale = actual_page_height / preview_page_height
    absolute_y = box.y * scale
    calculated = math.floor(absolute_y / actual_page_height)
    page_index = min(max(calculated, 0), total_pages - 1)
    clamped = page_index != calculated

    if clamped:
        logger.warning(
            "Box at y=%.1f lands on page %d but the draft has %d page(s); "
            "placing it on page %d",
            box.y, calculated + 1, total_pages, page_index + 1,
        )

    local_y = absolute_y - page_index * actual_page_height
    y_from_bottom = actual_page_height - local_y - box.height

    logger.debug(
        "stored_y=%s scale=%.4f absolute_y=%.2f page=%d local_y=%.2f",
        box.y, scale, absolute_y, page_index + 1, local_y,
    )

    return ResolvedPlacement(
        page_index=page_index,
        x=box.x,
        y_from_bottom=y_from_bottom,
        width=box.width,
        height=box.height,
        scale=scale,
        absolute_y=absolute_y,
        clamped=clamped,
    )
