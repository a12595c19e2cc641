"""Turn a signature record into PNG bytes.

Drawn records already hold a PNG. Styled records are typeset with Pillow
in the requested handwriting font and colour, then trimmed to the ink.
"""

import io
import logging
from pathlib import Path
from typing import Optional

from PIL import Image, ImageColor, ImageDraw, ImageFont

from .config import StampConfig
from .models import SignatureKind, SignatureRecord, StyledSignature

logger = logging.getLogger("signstamp.renderer")

FONT_FILES = {
    "Allura": "Allura-Regular.ttf",
    "Dancing Script": "DancingScript-Regular.ttf",
    "Great Vibes": "GreatVibes-Regular.ttf",
    "Pacifico": "Pacifico-Regular.ttf",
    "Sacramento": "Sacramento-Regular.ttf",
}

BORDER = 10


def find_font(font: str, font_dirs: list[Path]) -> Optional[Path]:
    """Locate the TrueType file for a signature font name."""
    filename = FONT_FILES.get(font, f"{font}.ttf")
    for d in font_dirs:
        candidate = Path(d).expanduser() / filename
        if candidate.exists():
            return candidate
    return None


def _load_font(spec: StyledSignature, config: StampConfig) -> ImageFont.FreeTypeFont:
    path = find_font(spec.font, config.font_dirs)
    if path is None:
        logger.warning("Font %r not found; using default font", spec.font)
        return ImageFont.load_default(size=spec.size)
    return ImageFont.truetype(str(path), spec.size)


def render_styled(spec: StyledSignature, config: StampConfig) -> bytes:
    """Typeset styled text onto a transparent PNG.

    Args:
        spec: Text, font, colour and size.
        config: Supplies the font search path.

    Returns:
        PNG bytes cropped to the text plus a small border.
    """
    font = _load_font(spec, config)
    color = ImageColor.getrgb(spec.color)

    measure = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
    left, top, right, bottom = measure.textbbox((0, 0), spec.text, font=font)
    width = max(int(right - left), 1) + 2 * BORDER
    height = max(int(bottom - top), 1) + 2 * BORDER

    img = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)
    draw.text((BORDER - left, BORDER - top), spec.text, font=font, fill=color)

    buf = io.BytesIO()
    img.save(buf, format="PNG")
    return buf.getvalue()


def render_signature(record: SignatureRecord, config: StampConfig) -> bytes:
    """Render a signature record to PNG bytes.

    Raises:
        ValueError: If the record lacks the data its kind needs or the
            drawn image cannot be decoded.
    """
    if record.kind == SignatureKind.DRAWN:
        data = record.image_bytes
        try:
            with Image.open(io.BytesIO(data)) as img:
                img.verify()
        except Exception as exc:
            raise ValueError(f"Signature {record.record_id} is not a valid image: {exc}") from exc
        return data

    if record.styled is None:
        raise ValueError(f"Styled signature {record.record_id} has no text")
    return render_styled(record.styled, config)
