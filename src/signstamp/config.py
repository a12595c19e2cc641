"""Configuration for signstamp.

Settings live in ``config.json`` inside the data directory (``~/.signstamp``
unless ``SIGNSTAMP_HOME`` or ``--data-dir`` says otherwise). Every key is
optional.
"""

import json
import logging
import os
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("signstamp.config")

DEFAULT_SIGNSTAMP_DIR = Path.home() / ".signstamp"
CONFIG_FILENAME = "config.json"


class StampConfig(BaseModel):
    """Engine and rendering settings.

    Attributes:
        data_dir: Root directory for documents, blobs and records.
        default_page_height: Preview page height assumed when none is recorded.
        caption_line_height: Vertical space reserved per caption line.
        label_font_size: Font size of the signatory label caption.
        caption_font_size: Font size of the signer name and date captions.
        caption_font: Built-in PDF font used for captions.
        date_format: strftime format for the date caption.
        display_timezone: IANA zone the date caption is shown in.
        font_dirs: Directories searched for styled-signature fonts.
        page_height_tolerance: Allowed drift between page heights, in points.
        preview_on_sign: Re-render a partially stamped draft after each signature.
    """

    data_dir: Path = DEFAULT_SIGNSTAMP_DIR
    default_page_height: float = 792.0
    caption_line_height: float = 12.0
    label_font_size: int = 8
    caption_font_size: int = 7
    caption_font: str = "Helvetica"
    date_format: str = "%d/%m/%Y %H:%M"
    display_timezone: str = "UTC"
    font_dirs: list[Path] = Field(
        default_factory=lambda: [
            Path("/usr/share/fonts/truetype/google-fonts"),
            Path("/usr/share/fonts/truetype"),
            Path("/Library/Fonts"),
            Path.home() / "Library" / "Fonts",
        ]
    )
    page_height_tolerance: float = 0.5
    preview_on_sign: bool = False

    model_config = {"extra": "forbid"}


def resolve_data_dir(data_dir: Optional[Path] = None) -> Path:
    """Pick the data directory: explicit argument, then env var, then default."""
    if data_dir is not None:
        return Path(data_dir)
    env = os.environ.get("SIGNSTAMP_HOME")
    if env:
        return Path(env)
    return DEFAULT_SIGNSTAMP_DIR


def load_config(data_dir: Optional[Path] = None) -> StampConfig:
    """Load settings from ``<data_dir>/config.json``.

    Args:
        data_dir: Data directory. Resolved with ``resolve_data_dir``.

    Returns:
        The validated config. Defaults when the file does not exist.

    Raises:
        pydantic.ValidationError: If the file has unknown or invalid keys.
    """
    base = resolve_data_dir(data_dir)
    path = base / CONFIG_FILENAME
    data: dict = {}
    if path.exists():
        data = json.loads(path.read_text(encoding="utf-8"))
        logger.debug("Loaded config from %s", path)
    data["data_dir"] = base
    return StampConfig.model_validate(data)
