"""Width-bounded thumbnails for cover images."""

import logging
from pathlib import Path

from PIL import Image, ImageOps

logger = logging.getLogger(__name__)

THUMBNAIL_WIDTH = 150


def make_thumbnail(source: Path, dest: Path, width: int = THUMBNAIL_WIDTH) -> Path:
    """Write an upright copy of ``source`` no wider than ``width`` pixels.

    Images already narrower than ``width`` are only re-oriented.

    Args:
        source: Cover image path
        dest: Output path; the format follows its extension
        width: Maximum width in pixels

    Returns:
        The ``dest`` path
    """
    with Image.open(source) as image:
        upright = ImageOps.exif_transpose(image)
        if upright.width > width:
            height = max(1, round(upright.height * width / upright.width))
            upright = upright.resize((width, height), Image.LANCZOS)
        if upright.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            upright = upright.convert("RGB")
        upright.save(dest)
    logger.debug(f"Thumbnail {dest} from {source}")
    return Path(dest)
