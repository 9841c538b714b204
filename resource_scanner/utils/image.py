"""Image processing utilities for stored screenshots.

The browser always hands back PNG bytes.  ``png`` storage writes them
as-is; ``jpeg`` storage shrinks and recompresses them first, which
keeps a large crawl's screenshot directory manageable.
"""

from __future__ import annotations

import io
import pathlib

from PIL import Image

# Screenshots wider than this are scaled down before JPEG encoding.
_MAX_WIDTH = 1280
_JPEG_QUALITY = 72

_SUFFIXES = {"png": ".png", "jpeg": ".jpg"}


def optimize_png_to_jpeg(
    png_bytes: bytes,
    *,
    max_width: int = _MAX_WIDTH,
    quality: int = _JPEG_QUALITY,
) -> tuple[bytes, int, int]:
    """Re-encode a PNG screenshot as a (possibly narrower) RGB JPEG.

    Returns:
        Tuple of (jpeg_bytes, final_width, final_height).
    """
    with Image.open(io.BytesIO(png_bytes)) as source:
        width, height = source.size
        if width > max_width:
            width, height = max_width, int(height * max_width / width)
            frame = source.resize((width, height), Image.Resampling.LANCZOS)
        else:
            frame = source.copy()

    # JPEG has no alpha channel or palette.
    if frame.mode != "RGB":
        frame = frame.convert("RGB")

    out = io.BytesIO()
    frame.save(out, format="JPEG", quality=quality, optimize=True)
    return out.getvalue(), width, height


def save_screenshot(
    png_bytes: bytes,
    directory: pathlib.Path,
    name: str,
    image_format: str = "png",
) -> pathlib.Path:
    """Write a screenshot to ``directory/<name>.<ext>`` and return the path.

    The directory is created when missing.  *name* must already be
    filesystem-safe.
    """
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{name}{_SUFFIXES.get(image_format, '.png')}"
    if image_format == "jpeg":
        png_bytes, _, _ = optimize_png_to_jpeg(png_bytes)
    path.write_bytes(png_bytes)
    return path
