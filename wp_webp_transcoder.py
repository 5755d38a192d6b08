#!/usr/bin/env python3
"""WebP transcoding with Pillow."""

import logging
from pathlib import Path
from typing import NamedTuple, Optional, Tuple

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)


class TranscodeFailure(Exception):
    """Raised when an image cannot be read or the WebP cannot be written."""


class ResizeBounds(NamedTuple):
    """Images wider or taller than max_* are shrunk to fit target_*."""

    max_width: int
    max_height: int
    target_width: int
    target_height: int


class TranscodeResult(NamedTuple):
    output_path: Path
    original_size: int
    new_size: int
    width: int
    height: int
    resized: bool

    @property
    def saved(self) -> int:
        return self.original_size - self.new_size

    @property
    def is_smaller(self) -> bool:
        return self.new_size < self.original_size


def webp_path_for(source: Path) -> Path:
    return source.with_suffix('.webp')


def fit_within(width: int, height: int, bounds: Optional[ResizeBounds]) -> Tuple[int, int]:
    """Target size for an image, preserving aspect ratio and never enlarging"""
    if bounds is None or width <= 0 or height <= 0:
        return width, height
    if width <= bounds.max_width and height <= bounds.max_height:
        return width, height

    ratio = min(bounds.target_width / width, bounds.target_height / height)
    if ratio >= 1:
        return width, height

    return max(1, int(round(width * ratio))), max(1, int(round(height * ratio)))


def _prepare_mode(img):
    if img.mode in ('RGB', 'RGBA'):
        return img
    if img.mode in ('LA', 'PA', 'RGBa', 'La') or (img.mode == 'P' and 'transparency' in img.info):
        return img.convert('RGBA')
    return img.convert('RGB')


def convert_to_webp(source, quality: int = 80, lossless: bool = False, method: int = 4,
                    resize: Optional[ResizeBounds] = None) -> TranscodeResult:
    """Write a WebP sibling of ``source``; neither the source nor an existing WebP is modified.

    A partially written output is removed before TranscodeFailure is raised.
    """
    source = Path(source)
    output_path = webp_path_for(source)
    if output_path == source:
        raise TranscodeFailure(f"{source} is already a WebP file")
    if output_path.exists():
        raise TranscodeFailure(f"{output_path.name} already exists, refusing to overwrite")
    if not 1 <= quality <= 100:
        raise TranscodeFailure(f"Invalid quality {quality} (must be 1-100)")

    try:
        original_size = source.stat().st_size
        with Image.open(source) as image:
            exif = image.info.get('exif')
            icc_profile = image.info.get('icc_profile')

            img = _prepare_mode(image)
            width, height = img.size
            new_width, new_height = fit_within(width, height, resize)
            resized = (new_width, new_height) != (width, height)
            if resized:
                img = img.resize((new_width, new_height), Image.Resampling.LANCZOS)
                logger.debug(f"Resized {source.name}: {width}x{height} -> {new_width}x{new_height}")

            save_kwargs = {
                'format': 'WEBP',
                'quality': quality,
                'lossless': lossless,
                'method': method,
            }
            if exif:
                save_kwargs['exif'] = exif
            if icc_profile:
                save_kwargs['icc_profile'] = icc_profile

            img.save(output_path, **save_kwargs)

        new_size = output_path.stat().st_size
    except (OSError, UnidentifiedImageError, ValueError, Image.DecompressionBombError) as e:
        if output_path.exists():
            output_path.unlink()
        logger.error(f"WebP conversion failed for {source}: {e}")
        raise TranscodeFailure(f"WebP conversion failed for {source.name}: {e}") from e
    except KeyboardInterrupt:
        output_path.unlink(missing_ok=True)
        raise

    return TranscodeResult(output_path, original_size, new_size, new_width, new_height, resized)
