#!/usr/bin/env python3
"""
Attachment metadata codec
=========================

WordPress stores ``_wp_attachment_metadata`` as PHP serialized data. Every
string carries its byte length (``s:15:"2024/03/foo.jpg";``), so a plain
SQL REPLACE on this column corrupts it. The only safe way to rename files
inside it is decode -> mutate -> encode, which is what this module does.

Decoding and encoding go through ``phpserialize``. Fields that are not
mutated come back out byte-for-byte: strings are kept with
``surrogateescape`` so any stored bytes survive, PHP objects round-trip
through ``phpobject`` and floats are re-rendered the way PHP prints them.
"""

import io
import math
import posixpath
import re
from typing import Any, Dict, List, Optional, Tuple

import phpserialize

CHARSET = 'utf-8'
ERRORS = 'surrogateescape'

WEBP_EXTENSION = '.webp'
WEBP_MIME_TYPE = 'image/webp'
LEGACY_MIME_TYPES = ('image/jpeg', 'image/png')
LEGACY_EXTENSIONS = ('.jpg', '.jpeg', '.png')

_LEGACY_SUFFIX = re.compile(r'\.(jpe?g|png)$', re.IGNORECASE)


class MalformedMetadata(Exception):
    """Raised when a serialized metadata value cannot be decoded."""


class PhpFloat(float):
    """Float that prints the way PHP's serialize() writes it."""

    def __str__(self):
        return php_float_repr(self)

    __repr__ = __str__


def php_float_repr(value: float) -> str:
    """Render a float like PHP 7.1+ serialize() (serialize_precision=-1)"""
    if math.isnan(value):
        return 'NAN'
    if math.isinf(value):
        return 'INF' if value > 0 else '-INF'

    text = repr(float(value))
    if 'e' in text:
        mantissa, exponent = text.split('e')
        if '.' not in mantissa:
            mantissa += '.0'
        sign = '-' if exponent.startswith('-') else '+'
        digits = exponent.lstrip('+-').lstrip('0') or '0'
        return f"{mantissa}E{sign}{digits}"
    if text.endswith('.0'):
        return text[:-2]
    return text


def _wrap_floats(value):
    if isinstance(value, float) and not isinstance(value, PhpFloat):
        return PhpFloat(value)
    if isinstance(value, dict):
        for key in value:
            value[key] = _wrap_floats(value[key])
    elif isinstance(value, phpserialize.phpobject):
        _wrap_floats(value.__php_vars__)
    return value


def decode(raw) -> Any:
    """Decode a serialized value; raises MalformedMetadata on bad input"""
    if raw is None:
        raise MalformedMetadata("empty metadata")
    data = raw.encode(CHARSET, ERRORS) if isinstance(raw, str) else bytes(raw)
    if not data:
        raise MalformedMetadata("empty metadata")

    stream = io.BytesIO(data)
    try:
        value = phpserialize.load(
            stream,
            charset=CHARSET,
            errors=ERRORS,
            decode_strings=True,
            object_hook=phpserialize.phpobject,
        )
    except (ValueError, TypeError, IndexError, KeyError, UnicodeError) as e:
        raise MalformedMetadata(f"cannot unserialize metadata: {e}") from e

    trailing = stream.read()
    if trailing:
        raise MalformedMetadata(f"{len(trailing)} unexpected trailing bytes")

    return _wrap_floats(value)


def encode(value: Any) -> str:
    """Serialize a decoded value back to the text stored in the column"""
    data = phpserialize.dumps(_wrap_floats(value), charset=CHARSET, errors=ERRORS)
    return data.decode(CHARSET, ERRORS)


def decode_attachment_metadata(raw) -> Dict:
    """Decode metadata that must be a PHP array (a dict once decoded)"""
    metadata = decode(raw)
    if not isinstance(metadata, dict):
        raise MalformedMetadata(f"expected array, got {type(metadata).__name__}")
    return metadata


def to_webp_name(name: str) -> str:
    """Swap a .jpg/.jpeg/.png suffix for .webp; other names are returned as-is"""
    return _LEGACY_SUFFIX.sub(WEBP_EXTENSION, name)


def is_legacy_image(name: str) -> bool:
    return bool(_LEGACY_SUFFIX.search(name))


def join_relative(directory: str, basename: str) -> str:
    """Join an uploads-relative directory and a basename ('' means root)"""
    if directory in ('', '.'):
        return basename
    return posixpath.join(directory, basename)


def variant_files(metadata: Optional[Dict]) -> List[str]:
    """Variant basenames recorded under metadata['sizes'], in stored order"""
    if not isinstance(metadata, dict):
        return []
    sizes = metadata.get('sizes')
    if not isinstance(sizes, dict):
        return []

    files = []
    for size_data in sizes.values():
        if isinstance(size_data, dict) and isinstance(size_data.get('file'), str):
            files.append(size_data['file'])
    return files


def rewrite_attachment_metadata(metadata: Dict, new_path: str, width: int = 0,
                                height: int = 0) -> List[Tuple[str, str]]:
    """Point a decoded metadata dict at the converted files.

    Mutates ``metadata`` in place: the main ``file``, ``width``/``height``
    when both are positive, and every variant's ``file`` and
    ``mime-type``. Nothing else is touched.

    Returns the (old, new) basename pairs of renamed variants, in the
    order they appear under ``sizes``, without duplicates.
    """
    if 'file' in metadata:
        metadata['file'] = new_path

    if width > 0 and height > 0:
        metadata['width'] = width
        metadata['height'] = height

    renamed = []
    seen = set()
    sizes = metadata.get('sizes')
    if not isinstance(sizes, dict):
        return renamed

    for size_data in sizes.values():
        if not isinstance(size_data, dict):
            continue
        old_file = size_data.get('file')
        if isinstance(old_file, str):
            new_file = to_webp_name(old_file)
            size_data['file'] = new_file
            if new_file != old_file and old_file not in seen:
                seen.add(old_file)
                renamed.append((old_file, new_file))
        if 'mime-type' in size_data:
            size_data['mime-type'] = WEBP_MIME_TYPE

    return renamed
