"""
Comparison keys for album/artist names.

Keys are only ever compared, never displayed or stored: the original
strings remain the source of truth.
"""
from __future__ import annotations

import logging
from typing import Any

from opencc import OpenCC

logger = logging.getLogger(__name__)

MAX_FOLD_PASSES = 4

_converter: OpenCC | None = None


def _get_converter() -> OpenCC:
    global _converter
    if _converter is None:
        _converter = OpenCC("t2s")
    return _converter


def fold_whitespace(text: str) -> str:
    return " ".join(text.split())


def normalize_text(text: Any) -> str:
    """
    Trim, collapse whitespace, lowercase, fold Traditional to Simplified.

    Never raises: if the script fold fails the trim+lowercase form is returned.
    """
    if text is None:
        return ""
    base = fold_whitespace(str(text)).lower()
    if not base:
        return ""
    try:
        return _fold_script(base)
    except Exception as e:
        logger.warning(f"[Normalize] script fold failed for {base!r}: {e!r}")
        return base


def _fold_script(text: str) -> str:
    # t2s converts by phrase; one pass can leave characters a second pass folds (乾紅 -> 乾红 -> 干红)
    converter = _get_converter()
    for _ in range(MAX_FOLD_PASSES):
        folded = converter.convert(text)
        if folded == text:
            break
        text = folded
    return text
