"""
Highlight fragments for search hits.

The index engine marks whole terms it matched (exact or fuzzy expansions);
the relational fallback marks the literal substring it matched. Both return
the same shape: field name -> fragments with matches wrapped in tags.
"""

import re
from typing import Callable, Dict, Iterable, Mapping, Optional, Set, Tuple

from ..value_objects import HIGHLIGHT_FIELDS, HIGHLIGHT_POST_TAG, HIGHLIGHT_PRE_TAG

_WORD = re.compile(r"\w+")


def highlight_terms(
    text: Optional[str],
    terms: Set[str],
    pre_tag: str = HIGHLIGHT_PRE_TAG,
    post_tag: str = HIGHLIGHT_POST_TAG,
) -> Optional[str]:
    """
    Wrap every word of ``text`` whose lowercase form is in ``terms``.

    Returns:
        The marked-up text, or None when no word matched
    """
    if not text or not terms:
        return None

    matched = False

    def wrap(match: re.Match) -> str:
        nonlocal matched
        word = match.group(0)
        if word.lower() in terms:
            matched = True
            return f"{pre_tag}{word}{post_tag}"
        return word

    marked = _WORD.sub(wrap, text)
    return marked if matched else None


def highlight_substring(
    text: Optional[str],
    needle: str,
    pre_tag: str = HIGHLIGHT_PRE_TAG,
    post_tag: str = HIGHLIGHT_POST_TAG,
) -> Optional[str]:
    """Wrap every case-insensitive occurrence of ``needle`` in ``text``."""
    needle = needle.strip()
    if not text or not needle:
        return None
    pattern = re.compile(re.escape(needle), re.IGNORECASE)
    if not pattern.search(text):
        return None
    return pattern.sub(lambda m: f"{pre_tag}{m.group(0)}{post_tag}", text)


def build_highlights(
    fields: Mapping[str, Optional[str]],
    marker: Callable[[Optional[str]], Optional[str]],
    names: Iterable[str] = HIGHLIGHT_FIELDS,
) -> Dict[str, Tuple[str, ...]]:
    """Apply ``marker`` to each highlightable field, keeping the ones that matched."""
    highlights: Dict[str, Tuple[str, ...]] = {}
    for name in names:
        marked = marker(fields.get(name))
        if marked is not None:
            highlights[name] = (marked,)
    return highlights
