"""Small domain utilities."""

from .highlight import build_highlights, highlight_substring, highlight_terms
from .sequence import SequenceGenerator

__all__ = ["SequenceGenerator", "build_highlights", "highlight_substring", "highlight_terms"]
