"""
Turns free-text titles and ids into filesystem-safe basenames.

All functions here are pure; the clock used for the placeholder name is
injectable so results are deterministic under test.
"""

import re
import time
import unicodedata
from typing import Callable, Optional

from .constants import MAX_BASENAME_LENGTH, MAX_SEGMENT_LENGTH

INVALID_FILENAME_CHARS = re.compile(r'[\\/:*?"<>|]')
CONTROL_CHARS = re.compile(r'[\x00-\x1f\x7f]')
WHITESPACE_RUN = re.compile(r'\s+')
TRAILING_DOTS_SPACES = re.compile(r'[. ]+$')


def sanitize_filename_segment(value: Optional[str]) -> str:
    """
    Normalizes a single name segment so it is valid on common filesystems.

    NFKC composition runs first so full-width lookalikes (e.g. '：') fold into
    their ASCII forms and are then replaced like any other invalid character.

    Args:
        value: Arbitrary text, possibly None or empty.

    Returns:
        The cleaned segment, at most MAX_SEGMENT_LENGTH characters. May be empty.
    """
    if not value:
        return ''
    text = unicodedata.normalize('NFKC', str(value))
    text = CONTROL_CHARS.sub('', text)
    text = INVALID_FILENAME_CHARS.sub(' ', text)
    text = WHITESPACE_RUN.sub(' ', text)
    text = TRAILING_DOTS_SPACES.sub('', text).strip()
    text = text[:MAX_SEGMENT_LENGTH]
    # The cut may expose a trailing dot or space again.
    return TRAILING_DOTS_SPACES.sub('', text).strip()


def build_cache_basename(title: Optional[str] = None, id: Optional[str] = None,
                         fallback_prefix: str = 'entry',
                         clock: Callable[[], float] = time.time) -> str:
    """
    Combines a title and id into a cache basename (without extension).

    Returns `"{title} [{id}]"` when both are present, the id alone when there is
    no title, and `"{fallback_prefix}_{epoch_ms}"` when both are empty. Only
    the title is shortened to fit MAX_BASENAME_LENGTH, so the id suffix stays whole.
    """
    safe_title = sanitize_filename_segment(title)
    safe_id = sanitize_filename_segment(id)
    if safe_id:
        suffix = f" [{safe_id}]"
        safe_title = TRAILING_DOTS_SPACES.sub('', safe_title[:MAX_BASENAME_LENGTH - len(suffix)]).strip()
        base = f"{safe_title}{suffix}" if safe_title else safe_id
    else:
        base = safe_title
    if not base:
        base = f"{fallback_prefix}_{int(clock() * 1000)}"
    return base[:MAX_BASENAME_LENGTH]
