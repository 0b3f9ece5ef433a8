import re
from typing import List, Optional

from .models import ChunkJob

# Sentence endings are only looked for near the end of each window so that an
# early terminator does not produce a tiny chunk.
SENTENCE_SEARCH_SPAN = 500

_SENTENCE_END_RE = re.compile(r"[.!?](?=\s)")
_WHITESPACE_RE = re.compile(r"\s")


def _sentence_cut(text: str, start: int, end: int) -> Optional[int]:
    search_start = max(start, end - SENTENCE_SEARCH_SPAN)
    # One extra character so a terminator on the window's last position can
    # see the whitespace that follows it.
    lookahead = text[search_start:min(end + 1, len(text))]
    cut = None
    for match in _SENTENCE_END_RE.finditer(lookahead):
        candidate = search_start + match.end()
        if candidate <= end:
            cut = candidate
    if cut is None or cut <= start:
        return None
    return cut


def _word_cut(text: str, start: int, end: int) -> Optional[int]:
    if end < len(text) and text[end].isspace():
        return end
    window = text[start:end]
    last_space = None
    for match in _WHITESPACE_RE.finditer(window):
        last_space = match.start()
    if not last_space:
        return None
    return start + last_space


def split_text_into_chunks(text: str, max_chunk_chars: int) -> List[str]:
    """Split text into ordered chunks of at most ``max_chunk_chars`` characters.

    Cuts prefer the last sentence ending in the window, then the last word
    boundary, then a hard cut. Whitespace at cut points is dropped.
    """
    if max_chunk_chars < 1:
        raise ValueError("max_chunk_chars must be >= 1")

    if len(text) <= max_chunk_chars:
        return [text]

    chunks: List[str] = []
    position = 0
    length = len(text)

    while position < length:
        while position < length and text[position].isspace():
            position += 1
        if position >= length:
            break

        end = position + max_chunk_chars
        if end >= length:
            piece = text[position:].rstrip()
            if piece:
                chunks.append(piece)
            break

        cut = _sentence_cut(text, position, end)
        if cut is None:
            cut = _word_cut(text, position, end)
        if cut is None:
            cut = end

        piece = text[position:cut].rstrip()
        if piece:
            chunks.append(piece)
        position = cut

    return chunks


def build_chunk_jobs(text: str, max_chunk_chars: int) -> List[ChunkJob]:
    return [
        ChunkJob(index=index, text=chunk)
        for index, chunk in enumerate(split_text_into_chunks(text, max_chunk_chars))
    ]
