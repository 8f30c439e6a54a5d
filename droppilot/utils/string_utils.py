"""String and sequence helpers."""

from __future__ import annotations

import random
import string
from collections import abc
from typing import TypeVar


CHARS_ASCII = string.ascii_letters + string.digits
CHARS_HEX_LOWER = string.digits + "abcdef"

_T = TypeVar("_T")


def create_nonce(chars: str, length: int) -> str:
    return "".join(random.choices(chars, k=length))


def chunk(to_chunk: abc.Iterable[_T], chunk_length: int) -> abc.Generator[list[_T], None, None]:
    """Split an iterable into lists of at most `chunk_length` items."""
    list_to_chunk: list[_T] = list(to_chunk)
    for i in range(0, len(list_to_chunk), chunk_length):
        yield list_to_chunk[i : i + chunk_length]


def deduplicate(iterable: abc.Iterable[_T]) -> list[_T]:
    """Remove duplicates, keeping the first-seen order."""
    return list(dict.fromkeys(iterable))
