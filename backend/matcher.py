# matcher.py
import hashlib
import re
from dataclasses import dataclass
from typing import Iterator, Mapping, Optional

_EDGE_PUNCT = re.compile(r"^[^A-Za-z0-9]+|[^A-Za-z0-9]+$")


@dataclass(frozen=True)
class CodeMatch:
    fingerprint: str
    index: int


def fingerprint(plaintext: str) -> str:
    """SHA-256 hex digest of the trimmed code. Case sensitive."""
    return hashlib.sha256(plaintext.strip().encode("utf-8")).hexdigest()


def tokens(content: str) -> Iterator[str]:
    """Whitespace tokens with leading/trailing non-alphanumerics stripped, empties skipped."""
    for raw in (content or "").split():
        token = _EDGE_PUNCT.sub("", raw)
        if token:
            yield token


def match(content: str, unused: Mapping[str, int]) -> Optional[CodeMatch]:
    """Return the first token (left to right) whose fingerprint is an unused code.

    `unused` maps fingerprint -> ledger index for entries with used=False.
    """
    if not unused:
        return None
    for token in tokens(content):
        fp = fingerprint(token)
        idx = unused.get(fp)
        if idx is not None:
            return CodeMatch(fingerprint=fp, index=idx)
    return None
