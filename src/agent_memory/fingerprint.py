"""Text canonicalization and content fingerprints used for deduplication."""

import hashlib
import re
from typing import Optional

_WHITESPACE_COLLAPSE_RE = re.compile(r"\s+")

FIELD_SEPARATOR = "|"


def normalize(text: Optional[str]) -> str:
    """Lowercase, collapse whitespace runs to one space, trim."""
    if not text:
        return ""
    return _WHITESPACE_COLLAPSE_RE.sub(" ", text.lower()).strip()


def fingerprint(context: Optional[str], action: Optional[str], result: Optional[str]) -> str:
    """SHA-256 hex digest of the normalized ``context|action|result`` string."""
    joined = FIELD_SEPARATOR.join((context or "", action or "", result or ""))
    return hashlib.sha256(normalize(joined).encode("utf-8")).hexdigest()
