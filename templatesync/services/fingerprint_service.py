"""Content fingerprints that ignore cosmetic noise.

Text is normalized before hashing (line endings unified to ``\\n``, trailing
whitespace stripped per line, leading UTF-8 byte-order mark dropped), so a
file re-saved by an editor with CRLF endings keeps its fingerprint. Binary
content is hashed as-is.
"""

from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING

from templatesync.exceptions import FingerprintError

if TYPE_CHECKING:
    from pathlib import Path

ALGORITHM = "sha256"
UTF8_BOM = b"\xef\xbb\xbf"

_LINE_BREAK_RE = re.compile(r"\r\n|\r")
_BINARY_SNIFF_BYTES = 8192


@dataclass(frozen=True)
class Fingerprint:
    """Algorithm identifier plus hex digest of normalized content."""

    algorithm: str
    digest: str

    def __str__(self) -> str:
        return f"{self.algorithm}:{self.digest}"

    @classmethod
    def parse(cls, value: str) -> Fingerprint:
        """Parse the ``algorithm:digest`` string form."""
        algorithm, sep, digest = value.partition(":")
        if not sep or not algorithm or not digest:
            raise ValueError(f"Invalid fingerprint: {value!r}")
        return cls(algorithm=algorithm, digest=digest)


# Stand-in for files that exist but cannot be read. Never equal to a real
# fingerprint, so such files always count as changed.
UNREADABLE = Fingerprint(algorithm="unreadable", digest="-")


def is_binary(content: bytes) -> bool:
    """Return True when content cannot be treated as UTF-8 text."""
    if b"\x00" in content[:_BINARY_SNIFF_BYTES]:
        return True
    try:
        content.decode("utf-8")
    except UnicodeDecodeError:
        return True
    return False


def decode_text(content: bytes) -> str:
    """Decode UTF-8 content, dropping a leading byte-order mark.

    Raises UnicodeDecodeError for non-UTF-8 input.
    """
    if content.startswith(UTF8_BOM):
        content = content[len(UTF8_BOM) :]
    return content.decode("utf-8")


def normalize_text(text: str) -> str:
    """Canonicalize text: BOM removed, ``\\n`` line endings, no trailing whitespace."""
    text = text.lstrip("\ufeff")
    text = _LINE_BREAK_RE.sub("\n", text)
    return "\n".join(line.rstrip() for line in text.split("\n"))


def _digest(payload: bytes) -> Fingerprint:
    return Fingerprint(algorithm=ALGORITHM, digest=hashlib.sha256(payload).hexdigest())


def fingerprint_text(text: str) -> Fingerprint:
    """Fingerprint already-decoded text."""
    return _digest(normalize_text(text).encode("utf-8"))


def fingerprint_bytes(content: bytes) -> Fingerprint:
    """Fingerprint raw file content, normalizing it when it is text."""
    if is_binary(content):
        return _digest(content)
    return fingerprint_text(decode_text(content))


def fingerprint_file(path: Path) -> Fingerprint:
    """Fingerprint a file on disk.

    Raises FingerprintError when the file cannot be read (missing, locked,
    permission denied); the caller decides whether that fails open or closed.
    """
    try:
        content = path.read_bytes()
    except OSError as exc:
        raise FingerprintError(path, exc.strerror or str(exc)) from exc
    return fingerprint_bytes(content)
