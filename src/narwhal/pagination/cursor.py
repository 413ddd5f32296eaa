"""
Encrypted pagination cursors.

A page token is the base64url encoding of ``nonce || AES-256-GCM(contents)``
where contents is compact JSON ``{"o": offset, "s": page_size, "t": total,
"i": issued_at}``. Tokens are opaque to clients; any tampering fails GCM
authentication.

The key must be 32 bytes. Shorter keys are zero-padded and longer keys are
truncated (a warning is logged either way); deployments should supply an
exact 32-byte key.
"""

import base64
import binascii
import json
import os
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from loguru import logger

from ..errors import AppError, ErrorKind

KEY_SIZE = 32
NONCE_SIZE = 12
TAG_SIZE = 16
DEFAULT_CURSOR_TTL = timedelta(hours=24)
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 200


class CursorError(AppError):
    """Page token could not be decoded; maps to InvalidArgument."""

    def __init__(self, reason: str):
        super().__init__(ErrorKind.BAD_REQUEST, f"invalid page token: {reason}")
        self.reason = reason


@dataclass(frozen=True)
class CursorContents:
    """
    Decoded cursor.

    Attributes:
        offset: Index of the first item of the page
        page_size: Page size the cursor was issued for
        total: Total item count when the cursor was issued
        issued_at: Unix time the cursor was issued
    """
    offset: int
    page_size: int
    total: int
    issued_at: float


def normalize_key(key: Union[str, bytes]) -> bytes:
    """
    Coerce key material to exactly 32 bytes.

    Args:
        key: Raw key (str is UTF-8 encoded)

    Returns:
        32-byte key
    """
    raw = key.encode("utf-8") if isinstance(key, str) else bytes(key)
    if len(raw) != KEY_SIZE:
        logger.warning(
            f"Cursor encryption key is {len(raw)} bytes, expected {KEY_SIZE}; "
            f"{'padding with zeros' if len(raw) < KEY_SIZE else 'truncating'}"
        )
    return raw[:KEY_SIZE].ljust(KEY_SIZE, b"\x00")


class CursorCodec:
    """
    Encodes and decodes page tokens.

    Stateless after construction and safe to share between requests.
    """

    def __init__(
        self,
        key: Union[str, bytes, None],
        ttl: timedelta = DEFAULT_CURSOR_TTL,
        default_page_size: int = DEFAULT_PAGE_SIZE,
        max_page_size: int = MAX_PAGE_SIZE,
    ):
        """
        Initialize codec.

        Args:
            key: Encryption key; an empty key is replaced by a random
                per-process key, so tokens do not survive a restart
            ttl: Maximum token age
            default_page_size: Page size used when the request gives none
            max_page_size: Upper bound for requested page sizes
        """
        if not key:
            logger.warning("No cursor encryption key configured; using a random per-process key")
            key = os.urandom(KEY_SIZE)
        if default_page_size <= 0 or max_page_size < default_page_size:
            raise ValueError("invalid page size limits")

        self._aead = AESGCM(normalize_key(key))
        self.ttl = ttl
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def encode(self, offset: int, page_size: int, total: int, issued_at: Optional[float] = None) -> str:
        """
        Seal cursor contents into a page token.

        Returns:
            URL-safe base64 token
        """
        if offset < 0 or page_size <= 0 or total < 0:
            raise ValueError("cursor fields out of range")

        contents = {
            "o": offset,
            "s": page_size,
            "t": total,
            "i": time.time() if issued_at is None else issued_at,
        }
        plaintext = json.dumps(contents, separators=(",", ":")).encode("utf-8")
        nonce = os.urandom(NONCE_SIZE)
        sealed = nonce + self._aead.encrypt(nonce, plaintext, None)
        return base64.urlsafe_b64encode(sealed).decode("ascii")

    def decode(self, token: str) -> CursorContents:
        """
        Open and validate a page token.

        Raises:
            CursorError: Malformed base64, short ciphertext, failed
                authentication, expired, or out-of-range contents
        """
        try:
            sealed = base64.urlsafe_b64decode(_pad(token).encode("ascii"))
        except (binascii.Error, ValueError, UnicodeEncodeError):
            raise CursorError("malformed encoding")

        if len(sealed) < NONCE_SIZE + TAG_SIZE:
            raise CursorError("ciphertext too short")

        nonce, ciphertext = sealed[:NONCE_SIZE], sealed[NONCE_SIZE:]
        try:
            plaintext = self._aead.decrypt(nonce, ciphertext, None)
        except InvalidTag:
            raise CursorError("authentication failed")

        try:
            raw = json.loads(plaintext)
            contents = CursorContents(
                offset=int(raw["o"]),
                page_size=int(raw["s"]),
                total=int(raw["t"]),
                issued_at=float(raw["i"]),
            )
        except (ValueError, KeyError, TypeError):
            raise CursorError("malformed contents")

        if time.time() - contents.issued_at > self.ttl.total_seconds():
            raise CursorError("expired")
        if contents.offset < 0:
            raise CursorError("negative offset")
        if contents.page_size <= 0:
            raise CursorError("non-positive page size")
        if contents.offset > contents.total:
            raise CursorError("offset beyond total")

        return contents

    def calculate_offset(self, token: str, fallback: int = 0) -> int:
        """
        Offset encoded in ``token``.

        An empty token yields ``fallback``.

        Raises:
            CursorError: If a non-empty token does not decode
        """
        if not token:
            return fallback
        return self.decode(token).offset

    def offset_or_zero(self, token: str) -> int:
        """
        Offset for a request, resetting to 0 on any decode failure.

        Invalid tokens never fail the request; they restart enumeration.
        """
        try:
            return self.calculate_offset(token, 0)
        except CursorError as e:
            logger.warning(f"Invalid pagination token, restarting from offset 0: {e.reason}")
            return 0

    def next_page_token(self, current_offset: int, page_size: int, total: int) -> str:
        """Token for the following page, or "" when this page is the last."""
        next_offset = current_offset + page_size
        if next_offset >= total:
            return ""
        return self.encode(next_offset, page_size, total)

    def prev_page_token(self, current_offset: int, page_size: int, total: int) -> str:
        """Token for the preceding page, or "" on the first page."""
        if current_offset <= 0:
            return ""
        prev_offset = max(0, current_offset - page_size)
        return self.encode(prev_offset, page_size, max(total, prev_offset))

    def resolve_page_size(self, requested: int) -> int:
        """Apply the default for non-positive sizes and clamp to the maximum."""
        if requested <= 0:
            return self.default_page_size
        return min(requested, self.max_page_size)


def _pad(token: str) -> str:
    return token + "=" * (-len(token) % 4)
