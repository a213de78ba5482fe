"""Short code generation.

Codes are derived from a SHA-256 digest of the seed concatenated with a
nanosecond timestamp, encoded with the URL-safe base64 alphabet and
truncated. The same seed produces a different code at a different instant,
which is what the creation path relies on when it retries after a
collision.

How to Use
===========
::
    code = generate_short_code("https://example.com/page")
    assert len(code) == 7
"""

import base64
import hashlib
import time

from shortener.config import get_settings

__all__ = ["URL_SAFE_ALPHABET", "RESERVED_SHORT_CODES", "generate_short_code", "is_reserved_code"]

settings = get_settings()

URL_SAFE_ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"

# Paths served by fixed routes; a code equal to one of these could never redirect.
RESERVED_SHORT_CODES = frozenset({"api", "health", "metrics", "docs", "redoc", "openapi"})


def is_reserved_code(short_code: str) -> bool:
    return short_code.lower() in RESERVED_SHORT_CODES


def generate_short_code(seed: str, length: int = settings.SHORT_CODE_LENGTH) -> str:
    assert isinstance(seed, str), f"seed must be a string, got {type(seed).__name__}"
    assert isinstance(length, int) and 0 < length <= 43, f"length must be in 1..43, got {length!r}"

    digest = hashlib.sha256(f"{seed}{time.time_ns()}".encode("utf-8")).digest()
    # 32 bytes encode to 44 chars with one '=' pad, so 43 usable characters.
    encoded = base64.urlsafe_b64encode(digest).decode("ascii")
    return encoded[:length]
