"""Typed errors raised by the URL shortening service and its repositories."""

__all__ = [
    "ShortenerError",
    "InvalidURLError",
    "CodeAlreadyExistsError",
    "URLNotFoundError",
    "ExpiredURLError",
    "CodeGenerationExhaustedError",
    "DuplicateShortCodeError",
]


class ShortenerError(Exception):
    """Base class for errors surfaced to callers of the service layer."""


class InvalidURLError(ShortenerError):
    """Raised when the target URL is not an absolute URL with scheme and host."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Invalid URL provided: {url!r}")
        self.url = url


class CodeAlreadyExistsError(ShortenerError):
    """Raised when a custom short code is already taken."""

    def __init__(self, short_code: str) -> None:
        super().__init__(f"Custom code '{short_code}' is already taken")
        self.short_code = short_code


class URLNotFoundError(ShortenerError):
    """Raised when no record exists for a short code."""

    def __init__(self, short_code: str) -> None:
        super().__init__(f"Short URL '{short_code}' not found")
        self.short_code = short_code


class ExpiredURLError(ShortenerError):
    """Raised when a record exists but its expiry has passed."""

    def __init__(self, short_code: str) -> None:
        super().__init__(f"Short URL '{short_code}' has expired")
        self.short_code = short_code


class CodeGenerationExhaustedError(ShortenerError):
    """Raised when every generated candidate collided with an existing code."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"Could not allocate a unique short code after {attempts} attempts")
        self.attempts = attempts


class DuplicateShortCodeError(Exception):
    """Raised by a URL store when an insert violates short code uniqueness."""

    def __init__(self, short_code: str) -> None:
        super().__init__(f"Short code '{short_code}' violates uniqueness")
        self.short_code = short_code
