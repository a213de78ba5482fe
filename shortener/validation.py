"""Target URL validation shared by the create and update paths."""

from urllib.parse import urlsplit

__all__ = ["is_valid_url"]


def is_valid_url(value: str | None) -> bool:
    """Return True when ``value`` is an absolute URL with a scheme and a host.

    Any scheme is accepted, so app deep links such as ``myapp://open/page``
    can be shortened too.
    """
    if not value or not isinstance(value, str):
        return False

    try:
        parts = urlsplit(value)
        hostname = parts.hostname
    except ValueError:
        return False

    return bool(parts.scheme) and bool(hostname)
