# domains.py
from __future__ import annotations

from urllib.parse import urlsplit

from models import CSPReportError


class InvalidURI(CSPReportError):
    pass


class InvalidHostname(CSPReportError):
    pass


_FORBIDDEN_KEY_CHARS = {"/", "\\", "\x00"}


def _hostname(uri: str) -> str:
    """
    Host part of a URI, without userinfo or port.

    urlsplit().hostname lowercases; the root domain keeps the case the
    browser sent, so the netloc is taken apart by hand.
    """
    try:
        parts = urlsplit(uri)
        # .port validates the port and bracketed IPv6 literals
        _ = parts.port
    except ValueError as e:
        raise InvalidURI(str(e)) from e

    host = parts.netloc.rpartition("@")[2]
    if host.startswith("["):
        return host[1:].partition("]")[0]
    return host.partition(":")[0]


def extract_root_domain(uri: str) -> str:
    """Last two dot-separated labels of the URI's hostname (`a.b.example.com` -> `example.com`)."""
    labels = _hostname(uri).split(".")
    if len(labels) < 2:
        raise InvalidHostname(f"hostname has fewer than two labels: {uri[:200]!r}")

    root = ".".join(labels[-2:])
    # the root domain names files on disk
    if not is_valid_root_domain(root):
        raise InvalidHostname(f"hostname is not usable as a root domain: {uri[:200]!r}")
    return root


def blocked_host(uri: str) -> str:
    # keyword values ("inline", "eval", "data") have no host and yield ""
    return _hostname(uri)


def is_valid_root_domain(name: str | None) -> bool:
    if not name:
        return False
    if any(c in name for c in _FORBIDDEN_KEY_CHARS):
        return False
    labels = name.split(".")
    return len(labels) >= 2 and all(labels)
