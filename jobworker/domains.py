"""Domain allowlist helpers used for navigation and download targets."""

from __future__ import annotations

from typing import Iterable
from urllib.parse import urlsplit

from jobworker.errors import InvalidFieldError

__all__ = ["parse_allow_domains", "normalize_allow_domains", "host_is_allowed", "assert_allowed_domain"]


def parse_allow_domains(raw: str | None) -> tuple[str, ...]:
    """Split a comma-separated env value into a deduplicated, lower-cased tuple."""

    if not raw or not raw.strip():
        return tuple()
    return normalize_allow_domains(raw.split(","))


def normalize_allow_domains(domains: Iterable[str]) -> tuple[str, ...]:
    # Preserve order while deduplicating
    deduped: dict[str, None] = {}
    for entry in domains:
        cleaned = entry.strip().lower().lstrip(".")
        if cleaned:
            deduped[cleaned] = None
    return tuple(deduped.keys())


def host_is_allowed(host: str, allow_domains: Iterable[str]) -> bool:
    host = host.lower().rstrip(".")
    return any(host == domain or host.endswith(f".{domain}") for domain in allow_domains)


def assert_allowed_domain(url: str, allow_domains: Iterable[str], field: str) -> None:
    """Raise :class:`InvalidFieldError` unless ``url`` targets an allowed host.

    An empty allowlist disables the restriction entirely.
    """

    domains = tuple(allow_domains)
    if not domains:
        return

    try:
        host = urlsplit(url).hostname
    except ValueError:
        host = None
    if not host:
        raise InvalidFieldError(field, f'Field "{field}" must contain a valid URL.', reason="malformed_url")

    if not host_is_allowed(host, domains):
        raise InvalidFieldError(
            field,
            f'Domain blocked in "{field}". Allowed: {", ".join(domains)}',
            reason="domain_not_allowed",
        )
