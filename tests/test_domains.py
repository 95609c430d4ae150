from __future__ import annotations

import pytest

from jobworker.domains import assert_allowed_domain, host_is_allowed, parse_allow_domains
from jobworker.errors import InvalidFieldError


def test_parse_allow_domains_trims_lowercases_and_dedupes() -> None:
    assert parse_allow_domains(" Example.com, .sub.test ,example.com,, ") == ("example.com", "sub.test")
    assert parse_allow_domains("") == ()
    assert parse_allow_domains(None) == ()


@pytest.mark.parametrize(
    "url",
    ["https://example.com/x", "https://sub.example.com/x", "http://EXAMPLE.com:8080/path?q=1"],
)
def test_allowlist_permits_exact_and_subdomains(url: str) -> None:
    assert_allowed_domain(url, ("example.com",), "actions[0].url")


@pytest.mark.parametrize("url", ["https://notexample.com/x", "https://example.com.evil.net/x"])
def test_allowlist_rejects_lookalike_hosts(url: str) -> None:
    with pytest.raises(InvalidFieldError) as excinfo:
        assert_allowed_domain(url, ("example.com",), "actions[0].url")
    assert excinfo.value.reason == "domain_not_allowed"
    assert excinfo.value.details == {"field": "actions[0].url", "kind": "InvalidField", "reason": "domain_not_allowed"}


def test_empty_allowlist_permits_anything() -> None:
    assert_allowed_domain("https://anything.invalid/", (), "url")


def test_malformed_url_is_distinct_from_blocked_domain() -> None:
    with pytest.raises(InvalidFieldError) as excinfo:
        assert_allowed_domain("https:///no-host", ("example.com",), "url")
    assert excinfo.value.reason == "malformed_url"
    assert excinfo.value.status_code == 400


def test_host_is_allowed_ignores_trailing_dot() -> None:
    assert host_is_allowed("www.example.com.", ("example.com",))
    assert not host_is_allowed("example.org", ("example.com",))
