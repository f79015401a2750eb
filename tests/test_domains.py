# tests/test_domains.py
import pytest

from domains import (
    InvalidHostname,
    InvalidURI,
    blocked_host,
    extract_root_domain,
    is_valid_root_domain,
)


@pytest.mark.parametrize(
    "uri, expected",
    [
        ("https://sub.example.com/page", "example.com"),
        ("https://a.b.example.com/", "example.com"),
        ("https://example.com", "example.com"),
        ("https://shop.example.com:8443/cart?x=1", "example.com"),
        ("https://user:pw@www.example.org/", "example.org"),
        # no case folding, no public-suffix awareness
        ("https://WWW.Example.COM/", "Example.COM"),
        ("https://foo.co.uk/", "co.uk"),
    ],
)
def test_extract_root_domain_last_two_labels(uri, expected):
    assert extract_root_domain(uri) == expected


@pytest.mark.parametrize(
    "uri",
    [
        "not a url",
        "",
        "https://localhost/",
        "about:blank",
        "https://example./",
        "https://./",
    ],
)
def test_extract_root_domain_rejects_short_hostnames(uri):
    with pytest.raises(InvalidHostname):
        extract_root_domain(uri)


@pytest.mark.parametrize("uri", ["http://[::1/x", "https://example.com:notaport/"])
def test_extract_root_domain_rejects_unparsable_uri(uri):
    with pytest.raises(InvalidURI):
        extract_root_domain(uri)


def test_blocked_host():
    assert blocked_host("https://cdn.bad.com/x.js") == "cdn.bad.com"
    assert blocked_host("https://cdn.bad.com:444/x.js") == "cdn.bad.com"
    # keyword sources have no host
    assert blocked_host("inline") == ""
    assert blocked_host("eval") == ""


def test_blocked_host_unparsable():
    with pytest.raises(InvalidURI):
        blocked_host("http://[::1/x")


@pytest.mark.parametrize("name", ["example.com", "a.b.example.com", "Example.COM"])
def test_valid_root_domain_keys(name):
    assert is_valid_root_domain(name)


@pytest.mark.parametrize(
    "name",
    [None, "", "localhost", ".com", "example..com", "../etc/passwd", "a/b.com", "a\\b.com", "x.com\x00"],
)
def test_invalid_root_domain_keys(name):
    assert not is_valid_root_domain(name)


@pytest.mark.parametrize("uri", ["https://a.ex\x00ample.com/", "https://www.exa\x00mple.org/x"])
def test_extract_root_domain_rejects_unsafe_file_keys(uri):
    with pytest.raises(InvalidHostname):
        extract_root_domain(uri)
