from __future__ import annotations

import pytest

from caddy_manager.caddyfile import CaddyfileSyntaxError, normalize_address, parse
from caddy_manager.caddyfile.templates import (
    PERFORMANCE_MARKER,
    SECURITY_SNIPPET,
    performance_directives,
    security_headers_snippet,
    site_block,
)

from conftest import SAMPLE_CADDYFILE


def test_round_trip_is_byte_identical() -> None:
    for text in (SAMPLE_CADDYFILE, "", "\n\n", "example.com {\n}", "a.com {\r\n\trespond ok\r\n}\r\n"):
        assert parse(text).serialize() == text


def test_blocks_are_classified() -> None:
    doc = parse(SAMPLE_CADDYFILE)
    assert doc.global_block() is not None
    assert doc.site_addresses() == ["example.com", "api.example.com", "api2.example.com"]
    assert doc.has_snippet("common")
    assert not doc.has_snippet("missing")


def test_braces_in_quotes_and_comments_do_not_change_extent() -> None:
    text = 'a.com {\n\trespond "}" 200\n\t# } not a close\n\theader X "{"\n}\nb.com {\n}\n'
    doc = parse(text)
    assert doc.site_addresses() == ["a.com", "b.com"]
    assert doc.sites()[0].text.endswith("}\n")


def test_unclosed_block_raises() -> None:
    with pytest.raises(CaddyfileSyntaxError):
        parse("a.com {\n\trespond ok\n")


def test_stray_close_brace_raises() -> None:
    with pytest.raises(CaddyfileSyntaxError):
        parse("}\n")


def test_normalize_address() -> None:
    assert normalize_address("HTTPS://Example.com:443/") == "example.com"
    assert normalize_address("http://example.com:80") == "example.com"
    assert normalize_address("example.com:8443") == "example.com:8443"


def test_find_site_ignores_scheme_and_case() -> None:
    doc = parse(SAMPLE_CADDYFILE)
    assert doc.has_site("https://EXAMPLE.com")
    assert doc.has_site("api2.example.com")
    assert not doc.has_site("other.example.com")


def test_append_site_adds_one_block_at_end() -> None:
    doc = parse(SAMPLE_CADDYFILE)
    doc.append_site(site_block("new.example.com", "127.0.0.1:3000", log_path="/var/log/caddy/caddy.log"))
    out = doc.serialize()
    assert out.startswith(SAMPLE_CADDYFILE)
    assert out.count("new.example.com {") == 1
    assert parse(out).site_addresses()[-1] == "new.example.com"


def test_append_duplicate_site_raises() -> None:
    doc = parse(SAMPLE_CADDYFILE)
    with pytest.raises(ValueError):
        doc.append_site(site_block("example.com", "127.0.0.1:1", log_path="/tmp/x.log"))


def test_remove_site_removes_whole_block_with_nested_braces() -> None:
    doc = parse(SAMPLE_CADDYFILE)
    doc.remove_site("example.com")
    out = doc.serialize()
    assert "reverse_proxy 127.0.0.1:8080" not in out
    assert "braces { in } quotes" not in out
    assert parse(out).site_addresses() == ["api.example.com", "api2.example.com"]


def test_remove_one_address_of_multi_address_block() -> None:
    doc = parse(SAMPLE_CADDYFILE)
    doc.remove_site("api.example.com")
    reparsed = parse(doc.serialize())
    assert reparsed.site_addresses() == ["example.com", "api2.example.com"]
    assert "reverse_proxy 127.0.0.1:9000" in doc.serialize()


def test_remove_missing_site_raises_key_error() -> None:
    with pytest.raises(KeyError):
        parse(SAMPLE_CADDYFILE).remove_site("nope.example.com")


def test_merge_global_into_existing_block() -> None:
    doc = parse(SAMPLE_CADDYFILE)
    doc.merge_global(performance_directives())
    out = doc.serialize()
    reparsed = parse(out)
    globals_ = [b for b in reparsed.blocks if b.kind == "global"]
    assert len(globals_) == 1
    assert "email ops@example.com" in globals_[0].text
    assert PERFORMANCE_MARKER in globals_[0].text
    assert reparsed.has_marker(PERFORMANCE_MARKER)


def test_merge_global_creates_block_when_missing() -> None:
    doc = parse("a.com {\n\trespond ok\n}\n")
    doc.merge_global(performance_directives())
    out = doc.serialize()
    assert out.startswith("{\n")
    assert parse(out).site_addresses() == ["a.com"]


def test_insert_snippet_and_import_into_sites() -> None:
    doc = parse(SAMPLE_CADDYFILE)
    doc.insert_after_global(security_headers_snippet())
    changed = doc.add_import_to_sites(SECURITY_SNIPPET)
    assert changed == 2
    reparsed = parse(doc.serialize())
    assert reparsed.has_snippet(SECURITY_SNIPPET)
    for block in reparsed.sites():
        assert f"import {SECURITY_SNIPPET}" in block.text
    assert doc.add_import_to_sites(SECURITY_SNIPPET) == 0


def test_security_headers_snippet_hides_server_header() -> None:
    snippet = security_headers_snippet()
    body = snippet.splitlines()
    assert body[0] == f"({SECURITY_SNIPPET}) {{"
    assert "\t\t-Server" in body
    assert '\t\tX-Content-Type-Options "nosniff"' in body
    assert parse(snippet).has_snippet(SECURITY_SNIPPET)
