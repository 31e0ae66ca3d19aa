"""Tests for text and URL normalization helpers."""

from newswire.text import (
    compute_fingerprint,
    extract_domain,
    extract_host,
    normalize_text,
    normalize_url,
    strip_html,
)


def test_strip_html():
    assert strip_html("<p>Hello&nbsp;<b>world</b></p>\n\n") == "Hello world"
    assert strip_html("") == ""


def test_normalize_text():
    assert normalize_text("  Breaking: Fed RAISES rates!  ") == "breaking fed raises rates"
    assert normalize_text(None) == ""


def test_normalize_url():
    assert normalize_url("https://www.Example.com/news/story/?utm_source=x#top") == "example.com/news/story"
    assert normalize_url("http://example.com/news/story") == "example.com/news/story"
    assert normalize_url("") == ""


def test_extract_host():
    assert extract_host("https://www.bbc.co.uk/news") == "bbc.co.uk"
    assert extract_host("edition.cnn.com/world") == "edition.cnn.com"
    assert extract_host(None) == ""


def test_extract_domain():
    assert extract_domain("https://edition.cnn.com/2026/world") == "cnn.com"
    assert extract_domain("https://www.bbc.co.uk/news") == "bbc.co.uk"
    assert extract_domain("http://localhost:8000/feed") == "localhost"
    assert extract_domain("") == ""


def test_fingerprint_ignores_case_and_tracking():
    a = compute_fingerprint("Big News", "https://www.example.com/story?ref=rss")
    b = compute_fingerprint("big news ", "http://example.com/story/")
    assert a == b
    assert a != compute_fingerprint("Other News", "https://example.com/story")
