"""Text, URL and domain normalization shared by every stage."""

from __future__ import annotations

import hashlib
import re
from html import unescape
from re import sub as re_sub
from urllib.parse import urlparse

import tldextract

# Offline extractor: uses the public suffix snapshot bundled with tldextract.
_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())

_PUNCT = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")


def strip_html(text: str) -> str:
    """Remove HTML tags, unescape entities and collapse whitespace."""
    clean = re_sub(r"<[^>]+>", "", text or "")
    return _SPACES.sub(" ", unescape(clean)).strip()


def normalize_text(text: str | None) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    if not text:
        return ""
    lowered = _PUNCT.sub("", text.lower().strip())
    return _SPACES.sub(" ", lowered).strip()


def normalize_url(url: str | None) -> str:
    """Canonical form used for exact-duplicate checks.

    Drops the scheme, a leading ``www.``, the query string, the fragment and a
    trailing slash.
    """
    if not url:
        return ""
    u = url.strip().lower()
    u = re.sub(r"^https?://", "", u)
    u = re.sub(r"^www\.", "", u)
    u = u.split("#", 1)[0].split("?", 1)[0]
    return u.rstrip("/")


def extract_host(url: str | None) -> str:
    """Hostname without ``www.``; empty string for unparsable input."""
    if not url:
        return ""
    parsed = urlparse(url if "://" in url else f"http://{url}")
    host = (parsed.hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def extract_domain(url: str | None) -> str:
    """Registered domain (``edition.cnn.com`` -> ``cnn.com``).

    Hosts that are themselves a public suffix or a bare name (``gov.uk``,
    ``localhost``) are returned as-is.
    """
    host = extract_host(url)
    if not host:
        return ""
    extracted = _EXTRACT(host)
    if extracted.domain and extracted.suffix:
        return f"{extracted.domain}.{extracted.suffix}"
    return host


def compute_fingerprint(title: str | None, url: str | None) -> str:
    """Stable hash of lowercased title + normalized URL."""
    canonical = f"{(title or '').lower().strip()}||{normalize_url(url)}"
    return hashlib.sha256(canonical.encode()).hexdigest()[:32]
