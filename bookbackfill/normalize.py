import re
import unicodedata
from datetime import date
from typing import Iterable, Optional
from urllib.parse import urlparse

from bs4 import BeautifulSoup

SLUG_MAX_LENGTH = 100


def normalize_text(s: str) -> str:
    return " ".join(s.strip().split())


def clean_text(value: Optional[str]) -> Optional[str]:
    """Collapse whitespace; blank strings become None."""
    if value is None:
        return None
    cleaned = normalize_text(str(value))
    return cleaned or None


def strip_wrapping_quotes(value: Optional[str]) -> Optional[str]:
    """Remove one pair of surrounding double quotes, keeping internal ones."""
    value = clean_text(value)
    if value and len(value) >= 2 and value[0] == '"' and value[-1] == '"':
        value = clean_text(value[1:-1])
    return value


def html_to_text(value: Optional[str]) -> Optional[str]:
    """Provider descriptions arrive as HTML fragments; keep paragraphs, drop markup."""
    if not value:
        return None
    soup = BeautifulSoup(value, "html.parser")
    for br in soup.find_all("br"):
        br.replace_with("\n")
    for block in soup.find_all(["p", "div", "li"]):
        block.append("\n")
    paragraphs = [normalize_text(p) for p in soup.get_text().split("\n")]
    text = "\n".join(p for p in paragraphs if p)
    return text or None


def slugify(value: str) -> str:
    ascii_only = unicodedata.normalize("NFKD", value).encode("ascii", "ignore").decode("ascii")
    slug = re.sub(r"[^a-z0-9]+", "-", ascii_only.lower()).strip("-")
    return slug[:SLUG_MAX_LENGTH].rstrip("-")


def generate_slug_base(title: str, authors: Iterable[str] = ()) -> str:
    """Title slug followed by the first author's slug, e.g. ``the-hobbit-j-r-r-tolkien``."""
    parts = [slugify(title)]
    first_author = next((a for a in authors if a and a.strip()), None)
    if first_author:
        parts.append(slugify(first_author))
    slug = "-".join(p for p in parts if p)
    return slug[:SLUG_MAX_LENGTH].rstrip("-") or "book"


def normalize_isbn(value: Optional[str]) -> Optional[str]:
    """Strip separators; return a 10- or 13-character ISBN or None."""
    if not value:
        return None
    compact = re.sub(r"[^0-9Xx]", "", str(value)).upper()
    if len(compact) == 13 and compact.isdigit():
        return compact
    if len(compact) == 10 and compact[:9].isdigit() and (compact[9].isdigit() or compact[9] == "X"):
        return compact
    return None


def secure_url(url: Optional[str]) -> Optional[str]:
    """Upgrade http:// links to https://; drop anything that is not an absolute URL."""
    url = clean_text(url)
    if not url:
        return None
    if url.startswith("//"):
        url = "https:" + url
    elif url.startswith("http://"):
        url = "https://" + url[len("http://"):]
    parsed = urlparse(url)
    if parsed.scheme != "https" or not parsed.netloc:
        return None
    return url


_MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}


def parse_published_date(value: Optional[str]) -> Optional[date]:
    """
    Parse the date shapes providers emit.

    Accepts ``YYYY``, ``YYYY-MM``, ``YYYY-MM-DD`` and Open Library's
    ``Month D, YYYY`` / ``Month YYYY``; partial dates default to the first
    month/day.  Returns None for anything unparseable.
    """
    value = clean_text(value)
    if not value:
        return None

    m = re.fullmatch(r"(\d{4})(?:-(\d{1,2}))?(?:-(\d{1,2}))?", value)
    if m:
        year, month, day = int(m.group(1)), int(m.group(2) or 1), int(m.group(3) or 1)
    else:
        m = re.fullmatch(r"([A-Za-z]+)\.?\s+(?:(\d{1,2}),?\s+)?(\d{4})", value)
        if not m or m.group(1)[:3].lower() not in _MONTHS:
            return None
        year = int(m.group(3))
        month = _MONTHS[m.group(1)[:3].lower()]
        day = int(m.group(2) or 1)
    try:
        return date(year, month, day)
    except ValueError:
        return None


def compute_dedupe_key(source: str, source_id: str) -> str:
    return f"{source}|{source_id}"
