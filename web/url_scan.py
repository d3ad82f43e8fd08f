"""
Detects attempts to open a URL in terminal output.

Patterns run in a fixed priority order. Every match yields one URL; only the
``OPEN_URL:`` sentinel (printed by the ``BROWSER`` override we install in the
shell environment) is rewritten in the forwarded text.

Scanning works on one output batch at a time: a URL split across two batches
is not detected.
"""

import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Pattern, Tuple

# Anything up to whitespace, ESC or BEL
_URL = r"(https?://[^\s\x1b\x07]+)"

BROWSER_SENTINEL = "OPEN_URL:"
BROWSER_OVERRIDE = f'echo "{BROWSER_SENTINEL}"'


@dataclass(frozen=True)
class UrlPattern:
    name: str
    matcher: Pattern[str]
    rewrite: Optional[Callable[[str], str]] = None


def _opening_message(url: str) -> str:
    return f"🌐 Opening in browser: {url}"


URL_PATTERNS: Tuple[UrlPattern, ...] = (
    UrlPattern("open-command", re.compile(r"(?:xdg-open|open|start)\s+" + _URL)),
    UrlPattern("browser-sentinel", re.compile(re.escape(BROWSER_SENTINEL) + r"\s*" + _URL), rewrite=_opening_message),
    UrlPattern("opening", re.compile(r"Opening\s+" + _URL, re.IGNORECASE)),
    UrlPattern("visit", re.compile(r"Visit:\s*" + _URL, re.IGNORECASE)),
    UrlPattern("view-at", re.compile(r"View at:\s*" + _URL, re.IGNORECASE)),
    UrlPattern("browse-to", re.compile(r"Browse to:\s*" + _URL, re.IGNORECASE)),
)


@dataclass(frozen=True)
class ScanResult:
    urls: List[str]
    output: str


def scan_output(text: str, patterns: Tuple[UrlPattern, ...] = URL_PATTERNS) -> ScanResult:
    """Collect URLs from ``text`` in pattern order and apply sentinel rewrites."""
    urls: List[str] = []
    output = text
    for pattern in patterns:
        for match in pattern.matcher.finditer(text):
            url = match.group(1)
            urls.append(url)
            if pattern.rewrite is not None:
                output = output.replace(match.group(0), pattern.rewrite(url), 1)
    return ScanResult(urls=urls, output=output)
