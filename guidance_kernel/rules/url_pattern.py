"""
URL pattern matching for current-page conditions.

Pattern grammar: `scheme://domain:port/path?query#fragment`, every part
optional. `*` is a wildcard and `:name` matches one path segment. A pattern
without a domain matches any domain; a URL without a scheme (a bare path,
as the headless host reports it) is matched on its path, query and fragment.
"""

import logging
import re
from typing import List, Optional
from urllib.parse import parse_qsl, urlsplit

logger = logging.getLogger(__name__)

_URL_PARTS = re.compile(
    r"^(([a-z\d]+)://)?([^/?#]+)?(/[^?#]*)?(\?([^#]*))?(#.*)?$", re.IGNORECASE
)
_SPECIAL = re.compile(r"[-/\\^$*+?.()|\[\]{}]")
_PARAM = re.compile(r":[a-z0-9_]+")


def _escape(value: str) -> str:
    return _SPECIAL.sub(lambda m: "\\" + m.group(0), value)


def _wildcard(value: str, any_char: str, segment_stop: Optional[str] = None) -> str:
    pattern = _escape(value).replace("\\*", f"{any_char}*")
    if segment_stop is None:
        return pattern
    return _PARAM.sub(f"[^{segment_stop}]+", pattern)


def _split(url: str) -> Optional[dict]:
    match = _URL_PARTS.match(url)
    if not match:
        return None
    return {
        "scheme": match.group(2) or "",
        "domain": match.group(3) or "",
        "path": match.group(4) or "",
        "query": match.group(6) or "",
        "fragment": match.group(7) or "",
    }


def compile_pattern(pattern: str, path_only: bool = False) -> Optional[re.Pattern]:
    """Compile a URL pattern into a regex, or None if it is blank or malformed."""
    if not pattern or not pattern.strip():
        return None
    parts = _split(pattern.strip())
    if parts is None:
        logger.error("Invalid URL pattern: %s", pattern)
        return None

    scheme = _escape(parts["scheme"]) if parts["scheme"] else r"[a-z\d]+"
    domain = _wildcard(parts["domain"], "[^/]", ".") if parts["domain"] else "[^/]*"
    path = _wildcard(parts["path"], "[^?#]", "/") if parts["path"] else "/[^?#]*"
    fragment = _wildcard(parts["fragment"], ".", "/") if parts["fragment"] else "(#.*)?"

    query = r"(\?[^#]*)?"
    if parts["query"]:
        for key, value in parse_qsl(parts["query"], keep_blank_values=True):
            if value == "":
                value_pattern = "=?"
            elif value == "*":
                value_pattern = "(=[^&#]*)?"
            else:
                value_pattern = "=" + _wildcard(value, "[^#]")
            query += rf"(?=.*[?&]{_escape(key)}{value_pattern}([&#]|$))"
        query += r"\?[^#]*"

    if path_only:
        return re.compile(f"^{path}{query}{fragment}$")
    return re.compile(f"^{scheme}://{domain}(:\\d+)?{path}{query}{fragment}$")


def _matches(url: str, pattern: str) -> bool:
    path_only = "://" not in url
    regex = compile_pattern(pattern, path_only=path_only)
    if regex is None:
        return False
    return regex.match(url) is not None


def is_match_url_pattern(url: str, includes: List[str], excludes: List[str]) -> bool:
    """True when the URL matches some include (or there are none) and no exclude."""
    included = any(_matches(url, p) for p in includes) if includes else True
    excluded = any(_matches(url, p) for p in excludes) if excludes else False
    return included and not excluded


def parse_url_param(url: str, name: str) -> Optional[str]:
    """Read a query parameter from the query string or from a hash route."""
    if not url or not name:
        return None
    parts = urlsplit(url)
    for key, value in parse_qsl(parts.query, keep_blank_values=True):
        if key == name:
            return value
    if parts.fragment and "?" in parts.fragment:
        hash_query = parts.fragment.split("?", 1)[1]
        for key, value in parse_qsl(hash_query, keep_blank_values=True):
            if key == name:
                return value
    return None
