from __future__ import annotations

from dataclasses import dataclass
import re


_HEX_ESCAPE = re.compile(rb"\\([0-9a-fA-F]{2})")
_PERSON_CLASSES = {"person", "inetorgperson", "organizationalperson", "top"}
SEARCHABLE_ATTRIBUTES = ("uid", "cn", "mail")


@dataclass(frozen=True)
class DirectoryQuery:
    """What a search filter selects: every user, or users whose attribute equals value."""

    attribute: str | None = None
    value: str | None = None

    @property
    def matches_all(self) -> bool:
        return self.attribute is None


MATCH_ALL = DirectoryQuery()


def escape_filter_value(value: str) -> str:
    # RFC 4515 escaping for values rendered into filter strings.
    escaped = []
    for char in value:
        if char in "\\*()\x00":
            escaped.append(f"\\{ord(char):02x}")
        else:
            escaped.append(char)
    return "".join(escaped)


def unescape_filter_value(value: str) -> str:
    raw = _HEX_ESCAPE.sub(lambda match: bytes([int(match.group(1), 16)]), value.encode("utf-8"))
    return raw.decode("utf-8", errors="replace")


def _split_components(body: str) -> list[str] | None:
    # Split "(a)(b)(c)" into top-level parenthesised components.
    components: list[str] = []
    depth = 0
    start = 0
    for index, char in enumerate(body):
        if char == "(":
            if depth == 0:
                start = index
            depth += 1
        elif char == ")":
            depth -= 1
            if depth < 0:
                return None
            if depth == 0:
                components.append(body[start : index + 1])
        elif depth == 0 and not char.isspace():
            return None
    if depth != 0:
        return None
    return components


def _parse_simple(text: str) -> DirectoryQuery | None:
    if not (text.startswith("(") and text.endswith(")")):
        return None
    inner = text[1:-1].strip()
    if not inner or inner[0] in "&|!":
        return None
    attribute, sep, value = inner.partition("=")
    # ~=, >=, <= and extensible matches are not supported.
    if not sep or not attribute or attribute[-1] in "~<>:":
        return None
    attribute = attribute.strip().lower()
    if attribute == "objectclass":
        if value == "*" or unescape_filter_value(value).lower() in _PERSON_CLASSES:
            return MATCH_ALL
        return None
    if attribute in SEARCHABLE_ATTRIBUTES and "*" not in value:
        return DirectoryQuery(attribute=attribute, value=unescape_filter_value(value))
    return None


def parse_search_filter(text: str | None) -> DirectoryQuery | None:
    """Map an LDAP filter string onto a directory query.

    Returns ``None`` for filters the bridge does not understand; callers answer
    those with an empty successful search. Inside a top-level ``(&...)`` the
    first uid/cn/mail equality wins, and objectClass terms alone select
    everyone.
    """
    text = (text or "").strip()
    if not text or text == "(&)":
        return MATCH_ALL
    if text.startswith("(&") and text.endswith(")"):
        components = _split_components(text[2:-1])
        if components is None:
            return None
        fallback = MATCH_ALL if not components else None
        for component in components:
            query = _parse_simple(component)
            if query is None:
                continue
            if not query.matches_all:
                return query
            fallback = query
        return fallback
    return _parse_simple(text)
