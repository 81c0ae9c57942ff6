from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit


def append_query_params(url: str, params: dict[str, str]) -> str:
    # Safely append query params to redirect URLs without clobbering existing data.
    parsed = urlsplit(url)
    query = parse_qsl(parsed.query, keep_blank_values=True)
    query = [(key, value) for key, value in query if key not in params]
    query.extend(params.items())
    return urlunsplit(parsed._replace(query=urlencode(query)))


def url_origin(url: str) -> str | None:
    # scheme://host[:port], lowercased; None when the URL is not absolute.
    parsed = urlsplit(url.strip())
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme.lower()}://{parsed.netloc.lower()}"


def same_origin(left: str, right: str) -> bool:
    left_origin = url_origin(left)
    return left_origin is not None and left_origin == url_origin(right)


def query_param(url: str, name: str) -> str | None:
    for key, value in parse_qsl(urlsplit(url).query, keep_blank_values=True):
        if key == name:
            return value
    return None
