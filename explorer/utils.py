# utils.py
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode


def normalize_url(url: str) -> str:
    """scheme + host + path + 並べ替えたクエリ。フラグメントは除外する"""
    url = (url or "").strip()
    if not url:
        return ""
    parts = urlsplit(url)
    path = parts.path.rstrip('/')
    query = urlencode(sorted(parse_qsl(parts.query, keep_blank_values=True)))
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, query, ''))


def is_internal_link(base_url: str, url: str) -> bool:
    return urlsplit(base_url).netloc == urlsplit(url).netloc
