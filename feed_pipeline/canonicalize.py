"""
URL canonicalization used for item identity.
"""

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from feed_pipeline.constants import TRACKING_PARAMS


def canonicalize_url(raw: str) -> str:
    """Normalize a URL so that the same story from the same feed compares equal.

    Forces https, strips a leading "www.", lowercases the host, drops one
    trailing slash from non-root paths, removes tracking params, sorts the
    remaining params and drops the fragment. Anything that does not parse as
    an absolute URL is returned unchanged.
    """
    try:
        parts = urlsplit(raw.strip())
        if not parts.scheme or not parts.netloc:
            return raw
        host = (parts.hostname or "").lower()
        port = parts.port
    except (ValueError, AttributeError):
        return raw

    if host.startswith("www."):
        host = host[4:]
    if not host:
        return raw

    netloc = host
    if ":" in host:
        netloc = f"[{host}]"
    if port is not None:
        netloc = f"{netloc}:{port}"
    if parts.username:
        userinfo = parts.username
        if parts.password:
            userinfo = f"{userinfo}:{parts.password}"
        netloc = f"{userinfo}@{netloc}"

    path = parts.path
    if len(path) > 1 and path.endswith("/"):
        path = path[:-1]

    params = [
        (key, value)
        for key, value in parse_qsl(parts.query, keep_blank_values=True)
        if key.lower() not in TRACKING_PARAMS
    ]
    params.sort(key=lambda kv: kv[0])

    return urlunsplit(("https", netloc, path, urlencode(params), ""))


def extract_domain(url: str) -> str:
    """Lowercase hostname of a URL, or an empty string when there is none."""
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""
