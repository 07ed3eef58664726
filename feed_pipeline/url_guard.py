"""
Guard against fetching internal addresses (SSRF).

Only the literal host is checked. DNS resolution is not performed.
Redirects are followed by hand so that every hop is checked.
"""

import ipaddress
from urllib.parse import urljoin, urlsplit

import requests

from feed_pipeline.errors import FeedUrlValidationError

ALLOWED_SCHEMES = {"http", "https"}

REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}
MAX_REDIRECTS = 5

BLOCKED_HOSTNAMES = {"localhost", "0.0.0.0", "::1"}

BLOCKED_IPV4_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("127.0.0.0/8"),
    ipaddress.ip_network("169.254.0.0/16"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
]

BLOCKED_IPV6_NETWORKS = [
    ipaddress.ip_network("::1/128"),
    ipaddress.ip_network("fc00::/7"),
    ipaddress.ip_network("fe80::/10"),
]


def _is_blocked_address(host: str) -> bool:
    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return False

    if isinstance(address, ipaddress.IPv6Address):
        if address.ipv4_mapped is not None:
            address = address.ipv4_mapped
        else:
            return any(address in network for network in BLOCKED_IPV6_NETWORKS)

    return any(address in network for network in BLOCKED_IPV4_NETWORKS)


def validate_feed_url(url: str) -> str:
    """Validate that a URL is safe to fetch.

    Returns the URL unchanged, or raises FeedUrlValidationError for
    malformed URLs, non-HTTP(S) schemes, and loopback, private, link-local
    or unique-local hosts (including IPv4-mapped IPv6 forms).
    """
    try:
        parts = urlsplit(url)
        host = parts.hostname
    except ValueError as e:
        raise FeedUrlValidationError(f"Invalid URL: {url}") from e

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise FeedUrlValidationError(f"Unsupported URL scheme: {parts.scheme or '(none)'}")
    if not host:
        raise FeedUrlValidationError(f"URL has no host: {url}")

    host = host.lower().rstrip(".")
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost"):
        raise FeedUrlValidationError(f"Blocked host: {host}")
    if _is_blocked_address(host):
        raise FeedUrlValidationError(f"Blocked private address: {host}")

    return url


def is_safe_url(url: str) -> bool:
    try:
        validate_feed_url(url)
    except FeedUrlValidationError:
        return False
    return True


def guarded_get(url: str, max_redirects: int = MAX_REDIRECTS, **kwargs) -> requests.Response:
    """GET a URL, following redirects only to hosts that pass validate_feed_url.

    Raises FeedUrlValidationError when the URL or any redirect target is
    unsafe, and requests.TooManyRedirects after max_redirects hops.
    """
    validate_feed_url(url)
    for _ in range(max_redirects + 1):
        response = requests.get(url, allow_redirects=False, **kwargs)
        if response.status_code not in REDIRECT_STATUS_CODES:
            return response
        location = response.headers.get("Location")
        if not location:
            return response
        response.close()
        url = validate_feed_url(urljoin(url, location))
    raise requests.TooManyRedirects(f"Exceeded {max_redirects} redirects")
