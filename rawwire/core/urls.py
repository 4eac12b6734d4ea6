import hashlib
from urllib.parse import SplitResult, parse_qsl, urlencode, urlsplit, urlunsplit

TRACKING_PREFIXES = ("utm_",)
TRACKING_KEYS = frozenset({"ref", "fbclid", "gclid", "mc_cid", "mc_eid", "igshid"})
DEFAULT_PORTS = {"http": 80, "https": 443}


def is_tracking_param(key: str) -> bool:
    lowered = key.lower()
    return lowered.startswith(TRACKING_PREFIXES) or lowered in TRACKING_KEYS


def _split(raw_url: str) -> SplitResult:
    value = raw_url.strip()
    if not value:
        raise ValueError("url must be a non-empty string")
    if "://" not in value:
        value = "https://" + value.lstrip("/")
    parts = urlsplit(value)
    if not parts.hostname:
        raise ValueError(f"url has no host: {raw_url!r}")
    return parts


def normalize_url(raw_url: str) -> str:
    """Canonical form of an item URL, used as the lifecycle dedup key.

    Scheme and host are lowercased, default ports, fragments, trailing slashes and
    tracking parameters are dropped, and the remaining query is sorted. URLs given
    without a scheme are treated as https.
    """
    parts = _split(raw_url)
    scheme = parts.scheme.lower()
    host = parts.hostname or ""
    netloc = host if parts.port in (None, DEFAULT_PORTS.get(scheme)) else f"{host}:{parts.port}"

    path = parts.path or "/"
    if len(path) > 1:
        path = path.rstrip("/") or "/"

    query = sorted(
        (key, value) for key, value in parse_qsl(parts.query, keep_blank_values=True) if not is_tracking_param(key)
    )
    return urlunsplit((scheme, netloc, path, urlencode(query), ""))


def canonical_hash(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()
