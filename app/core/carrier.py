"""
Reading and writing assignment carriers.

Two transports are supported:

* cookies, one per experiment: ``tp_xp_<experimentKey>=<variantKey>``
* a propagation header aggregating every assignment:
  ``X-TokPulse-XP: key1=variant1,key2=variant2``

Parsing never raises; malformed entries are skipped one at a time.
"""

from collections.abc import Mapping

DEFAULT_COOKIE_PREFIX = "tp_xp_"
DEFAULT_HEADER_NAME = "X-TokPulse-XP"
DEFAULT_MAX_AGE_SECONDS = 30 * 24 * 60 * 60

# characters that would break either the cookie or the header encoding
_RESERVED = frozenset(";,= \t\r\n\"")


def is_carrier_token(value: str) -> bool:
    """True when ``value`` can travel unquoted as a cookie name/value and header pair."""
    return bool(value) and not any(ch in _RESERVED for ch in value)


def parse_cookie_carrier(
    cookie_header: str | None, prefix: str = DEFAULT_COOKIE_PREFIX
) -> dict[str, str]:
    """
    Parses a ``Cookie`` header into ``{experiment_key: variant_key}``.

    Unrelated cookies and entries with an empty experiment key or variant are
    ignored. When the same experiment appears twice the first one wins, which
    matches how browsers order the more specific cookie first.
    """
    assignments: dict[str, str] = {}
    if not cookie_header:
        return assignments

    for raw in cookie_header.split(";"):
        cookie = raw.strip()
        if not cookie.startswith(prefix) or "=" not in cookie:
            continue

        name, value = cookie.split("=", 1)
        experiment_key = name[len(prefix):].strip()
        variant_key = value.strip()

        if not is_carrier_token(experiment_key) or not is_carrier_token(variant_key):
            continue
        assignments.setdefault(experiment_key, variant_key)

    return assignments


def parse_header_carrier(header_value: str | None) -> dict[str, str]:
    """Parses the aggregated propagation header into ``{experiment_key: variant_key}``."""
    assignments: dict[str, str] = {}
    if not header_value:
        return assignments

    for raw in header_value.split(","):
        pair = raw.strip()
        if "=" not in pair:
            continue

        experiment_key, variant_key = (part.strip() for part in pair.split("=", 1))
        if not is_carrier_token(experiment_key) or not is_carrier_token(variant_key):
            continue
        assignments.setdefault(experiment_key, variant_key)

    return assignments


def read_carrier(
    headers: Mapping[str, str],
    prefix: str = DEFAULT_COOKIE_PREFIX,
    header_name: str = DEFAULT_HEADER_NAME,
) -> dict[str, str]:
    """
    Collects prior assignments from a header mapping.

    Header names are matched case-insensitively. Cookie entries take
    precedence over the propagation header for the same experiment.
    """
    lowered = {name.lower(): value for name, value in headers.items()}

    carried = parse_cookie_carrier(lowered.get("cookie"), prefix=prefix)
    for experiment_key, variant_key in parse_header_carrier(
        lowered.get(header_name.lower())
    ).items():
        carried.setdefault(experiment_key, variant_key)

    return carried


def build_set_cookie(
    experiment_key: str,
    variant_key: str,
    max_age: int = DEFAULT_MAX_AGE_SECONDS,
    prefix: str = DEFAULT_COOKIE_PREFIX,
) -> str:
    return f"{prefix}{experiment_key}={variant_key}; Max-Age={max_age}; SameSite=Lax; Path=/"


def build_set_cookies(
    assignments: Mapping[str, str],
    max_age: int = DEFAULT_MAX_AGE_SECONDS,
    prefix: str = DEFAULT_COOKIE_PREFIX,
) -> list[str]:
    return [
        build_set_cookie(experiment_key, variant_key, max_age=max_age, prefix=prefix)
        for experiment_key, variant_key in assignments.items()
    ]


def build_propagation_header(assignments: Mapping[str, str]) -> str | None:
    """Encodes assignments as ``k1=v1,k2=v2``; ``None`` when there is nothing to send."""
    if not assignments:
        return None
    return ",".join(f"{key}={variant}" for key, variant in assignments.items())


class CarrierOptions:
    """Cookie prefix, header name and max-age used by one deployment."""

    def __init__(
        self,
        prefix: str = DEFAULT_COOKIE_PREFIX,
        header_name: str = DEFAULT_HEADER_NAME,
        max_age: int = DEFAULT_MAX_AGE_SECONDS,
    ):
        self.prefix = prefix
        self.header_name = header_name
        self.max_age = max_age

    def read(self, headers: Mapping[str, str]) -> dict[str, str]:
        return read_carrier(headers, prefix=self.prefix, header_name=self.header_name)

    def set_cookies(self, assignments: Mapping[str, str]) -> list[str]:
        return build_set_cookies(assignments, max_age=self.max_age, prefix=self.prefix)

    def propagation_headers(self, assignments: Mapping[str, str]) -> dict[str, str]:
        value = build_propagation_header(assignments)
        return {self.header_name: value} if value else {}
