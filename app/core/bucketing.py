"""
Deterministic traffic bucketing.

A subject's bucket is derived from a 32-bit rolling hash
(``h = h * 31 + code_unit``) over the scope string
``"<org_id>:<experiment_key>:<subject_key>"``. The arithmetic wraps exactly
like a signed 32-bit integer so buckets match assignments made by other
clients of the same scheme. Not suitable for anything security sensitive.
"""

SCOPE_DELIMITER = ":"
ANONYMOUS_SUBJECT = "anonymous"
BUCKET_COUNT = 100

_UINT32_MASK = 0xFFFFFFFF
_INT32_SIGN_BIT = 0x80000000


def hash_code(value: str) -> int:
    """Signed 32-bit rolling hash over the UTF-16 code units of ``value``."""
    h = 0
    encoded = value.encode("utf-16-be", "surrogatepass")
    for i in range(0, len(encoded), 2):
        code_unit = (encoded[i] << 8) | encoded[i + 1]
        h = (h * 31 + code_unit) & _UINT32_MASK

    if h & _INT32_SIGN_BIT:
        h -= 1 << 32
    return h


def scope_key(org_id: str, experiment_key: str, subject_key: str | None) -> str:
    return SCOPE_DELIMITER.join(
        [org_id or "", experiment_key or "", subject_key or ANONYMOUS_SUBJECT]
    )


def bucket_for_scope(scope: str) -> int:
    return abs(hash_code(scope)) % BUCKET_COUNT


def bucket(org_id: str, experiment_key: str, subject_key: str | None) -> int:
    """Returns the subject's bucket in [0, 100) for one experiment."""
    return bucket_for_scope(scope_key(org_id, experiment_key, subject_key))
