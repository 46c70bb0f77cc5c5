"""
Deterministic bucketing for flag rollout and experiment assignment.

Hashes ``"<seed>:<identifier>"`` with DJB2 plus a murmur-style finalizer
into a stable score in [0, 100). The arithmetic is done on unsigned 32-bit
words over UTF-16 code units so the scores match the JavaScript SDKs
byte for byte.
"""

_MASK32 = 0xFFFFFFFF

BUCKET_RESOLUTION = 10000  # two decimal places of percentage


def hash_string(value: str) -> int:
    """
    DJB2 (xor variant) with final avalanche mixing.

    Returns:
        Unsigned 32-bit integer. Same input always maps to same output.
    """
    h = 5381
    data = value.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(data), 2):
        code_unit = data[i] | (data[i + 1] << 8)
        h = (((h << 5) + h) & _MASK32) ^ code_unit

    h ^= h >> 16
    h = (h * 0x85EBCA6B) & _MASK32
    h ^= h >> 13
    h = (h * 0xC2B2AE35) & _MASK32
    h ^= h >> 16
    return h


def bucket(seed_key: str, identifier: str) -> float:
    """
    Map (seed, identifier) to a stable score in [0, 100).

    Args:
        seed_key: Key of the entity being bucketed (flag or experiment key)
        identifier: User identifier; empty strings are valid

    Returns:
        Score with two decimal places, 0.00 to 99.99
    """
    combined = f"{seed_key}:{identifier}"
    return (hash_string(combined) % BUCKET_RESOLUTION) / 100
