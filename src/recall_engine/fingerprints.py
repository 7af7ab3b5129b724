"""Content fingerprints: the cheap change-detection hash and a simhash."""

import hashlib

HASH_EDGE_CHARS = 200


def content_hash(text: str, edge_chars: int = HASH_EDGE_CHARS) -> str:
    """
    Cheap change-detection fingerprint: length plus head and tail slices.

    Not cryptographic. An edit confined to the middle of a long text that
    keeps its length unchanged is not detected.
    """
    head = text[:edge_chars]
    tail = text[-edge_chars:] if text else ""
    return f"{len(text)}:{head}:{tail}"


def _token_hash(token: str) -> int:
    h = hashlib.md5(token.encode("utf-8")).digest()  # stable across runs
    return int.from_bytes(h[:8], "big", signed=False)


def simhash64(text: str) -> int:
    """
    Near-duplicate fingerprint (64-bit simhash over tokens longer than 2 chars).

    Not used to gate indexing.
    """
    tokens = [tok for tok in text.lower().split() if len(tok) > 2]
    weights = [0] * 64
    for tok in tokens:
        x = _token_hash(tok)
        for i in range(64):
            weights[i] += 1 if (x >> i) & 1 else -1

    out = 0
    for i, w in enumerate(weights):
        if w > 0:
            out |= 1 << i
    return out


def hamming_distance(a: int, b: int) -> int:
    return bin(a ^ b).count("1")
