# retrieval/query.py
"""Query normalization applied before embedding and keyword search."""

import re

# Misspellings seen often enough in saved-content queries to be worth fixing
COMMON_TYPOS = {
    "adress": "address",
    "attachement": "attachment",
    "calender": "calendar",
    "definately": "definitely",
    "emial": "email",
    "invocie": "invoice",
    "occured": "occurred",
    "recieve": "receive",
    "recieved": "received",
    "reciept": "receipt",
    "seperate": "separate",
    "shiping": "shipping",
    "teh": "the",
    "untill": "until",
    "wich": "which",
}

# Abbreviations expanded in place (the abbreviation itself is kept)
ABBREVIATIONS = {
    "pdf": "pdf document",
    "doc": "doc document",
    "docs": "docs documents",
    "msg": "msg message",
    "info": "info information",
    "addr": "addr address",
    "acct": "acct account",
}

_WORD = re.compile(r"\w+")


def _replace_words(text: str, table: dict[str, str]) -> str:
    return _WORD.sub(lambda m: table.get(m.group(0), m.group(0)), text)


def preprocess_query(query: str) -> str:
    """Lowercase, trim, collapse whitespace, fix typos, expand abbreviations."""
    processed = " ".join(query.lower().split())
    if not processed:
        return processed
    processed = _replace_words(processed, COMMON_TYPOS)
    return _replace_words(processed, ABBREVIATIONS)


def query_terms(query: str, min_length: int = 3) -> list[str]:
    """Distinct query words of at least min_length chars, in first-seen order."""
    seen: dict[str, None] = {}
    for word in _WORD.findall(query.lower()):
        if len(word) >= min_length:
            seen.setdefault(word, None)
    return list(seen)
