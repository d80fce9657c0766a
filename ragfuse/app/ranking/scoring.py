from __future__ import annotations

import re
from collections.abc import Set

# Letters and digits in any script plus underscore.
TOKEN_PATTERN = re.compile(r"\w+")


def tokenize(text: str) -> set[str]:
    return {
        token for token in TOKEN_PATTERN.findall(text.casefold()) if len(token) > 1
    }


def jaccard(left: Set[str], right: Set[str]) -> float:
    if not left and not right:
        return 1.0
    if not left or not right:
        return 0.0
    intersection = len(left & right)
    union = len(left) + len(right) - intersection
    return intersection / union


def content_similarity(left: str, right: str) -> float:
    return jaccard(tokenize(left), tokenize(right))


def overlap_score(query: str, candidate: str) -> float:
    query_tokens = tokenize(query)
    if not query_tokens:
        return 0.0
    candidate_tokens = tokenize(candidate)
    hits = len(query_tokens.intersection(candidate_tokens))
    return hits / len(query_tokens)
