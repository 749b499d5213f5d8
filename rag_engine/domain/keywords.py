"""
Name: Keyword extraction and lexical scoring

Responsibilities:
  - Extract query keywords (lowercase, stop words dropped, > 2 chars, unique)
  - Score a passage against keywords: coverage, log frequency, proximity

Collaborators:
  - infrastructure/store/in_memory.py (keyword search)
  - application/reranker.py (heuristic score)

Notes:
  - Pure functions, no I/O.
"""

from __future__ import annotations

import math
from typing import List, Sequence

STOP_WORDS = frozenset(
    """
    the be to of and a in that have i it for not on with he as you do at this
    but his by from they we say her she or an will my one all would there their
    what so up out if about who get which go me when make can like time no just
    him know take people into year your good some could them see other than then
    now look only come its over think also back after use two how our work first
    well way even new want because any these give day most us is are was were
    been being has had having does did doing may might must shall should ought
    need dare
    """.split()
)

_STRIP_CHARS = ".,!?;:\"'()[]{}"

MIN_KEYWORD_SCORE = 0.1


def extract_keywords(text: str) -> List[str]:
    """Keywords in first-appearance order."""
    seen: List[str] = []
    for raw in (text or "").lower().split():
        word = raw.strip(_STRIP_CHARS)
        if len(word) <= 2 or word in STOP_WORDS or word in seen:
            continue
        seen.append(word)
    return seen


def keyword_score(content: str, keywords: Sequence[str]) -> float:
    """
    Lexical relevance of `content` in [0, 1].

    coverage * 0.5 + min(1, log(1 + matches) / log(10)) * 0.3 + proximity * 0.2,
    where proximity rewards the closest pair of keyword hits.
    """
    if not content or not keywords:
        return 0.0

    lowered = content.lower()
    length = len(lowered)
    total_matches = 0
    unique_matches = 0
    positions: List[int] = []

    for keyword in keywords:
        start = lowered.find(keyword)
        if start < 0:
            continue
        unique_matches += 1
        while start >= 0:
            total_matches += 1
            positions.append(start)
            start = lowered.find(keyword, start + len(keyword))

    if unique_matches == 0:
        return 0.0

    coverage = unique_matches / len(keywords)
    frequency = min(1.0, math.log(1 + total_matches) / math.log(10))

    proximity = 0.0
    if len(positions) > 1:
        positions.sort()
        min_distance = min(b - a for a, b in zip(positions, positions[1:]))
        proximity = max(0.0, 0.2 * (1 - min_distance / max(length, 100)))

    return min(1.0, coverage * 0.5 + frequency * 0.3 + proximity * 0.2)
