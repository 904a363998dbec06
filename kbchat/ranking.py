#!/usr/bin/env python3
"""
Lexical relevance ranking of KB entries against a user message.

Question matches weigh twice as much as answer matches. Scores are integers;
a score of 0 means the entry is not relevant at all.
"""

import re
import unicodedata
from typing import Iterable, List, Sequence, Set

from kbchat.models import KBEntry, RankedEntry

QUESTION_WEIGHT = 2
ANSWER_WEIGHT = 1

# Norwegian + English function words
STOP_WORDS = frozenset({
    "og", "er", "en", "et", "to", "and", "the", "i", "vi", "som", "for", "med",
    "på", "til", "du", "jeg", "we", "you", "of", "a", "an", "det", "de", "så", "at",
})

_NON_TOKEN = re.compile(r"[^\w\sæøåäöü\-]")


def tokenize(text: str) -> List[str]:
    """Lowercase, NFKD-decompose, strip punctuation, split and drop stop words."""
    s = unicodedata.normalize("NFKD", str(text or "").lower())
    s = _NON_TOKEN.sub(" ", s)
    return [w for w in s.split() if w not in STOP_WORDS]


def score_entry(entry: KBEntry, query_tokens: Iterable[str]) -> int:
    q_tokens: Set[str] = set(tokenize(entry.question))
    a_tokens: Set[str] = set(tokenize(entry.answer))
    score = 0
    for t in set(query_tokens):
        if t in q_tokens:
            score += QUESTION_WEIGHT
        if t in a_tokens:
            score += ANSWER_WEIGHT
    return score


def rank(query: str, kb: Sequence[KBEntry]) -> List[RankedEntry]:
    """Score every entry and sort descending; ties keep KB order (sorted is stable)."""
    query_tokens = set(tokenize(query))
    scored = [RankedEntry.from_entry(e, score_entry(e, query_tokens)) for e in kb]
    return sorted(scored, key=lambda r: r.score, reverse=True)
