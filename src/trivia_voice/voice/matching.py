"""Lenient spoken-answer matching against a round's candidate answers.

Single-answer rounds walk four rules in priority order and stop at the first rule with any hit;
top-ten rounds score every unclaimed candidate by token coverage.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

logger = logging.getLogger("trivia_voice.matching")

_PUNCTUATION = re.compile(r"[^\w\s]")
_LEADING_ARTICLES = ("the", "a", "an", "its")

STOP_WORDS = frozenset({"the", "and", "for", "with", "from", "of", "a", "an", "in", "on", "to", "or"})


class MatchMode(str, Enum):
    SINGLE = "single"
    MULTI = "multi"


class MatchRule(str, Enum):
    EXACT = "exact"
    CONTAINMENT = "containment"
    TOKEN_OVERLAP = "token_overlap"
    SHARED_PREFIX = "shared_prefix"
    COVERAGE = "coverage"


@dataclass(slots=True, frozen=True)
class MatchResult:
    candidates: tuple[str, ...] = ()
    rule: MatchRule | None = None

    def __bool__(self) -> bool:
        return bool(self.candidates)

    @property
    def first(self) -> str | None:
        return self.candidates[0] if self.candidates else None


NO_MATCH = MatchResult()


def normalize(text: str) -> str:
    """Lower-case, drop punctuation and leading articles, collapse whitespace."""
    lowered = text.lower().replace("'", "").replace("’", "")
    words = _PUNCTUATION.sub(" ", lowered).replace("_", " ").split()
    while len(words) > 1 and words[0] in _LEADING_ARTICLES:
        words = words[1:]
    return " ".join(words)


def _shares_prefix(left: str, right: str, length: int = 2) -> bool:
    return len(left) >= length and len(right) >= length and left[:length] == right[:length]


class PhraseMatcher:
    """Maps a noisy recognized phrase onto zero or more candidate answers."""

    def __init__(self, *, coverage_threshold: float = 0.5, max_answers_per_phrase: int = 4) -> None:
        self._coverage_threshold = coverage_threshold
        self._max_answers = max(1, max_answers_per_phrase)

    def match(
        self,
        phrase: str,
        candidates: Iterable[str],
        *,
        claimed: Iterable[str] = (),
        mode: MatchMode = MatchMode.SINGLE,
    ) -> MatchResult:
        normalized = normalize(phrase)
        if len(normalized) < 2:
            return NO_MATCH

        taken = set(claimed)
        open_candidates = [candidate for candidate in candidates if candidate not in taken]
        if not open_candidates:
            return NO_MATCH

        if mode == MatchMode.MULTI:
            result = self._match_many(normalized, open_candidates)
        else:
            result = self._match_one(normalized, open_candidates)

        if result:
            logger.debug(
                "phrase_matched",
                extra={"phrase": phrase, "rule": result.rule.value, "candidates": list(result.candidates)},
            )
        else:
            logger.debug("phrase_unmatched", extra={"phrase": phrase, "mode": mode.value})
        return result

    def match_single(self, phrase: str, candidates: Iterable[str], *, claimed: Iterable[str] = ()) -> str | None:
        return self.match(phrase, candidates, claimed=claimed, mode=MatchMode.SINGLE).first

    def match_multi(self, phrase: str, candidates: Iterable[str], *, claimed: Iterable[str] = ()) -> list[str]:
        return list(self.match(phrase, candidates, claimed=claimed, mode=MatchMode.MULTI).candidates)

    def _match_one(self, phrase: str, candidates: list[str]) -> MatchResult:
        pairs = [(candidate, normalize(candidate)) for candidate in candidates]
        pairs = [(candidate, norm) for candidate, norm in pairs if norm]

        for candidate, norm in pairs:
            if norm == phrase:
                return MatchResult((candidate,), MatchRule.EXACT)

        for candidate, norm in pairs:
            if phrase in norm or norm in phrase:
                return MatchResult((candidate,), MatchRule.CONTAINMENT)

        phrase_tokens = [token for token in phrase.split() if len(token) >= 2]
        for candidate, norm in pairs:
            candidate_tokens = [token for token in norm.split() if len(token) >= 2]
            for spoken in phrase_tokens:
                if any(self._tokens_overlap(spoken, token) for token in candidate_tokens):
                    return MatchResult((candidate,), MatchRule.TOKEN_OVERLAP)

        phrase_head = phrase[:3]
        for candidate, norm in pairs:
            if len(phrase_head) >= 2 and phrase_head == norm[:3]:
                return MatchResult((candidate,), MatchRule.SHARED_PREFIX)

        return NO_MATCH

    @staticmethod
    def _tokens_overlap(spoken: str, token: str) -> bool:
        return spoken == token or spoken in token or token in spoken or _shares_prefix(spoken, token)

    def _match_many(self, phrase: str, candidates: list[str]) -> MatchResult:
        spoken = set(phrase.split())
        accepted: list[str] = []
        for candidate in candidates:
            tokens = self.significant_tokens(candidate)
            if not tokens:
                continue
            hits = [token for token in tokens if token in spoken]
            if not hits:
                continue
            coverage = len(hits) / len(tokens)
            # Coverage below the threshold still counts when the leading word was said:
            # "reeses" must find "Reese's Peanut Butter Cups".
            if len(tokens) == 1 or coverage >= self._coverage_threshold or tokens[0] in spoken:
                accepted.append(candidate)
                if len(accepted) >= self._max_answers:
                    break

        if not accepted:
            return NO_MATCH
        return MatchResult(tuple(accepted), MatchRule.COVERAGE)

    @staticmethod
    def significant_tokens(candidate: str) -> list[str]:
        """Tokens of length >= 3 that are not stop words; short answers fall back to all their tokens."""
        tokens = normalize(candidate).split()
        significant = [token for token in tokens if len(token) >= 3 and token not in STOP_WORDS]
        return significant or tokens
