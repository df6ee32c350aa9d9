"""Spoken-name attribution: "Sam, Oreo" or "it's Sam, Oreo" credits Sam."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

from trivia_voice.models import Player

_LEADING_FILLER = re.compile(r"^[,:\-]?\s*(?:(?:says|here|is|answers|answer)\b)?\s*[,:\-]?\s*", re.IGNORECASE)
_LEADING_SEPARATOR = re.compile(r"^[,:\-]?\s*")


@dataclass(slots=True, frozen=True)
class SpokenAttribution:
    player: Player | None
    answer: str


def _name_patterns(name: str) -> tuple[re.Pattern[str], ...]:
    escaped = re.escape(name)
    return (
        re.compile(rf"(?:it'?s|i'?m|this is|here'?s)\s+{escaped}\b", re.IGNORECASE),
        re.compile(rf"\b{escaped}\s*(?:says|here|answers|answer)\b", re.IGNORECASE),
    )


def extract_speaker_name(transcript: str, players: Iterable[Player]) -> SpokenAttribution:
    """Split a transcript into the naming player (if any) and the answer that follows."""
    normalized = " ".join(transcript.lower().split())

    for player in players:
        name = " ".join(player.name.lower().split())
        if not name:
            continue

        if re.match(rf"{re.escape(name)}\b", normalized):
            remainder = normalized[len(name) :].strip()
            return SpokenAttribution(player=player, answer=_LEADING_FILLER.sub("", remainder, count=1).strip())

        for pattern in _name_patterns(name):
            match = pattern.search(normalized)
            if match:
                remainder = normalized[match.end() :].strip()
                return SpokenAttribution(player=player, answer=_LEADING_SEPARATOR.sub("", remainder, count=1).strip())

    return SpokenAttribution(player=None, answer=normalized)
