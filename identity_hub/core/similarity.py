"""String similarity primitives for matching person names across systems.

All comparisons operate on normalized text: lowercase, diacritics stripped,
whitespace collapsed. Scores are integers in 0..100.
"""
from __future__ import annotations
import math
import unicodedata
from typing import Callable, Iterable, Optional, Sequence, TypeVar

from identity_hub.config.settings import MatchingSettings
from identity_hub.core.models import Confidence, MatchCandidate


T = TypeVar("T")


def normalize(name: str) -> str:
    """Lowercase, strip diacritics, collapse whitespace and trim."""
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFD", name)
    stripped = "".join(char for char in decomposed if not unicodedata.combining(char))
    return " ".join(stripped.lower().split())


def edit_distance(a: str, b: str) -> int:
    """Levenshtein distance (insert/delete/substitute, unit cost)."""
    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    if len(a) < len(b):
        a, b = b, a

    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, start=1):
        current = [i]
        for j, char_b in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (char_a != char_b),
            ))
        previous = current
    return previous[-1]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class StringSimilarityEngine:
    """Normalization, edit-distance and token similarity, plus confidence buckets.

    Args:
        settings: Thresholds for token matching and confidence classification
    """

    def __init__(self, settings: MatchingSettings | None = None):
        self.settings = settings or MatchingSettings()

    normalize = staticmethod(normalize)

    def similarity(self, a: str, b: str) -> int:
        """Edit-distance similarity on normalized strings.

        ``similarity(x, x) == 100`` for any x (including empty) and the
        function is symmetric.
        """
        left, right = normalize(a), normalize(b)
        max_len = max(len(left), len(right))
        if max_len == 0:
            return 100
        distance = edit_distance(left, right)
        return 100 - _round_half_up(distance / max_len * 100)

    def token_similarity(self, a: str, b: str) -> int:
        """Share of whitespace tokens (length > 1) that find a close partner."""
        tokens_a = [token for token in normalize(a).split() if len(token) > 1]
        tokens_b = [token for token in normalize(b).split() if len(token) > 1]
        if not tokens_a or not tokens_b:
            return 100 if not tokens_a and not tokens_b else 0

        threshold = self.settings.token_match_min_score
        matched = sum(
            1 for token in tokens_a
            if any(self.similarity(token, other) >= threshold for other in tokens_b)
        )
        return _round_half_up(matched / max(len(tokens_a), len(tokens_b)) * 100)

    def generate_name_variants(self, full_name: str) -> list[str]:
        """Orderings tolerant of given/surname transposition between systems.

        For "Maria Jose Lopez Garcia" this yields the full name, "garcia maria",
        "garcia, maria", "maria jose", "maria garcia", "maria lopez" and the
        reversed token order.
        """
        tokens = normalize(full_name).split()
        if not tokens:
            return []

        first, last = tokens[0], tokens[-1]
        variants = [" ".join(tokens)]
        if len(tokens) >= 2:
            variants.extend([
                f"{last} {first}",
                f"{last}, {first}",
                f"{first} {tokens[1]}",
                f"{first} {last}",
                " ".join(reversed(tokens)),
            ])
        if len(tokens) >= 4:
            # given1 given2 surname1 surname2: given1 + first surname
            variants.append(f"{first} {tokens[len(tokens) // 2]}")
        return _dedupe(variants)

    def generate_pair_variants(self, given_name: str, surname: str) -> list[str]:
        """Variants for a separate given-name / surname pair (directory style)."""
        given_tokens = normalize(given_name).split()
        surname_tokens = normalize(surname).split()
        variants = self.generate_name_variants(" ".join(given_tokens + surname_tokens))
        if given_tokens and surname_tokens:
            variants.extend([
                f"{given_tokens[0]} {surname_tokens[0]}",
                f"{surname_tokens[0]} {given_tokens[0]}",
                f"{' '.join(surname_tokens)} {' '.join(given_tokens)}",
            ])
        return _dedupe(variants)

    def best_match(
        self,
        target: str,
        candidates: Sequence[T],
        min_threshold: int,
        key: Callable[[T], str] = str,
    ) -> Optional[MatchCandidate[T]]:
        """Highest-scoring candidate at or above ``min_threshold``.

        Ties resolve to the earliest candidate in input order.
        """
        best: Optional[MatchCandidate[T]] = None
        for candidate in candidates:
            score = self.similarity(target, key(candidate))
            if score < min_threshold:
                continue
            if best is None or score > best.similarity_score:
                best = MatchCandidate(record=candidate, similarity_score=score, strategy_label="similarity")
        return best

    def confidence_of(self, score: int, target_length: int) -> Confidence:
        """Bucket a score; shorter names need stronger evidence."""
        cfg = self.settings
        if score >= cfg.exact_score:
            return Confidence.EXACT
        if target_length <= cfg.short_name_length:
            required = cfg.short_name_min_score
        elif target_length > cfg.long_name_length:
            required = cfg.long_name_min_score
        else:
            required = cfg.default_min_score
        return Confidence.HIGH if score >= required else Confidence.NONE

    def is_confident(self, score: int, target_length: int) -> bool:
        return self.confidence_of(score, target_length) is not Confidence.NONE


def _dedupe(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    ordered = []
    for value in values:
        if value and value not in seen:
            seen.add(value)
            ordered.append(value)
    return ordered
