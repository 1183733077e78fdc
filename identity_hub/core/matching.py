"""Fuzzy identity resolution between the directory, the ERP roster and local accounts.

Two stages: generate name variants on both sides, then score every
(query variant, candidate variant) pair plus a token-overlap score of the raw
names. Cost is O(variants_a x variants_b x candidates), which is fine for
rosters in the hundreds but will not scale to tens of thousands.
"""
from __future__ import annotations
import datetime
import logging
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, TypeVar

from identity_hub.config.settings import MatchingSettings
from identity_hub.core.models import (
    Confidence,
    DirectoryIdentity,
    ErpPersonRecord,
    LocalAccount,
    MatchCandidate,
    MatchResult,
)
from identity_hub.core.similarity import StringSimilarityEngine, normalize

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class DuplicatePair:
    first: LocalAccount
    second: LocalAccount
    score: int


class IdentityMatcher:
    """Resolve a person from one system against candidates from another.

    Args:
        engine: Similarity engine (shares the matching thresholds)
        settings: Login/batch thresholds; defaults come from ``MatchingSettings``
    """

    def __init__(self, engine: StringSimilarityEngine | None = None, settings: MatchingSettings | None = None):
        self.settings = settings or (engine.settings if engine else MatchingSettings())
        self.engine = engine or StringSimilarityEngine(self.settings)

    # ─────────────────────────────────────────────────────────────────────────
    # Public entry points
    # ─────────────────────────────────────────────────────────────────────────

    def match_identity_to_records(
        self,
        identity: DirectoryIdentity,
        records: Sequence[ErpPersonRecord],
        threshold: int | None = None,
    ) -> MatchResult[ErpPersonRecord]:
        """Directory identity against ERP roster rows (login-time threshold by default)."""
        return self.match_name_to_records(identity.given_name, identity.surname, records, threshold, fallback=identity.full_name)

    def match_name_to_records(
        self,
        given_name: str,
        surname: str,
        records: Sequence[ErpPersonRecord],
        threshold: int | None = None,
        fallback: str = "",
    ) -> MatchResult[ErpPersonRecord]:
        """Bare given/surname pair against ERP roster rows."""
        query_text = f"{given_name} {surname}".strip() or fallback
        query_variants = self._pair_variants(given_name, surname, query_text)
        return self._resolve(
            query_variants,
            query_text,
            records,
            name_of=lambda record: record.full_name,
            threshold=self._threshold(threshold, login=True),
        )

    def match_record_to_identities(
        self,
        record: ErpPersonRecord,
        identities: Sequence[DirectoryIdentity],
        threshold: int | None = None,
    ) -> MatchResult[DirectoryIdentity]:
        """ERP roster row against the directory roster (batch threshold by default)."""
        return self._resolve(
            self.engine.generate_name_variants(record.full_name),
            record.full_name,
            identities,
            name_of=lambda identity: identity.full_name,
            variants_of=lambda identity: self._pair_variants(identity.given_name, identity.surname, identity.full_name),
            threshold=self._threshold(threshold, login=False),
        )

    def match_identity_to_accounts(
        self,
        identity: DirectoryIdentity,
        accounts: Sequence[LocalAccount],
        threshold: int | None = None,
    ) -> MatchResult[LocalAccount]:
        """Directory identity against ERP-linked local accounts (login-time linking)."""
        return self._resolve(
            self._pair_variants(identity.given_name, identity.surname, identity.full_name),
            identity.full_name,
            accounts,
            name_of=lambda account: account.full_name,
            threshold=self._threshold(threshold, login=True),
        )

    # ─────────────────────────────────────────────────────────────────────────
    # Duplicate detection
    # ─────────────────────────────────────────────────────────────────────────

    def find_duplicates(self, accounts: Sequence[LocalAccount], threshold: int | None = None) -> list[DuplicatePair]:
        """Pairs of accounts whose names are similar enough to be the same person."""
        limit = self.settings.duplicate_threshold if threshold is None else threshold
        pairs = []
        for index, first in enumerate(accounts):
            for second in accounts[index + 1:]:
                score = max(
                    self.engine.similarity(first.full_name, second.full_name),
                    self.engine.token_similarity(first.full_name, second.full_name),
                )
                if score >= limit:
                    pairs.append(DuplicatePair(first=first, second=second, score=score))
        pairs.sort(key=lambda pair: pair.score, reverse=True)
        return pairs

    @staticmethod
    def suggest_keeper(accounts: Sequence[LocalAccount]) -> Optional[LocalAccount]:
        """Account to keep among duplicates: ERP-linked, then most recent login, then oldest."""
        if not accounts:
            return None
        epoch = datetime.datetime.min.replace(tzinfo=datetime.timezone.utc)

        def rank(account: LocalAccount):
            last_login = account.last_login or epoch
            if last_login.tzinfo is None:
                last_login = last_login.replace(tzinfo=datetime.timezone.utc)
            return (
                account.linked_erp_id is not None,
                last_login,
                -(account.id if account.id is not None else 0),
            )

        return max(accounts, key=rank)

    # ─────────────────────────────────────────────────────────────────────────
    # Core algorithm
    # ─────────────────────────────────────────────────────────────────────────

    def _resolve(
        self,
        query_variants: list[str],
        query_text: str,
        candidates: Sequence[T],
        *,
        name_of: Callable[[T], str],
        threshold: int,
        variants_of: Callable[[T], list[str]] | None = None,
    ) -> MatchResult[T]:
        if not query_variants or not candidates:
            return MatchResult(None, Confidence.NONE, "no candidates" if query_variants else "empty query name")

        variants_for = variants_of or (lambda candidate: self.engine.generate_name_variants(name_of(candidate)))
        best: Optional[MatchCandidate[T]] = None
        best_rationale = ""

        for candidate in candidates:
            score, rationale = self._score_candidate(query_variants, query_text, variants_for(candidate), name_of(candidate))
            # Strictly greater keeps the earliest candidate on ties
            if best is None or score > best.similarity_score:
                best = MatchCandidate(record=candidate, similarity_score=score, strategy_label=rationale.split(":", 1)[0])
                best_rationale = rationale

        if best is None or best.similarity_score < threshold:
            top = best.similarity_score if best else 0
            return MatchResult(None, Confidence.NONE, f"best score {top} below threshold {threshold}")

        confidence = self.engine.confidence_of(best.similarity_score, len(normalize(query_text)))
        if confidence is Confidence.NONE:
            confidence = Confidence.LOW
        rationale = f"{best_rationale} (score {best.similarity_score}, threshold {threshold})"
        logger.debug("Matched '%s' with %s confidence: %s", query_text, confidence.value, rationale)
        return MatchResult(best, confidence, rationale)

    def _score_candidate(
        self,
        query_variants: list[str],
        query_text: str,
        candidate_variants: list[str],
        candidate_text: str,
    ) -> tuple[int, str]:
        best_score = -1
        rationale = ""
        for query_variant in query_variants:
            for candidate_variant in candidate_variants:
                score = self.engine.similarity(query_variant, candidate_variant)
                if score > best_score:
                    best_score = score
                    rationale = f"variant: '{query_variant}' ~ '{candidate_variant}'"
                    if score == 100:
                        return best_score, rationale

        token_score = self.engine.token_similarity(query_text, candidate_text)
        if token_score > best_score:
            best_score = token_score
            rationale = f"token: '{normalize(query_text)}' ~ '{normalize(candidate_text)}'"
        return max(best_score, 0), rationale

    def _pair_variants(self, given_name: str, surname: str, fallback: str) -> list[str]:
        if given_name or surname:
            return self.engine.generate_pair_variants(given_name, surname)
        return self.engine.generate_name_variants(fallback)

    def _threshold(self, override: int | None, *, login: bool) -> int:
        if override is not None:
            return override
        return self.settings.login_threshold if login else self.settings.batch_threshold
