"""Address text -> administrative codes (gazetteer + PhraseMatcher).

The matcher is deterministic and side-effect free: the same text and the same
`ReferenceCatalog` always yield the same `MatchResult`.

High-level idea:
1) Normalize the address text and tokenize it with a blank spaCy pipeline
2) Province: exact phrase hits (PhraseMatcher over name variants) win;
   otherwise fuzzy-match variants against token windows of the same length
3) Regency: same scoring, restricted to the matched province's children
   (all regencies when no province matched)
4) District: same scoring, restricted to the matched regency's children
5) Count matched levels top-down and map the count to a confidence level

A child hit whose tokens lie entirely inside the span its parent already
claimed is ignored. This is what stops "Bengkulu" (the province) from also
counting as "Kota Bengkulu".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Iterable, Sequence

import spacy
from spacy.language import Language
from spacy.matcher import PhraseMatcher
from spacy.tokens import Doc

from .codes import DISTRICT, PROVINCE, REGENCY
from .fuzzy import best_window_match, span_inside_any
from .models import ConfidenceLevel, SelectionState
from .normalization import generate_surface_variants, normalize_for_lookup
from .reference import AdministrativeNode, ReferenceCatalog

logger = logging.getLogger(__name__)

DEFAULT_FUZZY_THRESHOLD = 88.0

# Short variants ("ntb", "diy", "bali") are too ambiguous for fuzzy windows.
MIN_FUZZY_VARIANT_LENGTH = 5

_CONFIDENCE_BY_LEVELS = {
    3: ConfidenceLevel.HIGH,
    2: ConfidenceLevel.MEDIUM,
    1: ConfidenceLevel.LOW,
    0: ConfidenceLevel.NONE,
}


@lru_cache(maxsize=4)
def _blank_pipeline(language: str = "id") -> Language:
    # A blank tokenizer is enough for PhraseMatcher; no model download needed.
    return spacy.blank(language)


@dataclass(frozen=True)
class LevelMatch:
    """Best hit found at one administrative level."""

    level: str
    node: AdministrativeNode
    score: float
    matched_text: str
    start: int  # token offsets in the normalized text
    end: int
    match_method: str = "exact"  # exact|fuzzy

    def to_dict(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "code": self.node.code,
            "name": self.node.name,
            "score": self.score,
            "matched_text": self.matched_text,
            "match_method": self.match_method,
        }


@dataclass(frozen=True)
class MatchResult:
    """Outcome of matching one address against the reference hierarchy.

    `selection` only holds the levels counted in `matched_levels`.
    `level_matches` may also contain uncounted hits (e.g. a regency found
    without its province) for diagnostics.
    """

    selection: SelectionState
    confidence: ConfidenceLevel
    matched_levels: int
    address_text: str | None = None
    level_matches: tuple[LevelMatch, ...] = ()
    error: str | None = None

    @classmethod
    def failed(cls, error: str, *, address_text: str | None = None) -> "MatchResult":
        """A `none` result carrying a recoverable error message."""
        return cls(
            selection=SelectionState(),
            confidence=ConfidenceLevel.NONE,
            matched_levels=0,
            address_text=address_text,
            error=error,
        )

    @property
    def can_auto_select(self) -> bool:
        return self.error is None and self.confidence in (
            ConfidenceLevel.HIGH,
            ConfidenceLevel.MEDIUM,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "selection": self.selection.to_dict(),
            "confidence": self.confidence.value,
            "matched_levels": self.matched_levels,
            "address_text": self.address_text,
            "level_matches": [m.to_dict() for m in self.level_matches],
            "error": self.error,
        }


def confidence_for(matched_levels: int) -> ConfidenceLevel:
    return _CONFIDENCE_BY_LEVELS[matched_levels]


class AddressMatcher:
    """Scores address text against one `ReferenceCatalog`.

    Phrase patterns are built lazily per (level, parent) group and reused, so
    a long-lived matcher only pays for the groups it actually visits.
    """

    def __init__(
        self,
        catalog: ReferenceCatalog,
        *,
        threshold: float = DEFAULT_FUZZY_THRESHOLD,
        language: str = "id",
    ):
        if threshold < 0 or threshold > 100:
            raise ValueError("fuzzy_threshold must be in range [0, 100]")

        self.catalog = catalog
        self.threshold = float(threshold)
        self.nlp = _blank_pipeline(language)
        self._groups: dict[tuple[str, str | None], _LevelGroup] = {}

    def match(self, address_text: str) -> MatchResult:
        """Match free text against the hierarchy.

        Args:
            address_text: Raw address, e.g. a geocoder display string.

        Returns:
            MatchResult. Empty or unmatched text yields confidence `none`.
        """
        normalized = normalize_for_lookup(address_text or "")
        if not normalized:
            return MatchResult(
                selection=SelectionState(),
                confidence=ConfidenceLevel.NONE,
                matched_levels=0,
                address_text=address_text,
            )

        doc = self.nlp.make_doc(normalized)
        tokens = [t.text for t in doc]

        province = self._best(PROVINCE, None, self.catalog.provinces, doc, tokens, ())

        province_code = province.node.code if province else None
        regency = self._best(
            REGENCY,
            province_code,
            self.catalog.regencies_for(province_code),
            doc,
            tokens,
            _claimed(province),
        )

        district = None
        if regency is not None:
            district = self._best(
                DISTRICT,
                regency.node.code,
                self.catalog.districts_for(regency.node.code),
                doc,
                tokens,
                _claimed(regency),
            )

        found = tuple(m for m in (province, regency, district) if m is not None)

        # Count top-down: a level only counts when its parent counted.
        counted: list[LevelMatch] = []
        for hit in (province, regency, district):
            if hit is None:
                break
            counted.append(hit)

        codes = [m.node.code for m in counted] + [None] * (3 - len(counted))
        selection = SelectionState(*codes)

        if province is None and regency is not None:
            logger.debug(
                "Regency %s matched without a province; not counted", regency.node.code
            )

        return MatchResult(
            selection=selection,
            confidence=confidence_for(len(counted)),
            matched_levels=len(counted),
            address_text=address_text,
            level_matches=found,
        )

    def _best(
        self,
        level: str,
        parent_code: str | None,
        nodes: Sequence[AdministrativeNode],
        doc: Doc,
        tokens: Sequence[str],
        claimed: Sequence[tuple[int, int]],
    ) -> LevelMatch | None:
        if not nodes:
            return None

        group = self._group(level, parent_code, nodes)
        hits: list[LevelMatch] = []

        for match_id, start, end in group.matcher(doc):
            if span_inside_any((start, end), claimed):
                continue
            code = self.nlp.vocab.strings[match_id]
            hits.append(
                LevelMatch(
                    level=level,
                    node=group.by_code[code],
                    score=100.0,
                    matched_text=doc[start:end].text,
                    start=start,
                    end=end,
                )
            )

        if not hits:
            for node in nodes:
                for variant in group.variants[node.code]:
                    if len(variant) < MIN_FUZZY_VARIANT_LENGTH:
                        continue
                    found = best_window_match(
                        variant, tokens, threshold=self.threshold, exclude=claimed
                    )
                    if found is None:
                        continue
                    score, start, end = found
                    hits.append(
                        LevelMatch(
                            level=level,
                            node=node,
                            score=score,
                            matched_text=" ".join(tokens[start:end]),
                            start=start,
                            end=end,
                            match_method="fuzzy",
                        )
                    )

        if not hits:
            return None

        # Highest score first, then the longest matched name, then code order.
        hits.sort(key=lambda h: (-h.score, -len(h.matched_text), h.node.code, h.start))
        return hits[0]

    def _group(
        self,
        level: str,
        parent_code: str | None,
        nodes: Iterable[AdministrativeNode],
    ) -> "_LevelGroup":
        key = (level, parent_code)
        group = self._groups.get(key)
        if group is None:
            group = _LevelGroup.build(self.nlp, level, nodes)
            self._groups[key] = group
        return group


@dataclass
class _LevelGroup:
    matcher: PhraseMatcher
    by_code: dict[str, AdministrativeNode]
    variants: dict[str, list[str]]

    @classmethod
    def build(
        cls, nlp: Language, level: str, nodes: Iterable[AdministrativeNode]
    ) -> "_LevelGroup":
        # attr="LOWER" makes matching case-insensitive at token level.
        matcher = PhraseMatcher(nlp.vocab, attr="LOWER")
        by_code: dict[str, AdministrativeNode] = {}
        variants: dict[str, list[str]] = {}

        for node in nodes:
            by_code[node.code] = node
            keys = [
                " ".join(t.text for t in nlp.make_doc(v))
                for v in generate_surface_variants(level, node.name)
            ]
            variants[node.code] = keys
            if keys:
                # Match id is the node code, so hits map straight back to nodes.
                matcher.add(node.code, [nlp.make_doc(k) for k in keys])

        return cls(matcher=matcher, by_code=by_code, variants=variants)


def _claimed(hit: LevelMatch | None) -> tuple[tuple[int, int], ...]:
    return ((hit.start, hit.end),) if hit else ()


def match_address(
    address_text: str,
    catalog: ReferenceCatalog,
    *,
    threshold: float = DEFAULT_FUZZY_THRESHOLD,
) -> MatchResult:
    """One-shot convenience wrapper around `AddressMatcher`."""
    return AddressMatcher(catalog, threshold=threshold).match(address_text)
