"""Fuzzy matching utilities.

We use fuzzy matching to handle common user input issues:
- Typos ("Surabya" vs "Surabaya")
- Minor spacing/punctuation differences that survive normalization

Implementation notes:
- This module depends on `rapidfuzz`, which is fast and lightweight.
- Containment is scored over *token windows* of the same length as the
  reference name, so a short name never scores against half a word
  ("bali" inside "balikpapan").
"""

from __future__ import annotations

from typing import Iterable, Sequence

from rapidfuzz import fuzz, process


def span_inside_any(span: tuple[int, int], others: Iterable[tuple[int, int]]) -> bool:
    """Return True if span lies entirely inside any span in others."""
    s1, e1 = span
    for s2, e2 in others:
        if s2 <= s1 and e1 <= e2:
            return True
    return False


def token_windows(tokens: Sequence[str], size: int) -> list[tuple[int, int, str]]:
    """Return every contiguous window of `size` tokens as (start, end, text)."""
    if size <= 0 or size > len(tokens):
        return []
    return [
        (i, i + size, " ".join(tokens[i : i + size]))
        for i in range(len(tokens) - size + 1)
    ]


def best_window_match(
    variant: str,
    tokens: Sequence[str],
    *,
    threshold: float,
    exclude: Iterable[tuple[int, int]] = (),
) -> tuple[float, int, int] | None:
    """Fuzzy-locate `variant` inside a tokenized text.

    Args:
        variant: Normalized reference name (space separated).
        tokens: Normalized text tokens.
        threshold: Minimum `fuzz.ratio` score (0..100) to accept.
        exclude: Token spans already claimed (e.g. by a parent level).
            Windows lying entirely inside one of them are skipped.

    Returns:
        (score, start, end) of the best window, or None if nothing passes.
    """
    claimed = list(exclude)
    windows = [
        w
        for w in token_windows(tokens, len(variant.split()))
        if not span_inside_any((w[0], w[1]), claimed)
    ]
    if not windows:
        return None

    result = process.extractOne(
        variant,
        [w[2] for w in windows],
        scorer=fuzz.ratio,
        score_cutoff=threshold,
    )
    if not result:
        return None

    _match, score, idx = result
    start, end, _text = windows[idx]
    return float(score), start, end
