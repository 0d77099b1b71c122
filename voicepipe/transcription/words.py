"""Transcript post-processing: marker cleanup and custom word correction."""

import re

_EOU_PATTERN = re.compile(r"<\|endoftext\|>|\bEOU\b")
_TOKEN_PATTERN = re.compile(r"^(\W*)(.*?)(\W*)$")


def clean_transcript(text: str) -> str:
    """Strip end-of-utterance markers and collapse whitespace."""
    return " ".join(_EOU_PATTERN.sub(" ", text).split())


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            current.append(min(
                previous[j] + 1,
                current[j - 1] + 1,
                previous[j - 1] + (ca != cb),
            ))
        previous = current
    return previous[-1]


def _closest(word: str, custom_words: list[str]) -> tuple[str, float]:
    best, best_score = word, 1.0
    lowered = word.lower()
    for candidate in custom_words:
        target = candidate.lower()
        score = levenshtein(lowered, target) / max(len(lowered), len(target))
        if score < best_score:
            best, best_score = candidate, score
    return best, best_score


def apply_custom_words(text: str, custom_words: list[str], threshold: float = 0.18) -> str:
    """Replace words that nearly match a custom word with that word.

    A word matches when its edit distance to the custom word, divided by
    the longer length, is at most threshold. Leading and trailing
    punctuation is kept.
    """
    if not custom_words or not text:
        return text

    corrected = []
    for token in text.split():
        prefix, core, suffix = _TOKEN_PATTERN.match(token).groups()
        if core:
            replacement, score = _closest(core, custom_words)
            if score <= threshold:
                core = replacement
        corrected.append(f"{prefix}{core}{suffix}")
    return " ".join(corrected)
