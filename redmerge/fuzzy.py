"""
Locating a span of text inside one block.

Tries progressively looser strategies: exact, normalized (smart quotes and
non-breaking spaces folded to ASCII), then a tolerant regex.
"""

import re
from typing import Literal, NamedTuple, Optional

import structlog

logger = structlog.get_logger(__name__)

MatchTier = Literal["exact", "normalized", "fuzzy"]

# 1:1 character folds, so offsets in the normalized text equal offsets in the original.
_CHAR_FOLDS = str.maketrans(
    {
        "\u201c": '"',
        "\u201d": '"',
        "\u2018": "'",
        "\u2019": "'",
        "\u00a0": " ",
        "\u2007": " ",
        "\u202f": " ",
    }
)


class TextMatch(NamedTuple):
    start: int
    end: int
    matched_text: str
    tier: MatchTier


def normalize_text(text: str) -> str:
    """Folds smart quotes and non-breaking spaces to ASCII, preserving length."""
    return text.translate(_CHAR_FOLDS)


def make_fuzzy_regex(target_text: str) -> str:
    """
    Constructs a regex pattern that permits:
    - Variable whitespace (\\s+)
    - Variable underscores (_+)
    - Smart quote variation
    - Intervening Markdown formatting (*, _, #, `)
    """
    target_text = normalize_text(target_text)

    token_pattern = re.compile(r"(_+)|(\s+)|(['\"])")

    # Zero or more formatting markers; whitespace only when attached to a marker ("## ")
    markdown_noise = r"(?:[\*_#`]+[ \t]*)*"

    parts = [markdown_noise]
    last_idx = 0
    for match in token_pattern.finditer(target_text):
        literal = target_text[last_idx : match.start()]
        if literal:
            parts.append(re.escape(literal))

        g_underscore, g_space, g_quote = match.groups()
        parts.append(markdown_noise)
        if g_underscore:
            parts.append(r"_+")
        elif g_space:
            parts.append(r"\s+")
        elif g_quote == "'":
            parts.append(r"['‘’]")
        else:
            parts.append(r"[\"“”]")
        parts.append(markdown_noise)

        last_idx = match.end()

    remaining = target_text[last_idx:]
    if remaining:
        parts.append(re.escape(remaining))
        parts.append(markdown_noise)

    return "".join(parts)


def find_text(text: str, target: str) -> Optional[TextMatch]:
    """
    Finds target in text. Returns None when nothing matches; callers treat
    that as an ordinary per-instruction outcome.
    """
    if not target or not text:
        return None

    # 1. Exact
    idx = text.find(target)
    if idx != -1:
        return TextMatch(idx, idx + len(target), target, "exact")

    # 2. Normalized
    idx = normalize_text(text).find(normalize_text(target))
    if idx != -1:
        end = idx + len(target)
        return TextMatch(idx, end, text[idx:end], "normalized")

    # 3. Tolerant regex
    try:
        match = re.search(make_fuzzy_regex(target), text)
    except re.error as e:
        logger.debug("Fuzzy pattern failed to compile", target=target[:40], error=str(e))
        return None

    # The noise group can match an empty string at any offset; an empty match is no match
    if match and match.end() > match.start():
        return TextMatch(match.start(), match.end(), match.group(0), "fuzzy")
    return None
