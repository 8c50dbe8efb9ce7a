"""
Word-level diffing.

Texts are tokenized into runs of word characters, punctuation and whitespace,
each distinct token is encoded as a single character, and diff-match-patch
runs on the encoded strings. The result reads like a human redline ("Fee" ->
"Price") instead of character noise ("F{-ee-}{+rice+}").
"""

import re
from typing import Dict, List, Optional, Sequence, Tuple

import structlog
from diff_match_patch import diff_match_patch

from redmerge.config import get_settings
from redmerge.exceptions import DiffApplicationError
from redmerge.models import DeleteOperation, DiffOperation, DiffStats, InsertOperation, ReplaceOperation

logger = structlog.get_logger(__name__)

DIFF_DELETE = diff_match_patch.DIFF_DELETE
DIFF_INSERT = diff_match_patch.DIFF_INSERT
DIFF_EQUAL = diff_match_patch.DIFF_EQUAL

TOKEN_PATTERN = re.compile(r"\w+|[^\w\s]+|\s+")

Diff = Tuple[int, str]


def tokenize(text: str) -> List[str]:
    """
    Splits text into maximal runs of word chars, punctuation, or whitespace.
    Lossless: "".join(tokenize(t)) == t.
    """
    if not text:
        return []
    return TOKEN_PATTERN.findall(text)


def _words_to_chars(text1: str, text2: str) -> Tuple[str, str, List[str]]:
    """
    Encodes each distinct token as one unicode character (shared alphabet for
    both texts). Index 0 is a junk entry so that no token encodes to NUL.
    """
    token_array: List[str] = [""]
    token_hash: Dict[str, int] = {}

    def encode_text(text: str) -> str:
        encoded_chars = []
        for token in tokenize(text):
            code = token_hash.get(token)
            if code is None:
                code = len(token_array)
                token_hash[token] = code
                token_array.append(token)
            encoded_chars.append(chr(code))
        return "".join(encoded_chars)

    chars1 = encode_text(text1)
    chars2 = encode_text(text2)
    return chars1, chars2, token_array


def compute_word_diff(text1: str, text2: str, timeout: Optional[float] = None) -> List[Diff]:
    """
    Returns diff-match-patch tuples (op, text) at word granularity, after
    semantic cleanup.
    """
    dmp = diff_match_patch()
    dmp.Diff_Timeout = get_settings().diff_timeout if timeout is None else timeout

    # 1. Word-level tokenization & encoding
    chars1, chars2, token_array = _words_to_chars(text1, text2)

    # 2. Diff the encoded strings
    diffs = dmp.diff_main(chars1, chars2, False)

    # 3. Semantic cleanup
    dmp.diff_cleanupSemantic(diffs)

    # 4. Decode back to text
    dmp.diff_charsToLines(diffs, token_array)
    return diffs


def get_diff_stats(text1: str, text2: str) -> DiffStats:
    """Token counts inserted / deleted / unchanged between two texts."""
    stats = DiffStats()
    for op, text in compute_word_diff(text1, text2):
        tokens = len(tokenize(text))
        if op == DIFF_EQUAL:
            stats.unchanged += tokens
        elif op == DIFF_DELETE:
            stats.deletions += tokens
        else:
            stats.insertions += tokens
    return stats


def rewrite_ratio(diffs: Sequence[Diff]) -> float:
    """
    Share of changed characters: 0.0 = no change, 1.0 = total rewrite.
    Used to flag replacements that rewrite far more than they needed to.
    """
    total_old = sum(len(t) for op, t in diffs if op <= 0)  # EQUAL + DELETE
    changed = sum(len(t) for op, t in diffs if op != 0)  # DELETE + INSERT
    if total_old == 0:
        return 0.0
    return changed / (total_old * 2)


def diff_to_operations(original_text: str, new_text: str) -> List[DiffOperation]:
    """
    Converts the word diff into operations anchored to offsets in original_text.

    A delete immediately followed by an insert becomes one replace. Apply the
    result with apply_operations (descending position order); ascending order
    would shift the offsets of not-yet-applied operations.
    """
    operations: List[DiffOperation] = []
    cursor = 0
    pending_delete: Optional[Tuple[int, str]] = None

    for op, text in compute_word_diff(original_text, new_text):
        if op == DIFF_EQUAL:
            if pending_delete:
                operations.append(DeleteOperation(position=pending_delete[0], text=pending_delete[1]))
                pending_delete = None
            cursor += len(text)

        elif op == DIFF_DELETE:
            # Defer: an immediate insert turns this into a replace
            if pending_delete:
                operations.append(DeleteOperation(position=pending_delete[0], text=pending_delete[1]))
            pending_delete = (cursor, text)
            cursor += len(text)

        elif op == DIFF_INSERT:
            if pending_delete:
                idx, del_text = pending_delete
                operations.append(ReplaceOperation(position=idx, delete_text=del_text, insert_text=text))
                pending_delete = None
            else:
                operations.append(InsertOperation(position=cursor, text=text))

    if pending_delete:
        operations.append(DeleteOperation(position=pending_delete[0], text=pending_delete[1]))

    return operations


def consumed_text(operation: DiffOperation) -> str:
    if isinstance(operation, ReplaceOperation):
        return operation.delete_text
    if isinstance(operation, DeleteOperation):
        return operation.text
    return ""


def inserted_text(operation: DiffOperation) -> str:
    if isinstance(operation, ReplaceOperation):
        return operation.insert_text
    if isinstance(operation, InsertOperation):
        return operation.text
    return ""


def order_for_application(operations: Sequence[DiffOperation]) -> List[DiffOperation]:
    """
    Descending position. At equal positions, operations that consume text run
    before pure inserts so the insert lands in front of the replacement.
    """
    return sorted(operations, key=lambda o: (o.position, bool(consumed_text(o))), reverse=True)


def apply_operations(original_text: str, operations: Sequence[DiffOperation]) -> str:
    """
    Applies operations to original_text in safe order. Every consumed span is
    checked against the text; a mismatch raises DiffApplicationError.
    """
    result = original_text
    for operation in order_for_application(operations):
        pos = operation.position
        if pos < 0 or pos > len(result):
            raise DiffApplicationError("Operation position out of range", pos)

        removed = consumed_text(operation)
        if removed and result[pos : pos + len(removed)] != removed:
            raise DiffApplicationError(
                f"Expected {removed[:30]!r}, found {result[pos : pos + len(removed)][:30]!r}",
                pos,
            )

        result = result[:pos] + inserted_text(operation) + result[pos + len(removed) :]
    return result
