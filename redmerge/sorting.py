"""
Application order for a batch.

Edits at later document positions run first, and within one block the edit
anchored further right runs first, so applying an edit never moves the text
an earlier-positioned edit still has to find.
"""

from typing import List, Sequence, Tuple

from redmerge.fuzzy import find_text
from redmerge.models import DocumentIR, EditInstruction, InsertEdit

IndexedEdit = Tuple[int, EditInstruction]

UNKNOWN_POSITION = -1
WHOLE_BLOCK_OFFSET = -1


def sort_key(edit: EditInstruction, ir: DocumentIR) -> Tuple[int, int]:
    """(block start position, intra-block offset); both sorted descending."""
    block = ir.get_block(edit.target)
    if block is None:
        return UNKNOWN_POSITION, WHOLE_BLOCK_OFFSET

    if isinstance(edit, InsertEdit):
        # New content lands after everything in the anchor block
        return block.start_pos, len(block.text) + 1

    anchor = edit.anchor_text
    if anchor:
        match = find_text(block.text, anchor)
        if match is not None:
            return block.start_pos, match.start
    return block.start_pos, WHOLE_BLOCK_OFFSET


def sort_indexed_edits(edits: Sequence[EditInstruction], ir: DocumentIR) -> List[IndexedEdit]:
    """
    Sorts (original index, edit) pairs for application. Stable: ties keep
    submission order. Edits whose block is unknown go last.
    """
    return sorted(enumerate(edits), key=lambda pair: sort_key(pair[1], ir), reverse=True)


def sort_edits_for_application(edits: Sequence[EditInstruction], ir: DocumentIR) -> List[EditInstruction]:
    """Returns a new list; the input is left untouched."""
    return [edit for _, edit in sort_indexed_edits(edits, ir)]
