"""
Tests for application ordering.

Run: python3 test_sorting.py
"""

import sys

sys.path.insert(0, '.')

from redmerge.models import Block, DocumentIR, EditBatch
from redmerge.sorting import sort_edits_for_application, sort_indexed_edits


def _ir_at(positions):
    blocks = []
    for i, pos in enumerate(positions, start=1):
        text = "The Supplier shall deliver the Goods."
        blocks.append(Block(id=f"h{i}", seq_id=f"b{i:03d}", text=text, start_pos=pos, end_pos=pos + len(text) + 1))
    return DocumentIR(blocks=blocks)


def test_descending_block_positions():
    ir = _ir_at([10, 50, 5, 80])
    edits = EditBatch(
        edits=[{"operation": "comment", "blockId": f"b{i:03d}", "comment": "x"} for i in range(1, 5)]
    ).edits
    ordered = sort_edits_for_application(edits, ir)
    positions = [ir.get_block(e.target).start_pos for e in ordered]
    assert positions == [80, 50, 10, 5]
    print("PASS: blocks at [10, 50, 5, 80] apply in order [80, 50, 10, 5]")


def test_input_left_untouched():
    ir = _ir_at([0, 100])
    edits = EditBatch(
        edits=[
            {"operation": "delete", "blockId": "b001"},
            {"operation": "delete", "blockId": "b002"},
        ]
    ).edits
    before = list(edits)
    sort_edits_for_application(edits, ir)
    assert edits == before
    print("PASS: sorting returns a new list")


def test_within_block_rightmost_first():
    ir = _ir_at([0])
    edits = EditBatch(
        edits=[
            {"operation": "highlight", "blockId": "b001", "findText": "Supplier"},
            {"operation": "replace", "blockId": "b001", "newText": "Replaced."},
            {"operation": "insertAfterText", "blockId": "b001", "findText": "Goods", "insertText": " and Services"},
        ]
    ).edits
    ordered = [i for i, _ in sort_indexed_edits(edits, ir)]
    # Goods (offset 31) before Supplier (offset 4); the whole-block replace goes last
    assert ordered == [2, 0, 1]
    print("PASS: within a block, the rightmost anchor applies first")


def test_insert_after_block_goes_before_block_edits():
    ir = _ir_at([0])
    edits = EditBatch(
        edits=[
            {"operation": "comment", "blockId": "b001", "comment": "x", "findText": "Goods"},
            {"operation": "insert", "afterBlockId": "b001", "text": "New clause."},
        ]
    ).edits
    assert [i for i, _ in sort_indexed_edits(edits, ir)] == [1, 0]
    print("PASS: an insert after a block sorts ahead of edits inside it")


def test_ties_keep_submission_order_and_unknown_last():
    ir = _ir_at([0, 100])
    edits = EditBatch(
        edits=[
            {"operation": "comment", "blockId": "b999", "comment": "lost"},
            {"operation": "comment", "blockId": "b002", "comment": "first"},
            {"operation": "comment", "blockId": "b002", "comment": "second"},
        ]
    ).edits
    ordered = [i for i, _ in sort_indexed_edits(edits, ir)]
    assert ordered == [1, 2, 0]
    print("PASS: ties stay stable and unknown blocks sort last")


if __name__ == "__main__":
    tests = [
        test_descending_block_positions,
        test_input_left_untouched,
        test_within_block_rightmost_first,
        test_insert_after_block_goes_before_block_edits,
        test_ties_keep_submission_order_and_unknown_last,
    ]

    passed = 0
    failed = 0
    for test in tests:
        try:
            test()
            passed += 1
        except Exception as e:
            print(f"FAIL: {test.__name__}: {e}")
            import traceback
            traceback.print_exc()
            failed += 1

    print(f"\n{'='*60}")
    print(f"Results: {passed} passed, {failed} failed out of {len(tests)} tests")
    if failed == 0:
        print("ALL TESTS PASSED")
    else:
        print("SOME TESTS FAILED")
