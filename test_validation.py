"""
Tests for edit validation: replacement text checks, structural checks and
ordering checks within one batch.

Run: python3 test_validation.py
"""

import sys

sys.path.insert(0, '.')

from redmerge.config import Settings
from redmerge.models import Block, DocumentIR, EditBatch, parse_edit
from redmerge.validation import validate_batch, validate_edits, validate_merged_edits, validate_new_text


def _ir(*texts, toc=()):
    blocks = []
    pos = 0
    for i, text in enumerate(texts, start=1):
        blocks.append(
            Block(
                id=f"h{i}",
                seq_id=f"b{i:03d}",
                text=text,
                start_pos=pos,
                end_pos=pos + len(text) + 1,
                is_toc=i in toc,
            )
        )
        pos += len(text) + 1
    return DocumentIR(blocks=blocks)


def test_ellipsis_truncation_is_error():
    check = validate_new_text("The price is £500, payable on demand.", "The price is £500...")
    assert check.severity == "error"
    assert not check.valid
    assert "ellipsis" in check.reason
    print("PASS: trailing ellipsis is a truncation error")


def test_trailing_comma_kept_from_original():
    check = validate_new_text("item one,", "item two,")
    assert check.valid
    assert not any("comma" in e for e in check.errors)
    print("PASS: trailing comma is fine when the original ends with one")


def test_trailing_comma_added_is_error():
    check = validate_new_text("Payment is due in full.", "Payment is due in full,")
    assert check.severity == "error"
    assert "comma" in check.reason
    print("PASS: new trailing comma is a truncation error")


def test_open_bracket_and_quote():
    assert validate_new_text("Fees apply.", "Fees apply (").severity == "error"
    assert "quote" in validate_new_text("He said hello.", 'He said "hello').reason
    print("PASS: open bracket and unterminated quote are truncation errors")


def test_empty_new_text_is_deletion():
    check = validate_new_text("Anything at all.", "")
    assert check.valid and check.severity == "ok" and check.findings == []
    print("PASS: empty new text passes as a deletion")


def test_reduction_warning_and_override():
    original = "The Supplier shall deliver the Goods to the Customer within thirty days of the order."
    check = validate_new_text(original, "Supplier delivers.")
    assert check.valid
    assert check.severity == "warning"
    assert any("%" in w for w in check.warnings)

    check = validate_new_text(original, "Supplier delivers.", allow_reduction=True)
    assert check.severity == "ok"
    print("PASS: large reduction warns unless allowed")


def test_short_original_skips_reduction():
    check = validate_new_text("Short text here.", "Short.")
    assert check.severity == "ok"
    print("PASS: originals under the minimum length are not checked for reduction")


def test_dangling_ending_warns():
    check = validate_new_text("The Supplier shall deliver the Goods.", "The Supplier shall deliver the Goods and")
    assert check.valid
    assert any("mid-word" in w for w in check.warnings)
    print("PASS: dangling ending is a warning")


def test_corruption_is_error():
    check = validate_new_text("See clause 3.2 for payment terms.", "See clause 3.2$500 for payment terms.")
    assert not check.valid
    assert any("corruption" in e for e in check.errors)
    print("PASS: clause number fused with currency is a corruption error")


def test_currency_with_letter_prefix_is_corruption():
    check = validate_new_text("The sum of £500, clause 4.3.", "The sum of 4.3S$500")
    assert not check.valid
    assert check.severity == "error"
    assert any("corruption" in e for e in check.errors)
    print("PASS: clause number fused with a prefixed currency symbol is a corruption error")


def test_missing_block_and_unparsed_edit():
    ir = _ir("First clause.", "Second clause.")
    batch = EditBatch(
        edits=[
            {"operation": "replace", "blockId": "b009", "newText": "x."},
            {"operation": "replace", "blockId": "b001"},
            {"operation": "rewrite", "blockId": "b001"},
            {"operation": "insert", "afterBlockId": "b777", "text": "New."},
            {"operation": "comment", "blockId": "b002", "comment": "Check this."},
        ]
    )
    result = validate_edits(batch.edits, ir)
    assert not result.valid
    types = {(i.edit_index, i.type) for i in result.issues}
    assert (0, "missing_block") in types
    assert (1, "missing_field") in types
    assert (2, "invalid_operation") in types
    assert (3, "missing_block") in types
    assert all(i.edit_index != 4 for i in result.issues)
    assert result.summary.invalid_edits == 4
    assert result.summary.valid_edits == 1
    assert "Anchor block" in [i for i in result.issues if i.edit_index == 3][0].message
    print("PASS: structural issues are reported per index")


def test_block_lookup_by_handle():
    ir = _ir("First clause.")
    result = validate_edits(EditBatch(edits=[{"operation": "delete", "blockId": "h1"}]).edits, ir)
    assert result.valid
    print("PASS: instructions may target a block by handle")


def test_find_text_not_found_warns_and_strict_promotes():
    ir = _ir("The Supplier shall deliver the Goods.")
    edits = EditBatch(
        edits=[{"operation": "highlight", "blockId": "b001", "findText": "the Services"}]
    ).edits
    relaxed = validate_edits(edits, ir)
    assert relaxed.valid
    assert relaxed.warnings[0].type == "find_text_not_found"

    strict = validate_edits(edits, ir, strict=True)
    assert not strict.valid
    assert strict.issues[0].severity == "error"
    print("PASS: findText miss warns, strict mode blocks")


def test_toc_block_warns():
    ir = _ir("1. Definitions ........ 3", "Body text.", toc=(1,))
    result = validate_edits(EditBatch(edits=[{"operation": "delete", "blockId": "b001"}]).edits, ir)
    assert result.valid
    assert result.warnings[0].type == "toc_block"
    print("PASS: edits to table-of-contents blocks warn")


def test_reduction_threshold_from_settings():
    original = "The Supplier shall deliver the Goods to the Customer within thirty days of the order."
    ir = _ir(original)
    edits = EditBatch(edits=[{"operation": "replace", "blockId": "b001", "newText": "Supplier delivers."}]).edits
    assert validate_edits(edits, ir).warnings
    assert not validate_edits(edits, ir, settings=Settings(reduction_threshold=0.1)).warnings
    print("PASS: reduction threshold comes from settings")


def test_delete_then_reference():
    batch = EditBatch(
        edits=[
            {"operation": "delete", "blockId": "b001"},
            {"operation": "comment", "blockId": "b001", "comment": "x"},
        ]
    )
    result = validate_merged_edits(batch.edits)
    assert not result.valid
    assert len(result.issues) == 1
    assert result.issues[0].edit_index == 1
    assert result.issues[0].type == "delete_then_reference"
    print("PASS: reference after delete reported at the later index")


def test_insert_anchored_on_deleted_block():
    batch = EditBatch(
        edits=[
            {"operation": "delete", "blockId": "b002"},
            {"operation": "insert", "afterBlockId": "b002", "text": "New clause."},
        ]
    )
    result = validate_merged_edits(batch.edits)
    assert result.issues[0].type == "anchor_deleted"
    print("PASS: insert anchored on a deleted block is reported")


def test_reference_before_delete_is_fine():
    batch = EditBatch(
        edits=[
            {"operation": "comment", "blockId": "b001", "comment": "x"},
            {"operation": "delete", "blockId": "b001"},
        ]
    )
    assert validate_merged_edits(batch.edits).valid
    print("PASS: reference before delete is allowed")


def test_repeated_delete_is_not_a_reference():
    batch = EditBatch(
        edits=[
            {"operation": "delete", "blockId": "b001"},
            {"operation": "delete", "blockId": "b001"},
        ]
    )
    assert validate_merged_edits(batch.edits).valid

    batch.edits.append(parse_edit({"operation": "comment", "blockId": "b001", "comment": "x"}))
    result = validate_merged_edits(batch.edits)
    assert [(i.edit_index, i.type) for i in result.issues] == [(2, "delete_then_reference")]
    assert "deleted by edit 0" in result.issues[0].message
    print("PASS: a second delete of the same block is not a reference")


def test_control_characters_are_rejected():
    ir = _ir("First clause.", "Second clause.")
    batch = EditBatch(
        edits=[
            {"operation": "replace", "blockId": "b001", "newText": "First\x0bclause."},
            {"operation": "comment", "blockId": "b002", "comment": "ok"},
            {"operation": "comment", "blockId": "b002", "comment": "bell\x07"},
        ]
    )
    result = validate_edits(batch.edits, ir)
    assert result.blocking_indices() == [0, 2]
    assert {i.type for i in result.issues} == {"invalid_characters"}
    assert "newText" in result.issues[0].message
    print("PASS: control characters that XML cannot store are rejected")


def test_validate_batch_combines_checks():
    ir = _ir("First clause.", "Second clause.")
    batch = EditBatch(
        edits=[
            {"operation": "delete", "blockId": "b001"},
            {"operation": "replace", "blockId": "b001", "newText": "First clause, amended."},
            {"operation": "replace", "blockId": "b404", "newText": "Nowhere."},
        ]
    )
    result = validate_batch(batch.edits, ir)
    assert not result.valid
    assert result.blocking_indices() == [1, 2]
    # Unknown block is reported once, not once per check
    assert len([i for i in result.issues if i.edit_index == 2]) == 1
    assert result.summary.invalid_edits == 2
    print("PASS: validate_batch merges content and ordering checks")


if __name__ == "__main__":
    tests = [
        test_ellipsis_truncation_is_error,
        test_trailing_comma_kept_from_original,
        test_trailing_comma_added_is_error,
        test_open_bracket_and_quote,
        test_empty_new_text_is_deletion,
        test_reduction_warning_and_override,
        test_short_original_skips_reduction,
        test_dangling_ending_warns,
        test_corruption_is_error,
        test_currency_with_letter_prefix_is_corruption,
        test_missing_block_and_unparsed_edit,
        test_block_lookup_by_handle,
        test_find_text_not_found_warns_and_strict_promotes,
        test_toc_block_warns,
        test_reduction_threshold_from_settings,
        test_delete_then_reference,
        test_insert_anchored_on_deleted_block,
        test_reference_before_delete_is_fine,
        test_repeated_delete_is_not_a_reference,
        test_control_characters_are_rejected,
        test_validate_batch_combines_checks,
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
