"""
End-to-end tests for applying edit batches, using the Markdown engine so the
tracked output is readable CriticMarkup.

Run: python3 test_applicator.py
"""

import sys

sys.path.insert(0, '.')

from redmerge.applicator import EditApplicator, apply_edits
from redmerge.exceptions import EditBatchError
from redmerge.markup import MarkupEngine
from redmerge.models import ApplyOptions, Author

DOC = (
    "# Agreement\n"
    "\n"
    "The Supplier shall deliver the Goods.\n"
    "\n"
    "- First item\n"
    "- Second item\n"
    "\n"
    "Payment is due in 30 days.\n"
).encode("utf-8")

# b001 heading, b002 paragraph, b003/b004 list items, b005 paragraph


def _options(**kwargs):
    kwargs.setdefault("format", "markup")
    kwargs.setdefault("author", Author(name="Reviewer"))
    return ApplyOptions(**kwargs)


def _run(edits, **kwargs):
    result, output = apply_edits(DOC, {"edits": edits}, _options(**kwargs))
    return result, output.decode("utf-8") if output is not None else None


def test_replace_uses_word_diff():
    result, out = _run([{"operation": "replace", "blockId": "b002", "newText": "The Supplier shall deliver the Products."}])
    assert result.success
    assert result.applied == 1
    assert "the {--Goods--}{++Products++}." in out
    stats = result.details[0].diff_stats
    assert stats.deletions == 1 and stats.insertions == 1
    print("PASS: replace produces a word-level tracked change")


def test_replace_without_diff_swaps_whole_text():
    result, out = _run(
        [{"operation": "replace", "blockId": "b005", "newText": "Payment is due in 60 days.", "diff": False}]
    )
    assert result.success
    assert "{--Payment is due in 30 days.--}{++Payment is due in 60 days.++}" in out
    print("PASS: diff=false replaces the whole block")


def test_untracked_replace():
    result, out = _run(
        [{"operation": "replace", "blockId": "b002", "newText": "The Supplier shall deliver the Products."}],
        track_changes=False,
    )
    assert result.success
    assert "The Supplier shall deliver the Products." in out
    assert "{--" not in out and "{++" not in out
    print("PASS: untracked mode edits text directly")


def test_delete_and_insert_blocks():
    result, out = _run(
        [
            {"operation": "delete", "blockId": "b004"},
            {"operation": "insert", "afterBlockId": "b003", "text": "New item", "type": "listItem"},
        ]
    )
    assert result.success, result.skipped
    assert "- {--Second item--}" in out
    assert "- First item\n{++- New item++}\n- {--Second item--}" in out
    assert result.details[1].new_block_id
    print("PASS: blocks are deleted and inserted as tracked changes")


def test_span_operations_in_one_block():
    result, out = _run(
        [
            {"operation": "highlight", "blockId": "b002", "findText": "Supplier"},
            {"operation": "insertAfterText", "blockId": "b002", "findText": "Goods", "insertText": " and Services"},
        ]
    )
    assert result.success
    assert "The {==Supplier==} shall deliver the Goods{++ and Services++}." in out
    print("PASS: span edits in one block apply without shifting each other")


def test_comments_and_comment_highlight():
    result, out = _run(
        [
            {"operation": "comment", "blockId": "b005", "comment": "Too short?"},
            {"operation": "commentHighlight", "blockId": "b002", "findText": "Goods", "comment": "Define Goods"},
            {"operation": "commentRange", "blockId": "b001", "findText": "Agreement", "comment": "Title ok"},
        ]
    )
    assert result.success
    assert "Payment is due in 30 days.{>>Too short?<<}" in out
    assert "the {==Goods==}{>>Define Goods<<}." in out
    assert "# {==Agreement==}{>>Title ok<<}" in out
    assert len(result.comments) == 3
    assert all(c.author == "Reviewer" for c in result.comments)
    print("PASS: comments attach to blocks and spans")


def test_comment_find_text_missing_falls_back_to_block():
    result, out = _run([{"operation": "comment", "blockId": "b002", "findText": "Services", "comment": "Note"}])
    assert result.success
    assert "Goods.{>>Note<<}" in out
    assert any("whole block" in w.message for w in result.warnings)
    print("PASS: comment with unmatched findText attaches to the whole block")


def test_highlight_find_text_missing_is_skipped():
    result, out = _run(
        [
            {"operation": "highlight", "blockId": "b002", "findText": "Services"},
            {"operation": "delete", "blockId": "b005"},
        ]
    )
    assert not result.success
    assert result.applied == 1
    assert result.skipped[0].index == 0
    assert "not found" in result.skipped[0].reason
    assert "{--Payment is due in 30 days.--}" in out
    print("PASS: span edit with unmatched findText is skipped, the rest applies")


def test_invalid_edits_skipped_with_original_indices():
    result, out = _run(
        [
            {"operation": "comment", "blockId": "b002", "comment": "ok"},
            {"operation": "replace", "blockId": "b999", "newText": "Nowhere."},
            {"operation": "frobnicate", "blockId": "b002"},
            {"operation": "delete", "blockId": "b005"},
        ]
    )
    assert result.applied == 2
    assert [s.index for s in result.skipped] == [1, 2]
    assert "not found" in result.skipped[0].reason
    assert "Unknown operation" in result.skipped[1].reason
    assert [d.index for d in result.details] == [0, 3]
    print("PASS: skips and details refer to submission indices")


def test_delete_then_reference_is_skipped():
    result, out = _run(
        [
            {"operation": "delete", "blockId": "b002"},
            {"operation": "comment", "blockId": "b002", "comment": "x"},
        ]
    )
    assert result.applied == 1
    assert result.skipped[0].index == 1
    assert "deleted" in result.skipped[0].reason
    print("PASS: reference to a block deleted earlier in the batch is skipped")


def test_all_or_nothing_aborts():
    result, output = apply_edits(
        DOC,
        {"edits": [{"operation": "delete", "blockId": "b001"}, {"operation": "delete", "blockId": "b999"}]},
        _options(all_or_nothing=True),
    )
    assert output is None
    assert result.state == "failed"
    assert result.applied == 0
    assert not result.validation.valid
    print("PASS: all-or-nothing run stops on a blocking issue")


def test_truncated_replacement_is_rejected():
    result, out = _run([{"operation": "replace", "blockId": "b002", "newText": "The Supplier shall deliver..."}])
    assert result.applied == 0
    assert "truncated" in result.skipped[0].reason
    assert "The Supplier shall deliver the Goods." in out
    print("PASS: truncated replacement text is rejected")


def test_heavy_rewrite_warns():
    result, out = _run([{"operation": "replace", "blockId": "b005", "newText": "Invoices settle quarterly."}])
    assert result.success
    assert any("rewrites" in w.message for w in result.warnings)
    print("PASS: heavy rewrite is applied with a warning")


def test_replace_with_comment():
    result, out = _run(
        [{"operation": "replace", "blockId": "b005", "newText": "Payment is due in 60 days.", "comment": "Longer term"}]
    )
    assert result.success
    assert result.details[0].comment_id == "1"
    assert "{>>Longer term<<}" in out
    print("PASS: replace can carry a comment")


def test_phases_and_state():
    batch = {"edits": [{"operation": "delete", "blockId": "b004"}]}
    with EditApplicator(DOC, batch, _options()) as run:
        assert run.state.value == "loaded"
        run.validate()
        run.sort()
        run.apply()
        try:
            run.apply()
        except RuntimeError:
            pass
        else:
            raise AssertionError("Expected RuntimeError on repeated apply")
        run.export()
        assert run.result.state == "exported"
    print("PASS: phases run in order and cannot repeat")


def test_batch_author_used_when_options_have_none():
    result, _ = apply_edits(
        DOC,
        {"author": {"name": "Agent Smith"}, "edits": [{"operation": "comment", "blockId": "b002", "comment": "x"}]},
        ApplyOptions(format="markup"),
    )
    assert result.comments[0].author == "Agent Smith"
    print("PASS: batch author is used when options carry none")


class _FailingCommentEngine(MarkupEngine):
    def add_comment(self, handle, block, text, span=None):
        raise RuntimeError("comment store unavailable")


class _FailingExtractionEngine(MarkupEngine):
    def __init__(self, track_changes=True):
        super().__init__(track_changes)
        self.destroyed = []

    def enumerate_blocks(self, handle):
        raise RuntimeError("cannot enumerate")

    def destroy(self, handle):
        self.destroyed.append(handle)
        super().destroy(handle)


def test_unexpected_engine_error_skips_one_edit():
    edits = [
        {"operation": "comment", "blockId": "b002", "comment": "ok"},
        {"operation": "replace", "blockId": "b005", "newText": "Payment is due in 60 days."},
    ]
    result, output = apply_edits(
        DOC, {"edits": edits}, _options(), engine_factory=lambda fmt, track: _FailingCommentEngine(track)
    )
    assert result.applied == 1
    assert [s.index for s in result.skipped] == [0]
    assert result.skipped[0].reason == "RuntimeError: comment store unavailable"
    assert "{--30--}{++60++}" in output.decode("utf-8")
    print("PASS: an engine exception skips its edit and the batch carries on")


def test_session_released_when_extraction_fails():
    engine = _FailingExtractionEngine()
    try:
        EditApplicator(DOC, {"edits": []}, _options(), engine_factory=lambda fmt, track: engine)
    except RuntimeError:
        pass
    else:
        raise AssertionError("Expected RuntimeError from block extraction")
    assert len(engine.destroyed) == 1
    assert engine._sessions == {}
    print("PASS: the loaded document is released when extraction fails")


def test_bad_batch_raises():
    try:
        apply_edits(DOC, {"edits": "not a list"}, _options())
    except EditBatchError:
        print("PASS: malformed batch raises EditBatchError")
        return
    raise AssertionError("Expected EditBatchError")


if __name__ == "__main__":
    tests = [
        test_replace_uses_word_diff,
        test_replace_without_diff_swaps_whole_text,
        test_untracked_replace,
        test_delete_and_insert_blocks,
        test_span_operations_in_one_block,
        test_comments_and_comment_highlight,
        test_comment_find_text_missing_falls_back_to_block,
        test_highlight_find_text_missing_is_skipped,
        test_invalid_edits_skipped_with_original_indices,
        test_delete_then_reference_is_skipped,
        test_all_or_nothing_aborts,
        test_truncated_replacement_is_rejected,
        test_heavy_rewrite_warns,
        test_replace_with_comment,
        test_phases_and_state,
        test_batch_author_used_when_options_have_none,
        test_bad_batch_raises,
        test_unexpected_engine_error_skips_one_edit,
        test_session_released_when_extraction_fails,
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
