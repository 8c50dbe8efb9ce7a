"""
Tests for the DOCX engine: tracked changes, comments and highlights written
as OOXML, checked by re-opening the saved document.

Run: python3 test_docx_engine.py
"""

import sys
from io import BytesIO

sys.path.insert(0, '.')

from docx import Document
from docx.oxml import OxmlElement
from docx.oxml.ns import qn

from redmerge.applicator import apply_edits
from redmerge.exceptions import DocumentLoadError
from redmerge.ir import extract_ir_from_bytes
from redmerge.models import ApplyOptions, Author
from redmerge.redline.engine import LOCKED_CONTENT_ERROR, DocxEngine


def _append_hyperlink(p, text: str):
    hyperlink = OxmlElement("w:hyperlink")
    run = OxmlElement("w:r")
    t = OxmlElement("w:t")
    t.text = text
    run.append(t)
    hyperlink.append(run)
    p._p.append(hyperlink)


def _build_doc() -> bytes:
    """b001 heading, b002 paragraph, b003 list item, b004/b005 table cells, b006 paragraph, b007 hyperlink"""
    doc = Document()
    doc.add_heading("Agreement", level=1)
    doc.add_paragraph("The Supplier shall deliver the Goods.")
    doc.add_paragraph("First item", style="List Bullet")
    table = doc.add_table(rows=1, cols=2)
    table.cell(0, 0).text = "Fee"
    table.cell(0, 1).text = "USD 100"
    doc.add_paragraph("Payment is due in 30 days.")

    _append_hyperlink(doc.add_paragraph("Click "), "here")

    buf = BytesIO()
    doc.save(buf)
    return buf.getvalue()


DOC = _build_doc()


def _apply(edits, **kwargs):
    kwargs.setdefault("format", "docx")
    kwargs.setdefault("author", Author(name="Reviewer"))
    return apply_edits(DOC, {"edits": edits}, ApplyOptions(**kwargs))


def _body(data: bytes):
    return Document(BytesIO(data)).element.body


def _texts(data: bytes):
    return [b.text for b in extract_ir_from_bytes(data, format="docx").blocks]


def test_tracked_replace():
    result, out = _apply([{"operation": "replace", "blockId": "b002", "newText": "The Supplier shall deliver the Products."}])
    assert result.success, result.skipped
    body = _body(out)
    deleted = ["".join(t.text for t in d.iter(qn("w:delText"))) for d in body.iter(qn("w:del"))]
    inserted = ["".join(t.text for t in i.iter(qn("w:t"))) for i in body.iter(qn("w:ins"))]
    assert deleted == ["Goods"]
    assert inserted == ["Products"]

    ins = next(body.iter(qn("w:ins")))
    assert ins.get(qn("w:author")) == "Reviewer"
    assert ins.get(qn("w:date"))
    assert _texts(out)[1] == "The Supplier shall deliver the Products."
    print("PASS: replace writes w:del / w:ins around the changed word")


def test_untracked_replace():
    result, out = _apply(
        [{"operation": "replace", "blockId": "b002", "newText": "The Supplier shall deliver the Products."}],
        track_changes=False,
    )
    assert result.success
    body = _body(out)
    assert next(body.iter(qn("w:ins")), None) is None
    assert next(body.iter(qn("w:del")), None) is None
    assert _texts(out)[1] == "The Supplier shall deliver the Products."
    print("PASS: untracked mode rewrites runs directly")


def test_delete_block_marks_paragraph():
    result, out = _apply([{"operation": "delete", "blockId": "b006"}])
    assert result.success
    body = _body(out)
    assert body.xpath(".//w:pPr/w:rPr/w:del")
    assert "Payment is due in 30 days." not in _texts(out)
    assert len(_texts(out)) == 6
    print("PASS: tracked block delete also deletes the paragraph mark")


def test_insert_blocks():
    result, out = _apply(
        [
            {"operation": "insert", "afterBlockId": "b002", "text": "New clause."},
            {"operation": "insert", "afterBlockId": "b001", "text": "Scope", "type": "heading", "level": 2},
        ]
    )
    assert result.success, result.skipped
    ir = extract_ir_from_bytes(out, format="docx")
    assert [b.text for b in ir.blocks[:4]] == ["Agreement", "Scope", "The Supplier shall deliver the Goods.", "New clause."]
    assert ir.blocks[1].type == "heading"
    assert ir.blocks[1].level == 2
    assert _body(out).xpath(".//w:pPr/w:rPr/w:ins")
    print("PASS: inserted paragraphs land after their anchors as tracked insertions")


def test_comments():
    result, out = _apply(
        [
            {"operation": "comment", "blockId": "b002", "comment": "Check the definition", "findText": "Goods"},
            {"operation": "comment", "blockId": "b006", "comment": "Too short"},
        ]
    )
    assert result.success, result.skipped
    assert sorted(c.id for c in result.comments) == ["0", "1"]
    by_block = {c.block_id: c.text for c in result.comments}
    assert by_block == {"b002": "Check the definition", "b006": "Too short"}

    body = _body(out)
    assert len(body.xpath(".//w:commentRangeStart")) == 2
    assert len(body.xpath(".//w:commentReference")) == 2

    engine = DocxEngine()
    handle = engine.load_document(out)
    comments = engine.list_comments(handle)
    assert sorted(c["text"] for c in comments) == ["Check the definition", "Too short"]
    assert all(c["author"] == "Reviewer" for c in comments)
    assert sorted(c["id"] for c in comments) == ["0", "1"]
    print("PASS: comments are anchored in the body and stored in the comments part")


def test_highlight():
    result, out = _apply([{"operation": "highlight", "blockId": "b002", "findText": "Supplier", "color": "green"}])
    assert result.success, result.skipped
    highlights = _body(out).xpath(".//w:rPr/w:highlight")
    assert [h.get(qn("w:val")) for h in highlights] == ["green"]
    assert _texts(out)[1] == "The Supplier shall deliver the Goods."
    print("PASS: highlight sets w:highlight on the matched run only")


def test_unknown_highlight_color_is_skipped():
    result, _ = _apply([{"operation": "highlight", "blockId": "b002", "findText": "Supplier", "color": "plaid"}])
    assert result.applied == 0
    assert "Unsupported highlight color" in result.skipped[0].reason
    print("PASS: unknown highlight colors are rejected")


def test_hyperlink_text_is_locked():
    result, _ = _apply([{"operation": "replace", "blockId": "b007", "newText": "Click there"}])
    assert result.applied == 0
    assert result.skipped[0].reason == LOCKED_CONTENT_ERROR
    print("PASS: text inside a hyperlink is never split")


def test_diff_replace_is_all_or_nothing_around_hyperlinks():
    doc = Document()
    p = doc.add_paragraph("Alpha beta ")
    _append_hyperlink(p, "gamma")
    p.add_run(" delta end.")
    buf = BytesIO()
    doc.save(buf)

    result, out = apply_edits(
        buf.getvalue(),
        {"edits": [{"operation": "replace", "blockId": "b001", "newText": "Alpha beta GAMMA delta finish."}]},
        ApplyOptions(format="docx", author=Author(name="Reviewer")),
    )
    assert result.applied == 0
    assert result.skipped[0].reason == LOCKED_CONTENT_ERROR
    body = _body(out)
    assert next(body.iter(qn("w:ins")), None) is None
    assert next(body.iter(qn("w:del")), None) is None
    assert _texts(out) == ["Alpha beta gamma delta end."]
    print("PASS: a replace touching a hyperlink leaves the whole paragraph untouched")


def test_check_text_change_does_not_modify():
    engine = DocxEngine(track_changes=True)
    handle = engine.load_document(DOC, author="Reviewer")
    link = engine.enumerate_blocks(handle)[6].handle

    assert engine.check_text_change(handle, link, 6, "here", "there").error == LOCKED_CONTENT_ERROR
    assert engine.check_text_change(handle, link, 0, "Click", "Press").success
    assert not engine.check_text_change(handle, link, 0, "Click", "Pre\x0bss").success
    assert engine.block_text(handle, link) == "Click here"
    engine.destroy(handle)
    print("PASS: checking a text change leaves the runs as they were")


def test_control_characters_skip_only_their_edit():
    result, out = _apply(
        [
            {"operation": "comment", "blockId": "b006", "comment": "ok"},
            {"operation": "replace", "blockId": "b002", "newText": "The Supplier shall deliver the\x0bGoods."},
        ],
        validate_first=False,
    )
    assert result.applied == 1
    assert [s.index for s in result.skipped] == [1]
    assert "control characters" in result.skipped[0].reason
    assert [c.block_id for c in result.comments] == ["b006"]
    body = _body(out)
    assert next(body.iter(qn("w:ins")), None) is None
    assert next(body.iter(qn("w:del")), None) is None
    assert _texts(out)[1] == "The Supplier shall deliver the Goods."
    print("PASS: text XML cannot hold is skipped without aborting the batch")


def test_control_characters_are_caught_by_validation():
    result, _ = _apply([{"operation": "replace", "blockId": "b002", "newText": "First\x0bclause text."}])
    assert result.applied == 0
    assert "control characters" in result.skipped[0].reason
    print("PASS: validation rejects control characters before the engine sees them")


def test_table_cells_are_editable():
    result, out = _apply([{"operation": "replace", "blockId": "b005", "newText": "USD 250"}])
    assert result.success, result.skipped
    assert _texts(out)[4] == "USD 250"
    print("PASS: table cell paragraphs are edited in place")


def test_engine_offsets():
    engine = DocxEngine(track_changes=True)
    handle = engine.load_document(DOC, author="Reviewer")
    blocks = engine.enumerate_blocks(handle)
    target = blocks[1]
    assert target.position == len("Agreement") + 1

    assert not engine.apply_text_change(handle, target.handle, 4, "Buyer", "Customer").success
    assert engine.apply_text_change(handle, target.handle, 4, "Supplier", "Vendor").success
    assert engine.block_text(handle, target.handle) == "The Vendor shall deliver the Goods."
    # Rewriting our own insertion edits it in place
    assert engine.apply_text_change(handle, target.handle, 4, "Vendor", "Supplier").success
    assert engine.block_text(handle, target.handle) == "The Supplier shall deliver the Goods."
    engine.destroy(handle)
    print("PASS: engine text changes work on visible-text offsets")


def test_bad_bytes_raise():
    try:
        DocxEngine().load_document(b"not a docx")
    except DocumentLoadError:
        print("PASS: garbage input raises DocumentLoadError")
        return
    raise AssertionError("Expected DocumentLoadError")


if __name__ == "__main__":
    tests = [
        test_tracked_replace,
        test_untracked_replace,
        test_delete_block_marks_paragraph,
        test_insert_blocks,
        test_comments,
        test_highlight,
        test_unknown_highlight_color_is_skipped,
        test_hyperlink_text_is_locked,
        test_diff_replace_is_all_or_nothing_around_hyperlinks,
        test_check_text_change_does_not_modify,
        test_control_characters_skip_only_their_edit,
        test_control_characters_are_caught_by_validation,
        test_table_cells_are_editable,
        test_engine_offsets,
        test_bad_bytes_raise,
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
