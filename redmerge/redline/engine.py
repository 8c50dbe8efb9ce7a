import datetime
import uuid
import zipfile
from copy import deepcopy
from io import BytesIO
from typing import Dict, List, Optional, Set, Tuple

import structlog
from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from docx.oxml.ns import nsmap, qn
from docx.text.paragraph import Paragraph
from lxml import etree

from redmerge.engine import EngineResult, ExportOptions, RawBlock, suppressed
from redmerge.exceptions import DocumentLoadError
from redmerge.models import BlockKind
from redmerge.redline.comments import CommentsManager
from redmerge.utils.docx import (
    TextSpan,
    create_attribute,
    create_element,
    heading_level,
    is_list_paragraph,
    iter_paragraphs,
    make_run,
    map_paragraph,
    normalize_docx,
    set_text_content,
    split_at,
)
from redmerge.validation import ILLEGAL_XML_CHARS

logger = structlog.get_logger(__name__)

# Register w16du namespace for dateUtc
w16du_ns = "http://schemas.microsoft.com/office/word/2023/wordml/word16du"
if "w16du" not in nsmap:
    nsmap["w16du"] = w16du_ns

HIGHLIGHT_COLORS = {
    c.lower(): c
    for c in (
        "yellow",
        "green",
        "cyan",
        "magenta",
        "blue",
        "red",
        "darkBlue",
        "darkCyan",
        "darkGreen",
        "darkMagenta",
        "darkRed",
        "darkYellow",
        "darkGray",
        "lightGray",
        "black",
        "white",
    )
}

LOCKED_CONTENT_ERROR = "Target text is inside a hyperlink, field or content control and cannot be edited"


def _has_insertion_point(spans: List[TextSpan], position: int) -> bool:
    """Whether a run can be placed at a boundary `position` (mirrors DocxEngine._insert_at)."""
    if not spans:
        return True
    before = next((s for s in reversed(spans) if s.end == position), None)
    after = next((s for s in spans if s.start == position), None)
    return any(s is not None and (s.editable or s.top is not s.run) for s in (before, after))


class DocxSession:
    """One loaded document plus the handle <-> paragraph bookkeeping."""

    def __init__(self, doc, author: str):
        self.doc = doc
        self.author = author
        self.timestamp = (
            datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")
        )
        self.current_id = self._scan_existing_ids()
        self.paragraphs: Dict[str, object] = {}
        self.handles: Dict[object, str] = {}
        self.deleted: Set[str] = set()
        self._comments: Optional[CommentsManager] = None

    @property
    def comments(self) -> CommentsManager:
        # Created on first use so documents without comments keep their parts untouched
        if self._comments is None:
            self._comments = CommentsManager(self.doc)
        return self._comments

    def _scan_existing_ids(self) -> int:
        """Highest w:id on existing w:ins / w:del so new revision ids never collide."""
        max_id = 0
        for tag in ("w:ins", "w:del"):
            for el in self.doc.element.xpath(f"//{tag}"):
                try:
                    max_id = max(max_id, int(el.get(qn("w:id"))))
                except (ValueError, TypeError):
                    pass
        return max_id

    def next_id(self) -> str:
        self.current_id += 1
        return str(self.current_id)

    def handle_for(self, p_element) -> str:
        handle = self.handles.get(p_element)
        if handle is None:
            handle = str(uuid.uuid4())
            self.handles[p_element] = handle
            self.paragraphs[handle] = p_element
        return handle


class DocxEngine:
    """
    Tracked-change editing of .docx files through python-docx / lxml.

    Blocks are the non-empty paragraphs of the main body, including those in
    table cells and block content controls. Text changes split plain runs at
    the change boundaries and wrap them in w:del / w:ins; runs inside
    hyperlinks, fields or content controls are never split.
    """

    format = "docx"

    def __init__(self, track_changes: bool = True):
        self.track_changes = track_changes
        self._sessions: Dict[str, DocxSession] = {}

    # --- Sessions ---

    def load_document(self, data: bytes, author: str = "redmerge") -> str:
        try:
            doc = Document(BytesIO(data))
        except (PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError, etree.XMLSyntaxError) as e:
            raise DocumentLoadError(f"Could not open DOCX document: {e}") from e

        normalize_docx(doc)
        handle = str(uuid.uuid4())
        self._sessions[handle] = DocxSession(doc, author)
        logger.debug("Loaded DOCX document", author=author)
        return handle

    def _session(self, handle: str) -> DocxSession:
        session = self._sessions.get(handle)
        if session is None:
            raise KeyError(f"Unknown document handle: {handle}")
        return session

    def _paragraph(self, session: DocxSession, block: str):
        if block in session.deleted:
            return None, f"Block has already been deleted: {block}"
        p = session.paragraphs.get(block)
        if p is None or p.getparent() is None:
            return None, f"Block not found in document: {block}"
        return p, None

    def destroy(self, handle: str) -> None:
        self._sessions.pop(handle, None)

    # --- Reading ---

    def enumerate_blocks(self, handle: str) -> List[RawBlock]:
        session = self._session(handle)
        blocks = []
        position = 0
        for p, in_table in iter_paragraphs(session.doc.element.body):
            text, _ = map_paragraph(p)
            if not text.strip():
                continue
            block_handle = session.handle_for(p)
            if block_handle in session.deleted:
                continue

            paragraph = Paragraph(p, session.doc)
            style_name = paragraph.style.name if paragraph.style is not None else ""
            level = heading_level(paragraph)
            if in_table:
                kind: BlockKind = "tableCell"
            elif level is not None:
                kind = "heading"
            elif is_list_paragraph(p, style_name or ""):
                kind = "listItem"
            else:
                kind = "paragraph"

            blocks.append(RawBlock(block_handle, kind, text, position, level if kind == "heading" else None, style_name))
            position += len(text) + 1
        return blocks

    def block_text(self, handle: str, block: str) -> Optional[str]:
        p, _ = self._paragraph(self._session(handle), block)
        if p is None:
            return None
        return map_paragraph(p)[0]

    # --- Revision markup ---

    def _create_track_change_tag(self, session: DocxSession, tag_name: str):
        tag = create_element(tag_name)
        create_attribute(tag, "w:id", session.next_id())
        create_attribute(tag, "w:author", session.author)
        create_attribute(tag, "w:date", session.timestamp)
        create_attribute(tag, "w16du:dateUtc", session.timestamp)
        return tag

    def _delete_run(self, session: DocxSession, span: TextSpan):
        """Tracked delete of one run. Text inside an insertion is simply withdrawn."""
        run = span.run
        parent = run.getparent()
        if not self.track_changes or span.in_insertion:
            parent.remove(run)
            if parent.tag == qn("w:ins") and parent.find(qn("w:r")) is None:
                parent.getparent().remove(parent)
            return

        del_tag = self._create_track_change_tag(session, "w:del")
        new_run = deepcopy(run)
        for t in new_run.findall(qn("w:t")):
            del_text = create_element("w:delText")
            set_text_content(del_text, t.text or "")
            new_run.replace(t, del_text)
        del_tag.append(new_run)
        parent.replace(run, del_tag)

    def _wrap_insert(self, session: DocxSession, run, inside_insertion: bool):
        if not self.track_changes or inside_insertion:
            return run
        ins = self._create_track_change_tag(session, "w:ins")
        ins.append(run)
        return ins

    def _mark_paragraph(self, session: DocxSession, p, tag_name: str):
        """Tracks the paragraph mark itself (w:pPr/w:rPr/w:ins|w:del)."""
        ppr = p.get_or_add_pPr()
        rpr = ppr.find(qn("w:rPr"))
        if rpr is None:
            rpr = create_element("w:rPr")
            successor = next((c for c in ppr if c.tag in (qn("w:sectPr"), qn("w:pPrChange"))), None)
            if successor is not None:
                successor.addprevious(rpr)
            else:
                ppr.append(rpr)
        rpr.append(self._create_track_change_tag(session, tag_name))

    # --- Mutations ---

    def check_text_change(
        self, handle: str, block: str, position: int, delete_text: str, insert_text: str
    ) -> EngineResult:
        """Same verdict as apply_text_change, read off the current run map without splitting anything."""
        session = self._session(handle)
        p, error = self._paragraph(session, block)
        if p is None:
            return EngineResult.fail(error)

        text, spans = map_paragraph(p)
        end = position + len(delete_text)
        if position > len(text) or text[position:end] != delete_text:
            return EngineResult.fail(f"Text at offset {position} no longer matches '{delete_text[:30]}'")
        if ILLEGAL_XML_CHARS.search(insert_text):
            return EngineResult.fail("Inserted text contains control characters that cannot be stored in a document")

        if delete_text:
            touched = [s for s in spans if s.end > position and s.start < end]
        else:
            touched = [s for s in spans if s.start < position < s.end]
        if any(not s.editable for s in touched):
            return EngineResult.fail(LOCKED_CONTENT_ERROR)
        if insert_text and not delete_text and not touched and not _has_insertion_point(spans, position):
            return EngineResult.fail(LOCKED_CONTENT_ERROR)
        return EngineResult.ok()

    def apply_text_change(
        self, handle: str, block: str, position: int, delete_text: str, insert_text: str
    ) -> EngineResult:
        verdict = self.check_text_change(handle, block, position, delete_text, insert_text)
        if not verdict.success:
            return verdict
        session = self._session(handle)
        p, _ = self._paragraph(session, block)
        end = position + len(delete_text)

        if not split_at(p, position) or not split_at(p, end):
            return EngineResult.fail(LOCKED_CONTENT_ERROR)

        _, spans = map_paragraph(p)
        if delete_text:
            targets = [s for s in spans if s.start >= position and s.end <= end]
            if any(not s.editable for s in targets):
                return EngineResult.fail(LOCKED_CONTENT_ERROR)
            if insert_text:
                last = targets[-1]
                new_run = make_run(insert_text, last.run)
                last.run.addnext(self._wrap_insert(session, new_run, last.in_insertion))
            for span in targets:
                self._delete_run(session, span)
            return EngineResult.ok()

        if not insert_text:
            return EngineResult.ok()
        return self._insert_at(session, p, spans, position, insert_text)

    def _insert_at(self, session: DocxSession, p, spans: List[TextSpan], position: int, text: str) -> EngineResult:
        before = next((s for s in reversed(spans) if s.end == position), None)
        after = next((s for s in spans if s.start == position), None)

        if before is not None and before.editable:
            new_run = make_run(text, before.run)
            before.run.addnext(self._wrap_insert(session, new_run, before.in_insertion))
        elif after is not None and after.editable:
            new_run = make_run(text, after.run)
            after.run.addprevious(self._wrap_insert(session, new_run, after.in_insertion))
        elif before is not None and before.top is not before.run:
            # Right after a hyperlink / content control: insert next to the container
            before.top.addnext(self._wrap_insert(session, make_run(text), False))
        elif after is not None and after.top is not after.run:
            after.top.addprevious(self._wrap_insert(session, make_run(text), False))
        elif not spans:
            p.append(self._wrap_insert(session, make_run(text), False))
        else:
            return EngineResult.fail(LOCKED_CONTENT_ERROR)
        return EngineResult.ok()

    def insert_block(
        self, handle: str, anchor: str, text: str, kind: BlockKind = "paragraph", level: Optional[int] = None
    ) -> EngineResult:
        session = self._session(handle)
        anchor_p, error = self._paragraph(session, anchor)
        if anchor_p is None:
            return EngineResult.fail(error)

        new_p = create_element("w:p")
        anchor_ppr = anchor_p.find(qn("w:pPr"))
        if kind == "heading":
            self._set_paragraph_style(session, new_p, f"Heading {level or 1}")
        elif kind == "listItem" and not (anchor_ppr is not None and anchor_ppr.find(qn("w:numPr")) is not None):
            self._set_paragraph_style(session, new_p, "List Bullet")
        elif anchor_ppr is not None and heading_level(Paragraph(anchor_p, session.doc)) is None:
            # Continue the anchor's paragraph formatting (numbering included)
            ppr = deepcopy(anchor_ppr)
            dropped = ("w:rPr", "w:sectPr", "w:pPrChange") + (() if kind == "listItem" else ("w:numPr",))
            for child in [c for c in ppr if c.tag in {qn(t) for t in dropped}]:
                ppr.remove(child)
            new_p.append(ppr)

        _, anchor_spans = map_paragraph(anchor_p)
        style_run = anchor_spans[0].run if anchor_spans and kind != "heading" else None
        new_p.append(self._wrap_insert(session, make_run(text, style_run), False))
        if self.track_changes:
            self._mark_paragraph(session, new_p, "w:ins")

        anchor_p.addnext(new_p)
        new_handle = session.handle_for(new_p)
        return EngineResult.ok(new_block_id=new_handle)

    def _set_paragraph_style(self, session: DocxSession, p_element, style_name: str):
        try:
            style_id = session.doc.styles[style_name].style_id
        except KeyError:
            style_id = style_name.replace(" ", "")
        p_element.style = style_id

    def delete_block(self, handle: str, block: str) -> EngineResult:
        session = self._session(handle)
        p, error = self._paragraph(session, block)
        if p is None:
            return EngineResult.fail(error)

        if not self.track_changes:
            parent = p.getparent()
            if parent.tag == qn("w:tc") and len(parent.findall(qn("w:p"))) == 1:
                # A table cell must keep one paragraph
                for child in list(p):
                    if child.tag != qn("w:pPr"):
                        p.remove(child)
            else:
                parent.remove(p)
            session.deleted.add(block)
            return EngineResult.ok()

        _, spans = map_paragraph(p)
        for span in spans:
            self._delete_run(session, span)
        self._mark_paragraph(session, p, "w:del")
        session.deleted.add(block)
        return EngineResult.ok()

    # --- Annotations ---

    def _span_bounds(self, p, span: Tuple[int, int]):
        """Top-level paragraph children covering [start, end), splitting plain runs at the edges."""
        start, end = span
        split_at(p, start)
        split_at(p, end)
        _, spans = map_paragraph(p)
        covered = [s for s in spans if s.end > start and s.start < end]
        if not covered:
            return None, None, []
        return covered[0].top, covered[-1].top, covered

    def _attach_comment(self, session: DocxSession, p, start_element, end_element, text: str) -> str:
        comment_id = session.comments.add_comment(session.author, text)
        range_start = create_element("w:commentRangeStart")
        create_attribute(range_start, "w:id", comment_id)
        range_end = create_element("w:commentRangeEnd")
        create_attribute(range_end, "w:id", comment_id)

        ref_run = create_element("w:r")
        rpr = create_element("w:rPr")
        rstyle = create_element("w:rStyle")
        create_attribute(rstyle, "w:val", "CommentReference")
        rpr.append(rstyle)
        ref_run.append(rpr)
        ref = create_element("w:commentReference")
        create_attribute(ref, "w:id", comment_id)
        ref_run.append(ref)

        if start_element is None:
            ppr = p.find(qn("w:pPr"))
            if ppr is not None:
                ppr.addnext(range_start)
            else:
                p.insert(0, range_start)
            p.append(range_end)
        else:
            start_element.addprevious(range_start)
            end_element.addnext(range_end)
        range_end.addnext(ref_run)
        return comment_id

    def add_comment(
        self, handle: str, block: str, text: str, span: Optional[Tuple[int, int]] = None
    ) -> EngineResult:
        session = self._session(handle)
        p, error = self._paragraph(session, block)
        if p is None:
            return EngineResult.fail(error)

        first = last = None
        if span is not None:
            first, last, covered = self._span_bounds(p, span)
            if not covered:
                return EngineResult.fail(f"Span {span[0]}-{span[1]} is empty in the current block text")
        comment_id = self._attach_comment(session, p, first, last, text)
        return EngineResult.ok(comment_id=comment_id)

    def add_highlight(self, handle: str, block: str, span: Tuple[int, int], color: str = "yellow") -> EngineResult:
        session = self._session(handle)
        p, error = self._paragraph(session, block)
        if p is None:
            return EngineResult.fail(error)

        value = HIGHLIGHT_COLORS.get(color.lower())
        if value is None:
            return EngineResult.fail(f"Unsupported highlight color: {color}")

        _, _, covered = self._span_bounds(p, span)
        if not covered:
            return EngineResult.fail(f"Span {span[0]}-{span[1]} is empty in the current block text")

        for s in covered:
            rpr = s.run.get_or_add_rPr()
            rpr._remove_highlight()
            create_attribute(rpr._add_highlight(), "w:val", value)
        return EngineResult.ok()

    # --- Output ---

    def export_document(self, handle: str, options: ExportOptions = ExportOptions()) -> bytes:
        session = self._session(handle)
        output = BytesIO()
        with suppressed(options.suppress_warnings):
            session.doc.save(output)
        return output.getvalue()

    def list_comments(self, handle: str) -> List[Dict[str, str]]:
        return self._session(handle).comments.list_comments()
