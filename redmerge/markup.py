"""
Document engine for Markdown / plain text.

Blocks are headings, list items, table rows and blank-line separated
paragraphs. Tracked changes export as CriticMarkup:
- Deletions: {--deleted text--}
- Insertions: {++inserted text++}
- Modifications: {--old--}{++new++}
- Comments: {>>comment text<<}
- Highlights / commented ranges: {==highlighted==}
"""

import re
import uuid
from typing import Dict, List, Literal, NamedTuple, Optional, Tuple

import structlog

from redmerge.engine import EngineResult, ExportOptions, RawBlock, suppressed
from redmerge.exceptions import DocumentLoadError
from redmerge.models import BlockKind

logger = structlog.get_logger(__name__)

SegmentKind = Literal["text", "ins", "del", "mark_start", "mark_end", "comment"]

HEADING_RE = re.compile(r"^(#{1,6})[ \t]+(.*)$")
LIST_ITEM_RE = re.compile(r"^([ \t]*(?:[-*+]|\d+[.)])[ \t]+)(.*)$")
TABLE_ROW_RE = re.compile(r"^\s*\|.*\|\s*$")


class Segment(NamedTuple):
    kind: SegmentKind
    text: str = ""
    note: Optional[str] = None

    @property
    def visible(self) -> bool:
        return self.kind in ("text", "ins")


class MarkupBlock:
    def __init__(
        self,
        kind: BlockKind,
        text: str,
        prefix: str = "",
        level: Optional[int] = None,
        separator: str = "\n\n",
        inserted: bool = False,
        tracked: bool = True,
    ):
        self.handle = str(uuid.uuid4())
        self.kind = kind
        self.prefix = prefix
        self.level = level
        self.separator = separator
        self.inserted = inserted
        self.deleted = False
        seg_kind = "ins" if inserted and tracked else "text"
        self.segments: List[Segment] = [Segment(seg_kind, text)] if text else []

    @property
    def text(self) -> str:
        return "".join(s.text for s in self.segments if s.visible)

    def split_at(self, position: int) -> int:
        """
        Index of the first visible segment starting at `position` (splitting a
        segment if needed). Invisible segments at the boundary stay before it.
        """
        acc = 0
        for i, seg in enumerate(self.segments):
            if not seg.visible:
                continue
            end = acc + len(seg.text)
            if acc >= position:
                return i
            if position < end:
                cut = position - acc
                self.segments[i : i + 1] = [seg._replace(text=seg.text[:cut]), seg._replace(text=seg.text[cut:])]
                return i + 1
            acc = end
        return len(self.segments)

    def render(self) -> str:
        parts = []
        for seg in _merge_adjacent(self.segments):
            if seg.kind == "text":
                parts.append(seg.text)
            elif seg.kind == "ins":
                parts.append(f"{{++{seg.text}++}}")
            elif seg.kind == "del":
                parts.append(f"{{--{seg.text}--}}")
            elif seg.kind == "mark_start":
                parts.append("{==")
            elif seg.kind == "mark_end":
                parts.append("==}")
                if seg.note:
                    parts.append(f"{{>>{seg.note}<<}}")
            elif seg.kind == "comment":
                parts.append(f"{{>>{seg.note}<<}}")
        body = "".join(parts)
        if self.inserted and body.startswith("{++"):
            return f"{{++{self.prefix}{body[3:]}"
        return f"{self.prefix}{body}"


def _merge_adjacent(segments: List[Segment]) -> List[Segment]:
    merged: List[Segment] = []
    for seg in segments:
        if seg.kind in ("text", "ins", "del") and not seg.text:
            continue
        if merged and seg.kind in ("text", "ins", "del") and merged[-1].kind == seg.kind:
            merged[-1] = merged[-1]._replace(text=merged[-1].text + seg.text)
        else:
            merged.append(seg)
    return merged


def parse_markdown_blocks(text: str, tracked: bool = True) -> List[MarkupBlock]:
    blocks: List[MarkupBlock] = []
    paragraph: List[str] = []
    pending_sep = ""
    para_sep = ""

    def flush_paragraph():
        nonlocal paragraph
        if paragraph:
            blocks.append(MarkupBlock("paragraph", "\n".join(paragraph), separator=para_sep, tracked=tracked))
            paragraph = []

    for line in text.split("\n"):
        if not line.strip():
            flush_paragraph()
            pending_sep += "\n"
            continue

        sep = (pending_sep + "\n") if blocks or paragraph else ""
        heading = HEADING_RE.match(line)
        list_item = LIST_ITEM_RE.match(line)

        if heading:
            flush_paragraph()
            hashes, title = heading.groups()
            blocks.append(
                MarkupBlock(
                    "heading", title, prefix=f"{hashes} ", level=len(hashes), separator=sep, tracked=tracked
                )
            )
        elif list_item:
            flush_paragraph()
            marker, body = list_item.groups()
            blocks.append(MarkupBlock("listItem", body, prefix=marker, separator=sep, tracked=tracked))
        elif TABLE_ROW_RE.match(line):
            flush_paragraph()
            blocks.append(MarkupBlock("tableCell", line, separator=sep, tracked=tracked))
        else:
            if not paragraph:
                para_sep = sep
            paragraph.append(line)
            pending_sep = ""
            continue
        pending_sep = ""

    flush_paragraph()
    return blocks


class MarkupDocument:
    def __init__(self, blocks: List[MarkupBlock], author: str, trailing: str = ""):
        self.blocks = blocks
        self.author = author
        self.trailing = trailing
        self.comments: Dict[str, Tuple[str, str]] = {}

    def find(self, handle: str) -> Optional[MarkupBlock]:
        for block in self.blocks:
            if block.handle == handle:
                return block
        return None

    def render(self) -> str:
        out = []
        for i, block in enumerate(self.blocks):
            out.append((block.separator if i else "") + block.render())
        return "".join(out) + self.trailing


class MarkupEngine:
    """In-memory engine for text documents; sessions are keyed by a uuid handle."""

    format = "markup"

    def __init__(self, track_changes: bool = True):
        self.track_changes = track_changes
        self._sessions: Dict[str, MarkupDocument] = {}
        self._comment_seq = 0

    def _session(self, handle: str) -> MarkupDocument:
        doc = self._sessions.get(handle)
        if doc is None:
            raise KeyError(f"Unknown document handle: {handle}")
        return doc

    def _live_block(self, handle: str, block: str) -> Tuple[Optional[MarkupBlock], Optional[str]]:
        target = self._session(handle).find(block)
        if target is None:
            return None, f"Block not found in document: {block}"
        if target.deleted:
            return None, f"Block has already been deleted: {block}"
        return target, None

    def load_document(self, data: bytes, author: str = "redmerge") -> str:
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise DocumentLoadError(f"Text document is not valid UTF-8: {e}") from e

        body = text.rstrip("\n")
        trailing = text[len(body) :]
        handle = str(uuid.uuid4())
        self._sessions[handle] = MarkupDocument(parse_markdown_blocks(body, self.track_changes), author, trailing)
        logger.debug("Loaded text document", blocks=len(self._sessions[handle].blocks))
        return handle

    def enumerate_blocks(self, handle: str) -> List[RawBlock]:
        raw = []
        position = 0
        for block in self._session(handle).blocks:
            if block.deleted:
                continue
            text = block.text
            raw.append(RawBlock(block.handle, block.kind, text, position, block.level))
            position += len(text) + 1
        return raw

    def block_text(self, handle: str, block: str) -> Optional[str]:
        target, _ = self._live_block(handle, block)
        return target.text if target else None

    def check_text_change(
        self, handle: str, block: str, position: int, delete_text: str, insert_text: str
    ) -> EngineResult:
        target, error = self._live_block(handle, block)
        if target is None:
            return EngineResult.fail(error)
        current = target.text
        if position > len(current) or current[position : position + len(delete_text)] != delete_text:
            return EngineResult.fail(f"Text at offset {position} no longer matches '{delete_text[:30]}'")
        return EngineResult.ok()

    def apply_text_change(
        self, handle: str, block: str, position: int, delete_text: str, insert_text: str
    ) -> EngineResult:
        verdict = self.check_text_change(handle, block, position, delete_text, insert_text)
        if not verdict.success:
            return verdict
        target, _ = self._live_block(handle, block)

        start = target.split_at(position)
        end = target.split_at(position + len(delete_text))

        kept: List[Segment] = []
        for seg in target.segments[start:end]:
            if not seg.visible:
                kept.append(seg)
            elif self.track_changes and seg.kind == "text":
                kept.append(Segment("del", seg.text))
            # own insertions (or untracked text) simply disappear
        if insert_text:
            kept.append(Segment("ins" if self.track_changes else "text", insert_text))
        target.segments[start:end] = kept
        return EngineResult.ok()

    def insert_block(
        self, handle: str, anchor: str, text: str, kind: BlockKind = "paragraph", level: Optional[int] = None
    ) -> EngineResult:
        doc = self._session(handle)
        anchor_block, error = self._live_block(handle, anchor)
        if anchor_block is None:
            return EngineResult.fail(error)

        prefix = ""
        if kind == "heading":
            level = level or 1
            prefix = "#" * min(level, 6) + " "
        elif kind == "listItem":
            prefix = anchor_block.prefix if anchor_block.kind == "listItem" else "- "
        separator = "\n" if kind == "listItem" and anchor_block.kind == "listItem" else "\n\n"

        new_block = MarkupBlock(
            kind, text, prefix=prefix, level=level, separator=separator, inserted=True, tracked=self.track_changes
        )
        doc.blocks.insert(doc.blocks.index(anchor_block) + 1, new_block)
        return EngineResult.ok(new_block_id=new_block.handle)

    def delete_block(self, handle: str, block: str) -> EngineResult:
        doc = self._session(handle)
        target, error = self._live_block(handle, block)
        if target is None:
            return EngineResult.fail(error)

        if not self.track_changes:
            doc.blocks.remove(target)
            return EngineResult.ok()

        target.segments = [Segment("del", s.text) if s.kind == "text" else s for s in target.segments if s.kind != "ins"]
        target.deleted = True
        return EngineResult.ok()

    def _next_comment_id(self) -> str:
        self._comment_seq += 1
        return str(self._comment_seq)

    def add_comment(
        self, handle: str, block: str, text: str, span: Optional[Tuple[int, int]] = None
    ) -> EngineResult:
        doc = self._session(handle)
        target, error = self._live_block(handle, block)
        if target is None:
            return EngineResult.fail(error)

        comment_id = self._next_comment_id()
        doc.comments[comment_id] = (doc.author, text)
        if span is None:
            target.segments.append(Segment("comment", note=text))
        else:
            self._mark(target, span, note=text)
        return EngineResult.ok(comment_id=comment_id)

    def add_highlight(self, handle: str, block: str, span: Tuple[int, int], color: str = "yellow") -> EngineResult:
        target, error = self._live_block(handle, block)
        if target is None:
            return EngineResult.fail(error)
        self._mark(target, span)
        return EngineResult.ok()

    def _mark(self, target: MarkupBlock, span: Tuple[int, int], note: Optional[str] = None):
        start = target.split_at(span[0])
        end = target.split_at(span[1])
        segments = target.segments
        if (
            note is not None
            and 0 < start < end
            and segments[start - 1].kind == "mark_start"
            and segments[end - 1].kind == "mark_end"
            and segments[end - 1].note is None
        ):
            # Span already highlighted: the comment rides on the existing mark
            segments[end - 1] = segments[end - 1]._replace(note=note)
            return
        target.segments.insert(end, Segment("mark_end", note=note))
        target.segments.insert(start, Segment("mark_start"))

    def export_document(self, handle: str, options: ExportOptions = ExportOptions()) -> bytes:
        with suppressed(options.suppress_warnings):
            return self._session(handle).render().encode("utf-8")

    def destroy(self, handle: str) -> None:
        self._sessions.pop(handle, None)
