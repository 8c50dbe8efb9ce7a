"""
Builds the intermediate representation (IR) producers edit against.

Every non-empty block gets a stable sequential key (b001, b002, ...) in
traversal order, plus the clause number, heading level and table-of-contents
flag the document structure implies. Optionally an outline of headings and
an index of defined terms are attached.
"""

import re
from typing import Dict, List, NamedTuple, Optional

import structlog

from redmerge.engine import DocumentEngine, RawBlock, get_engine
from redmerge.ids import IdManager
from redmerge.models import Block, DefinedTerm, DocumentIR, DocumentMetadata, OutlineItem

logger = structlog.get_logger(__name__)

# Checked in order; the first match wins
CLAUSE_PATTERNS = (
    ("numbered", re.compile(r"^(\d+(?:\.\d+)*)\.?\s+")),
    ("lettered", re.compile(r"^\(([a-z])\)\s*", re.IGNORECASE)),
    ("roman", re.compile(r"^([ivxlcdm]+)\.\s*", re.IGNORECASE)),
    ("bracketed", re.compile(r"^\[(\d+)\]\s*")),
    ("article", re.compile(r"^Article\s+(\d+|[IVXLCDM]+)\b", re.IGNORECASE)),
    ("schedule", re.compile(r"^(?:Schedule|Exhibit|Appendix|Annex)\s+(\d+|[A-Z])\b", re.IGNORECASE)),
)

DEFINED_TERM_RE = re.compile(r"[\"“]([A-Z][^\"”]+)[\"”]\s+(?:means|shall mean|has the meaning|:)", re.IGNORECASE)
TOC_ENTRY_RE = re.compile(r"(?:\.{3,}|\t)\s*\d+\s*$")
OUTLINE_TITLE_LENGTH = 100
CAPS_HEADING_MAX = 100


class ClauseNumber(NamedTuple):
    type: str
    number: str
    remainder: str


def parse_clause_number(text: str) -> Optional[ClauseNumber]:
    """
    >>> parse_clause_number("3.2 Warranties")
    ClauseNumber(type='numbered', number='3.2', remainder='Warranties')
    """
    text = text.strip()
    for kind, pattern in CLAUSE_PATTERNS:
        match = pattern.match(text)
        if match:
            return ClauseNumber(kind, match.group(1), text[match.end() :].strip())
    return None


def is_toc_block(raw: RawBlock) -> bool:
    style = (raw.style or "").lower()
    if style.startswith("toc") or style == "table of contents":
        return True
    return bool(TOC_ENTRY_RE.search(raw.text))


def _looks_like_caps_heading(text: str) -> bool:
    stripped = text.strip()
    return len(stripped) < CAPS_HEADING_MAX and stripped == stripped.upper() and any(c.isalpha() for c in stripped)


def _truncate(text: str, max_length: Optional[int]) -> str:
    if max_length is None or len(text) <= max_length:
        return text
    return text[:max_length] + "..."


def build_outline(blocks: List[Block]) -> List[OutlineItem]:
    """Nests headings by level; a heading closes every open heading at its level or deeper."""
    outline: List[OutlineItem] = []
    stack: List[OutlineItem] = []

    for block in blocks:
        if block.type != "heading":
            continue
        item = OutlineItem(
            id=block.id,
            seq_id=block.seq_id,
            level=block.level or 1,
            number=block.number,
            title=block.text[:OUTLINE_TITLE_LENGTH],
        )
        while stack and stack[-1].level >= item.level:
            stack.pop()
        (stack[-1].children if stack else outline).append(item)
        stack.append(item)

    return outline


def extract_defined_terms(blocks: List[Block]) -> Dict[str, DefinedTerm]:
    terms: Dict[str, DefinedTerm] = {}
    for block in blocks:
        for match in DEFINED_TERM_RE.finditer(block.text):
            term = match.group(1)
            if term not in terms:
                terms[term] = DefinedTerm(defined_in=block.id, seq_id=block.seq_id)

    for term, info in terms.items():
        for block in blocks:
            if block.id != info.defined_in and term in block.text:
                info.used_in.append(block.id)
    return terms


def extract_ir(
    engine: DocumentEngine,
    handle: str,
    filename: str = "document",
    include_outline: bool = True,
    include_defined_terms: bool = True,
    max_text_length: Optional[int] = None,
) -> DocumentIR:
    """
    Snapshot of a loaded document. Keys are assigned in traversal order, so
    extracting the same unmodified document twice yields the same keys.
    """
    ids = IdManager()
    blocks: List[Block] = []

    for raw in engine.enumerate_blocks(handle):
        seq_id = ids.register_existing(raw.handle)
        clause = parse_clause_number(raw.text)
        kind = raw.kind
        level = raw.level
        if kind == "paragraph" and _looks_like_caps_heading(raw.text):
            kind, level = "heading", 1

        toc = is_toc_block(raw)
        blocks.append(
            Block(
                id=raw.handle,
                seq_id=seq_id,
                type=kind,
                text=_truncate(raw.text, max_text_length),
                start_pos=raw.position,
                end_pos=raw.position + len(raw.text) + 1,
                level=level if kind == "heading" else None,
                number=clause.number if clause else None,
                style=raw.style,
                is_toc=toc,
            )
        )

    ir = DocumentIR(
        metadata=DocumentMetadata(filename=filename, format=engine.format, block_count=len(blocks)),
        blocks=blocks,
        id_mapping=ids.export_mapping(),
        outline=build_outline(blocks) if include_outline else None,
        defined_terms=(extract_defined_terms(blocks) or None) if include_defined_terms else None,
    )
    logger.info("Extracted IR", filename=filename, blocks=len(blocks), toc_blocks=sum(b.is_toc for b in blocks))
    return ir


def extract_ir_from_bytes(
    data: bytes,
    format: str = "docx",
    filename: str = "document",
    author: str = "redmerge",
    **options,
) -> DocumentIR:
    """Loads, extracts and releases a document in one call. Raises DocumentLoadError."""
    engine = get_engine(format)
    handle = engine.load_document(data, author)
    try:
        return extract_ir(engine, handle, filename=filename, **options)
    finally:
        engine.destroy(handle)
