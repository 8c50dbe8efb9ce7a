"""
Markdown rendition of an edit batch.

Producers that write prose more reliably than JSON can emit a table of
instructions plus one text section per replacement / insertion:

    ## Metadata
    - **Version**: 0.3.0
    - **Author Name**: Reviewer

    ## Edits Table
    | Block | Op | FindText | Color | Diff | Comment |
    |-------|----|----------|-------|------|---------|
    | b003 | replace | - | - | true | Tighten wording |

    ## Replacement Text
    ### b003 newText
    The Supplier shall deliver the Goods.

The older 4-column table (Block | Op | Diff | Comment) is also accepted.
For insertAfterText the last column carries the inserted text.
"""

import re
from typing import Any, Dict, List, Optional

import structlog

from redmerge.models import SPAN_OPERATIONS, Author, EditBatch, EditInstruction

logger = structlog.get_logger(__name__)

VERSION_RE = re.compile(r"\*\*Version\*\*:\s*(.+)", re.IGNORECASE)
AUTHOR_NAME_RE = re.compile(r"\*\*Author Name\*\*:\s*(.+)", re.IGNORECASE)
AUTHOR_EMAIL_RE = re.compile(r"\*\*Author Email\*\*:\s*(.+)", re.IGNORECASE)
TEXT_SECTION_RE = re.compile(
    r"^###\s+(b\d+)\s+(newText|insertText)[ \t]*\n(.*?)(?=^###\s+b\d+\s+(?:newText|insertText)|^##\s|\Z)",
    re.IGNORECASE | re.MULTILINE | re.DOTALL,
)
TABLE_HEADER_RE = re.compile(r"^\|\s*Block\s*\|\s*Op\s*\|", re.IGNORECASE)
SEPARATOR_ROW_RE = re.compile(r"^\|[\s\-:|]+\|$")
CELL_SPLIT_RE = re.compile(r"(?<!\\)\|")
BLOCK_KEY_RE = re.compile(r"^b\d+$", re.IGNORECASE)

OPERATION_NAMES = {
    name.lower(): name
    for name in (
        "replace",
        "delete",
        "comment",
        "insert",
        "insertAfterText",
        "highlight",
        "commentRange",
        "commentHighlight",
    )
}
EMPTY = "-"


def _split_cells(line: str) -> List[str]:
    cells = [c.strip().replace("\\|", "|") for c in CELL_SPLIT_RE.split(line.strip())]
    # Drop the empty strings outside the leading and trailing pipes
    if cells and cells[0] == "":
        cells = cells[1:]
    if cells and cells[-1] == "":
        cells = cells[:-1]
    return cells


def _escape(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")


def _parse_row(cells: List[str], sections: Dict[str, str]) -> Optional[Dict[str, Any]]:
    if len(cells) >= 6:
        block, op, find, color, diff, note = cells[:6]
    elif len(cells) >= 2:
        block, op = cells[0], cells[1]
        diff = cells[2] if len(cells) > 2 else EMPTY
        note = cells[3] if len(cells) > 3 else EMPTY
        find = color = EMPTY
    else:
        return None

    if not BLOCK_KEY_RE.match(block):
        logger.warning("Skipping edit row with invalid block key", block=block)
        return None
    operation = OPERATION_NAMES.get(op.lower())
    if operation is None:
        logger.warning("Skipping edit row with unknown operation", operation=op)
        return None

    record: Dict[str, Any] = {"operation": operation}
    record["afterBlockId" if operation == "insert" else "blockId"] = block
    if find and find != EMPTY:
        record["findText"] = find
    if color and color != EMPTY:
        record["color"] = color
    if operation == "replace" and diff.lower() in ("true", "false"):
        record["diff"] = diff.lower() == "true"
    if note and note != EMPTY:
        record["insertText" if operation == "insertAfterText" else "comment"] = note

    if operation == "replace":
        text = sections.get(f"{block.lower()}:newtext")
        if text is None:
            logger.warning("Missing newText section for replace", block=block)
        else:
            record["newText"] = text
    elif operation == "insert":
        text = sections.get(f"{block.lower()}:inserttext")
        if text is None:
            logger.warning("Missing insertText section for insert", block=block)
        else:
            record["text"] = text
    return record


def parse_markdown_edits(markdown: str) -> EditBatch:
    """
    Parses the Markdown edit format. Rows that cannot be read at all are
    skipped with a logged warning; rows missing a required value are kept
    and surface as invalid instructions during validation.
    """
    version = VERSION_RE.search(markdown)
    name = AUTHOR_NAME_RE.search(markdown)
    email = AUTHOR_EMAIL_RE.search(markdown)

    sections = {
        f"{m.group(1).lower()}:{m.group(2).lower()}": m.group(3).strip() for m in TEXT_SECTION_RE.finditer(markdown)
    }

    records: List[Dict[str, Any]] = []
    in_table = False
    for raw_line in markdown.splitlines():
        line = raw_line.strip()
        if TABLE_HEADER_RE.match(line):
            in_table = True
            continue
        if not in_table:
            continue
        if line.startswith("#"):
            break
        if not line.startswith("|") or SEPARATOR_ROW_RE.match(line):
            continue
        record = _parse_row(_split_cells(line), sections)
        if record is not None:
            records.append(record)

    author = None
    if name:
        author = Author(name=name.group(1).strip(), email=email.group(1).strip() if email else "")
    batch = EditBatch(edits=records, author=author)
    if version:
        batch.version = version.group(1).strip()
    logger.debug("Parsed Markdown edits", edits=len(records))
    return batch


def _needs_wide_table(edits: List[EditInstruction]) -> bool:
    return any(
        e.operation in SPAN_OPERATIONS or e.anchor_text or getattr(e, "color", None) not in (None, "yellow")
        for e in edits
    )


def edits_to_markdown(batch: EditBatch) -> str:
    """Renders a batch in the Markdown edit format (6 columns only when needed)."""
    lines = ["# Edits", "", "## Metadata", f"- **Version**: {batch.version}"]
    if batch.author and batch.author.name:
        lines.append(f"- **Author Name**: {batch.author.name}")
    if batch.author and batch.author.email:
        lines.append(f"- **Author Email**: {batch.author.email}")
    lines += ["", "## Edits Table", ""]

    wide = _needs_wide_table(batch.edits)
    if wide:
        lines.append("| Block | Op | FindText | Color | Diff | Comment |")
        lines.append("|-------|----|----------|-------|------|---------|")
    else:
        lines.append("| Block | Op | Diff | Comment |")
        lines.append("|-------|----|------|---------|")

    sections = []
    for edit in batch.edits:
        record = edit.to_record()
        block = edit.target or ""
        operation = edit.operation or ""
        diff = str(record["diff"]).lower() if operation == "replace" and "diff" in record else EMPTY
        note = record.get("insertText" if operation == "insertAfterText" else "comment") or EMPTY

        if wide:
            find = record.get("findText") or EMPTY
            color = record.get("color") or EMPTY
            cells = [block, operation, _escape(find), color, diff, _escape(note)]
        else:
            cells = [block, operation, diff, _escape(note)]
        lines.append("| " + " | ".join(cells) + " |")

        if operation == "replace" and record.get("newText"):
            sections.append((block, "newText", record["newText"]))
        elif operation == "insert" and record.get("text"):
            sections.append((block, "insertText", record["text"]))

    if sections:
        lines += ["", "## Replacement Text"]
        for block, kind, content in sections:
            lines += ["", f"### {block} {kind}", content]

    return "\n".join(lines) + "\n"
