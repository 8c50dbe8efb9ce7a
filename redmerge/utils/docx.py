"""
Low-level helpers for walking and rewriting WordprocessingML paragraphs.
"""

import re
from copy import deepcopy
from typing import Iterator, List, NamedTuple, Optional, Tuple

import structlog
from docx.document import Document as DocumentObject
from docx.oxml import OxmlElement
from docx.oxml.ns import qn
from docx.text.paragraph import Paragraph

logger = structlog.get_logger(__name__)

PLAIN_RUN_TAGS = {qn("w:rPr"), qn("w:t")}
HEADING_STYLE_RE = re.compile(r"^heading\s*(\d)$", re.IGNORECASE)


class TextSpan(NamedTuple):
    """One run's contribution to a paragraph's visible text."""

    start: int
    end: int
    run: object  # CT_R
    top: object  # direct child of the paragraph that contains the run
    editable: bool

    @property
    def in_insertion(self) -> bool:
        return self.run.getparent().tag == qn("w:ins")


def create_element(name: str):
    return OxmlElement(name)


def create_attribute(element, name: str, value: str):
    element.set(qn(name), value)


def set_text_content(element, text: str):
    element.text = text
    if text.strip() != text:
        create_attribute(element, "xml:space", "preserve")


def run_text(r_element) -> str:
    """Visible text of a run; tabs and breaks are kept as characters."""
    text = ""
    for child in r_element:
        if child.tag in (qn("w:t"), qn("w:delText")):
            text += child.text or ""
        elif child.tag == qn("w:tab"):
            text += "\t"
        elif child.tag in (qn("w:br"), qn("w:cr")):
            text += "\n"
    return text


def is_plain_run(r_element) -> bool:
    return all(child.tag in PLAIN_RUN_TAGS for child in r_element)


def map_paragraph(p_element) -> Tuple[str, List[TextSpan]]:
    """
    Builds the visible text of a paragraph (deletions hidden, insertions
    shown) and the run spans behind it. Runs inside hyperlinks, content
    controls or complex fields are mapped but not editable.
    """
    spans: List[TextSpan] = []
    text = ""
    field_depth = 0

    def visit(r_element, top, locked: bool):
        nonlocal text, field_depth
        for fld in r_element.findall(qn("w:fldChar")):
            kind = fld.get(qn("w:fldCharType"))
            if kind == "begin":
                field_depth += 1
            elif kind == "end" and field_depth:
                field_depth -= 1
        r_text = run_text(r_element)
        if r_text:
            editable = not locked and field_depth == 0 and is_plain_run(r_element)
            spans.append(TextSpan(len(text), len(text) + len(r_text), r_element, top, editable))
            text += r_text

    for child in p_element:
        if child.tag == qn("w:r"):
            visit(child, child, False)
        elif child.tag == qn("w:ins"):
            for r in child.findall(qn("w:r")):
                visit(r, child, False)
        elif child.tag in (qn("w:hyperlink"), qn("w:smartTag")):
            for r in child.iter(qn("w:r")):
                visit(r, child, True)
        elif child.tag == qn("w:sdt"):
            for r in child.iter(qn("w:r")):
                visit(r, child, True)
        # w:del and bookmarks contribute no visible text

    return text, spans


def split_run(r_element, offset: int):
    """Splits a plain run at `offset`; returns the right-hand run (inserted after the left)."""
    full = run_text(r_element)
    right = deepcopy(r_element)
    for t in r_element.findall(qn("w:t")):
        r_element.remove(t)
    for t in right.findall(qn("w:t")):
        right.remove(t)

    left_t = create_element("w:t")
    set_text_content(left_t, full[:offset])
    r_element.append(left_t)
    right_t = create_element("w:t")
    set_text_content(right_t, full[offset:])
    right.append(right_t)

    r_element.addnext(right)
    return right


def split_at(p_element, position: int) -> bool:
    """
    Ensures a run boundary exists at `position`. Returns False if the
    position falls inside a run that cannot be split.
    """
    _, spans = map_paragraph(p_element)
    for span in spans:
        if span.start < position < span.end:
            if not span.editable:
                return False
            split_run(span.run, position - span.start)
            return True
    return True


def make_run(text: str, rpr_source=None):
    """Plain run carrying `text`; newlines become w:br, tabs w:tab."""
    run = create_element("w:r")
    if rpr_source is not None and rpr_source.find(qn("w:rPr")) is not None:
        run.append(deepcopy(rpr_source.find(qn("w:rPr"))))
    for i, line in enumerate(text.split("\n")):
        if i:
            run.append(create_element("w:br"))
        for j, piece in enumerate(line.split("\t")):
            if j:
                run.append(create_element("w:tab"))
            if piece:
                t = create_element("w:t")
                set_text_content(t, piece)
                run.append(t)
    return run


def iter_paragraphs(container, in_table: bool = False) -> Iterator[Tuple[object, bool]]:
    """
    Yields (w:p element, in_table) in document order, descending into
    tables and block-level content controls.
    """
    for child in container.iterchildren():
        if child.tag == qn("w:p"):
            yield child, in_table
        elif child.tag == qn("w:tbl"):
            for tr in child.findall(qn("w:tr")):
                for tc in tr.findall(qn("w:tc")):
                    yield from iter_paragraphs(tc, True)
        elif child.tag == qn("w:sdt"):
            content = child.find(qn("w:sdtContent"))
            if content is not None:
                yield from iter_paragraphs(content, in_table)


def heading_level(paragraph: Paragraph) -> Optional[int]:
    """Heading level from outline level or a Heading/Title style; None for body text."""
    try:
        lvl = paragraph.paragraph_format.outline_level
    except (AttributeError, KeyError, ValueError):
        lvl = None
    if lvl is not None and 0 <= lvl <= 8:
        return lvl + 1

    style = paragraph.style
    if style is None or not style.name:
        return None
    match = HEADING_STYLE_RE.match(style.name)
    if match:
        return int(match.group(1))
    if style.name == "Title":
        return 1
    return None


def is_list_paragraph(p_element, style_name: str) -> bool:
    ppr = p_element.find(qn("w:pPr"))
    if ppr is not None and ppr.find(qn("w:numPr")) is not None:
        return True
    return style_name.startswith("List")


def _same_formatting(r1, r2) -> bool:
    rpr1, rpr2 = r1.find(qn("w:rPr")), r2.find(qn("w:rPr"))
    xml1 = rpr1.xml if rpr1 is not None else ""
    xml2 = rpr2.xml if rpr2 is not None else ""
    return xml1 == xml2


def coalesce_runs(container):
    """
    Merges adjacent plain runs with identical formatting so that words
    split by editing history (["Con", "tract"]) map to a single run. Only
    true XML siblings are merged.
    """
    child = container.find(qn("w:r"))
    while child is not None:
        nxt = child.getnext()
        if (
            nxt is not None
            and nxt.tag == qn("w:r")
            and is_plain_run(child)
            and is_plain_run(nxt)
            and _same_formatting(child, nxt)
        ):
            merged = run_text(child) + run_text(nxt)
            for t in child.findall(qn("w:t")):
                child.remove(t)
            t = create_element("w:t")
            set_text_content(t, merged)
            child.append(t)
            container.remove(nxt)
            continue
        child = nxt
        while child is not None and child.tag != qn("w:r"):
            child = child.getnext()


def normalize_docx(doc: DocumentObject):
    """Removes proofing marks and coalesces runs in every body paragraph."""
    for proof_err in doc.element.xpath("//w:proofErr"):
        proof_err.getparent().remove(proof_err)

    for p, _ in iter_paragraphs(doc.element.body):
        coalesce_runs(p)
        for ins in p.findall(qn("w:ins")):
            coalesce_runs(ins)
