import datetime
import random
from typing import Dict, List, Optional

import structlog
from docx.opc.constants import CONTENT_TYPE as CT
from docx.opc.constants import RELATIONSHIP_TYPE as RT
from docx.opc.part import Part, XmlPart
from docx.oxml import parse_xml
from docx.oxml.ns import nsdecls, nsmap, qn

from redmerge.utils.docx import create_attribute, create_element, set_text_content

logger = structlog.get_logger(__name__)

w14_ns = "http://schemas.microsoft.com/office/word/2010/wordml"
w15_ns = "http://schemas.microsoft.com/office/word/2012/wordml"
w16cid_ns = "http://schemas.microsoft.com/office/word/2016/wordml/cid"
for prefix, uri in (("w14", w14_ns), ("w15", w15_ns), ("w16cid", w16cid_ns)):
    if prefix not in nsmap:
        nsmap[prefix] = uri

RELTYPE_EXTENDED = "http://schemas.microsoft.com/office/2011/relationships/commentsExtended"
CONTENT_TYPE_EXTENDED = "application/vnd.openxmlformats-officedocument.wordprocessingml.commentsExtended+xml"
RELTYPE_IDS = "http://schemas.microsoft.com/office/2016/09/relationships/commentsIds"
CONTENT_TYPE_IDS = "application/vnd.openxmlformats-officedocument.wordprocessingml.commentsIds+xml"


def _utc_now() -> str:
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def _hex_id() -> str:
    return f"{random.randint(0, 0x7FFFFFFF):08X}"


def _element(tag: str, *children, **attrs):
    """w:-namespaced element with w: attributes (keyword names) and child elements."""
    el = create_element(tag)
    for name, value in attrs.items():
        create_attribute(el, f"w:{name}", value)
    for child in children:
        el.append(child)
    return el


class CommentsManager:
    """
    Owns the comment parts of a DOCX package: word/comments.xml plus the
    commentsExtended / commentsIds parts modern Word expects alongside it.
    Parts are reused when the package already has them.
    """

    def __init__(self, doc):
        self.doc = doc
        self.comments_part = self._get_or_create_part(
            CT.WML_COMMENTS,
            RT.COMMENTS,
            "/word/comments%d.xml",
            f"<w:comments {nsdecls('w', 'w14', 'w15')} "
            f'xmlns:w16cid="{w16cid_ns}" '
            f'xmlns:mc="http://schemas.openxmlformats.org/markup-compatibility/2006" '
            f'mc:Ignorable="w14 w15 w16cid"></w:comments>',
        )
        self.extended_part = self._get_or_create_part(
            CONTENT_TYPE_EXTENDED,
            RELTYPE_EXTENDED,
            "/word/commentsExtended%d.xml",
            f"<w15:commentsEx xmlns:w15='{w15_ns}'></w15:commentsEx>",
        )
        self.ids_part = self._get_or_create_part(
            CONTENT_TYPE_IDS,
            RELTYPE_IDS,
            "/word/commentsIds%d.xml",
            f"<w16cid:commentsIds xmlns:w16cid='{w16cid_ns}'></w16cid:commentsIds>",
        )
        self.next_id = self._get_next_comment_id()

    def _as_xml_part(self, part: Part) -> XmlPart:
        """
        Upgrades a generic (blob) Part to an XmlPart. Parts are reached through
        relationships when saving, so repointing the document relationship is
        enough to make the upgraded part the one serialized.
        """
        if isinstance(part, XmlPart):
            return part

        logger.debug("Upgrading generic Part to XmlPart", partname=part.partname)
        xml_part = XmlPart(part.partname, part.content_type, parse_xml(part.blob), part.package)
        for rel in self.doc.part.rels.values():
            if not rel.is_external and rel.target_part is part:
                rel._target = xml_part
        return xml_part

    def _get_or_create_part(self, content_type: str, rel_type: str, partname_tpl: str, template: str) -> XmlPart:
        package = self.doc.part.package
        for part in package.parts:
            if part.content_type == content_type:
                part = self._as_xml_part(part)
                # relate_to reuses an existing relationship of the same type
                self.doc.part.relate_to(part, rel_type)
                return part

        partname = package.next_partname(partname_tpl)
        logger.info("Creating comment part", partname=partname)
        part = XmlPart(partname, content_type, parse_xml(template.encode("utf-8")), package)
        self.doc.part.relate_to(part, rel_type)
        return part

    def _get_next_comment_id(self) -> int:
        ids = [-1]
        for c in self.comments_part.element.findall(qn("w:comment")):
            try:
                ids.append(int(c.get(qn("w:id"))))
            except (ValueError, TypeError):
                pass
        return max(ids) + 1

    def _comment_paragraph(self, line: str, para_id: Optional[str]):
        """One w:p of a comment body; the first carries the paraId and the annotation mark."""
        p = _element("w:p")
        if para_id:
            p.set(qn("w14:paraId"), para_id)
            p.set(qn("w14:textId"), "77777777")
        p.append(_element("w:pPr", _element("w:pStyle", val="CommentText")))
        if para_id:
            ref_style = _element("w:rPr", _element("w:rStyle", val="CommentReference"))
            p.append(_element("w:r", ref_style, _element("w:annotationRef")))
        if line:
            t = _element("w:t")
            set_text_content(t, line)
            p.append(_element("w:r", t))
        return p

    def add_comment(self, author: str, text: str, initials: Optional[str] = None) -> str:
        """Appends a comment to every comment part and returns its w:id."""
        comment_id = str(self.next_id)
        self.next_id += 1
        logger.debug("Adding comment", author=author, comment_id=comment_id)

        if initials is None:
            initials = "".join(word[0] for word in author.split()).upper()
        attrs = {"id": comment_id, "author": author, "date": _utc_now()}
        if initials:
            attrs["initials"] = initials
        comment = _element("w:comment", **attrs)

        para_id = _hex_id()
        for i, line in enumerate(text.split("\n")):
            comment.append(self._comment_paragraph(line, para_id if i == 0 else None))
        self.comments_part.element.append(comment)

        extended = _element("w15:commentEx")
        extended.set(qn("w15:paraId"), para_id)
        extended.set(qn("w15:done"), "0")
        self.extended_part.element.append(extended)

        durable = _element("w16cid:commentId")
        durable.set(qn("w16cid:paraId"), para_id)
        durable.set(qn("w16cid:durableId"), _hex_id())
        self.ids_part.element.append(durable)
        return comment_id

    def list_comments(self) -> List[Dict[str, str]]:
        """Comments in part order as {"id", "author", "text"} records."""
        out = []
        for c in self.comments_part.element.findall(qn("w:comment")):
            lines = ["".join(t.text or "" for t in p.iter(qn("w:t"))) for p in c.findall(qn("w:p"))]
            out.append(
                {
                    "id": c.get(qn("w:id")) or "",
                    "author": c.get(qn("w:author")) or "",
                    "text": "\n".join(lines),
                }
            )
        return out
