"""
Edit validation against an IR snapshot.

Structural problems (unknown block, missing field, unknown operation) and
content errors (truncation, corruption) block an instruction. Content
warnings (reduction, dangling ending, findText not found, TOC-like block) are
informational unless strict mode promotes them.
"""

import re
from typing import List, Literal, NamedTuple, Optional, Sequence

import structlog

from redmerge.config import Settings, get_settings
from redmerge.fuzzy import find_text
from redmerge.models import (
    DeleteEdit,
    DocumentIR,
    EditInstruction,
    InsertEdit,
    ReplaceEdit,
    UnparsedEdit,
    ValidationIssue,
    ValidationResult,
    ValidationSummary,
)

logger = structlog.get_logger(__name__)

ORDERING_ISSUES = ("delete_then_reference", "anchor_deleted")

CheckSeverity = Literal["ok", "warning", "error"]

SENTENCE_END = ".!?;:)]\"'”’"

OPEN_BRACKETS = {"(": "open parenthesis", "[": "open bracket", "{": "open brace"}

TRAILING_SEPARATORS = {
    ",": "comma",
    ";": "semicolon",
    ":": "colon",
    "-": "dash",
    "/": "slash",
    "&": "ampersand",
}

# Adjacency patterns typical of text spliced from unrelated spans
CORRUPTION_PATTERNS = [
    (re.compile(r"\b\d+(?:\.\d+)+[A-Z]{0,3}[$£€¥]"), "clause number followed by a currency symbol"),
    (re.compile(r"[$£€¥]\d[\d,]*(?:\.\d+)?[$£€¥]"), "two amounts run together"),
    (re.compile(r"\b\d+(?:\.\d+)+[A-Z][a-z]+"), "clause number fused with a capitalised word"),
]

# Characters XML 1.0 cannot carry; lxml refuses to write them into a document
ILLEGAL_XML_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\ufffe\uffff]")
TEXT_FIELDS = {
    "new_text": "newText",
    "text": "text",
    "insert_text": "insertText",
    "comment": "comment",
    "find_text": "findText",
}


class ContentFinding(NamedTuple):
    type: str
    severity: Literal["warning", "error"]
    message: str


class TextCheck(NamedTuple):
    valid: bool
    severity: CheckSeverity
    findings: List[ContentFinding]

    @property
    def warnings(self) -> List[str]:
        return [f.message for f in self.findings if f.severity == "warning"]

    @property
    def errors(self) -> List[str]:
        return [f.message for f in self.findings if f.severity == "error"]

    @property
    def reason(self) -> str:
        return "; ".join(f.message for f in self.findings)


def _truncation_marker(original: str, new_text: str) -> Optional[str]:
    if new_text.endswith("...") or new_text.endswith("…"):
        if original.endswith("...") or original.endswith("…"):
            return None
        return "ellipsis"

    last = new_text[-1]
    if last in OPEN_BRACKETS and not original.endswith(last):
        return OPEN_BRACKETS[last]

    if new_text.count('"') % 2 == 1 and original.count('"') % 2 == 0:
        return "unterminated quote"
    if new_text.count("“") > new_text.count("”") and original.count("“") <= original.count("”"):
        return "unterminated quote"

    if last in TRAILING_SEPARATORS and not original.endswith(last):
        return f"trailing {TRAILING_SEPARATORS[last]}"

    return None


def validate_new_text(
    original: str,
    new_text: str,
    allow_reduction: bool = False,
    reduction_threshold: Optional[float] = None,
    min_length: Optional[int] = None,
) -> TextCheck:
    """
    Checks a replacement text for generation artifacts.

    Empty new text is a deletion and always passes.
    """
    settings = get_settings()
    threshold = settings.reduction_threshold if reduction_threshold is None else reduction_threshold
    min_len = settings.reduction_min_length if min_length is None else min_length

    findings: List[ContentFinding] = []
    orig = (original or "").rstrip()
    new = (new_text or "").rstrip()

    if not new:
        return TextCheck(True, "ok", findings)

    # (a) reduction
    if not allow_reduction and len(orig) > min_len and len(new) < len(orig) * threshold:
        pct = round(100 * len(new) / len(orig))
        findings.append(
            ContentFinding(
                "reduction",
                "warning",
                f"New text is {pct}% of the original length ({len(new)} vs {len(orig)} chars)",
            )
        )

    # (b) dangling ending
    if orig and orig[-1] in SENTENCE_END and re.match(r"\w", new[-1]):
        findings.append(
            ContentFinding(
                "dangling_ending",
                "warning",
                f"New text ends mid-word ('...{new[-20:]}') where the original ended with '{orig[-1]}'",
            )
        )

    # (c) truncation
    marker = _truncation_marker(orig, new)
    if marker:
        findings.append(
            ContentFinding("truncation", "error", f"New text appears truncated: ends with {marker} ('...{new[-20:]}')")
        )

    # (d) corruption
    for pattern, description in CORRUPTION_PATTERNS:
        for match in pattern.finditer(new):
            if match.group(0) not in orig:
                findings.append(
                    ContentFinding(
                        "corruption",
                        "error",
                        f"Suspicious text corruption: {description} ('{match.group(0)}')",
                    )
                )
                break

    if any(f.severity == "error" for f in findings):
        return TextCheck(False, "error", findings)
    if findings:
        return TextCheck(True, "warning", findings)
    return TextCheck(True, "ok", findings)


def _illegal_characters(index: int, edit: EditInstruction) -> List[ValidationIssue]:
    issues = []
    for attr, name in TEXT_FIELDS.items():
        value = getattr(edit, attr, None)
        if isinstance(value, str) and ILLEGAL_XML_CHARS.search(value):
            issues.append(
                ValidationIssue(
                    edit_index=index,
                    type="invalid_characters",
                    block_id=edit.target,
                    message=f"Edit {index}: {name} contains control characters that cannot be stored in a document",
                )
            )
    return issues


def _structural_issues(index: int, edit: EditInstruction, ir: Optional[DocumentIR]) -> List[ValidationIssue]:
    if isinstance(edit, UnparsedEdit):
        return [
            ValidationIssue(
                edit_index=index,
                type=problem.kind,
                block_id=edit.target,
                message=f"Edit {index}: {problem.message}",
            )
            for problem in edit.problems
        ]

    if ir is not None and ir.get_block(edit.target) is None:
        role = "Anchor block" if isinstance(edit, InsertEdit) else "Block"
        return [
            ValidationIssue(
                edit_index=index,
                type="missing_block",
                block_id=edit.target,
                message=f"Edit {index}: {role} not found: {edit.target}",
            )
        ]
    return []


def validate_edits(
    edits: Sequence[EditInstruction],
    ir: DocumentIR,
    strict: bool = False,
    allow_reduction: bool = False,
    settings: Optional[Settings] = None,
) -> ValidationResult:
    settings = settings or get_settings()
    issues: List[ValidationIssue] = []
    warnings: List[ValidationIssue] = []

    for index, edit in enumerate(edits):
        structural = _structural_issues(index, edit, ir) or _illegal_characters(index, edit)
        if structural:
            issues.extend(structural)
            continue

        block = ir.get_block(edit.target)
        found: List[ValidationIssue] = []

        if block.is_toc:
            found.append(
                ValidationIssue(
                    edit_index=index,
                    type="toc_block",
                    block_id=edit.target,
                    message=(
                        f"Edit {index}: {block.seq_id} looks like a table-of-contents entry; "
                        "tracked changes may be rejected. Edit the heading it points to instead."
                    ),
                    severity="warning",
                )
            )

        anchor = edit.anchor_text
        if anchor and find_text(block.text, anchor) is None:
            found.append(
                ValidationIssue(
                    edit_index=index,
                    type="find_text_not_found",
                    block_id=edit.target,
                    message=f"Edit {index}: findText '{anchor[:40]}' not found in {block.seq_id}",
                    severity="warning",
                )
            )

        if isinstance(edit, ReplaceEdit):
            check = validate_new_text(
                block.text,
                edit.new_text,
                allow_reduction=allow_reduction,
                reduction_threshold=settings.reduction_threshold,
                min_length=settings.reduction_min_length,
            )
            for finding in check.findings:
                found.append(
                    ValidationIssue(
                        edit_index=index,
                        type=finding.type,
                        block_id=edit.target,
                        message=f"Edit {index}: {finding.message}",
                        severity=finding.severity,
                    )
                )

        for issue in found:
            if issue.severity == "error":
                issues.append(issue)
            elif strict:
                issues.append(issue.model_copy(update={"severity": "error"}))
            else:
                warnings.append(issue)

    invalid = len({issue.edit_index for issue in issues})
    summary = ValidationSummary(
        total_edits=len(edits),
        valid_edits=len(edits) - invalid,
        invalid_edits=invalid,
        warning_count=len(warnings),
    )
    if issues:
        logger.info("Validation found blocking issues", issues=len(issues), invalid_edits=invalid)
    return ValidationResult(valid=not issues, issues=issues, warnings=warnings, summary=summary)


def validate_merged_edits(edits: Sequence[EditInstruction], ir: Optional[DocumentIR] = None) -> ValidationResult:
    """
    Structural checks for a merged batch, plus ordering checks: no instruction
    may reference (or anchor on) a block deleted earlier in the same batch.
    """
    issues: List[ValidationIssue] = []
    deleted_at = {}

    for index, edit in enumerate(edits):
        issues.extend(_structural_issues(index, edit, ir))
        target = edit.target
        if not target:
            continue

        if target in deleted_at and not isinstance(edit, DeleteEdit):
            if isinstance(edit, InsertEdit):
                issue_type = "anchor_deleted"
                message = f"Edit {index}: insert anchored on {target}, which is deleted by edit {deleted_at[target]}"
            else:
                issue_type = "delete_then_reference"
                message = f"Edit {index}: {target} is referenced after being deleted by edit {deleted_at[target]}"
            issues.append(ValidationIssue(edit_index=index, type=issue_type, block_id=target, message=message))
        elif isinstance(edit, DeleteEdit):
            deleted_at.setdefault(target, index)

    invalid = len({issue.edit_index for issue in issues})
    summary = ValidationSummary(total_edits=len(edits), valid_edits=len(edits) - invalid, invalid_edits=invalid)
    return ValidationResult(valid=not issues, issues=issues, summary=summary)


def validate_batch(
    edits: Sequence[EditInstruction],
    ir: DocumentIR,
    strict: bool = False,
    allow_reduction: bool = False,
    settings: Optional[Settings] = None,
) -> ValidationResult:
    """validate_edits plus the delete-then-reference ordering checks, as one result."""
    result = validate_edits(edits, ir, strict=strict, allow_reduction=allow_reduction, settings=settings)
    ordering = [i for i in validate_merged_edits(edits).issues if i.type in ORDERING_ISSUES]
    if not ordering:
        return result

    issues = result.issues + ordering
    invalid = len({i.edit_index for i in issues})
    return result.model_copy(
        update={
            "valid": False,
            "issues": issues,
            "summary": result.summary.model_copy(
                update={"valid_edits": len(edits) - invalid, "invalid_edits": invalid}
            ),
        }
    )
