"""
Applies an edit batch to a document.

A run moves through LOADED -> VALIDATED -> SORTED -> APPLYING -> EXPORTED.
Validation problems exclude single instructions from the run; only with
`all_or_nothing` does a blocking issue stop the run (state FAILED). Engine
rejections become skips with a reason. Every index reported refers to the
batch as submitted, not to the sorted order.
"""

from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Tuple, Union

import structlog
from pydantic import ValidationError

from redmerge.config import get_settings
from redmerge.diff import (
    compute_word_diff,
    consumed_text,
    diff_to_operations,
    get_diff_stats,
    inserted_text,
    order_for_application,
    rewrite_ratio,
)
from redmerge.engine import DocumentEngine, EngineResult, ExportOptions, get_engine, warning_categories
from redmerge.exceptions import EditBatchError
from redmerge.fuzzy import find_text
from redmerge.ir import extract_ir
from redmerge.models import (
    AppliedEdit,
    ApplyOptions,
    ApplyResult,
    Block,
    CommentEdit,
    CommentHighlightEdit,
    CommentRangeEdit,
    CreatedComment,
    DeleteEdit,
    DiffStats,
    DocumentIR,
    EditBatch,
    EditInstruction,
    EditWarning,
    HighlightEdit,
    InsertAfterTextEdit,
    InsertEdit,
    ReplaceEdit,
    SkippedEdit,
    UnparsedEdit,
    ValidationResult,
    ValidationSummary,
)
from redmerge.sorting import IndexedEdit, sort_indexed_edits
from redmerge.validation import validate_batch

logger = structlog.get_logger(__name__)

HEAVY_REWRITE_RATIO = 0.7

EngineFactory = Callable[[str, bool], DocumentEngine]


class RunState(str, Enum):
    LOADED = "loaded"
    VALIDATED = "validated"
    SORTED = "sorted"
    APPLYING = "applying"
    EXPORTED = "exported"
    FAILED = "failed"


TRANSITIONS = {
    RunState.LOADED: {RunState.VALIDATED},
    RunState.VALIDATED: {RunState.SORTED, RunState.FAILED},
    RunState.SORTED: {RunState.APPLYING},
    RunState.APPLYING: {RunState.EXPORTED},
    RunState.EXPORTED: set(),
    RunState.FAILED: set(),
}


class EditFailure(Exception):
    """One instruction could not be applied; carries the skip reason."""


def coerce_batch(batch: Union[EditBatch, Dict[str, Any], List[Any]]) -> EditBatch:
    if isinstance(batch, EditBatch):
        return batch
    if isinstance(batch, list):
        batch = {"edits": batch}
    try:
        return EditBatch.model_validate(batch)
    except ValidationError as e:
        raise EditBatchError(f"Invalid edit batch: {e.errors()[0].get('msg')}") from e


def _toc_reason(block: Block, error: str) -> str:
    return (
        f"{block.seq_id} looks like a table-of-contents entry, which cannot take tracked changes ({error}). "
        "Edit the heading it points to and regenerate the table of contents instead."
    )


class EditApplicator:
    """
    One application run against one document. Not reusable: create a new
    applicator per (document, batch). Use as a context manager, or call
    close(), to release the engine session.
    """

    def __init__(
        self,
        document_bytes: bytes,
        batch: Union[EditBatch, Dict[str, Any], List[Any]],
        options: Optional[ApplyOptions] = None,
        engine_factory: EngineFactory = get_engine,
    ):
        settings = get_settings()
        self.options = options or ApplyOptions()
        self.batch = coerce_batch(batch)
        self.edits: List[EditInstruction] = list(self.batch.edits)

        author = self.options.author or self.batch.author
        self.author_name = author.name if author and author.name else settings.default_author

        self.engine = engine_factory(self.options.format, self.options.track_changes)
        self.handle = self.engine.load_document(document_bytes, self.author_name)
        try:
            self.ir: DocumentIR = extract_ir(
                self.engine, self.handle, include_outline=False, include_defined_terms=False
            )
        except Exception:
            self.engine.destroy(self.handle)
            raise

        self.state = RunState.LOADED
        self.result = ApplyResult(state=self.state.value)
        self.excluded: Set[int] = set()
        self.order: List[IndexedEdit] = []
        logger.debug("Loaded document for edit run", blocks=len(self.ir.blocks), edits=len(self.edits))

    def __enter__(self) -> "EditApplicator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self):
        self.engine.destroy(self.handle)

    def _transition(self, target: RunState):
        if target not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Invalid state transition: {self.state.value} -> {target.value}")
        self.state = target
        self.result.state = target.value

    # --- Phases ---

    def validate(self) -> ValidationResult:
        """Collects blocking issues; the affected instructions are excluded from the run."""
        if not self.options.validate_first:
            validation = ValidationResult(
                valid=True, summary=ValidationSummary(total_edits=len(self.edits), valid_edits=len(self.edits))
            )
            # Unparseable records can never run, validated or not
            self.excluded = {i for i, e in enumerate(self.edits) if isinstance(e, UnparsedEdit)}
        else:
            validation = validate_batch(
                self.edits, self.ir, strict=self.options.strict, allow_reduction=self.options.allow_reduction
            )
            self.excluded = set(validation.blocking_indices())

        for issue in validation.warnings:
            self.result.warnings.append(EditWarning(index=issue.edit_index, block_id=issue.block_id, message=issue.message))
        self.result.validation = validation
        self._transition(RunState.VALIDATED)

        if validation.issues and self.options.all_or_nothing:
            logger.warning("Edit run aborted by validation", issues=len(validation.issues))
            self._transition(RunState.FAILED)
        return validation

    def sort(self) -> List[IndexedEdit]:
        runnable = [(i, e) for i, e in enumerate(self.edits) if i not in self.excluded]
        if self.options.sort_edits:
            ordered = sort_indexed_edits([e for _, e in runnable], self.ir)
            self.order = [(runnable[pos][0], edit) for pos, edit in ordered]
        else:
            self.order = runnable
        self._transition(RunState.SORTED)
        return self.order

    def apply(self) -> ApplyResult:
        self._transition(RunState.APPLYING)

        issues_by_index: Dict[int, List[str]] = {}
        if self.result.validation:
            for issue in self.result.validation.issues:
                issues_by_index.setdefault(issue.edit_index, []).append(issue.message)
        for index in sorted(self.excluded):
            edit = self.edits[index]
            reasons = issues_by_index.get(index) or [p.message for p in getattr(edit, "problems", [])]
            reason = "; ".join(reasons) or "Rejected by validation"
            self._skip(index, edit, reason)

        for index, edit in self.order:
            try:
                detail = self._apply_one(index, edit)
            except EditFailure as e:
                self._skip(index, edit, str(e))
                continue
            except Exception as e:
                logger.error("Edit raised while applying", index=index, operation=edit.operation, error=str(e))
                self._skip(index, edit, f"{type(e).__name__}: {e}")
                continue
            self.result.details.append(detail)
            self.result.applied += 1

        self.result.skipped.sort(key=lambda s: s.index)
        self.result.details.sort(key=lambda d: d.index)
        self.result.success = not self.result.skipped and self.result.applied == len(self.edits)
        logger.info(
            "Applied edit batch",
            applied=self.result.applied,
            skipped=len(self.result.skipped),
            total=len(self.edits),
        )
        return self.result

    def export(self) -> bytes:
        categories = warning_categories(self.options.suppress_warnings)
        data = self.engine.export_document(self.handle, ExportOptions(suppress_warnings=categories))
        self._transition(RunState.EXPORTED)
        return data

    def run(self) -> Tuple[ApplyResult, Optional[bytes]]:
        self.validate()
        if self.state == RunState.FAILED:
            return self.result, None
        self.sort()
        self.apply()
        return self.result, self.export()

    # --- Per-instruction application ---

    def _skip(self, index: int, edit: EditInstruction, reason: str):
        logger.debug("Skipped edit", index=index, target=edit.target, reason=reason)
        self.result.skipped.append(
            SkippedEdit(index=index, block_id=edit.target, operation=edit.operation, reason=reason)
        )

    def _warn(self, index: int, block_id: Optional[str], message: str):
        self.result.warnings.append(EditWarning(index=index, block_id=block_id, message=message))

    def _check(self, outcome: EngineResult, block: Block) -> EngineResult:
        if not outcome.success:
            error = outcome.error or "Document engine rejected the change"
            raise EditFailure(_toc_reason(block, error) if block.is_toc else error)
        return outcome

    def _block(self, edit: EditInstruction) -> Block:
        block = self.ir.get_block(edit.target)
        if block is None:
            raise EditFailure(f"Block not found: {edit.target}")
        return block

    def _current_text(self, block: Block) -> str:
        text = self.engine.block_text(self.handle, block.id)
        if text is None:
            raise EditFailure(f"{block.seq_id} is no longer present in the document")
        return text

    def _locate(self, block: Block, find: str) -> Optional[Tuple[int, int]]:
        match = find_text(self._current_text(block), find)
        return (match.start, match.end) if match else None

    def _record_comment(self, outcome: EngineResult, block: Block, text: str) -> Optional[str]:
        if outcome.comment_id is not None:
            self.result.comments.append(
                CreatedComment(id=outcome.comment_id, block_id=block.seq_id, text=text, author=self.author_name)
            )
        return outcome.comment_id

    def _attach_note(self, index: int, block: Block, target: str, text: str) -> Optional[str]:
        """Comment accompanying a content change; failing to attach it only warns."""
        outcome = self.engine.add_comment(self.handle, target, text)
        if not outcome.success:
            self._warn(index, block.seq_id, f"Change applied, but the comment failed: {outcome.error}")
            return None
        return self._record_comment(outcome, block, text)

    def _apply_one(self, index: int, edit: EditInstruction) -> AppliedEdit:
        block = self._block(edit)
        detail = AppliedEdit(index=index, block_id=block.seq_id, operation=edit.operation)

        if isinstance(edit, ReplaceEdit):
            detail.diff_stats = self._replace(index, block, edit)
            if edit.comment:
                detail.comment_id = self._attach_note(index, block, block.id, edit.comment)

        elif isinstance(edit, DeleteEdit):
            if edit.comment:
                detail.comment_id = self._attach_note(index, block, block.id, edit.comment)
            self._check(self.engine.delete_block(self.handle, block.id), block)

        elif isinstance(edit, CommentEdit):
            span = None
            if edit.find_text:
                span = self._locate(block, edit.find_text)
                if span is None:
                    self._warn(
                        index,
                        block.seq_id,
                        f"findText '{edit.find_text[:40]}' not found; comment attached to the whole block",
                    )
            outcome = self._check(self.engine.add_comment(self.handle, block.id, edit.comment, span), block)
            detail.comment_id = self._record_comment(outcome, block, edit.comment)

        elif isinstance(edit, InsertEdit):
            outcome = self._check(
                self.engine.insert_block(self.handle, block.id, edit.text, edit.type, edit.level), block
            )
            detail.new_block_id = outcome.new_block_id
            if edit.comment and outcome.new_block_id:
                detail.comment_id = self._attach_note(index, block, outcome.new_block_id, edit.comment)

        elif isinstance(edit, (InsertAfterTextEdit, HighlightEdit, CommentRangeEdit, CommentHighlightEdit)):
            span = self._locate(block, edit.find_text)
            if span is None:
                raise EditFailure(f"findText '{edit.find_text[:40]}' not found in {block.seq_id}")
            detail.comment_id = self._apply_span_edit(block, edit, span)

        else:
            raise EditFailure(f"Unsupported operation: {edit.operation}")

        return detail

    def _replace(self, index: int, block: Block, edit: ReplaceEdit) -> DiffStats:
        current = self._current_text(block)
        if not edit.diff:
            self._check(self.engine.apply_text_change(self.handle, block.id, 0, current, edit.new_text), block)
            return get_diff_stats(current, edit.new_text)

        diffs = compute_word_diff(current, edit.new_text)
        ratio = rewrite_ratio(diffs)
        if ratio > HEAVY_REWRITE_RATIO:
            self._warn(index, block.seq_id, f"Replacement rewrites {ratio:.0%} of the block")

        operations = [
            (operation.position, consumed_text(operation), inserted_text(operation))
            for operation in order_for_application(diff_to_operations(current, edit.new_text))
        ]
        # All operations are checked against the untouched block so a rejected one never follows applied ones
        verdicts = [self.engine.check_text_change(self.handle, block.id, *op) for op in operations]
        rejected = next((verdict for verdict in verdicts if not verdict.success), None)
        if rejected is not None:
            self._check(self.engine.check_text_change(self.handle, block.id, 0, current, edit.new_text), block)
            self._warn(
                index, block.seq_id, f"Word diff could not be applied ({rejected.error}); replaced the whole block"
            )
            operations = [(0, current, edit.new_text)]

        for operation in operations:
            self._check(self.engine.apply_text_change(self.handle, block.id, *operation), block)
        return get_diff_stats(current, edit.new_text)

    def _apply_span_edit(self, block: Block, edit: EditInstruction, span: Tuple[int, int]) -> Optional[str]:
        if isinstance(edit, InsertAfterTextEdit):
            self._check(self.engine.apply_text_change(self.handle, block.id, span[1], "", edit.insert_text), block)
            return None
        if isinstance(edit, HighlightEdit):
            self._check(self.engine.add_highlight(self.handle, block.id, span, edit.color), block)
            return None
        if isinstance(edit, CommentHighlightEdit):
            self._check(self.engine.add_highlight(self.handle, block.id, span, edit.color), block)
        outcome = self._check(self.engine.add_comment(self.handle, block.id, edit.comment, span), block)
        return self._record_comment(outcome, block, edit.comment)


def apply_edits(
    document_bytes: bytes,
    batch: Union[EditBatch, Dict[str, Any], List[Any]],
    options: Optional[ApplyOptions] = None,
    engine_factory: EngineFactory = get_engine,
) -> Tuple[ApplyResult, Optional[bytes]]:
    """
    Validates, sorts and applies a batch, returning the result and the
    exported document (None when the run FAILED). Raises DocumentLoadError
    or EditBatchError for batch-level problems only.
    """
    with EditApplicator(document_bytes, batch, options, engine_factory) as run:
        return run.run()
