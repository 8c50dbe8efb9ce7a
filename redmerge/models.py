"""
Shared data contracts: document IR, edit instructions, batches, diff
operations, merge/validation/apply results.

JSON field names are camelCase (the wire format producers write); Python
attributes are snake_case. Models accept either on input.
"""

from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    PrivateAttr,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from redmerge.version import __version__

BlockKind = Literal["heading", "paragraph", "listItem", "tableCell"]


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


# --- Document IR ---


class Block(WireModel):
    """
    One addressable unit of document content, frozen once placed in a snapshot.
    `id` is the engine's volatile handle; `seq_id` is the stable key.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    seq_id: str
    type: BlockKind = "paragraph"
    text: str = ""
    start_pos: int
    end_pos: int
    level: Optional[int] = None
    number: Optional[str] = None
    style: Optional[str] = None
    is_toc: bool = False

    @model_validator(mode="after")
    def _check_bounds(self) -> "Block":
        if self.start_pos >= self.end_pos:
            raise ValueError(f"Block {self.seq_id}: startPos must be < endPos ({self.start_pos} >= {self.end_pos})")
        return self


class OutlineItem(WireModel):
    id: str
    seq_id: str
    level: int = 1
    number: Optional[str] = None
    title: str = ""
    children: List["OutlineItem"] = Field(default_factory=list)


class DefinedTerm(WireModel):
    defined_in: str
    seq_id: str
    used_in: List[str] = Field(default_factory=list)


class DocumentMetadata(WireModel):
    filename: str = "document"
    format: str = "docx"
    generated_by: str = "redmerge"
    version: str = __version__
    block_count: int = 0


class DocumentIR(WireModel):
    """
    Point-in-time snapshot of a document's blocks plus the handle -> key table.
    Snapshots are never mutated; re-extract to get a new one.
    """

    metadata: DocumentMetadata = Field(default_factory=DocumentMetadata)
    blocks: List[Block] = Field(default_factory=list)
    id_mapping: Dict[str, str] = Field(default_factory=dict)
    outline: Optional[List[OutlineItem]] = None
    defined_terms: Optional[Dict[str, DefinedTerm]] = None

    _by_key: Dict[str, int] = PrivateAttr(default_factory=dict)
    _by_handle: Dict[str, int] = PrivateAttr(default_factory=dict)

    @model_validator(mode="after")
    def _check_unique_keys(self) -> "DocumentIR":
        seen = set()
        for block in self.blocks:
            if block.seq_id in seen:
                raise ValueError(f"Duplicate stable key in IR snapshot: {block.seq_id}")
            seen.add(block.seq_id)
        return self

    def model_post_init(self, __context: Any) -> None:
        self._by_key = {b.seq_id: i for i, b in enumerate(self.blocks)}
        self._by_handle = {b.id: i for i, b in enumerate(self.blocks)}

    def index_of(self, ref: Optional[str]) -> Optional[int]:
        """Position of a block in document order, by stable key or by handle."""
        if not ref:
            return None
        if ref in self._by_key:
            return self._by_key[ref]
        return self._by_handle.get(ref)

    def get_block(self, ref: Optional[str]) -> Optional[Block]:
        idx = self.index_of(ref)
        return self.blocks[idx] if idx is not None else None

    @classmethod
    def from_json(cls, data: Union[str, bytes]) -> "DocumentIR":
        return cls.model_validate_json(data)

    def to_json(self, indent: Optional[int] = 2) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=indent)


# --- Edit instructions ---


class EditBase(WireModel):
    @property
    def target(self) -> Optional[str]:
        return getattr(self, "block_id", None)

    @property
    def anchor_text(self) -> Optional[str]:
        """The findText this instruction is anchored on, if any."""
        return getattr(self, "find_text", None)


class ReplaceEdit(EditBase):
    operation: Literal["replace"] = "replace"
    block_id: str = Field(..., min_length=1)
    new_text: str
    diff: bool = True
    comment: Optional[str] = None


class DeleteEdit(EditBase):
    operation: Literal["delete"] = "delete"
    block_id: str = Field(..., min_length=1)
    comment: Optional[str] = None


class CommentEdit(EditBase):
    operation: Literal["comment"] = "comment"
    block_id: str = Field(..., min_length=1)
    comment: str = Field(..., min_length=1)
    find_text: Optional[str] = None


class InsertEdit(EditBase):
    operation: Literal["insert"] = "insert"
    after_block_id: str = Field(..., min_length=1)
    text: str = Field(..., min_length=1)
    type: BlockKind = "paragraph"
    level: Optional[int] = None
    comment: Optional[str] = None

    @property
    def target(self) -> Optional[str]:
        return self.after_block_id


class InsertAfterTextEdit(EditBase):
    operation: Literal["insertAfterText"] = "insertAfterText"
    block_id: str = Field(..., min_length=1)
    find_text: str = Field(..., min_length=1)
    insert_text: str = Field(..., min_length=1)
    comment: Optional[str] = None


class HighlightEdit(EditBase):
    operation: Literal["highlight"] = "highlight"
    block_id: str = Field(..., min_length=1)
    find_text: str = Field(..., min_length=1)
    color: str = "yellow"


class CommentRangeEdit(EditBase):
    operation: Literal["commentRange"] = "commentRange"
    block_id: str = Field(..., min_length=1)
    find_text: str = Field(..., min_length=1)
    comment: str = Field(..., min_length=1)


class CommentHighlightEdit(EditBase):
    operation: Literal["commentHighlight"] = "commentHighlight"
    block_id: str = Field(..., min_length=1)
    find_text: str = Field(..., min_length=1)
    comment: str = Field(..., min_length=1)
    color: str = "yellow"


Edit = Annotated[
    Union[
        ReplaceEdit,
        DeleteEdit,
        CommentEdit,
        InsertEdit,
        InsertAfterTextEdit,
        HighlightEdit,
        CommentRangeEdit,
        CommentHighlightEdit,
    ],
    Field(discriminator="operation"),
]

OPERATIONS = (
    "replace",
    "delete",
    "comment",
    "insert",
    "insertAfterText",
    "highlight",
    "commentRange",
    "commentHighlight",
)

SPAN_OPERATIONS = ("insertAfterText", "highlight", "commentRange", "commentHighlight")


class EditProblem(WireModel):
    kind: Literal["missing_field", "invalid_field", "invalid_operation"]
    field: Optional[str] = None
    message: str


class UnparsedEdit(EditBase):
    """
    A raw record that did not decode into any instruction variant. Kept in the
    batch so validation can report it against its own index.
    """

    operation: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)
    problems: List[EditProblem] = Field(default_factory=list)

    @property
    def target(self) -> Optional[str]:
        value = self.raw.get("blockId") or self.raw.get("afterBlockId")
        return value if isinstance(value, str) else None

    @property
    def anchor_text(self) -> Optional[str]:
        value = self.raw.get("findText")
        return value if isinstance(value, str) else None

    def to_record(self) -> Dict[str, Any]:
        return dict(self.raw)

    @classmethod
    def from_error(cls, raw: Any, error: ValidationError) -> "UnparsedEdit":
        if not isinstance(raw, dict):
            return cls(
                raw={"value": raw},
                problems=[EditProblem(kind="invalid_field", message=f"Edit must be an object, got {type(raw).__name__}")],
            )

        operation = raw.get("operation")
        problems = []
        for err in error.errors():
            err_type = err.get("type", "")
            loc = [str(part) for part in err.get("loc", ())]
            field = loc[-1] if len(loc) > 1 else None
            if err_type == "union_tag_invalid":
                problems.append(
                    EditProblem(kind="invalid_operation", field="operation", message=f"Unknown operation: {operation!r}")
                )
            elif err_type == "union_tag_not_found":
                problems.append(
                    EditProblem(kind="missing_field", field="operation", message="Missing required field: operation")
                )
            elif err_type == "missing":
                problems.append(
                    EditProblem(kind="missing_field", field=field, message=f"Missing required field: {field}")
                )
            elif err_type == "string_too_short":
                problems.append(EditProblem(kind="missing_field", field=field, message=f"Empty required field: {field}"))
            else:
                problems.append(EditProblem(kind="invalid_field", field=field, message=f"{field}: {err.get('msg')}"))

        return cls(operation=operation if isinstance(operation, str) else None, raw=raw, problems=problems)


EditInstruction = Union[Edit, UnparsedEdit]

_EDIT_ADAPTER: TypeAdapter = TypeAdapter(Edit)


def parse_edit(raw: Any) -> EditInstruction:
    """Decodes one raw record. Never raises: failures come back as UnparsedEdit."""
    if isinstance(raw, EditBase):
        return raw
    try:
        return _EDIT_ADAPTER.validate_python(raw)
    except ValidationError as e:
        return UnparsedEdit.from_error(raw, e)


class Author(WireModel):
    name: str = ""
    email: str = ""


class AgentInfo(WireModel):
    agent_id: Optional[str] = None
    assigned_range: Optional[str] = None


class MergeInfo(WireModel):
    source_count: int = 0
    sources: List[str] = Field(default_factory=list)
    conflict_strategy: str = "error"
    conflicts_resolved: int = 0


class EditBatch(WireModel):
    """An ordered list of edit instructions from one producer (or from a merge)."""

    version: str = __version__
    author: Optional[Author] = None
    agent_info: Optional[AgentInfo] = None
    merge_info: Optional[MergeInfo] = None
    edits: List[EditInstruction] = Field(default_factory=list)

    @field_validator("edits", mode="before")
    @classmethod
    def _parse_each_edit(cls, value: Any) -> List[EditInstruction]:
        if value is None:
            return []
        if not isinstance(value, list):
            raise ValueError("edits must be a list")
        return [parse_edit(item) for item in value]

    def to_record(self) -> Dict[str, Any]:
        record = self.model_dump(by_alias=True, exclude_none=True, exclude={"edits"}, mode="json")
        record["edits"] = [edit.to_record() for edit in self.edits]
        return record


# --- Diff operations ---


class InsertOperation(WireModel):
    type: Literal["insert"] = "insert"
    position: int
    text: str


class DeleteOperation(WireModel):
    type: Literal["delete"] = "delete"
    position: int
    text: str


class ReplaceOperation(WireModel):
    type: Literal["replace"] = "replace"
    position: int
    delete_text: str
    insert_text: str


DiffOperation = Union[InsertOperation, DeleteOperation, ReplaceOperation]


class DiffStats(WireModel):
    insertions: int = 0
    deletions: int = 0
    unchanged: int = 0


# --- Merge ---


class ConflictStrategy(str, Enum):
    ERROR = "error"
    FIRST = "first"
    LAST = "last"
    COMBINE = "combine"


class Conflict(WireModel):
    block_id: Optional[str] = None
    key: str
    edits: List[EditInstruction] = Field(default_factory=list)
    sources: List[int] = Field(default_factory=list)
    resolution: Literal["first", "last", "combined", "unresolved"] = "unresolved"


class MergeStats(WireModel):
    total_edits: int = 0
    source_count: int = 0
    conflict_count: int = 0


class MergeResult(WireModel):
    success: bool
    error: Optional[str] = None
    merged: Optional[EditBatch] = None
    conflicts: List[Conflict] = Field(default_factory=list)
    stats: MergeStats = Field(default_factory=MergeStats)


class ConflictAnalysis(WireModel):
    has_conflicts: bool = False
    conflicts: List[Conflict] = Field(default_factory=list)
    edit_counts_by_key: Dict[str, int] = Field(default_factory=dict)


class BlockRange(WireModel):
    agent_index: int
    start_seq_id: str
    end_seq_id: str
    start_index: int
    end_index: int
    block_count: int


# --- Validation ---

Severity = Literal["error", "warning"]


class ValidationIssue(WireModel):
    edit_index: int
    type: str
    block_id: Optional[str] = None
    message: str
    severity: Severity = "error"


class ValidationSummary(WireModel):
    total_edits: int = 0
    valid_edits: int = 0
    invalid_edits: int = 0
    warning_count: int = 0


class ValidationResult(WireModel):
    valid: bool
    issues: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    summary: ValidationSummary = Field(default_factory=ValidationSummary)

    def blocking_indices(self) -> List[int]:
        return sorted({issue.edit_index for issue in self.issues})


# --- Application ---


class ApplyOptions(WireModel):
    track_changes: bool = True
    author: Optional[Author] = None
    validate_first: bool = True
    sort_edits: bool = True
    strict: bool = False
    allow_reduction: bool = False
    all_or_nothing: bool = False
    suppress_warnings: List[str] = Field(default_factory=list)
    format: Literal["docx", "markup"] = "docx"


class SkippedEdit(WireModel):
    index: int
    block_id: Optional[str] = None
    operation: Optional[str] = None
    reason: str


class EditWarning(WireModel):
    index: int
    block_id: Optional[str] = None
    message: str


class AppliedEdit(WireModel):
    index: int
    block_id: Optional[str] = None
    operation: str
    diff_stats: Optional[DiffStats] = None
    new_block_id: Optional[str] = None
    comment_id: Optional[str] = None


class CreatedComment(WireModel):
    id: str
    block_id: Optional[str] = None
    text: str
    author: str


class ApplyResult(WireModel):
    success: bool = False
    state: str = "loaded"
    applied: int = 0
    skipped: List[SkippedEdit] = Field(default_factory=list)
    warnings: List[EditWarning] = Field(default_factory=list)
    details: List[AppliedEdit] = Field(default_factory=list)
    comments: List[CreatedComment] = Field(default_factory=list)
    validation: Optional[ValidationResult] = None
