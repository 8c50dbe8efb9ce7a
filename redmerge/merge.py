"""
Combining edit batches from independent producers.

Producers work against the same IR snapshot without coordinating, so the
same block can be claimed twice. Merging is a pure reduction over the
batches in the order given; the outcome depends only on that order and the
conflict strategy.
"""

import json
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import structlog
from pydantic import ValidationError

from redmerge.config import get_settings
from redmerge.exceptions import EditBatchError
from redmerge.markdown_edits import parse_markdown_edits
from redmerge.models import (
    SPAN_OPERATIONS,
    AgentInfo,
    BlockRange,
    CommentEdit,
    Conflict,
    ConflictAnalysis,
    ConflictStrategy,
    DocumentIR,
    EditBatch,
    EditInstruction,
    MergeInfo,
    MergeResult,
    MergeStats,
)

logger = structlog.get_logger(__name__)

COMMENT_SEPARATOR = "\n\n---\n\n"

ConflictKey = Tuple[str, ...]
BatchLike = Union[EditBatch, Dict[str, Any]]


def conflict_key(edit: EditInstruction) -> Optional[ConflictKey]:
    """
    Whole-block instructions collide on the target alone. Span-anchored
    instructions also carry their operation and findText, so two producers
    annotating different spans of one block do not collide.
    """
    target = edit.target
    if not target:
        return None

    anchor = edit.anchor_text
    if edit.operation in SPAN_OPERATIONS or (edit.operation == "comment" and anchor):
        return (target, edit.operation or "", anchor or "")
    return (target,)


def format_key(key: ConflictKey) -> str:
    return ":".join(key)


def _coerce_batch(batch: BatchLike, source: str) -> EditBatch:
    if isinstance(batch, EditBatch):
        return batch
    try:
        return EditBatch.model_validate(batch)
    except ValidationError as e:
        raise EditBatchError(f"Invalid edit batch: {e.errors()[0].get('msg')}", source=source) from e


def _is_plain_comment(edit: EditInstruction) -> bool:
    return isinstance(edit, CommentEdit)


def merge_edits(
    batches: Sequence[BatchLike],
    strategy: Union[ConflictStrategy, str, None] = None,
    sources: Optional[Sequence[str]] = None,
) -> MergeResult:
    """
    Merges batches in the given order.

    - error: any conflict aborts; merged is None and all conflicts are returned
    - first: the earliest instruction for a key wins
    - last: the latest wins, taking the earlier one's place in the batch
    - combine: two comments are joined with a visible separator; anything else
      behaves like first

    One Conflict record per colliding key, listing every instruction that
    competed for it in encounter order.
    """
    strategy = ConflictStrategy(strategy or get_settings().conflict_strategy)
    source_names = list(sources) if sources else [f"batch[{i}]" for i in range(len(batches))]
    coerced = [_coerce_batch(b, source_names[i]) for i, b in enumerate(batches)]

    merged: List[EditInstruction] = []
    slot_by_key: Dict[ConflictKey, int] = {}
    owner_by_key: Dict[ConflictKey, int] = {}
    conflicts: Dict[ConflictKey, Conflict] = {}
    combined_keys = set()

    for batch_index, batch in enumerate(coerced):
        for edit in batch.edits:
            key = conflict_key(edit)
            if key is None or key not in slot_by_key:
                if key is not None:
                    slot_by_key[key] = len(merged)
                    owner_by_key[key] = batch_index
                merged.append(edit)
                continue

            slot = slot_by_key[key]
            existing = merged[slot]
            conflict = conflicts.get(key)
            if conflict is None:
                conflict = Conflict(
                    block_id=key[0],
                    key=format_key(key),
                    edits=[existing],
                    sources=[owner_by_key[key]],
                )
                conflicts[key] = conflict
            conflict.edits.append(edit)
            conflict.sources.append(batch_index)

            if strategy == ConflictStrategy.LAST:
                merged[slot] = edit
                owner_by_key[key] = batch_index
            elif strategy == ConflictStrategy.COMBINE and _is_plain_comment(existing) and _is_plain_comment(edit):
                combined = f"{existing.comment}{COMMENT_SEPARATOR}{edit.comment}"
                merged[slot] = existing.model_copy(update={"comment": combined})
                combined_keys.add(key)
            # error / first / combine fallback: keep existing

    for key, conflict in conflicts.items():
        if strategy == ConflictStrategy.ERROR:
            conflict.resolution = "unresolved"
        elif strategy == ConflictStrategy.LAST:
            conflict.resolution = "last"
        elif strategy == ConflictStrategy.COMBINE and key in combined_keys:
            conflict.resolution = "combined"
        else:
            conflict.resolution = "first"

    conflict_list = list(conflicts.values())
    if strategy == ConflictStrategy.ERROR and conflict_list:
        logger.warning("Merge aborted on conflicts", conflicts=len(conflict_list), sources=len(coerced))
        return MergeResult(
            success=False,
            error=f"{len(conflict_list)} conflict(s) detected. Use a different conflict strategy or resolve manually.",
            merged=None,
            conflicts=conflict_list,
            stats=MergeStats(total_edits=0, source_count=len(coerced), conflict_count=len(conflict_list)),
        )

    merged_batch = EditBatch(
        merge_info=MergeInfo(
            source_count=len(coerced),
            sources=source_names,
            conflict_strategy=strategy.value,
            conflicts_resolved=len(conflict_list),
        ),
        edits=merged,
    )
    logger.info(
        "Merged edit batches",
        sources=len(coerced),
        edits=len(merged),
        conflicts=len(conflict_list),
        strategy=strategy.value,
    )
    return MergeResult(
        success=True,
        merged=merged_batch,
        conflicts=conflict_list,
        stats=MergeStats(total_edits=len(merged), source_count=len(coerced), conflict_count=len(conflict_list)),
    )


def load_edit_batch(path: Union[str, Path]) -> EditBatch:
    """Reads a JSON (or Markdown table) edit batch. Any failure is an EditBatchError."""
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise EditBatchError(f"Failed to read edit file: {e}", source=str(path)) from e

    if path.suffix.lower() in (".md", ".markdown"):
        return parse_markdown_edits(content)

    try:
        data = json.loads(content)
    except json.JSONDecodeError as e:
        raise EditBatchError(f"Failed to parse JSON: {e}", source=str(path)) from e

    # A bare list of edits is accepted as a batch
    if isinstance(data, list):
        data = {"edits": data}
    if not isinstance(data, dict) or not isinstance(data.get("edits"), list):
        raise EditBatchError("Invalid edit file format: missing edits array", source=str(path))
    return _coerce_batch(data, str(path))


def write_edit_batch(batch: EditBatch, path: Union[str, Path]):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(batch.to_record(), f, indent=2, ensure_ascii=False)


def merge_edit_files(
    paths: Sequence[Union[str, Path]],
    strategy: Union[ConflictStrategy, str, None] = None,
    output_path: Optional[Union[str, Path]] = None,
) -> MergeResult:
    """
    File-based merge. An unreadable or malformed file aborts the whole merge
    with success=False and the reason in `error`.
    """
    try:
        batches = [load_edit_batch(p) for p in paths]
    except EditBatchError as e:
        logger.error("Merge aborted on unreadable batch", error=str(e))
        return MergeResult(success=False, error=str(e), stats=MergeStats(source_count=len(paths)))

    result = merge_edits(batches, strategy=strategy, sources=[str(p) for p in paths])

    if output_path and result.success and result.merged is not None:
        try:
            write_edit_batch(result.merged, output_path)
        except OSError as e:
            return result.model_copy(
                update={"success": False, "error": f"Failed to write merged file: {output_path} - {e}"}
            )
        logger.info("Wrote merged batch", path=str(output_path))
    return result


def analyze_conflicts(batches: Sequence[BatchLike]) -> ConflictAnalysis:
    """Reports which keys are claimed more than once, without merging."""
    coerced = [_coerce_batch(b, f"batch[{i}]") for i, b in enumerate(batches)]
    counts: Dict[str, int] = {}
    for batch in coerced:
        for edit in batch.edits:
            key = conflict_key(edit)
            if key is not None:
                counts[format_key(key)] = counts.get(format_key(key), 0) + 1

    conflicts = merge_edits(coerced, strategy=ConflictStrategy.ERROR).conflicts
    return ConflictAnalysis(has_conflicts=bool(conflicts), conflicts=conflicts, edit_counts_by_key=counts)


def create_empty_batch(agent_id: Optional[str] = None, assigned_range: Optional[str] = None) -> EditBatch:
    """Template batch for a producer to fill in."""
    return EditBatch(agent_info=AgentInfo(agent_id=agent_id, assigned_range=assigned_range), edits=[])


def split_blocks_for_agents(
    ir: DocumentIR,
    num_agents: int,
    respect_headings: bool = True,
    lookahead: Optional[int] = None,
) -> List[BlockRange]:
    """
    Partitions the IR's blocks into contiguous, gap-free ranges of roughly
    equal size, one per producer. With respect_headings, each boundary is
    pushed forward (at most `lookahead` blocks) so the next range starts on a
    heading. The last range takes whatever remains.
    """
    blocks = ir.blocks
    if not blocks or num_agents <= 0:
        return []

    lookahead = get_settings().split_lookahead if lookahead is None else lookahead
    last_index = len(blocks) - 1
    per_agent = math.ceil(len(blocks) / num_agents)

    ranges: List[BlockRange] = []
    start = 0
    for agent in range(num_agents):
        end = min(start + per_agent - 1, last_index)

        if agent == num_agents - 1:
            end = last_index
        elif respect_headings:
            for i in range(end + 1, min(end + lookahead, last_index) + 1):
                if blocks[i].type == "heading":
                    end = i - 1
                    break

        ranges.append(
            BlockRange(
                agent_index=agent,
                start_seq_id=blocks[start].seq_id,
                end_seq_id=blocks[end].seq_id,
                start_index=start,
                end_index=end,
                block_count=end - start + 1,
            )
        )

        start = end + 1
        if start > last_index:
            break

    return ranges
