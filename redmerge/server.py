import json
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP

from redmerge.applicator import apply_edits
from redmerge.config import configure_logging
from redmerge.engine import detect_format
from redmerge.ir import extract_ir_from_bytes
from redmerge.merge import load_edit_batch, merge_edit_files, split_blocks_for_agents
from redmerge.models import ApplyOptions, Author, DocumentIR, EditBatch
from redmerge.validation import validate_batch

# --- LOGGING CONFIGURATION ---
# MCP communicates over stdio. All logs must go to stderr; any print to stdout
# breaks the JSON-RPC protocol.
configure_logging(json_logs=True)

mcp = FastMCP("Redmerge Edit Service")


def _read_file_bytes(path: str) -> bytes:
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"File not found: {path}")
    with open(p, "rb") as f:
        return f.read()


def _load_ir(path: str) -> DocumentIR:
    data = _read_file_bytes(path)
    if path.lower().endswith(".json"):
        return DocumentIR.from_json(data)
    return extract_ir_from_bytes(data, format=detect_format(path), filename=Path(path).name)


def _load_batch(edits_path: Optional[str], edits: Optional[List[Dict[str, Any]]]) -> EditBatch:
    if edits is not None:
        return EditBatch(edits=edits)
    if not edits_path:
        raise ValueError("Provide either edits or edits_path.")
    return load_edit_batch(edits_path)


@mcp.tool()
def extract_ir(
    file_path: str,
    include_outline: bool = True,
    include_defined_terms: bool = True,
    output_path: Optional[str] = None,
) -> str:
    """
    Extracts the block IR of a DOCX or Markdown file.

    Every block gets a stable key (b001, b002, ...) that edit instructions
    refer to. Blocks flagged isToc are table-of-contents entries and cannot be
    edited.

    Args:
        file_path: Absolute path to the document.
        include_outline: Attach the nested heading outline.
        include_defined_terms: Attach the index of quoted defined terms.
        output_path: Optional. If given, the IR is written there and only a summary is returned.
    """
    try:
        data = _read_file_bytes(file_path)
        ir = extract_ir_from_bytes(
            data,
            format=detect_format(file_path),
            filename=Path(file_path).name,
            include_outline=include_outline,
            include_defined_terms=include_defined_terms,
        )
        if output_path:
            with open(output_path, "w", encoding="utf-8") as f:
                f.write(ir.to_json())
            return f"Extracted {len(ir.blocks)} blocks. Saved to: {output_path}"
        return ir.to_json()
    except Exception as e:
        return f"Error extracting IR: {str(e)}"


@mcp.tool()
def validate_edit_batch(
    document_path: str,
    edits_path: Optional[str] = None,
    edits: Optional[List[Dict[str, Any]]] = None,
    strict: bool = False,
    allow_reduction: bool = False,
) -> str:
    """
    Checks an edit batch against a document (or a saved IR JSON) without applying it.

    Args:
        document_path: Document or IR JSON the batch was written against.
        edits_path: Path to a JSON or Markdown edit batch.
        edits: Inline list of edit records, used instead of edits_path.
        strict: Treat content warnings (placeholders, truncation) as errors.
        allow_reduction: Do not flag replacements that drop most of the block.
    """
    try:
        ir = _load_ir(document_path)
        batch = _load_batch(edits_path, edits)
        result = validate_batch(batch.edits, ir, strict=strict, allow_reduction=allow_reduction)
        return json.dumps(result.to_record(), indent=2, ensure_ascii=False)
    except Exception as e:
        return f"Error validating edits: {str(e)}"


@mcp.tool()
def merge_edit_batches(edit_paths: List[str], strategy: str = "error", output_path: Optional[str] = None) -> str:
    """
    Merges edit batches produced by several agents against the same IR.

    Args:
        edit_paths: Batch files in priority order.
        strategy: error (abort on conflict), first, last, or combine (join competing comments).
        output_path: Optional path for the merged batch. Without it the merged batch is returned.
    """
    try:
        result = merge_edit_files(edit_paths, strategy=strategy, output_path=output_path)
        if not result.success:
            keys = ", ".join(c.key for c in result.conflicts)
            return f"Merge failed: {result.error}" + (f" Conflicting keys: {keys}" if keys else "")
        if output_path:
            return (
                f"Merged {result.stats.total_edits} edits from {result.stats.source_count} batches "
                f"({result.stats.conflict_count} conflicts resolved). Saved to: {output_path}"
            )
        return json.dumps(result.merged.to_record(), indent=2, ensure_ascii=False)
    except Exception as e:
        return f"Error merging edits: {str(e)}"


@mcp.tool()
def apply_edit_batch(
    document_path: str,
    author_name: str,
    edits_path: Optional[str] = None,
    edits: Optional[List[Dict[str, Any]]] = None,
    output_path: Optional[str] = None,
    track_changes: bool = True,
    strict: bool = False,
    all_or_nothing: bool = False,
) -> str:
    """
    Applies an edit batch to a DOCX or Markdown document as tracked changes.

    Instructions that fail validation or cannot be applied are skipped with a
    reason; the rest are still applied.

    Args:
        document_path: Absolute path to the source document.
        author_name: Name to appear in Track Changes and comments.
        edits_path: Path to a JSON or Markdown edit batch.
        edits: Inline list of edit records, used instead of edits_path.
        output_path: Optional. Defaults to <name>_redlined next to the source.
        track_changes: If False, edits are applied directly.
        strict: Treat content warnings as errors.
        all_or_nothing: Abort the whole run if any instruction fails validation.
    """
    try:
        if not author_name or not author_name.strip():
            return "Error: author_name cannot be empty."

        data = _read_file_bytes(document_path)
        batch = _load_batch(edits_path, edits)
        options = ApplyOptions(
            track_changes=track_changes,
            author=Author(name=author_name),
            strict=strict,
            all_or_nothing=all_or_nothing,
            format=detect_format(document_path),
        )
        result, output = apply_edits(data, batch, options)
        if output is None:
            return "Run aborted by validation; nothing was written.\n" + result.model_dump_json(
                by_alias=True, exclude_none=True, indent=2
            )

        if not output_path:
            p = Path(document_path)
            if p.stem.endswith("_redlined"):
                output_path = str(p)
            else:
                output_path = str(p.parent / f"{p.stem}_redlined{p.suffix}")
        with open(output_path, "wb") as f:
            f.write(output)

        lines = [f"Applied {result.applied} edits. Skipped {len(result.skipped)} edits. Saved to: {output_path}"]
        lines += [f"- skipped [{s.index}] {s.block_id}: {s.reason}" for s in result.skipped]
        lines += [f"- warning [{w.index}] {w.message}" for w in result.warnings]
        return "\n".join(lines)
    except Exception as e:
        return f"Error applying edits: {str(e)}"


@mcp.tool()
def split_for_agents(document_path: str, num_agents: int, respect_headings: bool = True) -> str:
    """
    Splits a document (or saved IR) into contiguous block ranges, one per agent.

    Args:
        document_path: Document or IR JSON file.
        num_agents: Number of agents to divide the work between.
        respect_headings: Move range boundaries onto nearby headings.
    """
    try:
        ir = _load_ir(document_path)
        ranges = split_blocks_for_agents(ir, num_agents, respect_headings=respect_headings)
        return json.dumps([r.to_record() for r in ranges], indent=2)
    except Exception as e:
        return f"Error splitting document: {str(e)}"


def main():
    mcp.run()


if __name__ == "__main__":
    main()
