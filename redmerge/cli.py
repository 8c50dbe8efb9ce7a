import argparse
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

from redmerge import __version__
from redmerge.applicator import apply_edits
from redmerge.config import configure_logging, get_settings
from redmerge.diff import diff_to_operations, get_diff_stats
from redmerge.engine import WARNING_CATEGORIES, detect_format
from redmerge.exceptions import RedmergeError
from redmerge.ir import extract_ir_from_bytes
from redmerge.markdown_edits import edits_to_markdown
from redmerge.merge import load_edit_batch, merge_edit_files, split_blocks_for_agents, write_edit_batch
from redmerge.models import ApplyOptions, Author, DocumentIR
from redmerge.validation import validate_batch


def _emit(payload: Any, output: Optional[Path] = None):
    text = json.dumps(payload, indent=2, ensure_ascii=False)
    if output:
        with open(output, "w", encoding="utf-8") as f:
            f.write(text + "\n")
        print(f"✅ Saved to {output}", file=sys.stderr)
    else:
        print(text)


def _read_bytes(path: Path) -> bytes:
    if not path.exists():
        print(f"❌ Error: File not found: {path}", file=sys.stderr)
        sys.exit(1)
    with open(path, "rb") as f:
        return f.read()


def _load_ir(path: Path) -> DocumentIR:
    """An IR JSON file is used as-is; any other file is extracted first."""
    data = _read_bytes(path)
    if path.suffix.lower() == ".json":
        return DocumentIR.from_json(data)
    return extract_ir_from_bytes(data, format=detect_format(path.name), filename=path.name)


def handle_extract(args):
    data = _read_bytes(args.input)
    ir = extract_ir_from_bytes(
        data,
        format=args.format or detect_format(args.input.name),
        filename=args.input.name,
        include_outline=not args.no_outline,
        include_defined_terms=not args.no_terms,
        max_text_length=args.max_text_length,
    )
    toc = sum(1 for b in ir.blocks if b.is_toc)
    print(f"Extracted {len(ir.blocks)} blocks from {args.input.name}.", file=sys.stderr)
    if toc:
        print(
            f"⚠️  {toc} table-of-contents block(s) detected; edits to them are flagged (rejected with --strict).",
            file=sys.stderr,
        )
    _emit(ir.to_record(), args.output)


def handle_validate(args):
    ir = _load_ir(args.document)
    batch = load_edit_batch(args.edits)
    merged = validate_batch(batch.edits, ir, strict=args.strict, allow_reduction=args.allow_reduction)
    _emit(merged.to_record(), args.output)

    print(
        f"Stats: {merged.summary.valid_edits} valid, {merged.summary.invalid_edits} invalid, "
        f"{len(merged.warnings)} warnings.",
        file=sys.stderr,
    )
    if not merged.valid:
        for issue in merged.issues:
            print(f"❌ [{issue.edit_index}] {issue.type}: {issue.message}", file=sys.stderr)
        sys.exit(1)


def handle_merge(args):
    result = merge_edit_files(args.inputs, strategy=args.strategy, output_path=args.output)
    if not result.success:
        print(f"❌ Merge failed: {result.error}", file=sys.stderr)
        for conflict in result.conflicts:
            print(f"   - {conflict.key}: batches {conflict.sources}", file=sys.stderr)
        sys.exit(1)

    if not args.output:
        print(json.dumps(result.merged.to_record(), indent=2, ensure_ascii=False))
    else:
        print(f"✅ Saved to {args.output}", file=sys.stderr)
    print(
        f"Stats: {result.stats.total_edits} edits from {result.stats.source_count} batches, "
        f"{result.stats.conflict_count} conflicts resolved ({args.strategy or get_settings().conflict_strategy}).",
        file=sys.stderr,
    )


def handle_apply(args):
    fmt = detect_format(args.original.name)
    data = _read_bytes(args.original)
    batch = load_edit_batch(args.edits)

    options = ApplyOptions(
        track_changes=not args.no_track,
        author=Author(name=args.author) if args.author else None,
        strict=args.strict,
        allow_reduction=args.allow_reduction,
        all_or_nothing=args.all_or_nothing,
        suppress_warnings=args.suppress_warnings or [],
        format=fmt,
    )
    print(f"Applying {len(batch.edits)} edits...", file=sys.stderr)
    result, output = apply_edits(data, batch, options)

    if output is None:
        print("❌ Run aborted by validation (all-or-nothing); nothing was written.", file=sys.stderr)
        for issue in result.validation.issues if result.validation else []:
            print(f"   - [{issue.edit_index}] {issue.message}", file=sys.stderr)
        sys.exit(1)

    output_path = args.output
    if not output_path:
        if args.original.stem.endswith("_redlined"):
            output_path = args.original
        else:
            output_path = args.original.with_name(f"{args.original.stem}_redlined{args.original.suffix}")

    with open(output_path, "wb") as f:
        f.write(output)

    if args.report:
        _emit(result.to_record(), args.report)

    print(f"✅ Saved to {output_path}", file=sys.stderr)
    print(f"Stats: {result.applied} applied, {len(result.skipped)} skipped.", file=sys.stderr)
    for skip in result.skipped:
        print(f"   - [{skip.index}] {skip.block_id}: {skip.reason}", file=sys.stderr)
    for warning in result.warnings:
        print(f"⚠️  [{warning.index}] {warning.message}", file=sys.stderr)
    if result.skipped:
        sys.exit(1)


def handle_split(args):
    ir = _load_ir(args.document)
    ranges = split_blocks_for_agents(ir, args.agents, respect_headings=not args.no_respect_headings)
    print(f"Split {len(ir.blocks)} blocks into {len(ranges)} range(s).", file=sys.stderr)
    _emit([r.to_record() for r in ranges], args.output)


def _read_text(path: Path) -> str:
    if path.suffix.lower() == ".docx":
        ir = extract_ir_from_bytes(_read_bytes(path), filename=path.name, include_outline=False)
        return "\n".join(b.text for b in ir.blocks)
    with open(path, "r", encoding="utf-8") as f:
        return f.read()


def handle_diff(args):
    original = _read_text(args.original)
    modified = _read_text(args.modified)
    operations = diff_to_operations(original, modified)

    if args.json:
        stats = get_diff_stats(original, modified)
        _emit({"operations": [op.to_record() for op in operations], "stats": stats.to_record()})
        return

    print(f"Found {len(operations)} changes:", file=sys.stderr)
    for op in operations:
        if op.type == "delete":
            print(f"[-] @{op.position} {op.text}")
        elif op.type == "insert":
            print(f"[+] @{op.position} {op.text}")
        else:
            print(f"[~] @{op.position} '{op.delete_text}' -> '{op.insert_text}'")


def handle_convert(args):
    """Converts an edit batch between JSON and the Markdown table format."""
    batch = load_edit_batch(args.input)
    to_markdown = args.input.suffix.lower() not in (".md", ".markdown")

    if to_markdown:
        text = edits_to_markdown(batch)
        if args.output:
            with open(args.output, "w", encoding="utf-8") as f:
                f.write(text)
            print(f"✅ Saved to {args.output}", file=sys.stderr)
        else:
            print(text, end="")
    elif args.output:
        write_edit_batch(batch, args.output)
        print(f"✅ Saved to {args.output}", file=sys.stderr)
    else:
        print(json.dumps(batch.to_record(), indent=2, ensure_ascii=False))
    print(f"Stats: {len(batch.edits)} edits converted.", file=sys.stderr)


def _add_output(parser: argparse.ArgumentParser, help_text: str = "Output file (default: stdout)"):
    parser.add_argument("-o", "--output", type=Path, help=help_text)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="redmerge", description="Redmerge: multi-agent document edit pipeline")
    parser.add_argument("-v", "--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", help="Log level (default: REDMERGE_LOG_LEVEL or INFO)")
    parser.add_argument("--log-json", action="store_true", help="Emit logs as JSON lines on stderr")
    subparsers = parser.add_subparsers(dest="command", required=True, help="Subcommands")

    p_extract = subparsers.add_parser("extract", help="Extract the block IR from a DOCX or Markdown file")
    p_extract.add_argument("input", type=Path, help="Input DOCX or Markdown file")
    p_extract.add_argument("--format", choices=["docx", "markup"], help="Override format detection")
    p_extract.add_argument("--no-outline", action="store_true", help="Skip the heading outline")
    p_extract.add_argument("--no-terms", action="store_true", help="Skip the defined-terms index")
    p_extract.add_argument("--max-text-length", type=int, help="Truncate block text in the IR")
    _add_output(p_extract)
    p_extract.set_defaults(func=handle_extract)

    p_validate = subparsers.add_parser("validate", help="Validate an edit batch against a document or IR")
    p_validate.add_argument("document", type=Path, help="Document or IR JSON file")
    p_validate.add_argument("edits", type=Path, help="Edit batch (JSON or Markdown)")
    p_validate.add_argument("--strict", action="store_true", help="Treat content warnings as errors")
    p_validate.add_argument("--allow-reduction", action="store_true", help="Allow large content reductions")
    _add_output(p_validate)
    p_validate.set_defaults(func=handle_validate)

    p_merge = subparsers.add_parser("merge", help="Merge edit batches from several producers")
    p_merge.add_argument("inputs", type=Path, nargs="+", help="Edit batch files, in priority order")
    p_merge.add_argument("--strategy", choices=["error", "first", "last", "combine"], help="Conflict strategy")
    _add_output(p_merge, "Merged batch path (default: stdout)")
    p_merge.set_defaults(func=handle_merge)

    settings = get_settings()
    p_apply = subparsers.add_parser("apply", help="Apply an edit batch to a document")
    p_apply.add_argument("original", type=Path, help="Original DOCX or Markdown file")
    p_apply.add_argument("edits", type=Path, help="Edit batch (JSON or Markdown)")
    _add_output(p_apply, "Output document path")
    p_apply.add_argument("--report", type=Path, help="Write the apply result as JSON")
    p_apply.add_argument("--no-track", action="store_true", help="Apply edits directly, without track changes")
    p_apply.add_argument("--strict", action="store_true", help="Treat content warnings as errors")
    p_apply.add_argument("--allow-reduction", action="store_true", help="Allow large content reductions")
    p_apply.add_argument("--all-or-nothing", action="store_true", help="Abort if any edit fails validation")
    p_apply.add_argument(
        "--author",
        type=str,
        help=f"Author name for Track Changes (default: batch author or '{settings.default_author}')",
    )
    p_apply.add_argument(
        "--suppress-warnings",
        nargs="*",
        choices=sorted(WARNING_CATEGORIES),
        help="Warning categories to silence during export (e.g. UserWarning)",
    )
    p_apply.set_defaults(func=handle_apply)

    p_split = subparsers.add_parser("split", help="Split a document into block ranges, one per agent")
    p_split.add_argument("document", type=Path, help="Document or IR JSON file")
    p_split.add_argument("--agents", type=int, required=True, help="Number of agents")
    p_split.add_argument("--no-respect-headings", action="store_true", help="Do not move boundaries onto headings")
    _add_output(p_split)
    p_split.set_defaults(func=handle_split)

    p_diff = subparsers.add_parser("diff", help="Word-level diff between two texts")
    p_diff.add_argument("original", type=Path, help="Original text, Markdown or DOCX")
    p_diff.add_argument("modified", type=Path, help="Modified text, Markdown or DOCX")
    p_diff.add_argument("--json", action="store_true", help="Output operations and stats as JSON")
    p_diff.set_defaults(func=handle_diff)

    p_convert = subparsers.add_parser("convert", help="Convert an edit batch between JSON and Markdown")
    p_convert.add_argument("input", type=Path, help="Edit batch (.json or .md)")
    _add_output(p_convert)
    p_convert.set_defaults(func=handle_convert)

    return parser


def main(argv: Optional[List[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, True if args.log_json else None)
    try:
        args.func(args)
    except RedmergeError as e:
        print(f"❌ Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
