from redmerge.applicator import EditApplicator, apply_edits
from redmerge.ir import extract_ir, extract_ir_from_bytes
from redmerge.merge import merge_edits, split_blocks_for_agents
from redmerge.models import ApplyOptions, DocumentIR, EditBatch
from redmerge.validation import validate_batch, validate_edits
from redmerge.version import __version__

__all__ = [
    "EditApplicator",
    "apply_edits",
    "extract_ir",
    "extract_ir_from_bytes",
    "merge_edits",
    "split_blocks_for_agents",
    "validate_batch",
    "validate_edits",
    "ApplyOptions",
    "DocumentIR",
    "EditBatch",
    "__version__",
]
