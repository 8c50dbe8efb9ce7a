"""
Document engine interface.

An engine owns the live document: it parses bytes, enumerates blocks in a
deterministic traversal order, performs tracked mutations and exports. The
orchestrator only talks to this interface. Mutations report failures through
EngineResult instead of raising, so one rejected instruction never takes
down a batch.
"""

import warnings
from contextlib import contextmanager
from typing import Iterator, List, NamedTuple, Optional, Protocol, Sequence, Tuple, Type

from redmerge.models import BlockKind


class RawBlock(NamedTuple):
    handle: str
    kind: BlockKind
    text: str
    position: int
    level: Optional[int] = None
    style: Optional[str] = None


class EngineResult(NamedTuple):
    success: bool
    error: Optional[str] = None
    comment_id: Optional[str] = None
    new_block_id: Optional[str] = None

    @classmethod
    def ok(cls, comment_id: Optional[str] = None, new_block_id: Optional[str] = None) -> "EngineResult":
        return cls(True, None, comment_id, new_block_id)

    @classmethod
    def fail(cls, error: str) -> "EngineResult":
        return cls(False, error)


class ExportOptions(NamedTuple):
    # Warning categories silenced for the duration of the export call only
    suppress_warnings: Tuple[Type[Warning], ...] = ()


WARNING_CATEGORIES = {
    "UserWarning": UserWarning,
    "DeprecationWarning": DeprecationWarning,
    "FutureWarning": FutureWarning,
    "RuntimeWarning": RuntimeWarning,
    "ResourceWarning": ResourceWarning,
}


def warning_categories(names: Sequence[str]) -> Tuple[Type[Warning], ...]:
    """Maps category names (as given in options/config) to warning classes."""
    unknown = [n for n in names if n not in WARNING_CATEGORIES]
    if unknown:
        raise ValueError(f"Unknown warning categories: {', '.join(unknown)}")
    return tuple(WARNING_CATEGORIES[n] for n in names)


@contextmanager
def suppressed(categories: Sequence[Type[Warning]]) -> Iterator[None]:
    """Ignores the given warning categories inside the block; the filter state is restored on exit."""
    with warnings.catch_warnings():
        for category in categories:
            warnings.simplefilter("ignore", category)
        yield


class DocumentEngine(Protocol):
    format: str

    def load_document(self, data: bytes, author: str) -> str:
        """Parses bytes and returns a session handle. Raises DocumentLoadError."""
        ...

    def enumerate_blocks(self, handle: str) -> List[RawBlock]: ...

    def block_text(self, handle: str, block: str) -> Optional[str]: ...

    def check_text_change(
        self, handle: str, block: str, position: int, delete_text: str, insert_text: str
    ) -> EngineResult:
        """Verdict apply_text_change would give, without touching the document."""
        ...

    def apply_text_change(
        self, handle: str, block: str, position: int, delete_text: str, insert_text: str
    ) -> EngineResult: ...

    def insert_block(
        self, handle: str, anchor: str, text: str, kind: BlockKind = "paragraph", level: Optional[int] = None
    ) -> EngineResult: ...

    def delete_block(self, handle: str, block: str) -> EngineResult: ...

    def add_comment(
        self, handle: str, block: str, text: str, span: Optional[Tuple[int, int]] = None
    ) -> EngineResult: ...

    def add_highlight(self, handle: str, block: str, span: Tuple[int, int], color: str = "yellow") -> EngineResult: ...

    def export_document(self, handle: str, options: ExportOptions = ExportOptions()) -> bytes: ...

    def destroy(self, handle: str) -> None: ...


def get_engine(fmt: str, track_changes: bool = True) -> DocumentEngine:
    """Engine for a document format ("docx" or "markup")."""
    if fmt == "docx":
        from redmerge.redline.engine import DocxEngine

        return DocxEngine(track_changes=track_changes)
    if fmt == "markup":
        from redmerge.markup import MarkupEngine

        return MarkupEngine(track_changes=track_changes)
    raise ValueError(f"Unsupported document format: {fmt}")


def detect_format(filename: str) -> str:
    return "docx" if filename.lower().endswith(".docx") else "markup"
