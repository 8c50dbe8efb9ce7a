"""
Exception hierarchy.

Only batch-level problems raise. Per-instruction problems (missing targets,
bad fields, engine rejections) are collected as issues and skips instead.
"""


class RedmergeError(Exception):
    """Base class for all redmerge errors."""


class EditBatchError(RedmergeError):
    """An edit batch could not be read or decoded as a whole."""

    def __init__(self, message: str, source: str = ""):
        self.source = source
        if source:
            message = f"{source}: {message}"
        super().__init__(message)


class DocumentLoadError(RedmergeError):
    """The input document could not be opened by the document engine."""


class DiffApplicationError(RedmergeError):
    """A diff operation no longer matches the text it is applied to."""

    def __init__(self, message: str, position: int):
        self.position = position
        super().__init__(f"{message} (at offset {position})")
