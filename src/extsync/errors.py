from __future__ import annotations


class ExtsyncError(RuntimeError):
    pass


class PathEscape(ExtsyncError):
    """A host-supplied name resolved to a path outside its root."""


class DownloadError(ExtsyncError):
    def __init__(self, message: str, *, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class InstallError(ExtsyncError):
    pass


class MappingIOError(ExtsyncError):
    """The persisted mapping could not be read or written."""


class DescriptorError(ExtsyncError):
    """A component item lacks what its requested action needs."""
