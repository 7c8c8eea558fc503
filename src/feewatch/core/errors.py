from __future__ import annotations


class FeeWatchError(RuntimeError):
    """Base class for failures attributable to a single pipeline stage."""


class AcquisitionError(FeeWatchError):
    def __init__(self, message: str, *, url: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status = status


class ExtractionError(FeeWatchError):
    pass


class ValidationError(FeeWatchError):
    def __init__(self, jurisdiction: str, category: str) -> None:
        super().__init__(f"Category {category!r} not found in document for {jurisdiction}")
        self.jurisdiction = jurisdiction
        self.category = category


class PersistenceError(FeeWatchError):
    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path
