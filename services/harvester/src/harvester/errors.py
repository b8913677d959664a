from __future__ import annotations


class HarvesterError(Exception):
    pass


class DuplicateSourceError(HarvesterError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Source {name} already exists")
        self.name = name


class SourceNotFoundError(HarvesterError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Source {name} not found or inactive")
        self.name = name


class RateLimitExceededError(HarvesterError):
    def __init__(self, source_name: str, limit: int, retry_after: float) -> None:
        super().__init__(
            f"Rate limit of {limit} requests/hour exceeded for {source_name}; "
            f"retry in {int(retry_after)}s"
        )
        self.source_name = source_name
        self.retry_after = retry_after


class SourcePayloadError(HarvesterError):
    """Raised when a fetched listing payload has an unexpected shape."""
