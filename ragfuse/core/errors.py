from __future__ import annotations


class RagFuseError(Exception):
    pass


class ConfigError(RagFuseError, ValueError):
    pass


class BackendError(RagFuseError):
    def __init__(
        self,
        message: str,
        *,
        backend_name: str,
        query: str | None = None,
    ) -> None:
        super().__init__(message)
        self.backend_name = backend_name
        self.query = query


class ModelCallError(RagFuseError):
    def __init__(self, message: str, *, operation: str) -> None:
        super().__init__(message)
        self.operation = operation
