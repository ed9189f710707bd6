"""Exceptions raised by the backend-cutting rewrite."""


class BackendCuttingError(RuntimeError):
    """Base class for fatal rewrite errors."""


class StructuralError(BackendCuttingError):
    """Malformed graph, dangling reference or missing boundary shape."""


class ConversionError(BackendCuttingError):
    """The subgraph converter failed or broke its contract."""


class PruningError(BackendCuttingError):
    """A weight scheduled for deletion is still referenced by the rewritten graph."""
