"""
Error taxonomy for the reconciliation engine.

Configuration errors are fatal for a cycle: they abort planning before any
operation is attempted. Provider errors are scoped to a single operation and
never abort independent siblings.
"""

from typing import List


class ConvergeError(Exception):
    """Base class for all engine errors."""
    pass


class ConfigurationError(ConvergeError):
    """The declared desired state cannot be planned."""
    pass


class DuplicateResourceError(ConfigurationError):
    """Two declared resources share the same (kind, name) identity."""

    def __init__(self, ref):
        self.ref = ref
        super().__init__(f"Duplicate resource declaration: {ref}")


class SelfDependencyError(ConfigurationError):
    """A resource lists itself as a dependency."""

    def __init__(self, ref):
        self.ref = ref
        super().__init__(f"Resource {ref} depends on itself")


class CycleError(ConfigurationError):
    """The dependency graph contains a cycle."""

    def __init__(self, cycle: List):
        self.cycle = list(cycle)
        path = " -> ".join(str(r) for r in self.cycle + self.cycle[:1])
        super().__init__(f"Dependency cycle detected: {path}")


class DanglingDependencyError(ConfigurationError):
    """A desired resource depends on a resource scheduled for deletion."""

    def __init__(self, ref, dependency):
        self.ref = ref
        self.dependency = dependency
        super().__init__(
            f"Resource {ref} depends on {dependency}, "
            f"which is scheduled for deletion in this cycle"
        )


class UnresolvedDependencyError(ConfigurationError):
    """A desired resource depends on a resource that is neither declared nor observed."""

    def __init__(self, ref, dependency):
        self.ref = ref
        self.dependency = dependency
        super().__init__(
            f"Resource {ref} depends on {dependency}, "
            f"which is neither declared nor observed"
        )


class ProviderError(ConvergeError):
    """Raised by a provider when an operation could not be applied."""

    def __init__(self, message: str, retryable: bool = False):
        super().__init__(message)
        self.retryable = retryable


class OperationTimeoutError(ProviderError):
    """An operation exceeded its deadline."""

    def __init__(self, message: str):
        super().__init__(message, retryable=True)
