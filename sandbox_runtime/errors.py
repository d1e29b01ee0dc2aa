"""
Exceptions raised by the sandbox runtime.
"""


class SandboxError(Exception):
    """Base class for all sandbox runtime errors."""


class DependenciesUnavailable(SandboxError):
    """Required enforcement tools are missing on this host."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__(
            "Sandbox dependencies are not available: " + "; ".join(self.errors)
        )


class ProxyStartFailed(SandboxError):
    """The filtering proxy process could not be launched or never became ready."""


class NotInitialized(SandboxError):
    """The sandbox manager was used before initialize() or after teardown()."""


class InvalidMountPattern(SandboxError):
    """A filesystem pattern could not be compiled into a mount directive."""

    def __init__(self, pattern: str, reason: str):
        self.pattern = pattern
        self.reason = reason
        super().__init__(f"Invalid mount pattern {pattern!r}: {reason}")


class FilterGenerationFailed(SandboxError):
    """Seccomp bytecode generation was attempted and failed."""
