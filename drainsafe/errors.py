class DrainSafeError(Exception):
    """Base class for drainsafe errors"""


class TransportError(DrainSafeError):
    """Metadata service or control plane unreachable, or a non-2xx response"""


class ConflictError(DrainSafeError):
    """Optimistic concurrency mismatch on a node write"""


class NotFoundError(DrainSafeError):
    """The node no longer exists"""


class ConfigurationError(DrainSafeError):
    """Missing identity, unusable kube config or unresolvable instance at startup"""


class ExecutorError(DrainSafeError):
    """Cordon, drain or uncordon failed"""


class DrainError(ExecutorError):
    """Pods could not be evicted within the drain budget"""
