"""
Provisioning Errors

Failure kinds reported by the provisioning pipeline. Every error carries a
``kind`` string so fleet results can report failures per workload without
holding on to exception objects.
"""

from typing import Optional


class ProvisioningError(Exception):
    """Base class for all provisioning failures."""

    kind = "ProvisioningError"

    def __init__(self, message: str, workload: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.workload = workload


class DependencyUnresolved(ProvisioningError):
    """A readiness gate exhausted its retry budget."""

    kind = "DependencyUnresolved"

    def __init__(self, subsystem: str, attempts: int = 0, reason: str = "", workload: Optional[str] = None):
        message = f"Subsystem '{subsystem}' not ready after {attempts} attempt(s)"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message, workload)
        self.subsystem = subsystem
        self.attempts = attempts
        self.reason = reason


class ValidationFailure(ProvisioningError):
    """
    The control plane rejected an object.

    Raised with the API server's message verbatim. Seeing one for an object
    behind a readiness gate means the gate is misconfigured.
    """

    kind = "ValidationFailure"

    def __init__(self, object_key: str, status: int, body: str, workload: Optional[str] = None):
        super().__init__(f"{object_key} rejected ({status}): {body}", workload)
        self.object_key = object_key
        self.status = status
        self.body = body


class ConflictingTopology(ProvisioningError):
    """A requested feature needs a shared reference the context does not have."""

    kind = "ConflictingTopology"

    def __init__(self, workload: str, feature: str, detail: str):
        super().__init__(f"Workload '{workload}': {feature} {detail}", workload)
        self.feature = feature
        self.detail = detail


class MalformedDescriptor(ProvisioningError):
    """A workload descriptor failed validation."""

    kind = "MalformedDescriptor"
