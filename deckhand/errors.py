"""
Exception taxonomy for provisioning, discovery and teardown.
"""

from typing import Any, Dict, List, Optional


class DeckhandError(Exception):
    """Base class for all deckhand errors."""


class ConfigurationError(DeckhandError):
    """Invalid or missing configuration."""


class ManifestError(DeckhandError):
    """Deployment manifest is missing, unreadable or malformed."""


class BootstrapTemplateError(DeckhandError):
    """Bootstrap template could not be rendered."""


class ProviderError(DeckhandError):
    """
    Non-retryable failure reported by the cloud provider.

    Carries the provider's error code and raw message so that reports can
    show exactly what the provider said.
    """

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class ResourceNotFoundError(ProviderError):
    """The resource does not exist (already deleted or never created)."""


class ResourceAlreadyExistsError(ProviderError):
    """A uniquely named resource already exists."""


class TransientProviderError(ProviderError):
    """Throttling or eventual-consistency failure that is worth retrying."""


class TagMismatchError(DeckhandError):
    """Live tags of a resource do not match the targeted deployment."""

    def __init__(self, identifier: str, expected: Dict[str, str], actual: Dict[str, str]):
        mismatched = sorted(k for k, v in expected.items() if actual.get(k) != v)
        details = ", ".join(f"{k}: expected={expected[k]!r} actual={actual.get(k)!r}" for k in mismatched)
        super().__init__(f"Tag mismatch on {identifier}: {details}")
        self.identifier = identifier
        self.expected = expected
        self.actual = actual


class AmbiguousDeploymentError(DeckhandError):
    """A project tag matches more than one deployment."""

    def __init__(self, project: str, candidates: List[str]):
        self.project = project
        self.candidates = sorted(candidates)
        listing = "\n".join(f"  - {c}" for c in self.candidates)
        super().__init__(
            f"Multiple deployments found under Project={project}. "
            f"Use --deploy-id to specify which one:\n{listing}"
        )


class ProvisioningError(DeckhandError):
    """
    A creation step failed and provisioning was aborted.

    Attributes:
        manifest: Manifest describing everything created before the failure
        remediation: Literal command that tears down the partial deployment
        node_type: Node type whose creation failed
    """

    def __init__(self, message: str, manifest: Any, remediation: str, node_type: Optional[str] = None):
        super().__init__(message)
        self.manifest = manifest
        self.remediation = remediation
        self.node_type = node_type
