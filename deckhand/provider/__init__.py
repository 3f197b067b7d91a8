"""
Cloud provider collaborators.
"""

from .base import CloudProvider, CommandResult, FoundResource, InstanceSpec, RolePolicies

__all__ = [
    "CloudProvider",
    "CommandResult",
    "FoundResource",
    "InstanceSpec",
    "RolePolicies",
]
