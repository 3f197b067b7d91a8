"""
Discovery engine: resolve the identifier set of one deployment.

Three addressing modes are supported:
    manifest  identifiers taken verbatim from a manifest file, no API calls
    deployId  tag query on DeployId, precise by construction
    project   tag query on Project, narrowed to a single DeployId or
              rejected as ambiguous
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .errors import AmbiguousDeploymentError
from .graph import PROJECT_SCOPED_TYPES, TAG_QUERYABLE_TYPES, NodeType, reverse_order
from .ids import instance_profile_name, role_name, secret_prefix
from .manifest import DeploymentManifest, load_manifest
from .provider.base import CloudProvider, FoundResource
from .tags import DEPLOY_ID_TAG, PROJECT_TAG, get_deploy_id_from_tags, get_project_from_tags

logger = logging.getLogger(__name__)


class DiscoveryMode(str, Enum):
    MANIFEST = "manifest"
    DEPLOY_ID = "deployId"
    PROJECT = "project"


@dataclass
class DiscoveryResult:
    """Resolved identifiers of one deployment, ready for teardown."""
    resolved_by: DiscoveryMode
    project: Optional[str] = None
    deploy_id: Optional[str] = None
    region: Optional[str] = None
    identifiers: Dict[NodeType, str] = field(default_factory=dict)
    secret_references: List[str] = field(default_factory=list)
    # Node types whose owner could not be established ("owner unknown - skip")
    unresolved: List[NodeType] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.identifiers and not self.secret_references and not self.unresolved

    def present_types(self) -> List[NodeType]:
        """Node types with something to act on, in deletion order."""
        present = set(self.identifiers) | set(self.unresolved)
        if self.secret_references:
            present.add(NodeType.SECRET_PARAMETER)
        return reverse_order(present)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resolvedBy": self.resolved_by.value,
            "project": self.project,
            "deployId": self.deploy_id,
            "region": self.region,
            "resourceIdentifiers": {t.value: i for t, i in self.identifiers.items()},
            "secretReferences": list(self.secret_references),
            "unresolved": [t.value for t in self.unresolved],
        }


def from_manifest(manifest: DeploymentManifest) -> DiscoveryResult:
    """Build a discovery result from a manifest without touching the provider."""
    return DiscoveryResult(
        resolved_by=DiscoveryMode.MANIFEST,
        project=manifest.project,
        deploy_id=manifest.deploy_id,
        region=manifest.region,
        identifiers=dict(manifest.resource_identifiers),
        secret_references=list(manifest.secret_references),
    )


def _pick_one(node_type: NodeType, found: List[FoundResource], key: str, value: str) -> Optional[FoundResource]:
    """Choose a deterministic match when a tag query returns several resources."""
    if not found:
        return None

    ordered = sorted(found, key=lambda r: r.identifier)
    if len(ordered) > 1:
        extras = [r.identifier for r in ordered[1:]]
        logger.warning(
            f"Multiple {node_type.value} resources tagged {key}={value}; "
            f"using {ordered[0].identifier}, ignoring {extras}"
        )
    return ordered[0]


def _discover_by_deploy_id(deploy_id: str, provider: CloudProvider) -> DiscoveryResult:
    result = DiscoveryResult(resolved_by=DiscoveryMode.DEPLOY_ID, deploy_id=deploy_id, region=provider.region)
    projects = set()

    for node_type in TAG_QUERYABLE_TYPES:
        found = provider.find_tagged(node_type, DEPLOY_ID_TAG, deploy_id)
        chosen = _pick_one(node_type, found, DEPLOY_ID_TAG, deploy_id)
        if chosen is None:
            logger.debug(f"No {node_type.value} tagged {DEPLOY_ID_TAG}={deploy_id}")
            continue

        result.identifiers[node_type] = chosen.identifier
        project = get_project_from_tags(chosen.tags)
        if project:
            projects.add(project)

    if len(projects) == 1:
        result.project = projects.pop()
    elif len(projects) > 1:
        logger.warning(f"Resources of {deploy_id} carry conflicting Project tags: {sorted(projects)}")

    if result.project:
        result.identifiers[NodeType.IAM_ROLE] = role_name(result.project)
        result.identifiers[NodeType.INSTANCE_PROFILE] = instance_profile_name(result.project)
        # Names are per project; keep the parameters this deployment still owns
        result.secret_references = provider.list_secrets(secret_prefix(result.project), {DEPLOY_ID_TAG: deploy_id})
    else:
        # Never derive the project from the deployId string
        result.unresolved = reverse_order(PROJECT_SCOPED_TYPES)
        logger.warning(
            f"Could not resolve project for {deploy_id}; "
            f"skipping {[t.value for t in result.unresolved]} (owner unknown)"
        )

    logger.info(f"Discovered {len(result.identifiers)} resources for {DEPLOY_ID_TAG}={deploy_id}")
    return result


def _discover_by_project(project: str, provider: CloudProvider) -> DiscoveryResult:
    deploy_ids = set()

    for node_type in TAG_QUERYABLE_TYPES:
        for resource in provider.find_tagged(node_type, PROJECT_TAG, project):
            deploy_id = get_deploy_id_from_tags(resource.tags)
            if deploy_id:
                deploy_ids.add(deploy_id)
            else:
                logger.warning(f"{node_type.value} {resource.identifier} has {PROJECT_TAG}={project} but no {DEPLOY_ID_TAG}")

    if len(deploy_ids) > 1:
        raise AmbiguousDeploymentError(project, sorted(deploy_ids))

    if not deploy_ids:
        logger.info(f"No resources found for {PROJECT_TAG}={project}")
        return DiscoveryResult(resolved_by=DiscoveryMode.PROJECT, project=project, region=provider.region)

    deploy_id = deploy_ids.pop()
    logger.info(f"{PROJECT_TAG}={project} resolves to a single deployment: {deploy_id}")

    result = _discover_by_deploy_id(deploy_id, provider)
    result.resolved_by = DiscoveryMode.PROJECT
    return result


def discover(
    mode: DiscoveryMode,
    key: Union[str, Path, DeploymentManifest],
    provider: Optional[CloudProvider] = None,
) -> DiscoveryResult:
    """
    Resolve the identifier set of a deployment.

    Args:
        mode: Addressing mode
        key: Manifest path or object (manifest mode), deployId, or project name
        provider: Cloud provider; not used in manifest mode

    Returns:
        DiscoveryResult; empty when a project has no resources

    Raises:
        AmbiguousDeploymentError: If a project matches more than one deployId
        ManifestError: If the manifest cannot be read
    """
    mode = DiscoveryMode(mode)

    if mode == DiscoveryMode.MANIFEST:
        manifest = key if isinstance(key, DeploymentManifest) else load_manifest(Path(key))
        logger.info(f"Using manifest for {manifest.deploy_id}")
        return from_manifest(manifest)

    if provider is None:
        raise ValueError(f"{mode.value} discovery needs a provider")

    if mode == DiscoveryMode.DEPLOY_ID:
        return _discover_by_deploy_id(str(key), provider)

    return _discover_by_project(str(key), provider)
