"""
Deployment manifest: the durable record of one provisioning run.
"""

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ManifestError
from .graph import NodeType
from .ids import is_valid_deploy_id


class DeploymentManifest(BaseModel):
    """
    Identifiers of every node created by one provisioning run.

    Serialized with camelCase keys; node types are keyed by their
    hyphenated values (e.g. "route-table"). Secret parameters are listed in
    `secret_references` rather than in `resource_identifiers`.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    project: str
    deploy_id: str = Field(alias="deployId")
    region: str
    resource_identifiers: Dict[NodeType, str] = Field(default_factory=dict, alias="resourceIdentifiers")
    secret_references: List[str] = Field(default_factory=list, alias="secretReferences")
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="createdAt"
    )

    @field_validator("deploy_id")
    @classmethod
    def _check_deploy_id(cls, v: str) -> str:
        if not is_valid_deploy_id(v):
            raise ValueError(f"Invalid deployment ID: {v}")
        return v

    @field_validator("resource_identifiers")
    @classmethod
    def _no_secret_entries(cls, v: Dict[NodeType, str]) -> Dict[NodeType, str]:
        if NodeType.SECRET_PARAMETER in v:
            raise ValueError("secret-parameter identifiers belong in secretReferences")
        return v

    def identifier(self, node_type: NodeType) -> Optional[str]:
        return self.resource_identifiers.get(NodeType(node_type))

    def with_resource(self, node_type: NodeType, identifier: str) -> "DeploymentManifest":
        """Return a copy with one more node identifier recorded."""
        resources = dict(self.resource_identifiers)
        resources[NodeType(node_type)] = identifier
        return self.model_copy(update={"resource_identifiers": resources})

    def with_secret(self, name: str) -> "DeploymentManifest":
        """Return a copy with one more secret reference appended."""
        return self.model_copy(update={"secret_references": [*self.secret_references, name]})

    def to_dict(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)


def write_manifest(manifest: DeploymentManifest, path: Path) -> Path:
    """
    Write the manifest atomically: temp file in the same directory, then rename.

    Args:
        manifest: Manifest to write
        path: Destination file

    Returns:
        Path: The written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(manifest.to_json())
            f.write("\n")
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise

    return path


def load_manifest(path: Path) -> DeploymentManifest:
    """
    Read a manifest written by `write_manifest`.

    Raises:
        ManifestError: If the file is missing, unreadable, not JSON, or fails validation
    """
    path = Path(path)
    if not path.exists():
        raise ManifestError(f"Manifest not found: {path}")

    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ManifestError(f"Manifest {path} is not valid JSON: {e}") from e
    except OSError as e:
        raise ManifestError(f"Manifest {path} cannot be read: {e}") from e

    try:
        return DeploymentManifest.model_validate(data)
    except ValidationError as e:
        raise ManifestError(f"Manifest {path} is invalid: {e}") from e
