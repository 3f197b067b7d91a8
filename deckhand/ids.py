"""
Deployment ID generation and deterministic resource naming.
"""

import re
from datetime import datetime, timezone
from typing import Optional

TIMESTAMP_FORMAT = "%Y%m%dT%H%M%SZ"

PROJECT_PATTERN = re.compile(r"^[a-z0-9][a-z0-9-]{0,39}$")
DEPLOY_ID_PATTERN = re.compile(r"^(?P<project>[a-z0-9][a-z0-9-]{0,39})-(?P<ts>\d{8}T\d{6}Z)$")
SECRET_SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


def new_deploy_id(project: str, now: Optional[datetime] = None) -> str:
    """
    Generate a deployment ID in format: <project>-YYYYMMDDTHHMMSSZ

    Args:
        project: Project name
        now: Creation time (defaults to current UTC time)

    Returns:
        str: Deployment ID, unique per provisioning run
    """
    if now is None:
        now = datetime.now(timezone.utc)
    elif now.tzinfo is not None:
        now = now.astimezone(timezone.utc)

    return f"{project}-{now.strftime(TIMESTAMP_FORMAT)}"


def is_valid_project(project: str) -> bool:
    """
    Validate a project name.

    Project names become part of IAM role names and parameter paths, so they
    are limited to lowercase letters, digits and hyphens.
    """
    return bool(PROJECT_PATTERN.match(project or ""))


def is_valid_deploy_id(deploy_id: str) -> bool:
    """
    Validate deployment ID format.

    Args:
        deploy_id: ID to validate

    Returns:
        bool: True if valid format
    """
    return bool(DEPLOY_ID_PATTERN.match(deploy_id or ""))


def role_name(project: str) -> str:
    return f"{project}-role"


def instance_profile_name(project: str) -> str:
    return f"{project}-instance-profile"


def security_group_name(project: str) -> str:
    return f"{project}-sg"


def resource_name(project: str, suffix: str) -> str:
    """Value for the Name tag of a network node."""
    return f"{project}-{suffix}"


def secret_prefix(project: str) -> str:
    return f"/{project}/"


def secret_name(project: str, category: str, kind: str) -> str:
    """
    Build the deterministic secret parameter name /<project>/<category>/<kind>.

    Raises:
        ValueError: If category or kind contain characters outside [A-Za-z0-9_.-]
    """
    for segment in (category, kind):
        if not SECRET_SEGMENT_PATTERN.match(segment or ""):
            raise ValueError(f"Invalid secret path segment: {segment!r}")
    return f"/{project}/{category}/{kind}"


def parse_secret_key(key: str) -> tuple:
    """
    Split a "category/kind" secret key.

    Raises:
        ValueError: If the key is not exactly two segments
    """
    parts = key.strip("/").split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Invalid secret key: {key!r}. Expected 'category/kind'")
    return parts[0], parts[1]
