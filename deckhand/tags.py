"""
Tagging utilities for consistent resource tagging across deployments.
"""

from typing import Dict, Iterable, List, Optional

PROJECT_TAG = "Project"
DEPLOY_ID_TAG = "DeployId"
NAME_TAG = "Name"

RESERVED_TAGS = (PROJECT_TAG, DEPLOY_ID_TAG)


def base_tags(project: str, deploy_id: str, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Generate the tag set applied to every node of a deployment.

    Args:
        project: Project name
        deploy_id: Deployment ID
        extra: Additional tags to include

    Returns:
        Dictionary of tags to apply to resources
    """
    tags: Dict[str, str] = {}

    # Extra tags first so the ownership tags always win
    if extra:
        tags.update(extra)

    tags[PROJECT_TAG] = project
    tags[DEPLOY_ID_TAG] = deploy_id
    return tags


def named_tags(tags: Dict[str, str], name: str) -> Dict[str, str]:
    """Return a copy of the tag set with a Name tag added."""
    tagged = tags.copy()
    tagged[NAME_TAG] = name
    return tagged


def parse_user_tags(tag_strings: Iterable[str]) -> Dict[str, str]:
    """
    Parse user-provided tag strings in format "key=value".

    Args:
        tag_strings: Tag strings in "key=value" format

    Returns:
        Dictionary of parsed tags

    Raises:
        ValueError: If tag string format is invalid or a reserved key is used
    """
    tags = {}

    for tag_str in tag_strings:
        if "=" not in tag_str:
            raise ValueError(f"Invalid tag format: {tag_str}. Expected 'key=value'")

        key, value = tag_str.split("=", 1)
        if not key.strip() or not value.strip():
            raise ValueError(f"Invalid tag format: {tag_str}. Key and value must not be empty")

        if key.strip() in RESERVED_TAGS:
            raise ValueError(f"Tag key {key.strip()} is reserved and set automatically")

        tags[key.strip()] = value.strip()

    return tags


def to_provider_tags(tags: Dict[str, str]) -> List[Dict[str, str]]:
    """Convert a tag dict into the provider's [{"Key", "Value"}] list form."""
    return [{"Key": k, "Value": v} for k, v in tags.items()]


def from_provider_tags(tag_list: Optional[Iterable[Dict[str, str]]]) -> Dict[str, str]:
    """Convert the provider's tag list form into a dict."""
    return {tag["Key"]: tag["Value"] for tag in (tag_list or [])}


def expected_tags(project: Optional[str], deploy_id: Optional[str]) -> Dict[str, str]:
    """
    Build the ownership tags a live resource must carry.

    Unknown values are left out, so verification only checks what is known.
    """
    expected = {}
    if project:
        expected[PROJECT_TAG] = project
    if deploy_id:
        expected[DEPLOY_ID_TAG] = deploy_id
    return expected


def tags_match(expected: Dict[str, str], actual: Dict[str, str]) -> bool:
    """
    Check that every expected key is present with exactly the expected value.

    Args:
        expected: Required tags
        actual: Live tags returned by the provider

    Returns:
        True if all expected tags match
    """
    return all(actual.get(key) == value for key, value in expected.items())


def get_deploy_id_from_tags(tags: Dict[str, str]) -> Optional[str]:
    """Extract the deployment ID from resource tags."""
    return tags.get(DEPLOY_ID_TAG)


def get_project_from_tags(tags: Dict[str, str]) -> Optional[str]:
    """Extract the project name from resource tags."""
    return tags.get(PROJECT_TAG)
