"""
Local state directories for deployments.
"""

from pathlib import Path

from .ids import is_valid_deploy_id


def get_deployment_dir(home: Path, deploy_id: str) -> Path:
    """
    Get the directory for a specific deployment.

    Args:
        home: Deckhand home directory
        deploy_id: Deployment ID

    Returns:
        Path: Deployment directory

    Raises:
        ValueError: If deployment ID is invalid
    """
    if not is_valid_deploy_id(deploy_id):
        raise ValueError(f"Invalid deployment ID: {deploy_id}")

    return Path(home) / deploy_id


def create_deployment_dir(home: Path, deploy_id: str) -> Path:
    """
    Create deployment directory and return its path.
    """
    deployment_dir = get_deployment_dir(home, deploy_id)
    deployment_dir.mkdir(parents=True, exist_ok=True)
    return deployment_dir
