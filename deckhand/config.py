"""
Engine configuration passed explicitly to provisioner, discovery and teardown.
"""

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

from .errors import ConfigurationError
from .retry import RetryPolicy

DEFAULT_REGION = "us-east-1"
DEFAULT_HOME = ".deckhand"

ENV_LINE = re.compile(r"^([A-Z0-9_]+)=(.*)$")


@dataclass(frozen=True)
class EngineConfig:
    """Settings shared by every lifecycle operation."""
    region: str = DEFAULT_REGION
    home: Path = Path(DEFAULT_HOME)
    retry: RetryPolicy = field(default_factory=RetryPolicy)
    poll_interval: float = 5.0
    instance_wait_timeout: float = 300.0
    bootstrap_wait_timeout: float = 480.0
    # Fixed pause after instance termination before touching network nodes
    eni_release_delay: float = 5.0

    @classmethod
    def from_env(cls, region: Optional[str] = None, **overrides) -> "EngineConfig":
        """
        Build a config from environment variables.

        Reads DECKHAND_HOME, AWS_REGION and AWS_DEFAULT_REGION. Explicit
        arguments win over the environment.
        """
        resolved_region = (
            region
            or os.environ.get("AWS_REGION")
            or os.environ.get("AWS_DEFAULT_REGION")
            or DEFAULT_REGION
        )
        home = Path(os.environ.get("DECKHAND_HOME", DEFAULT_HOME)).resolve()
        return cls(region=resolved_region, home=home, **overrides)


def load_env_file(path: str) -> Dict[str, str]:
    """
    Read strict KEY=VALUE lines from an env file.

    Lines that are not upper-case KEY=VALUE pairs (comments, shell code,
    exports) are ignored; nothing is evaluated.

    Args:
        path: Path to the env file

    Returns:
        Parsed key/value pairs

    Raises:
        ConfigurationError: If the file does not exist
    """
    env_path = Path(path)
    if not env_path.exists():
        raise ConfigurationError(f"Env file not found: {path}")

    values = {}
    with open(env_path, "r") as f:
        for line in f:
            match = ENV_LINE.match(line.rstrip("\n"))
            if match:
                values[match.group(1)] = match.group(2)

    return values
