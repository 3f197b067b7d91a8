"""
Bootstrap payload builder: renders the user-data script handed to the compute node.

The builder is a pure transform. It never downloads anything; it embeds the
commands the guest runs to fetch artifacts and the checksums the guest must
verify before using them.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .errors import BootstrapTemplateError
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\{\{([A-Z0-9_]+)\}\}")
# Values end up inside double-quoted shell strings
UNSAFE_VALUE = re.compile(r"[\x00-\x1f\x7f\"'`$\\]")
SHA256_HEX = re.compile(r"^[0-9a-f]{64}$")
SAFE_FILENAME = re.compile(r"^[A-Za-z0-9._-]+$")

RETRY_FUNCTION_KEY = "RETRY_FUNCTION"
VERIFY_ARTIFACTS_KEY = "VERIFY_ARTIFACTS"
RESERVED_KEYS = (RETRY_FUNCTION_KEY, VERIFY_ARTIFACTS_KEY)

DEFAULT_LOG_FILE = "/var/log/deckhand-bootstrap.log"
COMPLETION_MARKER = "Bootstrap complete"


@dataclass(frozen=True)
class ArtifactSpec:
    """
    An externally fetched file and the checksum the guest must verify.

    Exactly one of `sha256` (literal digest) or `checksum_url` (a
    SHASUMS256.txt-style list) must be given. With a checksum list, the
    entry looked up is `checksum_entry`, defaulting to the artifact name.
    """
    name: str
    url: str
    sha256: Optional[str] = None
    checksum_url: Optional[str] = None
    checksum_entry: Optional[str] = None
    dest_dir: str = "/tmp"

    def __post_init__(self):
        if not SAFE_FILENAME.match(self.name or ""):
            raise BootstrapTemplateError(f"Invalid artifact name: {self.name!r}")
        if (self.sha256 is None) == (self.checksum_url is None):
            raise BootstrapTemplateError(
                f"Artifact {self.name} needs exactly one of sha256 or checksum_url"
            )
        if self.sha256 is not None and not SHA256_HEX.match(self.sha256):
            raise BootstrapTemplateError(f"Artifact {self.name} has a malformed sha256 digest")
        for value in (self.url, self.checksum_url, self.checksum_entry, self.dest_dir):
            if value is not None:
                _check_value(f"artifact {self.name}", value)

    @property
    def path(self) -> str:
        return f"{self.dest_dir.rstrip('/')}/{self.name}"

    @property
    def entry(self) -> str:
        return self.checksum_entry or self.name


@dataclass(frozen=True)
class BootstrapPayload:
    """Rendered user-data plus the artifacts the guest verifies."""
    data: bytes
    verification: List[ArtifactSpec] = field(default_factory=list)


def _check_value(key: str, value: str) -> str:
    if UNSAFE_VALUE.search(value):
        raise BootstrapTemplateError(
            f"Value for {key} contains invalid characters (quotes, newlines, or control chars)"
        )
    return value


def render_retry_function(policy: RetryPolicy) -> str:
    """
    Shell `retry_cmd` helper applying the retry policy to a command.

    Shell arithmetic is integer only, so delays and factors are rounded.
    """
    delay = max(1, int(round(policy.initial_delay)))
    cap = max(delay, int(round(policy.max_delay)))

    if policy.backoff == "exponential":
        step = f"delay=$((delay * {max(1, int(round(policy.factor)))}))"
    elif policy.backoff == "linear":
        step = f"delay=$((delay + {delay}))"
    else:
        step = ":"

    lines = [
        "retry_cmd() {",
        f"  local max_retries={policy.max_attempts}",
        f"  local delay={delay}",
        "  local attempt=1",
        "  while true; do",
        '    if "$@"; then',
        "      return 0",
        "    fi",
        "    if [[ $attempt -ge $max_retries ]]; then",
        '      echo "[$(date)] FATAL: Command failed after $max_retries attempts: $*" >&2',
        "      return 1",
        "    fi",
        '    echo "[$(date)] Attempt $attempt failed, retrying in ${delay}s..."',
        "    sleep $delay",
        f"    {step}",
        f"    if [[ $delay -gt {cap} ]]; then delay={cap}; fi",
        "    attempt=$((attempt + 1))",
        "  done",
        "}",
    ]
    return "\n".join(lines)


def render_artifact_block(artifact: ArtifactSpec) -> str:
    """Fetch-and-verify block for one artifact; exits non-zero on mismatch."""
    lines = [
        f'echo "[$(date)] Fetching {artifact.name}..."',
        f'mkdir -p "{artifact.dest_dir}"',
        f'retry_cmd curl -fsSL "{artifact.url}" -o "{artifact.path}"',
    ]

    if artifact.sha256:
        lines.append(f'EXPECTED_SHA="{artifact.sha256}"')
    else:
        sums = f"{artifact.path}.sha256sums"
        lines.extend([
            f'retry_cmd curl -fsSL "{artifact.checksum_url}" -o "{sums}"',
            f"EXPECTED_SHA=$(awk -v f=\"{artifact.entry}\" '$2 == f || $2 == \"*\" f {{print $1}}' \"{sums}\" | head -n1)",
            f'rm -f "{sums}"',
        ])

    lines.extend([
        f"ACTUAL_SHA=$(sha256sum \"{artifact.path}\" | awk '{{print $1}}')",
        'if [[ -z "$EXPECTED_SHA" || "$EXPECTED_SHA" != "$ACTUAL_SHA" ]]; then',
        f'  echo "[$(date)] FATAL: SHA256 mismatch for {artifact.name}! Expected=$EXPECTED_SHA Actual=$ACTUAL_SHA" >&2',
        f'  rm -f "{artifact.path}"',
        "  exit 1",
        "fi",
        f'echo "[$(date)] SHA256 verified OK for {artifact.name}"',
    ])
    return "\n".join(lines)


def render_template(template: str, substitutions: Dict[str, str]) -> str:
    """
    Replace every {{KEY}} placeholder with its value.

    Raises:
        BootstrapTemplateError: If a placeholder has no value
    """
    missing = sorted({key for key in PLACEHOLDER.findall(template) if key not in substitutions})
    if missing:
        raise BootstrapTemplateError(f"Template placeholders without a value: {', '.join(missing)}")

    unused = sorted(set(substitutions) - set(PLACEHOLDER.findall(template)))
    if unused:
        logger.debug(f"Substitutions not used by template: {unused}")

    return PLACEHOLDER.sub(lambda m: substitutions[m.group(1)], template)


def build_payload(
    template: str,
    substitutions: Dict[str, str],
    artifacts: Iterable[ArtifactSpec] = (),
    retry_policy: Optional[RetryPolicy] = None,
) -> BootstrapPayload:
    """
    Build the user-data payload for the compute node.

    Args:
        template: Script template with {{KEY}} placeholders
        substitutions: Placeholder values; must be single-line and free of quotes
        artifacts: Files the guest fetches and verifies
        retry_policy: Policy for the embedded retry_cmd helper

    Returns:
        BootstrapPayload with the rendered bytes and the artifacts to verify

    Raises:
        BootstrapTemplateError: On unsafe values, reserved keys or unresolved placeholders
    """
    artifacts = list(artifacts)
    retry_policy = retry_policy or RetryPolicy.exponential()

    values = {}
    for key, value in substitutions.items():
        if key in RESERVED_KEYS:
            raise BootstrapTemplateError(f"Placeholder {key} is reserved")
        if not PLACEHOLDER.fullmatch(f"{{{{{key}}}}}"):
            raise BootstrapTemplateError(f"Invalid placeholder name: {key!r}")
        values[key] = _check_value(key, str(value))

    placeholders = set(PLACEHOLDER.findall(template))
    if artifacts and VERIFY_ARTIFACTS_KEY not in placeholders:
        raise BootstrapTemplateError(
            f"Artifacts given but template has no {{{{{VERIFY_ARTIFACTS_KEY}}}}} placeholder"
        )
    if VERIFY_ARTIFACTS_KEY in placeholders and RETRY_FUNCTION_KEY not in placeholders:
        raise BootstrapTemplateError(
            f"Template uses {{{{{VERIFY_ARTIFACTS_KEY}}}}} without {{{{{RETRY_FUNCTION_KEY}}}}}"
        )

    values[RETRY_FUNCTION_KEY] = render_retry_function(retry_policy)
    values[VERIFY_ARTIFACTS_KEY] = "\n\n".join(render_artifact_block(a) for a in artifacts)

    rendered = render_template(template, values)
    return BootstrapPayload(data=rendered.encode("utf-8"), verification=artifacts)


def default_template(log_file: str = DEFAULT_LOG_FILE) -> str:
    """
    Base user-data template for the compute node.

    Placeholders: PROJECT, REGION, DEPLOY_ID, SECRET_PREFIX, plus the
    builder-supplied RETRY_FUNCTION and VERIFY_ARTIFACTS.
    """
    return f"""#!/bin/bash
set -euo pipefail

exec > {log_file} 2>&1
echo "[$(date)] Starting bootstrap for {{{{DEPLOY_ID}}}}..."

PROJECT="{{{{PROJECT}}}}"
REGION="{{{{REGION}}}}"
DEPLOY_ID="{{{{DEPLOY_ID}}}}"
SECRET_PREFIX="{{{{SECRET_PREFIX}}}}"

{{{{RETRY_FUNCTION}}}}

# Base packages
echo "[$(date)] Installing dependencies..."
retry_cmd dnf install -y jq tar gzip

{{{{VERIFY_ARTIFACTS}}}}

# Workload environment; secrets are read from Parameter Store at start-up
cat > /etc/default/$PROJECT << EOF
PROJECT=$PROJECT
DEPLOY_ID=$DEPLOY_ID
AWS_REGION=$REGION
AWS_DEFAULT_REGION=$REGION
SECRET_PREFIX=$SECRET_PREFIX
EOF
chmod 600 /etc/default/$PROJECT

echo "[$(date)] {COMPLETION_MARKER}!"
"""
