"""
Event logging utilities for NDJSON format.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

from .redact import redact_values
from .state import create_deployment_dir, get_deployment_dir

EVENTS_FILE = "events.ndjson"


def emit_event(home: Path, deploy_id: str, event_type: str, data: Dict[str, Any]) -> None:
    """
    Append an event to the deployment's events.ndjson file.

    Args:
        home: Deckhand home directory
        deploy_id: Deployment ID
        event_type: Event type (e.g., "PROVISION_START", "NODE_DELETED")
        data: Event data; secret-looking values are redacted
    """
    deployment_dir = create_deployment_dir(home, deploy_id)
    events_file = deployment_dir / EVENTS_FILE

    event = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "type": event_type,
        "data": redact_values(data),
    }

    with open(events_file, "a") as f:
        f.write(json.dumps(event, default=str) + "\n")
        f.flush()  # Ensure immediate write


def read_events(home: Path, deploy_id: str) -> list[Dict[str, Any]]:
    """
    Read all events from a deployment's events.ndjson file.

    Returns:
        List of events
    """
    events_file = get_deployment_dir(home, deploy_id) / EVENTS_FILE

    if not events_file.exists():
        return []

    events = []
    with open(events_file, "r") as f:
        for line in f:
            line = line.strip()
            if line:
                try:
                    events.append(json.loads(line))
                except json.JSONDecodeError:
                    continue  # Skip malformed lines

    return events


# Predefined event types for consistency
class EventTypes:
    PROVISION_START = "PROVISION_START"
    NODE_CREATED = "NODE_CREATED"
    NODE_REUSED = "NODE_REUSED"
    INSTANCE_RUNNING = "INSTANCE_RUNNING"
    BOOTSTRAP_WAIT = "BOOTSTRAP_WAIT"
    BOOTSTRAP_OK = "BOOTSTRAP_OK"
    COST_HINT = "COST_HINT"
    MANIFEST_WRITTEN = "MANIFEST_WRITTEN"
    PROVISION_DONE = "PROVISION_DONE"
    PROVISION_FAILED = "PROVISION_FAILED"
    TEARDOWN_START = "TEARDOWN_START"
    TEARDOWN_DONE = "TEARDOWN_DONE"
