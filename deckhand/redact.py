from __future__ import annotations

import re
from typing import Any, Dict

TOKENISH = re.compile(r"(?i)(secret|token|password|apikey|api_key)")
HEX_LONG = re.compile(r"\b[0-9a-f]{32,}\b", re.I)


def redact_dict(d: Dict[str, str]) -> Dict[str, str]:
    return {k: "[REDACTED]" for k in d.keys()}


def redact_values(data: Dict[str, Any]) -> Dict[str, Any]:
    """Redact string values whose key or content looks like a secret."""
    clean: Dict[str, Any] = {}
    for k, v in data.items():
        if isinstance(v, dict):
            clean[k] = redact_values(v)
        elif isinstance(v, str) and (TOKENISH.search(k) or HEX_LONG.search(v)):
            clean[k] = "[REDACTED]"
        else:
            clean[k] = v
    return clean
