"""
Post-launch health checks over the out-of-band command channel.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .bootstrap import COMPLETION_MARKER, DEFAULT_LOG_FILE
from .errors import ProviderError
from .provider.base import CloudProvider
from .retry import poll_until

logger = logging.getLogger(__name__)


@dataclass
class HealthReport:
    """Result of the post-launch wait."""
    channel_online: bool
    bootstrap_complete: bool
    detail: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.channel_online and self.bootstrap_complete


def wait_for_command_channel(
    provider: CloudProvider,
    instance_id: str,
    timeout: float = 300.0,
    interval: float = 10.0,
    sleep: Callable[[float], None] = time.sleep,
) -> bool:
    """Poll until the instance registers with the command channel."""
    def _online() -> bool:
        try:
            return provider.command_channel_online(instance_id)
        except ProviderError as e:
            logger.debug(f"Command channel check failed: {e}")
            return False

    return poll_until(_online, timeout=timeout, interval=interval, sleep=sleep)


def bootstrap_marker_present(
    provider: CloudProvider,
    instance_id: str,
    log_file: str = DEFAULT_LOG_FILE,
    marker: str = COMPLETION_MARKER,
) -> bool:
    """Check the bootstrap log on the instance for the completion marker."""
    result = provider.run_command(
        instance_id,
        [f'grep -c "{marker}" {log_file} 2>/dev/null || echo 0'],
        timeout=60,
    )
    if not result.ok:
        return False

    try:
        return int(result.stdout.strip().splitlines()[-1]) > 0
    except (ValueError, IndexError):
        return False


def wait_for_bootstrap(
    provider: CloudProvider,
    instance_id: str,
    timeout: float = 480.0,
    interval: float = 10.0,
    log_file: str = DEFAULT_LOG_FILE,
    sleep: Callable[[float], None] = time.sleep,
) -> HealthReport:
    """
    Wait for the command channel and then for the bootstrap completion marker.

    Timeouts are reported in the returned HealthReport, never raised.
    """
    if not wait_for_command_channel(provider, instance_id, timeout=timeout, interval=interval, sleep=sleep):
        logger.warning(f"Instance {instance_id} did not come online on the command channel within {timeout}s")
        return HealthReport(False, False, detail="command channel offline")

    logger.info(f"Instance {instance_id} online, waiting for bootstrap to finish...")

    def _done() -> bool:
        try:
            return bootstrap_marker_present(provider, instance_id, log_file=log_file)
        except ProviderError as e:
            logger.debug(f"Bootstrap check failed: {e}")
            return False

    if not poll_until(_done, timeout=timeout, interval=interval, sleep=sleep):
        logger.warning(f"Bootstrap on {instance_id} not complete after {timeout}s; check {log_file}")
        return HealthReport(True, False, detail=f"bootstrap marker not found in {log_file}")

    return HealthReport(True, True)
