"""
Teardown planner and executor.

Deletes a discovered deployment in reverse dependency order. Every node's
live tags are re-verified right before its delete call, transient provider
errors are retried, "not found" counts as success, and a failing node never
stops the remaining ones. The project's shared IAM role and instance profile
are kept while another deployment of the project is still live.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .config import EngineConfig
from .discovery import DiscoveryResult
from .errors import ProviderError, ResourceNotFoundError, TagMismatchError
from .events import EventTypes, emit_event
from .graph import SHARED_TYPES, TAG_QUERYABLE_TYPES, NodeType, get_node
from .provider.base import CloudProvider
from .retry import poll_until
from .tags import PROJECT_TAG, expected_tags, get_deploy_id_from_tags, tags_match

logger = logging.getLogger(__name__)


class NodeOutcome(str, Enum):
    DELETED = "deleted"
    NOT_FOUND = "not-found"
    SKIPPED_TAG_MISMATCH = "skipped-tag-mismatch"
    FAILED = "failed"
    SKIPPED_OWNER_UNKNOWN = "skipped-owner-unknown"
    SKIPPED_IN_USE = "skipped-in-use"


ERROR_OUTCOMES = frozenset({NodeOutcome.FAILED, NodeOutcome.SKIPPED_TAG_MISMATCH})
# Outcomes after which the resource may still exist
REMAINING_OUTCOMES = ERROR_OUTCOMES | {NodeOutcome.SKIPPED_OWNER_UNKNOWN, NodeOutcome.SKIPPED_IN_USE}


@dataclass(frozen=True)
class PlannedDeletion:
    """One delete call of the plan; identifier is None when the owner is unknown."""
    node_type: NodeType
    identifier: Optional[str]

    @property
    def label(self) -> str:
        return get_node(self.node_type).label

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.node_type.value, "identifier": self.identifier}


@dataclass
class NodeResult:
    """Outcome of one planned deletion."""
    node_type: NodeType
    identifier: Optional[str]
    outcome: NodeOutcome
    error: Optional[str] = None  # raw provider error text or skip reason
    attempts: int = 0

    @property
    def is_error(self) -> bool:
        return self.outcome in ERROR_OUTCOMES

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.node_type.value,
            "identifier": self.identifier,
            "outcome": self.outcome.value,
            "attempts": self.attempts,
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class TeardownOptions:
    dry_run: bool = False
    auto_confirm: bool = False
    # Called with the plan when auto_confirm is off; returning False aborts
    confirm: Optional[Callable[[List[PlannedDeletion]], bool]] = None
    cancel: Optional[threading.Event] = None


@dataclass
class TeardownReport:
    """Terminal report of one teardown invocation. Never persisted by the engine."""
    project: Optional[str]
    deploy_id: Optional[str]
    region: str
    resolved_by: str
    plan: List[PlannedDeletion] = field(default_factory=list)
    results: List[NodeResult] = field(default_factory=list)
    dry_run: bool = False
    aborted: bool = False
    cancelled: bool = False

    @property
    def errors(self) -> int:
        return sum(1 for r in self.results if r.is_error)

    @property
    def remaining(self) -> List[PlannedDeletion]:
        """Nodes that may still exist: errors, unknown owners, and anything not attempted."""
        remaining = [
            PlannedDeletion(r.node_type, r.identifier) for r in self.results if r.outcome in REMAINING_OUTCOMES
        ]
        if not self.dry_run:
            remaining.extend(self.plan[len(self.results):])
        return remaining

    @property
    def ok(self) -> bool:
        return self.errors == 0 and not self.aborted and not self.cancelled

    @property
    def remediation(self) -> Optional[str]:
        """Literal command that finishes the teardown, when it is not fully successful."""
        if self.ok or self.dry_run:
            return None
        if self.deploy_id:
            return f"deckhand teardown --deploy-id {self.deploy_id} --region {self.region} --yes"
        if self.project:
            return f"deckhand teardown --project {self.project} --region {self.region} --yes"
        return None

    def counts(self) -> Dict[str, int]:
        counts = {outcome.value: 0 for outcome in NodeOutcome}
        for r in self.results:
            counts[r.outcome.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "project": self.project,
            "deployId": self.deploy_id,
            "region": self.region,
            "resolvedBy": self.resolved_by,
            "dryRun": self.dry_run,
            "plan": [p.to_dict() for p in self.plan],
        }
        if self.dry_run:
            return data

        data.update({
            "results": [r.to_dict() for r in self.results],
            "counts": self.counts(),
            "errors": self.errors,
            "aborted": self.aborted,
            "cancelled": self.cancelled,
            "remaining": [p.to_dict() for p in self.remaining],
            "remediation": self.remediation,
        })
        return data


def plan_teardown(result: DiscoveryResult) -> List[PlannedDeletion]:
    """
    Ordered deletions for a discovery result.

    Reverse dependency order restricted to present node types, one entry per
    secret reference, and an identifier-less entry for each unresolved type.
    """
    plan = []
    for node_type in result.present_types():
        if node_type == NodeType.SECRET_PARAMETER:
            plan.extend(PlannedDeletion(node_type, name) for name in result.secret_references)
            if node_type in result.unresolved:
                plan.append(PlannedDeletion(node_type, None))
        elif node_type in result.unresolved:
            plan.append(PlannedDeletion(node_type, None))
        else:
            plan.append(PlannedDeletion(node_type, result.identifiers[node_type]))
    return plan


class _Executor:
    """Runs the plan one node at a time."""

    def __init__(self, result: DiscoveryResult, provider: CloudProvider, config: EngineConfig, sleep: Callable[[float], None]):
        self.result = result
        self.provider = provider
        self.config = config
        self.sleep = sleep
        self.expected = expected_tags(result.project, result.deploy_id)
        self._others: Optional[List[str]] = None

    def run_node(self, planned: PlannedDeletion) -> NodeResult:
        node_type, identifier = planned.node_type, planned.identifier

        if identifier is None or not self.expected:
            logger.warning(f"Skipping {planned.label}: owner unknown")
            return NodeResult(node_type, identifier, NodeOutcome.SKIPPED_OWNER_UNKNOWN)

        if node_type in SHARED_TYPES:
            try:
                others = self._other_deployments()
            except ProviderError as e:
                logger.error(f"Could not check other deployments of {self.result.project}: {e}")
                return NodeResult(node_type, identifier, NodeOutcome.FAILED, error=str(e))
            if others:
                reason = f"still used by {', '.join(others)}"
                logger.warning(f"Keeping {planned.label} {identifier}: {reason}")
                return NodeResult(node_type, identifier, NodeOutcome.SKIPPED_IN_USE, error=reason)

        # Tag verification
        try:
            live = self.config.retry.run(lambda: self.provider.get_tags(node_type, identifier), sleep=self.sleep)
        except ResourceNotFoundError:
            logger.info(f"{planned.label} {identifier} not found (already deleted)")
            return NodeResult(node_type, identifier, NodeOutcome.NOT_FOUND)
        except ProviderError as e:
            logger.error(f"Could not verify tags of {planned.label} {identifier}: {e}")
            return NodeResult(node_type, identifier, NodeOutcome.FAILED, error=str(e))

        # Shared nodes belong to the project, not to the deployment that created them
        expected = expected_tags(self.result.project, None) if node_type in SHARED_TYPES else self.expected
        if not tags_match(expected, live):
            mismatch = TagMismatchError(identifier, expected, live)
            logger.warning(f"Skipping {planned.label}: {mismatch}")
            return NodeResult(node_type, identifier, NodeOutcome.SKIPPED_TAG_MISMATCH, error=str(mismatch))

        # Delete with bounded retry
        attempts = [1]

        def _on_retry(attempt: int, error: BaseException, delay: float) -> None:
            attempts[0] = attempt + 1
            logger.warning(f"Deleting {planned.label} {identifier} failed ({error}), retrying in {delay}s")

        try:
            self.config.retry.run(
                lambda: self.provider.delete(node_type, identifier), on_retry=_on_retry, sleep=self.sleep
            )
        except ResourceNotFoundError:
            logger.info(f"{planned.label} {identifier} not found (already deleted)")
            return NodeResult(node_type, identifier, NodeOutcome.NOT_FOUND, attempts=attempts[0])
        except ProviderError as e:
            logger.error(f"Failed to delete {planned.label} {identifier}: {e}")
            return NodeResult(node_type, identifier, NodeOutcome.FAILED, error=str(e), attempts=attempts[0])

        if node_type == NodeType.COMPUTE_INSTANCE:
            self._wait_terminated(identifier)

        logger.info(f"Deleted {planned.label} {identifier}")
        return NodeResult(node_type, identifier, NodeOutcome.DELETED, attempts=attempts[0])

    def _other_deployments(self) -> List[str]:
        """DeployIds of other live deployments of the same project, looked up once."""
        if self._others is None:
            others = set()
            for node_type in TAG_QUERYABLE_TYPES:
                found = self.config.retry.run(
                    lambda: self.provider.find_tagged(node_type, PROJECT_TAG, self.result.project), sleep=self.sleep
                )
                for resource in found:
                    deploy_id = get_deploy_id_from_tags(resource.tags)
                    if deploy_id and deploy_id != self.result.deploy_id:
                        others.add(deploy_id)
            self._others = sorted(others)
        return self._others

    def _wait_terminated(self, instance_id: str) -> None:
        def _terminated() -> bool:
            try:
                return self.provider.instance_state(instance_id) == "terminated"
            except ResourceNotFoundError:
                return True
            except ProviderError as e:
                logger.debug(f"Instance state check failed: {e}")
                return False

        logger.info(f"Waiting for instance {instance_id} to terminate...")
        if not poll_until(
            _terminated,
            timeout=self.config.instance_wait_timeout,
            interval=self.config.poll_interval,
            sleep=self.sleep,
        ):
            logger.warning(f"Instance {instance_id} not terminated after {self.config.instance_wait_timeout}s, continuing")

        # Network interfaces are released shortly after termination
        if self.config.eni_release_delay > 0:
            self.sleep(self.config.eni_release_delay)


def teardown(
    result: DiscoveryResult,
    provider: CloudProvider,
    options: Optional[TeardownOptions] = None,
    config: Optional[EngineConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> TeardownReport:
    """
    Delete every node of a discovered deployment.

    Args:
        result: Discovery result to tear down
        provider: Cloud provider
        options: Dry-run, confirmation and cancellation settings
        config: Engine configuration (retry policy, timeouts, home directory)
        sleep: Sleep function (injectable for tests)

    Returns:
        TeardownReport with one outcome per planned node
    """
    options = options or TeardownOptions()
    config = config or EngineConfig.from_env(region=provider.region)

    plan = plan_teardown(result)
    report = TeardownReport(
        project=result.project,
        deploy_id=result.deploy_id,
        region=result.region or provider.region,
        resolved_by=result.resolved_by.value,
        plan=plan,
        dry_run=options.dry_run,
    )

    if options.dry_run:
        logger.info(f"Dry run: {len(plan)} deletions planned, nothing deleted")
        return report

    if not plan:
        logger.info("Nothing to tear down")
        return report

    if not options.auto_confirm:
        if options.confirm is None or not options.confirm(plan):
            logger.info("Teardown aborted by user")
            report.aborted = True
            return report

    target = result.deploy_id or result.project
    logger.info(f"Tearing down {target} ({len(plan)} nodes) in {report.region}")
    if result.deploy_id:
        emit_event(config.home, result.deploy_id, EventTypes.TEARDOWN_START, {
            "project": result.project,
            "resolved_by": report.resolved_by,
            "planned": len(plan),
        })

    executor = _Executor(result, provider, config, sleep)
    for planned in plan:
        if options.cancel is not None and options.cancel.is_set():
            logger.warning(f"Teardown cancelled; {len(plan) - len(report.results)} nodes not attempted")
            report.cancelled = True
            break

        try:
            node_result = executor.run_node(planned)
        except Exception as e:
            logger.error(f"Unexpected error tearing down {planned.label} {planned.identifier}: {e}")
            node_result = NodeResult(planned.node_type, planned.identifier, NodeOutcome.FAILED, error=str(e))
        report.results.append(node_result)

    if result.deploy_id:
        emit_event(config.home, result.deploy_id, EventTypes.TEARDOWN_DONE, {
            "counts": report.counts(),
            "errors": report.errors,
            "cancelled": report.cancelled,
        })

    if report.ok:
        logger.info(f"Teardown of {target} complete")
    else:
        logger.warning(f"Teardown of {target} finished with {report.errors} errors; remediation: {report.remediation}")

    return report
