"""Main CLI entrypoint for Deckhand."""

import json
import logging
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

import click

from ..config import EngineConfig, load_env_file
from ..cost import format_cost_hint
from ..discovery import DiscoveryMode, DiscoveryResult, discover
from ..errors import (
    AmbiguousDeploymentError,
    BootstrapTemplateError,
    ConfigurationError,
    DeckhandError,
    ManifestError,
    ProvisioningError,
)
from ..events import read_events
from ..graph import dependency_order, get_node, reverse_order
from ..ids import is_valid_deploy_id
from ..manifest import load_manifest
from ..provisioner import ProvisionRequest, plan_provision, provision
from ..redact import redact_dict
from ..tags import parse_user_tags
from ..teardown import NodeOutcome, PlannedDeletion, TeardownOptions, TeardownReport, teardown

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_AMBIGUOUS = 3

OUTCOME_ICONS = {
    NodeOutcome.DELETED: "✅",
    NodeOutcome.NOT_FOUND: "➖",
    NodeOutcome.SKIPPED_TAG_MISMATCH: "⚠️ ",
    NodeOutcome.FAILED: "❌",
    NodeOutcome.SKIPPED_OWNER_UNKNOWN: "❔",
    NodeOutcome.SKIPPED_IN_USE: "🔒",
}


@click.group()
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
@click.option('--verbose', '-v', is_flag=True, help='Enable debug logging')
@click.pass_context
def main(ctx, output_json, verbose):
    """Deckhand - provision and tear down single-instance cloud deployments."""
    ctx.ensure_object(dict)
    ctx.obj['json'] = output_json
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def _json_mode(output_json: bool) -> bool:
    return output_json or click.get_current_context().obj.get('json', False)


def _json_output(data: Dict[str, Any]) -> None:
    """Output data as JSON."""
    click.echo(json.dumps(data, indent=2, default=str))


def _human_output(message: str) -> None:
    """Output human-readable message."""
    if not click.get_current_context().obj.get('json', False):
        click.echo(message)


def _error(message: str, output_json: bool, **extra) -> None:
    """Report an error on stderr (or as JSON on stdout)."""
    if output_json:
        _json_output({'error': message, **extra})
    else:
        click.echo(f"❌ {message}", err=True)


def _make_provider(region: str):
    """Build the cloud provider for a region."""
    from ..provider.aws import AwsProvider
    return AwsProvider(region)


def _parse_secrets(secret_args: List[str], secrets_file: Optional[str]) -> Dict[str, str]:
    """
    Collect secrets from --secret category/kind=VALUE and --secrets-file.

    In the secrets file, CATEGORY__KIND=VALUE lines map to category/kind.
    """
    secrets = {}
    if secrets_file:
        for key, value in load_env_file(secrets_file).items():
            if '__' not in key:
                raise click.BadParameter(
                    f"{key}: expected CATEGORY__KIND=VALUE", param_hint='--secrets-file'
                )
            category, kind = key.lower().split('__', 1)
            secrets[f"{category}/{kind}"] = value

    for arg in secret_args:
        if '=' not in arg:
            raise click.BadParameter(f"{arg!r}: expected category/kind=VALUE", param_hint='--secret')
        key, value = arg.split('=', 1)
        secrets[key.strip()] = value
    return secrets


@main.command('provision')
@click.option('--project', required=True, help='Project name (lowercase letters, digits, hyphens)')
@click.option('--region', default=None, help='AWS region')
@click.option('--vpc-cidr', default='10.50.0.0/16', show_default=True, help='VPC address range')
@click.option('--subnet-cidr', default='10.50.0.0/24', show_default=True, help='Subnet address range')
@click.option('--instance-type', default='t4g.medium', show_default=True, help='Instance type')
@click.option('--image-id', default=None, help='Image id (default: latest Amazon Linux 2023)')
@click.option('--architecture', type=click.Choice(['arm64', 'x86_64']), default='arm64', show_default=True)
@click.option('--secret', 'secret_args', multiple=True, help='Secret as category/kind=VALUE')
@click.option('--secrets-file', type=click.Path(dir_okay=False), help='Env file of CATEGORY__KIND=VALUE lines')
@click.option('--tag', 'tag_args', multiple=True, help='Extra tag as key=value')
@click.option('--output', 'output_path', type=click.Path(dir_okay=False), help='Manifest output path')
@click.option('--dry-run', is_flag=True, help='Print the creation plan without creating anything')
@click.option('--cleanup-first', is_flag=True, help='Tear down existing resources of the project first')
@click.option('--wait-bootstrap', is_flag=True, help='Wait for the instance bootstrap to finish')
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
def provision_cmd(project, region, vpc_cidr, subnet_cidr, instance_type, image_id, architecture,
                  secret_args, secrets_file, tag_args, output_path, dry_run, cleanup_first,
                  wait_bootstrap, output_json):
    """Provision a new deployment."""
    output_json = _json_mode(output_json)
    config = EngineConfig.from_env(region=region)

    try:
        request = ProvisionRequest(
            project=project,
            region=config.region,
            vpc_cidr=vpc_cidr,
            subnet_cidr=subnet_cidr,
            instance_type=instance_type,
            image_id=image_id,
            architecture=architecture,
            secrets=_parse_secrets(secret_args, secrets_file),
            extra_tags=parse_user_tags(tag_args),
            cleanup_first=cleanup_first,
            wait_bootstrap=wait_bootstrap,
            dry_run=dry_run,
        )

        if dry_run:
            plan = plan_provision(request)
            if output_json:
                _json_output({**plan.to_dict(), 'secrets': redact_dict(request.secrets)})
            else:
                _print_provision_plan(plan)
            sys.exit(EXIT_OK)

        result = provision(request, _make_provider(config.region), config=config, output_path=output_path)

    except (ConfigurationError, BootstrapTemplateError, ValueError, click.BadParameter) as e:
        _error(str(e), output_json)
        sys.exit(EXIT_USAGE)
    except ProvisioningError as e:
        _error(str(e), output_json, manifest=e.manifest.to_dict(), remediation=e.remediation)
        if not output_json:
            click.echo("Manifest so far:", err=True)
            click.echo(e.manifest.to_json(), err=True)
            click.echo(f"To clean up, run:\n  {e.remediation}", err=True)
        sys.exit(EXIT_FAILURE)
    except DeckhandError as e:
        _error(f"Provisioning failed: {e}", output_json)
        sys.exit(EXIT_FAILURE)

    if output_json:
        _json_output(result.to_dict())
    else:
        _human_output(f"🚀 Provisioned {result.deploy_id}")
        for node_type, identifier in result.manifest.resource_identifiers.items():
            _human_output(f"  {get_node(node_type).label:<15} {identifier}")
        for name in result.manifest.secret_references:
            _human_output(f"  {'SSM Param':<15} {name}")
        _human_output(f"📄 Manifest: {result.manifest_path}")
        _human_output(format_cost_hint(result.plan.cost))
        if result.health is not None and not result.health.healthy:
            _human_output(f"⚠️  Bootstrap not confirmed: {result.health.detail}")
        _human_output(f"🗑️  Teardown: deckhand teardown --deploy-id {result.deploy_id} --region {config.region}")
    sys.exit(EXIT_OK)


def _print_provision_plan(plan) -> None:
    _human_output(f"📋 Plan for {plan.deploy_id} in {plan.region} (dry run, nothing created)")
    for i, step in enumerate(plan.steps, 1):
        marker = " 💰" if step.billable else ""
        name = f" ({step.name})" if step.name else ""
        _human_output(f"  {i}. {step.label}{name}{marker}")
    _human_output(format_cost_hint(plan.cost))


def _resolve_target(from_manifest, deploy_id, project):
    """Exactly one addressing option must be given."""
    given = [opt for opt in (from_manifest, deploy_id, project) if opt]
    if len(given) != 1:
        raise click.UsageError("Specify exactly one of --from-manifest, --deploy-id or --project")

    if from_manifest:
        return DiscoveryMode.MANIFEST, from_manifest
    if deploy_id:
        if not is_valid_deploy_id(deploy_id):
            raise click.UsageError(f"Invalid deployment ID: {deploy_id}")
        return DiscoveryMode.DEPLOY_ID, deploy_id
    return DiscoveryMode.PROJECT, project


def _run_discovery(mode: DiscoveryMode, key: str, region: Optional[str], output_json: bool):
    """Discover a deployment; exits on ambiguity or unreadable manifests."""
    try:
        if mode == DiscoveryMode.MANIFEST:
            manifest = load_manifest(Path(key))
            config = EngineConfig.from_env(region=region or manifest.region)
            return discover(mode, manifest), config

        config = EngineConfig.from_env(region=region)
        return discover(mode, key, _make_provider(config.region)), config

    except AmbiguousDeploymentError as e:
        if output_json:
            _json_output({'error': 'ambiguous', 'project': e.project, 'candidates': e.candidates})
        click.echo(f"❌ {e}", err=True)
        sys.exit(EXIT_AMBIGUOUS)
    except ManifestError as e:
        _error(str(e), output_json)
        sys.exit(EXIT_USAGE)
    except DeckhandError as e:
        _error(f"Discovery failed: {e}", output_json)
        sys.exit(EXIT_FAILURE)


@main.command('teardown')
@click.option('--from-manifest', type=click.Path(dir_okay=False), help='Manifest written by provision')
@click.option('--deploy-id', help='Deployment ID (DeployId tag)')
@click.option('--project', help='Project name (Project tag); fails if several deployments match')
@click.option('--region', default=None, help='AWS region')
@click.option('--dry-run', is_flag=True, help='Show the plan without deleting anything')
@click.option('--yes', is_flag=True, help='Skip confirmation prompt')
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
def teardown_cmd(from_manifest, deploy_id, project, region, dry_run, yes, output_json):
    """Tear down a deployment in reverse dependency order."""
    output_json = _json_mode(output_json)
    mode, key = _resolve_target(from_manifest, deploy_id, project)
    result, config = _run_discovery(mode, key, region, output_json)

    cancel = threading.Event()

    def _on_interrupt(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        click.echo("⏹️  Stopping after the current resource (Ctrl-C again to abort)", err=True)
        cancel.set()

    def _confirm(plan: List[PlannedDeletion]) -> bool:
        click.echo(f"About to delete {len(plan)} resources of {result.deploy_id or result.project}:", err=True)
        for planned in plan:
            click.echo(f"  - {planned.label}: {planned.identifier or '(owner unknown, skipped)'}", err=True)
        # Ctrl-C at the prompt aborts as usual
        handler = signal.signal(signal.SIGINT, signal.default_int_handler)
        try:
            return click.confirm("Proceed?", default=False, err=True)
        finally:
            signal.signal(signal.SIGINT, handler)

    options = TeardownOptions(dry_run=dry_run, auto_confirm=yes, confirm=_confirm, cancel=cancel)
    previous = signal.signal(signal.SIGINT, _on_interrupt)
    try:
        report = teardown(result, _make_provider(config.region), options, config=config)
    finally:
        signal.signal(signal.SIGINT, previous)

    if output_json:
        _json_output(report.to_dict())
    else:
        _print_report(report)

    sys.exit(EXIT_OK if report.ok else EXIT_FAILURE)


def _print_report(report: TeardownReport) -> None:
    target = report.deploy_id or report.project or "(unknown)"

    if report.dry_run:
        _human_output(f"📋 Teardown plan for {target} ({report.resolved_by}, dry run):")
        for i, planned in enumerate(report.plan, 1):
            _human_output(f"  {i}. {planned.label}: {planned.identifier or '(owner unknown, will skip)'}")
        return

    if report.aborted:
        _human_output("❌ Teardown cancelled, nothing deleted")
        return

    if not report.plan:
        _human_output(f"✅ Nothing to tear down for {target}")
        return

    _human_output(f"🗑️  Teardown of {target} ({report.resolved_by}):")
    for r in report.results:
        line = f"  {OUTCOME_ICONS[r.outcome]} {get_node(r.node_type).label:<15} {r.identifier or '-':<30} {r.outcome.value}"
        _human_output(line)
        if r.error:
            _human_output(f"      {r.error}")

    if report.ok:
        _human_output(f"✅ Teardown complete ({report.errors} errors)")
        return

    if report.cancelled:
        _human_output(f"⏹️  Teardown interrupted: {len(report.plan) - len(report.results)} resources not attempted")
    else:
        _human_output(f"❌ Teardown incomplete: {report.errors} errors")
    if report.remaining:
        _human_output("Remaining resources:")
        for planned in report.remaining:
            _human_output(f"  - {planned.label}: {planned.identifier or '(owner unknown)'}")
    if report.remediation:
        _human_output(f"Re-run: {report.remediation}")


@main.command('discover')
@click.option('--from-manifest', type=click.Path(dir_okay=False), help='Manifest written by provision')
@click.option('--deploy-id', help='Deployment ID (DeployId tag)')
@click.option('--project', help='Project name (Project tag)')
@click.option('--region', default=None, help='AWS region')
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
def discover_cmd(from_manifest, deploy_id, project, region, output_json):
    """Show the resources of a deployment without deleting anything."""
    output_json = _json_mode(output_json)
    mode, key = _resolve_target(from_manifest, deploy_id, project)
    result, _ = _run_discovery(mode, key, region, output_json)

    if output_json:
        _json_output(result.to_dict())
    else:
        _print_discovery(result)
    sys.exit(EXIT_OK)


def _print_discovery(result: DiscoveryResult) -> None:
    _human_output(f"🔎 Resolved by {result.resolved_by.value}")
    _human_output(f"Project:  {result.project or '(unknown)'}")
    _human_output(f"DeployId: {result.deploy_id or '(none)'}")
    if result.is_empty:
        _human_output("No resources found")
        return
    for node_type in dependency_order():
        if node_type in result.identifiers:
            _human_output(f"  {get_node(node_type).label:<15} {result.identifiers[node_type]}")
    for name in result.secret_references:
        _human_output(f"  {'SSM Param':<15} {name}")
    for node_type in result.unresolved:
        _human_output(f"  {get_node(node_type).label:<15} (owner unknown, skipped on teardown)")


@main.command('plan')
@click.option('--project', default=None, help='Show deterministic names for this project')
@click.option('--instance-type', default='t4g.medium', show_default=True, help='Instance type for the cost hint')
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
def plan_cmd(project, instance_type, output_json):
    """Print the creation and deletion order of the topology."""
    output_json = _json_mode(output_json)
    creation = [t.value for t in dependency_order()]
    deletion = [t.value for t in reverse_order()]

    plan = None
    if project:
        try:
            plan = plan_provision(ProvisionRequest(project=project, instance_type=instance_type))
        except ConfigurationError as e:
            _error(str(e), output_json)
            sys.exit(EXIT_USAGE)

    if output_json:
        data = {'creationOrder': creation, 'deletionOrder': deletion}
        if plan is not None:
            data['plan'] = plan.to_dict()
        _json_output(data)
        sys.exit(EXIT_OK)

    _human_output("Creation order:")
    for i, node_type in enumerate(dependency_order(), 1):
        node = get_node(node_type)
        _human_output(f"  {i}. {node.label}{' 💰' if node.billable else ''}")
    _human_output("Deletion order:")
    for i, node_type in enumerate(reverse_order(), 1):
        _human_output(f"  {i}. {get_node(node_type).label}")
    if plan is not None:
        _human_output("")
        _print_provision_plan(plan)
    sys.exit(EXIT_OK)


@main.command('logs')
@click.argument('deploy_id')
@click.option('--json', 'output_json', is_flag=True, help='Output machine-readable JSON')
def logs_cmd(deploy_id, output_json):
    """Show the lifecycle event log of a deployment."""
    output_json = _json_mode(output_json)
    config = EngineConfig.from_env()

    if not is_valid_deploy_id(deploy_id):
        _error(f"Invalid deployment ID: {deploy_id}", output_json)
        sys.exit(EXIT_USAGE)

    events = read_events(config.home, deploy_id)
    if not events:
        _error(f"No events for {deploy_id} under {config.home}", output_json)
        sys.exit(EXIT_FAILURE)

    for event in events:
        if output_json:
            click.echo(json.dumps(event))
        else:
            _print_event_human(event)
    sys.exit(EXIT_OK)


def _print_event_human(event: Dict[str, Any]) -> None:
    """Print event in human-readable format."""
    event_type = event.get('type', 'UNKNOWN')
    data = event.get('data', {})
    message = json.dumps(data) if data else ''

    if event_type in ('PROVISION_DONE', 'TEARDOWN_DONE', 'BOOTSTRAP_OK'):
        color = 'green'
    elif event_type == 'PROVISION_FAILED':
        color = 'red'
    elif event_type.startswith('NODE_'):
        color = 'blue'
    else:
        color = 'white'

    click.echo(f"[{event.get('ts', '')}] {click.style(event_type, fg=color)} {message}")


if __name__ == '__main__':
    main()
