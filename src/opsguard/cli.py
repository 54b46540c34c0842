"""
Command-line interface for opsguard

Provides CLI commands for:
- Assessing an operation: opsguard assess --type delete --target-type vm --target-id prod-db-01
- Correlating alerts: opsguard correlate --alerts-file alerts.json
- Managing configuration: opsguard config --show
"""

import json
import logging
import sys

import click
import yaml
from pydantic import ValidationError

from . import __version__
from .config import get_config
from .correlation import AlertCorrelator
from .cooldown import format_cooldown_remaining
from .errors import SafetyError
from .models import AlertInput, OperationTarget, OperationType, TargetType
from .observability import initialize_observability, shutdown_observability
from .risk import (
    assess_risk,
    get_cooldown_ms,
    get_max_retries,
    get_operation_warning,
    get_risk_description,
    requires_confirmation,
)


@click.group()
@click.version_option(version=__version__, prog_name="opsguard")
@click.pass_context
def cli(ctx):
    """opsguard - operation authorization and alert correlation for infrastructure"""
    config_obj = get_config()
    initialize_observability(config_obj.telemetry)
    logging.getLogger("opsguard").setLevel(config_obj.log_level)
    ctx.call_on_close(shutdown_observability)


@cli.command()
@click.option(
    "--type",
    "operation_type",
    type=click.Choice([t.value for t in OperationType]),
    required=True,
    help="Operation type",
)
@click.option(
    "--target-type",
    type=click.Choice([t.value for t in TargetType]),
    required=True,
    help="Kind of target",
)
@click.option("--target-id", required=True, help="Target identifier")
@click.option("--target-name", default=None, help="Target display name (defaults to the id)")
@click.option("--format", type=click.Choice(["text", "json"]), default="text", help="Output format")
def assess(
    operation_type: str,
    target_type: str,
    target_id: str,
    target_name: str,
    format: str,
):
    """Assess the risk of an operation before running it"""
    try:
        safety = get_config().safety
        op_type = OperationType(operation_type)
        target = OperationTarget(
            type=TargetType(target_type), id=target_id, name=target_name or target_id
        )

        risk_level = assess_risk(op_type, target, safety)
        cooldown_ms = get_cooldown_ms(op_type, safety)
        result = {
            "operation_type": op_type.value,
            "target": target.to_dict(),
            "risk_level": risk_level.value,
            "requires_confirmation": requires_confirmation(risk_level, safety),
            "cooldown_ms": cooldown_ms,
            "max_retries": get_max_retries(op_type, safety),
            "description": get_risk_description(risk_level),
            "warning": get_operation_warning(op_type, target, risk_level),
        }
    except (SafetyError, ValidationError, ValueError) as e:
        click.echo(f"❌ Risk assessment failed: {e}", err=True)
        sys.exit(1)

    if format == "json":
        click.echo(json.dumps(result, indent=2))
        return

    click.echo(f"🛡️  Risk Assessment: {op_type.value} on {target.type.value} {target.name}")
    click.echo("=" * 50)
    click.echo(f"Risk Level: {result['risk_level']}")
    click.echo(
        f"Requires Confirmation: {'yes' if result['requires_confirmation'] else 'no'}"
    )
    cooldown = format_cooldown_remaining(cooldown_ms) if cooldown_ms else "none"
    click.echo(f"Cooldown: {cooldown}")
    click.echo(f"Max Retries: {result['max_retries']}")
    click.echo(f"\n{result['description']}")
    click.echo(f"⚠️  {result['warning']}")


@cli.command()
@click.option(
    "--alerts-file",
    type=click.Path(exists=True),
    required=True,
    help="JSON file containing a list of alerts",
)
@click.option("--format", type=click.Choice(["text", "json"]), default="text", help="Output format")
def correlate(alerts_file: str, format: str):
    """Correlate a batch of alerts and infer root causes"""
    try:
        with open(alerts_file, encoding="utf-8") as f:
            alerts_data = json.load(f)
        if not isinstance(alerts_data, list):
            raise ValueError("alerts file must contain a JSON list")

        correlator = AlertCorrelator(get_config().safety)
        for alert_data in alerts_data:
            correlator.add_alert(AlertInput.from_dict(alert_data))
    except (OSError, SafetyError, ValidationError, ValueError) as e:
        click.echo(f"❌ Alert correlation failed: {e}", err=True)
        sys.exit(1)

    groups = correlator.correlate_alerts()
    stats = correlator.get_stats()

    if format == "json":
        output = {
            "stats": stats,
            "correlation_groups": [group.to_dict() for group in groups],
        }
        click.echo(json.dumps(output, indent=2))
        return

    click.echo(f"🔗 Alert Correlation Results for {alerts_file}")
    click.echo("=" * 50)
    click.echo(f"Alerts: {stats['total']} ({stats['unresolved']} unresolved)")
    click.echo(f"Correlation Groups: {stats['correlation_groups']}")

    for group in groups:
        click.echo(f"\n📦 Group {group.id} ({len(group.alerts)} alerts)")
        for alert in group.alerts:
            click.echo(f"  - [{alert.severity.value}] {alert.source.name}: {alert.message}")
        if group.root_cause:
            root_cause = group.root_cause
            click.echo(f"  Root Cause: {root_cause.type.value} ({root_cause.confidence:.0%})")
            click.echo(f"  {root_cause.description}")
            click.echo("  Suggested Actions:")
            for i, action in enumerate(root_cause.suggested_actions, 1):
                click.echo(f"    {i}. {action}")


@cli.command()
@click.option("--show", is_flag=True, help="Show current configuration")
@click.option("--format", type=click.Choice(["yaml", "json"]), default="yaml", help="Output format")
def config(show: bool, format: str):
    """Manage opsguard configuration"""
    if show:
        try:
            config_obj = get_config()
            config_dict = config_obj.model_dump(mode="json")

            click.echo("🔧 Current opsguard Configuration")
            click.echo("=" * 40)

            if format == "yaml":
                click.echo(yaml.dump(config_dict, default_flow_style=False, indent=2))
            elif format == "json":
                click.echo(json.dumps(config_dict, indent=2))

        except (SafetyError, ValidationError) as e:
            click.echo(f"❌ Failed to load configuration: {e}", err=True)
            sys.exit(1)
    else:
        click.echo("Use --show to display current configuration")
        click.echo("Available options:")
        click.echo("  --show          Show current configuration")
        click.echo("  --format yaml   Output in YAML format (default)")
        click.echo("  --format json   Output in JSON format")


def main():
    """Entry point for the CLI"""
    cli()


if __name__ == "__main__":
    main()
