"""
Cost estimation utilities for billable nodes.
"""

from typing import Any, Dict, Optional

from .graph import TOPOLOGY

# Rough on-demand hourly costs (us-east-1; other regions vary)
HOURLY_COSTS = {
    "t4g.nano": 0.0042,
    "t4g.micro": 0.0084,
    "t4g.small": 0.0168,
    "t4g.medium": 0.0336,   # ~$24/month
    "t4g.large": 0.0672,
    "t4g.xlarge": 0.1344,
    "t3.micro": 0.0104,     # ~$7.50/month
    "t3.small": 0.0208,     # ~$15/month
    "t3.medium": 0.0416,    # ~$30/month
    "t3.large": 0.0832,     # ~$60/month
    "t3.xlarge": 0.1664,    # ~$120/month
}

GP3_PER_GB_MONTH = 0.08
HOURS_PER_MONTH = 24 * 30


def estimate_cost(instance_type: str, volume_size_gb: int = 20) -> Dict[str, Any]:
    """
    Heuristic monthly cost of a deployment.

    Only billable nodes contribute; the network and identity nodes are free.

    Args:
        instance_type: Compute instance type
        volume_size_gb: Root volume size

    Returns:
        Cost estimation dictionary
    """
    hourly_cost = HOURLY_COSTS.get(instance_type)
    billable = [node.label for node in TOPOLOGY if node.billable]

    if hourly_cost is None:
        return {
            "method": "heuristic",
            "monthly_usd": None,
            "currency": "USD",
            "hint": f"Unknown instance type {instance_type} - cost estimation not available",
            "billable": billable,
        }

    instance_monthly = hourly_cost * HOURS_PER_MONTH
    volume_monthly = volume_size_gb * GP3_PER_GB_MONTH
    monthly_cost = instance_monthly + volume_monthly

    return {
        "method": "heuristic",
        "monthly_usd": round(monthly_cost, 2),
        "currency": "USD",
        "hint": f"EC2 {instance_type} instance (~${hourly_cost:.4f}/hour)",
        "billable": billable,
        "breakdown": {
            "ec2_instance": f"~${instance_monthly:.2f}/month",
            "ebs_gp3": f"~${volume_monthly:.2f}/month ({volume_size_gb} GB)",
            "data_transfer": "varies by usage",
        },
    }


def format_cost_hint(cost_data: Dict[str, Any]) -> str:
    """
    Format cost data into a human-readable hint.

    Args:
        cost_data: Cost estimation data

    Returns:
        Formatted cost hint string
    """
    monthly_usd = cost_data.get("monthly_usd")
    hint = cost_data.get("hint", "")

    if monthly_usd is None:
        return f"💰 Cost hint: {hint}" if hint else "💰 Cost estimation not available"

    if monthly_usd < 1:
        cost_str = f"~${monthly_usd:.2f}/month"
    elif monthly_usd < 10:
        cost_str = f"~${monthly_usd:.1f}/month"
    else:
        cost_str = f"~${monthly_usd:.0f}/month"

    if hint:
        return f"💰 Estimated cost: {cost_str} ({hint})"
    return f"💰 Estimated cost: {cost_str}"


def should_show_cost_warning(monthly_usd: Optional[float], threshold: float = 50.0) -> bool:
    """True when the estimate is known and above the warning threshold."""
    return monthly_usd is not None and monthly_usd > threshold
