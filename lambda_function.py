import json
import logging
import os
from typing import Any, Dict, Optional

from aws_provider import AwsProvider
from sg_sync import ABANDON, LAUNCHING, TERMINATING, LifecycleEvent, complete_lifecycle_action, reconcile

# Configure logging
logger = logging.getLogger()
logger.setLevel(os.environ.get('LOG_LEVEL', 'INFO').upper())

# AWS provider will be initialized when needed
provider = None

# Configuration from environment variables, parsed by validate_configuration()
SECURITY_GROUP_ID = os.environ.get('SECURITY_GROUP_ID', '')
ASG_NAME = os.environ.get('ASG_NAME', '')
REGION = os.environ.get('REGION', '')
FROM_PORT = os.environ.get('FROM_PORT', '0')
TO_PORT = os.environ.get('TO_PORT', '65535')
STRICT_EXCLUDE_SELF = os.environ.get('STRICT_EXCLUDE_SELF', 'false')

LIFECYCLE_TRANSITIONS = {
    'autoscaling:EC2_INSTANCE_LAUNCHING': LAUNCHING,
    'autoscaling:EC2_INSTANCE_TERMINATING': TERMINATING
}


def get_provider() -> AwsProvider:
    """Get AWS provider, initializing if needed."""
    global provider
    if provider is None:
        provider = AwsProvider(region=REGION)
    return provider


def lambda_handler(event, context):
    """
    Main Lambda handler: sync the security group with the Auto Scaling group's public IPs.
    """
    try:
        logger.info("Starting security group sync")
        logger.debug(f"Event: {json.dumps(event, default=str)}")

        lifecycle_event = parse_event(event)
        logger.info(f"Auto Scaling group: {lifecycle_event.auto_scaling_group_name}, "
                    f"transition: {lifecycle_event.transition or 'batch'}, "
                    f"instance: {lifecycle_event.instance_id or '-'}")

        try:
            config = validate_configuration()
        except ValueError:
            complete_lifecycle_action(get_provider(), lifecycle_event, ABANDON)
            raise

        result = reconcile(
            get_provider(),
            lifecycle_event,
            config['security_group_id'],
            from_port=config['from_port'],
            to_port=config['to_port'],
            strict_exclude_self=config['strict_exclude_self']
        )

        logger.info(f"Security group sync completed: {len(result.added_ips)} added, "
                    f"{len(result.removed_ips)} removed")
        return result.to_response()

    except Exception as e:
        logger.error(f"Error syncing security group: {str(e)}", exc_info=True)
        raise


def parse_port(name: str, value: Any) -> int:
    try:
        port = int(value)
    except (TypeError, ValueError):
        raise ValueError(f"{name} ({value}) must be an integer")
    if port < 0 or port > 65535:
        raise ValueError(f"{name} ({port}) must be between 0 and 65535")
    return port


def parse_port_range(from_value: Any, to_value: Any):
    """Parse and check a FROM_PORT/TO_PORT pair."""
    from_port = parse_port('FROM_PORT', from_value)
    to_port = parse_port('TO_PORT', to_value)
    if from_port > to_port:
        raise ValueError(f"FROM_PORT ({from_port}) must not exceed TO_PORT ({to_port})")
    return from_port, to_port


def parse_flag(name: str, value: Any) -> bool:
    """Parse a 'true'/'false' flag; anything else is rejected."""
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized not in ('true', 'false'):
        raise ValueError(f"{name} ({value}) must be 'true' or 'false'")
    return normalized == 'true'


def validate_configuration() -> Dict[str, Any]:
    """
    Validate the environment configuration before any AWS call.
    """
    if not SECURITY_GROUP_ID:
        raise ValueError("SECURITY_GROUP_ID environment variable is required")

    from_port, to_port = parse_port_range(FROM_PORT, TO_PORT)

    return {
        'security_group_id': SECURITY_GROUP_ID,
        'from_port': from_port,
        'to_port': to_port,
        'strict_exclude_self': parse_flag('STRICT_EXCLUDE_SELF', STRICT_EXCLUDE_SELF)
    }


def parse_event(event: Optional[Dict[str, Any]]) -> LifecycleEvent:
    """
    Build a LifecycleEvent from an Auto Scaling lifecycle event or a scheduled payload.

    Events without a lifecycle detail fall back to the ASG_NAME environment
    variable and run in batch mode.
    """
    detail = (event or {}).get('detail') or {}

    group_name = detail.get('AutoScalingGroupName')
    if not group_name:
        if not ASG_NAME:
            raise ValueError("ASG_NAME environment variable is required for events without lifecycle detail")
        return LifecycleEvent(auto_scaling_group_name=ASG_NAME)

    raw_transition = detail.get('LifecycleTransition')
    transition = LIFECYCLE_TRANSITIONS.get(raw_transition)
    if transition is None:
        logger.warning(f"Unsupported lifecycle transition {raw_transition}, running in batch mode")
        return LifecycleEvent(auto_scaling_group_name=group_name)

    return LifecycleEvent(
        auto_scaling_group_name=group_name,
        instance_id=detail.get('EC2InstanceId'),
        transition=transition,
        lifecycle_hook_name=detail.get('LifecycleHookName'),
        lifecycle_action_token=detail.get('LifecycleActionToken')
    )
