"""
Security group reconciliation for Auto Scaling group instance IPs.

Reads the public IPs of the healthy instances in an Auto Scaling group, reads the
addresses currently allowed by a security group, and converges the two with at
most one authorize and one revoke call.
"""

import logging
from typing import Iterable, List, NamedTuple, Optional, Set
from botocore.exceptions import ClientError, BotoCoreError

logger = logging.getLogger(__name__)

LAUNCHING = 'LAUNCHING'
TERMINATING = 'TERMINATING'

CONTINUE = 'CONTINUE'
ABANDON = 'ABANDON'

RULE_PROTOCOL = 'tcp'
INACTIVE_STATES = ('shutting-down', 'terminated')

PROVIDER_ERRORS = (ClientError, BotoCoreError)


class SyncError(Exception):
    """Base class for reconciliation failures."""
    stage = 'reconcile'


class GroupNotFound(SyncError):
    stage = 'read_inventory'


class GroupLookupError(SyncError):
    stage = 'read_inventory'


class SecurityGroupLookupError(GroupLookupError):
    stage = 'read_rules'


class InstanceLookupError(SyncError):
    stage = 'read_inventory'


class ConvergenceError(SyncError):
    """Authorize or revoke failed. ``applied`` holds the CIDRs already authorized."""
    stage = 'converge'

    def __init__(self, message: str, applied: Optional[List[str]] = None):
        super().__init__(message)
        self.applied = applied or []


class AcknowledgeError(SyncError):
    stage = 'acknowledge'


class LifecycleEvent(NamedTuple):
    auto_scaling_group_name: str
    instance_id: Optional[str] = None
    transition: Optional[str] = None
    lifecycle_hook_name: Optional[str] = None
    lifecycle_action_token: Optional[str] = None


class InstanceSnapshot(NamedTuple):
    instance_id: str
    public_ip: Optional[str]
    state: str


class DiffResult(NamedTuple):
    to_add: frozenset
    to_remove: frozenset


class ReconcileResult(NamedTuple):
    added_ips: List[str]
    removed_ips: List[str]

    def to_response(self):
        return {'added_ips': list(self.added_ips), 'removed_ips': list(self.removed_ips)}


def to_cidr(ip: str) -> str:
    return f'{ip}/32'


def excluded_instance_id(event: LifecycleEvent, strict_exclude_self: bool = False) -> Optional[str]:
    """
    Return the instance that must not contribute to the desired set.

    A terminating instance can still be listed as a group member for a short
    while after its lifecycle hook fires, so it is dropped up front. With
    ``strict_exclude_self`` the event's instance is dropped on every transition.
    """
    if not event.instance_id:
        return None
    if event.transition == TERMINATING or strict_exclude_self:
        return event.instance_id
    return None


def is_contributing(snapshot: InstanceSnapshot, excluded_id: Optional[str] = None) -> bool:
    if snapshot.state in INACTIVE_STATES:
        return False
    if not snapshot.public_ip:
        return False
    return snapshot.instance_id != excluded_id


def get_desired_ips(provider, event: LifecycleEvent, strict_exclude_self: bool = False) -> Set[str]:
    """
    Build the desired IP set from the live state of the Auto Scaling group.
    """
    group_name = event.auto_scaling_group_name
    try:
        instance_ids = provider.describe_auto_scaling_group(group_name)
    except PROVIDER_ERRORS as e:
        logger.error(f"AWS API error describing Auto Scaling group {group_name}: {str(e)}")
        raise GroupLookupError(f"Failed to describe Auto Scaling group {group_name}: {str(e)}") from e

    if instance_ids is None:
        raise GroupNotFound(f"Auto Scaling group {group_name} not found")

    if not instance_ids:
        logger.info(f"Auto Scaling group {group_name} has no instances")
        return set()

    excluded_id = excluded_instance_id(event, strict_exclude_self)
    if excluded_id:
        logger.info(f"Excluding instance {excluded_id} from desired IPs ({event.transition or 'strict'})")

    desired_ips = set()
    for instance_id in instance_ids:
        try:
            snapshot = provider.describe_instance(instance_id)
        except PROVIDER_ERRORS as e:
            logger.error(f"AWS API error describing instance {instance_id}: {str(e)}")
            raise InstanceLookupError(f"Failed to describe instance {instance_id}: {str(e)}") from e

        if snapshot is None:
            logger.warning(f"Instance {instance_id} listed in {group_name} but not returned by EC2")
            continue

        if is_contributing(snapshot, excluded_id):
            desired_ips.add(to_cidr(snapshot.public_ip))
        else:
            logger.debug(f"Skipping instance {instance_id} (state={snapshot.state}, public_ip={snapshot.public_ip})")

    return desired_ips


def get_existing_security_group_ips(provider, security_group_id: str) -> Set[str]:
    """
    Get the IP ranges currently allowed by the managed rule entry.

    Only the first ingress permission is read: every managed address lives in a
    single rule entry.
    """
    try:
        permissions = provider.describe_security_group_ingress(security_group_id)
    except PROVIDER_ERRORS as e:
        logger.error(f"AWS API error getting security group {security_group_id}: {str(e)}")
        raise SecurityGroupLookupError(f"Failed to describe security group {security_group_id}: {str(e)}") from e

    if permissions is None:
        raise SecurityGroupLookupError(f"Security group {security_group_id} not found")

    existing_ips = set()
    if permissions:
        for ip_range in permissions[0].get('IpRanges', []):
            if ip_range.get('CidrIp'):
                existing_ips.add(ip_range['CidrIp'])

    return existing_ips


def diff_ip_sets(desired_ips: Iterable[str], existing_ips: Iterable[str]) -> DiffResult:
    desired = frozenset(desired_ips)
    existing = frozenset(existing_ips)
    return DiffResult(to_add=desired - existing, to_remove=existing - desired)


def build_ip_permission(cidrs: Iterable[str], from_port: int, to_port: int,
                        protocol: str = RULE_PROTOCOL) -> dict:
    """
    Build a single IP permission covering every CIDR in ``cidrs``.
    """
    return {
        'IpProtocol': protocol,
        'FromPort': from_port,
        'ToPort': to_port,
        'IpRanges': [{'CidrIp': cidr} for cidr in sorted(set(cidrs))]
    }


def apply_security_group_changes(provider, security_group_id: str, diff: DiffResult,
                                 from_port: int, to_port: int) -> ReconcileResult:
    """
    Authorize the added CIDRs, then revoke the removed ones.

    Each side is one API call and is skipped when empty. A failed revoke does
    not roll back an authorize that already went through.
    """
    ips_to_add = sorted(diff.to_add)
    ips_to_remove = sorted(diff.to_remove)
    applied = []

    if ips_to_add:
        logger.info(f"Authorizing {len(ips_to_add)} IPs on {security_group_id} "
                    f"({RULE_PROTOCOL} {from_port}-{to_port}): {ips_to_add}")
        try:
            provider.authorize_ingress(security_group_id, RULE_PROTOCOL, from_port, to_port, ips_to_add)
        except PROVIDER_ERRORS as e:
            logger.error(f"Failed to add IPs to security group {security_group_id}: {str(e)}")
            raise ConvergenceError(f"Failed to authorize ingress on {security_group_id}: {str(e)}") from e
        applied = ips_to_add

    if ips_to_remove:
        logger.info(f"Revoking {len(ips_to_remove)} IPs on {security_group_id} "
                    f"({RULE_PROTOCOL} {from_port}-{to_port}): {ips_to_remove}")
        try:
            provider.revoke_ingress(security_group_id, RULE_PROTOCOL, from_port, to_port, ips_to_remove)
        except PROVIDER_ERRORS as e:
            logger.error(f"Failed to remove IPs from security group {security_group_id}: {str(e)}")
            raise ConvergenceError(
                f"Failed to revoke ingress on {security_group_id}: {str(e)}", applied=applied) from e

    return ReconcileResult(added_ips=ips_to_add, removed_ips=ips_to_remove)


def send_lifecycle_action(provider, event: LifecycleEvent, result: str):
    """Call CompleteLifecycleAction, raising AcknowledgeError on provider failure."""
    try:
        provider.complete_lifecycle_action(
            event.auto_scaling_group_name,
            event.instance_id,
            event.lifecycle_hook_name,
            event.lifecycle_action_token,
            result
        )
    except PROVIDER_ERRORS as e:
        raise AcknowledgeError(
            f"Failed to complete lifecycle action {event.lifecycle_hook_name} "
            f"for {event.instance_id or event.lifecycle_action_token} with {result}: {str(e)}") from e


def complete_lifecycle_action(provider, event: LifecycleEvent, result: str) -> bool:
    """
    Report the lifecycle action outcome. Returns True when the hook was acknowledged.

    The action is identified by the hook name plus the instance id or the
    action token. Failures are logged only: an unacknowledged hook falls back
    to its own timeout and default result.
    """
    if not event.lifecycle_hook_name or not (event.instance_id or event.lifecycle_action_token):
        logger.debug("No lifecycle hook in event, skipping acknowledgement")
        return False

    try:
        send_lifecycle_action(provider, event, result)
    except AcknowledgeError as error:
        logger.warning(f"{type(error).__name__}: {str(error)}", exc_info=True)
        return False

    logger.info(f"Completed lifecycle action {event.lifecycle_hook_name} "
                f"for {event.instance_id or event.lifecycle_action_token}: {result}")
    return True


def reconcile(provider, event: LifecycleEvent, security_group_id: str, from_port: int = 0,
              to_port: int = 65535, strict_exclude_self: bool = False) -> ReconcileResult:
    """
    Converge the security group with the Auto Scaling group and acknowledge the hook.

    Any failure before acknowledgement abandons the lifecycle action and is
    re-raised to the caller.
    """
    try:
        desired_ips = get_desired_ips(provider, event, strict_exclude_self)
        logger.info(f"Auto Scaling group IPs: {sorted(desired_ips)}")

        existing_ips = get_existing_security_group_ips(provider, security_group_id)
        logger.info(f"Security group IPs: {sorted(existing_ips)}")

        diff = diff_ip_sets(desired_ips, existing_ips)
        logger.info(f"IPs to add: {sorted(diff.to_add)}")
        logger.info(f"IPs to remove: {sorted(diff.to_remove)}")

        if not diff.to_add and not diff.to_remove:
            logger.info("No changes needed - security group is up to date")

        result = apply_security_group_changes(provider, security_group_id, diff, from_port, to_port)
    except Exception as e:
        logger.error(f"Reconciliation failed during {getattr(e, 'stage', 'reconcile')}: {str(e)}")
        complete_lifecycle_action(provider, event, ABANDON)
        raise

    complete_lifecycle_action(provider, event, CONTINUE)
    return result
