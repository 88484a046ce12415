"""
boto3-backed implementation of the AWS calls used by the reconciler.
"""

import logging
from typing import Any, Dict, List, Optional
import boto3

from sg_sync import InstanceSnapshot, build_ip_permission

logger = logging.getLogger(__name__)


class AwsProvider:
    """
    Thin wrapper around the EC2 and Auto Scaling clients.

    Responses are reduced to plain values; botocore errors propagate unchanged.
    """

    def __init__(self, region: Optional[str] = None, ec2_client=None, autoscaling_client=None):
        self.region = region or None
        self._ec2_client = ec2_client
        self._autoscaling_client = autoscaling_client

    @property
    def ec2(self):
        if self._ec2_client is None:
            self._ec2_client = boto3.client('ec2', region_name=self.region)
        return self._ec2_client

    @property
    def autoscaling(self):
        if self._autoscaling_client is None:
            self._autoscaling_client = boto3.client('autoscaling', region_name=self.region)
        return self._autoscaling_client

    def describe_auto_scaling_group(self, group_name: str) -> Optional[List[str]]:
        """Return the member instance ids, or None when the group does not exist."""
        response = self.autoscaling.describe_auto_scaling_groups(AutoScalingGroupNames=[group_name])
        groups = response.get('AutoScalingGroups') or []
        if not groups:
            logger.warning(f"describe_auto_scaling_groups returned no group named {group_name}")
            return None
        return [instance['InstanceId'] for instance in groups[0].get('Instances', [])]

    def describe_instance(self, instance_id: str) -> Optional[InstanceSnapshot]:
        response = self.ec2.describe_instances(InstanceIds=[instance_id])
        for reservation in response.get('Reservations', []):
            for instance in reservation.get('Instances', []):
                if instance.get('InstanceId') != instance_id:
                    continue
                return InstanceSnapshot(
                    instance_id=instance_id,
                    public_ip=instance.get('PublicIpAddress'),
                    state=instance.get('State', {}).get('Name', '')
                )
        return None

    def describe_security_group_ingress(self, group_id: str) -> Optional[List[Dict[str, Any]]]:
        """Return the ingress permissions, or None when the group does not exist."""
        response = self.ec2.describe_security_groups(GroupIds=[group_id])
        groups = response.get('SecurityGroups') or []
        if not groups:
            return None
        return groups[0].get('IpPermissions', [])

    def authorize_ingress(self, group_id: str, protocol: str, from_port: int, to_port: int,
                          cidrs: List[str]):
        self.ec2.authorize_security_group_ingress(
            GroupId=group_id,
            IpPermissions=[build_ip_permission(cidrs, from_port, to_port, protocol)]
        )

    def revoke_ingress(self, group_id: str, protocol: str, from_port: int, to_port: int,
                       cidrs: List[str]):
        self.ec2.revoke_security_group_ingress(
            GroupId=group_id,
            IpPermissions=[build_ip_permission(cidrs, from_port, to_port, protocol)]
        )

    def complete_lifecycle_action(self, group_name: str, instance_id: Optional[str], hook_name: str,
                                  token: Optional[str], result: str):
        params = {
            'AutoScalingGroupName': group_name,
            'LifecycleHookName': hook_name,
            'LifecycleActionResult': result
        }
        if instance_id:
            params['InstanceId'] = instance_id
        if token:
            params['LifecycleActionToken'] = token
        self.autoscaling.complete_lifecycle_action(**params)
