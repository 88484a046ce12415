#!/usr/bin/env python3
"""
Test script for the security group sync Lambda handler.
"""

import unittest
from unittest.mock import patch, MagicMock
import os
import sys

from botocore.exceptions import ClientError

# Add the current directory to Python path to import lambda_function
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import lambda_function
from sg_sync import ConvergenceError, GroupNotFound, InstanceSnapshot, LAUNCHING, TERMINATING
from test_sg_sync import FakeProvider, permission


def lifecycle_event(transition='autoscaling:EC2_INSTANCE_LAUNCHING', instance_id='i-0123456789abcdef0'):
    return {
        'version': '0',
        'id': '12345678-1234-1234-1234-123456789012',
        'detail-type': 'EC2 Instance-launch Lifecycle Action',
        'source': 'aws.autoscaling',
        'account': '123456789012',
        'time': '2026-10-19T12:00:00Z',
        'region': 'us-east-1',
        'resources': [
            'arn:aws:autoscaling:us-east-1:123456789012:autoScalingGroup:1234:autoScalingGroupName/web-asg'
        ],
        'detail': {
            'LifecycleActionToken': '87654321-4321-4321-4321-210987654321',
            'AutoScalingGroupName': 'web-asg',
            'LifecycleHookName': 'sg-sync-hook',
            'EC2InstanceId': instance_id,
            'LifecycleTransition': transition
        }
    }


class TestParseEvent(unittest.TestCase):
    """Test cases for turning trigger payloads into lifecycle events."""

    def test_launching_event(self):
        event = lambda_function.parse_event(lifecycle_event())

        self.assertEqual(event.auto_scaling_group_name, 'web-asg')
        self.assertEqual(event.instance_id, 'i-0123456789abcdef0')
        self.assertEqual(event.transition, LAUNCHING)
        self.assertEqual(event.lifecycle_hook_name, 'sg-sync-hook')
        self.assertEqual(event.lifecycle_action_token, '87654321-4321-4321-4321-210987654321')

    def test_terminating_event(self):
        event = lambda_function.parse_event(lifecycle_event('autoscaling:EC2_INSTANCE_TERMINATING'))
        self.assertEqual(event.transition, TERMINATING)

    @patch('lambda_function.ASG_NAME', 'batch-asg')
    def test_scheduled_event_uses_configured_group(self):
        """Test that a minimal {id, value} payload runs in batch mode."""
        event = lambda_function.parse_event({'id': 123, 'value': ''})

        self.assertEqual(event.auto_scaling_group_name, 'batch-asg')
        self.assertIsNone(event.transition)
        self.assertIsNone(event.lifecycle_hook_name)

    @patch('lambda_function.ASG_NAME', '')
    def test_scheduled_event_without_group(self):
        with self.assertRaises(ValueError) as context:
            lambda_function.parse_event({'id': 123})

        self.assertIn('ASG_NAME', str(context.exception))

    def test_test_notification_runs_in_batch_mode(self):
        """Test that unsupported transitions are not acknowledged or excluded."""
        event = lambda_function.parse_event(lifecycle_event('autoscaling:TEST_NOTIFICATION'))

        self.assertEqual(event.auto_scaling_group_name, 'web-asg')
        self.assertIsNone(event.transition)
        self.assertIsNone(event.instance_id)


class TestValidateConfiguration(unittest.TestCase):
    """Test cases for environment configuration checks."""

    @patch('lambda_function.SECURITY_GROUP_ID', '')
    def test_missing_security_group(self):
        with self.assertRaises(ValueError) as context:
            lambda_function.validate_configuration()

        self.assertIn('SECURITY_GROUP_ID', str(context.exception))

    @patch('lambda_function.SECURITY_GROUP_ID', 'sg-12345678')
    @patch('lambda_function.FROM_PORT', 8443)
    @patch('lambda_function.TO_PORT', 443)
    def test_inverted_port_range(self):
        with self.assertRaises(ValueError):
            lambda_function.validate_configuration()

    @patch('lambda_function.SECURITY_GROUP_ID', 'sg-12345678')
    @patch('lambda_function.TO_PORT', 70000)
    def test_port_out_of_range(self):
        with self.assertRaises(ValueError):
            lambda_function.validate_configuration()

    @patch('lambda_function.SECURITY_GROUP_ID', 'sg-12345678')
    @patch('lambda_function.FROM_PORT', 'https')
    def test_non_numeric_port(self):
        """Test that a bad port is reported by validation rather than at import."""
        with self.assertRaises(ValueError) as context:
            lambda_function.validate_configuration()

        self.assertIn('FROM_PORT', str(context.exception))

    @patch('lambda_function.SECURITY_GROUP_ID', 'sg-12345678')
    @patch('lambda_function.STRICT_EXCLUDE_SELF', 'yes')
    def test_invalid_flag_rejected(self):
        """Test that only 'true'/'false' are accepted for STRICT_EXCLUDE_SELF."""
        with self.assertRaises(ValueError) as context:
            lambda_function.validate_configuration()

        self.assertIn('STRICT_EXCLUDE_SELF', str(context.exception))

    @patch('lambda_function.SECURITY_GROUP_ID', 'sg-12345678')
    @patch('lambda_function.FROM_PORT', '443')
    @patch('lambda_function.TO_PORT', '443')
    @patch('lambda_function.STRICT_EXCLUDE_SELF', 'True')
    def test_valid_configuration(self):
        self.assertEqual(lambda_function.validate_configuration(), {
            'security_group_id': 'sg-12345678',
            'from_port': 443,
            'to_port': 443,
            'strict_exclude_self': True
        })


@patch('lambda_function.SECURITY_GROUP_ID', 'sg-12345678')
@patch('lambda_function.FROM_PORT', 443)
@patch('lambda_function.TO_PORT', 443)
@patch('lambda_function.STRICT_EXCLUDE_SELF', False)
class TestLambdaHandler(unittest.TestCase):
    """Test cases for the full handler flow against a fake provider."""

    def setUp(self):
        self.provider = FakeProvider(
            members=['i-0123456789abcdef0', 'i-other'],
            instances=[
                InstanceSnapshot('i-0123456789abcdef0', '9.9.9.9', 'running'),
                InstanceSnapshot('i-other', '5.6.7.8', 'running'),
            ],
            permissions=[permission('1.2.3.4/32', '5.6.7.8/32')]
        )
        patcher = patch('lambda_function.get_provider', return_value=self.provider)
        patcher.start()
        self.addCleanup(patcher.stop)

    def test_launching_adds_new_instance(self):
        result = lambda_function.lambda_handler(lifecycle_event(), MagicMock())

        self.assertEqual(result, {'added_ips': ['9.9.9.9/32'], 'removed_ips': ['1.2.3.4/32']})
        self.assertIn(('authorize', 'sg-12345678', 'tcp', 443, 443, ['9.9.9.9/32']), self.provider.calls)
        self.assertEqual(self.provider.acknowledgements(), ['CONTINUE'])

    def test_terminating_removes_instance(self):
        event = lifecycle_event('autoscaling:EC2_INSTANCE_TERMINATING')

        result = lambda_function.lambda_handler(event, MagicMock())

        self.assertEqual(result, {'added_ips': [], 'removed_ips': ['1.2.3.4/32']})
        self.assertEqual(self.provider.acknowledgements(), ['CONTINUE'])

    def test_strict_exclusion_applies_to_launching(self):
        with patch('lambda_function.STRICT_EXCLUDE_SELF', True):
            result = lambda_function.lambda_handler(lifecycle_event(), MagicMock())

        self.assertEqual(result, {'added_ips': [], 'removed_ips': ['1.2.3.4/32']})

    @patch('lambda_function.ASG_NAME', 'web-asg')
    def test_scheduled_event_does_not_acknowledge(self):
        result = lambda_function.lambda_handler({'id': 123, 'value': 'tick'}, MagicMock())

        self.assertEqual(result['added_ips'], ['9.9.9.9/32'])
        self.assertEqual(self.provider.acknowledgements(), [])

    def test_group_not_found_raises_and_abandons(self):
        self.provider.members = None

        with self.assertRaises(GroupNotFound):
            lambda_function.lambda_handler(lifecycle_event(), MagicMock())

        self.assertEqual(self.provider.acknowledgements(), ['ABANDON'])

    def test_convergence_error_raises_and_abandons(self):
        self.provider.errors['revoke_ingress'] = ClientError(
            {'Error': {'Code': 'InvalidPermission.NotFound', 'Message': 'not found'}},
            'RevokeSecurityGroupIngress'
        )

        with self.assertRaises(ConvergenceError):
            lambda_function.lambda_handler(lifecycle_event(), MagicMock())

        self.assertEqual(self.provider.acknowledgements(), ['ABANDON'])

    @patch('lambda_function.ASG_NAME', 'web-asg')
    def test_missing_configuration_makes_no_calls(self):
        """Test that a batch run with bad configuration touches nothing."""
        with patch('lambda_function.SECURITY_GROUP_ID', ''):
            with self.assertRaises(ValueError):
                lambda_function.lambda_handler({'id': 123, 'value': 'tick'}, MagicMock())

        self.assertEqual(self.provider.calls, [])

    def test_missing_configuration_abandons_lifecycle_action(self):
        """Test that bad configuration still releases the lifecycle hook with ABANDON."""
        with patch('lambda_function.SECURITY_GROUP_ID', ''):
            with self.assertRaises(ValueError):
                lambda_function.lambda_handler(lifecycle_event(), MagicMock())

        self.assertEqual(self.provider.acknowledgements(), ['ABANDON'])
        self.assertEqual(self.provider.mutations(), [])

    def test_invalid_port_abandons_lifecycle_action(self):
        with patch('lambda_function.TO_PORT', '70000'):
            with self.assertRaises(ValueError):
                lambda_function.lambda_handler(lifecycle_event('autoscaling:EC2_INSTANCE_TERMINATING'), MagicMock())

        self.assertEqual(self.provider.acknowledgements(), ['ABANDON'])

    def test_string_configuration_is_parsed(self):
        """Test that raw environment strings drive the reconciliation."""
        with patch('lambda_function.FROM_PORT', '8080'), \
                patch('lambda_function.TO_PORT', '8081'), \
                patch('lambda_function.STRICT_EXCLUDE_SELF', 'TRUE'):
            result = lambda_function.lambda_handler(lifecycle_event(), MagicMock())

        self.assertEqual(result, {'added_ips': [], 'removed_ips': ['1.2.3.4/32']})
        self.assertIn(('revoke', 'sg-12345678', 'tcp', 8080, 8081, ['1.2.3.4/32']), self.provider.calls)


class TestGetProvider(unittest.TestCase):
    """Test cases for lazy provider initialization."""

    def tearDown(self):
        lambda_function.provider = None

    @patch('lambda_function.REGION', 'eu-west-1')
    def test_provider_created_once(self):
        lambda_function.provider = None

        first = lambda_function.get_provider()
        second = lambda_function.get_provider()

        self.assertIs(first, second)
        self.assertEqual(first.region, 'eu-west-1')


if __name__ == '__main__':
    unittest.main()
