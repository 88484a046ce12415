#!/usr/bin/env python3
"""
Validation script for the security group sync Lambda configuration.
Checks the environment variables and the parsing logic without calling AWS.
"""

import ipaddress
import json
import os
import sys

from lambda_function import parse_flag, parse_port_range
from sg_sync import to_cidr


def validate_environment_variables():
    """Validate that required environment variables are properly configured."""
    print("=== Environment Variable Validation ===")

    required_vars = [
        'SECURITY_GROUP_ID'
    ]

    optional_vars = [
        'ASG_NAME',
        'REGION',
        'FROM_PORT',
        'TO_PORT',
        'STRICT_EXCLUDE_SELF',
        'LOG_LEVEL'
    ]

    missing_vars = []
    for var in required_vars:
        if not os.environ.get(var):
            missing_vars.append(var)
        else:
            print(f"✓ {var}: {os.environ[var]}")

    for var in optional_vars:
        if var in os.environ:
            print(f"✓ {var}: {os.environ[var]}")
        else:
            print(f"- {var}: Not set (optional)")

    if missing_vars:
        print(f"✗ Missing required variables: {', '.join(missing_vars)}")
        return False

    print("✓ All required environment variables are set")
    return True


def validate_configuration_logic():
    """Validate the port range and flag values with the handler's own parsers."""
    print("\n=== Configuration Logic Validation ===")

    try:
        from_port, to_port = parse_port_range(
            os.environ.get('FROM_PORT', '0'),
            os.environ.get('TO_PORT', '65535')
        )
    except ValueError as e:
        print(f"✗ Invalid port configuration: {e}")
        return False
    print(f"✓ Port range: tcp {from_port}-{to_port}")

    try:
        strict = parse_flag('STRICT_EXCLUDE_SELF', os.environ.get('STRICT_EXCLUDE_SELF', 'false'))
    except ValueError as e:
        print(f"✗ {e}")
        return False
    print(f"✓ STRICT_EXCLUDE_SELF: {strict}")

    return True


def validate_cidr_logic():
    """Test that instance addresses are turned into single-host CIDRs."""
    print("\n=== CIDR Formatting Logic Test ===")

    test_ips = [
        ('1.2.3.4', '1.2.3.4/32', 'Public IPv4 address'),
        ('54.210.0.1', '54.210.0.1/32', 'EC2 public IPv4 address'),
        ('10.0.0.5', '10.0.0.5/32', 'Private IPv4 address')
    ]

    all_passed = True
    for ip, expected, description in test_ips:
        cidr = to_cidr(ip)
        try:
            network = ipaddress.ip_network(cidr)
            is_host = network.prefixlen == 32
        except ValueError:
            is_host = False

        if cidr == expected and is_host:
            print(f"✓ {description}: '{ip}' -> '{cidr}'")
        else:
            print(f"✗ {description}: '{ip}' -> Expected '{expected}', got '{cidr}'")
            all_passed = False

    return all_passed


def generate_configuration_summary():
    """Generate a summary of the current configuration."""
    print("\n=== Configuration Summary ===")

    config = {
        'security_group_id': os.environ.get('SECURITY_GROUP_ID', 'Not set'),
        'asg_name': os.environ.get('ASG_NAME', 'Not set'),
        'region': os.environ.get('REGION', 'SDK default'),
        'port_range': {
            'protocol': 'tcp',
            'from_port': os.environ.get('FROM_PORT', '0'),
            'to_port': os.environ.get('TO_PORT', '65535')
        },
        'strict_exclude_self': os.environ.get('STRICT_EXCLUDE_SELF', 'false').lower() == 'true',
        'log_level': os.environ.get('LOG_LEVEL', 'INFO')
    }

    print(json.dumps(config, indent=2))
    return config


def main():
    """Main validation function."""
    print("Security Group Sync Configuration Validation")
    print("=" * 50)

    checks = [
        validate_environment_variables,
        validate_configuration_logic,
        validate_cidr_logic
    ]

    all_passed = True
    for check in checks:
        if not check():
            all_passed = False

    generate_configuration_summary()

    print("\n" + "=" * 50)
    if all_passed:
        print("✓ All validation checks passed!")
        return 0
    else:
        print("✗ Some validation checks failed!")
        print("Please review the configuration and fix any issues.")
        return 1


if __name__ == '__main__':
    sys.exit(main())
