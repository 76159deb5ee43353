#!/usr/bin/env python3
"""
Export verification script for FinSight
Compares the exports of a compiled plan with the outputs of the deployed CloudFormation stacks
"""
import argparse
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from finsight_infra import Attr, Plan, ProfileLoader, compile_plan, stack_name
from finsight_infra.config import DEFAULT_CONFIG_DIR

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExportMismatch:
    stack: str
    export: str
    expected: Optional[str]
    actual: Optional[str]

    def __str__(self) -> str:
        if self.actual is None:
            return f"{self.stack}: output '{self.export}' is missing"
        return f"{self.stack}: output '{self.export}' is {self.actual!r}, expected {self.expected!r}"


class ExportVerifier:
    """Checks that every plan export exists on its stack, and that literal values match"""

    def __init__(self, plan: Plan, region: str, cloudformation=None):
        self.plan = plan
        self.cloudformation = cloudformation or boto3.client('cloudformation', region_name=region)

    def stack_outputs(self, name: str) -> Optional[Dict[str, str]]:
        """Outputs of a deployed stack, or None when the stack does not exist"""
        try:
            response = self.cloudformation.describe_stacks(StackName=name)
        except ClientError as e:
            if e.response['Error']['Code'] == 'ValidationError':
                return None
            raise
        stacks = response.get('Stacks', [])
        if not stacks:
            return None
        return {
            output['OutputKey']: output['OutputValue']
            for output in stacks[0].get('Outputs', [])
        }

    def verify(self) -> List[ExportMismatch]:
        mismatches = []
        for unit_name, exports in self.plan.exports().items():
            name = stack_name(unit_name, self.plan.environment)
            outputs = self.stack_outputs(name)
            if outputs is None:
                logger.warning(f"Stack {name} is not deployed")
                mismatches.extend(
                    ExportMismatch(name, export, _expected(value), None) for export, value in exports.items()
                )
                continue

            for export, value in exports.items():
                expected = _expected(value)
                actual = outputs.get(export)
                if actual is None or (expected is not None and actual != expected):
                    mismatches.append(ExportMismatch(name, export, expected, actual))
            logger.info(f"Checked {len(exports)} exports on {name}")
        return mismatches


def _expected(value: Any) -> Optional[str]:
    """Literal export values can be compared; resource attributes only exist after deployment"""
    if isinstance(value, Attr):
        return None
    return str(value)


def main():
    """Export verification entry point"""
    parser = argparse.ArgumentParser(description="Verify deployed FinSight stack outputs against the plan")
    parser.add_argument("environment", help="Environment profile name, e.g. dev or prod")
    parser.add_argument(
        "--config-dir",
        default=DEFAULT_CONFIG_DIR,
        help=f"Directory holding <environment>.json profiles (default: {DEFAULT_CONFIG_DIR})"
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    profile = ProfileLoader(args.config_dir).load(args.environment)
    plan = compile_plan(profile)
    mismatches = ExportVerifier(plan, region=profile.region).verify()

    for mismatch in mismatches:
        logger.error(str(mismatch))
    if mismatches:
        sys.exit(1)
    logger.info(f"All exports for {args.environment} match the deployed stacks")


if __name__ == "__main__":
    main()
