#!/usr/bin/env python3
"""
Deployment script for FinSight
Compiles the plan first, then deploys its stacks in dependency order with the CDK CLI
"""
import argparse
import logging
import subprocess
import sys
from typing import List, Optional

from finsight_infra import Plan, PlanCompilationError, ProfileLoader, ProfileNotFoundError, compile_plan, stack_name
from finsight_infra.config import DEFAULT_CONFIG_DIR

logger = logging.getLogger(__name__)


class FinSightDeployer:
    """Deploys one environment, stack by stack, in plan order"""

    def __init__(self, environment: str, config_dir: str = DEFAULT_CONFIG_DIR, dry_run: bool = False):
        self.environment = environment
        self.config_dir = config_dir
        self.dry_run = dry_run

    def compile(self) -> Plan:
        profile = ProfileLoader(self.config_dir).load(self.environment)
        return compile_plan(profile)

    def stacks_in_order(self, plan: Plan) -> List[str]:
        return [stack_name(unit.name, plan.environment) for unit in plan]

    def cdk_command(self, *args: str) -> List[str]:
        return [
            "cdk", *args,
            "--context", f"env={self.environment}",
            "--context", f"config_dir={self.config_dir}",
        ]

    def deploy_all(self, only: Optional[List[str]] = None) -> bool:
        """Deploy every stack of the plan; stops at the first failure"""
        try:
            plan = self.compile()
        except (PlanCompilationError, ProfileNotFoundError) as e:
            logger.error(f"Plan compilation failed, nothing deployed: {e}")
            return False

        logger.info(f"Plan {plan.fingerprint()[:12]} for {self.environment}: {', '.join(plan.order)}")
        for unit, name in zip(plan.order, self.stacks_in_order(plan)):
            if only and unit not in only:
                continue
            if not self._deploy_stack(name):
                return False
        return True

    def _deploy_stack(self, name: str) -> bool:
        cmd = self.cdk_command("deploy", name, "--exclusively", "--require-approval", "never")
        if self.dry_run:
            logger.info(f"Would run: {' '.join(cmd)}")
            return True

        logger.info(f"Deploying {name}...")
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            logger.error(f"Failed to deploy {name}:\n{result.stderr}")
            return False
        logger.info(f"{name} deployed")
        return True


def main():
    """Main deployment script entry point"""
    parser = argparse.ArgumentParser(description="Deploy FinSight infrastructure")
    parser.add_argument("environment", help="Environment profile name, e.g. dev or prod")
    parser.add_argument(
        "--config-dir",
        default=DEFAULT_CONFIG_DIR,
        help=f"Directory holding <environment>.json profiles (default: {DEFAULT_CONFIG_DIR})"
    )
    parser.add_argument(
        "--only",
        nargs="+",
        help="Deploy only these units (network, database, api, security, monitoring, email)"
    )
    parser.add_argument("--dry-run", action="store_true", help="Print the cdk commands without running them")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    deployer = FinSightDeployer(args.environment, config_dir=args.config_dir, dry_run=args.dry_run)
    if not deployer.deploy_all(only=args.only):
        sys.exit(1)
    logger.info(f"Deployment to {args.environment} completed")


if __name__ == "__main__":
    main()
