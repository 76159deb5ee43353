#!/usr/bin/env python3
"""
Plan inspection script for FinSight
Compiles a profile and prints the plan, or the change set against a saved snapshot
"""
import argparse
import json
import logging
import sys

from finsight_infra import PlanCompilationError, ProfileLoader, ProfileNotFoundError, compile_plan, compute_changeset
from finsight_infra.config import DEFAULT_CONFIG_DIR

logger = logging.getLogger(__name__)


def main():
    parser = argparse.ArgumentParser(description="Compile and print a FinSight plan")
    parser.add_argument("environment", help="Environment profile name, e.g. dev or prod")
    parser.add_argument("--config-dir", default=DEFAULT_CONFIG_DIR)
    parser.add_argument("--against", help="Previous plan snapshot (JSON) to diff against")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        plan = compile_plan(ProfileLoader(args.config_dir).load(args.environment))
    except (PlanCompilationError, ProfileNotFoundError) as e:
        logger.error(f"Compilation failed: {e}")
        sys.exit(1)

    if not args.against:
        print(plan.to_json())
        return

    with open(args.against, encoding='utf-8') as f:
        previous = json.load(f)
    changes = compute_changeset(plan, previous)
    logger.info(changes.summary())
    for label, keys in (("+", changes.creates), ("~", changes.updates), ("-", changes.deletes)):
        for key in keys:
            print(f"{label} {key}")


if __name__ == "__main__":
    main()
