#!/usr/bin/env python3
"""
AWS CDK App for FinSight
"""
import os

import aws_cdk as cdk

from finsight_infra import ProfileLoader, compile_plan
from finsight_infra.config import DEFAULT_CONFIG_DIR
from stacks.plan_stack import render_plan


app = cdk.App()

# Get environment configuration (defaults to production)
environment = app.node.try_get_context("env") or "prod"
config_dir = app.node.try_get_context("config_dir") or DEFAULT_CONFIG_DIR
asset_root = app.node.try_get_context("asset_root") or "."

# Load and validate the profile, then compile the plan; errors abort before any stack exists
profile = ProfileLoader(config_dir).load(environment)
plan = compile_plan(profile)

env_config = cdk.Environment(
    account=os.environ.get("CDK_DEFAULT_ACCOUNT"),
    region=profile.region
)

# One stack per deploy unit, dependencies taken from the plan
render_plan(app, plan, asset_root=asset_root, env=env_config)

cdk.Tags.of(app).add("Environment", environment)
cdk.Tags.of(app).add("Project", "FinSight")

app.synth()
