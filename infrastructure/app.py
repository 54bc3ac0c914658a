#!/usr/bin/env python3
"""
AWS CDK App for the MCP Gateway Registry
"""
import os
from typing import Mapping, Optional

import aws_cdk as cdk

from mcpgw_topology.config import configure_logging
from mcpgw_topology.parameters import resolve_mode
from mcpgw_topology.pipeline import (
    STACK_DESCRIPTIONS,
    DeploymentArtifact,
    build_deployment,
    inputs_from_context,
)
from stacks.gateway_stack import GatewayStack


def build_app(app: cdk.App, environ: Optional[Mapping[str, str]] = None) -> GatewayStack:
    """
    Add the gateway stack for the selected mode to an app

    The deployment artifact is written to the app's output directory so the
    deployer applies exactly the representation this stack was built from.
    """
    environ = os.environ if environ is None else environ

    # Context wins over environment variables for every parameter
    context = inputs_from_context(app.node.try_get_context)
    mode = resolve_mode({"deploymentMode": app.node.try_get_context("deploymentMode")}, environ)

    deployment = build_deployment(mode, context, environ)
    params = deployment.params

    env_config = cdk.Environment(account=params.get("account"), region=params["region"])

    gateway_stack = GatewayStack(
        app,
        deployment.stack_name,
        representation=deployment.representation,
        env=env_config,
        description=STACK_DESCRIPTIONS[deployment.mode],
    )

    DeploymentArtifact.from_deployment(deployment).save(app.outdir)
    return gateway_stack


if __name__ == "__main__":
    configure_logging()
    app = cdk.App()
    build_app(app)
    app.synth()
