#!/usr/bin/env python3
"""
Copyright Amazon.com, Inc. or its affiliates. All Rights Reserved.
SPDX-License-Identifier: MIT-0

Permission is hereby granted, free of charge, to any person obtaining a copy of this
software and associated documentation files (the "Software"), to deal in the Software
without restriction, including without limitation the rights to use, copy, modify,
merge, publish, distribute, sublicense, and/or sell copies of the Software, and to
permit persons to whom the Software is furnished to do so.

THE SOFTWARE IS PROVIDED "AS IS", WITHOUT WARRANTY OF ANY KIND, EXPRESS OR IMPLIED,
INCLUDING BUT NOT LIMITED TO THE WARRANTIES OF MERCHANTABILITY, FITNESS FOR A
PARTICULAR PURPOSE AND NONINFRINGEMENT. IN NO EVENT SHALL THE AUTHORS OR COPYRIGHT
HOLDERS BE LIABLE FOR ANY CLAIM, DAMAGES OR OTHER LIABILITY, WHETHER IN AN ACTION
OF CONTRACT, TORT OR OTHERWISE, ARISING FROM, OUT OF OR IN CONNECTION WITH THE
SOFTWARE OR THE USE OR OTHER DEALINGS IN THE SOFTWARE.

"""
import os
import logging
from aws_cdk import Aspects
from cdk_nag import AwsSolutionsChecks, NagSuppressions

import aws_cdk as cdk

from vpc_peering.config import load_parameters
from vpc_peering.topology import validate_topology
from vpc_peering.vpc_stack import VpcPeeringStack

logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))

app = cdk.App()

CONFIG = load_parameters(app.node.try_get_context("parameters_file") or "parameters.json")

instance = CONFIG["instance"]
res_name = CONFIG["resource_name"]

vpc_peering_build = VpcPeeringStack(
    app,
    f"{res_name}-VpcPeeringStack-{instance}",
    res_name=res_name,
    instance=instance,
    config=CONFIG,
    env=cdk.Environment(
        account=os.environ.get("CDK_DEPLOY_ACCOUNT", os.environ.get("CDK_DEFAULT_ACCOUNT")),
        region=os.environ.get("CDK_DEPLOY_REGION", os.environ.get("CDK_DEFAULT_REGION")),
    ),
)

NagSuppressions.add_stack_suppressions(
    vpc_peering_build,
    [
        {
            "id": "AwsSolutions-VPC7",
            "reason": "Short lived connectivity test topology, VPC flow logs are not collected.",
        },
        {
            "id": "AwsSolutions-IAM4",
            "reason": "AmazonSSMManagedInstanceCore is the AWS managed policy for Session Manager access.",
        },
        {
            "id": "AwsSolutions-EC26",
            "reason": "Test instances hold no data, root volumes are not encrypted.",
        },
        {
            "id": "AwsSolutions-EC28",
            "reason": "Detailed monitoring is not required for ping test instances.",
        },
        {
            "id": "AwsSolutions-EC29",
            "reason": "Test instances are meant to be destroyed with the stack.",
        },
    ],
)

cdk.Tags.of(app).add(CONFIG["tag_name"], CONFIG["tag_value"])

Aspects.of(app).add(AwsSolutionsChecks())

assembly = app.synth()

# Check the emitted resource graph before the engine plans it
for stack_artifact in assembly.stacks:
    validate_topology(stack_artifact.template)
