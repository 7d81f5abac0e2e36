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
import copy
import ipaddress
import json
import logging

from aws_cdk import aws_ec2 as ec2

logger = logging.getLogger(__name__)

VPC_KEYS = ("vpc_a", "vpc_b")

REQUIRED_KEYS = (
    "resource_name",
    "instance",
    "tag_name",
    "tag_value",
    "ssm_managed_policy",
    "ec2",
) + VPC_KEYS

EC2_KEYS = ("instance_type", "device_name", "volume_size", "volume_type")

VPC_DEFAULTS = {
    "nat_gateways": 0,
    "max_azs": 1,
    "gateway_endpoints": [],
    "interface_endpoints": [],
    "interface_endpoint_subnet_type": "PRIVATE_ISOLATED",
    "peering_route_subnet_type": "PUBLIC",
    "instance_subnet_types": [],
    "ingress_from": [],
}


def load_parameters(path="parameters.json"):
    """Read the deployment parameters file and validate it."""
    logger.info(f"Loading parameters from {path}")
    with open(path, "r") as param_file:
        param_data = param_file.read()

    return validate_parameters(json.loads(param_data))


def validate_parameters(config):
    """Check a parameters dict and fill in optional VPC settings.

    Raises ValueError on the first problem found. The returned dict is the
    same object, with defaults applied to each VPC block.
    """
    for key in REQUIRED_KEYS:
        if config.get(key) is None:
            raise ValueError(f"Please supply '{key}' in the parameters file")

    validate_ec2(config["ec2"])

    for vpc_key in VPC_KEYS:
        validate_vpc(vpc_key, config[vpc_key])

    cidr_a = ipaddress.ip_network(config["vpc_a"]["cidr"])
    cidr_b = ipaddress.ip_network(config["vpc_b"]["cidr"])
    if cidr_a.overlaps(cidr_b):
        raise ValueError(
            f"VPC CIDR ranges {cidr_a} and {cidr_b} overlap and cannot be peered"
        )

    return config


def validate_ec2(ec2_config):
    for key in EC2_KEYS:
        if ec2_config.get(key) is None:
            raise ValueError(f"Please supply 'ec2.{key}' in the parameters file")

    if not hasattr(ec2.EbsDeviceVolumeType, ec2_config["volume_type"]):
        raise ValueError(f"Unknown EBS volume type {ec2_config['volume_type']}")

    if int(ec2_config["volume_size"]) <= 0:
        raise ValueError("EBS volume size must be a positive number of GiB")


def validate_vpc(vpc_key, vpc_config):
    if vpc_config.get("cidr") is None:
        raise ValueError(f"Please supply '{vpc_key}.cidr' in the parameters file")

    try:
        ipaddress.IPv4Network(vpc_config["cidr"])
    except ValueError as e:
        raise ValueError(f"Invalid CIDR for {vpc_key}: {e}") from e

    for key, default in VPC_DEFAULTS.items():
        vpc_config.setdefault(key, copy.deepcopy(default))

    subnets = vpc_config.get("subnets")
    if not subnets:
        raise ValueError(f"Please supply at least one subnet for {vpc_key}")

    subnet_types = set()
    for subnet in subnets:
        for key in ("name", "subnet_type", "cidr_mask"):
            if subnet.get(key) is None:
                raise ValueError(
                    f"Please supply '{key}' for every subnet of {vpc_key}"
                )
        if not hasattr(ec2.SubnetType, subnet["subnet_type"]):
            raise ValueError(
                f"Unknown subnet type {subnet['subnet_type']} in {vpc_key}"
            )
        subnet_types.add(subnet["subnet_type"])

    if vpc_config["nat_gateways"] > 0 and "PUBLIC" not in subnet_types:
        raise ValueError(f"{vpc_key} needs a PUBLIC subnet to host NAT gateways")

    if "PRIVATE_WITH_EGRESS" in subnet_types and vpc_config["nat_gateways"] == 0:
        raise ValueError(
            f"{vpc_key} declares PRIVATE_WITH_EGRESS subnets but no NAT gateways"
        )

    for name in vpc_config["gateway_endpoints"]:
        if not hasattr(ec2.GatewayVpcEndpointAwsService, name):
            raise ValueError(f"Unknown gateway endpoint service {name} in {vpc_key}")

    for name in vpc_config["interface_endpoints"]:
        if not hasattr(ec2.InterfaceVpcEndpointAwsService, name):
            raise ValueError(
                f"Unknown interface endpoint service {name} in {vpc_key}"
            )

    placements = list(vpc_config["instance_subnet_types"])
    placements.append(vpc_config["peering_route_subnet_type"])
    if vpc_config["interface_endpoints"]:
        placements.append(vpc_config["interface_endpoint_subnet_type"])
    for subnet_type in placements:
        if subnet_type not in subnet_types:
            raise ValueError(
                f"{vpc_key} has no {subnet_type} subnet group to place resources in"
            )

    for source in vpc_config["ingress_from"]:
        if source not in VPC_KEYS:
            raise ValueError(
                f"Ingress source {source} of {vpc_key} must be one of {', '.join(VPC_KEYS)}"
            )
