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

from aws_cdk import (
    Stack,
    aws_ec2 as ec2,
    aws_iam as iam,
    CfnOutput as cfo,
)
from constructs import Construct

from .config import VPC_KEYS


class VpcPeeringStack(Stack):
    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        res_name: str,
        instance: str,
        config: dict,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.res_name = res_name
        self.instance = instance

        # Create the role used by every instance to register with Systems Manager
        self.ssm_role = self.create_ssm_role(config)

        # Create both VPCs with their subnets and gateway endpoints
        self.vpcs = {
            vpc_key: self.create_vpc(vpc_key, config[vpc_key]) for vpc_key in VPC_KEYS
        }

        # Interface endpoints so isolated instances reach SSM without internet egress
        self.endpoints = {}
        for vpc_key in VPC_KEYS:
            self.endpoints.update(self.create_interface_endpoints(vpc_key, config))

        # Peer VPC A (requester) with VPC B (accepter)
        self.peering = self.create_peering()

        # Route each side's traffic for the other CIDR over the peering connection
        self.routes = []
        for vpc_key, peer_key in zip(VPC_KEYS, reversed(VPC_KEYS)):
            self.routes.extend(self.create_peering_routes(vpc_key, peer_key, config))

        # Create the security groups
        self.security_groups = {
            vpc_key: self.create_instance_security_group(vpc_key, config)
            for vpc_key in VPC_KEYS
        }

        # Create the test instances
        self.instances = {}
        for vpc_key in VPC_KEYS:
            self.instances.update(self.create_instances(vpc_key, config))

        self.create_outputs(config)

    @staticmethod
    def label(vpc_key):
        return f"VPC {vpc_key[-1].upper()}"

    @staticmethod
    def subnet_group_name(vpc_config, subnet_type):
        for subnet in vpc_config["subnets"]:
            if subnet["subnet_type"] == subnet_type:
                return subnet["name"]
        raise ValueError(f"No subnet group of type {subnet_type}")

    # Create required role for instances
    def create_ssm_role(self, config):
        return iam.Role(
            self,
            "SSM IAM Role",
            assumed_by=iam.ServicePrincipal("ec2.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(
                    config["ssm_managed_policy"]
                ),
            ],
        )

    def create_vpc(self, vpc_key, vpc_config):
        gateway_endpoints = {
            name: ec2.GatewayVpcEndpointOptions(
                service=getattr(ec2.GatewayVpcEndpointAwsService, name)
            )
            for name in vpc_config["gateway_endpoints"]
        }

        return ec2.Vpc(
            self,
            self.label(vpc_key),
            ip_addresses=ec2.IpAddresses.cidr(vpc_config["cidr"]),
            enable_dns_hostnames=True,
            enable_dns_support=True,
            nat_gateways=int(vpc_config["nat_gateways"]),
            max_azs=int(vpc_config["max_azs"]),
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    name=subnet["name"],
                    subnet_type=getattr(ec2.SubnetType, subnet["subnet_type"]),
                    cidr_mask=int(subnet["cidr_mask"]),
                )
                for subnet in vpc_config["subnets"]
            ],
            gateway_endpoints=gateway_endpoints or None,
        )

    def create_interface_endpoints(self, vpc_key, config):
        vpc_config = config[vpc_key]
        if not vpc_config["interface_endpoints"]:
            return {}

        vpc = self.vpcs[vpc_key]
        label = self.label(vpc_key)

        # One security group shared by all endpoints of the VPC
        sec_group = ec2.SecurityGroup(
            self,
            f"{label} Endpoint SG",
            vpc=vpc,
            description=f"HTTPS from {label} to AWS service endpoints",
            allow_all_outbound=False,
        )

        endpoints = {}
        for name in vpc_config["interface_endpoints"]:
            endpoints[f"{vpc_key}:{name}"] = ec2.InterfaceVpcEndpoint(
                self,
                f"{label} {name} VPC Endpoint",
                vpc=vpc,
                service=getattr(ec2.InterfaceVpcEndpointAwsService, name),
                subnets=ec2.SubnetSelection(
                    subnet_type=getattr(
                        ec2.SubnetType, vpc_config["interface_endpoint_subnet_type"]
                    ),
                ),
                security_groups=[sec_group],
            )

        return endpoints

    def create_peering(self):
        return ec2.CfnVPCPeeringConnection(
            self,
            "VPC Peering connection",
            vpc_id=self.vpcs["vpc_a"].vpc_id,
            peer_vpc_id=self.vpcs["vpc_b"].vpc_id,
        )

    def create_peering_routes(self, vpc_key, peer_key, config):
        vpc = self.vpcs[vpc_key]
        peer = self.vpcs[peer_key]
        subnet_type = config[vpc_key]["peering_route_subnet_type"]
        group = self.subnet_group_name(config[vpc_key], subnet_type).lower()

        subnets = vpc.select_subnets(
            subnet_type=getattr(ec2.SubnetType, subnet_type)
        ).subnets

        return [
            ec2.CfnRoute(
                self,
                f"Route to VPC Peering connection of {group} subnet in {self.label(vpc_key)} {index}",
                route_table_id=subnet.route_table.route_table_id,
                destination_cidr_block=peer.vpc_cidr_block,
                vpc_peering_connection_id=self.peering.ref,
            )
            for index, subnet in enumerate(subnets)
        ]

    # Security group for the test instances of one VPC
    def create_instance_security_group(self, vpc_key, config):
        label = self.label(vpc_key)
        security_group = ec2.SecurityGroup(
            self,
            f"{label} EC2 Instance SG",
            vpc=self.vpcs[vpc_key],
            description=f"ICMP echo to {label} instances from peered VPCs",
            allow_all_outbound=True,
        )

        for source in config[vpc_key]["ingress_from"]:
            security_group.add_ingress_rule(
                ec2.Peer.ipv4(self.vpcs[source].vpc_cidr_block),
                ec2.Port.icmp_ping(),
                f"Ping from {self.label(source)}",
            )

        return security_group

    def create_instances(self, vpc_key, config):
        ec2_config = config["ec2"]
        vpc_config = config[vpc_key]
        label = self.label(vpc_key)

        instances = {}
        for subnet_type in vpc_config["instance_subnet_types"]:
            group = self.subnet_group_name(vpc_config, subnet_type).lower()
            instances[f"{vpc_key}:{group}"] = ec2.Instance(
                self,
                f"EC2 Instance on {label} {group} subnet",
                instance_name=f"{self.res_name}-{vpc_key.replace('_', '-')}-{group}-{self.instance}",
                instance_type=ec2.InstanceType(ec2_config["instance_type"]),
                machine_image=ec2.MachineImage.latest_amazon_linux2(),
                vpc=self.vpcs[vpc_key],
                block_devices=[
                    ec2.BlockDevice(
                        device_name=ec2_config["device_name"],
                        volume=ec2.BlockDeviceVolume.ebs(
                            int(ec2_config["volume_size"]),
                            volume_type=getattr(
                                ec2.EbsDeviceVolumeType, ec2_config["volume_type"]
                            ),
                        ),
                    )
                ],
                propagate_tags_to_volume_on_creation=True,
                vpc_subnets=ec2.SubnetSelection(
                    subnet_type=getattr(ec2.SubnetType, subnet_type)
                ),
                role=self.ssm_role,
                security_group=self.security_groups[vpc_key],
            )

        return instances

    # Create CloudFormation Outputs for the operator to reach the instances
    def create_outputs(self, config):
        for vpc_key, vpc in self.vpcs.items():
            cfo(
                self,
                f"{self.label(vpc_key)} Id",
                value=vpc.vpc_id,
                description=f"{self.label(vpc_key)} ({config[vpc_key]['cidr']})",
            )

        cfo(
            self,
            "VPC Peering connection Id",
            value=self.peering.ref,
            description="Peering connection between VPC A and VPC B",
        )

        for key, instance in self.instances.items():
            vpc_key, group = key.split(":")
            cfo(
                self,
                f"{self.label(vpc_key)} {group} instance Id",
                value=instance.instance_id,
                description=f"Instance in the {group} subnet of {self.label(vpc_key)}, reachable through SSM",
            )
