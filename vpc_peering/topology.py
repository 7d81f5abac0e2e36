"""
Resource graph of a synthesized CloudFormation template.

Nodes are the template's resources, edges are the dependencies the
provisioning engine will honour: ``Ref``, ``Fn::GetAtt``, ``Fn::Sub``
placeholders and ``DependsOn``. The graph can be ordered into deployment
waves and checked for the structural properties of the peered topology:

- exactly two VPCs with non-overlapping CIDR blocks
- peering routes point at a declared peering connection between them
- endpoints and instances sit in subnets of their own VPC
- CIDR ingress rules only admit the two VPC ranges

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
import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

VPC = "AWS::EC2::VPC"
SUBNET = "AWS::EC2::Subnet"
ROUTE = "AWS::EC2::Route"
ROUTE_TABLE = "AWS::EC2::RouteTable"
PEERING = "AWS::EC2::VPCPeeringConnection"
ENDPOINT = "AWS::EC2::VPCEndpoint"
INSTANCE = "AWS::EC2::Instance"
SECURITY_GROUP = "AWS::EC2::SecurityGroup"
SECURITY_GROUP_INGRESS = "AWS::EC2::SecurityGroupIngress"

_SUB_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


class TopologyError(Exception):
    """Raised when the resource graph cannot be planned or fails a check."""

    def __init__(self, message, violations=None):
        super().__init__(message)
        self.violations = violations or []


@dataclass
class Resource:
    logical_id: str
    type: str
    properties: Dict[str, Any] = field(default_factory=dict)
    depends_on: List[str] = field(default_factory=list)


@dataclass
class Violation:
    """A single failed structural check."""

    check: str
    message: str
    resources: List[str] = field(default_factory=list)

    def __str__(self):
        return f"[{self.check}] {self.message}"


def ref_target(value) -> Optional[str]:
    """Logical id named by a ``Ref`` or ``Fn::GetAtt``, else None."""
    if not isinstance(value, dict) or len(value) != 1:
        return None
    if "Ref" in value and isinstance(value["Ref"], str):
        return value["Ref"]
    if "Fn::GetAtt" in value:
        getatt = value["Fn::GetAtt"]
        if isinstance(getatt, list) and getatt:
            return getatt[0]
        if isinstance(getatt, str):
            return getatt.split(".", 1)[0]
    return None


def _sub_names(template_string, local_vars):
    names = set()
    for placeholder in _SUB_PLACEHOLDER.findall(template_string):
        if placeholder.startswith("!"):
            continue
        name = placeholder.split(".", 1)[0]
        if name not in local_vars:
            names.add(name)
    return names


def _referenced_names(value) -> Set[str]:
    """Every name referenced by intrinsic functions anywhere inside value."""
    names = set()
    if isinstance(value, list):
        for item in value:
            names |= _referenced_names(item)
    elif isinstance(value, dict):
        target = ref_target(value)
        if target is not None:
            names.add(target)
            if "Fn::GetAtt" in value and isinstance(value["Fn::GetAtt"], list):
                # attribute names may themselves be intrinsics
                for item in value["Fn::GetAtt"][1:]:
                    names |= _referenced_names(item)
            return names

        if "Fn::Sub" in value:
            sub = value["Fn::Sub"]
            if isinstance(sub, str):
                names |= _sub_names(sub, {})
            elif isinstance(sub, list) and sub:
                local_vars = sub[1] if len(sub) > 1 and isinstance(sub[1], dict) else {}
                names |= _sub_names(sub[0], local_vars)
                names |= _referenced_names(local_vars)
            return names

        for item in value.values():
            names |= _referenced_names(item)
    return names


class ResourceGraph:
    """Dependency graph between the resources of one template."""

    def __init__(self, resources: Dict[str, Resource]):
        self.resources = resources
        self.edges: Dict[str, Set[str]] = {logical_id: set() for logical_id in resources}

        for logical_id, resource in resources.items():
            for dependency in resource.depends_on:
                if dependency not in resources:
                    raise TopologyError(
                        f"{logical_id} depends on undeclared resource {dependency}"
                    )
                self.edges[logical_id].add(dependency)

            # Pseudo parameters, template parameters and conditions are not nodes
            for name in _referenced_names(resource.properties):
                if name in resources and name != logical_id:
                    self.edges[logical_id].add(name)

    @classmethod
    def from_template(cls, template: Dict[str, Any]) -> "ResourceGraph":
        resources = {}
        for logical_id, body in (template.get("Resources") or {}).items():
            depends_on = body.get("DependsOn", [])
            if isinstance(depends_on, str):
                depends_on = [depends_on]
            resources[logical_id] = Resource(
                logical_id=logical_id,
                type=body.get("Type", ""),
                properties=body.get("Properties") or {},
                depends_on=list(depends_on),
            )
        return cls(resources)

    def __len__(self):
        return len(self.resources)

    def __contains__(self, logical_id):
        return logical_id in self.resources

    def of_type(self, resource_type) -> List[Resource]:
        return [
            self.resources[logical_id]
            for logical_id in sorted(self.resources)
            if self.resources[logical_id].type == resource_type
        ]

    def type_of(self, logical_id) -> Optional[str]:
        resource = self.resources.get(logical_id)
        return resource.type if resource else None

    def dependencies(self, logical_id, transitive=False) -> Set[str]:
        """Resources that logical_id needs to exist first.

        With transitive=True the full closure is returned.
        """
        if not transitive:
            return set(self.edges[logical_id])

        seen = set()
        pending = list(self.edges[logical_id])
        while pending:
            current = pending.pop()
            if current in seen:
                continue
            seen.add(current)
            pending.extend(self.edges[current])
        return seen

    def dependents(self, logical_id) -> Set[str]:
        return {
            dependent
            for dependent, dependencies in self.edges.items()
            if logical_id in dependencies
        }

    def plan(self) -> List[List[str]]:
        """Order the resources into creation waves.

        Each wave only depends on resources of earlier waves. Resources
        within a wave are sorted by logical id.
        """
        remaining = {logical_id: set(deps) for logical_id, deps in self.edges.items()}
        waves = []
        while remaining:
            wave = sorted(logical_id for logical_id, deps in remaining.items() if not deps)
            if not wave:
                raise TopologyError(
                    "Dependency cycle between " + ", ".join(sorted(remaining))
                )
            for logical_id in wave:
                del remaining[logical_id]
            for deps in remaining.values():
                deps.difference_update(wave)
            waves.append(wave)
        return waves

    def teardown_plan(self) -> List[List[str]]:
        return list(reversed(self.plan()))

    def resolve_cidr(self, value) -> Optional[str]:
        """CIDR string for a literal or a VPC ``CidrBlock`` attribute."""
        if isinstance(value, str):
            return value
        if isinstance(value, dict) and "Fn::GetAtt" in value:
            getatt = value["Fn::GetAtt"]
            if isinstance(getatt, str):
                getatt = getatt.split(".", 1)
            if (
                isinstance(getatt, list)
                and len(getatt) == 2
                and getatt[1] == "CidrBlock"
                and self.type_of(getatt[0]) == VPC
            ):
                cidr = self.resources[getatt[0]].properties.get("CidrBlock")
                return cidr if isinstance(cidr, str) else None
        return None

    def vpc_of(self, logical_id) -> Optional[str]:
        """VPC logical id a subnet, route table or security group belongs to."""
        resource = self.resources.get(logical_id)
        if resource is None:
            return None
        return ref_target(resource.properties.get("VpcId"))


def _check_vpcs(graph):
    violations = []
    vpcs = graph.of_type(VPC)
    if len(vpcs) != 2:
        violations.append(
            Violation(
                "vpc-count",
                f"Expected exactly two VPCs, found {len(vpcs)}",
                [vpc.logical_id for vpc in vpcs],
            )
        )

    networks = {}
    for vpc in vpcs:
        cidr = vpc.properties.get("CidrBlock")
        try:
            networks[vpc.logical_id] = ipaddress.ip_network(cidr)
        except (TypeError, ValueError):
            violations.append(
                Violation(
                    "vpc-cidr",
                    f"{vpc.logical_id} has no literal CIDR block ({cidr!r})",
                    [vpc.logical_id],
                )
            )

    logical_ids = sorted(networks)
    for index, first in enumerate(logical_ids):
        for second in logical_ids[index + 1 :]:
            if networks[first].overlaps(networks[second]):
                violations.append(
                    Violation(
                        "vpc-overlap",
                        f"{first} ({networks[first]}) overlaps {second} ({networks[second]})",
                        [first, second],
                    )
                )
    return violations


def _check_peering_routes(graph):
    violations = []
    for route in graph.of_type(ROUTE):
        if "VpcPeeringConnectionId" not in route.properties:
            continue

        peering_id = ref_target(route.properties["VpcPeeringConnectionId"])
        if graph.type_of(peering_id) != PEERING:
            violations.append(
                Violation(
                    "peering-route",
                    f"{route.logical_id} does not reference a declared peering connection",
                    [route.logical_id],
                )
            )
            continue

        peering = graph.resources[peering_id].properties
        peered = {
            ref_target(peering.get("VpcId")),
            ref_target(peering.get("PeerVpcId")),
        }
        route_vpc = graph.vpc_of(ref_target(route.properties.get("RouteTableId")))
        if route_vpc not in peered:
            violations.append(
                Violation(
                    "peering-route",
                    f"{route.logical_id} sits in a route table outside the peered VPCs",
                    [route.logical_id, peering_id],
                )
            )
            continue

        other = (peered - {route_vpc}).pop() if len(peered) == 2 else None
        expected = graph.resolve_cidr({"Fn::GetAtt": [other, "CidrBlock"]}) if other else None
        destination = graph.resolve_cidr(route.properties.get("DestinationCidrBlock"))
        if expected is None or destination != expected:
            violations.append(
                Violation(
                    "peering-route",
                    f"{route.logical_id} routes {destination} over {peering_id}, "
                    f"expected the peer range {expected}",
                    [route.logical_id, peering_id],
                )
            )
    return violations


def _check_placement(graph):
    violations = []
    for endpoint in graph.of_type(ENDPOINT):
        vpc_id = ref_target(endpoint.properties.get("VpcId"))
        if graph.type_of(vpc_id) != VPC:
            violations.append(
                Violation(
                    "endpoint-placement",
                    f"{endpoint.logical_id} is not attached to a declared VPC",
                    [endpoint.logical_id],
                )
            )

        endpoint_type = endpoint.properties.get("VpcEndpointType", "Interface")
        if endpoint_type == "Interface" and not endpoint.properties.get("SubnetIds"):
            violations.append(
                Violation(
                    "endpoint-placement",
                    f"{endpoint.logical_id} is an interface endpoint without subnets",
                    [endpoint.logical_id],
                )
            )

        members = list(endpoint.properties.get("SubnetIds") or [])
        members += list(endpoint.properties.get("RouteTableIds") or [])
        for member in members:
            member_id = ref_target(member)
            if graph.type_of(member_id) not in (SUBNET, ROUTE_TABLE):
                violations.append(
                    Violation(
                        "endpoint-placement",
                        f"{endpoint.logical_id} references undeclared {member_id or member!r}",
                        [endpoint.logical_id],
                    )
                )
            elif graph.vpc_of(member_id) != vpc_id:
                violations.append(
                    Violation(
                        "endpoint-placement",
                        f"{endpoint.logical_id} uses {member_id} outside its VPC {vpc_id}",
                        [endpoint.logical_id, member_id],
                    )
                )

    for instance in graph.of_type(INSTANCE):
        subnet_id = ref_target(instance.properties.get("SubnetId"))
        if graph.type_of(subnet_id) != SUBNET:
            violations.append(
                Violation(
                    "instance-placement",
                    f"{instance.logical_id} is not placed in a declared subnet",
                    [instance.logical_id],
                )
            )
            continue

        subnet_vpc = graph.vpc_of(subnet_id)
        for group in instance.properties.get("SecurityGroupIds") or []:
            group_id = ref_target(group)
            if graph.type_of(group_id) == SECURITY_GROUP and graph.vpc_of(group_id) != subnet_vpc:
                violations.append(
                    Violation(
                        "instance-placement",
                        f"{instance.logical_id} uses {group_id} from another VPC than {subnet_id}",
                        [instance.logical_id, subnet_id, group_id],
                    )
                )
    return violations


def _check_ingress(graph):
    allowed = {
        vpc.properties.get("CidrBlock")
        for vpc in graph.of_type(VPC)
        if isinstance(vpc.properties.get("CidrBlock"), str)
    }

    rules = []
    for group in graph.of_type(SECURITY_GROUP):
        for rule in group.properties.get("SecurityGroupIngress") or []:
            rules.append((group.logical_id, rule))
    for ingress in graph.of_type(SECURITY_GROUP_INGRESS):
        rules.append((ingress.logical_id, ingress.properties))

    violations = []
    for owner, rule in rules:
        if "SourcePrefixListId" in rule:
            violations.append(
                Violation(
                    "ingress-range",
                    f"{owner} admits the prefix list {rule['SourcePrefixListId']!r}, "
                    "only peered VPC ranges are allowed",
                    [owner],
                )
            )
            continue

        # Rules sourced from another security group carry no address range
        if "CidrIp" not in rule and "CidrIpv6" not in rule:
            continue
        cidr = graph.resolve_cidr(rule.get("CidrIp", rule.get("CidrIpv6")))
        if cidr not in allowed:
            violations.append(
                Violation(
                    "ingress-range",
                    f"{owner} admits {cidr or 'an unresolved range'}, "
                    f"allowed ranges are {', '.join(sorted(allowed)) or 'none'}",
                    [owner],
                )
            )
    return violations


CHECKS = (_check_vpcs, _check_peering_routes, _check_placement, _check_ingress)


def find_violations(template, graph=None) -> List[Violation]:
    if graph is None:
        graph = ResourceGraph.from_template(template)
    violations = []
    for check in CHECKS:
        violations.extend(check(graph))
    return violations


def validate_topology(template) -> ResourceGraph:
    """Build, plan and check a template; raise TopologyError on any violation."""
    graph = ResourceGraph.from_template(template)
    waves = graph.plan()
    logger.info(f"Planned {len(graph)} resources in {len(waves)} waves")

    violations = find_violations(template, graph)
    for violation in violations:
        logger.error(str(violation))
    if violations:
        raise TopologyError(
            f"{len(violations)} topology check(s) failed", violations=violations
        )
    return graph
