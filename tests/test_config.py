import copy
import json

import pytest

from vpc_peering.config import load_parameters, validate_parameters


def test_shipped_parameters_load(parameters):
    assert parameters["vpc_a"]["cidr"] == "192.0.2.0/24"
    assert parameters["vpc_b"]["cidr"] == "198.51.100.0/24"
    assert parameters["vpc_a"]["interface_endpoints"] == [
        "SSM",
        "SSM_MESSAGES",
        "EC2_MESSAGES",
    ]


def test_load_from_path(tmp_path, raw_parameters):
    path = tmp_path / "parameters.json"
    path.write_text(json.dumps(raw_parameters))

    config = load_parameters(str(path))
    assert config["resource_name"] == "vpc-peering"


def test_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_parameters(str(tmp_path / "missing.json"))


def test_optional_vpc_settings_get_defaults(raw_parameters):
    for key in (
        "gateway_endpoints",
        "interface_endpoints",
        "interface_endpoint_subnet_type",
        "peering_route_subnet_type",
        "instance_subnet_types",
        "ingress_from",
    ):
        del raw_parameters["vpc_b"][key]

    config = validate_parameters(raw_parameters)
    assert config["vpc_b"]["gateway_endpoints"] == []
    assert config["vpc_b"]["interface_endpoints"] == []
    assert config["vpc_b"]["peering_route_subnet_type"] == "PUBLIC"
    assert config["vpc_b"]["instance_subnet_types"] == []


def test_defaults_are_not_shared_between_configs(raw_parameters):
    other = copy.deepcopy(raw_parameters)
    for parameters in (raw_parameters, other):
        del parameters["vpc_b"]["gateway_endpoints"]
        del parameters["vpc_b"]["ingress_from"]

    config = validate_parameters(raw_parameters)
    config["vpc_b"]["gateway_endpoints"].append("S3")
    config["vpc_b"]["ingress_from"].append("vpc_a")

    other_config = validate_parameters(other)
    assert other_config["vpc_b"]["gateway_endpoints"] == []
    assert other_config["vpc_b"]["ingress_from"] == []


@pytest.mark.parametrize("key", ["resource_name", "tag_name", "ec2", "vpc_b"])
def test_missing_top_level_key(raw_parameters, key):
    del raw_parameters[key]
    with pytest.raises(ValueError, match=f"Please supply '{key}'"):
        validate_parameters(raw_parameters)


def test_missing_ec2_key(raw_parameters):
    del raw_parameters["ec2"]["instance_type"]
    with pytest.raises(ValueError, match="ec2.instance_type"):
        validate_parameters(raw_parameters)


def test_unknown_volume_type(raw_parameters):
    raw_parameters["ec2"]["volume_type"] = "GP9"
    with pytest.raises(ValueError, match="Unknown EBS volume type"):
        validate_parameters(raw_parameters)


def test_invalid_cidr(raw_parameters):
    raw_parameters["vpc_b"]["cidr"] = "198.51.100.1/24"
    with pytest.raises(ValueError, match="Invalid CIDR for vpc_b"):
        validate_parameters(raw_parameters)


def test_overlapping_cidrs(raw_parameters):
    raw_parameters["vpc_b"]["cidr"] = "192.0.2.128/25"
    with pytest.raises(ValueError, match="overlap"):
        validate_parameters(raw_parameters)


def test_unknown_subnet_type(raw_parameters):
    raw_parameters["vpc_b"]["subnets"][0]["subnet_type"] = "DMZ"
    with pytest.raises(ValueError, match="Unknown subnet type DMZ"):
        validate_parameters(raw_parameters)


def test_no_subnets(raw_parameters):
    raw_parameters["vpc_b"]["subnets"] = []
    with pytest.raises(ValueError, match="at least one subnet"):
        validate_parameters(raw_parameters)


def test_private_with_egress_needs_nat(raw_parameters):
    raw_parameters["vpc_a"]["nat_gateways"] = 0
    with pytest.raises(ValueError, match="no NAT gateways"):
        validate_parameters(raw_parameters)


def test_nat_needs_public_subnet(raw_parameters):
    raw_parameters["vpc_b"]["nat_gateways"] = 1
    raw_parameters["vpc_b"]["subnets"][0]["subnet_type"] = "PRIVATE_ISOLATED"
    with pytest.raises(ValueError, match="needs a PUBLIC subnet"):
        validate_parameters(raw_parameters)


def test_unknown_interface_endpoint(raw_parameters):
    raw_parameters["vpc_a"]["interface_endpoints"].append("NOT_A_SERVICE")
    with pytest.raises(ValueError, match="Unknown interface endpoint service"):
        validate_parameters(raw_parameters)


def test_unknown_gateway_endpoint(raw_parameters):
    raw_parameters["vpc_a"]["gateway_endpoints"] = ["SSM"]
    with pytest.raises(ValueError, match="Unknown gateway endpoint service"):
        validate_parameters(raw_parameters)


def test_instance_in_undeclared_subnet_group(raw_parameters):
    raw_parameters["vpc_b"]["instance_subnet_types"] = ["PRIVATE_ISOLATED"]
    with pytest.raises(ValueError, match="vpc_b has no PRIVATE_ISOLATED subnet group"):
        validate_parameters(raw_parameters)


def test_endpoints_in_undeclared_subnet_group(raw_parameters):
    raw_parameters["vpc_b"]["interface_endpoints"] = ["SSM"]
    with pytest.raises(ValueError, match="vpc_b has no PRIVATE_ISOLATED subnet group"):
        validate_parameters(raw_parameters)


def test_unknown_ingress_source(raw_parameters):
    raw_parameters["vpc_b"]["ingress_from"] = ["vpc_c"]
    with pytest.raises(ValueError, match="Ingress source vpc_c"):
        validate_parameters(raw_parameters)
