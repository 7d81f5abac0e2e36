"""Pytest configuration and shared fixtures for the VPC peering app tests."""

import json
from pathlib import Path

import aws_cdk as cdk
import pytest
from aws_cdk.assertions import Template

from vpc_peering.config import load_parameters, validate_parameters
from vpc_peering.vpc_stack import VpcPeeringStack

PARAMETERS_FILE = Path(__file__).resolve().parent.parent / "parameters.json"


def build_stack(config):
    app = cdk.App()
    return VpcPeeringStack(
        app,
        "TestVpcPeeringStack",
        res_name=config["resource_name"],
        instance=config["instance"],
        config=config,
    )


@pytest.fixture
def raw_parameters():
    """The shipped parameters file, unvalidated and safe to mutate."""
    with open(PARAMETERS_FILE) as fp:
        return json.load(fp)


@pytest.fixture(scope="session")
def parameters():
    return load_parameters(str(PARAMETERS_FILE))


@pytest.fixture(scope="session")
def stack(parameters):
    return build_stack(parameters)


@pytest.fixture(scope="session")
def template(stack):
    return Template.from_stack(stack)


@pytest.fixture
def template_for():
    """Synthesize a stack from a modified copy of the parameters."""

    def _template_for(config):
        return Template.from_stack(build_stack(validate_parameters(config)))

    return _template_for
