"""Shared pytest fixtures and the Pulumi mock engine used by every test."""

import pulumi
import pytest

from config import parse_config

TEST_PASSWORD = "not-a-real-password"


class TopologyMocks(pulumi.runtime.Mocks):
    """Echo inputs back as outputs and fill in the attributes AWS would assign."""

    def __init__(self):
        self.created = []

    def new_resource(self, args: pulumi.runtime.MockResourceArgs):
        self.created.append((args.typ, args.name, dict(args.inputs)))
        outputs = dict(args.inputs)
        name = args.name
        if args.typ == "awsx:ec2:Vpc":
            # The natGateways input is a strategy, the output is a list of gateways.
            outputs.pop("natGateways", None)
            outputs.update(
                vpcId=f"{name}-vpc-id",
                publicSubnetIds=["subnet-public-a", "subnet-public-b", "subnet-public-c"],
                privateSubnetIds=["subnet-private-a", "subnet-private-b", "subnet-private-c"],
            )
        elif args.typ == "aws:ecr/repository:Repository":
            outputs["repositoryUrl"] = f"123456789012.dkr.ecr.us-east-1.amazonaws.com/{name}"
        elif args.typ == "awsx:ecr:Image":
            outputs["imageUri"] = f"123456789012.dkr.ecr.us-east-1.amazonaws.com/{name}@sha256:abc123"
        elif args.typ == "aws:lb/loadBalancer:LoadBalancer":
            outputs["dnsName"] = f"{name}.us-east-1.elb.amazonaws.com"
        elif args.typ == "aws:rds/instance:Instance":
            outputs["address"] = f"{name}.abcdefgh.us-east-1.rds.amazonaws.com"
            outputs["endpoint"] = f"{outputs['address']}:3306"
        outputs.setdefault("name", name)
        outputs.setdefault("arn", f"arn:aws:mock:us-east-1:123456789012:{name}")
        return [f"{name}-id", outputs]

    def call(self, args: pulumi.runtime.MockCallArgs):
        return {}


MOCKS = TopologyMocks()
pulumi.runtime.set_mocks(MOCKS, project="woo-commerce", stack="test", preview=False)


def make_config_data(**overrides):
    data = {
        "project_name": "Woo-Commerce",
        "environment": "dev",
        "region": "us-east-1",
    }
    data.update(overrides)
    return data


@pytest.fixture
def mocks():
    return MOCKS


@pytest.fixture
def environ():
    return {"RDS_PASSWORD": TEST_PASSWORD}


@pytest.fixture
def topology_config(environ):
    return parse_config(make_config_data(), environ)
