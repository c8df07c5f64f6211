"""
Permit rules for the three security groups of the topology and the rule-set
diff check that runs before each group is declared.
"""

import pulumi
import pulumi_aws as aws
from dataclasses import dataclass
from typing import Dict, List, Set, Tuple

from config import TopologyConfig
from errors import TopologyError

ANYWHERE = "0.0.0.0/0"

# Ports the web and api load balancers and containers serve on.
PUBLIC_SERVICE_PORTS = frozenset({80, 5000})


@dataclass(frozen=True)
class IngressRule:
    from_port: int
    to_port: int
    protocol: str = "tcp"
    cidr_blocks: Tuple[str, ...] = (ANYWHERE,)

    def ports(self) -> Set[int]:
        return set(range(self.from_port, self.to_port + 1))

    def to_args(self) -> aws.ec2.SecurityGroupIngressArgs:
        return aws.ec2.SecurityGroupIngressArgs(
            from_port=self.from_port,
            to_port=self.to_port,
            protocol=self.protocol,
            cidr_blocks=list(self.cidr_blocks),
        )


ALLOW_ALL_EGRESS = aws.ec2.SecurityGroupEgressArgs(
    from_port=0,
    to_port=0,
    protocol="-1",
    cidr_blocks=[ANYWHERE],
)


def access_policy_rules(config: TopologyConfig) -> Dict[str, List[IngressRule]]:
    public_ports = sorted({config.listener_port, config.container_port})
    return {
        "web": [IngressRule(port, port) for port in public_ports],
        "api": [IngressRule(port, port) for port in public_ports],
        # Reachable from inside the VPC only.
        "database": [
            IngressRule(config.database.port, config.database.port, cidr_blocks=(config.vpc_cidr,)),
        ],
    }


def allowed_ports(config: TopologyConfig) -> Dict[str, Set[int]]:
    return {
        "web": set(PUBLIC_SERVICE_PORTS),
        "api": set(PUBLIC_SERVICE_PORTS),
        "database": {config.database.port},
    }


def rule_set_diff(rules: List[IngressRule], allowed: Set[int]) -> Tuple[Set[int], Set[int]]:
    """Return (ports opened but not allowed, allowed ports left closed)."""
    opened: Set[int] = set()
    for rule in rules:
        if rule.protocol == "-1":
            # All traffic: treat as every port.
            opened.update(range(0, 65536))
        else:
            opened.update(rule.ports())
    return opened - allowed, allowed - opened


def check_rule_set(name: str, rules: List[IngressRule], allowed: Set[int]) -> None:
    unexpected, missing = rule_set_diff(rules, allowed)
    if unexpected:
        shown = sorted(unexpected)[:10]
        raise TopologyError(f"Access policy '{name}' opens ports outside {sorted(allowed)}: {shown}")
    if missing:
        raise TopologyError(f"Access policy '{name}' is missing rules for ports {sorted(missing)}")
    pulumi.log.info(f"Access policy '{name}' permits exactly {sorted(allowed)}")
