import graphlib
import json
import pulumi
import pulumi_aws as aws
import pulumi_awsx as awsx
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Tuple

from access_policies import ALLOW_ALL_EGRESS, access_policy_rules, allowed_ports, check_rule_set
from config import ServiceConfig, TopologyConfig
from errors import TopologyError

AWS_REGION_ABBREVIATIONS = {
    "us-east-1": "use1",
    "us-east-2": "use2",
    "us-west-1": "usw1",
    "us-west-2": "usw2",
    "af-south-1": "afs1",
    "ap-east-1": "ape1",
    "ap-south-1": "aps1",
    "ap-northeast-1": "apne1",
    "ap-northeast-2": "apne2",
    "ap-northeast-3": "apne3",
    "ap-southeast-1": "apse1",
    "ap-southeast-2": "apse2",
    "ca-central-1": "cac1",
    "eu-central-1": "euc1",
    "eu-west-1": "euw1",
    "eu-west-2": "euw2",
    "eu-west-3": "euw3",
    "eu-north-1": "eun1",
    "eu-south-1": "eus1",
    "me-south-1": "mes1",
    "sa-east-1": "sae1",
    "us-gov-east-1": "usge1",
    "us-gov-west-1": "usgw1",
    "cn-north-1": "cnn1",
    "cn-northwest-1": "cnnw1",
}

ECS_TASK_EXECUTION_POLICY_ARN = "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"

ECS_TASKS_ASSUME_ROLE_POLICY = json.dumps({
    "Version": "2012-10-17",
    "Statement": [{
        "Effect": "Allow",
        "Principal": {"Service": "ecs-tasks.amazonaws.com"},
        "Action": "sts:AssumeRole",
    }],
})


def get_abbreviation(region: str) -> str:
    return AWS_REGION_ABBREVIATIONS.get(region.lower(), region.split("-")[0].lower())


@dataclass
class Declaration:
    """A declared resource and the names of the declarations it reads from."""
    name: str
    kind: str
    resource: pulumi.Resource
    depends_on: Tuple[str, ...] = ()

    def output(self, attr: str) -> pulumi.Output:
        # Pulumi accepts Outputs as inputs, so handing the Output over is the
        # explicit wait: the engine resolves it before the dependent is created.
        value = getattr(self.resource, attr, None)
        if value is None:
            raise TopologyError(f"Attribute '{attr}' not found on resource '{self.name}'")
        return pulumi.Output.from_input(value)


class TopologyBuilder:
    def __init__(self, config: TopologyConfig):
        self.config = config
        self.tags: Dict[str, str] = dict(config.tags)
        self.declarations: Dict[str, Declaration] = {}
        self.environment: Dict[str, Tuple[str, pulumi.Output]] = {}
        self._pending: List[str] = []

    @property
    def resources(self) -> Dict[str, pulumi.Resource]:
        return {name: decl.resource for name, decl in self.declarations.items()}

    def generate_resource_name(self, base_name: str) -> str:
        project = self.config.project_name.strip().lower()
        env = self.config.environment.strip().lower()
        reg_abbr = get_abbreviation(self.config.region)
        return f"{project}-{env}-{reg_abbr}-{base_name}".lower()

    def ref(self, name: str, attr: str = "id") -> pulumi.Output:
        """Read an output attribute of an earlier declaration and record the edge."""
        if name not in self.declarations:
            raise TopologyError(f"Referenced resource '{name}' not found.")
        value = self.declarations[name].output(attr)
        if name not in self._pending:
            self._pending.append(name)
        return value

    def resource(self, name: str) -> pulumi.Resource:
        if name not in self.declarations:
            raise TopologyError(f"Referenced resource '{name}' not found.")
        if name not in self._pending:
            self._pending.append(name)
        return self.declarations[name].resource

    def declare(self, name: str, kind: str, resource: pulumi.Resource) -> pulumi.Resource:
        if name in self.declarations:
            raise TopologyError(f"Resource '{name}' is already declared.")
        depends_on, self._pending = tuple(self._pending), []
        self.declarations[name] = Declaration(name, kind, resource, depends_on)
        pulumi.log.info(f"Declared resource: {name} ({kind})")
        return resource

    def dependency_order(self) -> List[str]:
        """Check that every reference points backwards and return a creation order."""
        position = {name: index for index, name in enumerate(self.declarations)}
        graph = {}
        for name, decl in self.declarations.items():
            for dep in decl.depends_on:
                if dep not in position or position[dep] >= position[name]:
                    raise TopologyError(f"Resource '{name}' references '{dep}' before it is declared.")
            graph[name] = set(decl.depends_on)
        try:
            return list(graphlib.TopologicalSorter(graph).static_order())
        except graphlib.CycleError as e:
            raise TopologyError(f"Dependency cycle between resources: {e.args[1]}") from e

    def resource_ids(self) -> Dict[str, pulumi.Output]:
        # Component resources (awsx Vpc, Image) have no id of their own
        return {
            name: resource.id
            for name, resource in self.resources.items()
            if isinstance(resource, pulumi.CustomResource)
        }

    def plan(self) -> List[Tuple[str, str, Tuple[str, ...]]]:
        return [(decl.name, decl.kind, decl.depends_on) for decl in self.declarations.values()]

    def build(self):
        self._declare_network()
        self._declare_access_policies()
        self._declare_images()
        self._declare_cluster()
        self._declare_load_balancer("web", internal=False)
        self._declare_load_balancer("api", internal=True)
        self._declare_data_store()
        self._declare_task_execution()
        self._declare_task_definition(self.config.api, self._api_environment)
        self._declare_task_definition(self.config.web, self._web_environment)
        self._declare_service("web", public=True)
        self._declare_service("api", public=False)
        self._declare_web_firewall()
        self.dependency_order()
        pulumi.log.info(f"Declared {len(self.declarations)} resources for '{self.config.project_name}'")

    def _declare_network(self):
        self.declare("vpc", "awsx.ec2.Vpc", awsx.ec2.Vpc(
            self.generate_resource_name("vpc"),
            cidr_block=self.config.vpc_cidr,
            nat_gateways=awsx.ec2.NatGatewayConfigurationArgs(strategy=self.config.nat_gateway_strategy),
            tags=self.tags,
        ))

    def _declare_access_policies(self):
        rules = access_policy_rules(self.config)
        allowed = allowed_ports(self.config)
        for policy in ("web", "api", "database"):
            check_rule_set(policy, rules[policy], allowed[policy])
            self.declare(f"sg_{policy}", "aws.ec2.SecurityGroup", aws.ec2.SecurityGroup(
                self.generate_resource_name(f"sg-{policy}"),
                description=f"{self.config.project_name} {policy} access policy",
                vpc_id=self.ref("vpc", "vpc_id"),
                ingress=[rule.to_args() for rule in rules[policy]],
                egress=[ALLOW_ALL_EGRESS],
                tags=self.tags,
            ))

    def _declare_images(self):
        for svc in self.config.services.values():
            self.declare(f"repo_{svc.name}", "aws.ecr.Repository", aws.ecr.Repository(
                self.generate_resource_name(svc.name),
                force_delete=True,
                image_scanning_configuration=aws.ecr.RepositoryImageScanningConfigurationArgs(scan_on_push=True),
                tags=self.tags,
            ))
            self.declare(f"image_{svc.name}", "awsx.ecr.Image", awsx.ecr.Image(
                self.generate_resource_name(f"{svc.name}-image"),
                repository_url=self.ref(f"repo_{svc.name}", "repository_url"),
                context=svc.build_context,
                platform="linux/amd64",
            ))

    def _declare_cluster(self):
        self.declare("cluster", "aws.ecs.Cluster", aws.ecs.Cluster(
            self.generate_resource_name("cluster"),
            tags=self.tags,
        ))

    def _declare_load_balancer(self, name: str, internal: bool):
        subnets = "private_subnet_ids" if internal else "public_subnet_ids"
        self.declare(f"{name}_lb", "aws.lb.LoadBalancer", aws.lb.LoadBalancer(
            self.generate_resource_name(f"{name}-lb"),
            load_balancer_type="application",
            internal=internal,
            security_groups=[self.ref(f"sg_{name}")],
            subnets=self.ref("vpc", subnets),
            tags=self.tags,
        ))

        health_check = None
        if internal:
            health_check = aws.lb.TargetGroupHealthCheckArgs(path=self.config.health_check_path)
        self.declare(f"{name}_tg", "aws.lb.TargetGroup", aws.lb.TargetGroup(
            self.generate_resource_name(f"{name}-tg"),
            port=self.config.container_port,
            protocol="HTTP",
            target_type="ip",
            vpc_id=self.ref("vpc", "vpc_id"),
            health_check=health_check,
            tags=self.tags,
        ))

        self.declare(f"{name}_listener", "aws.lb.Listener", aws.lb.Listener(
            self.generate_resource_name(f"{name}-listener"),
            load_balancer_arn=self.ref(f"{name}_lb", "arn"),
            port=self.config.listener_port,
            protocol="HTTP",
            default_actions=[aws.lb.ListenerDefaultActionArgs(
                type="forward",
                target_group_arn=self.ref(f"{name}_tg", "arn"),
            )],
            tags=self.tags,
        ))

    def _declare_data_store(self):
        db = self.config.database
        subnet_group_name = self.generate_resource_name("subnet-group")
        self.declare("db_subnet_group", "aws.rds.SubnetGroup", aws.rds.SubnetGroup(
            subnet_group_name,
            name=subnet_group_name,
            subnet_ids=self.ref("vpc", "private_subnet_ids"),
            tags=self.tags,
        ))
        self.declare("database", "aws.rds.Instance", aws.rds.Instance(
            self.generate_resource_name("rds"),
            engine=db.engine,
            engine_version=db.engine_version,
            instance_class=db.instance_class,
            allocated_storage=db.allocated_storage,
            storage_type=db.storage_type,
            multi_az=db.multi_az,
            port=db.port,
            publicly_accessible=False,
            username=db.username,
            password=pulumi.Output.secret(db.password),
            db_name=db.db_name,
            db_subnet_group_name=self.ref("db_subnet_group", "name"),
            vpc_security_group_ids=[self.ref("sg_database")],
            skip_final_snapshot=True,
            tags=self.tags,
        ))

    def _declare_task_execution(self):
        self.declare("execution_role", "aws.iam.Role", aws.iam.Role(
            self.generate_resource_name("execution-role"),
            assume_role_policy=ECS_TASKS_ASSUME_ROLE_POLICY,
            tags=self.tags,
        ))
        self.declare("execution_role_policy", "aws.iam.RolePolicyAttachment", aws.iam.RolePolicyAttachment(
            self.generate_resource_name("execution-role-policy"),
            role=self.ref("execution_role", "name"),
            policy_arn=ECS_TASK_EXECUTION_POLICY_ARN,
        ))

    def _api_environment(self) -> Tuple[str, pulumi.Output]:
        db = self.config.database
        connection_string = pulumi.Output.concat(
            "server=", self.ref("database", "address"),
            ";port=", str(db.port),
            ";uid=", db.username,
            ";pwd=", pulumi.Output.secret(db.password),
            ";database=", db.db_name,
        )
        return "ConnectionString", connection_string

    def _web_environment(self) -> Tuple[str, pulumi.Output]:
        api_address = pulumi.Output.concat("http://", self.ref("api_lb", "dns_name"), self.config.health_check_path)
        return "ApiAddress", api_address

    def _container_definitions(self, svc: ServiceConfig, environment: Tuple[str, Any]) -> pulumi.Output:
        env_name, env_value = environment
        port = self.config.container_port
        return pulumi.Output.json_dumps([{
            "name": svc.container_name,
            "image": self.ref(f"image_{svc.name}", "image_uri"),
            "memory": svc.memory,
            "cpu": svc.cpu,
            "essential": True,
            "portMappings": [{"containerPort": port, "hostPort": port, "protocol": "tcp"}],
            "environment": [{"name": env_name, "value": env_value}],
            "logConfiguration": {
                "logDriver": "awslogs",
                "options": {
                    "awslogs-group": self.ref(f"{svc.name}_logs", "name"),
                    "awslogs-region": self.config.region,
                    "awslogs-stream-prefix": svc.name,
                },
            },
        }])

    def _declare_task_definition(self, svc: ServiceConfig, environment: Callable[[], Tuple[str, pulumi.Output]]):
        self.declare(f"{svc.name}_logs", "aws.cloudwatch.LogGroup", aws.cloudwatch.LogGroup(
            self.generate_resource_name(f"{svc.name}-logs"),
            retention_in_days=self.config.log_retention_days,
            tags=self.tags,
        ))
        self.environment[svc.name] = environment()
        self.declare(f"{svc.name}_td", "aws.ecs.TaskDefinition", aws.ecs.TaskDefinition(
            self.generate_resource_name(f"{svc.name}-td"),
            family=self.generate_resource_name(svc.name),
            cpu=svc.task_cpu,
            memory=svc.task_memory,
            network_mode="awsvpc",
            requires_compatibilities=["FARGATE"],
            execution_role_arn=self.ref("execution_role", "arn"),
            container_definitions=self._container_definitions(svc, self.environment[svc.name]),
            tags=self.tags,
        ))

    def _declare_service(self, name: str, public: bool):
        svc = self.config.services[name]
        listener = self.resource(f"{name}_listener")
        self.declare(f"{name}_service", "aws.ecs.Service", aws.ecs.Service(
            self.generate_resource_name(f"{name}-srv"),
            cluster=self.ref("cluster", "arn"),
            task_definition=self.ref(f"{name}_td", "arn"),
            desired_count=self.config.desired_count,
            launch_type="FARGATE",
            network_configuration=aws.ecs.ServiceNetworkConfigurationArgs(
                subnets=self.ref("vpc", "public_subnet_ids" if public else "private_subnet_ids"),
                security_groups=[self.ref(f"sg_{name}")],
                assign_public_ip=public,
            ),
            load_balancers=[aws.ecs.ServiceLoadBalancerArgs(
                target_group_arn=self.ref(f"{name}_tg", "arn"),
                container_name=svc.container_name,
                container_port=self.config.container_port,
            )],
            tags=self.tags,
            opts=pulumi.ResourceOptions(depends_on=[listener]),
        ))

    def _declare_web_firewall(self):
        self.declare("web_acl", "aws.wafv2.WebAcl", aws.wafv2.WebAcl(
            self.generate_resource_name("acl"),
            scope="REGIONAL",
            default_action=aws.wafv2.WebAclDefaultActionArgs(allow=aws.wafv2.WebAclDefaultActionAllowArgs()),
            visibility_config=aws.wafv2.WebAclVisibilityConfigArgs(
                cloudwatch_metrics_enabled=False,
                metric_name=f"{self.config.project_name}-acl-metric",
                sampled_requests_enabled=False,
            ),
            tags=self.tags,
        ))
        self.declare("web_acl_association", "aws.wafv2.WebAclAssociation", aws.wafv2.WebAclAssociation(
            self.generate_resource_name("assoc"),
            resource_arn=self.ref("web_lb", "arn"),
            web_acl_arn=self.ref("web_acl", "arn"),
        ))

    def outputs(self) -> Dict[str, pulumi.Output]:
        def attr(name: str, attribute: str) -> pulumi.Output:
            if name not in self.declarations:
                raise TopologyError(f"Resource '{name}' has not been declared; call build() first.")
            return self.declarations[name].output(attribute)

        return {
            "web_url": pulumi.Output.concat("http://", attr("web_lb", "dns_name")),
            "api_lb_dns_name": attr("api_lb", "dns_name"),
            "db_endpoint": attr("database", "endpoint"),
            "web_image_uri": attr("image_web", "image_uri"),
            "api_image_uri": attr("image_api", "image_uri"),
            "web_repository_url": attr("repo_web", "repository_url"),
            "api_repository_url": attr("repo_api", "repository_url"),
            "cluster_name": attr("cluster", "name"),
        }
