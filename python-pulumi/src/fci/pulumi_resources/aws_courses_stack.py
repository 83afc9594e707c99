import json
import typing

import pulumi
import pulumi_aws as aws

import fci
import fci.errors
import fci.graph
import fci.stack
import fci.workload

ResourceKind = fci.graph.ResourceKind

RESOURCE_TYPES: dict[ResourceKind, typing.Callable[..., pulumi.CustomResource]] = {
    ResourceKind.VPC: aws.ec2.Vpc,
    ResourceKind.INTERNET_GATEWAY: aws.ec2.InternetGateway,
    ResourceKind.SUBNET: aws.ec2.Subnet,
    ResourceKind.ROUTE_TABLE: aws.ec2.RouteTable,
    ResourceKind.ROUTE: aws.ec2.Route,
    ResourceKind.ROUTE_TABLE_ASSOCIATION: aws.ec2.RouteTableAssociation,
    ResourceKind.SECURITY_GROUP: aws.ec2.SecurityGroup,
    ResourceKind.SECURITY_GROUP_INGRESS_RULE: aws.vpc.SecurityGroupIngressRule,
    ResourceKind.SECURITY_GROUP_EGRESS_RULE: aws.vpc.SecurityGroupEgressRule,
    ResourceKind.VPC_ENDPOINT: aws.ec2.VpcEndpoint,
    ResourceKind.IAM_ROLE: aws.iam.Role,
    ResourceKind.IAM_ROLE_POLICY: aws.iam.RolePolicy,
    ResourceKind.IAM_ROLE_POLICY_ATTACHMENT: aws.iam.RolePolicyAttachment,
    ResourceKind.IAM_INSTANCE_PROFILE: aws.iam.InstanceProfile,
    ResourceKind.DYNAMODB_TABLE: aws.dynamodb.Table,
    ResourceKind.ECR_REPOSITORY: aws.ecr.Repository,
    ResourceKind.ECR_LIFECYCLE_POLICY: aws.ecr.LifecyclePolicy,
    ResourceKind.LOG_GROUP: aws.cloudwatch.LogGroup,
    ResourceKind.LAUNCH_TEMPLATE: aws.ec2.LaunchTemplate,
    ResourceKind.AUTOSCALING_GROUP: aws.autoscaling.Group,
    ResourceKind.ECS_CAPACITY_PROVIDER: aws.ecs.CapacityProvider,
    ResourceKind.ECS_CLUSTER: aws.ecs.Cluster,
    ResourceKind.ECS_CLUSTER_CAPACITY_PROVIDERS: aws.ecs.ClusterCapacityProviders,
    ResourceKind.ECS_TASK_DEFINITION: aws.ecs.TaskDefinition,
    ResourceKind.ECS_SERVICE: aws.ecs.Service,
    ResourceKind.LB_TARGET_GROUP: aws.lb.TargetGroup,
    ResourceKind.LOAD_BALANCER: aws.lb.LoadBalancer,
    ResourceKind.LB_LISTENER: aws.lb.Listener,
    ResourceKind.LB_LISTENER_RULE: aws.lb.ListenerRule,
}

LOOKUP_TYPES: dict[ResourceKind, typing.Callable[..., pulumi.Output[typing.Any]]] = {
    ResourceKind.ECR_REPOSITORY_LOOKUP: aws.ecr.get_repository_output,
}

# Properties the provider takes as JSON strings.
JSON_PROPERTIES = frozenset(["assume_role_policy", "container_definitions", "policy"])


class AWSCoursesStack(pulumi.ComponentResource):
    config: fci.StackConfig
    service_version: str
    graph: fci.graph.ResourceGraph
    # Lookups render to invoke outputs rather than resources.
    resources: dict[str, typing.Any]

    @classmethod
    def autoload(cls) -> "AWSCoursesStack":
        return cls(
            config=fci.workload.CoursesWorkload(pulumi.get_stack()).cfg,
            service_version=pulumi.Config().require("serviceVersion"),
        )

    def __init__(
        self,
        config: fci.StackConfig,
        service_version: str,
        *args,
        **kwargs,
    ):
        super().__init__(
            f"fci:{self.__class__.__name__}",
            config.compound_name,
            *args,
            **kwargs,
        )

        self.config = config
        self.service_version = service_version
        self.resources = {}
        self._azs: list[str] | None = None

        try:
            self.graph = fci.stack.build_stack(config, service_version)
        except fci.errors.GraphValidationError as e:
            pulumi.error(str(e))
            raise

        pulumi.log.info(
            f"rendering {len(self.graph)} resources for {config.compound_name} at version {service_version}",
            resource=self,
        )

        for resource in self.graph.topological_order():
            self.resources[resource.logical_id] = self._render(resource)

        outputs = self._outputs()
        for key, value in outputs.items():
            pulumi.export(key, value)

        self.register_outputs(outputs)

    def _outputs(self) -> dict[str, typing.Any]:
        outputs: dict[str, typing.Any] = {
            "table_name": self.resources["courses-table"].name,
            "vpc_id": self.resources["vpc"].id,
        }

        for role in self.graph.of_kind(ResourceKind.IAM_ROLE):
            identity = role.labels.get("identity")
            if identity:
                outputs[f"{identity.replace('-', '_')}_role_arn"] = self.resources[role.logical_id].arn

        optional = {
            "cluster_name": ("cluster", "name"),
            "image_repository_url": ("image-repository", "repository_url"),
            "load_balancer_dns_name": ("alb", "dns_name"),
            "service_name": ("service", "name"),
        }
        for key, (logical_id, attribute) in optional.items():
            if logical_id in self.resources:
                outputs[key] = getattr(self.resources[logical_id], attribute)

        return outputs

    @property
    def azs(self) -> list[str]:
        if self._azs is None:
            self._azs = list(self.config.network.azs) or aws.get_availability_zones(state="available").names
            if len(self._azs) < self.config.network.az_count:
                pulumi.error(f"only {len(self._azs)} availability zones are available in {self.config.region}")

        return self._azs

    def _resolve(self, value: typing.Any) -> typing.Any:
        if isinstance(value, fci.graph.Ref):
            return getattr(self.resources[value.target], value.attribute)
        if isinstance(value, fci.graph.Interpolation):
            template = value.template
            return pulumi.Output.all(*[self._resolve(r) for r in value.refs]).apply(lambda args: template.format(*args))
        if isinstance(value, dict):
            return {k: self._resolve(v) for k, v in value.items()}
        if isinstance(value, list | tuple):
            return [self._resolve(v) for v in value]
        return value

    def _args(self, resource: fci.graph.Resource) -> dict[str, typing.Any]:
        args = {}
        for key, value in resource.properties.items():
            resolved = self._resolve(value)
            if key in JSON_PROPERTIES:
                resolved = pulumi.Output.from_input(resolved).apply(json.dumps)
            args[key] = resolved

        if resource.kind == ResourceKind.SUBNET and "availability_zone" not in args:
            args["availability_zone"] = self.azs[int(resource.labels["az_index"])]

        return args

    def _options(self, resource: fci.graph.Resource) -> pulumi.ResourceOptions:
        retain = resource.retention == fci.RetentionPolicy.RETAIN
        ignore_changes = [c for c in resource.labels.get("ignore_changes", "").split(",") if c]

        return pulumi.ResourceOptions(
            parent=self,
            depends_on=[self.resources[d] for d in resource.depends_on if not self.graph.get(d).is_lookup],
            retain_on_delete=retain,
            protect=retain and self.config.protect_persistent_resources,
            ignore_changes=ignore_changes or None,
        )

    def _render(self, resource: fci.graph.Resource) -> typing.Any:
        if resource.is_lookup:
            return LOOKUP_TYPES[resource.kind](**self._args(resource), opts=pulumi.InvokeOptions(parent=self))

        return RESOURCE_TYPES[resource.kind](
            resource.name,
            **self._args(resource),
            opts=self._options(resource),
        )
