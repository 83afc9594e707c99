from __future__ import annotations

import dataclasses
import re
import typing

import fci
import fci.compute
import fci.errors
import fci.graph
import fci.junkdrawer
import fci.network

if typing.TYPE_CHECKING:
    import collections.abc

ResourceKind = fci.graph.ResourceKind

IMAGE_TAG_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


@dataclasses.dataclass
class ImageRepository:
    repository: fci.graph.Resource
    # Only the stack that owns the repository manages its lifecycle rule.
    lifecycle_policy: fci.graph.Resource | None = None

    @property
    def name(self) -> str:
        return self.repository.properties["name"]

    def image_reference(self, tag: str) -> ImageReference:
        if not IMAGE_TAG_PATTERN.match(tag):
            msg = f"{tag!r} is not a valid image tag"
            raise fci.errors.GraphValidationError(msg, resource=self.repository.logical_id, attribute="image_tag")

        return ImageReference(repository=self, tag=tag)


@dataclasses.dataclass(frozen=True)
class ImageReference:
    repository: ImageRepository
    tag: str

    def as_value(self) -> fci.graph.Interpolation:
        return fci.graph.Interpolation("{0}:" + self.tag, (self.repository.repository.ref("repository_url"),))


@dataclasses.dataclass(frozen=True)
class PortMapping:
    container_port: int
    protocol: str = "tcp"

    def as_definition(self) -> dict[str, typing.Any]:
        # awsvpc networking requires the host port to match the container port.
        return {"containerPort": self.container_port, "hostPort": self.container_port, "protocol": self.protocol}


@dataclasses.dataclass(frozen=True)
class LoggingTarget:
    log_group: fci.graph.Resource
    region: str
    stream_prefix: str = fci.CONTAINER_NAME

    def as_definition(self) -> dict[str, typing.Any]:
        return {
            "logDriver": "awslogs",
            "options": {
                "awslogs-group": self.log_group.ref("name"),
                "awslogs-region": self.region,
                "awslogs-stream-prefix": self.stream_prefix,
            },
        }


@dataclasses.dataclass(frozen=True)
class ContainerSpec:
    image: ImageReference
    health_probe: fci.HealthProbeConfig
    logging: LoggingTarget
    environment: dict[str, typing.Any] = dataclasses.field(default_factory=dict)
    cpu: int = 1024
    memory_reservation_mib: int = 512
    port_mappings: tuple[PortMapping, ...] = (PortMapping(fci.CONTAINER_PORT),)
    name: str = fci.CONTAINER_NAME

    def as_definition(self) -> dict[str, typing.Any]:
        probe = self.health_probe
        return {
            "name": self.name,
            "image": self.image.as_value(),
            "essential": True,
            "cpu": self.cpu,
            "memoryReservation": self.memory_reservation_mib,
            "portMappings": [p.as_definition() for p in self.port_mappings],
            "environment": [{"name": k, "value": v} for k, v in sorted(self.environment.items())],
            "healthCheck": {
                "command": list(probe.command),
                "interval": probe.interval,
                "timeout": probe.timeout,
                "retries": probe.retries,
                "startPeriod": probe.start_period,
            },
            "logConfiguration": self.logging.as_definition(),
        }


@dataclasses.dataclass
class TargetGroup:
    target_group: fci.graph.Resource
    port: int


@dataclasses.dataclass
class Service:
    service: fci.graph.Resource
    security_group: fci.graph.Resource
    cluster_capacity_providers: fci.graph.Resource | None = None


def define_image_repository(
    builder: fci.graph.StackBuilder,
    name: str = fci.DEFAULT_IMAGE_REPOSITORY,
    non_production_max_age_days: int = fci.NON_PRODUCTION_IMAGE_MAX_AGE_DAYS,
    *,
    retention: fci.RetentionPolicy = fci.RetentionPolicy.RETAIN,
) -> ImageRepository:
    """
    Declare the image repository and its lifecycle rule.

    One repository holds the images of every environment, so its name is not namespaced
    and exactly one stack, the owner, declares it; the others use
    `reference_image_repository`.

    Images whose tag starts with `non-production` are expired `non_production_max_age_days`
    after they were pushed; all other images are kept.
    """
    if non_production_max_age_days < 1:
        msg = "non-production images must be kept for at least one day"
        raise fci.errors.GraphValidationError(msg, resource="image-repository-lifecycle", attribute="policy")

    repository = builder.add(
        ResourceKind.ECR_REPOSITORY,
        "image-repository",
        {
            "name": name,
            "image_tag_mutability": "IMMUTABLE",
            "image_scanning_configuration": {"scan_on_push": True},
        },
        retention=retention,
    )

    lifecycle_policy = builder.add(
        ResourceKind.ECR_LIFECYCLE_POLICY,
        "image-repository-lifecycle",
        {
            "repository": repository.ref("name"),
            "policy": {
                "rules": [
                    {
                        "rulePriority": 1,
                        "description": f"Expire {fci.NON_PRODUCTION_TAG_PREFIX} images after "
                        f"{non_production_max_age_days} days",
                        "selection": {
                            "tagStatus": "tagged",
                            "tagPrefixList": [fci.NON_PRODUCTION_TAG_PREFIX],
                            "countType": "sinceImagePushed",
                            "countUnit": "days",
                            "countNumber": non_production_max_age_days,
                        },
                        "action": {"type": "expire"},
                    }
                ]
            },
        },
    )

    return ImageRepository(repository=repository, lifecycle_policy=lifecycle_policy)


def reference_image_repository(
    builder: fci.graph.StackBuilder,
    name: str = fci.DEFAULT_IMAGE_REPOSITORY,
) -> ImageRepository:
    """Look up the repository another environment's stack owns, without managing it."""
    repository = builder.add(ResourceKind.ECR_REPOSITORY_LOOKUP, "image-repository", {"name": name})
    return ImageRepository(repository=repository)


def define_log_group(builder: fci.graph.StackBuilder, retention_days: int = 30) -> fci.graph.Resource:
    return builder.add(
        ResourceKind.LOG_GROUP,
        "log-group",
        {
            "name": f"/{builder.namespace}/{fci.CONTAINER_NAME}",
            "retention_in_days": retention_days,
        },
    )


def service_environment(data_identity: fci.graph.Resource, region: str) -> dict[str, typing.Any]:
    """The variables the application reads to reach the table."""
    if data_identity.labels.get("identity") != fci.IdentityRole.DATA:
        msg = f"{fci.DATA_ROLE_ENV_VAR} must name the data identity"
        raise fci.errors.GraphValidationError(msg, resource=data_identity.logical_id, attribute="environment")

    return {
        fci.DATA_ROLE_ENV_VAR: data_identity.ref("arn"),
        fci.REGION_ENV_VAR: region,
    }


def define_task(
    builder: fci.graph.StackBuilder,
    execution_identity: fci.graph.Resource,
    cpu: int,
    container: ContainerSpec,
    task_agent_identity: fci.graph.Resource,
) -> fci.graph.Resource:
    """
    Declare the task definition for one container.

    Tasks run as `execution_identity`. The ECS agent pulls the image and ships logs as
    `task_agent_identity`.
    """
    if execution_identity.labels.get("identity") != fci.IdentityRole.EXECUTION:
        msg = "tasks must run as the execution identity"
        raise fci.errors.GraphValidationError(msg, resource="task-definition", attribute="task_role_arn")

    if task_agent_identity.labels.get("identity") != fci.IdentityRole.TASK_AGENT:
        msg = "the ECS agent must use the task agent identity"
        raise fci.errors.GraphValidationError(msg, resource="task-definition", attribute="execution_role_arn")

    if container.cpu > cpu:
        msg = f"container reserves {container.cpu} CPU units but the task only has {cpu}"
        raise fci.errors.GraphValidationError(msg, resource="task-definition", attribute="cpu")

    return builder.add(
        ResourceKind.ECS_TASK_DEFINITION,
        "task-definition",
        {
            "family": builder.physical_name("task"),
            "cpu": str(cpu),
            "network_mode": "awsvpc",
            "requires_compatibilities": ["EC2"],
            "task_role_arn": execution_identity.ref("arn"),
            "execution_role_arn": task_agent_identity.ref("arn"),
            "container_definitions": [container.as_definition()],
        },
        labels={
            "image_repository": container.image.repository.name,
            "image_tag": container.image.tag,
        },
    )


def define_target_group(
    builder: fci.graph.StackBuilder,
    network: fci.network.NetworkSpace,
    port: int = fci.CONTAINER_PORT,
    health_check_path: str = fci.HEALTH_CHECK_PATH,
    protocol: str = "HTTP",
) -> TargetGroup:
    """Declare an IP target group that health-checks tasks on `port`."""
    name = fci.junkdrawer.check_name_length("tg", builder.physical_name("tg"))

    target_group = builder.add(
        ResourceKind.LB_TARGET_GROUP,
        "tg",
        {
            "name": name,
            "port": port,
            "protocol": protocol,
            "target_type": "ip",
            "vpc_id": network.vpc.ref(),
            "deregistration_delay": 30,
            "health_check": {
                "enabled": True,
                "path": health_check_path,
                "protocol": protocol,
                "matcher": "200",
            },
        },
    )

    return TargetGroup(target_group=target_group, port=port)


def define_service_security_group(
    builder: fci.graph.StackBuilder,
    network: fci.network.NetworkSpace,
) -> fci.graph.Resource:
    """
    Security group for the service's task ENIs. It starts with no ingress; the edge adds
    the one rule that lets the load balancer in.
    """
    security_group = builder.add(
        ResourceKind.SECURITY_GROUP,
        "service-sg",
        {
            "description": f"{builder.namespace} service tasks",
            "vpc_id": network.vpc.ref(),
        },
    )
    builder.add(
        ResourceKind.SECURITY_GROUP_EGRESS_RULE,
        "service-sg-egress",
        {
            "security_group_id": security_group.ref(),
            "ip_protocol": "-1",
            "cidr_ipv4": "0.0.0.0/0",
        },
    )
    return security_group


def place_service(
    builder: fci.graph.StackBuilder,
    network: fci.network.NetworkSpace,
    cluster: fci.graph.Resource,
    task: fci.graph.Resource,
    strategies: collections.abc.Sequence[fci.compute.CapacityProviderStrategy],
    target_group: TargetGroup | None = None,
    *,
    security_group: fci.graph.Resource,
    desired_count: int = 1,
    health_check_grace_period: int = 0,
    depends_on: collections.abc.Sequence[fci.graph.Resource] = (),
) -> Service:
    """
    Run `desired_count` copies of `task` on `cluster` in the isolated subnets.

    The cluster is bound to the capacity providers here, not when it is created. With no
    strategies the service falls back to the EC2 launch type and relies on hosts that
    joined the cluster on their own. When `target_group` is given, each task's IP is
    registered with it.

    Hosts in the pool are not protected from scale-in unless configured otherwise, so a
    running task can be stopped with its host. ECS then starts a replacement to get
    back to `desired_count`.
    """
    if desired_count < 0:
        msg = "desired count must not be negative"
        raise fci.errors.GraphValidationError(msg, resource="service", attribute="desired_count")

    if not task.properties.get("container_definitions"):
        msg = "task definition has no containers"
        raise fci.errors.GraphValidationError(msg, resource=task.logical_id, attribute="container_definitions")

    properties: dict[str, typing.Any] = {
        "name": builder.physical_name("service"),
        "cluster": cluster.ref("arn"),
        "task_definition": task.ref("arn"),
        "desired_count": desired_count,
        "network_configuration": {
            "subnets": network.subnet_ids(fci.SubnetType.ISOLATED),
            "security_groups": [security_group.ref()],
            "assign_public_ip": False,
        },
        "deployment_minimum_healthy_percent": 100,
        "deployment_maximum_percent": 200,
    }

    extra_depends_on = list(network.isolated_endpoints) + list(depends_on)

    cluster_capacity_providers = None
    if strategies:
        cluster_capacity_providers = builder.add(
            ResourceKind.ECS_CLUSTER_CAPACITY_PROVIDERS,
            "cluster-capacity-providers",
            {
                "cluster_name": cluster.ref("name"),
                "capacity_providers": [s.provider.ref("name") for s in strategies],
                "default_capacity_provider_strategies": [s.as_args() for s in strategies],
            },
        )
        properties["capacity_provider_strategies"] = [s.as_args() for s in strategies]
        extra_depends_on.append(cluster_capacity_providers)
    else:
        properties["launch_type"] = "EC2"

    if target_group is not None:
        container_name = task.properties["container_definitions"][0]["name"]
        properties["load_balancers"] = [
            {
                "target_group_arn": target_group.target_group.ref("arn"),
                "container_name": container_name,
                "container_port": target_group.port,
            }
        ]
        if health_check_grace_period > 0:
            properties["health_check_grace_period_seconds"] = health_check_grace_period

    service = builder.add(
        ResourceKind.ECS_SERVICE,
        "service",
        properties,
        depends_on=extra_depends_on,
    )

    return Service(
        service=service,
        security_group=security_group,
        cluster_capacity_providers=cluster_capacity_providers,
    )


def validate_services(graph: fci.graph.ResourceGraph) -> None:
    """Registered containers and ports must exist in the task definition the service runs."""
    for service in graph.of_kind(ResourceKind.ECS_SERVICE):
        task_ref = service.properties.get("task_definition")
        if not isinstance(task_ref, fci.graph.Ref):
            continue

        containers = {
            c["name"]: {p["containerPort"] for p in c.get("portMappings", [])}
            for c in graph.get(task_ref.target).properties.get("container_definitions", [])
        }
        for i, lb in enumerate(service.properties.get("load_balancers", [])):
            ports = containers.get(lb["container_name"])
            if ports is None:
                msg = f"container {lb['container_name']!r} is not in the task definition"
                raise fci.errors.GraphValidationError(msg, resource=service.logical_id, attribute=f"load_balancers[{i}]")
            if lb["container_port"] not in ports:
                msg = f"container {lb['container_name']!r} does not expose port {lb['container_port']}"
                raise fci.errors.GraphValidationError(msg, resource=service.logical_id, attribute=f"load_balancers[{i}]")
