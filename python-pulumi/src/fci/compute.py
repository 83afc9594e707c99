from __future__ import annotations

import base64
import dataclasses

import fci
import fci.errors
import fci.graph
import fci.network

ResourceKind = fci.graph.ResourceKind

RESERVED_CAPACITY_PROVIDER_PREFIXES = ("aws", "ecs", "fargate")

# (vCPUs, MiB of memory) of the instance types the pool is usually sized with.
INSTANCE_SHAPES = {
    "t2.nano": (1, 512),
    "t2.micro": (1, 1024),
    "t2.small": (1, 2048),
    "t2.medium": (2, 4096),
    "t2.large": (2, 8192),
    "t3.nano": (2, 512),
    "t3.micro": (2, 1024),
    "t3.small": (2, 2048),
    "t3.medium": (2, 4096),
    "t3.large": (2, 8192),
    "m5.large": (2, 8192),
    "m5.xlarge": (4, 16384),
}


@dataclasses.dataclass
class ElasticPool:
    auto_scaling_group: fci.graph.Resource
    launch_template: fci.graph.Resource
    security_group: fci.graph.Resource
    subnet_type: fci.SubnetType
    protect_from_scale_in: bool


@dataclasses.dataclass(frozen=True)
class CapacityProviderStrategy:
    provider: fci.graph.Resource
    weight: int = 1
    base: int = 0

    def as_args(self) -> dict:
        return {
            "capacity_provider": self.provider.ref("name"),
            "weight": self.weight,
            "base": self.base,
        }


def check_task_fits(instance_type: str, task_cpu: int, memory_reservation_mib: int) -> None:
    """
    Reject a pool whose hosts could never place the task.

    ECS registers less memory than the instance has, so the reservation must stay below
    the instance total. Unknown instance types are not checked.
    """
    if instance_type not in INSTANCE_SHAPES:
        return

    vcpus, memory_mib = INSTANCE_SHAPES[instance_type]
    if task_cpu > vcpus * 1024:
        msg = f"{instance_type} has {vcpus * 1024} CPU units, the task needs {task_cpu}"
        raise fci.errors.GraphValidationError(msg, resource="pool-lt", attribute="instance_type")
    if memory_reservation_mib >= memory_mib:
        msg = (
            f"{instance_type} has {memory_mib} MiB, "
            f"too little for ECS to place a {memory_reservation_mib} MiB reservation"
        )
        raise fci.errors.GraphValidationError(msg, resource="pool-lt", attribute="instance_type")


def ecs_optimized_image() -> str:
    return f"resolve:ssm:{fci.ECS_OPTIMIZED_AMI_PARAMETER}"


def _ecs_user_data(cluster_name: str) -> str:
    script = f"#!/bin/bash\necho ECS_CLUSTER={cluster_name} >> /etc/ecs/ecs.config\n"
    return base64.b64encode(script.encode()).decode()


def create_elastic_pool(
    builder: fci.graph.StackBuilder,
    network: fci.network.NetworkSpace,
    subnet_type: fci.SubnetType,
    instance_type: str,
    image: str,
    min_capacity: int,
    max_capacity: int,
    *,
    instance_profile: fci.graph.Resource,
    cluster_name: str,
    protect_from_scale_in: bool = False,
) -> ElasticPool:
    """
    Declare an Auto Scaling group of ECS container hosts.

    The pool is not attached to the cluster here. Hosts register with the cluster named
    `cluster_name` through their ECS agent config, and the service attaches the pool
    through a capacity provider strategy when it is placed.

    Without scale-in protection the group may terminate a host that is running tasks.
    """
    if max_capacity < min_capacity or min_capacity < 0:
        msg = f"invalid capacity bounds min={min_capacity} max={max_capacity}"
        raise fci.errors.GraphValidationError(msg, resource="pool-asg", attribute="max_size")

    security_group = builder.add(
        ResourceKind.SECURITY_GROUP,
        "pool-sg",
        {
            "description": f"{builder.namespace} container hosts",
            "vpc_id": network.vpc.ref(),
            "ingress": [],
            "egress": [
                {
                    "from_port": 0,
                    "to_port": 0,
                    "protocol": "-1",
                    "cidr_blocks": ["0.0.0.0/0"],
                }
            ],
        },
    )

    launch_template = builder.add(
        ResourceKind.LAUNCH_TEMPLATE,
        "pool-lt",
        {
            "name": builder.physical_name("pool-lt"),
            "image_id": image,
            "instance_type": instance_type,
            "iam_instance_profile": {"arn": instance_profile.ref("arn")},
            "metadata_options": {
                "http_endpoint": "enabled",
                "http_tokens": "required",
            },
            "vpc_security_group_ids": [security_group.ref()],
            "user_data": _ecs_user_data(cluster_name),
        },
    )

    depends_on = network.isolated_endpoints if subnet_type == fci.SubnetType.ISOLATED else []

    asg_tags = [{"key": "AmazonECSManaged", "value": "true", "propagate_at_launch": True}] + [
        {"key": k, "value": v, "propagate_at_launch": True}
        for k, v in sorted((builder.tags | {"Name": builder.physical_name("pool")}).items())
    ]

    auto_scaling_group = builder.add(
        ResourceKind.AUTOSCALING_GROUP,
        "pool-asg",
        {
            "name": builder.physical_name("pool-asg"),
            "min_size": min_capacity,
            "max_size": max_capacity,
            "desired_capacity": min_capacity,
            "vpc_zone_identifiers": network.subnet_ids(subnet_type),
            "launch_template": {"id": launch_template.ref(), "version": "$Latest"},
            "protect_from_scale_in": protect_from_scale_in,
            "tags": asg_tags,
        },
        depends_on=depends_on,
        # ECS managed scaling owns the desired count once the pool exists.
        labels={"ignore_changes": "desired_capacity"},
    )

    return ElasticPool(
        auto_scaling_group=auto_scaling_group,
        launch_template=launch_template,
        security_group=security_group,
        subnet_type=subnet_type,
        protect_from_scale_in=protect_from_scale_in,
    )


def bind_capacity_provider(
    builder: fci.graph.StackBuilder,
    pool: ElasticPool,
    weight: int = 1,
) -> CapacityProviderStrategy:
    name = builder.physical_name("capacity-provider")
    if name.lower().startswith(RESERVED_CAPACITY_PROVIDER_PREFIXES):
        msg = f"capacity provider names may not start with {RESERVED_CAPACITY_PROVIDER_PREFIXES}"
        raise fci.errors.GraphValidationError(msg, resource="capacity-provider", attribute="name")

    provider = builder.add(
        ResourceKind.ECS_CAPACITY_PROVIDER,
        "capacity-provider",
        {
            "name": name,
            "auto_scaling_group_provider": {
                "auto_scaling_group_arn": pool.auto_scaling_group.ref("arn"),
                # ECS refuses managed termination protection unless hosts are scale-in protected.
                "managed_termination_protection": "ENABLED" if pool.protect_from_scale_in else "DISABLED",
                "managed_scaling": {
                    "status": "ENABLED",
                    "target_capacity": 100,
                },
            },
        },
    )

    return CapacityProviderStrategy(provider=provider, weight=weight)


def create_cluster(
    builder: fci.graph.StackBuilder,
    network: fci.network.NetworkSpace,
    *,
    container_insights: bool = True,
) -> fci.graph.Resource:
    return builder.add(
        ResourceKind.ECS_CLUSTER,
        "cluster",
        {
            "name": builder.physical_name("cluster"),
            "settings": [
                {
                    "name": "containerInsights",
                    "value": "enabled" if container_insights else "disabled",
                }
            ],
        },
        labels={"vpc": network.vpc.logical_id},
    )
