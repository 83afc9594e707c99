import base64

import pytest

import fci
import fci.aws_iam
import fci.compute
import fci.errors
import fci.graph
import fci.network

ResourceKind = fci.graph.ResourceKind


def _pool(builder: fci.graph.StackBuilder, **kwargs) -> tuple[fci.network.NetworkSpace, fci.compute.ElasticPool]:
    network = fci.network.define_network_space(builder, "us-east-1", "10.0.0.0/26", 2, 28, container_hosts=True)
    _, profile = fci.aws_iam.define_instance_identity(builder)
    params = {
        "instance_profile": profile,
        "cluster_name": builder.physical_name("cluster"),
    } | kwargs
    pool = fci.compute.create_elastic_pool(
        builder,
        network,
        fci.SubnetType.ISOLATED,
        "t3.small",
        fci.compute.ecs_optimized_image(),
        1,
        2,
        **params,
    )
    return network, pool


def test_create_elastic_pool_reference_shape() -> None:
    builder = fci.graph.StackBuilder("courses-staging")
    network, pool = _pool(builder)
    graph = builder.build()

    asg = graph.get("pool-asg").properties
    assert (asg["min_size"], asg["max_size"], asg["desired_capacity"]) == (1, 2, 1)
    assert asg["protect_from_scale_in"] is False
    assert asg["vpc_zone_identifiers"] == network.subnet_ids(fci.SubnetType.ISOLATED)
    assert {"key": "AmazonECSManaged", "value": "true", "propagate_at_launch": True} in asg["tags"]
    assert set(graph.get("pool-asg").depends_on) == {e.logical_id for e in network.isolated_endpoints}
    assert pool.auto_scaling_group.labels["ignore_changes"] == "desired_capacity"

    fci.network.validate_isolated_endpoints(graph)


def test_launch_template_requires_imdsv2_and_joins_cluster() -> None:
    builder = fci.graph.StackBuilder("courses-staging")
    _, pool = _pool(builder)
    lt = pool.launch_template.properties

    assert lt["image_id"] == "resolve:ssm:/aws/service/ecs/optimized-ami/amazon-linux-2/recommended/image_id"
    assert lt["instance_type"] == "t3.small"
    assert lt["metadata_options"]["http_tokens"] == "required"
    assert lt["iam_instance_profile"] == {"arn": fci.graph.Ref("instance-profile", "arn")}
    assert "ECS_CLUSTER=courses-staging-cluster" in base64.b64decode(lt["user_data"]).decode()


def test_create_elastic_pool_rejects_inverted_bounds() -> None:
    builder = fci.graph.StackBuilder("courses-staging")
    network = fci.network.define_network_space(builder, "us-east-1", "10.0.0.0/26", 2, 28)
    _, profile = fci.aws_iam.define_instance_identity(builder)

    with pytest.raises(fci.errors.GraphValidationError, match="invalid capacity bounds"):
        fci.compute.create_elastic_pool(
            builder,
            network,
            fci.SubnetType.ISOLATED,
            "t2.nano",
            "ami-123",
            3,
            2,
            instance_profile=profile,
            cluster_name="c",
        )


@pytest.mark.parametrize(("protected", "expected"), [(False, "DISABLED"), (True, "ENABLED")])
def test_bind_capacity_provider_termination_protection(protected: bool, expected: str) -> None:
    builder = fci.graph.StackBuilder("courses-staging")
    _, pool = _pool(builder, protect_from_scale_in=protected)

    strategy = fci.compute.bind_capacity_provider(builder, pool)
    provider = strategy.provider.properties["auto_scaling_group_provider"]

    assert provider["auto_scaling_group_arn"] == fci.graph.Ref("pool-asg", "arn")
    assert provider["managed_termination_protection"] == expected
    assert provider["managed_scaling"]["status"] == "ENABLED"
    assert strategy.as_args() == {
        "capacity_provider": fci.graph.Ref("capacity-provider", "name"),
        "weight": 1,
        "base": 0,
    }


def test_bind_capacity_provider_rejects_reserved_prefix() -> None:
    builder = fci.graph.StackBuilder("ecs-staging")
    _, pool = _pool(builder)

    with pytest.raises(fci.errors.GraphValidationError, match="may not start with"):
        fci.compute.bind_capacity_provider(builder, pool)


def test_create_cluster_is_independent_of_the_pool() -> None:
    builder = fci.graph.StackBuilder("courses-staging")
    network = fci.network.define_network_space(builder, "us-east-1", "10.0.0.0/26", 2, 28)
    cluster = fci.compute.create_cluster(builder, network, container_insights=False)

    assert cluster.properties["name"] == "courses-staging-cluster"
    assert cluster.properties["settings"] == [{"name": "containerInsights", "value": "disabled"}]
    assert cluster.dependencies() == set()


def test_check_task_fits() -> None:
    fci.compute.check_task_fits("t3.small", 1024, 512)
    fci.compute.check_task_fits("x9.enormous", 1024, 512)


@pytest.mark.parametrize(
    ("instance_type", "task_cpu", "memory", "match"),
    [
        ("t2.nano", 1024, 512, "t2.nano has 512 MiB, too little for ECS to place a 512 MiB reservation"),
        ("t3.small", 1024, 2048, "t3.small has 2048 MiB"),
        ("t2.micro", 2048, 512, "t2.micro has 1024 CPU units, the task needs 2048"),
    ],
)
def test_check_task_fits_rejects_small_instances(instance_type: str, task_cpu: int, memory: int, match: str) -> None:
    with pytest.raises(fci.errors.GraphValidationError, match=match) as e:
        fci.compute.check_task_fits(instance_type, task_cpu, memory)

    assert e.value.resource == "pool-lt"
    assert e.value.attribute == "instance_type"
