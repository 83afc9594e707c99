import dataclasses
import json

import pulumi
import pytest

import fci
import fci.errors
import fci.graph
import fci.pulumi_resources.aws_courses_stack


@pytest.fixture(autouse=True)
def _mocks(pulumi_mocks: type[pulumi.runtime.Mocks]) -> None:
    pulumi.runtime.set_mocks(pulumi_mocks(), preview=False)


@pytest.fixture
def owner_config(stack_config: fci.StackConfig) -> fci.StackConfig:
    """The staging config, made owner of the image repository."""
    return dataclasses.replace(stack_config, service=fci.ServiceConfig(image_repository_owner="staging"))


@pulumi.runtime.test
def test_renders_every_resource_in_the_graph(stack_config: fci.StackConfig) -> None:
    stack = fci.pulumi_resources.aws_courses_stack.AWSCoursesStack(stack_config, "1.0.3")

    assert set(stack.resources) == {r.logical_id for r in stack.graph}
    assert stack.config is stack_config
    assert stack.service_version == "1.0.3"


@pulumi.runtime.test
def test_policies_are_rendered_as_json(owner_config: fci.StackConfig) -> None:
    stack = fci.pulumi_resources.aws_courses_stack.AWSCoursesStack(owner_config, "1.0.3")

    def check(args):
        execution_trust, lifecycle = args
        assert json.loads(execution_trust)["Statement"][0]["Principal"] == {"Service": fci.ECS_TASKS_PRINCIPAL}
        assert json.loads(lifecycle)["rules"][0]["selection"]["tagPrefixList"] == [fci.NON_PRODUCTION_TAG_PREFIX]

    return pulumi.Output.all(
        stack.resources["execution-role"].assume_role_policy,
        stack.resources["image-repository-lifecycle"].policy,
    ).apply(check)


@pulumi.runtime.test
def test_looked_up_repository_feeds_the_image(stack_config: fci.StackConfig) -> None:
    stack = fci.pulumi_resources.aws_courses_stack.AWSCoursesStack(stack_config, "1.0.3")

    assert "image-repository-lifecycle" not in stack.resources

    def check(url):
        assert url == "123456789012.dkr.ecr.us-east-1.amazonaws.com/courses-service"

    return stack.resources["image-repository"].repository_url.apply(check)


@pulumi.runtime.test
def test_subnets_get_their_zone(stack_config: fci.StackConfig) -> None:
    stack = fci.pulumi_resources.aws_courses_stack.AWSCoursesStack(stack_config, "1.0.3")
    subnets = [stack.resources[r.logical_id] for r in stack.graph.of_kind(fci.graph.ResourceKind.SUBNET)]

    def check(zones):
        assert set(zones) == {"us-east-1a", "us-east-1b"}

    return pulumi.Output.all(*[s.availability_zone for s in subnets]).apply(check)


@pulumi.runtime.test
def test_retained_table_is_protected(stack_config: fci.StackConfig) -> None:
    stack = fci.pulumi_resources.aws_courses_stack.AWSCoursesStack(stack_config, "1.0.3")

    opts = stack._options(stack.graph.get("courses-table"))

    assert opts.retain_on_delete is True
    assert opts.protect is True


@pulumi.runtime.test
def test_destroyed_table_is_neither_retained_nor_protected(stack_config: fci.StackConfig) -> None:
    config = dataclasses.replace(stack_config, table=fci.TableConfig(retention=fci.RetentionPolicy.DESTROY))
    stack = fci.pulumi_resources.aws_courses_stack.AWSCoursesStack(config, "1.0.3")

    opts = stack._options(stack.graph.get("courses-table"))

    assert opts.retain_on_delete is False
    assert opts.protect is False


@pulumi.runtime.test
def test_retained_table_unprotected_when_protection_is_off(stack_config: fci.StackConfig) -> None:
    config = dataclasses.replace(stack_config, protect_persistent_resources=False)
    stack = fci.pulumi_resources.aws_courses_stack.AWSCoursesStack(config, "1.0.3")

    opts = stack._options(stack.graph.get("courses-table"))

    assert opts.retain_on_delete is True
    assert opts.protect is False


@pulumi.runtime.test
def test_pool_ignores_desired_capacity(stack_config: fci.StackConfig) -> None:
    stack = fci.pulumi_resources.aws_courses_stack.AWSCoursesStack(stack_config, "1.0.3")

    assert stack._options(stack.graph.get("pool-asg")).ignore_changes == ["desired_capacity"]
    assert stack._options(stack.graph.get("courses-table")).ignore_changes is None


@pulumi.runtime.test
def test_data_layer_only_stack(stack_config: fci.StackConfig) -> None:
    config = fci.StackConfig(
        true_name=stack_config.true_name,
        environment=stack_config.environment,
        region=stack_config.region,
        network=stack_config.network,
        features=fci.FeatureFlags(with_compute=False, with_capacity_provider=False, with_load_balancer=False),
    )

    stack = fci.pulumi_resources.aws_courses_stack.AWSCoursesStack(config, "1.0.3")

    assert "courses-table" in stack.resources
    assert "service" not in stack.resources
    assert "cluster" not in stack.resources


@pulumi.runtime.test
def test_invalid_graph_is_not_rendered(stack_config: fci.StackConfig) -> None:
    config = fci.StackConfig(
        true_name=stack_config.true_name,
        environment=stack_config.environment,
        region=stack_config.region,
        network=fci.NetworkConfig(cidr="10.0.0.0/28", azs=["us-east-1a", "us-east-1b"]),
    )

    with pytest.raises(fci.errors.GraphValidationError, match="vpc.cidr_block"):
        fci.pulumi_resources.aws_courses_stack.AWSCoursesStack(config, "1.0.3")
