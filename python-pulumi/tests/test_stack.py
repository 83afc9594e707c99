import dataclasses

import pytest

import fci
import fci.aws_iam
import fci.data_store
import fci.errors
import fci.graph
import fci.plan
import fci.stack

ResourceKind = fci.graph.ResourceKind


def test_build_stack_end_to_end(stack_config: fci.StackConfig) -> None:
    graph = fci.stack.build_stack(stack_config, "1.0.3")

    task = graph.get("task-definition")
    assert task.labels["image_repository"] == "courses-service"
    assert task.labels["image_tag"] == "1.0.3"
    image = task.properties["container_definitions"][0]["image"]
    assert image == fci.graph.Interpolation("{0}:1.0.3", (fci.graph.Ref("image-repository", "repository_url"),))
    assert graph.get(image.refs[0].target).properties["name"] == "courses-service"
    assert graph.get(image.refs[0].target).kind == ResourceKind.ECR_REPOSITORY_LOOKUP
    assert "image-repository-lifecycle" not in graph

    service = graph.get("service")
    (registration,) = service.properties["load_balancers"]
    tg = graph.get(registration["target_group_arn"].target)
    assert tg.properties["port"] == 8080
    assert registration["container_port"] == 8080

    listener = graph.get("listener")
    assert listener.properties["port"] == 80
    assert listener.properties["default_actions"] == [
        {"type": "forward", "target_group_arn": fci.graph.Ref(tg.logical_id, "arn")}
    ]
    assert listener.properties["load_balancer_arn"] == fci.graph.Ref("alb", "arn")
    assert "listener" in service.depends_on


def test_build_stack_namespaces_every_physical_name(stack_config: fci.StackConfig) -> None:
    graph = fci.stack.build_stack(stack_config, "1.0.3")

    for resource in graph:
        assert resource.name.startswith("courses-staging-")
        name = resource.properties.get("name")
        shared = resource.kind in (ResourceKind.ECR_REPOSITORY, ResourceKind.ECR_REPOSITORY_LOOKUP)
        if isinstance(name, str) and not shared:
            assert name.startswith(("courses-staging-", "/courses-staging/"))
        tags = resource.properties.get("tags")
        if isinstance(tags, dict):
            assert tags["free-courses/environment"] == "staging"
        elif isinstance(tags, list):
            assert {"key": "free-courses/environment", "value": "staging", "propagate_at_launch": True} in tags


def test_build_stack_declares_four_identities(stack_config: fci.StackConfig) -> None:
    graph = fci.stack.build_stack(stack_config, "1.0.3")

    identities = sorted(r.labels["identity"] for r in graph.of_kind(ResourceKind.IAM_ROLE))
    assert identities == ["data", "execution", "instance", "task-agent"]

    data_role = graph.get("data-role")
    principal = data_role.properties["assume_role_policy"]["Statement"][0]["Principal"]
    assert principal == {"AWS": fci.graph.Ref("execution-role", "arn")}


def test_build_stack_dependency_order(stack_config: fci.StackConfig) -> None:
    graph = fci.stack.build_stack(stack_config, "1.0.3")
    position = {r.logical_id: i for i, r in enumerate(graph.topological_order())}

    assert position["execution-role"] < position["data-role"] < position["data-role-courses-table-read-write"]
    assert position["courses-table"] < position["data-role-courses-table-read-write"]
    for endpoint in ("ecr-dkr-endpoint", "logs-endpoint", "sts-endpoint", "ecs-agent-endpoint", "s3-endpoint"):
        assert position[endpoint] < position["pool-asg"]
        assert position[endpoint] < position["service"]
    assert position["cluster-capacity-providers"] < position["service"]
    assert position["listener"] < position["service"]


def test_build_stack_data_only_variant(stack_config: fci.StackConfig) -> None:
    config = dataclasses.replace(
        stack_config,
        features=fci.FeatureFlags(with_compute=False, with_capacity_provider=False, with_load_balancer=False),
    )
    graph = fci.stack.build_stack(config, "1.0.3")

    assert "courses-table" in graph
    assert "data-role" in graph
    assert "service" not in graph
    assert "image-repository" not in graph
    assert not graph.of_kind(ResourceKind.LOAD_BALANCER)


def test_build_stack_without_load_balancer_or_capacity_provider(stack_config: fci.StackConfig) -> None:
    config = dataclasses.replace(
        stack_config,
        features=fci.FeatureFlags(with_capacity_provider=False, with_load_balancer=False),
    )
    graph = fci.stack.build_stack(config, "1.0.3")

    service = graph.get("service")
    assert service.properties["launch_type"] == "EC2"
    assert "load_balancers" not in service.properties
    assert "capacity-provider" not in graph
    assert "alb" not in graph
    assert "pool-asg" in graph


def test_stripped_variant_granting_an_undefined_table_is_rejected() -> None:
    builder = fci.graph.StackBuilder("courses-staging")
    execution = fci.aws_iam.define_execution_identity(builder)
    data = fci.aws_iam.define_data_identity(builder, trusted_by=execution)
    never_declared = fci.graph.Resource(ResourceKind.DYNAMODB_TABLE, "courses-table", "courses-table", {})
    fci.aws_iam.grant_table_access(builder, data, never_declared)

    with pytest.raises(fci.errors.GraphValidationError, match="references undefined resource 'courses-table'") as e:
        builder.build()

    assert e.value.resource == "data-role-courses-table-read-write"
    assert e.value.attribute.startswith("policy.Statement[0].Resource")


def test_build_stack_rejects_invalid_version(stack_config: fci.StackConfig) -> None:
    with pytest.raises(fci.errors.GraphValidationError, match="not a valid image tag"):
        fci.stack.build_stack(stack_config, "1.0.3 beta")


def test_rebuilding_is_idempotent(stack_config: fci.StackConfig) -> None:
    first = fci.stack.build_stack(stack_config, "1.0.3")
    second = fci.stack.build_stack(stack_config, "1.0.3")

    assert first.signature() == second.signature()
    assert fci.plan.plan(second, first) == []


def test_new_version_only_updates_the_task_definition(stack_config: fci.StackConfig) -> None:
    first = fci.stack.build_stack(stack_config, "1.0.3")
    second = fci.stack.build_stack(stack_config, "1.0.4")

    assert fci.plan.plan(second, first) == [
        fci.plan.Mutation(fci.plan.MutationAction.UPDATE, "task-definition", ("container_definitions",))
    ]


def test_teardown_removes_everything_and_keeps_the_retained_table(stack_config: fci.StackConfig) -> None:
    graph = fci.stack.build_stack(stack_config, "1.0.3")
    actions = {m.logical_id: m.action for m in fci.plan.teardown(graph)}

    for logical_id in ("pool-asg", "cluster", "service", "alb", "execution-role", "data-role", "instance-role"):
        assert actions[logical_id] == fci.plan.MutationAction.DELETE
    assert actions["task-agent-role"] == fci.plan.MutationAction.DELETE
    assert actions["courses-table"] == fci.plan.MutationAction.RETAIN
    assert "image-repository" not in actions
    assert len(actions) == len(graph) - 1


def test_teardown_destroys_table_data_when_configured(stack_config: fci.StackConfig) -> None:
    config = dataclasses.replace(stack_config, table=fci.TableConfig(retention=fci.RetentionPolicy.DESTROY))
    graph = fci.stack.build_stack(config, "1.0.3")

    actions = {m.logical_id: m.action for m in fci.plan.teardown(graph)}
    assert actions["courses-table"] == fci.plan.MutationAction.DELETE


def test_validate_graph_runs_every_check(stack_config: fci.StackConfig) -> None:
    graph = fci.stack.build_stack(stack_config, "1.0.3")
    graph.get("data-role").properties["assume_role_policy"]["Statement"][0]["Principal"] = {"AWS": "*"}

    with pytest.raises(fci.errors.GraphValidationError, match="sole trusted principal"):
        fci.stack.validate_graph(graph)


def test_owning_environment_declares_the_repository(stack_config: fci.StackConfig) -> None:
    config = dataclasses.replace(stack_config, service=fci.ServiceConfig(image_repository_owner="staging"))
    graph = fci.stack.build_stack(config, "1.0.3")

    repository = graph.get("image-repository")
    assert repository.kind == ResourceKind.ECR_REPOSITORY
    assert repository.properties["name"] == "courses-service"
    assert graph.get("image-repository-lifecycle").properties["repository"] == fci.graph.Ref("image-repository", "name")

    actions = {m.logical_id: m.action for m in fci.plan.teardown(graph)}
    assert actions["image-repository"] == fci.plan.MutationAction.RETAIN
    assert actions["image-repository-lifecycle"] == fci.plan.MutationAction.DELETE


def test_two_environments_do_not_collide(stack_config: fci.StackConfig) -> None:
    staging = fci.stack.build_stack(stack_config, "1.0.3")
    production = fci.stack.build_stack(dataclasses.replace(stack_config, environment="production"), "1.0.3")

    def created_names(graph: fci.graph.ResourceGraph) -> set[str]:
        return {r.properties["name"] for r in graph if not r.is_lookup and isinstance(r.properties.get("name"), str)}

    assert created_names(staging).isdisjoint(created_names(production))
    assert not staging.of_kind(ResourceKind.ECR_REPOSITORY)
    assert [r.properties["name"] for r in production.of_kind(ResourceKind.ECR_REPOSITORY)] == ["courses-service"]
    assert staging.get("image-repository").properties["name"] == "courses-service"


def test_repository_ownership_hand_over(stack_config: fci.StackConfig) -> None:
    borrowing = fci.stack.build_stack(stack_config, "1.0.3")
    owner_config = dataclasses.replace(stack_config, service=fci.ServiceConfig(image_repository_owner="staging"))
    owning = fci.stack.build_stack(owner_config, "1.0.3")

    assert set(fci.plan.plan(owning, borrowing)) == {
        fci.plan.Mutation(fci.plan.MutationAction.CREATE, "image-repository"),
        fci.plan.Mutation(fci.plan.MutationAction.CREATE, "image-repository-lifecycle"),
    }
    assert set(fci.plan.plan(borrowing, owning)) == {
        fci.plan.Mutation(fci.plan.MutationAction.RETAIN, "image-repository"),
        fci.plan.Mutation(fci.plan.MutationAction.DELETE, "image-repository-lifecycle"),
    }


def test_full_stack_declares_the_container_host_endpoints(stack_config: fci.StackConfig) -> None:
    graph = fci.stack.build_stack(stack_config, "1.0.3")

    services = {r.labels["endpoint_service"] for r in graph.of_kind(ResourceKind.VPC_ENDPOINT)}
    assert services >= {"ecr.dkr", "ecr.api", "logs", "sts", "s3", "ecs", "ecs-agent", "ecs-telemetry"}


def test_data_only_variant_skips_the_container_host_endpoints(stack_config: fci.StackConfig) -> None:
    config = dataclasses.replace(
        stack_config,
        features=fci.FeatureFlags(with_compute=False, with_capacity_provider=False, with_load_balancer=False),
    )
    graph = fci.stack.build_stack(config, "1.0.3")

    services = {r.labels["endpoint_service"] for r in graph.of_kind(ResourceKind.VPC_ENDPOINT)}
    assert services == {"ecr.dkr", "logs", "sts"}


def test_health_check_follows_the_container_port(stack_config: fci.StackConfig) -> None:
    config = dataclasses.replace(stack_config, service=fci.ServiceConfig(container_port=9090))
    graph = fci.stack.build_stack(config, "1.0.3")

    (container,) = graph.get("task-definition").properties["container_definitions"]
    assert container["healthCheck"]["command"] == [
        "CMD-SHELL",
        "curl -f http://localhost:9090/actuator/health || exit 1",
    ]
    assert container["portMappings"][0]["containerPort"] == 9090
    assert graph.get("tg").properties["port"] == 9090


def test_instance_type_too_small_for_the_task_is_rejected(stack_config: fci.StackConfig) -> None:
    config = dataclasses.replace(stack_config, compute=fci.ComputeConfig(instance_type="t2.nano"))

    with pytest.raises(fci.errors.GraphValidationError, match="t2.nano has 512 MiB") as e:
        fci.stack.build_stack(config, "1.0.3")

    assert str(e.value).startswith("pool-lt.instance_type: ")
