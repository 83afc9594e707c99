from __future__ import annotations

import fci
import fci.aws_iam
import fci.compute
import fci.data_store
import fci.edge
import fci.graph
import fci.network
import fci.service


def validate_graph(graph: fci.graph.ResourceGraph) -> None:
    """Run every static check. Raises GraphValidationError on the first problem found."""
    graph.validate()
    fci.aws_iam.validate_trust_chain(graph)
    fci.network.validate_isolated_endpoints(graph)
    fci.data_store.validate_tables(graph)
    fci.service.validate_services(graph)
    fci.edge.validate_listener_rules(graph)


def build_stack(config: fci.StackConfig, service_version: str) -> fci.graph.ResourceGraph:
    """
    Compose the whole stack for `config` and return the validated graph.

    The feature flags select how much is built: the data layer alone, compute without a
    capacity provider or a load balancer, or everything.
    """
    builder = fci.graph.StackBuilder(config.compound_name, config.required_tags)
    features = config.features

    network = fci.network.define_network_space(
        builder,
        region=config.region,
        cidr=config.network.cidr,
        az_count=config.network.az_count,
        cidr_mask=config.network.cidr_mask,
        azs=config.network.azs,
        endpoints=config.network.vpc_endpoints,
        container_hosts=features.with_compute,
    )

    execution_identity = fci.aws_iam.define_execution_identity(builder)
    data_identity = fci.aws_iam.define_data_identity(builder, trusted_by=execution_identity)

    table = fci.data_store.create_table(
        builder,
        config.table.partition_key,
        config.table.sort_key,
        config.table.retention,
        point_in_time_recovery=config.table.point_in_time_recovery,
    )
    fci.data_store.add_secondary_index(
        builder,
        table,
        config.table.index_name,
        config.table.index_partition_key,
        config.table.index_sort_key,
    )
    fci.aws_iam.grant_table_access(builder, data_identity, table)

    if features.with_compute:
        _build_compute(builder, config, network, execution_identity, data_identity, service_version)

    graph = builder.build()
    validate_graph(graph)
    return graph


def _build_compute(
    builder: fci.graph.StackBuilder,
    config: fci.StackConfig,
    network: fci.network.NetworkSpace,
    execution_identity: fci.graph.Resource,
    data_identity: fci.graph.Resource,
    service_version: str,
) -> fci.service.Service:
    features = config.features

    if config.service.image_repository_owner == config.environment:
        repository = fci.service.define_image_repository(builder, config.service.image_repository)
    else:
        repository = fci.service.reference_image_repository(builder, config.service.image_repository)
    image = repository.image_reference(service_version)

    task_agent_identity = fci.aws_iam.define_task_agent_identity(builder)
    _, instance_profile = fci.aws_iam.define_instance_identity(builder)

    fci.compute.check_task_fits(
        config.compute.instance_type,
        config.service.task_cpu,
        config.service.memory_reservation_mib,
    )
    cluster = fci.compute.create_cluster(builder, network, container_insights=config.compute.container_insights)
    pool = fci.compute.create_elastic_pool(
        builder,
        network,
        fci.SubnetType.ISOLATED,
        config.compute.instance_type,
        fci.compute.ecs_optimized_image(),
        config.compute.min_capacity,
        config.compute.max_capacity,
        instance_profile=instance_profile,
        cluster_name=cluster.properties["name"],
        protect_from_scale_in=config.compute.protect_from_scale_in,
    )

    strategies = []
    if features.with_capacity_provider:
        strategies.append(fci.compute.bind_capacity_provider(builder, pool))

    log_group = fci.service.define_log_group(builder, config.service.log_retention_days)
    container = fci.service.ContainerSpec(
        image=image,
        health_probe=config.service.container_health_probe,
        logging=fci.service.LoggingTarget(log_group=log_group, region=config.region),
        environment=fci.service.service_environment(data_identity, config.region),
        cpu=config.service.container_cpu,
        memory_reservation_mib=config.service.memory_reservation_mib,
        port_mappings=(fci.service.PortMapping(config.service.container_port),),
    )
    task = fci.service.define_task(
        builder,
        execution_identity,
        config.service.task_cpu,
        container,
        task_agent_identity,
    )

    security_group = fci.service.define_service_security_group(builder, network)

    target_group = None
    depends_on = []
    if features.with_load_balancer:
        target_group = fci.service.define_target_group(
            builder,
            network,
            port=config.service.container_port,
            health_check_path=config.edge.health_check_path,
        )
        lb = fci.edge.create_load_balancer(builder, network, listener_port=config.edge.listener_port)
        fci.edge.allow_from_load_balancer(builder, lb, security_group, config.service.container_port)
        listener = fci.edge.add_listener(
            builder,
            lb,
            port=config.edge.listener_port,
            protocol=config.edge.listener_protocol,
            default_target_groups=[target_group],
        )
        # ECS rejects a target group that is not yet attached to a load balancer.
        depends_on.append(listener.listener)

    return fci.service.place_service(
        builder,
        network,
        cluster,
        task,
        strategies,
        target_group,
        security_group=security_group,
        desired_count=config.service.desired_count,
        health_check_grace_period=config.service.container_health_probe.start_period,
        depends_on=depends_on,
    )
