from __future__ import annotations

import collections
import dataclasses
import typing

import fci
import fci.errors
import fci.graph
import fci.junkdrawer
import fci.network
import fci.service

if typing.TYPE_CHECKING:
    import collections.abc

ResourceKind = fci.graph.ResourceKind

SUPPORTED_LISTENER_PROTOCOLS = ("HTTP",)
MAX_RULE_PRIORITY = 50000


@dataclasses.dataclass
class Listener:
    listener: fci.graph.Resource
    port: int
    # Routing rules evaluated before the default action.
    rules: list[fci.graph.Resource] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class LoadBalancer:
    load_balancer: fci.graph.Resource
    security_group: fci.graph.Resource
    listeners: list[Listener] = dataclasses.field(default_factory=list)


def create_load_balancer(
    builder: fci.graph.StackBuilder,
    network: fci.network.NetworkSpace,
    subnet_type: fci.SubnetType = fci.SubnetType.PUBLIC,
    *,
    listener_port: int = fci.LISTENER_PORT,
) -> LoadBalancer:
    """
    Declare an internet-facing application load balancer in the public subnets, with a
    security group that accepts `listener_port` from anywhere.
    """
    if subnet_type != fci.SubnetType.PUBLIC:
        msg = "an internet-facing load balancer must be placed in public subnets"
        raise fci.errors.GraphValidationError(msg, resource="alb", attribute="subnets")

    security_group = builder.add(
        ResourceKind.SECURITY_GROUP,
        "alb-sg",
        {
            "description": f"{builder.namespace} load balancer",
            "vpc_id": network.vpc.ref(),
            "ingress": [
                {
                    "from_port": listener_port,
                    "to_port": listener_port,
                    "protocol": "tcp",
                    "cidr_blocks": ["0.0.0.0/0"],
                }
            ],
            "egress": [
                {
                    "from_port": 0,
                    "to_port": 0,
                    "protocol": "-1",
                    "cidr_blocks": [str(network.cidr_block)],
                }
            ],
        },
    )

    load_balancer = builder.add(
        ResourceKind.LOAD_BALANCER,
        "alb",
        {
            "name": fci.junkdrawer.check_name_length("alb", builder.physical_name("alb")),
            "internal": False,
            "load_balancer_type": "application",
            "subnets": network.subnet_ids(subnet_type),
            "security_groups": [security_group.ref()],
        },
    )

    return LoadBalancer(load_balancer=load_balancer, security_group=security_group)


def allow_from_load_balancer(
    builder: fci.graph.StackBuilder,
    lb: LoadBalancer,
    security_group: fci.graph.Resource,
    port: int,
) -> fci.graph.Resource:
    """Open `port` on `security_group` to traffic from the load balancer only."""
    return builder.add(
        ResourceKind.SECURITY_GROUP_INGRESS_RULE,
        f"{security_group.logical_id}-from-{lb.load_balancer.logical_id}",
        {
            "security_group_id": security_group.ref(),
            "referenced_security_group_id": lb.security_group.ref(),
            "ip_protocol": "tcp",
            "from_port": port,
            "to_port": port,
        },
    )


def _forward_action(target_groups: collections.abc.Sequence[fci.service.TargetGroup]) -> dict[str, typing.Any]:
    if len(target_groups) == 1:
        return {"type": "forward", "target_group_arn": target_groups[0].target_group.ref("arn")}

    return {
        "type": "forward",
        "forward": {
            "target_groups": [{"arn": tg.target_group.ref("arn"), "weight": 1} for tg in target_groups],
        },
    }


def add_listener(
    builder: fci.graph.StackBuilder,
    lb: LoadBalancer,
    port: int = fci.LISTENER_PORT,
    protocol: str = "HTTP",
    default_target_groups: collections.abc.Sequence[fci.service.TargetGroup] = (),
) -> Listener:
    """
    Declare a listener that forwards everything it receives to `default_target_groups`.

    Path and host routing is added afterwards with `add_listener_rule`.
    """
    if protocol not in SUPPORTED_LISTENER_PROTOCOLS:
        msg = f"listener protocol {protocol!r} is not supported, use one of {SUPPORTED_LISTENER_PROTOCOLS}"
        raise fci.errors.GraphValidationError(msg, resource="listener", attribute="protocol")

    if not default_target_groups:
        msg = "a listener needs at least one default target group"
        raise fci.errors.GraphValidationError(msg, resource="listener", attribute="default_actions")

    logical_id = "listener" if not lb.listeners else f"listener-{port}"
    if any(existing.port == port for existing in lb.listeners):
        msg = f"port {port} already has a listener"
        raise fci.errors.GraphValidationError(msg, resource=logical_id, attribute="port")

    listener = builder.add(
        ResourceKind.LB_LISTENER,
        logical_id,
        {
            "load_balancer_arn": lb.load_balancer.ref("arn"),
            "port": port,
            "protocol": protocol,
            "default_actions": [_forward_action(default_target_groups)],
        },
    )

    handle = Listener(listener=listener, port=port)
    lb.listeners.append(handle)
    return handle


def add_listener_rule(
    builder: fci.graph.StackBuilder,
    listener: Listener,
    priority: int,
    target_group: fci.service.TargetGroup,
    *,
    path_patterns: collections.abc.Sequence[str] = (),
    host_headers: collections.abc.Sequence[str] = (),
) -> fci.graph.Resource:
    logical_id = f"{listener.listener.logical_id}-rule-{priority}"

    if not 1 <= priority <= MAX_RULE_PRIORITY:
        msg = f"priority must be between 1 and {MAX_RULE_PRIORITY}"
        raise fci.errors.GraphValidationError(msg, resource=logical_id, attribute="priority")

    if any(rule.properties["priority"] == priority for rule in listener.rules):
        msg = f"priority {priority} is already used on this listener"
        raise fci.errors.GraphValidationError(msg, resource=logical_id, attribute="priority")

    conditions = []
    if path_patterns:
        conditions.append({"path_pattern": {"values": list(path_patterns)}})
    if host_headers:
        conditions.append({"host_header": {"values": list(host_headers)}})
    if not conditions:
        msg = "a rule needs a path pattern or a host header"
        raise fci.errors.GraphValidationError(msg, resource=logical_id, attribute="conditions")

    rule = builder.add(
        ResourceKind.LB_LISTENER_RULE,
        logical_id,
        {
            "listener_arn": listener.listener.ref("arn"),
            "priority": priority,
            "actions": [_forward_action([target_group])],
            "conditions": conditions,
        },
    )
    listener.rules.append(rule)
    return rule


def validate_listener_rules(graph: fci.graph.ResourceGraph) -> None:
    priorities: dict[str, set[int]] = collections.defaultdict(set)
    for rule in graph.of_kind(ResourceKind.LB_LISTENER_RULE):
        listener = rule.properties.get("listener_arn")
        key = listener.target if isinstance(listener, fci.graph.Ref) else str(listener)
        priority = rule.properties.get("priority")
        if priority in priorities[key]:
            msg = f"priority {priority} is used twice on {key}"
            raise fci.errors.GraphValidationError(msg, resource=rule.logical_id, attribute="priority")
        priorities[key].add(priority)
