from __future__ import annotations

import dataclasses
import ipaddress
import typing
import warnings

import fci
import fci.errors
import fci.graph
import fci.junkdrawer

if typing.TYPE_CHECKING:
    import collections.abc

ResourceKind = fci.graph.ResourceKind


@dataclasses.dataclass
class NetworkSpace:
    vpc: fci.graph.Resource
    cidr_block: ipaddress.IPv4Network
    subnets: dict[fci.SubnetType, list[fci.graph.Resource]]
    endpoint_security_group: fci.graph.Resource
    endpoints: dict[str, fci.graph.Resource]
    required_services: tuple[str, ...] = fci.REQUIRED_ISOLATED_ENDPOINT_SERVICES

    def select(self, subnet_type: fci.SubnetType) -> list[fci.graph.Resource]:
        return self.subnets[subnet_type]

    def subnet_ids(self, subnet_type: fci.SubnetType) -> list[fci.graph.Ref]:
        return [s.ref() for s in self.subnets[subnet_type]]

    @property
    def isolated_endpoints(self) -> list[fci.graph.Resource]:
        return [self.endpoints[s] for s in self.required_services]


def _endpoint_logical_id(service: str) -> str:
    return f"{service.replace('.', '-')}-endpoint"


def define_network_space(
    builder: fci.graph.StackBuilder,
    region: str,
    cidr: str,
    az_count: int,
    cidr_mask: int,
    azs: collections.abc.Sequence[str] = (),
    endpoints: fci.VPCEndpointsConfig | None = None,
    *,
    container_hosts: bool = False,
) -> NetworkSpace:
    """
    Declare a VPC split into `az_count` pairs of public and isolated subnets.

    Public subnets route to an internet gateway. Isolated subnets have no route out of
    the VPC; they reach ECR, CloudWatch Logs and STS only through interface endpoints
    created here, each open to the whole VPC CIDR on 443.
    With `container_hosts`, the ECS, ECR API and S3 endpoints that EC2 container hosts
    need are required as well.

    :param region: the region used to build endpoint service names
    :param cidr: the CIDR block of the VPC
    :param az_count: how many availability zones to span (1 to 3)
    :param cidr_mask: the prefix length of every subnet
    :param azs: optional explicit zone names, otherwise resolved at apply time
    :param endpoints: extra endpoint services on top of the required ones
    :param container_hosts: whether EC2 container hosts will run in the isolated subnets
    """
    endpoints = endpoints or fci.VPCEndpointsConfig()

    if az_count == 0:
        msg = "Using zero availability zones is not supported"
        raise fci.errors.GraphValidationError(msg, resource="vpc", attribute="az_count")

    if az_count > fci.MAX_AZ_COUNT:
        msg = "Using more than three availability zones is not supported"
        raise fci.errors.GraphValidationError(msg, resource="vpc", attribute="az_count")

    if az_count == 1:
        warnings.warn(
            "Using a single availability zone is not recommended for production workloads",
            stacklevel=2,
        )

    try:
        cidr_block = typing.cast(ipaddress.IPv4Network, ipaddress.ip_network(cidr))
    except ValueError as e:
        raise fci.errors.GraphValidationError(str(e), resource="vpc", attribute="cidr_block") from e

    if not fci.MIN_VPC_PREFIX <= cidr_block.prefixlen <= fci.MAX_SUBNET_PREFIX:
        msg = f"VPC block {cidr_block} must be between /{fci.MIN_VPC_PREFIX} and /{fci.MAX_SUBNET_PREFIX}"
        raise fci.errors.GraphValidationError(msg, resource="vpc", attribute="cidr_block")

    subnet_cidr_blocks = fci.SubnetCIDRBlocks.from_cidr_block(cidr_block, az_count, cidr_mask)

    vpc = builder.add(
        ResourceKind.VPC,
        "vpc",
        {
            "cidr_block": str(cidr_block),
            "enable_dns_hostnames": True,
            "enable_dns_support": True,
        },
    )

    igw = builder.add(ResourceKind.INTERNET_GATEWAY, "igw", {"vpc_id": vpc.ref()})

    subnets: dict[fci.SubnetType, list[fci.graph.Resource]] = {
        fci.SubnetType.ISOLATED: [],
        fci.SubnetType.PUBLIC: [],
    }

    for subnet_type, blocks in (
        (fci.SubnetType.ISOLATED, subnet_cidr_blocks.isolated),
        (fci.SubnetType.PUBLIC, subnet_cidr_blocks.public),
    ):
        for i, block in enumerate(blocks):
            number = i + 1
            properties: dict[str, typing.Any] = {
                "vpc_id": vpc.ref(),
                "cidr_block": str(block),
                "map_public_ip_on_launch": False,
            }
            if azs:
                properties["availability_zone"] = azs[i]

            subnets[subnet_type].append(
                builder.add(
                    ResourceKind.SUBNET,
                    f"{subnet_type}-subnet-az{number}",
                    properties,
                    labels={"subnet_type": str(subnet_type), "az_index": str(i)},
                )
            )

    public_rt = builder.add(ResourceKind.ROUTE_TABLE, "public-rt", {"vpc_id": vpc.ref()})
    builder.add(
        ResourceKind.ROUTE,
        "public-default-route",
        {
            "route_table_id": public_rt.ref(),
            "gateway_id": igw.ref(),
            "destination_cidr_block": "0.0.0.0/0",
        },
    )
    for i, subnet in enumerate(subnets[fci.SubnetType.PUBLIC]):
        builder.add(
            ResourceKind.ROUTE_TABLE_ASSOCIATION,
            f"public-rt-az{i + 1}",
            {"subnet_id": subnet.ref(), "route_table_id": public_rt.ref()},
        )

    # No default route: isolated subnets only reach AWS through endpoints.
    isolated_rts = []
    for i, subnet in enumerate(subnets[fci.SubnetType.ISOLATED]):
        rt = builder.add(ResourceKind.ROUTE_TABLE, f"isolated-rt-az{i + 1}", {"vpc_id": vpc.ref()})
        builder.add(
            ResourceKind.ROUTE_TABLE_ASSOCIATION,
            f"isolated-rt-az{i + 1}-assoc",
            {"subnet_id": subnet.ref(), "route_table_id": rt.ref()},
        )
        isolated_rts.append(rt)

    endpoint_sg = builder.add(
        ResourceKind.SECURITY_GROUP,
        "vpc-endpoint-sg",
        {
            "description": f"{builder.namespace} VPC endpoint",
            "vpc_id": vpc.ref(),
            "ingress": [
                {
                    "from_port": 443,
                    "to_port": 443,
                    "protocol": "tcp",
                    "cidr_blocks": [str(cidr_block)],
                }
            ],
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

    declared: dict[str, fci.graph.Resource] = {}
    required: tuple[str, ...] = fci.REQUIRED_ISOLATED_ENDPOINT_SERVICES
    if container_hosts:
        required += fci.CONTAINER_HOST_ENDPOINT_SERVICES
    services = list(required) + [s for s in endpoints.additional_services if s not in required]
    for service in services:
        properties = {
            "vpc_id": vpc.ref(),
            "service_name": fci.junkdrawer.endpoint_service_name(region, service),
        }
        if service in fci.GATEWAY_ENDPOINT_SERVICES:
            properties |= {
                "vpc_endpoint_type": "Gateway",
                "route_table_ids": [rt.ref() for rt in isolated_rts],
            }
        else:
            properties |= {
                "vpc_endpoint_type": "Interface",
                "subnet_ids": [s.ref() for s in subnets[fci.SubnetType.ISOLATED]],
                "security_group_ids": [endpoint_sg.ref()],
                "private_dns_enabled": True,
            }

        declared[service] = builder.add(
            ResourceKind.VPC_ENDPOINT,
            _endpoint_logical_id(service),
            properties,
            labels={"endpoint_service": service},
        )

    return NetworkSpace(
        vpc=vpc,
        cidr_block=cidr_block,
        subnets=subnets,
        endpoint_security_group=endpoint_sg,
        endpoints=declared,
        required_services=required,
    )


def _ancestors(graph: fci.graph.ResourceGraph, logical_id: str) -> set[str]:
    seen: set[str] = set()
    stack = list(graph.get(logical_id).dependencies())
    while stack:
        current = stack.pop()
        if current in seen or current not in graph:
            continue
        seen.add(current)
        stack.extend(graph.get(current).dependencies())
    return seen


def validate_isolated_endpoints(graph: fci.graph.ResourceGraph) -> None:
    """
    Every isolated subnet must be covered by the ecr.dkr, logs and sts interface
    endpoints, and anything placed into an isolated subnet must depend on them.

    Once an Auto Scaling group of container hosts is in the graph, the ECS, ECR API
    and S3 endpoints are required too. Gateway endpoints cover a subnet through the
    route table associated with it.
    """
    isolated = {s.logical_id for s in graph.labelled(subnet_type=str(fci.SubnetType.ISOLATED))}
    if not isolated:
        return

    required: tuple[str, ...] = fci.REQUIRED_ISOLATED_ENDPOINT_SERVICES
    if graph.of_kind(ResourceKind.AUTOSCALING_GROUP):
        required += fci.CONTAINER_HOST_ENDPOINT_SERVICES

    associated: dict[str, set[str]] = {}
    for assoc in graph.of_kind(ResourceKind.ROUTE_TABLE_ASSOCIATION):
        subnet, rt = assoc.properties.get("subnet_id"), assoc.properties.get("route_table_id")
        if isinstance(subnet, fci.graph.Ref) and isinstance(rt, fci.graph.Ref):
            associated.setdefault(rt.target, set()).add(subnet.target)

    covering: dict[str, dict[str, str]] = {subnet: {} for subnet in isolated}
    for endpoint in graph.of_kind(ResourceKind.VPC_ENDPOINT):
        service = endpoint.labels.get("endpoint_service", "")
        subnets = {ref.target for ref in endpoint.properties.get("subnet_ids", []) if isinstance(ref, fci.graph.Ref)}
        for ref in endpoint.properties.get("route_table_ids", []):
            if isinstance(ref, fci.graph.Ref):
                subnets |= associated.get(ref.target, set())
        for subnet in subnets & isolated:
            covering[subnet][service] = endpoint.logical_id

    for subnet, services in sorted(covering.items()):
        missing = [s for s in required if s not in services]
        if missing:
            msg = f"isolated subnet lacks endpoints for {missing}"
            raise fci.errors.GraphValidationError(msg, resource=subnet, attribute="endpoints")

    for resource in graph:
        if resource.kind in (ResourceKind.VPC_ENDPOINT, ResourceKind.ROUTE_TABLE_ASSOCIATION):
            continue
        placed_in = {ref.target for _, ref in resource.references() if ref.target in isolated}
        if not placed_in:
            continue

        ancestors = _ancestors(graph, resource.logical_id)
        for subnet in sorted(placed_in):
            missing = sorted({covering[subnet][s] for s in required} - ancestors)
            if missing:
                msg = f"placed into {subnet} before its endpoints exist: {missing}"
                raise fci.errors.GraphValidationError(msg, resource=resource.logical_id, attribute="depends_on")
