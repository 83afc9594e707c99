"""Desired-state resource graph.

Resources are plain records. Every factory function receives the StackBuilder
explicitly and returns handles to what it declared; nothing is registered
implicitly. References between resources are Ref values embedded anywhere in a
resource's properties, so the dependency edges are always derivable from the
data itself.
"""

from __future__ import annotations

import collections
import copy
import dataclasses
import enum
import typing

import fci
import fci.errors
import fci.junkdrawer


class ResourceKind(enum.StrEnum):
    VPC = "aws:ec2/vpc:Vpc"
    INTERNET_GATEWAY = "aws:ec2/internetGateway:InternetGateway"
    SUBNET = "aws:ec2/subnet:Subnet"
    ROUTE_TABLE = "aws:ec2/routeTable:RouteTable"
    ROUTE = "aws:ec2/route:Route"
    ROUTE_TABLE_ASSOCIATION = "aws:ec2/routeTableAssociation:RouteTableAssociation"
    SECURITY_GROUP = "aws:ec2/securityGroup:SecurityGroup"
    SECURITY_GROUP_INGRESS_RULE = "aws:vpc/securityGroupIngressRule:SecurityGroupIngressRule"
    SECURITY_GROUP_EGRESS_RULE = "aws:vpc/securityGroupEgressRule:SecurityGroupEgressRule"
    VPC_ENDPOINT = "aws:ec2/vpcEndpoint:VpcEndpoint"
    IAM_ROLE = "aws:iam/role:Role"
    IAM_ROLE_POLICY = "aws:iam/rolePolicy:RolePolicy"
    IAM_ROLE_POLICY_ATTACHMENT = "aws:iam/rolePolicyAttachment:RolePolicyAttachment"
    IAM_INSTANCE_PROFILE = "aws:iam/instanceProfile:InstanceProfile"
    DYNAMODB_TABLE = "aws:dynamodb/table:Table"
    ECR_REPOSITORY = "aws:ecr/repository:Repository"
    ECR_LIFECYCLE_POLICY = "aws:ecr/lifecyclePolicy:LifecyclePolicy"
    LOG_GROUP = "aws:cloudwatch/logGroup:LogGroup"
    LAUNCH_TEMPLATE = "aws:ec2/launchTemplate:LaunchTemplate"
    AUTOSCALING_GROUP = "aws:autoscaling/group:Group"
    ECS_CAPACITY_PROVIDER = "aws:ecs/capacityProvider:CapacityProvider"
    ECS_CLUSTER = "aws:ecs/cluster:Cluster"
    ECS_CLUSTER_CAPACITY_PROVIDERS = "aws:ecs/clusterCapacityProviders:ClusterCapacityProviders"
    ECS_TASK_DEFINITION = "aws:ecs/taskDefinition:TaskDefinition"
    ECS_SERVICE = "aws:ecs/service:Service"
    LB_TARGET_GROUP = "aws:lb/targetGroup:TargetGroup"
    LOAD_BALANCER = "aws:lb/loadBalancer:LoadBalancer"
    LB_LISTENER = "aws:lb/listener:Listener"
    LB_LISTENER_RULE = "aws:lb/listenerRule:ListenerRule"
    # Lookups read an existing resource owned by another stack; they are never created.
    ECR_REPOSITORY_LOOKUP = "aws:ecr/getRepository:getRepository"


# Kinds whose provider resource accepts a plain `tags` map.
TAGGABLE_KINDS = frozenset(
    [
        ResourceKind.VPC,
        ResourceKind.INTERNET_GATEWAY,
        ResourceKind.SUBNET,
        ResourceKind.ROUTE_TABLE,
        ResourceKind.SECURITY_GROUP,
        ResourceKind.VPC_ENDPOINT,
        ResourceKind.IAM_ROLE,
        ResourceKind.IAM_INSTANCE_PROFILE,
        ResourceKind.DYNAMODB_TABLE,
        ResourceKind.ECR_REPOSITORY,
        ResourceKind.LOG_GROUP,
        ResourceKind.LAUNCH_TEMPLATE,
        ResourceKind.ECS_CAPACITY_PROVIDER,
        ResourceKind.ECS_CLUSTER,
        ResourceKind.ECS_TASK_DEFINITION,
        ResourceKind.ECS_SERVICE,
        ResourceKind.LB_TARGET_GROUP,
        ResourceKind.LOAD_BALANCER,
        ResourceKind.LB_LISTENER,
        ResourceKind.LB_LISTENER_RULE,
    ]
)


LOOKUP_KINDS = frozenset([ResourceKind.ECR_REPOSITORY_LOOKUP])


@dataclasses.dataclass(frozen=True)
class Ref:
    target: str
    attribute: str = "id"

    def __str__(self) -> str:
        return f"{self.target}.{self.attribute}"


@dataclasses.dataclass(frozen=True)
class Interpolation:
    """A string built with str.format from the resolved values of refs."""

    template: str
    refs: tuple[Ref, ...]


@dataclasses.dataclass
class Resource:
    kind: ResourceKind
    logical_id: str
    name: str
    properties: dict[str, typing.Any]
    depends_on: tuple[str, ...] = ()
    retention: fci.RetentionPolicy = fci.RetentionPolicy.DESTROY
    # Annotations read by validators and renderers; never sent to the provider.
    labels: dict[str, str] = dataclasses.field(default_factory=dict)

    def ref(self, attribute: str = "id") -> Ref:
        return Ref(self.logical_id, attribute)

    @property
    def is_lookup(self) -> bool:
        return self.kind in LOOKUP_KINDS

    def references(self) -> list[tuple[str, Ref]]:
        """Every Ref in the properties, paired with the property path holding it."""
        found: list[tuple[str, Ref]] = []
        _walk_refs(self.properties, "", found)
        return found

    def dependencies(self) -> set[str]:
        return {ref.target for _, ref in self.references()} | set(self.depends_on)


def _walk_refs(value: typing.Any, path: str, found: list[tuple[str, Ref]]) -> None:
    if isinstance(value, Ref):
        found.append((path, value))
    elif isinstance(value, Interpolation):
        for i, ref in enumerate(value.refs):
            found.append((f"{path}[{i}]", ref))
    elif isinstance(value, dict):
        for k, v in value.items():
            _walk_refs(v, f"{path}.{k}" if path else str(k), found)
    elif isinstance(value, list | tuple):
        for i, v in enumerate(value):
            _walk_refs(v, f"{path}[{i}]", found)


def encode_value(value: typing.Any) -> typing.Any:
    if isinstance(value, Ref):
        return {"$ref": str(value)}
    if isinstance(value, Interpolation):
        return {"$format": value.template, "args": [str(r) for r in value.refs]}
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, dict):
        return {str(k): encode_value(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [encode_value(v) for v in value]
    return value


def _parse_ref(s: str) -> Ref:
    target, _, attribute = s.rpartition(".")
    return Ref(target, attribute)


def decode_value(value: typing.Any) -> typing.Any:
    if isinstance(value, dict):
        if set(value.keys()) == {"$ref"}:
            return _parse_ref(value["$ref"])
        if set(value.keys()) == {"$format", "args"}:
            return Interpolation(value["$format"], tuple(_parse_ref(a) for a in value["args"]))
        return {k: decode_value(v) for k, v in value.items()}
    if isinstance(value, list):
        return [decode_value(v) for v in value]
    return value


class ResourceGraph:
    """An immutable, validated set of resources."""

    def __init__(self, namespace: str, resources: typing.Iterable[Resource]):
        self.namespace = namespace
        self._resources: dict[str, Resource] = {}
        for resource in resources:
            if resource.logical_id in self._resources:
                msg = "duplicate logical id"
                raise fci.errors.GraphValidationError(msg, resource=resource.logical_id, attribute="logical_id")
            self._resources[resource.logical_id] = copy.deepcopy(resource)

    def __contains__(self, logical_id: str) -> bool:
        return logical_id in self._resources

    def __iter__(self) -> typing.Iterator[Resource]:
        return iter(self._resources.values())

    def __len__(self) -> int:
        return len(self._resources)

    def get(self, logical_id: str) -> Resource:
        if logical_id not in self._resources:
            msg = f"no resource named {logical_id!r} in the graph"
            raise fci.errors.GraphValidationError(msg, resource=logical_id)

        return self._resources[logical_id]

    def of_kind(self, kind: ResourceKind) -> list[Resource]:
        return [r for r in self._resources.values() if r.kind == kind]

    def labelled(self, **labels: str) -> list[Resource]:
        return [r for r in self._resources.values() if all(r.labels.get(k) == v for k, v in labels.items())]

    def validate(self) -> None:
        """Reject dangling references and dependency cycles."""
        for resource in self._resources.values():
            for path, ref in resource.references():
                if ref.target not in self._resources:
                    msg = f"references undefined resource {ref.target!r}"
                    raise fci.errors.GraphValidationError(msg, resource=resource.logical_id, attribute=path)
            for dep in resource.depends_on:
                if dep not in self._resources:
                    msg = f"depends on undefined resource {dep!r}"
                    raise fci.errors.GraphValidationError(msg, resource=resource.logical_id, attribute="depends_on")

        self.topological_order()

    def topological_order(self) -> list[Resource]:
        """Dependencies first; ties broken by declaration order."""
        indegree: dict[str, int] = dict.fromkeys(self._resources, 0)
        dependents: dict[str, list[str]] = collections.defaultdict(list)

        for resource in self._resources.values():
            for dep in sorted(resource.dependencies()):
                if dep not in self._resources:
                    continue
                indegree[resource.logical_id] += 1
                dependents[dep].append(resource.logical_id)

        position = {logical_id: i for i, logical_id in enumerate(self._resources)}
        ready = collections.deque(sorted((k for k, v in indegree.items() if v == 0), key=position.__getitem__))
        ordered: list[Resource] = []

        while ready:
            logical_id = ready.popleft()
            ordered.append(self._resources[logical_id])
            released = []
            for dependent in dependents[logical_id]:
                indegree[dependent] -= 1
                if indegree[dependent] == 0:
                    released.append(dependent)
            ready.extend(sorted(released, key=position.__getitem__))

        if len(ordered) != len(self._resources):
            stuck = sorted(k for k, v in indegree.items() if v > 0)
            msg = f"dependency cycle among {stuck}"
            raise fci.errors.GraphValidationError(msg, resource=stuck[0], attribute="depends_on")

        return ordered

    def dependents_of(self, logical_id: str) -> list[Resource]:
        return [r for r in self._resources.values() if logical_id in r.dependencies()]

    def to_dict(self) -> dict[str, typing.Any]:
        return {
            "namespace": self.namespace,
            "resources": [
                {
                    "kind": r.kind.value,
                    "logical_id": r.logical_id,
                    "name": r.name,
                    "properties": encode_value(r.properties),
                    "depends_on": list(r.depends_on),
                    "retention": r.retention.value,
                    "labels": dict(r.labels),
                }
                for r in self._resources.values()
            ],
        }

    @classmethod
    def from_dict(cls, d: dict[str, typing.Any]) -> ResourceGraph:
        return cls(
            d["namespace"],
            [
                Resource(
                    kind=ResourceKind(r["kind"]),
                    logical_id=r["logical_id"],
                    name=r["name"],
                    properties=decode_value(r["properties"]),
                    depends_on=tuple(r.get("depends_on", [])),
                    retention=fci.RetentionPolicy(r.get("retention", fci.RetentionPolicy.DESTROY)),
                    labels=dict(r.get("labels", {})),
                )
                for r in d["resources"]
            ],
        )

    def signature(self) -> str:
        return fci.junkdrawer.json_signature(self.to_dict())


class StackBuilder:
    """Collects resource declarations for one namespaced stack."""

    def __init__(self, namespace: str, tags: dict[str, str] | None = None):
        self.namespace = namespace
        self.tags = tags or {}
        self.resources: dict[str, Resource] = {}

    def physical_name(self, suffix: str) -> str:
        return f"{self.namespace}-{suffix}"

    def add(
        self,
        kind: ResourceKind,
        logical_id: str,
        properties: dict[str, typing.Any],
        *,
        depends_on: typing.Iterable[str | Resource] = (),
        retention: fci.RetentionPolicy = fci.RetentionPolicy.DESTROY,
        labels: dict[str, str] | None = None,
    ) -> Resource:
        if logical_id in self.resources:
            msg = "a resource with this logical id was already declared"
            raise fci.errors.GraphValidationError(msg, resource=logical_id, attribute="logical_id")

        properties = dict(properties)
        if kind in TAGGABLE_KINDS:
            properties["tags"] = self.tags | properties.get("tags", {}) | {"Name": self.physical_name(logical_id)}

        resource = Resource(
            kind=kind,
            logical_id=logical_id,
            name=self.physical_name(logical_id),
            properties=properties,
            depends_on=tuple(d.logical_id if isinstance(d, Resource) else d for d in depends_on),
            retention=retention,
            labels=labels or {},
        )
        self.resources[logical_id] = resource

        return resource

    def get(self, logical_id: str) -> Resource:
        if logical_id not in self.resources:
            msg = f"no resource named {logical_id!r} has been declared"
            raise fci.errors.GraphValidationError(msg, resource=logical_id)

        return self.resources[logical_id]

    def build(self) -> ResourceGraph:
        graph = ResourceGraph(self.namespace, self.resources.values())
        graph.validate()
        return graph
