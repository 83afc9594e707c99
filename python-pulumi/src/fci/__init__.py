from __future__ import annotations

import dataclasses
import enum
import ipaddress
import typing

import fci.errors

if typing.TYPE_CHECKING:
    import collections.abc

API_VERSION = "free-courses/v1"
CONFIG_KIND = "FreeCoursesStackConfig"
MANAGED_BY = "fci"

DEFAULT_IMAGE_REPOSITORY = "courses-service"
NON_PRODUCTION_TAG_PREFIX = "non-production"
NON_PRODUCTION_IMAGE_MAX_AGE_DAYS = 7

CONTAINER_NAME = "courses-service"
CONTAINER_PORT = 8080
LISTENER_PORT = 80
HEALTH_CHECK_PATH = "/actuator/health"

DATA_ROLE_ENV_VAR = "DYNAMO_DB_ACCESS_ROLE"
REGION_ENV_VAR = "AWS_REGION"

ECS_TASKS_PRINCIPAL = "ecs-tasks.amazonaws.com"
EC2_PRINCIPAL = "ec2.amazonaws.com"
ECS_OPTIMIZED_AMI_PARAMETER = "/aws/service/ecs/optimized-ami/amazon-linux-2/recommended/image_id"

# Smallest subnet AWS allows, and the VPC block size limits.
MAX_SUBNET_PREFIX = 28
MIN_VPC_PREFIX = 16
MAX_AZ_COUNT = 3

# Interface endpoints without which hosts in isolated subnets cannot pull images,
# emit logs or assume roles.
REQUIRED_ISOLATED_ENDPOINT_SERVICES = ("ecr.dkr", "logs", "sts")

# What EC2 container hosts in isolated subnets additionally need to register with the
# cluster and fetch image manifests and layers.
CONTAINER_HOST_ENDPOINT_SERVICES = ("ecr.api", "ecs", "ecs-agent", "ecs-telemetry", "s3")

GATEWAY_ENDPOINT_SERVICES = frozenset(["dynamodb", "s3"])

VALID_ADDITIONAL_ENDPOINT_SERVICES = frozenset(
    [
        "dynamodb",
        "ec2messages",
        "ecr.api",
        "ecs",
        "ecs-agent",
        "ecs-telemetry",
        "kms",
        "s3",
        "ssm",
        "ssmmessages",
    ]
)


class Environments(enum.StrEnum):
    development = "development"
    staging = "staging"
    production = "production"
    validation = "validation"


class TagKeys(enum.StrEnum):
    FREE_COURSES_ENVIRONMENT = "free-courses/environment"
    FREE_COURSES_MANAGED_BY = "free-courses/managed-by"
    FREE_COURSES_TRUE_NAME = "free-courses/true-name"


class SubnetType(enum.StrEnum):
    PUBLIC = "public"
    ISOLATED = "isolated"


class RetentionPolicy(enum.StrEnum):
    RETAIN = "retain"
    DESTROY = "destroy"


class IdentityRole(enum.StrEnum):
    """The place an IAM role holds in the stack's trust layout."""

    EXECUTION = "execution"
    DATA = "data"
    TASK_AGENT = "task-agent"
    INSTANCE = "instance"


@dataclasses.dataclass(frozen=True)
class VPCEndpointsConfig:
    """Configuration for VPC endpoints beyond the required isolated-subnet set.

    The ecr.dkr, logs and sts interface endpoints are always created and cannot
    be turned off here.

    Examples:
        vpc_endpoints:
          additional_services:
            - ecr.api
            - ecs
            - s3
    """

    additional_services: collections.abc.Sequence[str] = dataclasses.field(default_factory=list)

    def __post_init__(self):
        invalid_services = set(self.additional_services) - VALID_ADDITIONAL_ENDPOINT_SERVICES
        if invalid_services:
            msg = (
                f"Invalid service names in additional_services: {sorted(invalid_services)}. "
                f"Valid services are: {sorted(VALID_ADDITIONAL_ENDPOINT_SERVICES)}"
            )
            raise ValueError(msg)


@dataclasses.dataclass(frozen=True)
class NetworkConfig:
    cidr: str = "10.0.0.0/26"
    az_count: int = 2
    cidr_mask: int = 28
    azs: list[str] = dataclasses.field(default_factory=list)  # If empty, looked up at apply time
    vpc_endpoints: VPCEndpointsConfig = dataclasses.field(default_factory=VPCEndpointsConfig)

    def __post_init__(self):
        if self.azs and len(self.azs) < self.az_count:
            msg = f"azs lists {len(self.azs)} zones but az_count is {self.az_count}"
            raise ValueError(msg)


@dataclasses.dataclass(frozen=True)
class ComputeConfig:
    # Must register more memory with ECS than the service reserves; t2.nano does not.
    instance_type: str = "t3.small"
    min_capacity: int = 1
    max_capacity: int = 2
    # Instances carrying running tasks may be terminated on scale-in unless this is set.
    protect_from_scale_in: bool = False
    container_insights: bool = True

    def __post_init__(self):
        if self.min_capacity < 0 or self.max_capacity < self.min_capacity:
            msg = f"invalid capacity bounds: min={self.min_capacity} max={self.max_capacity}"
            raise ValueError(msg)


def health_check_command(port: int, path: str = HEALTH_CHECK_PATH) -> list[str]:
    return ["CMD-SHELL", f"curl -f http://localhost:{port}{path} || exit 1"]


@dataclasses.dataclass(frozen=True)
class HealthProbeConfig:
    command: list[str] = dataclasses.field(default_factory=lambda: health_check_command(CONTAINER_PORT))
    interval: int = 30
    timeout: int = 3
    retries: int = 5
    start_period: int = 180

    def __post_init__(self):
        """Enforce the bounds ECS accepts, plus a non-zero warm-up period."""
        checks = (
            ("command", len(self.command) > 0, "must not be empty"),
            ("interval", 5 <= self.interval <= 300, "must be between 5 and 300 seconds"),
            ("timeout", 2 <= self.timeout <= 120, "must be between 2 and 120 seconds"),
            ("timeout", self.timeout < self.interval, "must be shorter than the interval"),
            ("retries", 1 <= self.retries <= 10, "must be between 1 and 10"),
            ("start_period", 0 < self.start_period <= 300, "must be between 1 and 300 seconds"),
        )
        for attribute, ok, problem in checks:
            if not ok:
                msg = f"health probe {attribute} {problem}"
                raise fci.errors.GraphValidationError(msg, resource="health_check", attribute=attribute)


@dataclasses.dataclass(frozen=True)
class ServiceConfig:
    image_repository: str = DEFAULT_IMAGE_REPOSITORY
    # The one environment whose stack creates the shared repository; the others look it up.
    image_repository_owner: str = Environments.production.value
    task_cpu: int = 1024
    container_cpu: int = 1024
    memory_reservation_mib: int = 512
    container_port: int = CONTAINER_PORT
    desired_count: int = 1
    log_retention_days: int = 30
    health_probe: HealthProbeConfig = dataclasses.field(default_factory=HealthProbeConfig)

    def __post_init__(self):
        if self.image_repository_owner not in Environments:
            msg = f"image_repository_owner {self.image_repository_owner!r} is not an environment"
            raise ValueError(msg)

    @property
    def container_health_probe(self) -> HealthProbeConfig:
        """The configured probe, with the default command pointed at `container_port`."""
        if list(self.health_probe.command) == health_check_command(CONTAINER_PORT):
            return dataclasses.replace(self.health_probe, command=health_check_command(self.container_port))

        return self.health_probe


@dataclasses.dataclass(frozen=True)
class TableConfig:
    partition_key: str = "id"
    sort_key: str = "sortKey"
    index_name: str = "category-subcategory-index"
    index_partition_key: str = "sortKey"
    index_sort_key: str = "csGsiSk"
    retention: RetentionPolicy = RetentionPolicy.RETAIN
    point_in_time_recovery: bool = True


@dataclasses.dataclass(frozen=True)
class EdgeConfig:
    listener_port: int = LISTENER_PORT
    listener_protocol: str = "HTTP"
    health_check_path: str = HEALTH_CHECK_PATH


@dataclasses.dataclass(frozen=True)
class FeatureFlags:
    """Selects which parts of the stack are built.

    The full stack has every flag on. Turning flags off yields the stripped
    variants: data layer only, or compute without a public entry point.
    """

    with_compute: bool = True
    with_capacity_provider: bool = True
    with_load_balancer: bool = True

    def __post_init__(self):
        if not self.with_compute and (self.with_capacity_provider or self.with_load_balancer):
            msg = "with_capacity_provider and with_load_balancer require with_compute"
            raise ValueError(msg)


@dataclasses.dataclass(frozen=True)
class StackConfig:
    true_name: str
    environment: str
    region: str
    account_id: str = ""
    resource_tags: dict[str, str] = dataclasses.field(default_factory=dict)
    protect_persistent_resources: bool = True
    network: NetworkConfig = dataclasses.field(default_factory=NetworkConfig)
    compute: ComputeConfig = dataclasses.field(default_factory=ComputeConfig)
    service: ServiceConfig = dataclasses.field(default_factory=ServiceConfig)
    table: TableConfig = dataclasses.field(default_factory=TableConfig)
    edge: EdgeConfig = dataclasses.field(default_factory=EdgeConfig)
    features: FeatureFlags = dataclasses.field(default_factory=FeatureFlags)

    @property
    def compound_name(self) -> str:
        return f"{self.true_name}-{self.environment}"

    @property
    def required_tags(self) -> dict[str, str]:
        return self.resource_tags | {
            str(TagKeys.FREE_COURSES_TRUE_NAME): self.true_name,
            str(TagKeys.FREE_COURSES_ENVIRONMENT): self.environment,
            str(TagKeys.FREE_COURSES_MANAGED_BY): MANAGED_BY,
        }


@dataclasses.dataclass
class SubnetCIDRBlocks:
    public: tuple[ipaddress.IPv4Network, ...]
    isolated: tuple[ipaddress.IPv4Network, ...]

    @classmethod
    def from_cidr_block(cls, cidr_block: ipaddress.IPv4Network, az_count: int, cidr_mask: int) -> SubnetCIDRBlocks:
        """
        Carves `az_count` isolated and `az_count` public subnets of exactly `/cidr_mask`
        out of the VPC block, isolated subnets first, in AZ order.

        Raises GraphValidationError rather than handing out a smaller subnet when the
        block is too small for the request.
        """
        if cidr_mask < cidr_block.prefixlen or cidr_mask > MAX_SUBNET_PREFIX:
            msg = f"subnet mask /{cidr_mask} must be between /{cidr_block.prefixlen} and /{MAX_SUBNET_PREFIX}"
            raise fci.errors.GraphValidationError(msg, resource="vpc", attribute="cidr_mask")

        available = 2 ** (cidr_mask - cidr_block.prefixlen)
        wanted = 2 * az_count
        if available < wanted:
            msg = (
                f"{cidr_block} holds {available} subnets of /{cidr_mask} "
                f"but {wanted} are needed for {az_count} availability zones"
            )
            raise fci.errors.GraphValidationError(msg, resource="vpc", attribute="cidr_block")

        subnets = list(cidr_block.subnets(new_prefix=cidr_mask))[:wanted]

        return cls(
            isolated=tuple(subnets[:az_count]),
            public=tuple(subnets[az_count:]),
        )
