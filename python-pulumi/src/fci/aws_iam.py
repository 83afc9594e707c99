from __future__ import annotations

import typing

import fci
import fci.errors
import fci.graph

ResourceKind = fci.graph.ResourceKind

TASK_EXECUTION_MANAGED_POLICY = "arn:aws:iam::aws:policy/service-role/AmazonECSTaskExecutionRolePolicy"
ECS_INSTANCE_MANAGED_POLICY = "arn:aws:iam::aws:policy/service-role/AmazonEC2ContainerServiceforEC2Role"

TABLE_READ_WRITE_ACTIONS = [
    "dynamodb:BatchGetItem",
    "dynamodb:BatchWriteItem",
    "dynamodb:ConditionCheckItem",
    "dynamodb:DeleteItem",
    "dynamodb:DescribeTable",
    "dynamodb:GetItem",
    "dynamodb:GetRecords",
    "dynamodb:GetShardIterator",
    "dynamodb:PutItem",
    "dynamodb:Query",
    "dynamodb:Scan",
    "dynamodb:UpdateItem",
]


def build_service_trust_policy(service_principal: str) -> dict[str, typing.Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Action": "sts:AssumeRole",
                "Effect": "Allow",
                "Principal": {"Service": service_principal},
            }
        ],
    }


def build_role_trust_policy(role_arn: fci.graph.Ref | str) -> dict[str, typing.Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Action": "sts:AssumeRole",
                "Effect": "Allow",
                "Principal": {"AWS": role_arn},
            }
        ],
    }


def build_assume_role_policy(role_arn: fci.graph.Ref | str) -> dict[str, typing.Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Action": "sts:AssumeRole",
                "Effect": "Allow",
                "Resource": role_arn,
            }
        ],
    }


def build_table_read_write_policy(table_arn: fci.graph.Ref) -> dict[str, typing.Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Action": TABLE_READ_WRITE_ACTIONS,
                "Effect": "Allow",
                "Resource": [
                    table_arn,
                    fci.graph.Interpolation("{0}/index/*", (table_arn,)),
                ],
            }
        ],
    }


def define_execution_identity(
    builder: fci.graph.StackBuilder,
    trusted_principal: str = fci.ECS_TASKS_PRINCIPAL,
) -> fci.graph.Resource:
    """The role the service's tasks run as. It holds no data permissions of its own."""
    return builder.add(
        ResourceKind.IAM_ROLE,
        "execution-role",
        {
            "name": builder.physical_name("service-execution-role"),
            "assume_role_policy": build_service_trust_policy(trusted_principal),
        },
        labels={"identity": str(fci.IdentityRole.EXECUTION)},
    )


def define_data_identity(
    builder: fci.graph.StackBuilder,
    trusted_by: fci.graph.Resource,
) -> fci.graph.Resource:
    """
    The only role that may touch the table. Its trust policy names `trusted_by` as the sole
    principal, and `trusted_by` is separately granted sts:AssumeRole on it.
    """
    if trusted_by.labels.get("identity") != fci.IdentityRole.EXECUTION:
        msg = "the data identity may only be trusted by the execution identity"
        raise fci.errors.GraphValidationError(msg, resource="data-role", attribute="assume_role_policy")

    data_role = builder.add(
        ResourceKind.IAM_ROLE,
        "data-role",
        {
            "name": builder.physical_name("courses-table-access-role"),
            "assume_role_policy": build_role_trust_policy(trusted_by.ref("arn")),
        },
        labels={"identity": str(fci.IdentityRole.DATA)},
    )

    builder.add(
        ResourceKind.IAM_ROLE_POLICY,
        f"{trusted_by.logical_id}-assume-{data_role.logical_id}",
        {
            "name": builder.physical_name("assume-courses-table-access-role"),
            "role": trusted_by.ref("name"),
            "policy": build_assume_role_policy(data_role.ref("arn")),
        },
        labels={"grant": "assume-role"},
    )

    return data_role


def grant_table_access(
    builder: fci.graph.StackBuilder,
    identity: fci.graph.Resource,
    table: fci.graph.Resource,
) -> fci.graph.Resource:
    if identity.labels.get("identity") != fci.IdentityRole.DATA:
        msg = "table permissions may only be granted to the data identity"
        raise fci.errors.GraphValidationError(msg, resource=identity.logical_id, attribute="policy")

    return builder.add(
        ResourceKind.IAM_ROLE_POLICY,
        f"{identity.logical_id}-{table.logical_id}-read-write",
        {
            "name": builder.physical_name(f"{table.logical_id}-read-write"),
            "role": identity.ref("name"),
            "policy": build_table_read_write_policy(table.ref("arn")),
        },
        labels={"grant": "table"},
    )


def define_task_agent_identity(builder: fci.graph.StackBuilder) -> fci.graph.Resource:
    """The role the ECS agent uses to pull the image and ship logs on the task's behalf."""
    role = builder.add(
        ResourceKind.IAM_ROLE,
        "task-agent-role",
        {
            "name": builder.physical_name("task-agent-role"),
            "assume_role_policy": build_service_trust_policy(fci.ECS_TASKS_PRINCIPAL),
        },
        labels={"identity": str(fci.IdentityRole.TASK_AGENT)},
    )
    builder.add(
        ResourceKind.IAM_ROLE_POLICY_ATTACHMENT,
        "task-agent-role-managed-policy",
        {"role": role.ref("name"), "policy_arn": TASK_EXECUTION_MANAGED_POLICY},
    )
    return role


def define_instance_identity(builder: fci.graph.StackBuilder) -> tuple[fci.graph.Resource, fci.graph.Resource]:
    """The host role for pool instances, and the instance profile wrapping it."""
    role = builder.add(
        ResourceKind.IAM_ROLE,
        "instance-role",
        {
            "name": builder.physical_name("instance-role"),
            "assume_role_policy": build_service_trust_policy(fci.EC2_PRINCIPAL),
        },
        labels={"identity": str(fci.IdentityRole.INSTANCE)},
    )
    builder.add(
        ResourceKind.IAM_ROLE_POLICY_ATTACHMENT,
        "instance-role-managed-policy",
        {"role": role.ref("name"), "policy_arn": ECS_INSTANCE_MANAGED_POLICY},
    )
    profile = builder.add(
        ResourceKind.IAM_INSTANCE_PROFILE,
        "instance-profile",
        {"name": builder.physical_name("instance-profile"), "role": role.ref("name")},
    )
    return role, profile


def _statements(policy: dict[str, typing.Any]) -> list[dict[str, typing.Any]]:
    statements = policy.get("Statement", [])
    if isinstance(statements, dict):
        return [statements]
    return list(statements)


def _as_list(value: typing.Any) -> list[typing.Any]:
    if value is None:
        return []
    if isinstance(value, list | tuple):
        return list(value)
    return [value]


def validate_trust_chain(graph: fci.graph.ResourceGraph) -> None:
    """
    The data identity must be assumable only by an execution identity, which must hold an
    explicit grant to do so, and no role other than the data identity may carry table
    permissions.
    """
    roles = {r.logical_id: r for r in graph.of_kind(ResourceKind.IAM_ROLE)}
    tables = {t.logical_id for t in graph.of_kind(ResourceKind.DYNAMODB_TABLE)}
    role_policies = graph.of_kind(ResourceKind.IAM_ROLE_POLICY)

    for role in roles.values():
        if role.labels.get("identity") != fci.IdentityRole.DATA:
            continue

        statements = _statements(role.properties.get("assume_role_policy", {}))
        if len(statements) != 1:
            msg = f"trust policy must have exactly one statement, found {len(statements)}"
            raise fci.errors.GraphValidationError(msg, resource=role.logical_id, attribute="assume_role_policy")

        principal = statements[0].get("Principal", {})
        trusted = principal.get("AWS") if isinstance(principal, dict) else principal
        if (
            not isinstance(principal, dict)
            or set(principal.keys()) != {"AWS"}
            or not isinstance(trusted, fci.graph.Ref)
            or trusted.attribute != "arn"
            or trusted.target not in roles
            or roles[trusted.target].labels.get("identity") != fci.IdentityRole.EXECUTION
        ):
            msg = f"sole trusted principal must be the execution identity, found {principal!r}"
            raise fci.errors.GraphValidationError(
                msg, resource=role.logical_id, attribute="assume_role_policy.Statement[0].Principal"
            )

        granted = False
        for policy in role_policies:
            role_ref = policy.properties.get("role")
            if not isinstance(role_ref, fci.graph.Ref) or role_ref.target != trusted.target:
                continue
            for statement in _statements(policy.properties.get("policy", {})):
                if "sts:AssumeRole" in _as_list(statement.get("Action")) and role.ref("arn") in _as_list(
                    statement.get("Resource")
                ):
                    granted = True
        if not granted:
            msg = f"{trusted.target} is trusted but holds no explicit sts:AssumeRole grant"
            raise fci.errors.GraphValidationError(msg, resource=role.logical_id, attribute="assume_role_policy")

    for policy in role_policies:
        table_refs = []
        dynamodb = False
        for statement in _statements(policy.properties.get("policy", {})):
            if any(str(a).startswith("dynamodb:") for a in _as_list(statement.get("Action"))):
                dynamodb = True
                for resource in _as_list(statement.get("Resource")):
                    if isinstance(resource, fci.graph.Ref):
                        table_refs.append(resource)
        if not dynamodb:
            continue

        role_ref = policy.properties.get("role")
        if (
            not isinstance(role_ref, fci.graph.Ref)
            or role_ref.target not in roles
            or roles[role_ref.target].labels.get("identity") != fci.IdentityRole.DATA
        ):
            msg = "table permissions may only be attached to the data identity"
            raise fci.errors.GraphValidationError(msg, resource=policy.logical_id, attribute="role")

        for ref in table_refs:
            if ref.target not in tables:
                msg = f"grant targets {ref.target!r}, which is not a table in this stack"
                raise fci.errors.GraphValidationError(msg, resource=policy.logical_id, attribute="policy")

    for attachment in graph.of_kind(ResourceKind.IAM_ROLE_POLICY_ATTACHMENT):
        if "dynamodb" in str(attachment.properties.get("policy_arn", "")).lower():
            msg = "managed DynamoDB policies bypass the data identity"
            raise fci.errors.GraphValidationError(msg, resource=attachment.logical_id, attribute="policy_arn")
