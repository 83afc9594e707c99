from __future__ import annotations

import json
import typing

import boto3
import botocore.exceptions

import fci.errors
import fci.graph

ResourceKind = fci.graph.ResourceKind

NOT_FOUND_CODES = frozenset(
    [
        "LifecyclePolicyNotFoundException",
        "NoSuchEntity",
        "RepositoryNotFoundException",
        "ResourceNotFoundException",
        "TableNotFoundException",
    ]
)


def session_for(region: str, exe_env: dict[str, str] | None = None) -> boto3.Session:
    return boto3.Session(
        aws_access_key_id=exe_env.get("AWS_ACCESS_KEY_ID") if exe_env else None,
        aws_secret_access_key=exe_env.get("AWS_SECRET_ACCESS_KEY") if exe_env else None,
        aws_session_token=exe_env.get("AWS_SESSION_TOKEN") if exe_env else None,
        region_name=region,
    )


def _call(resource: fci.graph.Resource, operation: str, fn: typing.Callable[..., dict], **kwargs) -> dict | None:
    try:
        return fn(**kwargs)
    except botocore.exceptions.ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        if code in NOT_FOUND_CODES:
            return None
        msg = f"{operation} failed: {e}"
        raise fci.errors.ProviderError(msg, resource=resource.logical_id, attribute=operation) from e


def _read_table(client, resource: fci.graph.Resource) -> dict[str, typing.Any] | None:
    name = resource.properties["name"]
    response = _call(resource, "describe_table", client.describe_table, TableName=name)
    if response is None:
        return None

    table = response["Table"]
    keys = {k["KeyType"]: k["AttributeName"] for k in table.get("KeySchema", [])}
    indexes = []
    for gsi in table.get("GlobalSecondaryIndexes", []):
        gsi_keys = {k["KeyType"]: k["AttributeName"] for k in gsi.get("KeySchema", [])}
        indexes.append(
            {
                "name": gsi["IndexName"],
                "hash_key": gsi_keys.get("HASH"),
                "range_key": gsi_keys.get("RANGE"),
                "projection_type": gsi.get("Projection", {}).get("ProjectionType"),
            }
        )

    state = {
        "billing_mode": table.get("BillingModeSummary", {}).get("BillingMode", "PROVISIONED"),
        "hash_key": keys.get("HASH"),
        "range_key": keys.get("RANGE"),
        "global_secondary_indexes": sorted(indexes, key=lambda i: i["name"]),
    }

    backups = _call(resource, "describe_continuous_backups", client.describe_continuous_backups, TableName=name)
    if backups is not None:
        status = (
            backups["ContinuousBackupsDescription"]
            .get("PointInTimeRecoveryDescription", {})
            .get("PointInTimeRecoveryStatus")
        )
        state["point_in_time_recovery"] = {"enabled": status == "ENABLED"}

    return state


def _read_role(client, resource: fci.graph.Resource) -> dict[str, typing.Any] | None:
    response = _call(resource, "get_role", client.get_role, RoleName=resource.properties["name"])
    if response is None:
        return None

    document = response["Role"]["AssumeRolePolicyDocument"]
    # boto3 normally decodes the document already.
    if isinstance(document, str):
        document = json.loads(document)

    return {"assume_role_policy": document}


def _read_lifecycle_policy(client, resource: fci.graph.Resource, repository_name: str) -> dict[str, typing.Any] | None:
    response = _call(
        resource,
        "get_lifecycle_policy",
        client.get_lifecycle_policy,
        repositoryName=repository_name,
    )
    if response is None:
        return None

    return {"policy": json.loads(response["lifecyclePolicyText"])}


def fetch_live_state(graph: fci.graph.ResourceGraph, session: boto3.Session) -> dict[str, dict[str, typing.Any]]:
    """
    Read back the attributes of tables, roles and image lifecycle policies that drift
    detection compares. Resources that do not exist in the account are left out.
    """
    live: dict[str, dict[str, typing.Any]] = {}

    dynamodb = session.client("dynamodb")
    for table in graph.of_kind(ResourceKind.DYNAMODB_TABLE):
        state = _read_table(dynamodb, table)
        if state is not None:
            live[table.logical_id] = state

    iam = session.client("iam")
    for role in graph.of_kind(ResourceKind.IAM_ROLE):
        state = _read_role(iam, role)
        if state is not None:
            live[role.logical_id] = state

    ecr = session.client("ecr")
    for policy in graph.of_kind(ResourceKind.ECR_LIFECYCLE_POLICY):
        repository = policy.properties["repository"]
        if not isinstance(repository, fci.graph.Ref):
            continue
        state = _read_lifecycle_policy(ecr, policy, graph.get(repository.target).properties["name"])
        if state is not None:
            live[policy.logical_id] = state

    return live
