from __future__ import annotations

import fci
import fci.errors
import fci.graph

ResourceKind = fci.graph.ResourceKind

STRING = "S"


def create_table(
    builder: fci.graph.StackBuilder,
    partition_key_name: str,
    sort_key_name: str,
    retention: fci.RetentionPolicy = fci.RetentionPolicy.RETAIN,
    *,
    point_in_time_recovery: bool = True,
    logical_id: str = "courses-table",
) -> fci.graph.Resource:
    """
    Declare an on-demand table keyed by (partition_key_name, sort_key_name), both strings.

    With RetentionPolicy.RETAIN the table and its items outlive the stack; with DESTROY,
    deleting the stack deletes the data.
    """
    if not partition_key_name or not sort_key_name:
        msg = "both a partition key and a sort key are required"
        raise fci.errors.GraphValidationError(msg, resource=logical_id, attribute="hash_key")

    if partition_key_name == sort_key_name:
        msg = f"partition and sort key are both {partition_key_name!r}"
        raise fci.errors.GraphValidationError(msg, resource=logical_id, attribute="range_key")

    return builder.add(
        ResourceKind.DYNAMODB_TABLE,
        logical_id,
        {
            "name": builder.physical_name(logical_id),
            "billing_mode": "PAY_PER_REQUEST",
            "hash_key": partition_key_name,
            "range_key": sort_key_name,
            "attributes": [
                {"name": partition_key_name, "type": STRING},
                {"name": sort_key_name, "type": STRING},
            ],
            "global_secondary_indexes": [],
            "point_in_time_recovery": {"enabled": point_in_time_recovery},
        },
        retention=retention,
    )


def add_secondary_index(
    builder: fci.graph.StackBuilder,
    table: fci.graph.Resource,
    name: str,
    partition_key_name: str,
    sort_key_name: str,
) -> fci.graph.Resource:
    """Re-project the table under a second (partition, sort) key pair."""
    _ = builder
    properties = table.properties

    if any(gsi["name"] == name for gsi in properties["global_secondary_indexes"]):
        msg = f"index {name!r} already exists"
        raise fci.errors.GraphValidationError(msg, resource=table.logical_id, attribute="global_secondary_indexes")

    _check_index_keys(table.logical_id, properties["hash_key"], name, partition_key_name, sort_key_name)

    known = {a["name"] for a in properties["attributes"]}
    for key in (partition_key_name, sort_key_name):
        if key not in known:
            properties["attributes"].append({"name": key, "type": STRING})
            known.add(key)

    properties["global_secondary_indexes"].append(
        {
            "name": name,
            "hash_key": partition_key_name,
            "range_key": sort_key_name,
            "projection_type": "ALL",
        }
    )

    return table


def _check_index_keys(table_id: str, table_hash_key: str, name: str, hash_key: str, range_key: str) -> None:
    attribute = f"global_secondary_indexes.{name}"
    if not hash_key or not range_key:
        msg = "index requires both a partition key and a sort key"
        raise fci.errors.GraphValidationError(msg, resource=table_id, attribute=attribute)
    if hash_key == range_key:
        msg = f"index partition and sort key are both {hash_key!r}"
        raise fci.errors.GraphValidationError(msg, resource=table_id, attribute=attribute)
    if hash_key == table_hash_key:
        msg = f"index partition key {hash_key!r} collides with the table partition key"
        raise fci.errors.GraphValidationError(msg, resource=table_id, attribute=attribute)


def validate_tables(graph: fci.graph.ResourceGraph) -> None:
    for table in graph.of_kind(ResourceKind.DYNAMODB_TABLE):
        properties = table.properties
        types = {a["name"]: a["type"] for a in properties.get("attributes", [])}

        for key_attr in ("hash_key", "range_key"):
            key = properties.get(key_attr)
            if not key:
                msg = "table must declare both a partition key and a sort key"
                raise fci.errors.GraphValidationError(msg, resource=table.logical_id, attribute=key_attr)
            if types.get(key) != STRING:
                msg = f"key {key!r} must be string-typed"
                raise fci.errors.GraphValidationError(msg, resource=table.logical_id, attribute=key_attr)

        for gsi in properties.get("global_secondary_indexes", []):
            _check_index_keys(table.logical_id, properties["hash_key"], gsi["name"], gsi["hash_key"], gsi["range_key"])
            for key in (gsi["hash_key"], gsi["range_key"]):
                if types.get(key) != STRING:
                    msg = f"index key {key!r} must be string-typed"
                    raise fci.errors.GraphValidationError(
                        msg, resource=table.logical_id, attribute=f"global_secondary_indexes.{gsi['name']}"
                    )
