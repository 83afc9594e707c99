from __future__ import annotations

import dataclasses
import enum
import typing

import fci
import fci.errors
import fci.graph


class MutationAction(enum.StrEnum):
    CREATE = "create"
    UPDATE = "update"
    REPLACE = "replace"
    DELETE = "delete"
    # The resource leaves the stack but is kept in the account.
    RETAIN = "retain"


@dataclasses.dataclass(frozen=True)
class Mutation:
    action: MutationAction
    logical_id: str
    attributes: tuple[str, ...] = ()

    def __str__(self) -> str:
        if self.attributes:
            return f"{self.action} {self.logical_id} ({', '.join(self.attributes)})"
        return f"{self.action} {self.logical_id}"


@dataclasses.dataclass(frozen=True)
class Drift:
    resource: str
    attribute: str
    desired: typing.Any
    live: typing.Any


def _removal(resource: fci.graph.Resource) -> Mutation:
    if resource.retention == fci.RetentionPolicy.RETAIN:
        return Mutation(MutationAction.RETAIN, resource.logical_id)
    return Mutation(MutationAction.DELETE, resource.logical_id)


def _changed_attributes(desired: fci.graph.Resource, current: fci.graph.Resource) -> tuple[str, ...]:
    wanted = fci.graph.encode_value(desired.properties)
    existing = fci.graph.encode_value(current.properties)
    return tuple(sorted(k for k in wanted.keys() | existing.keys() if wanted.get(k) != existing.get(k)))


def plan(desired: fci.graph.ResourceGraph, current: fci.graph.ResourceGraph | None = None) -> list[Mutation]:
    """
    The mutations that take `current` to `desired`.

    Creates and updates come in dependency order, removals after them in reverse
    dependency order. Planning a graph against itself yields nothing.
    Lookups are neither created nor removed; a resource handed over to another stack
    is removed here according to its retention policy.
    """
    mutations: list[Mutation] = []

    for resource in desired.topological_order():
        if resource.is_lookup:
            continue
        if current is None or resource.logical_id not in current or current.get(resource.logical_id).is_lookup:
            mutations.append(Mutation(MutationAction.CREATE, resource.logical_id))
            continue

        existing = current.get(resource.logical_id)
        if existing.kind != resource.kind or existing.name != resource.name:
            mutations.append(Mutation(MutationAction.REPLACE, resource.logical_id, ("kind", "name")))
            continue

        changed = _changed_attributes(resource, existing)
        if changed:
            mutations.append(Mutation(MutationAction.UPDATE, resource.logical_id, changed))

    if current is not None:
        for resource in reversed(current.topological_order()):
            if resource.is_lookup:
                continue
            if resource.logical_id not in desired or desired.get(resource.logical_id).is_lookup:
                mutations.append(_removal(resource))

    return mutations


def teardown(graph: fci.graph.ResourceGraph) -> list[Mutation]:
    """Remove everything, dependents before their dependencies. Retained resources are kept, lookups left alone."""
    return [_removal(r) for r in reversed(graph.topological_order()) if not r.is_lookup]


def _is_concrete(value: typing.Any) -> bool:
    if isinstance(value, fci.graph.Ref | fci.graph.Interpolation):
        return False
    if isinstance(value, dict):
        return all(_is_concrete(v) for v in value.values())
    if isinstance(value, list | tuple):
        return all(_is_concrete(v) for v in value)
    return True


def _normalize(value: typing.Any) -> typing.Any:
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        items = [_normalize(v) for v in value]
        if items and all(isinstance(i, dict) and "name" in i for i in items):
            return sorted(items, key=lambda i: i["name"])
        return items
    return value


def detect_drift(desired: fci.graph.ResourceGraph, live: dict[str, dict[str, typing.Any]]) -> list[Drift]:
    """
    Compare the attributes read back from the account with the desired ones.

    Only attributes present in `live` are compared, and values that are not known until
    apply, such as another resource's ARN, are skipped. Resources missing from `live`
    are not drift; plan handles those.
    """
    drifts: list[Drift] = []
    for logical_id, attributes in sorted(live.items()):
        if logical_id not in desired:
            continue
        properties = desired.get(logical_id).properties
        for attribute, live_value in sorted(attributes.items()):
            if attribute not in properties or not _is_concrete(properties[attribute]):
                continue
            wanted = fci.graph.encode_value(properties[attribute])
            if _normalize(wanted) != _normalize(live_value):
                drifts.append(Drift(logical_id, attribute, wanted, live_value))
    return drifts


def ensure_no_drift(desired: fci.graph.ResourceGraph, live: dict[str, dict[str, typing.Any]]) -> None:
    drifts = detect_drift(desired, live)
    if drifts:
        first = drifts[0]
        msg = f"{len(drifts)} attribute(s) were changed outside the stack, desired {first.desired!r}, found {first.live!r}"
        raise fci.errors.DriftError(msg, drifts=drifts, resource=first.resource, attribute=first.attribute)
