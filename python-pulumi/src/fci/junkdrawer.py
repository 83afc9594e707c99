from __future__ import annotations

import hashlib
import json
import typing

import click

import fci.errors


def print_steps(steps: list[tuple[str, typing.Any]]):
    click.secho(
        "∙ " + ("\n∙ ".join([name for name, _ in steps])) + "\n\n",
        fg="white",
        bold=True,
    )


def json_signature(obj: typing.Any) -> str:
    return hashlib.sha256(
        json.dumps(obj, sort_keys=True).encode(),
        usedforsecurity=False,
    ).hexdigest()


def endpoint_service_name(region: str, service: str) -> str:
    return f"com.amazonaws.{region}.{service}"


def check_name_length(logical_id: str, name: str, limit: int = 32) -> str:
    if len(name) > limit:
        msg = f"name {name!r} is {len(name)} characters, the limit is {limit}"
        raise fci.errors.GraphValidationError(msg, resource=logical_id, attribute="name")

    return name
