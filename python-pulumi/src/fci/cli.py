from __future__ import annotations

import functools
import json
import pathlib
import typing

import click

import fci
import fci.aws_live
import fci.errors
import fci.graph
import fci.junkdrawer
import fci.paths
import fci.plan
import fci.stack
import fci.workload

SERVICE_VERSION_ENV_VAR = "FCI_SERVICE_VERSION"


def _reports_errors(fn: typing.Callable) -> typing.Callable:
    @functools.wraps(fn)
    def wrapper(*args, **kwargs):
        try:
            return fn(*args, **kwargs)
        except fci.errors.FciError as e:
            click.secho(f"{e.__class__.__name__}: {e}", fg="red", err=True)
            raise SystemExit(1) from e
        except (OSError, RuntimeError, ValueError) as e:
            click.secho(f"invalid stack config: {e}", fg="red", err=True)
            raise SystemExit(1) from e

    return wrapper


def _stack_options(fn: typing.Callable) -> typing.Callable:
    fn = click.option(
        "--service-version",
        envvar=SERVICE_VERSION_ENV_VAR,
        required=True,
        help="Image tag of the service to deploy.",
    )(fn)
    return click.argument("name")(fn)


def _build(name: str, service_version: str) -> fci.graph.ResourceGraph:
    workload = fci.workload.CoursesWorkload(name)
    return fci.stack.build_stack(workload.cfg, service_version)


def _print_mutations(mutations: list[fci.plan.Mutation]) -> None:
    if not mutations:
        click.secho("no changes", fg="green")
        return

    fci.junkdrawer.print_steps([(str(m), m) for m in mutations])


@click.group()
def cli():
    """Build, check and plan the free courses stacks."""


@cli.command()
@_stack_options
@_reports_errors
def validate(name: str, service_version: str):
    """Build the resource graph and run every static check."""
    graph = _build(name, service_version)
    click.secho(f"{graph.namespace}: {len(graph)} resources, graph is valid", fg="green")


@cli.command()
@_stack_options
@_reports_errors
def graph(name: str, service_version: str):
    """Print the resources in the order they are created."""
    built = _build(name, service_version)
    fci.junkdrawer.print_steps([(f"{r.logical_id} ({r.kind})", r) for r in built.topological_order()])


@cli.command()
@_stack_options
@click.option("--output", type=click.Path(path_type=pathlib.Path), default=None, help="Snapshot file to write.")
@_reports_errors
def synth(name: str, service_version: str, output: pathlib.Path | None):
    """Write the resource graph as a JSON snapshot."""
    built = _build(name, service_version)
    output = output or fci.paths.Paths().snapshots / f"{name}.json"
    output.parent.mkdir(parents=True, exist_ok=True)
    output.write_text(json.dumps(built.to_dict(), indent=2, sort_keys=True))
    click.secho(f"wrote {output} ({built.signature()[:12]})", fg="green")


@cli.command()
@_stack_options
@click.option(
    "--previous",
    type=click.Path(exists=True, dir_okay=False, path_type=pathlib.Path),
    default=None,
    help="Snapshot of the currently applied graph.",
)
@_reports_errors
def plan(name: str, service_version: str, previous: pathlib.Path | None):
    """Show the changes needed to get from the previous snapshot to the current config."""
    desired = _build(name, service_version)
    current = None
    if previous is not None:
        current = fci.graph.ResourceGraph.from_dict(json.loads(previous.read_text()))

    _print_mutations(fci.plan.plan(desired, current))


@cli.command()
@_stack_options
@_reports_errors
def teardown(name: str, service_version: str):
    """Show what deleting the stack removes and what it keeps."""
    built = _build(name, service_version)
    mutations = fci.plan.teardown(built)
    _print_mutations(mutations)

    retained = [m.logical_id for m in mutations if m.action == fci.plan.MutationAction.RETAIN]
    if retained:
        click.secho(f"kept after deletion: {', '.join(retained)}", fg="yellow")


@cli.command()
@_stack_options
@_reports_errors
def drift(name: str, service_version: str):
    """Compare live tables, roles and image lifecycle policies with the desired state."""
    workload = fci.workload.CoursesWorkload(name)
    built = fci.stack.build_stack(workload.cfg, service_version)

    click.secho(f"Checking live state of {built.namespace} in {workload.cfg.region}", bold=True)
    live = fci.aws_live.fetch_live_state(built, fci.aws_live.session_for(workload.cfg.region))
    fci.plan.ensure_no_drift(built, live)
    click.secho("no drift", fg="green")


if __name__ == "__main__":
    cli()
