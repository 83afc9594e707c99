"""Shared pytest fixtures for the free courses stack tests.

This module provides common fixtures used across test files:
- fci_root: Sets FCI_ROOT environment variable
- pulumi_mocks: Standard Pulumi mock class for resource tests
- stack_config: StackConfig with sensible defaults
- write_stack_yaml: Writes an fci.yaml under FCI_ROOT
"""

import pathlib
import typing

import pulumi
import pytest
import yaml

import fci

# ============================================================================
# Environment Setup Fixtures
# ============================================================================


@pytest.fixture
def fci_root(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> pathlib.Path:
    """Set FCI_ROOT environment variable to a temporary directory.

    This fixture is required for any test that loads stack configs or uses
    the Paths class.

    Usage:
        def test_something(fci_root):
            paths = Paths()
            assert paths.root == fci_root
    """
    monkeypatch.setenv("FCI_ROOT", str(tmp_path))
    return tmp_path


@pytest.fixture
def write_stack_yaml(fci_root: pathlib.Path) -> typing.Callable[..., pathlib.Path]:
    """Returns a function that writes `<name>/fci.yaml` under FCI_ROOT.

    Usage:
        def test_something(write_stack_yaml):
            write_stack_yaml("courses-staging", {"region": "eu-west-1"})
    """

    def write(name: str, spec: dict[str, typing.Any] | None = None, **header: str) -> pathlib.Path:
        d = fci_root / name
        d.mkdir(parents=True, exist_ok=True)
        doc = {
            "apiVersion": header.get("apiVersion", fci.API_VERSION),
            "kind": header.get("kind", fci.CONFIG_KIND),
            "spec": spec or {},
        }
        path = d / "fci.yaml"
        path.write_text(yaml.safe_dump(doc))
        return path

    return write


# ============================================================================
# Pulumi Mock Fixtures
# ============================================================================


class StandardPulumiMocks(pulumi.runtime.Mocks):
    """Standard Pulumi mocks for testing Pulumi resources.

    Returns resource names as IDs and echoes back all inputs as outputs, so
    tests can assert on what was sent to the provider.
    """

    def new_resource(self, args: pulumi.runtime.MockResourceArgs) -> tuple[str | None, dict[typing.Any, typing.Any]]:
        """Mock resource creation - returns resource name as ID and inputs as outputs."""
        return args.name, dict(args.inputs)

    def call(
        self, args: pulumi.runtime.MockCallArgs
    ) -> dict[typing.Any, typing.Any] | tuple[dict[typing.Any, typing.Any], list[tuple[str, str]] | None]:
        """Mock function calls - answers repository lookups, returns empty dict otherwise."""
        if args.token == "aws:ecr/getRepository:getRepository":
            name = args.args.get("name")
            return {
                "name": name,
                "arn": f"arn:aws:ecr:us-east-1:123456789012:repository/{name}",
                "repository_url": f"123456789012.dkr.ecr.us-east-1.amazonaws.com/{name}",
            }
        return {}


@pytest.fixture
def pulumi_mocks() -> type[pulumi.runtime.Mocks]:
    """Returns the standard Pulumi mocks class.

    The mocks are not automatically set - you must call set_mocks() in your
    test or at module level.
    """
    return StandardPulumiMocks


# ============================================================================
# Config Fixtures
# ============================================================================


@pytest.fixture
def stack_config() -> fci.StackConfig:
    """A full-stack StackConfig for "courses" in staging.

    Zones are given explicitly so rendering never looks them up.
    """
    return fci.StackConfig(
        true_name="courses",
        environment="staging",
        region="us-east-1",
        account_id="123456789012",
        resource_tags={"team": "catalog"},
        network=fci.NetworkConfig(azs=["us-east-1a", "us-east-1b"]),
    )
