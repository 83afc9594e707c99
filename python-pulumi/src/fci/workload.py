from __future__ import annotations

import pathlib
import typing

import deepmerge  # type: ignore
import yaml

import fci
import fci.paths


def _defaults(true_name: str, environment: str) -> dict[str, typing.Any]:
    return {
        "true_name": true_name,
        "environment": environment,
        "region": "us-east-1",
        "account_id": "",
        "resource_tags": {},
        "protect_persistent_resources": True,
        "network": {},
        "compute": {},
        "service": {},
        "table": {},
        "edge": {},
        "features": {},
    }


class CoursesWorkload:
    d: pathlib.Path
    cfg: fci.StackConfig
    spec: dict[str, typing.Any]

    def __init__(self, name: str, paths: fci.paths.Paths | None = None, *, load_yaml=True):
        self.d = (paths or fci.paths.Paths()).root / name

        if not load_yaml:
            return

        if not self.fci_yaml.exists():
            msg = f"no stack config at {str(self.fci_yaml)!r}"
            raise FileNotFoundError(msg)

        self._load_config()

    @property
    def fci_yaml(self) -> pathlib.Path:
        return self.d / "fci.yaml"

    @property
    def compound_name(self) -> str:
        return f"{self.cfg.true_name}-{self.cfg.environment}"

    def _load_config(self) -> None:
        true_name, environment = self.d.name.rsplit("-", maxsplit=1)

        if environment not in fci.Environments:
            msg = f"Environment {environment!r} is not supported"
            raise ValueError(msg)

        cfg_dict = yaml.safe_load(self.fci_yaml.read_text()) or {}
        if cfg_dict.get("kind") != fci.CONFIG_KIND or cfg_dict.get("apiVersion") != fci.API_VERSION:
            msg = (
                f"mismatched stack config kind={cfg_dict.get('kind')!r} "
                f"apiVersion={cfg_dict.get('apiVersion')!r} in {str(self.fci_yaml)!r}"
            )
            raise ValueError(msg)

        spec = _defaults(true_name, environment)
        deepmerge.always_merger.merge(spec, cfg_dict.get("spec") or {})

        # The directory name is authoritative.
        spec["true_name"] = true_name
        spec["environment"] = environment

        self.spec = spec
        self.cfg = stack_config_from_dict(spec)


def stack_config_from_dict(spec: dict[str, typing.Any]) -> fci.StackConfig:
    spec = dict(spec)

    network = dict(spec.pop("network", {}))
    if "vpc_endpoints" in network:
        network["vpc_endpoints"] = fci.VPCEndpointsConfig(**network.pop("vpc_endpoints"))

    service = dict(spec.pop("service", {}))
    if "health_probe" in service:
        service["health_probe"] = fci.HealthProbeConfig(**service.pop("health_probe"))

    table = dict(spec.pop("table", {}))
    if "retention" in table:
        table["retention"] = fci.RetentionPolicy(str(table["retention"]).lower())

    return fci.StackConfig(
        network=fci.NetworkConfig(**network),
        compute=fci.ComputeConfig(**spec.pop("compute", {})),
        service=fci.ServiceConfig(**service),
        table=fci.TableConfig(**table),
        edge=fci.EdgeConfig(**spec.pop("edge", {})),
        features=fci.FeatureFlags(**spec.pop("features", {})),
        **spec,
    )
