"""
Backend resolver.

The controller configuration file describes one or more NAS backends, each with a set of
named configurations (a dataset root plus NFS/iSCSI settings)::

    default:
      apiurl: https://nas.example/api/v2.0
      apikey: "1-xxxx"                  # or username/password
      nfs: {server: 10.0.0.1, allowednetworks: [10.0.0.0/24]}
      iscsi: {portal: 10.0.0.1:3260, portalid: 1}
      configurations:
        default:
          dataset: tank/k8s
          deletepolicy: delete
          sparse: false

Storage classes select a backend and a configuration through request parameters.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml
from plumbum import local
from easypy.bunch import Bunch
from easypy.tokens import Token, DELETE, RETAIN

from .exceptions import ConfigurationError, BackendNotFound, InternalError
from .logging import logger


DELETE_POLICIES = {DELETE, RETAIN}
DEFAULT = "default"


def parse_delete_policy(value) -> Token:
    """Convert delete policy to 'Token' representation."""
    policy = Token(str(value).upper())
    if policy not in DELETE_POLICIES:
        raise ConfigurationError(
            reason=f"invalid delete policy: {value!r} (use {'|'.join(sorted(p.lower() for p in DELETE_POLICIES))})"
        )
    return policy


def normalize_dataset(dataset: str) -> str:
    return str(dataset).strip().strip("/")


@dataclass(frozen=True)
class NfsSettings:
    server: str
    allowed_hosts: List[str] = field(default_factory=list)
    allowed_networks: List[str] = field(default_factory=list)
    maproot_user: str = "root"
    maproot_group: str = "wheel"

    @classmethod
    def from_dict(cls, data: dict) -> "NfsSettings":
        if not data.get("server"):
            raise ConfigurationError(reason="nfs settings require 'server'")
        return cls(
            server=data["server"],
            allowed_hosts=list(data.get("allowedhosts") or []),
            allowed_networks=list(data.get("allowednetworks") or []),
            maproot_user=data.get("maprootuser", "root"),
            maproot_group=data.get("maprootgroup", "wheel"),
        )


@dataclass(frozen=True)
class IscsiSettings:
    portal: str
    portal_id: int
    volblocksize: Optional[str] = None
    disable_report_blocksize: bool = False

    @classmethod
    def from_dict(cls, data: dict) -> "IscsiSettings":
        if not data.get("portal"):
            raise ConfigurationError(reason="iscsi settings require 'portal'")
        if data.get("portalid") is None:
            raise ConfigurationError(reason="iscsi settings require 'portalid'")
        return cls(
            portal=data["portal"],
            portal_id=int(data["portalid"]),
            volblocksize=data.get("volblocksize"),
            disable_report_blocksize=bool(data.get("disablereportblocksize", False)),
        )


@dataclass(frozen=True)
class Configuration:
    name: str
    dataset: str
    delete_policy: Token = DELETE
    sparse: bool = False
    nfs: Optional[NfsSettings] = None
    iscsi: Optional[IscsiSettings] = None


@dataclass
class Backend:
    name: str
    apiurl: str
    configurations: Dict[str, Configuration]
    username: Optional[str] = None
    password: Optional[str] = None
    apikey: Optional[str] = None

    @classmethod
    def from_dict(cls, name: str, data: dict) -> "Backend":
        data = data or {}
        if not data.get("apiurl"):
            raise ConfigurationError(reason=f"backend {name!r} has no 'apiurl'")
        if not (data.get("apikey") or (data.get("username") and data.get("password"))):
            raise ConfigurationError(reason=f"backend {name!r} requires 'apikey' or 'username' and 'password'")

        configurations = {}
        roots = {}
        for config_name, config_data in (data.get("configurations") or {}).items():
            config_data = config_data or {}
            if not config_data.get("dataset"):
                raise ConfigurationError(reason=f"configuration {name}/{config_name} has no 'dataset'")
            dataset = normalize_dataset(config_data["dataset"])
            if dataset in roots:
                raise ConfigurationError(
                    reason=f"dataset {dataset!r} is used by both {roots[dataset]!r} and {config_name!r} in backend {name!r}"
                )
            roots[dataset] = config_name

            # configuration level settings override backend level defaults
            nfs = _merge(data.get("nfs"), config_data.get("nfs"))
            iscsi = _merge(data.get("iscsi"), config_data.get("iscsi"))
            configurations[config_name] = Configuration(
                name=config_name,
                dataset=dataset,
                delete_policy=parse_delete_policy(config_data.get("deletepolicy", "delete")),
                sparse=bool(config_data.get("sparse", False)),
                nfs=NfsSettings.from_dict(nfs) if nfs is not None else None,
                iscsi=IscsiSettings.from_dict(iscsi) if iscsi is not None else None,
            )

        return cls(
            name=name,
            apiurl=data["apiurl"].rstrip("/"),
            configurations=configurations,
            username=data.get("username"),
            password=data.get("password"),
            apikey=data.get("apikey"),
        )

    def lookup(self, name: str) -> Configuration:
        if not (cfg := self.configurations.get(name or DEFAULT)):
            raise BackendNotFound(kind="configuration", name=name, backend=self.name)
        return cfg

    def configuration_for_root(self, root_dataset: str) -> Optional[Configuration]:
        root_dataset = normalize_dataset(root_dataset)
        for cfg in self.configurations.values():
            if cfg.dataset == root_dataset:
                return cfg

    def delete_policy(self, root_dataset: str) -> Token:
        if not (cfg := self.configuration_for_root(root_dataset)):
            raise InternalError(reason=f"No delete policy configured for root dataset {root_dataset!r} in {self.name!r}")
        return cfg.delete_policy

    def sparse(self, root_dataset: str) -> bool:
        cfg = self.configuration_for_root(root_dataset)
        return bool(cfg and cfg.sparse)


def _merge(defaults: Optional[dict], overrides: Optional[dict]) -> Optional[dict]:
    if defaults is None and overrides is None:
        return None
    return dict(defaults or {}, **(overrides or {}))


class BackendResolver:
    """Maps (backend, configuration) names to validated backend definitions."""

    def __init__(self, backends: Dict[str, Backend]):
        self.backends = backends

    def __contains__(self, name):
        return name in self.backends

    def get(self, name: str) -> Optional[Backend]:
        return self.backends.get(name)

    def backend(self, name: str) -> Backend:
        if not (backend := self.backends.get(name or DEFAULT)):
            raise BackendNotFound(kind="backend", name=name)
        return backend

    def lookup(self, backend: str, config: str) -> Configuration:
        return self.backend(backend).lookup(config)

    def delete_policy(self, backend: str, root_dataset: str) -> Token:
        return self.backend(backend).delete_policy(root_dataset)

    def sparse(self, backend: str, root_dataset: str) -> bool:
        return self.backend(backend).sparse(root_dataset)


def load_backends(source) -> BackendResolver:
    """
    Load backends from a YAML file path or from an already parsed mapping.
    The whole configuration is rejected if any backend is invalid.
    """
    if isinstance(source, dict):
        data = source
    else:
        path = local.path(source)
        if not path.exists():
            raise ConfigurationError(reason=f"{path} does not exist")
        with path.open("r") as f:
            data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ConfigurationError(reason="expected a mapping of backend names")

    backends = {name: Backend.from_dict(name, Bunch.from_dict(spec or {})) for name, spec in data.items()}
    for backend in backends.values():
        logger.info(f"Loaded backend {backend.name!r}: {', '.join(sorted(backend.configurations)) or '(no configurations)'}")
    return BackendResolver(backends)
