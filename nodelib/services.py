"""
Service types, installed instances, and the host context that plumbing and tasks operate on.

An instance is installed if and only if its final directory exists under the host root and holds
both marker files (`.env` and `compose.yml`).  Staging directories (`.<name>-install-*`) never
count, so anything left behind by an interrupted install can be cleaned up at any time.
"""

from enum import Enum
import logging
import os
import os.path
import re
import shutil
from typing import Any, Dict, FrozenSet, List, NamedTuple, Optional, Tuple

import requests

from . import clients, config
from .errors import ValidationError
from .plumbing.common import Clock, Collect, Result, State
from .plumbing.docker import DockerClient
from .plumbing.files import get_env


LOG = logging.getLogger(__name__)

MARKERS = (".env", "compose.yml")
"""
Files that must be present in an instance directory for it to count as installed.
"""

STAGING_PATTERN = re.compile(r"^\.(?P<name>[a-z0-9-]+)-install-[A-Za-z0-9_]+$")

_ETHNODE_NAME = re.compile(r"^ethnode\d+$")


class ServiceType(Enum):
    """
    Roles that an instance can fulfil on the host.
    """

    ethnode = "ethnode"
    """
    Paired execution and consensus clients, e.g. `ethnode1`.
    """
    validator = "validator"
    """
    Validator client, either `vero` or `teku-validator`.
    """
    web3signer = "web3signer"
    """
    Remote signing service with its slashing protection database.
    """
    monitoring = "monitoring"
    """
    Prometheus, Grafana and a node exporter.
    """


class Status(Enum):
    """
    Runtime state of an instance, always derived from the container runtime at query time.
    """

    running = 1
    stopped = 2
    absent = 3


class ServiceInstance:
    """
    A named deployment of a service type.

    Only the identity is held here; runtime status is looked up on demand with
    `nodelib.plumbing.resources.get_status`.
    """

    def __init__(self, name: str, type_: ServiceType, path: str):
        self.name = name
        self.type = type_
        self.path = path

    @property
    def env_path(self) -> str:
        return os.path.join(self.path, ".env")

    @property
    def compose_path(self) -> str:
        return os.path.join(self.path, "compose.yml")

    def __eq__(self, other: Any) -> bool:
        if not isinstance(other, ServiceInstance):
            return NotImplemented
        return (self.name, self.type, self.path) == (other.name, other.type, other.path)

    def __hash__(self) -> int:
        return hash((self.name, self.type))

    def __repr__(self) -> str:
        return "<{}: {} ({})>".format(self.__class__.__name__, self.name, self.type.value)


class Host:
    """
    Context for operations on the local machine: settings, container runtime, HTTP session and
    clock.  Create one per script run and pass it to tasks:

        host = Host()
        execute(host, "ethnode1", ServiceType.ethnode, Action.start)
    """

    def __init__(self, settings: Optional[config.Settings] = None,
                 docker: Optional[DockerClient] = None,
                 http: Optional[requests.Session] = None, clock: Optional[Clock] = None):
        self.settings = settings or config.load()
        self.docker = docker or DockerClient()
        self.http = http or requests.Session()
        self.clock = clock or Clock()

    @property
    def root(self) -> str:
        return self.settings.root

    def path(self, name: str) -> str:
        """
        Final directory of the named instance.
        """
        return os.path.join(self.root, name)

    def __repr__(self):
        return "<{}: {!r}>".format(self.__class__.__name__, self.root)


def detect_type(name: str) -> ServiceType:
    """
    Work out the service type from an instance name.
    """
    if _ETHNODE_NAME.match(name):
        return ServiceType.ethnode
    elif name == "vero" or name.endswith("validator"):
        return ServiceType.validator
    elif name == "web3signer":
        return ServiceType.web3signer
    elif name == "monitoring":
        return ServiceType.monitoring
    raise ValidationError("Unknown service name {!r}".format(name))


def get_owner(container: str) -> Optional[str]:
    """
    Find the instance name that a container belongs to, by trying ever shorter `-` prefixes:

        >>> get_owner("ethnode1-reth")
        'ethnode1'
    """
    parts = container.split("-")
    for size in range(len(parts), 0, -1):
        candidate = "-".join(parts[:size])
        try:
            detect_type(candidate)
        except ValidationError:
            continue
        return candidate
    return None


def is_installed(path: str) -> bool:
    return os.path.isdir(path) and all(os.path.isfile(os.path.join(path, marker))
                                       for marker in MARKERS)


def get_instance(host: Host, name: str) -> ServiceInstance:
    """
    Look up an installed instance by name, raising `KeyError` if it isn't installed.
    """
    type_ = detect_type(name)
    path = host.path(name)
    if not is_installed(path):
        raise KeyError(name)
    return ServiceInstance(name, type_, path)


def get_inventory(host: Host) -> List[ServiceInstance]:
    """
    Scan the host root for installed instances of any type.
    """
    found = []
    try:
        entries = sorted(os.listdir(host.root))
    except FileNotFoundError:
        return found
    for entry in entries:
        if entry.startswith("."):
            continue
        try:
            type_ = detect_type(entry)
        except ValidationError:
            continue
        path = os.path.join(host.root, entry)
        if is_installed(path):
            found.append(ServiceInstance(entry, type_, path))
    return found


def get_instances(host: Host, type_: ServiceType,
                  excluding: Optional[str] = None) -> List[ServiceInstance]:
    return [inst for inst in get_inventory(host) if inst.type is type_ and inst.name != excluding]


def get_clients(instance: ServiceInstance) -> clients.Clients:
    """
    Read the clients of an ethnode from its `.env` file.
    """
    if instance.type is not ServiceType.ethnode:
        return clients.Clients()
    env = get_env(instance.env_path)
    return clients.parse_compose_files(env.get("COMPOSE_FILE", ""))


def next_ethnode_name(host: Host) -> str:
    """
    Pick the lowest `ethnode<N>` name without an existing directory.
    """
    index = 1
    while os.path.lexists(host.path("ethnode{}".format(index))):
        index += 1
    return "ethnode{}".format(index)


class Snapshot(NamedTuple):
    """
    Point-in-time view of installed instances, used to derive shared configuration.
    """

    instances: Tuple[ServiceInstance, ...]
    clients: Dict[str, clients.Clients]

    def of_type(self, type_: ServiceType) -> List[ServiceInstance]:
        return [inst for inst in self.instances if inst.type is type_]

    @property
    def names(self) -> FrozenSet[str]:
        return frozenset(inst.name for inst in self.instances)


def take_snapshot(host: Host, excluding: Optional[str] = None) -> Snapshot:
    """
    Scan the host, optionally leaving out an instance that's in the middle of being removed.
    """
    instances = tuple(inst for inst in get_inventory(host) if inst.name != excluding)
    found = {inst.name: get_clients(inst) for inst in instances
             if inst.type is ServiceType.ethnode}
    return Snapshot(instances, found)


def get_context(host: Host, name: str) -> Dict[str, Any]:
    """
    Values for placeholders in resource name patterns.
    """
    nodes = get_instances(host, ServiceType.ethnode, excluding=name)
    return {"name": name,
            "ethnode_networks": ["{}-net".format(node.name) for node in nodes]}


def get_staging(host: Host) -> List[str]:
    """
    List leftover staging directories from interrupted installs.
    """
    try:
        entries = sorted(os.listdir(host.root))
    except FileNotFoundError:
        return []
    return [os.path.join(host.root, entry) for entry in entries
            if STAGING_PATTERN.match(entry) and os.path.isdir(os.path.join(host.root, entry))]


@Result.collect_value
def clean_staging(host: Host) -> Collect[List[str]]:
    """
    Delete leftover staging directories.  Only safe when no install is in progress.
    """
    removed = []
    for path in get_staging(host):
        LOG.info("Removing stale staging directory %r", path)
        shutil.rmtree(path)
        removed.append(path)
        yield Result(State.success, path)
    return removed
