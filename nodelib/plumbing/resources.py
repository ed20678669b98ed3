"""
Idempotent operations over the runtime resources of an instance: containers, volumes, networks and
directories.

Destructive operations report how many resources were found, acted on, and failed, as a `Counts`
value on their `Result`.  Finding nothing is not an error.
"""

import logging
import os
import os.path
import shutil
from typing import Iterable, List, NamedTuple, Optional

from .. import config
from ..clients import Clients, SIGNER
from ..errors import ResourceBusyError, RuntimeCallFailure
from ..flows import require_resolved, Resolved
from ..services import get_clients, Host, is_installed, ServiceInstance, ServiceType, Status
from .common import Collect, poll, Result, State
from .docker import match_any, NameQuery
from .files import get_env
from .http import is_ready
from .shutdown import Escalator, get_plan


LOG = logging.getLogger(__name__)


class Counts(NamedTuple):
    """
    Outcome of a destructive operation over one kind of resource.
    """

    kind: str
    found: int = 0
    acted: int = 0
    errors: int = 0

    def __str__(self):
        return "{}: {} found, {} acted on, {} errors".format(self.kind, self.found, self.acted,
                                                           self.errors)


def _counted(counts: Counts) -> Result[Counts]:
    LOG.info("%s", counts)
    return Result(State.success if counts.acted else State.unchanged, counts)


def get_containers(host: Host, queries: Iterable[NameQuery],
                   running_only: bool = False) -> List[str]:
    """
    List containers matching any of the given queries.
    """
    queries = list(queries)
    names = set()
    for query in queries:
        names.update(host.docker.containers(query, running_only))
    return match_any(queries, names)


def get_volumes(host: Host, queries: Iterable[NameQuery]) -> List[str]:
    queries = list(queries)
    names = set()
    for query in queries:
        names.update(host.docker.volumes(query))
    return match_any(queries, names)


def get_status(host: Host, instance: ServiceInstance, resolved: Resolved) -> Status:
    """
    Derive an instance's runtime status from its containers.
    """
    if get_containers(host, resolved.containers, running_only=True):
        return Status.running
    elif is_installed(instance.path) or get_containers(host, resolved.containers):
        return Status.stopped
    return Status.absent


def get_rpc_url(instance: ServiceInstance) -> str:
    port = get_env(instance.env_path).get("EL_RPC_PORT") or config.EL_RPC_PORT
    return "http://127.0.0.1:{}".format(port)


def _shutdown(host: Host, instance: ServiceInstance, clients: Clients) -> bool:
    # Only ethnode execution clients have shutdown plans.
    plan = get_plan(clients.execution)
    if not plan:
        return False
    container = "{}-{}".format(instance.name, clients.execution)
    path = instance.path if is_installed(instance.path) else None
    escalator = Escalator(host.docker, host.clock, plan, container, path,
                          rpc_url=get_rpc_url(instance), session=host.http,
                          interval=host.settings.poll_interval)
    state = escalator.run()
    LOG.info("Shutdown of %s finished: %s", container, state.value)
    return True


def stop_containers(host: Host, instance: ServiceInstance, resolved: Resolved) -> Result[Counts]:
    """
    Stop all containers of an instance.

    Clients with a shutdown plan are escalated through it, others get a bounded group stop.  Either
    way, any container still running afterwards is stopped individually, and failures there are
    counted rather than raised.
    """
    running = get_containers(host, resolved.containers, running_only=True)
    if not running:
        LOG.info("No running containers for %s", instance.name)
        return _counted(Counts("containers"))
    clients = get_clients(instance) if instance.type is ServiceType.ethnode else Clients()
    if not _shutdown(host, instance, clients) and is_installed(instance.path):
        try:
            host.docker.compose_down(instance.path, timeout=host.settings.group_stop_timeout)
        except RuntimeCallFailure as ex:
            LOG.warning("Group stop of %s failed, sweeping: %s", instance.name, ex)
    errors = 0
    for name in get_containers(host, resolved.containers, running_only=True):
        LOG.info("Stopping leftover container %s", name)
        try:
            host.docker.stop_container(name, timeout=host.settings.group_stop_timeout)
        except RuntimeCallFailure as ex:
            LOG.warning("Failed to stop %s: %s", name, ex)
            errors += 1
    return _counted(Counts("containers", len(running), len(running) - errors, errors))


def remove_containers(host: Host, resolved: Resolved) -> Result[Counts]:
    """
    Force-remove all containers matching the instance's patterns.
    """
    found = get_containers(host, resolved.containers)
    errors = 0
    for name in found:
        try:
            host.docker.remove_container(require_resolved(name))
        except RuntimeCallFailure as ex:
            LOG.warning("Failed to remove container %s: %s", name, ex)
            errors += 1
    return _counted(Counts("containers", len(found), len(found) - errors, errors))


def remove_volumes(host: Host, resolved: Resolved) -> Result[Counts]:
    """
    Force-remove all volumes matching the instance's patterns.
    """
    found = get_volumes(host, resolved.volumes)
    errors = 0
    for name in found:
        try:
            host.docker.remove_volume(require_resolved(name))
        except RuntimeCallFailure as ex:
            LOG.warning("Failed to remove volume %s: %s", name, ex)
            errors += 1
    return _counted(Counts("volumes", len(found), len(found) - errors, errors))


def remove_network(host: Host, name: str) -> Result[None]:
    """
    Remove a single network, disconnecting any attached containers first.

    Raises `ResourceBusyError` if the runtime still refuses to remove it.
    """
    require_resolved(name)
    if name not in host.docker.networks(NameQuery(name)):
        return Result(State.unchanged)
    for container in host.docker.network_containers(name):
        LOG.info("Disconnecting %s from %s", container, name)
        try:
            host.docker.disconnect(name, container)
        except RuntimeCallFailure as ex:
            LOG.warning("Failed to disconnect %s from %s: %s", container, name, ex)
    try:
        host.docker.remove_network(name)
    except RuntimeCallFailure as ex:
        raise ResourceBusyError("network", name, str(ex)) from ex
    return Result(State.success)


def remove_networks(host: Host, names: Iterable[str]) -> Result[Counts]:
    """
    Remove networks by exact name.  A network that can't be removed is logged and counted, as it
    may legitimately still be referenced.
    """
    found = acted = errors = 0
    for name in names:
        if name not in host.docker.networks(NameQuery(require_resolved(name))):
            continue
        found += 1
        try:
            remove_network(host, name)
        except ResourceBusyError as ex:
            LOG.warning("Leaving network %s: %s", name, ex)
            errors += 1
        else:
            acted += 1
    return _counted(Counts("networks", found, acted, errors))


def ensure_network(host: Host, name: str) -> Result[None]:
    if name in host.docker.networks(NameQuery(require_resolved(name))):
        return Result(State.unchanged)
    LOG.info("Creating network %s", name)
    host.docker.create_network(name)
    return Result(State.created)


@Result.collect
def ensure_networks(host: Host, names: Iterable[str]) -> Collect[None]:
    """
    Create any of the given networks that don't exist yet.
    """
    for name in names:
        yield ensure_network(host, name)


def _relocate(path: str) -> None:
    # Never delete the directory we're standing in.
    try:
        cwd = os.path.realpath(os.getcwd())
    except FileNotFoundError:
        cwd = None
    target = os.path.realpath(path)
    if cwd is None or cwd == target or cwd.startswith(target + os.sep):
        parent = os.path.dirname(target)
        LOG.debug("Leaving %r for %r", cwd, parent)
        os.chdir(parent)


def create_directory(path: str, mode: int = 0o755) -> Result[None]:
    if os.path.isdir(path):
        return Result(State.unchanged)
    os.makedirs(path, mode)
    return Result(State.created)


def remove_directory(path: str) -> Result[None]:
    """
    Delete a directory tree, moving the process out of it first if needed.
    """
    if not os.path.lexists(path):
        return Result(State.unchanged)
    _relocate(path)
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    else:
        os.unlink(path)
    LOG.info("Removed directory %r", path)
    return Result(State.success)


def remove_directories(host: Host, resolved: Resolved) -> Result[Counts]:
    """
    Remove the instance's directories under the host root.
    """
    found = acted = 0
    for rel in resolved.directories:
        path = os.path.join(host.root, require_resolved(rel))
        if os.path.lexists(path):
            found += 1
            if remove_directory(path):
                acted += 1
    return _counted(Counts("directories", found, acted, 0))


def get_health_url(instance: ServiceInstance) -> Optional[str]:
    """
    Address that must answer before the instance counts as healthy, if any.  Only the signer has
    one, at its configured port.
    """
    if instance.type is ServiceType.web3signer:
        port = get_env(instance.env_path).get("WEB3SIGNER_PORT") or SIGNER.metrics_port
        return "http://127.0.0.1:{}/upcheck".format(port)
    return None


def health_check(host: Host, instance: ServiceInstance, resolved: Resolved,
                 url: Optional[str] = None, attempts: int = 1) -> Result[bool]:
    """
    Best-effort liveness probe: at least one container running, and `url` answering if given.

    The outcome is only informational, and never raised as an error.
    """
    def check() -> bool:
        if not get_containers(host, resolved.containers, running_only=True):
            return False
        return is_ready(host.http, url) if url else True

    interval = host.settings.poll_interval
    healthy = poll(check, interval, interval * max(attempts - 1, 0), host.clock)
    if healthy:
        LOG.info("%s is healthy", instance.name)
    else:
        LOG.warning("%s failed its health check", instance.name)
    return Result(State.unchanged, healthy)
