"""
Transactional installation of new instances.

Everything is built inside a private staging directory next to the final path.  Nothing outside
of staging is touched until the staged files have been validated, and the final path only appears
through a single rename.  Any failure up to and including that rename rolls back every resource
created along the way, so a failed install leaves no footprint.

Starting the new instance happens after the commit, and problems at that point don't undo it: the
instance is reported as installed but not yet running.
"""

from contextlib import contextmanager
import logging
import os
import os.path
import shutil
import tempfile
from typing import Any, Generator, Iterable, List, Mapping, NamedTuple, Optional

from ..artifacts import builders, load_yaml, validate_env, validate_project
from ..errors import ConflictError, InstallError, NodeLibError, RuntimeCallFailure, ValidationError
from ..flows import REGISTRY, require_resolved, Resolved
from ..plumbing import resources
from ..plumbing.common import poll, Result, State
from ..plumbing.docker import NameQuery
from ..plumbing.http import is_ready
from ..services import (get_context, get_instances, Host, is_installed, next_ethnode_name,
                        ServiceInstance, ServiceType, Status, take_snapshot)


LOG = logging.getLogger(__name__)


class Installed(NamedTuple):
    """
    A committed instance, and whether it came up within the install probe.
    """

    instance: ServiceInstance
    status: Status

    @property
    def running(self) -> bool:
        return self.status is Status.running


class Staging:
    """
    Work area for an install in progress, tracking runtime resources created for it.
    """

    def __init__(self, name: str, path: str, final: str):
        self.name = name
        self.path = path
        self.final = final
        self.networks: List[str] = []
        self.committed = False

    def __repr__(self):
        return "<{}: {!r}>".format(self.__class__.__name__, self.path)


def get_name(host: Host, type_: ServiceType, params: Mapping[str, Any]) -> str:
    """
    Pick the name for a new instance: allocated for nodes, fixed for everything else.
    """
    descriptor = REGISTRY.lookup(type_)
    name = params.get("name")
    if descriptor.names:
        if not name and len(descriptor.names) == 1:
            name = descriptor.names[0]
        if name not in descriptor.names:
            raise ValidationError("{} name must be one of: {}"
                                  .format(type_.value, ", ".join(descriptor.names)))
    elif not name:
        name = next_ethnode_name(host)
    return name


def check_conflicts(host: Host, type_: ServiceType, name: str) -> None:
    """
    Refuse an install that would break a singleton or lacks a dependency.
    """
    descriptor = REGISTRY.lookup(type_)
    if is_installed(host.path(name)):
        if descriptor.singleton:
            raise ConflictError("Only one {} named {!r} is allowed".format(type_.value, name))
        raise ConflictError("{} is already installed".format(name))
    for dependency in sorted(descriptor.dependencies, key=lambda dep: dep.value):
        if not get_instances(host, dependency):
            raise ConflictError("{} requires a {} to be installed"
                                .format(type_.value, dependency.value))


def _rollback(host: Host, stage: Staging, resolved: Resolved) -> None:
    LOG.warning("Rolling back install of %s", stage.name)
    for step in (lambda: resources.remove_containers(host, resolved),
                 lambda: resources.remove_volumes(host, resolved),
                 lambda: resources.remove_networks(host, reversed(stage.networks))):
        try:
            step()
        except NodeLibError as ex:
            LOG.error("Rollback step failed for %s: %s", stage.name, ex)
    if os.path.isdir(stage.path):
        shutil.rmtree(stage.path, ignore_errors=True)


@contextmanager
def staging(host: Host, name: str, resolved: Resolved) -> Generator[Staging, None, None]:
    """
    Provide a staging area for an install, rolling back on any failure before commit:

        with staging(host, "web3signer", resolved) as stage:
            ...  # write files into stage.path
            commit(stage)

    Failures are re-raised as `InstallError` once rollback has finished.
    """
    os.makedirs(host.root, exist_ok=True)
    path = tempfile.mkdtemp(prefix=".{}-install-".format(name), dir=host.root)
    stage = Staging(name, path, host.path(name))
    LOG.debug("Staging %s in %r", name, path)
    try:
        yield stage
    except BaseException as ex:
        if stage.committed:
            raise
        _rollback(host, stage, resolved)
        if isinstance(ex, Exception):
            raise InstallError(name, ex) from ex
        raise
    finally:
        if not stage.committed and os.path.isdir(path):
            shutil.rmtree(path, ignore_errors=True)


def write_files(stage: Staging, fileset: builders.FileSet) -> None:
    for rel, content in fileset.files.items():
        path = os.path.join(stage.path, rel)
        resources.create_directory(os.path.dirname(path))
        with open(path, "w") as handle:
            handle.write(content)
        if os.path.basename(rel) == ".env":
            os.chmod(path, 0o600)


def validate_files(fileset: builders.FileSet) -> List[str]:
    """
    Check the generated files before they're handed to the runtime, and return the external
    networks that the compose project expects to exist.
    """
    validate_env(fileset.files[".env"])
    for rel, content in fileset.files.items():
        if rel.endswith(".yml"):
            load_yaml(content, rel)
    project = validate_project(fileset.files, fileset.compose_files)
    return sorted((network or {}).get("name") or key
                  for key, network in project["networks"].items()
                  if (network or {}).get("external"))


def ensure_shared_networks(host: Host, stage: Staging, names: Iterable[str]) -> None:
    """
    Create the networks the instance needs, remembering which ones are new for rollback.
    """
    for name in names:
        require_resolved(name)
        if name in host.docker.networks(NameQuery(name)):
            continue
        LOG.info("Creating network %s", name)
        host.docker.create_network(name)
        stage.networks.append(name)


def commit(stage: Staging) -> None:
    """
    Move the staged directory into place, replacing any stale leftover at the final path.

    A stale directory is first moved aside, and put back if the rename fails.
    """
    stale = None
    if os.path.lexists(stage.final):
        LOG.warning("Replacing stale directory %r", stage.final)
        stale = "{}_stale".format(stage.path)
        os.rename(stage.final, stale)
    try:
        os.rename(stage.path, stage.final)
    except OSError:
        if stale:
            os.rename(stale, stage.final)
        raise
    stage.committed = True
    LOG.info("Committed %r", stage.final)
    if stale:
        if os.path.isdir(stale) and not os.path.islink(stale):
            shutil.rmtree(stale)
        else:
            os.unlink(stale)


def probe(host: Host, instance: ServiceInstance, resolved: Resolved) -> bool:
    """
    Bounded check that the new instance came up.  The signer must also answer its health URL.
    """
    url = resources.get_health_url(instance)

    def check() -> bool:
        if not resources.get_containers(host, resolved.containers, running_only=True):
            return False
        return is_ready(host.http, url) if url else True

    interval = host.settings.poll_interval
    return poll(check, interval, interval * (host.settings.probe_attempts - 1), host.clock)


def install(host: Host, type_: ServiceType, params: Optional[Mapping[str, Any]] = None,
            ) -> Result[Installed]:
    """
    Install a new instance of the given type.

    Raises `ConflictError` up front if the install isn't allowed, or `InstallError` if it failed
    and was rolled back.  On success, the result holds the instance and its status after the
    startup probe: `running`, or `stopped` if it's installed but not yet running.
    """
    params = dict(params or {})
    name = get_name(host, type_, params)
    check_conflicts(host, type_, name)
    resolved = REGISTRY.resolve(type_, get_context(host, name))
    LOG.info("Installing %s (%s)", name, type_.value)
    with staging(host, name, resolved) as stage:
        fileset = builders.build(type_, name, params, take_snapshot(host))
        write_files(stage, fileset)
        networks = validate_files(fileset)
        host.docker.compose_config(stage.path)
        host.docker.compose_pull(stage.path)
        ensure_shared_networks(host, stage, networks)
        commit(stage)
    instance = ServiceInstance(name, type_, stage.final)
    status = Status.stopped
    try:
        host.docker.compose_up(instance.path)
        if probe(host, instance, resolved):
            status = Status.running
        else:
            LOG.warning("%s installed, but not yet running", name)
    except RuntimeCallFailure as ex:
        LOG.warning("%s installed, but failed to start: %s", name, ex)
    return Result(State.created, Installed(instance, status))
