"""
Cross-service integration sync, dispatched by integration kind.

When an instance is added, changed or removed, each integration kind declared on its type is
handed to a handler, which either rewrites and restarts dependent instances, or regenerates shared
configuration.  Handlers never touch the instance that triggered them.

A failing handler doesn't stop the others, and nothing is rolled back: every handler recomputes
its target state from scratch, so a failed sync can simply be run again.
"""

from enum import Enum
import logging
import os.path
from typing import Callable, Dict, Iterable, List, Optional

from ..artifacts import builders, validate_compose
from ..clients import beacon_node
from ..errors import ConflictError, NodeLibError, ValidationError
from ..flows import IntegrationKind, REGISTRY
from ..plumbing import files, resources
from ..plumbing.common import Collect, Result, State
from ..services import (get_context, get_instances, Host, ServiceInstance, ServiceType, Status,
                        take_snapshot)
from . import monitoring


LOG = logging.getLogger(__name__)


class Event(Enum):
    """
    What happened to the instance that triggered a sync.
    """

    added = "added"
    changed = "changed"
    removed = "removed"


class IntegrationError(NodeLibError):
    """
    One or more integration handlers failed.  `failures` maps each failed kind to its error.
    """

    def __init__(self, failures: Dict[IntegrationKind, Exception]):
        super().__init__("Integration sync failed: {}".format(
            "; ".join("{}: {}".format(kind.value, ex) for kind, ex in failures.items())))
        self.failures = failures


class DependentUpdateError(NodeLibError):
    """
    One or more dependent instances couldn't be updated.  `failures` maps each instance name to
    its error.
    """

    def __init__(self, failures: Dict[str, Exception]):
        super().__init__("Failed to update {}".format(
            "; ".join("{}: {}".format(name, ex) for name, ex in failures.items())))
        self.failures = failures


Handler = Callable[[Host, ServiceInstance, Event], Result]


def _is_running(host: Host, instance: ServiceInstance) -> bool:
    resolved = REGISTRY.resolve(instance.type, get_context(host, instance.name))
    return resources.get_status(host, instance, resolved) is Status.running


def get_endpoints(validator: ServiceInstance) -> List[str]:
    """
    Read a validator's configured beacon node addresses.
    """
    value = files.get_env(validator.env_path).get("BEACON_NODE_URLS", "")
    return [url.strip() for url in value.split(",") if url.strip()]


def sync_metrics_stack(host: Host, instance: ServiceInstance, event: Event) -> Result[bool]:
    """
    Regenerate the metrics stack's configuration from a fresh inventory scan.
    """
    excluding = instance.name if event is Event.removed else None
    return monitoring.refresh(host, excluding=excluding)


RECREATE_MARKER = ".recreate-pending"
"""
Left in a validator's directory while its files are newer than its running container.
"""


def is_recreate_pending(validator: ServiceInstance) -> bool:
    return os.path.exists(os.path.join(validator.path, RECREATE_MARKER))


@Result.collect_value
def rewrite_validator(host: Host, validator: ServiceInstance, node: str,
                      event: Event) -> Collect[List[str]]:
    """
    Recompute a validator's beacon node list after a change to `node`, and recreate the validator
    if it's running and its files changed.

    Nodes already listed are kept (with their address refreshed for the current consensus client),
    apart from a removed node or any that are no longer installed.

    A running validator is marked before its files are touched, and unmarked once recreated, so a
    retry after a failed recreate still restarts it.
    """
    excluding = node if event is Event.removed else None
    snapshot = take_snapshot(host, excluding=excluding)
    current = get_endpoints(validator)
    listed = [beacon_node(url) for url in current]
    keep = [name for name in listed if name and name in snapshot.clients]
    urls = builders.get_beacon_urls(snapshot, keep)
    nodes = [beacon_node(url) for url in urls]
    compose = builders.render_validator_compose(validator.name, nodes)
    stale = urls != current or files.get_text(validator.compose_path) != compose
    pending = is_recreate_pending(validator)
    if not stale and not pending:
        return urls
    running = _is_running(host, validator)
    marker = os.path.join(validator.path, RECREATE_MARKER)
    if stale:
        if not urls:
            LOG.warning("%s has no beacon nodes left", validator.name)
        LOG.info("Updating %s beacon nodes: %s", validator.name, ", ".join(urls) or "<none>")
        if running:
            yield files.replace_file(marker, "")
        # Compose first: the endpoint list in .env is what later syncs compare against.
        yield files.replace_file(validator.compose_path, compose, validate=validate_compose)
        yield files.update_env(validator.env_path, {"BEACON_NODE_URLS": ",".join(urls)})
    if running:
        LOG.info("Recreating %s", validator.name)
        host.docker.compose_up(validator.path, recreate=True)
        yield Result(State.success)
    if os.path.exists(marker):
        os.unlink(marker)
    return urls


@Result.collect
def sync_validator_peers(host: Host, instance: ServiceInstance, event: Event) -> Collect[None]:
    """
    Update every validator that uses the node as a beacon endpoint, along with any validator left
    waiting on a recreate by an earlier sync.
    """
    failures: Dict[str, Exception] = {}
    for validator in get_instances(host, ServiceType.validator):
        listed = {beacon_node(url) for url in get_endpoints(validator)}
        if not is_recreate_pending(validator):
            if event is Event.added or instance.name not in listed:
                continue
        try:
            yield rewrite_validator(host, validator, instance.name, event)
        except Exception as ex:
            LOG.warning("Update of %s failed: %s", validator.name, ex,
                        exc_info=not isinstance(ex, NodeLibError))
            failures[validator.name] = ex
    if failures:
        raise DependentUpdateError(failures)


def check_node_peers(host: Host, instance: ServiceInstance, event: Event) -> Result[List[str]]:
    """
    Check that a validator's beacon nodes are installed.  Read only: nodes are never added or
    removed here, that happens from the node's side.
    """
    if event is Event.removed:
        return Result(State.unchanged, [])
    snapshot = take_snapshot(host)
    nodes = [beacon_node(url) for url in get_endpoints(instance)]
    missing = [node or "<unknown>" for node in nodes if node not in snapshot.clients]
    if missing:
        raise ValidationError("{} uses missing beacon nodes: {}"
                              .format(instance.name, ", ".join(missing)))
    if not nodes:
        raise ValidationError("{} has no beacon nodes configured".format(instance.name))
    return Result(State.unchanged, nodes)


@Result.collect
def sync_remote_signer(host: Host, instance: ServiceInstance, event: Event) -> Collect[None]:
    """
    From the signer's side, restart running validators after a change so they reconnect.  From a
    validator's side, check that the signer is installed.
    """
    if instance.type is ServiceType.validator:
        if event is not Event.removed and not get_instances(host, ServiceType.web3signer):
            raise ConflictError("{} needs a remote signer, none installed".format(instance.name))
        return
    for validator in get_instances(host, ServiceType.validator):
        if event is Event.removed:
            LOG.warning("%s has lost its remote signer", validator.name)
            continue
        if event is Event.changed and _is_running(host, validator):
            LOG.info("Restarting %s to reconnect to %s", validator.name, instance.name)
            host.docker.compose_restart(validator.path)
            yield Result(State.success)


HANDLERS: Dict[IntegrationKind, Handler] = {
    IntegrationKind.metrics_stack: sync_metrics_stack,
    IntegrationKind.validator_peers: sync_validator_peers,
    IntegrationKind.node_peers: check_node_peers,
    IntegrationKind.remote_signer: sync_remote_signer,
}


@Result.collect
def dispatch(host: Host, instance: ServiceInstance, event: Event,
             kinds: Optional[Iterable[IntegrationKind]] = None) -> Collect[None]:
    """
    Run the handler for each integration kind, defaulting to all kinds declared on the instance's
    type.  Raises `IntegrationError` once every handler has had its turn, if any failed.
    """
    if kinds is None:
        kinds = REGISTRY.lookup(instance.type).integrations
    failures: Dict[IntegrationKind, Exception] = {}
    for kind in sorted(kinds, key=lambda kind: kind.value):
        LOG.info("Syncing %s for %s (%s)", kind.value, instance.name, event.value)
        try:
            yield HANDLERS[kind](host, instance, event)
        except Exception as ex:
            LOG.warning("Sync of %s for %s failed: %s", kind.value, instance.name, ex,
                        exc_info=not isinstance(ex, NodeLibError))
            failures[kind] = ex
    if failures:
        raise IntegrationError(failures)
