"""
Per-type flow descriptors: resource name patterns, lifecycle step lists, dependencies and
integrations.

Descriptors are registered once into a `FlowRegistry`, which checks every step against the set of
steps the executor can run, and is then frozen.  Name patterns may contain `{placeholders}`, which
are filled in per call by `FlowRegistry.resolve`:

- `{name}`: the instance name
- `{ethnode_networks}`: one entry per installed node network (list-valued)

A pattern whose placeholders can't all be filled is dropped with a warning, so an unresolved
pattern never reaches the runtime.
"""

from enum import Enum
import logging
from string import Formatter
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, NamedTuple, Sequence, Tuple

from .errors import ValidationError
from .plumbing.docker import NameQuery
from .services import ServiceType


LOG = logging.getLogger(__name__)


class Action(Enum):
    """
    Lifecycle actions that a caller can request.
    """

    install = "install"
    start = "start"
    stop = "stop"
    update = "update"
    remove = "remove"


class Step(Enum):
    """
    Closed set of lifecycle steps.  Each has exactly one handler in the executor.
    """

    INSTALL = "install"
    INTEGRATE = "integrate"
    CONFIGURE = "configure"
    ENSURE_NETWORKS = "ensure_networks"
    CONNECT_TO_NODES = "connect_to_nodes"
    START_SERVICES = "start_services"
    ENSURE_DATABASE = "ensure_database"
    HEALTH_CHECK = "health_check"
    STOP_SERVICES = "stop_services"
    PULL_IMAGES = "pull_images"
    RECREATE_SERVICES = "recreate_services"
    REFRESH_METRICS = "refresh_metrics"
    UPDATE_DEPENDENTS = "update_dependents"
    CLEANUP_INTEGRATIONS = "cleanup_integrations"
    REMOVE_CONTAINERS = "remove_containers"
    REMOVE_VOLUMES = "remove_volumes"
    REMOVE_NETWORKS = "remove_networks"
    CLEANUP_SHARED_NETWORKS = "cleanup_shared_networks"
    REMOVE_DIRECTORIES = "remove_directories"


NON_CRITICAL: FrozenSet[Step] = frozenset({Step.CLEANUP_INTEGRATIONS, Step.INTEGRATE,
                                           Step.REFRESH_METRICS, Step.UPDATE_DEPENDENTS,
                                           Step.CLEANUP_SHARED_NETWORKS})
"""
Steps whose failure is recorded on the run without aborting it: integration cleanup and sync,
dependent notification, and shared resource teardown.
"""

INTEGRATION_STEPS: FrozenSet[Step] = frozenset({Step.INTEGRATE, Step.CLEANUP_INTEGRATIONS,
                                                Step.UPDATE_DEPENDENTS})
"""
Steps skipped when a run is made without integrations.
"""


class IntegrationKind(Enum):
    """
    Cross-service relationships that need syncing when one side changes.
    """

    metrics_stack = "metrics-stack"
    validator_peers = "validator-peers"
    node_peers = "node-peers"
    remote_signer = "remote-signer"


DEPENDENT_KINDS: FrozenSet[IntegrationKind] = frozenset({IntegrationKind.validator_peers,
                                                         IntegrationKind.remote_signer})
"""
Integrations that rewrite or restart dependent instances, run by `Step.UPDATE_DEPENDENTS`.
"""


class Patterns(NamedTuple):
    """
    Runtime resource names belonging to a service type.  A trailing `*` marks a prefix match.
    """

    containers: Tuple[str, ...] = ("{name}", "{name}-*")
    volumes: Tuple[str, ...] = ("{name}_*", "{name}-*")
    networks: Tuple[str, ...] = ()
    """
    Networks owned by a single instance, removed along with it.
    """
    shared_networks: Tuple[str, ...] = ()
    """
    Networks shared between instances, only removed once no consumer remains.
    """
    external_networks: Tuple[str, ...] = ()
    """
    Networks owned by other instances, joined but never removed.
    """
    directories: Tuple[str, ...] = ("{name}",)
    """
    Directories relative to the host root.
    """


class ServiceTypeDescriptor(NamedTuple):
    """
    Immutable description of how to manage a service type.
    """

    type: ServiceType
    patterns: Patterns
    lifecycle: Mapping[Action, Tuple[Step, ...]]
    integrations: FrozenSet[IntegrationKind] = frozenset()
    dependencies: FrozenSet[ServiceType] = frozenset()
    dependents: FrozenSet[ServiceType] = frozenset()
    singleton: bool = True
    names: Tuple[str, ...] = ()
    """
    Fixed instance names, if the type doesn't allocate them.
    """


class Resolved(NamedTuple):
    """
    Resource names for one instance, with all placeholders filled in.
    """

    containers: Tuple[NameQuery, ...]
    volumes: Tuple[NameQuery, ...]
    networks: Tuple[str, ...]
    shared_networks: Tuple[str, ...]
    external_networks: Tuple[str, ...]
    directories: Tuple[str, ...]

    @property
    def all_networks(self) -> Tuple[str, ...]:
        return self.networks + self.shared_networks + self.external_networks


_FORMATTER = Formatter()


def resolve_pattern(pattern: str, context: Mapping[str, Any]) -> List[str]:
    """
    Fill in the placeholders of a pattern.  List values expand into one result per item, and
    missing or empty values drop the pattern altogether:

        >>> resolve_pattern("{name}-net", {"name": "ethnode1"})
        ['ethnode1-net']
        >>> resolve_pattern("{ethnode_networks}", {"ethnode_networks": ["a-net", "b-net"]})
        ['a-net', 'b-net']
        >>> resolve_pattern("{ethnode_networks}", {})
        []
    """
    fields = [field for _, field, _, _ in _FORMATTER.parse(pattern) if field is not None]
    if not fields:
        return [pattern]
    results = [pattern]
    for field in fields:
        value = context.get(field)
        if not value:
            LOG.warning("Dropping pattern %r, no value for {%s}", pattern, field)
            return []
        values = value if isinstance(value, (list, tuple)) else [value]
        placeholder = "{%s}" % field
        results = [result.replace(placeholder, str(item)) for result in results for item in values]
    return results


def require_resolved(name: str) -> str:
    """
    Refuse a name that still carries placeholder syntax, before it's passed to a destructive call.
    """
    if "{" in name or "}" in name:
        raise ValidationError("Unresolved placeholder in {!r}".format(name))
    return name


def _resolve_all(patterns: Iterable[str], context: Mapping[str, Any]) -> List[str]:
    out: List[str] = []
    for pattern in patterns:
        for name in resolve_pattern(pattern, context):
            if name not in out:
                out.append(require_resolved(name))
    return out


class FlowRegistry:
    """
    Lookup of descriptors by service type.

    Every step used by a descriptor must be a `Step` member known to the executor, otherwise
    registration fails with `ValidationError`.  Once frozen, no further descriptors are accepted.
    """

    def __init__(self, known_steps: Iterable[Step] = tuple(Step)):
        self._known = frozenset(known_steps)
        self._descriptors: Dict[ServiceType, ServiceTypeDescriptor] = {}
        self._frozen = False

    def register(self, descriptor: ServiceTypeDescriptor) -> None:
        if self._frozen:
            raise ValidationError("Registry is frozen")
        if not isinstance(descriptor.type, ServiceType):
            raise ValidationError("Bad service type {!r}".format(descriptor.type))
        if descriptor.type in self._descriptors:
            raise ValidationError("Type {} already registered".format(descriptor.type.value))
        for action, steps in descriptor.lifecycle.items():
            if not isinstance(action, Action):
                raise ValidationError("Bad action {!r} for {}".format(action, descriptor.type.value))
            for step in steps:
                if not isinstance(step, Step) or step not in self._known:
                    raise ValidationError("Unknown step {!r} in {} {}"
                                          .format(step, descriptor.type.value, action.value))
        # Copy so that later changes to the caller's mapping can't leak in.
        lifecycle = MappingProxyType({action: tuple(steps)
                                      for action, steps in descriptor.lifecycle.items()})
        self._descriptors[descriptor.type] = descriptor._replace(lifecycle=lifecycle)

    def freeze(self) -> "FlowRegistry":
        self._frozen = True
        return self

    def lookup(self, type_: ServiceType) -> ServiceTypeDescriptor:
        """
        Fetch the descriptor for a type, raising `KeyError` if it isn't registered.
        """
        return self._descriptors[type_]

    def steps(self, type_: ServiceType, action: Action) -> Tuple[Step, ...]:
        """
        Fetch the ordered steps of an action, raising `ValidationError` if the type or action isn't
        defined.
        """
        try:
            descriptor = self.lookup(type_)
        except KeyError:
            raise ValidationError("Unknown service type {!r}".format(type_))
        try:
            return descriptor.lifecycle[action]
        except KeyError:
            raise ValidationError("Action {!r} not defined for {}"
                                  .format(getattr(action, "value", action), type_.value))

    def resolve(self, type_: ServiceType, context: Mapping[str, Any]) -> Resolved:
        """
        Produce concrete resource names for an instance from its type's patterns.
        """
        patterns = self.lookup(type_).patterns
        return Resolved(
            containers=tuple(NameQuery.parse(name)
                             for name in _resolve_all(patterns.containers, context)),
            volumes=tuple(NameQuery.parse(name)
                          for name in _resolve_all(patterns.volumes, context)),
            networks=tuple(_resolve_all(patterns.networks, context)),
            shared_networks=tuple(_resolve_all(patterns.shared_networks, context)),
            external_networks=tuple(_resolve_all(patterns.external_networks, context)),
            directories=tuple(_resolve_all(patterns.directories, context)))

    def types(self) -> Sequence[ServiceType]:
        return tuple(self._descriptors)

    def __contains__(self, type_: Any) -> bool:
        return type_ in self._descriptors


def _lifecycle(install: Sequence[Step], start: Sequence[Step], update: Sequence[Step],
               remove: Sequence[Step]) -> Dict[Action, Tuple[Step, ...]]:
    return {Action.install: tuple(install),
            Action.start: tuple(start),
            Action.stop: (Step.STOP_SERVICES,),
            Action.update: tuple(update),
            Action.remove: tuple(remove)}


ETHNODE = ServiceTypeDescriptor(
    type=ServiceType.ethnode,
    patterns=Patterns(networks=("{name}-net",)),
    lifecycle=_lifecycle(
        install=(Step.INSTALL, Step.INTEGRATE),
        start=(Step.ENSURE_NETWORKS, Step.START_SERVICES, Step.HEALTH_CHECK),
        update=(Step.CONFIGURE, Step.PULL_IMAGES, Step.RECREATE_SERVICES, Step.HEALTH_CHECK,
                Step.INTEGRATE),
        remove=(Step.STOP_SERVICES, Step.UPDATE_DEPENDENTS, Step.REMOVE_CONTAINERS,
                Step.REMOVE_VOLUMES, Step.REMOVE_NETWORKS, Step.REMOVE_DIRECTORIES,
                Step.CLEANUP_INTEGRATIONS)),
    integrations=frozenset({IntegrationKind.metrics_stack, IntegrationKind.validator_peers}),
    dependents=frozenset({ServiceType.validator}),
    singleton=False)

VALIDATOR = ServiceTypeDescriptor(
    type=ServiceType.validator,
    patterns=Patterns(shared_networks=("validator-net",),
                      external_networks=("web3signer-net", "{ethnode_networks}")),
    lifecycle=_lifecycle(
        install=(Step.INSTALL, Step.INTEGRATE),
        start=(Step.ENSURE_NETWORKS, Step.CONNECT_TO_NODES, Step.START_SERVICES,
               Step.HEALTH_CHECK),
        update=(Step.CONFIGURE, Step.PULL_IMAGES, Step.RECREATE_SERVICES, Step.HEALTH_CHECK,
                Step.INTEGRATE),
        remove=(Step.STOP_SERVICES, Step.CLEANUP_INTEGRATIONS, Step.REMOVE_CONTAINERS,
                Step.REMOVE_VOLUMES, Step.CLEANUP_SHARED_NETWORKS, Step.REMOVE_DIRECTORIES)),
    integrations=frozenset({IntegrationKind.metrics_stack, IntegrationKind.node_peers,
                            IntegrationKind.remote_signer}),
    dependencies=frozenset({ServiceType.ethnode, ServiceType.web3signer}),
    names=("vero", "teku-validator"))

WEB3SIGNER = ServiceTypeDescriptor(
    type=ServiceType.web3signer,
    patterns=Patterns(networks=("web3signer-net",)),
    lifecycle=_lifecycle(
        install=(Step.INSTALL, Step.INTEGRATE),
        start=(Step.ENSURE_NETWORKS, Step.START_SERVICES, Step.ENSURE_DATABASE,
               Step.HEALTH_CHECK),
        update=(Step.CONFIGURE, Step.PULL_IMAGES, Step.ENSURE_DATABASE, Step.RECREATE_SERVICES,
                Step.HEALTH_CHECK, Step.INTEGRATE),
        remove=(Step.STOP_SERVICES, Step.UPDATE_DEPENDENTS, Step.REMOVE_CONTAINERS,
                Step.REMOVE_VOLUMES, Step.REMOVE_NETWORKS, Step.REMOVE_DIRECTORIES,
                Step.CLEANUP_INTEGRATIONS)),
    integrations=frozenset({IntegrationKind.metrics_stack, IntegrationKind.remote_signer}),
    dependents=frozenset({ServiceType.validator}),
    names=("web3signer",))

MONITORING = ServiceTypeDescriptor(
    type=ServiceType.monitoring,
    patterns=Patterns(containers=("{name}-*",),
                      networks=("monitoring-net",),
                      external_networks=("validator-net", "web3signer-net",
                                         "{ethnode_networks}")),
    lifecycle=_lifecycle(
        install=(Step.INSTALL,),
        start=(Step.ENSURE_NETWORKS, Step.START_SERVICES, Step.HEALTH_CHECK),
        update=(Step.CONFIGURE, Step.PULL_IMAGES, Step.RECREATE_SERVICES, Step.HEALTH_CHECK,
                Step.REFRESH_METRICS),
        remove=(Step.STOP_SERVICES, Step.REMOVE_CONTAINERS, Step.REMOVE_VOLUMES,
                Step.REMOVE_NETWORKS, Step.REMOVE_DIRECTORIES)),
    dependents=frozenset({ServiceType.ethnode, ServiceType.validator, ServiceType.web3signer}),
    names=("monitoring",))

CATALOG: Tuple[ServiceTypeDescriptor, ...] = (ETHNODE, VALIDATOR, WEB3SIGNER, MONITORING)


def build_registry(known_steps: Iterable[Step] = tuple(Step),
                   descriptors: Iterable[ServiceTypeDescriptor] = CATALOG) -> FlowRegistry:
    """
    Create and freeze a registry holding the given descriptors.
    """
    registry = FlowRegistry(known_steps)
    for descriptor in descriptors:
        registry.register(descriptor)
    return registry.freeze()


REGISTRY = build_registry()
"""
Default registry of all service types.
"""
