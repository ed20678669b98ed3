"""
Lifecycle executor: run the steps of an action for one instance, in order.

Each `Step` has a single handler in `HANDLERS`.  Failures are tiered:

- a non-critical step (see `nodelib.flows.NON_CRITICAL`) that fails is recorded, and the run
  carries on, ending as `partial`
- any other failing step aborts the run straight away, ending as `failed`

Step failures are never raised from `execute`; call `LifecycleRun.check` to turn a failed run into
a `CriticalStepFailure`.
"""

from enum import Enum
import logging
from typing import Any, Callable, Dict, List, Mapping, NamedTuple, Optional

from .. import config
from ..errors import CriticalStepFailure, NodeLibError, NonCriticalStepFailure, ValidationError
from ..flows import (Action, DEPENDENT_KINDS, FlowRegistry, INTEGRATION_STEPS, NON_CRITICAL,
                     REGISTRY, Resolved, Step)
from ..plumbing import files, resources
from ..plumbing.common import poll, Result, State
from ..services import (detect_type, get_context, get_instances, Host, ServiceInstance,
                        ServiceType)
from . import installer, integrations, monitoring, refcount


LOG = logging.getLogger(__name__)


class StepStatus(Enum):
    """
    Outcome of a single step.
    """

    success = "success"
    skipped = "skipped"
    non_critical_failure = "non-critical-failure"
    critical_failure = "critical-failure"


class Outcome(Enum):
    """
    Overall outcome of a run.
    """

    success = "success"
    partial = "partial"
    """
    All critical steps passed, but at least one non-critical step failed.
    """
    failed = "failed"


class StepOutcome(NamedTuple):
    step: Step
    status: StepStatus
    result: Optional[Result] = None
    error: Optional[Exception] = None


class LifecycleRun:
    """
    Record of one action on one instance.  Not persisted anywhere.
    """

    def __init__(self, name: Optional[str], type_: ServiceType, action: Action):
        self.name = name
        self.type = type_
        self.action = action
        self.steps: List[StepOutcome] = []
        self.error: Optional[CriticalStepFailure] = None

    @property
    def outcome(self) -> Outcome:
        if self.error:
            return Outcome.failed
        elif self.failures:
            return Outcome.partial
        return Outcome.success

    @property
    def failures(self) -> List[StepOutcome]:
        return [step for step in self.steps if step.status is StepStatus.non_critical_failure]

    @property
    def ok(self) -> bool:
        """
        Whether the run was operationally successful, i.e. no critical step failed.
        """
        return self.error is None

    def check(self) -> "LifecycleRun":
        """
        Raise the critical failure that aborted this run, if any.
        """
        if self.error:
            raise self.error
        return self

    def __repr__(self):
        return "<{}: {} {} {}>".format(self.__class__.__name__, self.action.value, self.name,
                                       self.outcome.value)

    def __str__(self):
        lines = ["{} {} ({}): {}".format(self.action.value, self.name, self.type.value,
                                         self.outcome.value)]
        for outcome in self.steps:
            line = "    {}: {}".format(outcome.step.value, outcome.status.value)
            if outcome.error:
                line = "{} ({})".format(line, outcome.error)
            elif outcome.result is not None:
                try:
                    value = outcome.result.value
                except ValueError:
                    pass
                else:
                    line = "{} [{}]".format(line, value)
            lines.append(line)
        return "\n".join(lines)


class StepContext:
    """
    Everything a step handler needs to act on the instance under operation.
    """

    def __init__(self, host: Host, name: Optional[str], type_: ServiceType, action: Action,
                 params: Mapping[str, Any], registry: FlowRegistry):
        self.host = host
        self.name = name
        self.type = type_
        self.action = action
        self.params = params
        self.registry = registry

    @property
    def instance(self) -> ServiceInstance:
        if not self.name:
            raise ValidationError("No instance name for {} step".format(self.action.value))
        return ServiceInstance(self.name, self.type, self.host.path(self.name))

    @property
    def resolved(self) -> Resolved:
        # Resolved per use, as earlier steps may have changed the inventory.
        return self.registry.resolve(self.type, get_context(self.host, self.name))

    @property
    def kinds(self):
        return self.registry.lookup(self.type).integrations


def _install(ctx: StepContext) -> Result:
    params = dict(ctx.params)
    if ctx.name:
        params.setdefault("name", ctx.name)
    result = installer.install(ctx.host, ctx.type, params)
    ctx.name = result.value.instance.name
    return result


def _integrate(ctx: StepContext) -> Result:
    event = (integrations.Event.added if ctx.action is Action.install
             else integrations.Event.changed)
    return integrations.dispatch(ctx.host, ctx.instance, event)


def _cleanup_integrations(ctx: StepContext) -> Result:
    return integrations.dispatch(ctx.host, ctx.instance, integrations.Event.removed,
                                 ctx.kinds - DEPENDENT_KINDS)


def _update_dependents(ctx: StepContext) -> Result:
    dependents = ctx.registry.lookup(ctx.type).dependents
    if not any(get_instances(ctx.host, type_) for type_ in dependents):
        LOG.debug("No dependents of %s installed", ctx.name)
        return Result(State.unchanged)
    return integrations.dispatch(ctx.host, ctx.instance, integrations.Event.removed,
                                 ctx.kinds & DEPENDENT_KINDS)


def _configure(ctx: StepContext) -> Result:
    return files.update_env(ctx.instance.env_path, ctx.params.get("env") or {})


def _ensure_networks(ctx: StepContext) -> Result:
    return resources.ensure_networks(ctx.host, ctx.resolved.all_networks)


def _connect_to_nodes(ctx: StepContext) -> Result:
    return integrations.check_node_peers(ctx.host, ctx.instance, integrations.Event.changed)


def _start_services(ctx: StepContext) -> Result:
    ctx.host.docker.compose_up(ctx.instance.path)
    return Result(State.success)


def _ensure_database(ctx: StepContext) -> Result:
    container = "{}-postgres".format(ctx.name)

    def ready() -> bool:
        try:
            ctx.host.docker.exec(container, ["pg_isready", "-U", "postgres"],
                                 timeout=config.RPC_TIMEOUT)
        except NodeLibError:
            return False
        return True

    interval = ctx.host.settings.poll_interval
    if not poll(ready, interval, interval * ctx.host.settings.probe_attempts, ctx.host.clock):
        raise NodeLibError("Database {} not ready".format(container))
    return Result(State.unchanged, True)


def _health_check(ctx: StepContext) -> Result:
    instance = ctx.instance
    return resources.health_check(ctx.host, instance, ctx.resolved,
                                  url=resources.get_health_url(instance),
                                  attempts=ctx.host.settings.probe_attempts)


def _stop_services(ctx: StepContext) -> Result:
    return resources.stop_containers(ctx.host, ctx.instance, ctx.resolved)


def _pull_images(ctx: StepContext) -> Result:
    ctx.host.docker.compose_pull(ctx.instance.path)
    return Result(State.success)


def _recreate_services(ctx: StepContext) -> Result:
    ctx.host.docker.compose_up(ctx.instance.path, recreate=True)
    return Result(State.success)


def _refresh_metrics(ctx: StepContext) -> Result:
    return monitoring.refresh(ctx.host)


def _remove_containers(ctx: StepContext) -> Result:
    return resources.remove_containers(ctx.host, ctx.resolved)


def _remove_volumes(ctx: StepContext) -> Result:
    return resources.remove_volumes(ctx.host, ctx.resolved)


def _remove_networks(ctx: StepContext) -> Result:
    return resources.remove_networks(ctx.host, ctx.resolved.networks)


def _cleanup_shared_networks(ctx: StepContext) -> Result:
    return refcount.release_networks(ctx.host, ctx.resolved.shared_networks, excluding=ctx.name)


def _remove_directories(ctx: StepContext) -> Result:
    return resources.remove_directories(ctx.host, ctx.resolved)


HANDLERS: Dict[Step, Callable[[StepContext], Result]] = {
    Step.INSTALL: _install,
    Step.INTEGRATE: _integrate,
    Step.CONFIGURE: _configure,
    Step.ENSURE_NETWORKS: _ensure_networks,
    Step.CONNECT_TO_NODES: _connect_to_nodes,
    Step.START_SERVICES: _start_services,
    Step.ENSURE_DATABASE: _ensure_database,
    Step.HEALTH_CHECK: _health_check,
    Step.STOP_SERVICES: _stop_services,
    Step.PULL_IMAGES: _pull_images,
    Step.RECREATE_SERVICES: _recreate_services,
    Step.REFRESH_METRICS: _refresh_metrics,
    Step.UPDATE_DEPENDENTS: _update_dependents,
    Step.CLEANUP_INTEGRATIONS: _cleanup_integrations,
    Step.REMOVE_CONTAINERS: _remove_containers,
    Step.REMOVE_VOLUMES: _remove_volumes,
    Step.REMOVE_NETWORKS: _remove_networks,
    Step.CLEANUP_SHARED_NETWORKS: _cleanup_shared_networks,
    Step.REMOVE_DIRECTORIES: _remove_directories,
}

_MISSING = set(Step) - set(HANDLERS)
if _MISSING:
    raise ImportError("No handlers for steps: {}".format(", ".join(sorted(step.value
                                                                          for step in _MISSING))))


def _validate(name: Optional[str], type_: Any, action: Any, registry: FlowRegistry) -> None:
    if not isinstance(type_, ServiceType) or type_ not in registry:
        raise ValidationError("Unknown service type {!r}".format(type_))
    if not isinstance(action, Action):
        raise ValidationError("Unknown action {!r}".format(action))
    if name is None:
        if action is not Action.install:
            raise ValidationError("An instance name is needed to {}".format(action.value))
        return
    actual = detect_type(name)
    if actual is not type_:
        raise ValidationError("{!r} is a {}, not a {}".format(name, actual.value, type_.value))


def execute(host: Host, name: Optional[str], type_: ServiceType, action: Action,
            include_integrations: bool = True, params: Optional[Mapping[str, Any]] = None,
            registry: FlowRegistry = REGISTRY) -> LifecycleRun:
    """
    Run an action on an instance, returning a record of every step.

    Raises `ValidationError` before doing anything if the type, action or name is invalid.  The
    name may be omitted for installs of types that allocate their own names.
    """
    _validate(name, type_, action, registry)
    steps = registry.steps(type_, action)
    ctx = StepContext(host, name, type_, action, params or {}, registry)
    run = LifecycleRun(name, type_, action)
    LOG.info("Starting %s of %s (%s)", action.value, name or "new instance", type_.value)
    for step in steps:
        if step in INTEGRATION_STEPS and not include_integrations:
            LOG.debug("Skipping %s", step.value)
            run.steps.append(StepOutcome(step, StepStatus.skipped))
            continue
        LOG.info("Step %s", step.value)
        try:
            result = HANDLERS[step](ctx)
        except Exception as ex:
            if step in NON_CRITICAL:
                LOG.warning("Non-critical step %s failed: %s", step.value, ex,
                            exc_info=not isinstance(ex, NodeLibError))
                run.steps.append(StepOutcome(step, StepStatus.non_critical_failure,
                                             error=NonCriticalStepFailure(step, ex)))
                continue
            LOG.error("Step %s failed, aborting %s: %s", step.value, action.value, ex,
                      exc_info=not isinstance(ex, NodeLibError))
            failure = CriticalStepFailure(step, ex)
            run.steps.append(StepOutcome(step, StepStatus.critical_failure, error=failure))
            run.error = failure
            break
        run.steps.append(StepOutcome(step, StepStatus.success, result))
        # Installs may only learn their name once the install step has run.
        run.name = ctx.name
    LOG.info("Finished %s of %s: %s", action.value, run.name, run.outcome.value)
    return run
