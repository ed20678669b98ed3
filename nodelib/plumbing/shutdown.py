"""
Tiered shutdown of clients that need time to flush state to disk.

A `ShutdownPlan` lists stages in escalating order, and always ends with a forced teardown:

- `ControlPlaneShutdown`: ask the client to exit via its admin API, then wait
- `SignalShutdown`: send a termination signal to the container, then wait
- `ForceTeardown`: remove the whole container group with a short grace period

The `Escalator` walks a plan for one container.  Every wait is a bounded poll, so a run always
finishes within the sum of the stage timeouts (plus the runtime calls themselves).
"""

from enum import Enum
import logging
from typing import Dict, List, NamedTuple, Optional, Sequence, Union

from .. import config
from ..errors import RuntimeCallFailure, ValidationError
from .common import Clock, poll
from .docker import DockerClient
from .http import rpc_call


LOG = logging.getLogger(__name__)


class ShutdownState(Enum):
    """
    Position of an `Escalator` in its plan.
    """

    NOT_ATTEMPTED = "not-attempted"
    CONTROL_PLANE_REQUESTED = "control-plane-requested"
    WAITING_CONTROL_PLANE = "waiting-control-plane"
    SIGNAL_SENT = "signal-sent"
    WAITING_SIGNAL = "waiting-signal"
    STOPPED_GRACEFULLY = "stopped-gracefully"
    """
    Terminal: the container exited by itself.
    """
    FORCED_TEARDOWN = "forced-teardown"
    """
    Terminal: the group was removed regardless of the client's state.
    """

    @property
    def terminal(self) -> bool:
        return self in (ShutdownState.STOPPED_GRACEFULLY, ShutdownState.FORCED_TEARDOWN)


class ControlPlaneShutdown(NamedTuple):
    timeout: float
    method: str = "admin_shutdown"


class SignalShutdown(NamedTuple):
    timeout: float
    signal: str = "TERM"


class ForceTeardown(NamedTuple):
    grace: int = 10


Stage = Union[ControlPlaneShutdown, SignalShutdown, ForceTeardown]

_ORDER = (ControlPlaneShutdown, SignalShutdown, ForceTeardown)


class ShutdownPlan:
    """
    Ordered shutdown stages for a client.  Stages must appear in escalating order, at most once
    each, and the plan must end with `ForceTeardown`.
    """

    def __init__(self, client: str, stages: Sequence[Stage]):
        stages = tuple(stages)
        if not stages or not isinstance(stages[-1], ForceTeardown):
            raise ValidationError("Shutdown plan for {} must end with ForceTeardown".format(client))
        ranks = [_ORDER.index(type(stage)) for stage in stages]
        if ranks != sorted(set(ranks)):
            raise ValidationError("Shutdown plan for {} is out of order".format(client))
        self.client = client
        self.stages = stages

    @property
    def ceiling(self) -> float:
        """
        Total time that waits in this plan may take.
        """
        return sum(getattr(stage, "timeout", 0) for stage in self.stages)

    def __repr__(self):
        return "<{}: {} {!r}>".format(self.__class__.__name__, self.client,
                                      [type(stage).__name__ for stage in self.stages])


PLANS: Dict[str, ShutdownPlan] = {plan.client: plan for plan in (
    ShutdownPlan("nethermind", (ControlPlaneShutdown(120), SignalShutdown(120), ForceTeardown(10))),
    ShutdownPlan("besu", (SignalShutdown(45), ForceTeardown(10))),
)}
"""
Clients that need cooperative shutdown; anything else is stopped as a plain group.
"""


def get_plan(client: Optional[str]) -> Optional[ShutdownPlan]:
    return PLANS.get(client) if client else None


class Escalator:
    """
    Walk a shutdown plan for a single container, then tear down the rest of its compose project
    in `path`.  The transition history is kept for inspection:

        esc = Escalator(host.docker, host.clock, plan, "ethnode1-nethermind", path,
                        rpc_url="http://127.0.0.1:8545", session=host.http)
        esc.run()
        esc.history  # [NOT_ATTEMPTED, CONTROL_PLANE_REQUESTED, ...]
    """

    def __init__(self, docker: DockerClient, clock: Clock, plan: ShutdownPlan, container: str,
                 path: Optional[str], rpc_url: Optional[str] = None, session=None,
                 interval: float = config.POLL_INTERVAL):
        self.docker = docker
        self.clock = clock
        self.plan = plan
        self.container = container
        self.path = path
        self.rpc_url = rpc_url
        self.session = session
        self.interval = interval
        self.state = ShutdownState.NOT_ATTEMPTED
        self.history: List[ShutdownState] = [self.state]

    def _move(self, state: ShutdownState) -> None:
        LOG.info("Shutdown of %s: %s", self.container, state.value)
        self.state = state
        self.history.append(state)

    def _stopped(self) -> bool:
        return not self.docker.is_running(self.container)

    def _wait(self, timeout: float) -> bool:
        return poll(self._stopped, self.interval, timeout, self.clock)

    def _request(self, stage: ControlPlaneShutdown) -> bool:
        if not (self.rpc_url and self.session):
            return False
        self._move(ShutdownState.CONTROL_PLANE_REQUESTED)
        resp = rpc_call(self.session, self.rpc_url, stage.method, timeout=config.RPC_TIMEOUT)
        if resp and "result" in resp:
            return True
        LOG.warning("No shutdown acknowledgement from %s, escalating", self.container)
        return False

    def _signal(self, stage: SignalShutdown) -> None:
        self._move(ShutdownState.SIGNAL_SENT)
        try:
            self.docker.kill(self.container, stage.signal)
        except RuntimeCallFailure as ex:
            LOG.warning("Failed to signal %s: %s", self.container, ex)

    def _down(self, grace: int) -> None:
        if not self.path:
            return
        try:
            self.docker.compose_down(self.path, timeout=grace)
        except RuntimeCallFailure as ex:
            LOG.warning("Teardown of %r failed: %s", self.path, ex)

    def _graceful(self) -> ShutdownState:
        self._move(ShutdownState.STOPPED_GRACEFULLY)
        self._down(5)
        return self.state

    def run(self) -> ShutdownState:
        """
        Run the plan to completion, returning the terminal state reached.
        """
        if self.state.terminal:
            return self.state
        if self._stopped():
            return self._graceful()
        for stage in self.plan.stages:
            if isinstance(stage, ControlPlaneShutdown):
                if not self._request(stage):
                    continue
                self._move(ShutdownState.WAITING_CONTROL_PLANE)
                if self._wait(stage.timeout):
                    return self._graceful()
                LOG.warning("%s still running after %ss, escalating", self.container,
                            stage.timeout)
            elif isinstance(stage, SignalShutdown):
                self._signal(stage)
                self._move(ShutdownState.WAITING_SIGNAL)
                if self._wait(stage.timeout):
                    return self._graceful()
                LOG.warning("%s ignored SIG%s for %ss, forcing", self.container, stage.signal,
                            stage.timeout)
            else:
                self._move(ShutdownState.FORCED_TEARDOWN)
                self._down(stage.grace)
                return self.state
        raise AssertionError("Shutdown plan without ForceTeardown")
