"""
Configuration of the metrics stack derived from the host inventory, regenerated under lock.

Each derived file is a `ConfigArtifact`.  Regeneration always starts from a fresh inventory scan
and rewrites the whole file, rather than patching entries in and out, so repeated runs converge
on the same output whatever changed in between.
"""

import logging
import os.path
from typing import Callable, Optional

from .. import config
from ..artifacts import builders, validate_compose, validate_scrape_config
from ..errors import RuntimeCallFailure
from ..flows import REGISTRY
from ..plumbing import files, resources
from ..plumbing.common import Collect, poll, Result, State
from ..plumbing.http import is_ready, trigger
from ..plumbing.lock import named_lock
from ..services import (get_context, get_instances, Host, ServiceInstance, ServiceType, Snapshot,
                        Status, take_snapshot)


LOG = logging.getLogger(__name__)

NAME = "monitoring"


class ConfigArtifact:
    """
    A file fully derived from an inventory snapshot.

    The file is only ever replaced by writing a temporary copy, validating it, and renaming it
    into place, all while holding the named lock.
    """

    def __init__(self, path: str, lock_name: str, render: Callable[[Snapshot], str],
                 validate: Callable[[str], object]):
        self.path = path
        self.lock_name = lock_name
        self.render = render
        self.validate = validate

    def __repr__(self):
        return "<{}: {!r}>".format(self.__class__.__name__, self.path)


def get_scrape_artifact(host: Host) -> ConfigArtifact:
    return ConfigArtifact(os.path.join(host.path(NAME), "prometheus.yml"), "prometheus-config",
                          lambda snapshot: builders.render_scrape_config(snapshot, NAME),
                          validate_scrape_config)


def get_compose_artifact(host: Host) -> ConfigArtifact:
    return ConfigArtifact(os.path.join(host.path(NAME), "compose.yml"), "monitoring-compose",
                          lambda snapshot: builders.render_monitoring_compose(snapshot, NAME),
                          validate_compose)


def regenerate_config(host: Host, artifact: ConfigArtifact, snapshot: Snapshot) -> Result[bool]:
    """
    Rebuild an artifact from the given inventory snapshot.

    Raises `ValidationError` if the new content doesn't validate (the previous file is kept), or
    `LockTimeoutError` if another regeneration holds the lock for too long.  The result value says
    whether the file changed.
    """
    with named_lock(host.settings.lock_dir, artifact.lock_name, host.settings.lock_timeout,
                    host.clock):
        content = artifact.render(snapshot)
        result = files.replace_file(artifact.path, content, validate=artifact.validate)
    if result:
        LOG.info("Regenerated %r", artifact.path)
    else:
        LOG.debug("No changes to %r", artifact.path)
    return Result(result.state, bool(result))


def _get_port(host: Host, instance: ServiceInstance) -> int:
    value = files.get_env(instance.env_path).get("PROMETHEUS_PORT", "")
    return int(value) if value.isdigit() else host.settings.prometheus_port


def reload_collector(host: Host, instance: ServiceInstance) -> Result[None]:
    """
    Ask Prometheus to reload its configuration, falling back to restarting it.
    """
    base = "http://localhost:{}".format(_get_port(host, instance))
    if trigger(host.http, "{}/-/reload".format(base), config.HTTP_TIMEOUT):
        LOG.info("Reloaded collector configuration")
        return Result(State.success)
    LOG.warning("Collector reload failed, restarting it")
    host.docker.compose_restart(instance.path, "prometheus")
    ready = poll(lambda: is_ready(host.http, "{}/-/ready".format(base)),
                 host.settings.poll_interval, 30, host.clock)
    if not ready:
        LOG.warning("Collector not ready after restart")
    return Result(State.success)


@Result.collect_value
def refresh(host: Host, excluding: Optional[str] = None) -> Collect[bool]:
    """
    Regenerate all derived metrics configuration from a fresh scan, then reload or restart the
    collector to pick it up.  Does nothing if the metrics stack isn't installed.

    Pass `excluding` to leave out an instance that's being removed.
    """
    instances = get_instances(host, ServiceType.monitoring)
    if not instances:
        LOG.debug("Metrics stack not installed, nothing to refresh")
        return False
    instance = instances[0]
    snapshot = take_snapshot(host, excluding=excluding)
    res_compose = yield from regenerate_config(host, get_compose_artifact(host), snapshot)
    res_scrape = yield from regenerate_config(host, get_scrape_artifact(host), snapshot)
    if not (res_compose.value or res_scrape.value):
        return False
    resolved = REGISTRY.resolve(instance.type, get_context(host, instance.name))
    if resources.get_status(host, instance, resolved) is not Status.running:
        LOG.info("Metrics stack not running, changes apply on next start")
        return True
    if res_compose.value:
        # Network membership changed, so the collector has to be recreated.
        yield resources.ensure_networks(host, builders.get_monitoring_networks(snapshot))
        try:
            host.docker.compose_up(instance.path)
        except RuntimeCallFailure:
            LOG.error("Failed to apply network changes to the metrics stack")
            raise
        yield Result(State.success)
    else:
        yield reload_collector(host, instance)
    return True
