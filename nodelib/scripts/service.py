"""
Scripts to install and manage service instances.
"""

from typing import Any, Dict, Optional

from ..errors import NodeLibError
from ..flows import Action, REGISTRY
from ..plumbing import resources
from ..services import (clean_staging as clean, detect_type, get_context, get_inventory,
                        get_staging, Host, ServiceInstance, ServiceType)
from ..tasks import lifecycle
from .utils import confirm, DocOptArgs, entrypoint, error, parse_pairs


def _run(host: Host, name, type_: ServiceType, action: Action, opts: DocOptArgs,
         params: Optional[Dict[str, Any]] = None):
    try:
        run = lifecycle.execute(host, name, type_, action,
                                include_integrations=not opts.get("--no-integrations"),
                                params=params)
    except NodeLibError as ex:
        error(str(ex), exit=1)
    print(run)
    if not run.ok:
        error(str(run.error), exit=1)
    elif run.failures:
        error("Completed with {} non-critical failure(s)".format(len(run.failures)))
    return run


@entrypoint
def install(opts: DocOptArgs, host: Host, type_: ServiceType):
    """
    Install a new instance of a service type.

    Parameters are passed as `KEY=VALUE`, e.g. `--param=execution=nethermind`.  For validators,
    `nodes` takes a comma-separated list of ethnodes.

    Usage: {script} TYPE [--param=KEY=VALUE...] [--no-integrations]
    """
    params = parse_pairs(opts["--param"])
    if "nodes" in params:
        params["nodes"] = [node for node in params["nodes"].split(",") if node]
    return _run(host, params.get("name"), type_, Action.install, opts, params)


@entrypoint
def start(opts: DocOptArgs, host: Host, instance: ServiceInstance):
    """
    Start an installed instance.

    Usage: {script} INSTANCE
    """
    return _run(host, instance.name, instance.type, Action.start, opts)


@entrypoint
def stop(opts: DocOptArgs, host: Host, instance: ServiceInstance):
    """
    Stop an installed instance, escalating through its client's shutdown plan if it has one.

    Usage: {script} INSTANCE
    """
    return _run(host, instance.name, instance.type, Action.stop, opts)


@entrypoint
def update(opts: DocOptArgs, host: Host, instance: ServiceInstance):
    """
    Update an instance's settings, pull new images and recreate its containers.

    Settings are `.env` keys, e.g. `--env=EL_VERSION=v1.2.3`.

    Usage: {script} INSTANCE [--env=KEY=VALUE...] [--no-integrations]
    """
    env = parse_pairs(opts["--env"])
    return _run(host, instance.name, instance.type, Action.update, opts, {"env": env})


@entrypoint
def remove(opts: DocOptArgs, host: Host, name: str):
    """
    Remove an instance and all of its containers, volumes and data.

    This also works on partially removed instances whose directory has already gone.

    Usage: {script} NAME [--yes] [--no-integrations]
    """
    try:
        type_ = detect_type(name)
    except NodeLibError as ex:
        error(str(ex), exit=1)
    print("Instance: {} ({})".format(name, type_.value))
    confirm("Remove this instance and all of its data?", opts)
    return _run(host, name, type_, Action.remove, opts)


@entrypoint
def status(opts: DocOptArgs, host: Host):
    """
    List installed instances and their runtime status.

    Usage: {script}
    """
    for instance in get_inventory(host):
        resolved = REGISTRY.resolve(instance.type, get_context(host, instance.name))
        print("{}\t{}\t{}".format(instance.name, instance.type.value,
                                  resources.get_status(host, instance, resolved).name))


@entrypoint
def clean_staging(opts: DocOptArgs, host: Host):
    """
    Delete staging directories left behind by interrupted installs.

    Only run this while no install is in progress.

    Usage: {script} [--yes]
    """
    paths = get_staging(host)
    if not paths:
        print("No staging directories")
        return
    for path in paths:
        print(path)
    confirm("Delete these directories?", opts)
    return clean(host)
