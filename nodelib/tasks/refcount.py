"""
Reference counting for runtime resources shared between instances.
"""

import logging
from typing import Dict, Iterable, NamedTuple, Optional, Set, Tuple

from ..plumbing import resources
from ..plumbing.common import Collect, Result
from ..services import detect_type, get_instances, get_owner, Host, ServiceType


LOG = logging.getLogger(__name__)


class SharedResource(NamedTuple):
    """
    A runtime resource used by every instance of the consumer types.
    """

    name: str
    kind: str
    consumer_types: Tuple[ServiceType, ...]


SHARED: Dict[str, SharedResource] = {res.name: res for res in (
    SharedResource("validator-net", "network", (ServiceType.validator,)),
)}
"""
Known shared resources, by name.
"""


def get_consumers(host: Host, consumer_type: ServiceType,
                  excluding: Optional[str] = None) -> Tuple[Set[str], Set[str]]:
    """
    Find instances of a type that still hold a reference: those installed (even if stopped), and
    those with a running container (even if their directory is gone).
    """
    installed = {inst.name for inst in get_instances(host, consumer_type, excluding)}
    running: Set[str] = set()
    for container in host.docker.containers(running_only=True):
        owner = get_owner(container)
        if owner and owner != excluding and detect_type(owner) is consumer_type:
            running.add(owner)
    return installed, running


def can_remove(host: Host, resource_name: str, consumer_types: Iterable[ServiceType],
               excluding: Optional[str] = None) -> bool:
    """
    Decide if a shared resource may be torn down: no instance of any consumer type, apart from the
    excluded one, may be installed or running.
    """
    for consumer_type in consumer_types:
        installed, running = get_consumers(host, consumer_type, excluding)
        if installed or running:
            LOG.info("Keeping %s, still used by %s", resource_name,
                     ", ".join(sorted(installed | running)))
            return False
    return True


@Result.collect_value
def release_networks(host: Host, names: Iterable[str],
                     excluding: Optional[str] = None) -> Collect[int]:
    """
    Remove each shared network whose consumers are all gone.  Returns the number removed.
    """
    removed = 0
    for name in names:
        resource = SHARED.get(name)
        if not resource:
            LOG.warning("No reference info for %s, leaving it", name)
            continue
        if not can_remove(host, name, resource.consumer_types, excluding):
            continue
        res_remove = yield from resources.remove_networks(host, [name])
        removed += res_remove.value.acted
    return removed
