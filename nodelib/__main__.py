import code
import logging

from nodelib import artifacts, clients, config, flows, plumbing as p, services
from nodelib.flows import Action, REGISTRY, Step
from nodelib.plumbing.common import *
from nodelib.services import Host, ServiceType
from nodelib.tasks import installer, integrations, lifecycle, monitoring, refcount


host = Host()


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    code.interact(local=globals())
