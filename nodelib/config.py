"""
Defaults for paths, timeouts and ports, plus loading of local overrides.

Overrides are read from an optional INI file (`~/.nodeboi/nodelib.ini` by default), from its
`[nodelib]` section, and the install root can also be set with the `NODELIB_ROOT` environment
variable:

    [nodelib]
    root = /srv/stack
    lock_timeout = 60
"""

from configparser import ConfigParser
import logging
import os
import os.path
from typing import Optional


LOG = logging.getLogger(__name__)


ROOT = os.path.expanduser("~")
"""
Directory holding one subdirectory per installed service instance.
"""

STATE_DIR = os.path.join(ROOT, ".nodeboi")
"""
Private state: config overrides and lock files.
"""

CONFIG_FILE = os.path.join(STATE_DIR, "nodelib.ini")
"""
Default location of the overrides file.
"""

POLL_INTERVAL = 3.0
"""
Seconds between liveness checks while waiting on a container.
"""

LOCK_TIMEOUT = 30.0
"""
Seconds to wait for a named config lock before giving up.
"""

GROUP_STOP_TIMEOUT = 30
"""
Grace period passed to `compose down` for services without a shutdown plan.
"""

PROBE_ATTEMPTS = 30
"""
Number of health probes made after starting a freshly installed service.
"""

RPC_TIMEOUT = 5.0
"""
Request timeout for administrative JSON-RPC calls.
"""

HTTP_TIMEOUT = 10.0
"""
Request timeout for readiness probes and collector reloads.
"""

PROMETHEUS_PORT = 9090
GRAFANA_PORT = 3000
NODE_EXPORTER_PORT = 9100
SIGNER_PORT = 7500
BEACON_API_PORT = 5052
EL_RPC_PORT = 8545


class Settings:
    """
    Effective configuration for a host, starting from the module defaults.
    """

    def __init__(self, root: str = ROOT, state_dir: Optional[str] = None,
                 poll_interval: float = POLL_INTERVAL, lock_timeout: float = LOCK_TIMEOUT,
                 group_stop_timeout: int = GROUP_STOP_TIMEOUT,
                 probe_attempts: int = PROBE_ATTEMPTS, prometheus_port: int = PROMETHEUS_PORT):
        self.root = root
        self.state_dir = state_dir or os.path.join(root, ".nodeboi")
        self.poll_interval = poll_interval
        self.lock_timeout = lock_timeout
        self.group_stop_timeout = group_stop_timeout
        self.probe_attempts = probe_attempts
        self.prometheus_port = prometheus_port

    @property
    def lock_dir(self) -> str:
        return os.path.join(self.state_dir, "locks")

    def __repr__(self):
        return "<{}: {!r}>".format(self.__class__.__name__, self.root)


def load(path: Optional[str] = None) -> Settings:
    """
    Build `Settings` from the defaults, the overrides file if present, and the environment.
    """
    parser = ConfigParser()
    path = path or CONFIG_FILE
    if parser.read(path):
        LOG.debug("Loaded overrides from %r", path)
    section = parser["nodelib"] if parser.has_section("nodelib") else {}
    root = os.getenv("NODELIB_ROOT") or section.get("root") or ROOT
    root = os.path.expanduser(root)
    return Settings(root=root,
                    state_dir=section.get("state_dir"),
                    poll_interval=float(section.get("poll_interval", POLL_INTERVAL)),
                    lock_timeout=float(section.get("lock_timeout", LOCK_TIMEOUT)),
                    group_stop_timeout=int(section.get("group_stop_timeout", GROUP_STOP_TIMEOUT)),
                    probe_attempts=int(section.get("probe_attempts", PROBE_ATTEMPTS)),
                    prometheus_port=int(section.get("prometheus_port", PROMETHEUS_PORT)))
