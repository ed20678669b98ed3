"""
Helpers for running tasks against a fake host.

`FakeDocker` stands in for `DockerClient`, keeping containers, volumes and networks in memory.
Compose projects are read from the instance directory (`COMPOSE_FILE` in `.env`, else
`compose.yml`), so `compose_up` creates exactly the containers, volumes and network attachments
that the generated files describe.  Any method can be made to fail by adding its name to
`failures`, and every call is recorded in `calls`.

`FakeClock` advances only when slept on, so bounded waits finish instantly while still reporting
how long they would have taken.
"""

import os.path
import tempfile
from typing import Dict, List, Optional, Set, Tuple
from unittest.mock import Mock

import requests
import yaml

from nodelib.config import Settings
from nodelib.errors import RuntimeCallFailure
from nodelib.flows import Action
from nodelib.plumbing.docker import NameQuery
from nodelib.plumbing.files import get_env
from nodelib.services import Host, ServiceType
from nodelib.tasks import lifecycle


class FakeClock:

    def __init__(self):
        self.now = 0.0

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class FakeDocker:

    def __init__(self):
        self.running: Dict[str, bool] = {}
        self.volume_names: Set[str] = set()
        self.attached: Dict[str, Set[str]] = {}
        self.calls: List[Tuple] = []
        self.failures: Dict[str, Exception] = {}
        self.stubborn: Set[str] = set()
        """
        Containers that ignore stop requests and signals, and only go away with the project.
        """
        self.broken: Set[str] = set()
        """
        Containers that exit straight after being started.
        """

    def _call(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        if method in self.failures:
            raise self.failures[method]

    def called(self, method: str) -> List[Tuple]:
        return [call[1:] for call in self.calls if call[0] == method]

    def add_container(self, name: str, running: bool = True, networks=()) -> None:
        self.running[name] = running
        for network in networks:
            self.attached.setdefault(network, set()).add(name)

    def _detach(self, container: str) -> None:
        for members in self.attached.values():
            members.discard(container)

    def _project(self, path: str) -> Tuple[Dict[str, List[str]], Set[str]]:
        files = get_env(os.path.join(path, ".env")).get("COMPOSE_FILE") or "compose.yml"
        services: Dict[str, dict] = {}
        networks: Dict[str, dict] = {}
        volumes: Dict[str, dict] = {}
        for name in files.split(":"):
            with open(os.path.join(path, name)) as handle:
                data = yaml.safe_load(handle) or {}
            services.update(data.get("services") or {})
            networks.update(data.get("networks") or {})
            volumes.update(data.get("volumes") or {})
        project = os.path.basename(path)
        containers = {}
        for key, service in services.items():
            name = service.get("container_name") or "{}-{}-1".format(project, key)
            containers[name] = [(networks.get(net) or {}).get("name") or net
                                for net in service.get("networks") or ()]
        found = {(volume or {}).get("name") or "{}_{}".format(project, key)
                 for key, volume in volumes.items()}
        return containers, found

    def _names(self, names, query: Optional[NameQuery]) -> List[str]:
        return sorted(name for name in names if not query or query.matches(name))

    def containers(self, query: Optional[NameQuery] = None, running_only: bool = False) -> List[str]:
        self._call("containers", query, running_only)
        return self._names((name for name, up in self.running.items() if up or not running_only),
                           query)

    def volumes(self, query: Optional[NameQuery] = None) -> List[str]:
        self._call("volumes", query)
        return self._names(self.volume_names, query)

    def networks(self, query: Optional[NameQuery] = None) -> List[str]:
        self._call("networks", query)
        return self._names(self.attached, query)

    def network_containers(self, network: str) -> List[str]:
        self._call("network_containers", network)
        return sorted(self.attached.get(network, ()))

    def is_running(self, container: str) -> bool:
        self.calls.append(("is_running", container))
        return self.running.get(container, False)

    def create_network(self, name: str) -> None:
        self._call("create_network", name)
        if name in self.attached:
            raise RuntimeCallFailure(["docker", "network", "create", name], 1, "already exists")
        self.attached[name] = set()

    def remove_network(self, name: str) -> None:
        self._call("remove_network", name)
        if name not in self.attached:
            raise RuntimeCallFailure(["docker", "network", "rm", name], 1, "not found")
        if self.attached[name]:
            raise RuntimeCallFailure(["docker", "network", "rm", name], 1,
                                     "network has active endpoints")
        del self.attached[name]

    def disconnect(self, network: str, container: str) -> None:
        self._call("disconnect", network, container)
        self.attached.get(network, set()).discard(container)

    def remove_container(self, name: str) -> None:
        self._call("remove_container", name)
        if name not in self.running:
            raise RuntimeCallFailure(["docker", "rm", name], 1, "no such container")
        del self.running[name]
        self._detach(name)

    def remove_volume(self, name: str) -> None:
        self._call("remove_volume", name)
        self.volume_names.discard(name)

    def stop_container(self, name: str, timeout: Optional[int] = None) -> None:
        self._call("stop_container", name, timeout)
        if name not in self.stubborn and name in self.running:
            self.running[name] = False

    def kill(self, name: str, signal: str = "TERM") -> None:
        self._call("kill", name, signal)
        if name not in self.stubborn and name in self.running:
            self.running[name] = False

    def exec(self, container: str, args: List[str], timeout: Optional[float] = None) -> str:
        self._call("exec", container, args)
        if not self.running.get(container):
            raise RuntimeCallFailure(["docker", "exec", container] + list(args), 1, "not running")
        return ""

    def compose_up(self, path: str, recreate: bool = False) -> None:
        self._call("compose_up", path, recreate)
        containers, volumes = self._project(path)
        for networks in containers.values():
            for network in networks:
                if network not in self.attached:
                    raise RuntimeCallFailure(["docker", "compose", "up"], 1,
                                             "network {} not found".format(network))
        for name, networks in containers.items():
            self._detach(name)
            self.add_container(name, name not in self.broken, networks)
        self.volume_names.update(volumes)

    def compose_down(self, path: str, timeout: Optional[int] = None, volumes: bool = False) -> None:
        self._call("compose_down", path, timeout)
        containers, found = self._project(path)
        for name in containers:
            self.running.pop(name, None)
            self._detach(name)
        if volumes:
            self.volume_names -= found

    def compose_pull(self, path: str) -> None:
        self._call("compose_pull", path)

    def compose_restart(self, path: str, service: Optional[str] = None) -> None:
        self._call("compose_restart", path, service)

    def compose_config(self, path: str) -> None:
        self._call("compose_config", path)


def make_http() -> Mock:
    """
    Session stub where every request gets a successful response with an empty JSON body.
    """
    http = Mock(spec=requests.Session)
    resp = Mock(ok=True, status_code=200)
    resp.json.return_value = {}
    http.get.return_value = resp
    http.post.return_value = resp
    return http


class HostTestCase:
    """
    Mixin for test cases needing a fresh host root, fake runtime and clock per test.
    """

    def setUp(self):
        self.tempdir = tempfile.TemporaryDirectory()
        self.root = self.tempdir.name
        self.docker = FakeDocker()
        self.clock = FakeClock()
        self.http = make_http()
        settings = Settings(root=self.root, poll_interval=1.0, lock_timeout=2.0,
                            group_stop_timeout=5, probe_attempts=3)
        self.host = Host(settings, self.docker, self.http, self.clock)

    def tearDown(self):
        self.tempdir.cleanup()

    def install(self, type_: ServiceType, name: Optional[str] = None, **params):
        run = lifecycle.execute(self.host, name, type_, Action.install, params=params)
        return run.check()

    def write_instance(self, name: str, env: str = "", compose: str = "services: {}\n") -> str:
        """
        Create an instance directory by hand, bypassing the installer.
        """
        path = os.path.join(self.root, name)
        os.makedirs(path, exist_ok=True)
        with open(os.path.join(path, ".env"), "w") as handle:
            handle.write(env)
        with open(os.path.join(path, "compose.yml"), "w") as handle:
            handle.write(compose)
        return path
