"""
Container runtime control, by way of the `docker` command line client.

Names are looked up with typed `NameQuery` objects rather than globs.  The runtime's own name
filter is a loose substring match, so it's only used to narrow the listing, and every result is
checked again with `NameQuery.matches` before being returned.
"""

from enum import Enum
import logging
import subprocess
from typing import Iterable, List, NamedTuple, Optional

from ..errors import RuntimeCallFailure
from .common import command


LOG = logging.getLogger(__name__)


class Match(Enum):
    """
    How a `NameQuery` compares against resource names.
    """

    exact = 1
    prefix = 2


class NameQuery(NamedTuple):
    """
    Exact or prefix lookup of a runtime resource by name.
    """

    value: str
    match: Match = Match.exact

    @classmethod
    def parse(cls, pattern: str) -> "NameQuery":
        """
        Convert a name pattern into a query, where a trailing `*` means a prefix match:

            >>> NameQuery.parse("ethnode1-*")
            NameQuery(value='ethnode1-', match=<Match.prefix: 2>)
        """
        if pattern.endswith("*"):
            return cls(pattern[:-1], Match.prefix)
        return cls(pattern, Match.exact)

    def matches(self, name: str) -> bool:
        if self.match is Match.prefix:
            return name.startswith(self.value) and name != self.value
        return name == self.value

    @property
    def filter(self) -> str:
        """
        Argument for the runtime's `--filter` option.
        """
        return "name={}".format(self.value)

    def __str__(self):
        return "{}*".format(self.value) if self.match is Match.prefix else self.value


def match_any(queries: Iterable[NameQuery], names: Iterable[str]) -> List[str]:
    """
    Filter a list of names down to those matched by any of the given queries, sorted.
    """
    queries = list(queries)
    return sorted({name for name in names if any(query.matches(name) for query in queries)})


class DockerClient:
    """
    Thin wrapper over the `docker` and `docker compose` commands.

    Every method raises `RuntimeCallFailure` if the underlying command fails or can't be run.
    """

    def __init__(self, binary: str = "docker"):
        self.binary = binary

    def _run(self, *args: str, cwd: Optional[str] = None, timeout: Optional[float] = None) -> str:
        cmd = [self.binary, *args]
        try:
            proc = command(cmd, output=True, cwd=cwd, timeout=timeout)
        except subprocess.CalledProcessError as ex:
            stderr = ex.stderr.decode("utf-8", "replace") if ex.stderr else ""
            raise RuntimeCallFailure(cmd, ex.returncode, stderr) from ex
        except subprocess.TimeoutExpired as ex:
            raise RuntimeCallFailure(cmd, None, "timed out after {}s".format(timeout)) from ex
        except OSError as ex:
            raise RuntimeCallFailure(cmd, None, str(ex)) from ex
        return proc.stdout.decode("utf-8", "replace")

    def _names(self, *args: str, query: Optional[NameQuery] = None) -> List[str]:
        if query:
            args += ("--filter", query.filter)
        names = [line.strip() for line in self._run(*args).splitlines() if line.strip()]
        if query:
            names = [name for name in names if query.matches(name)]
        return sorted(names)

    def containers(self, query: Optional[NameQuery] = None, running_only: bool = False) -> List[str]:
        """
        List container names, including stopped ones unless `running_only` is set.
        """
        args = ("ps", "--format", "{{.Names}}")
        if not running_only:
            args += ("--all",)
        return self._names(*args, query=query)

    def volumes(self, query: Optional[NameQuery] = None) -> List[str]:
        return self._names("volume", "ls", "--format", "{{.Name}}", query=query)

    def networks(self, query: Optional[NameQuery] = None) -> List[str]:
        return self._names("network", "ls", "--format", "{{.Name}}", query=query)

    def network_containers(self, network: str) -> List[str]:
        """
        List the names of containers attached to a network.
        """
        out = self._run("network", "inspect", "--format",
                        "{{range .Containers}}{{.Name}} {{end}}", network)
        return sorted(out.split())

    def is_running(self, container: str) -> bool:
        """
        Check if a container exists and is running.  A failed lookup counts as not running.
        """
        try:
            out = self._run("container", "inspect", "--format", "{{.State.Running}}", container)
        except RuntimeCallFailure:
            return False
        return out.strip() == "true"

    def create_network(self, name: str) -> None:
        self._run("network", "create", name)

    def remove_network(self, name: str) -> None:
        self._run("network", "rm", name)

    def disconnect(self, network: str, container: str) -> None:
        self._run("network", "disconnect", "--force", network, container)

    def remove_container(self, name: str) -> None:
        self._run("rm", "--force", name)

    def remove_volume(self, name: str) -> None:
        self._run("volume", "rm", "--force", name)

    def stop_container(self, name: str, timeout: Optional[int] = None) -> None:
        args = ("stop",)
        if timeout is not None:
            args += ("--time", str(timeout))
        self._run(*args, name)

    def kill(self, name: str, signal: str = "TERM") -> None:
        """
        Send a signal to the main process of a container.
        """
        self._run("kill", "--signal", signal, name)

    def exec(self, container: str, args: List[str], timeout: Optional[float] = None) -> str:
        """
        Run a command inside a running container, and return its output.
        """
        return self._run("exec", container, *args, timeout=timeout)

    def compose_up(self, path: str, recreate: bool = False) -> None:
        args = ("compose", "up", "--detach")
        if recreate:
            args += ("--force-recreate",)
        self._run(*args, cwd=path)

    def compose_down(self, path: str, timeout: Optional[int] = None, volumes: bool = False) -> None:
        args = ("compose", "down", "--remove-orphans")
        if timeout is not None:
            args += ("--timeout", str(timeout))
        if volumes:
            args += ("--volumes",)
        self._run(*args, cwd=path)

    def compose_pull(self, path: str) -> None:
        self._run("compose", "pull", "--quiet", cwd=path)

    def compose_restart(self, path: str, service: Optional[str] = None) -> None:
        args = ("compose", "restart")
        if service:
            args += (service,)
        self._run(*args, cwd=path)

    def compose_config(self, path: str) -> None:
        """
        Ask compose to parse and interpolate the project, failing if it's invalid.
        """
        self._run("compose", "config", "--quiet", cwd=path)
