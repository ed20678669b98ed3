"""
File sets for each service type, and the configuration derived from the host's inventory.

A builder takes an instance name, user parameters and an inventory `Snapshot`, and returns every
file the instance directory should contain, keyed by relative path.  Builders are pure apart from
random secrets: nothing touches the filesystem or the container runtime here.
"""

import logging
import os
import secrets
from typing import Any, Callable, Dict, Iterable, List, Mapping, NamedTuple, Optional, Set, Tuple

from .. import clients, config
from ..errors import ValidationError
from ..plumbing.common import Password
from ..plumbing.files import get_env
from ..services import ServiceType, Snapshot
from . import render


LOG = logging.getLogger(__name__)

NETWORKS = ("hoodi", "mainnet", "sepolia")

SIGNER_NETWORKS = ("hoodi", "mainnet")

Params = Mapping[str, Any]


class FileSet(NamedTuple):
    """
    Files for an instance directory, and the subset that make up its compose project.
    """

    files: Dict[str, str]
    compose_files: Tuple[str, ...] = ("compose.yml",)


class Job(NamedTuple):
    """
    A single Prometheus scrape job with one target.
    """

    name: str
    target: str
    labels: Optional[Dict[str, str]] = None


def _ids() -> Dict[str, int]:
    return {"uid": os.getuid(), "gid": os.getgid()}


def _choice(params: Params, key: str, default: str, allowed: Iterable[str]) -> str:
    value = str(params.get(key) or default)
    allowed = tuple(allowed)
    if value not in allowed:
        raise ValidationError("Bad {} {!r}, expected one of: {}"
                              .format(key, value, ", ".join(allowed)))
    return value


def get_used_ports(snapshot: Snapshot) -> Set[int]:
    """
    Collect every `*_PORT` value from the `.env` files of installed instances.
    """
    used: Set[int] = set()
    for inst in snapshot.instances:
        for key, value in get_env(inst.env_path).items():
            if key.endswith("_PORT") and value.isdigit():
                used.add(int(value))
    return used


def allocate_port(start: int, used: Set[int], step: int = 1, span: int = 1,
                  limit: Optional[int] = None) -> int:
    """
    Find the first free block of `span` consecutive ports at or after `start`, and mark it used.
    """
    limit = limit or start + 1000
    for port in range(start, limit, step):
        block = set(range(port, port + span))
        if not block & used:
            used.update(block)
            return port
    raise ValidationError("No free port between {} and {}".format(start, limit))


def build_ethnode(name: str, params: Params, snapshot: Snapshot) -> FileSet:
    network = _choice(params, "network", "hoodi", NETWORKS)
    execution = clients.EXECUTION.get(params.get("execution") or "reth")
    consensus = clients.CONSENSUS.get(params.get("consensus") or "lodestar")
    if not execution or not consensus:
        raise ValidationError("Unknown client in {!r}".format(dict(params)))
    used = get_used_ports(snapshot)
    ports = {"EL_RPC_PORT": allocate_port(8545, used, step=2, span=2),
             "EE_PORT": allocate_port(8551, used),
             "EL_P2P_PORT": allocate_port(30303, used, step=2),
             "EL_METRICS_PORT": allocate_port(6060, used, step=2),
             "CL_REST_PORT": allocate_port(5052, used),
             "CL_P2P_PORT": allocate_port(9000, used, step=2, span=2),
             "CL_METRICS_PORT": allocate_port(8008, used, step=2)}
    ports["EL_WS_PORT"] = ports["EL_RPC_PORT"] + 1
    ports["CL_QUIC_PORT"] = ports["CL_P2P_PORT"] + 1
    compose_files = clients.compose_files(execution.name, consensus.name)
    context = dict(_ids(), name=name, network=network, ports=ports,
                   compose_files=compose_files,
                   el_version=params.get("el_version") or "latest",
                   cl_version=params.get("cl_version") or "latest")
    files = {".env": render("ethnode.env", **context),
             "compose.yml": render("ethnode-compose.yml", name=name),
             compose_files[1]: render("execution.yml", name=name, client=execution),
             compose_files[2]: render("consensus.yml", name=name, client=consensus,
                                      execution=execution.name,
                                      beacon_port=config.BEACON_API_PORT),
             "jwtsecret/jwtsecret": secrets.token_hex(32) + "\n"}
    return FileSet(files, tuple(compose_files))


def get_beacon_urls(snapshot: Snapshot, nodes: Iterable[str]) -> List[str]:
    """
    Build beacon API addresses for the given ethnodes, skipping any without a known consensus
    client.
    """
    urls = []
    for node in nodes:
        consensus = snapshot.clients.get(node, clients.Clients()).consensus
        if not consensus:
            LOG.warning("No consensus client found for %s, skipping", node)
            continue
        urls.append(clients.beacon_url(node, consensus))
    return urls


def get_validator_client(name: str) -> clients.Client:
    client = clients.VALIDATORS.get(name)
    if not client:
        raise ValidationError("Unknown validator client {!r}".format(name))
    return client


def render_validator_compose(name: str, nodes: Iterable[str]) -> str:
    return render("validator-compose.yml", name=name, client=get_validator_client(name),
                  nodes=sorted(set(nodes)))


def build_validator(name: str, params: Params, snapshot: Snapshot) -> FileSet:
    client = get_validator_client(name)
    installed = sorted(inst.name for inst in snapshot.of_type(ServiceType.ethnode))
    nodes = params.get("nodes") or installed
    if isinstance(nodes, str):
        nodes = [node.strip() for node in nodes.split(",") if node.strip()]
    missing = set(nodes) - set(installed)
    if missing:
        raise ValidationError("Not installed: {}".format(", ".join(sorted(missing))))
    urls = get_beacon_urls(snapshot, nodes)
    if not urls:
        raise ValidationError("No usable beacon nodes for {}".format(name))
    used = get_used_ports(snapshot)
    context = dict(_ids(), name=name, network=_choice(params, "network", "hoodi", NETWORKS),
                   beacon_urls=urls,
                   fee_recipient=params.get("fee_recipient") or "0x" + "0" * 40,
                   graffiti=params.get("graffiti") or name,
                   version=params.get("version") or "latest",
                   metrics_port=allocate_port(client.metrics_port, used))
    nodes = [clients.beacon_node(url) for url in urls]
    return FileSet({".env": render("validator.env", **context),
                    "compose.yml": render_validator_compose(name, nodes)})


def build_web3signer(name: str, params: Params, snapshot: Snapshot) -> FileSet:
    used = get_used_ports(snapshot)
    port = int(params.get("port") or allocate_port(config.SIGNER_PORT, used))
    context = dict(_ids(), network=_choice(params, "network", "hoodi", SIGNER_NETWORKS),
                   version=params.get("version") or "latest", port=port,
                   postgres_password=Password.new())
    return FileSet({".env": render("web3signer.env", **context),
                    "compose.yml": render("web3signer-compose.yml", name=name,
                                          client=clients.SIGNER),
                    "keystores/.keep": "",
                    "migrations/.keep": ""})


def get_monitoring_networks(snapshot: Snapshot) -> List[str]:
    """
    Networks that the collector must join to reach every scrape target.
    """
    networks = ["monitoring-net"]
    if snapshot.of_type(ServiceType.validator):
        networks.append("validator-net")
    if snapshot.of_type(ServiceType.web3signer):
        networks.append("web3signer-net")
    networks.extend("{}-net".format(inst.name) for inst in snapshot.of_type(ServiceType.ethnode))
    return networks


def get_scrape_jobs(snapshot: Snapshot, name: str = "monitoring") -> List[Job]:
    """
    Derive scrape jobs from the inventory: the collector itself, the node exporter, and the
    metrics endpoint of every client found.
    """
    jobs = [Job("prometheus", "localhost:9090"),
            Job("node-exporter", "{}-node-exporter:{}".format(name, config.NODE_EXPORTER_PORT))]
    for inst in snapshot.of_type(ServiceType.ethnode):
        found = snapshot.clients.get(inst.name, clients.Clients())
        for kind, client in (("execution", clients.EXECUTION.get(found.execution or "")),
                             ("consensus", clients.CONSENSUS.get(found.consensus or ""))):
            if not client:
                continue
            container = "{}-{}".format(inst.name, client.name)
            jobs.append(Job(container, "{}:{}".format(container, client.metrics_port),
                            {"node": inst.name, "client": client.name, "type": kind}))
    for inst in snapshot.of_type(ServiceType.validator):
        client = clients.VALIDATORS.get(inst.name)
        if client:
            jobs.append(Job(inst.name, "{}:{}".format(inst.name, client.metrics_port),
                            {"client": client.name, "type": "validator"}))
    for inst in snapshot.of_type(ServiceType.web3signer):
        jobs.append(Job(inst.name, "{}:{}".format(inst.name, clients.SIGNER.metrics_port),
                        {"client": clients.SIGNER.name, "type": "signer"}))
    return jobs


def render_scrape_config(snapshot: Snapshot, name: str = "monitoring") -> str:
    return render("prometheus.yml", jobs=get_scrape_jobs(snapshot, name))


def render_monitoring_compose(snapshot: Snapshot, name: str = "monitoring") -> str:
    return render("monitoring-compose.yml", name=name, networks=get_monitoring_networks(snapshot))


def build_monitoring(name: str, params: Params, snapshot: Snapshot) -> FileSet:
    used = get_used_ports(snapshot)
    context = dict(_ids(), bind_ip=params.get("bind_ip") or "127.0.0.1",
                   prometheus_port=int(params.get("prometheus_port")
                                       or allocate_port(config.PROMETHEUS_PORT, used)),
                   grafana_port=int(params.get("grafana_port")
                                    or allocate_port(config.GRAFANA_PORT, used)),
                   node_exporter_port=int(params.get("node_exporter_port")
                                          or allocate_port(config.NODE_EXPORTER_PORT, used)),
                   grafana_password=params.get("grafana_password") or Password.new())
    return FileSet({".env": render("monitoring.env", **context),
                    "compose.yml": render_monitoring_compose(snapshot, name),
                    "prometheus.yml": render_scrape_config(snapshot, name),
                    "grafana/provisioning/datasources/prometheus.yml":
                        render("grafana-datasource.yml", name=name),
                    "grafana/provisioning/dashboards/dashboards.yml":
                        render("grafana-dashboards.yml")})


BUILDERS: Dict[ServiceType, Callable[[str, Params, Snapshot], FileSet]] = {
    ServiceType.ethnode: build_ethnode,
    ServiceType.validator: build_validator,
    ServiceType.web3signer: build_web3signer,
    ServiceType.monitoring: build_monitoring,
}


def build(type_: ServiceType, name: str, params: Params, snapshot: Snapshot) -> FileSet:
    """
    Generate the file set for a new instance.
    """
    return BUILDERS[type_](name, params, snapshot)
