"""
Catalog of the client software that can run inside node and validator instances.

An ethnode's clients are recorded in its `.env` file as the `COMPOSE_FILE` list, which names one
compose file per client, e.g. `compose.yml:reth.yml:lodestar-cl-only.yml`.
"""

from typing import Dict, List, NamedTuple, Optional
from urllib.parse import urlsplit

from . import config


class Client(NamedTuple):
    """
    A piece of client software, with its image and metrics port.
    """

    name: str
    kind: str
    image: str
    metrics_port: int


EXECUTION: Dict[str, Client] = {client.name: client for client in (
    Client("reth", "execution", "ghcr.io/paradigmxyz/reth", 9001),
    Client("besu", "execution", "hyperledger/besu", 6060),
    Client("nethermind", "execution", "nethermind/nethermind", 6060),
    Client("geth", "execution", "ethereum/client-go", 6060),
)}
"""
Execution layer clients, by name.
"""

CONSENSUS: Dict[str, Client] = {client.name: client for client in (
    Client("lodestar", "consensus", "chainsafe/lodestar", 8008),
    Client("teku", "consensus", "consensys/teku", 8008),
    Client("grandine", "consensus", "sifrai/grandine", 8008),
    Client("lighthouse", "consensus", "sigp/lighthouse", 8008),
    Client("prysm", "consensus", "gcr.io/prysmaticlabs/prysm/beacon-chain", 8008),
)}
"""
Consensus layer (beacon node) clients, by name.
"""

VALIDATORS: Dict[str, Client] = {client.name: client for client in (
    Client("vero", "validator", "ghcr.io/serenita-org/vero", 9010),
    Client("teku-validator", "validator", "consensys/teku", 8008),
)}
"""
Validator clients, by instance name -- each may only be installed once.
"""

SIGNER = Client("web3signer", "signer", "consensys/web3signer", 9000)


class Clients(NamedTuple):
    """
    Execution and consensus client names of an ethnode, either of which may be unknown.
    """

    execution: Optional[str] = None
    consensus: Optional[str] = None


def compose_files(execution: str, consensus: str) -> List[str]:
    """
    Build the `COMPOSE_FILE` list for an ethnode running the given clients.
    """
    return ["compose.yml", "{}.yml".format(execution), "{}-cl-only.yml".format(consensus)]


def parse_compose_files(value: str) -> Clients:
    """
    Detect the clients of an ethnode from its `COMPOSE_FILE` setting.
    """
    execution = consensus = None
    for part in value.split(":"):
        stem = part.strip().rsplit("/", 1)[-1]
        if stem.endswith(".yml"):
            stem = stem[:-4]
        if stem.endswith("-cl-only"):
            stem = stem[:-8]
        if stem in EXECUTION and not execution:
            execution = stem
        elif stem in CONSENSUS and not consensus:
            consensus = stem
    return Clients(execution, consensus)


def beacon_url(node: str, consensus: str) -> str:
    """
    Address of an ethnode's beacon API, as seen from other containers on its network.
    """
    return "http://{}-{}:{}".format(node, consensus, config.BEACON_API_PORT)


def beacon_node(url: str) -> Optional[str]:
    """
    Recover the ethnode name from a beacon API address made by `beacon_url`.
    """
    host = urlsplit(url.strip()).hostname or ""
    for name in CONSENSUS:
        suffix = "-{}".format(name)
        if host.endswith(suffix):
            return host[:-len(suffix)]
    return None
