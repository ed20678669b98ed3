import os
import os.path
import unittest

from nodelib.errors import ResourceBusyError, RuntimeCallFailure, ValidationError
from nodelib.flows import REGISTRY
from nodelib.plumbing import resources
from nodelib.plumbing.common import State
from nodelib.services import get_context, ServiceInstance, ServiceType, Status

from .utils import HostTestCase


class TestContainers(HostTestCase, unittest.TestCase):

    def setUp(self):
        super().setUp()
        self.instance = ServiceInstance("ethnode1", ServiceType.ethnode, self.host.path("ethnode1"))
        self.resolved = REGISTRY.resolve(ServiceType.ethnode, {"name": "ethnode1"})
        self.docker.add_container("ethnode1-reth")
        self.docker.add_container("ethnode1-lodestar", running=False)
        self.docker.add_container("ethnode10-reth")
        self.docker.volume_names.update({"ethnode1-reth-data", "ethnode1_lodestar",
                                         "ethnode10-reth-data"})

    def test_get_containers(self):
        self.assertEqual(resources.get_containers(self.host, self.resolved.containers),
                         ["ethnode1-lodestar", "ethnode1-reth"])
        self.assertEqual(resources.get_containers(self.host, self.resolved.containers, True),
                         ["ethnode1-reth"])

    def test_status(self):
        self.assertIs(resources.get_status(self.host, self.instance, self.resolved),
                      Status.running)
        self.docker.running["ethnode1-reth"] = False
        self.assertIs(resources.get_status(self.host, self.instance, self.resolved),
                      Status.stopped)
        self.docker.running.clear()
        self.assertIs(resources.get_status(self.host, self.instance, self.resolved),
                      Status.absent)

    def test_remove_containers(self):
        result = resources.remove_containers(self.host, self.resolved)
        self.assertEqual(result.value, resources.Counts("containers", 2, 2, 0))
        self.assertEqual(list(self.docker.running), ["ethnode10-reth"])
        again = resources.remove_containers(self.host, self.resolved)
        self.assertEqual(again.state, State.unchanged)
        self.assertEqual(again.value, resources.Counts("containers", 0, 0, 0))

    def test_remove_containers_error_counted(self):
        self.docker.failures["remove_container"] = RuntimeCallFailure(["docker", "rm"], 1, "busy")
        result = resources.remove_containers(self.host, self.resolved)
        self.assertEqual(result.value, resources.Counts("containers", 2, 0, 2))

    def test_remove_volumes(self):
        result = resources.remove_volumes(self.host, self.resolved)
        self.assertEqual(result.value.acted, 2)
        self.assertEqual(self.docker.volume_names, {"ethnode10-reth-data"})
        self.assertEqual(resources.remove_volumes(self.host, self.resolved).value.found, 0)

    def test_stop_sweep(self):
        # No instance directory, so no group stop: leftovers are stopped one by one.
        result = resources.stop_containers(self.host, self.instance, self.resolved)
        self.assertEqual(result.value, resources.Counts("containers", 1, 1, 0))
        self.assertEqual(self.docker.called("stop_container"), [("ethnode1-reth", 5)])
        self.assertTrue(self.docker.running["ethnode10-reth"])

    def test_stop_nothing_running(self):
        self.docker.running["ethnode1-reth"] = False
        result = resources.stop_containers(self.host, self.instance, self.resolved)
        self.assertEqual(result.state, State.unchanged)
        self.assertEqual(self.docker.called("stop_container"), [])


class TestNetworks(HostTestCase, unittest.TestCase):

    def test_ensure(self):
        result = resources.ensure_networks(self.host, ["validator-net", "web3signer-net"])
        self.assertEqual(result.state, State.created)
        self.assertEqual(sorted(self.docker.attached), ["validator-net", "web3signer-net"])
        self.assertEqual(resources.ensure_networks(self.host, ["validator-net"]).state,
                         State.unchanged)

    def test_ensure_unresolved(self):
        with self.assertRaises(ValidationError):
            resources.ensure_network(self.host, "{name}-net")

    def test_remove_disconnects(self):
        self.docker.add_container("monitoring-prometheus", networks=["ethnode1-net"])
        result = resources.remove_networks(self.host, ["ethnode1-net", "ethnode2-net"])
        self.assertEqual(result.value, resources.Counts("networks", 1, 1, 0))
        self.assertNotIn("ethnode1-net", self.docker.attached)
        self.assertEqual(self.docker.called("disconnect"),
                         [("ethnode1-net", "monitoring-prometheus")])

    def test_remove_busy(self):
        self.docker.add_container("vero", networks=["validator-net"])
        self.docker.failures["disconnect"] = RuntimeCallFailure(["docker"], 1, "refused")
        with self.assertRaises(ResourceBusyError):
            resources.remove_network(self.host, "validator-net")
        result = resources.remove_networks(self.host, ["validator-net"])
        self.assertEqual(result.value, resources.Counts("networks", 1, 0, 1))

    def test_remove_absent(self):
        self.assertEqual(resources.remove_network(self.host, "validator-net").state,
                         State.unchanged)


class TestDirectories(HostTestCase, unittest.TestCase):

    def setUp(self):
        super().setUp()
        self.cwd = os.getcwd()

    def tearDown(self):
        os.chdir(self.cwd)
        super().tearDown()

    def test_create(self):
        path = os.path.join(self.root, "vero", "keystores")
        self.assertIs(resources.create_directory(path).state, State.created)
        self.assertTrue(os.path.isdir(path))
        self.assertFalse(resources.create_directory(path))

    def test_remove(self):
        path = self.write_instance("vero")
        resolved = REGISTRY.resolve(ServiceType.validator, get_context(self.host, "vero"))
        result = resources.remove_directories(self.host, resolved)
        self.assertEqual(result.value, resources.Counts("directories", 1, 1, 0))
        self.assertFalse(os.path.exists(path))
        self.assertEqual(resources.remove_directories(self.host, resolved).value.found, 0)

    def test_relocate(self):
        path = self.write_instance("ethnode1")
        os.makedirs(os.path.join(path, "jwtsecret"))
        os.chdir(os.path.join(path, "jwtsecret"))
        resources.remove_directory(path)
        self.assertFalse(os.path.exists(path))
        self.assertEqual(os.getcwd(), os.path.realpath(self.root))


class TestHealth(HostTestCase, unittest.TestCase):

    def setUp(self):
        super().setUp()
        self.instance = ServiceInstance("vero", ServiceType.validator, self.host.path("vero"))
        self.resolved = REGISTRY.resolve(ServiceType.validator,
                                         {"name": "vero", "ethnode_networks": ["ethnode1-net"]})

    def test_healthy(self):
        self.docker.add_container("vero")
        self.assertTrue(resources.health_check(self.host, self.instance, self.resolved).value)

    def test_unhealthy_never_raises(self):
        result = resources.health_check(self.host, self.instance, self.resolved, attempts=3)
        self.assertFalse(result.value)
        self.assertEqual(result.state, State.unchanged)
        self.assertEqual(self.clock.now, 2)

    def test_url(self):
        self.docker.add_container("vero")
        self.http.get.return_value.ok = False
        self.assertFalse(resources.health_check(self.host, self.instance, self.resolved,
                                                url="http://127.0.0.1:9010/metrics").value)

    def test_health_url(self):
        self.assertIsNone(resources.get_health_url(self.instance))
        path = self.write_instance("web3signer", "WEB3SIGNER_PORT=7501\n")
        signer = ServiceInstance("web3signer", ServiceType.web3signer, path)
        self.assertEqual(resources.get_health_url(signer), "http://127.0.0.1:7501/upcheck")


if __name__ == "__main__":
    unittest.main()
