import unittest

from nodelib.services import ServiceType
from nodelib.tasks import refcount

from .utils import HostTestCase


VALIDATORS = (ServiceType.validator,)


class TestCanRemove(HostTestCase, unittest.TestCase):

    def test_unused(self):
        self.assertTrue(refcount.can_remove(self.host, "validator-net", VALIDATORS))

    def test_installed_stopped(self):
        self.write_instance("teku-validator")
        self.assertFalse(refcount.can_remove(self.host, "validator-net", VALIDATORS))

    def test_running_without_directory(self):
        self.docker.add_container("teku-validator")
        self.assertFalse(refcount.can_remove(self.host, "validator-net", VALIDATORS))

    def test_stopped_without_directory(self):
        self.docker.add_container("teku-validator", running=False)
        self.assertTrue(refcount.can_remove(self.host, "validator-net", VALIDATORS))

    def test_excluding(self):
        self.write_instance("vero")
        self.docker.add_container("vero")
        self.assertTrue(refcount.can_remove(self.host, "validator-net", VALIDATORS,
                                            excluding="vero"))

    def test_other_types_ignored(self):
        self.write_instance("ethnode1")
        self.docker.add_container("monitoring-prometheus", networks=["validator-net"])
        self.assertTrue(refcount.can_remove(self.host, "validator-net", VALIDATORS))


class TestRelease(HostTestCase, unittest.TestCase):

    def setUp(self):
        super().setUp()
        self.docker.create_network("validator-net")

    def test_release(self):
        self.write_instance("vero")
        result = refcount.release_networks(self.host, ["validator-net"], excluding="vero")
        self.assertEqual(result.value, 1)
        self.assertNotIn("validator-net", self.docker.attached)

    def test_keep(self):
        self.write_instance("vero")
        self.write_instance("teku-validator")
        result = refcount.release_networks(self.host, ["validator-net"], excluding="vero")
        self.assertEqual(result.value, 0)
        self.assertIn("validator-net", self.docker.attached)

    def test_unknown_resource(self):
        self.docker.create_network("mystery-net")
        self.assertEqual(refcount.release_networks(self.host, ["mystery-net"]).value, 0)
        self.assertIn("mystery-net", self.docker.attached)


if __name__ == "__main__":
    unittest.main()
