import os.path
import unittest
from unittest.mock import Mock, patch

from nodelib import config
from nodelib.errors import (CriticalStepFailure, InstallError, NonCriticalStepFailure,
                            RuntimeCallFailure, ValidationError)
from nodelib.flows import Action, IntegrationKind, Step
from nodelib.plumbing.files import get_env, get_text
from nodelib.services import get_inventory, get_staging, ServiceType
from nodelib.tasks import integrations, lifecycle, monitoring
from nodelib.tasks.lifecycle import execute, Outcome, StepStatus

from .utils import HostTestCase


class TestValidation(HostTestCase, unittest.TestCase):

    def test_handlers(self):
        self.assertEqual(set(lifecycle.HANDLERS), set(Step))

    def test_unknown_action(self):
        with self.assertRaises(ValidationError):
            execute(self.host, "ethnode1", ServiceType.ethnode, "restart")
        self.assertEqual(self.docker.calls, [])

    def test_unknown_type(self):
        with self.assertRaises(ValidationError):
            execute(self.host, "ethnode1", "ethnode", Action.start)

    def test_name_mismatch(self):
        with self.assertRaises(ValidationError):
            execute(self.host, "vero", ServiceType.ethnode, Action.start)

    def test_name_required(self):
        with self.assertRaises(ValidationError):
            execute(self.host, None, ServiceType.ethnode, Action.stop)


class TestLifecycle(HostTestCase, unittest.TestCase):

    def test_install_start_stop(self):
        run = self.install(ServiceType.ethnode, execution="besu", consensus="teku")
        self.assertEqual(run.name, "ethnode1")
        self.assertIs(run.outcome, Outcome.success)
        self.assertEqual([step.step for step in run.steps], [Step.INSTALL, Step.INTEGRATE])
        stop = execute(self.host, "ethnode1", ServiceType.ethnode, Action.stop).check()
        self.assertIs(stop.outcome, Outcome.success)
        self.assertNotIn("ethnode1-besu", self.docker.running)
        # Besu has a shutdown plan: signalled first, then the group is brought down.
        self.assertEqual(self.docker.called("kill"), [("ethnode1-besu", "TERM")])
        start = execute(self.host, "ethnode1", ServiceType.ethnode, Action.start).check()
        self.assertEqual([step.status for step in start.steps], [StepStatus.success] * 3)
        self.assertTrue(start.steps[-1].result.value)
        self.assertTrue(self.docker.running["ethnode1-besu"])

    def test_update(self):
        self.install(ServiceType.ethnode)
        run = execute(self.host, "ethnode1", ServiceType.ethnode, Action.update,
                      params={"env": {"EL_VERSION": "v1.9.0"}}).check()
        self.assertIs(run.outcome, Outcome.success)
        self.assertEqual(get_env(os.path.join(self.host.path("ethnode1"), ".env"))["EL_VERSION"],
                         "v1.9.0")
        self.assertEqual(self.docker.called("compose_pull")[-1], (self.host.path("ethnode1"),))
        self.assertEqual(self.docker.called("compose_up")[-1], (self.host.path("ethnode1"), True))

    def test_web3signer_start_waits_for_database(self):
        self.install(ServiceType.web3signer, network="hoodi", version="25.9.0")
        execute(self.host, "web3signer", ServiceType.web3signer, Action.stop).check()
        run = execute(self.host, "web3signer", ServiceType.web3signer, Action.start).check()
        self.assertIs(run.outcome, Outcome.success)
        self.assertEqual(self.docker.called("exec")[-1],
                         ("web3signer-postgres", ["pg_isready", "-U", "postgres"]))

    def test_critical_failure_aborts(self):
        self.install(ServiceType.ethnode)
        execute(self.host, "ethnode1", ServiceType.ethnode, Action.stop).check()
        self.docker.failures["compose_up"] = RuntimeCallFailure(["docker", "compose", "up"], 1,
                                                                "port in use")
        run = execute(self.host, "ethnode1", ServiceType.ethnode, Action.start)
        self.assertIs(run.outcome, Outcome.failed)
        self.assertFalse(run.ok)
        self.assertEqual([step.step for step in run.steps],
                         [Step.ENSURE_NETWORKS, Step.START_SERVICES])
        self.assertIs(run.error.step, Step.START_SERVICES)
        self.assertIsInstance(run.error.cause, RuntimeCallFailure)
        with self.assertRaises(CriticalStepFailure):
            run.check()

    def test_install_failure(self):
        self.docker.failures["compose_config"] = RuntimeCallFailure(["docker", "compose"], 1, "")
        run = execute(self.host, None, ServiceType.ethnode, Action.install)
        self.assertIs(run.outcome, Outcome.failed)
        self.assertIsInstance(run.error.cause, InstallError)
        self.assertEqual(len(run.steps), 1)
        self.assertEqual(get_inventory(self.host), [])
        self.assertEqual(get_staging(self.host), [])

    def test_partial_success(self):
        with patch.object(monitoring, "refresh", side_effect=ValidationError("bad config")):
            run = execute(self.host, None, ServiceType.ethnode, Action.install)
        self.assertIs(run.outcome, Outcome.partial)
        self.assertTrue(run.ok)
        run.check()
        self.assertEqual(len(run.failures), 1)
        self.assertIs(run.failures[0].step, Step.INTEGRATE)
        self.assertIsInstance(run.failures[0].error, NonCriticalStepFailure)
        self.assertEqual([inst.name for inst in get_inventory(self.host)], ["ethnode1"])

    def test_without_integrations(self):
        with patch.object(monitoring, "refresh") as refresh:
            run = execute(self.host, None, ServiceType.ethnode, Action.install,
                          include_integrations=False)
        refresh.assert_not_called()
        self.assertEqual([step.status for step in run.steps],
                         [StepStatus.success, StepStatus.skipped])
        self.assertIs(run.outcome, Outcome.success)

    def test_unexpected_error_is_partial(self):
        with patch.dict(lifecycle.HANDLERS, {Step.INTEGRATE: Mock(side_effect=KeyError("x"))}):
            run = execute(self.host, None, ServiceType.ethnode, Action.install)
        self.assertIs(run.outcome, Outcome.partial)
        self.assertEqual([step.step for step in run.failures], [Step.INTEGRATE])
        self.assertIsInstance(run.failures[0].error.cause, KeyError)

    def test_unexpected_error_aborts(self):
        self.install(ServiceType.ethnode)
        execute(self.host, "ethnode1", ServiceType.ethnode, Action.stop).check()
        failing = Mock(side_effect=RuntimeError("boom"))
        with patch.dict(lifecycle.HANDLERS, {Step.START_SERVICES: failing}):
            run = execute(self.host, "ethnode1", ServiceType.ethnode, Action.start)
        self.assertIs(run.outcome, Outcome.failed)
        self.assertIs(run.error.step, Step.START_SERVICES)
        self.assertIsInstance(run.error.cause, RuntimeError)
        self.assertEqual(len(run.steps), 2)

    def test_web3signer_health_url(self):
        self.install(ServiceType.web3signer)
        self.http.get.reset_mock()
        run = execute(self.host, "web3signer", ServiceType.web3signer, Action.start).check()
        self.assertIs(run.steps[-1].step, Step.HEALTH_CHECK)
        self.assertTrue(run.steps[-1].result.value)
        url = self.http.get.call_args[0][0]
        self.assertEqual(url, "http://127.0.0.1:{}/upcheck".format(config.SIGNER_PORT))

    def test_web3signer_unhealthy(self):
        self.install(ServiceType.web3signer)
        self.http.get.return_value.ok = False
        run = execute(self.host, "web3signer", ServiceType.web3signer, Action.start).check()
        self.assertIs(run.outcome, Outcome.success)
        self.assertFalse(run.steps[-1].result.value)

    def test_no_dependents_installed(self):
        self.install(ServiceType.web3signer)
        with patch.object(integrations, "dispatch", wraps=integrations.dispatch) as dispatch:
            run = execute(self.host, "web3signer", ServiceType.web3signer, Action.remove).check()
        self.assertIs(run.outcome, Outcome.success)
        update = next(step for step in run.steps if step.step is Step.UPDATE_DEPENDENTS)
        self.assertFalse(update.result)
        self.assertEqual([call[0][3] for call in dispatch.call_args_list],
                         [frozenset({IntegrationKind.metrics_stack})])

    def test_str(self):
        run = self.install(ServiceType.web3signer)
        lines = str(run).splitlines()
        self.assertEqual(lines[0], "install web3signer (web3signer): success")
        self.assertTrue(lines[1].startswith("    install: success"))


class TestRemoval(HostTestCase, unittest.TestCase):

    def setUp(self):
        super().setUp()
        self.install(ServiceType.ethnode)
        self.install(ServiceType.ethnode, execution="nethermind", consensus="teku")
        self.install(ServiceType.web3signer)
        self.install(ServiceType.validator, "vero")
        self.install(ServiceType.validator, "teku-validator", nodes=["ethnode2"])

    def remove(self, name, type_):
        return execute(self.host, name, type_, Action.remove).check()

    def test_validator_keeps_shared_network(self):
        run = self.remove("vero", ServiceType.validator)
        self.assertIs(run.outcome, Outcome.success)
        self.assertIn("validator-net", self.docker.attached)
        self.assertFalse(os.path.exists(self.host.path("vero")))
        self.assertNotIn("vero", self.docker.running)
        self.assertTrue(self.docker.running["teku-validator"])
        run = self.remove("teku-validator", ServiceType.validator)
        self.assertIs(run.outcome, Outcome.success)
        self.assertNotIn("validator-net", self.docker.attached)
        self.assertIn("web3signer-net", self.docker.attached)

    def test_validator_shared_network_held_by_running_container(self):
        self.remove("teku-validator", ServiceType.validator)
        self.docker.add_container("teku-validator", networks=["validator-net"])
        self.remove("vero", ServiceType.validator)
        self.assertIn("validator-net", self.docker.attached)

    def test_ethnode_updates_validator(self):
        vero = self.host.path("vero")
        self.assertEqual(get_env(os.path.join(vero, ".env"))["BEACON_NODE_URLS"],
                         "http://ethnode1-lodestar:5052,http://ethnode2-teku:5052")
        self.docker.calls.clear()
        run = self.remove("ethnode1", ServiceType.ethnode)
        self.assertIs(run.outcome, Outcome.success)
        self.assertEqual(get_env(os.path.join(vero, ".env"))["BEACON_NODE_URLS"],
                         "http://ethnode2-teku:5052")
        self.assertNotIn("ethnode1-net", get_text(os.path.join(vero, "compose.yml")))
        self.assertIn((vero, True), self.docker.called("compose_up"))
        # The other validator never used the removed node.
        self.assertNotIn((self.host.path("teku-validator"), True), self.docker.called("compose_up"))
        self.assertNotIn("ethnode1-net", self.docker.attached)
        self.assertNotIn("ethnode1-reth-data", self.docker.volume_names)
        self.assertFalse(os.path.exists(self.host.path("ethnode1")))

    def test_unknown_validator_is_partial(self):
        self.write_instance("lighthouse-validator",
                            "BEACON_NODE_URLS=http://ethnode1-lodestar:5052\n")
        run = execute(self.host, "ethnode1", ServiceType.ethnode, Action.remove)
        self.assertIs(run.outcome, Outcome.partial)
        self.assertEqual([step.step for step in run.failures], [Step.UPDATE_DEPENDENTS])
        self.assertIsInstance(run.failures[0].error.cause, integrations.IntegrationError)
        self.assertEqual(get_env(os.path.join(self.host.path("vero"), ".env"))["BEACON_NODE_URLS"],
                         "http://ethnode2-teku:5052")
        self.assertNotIn("ethnode1-net", self.docker.attached)
        self.assertFalse(os.path.exists(self.host.path("ethnode1")))

    def test_ethnode_nethermind_escalation(self):
        self.http.post.return_value.json.return_value = {"jsonrpc": "2.0", "result": None}
        self.docker.stubborn.add("ethnode2-nethermind")
        run = self.remove("ethnode2", ServiceType.ethnode)
        self.assertIs(run.outcome, Outcome.success)
        self.assertNotIn("ethnode2-nethermind", self.docker.running)
        self.assertLessEqual(self.clock.now, 240 + 30)
        self.assertEqual(get_env(os.path.join(self.host.path("teku-validator"), ".env"))
                         ["BEACON_NODE_URLS"], "")

    def test_remove_twice(self):
        self.remove("vero", ServiceType.validator)
        run = self.remove("vero", ServiceType.validator)
        self.assertIs(run.outcome, Outcome.success)
        self.assertFalse(any(step.result for step in run.steps
                             if step.step is not Step.CLEANUP_INTEGRATIONS))

    def test_cleanup_failure_is_partial(self):
        self.docker.failures["remove_network"] = RuntimeCallFailure(["docker"], 1, "busy")
        with patch.object(monitoring, "refresh", side_effect=ValidationError("bad config")):
            run = execute(self.host, "web3signer", ServiceType.web3signer, Action.remove)
        self.assertIs(run.outcome, Outcome.partial)
        self.assertEqual([step.step for step in run.failures], [Step.CLEANUP_INTEGRATIONS])
        self.assertFalse(os.path.exists(self.host.path("web3signer")))


if __name__ == "__main__":
    unittest.main()
