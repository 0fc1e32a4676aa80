"""Tests for the shared runtime: servers, leader election and shutdown."""

import http.client
import json
import socket
import ssl
import threading
import urllib.request
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from capm3_manager.bootstrap import main
from capm3_manager.config import LeaderElectionConfig, TLSOptions
from capm3_manager.controller import Controller
from capm3_manager.errors import ManagerError
from capm3_manager.runtime import Manager, ManagerOptions
from capm3_manager.tls_policy import build_tls_mutators
from capm3_manager.webhooks import WebhookServer, allow_admission


def _free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


def _manager(scheme, **overrides):
    options = dict(
        scheme=scheme,
        metrics_bind_address="0",
        health_probe_bind_address="0",
        webhook_port=9443,
        cert_dir="/nonexistent",
    )
    options.update(overrides)
    return Manager(MagicMock(), ManagerOptions(**options))


def _add_controllers(mgr, scheme, *kinds):
    for kind in kinds:
        definition = scheme.lookup("infrastructure.cluster.x-k8s.io/v1beta1", kind)
        mgr.new_controller(f"{kind}Reconciler", definition, MagicMock(), 1)


@pytest.fixture
def stop_event():
    """Stop event with a safety timer so a broken run cannot hang the suite."""
    event = threading.Event()
    timer = threading.Timer(10, event.set)
    timer.start()
    yield event
    timer.cancel()


LEADER_ELECTION = LeaderElectionConfig(enabled=True, lock_namespace="capm3")


class TestManagerStart:
    """Test the run loop without leader election."""

    def test_clean_stop_drains_controllers(self, scheme, stop_event):
        """Every controller is stopped before any is waited on."""
        mgr = _manager(scheme)
        _add_controllers(mgr, scheme, "Metal3Cluster", "Metal3Machine")
        calls = []

        def record(action):
            return lambda self, *args, **kwargs: calls.append((action, self.name))

        stop_event.set()
        with patch.object(Controller, "start", autospec=True, side_effect=record("start")), \
                patch.object(Controller, "stop", autospec=True, side_effect=record("stop")), \
                patch.object(Controller, "wait", autospec=True, side_effect=record("wait")):
            mgr.start(stop_event)

        assert calls == [
            ("start", "Metal3ClusterReconciler"),
            ("start", "Metal3MachineReconciler"),
            ("stop", "Metal3ClusterReconciler"),
            ("stop", "Metal3MachineReconciler"),
            ("wait", "Metal3ClusterReconciler"),
            ("wait", "Metal3MachineReconciler"),
        ]

    def test_no_controllers_after_start(self, scheme, stop_event):
        mgr = _manager(scheme)
        stop_event.set()
        mgr.start(stop_event)

        definition = scheme.lookup("infrastructure.cluster.x-k8s.io/v1beta1", "Metal3Data")
        with pytest.raises(ValueError):
            mgr.new_controller("Metal3DataReconciler", definition, MagicMock(), 1)

    def test_bind_failure(self, scheme, stop_event):
        with socket.socket() as busy:
            busy.bind(("127.0.0.1", 0))
            busy.listen(1)
            port = busy.getsockname()[1]
            mgr = _manager(scheme, health_probe_bind_address=f"127.0.0.1:{port}")

            with pytest.raises(ManagerError) as exc:
                mgr.start(stop_event)

        assert "failed to start servers" in str(exc.value)
        assert not stop_event.is_set()

    def test_probe_endpoints_served_while_running(self, scheme, stop_event):
        port = _free_port()
        mgr = _manager(scheme, health_probe_bind_address=f"127.0.0.1:{port}")
        mgr.add_healthz_check("ping", lambda: None)
        errors = []

        def run():
            try:
                mgr.start(stop_event)
            except ManagerError as e:
                errors.append(e)

        runner = threading.Thread(target=run)
        runner.start()
        try:
            body = None
            for _ in range(50):
                try:
                    with urllib.request.urlopen(f"http://127.0.0.1:{port}/healthz", timeout=1) as response:
                        body = response.read()
                    break
                except OSError:
                    threading.Event().wait(0.1)
            assert body == b"ok"
        finally:
            stop_event.set()
            runner.join(10)

        assert errors == []
        with pytest.raises(OSError):
            urllib.request.urlopen(f"http://127.0.0.1:{port}/healthz", timeout=1)


class TestLeaderElection:
    """Test the leader election callbacks and failures."""

    def test_invalid_settings_fail_the_manager(self, scheme, stop_event):
        """Settings the election library rejects surface as a fatal error."""
        mgr = _manager(scheme, leader_election=LeaderElectionConfig(
            enabled=True,
            lock_namespace="capm3",
            renew_deadline=timedelta(seconds=2),
            retry_period=timedelta(seconds=2),
        ))

        with patch('capm3_manager.runtime.LeaseLock'):
            with pytest.raises(ManagerError) as exc:
                mgr.start(stop_event)

        assert "leader election failed" in str(exc.value)

    def test_controllers_start_when_leading(self, scheme, stop_event):
        mgr = _manager(scheme, leader_election=LEADER_ELECTION)
        _add_controllers(mgr, scheme, "Metal3Cluster")

        with patch('capm3_manager.runtime.LeaseLock') as mock_lock, \
                patch('capm3_manager.runtime.leaderelection.LeaderElection') as mock_election, \
                patch.object(Controller, "start") as mock_start:
            def run_election():
                election = mock_election.call_args.args[0]
                election.onstarted_leading()
                stop_event.set()
            mock_election.return_value.run.side_effect = run_election

            mgr.start(stop_event)

        mock_start.assert_called_once_with()
        assert mock_lock.call_args.args[:2] == ("controller-leader-election-capm3", "capm3")
        election = mock_election.call_args.args[0]
        assert (election.lease_duration, election.renew_deadline, election.retry_period) == (15, 10, 2)

    def test_lost_lease_is_fatal(self, scheme, stop_event):
        mgr = _manager(scheme, leader_election=LEADER_ELECTION)

        with patch('capm3_manager.runtime.LeaseLock'), \
                patch('capm3_manager.runtime.leaderelection.LeaderElection') as mock_election:
            def run_election():
                election = mock_election.call_args.args[0]
                election.onstarted_leading()
                election.onstopped_leading()
            mock_election.return_value.run.side_effect = run_election

            with pytest.raises(ManagerError) as exc:
                mgr.start(stop_event)

        assert "leader election lost" in str(exc.value)

    def test_stopping_after_shutdown_is_not_fatal(self, scheme, stop_event):
        mgr = _manager(scheme, leader_election=LEADER_ELECTION)

        with patch('capm3_manager.runtime.LeaseLock'), \
                patch('capm3_manager.runtime.leaderelection.LeaderElection') as mock_election:
            def run_election():
                stop_event.set()
                mock_election.call_args.args[0].onstopped_leading()
            mock_election.return_value.run.side_effect = run_election

            mgr.start(stop_event)


def _post_review(port, path, uid):
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    conn = http.client.HTTPSConnection("127.0.0.1", port, context=context, timeout=5)
    try:
        body = json.dumps({
            "apiVersion": "admission.k8s.io/v1",
            "kind": "AdmissionReview",
            "request": {"uid": uid},
        })
        conn.request("POST", path, body=body, headers={"Content-Type": "application/json"})
        response = conn.getresponse()
        return response.status, json.loads(response.read())
    finally:
        conn.close()


class TestWebhookServerTLS:
    """Test the admission server over real TLS on an ephemeral port."""

    @pytest.fixture
    def webhook_server(self, cert_dir):
        server = WebhookServer(port=0, cert_dir=str(cert_dir), tls_mutators=build_tls_mutators(TLSOptions()))
        server.register("/validate-test", allow_admission)
        server.start()
        yield server
        server.stop()

    def test_answers_admission_review(self, webhook_server):
        status, review = _post_review(webhook_server.port, "/validate-test", "abc")

        assert status == 200
        assert review["kind"] == "AdmissionReview"
        assert review["response"] == {"uid": "abc", "allowed": True}

    def test_unknown_path(self, webhook_server):
        status, _ = _post_review(webhook_server.port, "/mutate-missing", "abc")
        assert status == 404

    def test_idle_client_does_not_block_others(self, webhook_server):
        """A connection that never starts its handshake leaves other clients served."""
        with socket.create_connection(("127.0.0.1", webhook_server.port)):
            status, review = _post_review(webhook_server.port, "/validate-test", "second")

        assert status == 200
        assert review["response"]["uid"] == "second"

    def test_started_checker_passes(self, webhook_server):
        webhook_server.started_checker()()


class TestMainRunLoop:
    """Test exit codes with the real run loop."""

    @pytest.fixture(autouse=True)
    def process(self, stop_event):
        with patch('capm3_manager.bootstrap.setup_signal_handler', return_value=stop_event), \
                patch('capm3_manager.bootstrap.configure_logging'), \
                patch('capm3_manager.bootstrap.get_config'), \
                patch('capm3_manager.bootstrap.new_api_client'), \
                patch.object(Controller, "start"):
            yield

    def _args(self, cert_dir, *extra):
        return [
            "--metrics-bind-addr", "0",
            "--health-addr", "0",
            "--webhook-port", str(_free_port()),
            "--webhook-cert-dir", str(cert_dir),
            *extra,
        ]

    def test_clean_stop_exits_0(self, cert_dir, stop_event):
        stop_event.set()
        assert main(self._args(cert_dir)) == 0

    def test_fatal_runtime_error_exits_1(self, cert_dir):
        with patch('capm3_manager.runtime.LeaseLock'), \
                patch('capm3_manager.runtime.leaderelection.LeaderElection') as mock_election:
            mock_election.return_value.run.side_effect = RuntimeError("lock API unavailable")
            code = main(self._args(cert_dir, "--leader-elect", "--namespace", "capm3"))

        assert code == 1

    def test_missing_certificates_exit_1(self, tmp_path, stop_event):
        stop_event.set()
        assert main(self._args(tmp_path)) == 1
