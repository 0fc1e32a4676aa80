"""Tests for the probe and metrics endpoints."""

import urllib.error
import urllib.request

import pytest

from capm3_manager.metrics import ControllerMetrics
from capm3_manager.probes import ProbeServer, parse_bind_address


class TestParseBindAddress:
    """Test bind address parsing."""

    @pytest.mark.parametrize("address,expected", [
        (":9440", ("", 9440)),
        ("localhost:8080", ("localhost", 8080)),
        ("[::1]:8080", ("::1", 8080)),
        ("0", None),
        ("", None),
    ])
    def test_valid(self, address, expected):
        assert parse_bind_address(address) == expected

    @pytest.mark.parametrize("address", ["localhost", "host:http", ":99999"])
    def test_invalid(self, address):
        with pytest.raises(ValueError):
            parse_bind_address(address)


def _fail():
    raise RuntimeError("not started")


@pytest.fixture
def probe_server():
    servers = []

    def start(**kwargs):
        server = ProbeServer("test", ("127.0.0.1", 0), **kwargs)
        server.start()
        servers.append(server)
        return f"http://127.0.0.1:{server.port}"

    yield start
    for server in servers:
        server.stop()


class TestProbeServer:
    """Test the probe HTTP server on an ephemeral port."""

    def test_healthy(self, probe_server):
        url = probe_server(healthz={"ping": lambda: None})
        with urllib.request.urlopen(f"{url}/healthz", timeout=5) as response:
            assert response.status == 200
            assert response.read() == b"ok"

    def test_failing_check(self, probe_server):
        url = probe_server(readyz={"webhook": _fail, "ping": lambda: None})
        with pytest.raises(urllib.error.HTTPError) as exc:
            urllib.request.urlopen(f"{url}/readyz", timeout=5)

        assert exc.value.code == 500
        body = exc.value.read().decode()
        assert "[-]webhook failed: not started" in body
        assert "[+]ping ok" in body

    def test_metrics(self, probe_server):
        metrics = ControllerMetrics()
        metrics.set_max_workers("Metal3MachineReconciler", 1)
        metrics.observe_reconcile("Metal3MachineReconciler", "success")
        url = probe_server(metrics=metrics)

        with urllib.request.urlopen(f"{url}/metrics", timeout=5) as response:
            body = response.read().decode()

        assert 'controller_runtime_reconcile_total{controller="Metal3MachineReconciler",result="success"} 1' in body
        assert 'controller_runtime_max_concurrent_reconciles{controller="Metal3MachineReconciler"} 1' in body

    def test_checks_added_after_start_are_served(self, probe_server):
        checks = {}
        url = probe_server(readyz=checks)
        checks["webhook"] = _fail

        with pytest.raises(urllib.error.HTTPError) as exc:
            urllib.request.urlopen(f"{url}/readyz", timeout=5)
        assert exc.value.code == 500

    def test_ipv6_address(self):
        server = ProbeServer("test", ("::1", 0), healthz={})
        try:
            server.start()
        except OSError:
            pytest.skip("IPv6 loopback not available")
        try:
            with urllib.request.urlopen(f"http://[::1]:{server.port}/healthz", timeout=5) as response:
                assert response.status == 200
        finally:
            server.stop()

    def test_metrics_not_served_without_registry(self, probe_server):
        url = probe_server(healthz={})
        with pytest.raises(urllib.error.HTTPError) as exc:
            urllib.request.urlopen(f"{url}/metrics", timeout=5)
        assert exc.value.code == 404


class TestControllerMetrics:
    """Test counter rendering."""

    def test_errors_counted_separately(self):
        metrics = ControllerMetrics()
        metrics.observe_reconcile("Metal3DataReconciler", "error")
        metrics.observe_reconcile("Metal3DataReconciler", "error")

        assert metrics.reconcile_count("Metal3DataReconciler", "error") == 2
        assert 'controller_runtime_reconcile_errors_total{controller="Metal3DataReconciler"} 2' in metrics.render()
