"""Configuration settings for the Metal3 controller manager."""

from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from .errors import ConfigError

# API groups
INFRA_GROUP = "infrastructure.cluster.x-k8s.io"
INFRA_VERSION = "v1beta1"
METAL3_GROUP = "metal3.io"
METAL3_VERSION = "v1alpha1"

# Cluster API watch filter label
WATCH_LABEL = "cluster.x-k8s.io/watch-filter"

# Leader election
LEADER_ELECTION_ID = "controller-leader-election-capm3"
LEADER_ELECTION_JITTER = 1.2
SERVICE_ACCOUNT_NAMESPACE_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"

USER_AGENT = "cluster-api-provider-metal3-manager"

# Flag defaults
DEFAULT_METRICS_BIND_ADDR = "localhost:8080"
DEFAULT_HEALTH_ADDR = ":9440"
DEFAULT_WEBHOOK_PORT = 9443
DEFAULT_WEBHOOK_CERT_DIR = "/tmp/k8s-webhook-server/serving-certs/"
DEFAULT_SYNC_PERIOD = timedelta(minutes=10)
DEFAULT_LEASE_DURATION = timedelta(seconds=15)
DEFAULT_RENEW_DEADLINE = timedelta(seconds=10)
DEFAULT_RETRY_PERIOD = timedelta(seconds=2)
DEFAULT_MACHINE_CONCURRENCY = 1
DEFAULT_CONCURRENCY = 10
DEFAULT_TLS_MIN_VERSION = "TLS12"
DEFAULT_TLS_MAX_VERSION = "TLS13"

# Readiness gate
API_WAIT_INTERVAL_SECONDS = 10

# Watch settings
WATCH_TIMEOUT_SECONDS = 300
WATCH_RETRY_SECONDS = 5


@dataclass(frozen=True)
class TLSOptions:
    """TLS settings requested for the webhook server."""
    min_version: str = DEFAULT_TLS_MIN_VERSION
    max_version: Optional[str] = DEFAULT_TLS_MAX_VERSION
    cipher_suites: str = ""


@dataclass(frozen=True)
class LeaderElectionConfig:
    """Leader election settings for the manager."""
    enabled: bool = False
    lease_duration: timedelta = DEFAULT_LEASE_DURATION
    renew_deadline: timedelta = DEFAULT_RENEW_DEADLINE
    retry_period: timedelta = DEFAULT_RETRY_PERIOD
    lock_name: str = LEADER_ELECTION_ID
    lock_namespace: str = ""


@dataclass(frozen=True)
class ConcurrencyConfig:
    """Maximum number of in-flight reconciles, per reconciler kind."""
    machine: int = DEFAULT_MACHINE_CONCURRENCY
    cluster: int = DEFAULT_CONCURRENCY
    data_template: int = DEFAULT_CONCURRENCY
    data: int = DEFAULT_CONCURRENCY
    label_sync: int = DEFAULT_CONCURRENCY
    machine_template: int = DEFAULT_CONCURRENCY
    remediation: int = DEFAULT_CONCURRENCY


@dataclass(frozen=True)
class RuntimeConfig:
    """Immutable snapshot of every startup parameter."""
    metrics_bind_addr: str = DEFAULT_METRICS_BIND_ADDR
    health_addr: str = DEFAULT_HEALTH_ADDR
    webhook_port: int = DEFAULT_WEBHOOK_PORT
    webhook_cert_dir: str = DEFAULT_WEBHOOK_CERT_DIR
    namespace: str = ""
    watch_filter_value: str = ""
    sync_period: timedelta = DEFAULT_SYNC_PERIOD
    concurrency: ConcurrencyConfig = ConcurrencyConfig()
    leader_election: LeaderElectionConfig = LeaderElectionConfig()
    tls: TLSOptions = TLSOptions()
    wait_for_metal3_controller: bool = False
    enable_bmh_name_based_preallocation: bool = False
    kubeconfig: Optional[str] = None
    logging_format: str = "text"
    verbosity: int = 0


def default_lock_namespace(watch_namespace: str = "") -> str:
    """
    Pick the namespace holding the leader election lock.

    The watch namespace wins, then the pod's own service account namespace,
    then "default".
    """
    if watch_namespace:
        return watch_namespace
    try:
        with open(SERVICE_ACCOUNT_NAMESPACE_FILE) as f:
            namespace = f.read().strip()
            if namespace:
                return namespace
    except OSError:
        pass
    return "default"


def _validate_leader_election(le: LeaderElectionConfig) -> None:
    # the lease lock stores whole seconds
    for flag, value in (
        ("leader-elect-lease-duration", le.lease_duration),
        ("leader-elect-renew-deadline", le.renew_deadline),
        ("leader-elect-retry-period", le.retry_period),
    ):
        if value % timedelta(seconds=1):
            raise ConfigError(f"{flag} must be a whole number of seconds, got {value}")
    if le.retry_period < timedelta(seconds=1):
        raise ConfigError("leader-elect-retry-period must be at least 1s")
    if le.renew_deadline >= le.lease_duration:
        raise ConfigError(
            f"leader-elect-renew-deadline ({le.renew_deadline}) must be less than "
            f"leader-elect-lease-duration ({le.lease_duration})"
        )
    if le.retry_period * LEADER_ELECTION_JITTER >= le.renew_deadline:
        raise ConfigError(
            f"leader-elect-retry-period ({le.retry_period}) times {LEADER_ELECTION_JITTER} "
            f"must be less than leader-elect-renew-deadline ({le.renew_deadline})"
        )


def build_runtime_config(args) -> RuntimeConfig:
    """
    Build the immutable runtime configuration from parsed flags.

    Args:
        args: argparse.Namespace produced by flags.build_parser()

    Returns:
        The validated RuntimeConfig

    Raises:
        ConfigError: If a value is out of range
    """
    concurrency = ConcurrencyConfig(
        machine=args.metal3machine_concurrency,
        cluster=args.metal3cluster_concurrency,
        data_template=args.metal3datatemplate_concurrency,
        data=args.metal3data_concurrency,
        label_sync=args.metal3labelsync_concurrency,
        machine_template=args.metal3machinetemplate_concurrency,
        remediation=args.metal3remediation_concurrency,
    )
    for field_name, value in vars(concurrency).items():
        if value < 1:
            raise ConfigError(f"{field_name} concurrency must be at least 1, got {value}")

    leader_election = LeaderElectionConfig(
        enabled=args.leader_elect,
        lease_duration=args.leader_elect_lease_duration,
        renew_deadline=args.leader_elect_renew_deadline,
        retry_period=args.leader_elect_retry_period,
        lock_namespace=default_lock_namespace(args.namespace) if args.leader_elect else "",
    )
    if leader_election.enabled:
        _validate_leader_election(leader_election)

    if args.sync_period <= timedelta(0):
        raise ConfigError("sync-period must be positive")
    if not 0 < args.webhook_port < 65536:
        raise ConfigError(f"webhook-port out of range: {args.webhook_port}")

    return RuntimeConfig(
        metrics_bind_addr=args.metrics_bind_addr,
        health_addr=args.health_addr,
        webhook_port=args.webhook_port,
        webhook_cert_dir=args.webhook_cert_dir,
        namespace=args.namespace,
        watch_filter_value=args.watch_filter,
        sync_period=args.sync_period,
        concurrency=concurrency,
        leader_election=leader_election,
        tls=TLSOptions(
            min_version=args.tls_min_version,
            max_version=args.tls_max_version,
            cipher_suites=args.tls_cipher_suites,
        ),
        wait_for_metal3_controller=args.wait_for_metal3_controller,
        enable_bmh_name_based_preallocation=args.enableBMHNameBasedPreallocation,
        kubeconfig=args.kubeconfig,
        logging_format=args.logging_format,
        verbosity=args.v,
    )
