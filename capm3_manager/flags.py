"""Command line flags for the controller manager."""

import argparse
import re
from datetime import timedelta

from . import config
from .tls_policy import TLS_VERSIONS, insecure_cipher_names, preferred_cipher_names

_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ns|us|µs|ms|s|m|h)")
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1,
    "m": 60,
    "h": 3600,
}


def parse_duration(value: str) -> timedelta:
    """
    Parse a Go style duration string.

    Examples:
        "15s" -> 15 seconds
        "10m" -> 10 minutes
        "1h30m" -> 90 minutes
    """
    text = str(value).strip()
    if text == "0":
        return timedelta(0)

    pos = 0
    seconds = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()

    if pos == 0 or pos != len(text):
        raise argparse.ArgumentTypeError(f"invalid duration {value!r}")
    return timedelta(seconds=seconds)


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the manager."""
    parser = argparse.ArgumentParser(
        description="Cluster API Provider Metal3 controller manager"
    )
    supported_versions = ", ".join(TLS_VERSIONS)

    parser.add_argument(
        "--metrics-bind-addr",
        default=config.DEFAULT_METRICS_BIND_ADDR,
        help="The address the metric endpoint binds to.",
    )
    parser.add_argument(
        "--leader-elect",
        action="store_true",
        help="Enable leader election for controller manager. Enabling this will "
             "ensure there is only one active controller manager.",
    )
    parser.add_argument(
        "--enableBMHNameBasedPreallocation",
        action="store_true",
        help="If set to true, it enables PreAllocation field to use Metal3IPClaim "
             "name structured with BaremetalHost and M3IPPool names",
    )
    parser.add_argument(
        "--leader-elect-lease-duration",
        type=parse_duration,
        default=config.DEFAULT_LEASE_DURATION,
        help="Interval at which non-leader candidates will wait to force acquire "
             "leadership (duration string)",
    )
    parser.add_argument(
        "--leader-elect-renew-deadline",
        type=parse_duration,
        default=config.DEFAULT_RENEW_DEADLINE,
        help="Duration that the leading controller manager will retry refreshing "
             "leadership before giving up (duration string)",
    )
    parser.add_argument(
        "--leader-elect-retry-period",
        type=parse_duration,
        default=config.DEFAULT_RETRY_PERIOD,
        help="Duration the LeaderElector clients should wait between tries of "
             "actions (duration string)",
    )
    parser.add_argument(
        "--namespace",
        default="",
        help="Namespace that the controller watches to reconcile CAPM3 objects. If "
             "unspecified, the controller watches for CAPM3 objects across all namespaces.",
    )
    parser.add_argument(
        "--watch-filter",
        default="",
        help="Label value that the controller watches to reconcile cluster-api objects. "
             f"Label key is always {config.WATCH_LABEL}. If unspecified, the controller "
             "watches for all cluster-api objects.",
    )
    parser.add_argument(
        "--sync-period",
        type=parse_duration,
        default=config.DEFAULT_SYNC_PERIOD,
        help="The minimum interval at which watched resources are reconciled (e.g. 15m)",
    )
    parser.add_argument(
        "--webhook-port",
        type=int,
        default=config.DEFAULT_WEBHOOK_PORT,
        help="Webhook Server port",
    )
    parser.add_argument(
        "--webhook-cert-dir",
        default=config.DEFAULT_WEBHOOK_CERT_DIR,
        help="Webhook cert dir, only used when webhook-port is specified.",
    )
    parser.add_argument(
        "--health-addr",
        default=config.DEFAULT_HEALTH_ADDR,
        help="The address the health endpoint binds to.",
    )

    concurrency = parser.add_argument_group("concurrency")
    concurrency.add_argument(
        "--metal3machine-concurrency", type=int,
        default=config.DEFAULT_MACHINE_CONCURRENCY,
        help="Number of metal3machines to process simultaneously. "
             "WARNING! Currently not safe to set > 1.",
    )
    for kind in ("metal3cluster", "metal3datatemplate", "metal3data",
                 "metal3labelsync", "metal3machinetemplate", "metal3remediation"):
        concurrency.add_argument(
            f"--{kind}-concurrency", type=int,
            default=config.DEFAULT_CONCURRENCY,
            help=f"Number of {kind}s to process simultaneously",
        )

    tls = parser.add_argument_group("tls")
    tls.add_argument(
        "--tls-min-version",
        default=config.DEFAULT_TLS_MIN_VERSION,
        help="The minimum TLS version in use by the webhook server. "
             f"Possible values are {supported_versions}.",
    )
    tls.add_argument(
        "--tls-max-version",
        default=config.DEFAULT_TLS_MAX_VERSION,
        help="The maximum TLS version in use by the webhook server. "
             f"Possible values are {supported_versions}.",
    )
    tls.add_argument(
        "--tls-cipher-suites",
        default="",
        help="Comma-separated list of cipher suites for the webhook server. "
             "If omitted, the default OpenSSL cipher suites will be used. "
             f"Preferred values: {', '.join(preferred_cipher_names())}. "
             f"Insecure values: {', '.join(insecure_cipher_names())}.",
    )

    parser.add_argument(
        "--wait-for-metal3-controller",
        action="store_true",
        help=f"Block startup until the {config.METAL3_GROUP}/{config.METAL3_VERSION} "
             "API group is served by the cluster.",
    )
    parser.add_argument(
        "--kubeconfig",
        default=None,
        help="Path to a kubeconfig. Only required if out-of-cluster.",
    )
    parser.add_argument(
        "--logging-format",
        default="text",
        help="Sets the log format. Permitted formats: \"json\", \"text\".",
    )
    parser.add_argument(
        "-v", "--v",
        type=int,
        default=0,
        help="number for the log level verbosity",
    )

    return parser


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    return build_parser().parse_args(argv)
