#!/usr/bin/env python3
"""
Metal3 Controller Manager - Entry Point

Runs the Cluster API Provider Metal3 reconcilers and admission webhooks
against the cluster selected by --kubeconfig or the in-cluster config.

Usage:
    python run.py [--namespace NAMESPACE] [--leader-elect] [--webhook-port PORT]
"""

import sys

from capm3_manager.bootstrap import main


if __name__ == "__main__":
    sys.exit(main())
