#!/usr/bin/env python3
"""cloudflare-dns-operator - Cloudflare DNS records as Kubernetes resources

Keeps Cloudflare DNS records in sync with CloudflareDNSRecord custom resources
(dns.cloudflare.com/v1alpha1). Record content and zone may be given literally,
read from a Secret or ConfigMap key, or taken from a Service's external address.

Commands:
    controller             Run the operator (default)
    crds                   Print the CustomResourceDefinition as YAML
    list-zones             Print the zones visible to the API token

Environment variables:

    Cloudflare:
        CLOUDFLARE_API_TOKEN      API token with Zone:Read and DNS:Edit (required)

    DNS resolution check:
        CHECK_DNS_RESOLUTION      Check interval, e.g. "30s", "5m", "1h 30m".
                                  Unset disables the check and records stay
                                  pending: true.
        NAMESERVER_FOR_DNS_CHECK  Nameserver to query, "host[:port]" or
                                  "[v6-address]:port" (default: 1.1.1.1:53)

    Runtime:
        DEFAULT_NAMESPACE         Namespace for Secret/ConfigMap/Service references
                                  without one (default: the record's namespace)
        RESYNC_INTERVAL_SECONDS   Re-check every record this often (default: 60)
        WORKERS                   Concurrent reconciles (default: 4)
        REQUEST_TIMEOUT_SECONDS   Timeout for Cloudflare, Kubernetes and DNS calls
                                  (default: 10)
        WATCH_TIMEOUT_SECONDS     Server-side watch timeout (default: 300)
        LOG_LEVEL                 DEBUG, INFO, WARNING, ERROR (default: INFO)

Kubernetes credentials come from the in-cluster service account, or from
~/.kube/config (or $KUBECONFIG) when running outside a cluster.
"""

from __future__ import annotations

import argparse
import ipaddress
import logging
import os
import re
import signal
import sys
from typing import List, Optional, Tuple

import yaml
from kubernetes import config as kube_config

from cloudflare_dns_operator.controller import Controller
from cloudflare_dns_operator.errors import ProviderError
from cloudflare_dns_operator.health import DNSHealthChecker
from cloudflare_dns_operator.kube import KubernetesClusterStore
from cloudflare_dns_operator.provider import CloudflareDNSProvider
from cloudflare_dns_operator.resources import crd_manifest

# =============================================================================
# Configuration
# =============================================================================

CLOUDFLARE_API_TOKEN = os.getenv("CLOUDFLARE_API_TOKEN", "").strip()

CHECK_DNS_RESOLUTION = os.getenv("CHECK_DNS_RESOLUTION", "").strip()
NAMESERVER_FOR_DNS_CHECK = os.getenv("NAMESERVER_FOR_DNS_CHECK", "1.1.1.1:53").strip()

DEFAULT_NAMESPACE = os.getenv("DEFAULT_NAMESPACE", "").strip()
RESYNC_INTERVAL_SECONDS = float(os.getenv("RESYNC_INTERVAL_SECONDS", "60"))
WORKERS = int(os.getenv("WORKERS", "4"))
REQUEST_TIMEOUT_SECONDS = float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10"))
WATCH_TIMEOUT_SECONDS = int(os.getenv("WATCH_TIMEOUT_SECONDS", "300"))
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)

# =============================================================================
# Parsing Helpers
# =============================================================================

_DURATION_UNITS = {
    "ms": 0.001,
    "msec": 0.001,
    "s": 1,
    "sec": 1,
    "secs": 1,
    "second": 1,
    "seconds": 1,
    "m": 60,
    "min": 60,
    "mins": 60,
    "minute": 60,
    "minutes": 60,
    "h": 3600,
    "hr": 3600,
    "hrs": 3600,
    "hour": 3600,
    "hours": 3600,
    "d": 86400,
    "day": 86400,
    "days": 86400,
    "w": 604800,
    "week": 604800,
    "weeks": 604800,
}
_DURATION_RE = re.compile(r"(?:\s*\d+(?:\.\d+)?\s*[a-z]+)+\s*")
_DURATION_PART_RE = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")


def parse_duration(value: str) -> float:
    """Parse "90s", "5m", "1h 30m" (or a bare number of seconds) into seconds."""
    text = value.strip().lower()
    if not text:
        raise ValueError("empty duration")
    try:
        return float(text)
    except ValueError:
        pass

    if not _DURATION_RE.fullmatch(text):
        raise ValueError(f"invalid duration {value!r}")
    total = 0.0
    for number, unit in _DURATION_PART_RE.findall(text):
        if unit not in _DURATION_UNITS:
            raise ValueError(f"unknown time unit {unit!r} in {value!r}")
        total += float(number) * _DURATION_UNITS[unit]
    return total


def parse_nameserver(value: str) -> Tuple[str, int]:
    """Parse "1.1.1.1", "1.1.1.1:5353", "::1" or "[::1]:53" into (address, port)."""
    text = value.strip()
    port = ""
    if text.startswith("["):
        host, sep, rest = text[1:].partition("]")
        if not sep or (rest and not rest.startswith(":")):
            raise ValueError(f"invalid nameserver {value!r}")
        port = rest[1:]
    elif text.count(":") == 1:
        host, port = text.split(":")
    else:
        host = text

    try:
        ipaddress.ip_address(host)
    except ValueError:
        raise ValueError(f"nameserver {value!r} must be an IP address")

    if not port:
        return host, 53
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(f"invalid port in nameserver {value!r}")
    return host, int(port)


# =============================================================================
# Factories
# =============================================================================


def create_provider() -> CloudflareDNSProvider:
    return CloudflareDNSProvider(CLOUDFLARE_API_TOKEN, timeout_seconds=REQUEST_TIMEOUT_SECONDS)


def create_health_checker(store: KubernetesClusterStore) -> Optional[DNSHealthChecker]:
    if not CHECK_DNS_RESOLUTION:
        return None
    nameserver, port = parse_nameserver(NAMESERVER_FOR_DNS_CHECK)
    return DNSHealthChecker(
        store,
        parse_duration(CHECK_DNS_RESOLUTION),
        nameserver=nameserver,
        port=port,
        timeout=REQUEST_TIMEOUT_SECONDS,
    )


def load_kube_config() -> None:
    try:
        kube_config.load_incluster_config()
        logger.info("Using in-cluster Kubernetes configuration")
    except kube_config.ConfigException:
        kube_config.load_kube_config()
        logger.info("Using Kubernetes configuration from kubeconfig")


# =============================================================================
# Commands
# =============================================================================


def print_crds() -> None:
    sys.stdout.write(yaml.safe_dump(crd_manifest(), sort_keys=False))


def list_zones() -> None:
    provider = create_provider()
    for zone in provider.list_zones():
        sys.stdout.write(f"{zone['id']}\t{zone['name']}\t{zone['status']}\n")


def run_controller() -> None:
    provider = create_provider()
    if not provider.test_connection():
        logger.error(f"Cannot connect to {provider.name}. Exiting.")
        sys.exit(1)

    try:
        load_kube_config()
    except (kube_config.ConfigException, OSError) as e:
        logger.error(f"Cannot load Kubernetes configuration: {e}")
        sys.exit(1)

    store = KubernetesClusterStore(
        request_timeout=REQUEST_TIMEOUT_SECONDS,
        watch_timeout_seconds=WATCH_TIMEOUT_SECONDS,
    )
    health_checker = create_health_checker(store)
    if health_checker is None:
        logger.info("DNS resolution check disabled, records stay pending")

    controller = Controller(
        store,
        provider,
        workers=WORKERS,
        resync_interval=RESYNC_INTERVAL_SECONDS,
        default_namespace=DEFAULT_NAMESPACE or None,
        health_checker=health_checker,
    )
    signal.signal(signal.SIGTERM, lambda signum, frame: controller.stop())

    try:
        controller.run()
    except KeyboardInterrupt:
        logger.info("Shutting down gracefully...")
        controller.stop()
        controller.join()


def validate_config(command: str = "controller") -> bool:
    """Validate configuration."""
    errors = []

    if command in ("controller", "list-zones") and not CLOUDFLARE_API_TOKEN:
        errors.append("CLOUDFLARE_API_TOKEN is required")

    if command == "controller":
        if CHECK_DNS_RESOLUTION:
            try:
                if parse_duration(CHECK_DNS_RESOLUTION) <= 0:
                    errors.append("CHECK_DNS_RESOLUTION must be a positive duration")
            except ValueError as e:
                errors.append(f"CHECK_DNS_RESOLUTION: {e}")
            try:
                parse_nameserver(NAMESERVER_FOR_DNS_CHECK)
            except ValueError as e:
                errors.append(f"NAMESERVER_FOR_DNS_CHECK: {e}")
        if WORKERS < 1:
            errors.append("WORKERS must be at least 1")
        if RESYNC_INTERVAL_SECONDS <= 0:
            errors.append("RESYNC_INTERVAL_SECONDS must be positive")

    if REQUEST_TIMEOUT_SECONDS <= 0:
        errors.append("REQUEST_TIMEOUT_SECONDS must be positive")

    if errors:
        for error in errors:
            logger.error(error)
        return False

    return True


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="cloudflare-dns-operator",
        description="Sync CloudflareDNSRecord resources to Cloudflare DNS.",
    )
    subparsers = parser.add_subparsers(dest="command")
    subparsers.add_parser("controller", help="run the operator (default)")
    subparsers.add_parser("crds", help="print the CustomResourceDefinition as YAML")
    subparsers.add_parser("list-zones", help="print the zones visible to the API token")
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    args = build_parser().parse_args(argv)
    command = args.command or "controller"

    if command == "crds":
        print_crds()
        return

    if not validate_config(command):
        logger.error("Configuration validation failed")
        sys.exit(1)

    if command == "list-zones":
        try:
            list_zones()
        except ProviderError as e:
            logger.error(f"Failed to list zones: {e.message}")
            sys.exit(1)
        return

    logger.info(f"cloudflare-dns-operator: resync every {RESYNC_INTERVAL_SECONDS:g}s, {WORKERS} worker(s)")
    try:
        run_controller()
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
