#!/usr/bin/env python3

# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

"""Certificate lifecycle controller for Kubernetes services backed by Vault PKI."""

import argparse
import logging
import queue
import signal
import sys
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from cert_checker import CertChecker, RotationWorker
from cert_issuer import CertIssuer
from cert_manager import (
    CertificateFetchError,
    fetch_certificates,
    remove_stale_files,
    write_certificate_files,
)
from cert_revoker import CertRevoker
from config import ConfigError, ControllerConfig, load_config
from context import ControllerContext
from kubernetes_service import ClusterError, K8sServices
from service_watcher import EventKind, ServiceEvent, ServiceWatcher
from token_broker import TokenAcquirer, TokenAcquisitionError, TokenBroker, TokenHandoff
from vault_client import Vault

# To keep a tidy log, we suppress some DEBUG/INFO logs from some imported libs,
# even when controller logging is set to a lower level.
logging.getLogger("urllib3").setLevel(logging.WARNING)
logging.getLogger("kubernetes").setLevel(logging.WARNING)
logging.getLogger("werkzeug").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


@contextmanager
def on_signals(callback: Callable[[], None]) -> Iterator[None]:
    """Call `callback` on SIGINT or SIGTERM for the duration of the block."""

    def handler(signum, _frame):
        logger.info("Shutdown signal %s received, exiting...", signal.Signals(signum).name)
        callback()

    previous = {sig: signal.signal(sig, handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, prev in previous.items():
            signal.signal(sig, prev)


def acquire_token(config: ControllerConfig, marker_file: Optional[Path] = None) -> str:
    """Obtain a Vault token for this process's identity through the token broker.

    Args:
        config: controller configuration.
        marker_file: Optional; persist the unwrapped secret there, and reuse it if it
            already exists instead of requesting a new token.

    Raises:
        TokenAcquisitionError: if the broker cannot listen or no token arrives in time.
    """
    handoff = TokenHandoff()
    acquirer = TokenAcquirer(
        config.vault_controller_addr,
        config.name,
        config.namespace,
        handoff,
        marker_file=marker_file,
        callback_timeout=config.callback_timeout_seconds,
        retry_delay=config.retry_delay_seconds,
        retry_budget=config.retry_budget,
    )
    if marker_file is not None and marker_file.exists():
        return acquirer.acquire()

    broker = TokenBroker(config.vault_addr, handoff, marker_file, api_timeout=config.api_timeout)
    try:
        broker.serve(config.broker_host, config.broker_port)
    except OSError as e:
        raise TokenAcquisitionError(
            f"Token broker cannot listen on {config.broker_host}:{config.broker_port}: {e}"
        ) from e

    try:
        with on_signals(acquirer.cancel):
            return acquirer.acquire()
    finally:
        broker.shutdown()


def build_context(
    config: ControllerConfig, token: str, in_cluster: bool = True
) -> ControllerContext:
    """Wire the Vault and Kubernetes clients once the token is known.

    Raises:
        ClusterError: if the Kubernetes API is unavailable.
    """
    vault = Vault(config.vault_addr, token=token, api_timeout=config.api_timeout)
    return ControllerContext(config=config, vault=vault, cluster=K8sServices.connect(in_cluster))


class SecretController:
    """Event loop issuing and revoking certificates as services come and go.

    Creation and deletion events share one queue and are handled one at a time, so an
    issuance and a revocation never run concurrently. Rotation sweeps run on their own
    thread alongside.
    """

    def __init__(
        self,
        context: ControllerContext,
        events: Optional["queue.Queue[ServiceEvent]"] = None,
        watcher: Optional[ServiceWatcher] = None,
    ):
        config = context.config
        self.events = events if events is not None else queue.Queue(maxsize=config.event_queue_size)
        self.issuer = CertIssuer(context)
        self.revoker = CertRevoker(context)
        self.watcher = watcher or ServiceWatcher(
            self.events, namespace=config.watch_namespace, api=context.cluster.core
        )
        self.rotation: Optional[RotationWorker] = None
        if config.rotation_interval_seconds > 0:
            self.rotation = RotationWorker(CertChecker(context), config.rotation_interval_seconds)
        self._stop = threading.Event()

    def dispatch(self, event: ServiceEvent) -> None:
        """Hand an event to the issuer or the revoker."""
        logger.debug("Handling %s event for service %s", event.kind.value, event.identity)
        if event.kind is EventKind.CREATED:
            self.issuer.handle(event)
        elif event.kind is EventKind.DELETED:
            self.revoker.handle(event)

    def run(self) -> None:
        """Consume events until stopped.

        Raises:
            ClusterError: if the service watch fails.
        """
        self.watcher.start()
        if self.rotation is not None:
            self.rotation.start()
        try:
            while not self._stop.is_set():
                if self.watcher.failure is not None:
                    raise ClusterError(f"Service watch failed: {self.watcher.failure}")
                try:
                    event = self.events.get(timeout=1.0)
                except queue.Empty:
                    continue
                self.dispatch(event)
        finally:
            self.watcher.stop()
            if self.rotation is not None:
                self.rotation.stop()

    def stop(self) -> None:
        self._stop.set()


def cmd_run(config: ControllerConfig, args: argparse.Namespace) -> int:
    token = acquire_token(config)
    controller = SecretController(build_context(config, token, not args.out_of_cluster))
    with on_signals(controller.stop):
        controller.run()
    return 0


def cmd_check_certs(config: ControllerConfig, args: argparse.Namespace) -> int:
    token = acquire_token(config)
    checker = CertChecker(build_context(config, token, not args.out_of_cluster))
    outcome = checker.sweep()
    logger.info(
        "Checked %d certificates, %d rotated",
        len(outcome),
        sum(1 for result in outcome.values() if result == "rotated"),
    )
    return 0


def cmd_init(config: ControllerConfig, args: argparse.Namespace) -> int:
    if args.reset:
        remove_stale_files(config.secrets_dir, config.token_file)

    token = acquire_token(config, marker_file=config.token_file)
    vault = Vault(config.vault_addr, token=token, api_timeout=config.api_timeout)
    material = fetch_certificates(
        vault,
        config.namespace,
        config.service_name,
        attempts=config.retry_budget,
        delay=config.retry_delay_seconds,
    )
    write_certificate_files(material, config.secrets_dir)
    logger.info("Successfully obtained and unwrapped the vault token, exiting...")
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="vault-cert-controller",
        description="Issue, rotate and revoke Vault PKI certificates for Kubernetes services",
    )
    p.add_argument("--config", help="YAML configuration file")
    p.add_argument("--vault-addr", help="Vault service address")
    p.add_argument("--vault-controller-addr", help="vault-controller address, for token requests")
    p.add_argument("--name", help="name as defined by pod.metadata.name")
    p.add_argument("--namespace", help="namespace as defined by pod.metadata.namespace")
    p.add_argument("--broker-port", type=int, help="port the token broker listens on")
    p.add_argument("--log-level", help="debug/info/warn/error/fatal")
    p.add_argument(
        "--out-of-cluster", action="store_true", help="use the local kubeconfig instead of in-cluster config"
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    p_run = sub.add_parser("run", help="Watch services and manage their certificates")
    p_run.add_argument("--watch-namespace", help="only watch this namespace (default: all)")
    p_run.add_argument("--rotation-interval", help="pause between rotation sweeps, 0 disables them")
    p_run.add_argument("--rotation-threshold", help="remaining validity that triggers rotation")
    p_run.set_defaults(func=cmd_run)

    p_check = sub.add_parser("check-certs", help="Rotate certificates close to expiry, once")
    p_check.add_argument("--rotation-threshold", help="remaining validity that triggers rotation")
    p_check.set_defaults(func=cmd_check_certs)

    p_init = sub.add_parser("init", help="Obtain a token and this pod's certificate, then exit")
    p_init.add_argument("--service-name", help="Kubernetes service name that resolves to this Pod")
    p_init.add_argument("--retry-timeout", type=int, help="retry timeout for token/certs in minutes")
    p_init.add_argument("--secrets-dir", help="directory receiving token and certificate files")
    p_init.add_argument("--reset", action="store_true", help="remove a previous token and certificate first")
    p_init.set_defaults(func=cmd_init)

    return p


_OVERRIDES = (
    "vault_addr",
    "vault_controller_addr",
    "name",
    "namespace",
    "broker_port",
    "log_level",
    "watch_namespace",
    "rotation_interval",
    "rotation_threshold",
    "service_name",
    "retry_timeout",
    "secrets_dir",
)


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    overrides = {key: getattr(args, key, None) for key in _OVERRIDES}

    try:
        config = load_config(args.config, overrides=overrides)
    except ConfigError as e:
        logging.basicConfig(format=LOG_FORMAT)
        logger.error("Invalid configuration: %s", e)
        return 1

    logging.basicConfig(level=config.python_log_level, format=LOG_FORMAT)
    logger.info("Starting %s...", args.cmd)

    try:
        return args.func(config, args)
    except (TokenAcquisitionError, ClusterError, CertificateFetchError) as e:
        logger.error("%s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
