# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

"""Obtain a Vault token through a single-use wrapped credential.

The process asks the vault-controller to mint a token for its identity. The controller
answers asynchronously: it posts a response-wrapped token to the broker endpoint exposed
by this process, which unwraps it against Vault and hands the resulting token to the
local waiter. The wrapped token can only be unwrapped once, and the broker accepts at
most one delivery, so a token never needs to be baked into an image or environment.

Typical usage:

    handoff = TokenHandoff()
    broker = TokenBroker(vault_addr, handoff)
    broker.serve("0.0.0.0", 80)
    token = TokenAcquirer(controller_addr, name, namespace, handoff).acquire()
"""

import enum
import json
import logging
import threading
from pathlib import Path
from typing import Callable, Optional, Union

import requests
from flask import Flask, request
from requests.exceptions import RequestException
from werkzeug.serving import BaseWSGIServer, make_server

from vault_client import Vault, VaultError, client_token

logger = logging.getLogger(__name__)


class AlreadyDelivered(Exception):
    """A token has already been handed over."""


class HandoffCancelled(Exception):
    """Waiting for a token was cancelled."""


class TokenRequestError(Exception):
    """The vault-controller refused or failed to accept a token request."""


class TokenAcquisitionError(Exception):
    """No token could be obtained within the retry budget."""


class TokenState(enum.Enum):
    """Progress of a token acquisition."""

    NO_TOKEN = "no-token"
    REQUESTING = "requesting"
    WAITING_FOR_CALLBACK = "waiting-for-callback"
    DELIVERED = "delivered"
    TIMED_OUT = "timed-out"
    FAILED = "failed"


class TokenHandoff:
    """Single-slot, one-shot hand-over of the unwrapped token to a local waiter."""

    def __init__(self):
        self._cond = threading.Condition()
        self._token: Optional[str] = None
        self._delivered = False
        self._cancelled = False

    @property
    def delivered(self) -> bool:
        with self._cond:
            return self._delivered

    def deliver(self, token: str) -> None:
        """Fill the slot.

        Raises:
            AlreadyDelivered: if a token was handed over before.
        """
        with self._cond:
            if self._delivered:
                raise AlreadyDelivered("token already delivered")
            self._token = token
            self._delivered = True
            self._cond.notify_all()

    def cancel(self) -> None:
        """Wake up waiters without a token."""
        with self._cond:
            self._cancelled = True
            self._cond.notify_all()

    def wait(self, timeout: Optional[float] = None) -> str:
        """Block until the token is delivered.

        Raises:
            TimeoutError: if nothing was delivered within `timeout` seconds.
            HandoffCancelled: if `cancel` was called first.
        """
        with self._cond:
            if not self._cond.wait_for(lambda: self._delivered or self._cancelled, timeout):
                raise TimeoutError("no token delivered")
            if not self._delivered:
                raise HandoffCancelled("waiting for token cancelled")
            return self._token


def read_token(token_file: Union[str, Path]) -> str:
    """Read the client token from a persisted unwrapped secret.

    Raises:
        TokenAcquisitionError: if the file cannot be read or parsed.
    """
    logger.info("Reading vault secret file from %s", token_file)
    try:
        with open(token_file, "r") as f:
            secret = json.load(f)
        return client_token(secret)
    except OSError as e:
        raise TokenAcquisitionError(f"could not read secret file: {e}") from e
    except (ValueError, VaultError) as e:
        raise TokenAcquisitionError(f"could not parse token file: {e}") from e


class TokenBroker:
    """HTTP endpoint receiving the wrapped token from the vault-controller.

    `POST /` with `{"token": "<wrapping token>"}` answers 200 once the token has been
    unwrapped and handed over, 409 if a token was already delivered, and 500 otherwise.

    With a `marker_file`, the unwrapped secret is persisted there before being handed
    over, and the existence of that file alone causes further deliveries to be rejected,
    including after a restart of the process.
    """

    def __init__(
        self,
        vault_addr: str,
        handoff: TokenHandoff,
        marker_file: Optional[Union[str, Path]] = None,
        api_timeout=10.0,
    ):
        self.vault_addr = vault_addr
        self.handoff = handoff
        self.marker_file = Path(marker_file) if marker_file else None
        self.api_timeout = api_timeout
        self._lock = threading.Lock()
        self._server: Optional[BaseWSGIServer] = None

        self.app = Flask(__name__)
        self.app.add_url_rule("/", "receive_token", self._receive_token, methods=["POST"])

    def _already_delivered(self) -> bool:
        if self.marker_file is not None and self.marker_file.exists():
            logger.warning("Token file already exists")
            return True
        if self.handoff.delivered:
            logger.warning("Token already delivered")
            return True
        return False

    def _persist(self, secret: dict) -> None:
        self.marker_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.marker_file, "x") as f:
            json.dump(secret, f)
        self.marker_file.chmod(0o600)
        logger.info("wrote %s", self.marker_file)

    def _receive_token(self):
        with self._lock:
            if self._already_delivered():
                return "token already delivered\n", 409

            body = request.get_json(force=True, silent=True)
            if not isinstance(body, dict) or not body.get("token"):
                logger.error("Invalid wrapped token payload")
                return "invalid payload\n", 500

            # The wrapping token is the credential: Vault unwraps the token in use.
            vault = Vault(self.vault_addr, token=body["token"], api_timeout=self.api_timeout)
            try:
                secret = vault.unwrap()
            except VaultError as e:
                logger.error("Unwrapping token failed: %s", e)
                return "unwrap failed\n", 500

            if self.marker_file is not None:
                try:
                    self._persist(secret)
                except FileExistsError:
                    return "token already delivered\n", 409
                except OSError as e:
                    logger.error("Could not persist token: %s", e)
                    return "could not persist token\n", 500

            try:
                self.handoff.deliver(client_token(secret))
            except AlreadyDelivered:
                return "token already delivered\n", 409

            logger.info("Received token from vault controller")
            return "", 200

    def serve(self, host: str = "0.0.0.0", port: int = 80) -> BaseWSGIServer:
        """Start answering on `host:port` from a daemon thread.

        The socket is bound and listening when this returns, so a token request may be
        issued right away.

        Raises:
            OSError: if the address cannot be bound.
        """
        self._server = make_server(host, port, self.app, threaded=True)
        thread = threading.Thread(
            target=self._server.serve_forever, name="token-broker", daemon=True
        )
        thread.start()
        logger.info("Token broker listening on %s:%d", host, self._server.server_port)
        return self._server

    def shutdown(self) -> None:
        """Stop answering and release the listening socket."""
        if self._server is not None:
            self._server.shutdown()
            self._server.server_close()
            self._server = None


def request_token(controller_addr: str, name: str, namespace: str, timeout=10.0) -> None:
    """Ask the vault-controller to deliver a wrapped token for `(name, namespace)`.

    The token itself arrives later, on the broker endpoint.

    Raises:
        TokenRequestError: unless the controller answers 202 Accepted.
    """
    url = f"{controller_addr.rstrip('/')}/token"
    logger.info("Requesting a new wrapped token from %s", controller_addr)
    try:
        response = requests.post(
            url, params={"name": name, "namespace": namespace}, timeout=timeout
        )
    except RequestException as e:
        raise TokenRequestError(str(e)) from e

    if response.status_code == 202:
        return
    raise TokenRequestError(response.text or f"unexpected response {response.status_code}")


class TokenAcquirer:
    """Drive token requests until the broker receives a token or the budget runs out.

    Each failed request and each callback timeout uses one unit of `retry_budget`.
    """

    def __init__(
        self,
        controller_addr: str,
        name: str,
        namespace: str,
        handoff: TokenHandoff,
        marker_file: Optional[Union[str, Path]] = None,
        callback_timeout: float = 30.0,
        retry_delay: float = 5.0,
        retry_budget: int = 12,
        requester: Callable[[str, str, str], None] = request_token,
    ):
        self.controller_addr = controller_addr
        self.name = name
        self.namespace = namespace
        self.handoff = handoff
        self.marker_file = Path(marker_file) if marker_file else None
        self.callback_timeout = callback_timeout
        self.retry_delay = retry_delay
        self.retry_budget = retry_budget
        self.requester = requester
        self.state = TokenState.NO_TOKEN
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Abort an acquisition in progress, e.g. on SIGTERM."""
        self._cancelled.set()
        self.handoff.cancel()

    def _fail(self, message: str) -> TokenAcquisitionError:
        self.state = TokenState.FAILED
        return TokenAcquisitionError(message)

    def acquire(self) -> str:
        """Obtain the token.

        If the marker file exists, the token persisted there is used and nothing is
        requested.

        Raises:
            TokenAcquisitionError: if the retry budget is exhausted or acquisition was
                cancelled.
        """
        if self.marker_file is not None and self.marker_file.exists():
            token = read_token(self.marker_file)
            self.state = TokenState.DELIVERED
            return token

        retries = self.retry_budget
        while not self._cancelled.is_set():
            self.state = TokenState.REQUESTING
            try:
                self.requester(self.controller_addr, self.name, self.namespace)
            except TokenRequestError as e:
                logger.warning(
                    "token request: Request error %s; retrying in %ss", e, self.retry_delay
                )
                if retries <= 0:
                    raise self._fail("Token request timeout")
                retries -= 1
                self._cancelled.wait(self.retry_delay)
                continue

            self.state = TokenState.WAITING_FOR_CALLBACK
            logger.info("Token request complete; waiting for callback...")
            try:
                token = self.handoff.wait(self.callback_timeout)
            except TimeoutError:
                self.state = TokenState.TIMED_OUT
                logger.warning("token request: Timeout waiting for callback")
                if retries <= 0:
                    raise self._fail("Token callback timeout")
                retries -= 1
                continue
            except HandoffCancelled:
                break

            self.state = TokenState.DELIVERED
            return token

        raise self._fail("Token acquisition cancelled")
