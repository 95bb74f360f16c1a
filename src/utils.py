# Copyright 2021 Canonical Ltd.
# See LICENSE file for licensing details.

"""Secret-store path helpers and time conversions shared by the controller components."""

import re
from datetime import datetime
from typing import Union

# Prometheus-style time spec, e.g. "1h30m", "45s" or "500ms".
TIMESPEC_RE = re.compile(
    r"^((?P<y>[0-9]+)y)?((?P<w>[0-9]+)w)?((?P<d>[0-9]+)d)?((?P<h>[0-9]+)h)?"
    r"((?P<m>[0-9]+)m)?((?P<s>[0-9]+)s)?((?P<ms>[0-9]+)ms)?$"
)

_UNIT_SECONDS = {
    "y": 365 * 24 * 3600,
    "w": 7 * 24 * 3600,
    "d": 24 * 3600,
    "h": 3600,
    "m": 60,
    "s": 1,
    "ms": 0.001,
}

# Format of the `lastcertupdate` label stamped on deployments to force a rollout.
ROLLOUT_STAMP_FORMAT = "%d-%m-%YT%H.%M.%S"


def service_domain_name(name: str, namespace: str, domain: str) -> str:
    """Build the in-cluster DNS name of a service.

    >>> service_domain_name("api", "payments", "cluster.local")
    'api.payments.svc.cluster.local'
    """
    return f"{name}.{namespace}.svc.{domain}"


def pki_role_path(name: str) -> str:
    """Path of the PKI role that scopes the names a service may be issued."""
    return f"pki/roles/{name}"


def policy_path(name: str) -> str:
    """Path of the read-only access policy for a service's certificate."""
    return f"sys/policy/{name}"


def cert_issue_path(name: str) -> str:
    """Path used to request a new certificate against a service's PKI role."""
    return f"pki/issue/{name}"


def cert_write_path(namespace: str, name: str) -> str:
    """Deterministic path at which the certificate material of a service is stored."""
    return f"secret/certs/{namespace}/{name}"


def is_valid_timespec(timeval: str) -> bool:
    """Is a time interval unit and value valid.

    Args:
        timeval: a string representing a time specification.

    Returns:
        True if time specification is valid and False otherwise.
    """
    if timeval == "0":
        return True
    return bool(timeval) and bool(TIMESPEC_RE.search(timeval))


def parse_duration(value: Union[str, int, float], bare_unit: str = "s") -> float:
    """Convert a duration into seconds.

    Durations are either a time spec (see `TIMESPEC_RE`) or a bare number, which is
    interpreted in `bare_unit`.

    >>> parse_duration("1h30m")
    5400.0
    >>> parse_duration(2, bare_unit="m")
    120.0

    Raises:
        ValueError, if the duration cannot be parsed.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")

    if isinstance(value, (int, float)):
        number = float(value)
    elif value.strip().replace(".", "", 1).isdigit():
        number = float(value.strip())
    else:
        timeval = value.strip()
        if not is_valid_timespec(timeval):
            raise ValueError(f"Invalid duration: {value!r}")
        if timeval == "0":
            return 0.0
        match = TIMESPEC_RE.search(timeval)
        return float(
            sum(int(amount) * _UNIT_SECONDS[unit] for unit, amount in match.groupdict().items() if amount)
        )

    if number < 0:
        raise ValueError(f"Duration must not be negative: {value!r}")
    return number * _UNIT_SECONDS[bare_unit]


def rollout_stamp(now: datetime) -> str:
    """Render a timestamp usable as a Kubernetes label value."""
    return now.strftime(ROLLOUT_STAMP_FORMAT)
