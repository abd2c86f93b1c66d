from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from revision_controller.src.config import ConfigError, env_int, parse_bool
from revision_controller.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


def default_identity() -> str:
    """Return this replica's lease identity: the pod name from ``HOSTNAME`` when running in a pod."""
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))


@dataclass(frozen=True)
class LeaderElectionConfig:
    enabled: bool
    namespace: str
    lease_name: str
    identity: str
    lease_duration_seconds: int = 15
    renew_deadline_seconds: int = 10
    retry_period_seconds: int = 2
    stop_timeout_seconds: int = 45

    def __post_init__(self) -> None:
        if self.renew_deadline_seconds >= self.lease_duration_seconds:
            raise ConfigError(
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS must be smaller than "
                "LEADER_ELECTION_LEASE_DURATION_SECONDS"
            )
        if self.retry_period_seconds >= self.renew_deadline_seconds:
            raise ConfigError(
                "LEADER_ELECTION_RETRY_PERIOD_SECONDS must be smaller than "
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS"
            )

    @classmethod
    def from_env(
        cls, default_namespace: str, env: Mapping[str, str] | None = None
    ) -> LeaderElectionConfig:
        values = env if env is not None else os.environ
        return cls(
            enabled=parse_bool(values.get("LEADER_ELECTION_ENABLED"), default=True),
            namespace=values.get("LEADER_ELECTION_NAMESPACE", default_namespace),
            lease_name=values.get("LEADER_ELECTION_LEASE_NAME", "revision-controller-leader"),
            identity=values.get("LEADER_ELECTION_IDENTITY") or default_identity(),
            lease_duration_seconds=env_int(
                "LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1, env=values
            ),
            renew_deadline_seconds=env_int(
                "LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1, env=values
            ),
            retry_period_seconds=env_int(
                "LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=0, env=values
            ),
            stop_timeout_seconds=env_int(
                "LEADER_ELECTION_CONTROLLER_STOP_TIMEOUT_SECONDS", 45, minimum=1, env=values
            ),
        )


class LeaseLeaderElector:
    """Keeps a single active replica using a ``coordination.k8s.io/v1`` Lease.

    Each cycle reads the Lease and claims it when it is missing, already
    ours, or has not been renewed for ``lease_duration_seconds``.  A 409 on
    create or replace means another replica won the race; the next cycle
    retries.  Leadership is only given up after renewals have failed for
    ``renew_deadline_seconds``, and the Lease is released on shutdown so a
    standby can take over without waiting for expiry.
    """

    def __init__(self, coordination_api: CoordinationV1Api, config: LeaderElectionConfig) -> None:
        self.coordination_api = coordination_api
        self.config = config
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _now_utc(self) -> datetime:
        return datetime.now(UTC)

    def _held_by_other(self, spec: V1LeaseSpec | None, now: datetime) -> bool:
        if spec is None or not spec.holder_identity or spec.holder_identity == self.config.identity:
            return False
        if spec.renew_time is None:
            return False
        renewed = spec.renew_time if spec.renew_time.tzinfo else spec.renew_time.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.config.lease_duration_seconds
        return (now - renewed).total_seconds() < duration

    def _try_acquire_or_renew(self) -> bool:
        now = self._now_utc()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.config.lease_name, namespace=self.config.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._write_lease(None, now)
            LOGGER.warning("Failed to read lease %s: %s", self.config.lease_name, exc.reason)
            return False

        if self._held_by_other(lease.spec, now):
            return False
        return self._write_lease(lease, now)

    def _write_lease(self, lease: V1Lease | None, now: datetime) -> bool:
        """Create the Lease when *lease* is None, otherwise claim or renew it."""
        try:
            if lease is None:
                self.coordination_api.create_namespaced_lease(
                    namespace=self.config.namespace,
                    body=V1Lease(
                        metadata=V1ObjectMeta(
                            name=self.config.lease_name, namespace=self.config.namespace
                        ),
                        spec=V1LeaseSpec(
                            holder_identity=self.config.identity,
                            lease_duration_seconds=self.config.lease_duration_seconds,
                            acquire_time=now,
                            renew_time=now,
                        ),
                    ),
                )
                LOGGER.info("Acquired leader lease %s", self.config.lease_name)
                return True

            spec = lease.spec or V1LeaseSpec()
            if spec.holder_identity != self.config.identity or spec.acquire_time is None:
                spec.acquire_time = now
            spec.holder_identity = self.config.identity
            spec.renew_time = now
            spec.lease_duration_seconds = self.config.lease_duration_seconds
            lease.spec = spec
            self.coordination_api.replace_namespaced_lease(
                name=self.config.lease_name, namespace=self.config.namespace, body=lease
            )
            return True
        except ApiException as exc:
            if exc.status == 409:
                LOGGER.debug("Lease %s conflict, will retry", self.config.lease_name)
            else:
                LOGGER.warning("Failed to write lease %s: %s", self.config.lease_name, exc.reason)
            return False

    def _release_lease(self) -> None:
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.config.lease_name, namespace=self.config.namespace
            )
            if lease.spec and lease.spec.holder_identity == self.config.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.config.lease_name, namespace=self.config.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.config.lease_name)
        except Exception:
            LOGGER.warning("Failed to release leader lease %s", self.config.lease_name, exc_info=True)

    def _lose(self, on_stopped_leading: Callable[[], None]) -> None:
        self._is_leader = False
        METRICS.leader_state.set(0)
        METRICS.leader_transitions_total.labels(transition="lost").inc()
        on_stopped_leading()

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Campaign for the lease until *stop_event* is set, invoking callbacks on transitions."""
        LOGGER.info(
            "Starting leader election for lease %s (identity=%s)",
            self.config.lease_name,
            self.config.identity,
        )
        last_renewal = time.monotonic()
        METRICS.leader_state.set(0)

        while not stop_event.is_set():
            try:
                acquired = self._try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election cycle")
                acquired = False

            if acquired:
                last_renewal = time.monotonic()
                if not self._is_leader:
                    self._is_leader = True
                    LOGGER.info("Became leader (identity=%s)", self.config.identity)
                    METRICS.leader_state.set(1)
                    METRICS.leader_transitions_total.labels(transition="acquired").inc()
                    on_started_leading()
            elif self._is_leader:
                elapsed = time.monotonic() - last_renewal
                if elapsed >= self.config.renew_deadline_seconds:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", elapsed)
                    self._lose(on_stopped_leading)
                else:
                    LOGGER.warning("Lease renewal failed (%.2fs since last renewal)", elapsed)
            stop_event.wait(timeout=self.config.retry_period_seconds)

        if self._is_leader:
            self._release_lease()
            self._lose(on_stopped_leading)
