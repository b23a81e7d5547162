"""
Readiness Gate

Reports whether an infrastructure subsystem's validating admission path is
live. A controller can report "installed" while its webhook Service still has
no endpoints; objects created in that window are rejected. The gate therefore
resolves only once the webhook backend has at least one ready address.

Each subsystem is probed at most once per run: the first caller starts a
task, later callers await the same task. Probing retries with exponential
backoff (tenacity) and gives up after a bounded number of attempts, yielding
a not-ready token instead of hanging.
"""

from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Iterable, Optional
import asyncio
import logging

from tenacity import (
    AsyncRetrying,
    RetryError,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .objects import ReadinessToken

logger = logging.getLogger(__name__)

SECRET_STORE_SUBSYSTEM = "external-secrets"
TLS_ISSUER_SUBSYSTEM = "cert-manager"
GATEWAY_SUBSYSTEM = "traefik"


class SubsystemNotReady(Exception):
    """Raised by a probe while a subsystem is not (yet) live."""


@dataclass(frozen=True)
class SubsystemSpec:
    """Where a subsystem's controller and admission webhook live."""

    name: str
    namespace: str
    controller: str
    webhook_service: Optional[str] = None


def default_subsystems(gateway_namespace: str = "traefik-system",
                       gateway_controller: str = "traefik") -> Dict[str, SubsystemSpec]:
    """Subsystems installed by the base infrastructure stack."""
    return {
        SECRET_STORE_SUBSYSTEM: SubsystemSpec(
            name=SECRET_STORE_SUBSYSTEM,
            namespace="external-secrets",
            controller="external-secrets",
            webhook_service="external-secrets-webhook",
        ),
        TLS_ISSUER_SUBSYSTEM: SubsystemSpec(
            name=TLS_ISSUER_SUBSYSTEM,
            namespace="cert-manager",
            controller="cert-manager",
            webhook_service="cert-manager-webhook",
        ),
        GATEWAY_SUBSYSTEM: SubsystemSpec(
            name=GATEWAY_SUBSYSTEM,
            namespace=gateway_namespace,
            controller=gateway_controller,
        ),
    }


Probe = Callable[[SubsystemSpec], Awaitable[None]]


class KubernetesSubsystemProbe:
    """
    Probe a subsystem through the Kubernetes API.

    Passes when the controller Deployment exists and, if the subsystem has a
    webhook, its Service has at least one ready endpoint address.
    """

    def __init__(self, k8s_client=None):
        self._client = k8s_client

    def _get_k8s_client(self):
        """Lazy import to avoid loading cluster config until first probe."""
        if self._client is None:
            from .kubernetes.client import get_k8s_client
            self._client = get_k8s_client()
        return self._client

    async def __call__(self, spec: SubsystemSpec) -> None:
        from kubernetes.client.rest import ApiException
        from urllib3.exceptions import HTTPError as TransportError

        try:
            k8s = self._get_k8s_client()
        except RuntimeError as e:
            raise SubsystemNotReady(f"no cluster access: {e}") from e

        try:
            if not await k8s.deployment_exists(spec.controller, spec.namespace):
                raise SubsystemNotReady(f"controller {spec.namespace}/{spec.controller} not found")

            if spec.webhook_service:
                ready = await k8s.count_ready_endpoints(spec.webhook_service, spec.namespace)
                if ready == 0:
                    raise SubsystemNotReady(
                        f"webhook {spec.namespace}/{spec.webhook_service} has no ready endpoints"
                    )
        except ApiException as e:
            # API server hiccups during installs are treated as not-ready-yet
            raise SubsystemNotReady(f"API error {e.status}: {e.reason}") from e
        except (TransportError, OSError) as e:
            raise SubsystemNotReady(f"API server unreachable: {type(e).__name__}: {e}") from e


class ReadinessGate:
    """
    Memoized, bounded readiness checks keyed by subsystem name.

    Args:
        probe: Async callable raising SubsystemNotReady until the subsystem is live
        subsystems: Known subsystem specs
        max_attempts: Retry budget per subsystem
        min_wait / max_wait: Exponential backoff bounds in seconds
        assume_ready: Skip probing and resolve every known subsystem as ready
    """

    def __init__(
        self,
        probe: Optional[Probe] = None,
        subsystems: Optional[Dict[str, SubsystemSpec]] = None,
        max_attempts: int = 10,
        min_wait: float = 1.0,
        max_wait: float = 30.0,
        assume_ready: bool = False
    ):
        self.probe = probe or KubernetesSubsystemProbe()
        self.subsystems = subsystems if subsystems is not None else default_subsystems()
        self.max_attempts = max_attempts
        self.min_wait = min_wait
        self.max_wait = max_wait
        self.assume_ready = assume_ready
        self._tasks: Dict[str, asyncio.Task] = {}

    @classmethod
    def from_settings(cls, settings, probe: Optional[Probe] = None) -> "ReadinessGate":
        return cls(
            probe=probe,
            subsystems=default_subsystems(settings.gateway_namespace, settings.gateway_controller_deployment),
            max_attempts=settings.readiness_max_attempts,
            min_wait=settings.readiness_min_wait,
            max_wait=settings.readiness_max_wait,
            assume_ready=settings.readiness_assume_ready,
        )

    async def await_ready(self, subsystem: str) -> ReadinessToken:
        """
        Get the readiness token for a subsystem, probing it on first use.

        Never raises for a subsystem that stays down; the returned token is
        not ready and ``token.require()`` raises DependencyUnresolved.
        """
        task = self._tasks.get(subsystem)
        if task is None:
            task = asyncio.ensure_future(self._resolve(subsystem))
            self._tasks[subsystem] = task
        # Shield: one cancelled waiter must not cancel the shared probe
        return await asyncio.shield(task)

    async def await_all(self, subsystems: Iterable[str]) -> Dict[str, ReadinessToken]:
        """Resolve several subsystems concurrently."""
        names = list(dict.fromkeys(subsystems))
        tokens = await asyncio.gather(*(self.await_ready(name) for name in names))
        return dict(zip(names, tokens))

    async def _resolve(self, subsystem: str) -> ReadinessToken:
        spec = self.subsystems.get(subsystem)
        if spec is None:
            logger.error(f"[GATE] Unknown subsystem: {subsystem}")
            return ReadinessToken(subsystem=subsystem, ready=False, reason="unknown subsystem")

        if self.assume_ready:
            logger.info(f"[GATE] Assuming {subsystem} is ready (probing disabled)")
            return ReadinessToken.assumed(subsystem)

        attempts = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_attempts),
                wait=wait_exponential(multiplier=1, min=self.min_wait, max=self.max_wait),
                retry=retry_if_exception_type(SubsystemNotReady),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            ):
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    await self.probe(spec)
        except (SubsystemNotReady, RetryError) as e:
            logger.warning(f"[GATE] ❌ {subsystem} not ready after {attempts} attempt(s): {e}")
            return ReadinessToken(subsystem=subsystem, ready=False, attempts=attempts, reason=str(e))
        except Exception as e:
            # A broken probe leaves the subsystem unresolved; it never aborts the pass
            reason = f"probe failed: {type(e).__name__}: {e}"
            logger.error(f"[GATE] ❌ {subsystem} {reason}", exc_info=True)
            return ReadinessToken(subsystem=subsystem, ready=False, attempts=attempts, reason=reason)

        logger.info(f"[GATE] ✅ {subsystem} ready (attempt {attempts})")
        return ReadinessToken(subsystem=subsystem, ready=True, attempts=attempts)
