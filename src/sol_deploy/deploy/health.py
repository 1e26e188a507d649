"""HTTP health probes for homelab services.

Probes a list of ``(name, url)`` targets concurrently and classifies each
response four ways instead of up/down, because an auth-gated service
answering 401 is *up*:

=================  ===============================  =========
HTTP outcome       ProbeStatus                      is_up
=================  ===============================  =========
2xx, 3xx           REACHABLE                        yes
401, 403           UNAUTHENTICATED                  yes
404, 5xx, other    UNHEALTHY                        no
refused, timeout   UNREACHABLE                      no
=================  ===============================  =========

Probes are independent read-only GETs with a per-probe timeout, so they
run concurrently (``asyncio.gather`` over one ``httpx.AsyncClient``,
bounded by a semaphore). The result list always matches the input order.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass

import httpx

from sol_deploy.core.errors import ErrorKind, ProbeError
from sol_deploy.deploy.results import ProbeResult, ProbeStatus
from sol_deploy.logging import get_logger, log_step

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProbeTarget:
    """A named URL to probe."""

    name: str
    url: str


def classify_status(http_status: int) -> ProbeStatus:
    """Map an HTTP status code to a ProbeStatus."""
    if 200 <= http_status < 400:
        return ProbeStatus.REACHABLE
    if http_status in (401, 403):
        return ProbeStatus.UNAUTHENTICATED
    return ProbeStatus.UNHEALTHY


def targets_from_ports(local_services: Mapping[str, int], host: str = "127.0.0.1") -> list[ProbeTarget]:
    """Build targets for web UIs published on the local host."""
    return [ProbeTarget(name, f"http://{host}:{port}") for name, port in local_services.items()]


def targets_from_hostnames(hostnames: Iterable[str]) -> list[ProbeTarget]:
    """Build targets for public tunnel hostnames."""
    return [ProbeTarget(hostname, f"https://{hostname}") for hostname in hostnames]


def parse_target(text: str) -> ProbeTarget:
    """Parse ``name=url`` (or a bare URL) from the command line."""
    if "=" in text and not text.startswith(("http://", "https://")):
        name, url = text.split("=", 1)
        return ProbeTarget(name.strip(), url.strip())
    return ProbeTarget(text, text)


class HealthChecker:
    """Concurrent HTTP prober.

    Parameters
    ----------
    timeout_ms:
        Per-probe timeout covering connect and response.
    max_concurrency:
        Upper bound on in-flight probes.
    transport:
        Optional httpx transport (tests pass ``httpx.MockTransport``).
    verify_tls:
        Verify certificates on https targets.
    """

    def __init__(
        self,
        timeout_ms: int = 5000,
        max_concurrency: int = 8,
        transport: httpx.AsyncBaseTransport | None = None,
        verify_tls: bool = True,
    ) -> None:
        self.timeout_s = timeout_ms / 1000
        self.max_concurrency = max(1, max_concurrency)
        self._transport = transport
        self._verify_tls = verify_tls

    async def _probe_one(
        self,
        client: httpx.AsyncClient,
        target: ProbeTarget,
        limit: asyncio.Semaphore,
    ) -> ProbeResult:
        async with limit:
            start = time.monotonic()
            try:
                response = await asyncio.wait_for(client.get(target.url), timeout=self.timeout_s)
            except (TimeoutError, httpx.TimeoutException):
                return ProbeResult(
                    name=target.name,
                    url=target.url,
                    status=ProbeStatus.UNREACHABLE,
                    error=f"timed out after {self.timeout_s:g}s",
                )
            except httpx.HTTPError as exc:
                return ProbeResult(
                    name=target.name,
                    url=target.url,
                    status=ProbeStatus.UNREACHABLE,
                    error=str(exc)[:200] or type(exc).__name__,
                )
            elapsed = (time.monotonic() - start) * 1000
            return ProbeResult(
                name=target.name,
                url=target.url,
                status=classify_status(response.status_code),
                http_status=response.status_code,
                latency_ms=round(elapsed, 2),
            )

    async def probe_async(self, targets: Sequence[ProbeTarget]) -> list[ProbeResult]:
        """Probe all *targets* concurrently; results follow input order."""
        if not targets:
            return []
        limit = asyncio.Semaphore(self.max_concurrency)
        async with httpx.AsyncClient(
            timeout=self.timeout_s,
            transport=self._transport,
            verify=self._verify_tls,
            follow_redirects=False,
        ) as client:
            results = await asyncio.gather(*[self._probe_one(client, t, limit) for t in targets])
        for result in results:
            logger.debug(
                "health.probe",
                target=result.name,
                status=result.status.value,
                http_status=result.http_status,
            )
        return list(results)

    def probe(self, targets: Sequence[ProbeTarget]) -> list[ProbeResult]:
        """Blocking wrapper around :meth:`probe_async`."""
        with log_step("health.probe_all", log_start=False, targets=len(targets)) as timer:
            results = asyncio.run(self.probe_async(targets))
            timer.add_metric("up", sum(1 for r in results if r.is_up))
        return results


def raise_for_probes(results: Sequence[ProbeResult]) -> None:
    """Raise a ProbeError listing every target that is not up."""
    down = [r for r in results if not r.is_up]
    if not down:
        return
    kind = ErrorKind.UNREACHABLE
    if all(r.status == ProbeStatus.UNHEALTHY for r in down):
        kind = ErrorKind.SERVER_ERROR
    problems = []
    for r in down:
        reason = f"HTTP {r.http_status}" if r.http_status is not None else (r.error or "no response")
        problems.append(f"{r.name} ({r.url}): {r.status.value} - {reason}")
    raise ProbeError(
        f"{len(down)}/{len(results)} services not responding",
        kind=kind,
        problems=problems,
        remediation="Check the service logs: sol-deploy services logs <service>",
    )
