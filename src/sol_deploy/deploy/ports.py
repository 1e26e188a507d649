"""Port collision checks for the homelab compose project.

Two services publishing the same host port is a configuration error, and
it has to be caught *before* ``docker compose up``: afterwards compose has
already started half the stack and the second container sits in
``Created`` with a bind error buried in its logs.

Key Concepts:
    ServicePort: One published mapping (service, host port, container port,
        protocol).
    check_conflicts(): Pure function grouping every service that shares a
        host port. Order-independent, reports all groups.
    ports_from_compose(): Extracts ServicePorts from a compose model (the
        output of ``docker compose config --format json`` or raw YAML),
        handling short syntax, long syntax and port ranges.
    find_busy_ports(): Advisory probe of the host for ports already held
        by something outside the compose project.

Architecture Decisions:
    - Conflicts are keyed on ``(host_port, protocol)``: ``53/tcp`` and
      ``53/udp`` on the same service are not a collision.
    - The host IP is ignored when grouping; binding the same port on two
      interfaces is legal but almost always a mistake in a homelab.
    - Port 53 conflicts carry the systemd-resolved remediation, the most
      common cause on Ubuntu hosts running AdGuard Home.

Tags:
    ports, conflicts, compose, validation, dns
"""

from __future__ import annotations

import socket
from collections import defaultdict
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from sol_deploy.logging import get_logger

logger = get_logger(__name__)

DNS_PORT = 53

DNS_REMEDIATION = (
    "systemd-resolved is probably holding port 53. Set DNSStubListener=no in "
    "/etc/systemd/resolved.conf, then run: sudo systemctl restart systemd-resolved"
)


@dataclass(frozen=True, order=True)
class ServicePort:
    """A host port published by a service."""

    service_name: str
    host_port: int
    container_port: int
    protocol: str = "tcp"
    host_ip: str = ""

    def __str__(self) -> str:
        return f"{self.service_name} {self.host_port}->{self.container_port}/{self.protocol}"


@dataclass(frozen=True)
class Conflict:
    """All mappings sharing one host port and protocol."""

    host_port: int
    protocol: str
    ports: tuple[ServicePort, ...]

    @property
    def services(self) -> tuple[str, ...]:
        return tuple(sorted({p.service_name for p in self.ports}))

    @property
    def message(self) -> str:
        return f"host port {self.host_port}/{self.protocol} is published by {', '.join(self.services)}"

    @property
    def remediation(self) -> str:
        if self.host_port == DNS_PORT:
            return DNS_REMEDIATION
        return f"Change the host side of the {self.host_port} mapping on all but one of: {', '.join(self.services)}"


def check_conflicts(ports: Iterable[ServicePort]) -> list[Conflict]:
    """Group every mapping whose host port collides with another.

    Returns an empty list when host ports are pairwise distinct (per
    protocol). The result is sorted by ``(host_port, protocol)`` and each
    group's mappings are sorted, so input order never changes the output.
    """
    groups: dict[tuple[int, str], list[ServicePort]] = defaultdict(list)
    for port in ports:
        groups[(port.host_port, port.protocol)].append(port)

    return [
        Conflict(host_port=host_port, protocol=protocol, ports=tuple(sorted(members)))
        for (host_port, protocol), members in sorted(groups.items())
        if len(members) > 1
    ]


# ---------------------------------------------------------------------------
# Compose model parsing
# ---------------------------------------------------------------------------


def _port_range(text: str) -> list[int]:
    text = text.strip()
    if "-" in text:
        start, end = text.split("-", 1)
        return list(range(int(start), int(end) + 1))
    return [int(text)]


def _expand(
    service: str,
    published: str,
    target: str,
    protocol: str,
    host_ip: str,
) -> list[ServicePort]:
    host_ports = _port_range(published)
    container_ports = _port_range(target)
    if len(container_ports) == 1:
        container_ports = container_ports * len(host_ports)
    if len(host_ports) != len(container_ports):
        raise ValueError(f"{service}: port range {published}:{target} has mismatched lengths")
    return [
        ServicePort(service, host, container, protocol, host_ip)
        for host, container in zip(host_ports, container_ports)
    ]


def parse_port_spec(service: str, spec: Any) -> list[ServicePort]:
    """Parse one entry of a service's ``ports:`` list.

    Entries that publish no host port (``"80"``, ``"127.0.0.1::80"``)
    yield nothing.

    Raises
    ------
    ValueError
        If the entry cannot be parsed.
    """
    if isinstance(spec, int):
        return []

    if isinstance(spec, Mapping):
        published = spec.get("published")
        target = spec.get("target")
        if published in (None, "") or target is None:
            return []
        return _expand(
            service,
            str(published),
            str(target),
            str(spec.get("protocol") or "tcp"),
            str(spec.get("host_ip") or ""),
        )

    text = str(spec).strip()
    protocol = "tcp"
    if "/" in text:
        text, protocol = text.rsplit("/", 1)

    host_ip = ""
    if text.startswith("["):
        end = text.index("]")
        host_ip = text[1:end]
        text = text[end + 2 :]
        parts = text.split(":")
    else:
        parts = text.rsplit(":", 2)
        if len(parts) == 3:
            host_ip = parts.pop(0)

    if len(parts) == 1 or not parts[0]:
        return []
    return _expand(service, parts[0], parts[1], protocol, host_ip)


def ports_from_compose(model: Mapping[str, Any]) -> list[ServicePort]:
    """Extract every published host port from a compose model."""
    ports: list[ServicePort] = []
    services = model.get("services") or {}
    for name, service in services.items():
        for entry in (service or {}).get("ports") or []:
            ports.extend(parse_port_spec(name, entry))
    return ports


# ---------------------------------------------------------------------------
# Host probing
# ---------------------------------------------------------------------------


def _tcp_in_use(port: int, host: str) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.settimeout(0.5)
        return sock.connect_ex((host or "127.0.0.1", port)) == 0


def _udp_in_use(port: int, host: str) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            sock.bind((host or "0.0.0.0", port))
        except PermissionError:
            # Privileged port without root; nothing can be concluded.
            return False
        except OSError:
            return True
    return False


def find_busy_ports(
    ports: Iterable[ServicePort],
    exclude: Iterable[tuple[int, str]] = (),
) -> list[ServicePort]:
    """Return mappings whose host port is already taken on this machine.

    *exclude* lists ``(port, protocol)`` pairs held by the project's own
    running containers; those are expected to be busy.
    """
    owned = set(exclude)
    busy: list[ServicePort] = []
    for port in sorted(set(ports)):
        if (port.host_port, port.protocol) in owned:
            continue
        host = "" if port.host_ip in ("", "0.0.0.0", "::") else port.host_ip
        try:
            in_use = _udp_in_use(port.host_port, host) if port.protocol == "udp" else _tcp_in_use(port.host_port, host)
        except OSError as exc:
            logger.debug("ports.probe_failed", port=port.host_port, error=str(exc))
            continue
        if in_use:
            busy.append(port)
    if busy:
        logger.warning("ports.busy", ports=[str(p) for p in busy])
    return busy
