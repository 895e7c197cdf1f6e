"""Network identity resolution for group members.

Virtual machines are asked through vCenter for the address and host name
their guest tools report. Physical machines are resolved through DNS.

A vCenter session is scoped to a single member and always released, whether
the lookup succeeds, finds no address, or fails.
"""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable
from contextlib import AbstractContextManager
from types import TracebackType
from typing import Any, Protocol

import httpx

from .models import GroupMember, ResolvedHost

logger = logging.getLogger(__name__)

# vSphere Automation API returns 503 when guest tools are not running
GUEST_TOOLS_UNAVAILABLE_STATUS = 503

DEFAULT_DNS_TIMEOUT_SECONDS = 30


class ResolutionError(Exception):
    """Raised when a member's network identity cannot be resolved."""

    pass


class GuestSession(Protocol):
    """Open session to a virtualization manager."""

    def get_guest_ip(self, name: str) -> str: ...

    def get_guest_hostname(self, name: str) -> str: ...


class VirtualizationClient(Protocol):
    """Opens scoped sessions to virtualization managers."""

    def session(self, host: str) -> AbstractContextManager[GuestSession]: ...


class VSphereSession:
    """Session against one vCenter (vSphere Automation REST API)."""

    def __init__(self, client: httpx.Client, username: str, password: str) -> None:
        self._client = client
        self._username = username
        self._password = password
        self._identities: dict[str, dict[str, Any]] = {}

    def __enter__(self) -> VSphereSession:
        try:
            response = self._client.post("/api/session", auth=(self._username, self._password))
            response.raise_for_status()
            token = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._client.close()
            raise ResolutionError(f"vCenter login to {self._client.base_url} failed: {e}") from e

        self._client.headers["vmware-api-session-id"] = str(token)
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        try:
            self._client.delete("/api/session")
        except httpx.HTTPError as e:
            logger.warning(
                "vCenter logout failed",
                extra={"source": "Resolve", "vcenter": str(self._client.base_url), "error": str(e)},
            )
        finally:
            self._client.close()

    def _guest_identity(self, name: str) -> dict[str, Any]:
        if name in self._identities:
            return self._identities[name]

        try:
            response = self._client.get("/api/vcenter/vm", params={"names": name})
            response.raise_for_status()
            vms = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ResolutionError(f"VM lookup for {name} failed: {e}") from e

        if not vms:
            raise ResolutionError(f"VM {name} not found on {self._client.base_url}")
        vm_id = vms[0]["vm"]

        try:
            response = self._client.get(f"/api/vcenter/vm/{vm_id}/guest/identity")
            if response.status_code == GUEST_TOOLS_UNAVAILABLE_STATUS:
                identity: dict[str, Any] = {}
            else:
                response.raise_for_status()
                identity = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise ResolutionError(f"Guest identity lookup for {name} failed: {e}") from e

        self._identities[name] = identity
        return identity

    def get_guest_ip(self, name: str) -> str:
        return str(self._guest_identity(name).get("ip_address") or "")

    def get_guest_hostname(self, name: str) -> str:
        return str(self._guest_identity(name).get("host_name") or "")


class VSphereClient:
    """Creates vCenter sessions on demand."""

    def __init__(
        self,
        username: str,
        password: str,
        *,
        timeout_seconds: int = 30,
        verify_tls: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._username = username
        self._password = password
        self._timeout = timeout_seconds
        self._verify = verify_tls
        self._transport = transport

    def session(self, host: str) -> VSphereSession:
        client = httpx.Client(
            base_url=f"https://{host}",
            timeout=self._timeout,
            verify=self._verify,
            transport=self._transport,
            headers={"Accept": "application/json"},
        )
        return VSphereSession(client, self._username, self._password)


def resolve_dns(name: str, timeout_seconds: float = DEFAULT_DNS_TIMEOUT_SECONDS) -> list[str]:
    """Resolve a host name to its IPv4 addresses, in resolver order.

    getaddrinfo has no timeout of its own, so the lookup runs on a daemon
    thread and is abandoned after ``timeout_seconds``.

    Raises:
        ResolutionError: If the name does not resolve in time.
    """
    outcome: dict[str, Any] = {}

    def lookup() -> None:
        try:
            outcome["infos"] = socket.getaddrinfo(
                name, None, family=socket.AF_INET, type=socket.SOCK_STREAM
            )
        except Exception as e:
            outcome["error"] = e

    worker = threading.Thread(target=lookup, name=f"dns-{name}", daemon=True)
    worker.start()
    worker.join(timeout_seconds)

    if worker.is_alive():
        raise ResolutionError(f"DNS lookup for {name} timed out after {timeout_seconds}s")

    error = outcome.get("error")
    if isinstance(error, (OSError, UnicodeError)):
        raise ResolutionError(f"DNS lookup for {name} failed: {error}") from error
    if error is not None:
        raise error

    infos = outcome["infos"]
    addresses: list[str] = []
    for info in infos:
        address = str(info[4][0])
        if address not in addresses:
            addresses.append(address)
    return addresses


class IdentityResolver:
    """Resolves group members to an IP address and host name."""

    def __init__(
        self,
        virtualization: VirtualizationClient,
        dns_lookup: Callable[[str], list[str]] = resolve_dns,
    ) -> None:
        self._virtualization = virtualization
        self._dns_lookup = dns_lookup

    def resolve(self, member: GroupMember) -> ResolvedHost:
        """Resolve a member.

        A virtual machine whose guest reports no address resolves to an
        empty ip_address; that is not an error.

        Raises:
            ResolutionError: If the lookup fails.
        """
        if member.virtualization_host is not None:
            return self._resolve_virtual(member.identity, member.virtualization_host)
        return self._resolve_physical(member.identity)

    def _resolve_virtual(self, name: str, vcenter: str) -> ResolvedHost:
        with self._virtualization.session(vcenter) as session:
            ip_address = session.get_guest_ip(name)
            hostname = session.get_guest_hostname(name) or name

        if not ip_address:
            logger.warning(
                "Guest reported no IP address",
                extra={"source": "Resolve", "identity": name, "vcenter": vcenter},
            )
        return ResolvedHost(ip_address=ip_address, hostname=hostname)

    def _resolve_physical(self, name: str) -> ResolvedHost:
        addresses = self._dns_lookup(name)
        if not addresses:
            raise ResolutionError(f"DNS returned no addresses for {name}")
        return ResolvedHost(ip_address=addresses[0], hostname=name)
