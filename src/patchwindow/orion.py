"""Monitoring platform (SolarWinds Orion) access.

Uses the SolarWinds Information Service (SWIS) REST endpoint:

    POST /SolarWinds/InformationService/v3/Json/Query
    POST /SolarWinds/InformationService/v3/Json/Invoke/<Entity>/<Verb>

NodeDirectory maps an IP address to an Orion node id; MonitoringGateway
unmanages a node for an absolute time range.
"""

from __future__ import annotations

import logging
from datetime import UTC
from typing import Any

import httpx

from .models import MaintenanceWindow

logger = logging.getLogger(__name__)

SWIS_PATH = "/SolarWinds/InformationService/v3/Json"

# Matches either the primary polling address or any secondary address
NODE_BY_IP_QUERY = (
    "SELECT DISTINCT N.NodeID FROM Orion.Nodes N "
    "LEFT JOIN Orion.NodeIPAddresses A ON A.NodeID = N.NodeID "
    "WHERE N.IPAddress = @ip OR A.IPAddress = @ip"
)

SWIS_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


class SwisError(Exception):
    """Raised when a SWIS call fails."""

    pass


class MonitoringGatewayError(Exception):
    """Raised when the unmanage request is not accepted."""

    pass


class SwisClient:
    """Minimal SWIS REST client."""

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        *,
        timeout_seconds: int = 30,
        verify_tls: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._client = httpx.Client(
            base_url=f"{base_url.rstrip('/')}{SWIS_PATH}",
            auth=(username, password),
            timeout=timeout_seconds,
            verify=verify_tls,
            transport=transport,
            headers={"Accept": "application/json"},
        )

    def close(self) -> None:
        self._client.close()

    def _post(self, url: str, payload: Any) -> Any:
        try:
            response = self._client.post(url, json=payload)
            response.raise_for_status()
            return response.json() if response.content else None
        except httpx.HTTPError as e:
            raise SwisError(f"SWIS request to {url} failed: {e}") from e
        except ValueError as e:
            raise SwisError(f"SWIS returned invalid JSON for {url}: {e}") from e

    def query(self, query: str, **parameters: Any) -> list[dict[str, Any]]:
        payload = self._post("/Query", {"query": query, "parameters": parameters})
        if not isinstance(payload, dict):
            return []
        return [row for row in payload.get("results", []) if isinstance(row, dict)]

    def invoke(self, entity: str, verb: str, *args: Any) -> Any:
        return self._post(f"/Invoke/{entity}/{verb}", list(args))


class NodeDirectory:
    """Looks up Orion node ids by IP address."""

    def __init__(self, swis: SwisClient) -> None:
        self._swis = swis

    def resolve_node_id(self, ip_address: str) -> str:
        """Return the node id for an address, or "" when it is not monitored.

        Raises:
            SwisError: If the query fails.
        """
        if not ip_address:
            return ""

        rows = self._swis.query(NODE_BY_IP_QUERY, ip=ip_address)
        if not rows:
            return ""

        if len(rows) > 1:
            logger.warning(
                "Multiple nodes match address, using the first",
                extra={
                    "source": "ResolveNodeId",
                    "ip_address": ip_address,
                    "node_ids": [str(r.get("NodeID")) for r in rows],
                },
            )
        node_id = rows[0].get("NodeID")
        return "" if node_id is None else str(node_id)


class MonitoringGateway:
    """Issues unmanage requests to Orion."""

    def __init__(self, swis: SwisClient) -> None:
        self._swis = swis

    def create_unmanage_window(self, window: MaintenanceWindow) -> None:
        """Unmanage the node from window start to window end (absolute times).

        Raises:
            MonitoringGatewayError: If Orion rejects or cannot receive the call.
        """
        start = window.start_time.astimezone(UTC).strftime(SWIS_TIMESTAMP_FORMAT)
        end = window.end_time.astimezone(UTC).strftime(SWIS_TIMESTAMP_FORMAT)
        is_relative = False

        try:
            self._swis.invoke(
                "Orion.Nodes", "Unmanage", f"N:{window.node_id}", start, end, is_relative
            )
        except SwisError as e:
            raise MonitoringGatewayError(
                f"Unmanage request for node {window.node_id} failed: {e}"
            ) from e

        logger.info(
            "Node unmanaged",
            extra={
                "source": "CreateUnmanageWindow",
                "node_id": window.node_id,
                "hostname": window.hostname,
                "start": start,
                "end": end,
            },
        )
