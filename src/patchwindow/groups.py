"""Machine group membership.

The patch management console keeps machine groups whose entries are raw
``identity[:host]`` tokens. Virtual machines carry the vCenter that hosts
them after the delimiter; physical machines carry only their name.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

from .models import GroupMapSpec, parse_member_token

logger = logging.getLogger(__name__)

# Bound the number of entries read from a single group
MAX_GROUP_MEMBERS = 5000


class DirectoryError(Exception):
    """Raised when the membership directory cannot be queried."""

    pass


class MembershipDirectory(Protocol):
    """Source of raw member entries for a machine group."""

    def get_members(self, group_name: str) -> list[str]: ...


class HttpMembershipDirectory:
    """Membership directory backed by the patch console REST API.

    Endpoints:
        GET {base}/machinegroups?name=<group>          -> {"value": [{"id": ...}]}
        GET {base}/machinegroups/{id}/discoveryfilters -> {"value": [{"name": ...}]}
    """

    def __init__(
        self,
        base_url: str,
        *,
        token: str = "",
        timeout_seconds: int = 30,
        verify_tls: bool = True,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout_seconds,
            verify=verify_tls,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _get_values(self, url: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            response = self._client.get(url, params=params)
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise DirectoryError(f"Membership directory request failed: {e}") from e
        except ValueError as e:
            raise DirectoryError(f"Membership directory returned invalid JSON: {e}") from e

        values = payload.get("value", []) if isinstance(payload, dict) else []
        return [v for v in values if isinstance(v, dict)]

    def get_members(self, group_name: str) -> list[str]:
        groups = self._get_values("/machinegroups", params={"name": group_name})
        if not groups:
            logger.warning(
                "Machine group not found in directory",
                extra={"source": "GetMembers", "group": group_name},
            )
            return []

        group_id = groups[0].get("id")
        filters = self._get_values(f"/machinegroups/{group_id}/discoveryfilters")
        names = [str(f["name"]) for f in filters if f.get("name")]
        if len(names) > MAX_GROUP_MEMBERS:
            logger.warning(
                "Machine group exceeds member limit, extra entries dropped",
                extra={
                    "source": "GetMembers",
                    "group": group_name,
                    "total": len(names),
                    "dropped": len(names) - MAX_GROUP_MEMBERS,
                    "limit": MAX_GROUP_MEMBERS,
                },
            )
        return names[:MAX_GROUP_MEMBERS]


class GroupResolver:
    """Maps a machine group to its members."""

    def __init__(self, directory: MembershipDirectory, group_map: GroupMapSpec) -> None:
        self._directory = directory
        self._group_map = group_map

    def get_members(self, group: str) -> dict[str, str | None]:
        """Return ``{identity: virtualization host or None}`` for a group.

        An empty group name has no members. Entries that cannot be parsed are
        skipped with a warning. When an identity appears more than once, the
        last entry wins.

        Raises:
            DirectoryError: If the directory cannot be queried.
        """
        if not group:
            return {}

        delimiter = self._group_map.delimiter_for(group)
        members: dict[str, str | None] = {}

        for token in self._directory.get_members(group):
            try:
                member = parse_member_token(token, delimiter)
            except ValueError as e:
                logger.warning(
                    "Skipping unparseable group entry",
                    extra={"source": "GetMembers", "group": group, "error": str(e)},
                )
                continue
            members[member.identity] = member.virtualization_host

        logger.info(
            "Resolved group members",
            extra={"source": "GetMembers", "group": group, "count": len(members)},
        )
        return members
