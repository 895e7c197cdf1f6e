"""Value types and boundary models.

Runtime values (events, members, resolved hosts, windows) are frozen
dataclasses: built once and never mutated. Data that crosses a boundary
(the group map YAML, scheduler JSON) is validated with pydantic first.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Annotated

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_MEMBER_DELIMITER = ":"


# =============================================================================
# Runtime Values
# =============================================================================


@dataclass(frozen=True)
class ScheduledPatchEvent:
    """An upcoming run of a patch task.

    Attributes:
        name: Scheduler task name
        description: Task description, used to look up the machine group
        run_time: Next run time (timezone-aware, UTC)
        group: Machine group patched by the task ("" when unmapped)
    """

    name: str
    description: str
    run_time: datetime
    group: str


@dataclass(frozen=True)
class GroupMember:
    """A machine group member.

    Attributes:
        identity: Machine name (VM name for virtualized members)
        virtualization_host: vCenter hosting the VM, None for physical machines
    """

    identity: str
    virtualization_host: str | None = None

    @property
    def is_virtualized(self) -> bool:
        return self.virtualization_host is not None


@dataclass(frozen=True)
class ResolvedHost:
    """Network identity of a member. ip_address may be "" (guest not reporting)."""

    ip_address: str
    hostname: str


@dataclass(frozen=True)
class MaintenanceWindow:
    """An unmanage window for one monitored node.

    Attributes:
        node_id: Monitoring platform node identifier (ledger key)
        ip_address: Address the node was resolved from
        hostname: Host name reported for the member
        group_name: Machine group the window was created for
        start_time: Window start (absolute, UTC)
        end_time: Window end (absolute, UTC)
    """

    node_id: str
    ip_address: str
    hostname: str
    group_name: str
    start_time: datetime
    end_time: datetime

    @classmethod
    def for_event(
        cls,
        event: ScheduledPatchEvent,
        node_id: str,
        host: ResolvedHost,
        length: timedelta,
    ) -> MaintenanceWindow:
        """Build the window covering [run_time, run_time + length]."""
        return cls(
            node_id=node_id,
            ip_address=host.ip_address,
            hostname=host.hostname,
            group_name=event.group,
            start_time=event.run_time,
            end_time=event.run_time + length,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.end_time < now


def parse_member_token(token: str, delimiter: str = DEFAULT_MEMBER_DELIMITER) -> GroupMember:
    """Parse a raw directory entry into a GroupMember.

    Grammar (after all whitespace is removed):

        member   := identity [ delimiter host ]
        identity := one or more characters, delimiter excluded
        host     := one or more characters

    Only the first delimiter splits. A token without a delimiter, or with an
    empty host part, is a physical member.

    Raises:
        ValueError: If the identity part is empty.
    """
    normalized = "".join(token.split())
    identity, sep, host = normalized.partition(delimiter)
    if not identity:
        raise ValueError(f"Member entry has no identity: {token!r}")
    if not sep or not host:
        return GroupMember(identity=identity)
    return GroupMember(identity=identity, virtualization_host=host)


# =============================================================================
# Boundary Models
# =============================================================================


class GroupMapping(BaseModel):
    """One description -> machine group entry of the group map file."""

    model_config = {"extra": "ignore"}

    description: Annotated[str, Field(min_length=1)]
    group: Annotated[str, Field(min_length=1)]
    delimiter: Annotated[str, Field(min_length=1, max_length=4)] = DEFAULT_MEMBER_DELIMITER

    @field_validator("description", "group")
    @classmethod
    def strip_value(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class GroupMapSpec(BaseModel):
    """Group map file.

    Example:
        groups:
          - description: "Patch Tuesday - Wave 1"
            group: "Wave1-Servers"
          - description: "Patch Tuesday - VMs"
            group: "Wave1-VMs"
            delimiter: ":"
    """

    model_config = {"extra": "ignore"}

    groups: list[GroupMapping] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_unique_descriptions(self) -> GroupMapSpec:
        seen: set[str] = set()
        for entry in self.groups:
            if entry.description in seen:
                raise ValueError(f"Duplicate description in group map: {entry.description!r}")
            seen.add(entry.description)
        return self

    def group_for(self, description: str) -> str:
        """Look up the group for a task description ("" if unmapped)."""
        for entry in self.groups:
            if entry.description == description.strip():
                return entry.group
        return ""

    def delimiter_for(self, group: str) -> str:
        for entry in self.groups:
            if entry.group == group:
                return entry.delimiter
        return DEFAULT_MEMBER_DELIMITER


class ScheduledTaskRecord(BaseModel):
    """A task as reported by the scheduler."""

    model_config = {"extra": "ignore"}

    name: Annotated[str, Field(min_length=1)]
    description: str | None = None
    next_run_time: datetime | None = None

    @field_validator("next_run_time")
    @classmethod
    def normalize_to_utc(cls, v: datetime | None) -> datetime | None:
        if v is None:
            return None
        # Scheduler times without an offset are taken as UTC
        if v.tzinfo is None:
            return v.replace(tzinfo=UTC)
        return v.astimezone(UTC)
