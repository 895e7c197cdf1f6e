"""Reconciliation of patch events with monitoring unmanage windows.

One run:
1. Prune expired windows from the ledger
2. Read patch events inside the look-ahead horizon
3. For each member of each event's machine group: resolve its address,
   look up its monitoring node, and schedule one unmanage window unless
   the node already has one

Failures are handled per member (and per group for directory failures):
every reachable member is attempted and the outcome of each one is recorded
in the RunSummary. Only a ledger that cannot be pruned, or a scheduler that
cannot be listed, aborts the run.
"""

from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .config import Config
from .groups import DirectoryError, GroupResolver
from .identity import IdentityResolver, ResolutionError
from .models import GroupMember, MaintenanceWindow, ScheduledPatchEvent
from .orion import MonitoringGateway, MonitoringGatewayError, NodeDirectory, SwisError
from .store import DatastoreError, WindowExistsError, WindowStore
from .tasks import TaskSource

logger = logging.getLogger(__name__)


class MemberOutcome(str, Enum):
    """What happened to one group member during a run."""

    SCHEDULED = "scheduled"
    ALREADY_SCHEDULED = "already_scheduled"
    NOT_MONITORED = "not_monitored"
    RESOLUTION_FAILED = "resolution_failed"
    NODE_LOOKUP_FAILED = "node_lookup_failed"
    DATASTORE_FAILED = "datastore_failed"
    PUSH_FAILED = "push_failed"
    FAILED = "failed"

    @property
    def is_failure(self) -> bool:
        return self not in (
            MemberOutcome.SCHEDULED,
            MemberOutcome.ALREADY_SCHEDULED,
            MemberOutcome.NOT_MONITORED,
        )


@dataclass(frozen=True)
class MemberResult:
    """Outcome for one member of one event's group."""

    event: ScheduledPatchEvent
    identity: str
    outcome: MemberOutcome
    node_id: str = ""
    error: str | None = None


@dataclass
class RunSummary:
    """Result of a single reconciliation run."""

    now: datetime
    duration_seconds: float = 0.0
    pruned: int = 0
    events: list[ScheduledPatchEvent] = field(default_factory=list)
    results: list[MemberResult] = field(default_factory=list)
    event_errors: dict[str, str] = field(default_factory=dict)

    def count(self, outcome: MemberOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    @property
    def scheduled(self) -> int:
        return self.count(MemberOutcome.SCHEDULED)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if r.outcome.is_failure) + len(self.event_errors)


class ReconciliationEngine:
    """Schedules at most one unmanage window per node per patch cycle."""

    def __init__(
        self,
        config: Config,
        *,
        store: WindowStore,
        task_source: TaskSource,
        group_resolver: GroupResolver,
        identity_resolver: IdentityResolver,
        node_directory: NodeDirectory,
        gateway: MonitoringGateway,
    ) -> None:
        self._config = config
        self._store = store
        self._task_source = task_source
        self._group_resolver = group_resolver
        self._identity_resolver = identity_resolver
        self._node_directory = node_directory
        self._gateway = gateway

    def run(self, now: datetime) -> RunSummary:
        """Execute one reconciliation run as of ``now``.

        Raises:
            DatastoreError: If expired windows cannot be pruned.
            SchedulerError: If upcoming tasks cannot be listed.
        """
        if now.tzinfo is None:
            raise ValueError("now must be timezone-aware")

        started = time.monotonic()
        summary = RunSummary(now=now)
        summary.pruned = self._store.prune(now)

        summary.events = self._task_source.get_upcoming_events(now, self._config.horizon)
        if not summary.events:
            logger.info(
                "No pending tasks",
                extra={"source": "Run", "horizon_hours": self._config.horizon_hours},
            )
            summary.duration_seconds = time.monotonic() - started
            return summary

        for event in summary.events:
            try:
                members = self._group_resolver.get_members(event.group)
            except DirectoryError as e:
                logger.error(
                    "Cannot read machine group",
                    extra={
                        "source": "GetMembers",
                        "task": event.name,
                        "group": event.group,
                        "error": str(e),
                    },
                )
                summary.event_errors[event.name] = str(e)
                continue
            except Exception as e:
                logger.exception(
                    "Unexpected error reading machine group",
                    extra={"source": "GetMembers", "task": event.name, "group": event.group},
                )
                summary.event_errors[event.name] = str(e)
                continue

            if not members:
                logger.warning(
                    "Patch event has no group members",
                    extra={"source": "Run", "task": event.name, "group": event.group},
                )

            for identity, host in members.items():
                member = GroupMember(identity=identity, virtualization_host=host)
                summary.results.append(self._process_member(event, member))

        summary.duration_seconds = time.monotonic() - started
        self._log_summary(summary)
        return summary

    def _process_member(self, event: ScheduledPatchEvent, member: GroupMember) -> MemberResult:
        try:
            try:
                resolved = self._identity_resolver.resolve(member)
            except ResolutionError as e:
                logger.warning(
                    "Cannot resolve member, skipping",
                    extra={
                        "source": "Resolve",
                        "identity": member.identity,
                        "group": event.group,
                        "error": str(e),
                    },
                )
                return MemberResult(
                    event, member.identity, MemberOutcome.RESOLUTION_FAILED, error=str(e)
                )

            try:
                node_id = self._node_directory.resolve_node_id(resolved.ip_address)
            except SwisError as e:
                logger.error(
                    "Node lookup failed, skipping",
                    extra={
                        "source": "ResolveNodeId",
                        "identity": member.identity,
                        "ip_address": resolved.ip_address,
                        "error": str(e),
                    },
                )
                return MemberResult(
                    event, member.identity, MemberOutcome.NODE_LOOKUP_FAILED, error=str(e)
                )

            window = MaintenanceWindow.for_event(
                event, node_id, resolved, self._config.window_length
            )
            outcome = self.add_window(window)
            return MemberResult(event, member.identity, outcome, node_id=node_id)

        except Exception as e:
            logger.exception(
                "Unexpected error processing member",
                extra={"source": "Run", "identity": member.identity, "group": event.group},
            )
            return MemberResult(event, member.identity, MemberOutcome.FAILED, error=str(e))

    def add_window(self, window: MaintenanceWindow) -> MemberOutcome:
        """Record and push a window unless the node already has one.

        An empty node id means the host is not monitored; no ledger row is
        written and nothing is pushed.
        """
        context = {
            "source": "AddWindow",
            "node_id": window.node_id,
            "hostname": window.hostname,
            "group": window.group_name,
        }

        # No row can exist under an empty node id
        if not window.node_id:
            logger.warning(
                "Host is not monitored, no window scheduled",
                extra={**context, "ip_address": window.ip_address},
            )
            return MemberOutcome.NOT_MONITORED

        try:
            if self._store.exists(window.node_id):
                logger.info("Window already scheduled", extra=context)
                return MemberOutcome.ALREADY_SCHEDULED
            self._store.insert(window)
        except WindowExistsError:
            logger.info("Window already scheduled by a concurrent run", extra=context)
            return MemberOutcome.ALREADY_SCHEDULED
        except DatastoreError as e:
            logger.error("Window ledger unavailable, skipping", extra={**context, "error": str(e)})
            return MemberOutcome.DATASTORE_FAILED

        try:
            self._gateway.create_unmanage_window(window)
        except MonitoringGatewayError as e:
            logger.error("Unmanage request failed", extra={**context, "error": str(e)})
            if self._config.rollback_on_push_failure:
                self._rollback(window)
            return MemberOutcome.PUSH_FAILED

        logger.info(
            "Window scheduled",
            extra={
                **context,
                "start": window.start_time.isoformat(),
                "end": window.end_time.isoformat(),
            },
        )
        return MemberOutcome.SCHEDULED

    def _rollback(self, window: MaintenanceWindow) -> None:
        try:
            self._store.delete(window.node_id)
        except DatastoreError as e:
            logger.error(
                "Cannot roll back window after failed unmanage request",
                extra={"source": "AddWindow", "node_id": window.node_id, "error": str(e)},
            )
            return
        logger.warning(
            "Window rolled back, node will be retried on the next run",
            extra={"source": "AddWindow", "node_id": window.node_id},
        )

    def _log_summary(self, summary: RunSummary) -> None:
        counts = Counter(r.outcome.value for r in summary.results)
        log = logger.warning if summary.failed else logger.info
        log(
            "Run complete",
            extra={
                "source": "Run",
                "events": len(summary.events),
                "members": len(summary.results),
                "pruned": summary.pruned,
                "failed": summary.failed,
                "outcomes": dict(counts),
                "duration_seconds": round(summary.duration_seconds, 2),
            },
        )
