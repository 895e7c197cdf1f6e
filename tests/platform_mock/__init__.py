"""In-memory doubles of the external platforms for testing.

This package stands in for every system the job talks to, so the engine
can be exercised end to end without a scheduler, patch console, vCenter,
DNS server or Orion instance.

Key Features:
- Scheduler snapshot with configurable tasks and failures
- Machine groups with raw "identity[:host]" entries
- vCenter sessions that record open/close for leak assertions
- DNS table with per-name failures
- SWIS node table and a log of every Unmanage invocation

Usage:
    from platform_mock import MockPlatform

    platform = MockPlatform()
    platform.scheduler.add_task("Wave1", "Patch Wave 1", now + timedelta(hours=1))
    platform.directory.set_group("G", ["host1:vcenter1", "host2"])
    engine = platform.build_engine(config, store)
    engine.run(now)

    assert platform.swis.unmanaged_node_ids == ["123"]
"""

from .context import MockPlatform
from .directory import MockMembershipDirectory
from .dns import MockDns
from .scheduler import MockTaskScheduler
from .swis import MockSwisClient, UnmanageCall
from .vsphere import MockGuest, MockVSphereClient

__all__ = [
    "MockDns",
    "MockGuest",
    "MockMembershipDirectory",
    "MockPlatform",
    "MockSwisClient",
    "MockTaskScheduler",
    "MockVSphereClient",
    "UnmanageCall",
]
