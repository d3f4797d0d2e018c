"""UptimeRobot API mock for integration testing.

Serves scripted responses through ``httpx.MockTransport`` so the real
client and retry executor run unchanged without network access.

Key Features:
- Per-route response queues (status, headers, body, artificial latency)
- Transport error injection (connection refused, reset, timeouts)
- Recording of every physical request with its body and arrival time
- Record factories for building resource records in tests

Usage:
    from uptimerobot_mock import MockUptimeRobotAPI

    api = MockUptimeRobotAPI()
    api.enqueue("DELETE", "monitors/42", MockReply(503), MockReply(204))

    async with UptimeRobotClient("key", base_url=api.base_url, transport=api.transport) as client:
        await client.delete_monitor("42")

    assert api.count("DELETE", "monitors/42") == 2
"""

from .records import deleting_record, make_record
from .server import MockReply, MockUptimeRobotAPI, RecordedRequest

__all__ = [
    "MockReply",
    "MockUptimeRobotAPI",
    "RecordedRequest",
    "deleting_record",
    "make_record",
]
