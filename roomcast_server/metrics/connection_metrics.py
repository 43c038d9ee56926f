# =============================================================================
# RoomCast -- Real-time Presence & Room Fanout Engine
# =============================================================================

import logging
from dataclasses import dataclass
from datetime import UTC, datetime

log = logging.getLogger("roomcast.metrics")


# =============================================================================
# Metric Stubs (No-op for now, can add Prometheus later)
# =============================================================================

class MetricStub:
    """Stub metric that does nothing"""
    def labels(self, *args, **kwargs):
        return self
    def inc(self, value=1):
        pass
    def dec(self, value=1):
        pass
    def set(self, value):
        pass


chat_connections_active = MetricStub()
chat_connections_total = MetricStub()
chat_events_received_total = MetricStub()
chat_events_sent_total = MetricStub()
chat_events_dropped_total = MetricStub()
fanout_deliveries_total = MetricStub()
fanout_failures_total = MetricStub()
presence_transitions_total = MetricStub()


# =============================================================================
# Connection Metrics
# =============================================================================

@dataclass
class ConnectionMetrics:
    """Counters for a single chat connection"""

    connection_id: str = ""
    connected_since: datetime | None = None
    messages_sent: int = 0
    messages_received: int = 0
    messages_dropped: int = 0
    bytes_sent: int = 0
    bytes_received: int = 0
    errors: int = 0
    protocol_errors: int = 0
    last_message_sent: datetime | None = None
    last_message_received: datetime | None = None

    def record_message_sent(self, size: int = 0):
        self.messages_sent += 1
        self.bytes_sent += size
        self.last_message_sent = datetime.now(UTC)
        chat_events_sent_total.inc()

    def record_message_received(self, size: int = 0):
        self.messages_received += 1
        self.bytes_received += size
        self.last_message_received = datetime.now(UTC)
        chat_events_received_total.inc()

    def record_dropped(self):
        self.messages_dropped += 1
        chat_events_dropped_total.inc()

    def record_error(self):
        self.errors += 1
