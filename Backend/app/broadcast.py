"""
Real-time booking events.

In-process pub/sub keyed by tenant channel ``booking-notifications-{tenant_id}``.
Admin dashboards subscribe through the WebSocket endpoint in routes_scoped and
receive one JSON message per event:

    {"event": "new-booking", "payload": {...}, "sent_at": "..."}

Each subscriber owns a bounded queue; when a slow client falls behind the
oldest pending event is dropped. publish() never raises.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

EVENT_NEW_BOOKING = "new-booking"
EVENT_BOOKING_CANCELLED = "booking-cancelled"
EVENT_BOOKING_COMPLETED = "booking-completed"
EVENT_BOOKING_SEATED = "booking-seated"
EVENT_BOOKING_NOSHOW = "booking-noshow"
EVENT_BOOKING_UPDATED = "booking-updated"

DEFAULT_QUEUE_SIZE = 100


def channel_name(tenant_id: int) -> str:
    return f"booking-notifications-{tenant_id}"


@dataclass
class Subscription:
    channel: str
    queue: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=DEFAULT_QUEUE_SIZE))
    dropped: int = 0

    async def get(self, timeout: Optional[float] = None) -> Dict[str, Any]:
        if timeout is None:
            return await self.queue.get()
        return await asyncio.wait_for(self.queue.get(), timeout)


class BookingBroadcaster:
    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE) -> None:
        self.queue_size = queue_size
        self.channels: Dict[str, List[Subscription]] = {}

    def subscribe(self, tenant_id: int) -> Subscription:
        channel = channel_name(tenant_id)
        sub = Subscription(channel=channel, queue=asyncio.Queue(maxsize=self.queue_size))
        self.channels.setdefault(channel, []).append(sub)
        logger.debug(f"Subscribed to {channel} ({len(self.channels[channel])} listeners)")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        subs = self.channels.get(sub.channel, [])
        self.channels[sub.channel] = [s for s in subs if s is not sub]
        if not self.channels[sub.channel]:
            del self.channels[sub.channel]

    def subscriber_count(self, tenant_id: int) -> int:
        return len(self.channels.get(channel_name(tenant_id), []))

    def publish(self, tenant_id: int, event: str, payload: Dict[str, Any]) -> int:
        """Fan event out to every subscriber of the tenant channel. Returns deliveries."""
        try:
            message = {
                "event": event,
                "payload": payload,
                "sent_at": datetime.now(timezone.utc).isoformat(),
            }
            delivered = 0
            for sub in list(self.channels.get(channel_name(tenant_id), [])):
                if sub.queue.full():
                    sub.queue.get_nowait()
                    sub.dropped += 1
                sub.queue.put_nowait(message)
                delivered += 1
            logger.debug(f"Broadcast {event} on {channel_name(tenant_id)} to {delivered} listeners")
            return delivered
        except Exception as e:
            logger.warning(f"Broadcast of {event} for tenant {tenant_id} failed: {e}")
            return 0


broadcaster = BookingBroadcaster()


def booking_payload(booking) -> Dict[str, Any]:
    """Event payload for a Booking row; no PII beyond the display name."""
    status = getattr(booking.status, "value", booking.status)
    return {
        "id": str(booking.id),
        "staff_id": booking.staff_id,
        "service_id": booking.service_id,
        "status": status,
        "start_time": booking.start_time.isoformat(),
        "end_time": booking.end_time.isoformat(),
        "guest_name": booking.guest_name,
    }


def publish_booking_event(tenant_id: int, event: str, booking) -> int:
    try:
        payload = booking_payload(booking)
    except Exception as e:
        logger.warning(f"Could not build {event} payload: {e}")
        return 0
    return broadcaster.publish(tenant_id, event, payload)
