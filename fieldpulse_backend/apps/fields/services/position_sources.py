# apps/fields/services/position_sources.py

"""
Adapters for the device positioning collaborators used by continuous capture.

A position source yields PositionSample objects. Mobile clients either upload
a recorded walk (ReplayPositionSource) or push fixes as they arrive from the
device's location subscription (QueuePositionSource).
"""

import logging
import queue
from dataclasses import dataclass
from typing import Optional

from django.utils import timezone
from django.utils.dateparse import parse_datetime

from core.exceptions import PositionSourceUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PositionSample:
    latitude: float
    longitude: float
    accuracy_meters: Optional[float] = None
    captured_at: Optional[object] = None

    @classmethod
    def from_dict(cls, data):
        """
        Build a sample from an uploaded trace entry

        Accepts 'lat'/'lng' or 'latitude'/'longitude' keys, an optional
        'accuracy' and an optional ISO-8601 'timestamp'.
        """
        lat = data.get('lat', data.get('latitude'))
        lng = data.get('lng', data.get('longitude'))

        captured_at = data.get('timestamp') or data.get('recorded_at')
        if isinstance(captured_at, str):
            captured_at = parse_datetime(captured_at)

        return cls(
            latitude=lat,
            longitude=lng,
            accuracy_meters=data.get('accuracy'),
            captured_at=captured_at or timezone.now(),
        )


class PositionSource:
    """Interface for a device position provider"""

    name = 'position_source'

    def current_position(self):
        """Return a single PositionSample"""
        raise NotImplementedError

    def samples(self):
        """Yield PositionSample objects until the source is exhausted"""
        raise NotImplementedError


class ReplayPositionSource(PositionSource):
    """Replays a recorded GPS trace"""

    name = 'replay'

    def __init__(self, samples):
        self._samples = [
            s if isinstance(s, PositionSample) else PositionSample.from_dict(s)
            for s in samples
        ]

    def __len__(self):
        return len(self._samples)

    def current_position(self):
        if not self._samples:
            raise PositionSourceUnavailable("GPS trace contains no positions")
        return self._samples[-1]

    def samples(self):
        if not self._samples:
            raise PositionSourceUnavailable("GPS trace contains no positions")
        yield from self._samples


class QueuePositionSource(PositionSource):
    """
    Push-fed source for a live location subscription

    The device callback calls push() for every fix and close() when the user
    stops walking. A consumer blocked longer than timeout_seconds without a
    fix gets PositionSourceUnavailable, as does one reading after deny().
    """

    name = 'live'

    _CLOSED = object()

    def __init__(self, timeout_seconds=30.0):
        self.timeout_seconds = timeout_seconds
        self._queue = queue.Queue()
        self._denied = None
        self._last = None

    def push(self, latitude, longitude, accuracy_meters=None, captured_at=None):
        self._queue.put(PositionSample(
            latitude=latitude,
            longitude=longitude,
            accuracy_meters=accuracy_meters,
            captured_at=captured_at or timezone.now(),
        ))

    def close(self):
        self._queue.put(self._CLOSED)

    def deny(self, reason="Location permission denied"):
        """Signal that the platform revoked or refused location access"""
        self._denied = reason
        self._queue.put(self._CLOSED)

    def _next(self):
        try:
            item = self._queue.get(timeout=self.timeout_seconds)
        except queue.Empty:
            logger.warning(f"No position fix within {self.timeout_seconds}s")
            raise PositionSourceUnavailable(
                f"No position fix received within {self.timeout_seconds} seconds"
            )

        if self._denied:
            raise PositionSourceUnavailable(self._denied)
        return item

    def current_position(self):
        if self._last is not None:
            return self._last
        item = self._next()
        if item is self._CLOSED:
            raise PositionSourceUnavailable("Position stream closed before a fix arrived")
        self._last = item
        return item

    def samples(self):
        while True:
            item = self._next()
            if item is self._CLOSED:
                return
            self._last = item
            yield item
