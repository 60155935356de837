# apps/fields/services/polygon_builder.py

"""
Field boundary capture.

A CaptureSession owns the points of one boundary being mapped together with
the cached area. How points arrive (map taps, a GPS walk, a drawn polygon)
is an AcquisitionStrategy injected into the session, so every front end
shares the same geometry and the same area computation.
"""

import dataclasses
import logging
import threading
from dataclasses import dataclass, field
from typing import Optional, Tuple

from django.utils import timezone

from core.exceptions import (
    BoundaryError,
    CaptureModeError,
    DegenerateGeometry,
    IncompleteBoundary,
    InvalidCoordinate,
    PositionSourceUnavailable,
    SelfIntersectingBoundary,
)
from . import geodesy

logger = logging.getLogger(__name__)


MIN_BOUNDARY_POINTS = 3
DEFAULT_MIN_DISPLACEMENT_METERS = 5.0
DRAWN_POINT_ACCURACY_METERS = 1.0


def validate_coordinates(latitude, longitude):
    """
    Coerce and range-check a coordinate pair

    Raises:
        InvalidCoordinate: When values are not numbers or out of range
    """
    try:
        lat = float(latitude)
        lng = float(longitude)
    except (TypeError, ValueError):
        raise InvalidCoordinate(f"Invalid coordinate values: {latitude!r}, {longitude!r}")

    if lat != lat or lng != lng:
        raise InvalidCoordinate("Coordinates must not be NaN")
    if not -90 <= lat <= 90:
        raise InvalidCoordinate(f"Latitude must be between -90 and 90 (got {lat})")
    if not -180 <= lng <= 180:
        raise InvalidCoordinate(f"Longitude must be between -180 and 180 (got {lng})")

    return lat, lng


@dataclass(frozen=True)
class GeoPoint:
    """A single captured position (WGS84 degrees)"""

    latitude: float
    longitude: float
    accuracy_meters: Optional[float] = None
    captured_at: Optional[object] = None

    @classmethod
    def create(cls, latitude, longitude, accuracy_meters=None, captured_at=None):
        lat, lng = validate_coordinates(latitude, longitude)
        return cls(
            latitude=lat,
            longitude=lng,
            accuracy_meters=float(accuracy_meters) if accuracy_meters is not None else None,
            captured_at=captured_at or timezone.now(),
        )

    def moved_to(self, latitude, longitude):
        """Copy of this point at new coordinates (drag-adjust)"""
        lat, lng = validate_coordinates(latitude, longitude)
        return dataclasses.replace(self, latitude=lat, longitude=lng)

    def as_lng_lat(self):
        return [self.longitude, self.latitude]


@dataclass(frozen=True)
class BoundarySnapshot:
    """Point list and area read together under the session lock"""

    points: Tuple[GeoPoint, ...]
    area_square_meters: float
    mode: str

    @property
    def point_count(self):
        return len(self.points)

    @property
    def area_hectares(self):
        return geodesy.square_meters_to_hectares(self.area_square_meters)

    @property
    def is_complete(self):
        return len(self.points) >= MIN_BOUNDARY_POINTS


@dataclass(frozen=True)
class FinalizedBoundary:
    """A validated, implicitly closed field boundary"""

    points: Tuple[GeoPoint, ...]
    area_square_meters: float
    perimeter_meters: float
    acquisition_mode: str = 'manual'
    average_accuracy_meters: Optional[float] = None
    metadata: dict = field(default_factory=dict, compare=False)

    @classmethod
    def from_points(cls, points, acquisition_mode='manual'):
        """
        Validate a point sequence and build a boundary from it

        Raises:
            IncompleteBoundary: Fewer than 3 points
            DegenerateGeometry: Points enclose no area
            SelfIntersectingBoundary: Edges of the ring cross
        """
        points = tuple(points)

        # A closed ring repeats the first vertex; the boundary is implicitly closed
        if len(points) > MIN_BOUNDARY_POINTS and (
            points[0].latitude == points[-1].latitude
            and points[0].longitude == points[-1].longitude
        ):
            points = points[:-1]

        if len(points) < MIN_BOUNDARY_POINTS:
            raise IncompleteBoundary(
                f"At least {MIN_BOUNDARY_POINTS} points required to form a boundary "
                f"(have {len(points)})"
            )

        if geodesy.is_collinear(points):
            raise DegenerateGeometry("Boundary points are collinear; the field has no area")
        if geodesy.is_self_intersecting(points):
            raise SelfIntersectingBoundary(
                "Boundary edges cross each other; reorder the points or redraw the field"
            )

        area = geodesy.polygon_area(points)
        if area <= 0:
            raise DegenerateGeometry("Boundary encloses no area")

        accuracies = [p.accuracy_meters for p in points if p.accuracy_meters is not None]
        average_accuracy = sum(accuracies) / len(accuracies) if accuracies else None

        return cls(
            points=points,
            area_square_meters=area,
            perimeter_meters=geodesy.polygon_perimeter(points),
            acquisition_mode=acquisition_mode,
            average_accuracy_meters=average_accuracy,
        )

    @property
    def area_hectares(self):
        return geodesy.square_meters_to_hectares(self.area_square_meters)

    @property
    def area_acres(self):
        return geodesy.square_meters_to_acres(self.area_square_meters)

    @property
    def centroid(self):
        return geodesy.polygon_centroid(self.points)

    def ring(self):
        """Ordered ring of [lng, lat] pairs (open; first point not repeated)"""
        return [p.as_lng_lat() for p in self.points]

    def to_geojson(self):
        """GeoJSON Polygon geometry; the ring is closed on output"""
        ring = self.ring()
        ring.append(list(ring[0]))
        return {'type': 'Polygon', 'coordinates': [ring]}


class AcquisitionStrategy:
    """How points reach a capture session"""

    mode = None

    def bind(self, session):
        self.session = session

    def ensure(self, mode, operation):
        if self.mode != mode:
            raise CaptureModeError(
                f"'{operation}' is not available in {self.mode} capture mode"
            )


class ManualAcquisition(AcquisitionStrategy):
    """One point per explicit user action, e.g. a map tap"""

    mode = 'manual'


class ContinuousAcquisition(AcquisitionStrategy):
    """
    Points from a stream of position samples

    A sample becomes a boundary point only when it lies further than
    min_displacement_meters from the last accepted point, which suppresses
    sensor jitter while the user stands still.
    """

    mode = 'continuous'

    def __init__(self, min_displacement_meters=DEFAULT_MIN_DISPLACEMENT_METERS):
        self.min_displacement_meters = float(min_displacement_meters)

    def accepts(self, last_point, candidate):
        if last_point is None:
            return True
        return geodesy.haversine_distance(last_point, candidate) > self.min_displacement_meters


class DrawnAcquisition(AcquisitionStrategy):
    """A whole ring at once from a map drawing tool"""

    mode = 'drawn'


class CaptureSession:
    """
    Session-owned boundary state

    Every mutation and the area recomputation it triggers happen under one
    lock, so snapshot() never returns a point list with a stale area.
    Continuous-mode samples delivered from a background thread contend on the
    same lock as manual adjustments.
    """

    def __init__(self, strategy=None):
        self._lock = threading.RLock()
        self._points = []
        self._area = 0.0
        self._samples_seen = 0
        self._disposed = False
        self.strategy = strategy or ManualAcquisition()
        self.strategy.bind(self)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def mode(self):
        return self.strategy.mode

    @property
    def samples_seen(self):
        return self._samples_seen

    def snapshot(self):
        with self._lock:
            return BoundarySnapshot(
                points=tuple(self._points),
                area_square_meters=self._area,
                mode=self.mode,
            )

    def __len__(self):
        with self._lock:
            return len(self._points)

    # ------------------------------------------------------------------
    # Mutations (each one is append/adjust + recompute, atomically)
    # ------------------------------------------------------------------

    def _recompute(self):
        self._area = geodesy.polygon_area(self._points)

    def _check_open(self):
        if self._disposed:
            raise CaptureModeError("Capture session has been disposed")

    def _check_index(self, index):
        if not 0 <= index < len(self._points):
            raise IndexError(f"No boundary point at index {index}")

    def add_point(self, latitude, longitude, accuracy_meters=None, captured_at=None):
        """Manual mode: append one point and return its index"""
        point = GeoPoint.create(latitude, longitude, accuracy_meters, captured_at)

        with self._lock:
            self._check_open()
            self.strategy.ensure('manual', 'add_point')
            self._points.append(point)
            self._recompute()
            index = len(self._points) - 1

        logger.debug(f"Added boundary point {index} at ({point.latitude}, {point.longitude})")
        return index

    def move_point(self, index, latitude, longitude):
        """Manual mode: drag-adjust the point at index"""

        with self._lock:
            self._check_open()
            self.strategy.ensure('manual', 'move_point')
            self._check_index(index)
            moved = self._points[index].moved_to(latitude, longitude)
            self._points[index] = moved
            self._recompute()

        return moved

    def remove_point(self, index):
        """Manual mode: drop the point at index (undo a mis-tap)"""

        with self._lock:
            self._check_open()
            self.strategy.ensure('manual', 'remove_point')
            self._check_index(index)
            removed = self._points.pop(index)
            self._recompute()

        return removed

    def ingest_sample(self, latitude, longitude, accuracy_meters=None, captured_at=None):
        """
        Continuous mode: offer one raw position sample

        Returns:
            bool: True when the sample was accepted as a boundary point
        """
        candidate = GeoPoint.create(latitude, longitude, accuracy_meters, captured_at)

        with self._lock:
            self._check_open()
            self.strategy.ensure('continuous', 'ingest_sample')
            self._samples_seen += 1
            last_point = self._points[-1] if self._points else None
            if not self.strategy.accepts(last_point, candidate):
                return False
            self._points.append(candidate)
            self._recompute()

        return True

    def follow(self, position_source, stop_event=None):
        """
        Continuous mode: consume samples from a position source

        Intended to run on a background thread. Stops when the source is
        exhausted or stop_event is set.

        Returns:
            int: Number of accepted points

        Raises:
            PositionSourceUnavailable: Propagated so the caller can fall back
                to manual capture; points captured so far are kept.
        """
        self.strategy.ensure('continuous', 'follow')
        accepted = 0

        for sample in position_source.samples():
            if stop_event is not None and stop_event.is_set():
                break
            if self.ingest_sample(
                sample.latitude,
                sample.longitude,
                sample.accuracy_meters,
                sample.captured_at,
            ):
                accepted += 1

        return accepted

    def load_ring(self, coordinates):
        """
        Drawn mode: replace the ring with a drawn polygon

        Args:
            coordinates: Sequence of [lng, lat] pairs (GeoJSON order)
        """
        points = [
            GeoPoint.create(lat, lng, DRAWN_POINT_ACCURACY_METERS)
            for lng, lat in coordinates
        ]
        if len(points) > 1 and points[0].latitude == points[-1].latitude \
                and points[0].longitude == points[-1].longitude:
            points = points[:-1]

        with self._lock:
            self._check_open()
            self.strategy.ensure('drawn', 'load_ring')
            self._points = points
            self._recompute()

        return len(points)

    def fall_back_to_manual(self):
        """Switch to manual capture, keeping the points captured so far"""
        with self._lock:
            previous = self.mode
            self.strategy = ManualAcquisition()
            self.strategy.bind(self)

        logger.warning(f"Capture session fell back from {previous} to manual mode")

    def clear(self):
        with self._lock:
            self._points = []
            self._area = 0.0
            self._samples_seen = 0

    def dispose(self):
        """Abandon the session; nothing is persisted"""
        with self._lock:
            self.clear()
            self._disposed = True

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def finalize(self):
        """
        Validate the captured points into a boundary

        Raises:
            IncompleteBoundary: Fewer than 3 points
            DegenerateGeometry: Points are collinear
            SelfIntersectingBoundary: Edges of the ring cross
        """
        snapshot = self.snapshot()
        try:
            boundary = FinalizedBoundary.from_points(snapshot.points, acquisition_mode=snapshot.mode)
        except BoundaryError as e:
            logger.warning(f"Boundary finalize rejected: {e}")
            raise

        logger.info(
            f"Finalized {snapshot.mode} boundary: {len(boundary.points)} points, "
            f"{boundary.area_hectares:.4f} ha"
        )
        return boundary


def capture_with_fallback(session, position_source, stop_event=None):
    """
    Run a continuous capture, falling back to manual mode if the position
    source becomes unavailable

    Returns:
        dict: accepted point count and whether the fallback happened
    """
    try:
        accepted = session.follow(position_source, stop_event=stop_event)
        return {'accepted': accepted, 'point_count': len(session), 'fell_back': False, 'error': None}
    except PositionSourceUnavailable as e:
        session.fall_back_to_manual()
        return {'accepted': None, 'point_count': len(session), 'fell_back': True, 'error': e.message}
