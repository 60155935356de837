# apps/fields/tests.py

import math
import threading
from datetime import date, datetime, timezone as dt_timezone

from django.contrib.auth.models import User
from django.test import SimpleTestCase, TestCase
from django.urls import reverse
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from core.exceptions import (
    CaptureModeError,
    DegenerateGeometry,
    IncompleteBoundary,
    InvalidCoordinate,
    PositionSourceUnavailable,
    SelfIntersectingBoundary,
)
from .models import BoundaryPoint, Field
from .services import geodesy
from .services.boundary_service import BoundaryService
from .services.lifecycle import FieldLifecycleController
from .services.polygon_builder import (
    CaptureSession,
    ContinuousAcquisition,
    DrawnAcquisition,
    FinalizedBoundary,
    GeoPoint,
    ManualAcquisition,
    capture_with_fallback,
)
from .services.position_sources import (
    PositionSample,
    QueuePositionSource,
    ReplayPositionSource,
)


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------
ORIGIN_LAT = 25.6000
ORIGIN_LNG = 85.1000


def meters_to_lat(meters):
    return math.degrees(meters / geodesy.EARTH_RADIUS_METERS)


def meters_to_lng(meters, latitude=ORIGIN_LAT):
    return math.degrees(
        meters / (geodesy.EARTH_RADIUS_METERS * math.cos(math.radians(latitude)))
    )


def square_corners(side_meters=100.0, lat=ORIGIN_LAT, lng=ORIGIN_LNG):
    """(lat, lng) corners of a square with the given side, counter-clockwise"""
    dlat = meters_to_lat(side_meters)
    dlng = meters_to_lng(side_meters, lat)
    return [
        (lat, lng),
        (lat, lng + dlng),
        (lat + dlat, lng + dlng),
        (lat + dlat, lng),
    ]


def bowtie_corners(side_meters=100.0):
    """Square corners visited in crossing order; both lobes are equal"""
    corners = square_corners(side_meters)
    return [corners[0], corners[2], corners[1], corners[3]]


def uneven_bowtie_corners():
    """Crossing ring whose lobes differ, so the shoelace sum is not zero"""
    return [
        (ORIGIN_LAT, ORIGIN_LNG),
        (ORIGIN_LAT, ORIGIN_LNG + meters_to_lng(100)),
        (ORIGIN_LAT + meters_to_lat(100), ORIGIN_LNG),
        (ORIGIN_LAT + meters_to_lat(50), ORIGIN_LNG + meters_to_lng(100)),
    ]


def square_points_payload(side_meters=100.0, **kwargs):
    return [
        {'lat': lat, 'lng': lng, 'accuracy': 3.0}
        for lat, lng in square_corners(side_meters, **kwargs)
    ]


def square_geojson(side_meters=100.0, **kwargs):
    ring = [[lng, lat] for lat, lng in square_corners(side_meters, **kwargs)]
    ring.append(list(ring[0]))
    return {'type': 'Polygon', 'coordinates': [ring]}


def square_walk(side_meters=100.0, step_meters=10.0, accuracy=3.0):
    """
    GPS walk around a square: one fix every step_meters, each followed by a
    jittered repeat of the same position, ending back at the start
    """
    corners = square_corners(side_meters)
    steps = int(side_meters / step_meters)
    trace = []

    for i in range(4):
        start_lat, start_lng = corners[i]
        end_lat, end_lng = corners[(i + 1) % 4]
        for step in range(steps):
            t = step / steps
            lat = start_lat + (end_lat - start_lat) * t
            lng = start_lng + (end_lng - start_lng) * t
            trace.append({'lat': lat, 'lng': lng, 'accuracy': accuracy})
            trace.append({'lat': lat, 'lng': lng, 'accuracy': accuracy})

    trace.append({'lat': corners[0][0], 'lng': corners[0][1], 'accuracy': accuracy})
    return trace


def manual_session(corners):
    session = CaptureSession(ManualAcquisition())
    for lat, lng in corners:
        session.add_point(lat, lng, accuracy_meters=3.0)
    return session


# ===========================================================================
# GEODESY TESTS
# ===========================================================================

class GeodesyTestCase(SimpleTestCase):
    """Distance and area computations"""

    def test_haversine_identity_and_symmetry(self):
        """Distance to self is zero and distance is symmetric"""
        a = (ORIGIN_LAT, ORIGIN_LNG)
        b = (ORIGIN_LAT + 0.01, ORIGIN_LNG + 0.02)

        self.assertEqual(geodesy.haversine_distance(a, a), 0.0)
        self.assertAlmostEqual(
            geodesy.haversine_distance(a, b),
            geodesy.haversine_distance(b, a),
            places=6
        )

    def test_one_degree_of_latitude(self):
        """One degree along a meridian is about 111.2 km"""
        distance = geodesy.haversine_distance((0, 0), (1, 0))
        self.assertAlmostEqual(distance, 111195, delta=1)

    def test_haversine_accepts_points_and_dicts(self):
        point = GeoPoint.create(ORIGIN_LAT, ORIGIN_LNG)
        as_dict = {'lat': ORIGIN_LAT + 0.001, 'lng': ORIGIN_LNG}

        self.assertAlmostEqual(geodesy.haversine_distance(point, as_dict), 111.195, delta=0.01)

    def test_square_hectare(self):
        """A 100 m x 100 m square is one hectare within 5%"""
        area = geodesy.polygon_area(square_corners(100))

        self.assertAlmostEqual(geodesy.square_meters_to_hectares(area), 1.0, delta=0.05)

    def test_area_independent_of_start_and_direction(self):
        corners = square_corners(100)
        area = geodesy.polygon_area(corners)

        rotated = corners[2:] + corners[:2]
        reversed_ring = list(reversed(corners))

        self.assertAlmostEqual(geodesy.polygon_area(rotated), area, places=6)
        self.assertAlmostEqual(geodesy.polygon_area(reversed_ring), area, places=6)

    def test_closed_ring_same_area_as_open(self):
        corners = square_corners(100)
        closed = corners + [corners[0]]

        self.assertAlmostEqual(geodesy.polygon_area(closed), geodesy.polygon_area(corners), places=6)

    def test_too_few_points_have_no_area(self):
        self.assertEqual(geodesy.polygon_area([]), 0.0)
        self.assertEqual(geodesy.polygon_area(square_corners(100)[:2]), 0.0)

    def test_collinear_points_have_no_area(self):
        collinear = [
            (ORIGIN_LAT, ORIGIN_LNG),
            (ORIGIN_LAT + 0.001, ORIGIN_LNG),
            (ORIGIN_LAT + 0.002, ORIGIN_LNG),
        ]
        self.assertEqual(geodesy.polygon_area(collinear), 0.0)
        self.assertTrue(geodesy.is_collinear(collinear))

    def test_crossing_rings_are_self_intersecting(self):
        self.assertFalse(geodesy.is_self_intersecting(square_corners(100)))
        self.assertFalse(geodesy.is_collinear(bowtie_corners()))
        self.assertTrue(geodesy.is_self_intersecting(bowtie_corners()))
        self.assertTrue(geodesy.is_self_intersecting(uneven_bowtie_corners()))

    def test_repeated_vertices_are_not_crossings(self):
        corners = square_corners(100)
        ring = [corners[0], corners[1], corners[1], corners[2], corners[3], corners[0]]

        self.assertFalse(geodesy.is_self_intersecting(ring))

    def test_perimeter_and_centroid(self):
        corners = square_corners(100)

        self.assertAlmostEqual(geodesy.polygon_perimeter(corners), 400, delta=1)

        centroid = geodesy.polygon_centroid(corners)
        self.assertAlmostEqual(centroid['lat'], ORIGIN_LAT + meters_to_lat(50), places=6)
        self.assertAlmostEqual(centroid['lng'], ORIGIN_LNG + meters_to_lng(50), places=6)

    def test_unit_conversions(self):
        self.assertAlmostEqual(geodesy.square_meters_to_hectares(10000), 1.0)
        self.assertAlmostEqual(geodesy.square_meters_to_acres(10000), 2.47105)


# ===========================================================================
# CAPTURE SESSION TESTS
# ===========================================================================

class ManualCaptureTestCase(SimpleTestCase):
    """Manual (map tap) capture"""

    def test_area_recomputed_after_each_point(self):
        session = CaptureSession()
        corners = square_corners(100)

        for i, (lat, lng) in enumerate(corners):
            index = session.add_point(lat, lng)
            self.assertEqual(index, i)

        snapshot = session.snapshot()
        self.assertEqual(snapshot.point_count, 4)
        self.assertTrue(snapshot.is_complete)
        self.assertAlmostEqual(snapshot.area_hectares, 1.0, delta=0.05)

    def test_finalize_too_few_points(self):
        """Two points cannot form a boundary and the session is left as is"""
        session = manual_session(square_corners(100)[:2])

        with self.assertRaises(IncompleteBoundary):
            session.finalize()

        self.assertEqual(len(session), 2)

    def test_finalize_collinear_points(self):
        session = manual_session([
            (ORIGIN_LAT, ORIGIN_LNG),
            (ORIGIN_LAT + 0.001, ORIGIN_LNG),
            (ORIGIN_LAT + 0.002, ORIGIN_LNG),
        ])

        with self.assertRaises(DegenerateGeometry):
            session.finalize()

        self.assertEqual(len(session), 3)

    def test_finalize_square(self):
        boundary = manual_session(square_corners(100)).finalize()

        self.assertIsInstance(boundary, FinalizedBoundary)
        self.assertEqual(boundary.acquisition_mode, 'manual')
        self.assertEqual(len(boundary.points), 4)
        self.assertAlmostEqual(boundary.area_hectares, 1.0, delta=0.05)
        self.assertAlmostEqual(boundary.perimeter_meters, 400, delta=1)
        self.assertEqual(boundary.average_accuracy_meters, 3.0)

    def test_geojson_ring_is_closed(self):
        geometry = manual_session(square_corners(100)).finalize().to_geojson()

        ring = geometry['coordinates'][0]
        self.assertEqual(geometry['type'], 'Polygon')
        self.assertEqual(len(ring), 5)
        self.assertEqual(ring[0], ring[-1])

    def test_move_point_recomputes_area(self):
        session = manual_session(square_corners(100))
        before = session.snapshot().area_square_meters

        lat, lng = square_corners(200)[2]
        session.move_point(2, lat, lng)

        after = session.snapshot()
        self.assertGreater(after.area_square_meters, before)
        self.assertEqual(after.points[2].latitude, lat)
        self.assertAlmostEqual(
            after.area_square_meters,
            geodesy.polygon_area(after.points),
            places=6
        )

    def test_remove_point(self):
        session = manual_session(square_corners(100))

        removed = session.remove_point(3)

        self.assertEqual(len(session), 3)
        self.assertEqual(removed.latitude, square_corners(100)[3][0])
        self.assertAlmostEqual(session.snapshot().area_hectares, 0.5, delta=0.03)

    def test_invalid_coordinate_leaves_state_unchanged(self):
        session = manual_session(square_corners(100)[:3])
        before = session.snapshot()

        with self.assertRaises(InvalidCoordinate):
            session.add_point(91, ORIGIN_LNG)
        with self.assertRaises(InvalidCoordinate):
            session.add_point(ORIGIN_LAT, 'east')
        with self.assertRaises(InvalidCoordinate):
            session.move_point(0, ORIGIN_LAT, 181)

        self.assertEqual(session.snapshot(), before)

    def test_move_unknown_index(self):
        session = manual_session(square_corners(100)[:3])

        with self.assertRaises(IndexError):
            session.move_point(5, ORIGIN_LAT, ORIGIN_LNG)

        self.assertEqual(len(session), 3)

    def test_negative_index_rejected(self):
        session = manual_session(square_corners(100)[:3])
        before = session.snapshot()

        with self.assertRaises(IndexError):
            session.move_point(-1, ORIGIN_LAT, ORIGIN_LNG)
        with self.assertRaises(IndexError):
            session.remove_point(-1)

        self.assertEqual(session.snapshot(), before)

    def test_finalize_bowtie(self):
        """Crossing edges are rejected whether or not the lobes cancel out"""
        for corners in (bowtie_corners(), uneven_bowtie_corners()):
            session = manual_session(corners)

            with self.assertRaises(SelfIntersectingBoundary):
                session.finalize()

            self.assertEqual(len(session), 4)

    def test_continuous_operations_rejected(self):
        session = CaptureSession(ManualAcquisition())

        with self.assertRaises(CaptureModeError):
            session.ingest_sample(ORIGIN_LAT, ORIGIN_LNG)
        with self.assertRaises(CaptureModeError):
            session.follow(ReplayPositionSource([{'lat': ORIGIN_LAT, 'lng': ORIGIN_LNG}]))

    def test_dispose(self):
        """A disposed session is empty and rejects further points"""
        session = manual_session(square_corners(100))

        session.dispose()

        self.assertEqual(len(session), 0)
        with self.assertRaises(CaptureModeError):
            session.add_point(ORIGIN_LAT, ORIGIN_LNG)

    def test_concurrent_mutations_stay_consistent(self):
        """Parallel taps and drags never expose a stale area"""
        session = manual_session(square_corners(100))
        inconsistent = []
        done = threading.Event()

        def tap(offset):
            for i in range(25):
                session.add_point(
                    ORIGIN_LAT + meters_to_lat(150 + offset + i),
                    ORIGIN_LNG + meters_to_lng(offset * 3 + i)
                )

        def drag():
            for i in range(50):
                session.move_point(0, ORIGIN_LAT - meters_to_lat(i), ORIGIN_LNG)

        def read():
            while not done.is_set():
                snapshot = session.snapshot()
                expected = geodesy.polygon_area(snapshot.points)
                if abs(snapshot.area_square_meters - expected) > 1e-6:
                    inconsistent.append(snapshot)

        reader = threading.Thread(target=read)
        reader.start()

        writers = [threading.Thread(target=tap, args=(n,)) for n in range(4)]
        writers.append(threading.Thread(target=drag))
        for thread in writers:
            thread.start()
        for thread in writers:
            thread.join()

        done.set()
        reader.join()

        self.assertEqual(len(session), 4 + 4 * 25)
        self.assertEqual(inconsistent, [])


class ContinuousCaptureTestCase(SimpleTestCase):
    """GPS walk capture"""

    def test_jitter_suppressed(self):
        """Samples within the displacement threshold are not added"""
        session = CaptureSession(ContinuousAcquisition(min_displacement_meters=5))

        self.assertTrue(session.ingest_sample(ORIGIN_LAT, ORIGIN_LNG))
        self.assertFalse(session.ingest_sample(ORIGIN_LAT + meters_to_lat(1), ORIGIN_LNG))
        self.assertFalse(session.ingest_sample(ORIGIN_LAT + meters_to_lat(4), ORIGIN_LNG))
        self.assertTrue(session.ingest_sample(ORIGIN_LAT + meters_to_lat(10), ORIGIN_LNG))

        self.assertEqual(len(session), 2)
        self.assertEqual(session.samples_seen, 4)

    def test_manual_operations_rejected(self):
        session = CaptureSession(ContinuousAcquisition())

        with self.assertRaises(CaptureModeError):
            session.add_point(ORIGIN_LAT, ORIGIN_LNG)
        with self.assertRaises(CaptureModeError):
            session.load_ring(square_geojson()['coordinates'][0])

    def test_follow_replayed_walk(self):
        session = CaptureSession(ContinuousAcquisition(min_displacement_meters=5))

        accepted = session.follow(ReplayPositionSource(square_walk()))
        boundary = session.finalize()

        self.assertEqual(accepted, 41)
        self.assertEqual(len(boundary.points), 40)
        self.assertEqual(boundary.acquisition_mode, 'continuous')
        self.assertAlmostEqual(boundary.area_hectares, 1.0, delta=0.05)

    def test_follow_background_thread(self):
        """Fixes pushed from a location callback are ingested on a worker thread"""
        session = CaptureSession(ContinuousAcquisition(min_displacement_meters=5))
        source = QueuePositionSource(timeout_seconds=5)
        results = {}

        worker = threading.Thread(target=lambda: results.update(accepted=session.follow(source)))
        worker.start()

        for lat, lng in square_corners(100):
            source.push(lat, lng, accuracy_meters=4.0)
            source.push(lat, lng, accuracy_meters=4.0)
        source.close()
        worker.join(timeout=5)

        self.assertFalse(worker.is_alive())
        self.assertEqual(results['accepted'], 4)
        self.assertAlmostEqual(session.finalize().area_hectares, 1.0, delta=0.05)

    def test_stop_event(self):
        session = CaptureSession(ContinuousAcquisition())
        stop = threading.Event()
        stop.set()

        accepted = session.follow(ReplayPositionSource(square_walk()), stop_event=stop)

        self.assertEqual(accepted, 0)
        self.assertEqual(len(session), 0)

    def test_fallback_keeps_captured_points(self):
        """A source that stops answering falls back to manual capture"""
        session = CaptureSession(ContinuousAcquisition())
        source = QueuePositionSource(timeout_seconds=0.1)
        corners = square_corners(100)
        for lat, lng in corners[:3]:
            source.push(lat, lng)

        outcome = capture_with_fallback(session, source)

        self.assertTrue(outcome['fell_back'])
        self.assertEqual(outcome['point_count'], 3)
        self.assertEqual(session.mode, 'manual')

        session.add_point(*corners[3])
        boundary = session.finalize()
        self.assertEqual(len(boundary.points), 4)

    def test_fallback_on_denied_permission(self):
        session = CaptureSession(ContinuousAcquisition())
        source = QueuePositionSource(timeout_seconds=1)
        source.deny()

        outcome = capture_with_fallback(session, source)

        self.assertTrue(outcome['fell_back'])
        self.assertEqual(outcome['point_count'], 0)
        self.assertEqual(outcome['error'], 'Location permission denied')
        self.assertEqual(session.mode, 'manual')

    def test_no_fallback_when_source_completes(self):
        session = CaptureSession(ContinuousAcquisition())

        outcome = capture_with_fallback(session, ReplayPositionSource(square_walk()))

        self.assertFalse(outcome['fell_back'])
        self.assertEqual(outcome['accepted'], 41)
        self.assertEqual(session.mode, 'continuous')


class DrawnCaptureTestCase(SimpleTestCase):
    """Polygons drawn on the map"""

    def test_load_closed_ring(self):
        session = CaptureSession(DrawnAcquisition())

        count = session.load_ring(square_geojson()['coordinates'][0])
        boundary = session.finalize()

        self.assertEqual(count, 4)
        self.assertEqual(boundary.acquisition_mode, 'drawn')
        self.assertAlmostEqual(boundary.area_hectares, 1.0, delta=0.05)

    def test_load_ring_replaces_points(self):
        session = CaptureSession(DrawnAcquisition())
        session.load_ring(square_geojson(100)['coordinates'][0])

        session.load_ring(square_geojson(200)['coordinates'][0])

        self.assertAlmostEqual(session.snapshot().area_hectares, 4.0, delta=0.2)

    def test_invalid_ring_leaves_state_unchanged(self):
        session = CaptureSession(DrawnAcquisition())
        session.load_ring(square_geojson()['coordinates'][0])
        before = session.snapshot()

        with self.assertRaises(InvalidCoordinate):
            session.load_ring([[ORIGIN_LNG, ORIGIN_LAT], [200, ORIGIN_LAT], [ORIGIN_LNG, 95]])

        self.assertEqual(session.snapshot(), before)

    def test_tap_rejected(self):
        session = CaptureSession(DrawnAcquisition())

        with self.assertRaises(CaptureModeError):
            session.add_point(ORIGIN_LAT, ORIGIN_LNG)


# ===========================================================================
# POSITION SOURCE TESTS
# ===========================================================================

class PositionSourceTestCase(SimpleTestCase):

    def test_sample_from_dict(self):
        sample = PositionSample.from_dict({
            'latitude': ORIGIN_LAT,
            'longitude': ORIGIN_LNG,
            'accuracy': 4.5,
            'timestamp': '2024-03-10T06:30:00Z',
        })

        self.assertEqual(sample.latitude, ORIGIN_LAT)
        self.assertEqual(sample.longitude, ORIGIN_LNG)
        self.assertEqual(sample.accuracy_meters, 4.5)
        self.assertEqual(sample.captured_at, datetime(2024, 3, 10, 6, 30, tzinfo=dt_timezone.utc))

    def test_sample_defaults_timestamp(self):
        sample = PositionSample.from_dict({'lat': ORIGIN_LAT, 'lng': ORIGIN_LNG})

        self.assertIsNotNone(sample.captured_at)
        self.assertIsNone(sample.accuracy_meters)

    def test_empty_replay_unavailable(self):
        source = ReplayPositionSource([])

        with self.assertRaises(PositionSourceUnavailable):
            source.current_position()
        with self.assertRaises(PositionSourceUnavailable):
            list(source.samples())

    def test_replay_current_position(self):
        source = ReplayPositionSource(square_points_payload())

        self.assertEqual(len(source), 4)
        self.assertEqual(source.current_position().latitude, square_corners()[3][0])

    def test_queue_timeout(self):
        source = QueuePositionSource(timeout_seconds=0.05)

        with self.assertRaises(PositionSourceUnavailable):
            source.current_position()

    def test_queue_current_position(self):
        source = QueuePositionSource(timeout_seconds=1)
        source.push(ORIGIN_LAT, ORIGIN_LNG, accuracy_meters=2.0)

        first = source.current_position()

        self.assertEqual(first.latitude, ORIGIN_LAT)
        # Cached until the stream moves on
        self.assertIs(source.current_position(), first)

    def test_queue_closed_before_fix(self):
        source = QueuePositionSource(timeout_seconds=1)
        source.close()

        with self.assertRaises(PositionSourceUnavailable):
            source.current_position()


# ===========================================================================
# BOUNDARY SERVICE TESTS
# ===========================================================================

class BoundaryServiceTestCase(TestCase):
    """Validation, conversion and storage of boundaries"""

    def test_preview_tiny_field_warns(self):
        """A 10 m square is valid geometry but flagged as implausibly small"""
        preview = BoundaryService.preview_boundary({'points': square_points_payload(10)})

        self.assertTrue(preview['is_valid'])
        self.assertIsNone(preview['error'])
        self.assertTrue(any('too small' in w for w in preview['warnings']))

    def test_preview_rejects_bowtie(self):
        points = [{'lat': lat, 'lng': lng} for lat, lng in uneven_bowtie_corners()]

        preview = BoundaryService.preview_boundary({'points': points})

        self.assertFalse(preview['is_valid'])
        self.assertEqual(preview['error']['code'], 'self_intersecting_boundary')

    def test_validate_field_size(self):
        self.assertTrue(BoundaryService.validate_field_size(2.5)[0])
        self.assertFalse(BoundaryService.validate_field_size(0.05)[0])
        self.assertFalse(BoundaryService.validate_field_size(5000)[0])

    def test_boundary_from_geojson_feature(self):
        feature = {'type': 'Feature', 'geometry': square_geojson(), 'properties': {}}

        boundary = BoundaryService.boundary_from_geojson(feature)

        self.assertEqual(boundary.acquisition_mode, 'drawn')
        self.assertEqual(len(boundary.points), 4)

    def test_convert_from_geojson_rejects_non_polygon(self):
        with self.assertRaises(InvalidCoordinate):
            BoundaryService.convert_from_geojson({'type': 'Point', 'coordinates': [ORIGIN_LNG, ORIGIN_LAT]})
        with self.assertRaises(InvalidCoordinate):
            BoundaryService.convert_from_geojson({'type': 'Polygon', 'coordinates': []})

    def test_boundary_from_malformed_geojson(self):
        malformed = [
            {'type': 'Polygon', 'coordinates': [5]},
            {'type': 'Polygon', 'coordinates': 5},
            {'type': 'Polygon', 'coordinates': [[5, 6, 7]]},
            {'type': 'Feature', 'geometry': 'Polygon'},
            {'type': 'Feature', 'geometry': None},
            ['Polygon'],
        ]

        for geojson in malformed:
            with self.assertRaises(InvalidCoordinate):
                BoundaryService.boundary_from_geojson(geojson)

    def test_boundary_from_payload(self):
        self.assertIsNone(BoundaryService.boundary_from_payload({}))

        from_points = BoundaryService.boundary_from_payload({'points': square_points_payload()})
        self.assertEqual(from_points.acquisition_mode, 'manual')

        from_geojson = BoundaryService.boundary_from_payload({'boundary': square_geojson()})
        self.assertEqual(from_geojson.acquisition_mode, 'drawn')

    def test_preview_reports_error(self):
        preview = BoundaryService.preview_boundary({'points': square_points_payload()[:2]})

        self.assertFalse(preview['is_valid'])
        self.assertEqual(preview['error']['code'], 'incomplete_boundary')

    def test_process_gps_trace(self):
        processed = BoundaryService.process_gps_trace(square_walk())

        self.assertEqual(processed['samples_received'], 81)
        self.assertEqual(processed['points_accepted'], 40)
        self.assertAlmostEqual(processed['boundary'].area_hectares, 1.0, delta=0.05)
        self.assertEqual(processed['quality_metrics']['closure_distance_meters'], 0)
        self.assertEqual(processed['quality_score'], 100)
        self.assertTrue(processed['is_valid'])

    def test_process_gps_trace_standing_still(self):
        """Jitter around one spot never forms a boundary"""
        trace = [
            {'lat': ORIGIN_LAT + meters_to_lat(i % 3), 'lng': ORIGIN_LNG}
            for i in range(20)
        ]

        with self.assertRaises(IncompleteBoundary):
            BoundaryService.process_gps_trace(trace)

    def test_trace_quality_poor_accuracy_and_closure(self):
        trace = [
            {'lat': lat, 'lng': lng, 'accuracy': 25}
            for lat, lng in square_corners(100)
        ]

        metrics = BoundaryService.validate_trace_quality(trace)

        self.assertEqual(metrics['accuracy_score'], 30)
        self.assertEqual(metrics['completeness_score'], 30)
        self.assertIn('Boundary not properly closed', metrics['issues'])

    def test_store_boundary_points_replaces(self):
        field = Field.objects.create(name='Test plot', crop_type='wheat')

        BoundaryService.store_boundary_points(field, BoundaryService.boundary_from_points(square_points_payload()))
        BoundaryService.store_boundary_points(
            field,
            BoundaryService.boundary_from_points(square_points_payload()[:3])
        )

        self.assertEqual(field.boundary_points.count(), 3)
        self.assertEqual(
            list(field.boundary_points.values_list('sequence', flat=True)),
            [0, 1, 2]
        )

        accuracy = BoundaryService.calculate_boundary_accuracy(field.boundary_points.all())
        self.assertTrue(accuracy['has_accuracy_data'])
        self.assertEqual(accuracy['average_accuracy'], 3.0)


# ===========================================================================
# LIFECYCLE TESTS
# ===========================================================================

class FieldLifecycleTestCase(TestCase):
    """Field creation and remapping through the lifecycle controller"""

    def setUp(self):
        self.controller = FieldLifecycleController()
        self.boundary = BoundaryService.boundary_from_points(square_points_payload())

    def test_create_unmapped_field(self):
        result = self.controller.create_field(None, {'name': 'North plot', 'crop_type': 'wheat'})

        self.assertTrue(result.success)
        self.assertTrue(result.created)
        field = result.value
        self.assertEqual(field.state, Field.STATE_UNMAPPED)
        self.assertEqual(field.boundary_version, 0)
        self.assertIsNone(field.boundary_geojson)
        self.assertTrue(field.field_id.startswith('FLD-'))

    def test_create_mapped_field(self):
        result = self.controller.create_field(self.boundary, {
            'name': 'South plot',
            'crop_type': 'rice',
            'address': 'Patna',
            'unknown_key': 'ignored',
        })

        field = Field.objects.get(pk=result.value.pk)
        self.assertEqual(field.state, Field.STATE_MAPPED)
        self.assertEqual(field.boundary_version, 1)
        self.assertEqual(field.acquisition_mode, 'manual')
        self.assertEqual(field.boundary_points.count(), 4)
        self.assertAlmostEqual(float(field.area_hectares), 1.0, delta=0.05)
        self.assertEqual(len(field.get_boundary_ring()), 5)
        self.assertEqual(field.address, 'Patna')

    def test_remap_unmapped_field(self):
        field = self.controller.create_field(None, {'name': 'East plot'}).value

        result = self.controller.remap_field(field.field_id, self.boundary)

        self.assertTrue(result.success)
        field.refresh_from_db()
        self.assertEqual(field.state, Field.STATE_MAPPED)
        self.assertEqual(field.boundary_version, 1)

    def test_remap_replaces_boundary(self):
        field = self.controller.create_field(self.boundary, {'name': 'West plot'}).value
        larger = BoundaryService.boundary_from_geojson(square_geojson(200))

        self.controller.remap_field(field, larger)

        field.refresh_from_db()
        self.assertEqual(field.boundary_version, 2)
        self.assertEqual(field.acquisition_mode, 'drawn')
        self.assertAlmostEqual(float(field.area_hectares), 4.0, delta=0.2)
        self.assertEqual(BoundaryPoint.objects.filter(field=field).count(), 4)

    def test_remap_requires_boundary(self):
        field = self.controller.create_field(None, {'name': 'East plot'}).value

        result = self.controller.remap_field(field, None)

        self.assertFalse(result.success)
        self.assertIsInstance(result.error, IncompleteBoundary)

    def test_create_field_with_owner(self):
        owner = User.objects.create_user(username='grower', password='TestPass123!')

        field = self.controller.create_field(self.boundary, {'name': 'North plot'}, owner=owner).value

        self.assertEqual(field.owner, owner)
        self.assertEqual(list(Field.objects.visible_to(owner)), [field])

    def test_update_field_details(self):
        field = self.controller.create_field(self.boundary, {'name': 'West plot', 'crop_type': 'wheat'}).value

        result = self.controller.update_field(field.field_id, {
            'crop_type': 'rice',
            'planting_date': date(2024, 6, 20),
            'state': Field.STATE_UNMAPPED,
        })

        self.assertTrue(result.success)
        field.refresh_from_db()
        self.assertEqual(field.crop_type, 'rice')
        self.assertEqual(field.planting_date, date(2024, 6, 20))
        # Boundary and state only change through remap and analysis
        self.assertEqual(field.state, Field.STATE_MAPPED)
        self.assertEqual(field.boundary_version, 1)

    def test_unknown_field(self):
        with self.assertRaises(Field.DoesNotExist):
            self.controller.remap_field('FLD-MISSING', self.boundary)


# ===========================================================================
# API TESTS
# ===========================================================================

class FieldAPITestCase(APITestCase):
    """Test cases for the field API"""

    def setUp(self):
        """Set up test client"""
        self.client = APIClient()
        self.user = User.objects.create_user(username='agronomist', password='TestPass123!')
        self.client.force_authenticate(user=self.user)

    def _create_field(self, **extra):
        data = {'name': 'Test plot', 'crop_type': 'wheat', **extra}
        return self.client.post(reverse('fields:field_create'), data, format='json')

    def test_create_field_with_points(self):
        response = self._create_field(points=square_points_payload())

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['field']['state'], 'mapped')
        self.assertEqual(len(response.data['field']['boundary_points']), 4)

        field = Field.objects.get(field_id=response.data['field']['field_id'])
        self.assertEqual(field.boundary_points.count(), 4)

    def test_create_field_with_geojson(self):
        response = self._create_field(boundary=square_geojson())

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['field']['acquisition_mode'], 'drawn')

    def test_create_unmapped_field(self):
        response = self._create_field()

        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['field']['state'], 'unmapped')
        self.assertIsNone(response.data['field']['boundary_geojson'])

    def test_create_field_too_few_points(self):
        response = self._create_field(points=square_points_payload()[:2])

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['boundary']['code'], 'incomplete_boundary')
        self.assertEqual(Field.objects.count(), 0)

    def test_create_field_collinear(self):
        points = [
            {'lat': ORIGIN_LAT, 'lng': ORIGIN_LNG},
            {'lat': ORIGIN_LAT + 0.001, 'lng': ORIGIN_LNG},
            {'lat': ORIGIN_LAT + 0.002, 'lng': ORIGIN_LNG},
        ]

        response = self._create_field(points=points)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['boundary']['code'], 'degenerate_geometry')

    def test_create_field_invalid_coordinates(self):
        points = square_points_payload()
        points[0] = {'lat': 100, 'lng': 200}

        response = self._create_field(points=points)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['boundary']['code'], 'invalid_coordinate')

    def test_create_field_both_boundary_forms(self):
        response = self._create_field(points=square_points_payload(), boundary=square_geojson())

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_create_field_harvest_before_planting(self):
        response = self._create_field(planting_date='2024-11-10', expected_harvest_date='2024-10-01')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('expected_harvest_date', response.data)

    def test_list_fields(self):
        self._create_field(points=square_points_payload())
        self._create_field(crop_type='rice')

        response = self.client.get(reverse('fields:field_list'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['count'], 2)

        response = self.client.get(reverse('fields:field_list'), {'state': 'mapped'})
        self.assertEqual(response.data['count'], 1)

        response = self.client.get(reverse('fields:field_list'), {'crop_type': 'rice'})
        self.assertEqual(response.data['count'], 1)
        self.assertEqual(response.data['results'][0]['state'], 'unmapped')

    def test_get_field_detail(self):
        field_id = self._create_field(points=square_points_payload()).data['field']['field_id']

        response = self.client.get(reverse('fields:field_detail', args=[field_id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['field_id'], field_id)
        self.assertIsNone(response.data['latest_analysis'])
        self.assertTrue(response.data['boundary_accuracy']['has_accuracy_data'])

    def test_get_missing_field(self):
        response = self.client.get(reverse('fields:field_detail', args=['FLD-MISSING']))

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_get_field_geojson(self):
        field_id = self._create_field(points=square_points_payload()).data['field']['field_id']

        response = self.client.get(reverse('fields:field_geojson', args=[field_id]))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['type'], 'Feature')
        self.assertEqual(response.data['geometry']['type'], 'Polygon')
        self.assertEqual(response.data['properties']['field_id'], field_id)

    def test_remap_field(self):
        field_id = self._create_field(points=square_points_payload()).data['field']['field_id']

        response = self.client.post(
            reverse('fields:field_remap', args=[field_id]),
            {'boundary': square_geojson(200)},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['field']['boundary_version'], 2)
        self.assertAlmostEqual(float(response.data['field']['area_hectares']), 4.0, delta=0.2)

    def test_remap_field_requires_boundary(self):
        field_id = self._create_field().data['field']['field_id']

        response = self.client.post(reverse('fields:field_remap', args=[field_id]), {}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_validate_boundary(self):
        response = self.client.post(
            reverse('fields:validate_boundary'),
            {'points': square_points_payload()},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['is_valid'])
        self.assertEqual(response.data['point_count'], 4)
        self.assertAlmostEqual(response.data['area_hectares'], 1.0, delta=0.05)
        # Dry run only
        self.assertEqual(Field.objects.count(), 0)

    def test_validate_boundary_reports_error(self):
        response = self.client.post(
            reverse('fields:validate_boundary'),
            {'points': square_points_payload()[:2]},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(response.data['is_valid'])
        self.assertEqual(response.data['error']['code'], 'incomplete_boundary')

    def test_upload_gps_trace(self):
        response = self.client.post(
            reverse('fields:gps_trace'),
            {'trace': square_walk()},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['points_accepted'], 40)
        self.assertEqual(response.data['boundary']['type'], 'Polygon')
        self.assertIsNone(response.data['field'])

    def test_upload_gps_trace_to_field(self):
        field_id = self._create_field().data['field']['field_id']

        response = self.client.post(
            reverse('fields:gps_trace'),
            {'trace': square_walk(), 'field_id': field_id},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['field']['state'], 'mapped')
        self.assertEqual(response.data['field']['acquisition_mode'], 'continuous')

    def test_upload_gps_trace_standing_still(self):
        trace = [{'lat': ORIGIN_LAT, 'lng': ORIGIN_LNG} for _ in range(10)]

        response = self.client.post(reverse('fields:gps_trace'), {'trace': trace}, format='json')

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['error']['code'], 'incomplete_boundary')

    def test_create_field_bowtie(self):
        points = [{'lat': lat, 'lng': lng} for lat, lng in uneven_bowtie_corners()]

        response = self._create_field(points=points)

        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['boundary']['code'], 'self_intersecting_boundary')
        self.assertEqual(Field.objects.count(), 0)

    def test_create_field_malformed_geojson(self):
        for boundary in ({'type': 'Polygon', 'coordinates': [5]}, {'type': 'Feature', 'geometry': 'x'}):
            response = self._create_field(boundary=boundary)

            self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
            self.assertEqual(response.data['boundary']['code'], 'invalid_coordinate')

    def test_field_geojson_bbox(self):
        field_id = self._create_field(points=square_points_payload()).data['field']['field_id']

        response = self.client.get(reverse('fields:field_geojson', args=[field_id]))

        corners = square_corners(100)
        self.assertEqual(response.data['bbox'], [
            corners[0][1], corners[0][0],
            corners[2][1], corners[2][0],
        ])

    def test_update_field(self):
        field_id = self._create_field(points=square_points_payload()).data['field']['field_id']

        response = self.client.patch(
            reverse('fields:field_update', args=[field_id]),
            {'crop_type': 'maize', 'planting_date': '2024-06-20'},
            format='json'
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['field']['crop_type'], 'maize')
        self.assertEqual(response.data['field']['planting_date'], '2024-06-20')
        self.assertEqual(response.data['field']['name'], 'Test plot')
        self.assertEqual(response.data['field']['boundary_version'], 1)

    def test_update_field_rejects_bad_values(self):
        field_id = self._create_field(planting_date='2024-11-10').data['field']['field_id']
        url = reverse('fields:field_update', args=[field_id])

        response = self.client.patch(url, {'crop_type': 'barley'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.patch(url, {'expected_harvest_date': '2024-10-01'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertIn('expected_harvest_date', response.data)

    def test_fields_scoped_to_owner(self):
        field_id = self._create_field(points=square_points_payload()).data['field']['field_id']

        neighbour = User.objects.create_user(username='neighbour', password='TestPass123!')
        self.client.force_authenticate(user=neighbour)

        self.assertEqual(self.client.get(reverse('fields:field_list')).data['count'], 0)
        for name in ('fields:field_detail', 'fields:field_geojson'):
            response = self.client.get(reverse(name, args=[field_id]))
            self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

        response = self.client.patch(
            reverse('fields:field_update', args=[field_id]), {'name': 'Mine now'}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

        response = self.client.post(
            reverse('fields:field_remap', args=[field_id]), {'boundary': square_geojson(200)}, format='json'
        )
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(Field.objects.get(field_id=field_id).boundary_version, 1)

    def test_staff_see_all_fields(self):
        self._create_field(points=square_points_payload())

        staff = User.objects.create_user(username='officer', password='TestPass123!', is_staff=True)
        self.client.force_authenticate(user=staff)

        response = self.client.get(reverse('fields:field_list'))
        self.assertEqual(response.data['count'], 1)

    def test_unauthorized_access(self):
        self.client.force_authenticate(user=None)

        response = self.client.get(reverse('fields:field_list'))

        self.assertIn(response.status_code, [status.HTTP_401_UNAUTHORIZED, status.HTTP_403_FORBIDDEN])
