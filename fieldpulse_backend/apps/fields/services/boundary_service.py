# apps/fields/services/boundary_service.py

import logging

from django.conf import settings
from django.db import transaction
from geopy.distance import geodesic

from core.exceptions import BoundaryError, InvalidCoordinate
from . import geodesy
from .polygon_builder import (
    CaptureSession,
    ContinuousAcquisition,
    DEFAULT_MIN_DISPLACEMENT_METERS,
    DrawnAcquisition,
    ManualAcquisition,
    capture_with_fallback,
)
from .position_sources import ReplayPositionSource

logger = logging.getLogger(__name__)


MAX_BOUNDARY_POINTS_WARNING = 1000
MIN_FIELD_ACRES = 0.1
MAX_FIELD_ACRES = 1000


class BoundaryService:
    """
    Service for field boundary operations and validation
    """

    @staticmethod
    def validate_field_size(area_acres, min_acres=MIN_FIELD_ACRES, max_acres=MAX_FIELD_ACRES):
        """
        Check whether a field size is plausible for a smallholding

        Returns:
            tuple: (is_valid, message)
        """
        if area_acres < min_acres:
            return False, f"Field size too small (minimum {min_acres} acres)"

        if area_acres > max_acres:
            return False, f"Field size too large (maximum {max_acres} acres)"

        return True, "Valid size"

    # ------------------------------------------------------------------
    # Building boundaries from request payloads
    # ------------------------------------------------------------------

    @classmethod
    def boundary_from_points(cls, points):
        """
        Finalize a boundary from tapped points

        Args:
            points: List of dicts with 'lat', 'lng' and optional 'accuracy'

        Raises:
            BoundaryError: When the points do not form a usable boundary
        """
        session = CaptureSession(ManualAcquisition())
        for point in points:
            session.add_point(
                point.get('lat'),
                point.get('lng'),
                accuracy_meters=point.get('accuracy'),
                captured_at=point.get('recorded_at'),
            )
        return session.finalize()

    @classmethod
    def boundary_from_geojson(cls, geojson):
        """
        Finalize a boundary from a GeoJSON Polygon geometry or Feature

        The ring may be open or closed.
        """
        coordinates = cls.convert_from_geojson(geojson)
        session = CaptureSession(DrawnAcquisition())
        session.load_ring(coordinates)
        return session.finalize()

    @classmethod
    def boundary_from_payload(cls, data):
        """
        Build a boundary from a request body holding either 'boundary'
        (GeoJSON) or 'points' (list of lat/lng dicts)

        Returns:
            FinalizedBoundary or None when the body carries no boundary
        """
        if data.get('boundary'):
            return cls.boundary_from_geojson(data['boundary'])
        if data.get('points'):
            return cls.boundary_from_points(data['points'])
        return None

    @classmethod
    def preview_boundary(cls, data):
        """
        Dry-run finalize for the validate endpoint

        Returns:
            dict: validity, area figures and any issues found
        """
        try:
            boundary = cls.boundary_from_payload(data)
        except BoundaryError as e:
            return {'is_valid': False, 'error': e.as_dict(), 'warnings': []}

        if boundary is None:
            return {
                'is_valid': False,
                'error': {'code': 'missing_boundary', 'message': "Provide 'boundary' or 'points'"},
                'warnings': [],
            }

        warnings = []
        is_valid_size, size_message = cls.validate_field_size(boundary.area_acres)
        if not is_valid_size:
            warnings.append(size_message)
        if len(boundary.points) > MAX_BOUNDARY_POINTS_WARNING:
            warnings.append(f"Boundary has {len(boundary.points)} points (very complex)")

        return {
            'is_valid': True,
            'error': None,
            'warnings': warnings,
            'point_count': len(boundary.points),
            'area_square_meters': round(boundary.area_square_meters, 2),
            'area_hectares': round(boundary.area_hectares, 4),
            'area_acres': round(boundary.area_acres, 4),
            'perimeter_meters': round(boundary.perimeter_meters, 2),
            'centroid': boundary.centroid,
            'boundary': boundary.to_geojson(),
        }

    # ------------------------------------------------------------------
    # GPS traces
    # ------------------------------------------------------------------

    @classmethod
    def process_gps_trace(cls, trace, min_displacement_meters=None):
        """
        Convert an uploaded GPS walk into a field boundary

        Args:
            trace: List of dicts with 'lat', 'lng', optional 'accuracy' and
                'timestamp'
            min_displacement_meters: Jitter threshold for accepting a sample

        Returns:
            dict: Finalized boundary plus trace quality metrics

        Raises:
            BoundaryError: When the accepted points do not form a boundary
        """
        if min_displacement_meters is None:
            min_displacement_meters = getattr(
                settings, 'CAPTURE_MIN_DISPLACEMENT_METERS', DEFAULT_MIN_DISPLACEMENT_METERS
            )
        session = CaptureSession(ContinuousAcquisition(min_displacement_meters))
        source = ReplayPositionSource(trace)

        capture = capture_with_fallback(session, source)
        if capture['fell_back']:
            logger.warning(f"GPS trace could not be replayed: {capture['error']}")

        boundary = session.finalize()
        quality = cls.validate_trace_quality(trace)

        logger.info(
            f"Processed GPS trace: {session.samples_seen} samples, "
            f"{len(boundary.points)} accepted, {boundary.area_hectares:.4f} ha"
        )

        return {
            'boundary': boundary,
            'samples_received': session.samples_seen,
            'points_accepted': len(boundary.points),
            'quality_score': quality['overall_score'],
            'quality_metrics': quality,
            'is_valid': quality['overall_score'] > 60,
        }

    @classmethod
    def validate_trace_quality(cls, gps_points):
        """
        Score a GPS walk on accuracy, closure and gap consistency

        Returns:
            dict: Quality metrics and recommendations
        """
        metrics = {
            'accuracy_score': 0,
            'completeness_score': 0,
            'consistency_score': 0,
            'overall_score': 0,
            'closure_distance_meters': None,
            'issues': [],
            'recommendations': [],
        }

        points = [(float(p['lat']), float(p['lng'])) for p in gps_points]
        if len(points) < 2:
            metrics['issues'].append('Too few GPS points')
            return metrics

        accuracies = [p.get('accuracy') or 10 for p in gps_points]
        avg_accuracy = sum(accuracies) / len(accuracies)

        if avg_accuracy <= 3:
            metrics['accuracy_score'] = 100
        elif avg_accuracy <= 5:
            metrics['accuracy_score'] = 80
        elif avg_accuracy <= 10:
            metrics['accuracy_score'] = 60
        else:
            metrics['accuracy_score'] = 30
            metrics['issues'].append('Poor GPS accuracy')
            metrics['recommendations'].append('Walk boundary again with better GPS signal')

        # Did the walk return to where it started
        closure_distance = geodesic(points[0], points[-1]).meters
        metrics['closure_distance_meters'] = round(closure_distance, 2)

        if closure_distance <= 5:
            metrics['completeness_score'] = 100
        elif closure_distance <= 10:
            metrics['completeness_score'] = 80
        elif closure_distance <= 20:
            metrics['completeness_score'] = 60
        else:
            metrics['completeness_score'] = 30
            metrics['issues'].append('Boundary not properly closed')
            metrics['recommendations'].append('Ensure you return to starting point')

        gaps = [geodesic(points[i - 1], points[i]).meters for i in range(1, len(points))]
        avg_gap = sum(gaps) / len(gaps)
        max_gap = max(gaps)

        if max_gap <= avg_gap * 3:
            metrics['consistency_score'] = 100
        elif max_gap <= avg_gap * 5:
            metrics['consistency_score'] = 80
        else:
            metrics['consistency_score'] = 60
            metrics['issues'].append('Large gaps in GPS trace')
            metrics['recommendations'].append('Walk more slowly and consistently')

        metrics['overall_score'] = round(
            (metrics['accuracy_score'] + metrics['completeness_score'] + metrics['consistency_score']) / 3
        )

        return metrics

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------

    @classmethod
    @transaction.atomic
    def store_boundary_points(cls, field, boundary):
        """
        Replace the field's boundary points with those of a finalized boundary

        Returns:
            list: Created BoundaryPoint instances
        """
        from apps.fields.models import BoundaryPoint

        field.boundary_points.all().delete()

        return BoundaryPoint.objects.bulk_create([
            BoundaryPoint(
                field=field,
                sequence=i,
                latitude=point.latitude,
                longitude=point.longitude,
                accuracy=point.accuracy_meters,
                recorded_at=point.captured_at,
            )
            for i, point in enumerate(boundary.points)
        ])

    @classmethod
    def calculate_boundary_accuracy(cls, boundary_points):
        """
        Summarize GPS accuracy over stored boundary points

        Returns:
            dict: Accuracy metrics
        """
        boundary_points = list(boundary_points)
        accuracies = [p.accuracy for p in boundary_points if p.accuracy is not None]

        if not accuracies:
            return {
                'has_accuracy_data': False,
                'average_accuracy': None,
                'max_accuracy': None,
                'min_accuracy': None,
            }

        return {
            'has_accuracy_data': True,
            'average_accuracy': round(sum(accuracies) / len(accuracies), 2),
            'max_accuracy': round(max(accuracies), 2),
            'min_accuracy': round(min(accuracies), 2),
            'points_with_data': len(accuracies),
            'total_points': len(boundary_points),
        }

    # ------------------------------------------------------------------
    # GeoJSON
    # ------------------------------------------------------------------

    @classmethod
    def convert_to_geojson(cls, field):
        """
        Convert a field boundary to a GeoJSON Feature

        Returns:
            dict: GeoJSON Feature (geometry None for unmapped fields)
        """
        feature = {
            'type': 'Feature',
            'geometry': field.boundary_geojson,
            'properties': {
                'field_id': field.field_id,
                'name': field.name,
                'crop_type': field.crop_type,
                'state': field.state,
                'area_hectares': float(field.area_hectares) if field.area_hectares is not None else None,
                'acquisition_mode': field.acquisition_mode,
                'boundary_version': field.boundary_version,
            },
        }

        ring = field.get_boundary_ring()
        if ring:
            box = geodesy.bounding_box([(lat, lng) for lng, lat in ring])
            feature['bbox'] = [
                box['min_longitude'], box['min_latitude'],
                box['max_longitude'], box['max_latitude'],
            ]

        return feature

    @classmethod
    def convert_from_geojson(cls, geojson):
        """
        Extract the outer ring from a GeoJSON Polygon geometry or Feature

        Returns:
            list: [lng, lat] pairs

        Raises:
            InvalidCoordinate: When the document is not a usable Polygon
        """
        geometry = geojson.get('geometry', geojson) if isinstance(geojson, dict) else None
        if not isinstance(geometry, dict) or geometry.get('type') != 'Polygon':
            raise InvalidCoordinate("GeoJSON must be a Polygon")

        rings = geometry.get('coordinates') or []
        if not isinstance(rings, (list, tuple)) or not rings:
            raise InvalidCoordinate("GeoJSON Polygon has no coordinates")
        if not isinstance(rings[0], (list, tuple)):
            raise InvalidCoordinate("GeoJSON Polygon coordinates must be a list of rings")

        coordinates = []
        for position in rings[0]:
            if not isinstance(position, (list, tuple)) or len(position) < 2:
                raise InvalidCoordinate(f"Invalid GeoJSON position: {position!r}")
            coordinates.append([position[0], position[1]])

        return coordinates
