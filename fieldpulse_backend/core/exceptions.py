# core/exceptions.py

"""
Error taxonomy shared by the capture, analysis and lifecycle layers.

Geometry errors are raised locally by the polygon builder and leave the
session untouched. Provider and persistence errors are carried inside
result objects by the lifecycle controller so callers can retry.
"""


class FieldPulseError(Exception):
    """Base class for all domain errors"""

    code = 'fieldpulse_error'
    http_status = 500

    def __init__(self, message=None):
        super().__init__(message or self.__doc__)
        self.message = message or self.__doc__

    def as_dict(self):
        return {'code': self.code, 'message': self.message}


class BoundaryError(FieldPulseError):
    """Boundary geometry is not usable"""

    code = 'boundary_error'
    http_status = 400


class IncompleteBoundary(BoundaryError):
    """At least 3 points are required to form a field boundary"""

    code = 'incomplete_boundary'


class DegenerateGeometry(BoundaryError):
    """Boundary points are collinear and enclose no area"""

    code = 'degenerate_geometry'


class SelfIntersectingBoundary(BoundaryError):
    """Boundary edges cross each other"""

    code = 'self_intersecting_boundary'


class InvalidCoordinate(BoundaryError):
    """Coordinate is outside the WGS84 range"""

    code = 'invalid_coordinate'


class CaptureModeError(FieldPulseError):
    """Operation is not supported by the session's acquisition mode"""

    code = 'capture_mode_error'
    http_status = 409


class PositionSourceUnavailable(FieldPulseError):
    """Position source denied access or timed out"""

    code = 'position_source_unavailable'
    http_status = 503


class ProviderError(FieldPulseError):
    """Imagery provider failed to return usable indices"""

    code = 'provider_error'
    http_status = 502


class ProviderTimeout(ProviderError):
    """Imagery provider did not answer within the configured timeout"""

    code = 'provider_timeout'
    http_status = 504


class PersistenceError(FieldPulseError):
    """Storage write failed"""

    code = 'persistence_error'
    http_status = 503


class UnsupportedCropType(FieldPulseError):
    """Crop type has no calendar or classification support"""

    code = 'unsupported_crop_type'
    http_status = 400


class AnalysisError(FieldPulseError):
    """Analysis failed for a reason other than the provider or storage"""

    code = 'analysis_error'
    http_status = 500
