# apps/fields/services/__init__.py

from .boundary_service import BoundaryService
from .polygon_builder import (
    CaptureSession,
    ContinuousAcquisition,
    DrawnAcquisition,
    FinalizedBoundary,
    GeoPoint,
    ManualAcquisition,
)
from .lifecycle import FieldLifecycleController, LifecycleResult

__all__ = [
    'BoundaryService',
    'CaptureSession',
    'ContinuousAcquisition',
    'DrawnAcquisition',
    'FinalizedBoundary',
    'GeoPoint',
    'ManualAcquisition',
    'FieldLifecycleController',
    'LifecycleResult',
]
