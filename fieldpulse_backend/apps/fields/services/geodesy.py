# apps/fields/services/geodesy.py

import math

from shapely.geometry import LinearRing, MultiPoint


EARTH_RADIUS_METERS = 6371000.0

# Conversion constants
SQ_METERS_TO_HECTARES = 0.0001
SQ_METERS_TO_ACRES = 0.000247105

# Twice the ring area below this (in m^2) is treated as zero
COLLINEAR_TOLERANCE_SQ_METERS = 1e-3


def _coords(point):
    """Return (lat, lng) from a GeoPoint, a {'lat', 'lng'} dict or a (lat, lng) pair"""
    if hasattr(point, 'latitude'):
        return float(point.latitude), float(point.longitude)
    if isinstance(point, dict):
        return float(point['lat']), float(point['lng'])
    return float(point[0]), float(point[1])


def haversine_distance(a, b):
    """
    Great-circle distance between two points

    Args:
        a: First point (GeoPoint, dict with 'lat'/'lng', or (lat, lng))
        b: Second point

    Returns:
        float: Distance in meters
    """
    lat1, lng1 = _coords(a)
    lat2, lng2 = _coords(b)

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)

    h = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    # Rounding can push h marginally above 1 for antipodal points
    h = min(1.0, max(0.0, h))

    return 2 * EARTH_RADIUS_METERS * math.asin(math.sqrt(h))


def _project(points):
    """
    Project a ring onto a local equirectangular plane (meters)

    The plane is centred on the ring's mean latitude/longitude, which keeps
    the distortion negligible at field scale.
    """
    coords = [_coords(p) for p in points]
    ref_lat = sum(lat for lat, _ in coords) / len(coords)
    ref_lng = sum(lng for _, lng in coords) / len(coords)
    cos_ref = math.cos(math.radians(ref_lat))

    projected = []
    for lat, lng in coords:
        x = math.radians(lng - ref_lng) * EARTH_RADIUS_METERS * cos_ref
        y = math.radians(lat - ref_lat) * EARTH_RADIUS_METERS
        projected.append((x, y))

    return projected


def _twice_signed_area(projected):
    total = 0.0
    count = len(projected)
    for i in range(count):
        x1, y1 = projected[i]
        x2, y2 = projected[(i + 1) % count]
        total += x1 * y2 - x2 * y1
    return total


def polygon_area(points):
    """
    Area enclosed by an implicitly closed ring of points

    Uses the shoelace formula on a local planar projection. The result is an
    unsigned magnitude, so it does not depend on the starting vertex or on
    traversal direction.

    Args:
        points: Sequence of points (GeoPoint, dict or (lat, lng))

    Returns:
        float: Area in square meters (0 for < 3 points or collinear points)
    """
    points = list(points)
    if len(points) < 3:
        return 0.0

    # An explicitly closed ring repeats its first vertex
    if len(points) > 3 and _coords(points[0]) == _coords(points[-1]):
        points = points[:-1]

    twice_area = abs(_twice_signed_area(_project(points)))
    if twice_area <= COLLINEAR_TOLERANCE_SQ_METERS:
        return 0.0

    return twice_area / 2.0


def _open_ring(points):
    """Drop the closing vertex and consecutive repeats"""
    ring = []
    for point in points:
        coords = _coords(point)
        if not ring or ring[-1] != coords:
            ring.append(coords)
    if len(ring) > 1 and ring[0] == ring[-1]:
        ring.pop()
    return ring


def is_collinear(points):
    """True when every point lies on one line (the convex hull has no area)"""
    ring = _open_ring(points)
    if len(ring) < 3:
        return True
    hull = MultiPoint(_project(ring)).convex_hull
    return hull.area * 2 <= COLLINEAR_TOLERANCE_SQ_METERS


def is_self_intersecting(points):
    """True when edges of the implicitly closed ring cross or touch"""
    ring = _open_ring(points)
    if len(ring) < 3:
        return False
    return not LinearRing(_project(ring)).is_simple


def polygon_perimeter(points):
    """Perimeter of the closed ring in meters"""
    points = list(points)
    if len(points) < 2:
        return 0.0

    perimeter = 0.0
    for i in range(len(points)):
        perimeter += haversine_distance(points[i], points[(i + 1) % len(points)])

    return perimeter


def polygon_centroid(points):
    """
    Area-weighted centroid of the ring

    Falls back to the vertex mean for degenerate rings.

    Returns:
        dict: {'lat': ..., 'lng': ...}
    """
    coords = [_coords(p) for p in points]
    if not coords:
        return None

    mean_lat = sum(lat for lat, _ in coords) / len(coords)
    mean_lng = sum(lng for _, lng in coords) / len(coords)

    if len(coords) < 3:
        return {'lat': mean_lat, 'lng': mean_lng}

    projected = _project(coords)
    twice_area = _twice_signed_area(projected)
    if abs(twice_area) <= COLLINEAR_TOLERANCE_SQ_METERS:
        return {'lat': mean_lat, 'lng': mean_lng}

    cx = 0.0
    cy = 0.0
    for i in range(len(projected)):
        x1, y1 = projected[i]
        x2, y2 = projected[(i + 1) % len(projected)]
        cross = x1 * y2 - x2 * y1
        cx += (x1 + x2) * cross
        cy += (y1 + y2) * cross

    cx /= 3.0 * twice_area
    cy /= 3.0 * twice_area

    cos_ref = math.cos(math.radians(mean_lat))
    lat = mean_lat + math.degrees(cy / EARTH_RADIUS_METERS)
    lng = mean_lng + math.degrees(cx / (EARTH_RADIUS_METERS * cos_ref))

    return {'lat': lat, 'lng': lng}


def bounding_box(points):
    """
    Bounding box of the ring

    Returns:
        dict: min/max latitude and longitude
    """
    coords = [_coords(p) for p in points]
    lats = [lat for lat, _ in coords]
    lngs = [lng for _, lng in coords]

    return {
        'min_latitude': min(lats),
        'min_longitude': min(lngs),
        'max_latitude': max(lats),
        'max_longitude': max(lngs),
    }


def square_meters_to_hectares(sq_meters):
    """Convert square meters to hectares"""
    return sq_meters * SQ_METERS_TO_HECTARES


def square_meters_to_acres(sq_meters):
    """Convert square meters to acres"""
    return sq_meters * SQ_METERS_TO_ACRES
