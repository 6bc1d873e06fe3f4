#!/usr/bin/env python3
"""
Great-circle distance between two coordinates, in miles

Two formulas are available:
* haversine (default): assumes a sphere. Simple and good enough,
  since the distance in the report is advisory.
* Vincenty: iterative solution on the WGS-84 ellipsoid. More
  accurate, but it can fail to converge for nearly antipodal
  points and it reports coincident points as unavailable.

Coordinates are (latitude, longitude) tuples in decimal degrees.
"""

# built-in import
import math
import unittest
from typing import Optional, Tuple

Coord = Tuple[float, float]

EARTH_RADIUS_M = 6378100.0
METERS_PER_MILE = 1609.344

# WGS-84 ellipsoid
WGS84_A = 6378137.0
WGS84_B = 6356752.3142
WGS84_F = 1 / 298.257223563
VINCENTY_TOLERANCE = 1e-12
VINCENTY_MAX_ITERATIONS = 20


class TestDistance(unittest.TestCase):
    """Test distance functions"""

    ASHBURN = (39.0481, -77.4728)
    SAN_JOSE = (37.3382, -121.8863)

    def test_haversine_known_distance(self):
        """Test haversine_miles() with a known pair of cities"""
        self.assertAlmostEqual(haversine_miles(self.ASHBURN, self.SAN_JOSE), 2393.6, delta=2)

    def test_haversine_identical(self):
        """Test haversine_miles() is zero for identical points"""
        for point in (self.ASHBURN, (0.0, 0.0), (90.0, 0.0), (-33.8688, 151.2093)):
            with self.subTest(point=point):
                self.assertEqual(haversine_miles(point, point), 0)

    def test_haversine_symmetric(self):
        """Test haversine_miles() does not depend on argument order"""
        pairs = ((self.ASHBURN, self.SAN_JOSE),
                 ((51.5074, -0.1278), (-33.8688, 151.2093)),
                 ((0.0, 179.9), (0.0, -179.9)))
        for p1, p2 in pairs:
            with self.subTest(p1=p1, p2=p2):
                self.assertAlmostEqual(haversine_miles(p1, p2), haversine_miles(p2, p1), places=6)

    def test_haversine_antipodal(self):
        """Test haversine_miles() with antipodal points"""
        half_circumference = math.pi * EARTH_RADIUS_M / METERS_PER_MILE
        self.assertAlmostEqual(haversine_miles((0.0, 0.0), (0.0, 180.0)), half_circumference, places=3)
        self.assertAlmostEqual(haversine_miles((90.0, 0.0), (-90.0, 0.0)), half_circumference, places=3)

    def test_vincenty(self):
        """Test vincenty_miles() agrees roughly with haversine_miles()"""
        vincenty = vincenty_miles(self.ASHBURN, self.SAN_JOSE)
        self.assertIsNotNone(vincenty)
        self.assertAlmostEqual(vincenty, haversine_miles(self.ASHBURN, self.SAN_JOSE), delta=25)
        self.assertAlmostEqual(vincenty, vincenty_miles(self.SAN_JOSE, self.ASHBURN), places=6)

    def test_vincenty_unavailable(self):
        """Test vincenty_miles() returns None instead of a silent zero"""
        self.assertIsNone(vincenty_miles(self.ASHBURN, self.ASHBURN))
        # Nearly antipodal points do not converge within the iteration cap.
        self.assertIsNone(vincenty_miles((0.0, 0.0), (0.5, 179.5)))

    def test_distance_miles(self):
        """Test distance_miles() dispatches by formula"""
        self.assertEqual(distance_miles(self.ASHBURN, self.SAN_JOSE),
                         haversine_miles(self.ASHBURN, self.SAN_JOSE))
        self.assertEqual(distance_miles(self.ASHBURN, self.SAN_JOSE, 'vincenty'),
                         vincenty_miles(self.ASHBURN, self.SAN_JOSE))
        with self.assertRaises(ValueError):
            distance_miles(self.ASHBURN, self.SAN_JOSE, 'flat')

    def test_parse_loc(self):
        """Test parse_loc()"""
        test_cases = (
            ('39.0481,-77.4728', (39.0481, -77.4728)),
            (' 37.3382 , -121.8863 ', (37.3382, -121.8863)),
            ('', None),
            ('N/A', None),
            ('1,2,3', None),
            ('north,south', None),
            ('91.0,0.0', None),
            ('0.0,181.0', None),
            (None, None),
        )
        for loc, expected in test_cases:
            with self.subTest(loc=loc):
                self.assertEqual(parse_loc(loc), expected)


def parse_loc(loc: Optional[str]) -> Optional[Coord]:
    """Parse a 'lat,lon' string

    Returns None if the string is empty or not a valid coordinate.
    """
    if not loc:
        return None
    parts = loc.split(',')
    if len(parts) != 2:
        return None
    try:
        lat, lon = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    if not (-90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0):
        return None
    return lat, lon


def haversine_miles(p1: Coord, p2: Coord) -> float:
    """Return the haversine distance in miles"""
    lat1, lon1 = math.radians(p1[0]), math.radians(p1[1])
    lat2, lon2 = math.radians(p2[0]), math.radians(p2[1])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    # Rounding can push a past 1 for antipodal points.
    a = min(1.0, a)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_M * c / METERS_PER_MILE


def vincenty_miles(p1: Coord, p2: Coord) -> Optional[float]:
    """Return the Vincenty distance in miles

    Returns None for coincident points and when the iteration does
    not converge.
    """
    lat1, lon1 = math.radians(p1[0]), math.radians(p1[1])
    lat2, lon2 = math.radians(p2[0]), math.radians(p2[1])

    L = lon2 - lon1
    U1 = math.atan((1 - WGS84_F) * math.tan(lat1))
    U2 = math.atan((1 - WGS84_F) * math.tan(lat2))
    sin_u1, cos_u1 = math.sin(U1), math.cos(U1)
    sin_u2, cos_u2 = math.sin(U2), math.cos(U2)

    lam = L
    for _ in range(VINCENTY_MAX_ITERATIONS):
        sin_lam, cos_lam = math.sin(lam), math.cos(lam)
        sin_sigma = math.sqrt((cos_u2 * sin_lam) ** 2 +
                              (cos_u1 * sin_u2 - sin_u1 * cos_u2 * cos_lam) ** 2)
        if sin_sigma == 0:
            return None
        cos_sigma = sin_u1 * sin_u2 + cos_u1 * cos_u2 * cos_lam
        sigma = math.atan2(sin_sigma, cos_sigma)
        sin_alpha = cos_u1 * cos_u2 * sin_lam / sin_sigma
        cos_sq_alpha = 1 - sin_alpha ** 2
        if cos_sq_alpha == 0:
            cos_2sigma_m = 0.0  # equatorial line
        else:
            cos_2sigma_m = cos_sigma - 2 * sin_u1 * sin_u2 / cos_sq_alpha
        C = WGS84_F / 16 * cos_sq_alpha * (4 + WGS84_F * (4 - 3 * cos_sq_alpha))
        lam_prev = lam
        lam = L + (1 - C) * WGS84_F * sin_alpha * (
            sigma + C * sin_sigma * (cos_2sigma_m + C * cos_sigma * (-1 + 2 * cos_2sigma_m ** 2)))
        if abs(lam - lam_prev) <= VINCENTY_TOLERANCE:
            break
    else:
        return None

    u_sq = cos_sq_alpha * (WGS84_A ** 2 - WGS84_B ** 2) / WGS84_B ** 2
    A = 1 + u_sq / 16384 * (4096 + u_sq * (-768 + u_sq * (320 - 175 * u_sq)))
    B = u_sq / 1024 * (256 + u_sq * (-128 + u_sq * (74 - 47 * u_sq)))
    delta_sigma = B * sin_sigma * (cos_2sigma_m + B / 4 * (
        cos_sigma * (-1 + 2 * cos_2sigma_m ** 2) -
        B / 6 * cos_2sigma_m * (-3 + 4 * sin_sigma ** 2) * (-3 + 4 * cos_2sigma_m ** 2)))
    meters = WGS84_B * A * (sigma - delta_sigma)
    return meters / METERS_PER_MILE


def distance_miles(p1: Coord, p2: Coord, formula: str = 'haversine') -> Optional[float]:
    """Return the distance in miles using the named formula

    None means the distance is unavailable (only possible with Vincenty).
    """
    if formula == 'haversine':
        return haversine_miles(p1, p2)
    if formula == 'vincenty':
        return vincenty_miles(p1, p2)
    raise ValueError(f'unknown distance formula: {formula}')


if __name__ == '__main__':
    unittest.main()
