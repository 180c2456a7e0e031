"""
Coarse geography for region buckets.

Polygons are deliberately rough (a dozen vertices per country) and are only
good enough to bucket a point into a country or a handful of subregions.
Vertices are (longitude, latitude). Lookups test subregions before
countries, and smaller shapes before larger ones, so overlapping borders
resolve to the more specific bucket.
"""
from __future__ import annotations

import re
from typing import Optional

GLOBAL_REGION = "GLOBAL"

REGION_CODE_RE = re.compile(r"^([A-Z]{2}(-[A-Z0-9]{1,3})?|GLOBAL)$", re.IGNORECASE)

Polygon = list[tuple[float, float]]

_SUBREGIONS: dict[str, list[Polygon]] = {
    "US-CA": [[
        (-124.4, 42.0), (-120.0, 42.0), (-120.0, 39.0), (-114.6, 35.0),
        (-114.1, 32.7), (-117.1, 32.5), (-120.6, 34.5), (-124.4, 40.3),
    ]],
    "US-NY": [[
        (-79.8, 42.0), (-79.8, 45.0), (-73.3, 45.0), (-71.8, 41.0),
        (-74.3, 40.5), (-75.4, 42.0),
    ]],
    "US-TX": [[
        (-106.6, 32.0), (-103.0, 32.0), (-103.0, 36.5), (-100.0, 36.5),
        (-100.0, 34.6), (-94.0, 33.6), (-93.5, 29.7), (-97.2, 25.9),
        (-99.5, 27.5), (-104.5, 29.6),
    ]],
    "US-FL": [[
        (-87.6, 31.0), (-85.0, 31.0), (-82.0, 30.6), (-81.4, 30.7),
        (-80.0, 26.5), (-80.4, 25.1), (-81.8, 25.1), (-82.8, 27.9),
        (-84.3, 30.0), (-87.6, 30.3),
    ]],
    "GB-ENG": [[
        (-5.7, 50.0), (1.8, 51.0), (1.8, 52.9), (-0.2, 54.0), (-2.0, 55.8),
        (-3.1, 54.9), (-3.0, 53.3), (-2.7, 51.6), (-5.7, 51.0),
    ]],
}

_COUNTRIES: dict[str, list[Polygon]] = {
    "US": [
        [
            (-124.7, 48.4), (-95.2, 49.0), (-83.0, 46.0), (-67.0, 47.3),
            (-70.0, 41.5), (-75.5, 35.2), (-81.0, 31.5), (-80.0, 25.1),
            (-82.0, 24.5), (-97.2, 25.9), (-104.5, 29.6), (-106.6, 31.8),
            (-111.0, 31.3), (-117.1, 32.5), (-124.4, 40.3),
        ],
        [(-168.0, 54.0), (-141.0, 54.0), (-141.0, 71.5), (-168.0, 71.5)],
    ],
    "CA": [[
        (-141.0, 60.0), (-141.0, 69.6), (-95.0, 72.0), (-60.0, 60.0),
        (-52.6, 47.5), (-67.0, 44.5), (-67.0, 47.3), (-83.0, 46.0),
        (-95.2, 49.0), (-123.0, 49.0), (-133.0, 54.5),
    ]],
    "MX": [[
        (-117.1, 32.5), (-111.0, 31.3), (-106.6, 31.8), (-104.5, 29.6),
        (-97.2, 25.9), (-97.5, 21.0), (-94.5, 18.2), (-90.4, 21.0),
        (-86.7, 21.3), (-88.2, 17.8), (-92.2, 14.5), (-97.0, 15.7),
        (-105.6, 20.4), (-109.4, 23.2), (-114.7, 30.0),
    ]],
    "BR": [[
        (-73.9, -7.3), (-70.0, 4.0), (-60.0, 5.2), (-51.6, 4.2),
        (-35.0, -5.2), (-39.0, -13.5), (-48.5, -26.0), (-53.4, -33.7),
        (-57.6, -30.2), (-54.6, -25.6), (-58.2, -20.2), (-65.3, -10.0),
    ]],
    "GB": [[
        (-5.7, 50.0), (1.8, 51.0), (1.8, 53.0), (-1.6, 55.6), (-1.8, 57.6),
        (-3.0, 58.7), (-5.0, 58.6), (-6.3, 56.3), (-8.2, 55.2), (-8.2, 54.0),
        (-5.5, 54.0), (-5.3, 51.7),
    ]],
    "FR": [[
        (-4.8, 48.4), (1.6, 50.9), (8.2, 49.0), (7.5, 47.6), (6.8, 46.4),
        (7.7, 43.8), (3.2, 42.4), (-1.8, 43.4), (-1.2, 46.2),
    ]],
    "DE": [[
        (6.0, 51.0), (6.0, 53.6), (8.5, 55.0), (14.2, 54.0), (15.0, 51.1),
        (12.2, 50.3), (13.8, 48.6), (13.0, 47.5), (7.5, 47.6), (8.2, 49.0),
    ]],
    "ES": [[
        (-9.3, 43.0), (-1.8, 43.4), (3.2, 42.4), (0.2, 40.0), (-0.7, 38.0),
        (-2.2, 36.7), (-5.6, 36.0), (-7.4, 37.2), (-7.0, 39.6), (-6.6, 42.0),
        (-8.9, 42.0),
    ]],
    "IT": [[
        (6.6, 45.1), (7.0, 45.9), (10.5, 46.9), (13.7, 46.5), (12.3, 44.5),
        (14.0, 42.5), (16.0, 41.9), (18.5, 40.1), (15.6, 38.0), (12.5, 41.5),
        (10.5, 43.0), (8.7, 44.4), (7.5, 43.8),
    ]],
    "JP": [[
        (129.5, 33.0), (131.0, 31.0), (135.5, 33.5), (140.0, 35.0),
        (141.0, 38.0), (141.5, 41.5), (145.5, 43.3), (141.5, 45.5),
        (139.8, 42.0), (139.0, 38.0), (136.0, 36.0), (130.8, 34.5),
    ]],
    "KR": [[
        (126.1, 34.4), (129.5, 35.2), (129.4, 37.1), (128.4, 38.6),
        (126.7, 37.8), (126.1, 36.7),
    ]],
    "CN": [[
        (73.5, 39.5), (80.0, 45.0), (87.0, 49.0), (97.0, 42.8), (111.0, 43.0),
        (120.0, 46.5), (119.5, 50.0), (127.5, 50.0), (134.8, 48.3),
        (130.6, 42.4), (124.3, 39.9), (121.7, 31.0), (119.0, 25.0),
        (110.5, 20.3), (108.0, 21.5), (101.0, 21.6), (97.5, 28.0),
        (88.0, 27.9), (79.0, 30.4), (78.0, 35.5),
    ]],
    "IN": [[
        (68.2, 23.7), (71.0, 27.9), (74.5, 32.5), (74.0, 34.5), (77.8, 35.5),
        (79.0, 30.4), (80.3, 28.7), (88.0, 27.9), (88.1, 26.5), (92.0, 27.8),
        (97.4, 28.2), (94.0, 23.0), (92.6, 21.9), (87.0, 21.5), (80.3, 15.8),
        (80.3, 13.0), (77.5, 8.1), (72.6, 21.0), (70.0, 22.4),
    ]],
    "AU": [[
        (113.3, -22.0), (114.0, -26.0), (115.0, -34.4), (117.9, -35.1),
        (123.5, -33.9), (131.0, -31.5), (138.0, -35.6), (140.5, -38.0),
        (146.3, -39.1), (150.0, -37.5), (153.6, -28.2), (153.0, -25.0),
        (145.3, -14.9), (142.5, -10.7), (141.6, -12.9), (136.0, -12.0),
        (130.0, -11.3), (125.0, -14.5), (122.0, -17.0),
    ]],
    "RU": [[
        (27.0, 56.0), (28.0, 59.5), (30.0, 69.5), (60.0, 69.0), (100.0, 78.0),
        (180.0, 71.0), (180.0, 65.0), (163.0, 57.0), (156.0, 51.0),
        (142.0, 46.0), (134.8, 48.3), (127.5, 50.0), (119.5, 50.0),
        (108.0, 49.8), (98.0, 51.0), (87.0, 49.0), (80.0, 50.8),
        (61.0, 50.8), (47.5, 42.0), (37.0, 45.0), (40.0, 48.0), (31.8, 52.1),
    ]],
}

REGION_NAMES: dict[str, str] = {
    "GLOBAL": "Global",
    "US": "United States",
    "US-CA": "California, USA",
    "US-NY": "New York, USA",
    "US-TX": "Texas, USA",
    "US-FL": "Florida, USA",
    "GB": "United Kingdom",
    "GB-ENG": "England, UK",
    "FR": "France",
    "DE": "Germany",
    "JP": "Japan",
    "CN": "China",
    "IN": "India",
    "BR": "Brazil",
    "AU": "Australia",
    "CA": "Canada",
    "MX": "Mexico",
    "ES": "Spain",
    "IT": "Italy",
    "KR": "South Korea",
    "RU": "Russia",
}

TIMEZONE_REGIONS: dict[str, str] = {
    "America/New_York": "US",
    "America/Chicago": "US",
    "America/Denver": "US",
    "America/Phoenix": "US",
    "America/Los_Angeles": "US",
    "America/Anchorage": "US",
    "Pacific/Honolulu": "US",
    "America/Toronto": "CA",
    "America/Vancouver": "CA",
    "America/Edmonton": "CA",
    "America/Halifax": "CA",
    "America/Mexico_City": "MX",
    "America/Tijuana": "MX",
    "America/Sao_Paulo": "BR",
    "America/Manaus": "BR",
    "Europe/London": "GB",
    "Europe/Paris": "FR",
    "Europe/Berlin": "DE",
    "Europe/Madrid": "ES",
    "Europe/Rome": "IT",
    "Europe/Moscow": "RU",
    "Asia/Yekaterinburg": "RU",
    "Asia/Vladivostok": "RU",
    "Asia/Tokyo": "JP",
    "Asia/Seoul": "KR",
    "Asia/Shanghai": "CN",
    "Asia/Kolkata": "IN",
    "Asia/Calcutta": "IN",
    "Australia/Sydney": "AU",
    "Australia/Melbourne": "AU",
    "Australia/Brisbane": "AU",
    "Australia/Perth": "AU",
    "Australia/Adelaide": "AU",
}


def _area(poly: Polygon) -> float:
    total = 0.0
    for i, (x1, y1) in enumerate(poly):
        x2, y2 = poly[(i + 1) % len(poly)]
        total += x1 * y2 - x2 * y1
    return abs(total) / 2.0


def _ordered(table: dict[str, list[Polygon]]) -> list[tuple[str, Polygon]]:
    flat = [(code, poly) for code, polys in table.items() for poly in polys]
    return sorted(flat, key=lambda item: _area(item[1]))


_LOOKUP_ORDER: list[tuple[str, Polygon]] = _ordered(_SUBREGIONS) + _ordered(_COUNTRIES)


def point_in_polygon(lng: float, lat: float, poly: Polygon) -> bool:
    """Even-odd ray casting."""
    inside = False
    j = len(poly) - 1
    for i in range(len(poly)):
        xi, yi = poly[i]
        xj, yj = poly[j]
        if (yi > lat) != (yj > lat):
            x_cross = (xj - xi) * (lat - yi) / (yj - yi) + xi
            if lng < x_cross:
                inside = not inside
        j = i
    return inside


def region_for_coordinates(latitude: float, longitude: float) -> Optional[str]:
    for code, poly in _LOOKUP_ORDER:
        if point_in_polygon(longitude, latitude, poly):
            return code
    return None


def normalize_region_code(raw: Optional[str]) -> Optional[str]:
    if not isinstance(raw, str):
        return None
    code = raw.strip()
    if not REGION_CODE_RE.match(code):
        return None
    return code.upper()


def region_for_timezone(tz_name: Optional[str]) -> Optional[str]:
    if not tz_name:
        return None
    return TIMEZONE_REGIONS.get(tz_name.strip())


def region_for_locale(accept_language: Optional[str]) -> Optional[str]:
    """First language range carrying a country subtag, e.g. "en-GB" -> "GB"."""
    if not accept_language:
        return None
    for part in accept_language.split(","):
        tag = part.split(";")[0].strip().replace("_", "-")
        pieces = tag.split("-")
        if len(pieces) >= 2 and len(pieces[1]) == 2 and pieces[1].isalpha():
            return pieces[1].upper()
    return None


def region_display_name(bucket: str) -> str:
    if bucket in REGION_NAMES:
        return REGION_NAMES[bucket]
    country = bucket.split("-")[0]
    return REGION_NAMES.get(country, bucket)
