"""
Tests for identity resolution, region bucketing and the stored region
preference.
"""
import pytest

from app.services import geo
from app.services.identity import (
    IdentityHints,
    IdentityResolver,
    RegionPreferenceStore,
    RegionSource,
    detect_device_type,
    is_valid_identity,
)


# ---------------------------------------------------------------------------
# Geography
# ---------------------------------------------------------------------------

class TestGeo:
    @pytest.mark.parametrize("lat,lng,expected", [
        (37.77, -122.42, "US-CA"),   # San Francisco
        (40.71, -74.0, "US-NY"),     # New York City
        (30.27, -97.74, "US-TX"),    # Austin
        (39.74, -104.99, "US"),      # Denver
        (51.51, -0.13, "GB-ENG"),    # London
        (55.95, -3.19, "GB"),        # Edinburgh
        (48.86, 2.35, "FR"),         # Paris
        (35.68, 139.69, "JP"),       # Tokyo
        (-33.87, 151.21, "AU"),      # Sydney
        (61.2, -149.9, "US"),        # Anchorage
    ])
    def test_region_for_coordinates(self, lat, lng, expected):
        assert geo.region_for_coordinates(lat, lng) == expected

    def test_open_ocean_has_no_region(self):
        assert geo.region_for_coordinates(-30.0, -30.0) is None

    @pytest.mark.parametrize("raw,expected", [
        ("us", "US"),
        ("us-ca", "US-CA"),
        (" GB-ENG ", "GB-ENG"),
        ("global", "GLOBAL"),
        ("USA", None),
        ("U", None),
        ("US_CA", None),
        ("", None),
        (None, None),
    ])
    def test_normalize_region_code(self, raw, expected):
        assert geo.normalize_region_code(raw) == expected

    def test_region_for_timezone(self):
        assert geo.region_for_timezone("America/Los_Angeles") == "US"
        assert geo.region_for_timezone("Europe/Berlin") == "DE"
        assert geo.region_for_timezone("Mars/Olympus_Mons") is None
        assert geo.region_for_timezone(None) is None

    def test_region_for_locale_uses_first_country_subtag(self):
        assert geo.region_for_locale("en-GB,en;q=0.9") == "GB"
        assert geo.region_for_locale("fr;q=0.8, de_DE;q=0.5") == "DE"
        assert geo.region_for_locale("en") is None

    def test_display_name_falls_back_to_country(self):
        assert geo.region_display_name("US-CA") == "California, USA"
        assert geo.region_display_name("US-WA") == "United States"
        assert geo.region_display_name("ZZ") == "ZZ"


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------

class TestIdentity:
    @pytest.mark.parametrize("value,ok", [
        ("device-abc123", True),
        ("A" * 128, True),
        ("short", False),
        ("A" * 129, False),
        ("has space 123", False),
        ("emoji-😀-device", False),
        (None, False),
    ])
    def test_is_valid_identity(self, value, ok):
        assert is_valid_identity(value) is ok

    @pytest.mark.parametrize("ua,expected", [
        ("Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) Mobile/15E148", "mobile"),
        ("Mozilla/5.0 (Linux; Android 14; Pixel 8) Mobile Safari/537.36", "mobile"),
        ("Mozilla/5.0 (iPad; CPU OS 17_0 like Mac OS X)", "tablet"),
        ("Mozilla/5.0 (Linux; Android 13; SM-X200) Safari/537.36", "tablet"),
        ("Mozilla/5.0 (Windows NT 10.0; Win64; x64) Chrome/120.0", "desktop"),
        (None, "unknown"),
    ])
    def test_detect_device_type(self, ua, expected):
        assert detect_device_type(ua) == expected


class TestResolver:
    def test_valid_device_id_is_kept(self):
        resolved = IdentityResolver().resolve(IdentityHints(device_id="device-abc123"))
        assert resolved.identity_id == "device-abc123"
        assert resolved.minted is False

    def test_invalid_device_id_gets_minted_identity(self):
        resolved = IdentityResolver().resolve(IdentityHints(device_id="bad id"))
        assert resolved.minted is True
        assert is_valid_identity(resolved.identity_id)

    def test_precedence_coordinates_over_declared(self):
        resolved = IdentityResolver().resolve(IdentityHints(
            device_id="device-abc123", latitude=37.77, longitude=-122.42, region_code="FR",
        ))
        assert resolved.region_bucket == "US-CA"
        assert resolved.region_source == RegionSource.coordinates
        assert resolved.confidence == 0.9

    def test_coordinates_outside_every_region_fall_through(self):
        resolved = IdentityResolver().resolve(IdentityHints(
            device_id="device-abc123", latitude=-30.0, longitude=-30.0, region_code="FR",
        ))
        assert resolved.region_bucket == "FR"
        assert resolved.region_source == RegionSource.declared

    def test_timezone_then_locale_then_global(self):
        resolver = IdentityResolver()
        tz = resolver.resolve(IdentityHints(
            device_id="device-abc123", timezone="Asia/Tokyo", accept_language="en-GB",
        ))
        assert (tz.region_bucket, tz.region_source) == ("JP", RegionSource.timezone)

        locale = resolver.resolve(IdentityHints(device_id="device-abc123", accept_language="en-GB"))
        assert (locale.region_bucket, locale.region_source) == ("GB", RegionSource.locale)

        fallback = resolver.resolve(IdentityHints(device_id="device-abc123"))
        assert fallback.region_bucket == "GLOBAL"
        assert fallback.region_source == RegionSource.fallback
        assert fallback.confidence == 0.0

    def test_stored_preference_beats_timezone(self, container):
        prefs = RegionPreferenceStore(container.session_factory, clock=container.clock)
        prefs.save("device-abc123", "US-NY")
        resolver = IdentityResolver(prefs)
        resolved = resolver.resolve(IdentityHints(device_id="device-abc123", timezone="Asia/Tokyo"))
        assert resolved.region_bucket == "US-NY"
        assert resolved.region_source == RegionSource.preference

    def test_minted_identity_skips_stored_preference(self):
        class ExplodingPrefs:
            def get(self, identity_id):
                raise AssertionError("should not be consulted")

        resolved = IdentityResolver(ExplodingPrefs()).resolve(IdentityHints(timezone="Europe/Paris"))
        assert resolved.region_bucket == "FR"

    def test_preference_read_failure_degrades_to_next_tier(self):
        class DownPrefs:
            def get(self, identity_id):
                raise ConnectionError("cache down")

        resolved = IdentityResolver(DownPrefs()).resolve(IdentityHints(
            device_id="device-abc123", timezone="Europe/Paris",
        ))
        assert resolved.region_bucket == "FR"
        assert resolved.region_source == RegionSource.timezone


class TestRegionPreferenceStore:
    def test_save_overwrites(self, container):
        prefs = RegionPreferenceStore(container.session_factory, clock=container.clock)
        prefs.save("device-abc123", "US-CA")
        prefs.save("device-abc123", "GB")
        assert prefs.get("device-abc123") == "GB"

    def test_expired_preference_is_ignored(self, container, clock):
        prefs = RegionPreferenceStore(container.session_factory, clock=clock, ttl_days=30)
        prefs.save("device-abc123", "US-CA")
        clock.advance(days=31)
        assert prefs.get("device-abc123") is None

    def test_unknown_identity(self, container):
        prefs = RegionPreferenceStore(container.session_factory, clock=container.clock)
        assert prefs.get("device-unknown1") is None
