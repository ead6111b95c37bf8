"""
Unit tests for geofence resolution.
"""

from unittest.mock import MagicMock, Mock

import pytest
from sqlalchemy.exc import OperationalError

from pingate.errors import ValidationError
from pingate.geo import (
    EARTH_RADIUS_M,
    POSTGIS_SPHERE_RADIUS_M,
    LocationResolver,
    find_nearest_location,
    haversine_m,
)
from pingate.models import Location

AUSTIN = (30.2672, -97.7431)

# ~150m and ~5km north of the Austin board
NEARBY = (AUSTIN[0] + 0.00135, AUSTIN[1])
FAR_AWAY = (AUSTIN[0] + 0.045, AUSTIN[1])


@pytest.fixture
def resolver():
    return LocationResolver(max_accuracy_m=150, max_distance_m=200)


class TestHaversine:
    def test_zero_distance(self):
        assert haversine_m(*AUSTIN, *AUSTIN) == 0

    def test_one_degree_latitude(self):
        assert haversine_m(0, 0, 1, 0) == pytest.approx(111_195, rel=1e-3)

    def test_nearby_point_is_about_150m(self):
        assert haversine_m(*AUSTIN, *NEARBY) == pytest.approx(150, abs=2)


class TestFindNearest:
    def _loc(self, id, lat, lng, radius_m=100):
        return Location(id=id, slug=id, name=id, lat=lat, lng=lng, radius_m=radius_m)

    def test_closest_wins(self):
        near = self._loc("b", *AUSTIN)
        farther = self._loc("a", *NEARBY)

        result = find_nearest_location(AUSTIN[0], AUSTIN[1], [farther, near], 200)

        assert result.id == "b"
        assert result.distance_m == 0

    def test_tie_goes_to_lowest_id(self):
        locations = [self._loc("zz", *AUSTIN), self._loc("aa", *AUSTIN)]

        assert find_nearest_location(AUSTIN[0], AUSTIN[1], locations, 200).id == "aa"

    def test_location_radius_extends_reach(self):
        wide = self._loc("wide", *AUSTIN, radius_m=6000)

        assert find_nearest_location(FAR_AWAY[0], FAR_AWAY[1], [wide], 200).id == "wide"

    def test_global_distance_applies_to_small_radius(self):
        small = self._loc("small", *AUSTIN, radius_m=50)

        assert find_nearest_location(NEARBY[0], NEARBY[1], [small], 200).id == "small"
        assert find_nearest_location(NEARBY[0], NEARBY[1], [small], 100) is None


class TestLocationResolver:
    def test_resolves_within_range(self, db, location, resolver):
        result = resolver.resolve(db, NEARBY[0], NEARBY[1], 20)

        assert result.id == location.id
        assert result.slug == "austin-congress"
        assert result.distance_m == pytest.approx(150, abs=2)

    def test_no_location_far_away(self, db, location, resolver):
        assert resolver.resolve(db, FAR_AWAY[0], FAR_AWAY[1], 20) is None

    def test_inactive_location_ignored(self, db, location, resolver):
        location.is_active = False
        db.commit()

        assert resolver.resolve(db, AUSTIN[0], AUSTIN[1], 20) is None

    @pytest.mark.parametrize(
        "lat,lng",
        [(91, 0), (-91, 0), (0, 181), (0, -181), ("30", "-97"), (None, 0), (float("nan"), 0)],
    )
    def test_invalid_coordinates(self, resolver, lat, lng):
        with pytest.raises(ValidationError, match="Invalid coordinates"):
            resolver.validate(lat, lng, 10)

    def test_accuracy_too_coarse(self, resolver):
        with pytest.raises(ValidationError, match="accuracy too low") as exc_info:
            resolver.validate(AUSTIN[0], AUSTIN[1], 151)

        assert exc_info.value.details == {"max_accuracy_m": 150}

    def test_accuracy_at_limit_accepted(self, resolver):
        resolver.validate(AUSTIN[0], AUSTIN[1], 150)

    @pytest.mark.parametrize("accuracy", [-1, None, "10"])
    def test_invalid_accuracy(self, resolver, accuracy):
        with pytest.raises(ValidationError, match="Invalid accuracy"):
            resolver.validate(AUSTIN[0], AUSTIN[1], accuracy)


class TestSpatialQuery:
    """Test the PostGIS path against a mocked PostgreSQL session."""

    @pytest.fixture
    def pg_session(self):
        session = MagicMock()
        session.get_bind.return_value.dialect.name = "postgresql"
        session.execute.return_value.first.return_value = Mock(id="loc-1", distance_m=150.0)
        session.get.return_value = Location(
            id="loc-1", slug="austin-congress", name="Congress Ave", lat=AUSTIN[0], lng=AUSTIN[1], radius_m=200
        )
        return session

    def test_uses_spatial_query_on_postgresql(self, pg_session, resolver):
        resolved = resolver.resolve(pg_session, *NEARBY, 20)

        assert resolved.id == "loc-1"
        assert resolved.distance_m == 150.0
        statement, params = pg_session.execute.call_args[0]
        assert "ST_DistanceSphere" in str(statement)
        assert params["max_distance_m"] == 200

    def test_spatial_distance_matches_haversine_radius(self, pg_session, resolver):
        resolver.resolve(pg_session, *NEARBY, 20)

        params = pg_session.execute.call_args[0][1]
        assert params["sphere_scale"] * POSTGIS_SPHERE_RADIUS_M == pytest.approx(EARTH_RADIUS_M)

    def test_falls_back_to_haversine_when_query_fails(self, pg_session, resolver):
        pg_session.execute.side_effect = OperationalError("SELECT", {}, Exception("no postgis"))
        pg_session.query.return_value.filter.return_value.all.return_value = [pg_session.get.return_value]

        resolved = resolver.resolve(pg_session, *NEARBY, 20)

        pg_session.rollback.assert_called_once()
        assert resolved.id == "loc-1"
        assert resolved.distance_m == pytest.approx(haversine_m(*NEARBY, *AUSTIN))
