"""Unit tests for the Photon reverse geocoder provider."""

import pytest

from fleet_geocoder.lib.geocoder.errors import ProviderPermanentError
from fleet_geocoder.lib.geocoder.photon import PhotonGeocoder


def _feature(**properties: object) -> dict:
    return {
        "type": "FeatureCollection",
        "features": [
            {
                "type": "Feature",
                "geometry": {"type": "Point", "coordinates": [-46.6333, -23.5505]},
                "properties": properties,
            }
        ],
    }


class TestPhotonRequest:
    """Tests for Photon request building."""

    def test_reverse_params(self) -> None:
        request = PhotonGeocoder().build_request(-23.5505, -46.6333)
        assert request.url == "https://photon.komoot.io/reverse"
        assert request.params == {"lat": -23.5505, "lon": -46.6333, "limit": 1}

    def test_self_hosted_base_url(self) -> None:
        request = PhotonGeocoder(base_url="http://photon.internal:2322/").build_request(1.0, 2.0)
        assert request.url == "http://photon.internal:2322/reverse"


class TestPhotonResponseParsing:
    """Tests for Photon GeoJSON parsing."""

    def setup_method(self) -> None:
        self.geocoder = PhotonGeocoder()

    def test_successful_match(self) -> None:
        data = _feature(
            street="Avenida Paulista",
            housenumber="1578",
            district="Bela Vista",
            city="São Paulo",
            state="São Paulo",
            postcode="01310-200",
            country="Brasil",
            countrycode="BR",
        )
        result = self.geocoder.parse_response(data, -23.55, -46.63)
        assert result is not None
        assert result.latitude == -23.5505
        assert result.longitude == -46.6333
        assert result.address_parts.house_number == "1578"
        assert result.address_parts.country_code == "BR"
        assert result.display_name == "Avenida Paulista, 1578, Bela Vista, São Paulo, São Paulo, 01310-200, Brasil"
        assert result.formatted_address == "Avenida Paulista, 1578 - Bela Vista São Paulo-SÃO PAULO, 01310-200"

    def test_named_place_in_display_name(self) -> None:
        data = _feature(name="MASP", street="Avenida Paulista", city="São Paulo")
        result = self.geocoder.parse_response(data, -23.55, -46.63)
        assert result is not None
        assert result.display_name == "MASP, Avenida Paulista, São Paulo"

    def test_no_features(self) -> None:
        assert self.geocoder.parse_response({"features": []}, 1.0, 2.0) is None

    def test_bad_geometry_raises(self) -> None:
        data = {"features": [{"geometry": {"coordinates": []}, "properties": {}}]}
        with pytest.raises(ProviderPermanentError, match="photon"):
            self.geocoder.parse_response(data, 1.0, 2.0)

    def test_non_dict_body_raises(self) -> None:
        with pytest.raises(ProviderPermanentError):
            self.geocoder.parse_response(["unexpected"], 1.0, 2.0)
