"""
Address -> coordinates lookup.

OpenStreetMap Nominatim is tried first; Mapbox is the fallback and is
queried with a few progressively looser rewrites of the address, which
rescues most Quebec addresses with malformed postal codes.
"""
import re
import time
import logging
from urllib.parse import quote

import requests

from Mapies.classes import GeocodingResult


logger = logging.getLogger(__name__)

NOMINATIM_BASE_URL = 'https://nominatim.openstreetmap.org/search'
MAPBOX_BASE_URL = 'https://api.mapbox.com/geocoding/v5/mapbox.places'
REQUEST_TIMEOUT = 10
VARIATION_DELAY = 0.3


def address_variations(address):
    street = address.split(',')[0]
    candidates = [
        address,
        re.sub(r',\s*QC\s+\w+\s+\w+', ', QC', address, count=1),
        re.sub(r',\s*QC.*', ', QC', address, count=1),
        street + ', Saint-Hubert, QC',
        street + ', QC',
    ]
    variations = []
    for candidate in candidates:
        if candidate not in variations:
            variations.append(candidate)
    return variations


class GeocodingService:
    def __init__(self, mapbox_token='', user_agent='Mapies/1.0 (https://mapies.app)', country='ca', http=None, sleep=time.sleep):
        self.mapbox_token = mapbox_token
        self.user_agent = user_agent
        self.country = country
        self.http = http or requests
        self.sleep = sleep

    @classmethod
    def from_config(cls, config, **kwargs):
        return cls(
            mapbox_token=config.get('MAPBOX_ACCESS_TOKEN', ''),
            user_agent=config.get('NOMINATIM_USER_AGENT', 'Mapies/1.0 (https://mapies.app)'),
            country=config.get('GEOCODING_COUNTRY', 'ca'),
            **kwargs
        )

    def geocode_address(self, address):
        try:
            logger.info("Starting geocoding for: %s", address)

            result = self.geocode_with_nominatim(address)
            if result.success:
                logger.info("Nominatim success for: %s", address)
                return result

            logger.info("Nominatim failed for: %s (%s), trying Mapbox fallback", address, result.error)
            result = self.geocode_with_mapbox(address)
            if result.success:
                logger.info("Mapbox success for: %s", address)
                return result

            logger.warning("Both geocoding services failed for: %s", address)
            return GeocodingResult.failure('Both geocoding services failed')
        except Exception as e:
            logger.exception("Geocoding error for %s", address)
            return GeocodingResult.failure(str(e) or 'Unknown error')

    def geocode_with_nominatim(self, address):
        try:
            response = self.http.get(
                NOMINATIM_BASE_URL,
                params={'format': 'json', 'q': address, 'countrycodes': self.country, 'limit': 1},
                headers={'User-Agent': self.user_agent},
                timeout=REQUEST_TIMEOUT,
            )
            if not response.ok:
                return GeocodingResult.failure(f'Nominatim HTTP error: {response.status_code}')

            data = response.json()
            if isinstance(data, list) and data:
                return GeocodingResult(float(data[0]['lat']), float(data[0]['lon']), True, provider='nominatim')
            return GeocodingResult.failure('No results found')
        except (requests.RequestException, ValueError, KeyError) as e:
            return GeocodingResult.failure(str(e) or 'Nominatim error')

    def geocode_with_mapbox(self, address):
        if not self.mapbox_token:
            return GeocodingResult.failure('Mapbox access token not configured')

        for variation in address_variations(address):
            try:
                response = self.http.get(
                    f"{MAPBOX_BASE_URL}/{quote(variation, safe='')}.json",
                    params={'access_token': self.mapbox_token, 'country': self.country.upper(), 'limit': 1},
                    timeout=REQUEST_TIMEOUT,
                )
                if not response.ok:
                    continue

                features = (response.json() or {}).get('features') or []
                if features:
                    lng, lat = features[0]['center'][:2]
                    return GeocodingResult(float(lat), float(lng), True, provider='mapbox')

                self.sleep(VARIATION_DELAY)
            except (requests.RequestException, ValueError, KeyError, TypeError) as e:
                logger.debug("Mapbox variation %r failed: %s", variation, e)
                continue

        return GeocodingResult.failure('No results found in any variation')
