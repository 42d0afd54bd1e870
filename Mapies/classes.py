DEFAULT_CATEGORY = {
    'id': 'other',
    'name': 'Other',
    'icon': '📍',
    'color': '#3B82F6',
    'confidence': 0.5,
    'matchedTerm': '',
}


class Marker:
    def __init__(self, name, address='', lat=None, lng=None, marker_type='other', visible=True, business_category=None, id=None):
        self.id = id
        self.name = name
        self.address = address or ''
        self.lat = lat
        self.lng = lng
        self.type = marker_type
        self.visible = visible
        self.business_category = dict(business_category or DEFAULT_CATEGORY)

    def __repr__(self):
        return f"Marker({self.id}, {self.name}, {self.address}, {self.lat}, {self.lng}, {self.type})"

    @classmethod
    def from_dict(cls, data, id=None):
        return cls(
            data.get('name', ''),
            data.get('address', ''),
            data.get('lat'),
            data.get('lng'),
            data.get('type', 'other'),
            data.get('visible', True),
            data.get('businessCategory'),
            id=id if id is not None else data.get('id'),
        )

    def to_dict(self):
        return {
            'name': self.name,
            'address': self.address,
            'lat': self.lat,
            'lng': self.lng,
            'type': self.type,
            'visible': self.visible,
            'businessCategory': self.business_category,
        }

    def add_geo_data(self, lat, lng):
        self.lat = lat
        self.lng = lng

    def has_coords(self):
        return self.lat is not None and self.lng is not None


class MarkerSet:
    def __init__(self):
        self.markers = {}  # key: marker id (or name when unsaved)

    def add_marker(self, marker):
        key = marker.id if marker.id is not None else marker.name
        self.markers[key] = marker

    def get_marker(self, key):
        return self.markers.get(key)

    def visible(self):
        return [m for m in self.markers.values() if m.visible and m.has_coords()]

    def get_all_coords(self):
        return [[float(m.lat), float(m.lng)] for m in self.visible()]

    def __len__(self):
        return len(self.markers)


class ColumnMapping:
    def __init__(self, name=None, address=None, lat=None, lng=None):
        self.name = name or None
        self.address = address or None
        self.lat = lat or None
        self.lng = lng or None

    @classmethod
    def from_dict(cls, data):
        data = data or {}
        return cls(data.get('name'), data.get('address'), data.get('lat'), data.get('lng'))

    def to_dict(self):
        return {'name': self.name, 'address': self.address, 'lat': self.lat, 'lng': self.lng}

    def has_coordinates(self):
        return bool(self.lat and self.lng)

    def is_valid(self):
        # name plus either an address column or both coordinate columns
        return bool(self.name) and (bool(self.address) or self.has_coordinates())


class AddressData:
    def __init__(self, name, address, lat=None, lng=None, row_index=0):
        self.name = name
        self.address = address
        self.lat = lat
        self.lng = lng
        self.row_index = row_index

    def __repr__(self):
        return f"AddressData({self.row_index}, {self.name}, {self.address}, {self.lat}, {self.lng})"

    def has_coords(self):
        return self.lat is not None and self.lng is not None


class GeocodingResult:
    def __init__(self, lat=0.0, lng=0.0, success=False, error=None, provider=None):
        self.lat = lat
        self.lng = lng
        self.success = success
        self.error = error
        self.provider = provider

    def __repr__(self):
        return f"GeocodingResult({self.success}, {self.lat}, {self.lng}, {self.provider}, {self.error})"

    @classmethod
    def failure(cls, error):
        return cls(0.0, 0.0, False, error)


class WebhookProcessingResult:
    def __init__(self, success, event_id, event_type, processing_time=0, user_id=None, subscription_id=None, error=None):
        self.success = success
        self.event_id = event_id
        self.event_type = event_type
        self.processing_time = processing_time
        self.user_id = user_id
        self.subscription_id = subscription_id
        self.error = error

    def to_dict(self):
        return {
            'eventId': self.event_id,
            'eventType': self.event_type,
            'userId': self.user_id,
            'subscriptionId': self.subscription_id,
            'success': self.success,
            'processingTime': self.processing_time,
            'error': self.error,
        }
