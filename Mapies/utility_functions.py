import re
import datetime

from Mapies.classes import Marker, MarkerSet


def decode_upload(raw):
    if isinstance(raw, str):
        return raw
    try:
        return raw.decode('utf-8-sig')
    except UnicodeDecodeError:
        return raw.decode('latin-1')


def from_epoch(seconds):
    """Stripe sends epoch seconds; Firestore wants aware datetimes."""
    if seconds is None:
        return None
    return datetime.datetime.fromtimestamp(int(seconds), tz=datetime.timezone.utc)


def drop_none(data):
    return {k: v for k, v in data.items() if v is not None}


# -------------------------
# Coordinates
# -------------------------
_NUMERIC = re.compile(r'^-?\d*\.?\d+$')


def parse_coordinate(value):
    """
    Returns a float, or None when the cell is blank or not a plain number
    (an address typed into a coordinate column, for instance).
    """
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text or not _NUMERIC.match(text):
        return None
    return float(text)


def coordinates_in_range(lat, lng):
    return -90 <= lat <= 90 and -180 <= lng <= 180


def validate_coordinates(lat, lng):
    lat_value = parse_coordinate(lat)
    lng_value = parse_coordinate(lng)
    if lat_value is None or lng_value is None:
        return False, None, None, 'Coordinates must be numeric'
    if not -90 <= lat_value <= 90:
        return False, None, None, f'Latitude must be between -90 and 90, got {lat_value}'
    if not -180 <= lng_value <= 180:
        return False, None, None, f'Longitude must be between -180 and 180, got {lng_value}'
    return True, lat_value, lng_value, None


# -------------------------
# Duplicate detection
# -------------------------
def normalize_address(address):
    text = (address or '').lower().strip()
    text = re.sub(r'\s+', ' ', text)
    return re.sub(r'[^\w\s,.-]', '', text)


def check_for_duplicates(new_addresses, existing_addresses=()):
    """
    Splits new_addresses into (unique, duplicates). An entry is a duplicate
    when its normalised address matches an existing one or an earlier entry.
    Entries without an address are always unique.
    """
    seen = {normalize_address(a) for a in existing_addresses if a}
    unique = []
    duplicates = []
    for item in new_addresses:
        if not item.address:
            unique.append(item)
            continue
        key = normalize_address(item.address)
        if key in seen:
            duplicates.append(item)
        else:
            seen.add(key)
            unique.append(item)
    return unique, duplicates


# -------------------------
# Address formatting
# -------------------------
_ADMIN_PATTERNS = [
    re.compile(r'Agglomération de (.+)', re.I),
    re.compile(r'(.+) \(région administrative\)', re.I),
    re.compile(r'(.+) \(province\)', re.I),
    re.compile(r'(.+) \(state\)', re.I),
    re.compile(r'(.+) \(county\)', re.I),
    re.compile(r'(.+) \(municipality\)', re.I),
]
_DROP_PATTERNS = [
    re.compile(r'Canada$', re.I),
    re.compile(r'United States$', re.I),
    re.compile(r'USA$', re.I),
    re.compile(r'\s+[A-Z]\d[A-Z]\s*\d[A-Z]\d$', re.I),
    re.compile(r'\s+\d{5}(-\d{4})?$'),
]
_NORTH_AMERICA = re.compile(r'canada|united states|usa', re.I)


def shorten_address(address):
    if not address:
        return ''
    parts = [p.strip() for p in address.split(',')]
    if len(parts) <= 3:
        return address

    cleaned = []
    for part in parts:
        for pattern in _ADMIN_PATTERNS:
            part = pattern.sub(r'\1', part).strip()
        for pattern in _DROP_PATTERNS:
            part = pattern.sub('', part).strip()
        if part:
            cleaned.append(part)

    unique = []
    seen = set()
    for part in cleaned:
        if part.lower() not in seen:
            seen.add(part.lower())
            unique.append(part)

    if len(unique) > 4:
        result = unique[:3]
        last = unique[-1]
        if not _NORTH_AMERICA.search(last):
            result.append(last)
        return ', '.join(result)
    return ', '.join(unique)


def format_address_for_popup(address):
    shortened = shorten_address(address)
    parts = [p.strip() for p in shortened.split(',')]
    if len(parts) <= 2:
        return shortened
    street, city, province = parts[0], parts[1], parts[2]
    if re.search(r'montréal|montreal', city, re.I) and re.search(r'qc|québec|quebec', province, re.I):
        return f"{street}, {city}"
    return f"{street}, {city}, {province}"


def load_from_fb_format(rows):
    markers = MarkerSet()
    for row in rows:
        doc_id = row.get('_doc_id') or row.get('id')
        markers.add_marker(Marker.from_dict(row, id=doc_id))
    return markers
