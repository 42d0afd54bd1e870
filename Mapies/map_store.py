"""
Firestore access for maps, markers, their public mirror and sharing.

Layout:
    users/{uid}/maps/{mapId}
    users/{uid}/maps/{mapId}/markers/{markerId}
    publicMaps/{mapId}                      (copy of the map)
    publicMaps/{mapId}/markers/{markerId}   (copy of each marker)

The public mirror is best effort: a failed mirror write is logged and the
owner's copy stays authoritative.
"""
import logging
import datetime

from firebase_admin import firestore as fb_firestore

from Mapies.classes import Marker
from Mapies.errors import InvalidArgument, PermissionDenied, NotFound, FailedPrecondition
from Mapies.plans import get_user_limits, require_action
from Mapies.utility_functions import validate_coordinates


logger = logging.getLogger(__name__)

ROLES = ('viewer', 'editor', 'admin')
WRITE_ROLES = ('editor', 'admin')
BATCH_LIMIT = 450

DEFAULT_SETTINGS = {
    'style': 'light',
    'markerShape': 'pin',
    'markerColor': '#3B82F6',
    'markerSize': 'medium',
    'markerBorder': 'white',
    'markerBorderWidth': 2,
    'clusteringEnabled': True,
    'clusterRadius': 50,
    'searchBarBackgroundColor': '#ffffff',
    'searchBarTextColor': '#000000',
    'searchBarHoverColor': '#f3f4f6',
    'nameRules': [],
}

MARKER_FIELDS = ('name', 'address', 'lat', 'lng', 'type', 'visible', 'businessCategory')
MAP_FIELDS = ('name', 'description', 'settings')


def map_ref(db, uid, map_id):
    return db.collection("users").document(uid).collection("maps").document(map_id)


def markers_ref(db, uid, map_id):
    return map_ref(db, uid, map_id).collection("markers")


def public_map_ref(db, map_id):
    return db.collection("publicMaps").document(map_id)


def _now():
    return datetime.datetime.now(datetime.timezone.utc)


def _snapshot_dict(doc):
    data = doc.to_dict() or {}
    data['id'] = doc.id
    return data


def _load_map(db, uid, map_id):
    doc = map_ref(db, uid, map_id).get()
    if not doc.exists:
        raise NotFound("Map not found")
    return _snapshot_dict(doc)


def _user_doc(db, uid):
    doc = db.collection("users").document(uid).get()
    return doc.to_dict() if doc.exists else {}


def _commit_in_batches(db, writes):
    """
    writes are (method, ref, data) tuples, data None for deletes. Firestore
    caps a batch at 500 writes, so they go out BATCH_LIMIT at a time.
    """
    writes = list(writes)
    for start in range(0, len(writes), BATCH_LIMIT):
        batch = db.batch()
        for method, ref, data in writes[start:start + BATCH_LIMIT]:
            if data is None:
                getattr(batch, method)(ref)
            else:
                getattr(batch, method)(ref, data)
        batch.commit()


def _delete_in_batches(db, refs):
    _commit_in_batches(db, [("delete", ref, None) for ref in refs])


# -------------------------
# Maps
# -------------------------
def create_map(db, uid, data):
    name = (data.get('name') or '').strip()
    if not name:
        raise InvalidArgument("Map name is required")

    user = _user_doc(db, uid)
    owned = len(list(db.collection("users").document(uid).collection("maps").stream()))
    require_action(user, 'createMap', owned,
                   f"Map limit reached ({get_user_limits(user)['maxMaps']} maps on current plan)")

    settings = dict(DEFAULT_SETTINGS)
    settings.update(data.get('settings') or {})
    doc_ref = db.collection("users").document(uid).collection("maps").document()
    map_data = {
        "name": name,
        "description": data.get('description') or '',
        "userId": uid,
        "settings": settings,
        "sharing": {
            "isShared": False,
            "sharedWith": [],
            "permissions": {"canEdit": True, "canDelete": True, "canShare": True},
        },
        "sharedWithEmails": [],
        "createdAt": fb_firestore.SERVER_TIMESTAMP,
        "updatedAt": fb_firestore.SERVER_TIMESTAMP,
        "stats": {"markerCount": 0, "lastUpdated": fb_firestore.SERVER_TIMESTAMP},
    }
    doc_ref.set(map_data)

    try:
        public_map_ref(db, doc_ref.id).set({
            "id": doc_ref.id,
            "name": name,
            "description": map_data["description"],
            "settings": settings,
            "userId": uid,
            "createdAt": fb_firestore.SERVER_TIMESTAMP,
            "updatedAt": fb_firestore.SERVER_TIMESTAMP,
            "stats": {"markerCount": 0, "lastUpdated": fb_firestore.SERVER_TIMESTAMP},
        })
    except Exception:
        logger.warning("Failed to create public mirror for map %s", doc_ref.id, exc_info=True)

    logger.info("Created map %s for user %s", doc_ref.id, uid)
    return doc_ref.id


def get_user_maps(db, uid):
    coll = db.collection("users").document(uid).collection("maps")
    try:
        docs = list(coll.order_by("createdAt", direction=fb_firestore.Query.DESCENDING).stream())
    except Exception:
        docs = list(coll.stream())
    return [_snapshot_dict(d) for d in docs]


def get_map(db, uid, map_id):
    doc = map_ref(db, uid, map_id).get()
    if not doc.exists:
        return None
    return _snapshot_dict(doc)


def update_map(db, uid, map_id, updates):
    _load_map(db, uid, map_id)
    clean = {k: v for k, v in updates.items() if k in MAP_FIELDS}
    if not clean:
        raise InvalidArgument("No updatable map fields supplied")

    map_ref(db, uid, map_id).update(dict(clean, updatedAt=fb_firestore.SERVER_TIMESTAMP))
    try:
        public_map_ref(db, map_id).set(dict(clean, updatedAt=fb_firestore.SERVER_TIMESTAMP), merge=True)
    except Exception:
        logger.warning("Failed to mirror map update for %s", map_id, exc_info=True)


def delete_map(db, uid, map_id):
    """Deletes the map, its markers and the public mirror."""
    _load_map(db, uid, map_id)

    refs = [d.reference for d in markers_ref(db, uid, map_id).stream()]
    refs.append(map_ref(db, uid, map_id))
    refs.extend(d.reference for d in public_map_ref(db, map_id).collection("markers").stream())
    refs.append(public_map_ref(db, map_id))
    _delete_in_batches(db, refs)
    logger.info("Deleted map %s (%d documents)", map_id, len(refs))


# -------------------------
# Markers
# -------------------------
def get_map_markers(db, uid, map_id):
    coll = markers_ref(db, uid, map_id)
    try:
        docs = list(coll.order_by("createdAt", direction=fb_firestore.Query.DESCENDING).stream())
    except Exception:
        docs = list(coll.stream())
    return [_snapshot_dict(d) for d in docs]


def count_markers(db, uid, map_id):
    return len(list(markers_ref(db, uid, map_id).stream()))


def add_marker(db, uid, map_id, data, enforce_limit=True):
    """
    Adds a marker to users/{uid}/maps/{map_id}, mirrors it publicly and
    refreshes the map stats. Returns the new marker id.
    """
    if enforce_limit:
        _load_map(db, uid, map_id)
        user = _user_doc(db, uid)
        require_action(user, 'addMarker', count_markers(db, uid, map_id),
                       f"Marker limit reached ({get_user_limits(user)['maxMarkersPerMap']} per map)")

    marker = data if isinstance(data, Marker) else Marker.from_dict(data)
    if not marker.name:
        raise InvalidArgument("Marker name is required")
    ok, lat, lng, error = validate_coordinates(marker.lat, marker.lng)
    if not ok:
        raise InvalidArgument(error)
    marker.add_geo_data(lat, lng)

    payload = marker.to_dict()
    payload.update({
        "userId": uid,
        "mapId": map_id,
        "createdAt": fb_firestore.SERVER_TIMESTAMP,
        "updatedAt": fb_firestore.SERVER_TIMESTAMP,
    })
    _, doc_ref = markers_ref(db, uid, map_id).add(payload)

    try:
        sync_marker_to_public(db, map_id, doc_ref.id, payload)
    except Exception:
        logger.warning("Failed to sync marker %s to public collection", doc_ref.id, exc_info=True)

    update_map_stats(db, uid, map_id)
    return doc_ref.id


def update_marker(db, uid, map_id, marker_id, updates):
    ref = markers_ref(db, uid, map_id).document(marker_id)
    if not ref.get().exists:
        raise NotFound("Marker not found")

    clean = {k: v for k, v in updates.items() if k in MARKER_FIELDS}
    if not clean:
        raise InvalidArgument("No updatable marker fields supplied")
    if 'lat' in clean or 'lng' in clean:
        current = ref.get().to_dict() or {}
        ok, lat, lng, error = validate_coordinates(clean.get('lat', current.get('lat')), clean.get('lng', current.get('lng')))
        if not ok:
            raise InvalidArgument(error)
        clean['lat'], clean['lng'] = lat, lng

    clean['updatedAt'] = fb_firestore.SERVER_TIMESTAMP
    ref.update(clean)

    try:
        public_map_ref(db, map_id).collection("markers").document(marker_id).set(
            dict(clean, syncedAt=fb_firestore.SERVER_TIMESTAMP), merge=True)
    except Exception:
        logger.warning("Failed to sync marker update %s", marker_id, exc_info=True)

    update_map_stats(db, uid, map_id)


def delete_marker(db, uid, map_id, marker_id):
    ref = markers_ref(db, uid, map_id).document(marker_id)
    if not ref.get().exists:
        raise NotFound("Marker not found")
    ref.delete()

    try:
        remove_marker_from_public(db, map_id, marker_id)
    except Exception:
        logger.warning("Failed to remove marker %s from public collection", marker_id, exc_info=True)

    update_map_stats(db, uid, map_id)


def update_map_stats(db, uid, map_id):
    try:
        count = count_markers(db, uid, map_id)
        map_ref(db, uid, map_id).update({
            "stats.markerCount": count,
            "stats.lastUpdated": fb_firestore.SERVER_TIMESTAMP,
            "updatedAt": fb_firestore.SERVER_TIMESTAMP,
        })
    except Exception:
        logger.exception("Error updating map stats for %s", map_id)


def sync_marker_to_public(db, map_id, marker_id, data):
    public_map_ref(db, map_id).collection("markers").document(marker_id).set(
        dict(data, syncedAt=fb_firestore.SERVER_TIMESTAMP))


def remove_marker_from_public(db, map_id, marker_id):
    public_map_ref(db, map_id).collection("markers").document(marker_id).delete()


def copy_markers_to_public(db, uid, map_id):
    copied = 0
    for doc in markers_ref(db, uid, map_id).stream():
        sync_marker_to_public(db, map_id, doc.id, doc.to_dict() or {})
        copied += 1
    logger.info("Copied %d markers to public collection for map %s", copied, map_id)
    return copied


def get_public_map(db, map_id):
    doc = public_map_ref(db, map_id).get()
    if not doc.exists:
        return None, []
    markers = [_snapshot_dict(d) for d in public_map_ref(db, map_id).collection("markers").stream()]
    return _snapshot_dict(doc), markers


# -------------------------
# Sharing
# -------------------------
def _normalize_email(email):
    return (email or '').strip().lower()


def _sharing_of(map_data):
    return map_data.get('sharing') or {
        "isShared": False,
        "sharedWith": [],
        "permissions": {"canEdit": True, "canDelete": True, "canShare": True},
    }


def _write_sharing(db, owner_id, map_id, sharing):
    sharing['isShared'] = bool(sharing['sharedWith'])
    map_ref(db, owner_id, map_id).update({
        "sharing": sharing,
        "sharedWithEmails": [u['email'] for u in sharing['sharedWith']],
        "updatedAt": fb_firestore.SERVER_TIMESTAMP,
    })


def _find_user_id_by_email(db, email):
    docs = db.collection("users").where("email", "==", email).limit(1).get()
    return docs[0].id if docs else None


def share_map_with_user(db, map_id, owner_id, email, role='viewer'):
    email = _normalize_email(email)
    if not email:
        raise InvalidArgument("Email is required")
    if role not in ROLES:
        raise InvalidArgument(f"Unknown role: {role}")

    map_data = _load_map(db, owner_id, map_id)
    sharing = _sharing_of(map_data)
    if any(u.get('email') == email for u in sharing['sharedWith']):
        raise FailedPrecondition("User already has access to this map")

    entry = {"email": email, "role": role, "invitedAt": _now(), "invitedBy": owner_id}
    user_id = _find_user_id_by_email(db, email)
    if user_id:
        entry['userId'] = user_id

    sharing['sharedWith'] = list(sharing['sharedWith']) + [entry]
    _write_sharing(db, owner_id, map_id, sharing)
    logger.info("Map %s shared with %s as %s", map_id, email, role)


def remove_user_from_map(db, map_id, owner_id, email):
    email = _normalize_email(email)
    map_data = _load_map(db, owner_id, map_id)
    sharing = map_data.get('sharing')
    if not sharing:
        raise FailedPrecondition("Map is not shared")

    sharing['sharedWith'] = [u for u in sharing.get('sharedWith', []) if u.get('email') != email]
    _write_sharing(db, owner_id, map_id, sharing)
    logger.info("User %s removed from map %s", email, map_id)


def update_user_role(db, map_id, owner_id, email, new_role):
    email = _normalize_email(email)
    if new_role not in ROLES:
        raise InvalidArgument(f"Unknown role: {new_role}")

    map_data = _load_map(db, owner_id, map_id)
    sharing = map_data.get('sharing')
    if not sharing:
        raise FailedPrecondition("Map is not shared")
    if not any(u.get('email') == email for u in sharing.get('sharedWith', [])):
        raise NotFound("User does not have access to this map")

    sharing['sharedWith'] = [dict(u, role=new_role) if u.get('email') == email else u for u in sharing['sharedWith']]
    _write_sharing(db, owner_id, map_id, sharing)
    logger.info("User role updated: %s -> %s on map %s", email, new_role, map_id)


def leave_shared_map(db, map_id, owner_id, user_id, email):
    if user_id == owner_id:
        raise PermissionDenied("Map owner cannot leave their own map")
    remove_user_from_map(db, map_id, owner_id, email)


def get_shared_maps(db, email):
    """Maps in any user's namespace that list email in sharedWithEmails."""
    email = _normalize_email(email)
    maps = []
    query = db.collection_group("maps").where("sharedWithEmails", "array_contains", email)
    for d in query.stream():
        owner_ref = d.reference.parent.parent
        data = _snapshot_dict(d)
        data['ownerId'] = owner_ref.id if owner_ref else data.get('userId')
        maps.append(data)
    return maps


def role_for(map_data, user_id=None, email=None):
    if user_id and map_data.get('userId') == user_id:
        return 'owner'
    email = _normalize_email(email)
    for entry in (map_data.get('sharing') or {}).get('sharedWith', []):
        if (email and entry.get('email') == email) or (user_id and entry.get('userId') == user_id):
            return entry.get('role', 'viewer')
    return None


def check_map_access(db, owner_id, map_id, user_id, email=None, require_write=False):
    """
    Return (True, map_data) if user_id may access users/{owner_id}/maps/{map_id}.
    Reads need any role; writes need editor or admin (or ownership).
    """
    map_data = get_map(db, owner_id, map_id)
    if map_data is None:
        return False, None
    if user_id == owner_id:
        return True, map_data

    role = role_for(map_data, user_id, email)
    if role is None:
        return False, map_data
    if require_write and role not in WRITE_ROLES:
        return False, map_data
    return True, map_data


def require_map_access(db, owner_id, map_id, user_id, email=None, require_write=False):
    allowed, map_data = check_map_access(db, owner_id, map_id, user_id, email, require_write)
    if map_data is None:
        raise NotFound("Map not found")
    if not allowed:
        raise PermissionDenied("Access denied")
    return map_data


# -------------------------
# Ownership transfer
# -------------------------
def transfer_map_ownership(db, current_owner_id, map_id, new_owner_email):
    new_owner_email = _normalize_email(new_owner_email)
    if not map_id or not new_owner_email:
        raise InvalidArgument("Map ID and new owner email are required")

    new_owner_id = _find_user_id_by_email(db, new_owner_email)
    if not new_owner_id:
        raise NotFound(f"User with email {new_owner_email} not found")
    if new_owner_id == current_owner_id:
        raise InvalidArgument("Cannot transfer map to the same owner")

    map_data = _load_map(db, current_owner_id, map_id)
    map_data.pop('id', None)
    if map_data.get('userId') != current_owner_id:
        raise PermissionDenied("Only the map owner can transfer ownership")

    marker_docs = list(markers_ref(db, current_owner_id, map_id).stream())
    logger.info("Transferring map %s with %d markers to %s", map_id, len(marker_docs), new_owner_id)

    sharing = map_data.get('sharing')
    if sharing:
        sharing['sharedWith'] = [u for u in sharing.get('sharedWith', []) if _normalize_email(u.get('email')) != new_owner_email]
        sharing['isShared'] = bool(sharing['sharedWith'])
        map_data['sharedWithEmails'] = [u['email'] for u in sharing['sharedWith']]

    owner_fields = {"userId": new_owner_id, "updatedAt": fb_firestore.SERVER_TIMESTAMP}
    writes = [
        ("set", markers_ref(db, new_owner_id, map_id).document(d.id), dict(d.to_dict() or {}, **owner_fields))
        for d in marker_docs
    ]
    writes.extend(
        ("update", d.reference, owner_fields)
        for d in public_map_ref(db, map_id).collection("markers").stream()
    )
    _commit_in_batches(db, writes)

    # map document last: it only appears under the new owner once its markers exist
    batch = db.batch()
    batch.set(map_ref(db, new_owner_id, map_id), dict(map_data, **owner_fields))
    if public_map_ref(db, map_id).get().exists:
        batch.update(public_map_ref(db, map_id), owner_fields)
    batch.commit()

    _delete_in_batches(db, [d.reference for d in marker_docs] + [map_ref(db, current_owner_id, map_id)])

    try:
        _bump_map_usage(db, current_owner_id, -1)
        _bump_map_usage(db, new_owner_id, 1)
    except Exception:
        logger.warning("Failed to update usage statistics after transfer of %s", map_id, exc_info=True)

    logger.info("Map %s ownership transferred from %s to %s", map_id, current_owner_id, new_owner_id)
    return {"success": True, "message": f"Map ownership successfully transferred to {new_owner_email}", "newOwnerId": new_owner_id}


def _bump_map_usage(db, uid, delta):
    user_ref = db.collection("users").document(uid)
    usage = (user_ref.get().to_dict() or {}).get('usage') or {}
    user_ref.update({
        "usage.maps": max(0, (usage.get('maps') or 0) + delta),
        "usage.mapsCount": max(0, (usage.get('mapsCount') or 0) + delta),
    })
