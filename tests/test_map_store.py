import pytest

from Mapies import map_store
from Mapies.errors import InvalidArgument, PermissionDenied, NotFound, FailedPrecondition


def marker_docs(db, uid, map_id):
    return {d.id: d.to_dict() for d in map_store.markers_ref(db, uid, map_id).stream()}


def public_marker_docs(db, map_id):
    return {d.id: d.to_dict() for d in map_store.public_map_ref(db, map_id).collection('markers').stream()}


# -------------------------
# Maps
# -------------------------
def test_create_map_with_defaults_and_public_mirror(db, seed_user):
    seed_user('u1', plan='starter')

    map_id = map_store.create_map(db, 'u1', {'name': ' Coffee shops ', 'settings': {'markerColor': '#ff0000'}})

    stored = db.data(f'users/u1/maps/{map_id}')
    assert stored['name'] == 'Coffee shops'
    assert stored['userId'] == 'u1'
    assert stored['stats']['markerCount'] == 0
    assert stored['sharing']['isShared'] is False
    assert stored['settings']['markerColor'] == '#ff0000'
    assert stored['settings']['markerShape'] == 'pin'
    assert db.data(f'publicMaps/{map_id}')['userId'] == 'u1'


def test_create_map_requires_name(db, seed_user):
    seed_user('u1')
    with pytest.raises(InvalidArgument):
        map_store.create_map(db, 'u1', {'name': '  '})


def test_create_map_enforces_max_maps(db, seed_user, seed_map):
    seed_user('u1', plan='freemium')
    seed_map('u1', 'existing')
    with pytest.raises(PermissionDenied) as excinfo:
        map_store.create_map(db, 'u1', {'name': 'Second'})
    assert excinfo.value.details == {'currentPlan': 'freemium', 'recommendedPlan': 'starter'}


def test_get_user_maps_newest_first(db, seed_user):
    seed_user('u1', plan='enterprise')
    first = map_store.create_map(db, 'u1', {'name': 'First'})
    second = map_store.create_map(db, 'u1', {'name': 'Second'})

    maps = map_store.get_user_maps(db, 'u1')

    assert [m['id'] for m in maps] == [second, first]


def test_update_map_mirrors_public_copy(db, seed_user, seed_map):
    seed_user('u1')
    seed_map('u1', 'm1')

    map_store.update_map(db, 'u1', 'm1', {'name': 'Renamed', 'userId': 'attacker'})

    assert db.data('users/u1/maps/m1')['name'] == 'Renamed'
    assert db.data('users/u1/maps/m1')['userId'] == 'u1'
    assert db.data('publicMaps/m1')['name'] == 'Renamed'


def test_update_missing_map(db):
    with pytest.raises(NotFound):
        map_store.update_map(db, 'u1', 'nope', {'name': 'x'})


def test_delete_map_removes_markers_and_mirror(db, seed_user, seed_map):
    seed_user('u1')
    seed_map('u1', 'm1')
    map_store.add_marker(db, 'u1', 'm1', {'name': 'A', 'lat': 1, 'lng': 2})

    map_store.delete_map(db, 'u1', 'm1')

    assert db.data('users/u1/maps/m1') is None
    assert db.data('publicMaps/m1') is None
    assert marker_docs(db, 'u1', 'm1') == {}
    assert public_marker_docs(db, 'm1') == {}


# -------------------------
# Markers
# -------------------------
def test_add_marker_mirrors_and_counts(db, seed_user, seed_map):
    seed_user('u1')
    seed_map('u1', 'm1')

    marker_id = map_store.add_marker(db, 'u1', 'm1', {'name': 'Bakery', 'address': '1 Main St', 'lat': '45.5', 'lng': '-73.6'})

    marker = marker_docs(db, 'u1', 'm1')[marker_id]
    assert (marker['lat'], marker['lng']) == (45.5, -73.6)
    assert marker['businessCategory']['id'] == 'other'
    assert public_marker_docs(db, 'm1')[marker_id]['name'] == 'Bakery'
    assert 'syncedAt' in public_marker_docs(db, 'm1')[marker_id]
    assert db.data('users/u1/maps/m1')['stats']['markerCount'] == 1


def test_add_marker_rejects_bad_coordinates(db, seed_user, seed_map):
    seed_user('u1')
    seed_map('u1', 'm1')
    with pytest.raises(InvalidArgument):
        map_store.add_marker(db, 'u1', 'm1', {'name': 'Pole', 'lat': 95, 'lng': 0})


def test_add_marker_enforces_limit(db, seed_user, seed_map):
    seed_user('u1', plan='starter', limits={'maxMarkersPerMap': 1})
    seed_map('u1', 'm1')
    map_store.add_marker(db, 'u1', 'm1', {'name': 'A', 'lat': 1, 'lng': 1})

    with pytest.raises(PermissionDenied):
        map_store.add_marker(db, 'u1', 'm1', {'name': 'B', 'lat': 2, 'lng': 2})


def test_add_marker_to_missing_map(db, seed_user):
    seed_user('u1')
    with pytest.raises(NotFound):
        map_store.add_marker(db, 'u1', 'ghost', {'name': 'A', 'lat': 1, 'lng': 1})


def test_update_and_delete_marker(db, seed_user, seed_map):
    seed_user('u1')
    seed_map('u1', 'm1')
    marker_id = map_store.add_marker(db, 'u1', 'm1', {'name': 'A', 'lat': 1, 'lng': 1})

    map_store.update_marker(db, 'u1', 'm1', marker_id, {'name': 'A2', 'visible': False, 'userId': 'x'})
    marker = marker_docs(db, 'u1', 'm1')[marker_id]
    assert marker['name'] == 'A2'
    assert marker['visible'] is False
    assert marker['userId'] == 'u1'
    assert public_marker_docs(db, 'm1')[marker_id]['name'] == 'A2'

    map_store.delete_marker(db, 'u1', 'm1', marker_id)
    assert marker_docs(db, 'u1', 'm1') == {}
    assert public_marker_docs(db, 'm1') == {}
    assert db.data('users/u1/maps/m1')['stats']['markerCount'] == 0


def test_delete_missing_marker(db, seed_user, seed_map):
    seed_user('u1')
    seed_map('u1', 'm1')
    with pytest.raises(NotFound):
        map_store.delete_marker(db, 'u1', 'm1', 'nope')


def test_copy_markers_to_public(db, seed_user, seed_map):
    seed_user('u1')
    seed_map('u1', 'm1')
    map_store.markers_ref(db, 'u1', 'm1').document('a').set({'name': 'A', 'lat': 1, 'lng': 1})
    map_store.markers_ref(db, 'u1', 'm1').document('b').set({'name': 'B', 'lat': 2, 'lng': 2})

    assert map_store.copy_markers_to_public(db, 'u1', 'm1') == 2
    assert set(public_marker_docs(db, 'm1')) == {'a', 'b'}


def test_map_stats_failure_is_swallowed(db):
    # map document missing: the update fails and is only logged
    map_store.update_map_stats(db, 'u1', 'ghost')


# -------------------------
# Sharing
# -------------------------
def test_share_map_with_user(db, seed_user, seed_map):
    seed_user('owner')
    seed_user('friend', email='friend@example.com')
    seed_map('owner', 'm1')

    map_store.share_map_with_user(db, 'm1', 'owner', 'Friend@Example.com', 'editor')

    sharing = db.data('users/owner/maps/m1')['sharing']
    assert sharing['isShared'] is True
    entry = sharing['sharedWith'][0]
    assert entry['email'] == 'friend@example.com'
    assert entry['role'] == 'editor'
    assert entry['userId'] == 'friend'
    assert entry['invitedBy'] == 'owner'
    assert db.data('users/owner/maps/m1')['sharedWithEmails'] == ['friend@example.com']


def test_share_twice_rejected(db, seed_user, seed_map):
    seed_map('owner', 'm1')
    map_store.share_map_with_user(db, 'm1', 'owner', 'a@example.com')
    with pytest.raises(FailedPrecondition):
        map_store.share_map_with_user(db, 'm1', 'owner', 'a@example.com')


def test_share_rejects_unknown_role(db, seed_map):
    seed_map('owner', 'm1')
    with pytest.raises(InvalidArgument):
        map_store.share_map_with_user(db, 'm1', 'owner', 'a@example.com', 'superuser')


def test_remove_and_role_on_unshared_map(db, seed_map):
    seed_map('owner', 'm1', sharing=None)
    with pytest.raises(FailedPrecondition):
        map_store.remove_user_from_map(db, 'm1', 'owner', 'a@example.com')
    with pytest.raises(FailedPrecondition):
        map_store.update_user_role(db, 'm1', 'owner', 'a@example.com', 'editor')


def test_update_role_and_remove(db, seed_map):
    seed_map('owner', 'm1')
    map_store.share_map_with_user(db, 'm1', 'owner', 'a@example.com', 'viewer')

    map_store.update_user_role(db, 'm1', 'owner', 'a@example.com', 'admin')
    assert db.data('users/owner/maps/m1')['sharing']['sharedWith'][0]['role'] == 'admin'

    map_store.remove_user_from_map(db, 'm1', 'owner', 'a@example.com')
    stored = db.data('users/owner/maps/m1')
    assert stored['sharing']['sharedWith'] == []
    assert stored['sharing']['isShared'] is False
    assert stored['sharedWithEmails'] == []


def test_update_role_for_stranger(db, seed_map):
    seed_map('owner', 'm1')
    map_store.share_map_with_user(db, 'm1', 'owner', 'a@example.com')
    with pytest.raises(NotFound):
        map_store.update_user_role(db, 'm1', 'owner', 'b@example.com', 'editor')


def test_leave_shared_map(db, seed_map):
    seed_map('owner', 'm1')
    map_store.share_map_with_user(db, 'm1', 'owner', 'a@example.com')

    with pytest.raises(PermissionDenied):
        map_store.leave_shared_map(db, 'm1', 'owner', 'owner', 'owner@example.com')

    map_store.leave_shared_map(db, 'm1', 'owner', 'user-a', 'a@example.com')
    assert db.data('users/owner/maps/m1')['sharing']['sharedWith'] == []


def test_get_shared_maps(db, seed_map):
    seed_map('owner', 'm1', name='Shared')
    seed_map('owner', 'm2', name='Private')
    map_store.share_map_with_user(db, 'm1', 'owner', 'a@example.com')

    shared = map_store.get_shared_maps(db, 'A@example.com')

    assert [(m['id'], m['ownerId'], m['name']) for m in shared] == [('m1', 'owner', 'Shared')]


# -------------------------
# Access
# -------------------------
@pytest.mark.parametrize('role,require_write,allowed', [
    ('viewer', False, True),
    ('viewer', True, False),
    ('editor', True, True),
    ('admin', True, True),
])
def test_check_map_access_roles(db, seed_map, role, require_write, allowed):
    seed_map('owner', 'm1')
    map_store.share_map_with_user(db, 'm1', 'owner', 'a@example.com', role)

    ok, map_data = map_store.check_map_access(db, 'owner', 'm1', 'user-a', 'a@example.com', require_write)

    assert ok is allowed
    assert map_data['name'] == 'Shops'


def test_check_map_access_owner_and_stranger(db, seed_map):
    seed_map('owner', 'm1')
    assert map_store.check_map_access(db, 'owner', 'm1', 'owner', require_write=True)[0]
    assert not map_store.check_map_access(db, 'owner', 'm1', 'stranger', 'x@example.com')[0]
    assert map_store.check_map_access(db, 'owner', 'ghost', 'owner') == (False, None)


def test_require_map_access_errors(db, seed_map):
    seed_map('owner', 'm1')
    with pytest.raises(NotFound):
        map_store.require_map_access(db, 'owner', 'ghost', 'owner')
    with pytest.raises(PermissionDenied):
        map_store.require_map_access(db, 'owner', 'm1', 'stranger')


# -------------------------
# Ownership transfer
# -------------------------
def test_transfer_map_ownership(db, seed_user, seed_map):
    seed_user('old', usage={'maps': 1, 'mapsCount': 1})
    seed_user('new', email='new@example.com', usage={'maps': 0, 'mapsCount': 0})
    seed_map('old', 'm1')
    map_store.add_marker(db, 'old', 'm1', {'name': 'A', 'lat': 1, 'lng': 1})
    map_store.share_map_with_user(db, 'm1', 'old', 'new@example.com', 'editor')
    map_store.share_map_with_user(db, 'm1', 'old', 'other@example.com', 'viewer')

    result = map_store.transfer_map_ownership(db, 'old', 'm1', 'NEW@example.com')

    assert result['success'] is True
    assert result['newOwnerId'] == 'new'
    assert db.data('users/old/maps/m1') is None
    assert marker_docs(db, 'old', 'm1') == {}
    moved = db.data('users/new/maps/m1')
    assert moved['userId'] == 'new'
    assert [u['email'] for u in moved['sharing']['sharedWith']] == ['other@example.com']
    assert [m['userId'] for m in marker_docs(db, 'new', 'm1').values()] == ['new']
    assert db.data('publicMaps/m1')['userId'] == 'new'
    assert all(m['userId'] == 'new' for m in public_marker_docs(db, 'm1').values())
    assert db.data('users/old')['usage'] == {'maps': 0, 'mapsCount': 0}
    assert db.data('users/new')['usage'] == {'maps': 1, 'mapsCount': 1}


def test_transfer_to_unknown_user(db, seed_user, seed_map):
    seed_user('old')
    seed_map('old', 'm1')
    with pytest.raises(NotFound):
        map_store.transfer_map_ownership(db, 'old', 'm1', 'nobody@example.com')


def test_transfer_to_self(db, seed_user, seed_map):
    seed_user('old', email='old@example.com')
    seed_map('old', 'm1')
    with pytest.raises(InvalidArgument):
        map_store.transfer_map_ownership(db, 'old', 'm1', 'old@example.com')


def test_transfer_usage_floor_at_zero(db, seed_user, seed_map):
    seed_user('old')
    seed_user('new', email='new@example.com')
    seed_map('old', 'm1')

    map_store.transfer_map_ownership(db, 'old', 'm1', 'new@example.com')

    assert db.data('users/old')['usage'] == {'maps': 0, 'mapsCount': 0}


def test_transfer_large_map_in_chunks(db, seed_user, seed_map):
    seed_user('old', plan='enterprise')
    seed_user('new', email='new@example.com')
    seed_map('old', 'm1')
    for i in range(300):
        marker = {'name': f'Shop {i}', 'lat': 45.0, 'lng': -73.0, 'userId': 'old'}
        map_store.markers_ref(db, 'old', 'm1').document(f'mk{i}').set(marker)
        map_store.public_map_ref(db, 'm1').collection('markers').document(f'mk{i}').set(marker)

    map_store.transfer_map_ownership(db, 'old', 'm1', 'new@example.com')

    assert max(db.commits) <= map_store.BATCH_LIMIT
    assert len(marker_docs(db, 'new', 'm1')) == 300
    assert marker_docs(db, 'old', 'm1') == {}
    assert all(m['userId'] == 'new' for m in public_marker_docs(db, 'm1').values())
    assert db.data('users/new/maps/m1')['userId'] == 'new'
