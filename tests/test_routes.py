import pytest

from app import create_app
from checkin.modules.attendance_store import MemoryAttendanceStore, PersistenceError


class UnavailableStore(MemoryAttendanceStore):

    def exists(self, user_id, session_token):
        raise PersistenceError("disk I/O error")


def open_session(client, **overrides):
    body = {'class_id': 'CS101', 'issuer_id': 'T1', 'class_name': 'Intro', 'window_minutes': 30}
    body.update(overrides)
    response = client.post('/api/sessions', json=body)
    assert response.status_code == 201
    return response.get_json()


def mark(client, token, user_id='S1', **extra):
    return client.post('/api/attendance', json=dict(token=token, user_id=user_id, **extra))


def test_health(client):
    assert client.get('/health').get_json() == {'status': 'ok'}


class TestSessions:

    def test_create(self, client):
        data = open_session(client)

        assert data['success']
        assert data['session']['classId'] == 'CS101'
        assert data['session']['expiresAt'] == '1970-01-01T00:46:40+00:00'
        assert data['image_base64']
        assert data['countdown'] == {'seconds': 1800, 'display': '30:00', 'status': 'active'}

    @pytest.mark.parametrize('body', [
        {'issuer_id': 'T1'},
        {'class_id': 'CS101'},
        {'class_id': 'CS101', 'issuer_id': 'T1', 'window_minutes': 0},
        {'class_id': 'CS101', 'issuer_id': 'T1', 'window_minutes': 1e300},
        {'class_id': 'CS101', 'issuer_id': 'T1', 'window_minutes': float('inf')},
        {'class_id': 'CS101', 'issuer_id': 'T1', 'window_minutes': 24 * 60 + 1},
        {'class_id': 'CS101', 'issuer_id': 'T1', 'geofence': {'latitude': 95, 'longitude': 0}},
    ])
    def test_create_invalid(self, client, body):
        response = client.post('/api/sessions', json=body)
        assert response.status_code == 400
        assert response.get_json()['error_type'] == 'invalid_request'

    def test_geofence_default_radius(self, client):
        data = open_session(client, geofence={'latitude': 14.5995, 'longitude': 120.9842})
        assert data['session']['geofence'] == {'latitude': 14.5995, 'longitude': 120.9842, 'radius': 50}

    def test_remaining(self, client, clock):
        token = open_session(client, window_minutes=2)['session']['sessionToken']
        clock.advance(seconds=75)

        data = client.get(f'/api/sessions/{token}/remaining').get_json()

        assert data == {
            'seconds': 45,
            'display': '0:45',
            'status': 'about_to_expire',
            'state': 'active',
            'can_regenerate': True
        }

    def test_remaining_unknown(self, client):
        assert client.get('/api/sessions/nope/remaining').status_code == 404

    def test_regenerate(self, client, clock):
        first = open_session(client, window_minutes=10)
        clock.advance(minutes=9)

        response = client.post('/api/sessions/regenerate',
                               json={'session_token': first['session']['sessionToken']})

        assert response.status_code == 201
        second = response.get_json()
        assert second['session']['sessionToken'] != first['session']['sessionToken']
        assert second['countdown']['seconds'] == 600

    def test_class_session(self, client, clock):
        assert client.get('/api/classes/CS101/session').status_code == 404

        opened = open_session(client, window_minutes=5)
        response = client.get('/api/classes/CS101/session')

        assert response.status_code == 200
        data = response.get_json()
        assert data['session']['sessionToken'] == opened['session']['sessionToken']
        assert data['token'] == opened['token']

        clock.advance(minutes=5)
        assert client.get('/api/classes/CS101/session').status_code == 404

    def test_regenerate_errors(self, client):
        assert client.post('/api/sessions/regenerate', json={}).status_code == 400
        assert client.post('/api/sessions/regenerate', json={'session_token': 'nope'}).status_code == 404


class TestAttendance:

    def test_mark_then_duplicate(self, client):
        token = open_session(client)['token']

        first = mark(client, token)
        assert first.status_code == 201
        assert first.get_json()['record']['outcome'] == 'present'

        again = mark(client, token)
        assert again.status_code == 409
        assert again.get_json()['error_type'] == 'duplicate'

    def test_expired(self, client, clock):
        token = open_session(client)['token']
        clock.advance(minutes=31)

        response = mark(client, token)

        assert response.status_code == 410
        assert response.get_json()['error_type'] == 'expired'

    def test_malformed(self, client):
        response = mark(client, 'definitely-not-a-session')
        assert response.status_code == 422
        assert response.get_json()['error_type'] == 'malformed_token'

    def test_geofence(self, client):
        token = open_session(client, geofence={'latitude': 14.5995, 'longitude': 120.9842, 'radius': 100})['token']

        far = mark(client, token, location={'latitude': 14.7, 'longitude': 121.0})
        assert far.status_code == 403
        assert far.get_json()['error_type'] == 'out_of_range'
        assert mark(client, token).status_code == 403

        near = mark(client, token, location={'latitude': 14.5996, 'longitude': 120.9843})
        assert near.status_code == 201

    def test_bad_requests(self, client):
        token = open_session(client)['token']
        assert mark(client, token, user_id='').status_code == 400
        assert mark(client, token, location={'latitude': 'north'}).status_code == 400
        assert mark(client, token, location='here').status_code == 400
        assert mark(client, token, location={'latitude': 'inf', 'longitude': 0}).status_code == 400
        assert mark(client, token, location={'latitude': 0, 'longitude': 200}).status_code == 400

    @pytest.mark.parametrize('location', [
        {'latitude': 'nan', 'longitude': 'nan'},
        {'latitude': float('nan'), 'longitude': 120.9842},
        {'latitude': 14.5995, 'longitude': float('-inf')},
    ])
    def test_non_finite_location_leaves_no_record(self, client, location):
        token = open_session(client, geofence={'latitude': 14.5995, 'longitude': 120.9842, 'radius': 100})['token']

        response = mark(client, token, location=location)

        assert response.status_code == 400
        assert response.get_json()['error_type'] == 'invalid_request'
        assert client.get('/api/attendance/S1').get_json()['records'] == []

    def test_user_history(self, client, clock):
        mark(client, open_session(client)['token'])
        clock.advance(minutes=20)
        late_token = open_session(client, class_id='MATH200')['token']
        clock.advance(minutes=16)
        mark(client, late_token)

        data = client.get('/api/attendance/S1').get_json()

        assert [r['class_id'] for r in data['records']] == ['MATH200', 'CS101']
        assert data['stats']['present_count'] == 1
        assert data['stats']['late_count'] == 1
        assert data['stats']['rate'] == 100

    def test_store_unavailable(self, clock):
        client = create_app('testing', store=UnavailableStore(), clock=clock).test_client()
        token = open_session(client)['token']

        response = mark(client, token)

        assert response.status_code == 503
        assert response.get_json()['error_type'] == 'persistence_error'
