import pytest
from fastapi.testclient import TestClient

from backend.auth import jwt_handler
from backend.database import get_db
from backend.main import app


@pytest.fixture
def client(db_session):
    def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def _bearer(user) -> dict:
    return {'Authorization': f'Bearer {jwt_handler.create_access_token(user.email, user.role)}'}


def test_root_reports_running(client) -> None:
    response = client.get('/')

    assert response.status_code == 200
    assert response.json() == {'status': 'PhysioMe API Running'}


def test_register_login_and_me(client) -> None:
    registered = client.post(
        '/api/auth/register',
        json={'email': 'walk-in@clinic.test', 'password': 'long-enough', 'name': 'Walk In'},
    )
    logged_in = client.post('/api/auth/login', json={'email': 'walk-in@clinic.test', 'password': 'long-enough'})
    token = logged_in.json()['data']['access_token']
    me = client.get('/api/auth/me', headers={'Authorization': f'Bearer {token}'})

    assert registered.status_code == 201
    assert registered.json()['success'] is True
    assert logged_in.status_code == 200
    assert me.json()['data']['email'] == 'walk-in@clinic.test'


@pytest.mark.parametrize(
    ('headers', 'message'),
    [({}, 'Not authenticated'), ({'Authorization': 'Bearer not-a-token'}, 'Invalid token')],
)
def test_unauthenticated_requests_use_error_envelope(client, headers: dict, message: str) -> None:
    response = client.get('/api/auth/me', headers=headers)

    assert response.status_code == 401
    assert response.json() == {'success': False, 'message': message}


def test_validation_errors_are_bad_requests(client) -> None:
    response = client.post(
        '/api/auth/register',
        json={'email': 'short@clinic.test', 'password': 'short', 'name': 'Short'},
    )

    assert response.status_code == 400
    assert response.json() == {'success': False, 'message': 'password: Password must be at least 8 characters.'}


def test_role_gate_is_forbidden(client, patient) -> None:
    response = client.get('/api/admin/therapists', headers=_bearer(patient))

    assert response.status_code == 403
    assert response.json()['success'] is False


def test_rejected_slot_batch_returns_errors(client, therapist, future_day) -> None:
    response = client.post(
        '/api/availability/slots',
        json={'date': future_day.isoformat(), 'time_slots': ['9am', 'noon']},
        headers=_bearer(therapist),
    )

    assert response.status_code == 400
    assert response.json() == {
        'success': False,
        'message': 'No valid slots to add',
        'errors': ['Invalid time format: 9am', 'Invalid time format: noon'],
    }
