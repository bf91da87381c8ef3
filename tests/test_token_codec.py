import base64
import json
from datetime import timedelta

import pytest

from checkin.modules.token_codec import (
    DecodeError,
    Geofence,
    SessionDescriptor,
    decode,
    encode,
)
from conftest import at


@pytest.fixture
def descriptor():
    return SessionDescriptor(
        class_id='CS101',
        class_name='Intro to Computing',
        issuer_id='T1',
        session_token='tok_abc123',
        issued_at=at(1000),
        expires_at=at(2800),
    )


def _json_token(payload):
    return json.dumps(payload)


class TestRoundTrip:

    def test_base64_round_trip(self, descriptor):
        result = decode(encode(descriptor))
        assert result.valid
        assert result.descriptor == descriptor

    def test_raw_json_round_trip(self, descriptor):
        token = encode(descriptor, wrap_base64=False)
        assert token.startswith('{')
        assert decode(token).descriptor == descriptor

    def test_round_trip_with_geofence(self, descriptor):
        fenced = SessionDescriptor(
            class_id=descriptor.class_id,
            session_token=descriptor.session_token,
            issued_at=descriptor.issued_at,
            expires_at=descriptor.expires_at,
            geofence=Geofence(14.5995, 120.9842, 50),
        )
        assert decode(encode(fenced)).descriptor == fenced

    def test_round_trip_keeps_microseconds(self, descriptor):
        precise = SessionDescriptor(
            class_id='CS101',
            session_token='tok',
            issued_at=at(1000) + timedelta(microseconds=123456),
            expires_at=at(2800) + timedelta(microseconds=654321),
        )
        assert decode(encode(precise)).descriptor == precise

    def test_encode_is_deterministic(self, descriptor):
        assert encode(descriptor) == encode(descriptor)

    def test_token_is_qr_safe_ascii(self, descriptor):
        encode(descriptor).encode('ascii')


class TestMalformed:

    @pytest.mark.parametrize('token', [
        '',
        '   ',
        'not a token',
        '{"classId": ',
        '[1, 2, 3]',
        '"just a string"',
        'bm90IGpzb24=',  # base64 of "not json"
        None,
        42,
        b'\xff\xfe',
    ])
    def test_garbage_is_malformed(self, token):
        result = decode(token)
        assert not result.valid
        assert result.error_type == DecodeError.MALFORMED
        assert result.descriptor is None

    def test_deeply_nested_json_does_not_raise(self):
        result = decode('[' * 100000 + ']' * 100000)
        assert result.error_type == DecodeError.MALFORMED

    def test_tampered_token_fails_checksum(self, descriptor):
        data = json.loads(encode(descriptor, wrap_base64=False))
        data['expiresAt'] = at(99999).isoformat()
        result = decode(json.dumps(data))
        assert result.error_type == DecodeError.MALFORMED
        assert result.error == 'Invalid checksum'

    def test_expiry_before_issue_is_malformed(self):
        result = decode(_json_token({
            'classId': 'CS101',
            'sessionToken': 'tok',
            'issuedAt': at(2000).isoformat(),
            'expiresAt': at(1000).isoformat(),
        }))
        assert result.error_type == DecodeError.MALFORMED

    def test_bad_timestamp_is_malformed(self):
        result = decode(_json_token({
            'classId': 'CS101',
            'sessionToken': 'tok',
            'expiresAt': 'tomorrow-ish',
        }))
        assert result.error_type == DecodeError.MALFORMED

    def test_invalid_geofence_is_malformed(self):
        result = decode(_json_token({
            'classId': 'CS101',
            'sessionToken': 'tok',
            'expiresAt': at(2800).isoformat(),
            'geofence': {'latitude': 200, 'longitude': 0, 'radius': 50},
        }))
        assert result.error_type == DecodeError.MALFORMED

    def test_non_string_identifier_is_malformed(self):
        result = decode(_json_token({
            'classId': {'nested': True},
            'sessionToken': 'tok',
            'expiresAt': at(2800).isoformat(),
        }))
        assert result.error_type == DecodeError.MALFORMED


class TestMissingField:

    @pytest.mark.parametrize('missing', ['classId', 'sessionToken', 'expiresAt'])
    def test_required_field_missing(self, missing):
        payload = {
            'classId': 'CS101',
            'sessionToken': 'tok',
            'expiresAt': at(2800).isoformat(),
        }
        del payload[missing]
        result = decode(_json_token(payload))
        assert not result.valid
        assert result.error_type == DecodeError.MISSING_FIELD
        assert result.field == missing

    def test_empty_required_field_counts_as_missing(self):
        result = decode(_json_token({
            'classId': '',
            'sessionToken': 'tok',
            'expiresAt': at(2800).isoformat(),
        }))
        assert result.error_type == DecodeError.MISSING_FIELD
        assert result.field == 'classId'

    def test_missing_field_in_base64_token(self):
        text = json.dumps({'classId': 'CS101', 'expiresAt': at(2800).isoformat()})
        result = decode(base64.b64encode(text.encode()).decode())
        assert result.error_type == DecodeError.MISSING_FIELD
        assert result.field == 'sessionToken'


class TestLegacyFormats:

    def test_smart_generator_format(self):
        legacy = {
            'classId': 'CS101',
            'teacherId': 'T1',
            'sessionId': 'CS101-1700000000000',
            'timestamp': '2025-09-08T09:00:00.000Z',
            'expiresAt': '2025-09-08T09:30:00.000Z',
            'location': {'latitude': 14.6, 'longitude': 121.0, 'radius': 50},
        }
        token = base64.b64encode(json.dumps(legacy).encode()).decode()

        result = decode(token)

        assert result.valid
        d = result.descriptor
        assert d.issuer_id == 'T1'
        assert d.session_token == 'CS101-1700000000000'
        assert d.expires_at - d.issued_at == timedelta(minutes=30)
        assert d.geofence == Geofence(14.6, 121.0, 50)

    def test_class_qr_format_with_millisecond_timestamps(self):
        legacy = {
            'classId': '1',
            'className': 'Mathematics 101',
            'classCode': 'MATH101',
            'location': 'Room 204',
            'timestamp': 1_000_000,
            'expiresAt': 1_300_000,
            'token': 'k3j4h5g6f7',
        }

        result = decode(json.dumps(legacy))

        assert result.valid
        d = result.descriptor
        assert d.session_token == 'k3j4h5g6f7'
        assert d.issued_at == at(1000)
        assert d.expires_at == at(1300)
        assert d.geofence is None

    def test_result_to_dict(self, descriptor):
        assert decode(encode(descriptor)).to_dict()['descriptor']['classId'] == 'CS101'
        failure = decode('{}').to_dict()
        assert failure['valid'] is False
        assert failure['error_type'] == DecodeError.MISSING_FIELD
        assert failure['field'] == 'classId'
