"""Tests for transfer message encoding and decoding."""

import json

import pytest

from dropmo.transfer.errors import ProtocolViolationError
from dropmo.transfer.messages import (
    Ready, ReadyAck, TransferMetadata, decode, encode, is_payload
)


class TestEncode:

    def test_control_records(self):
        assert encode(Ready()) == {'type': 'ready'}
        assert encode(ReadyAck()) == {'type': 'ready-ack'}

    def test_metadata_record(self):
        metadata = TransferMetadata('x.txt', 'text/plain', 10)
        assert encode(metadata) == {
            'type': 'metadata',
            'file_name': 'x.txt',
            'mime_type': 'text/plain',
            'total_size': 10,
        }

    def test_payload_is_sent_unwrapped(self):
        assert encode(b'\x00\x01') == b'\x00\x01'
        assert encode(bytearray(b'ab')) == b'ab'


class TestDecode:

    def test_decodes_records(self):
        assert decode({'type': 'ready'}) == Ready()
        assert decode({'type': 'ready-ack'}) == ReadyAck()
        assert decode({
            'type': 'metadata', 'file_name': 'a.bin',
            'mime_type': 'application/octet-stream', 'total_size': 0,
        }) == TransferMetadata('a.bin', 'application/octet-stream', 0)

    def test_raw_bytes_are_payload_even_if_they_look_like_a_record(self):
        raw = json.dumps({'type': 'ready'}).encode()

        assert is_payload(raw)
        assert decode(raw) == raw

    def test_memoryview_is_payload(self):
        assert decode(memoryview(b'abc')) == b'abc'

    def test_unknown_type(self):
        with pytest.raises(ProtocolViolationError):
            decode({'type': 'chunk'})

    def test_missing_type(self):
        with pytest.raises(ProtocolViolationError):
            decode({'file_name': 'x.txt'})

    def test_not_a_record(self):
        with pytest.raises(ProtocolViolationError):
            decode('ready')

    def test_violation_names_phase_once_known(self):
        error = ProtocolViolationError('Unexpected ready')
        assert str(error) == 'Unexpected ready'

        error.phase = 'awaiting_ready'
        assert str(error) == 'Unexpected ready (phase: awaiting_ready)'

    @pytest.mark.parametrize('total_size', [-1, '10', 1.5, True, None])
    def test_invalid_total_size(self, total_size):
        with pytest.raises(ProtocolViolationError):
            decode({'type': 'metadata', 'file_name': 'x', 'mime_type': 'text/plain',
                    'total_size': total_size})

    def test_metadata_missing_field(self):
        with pytest.raises(ProtocolViolationError):
            decode({'type': 'metadata', 'file_name': 'x'})

    def test_metadata_missing_mime_type_gets_default(self):
        metadata = decode({'type': 'metadata', 'file_name': 'x', 'total_size': 3})
        assert metadata.mime_type == 'application/octet-stream'
