"""Tests for sender and receiver transfer sessions."""

import asyncio

import pytest

from dropmo.transfer import (
    ChannelFailedError, ProtocolViolationError, ReadyTimeoutError,
    ReceiverSession, SenderSession, SizeMismatchError, TransferMetadata,
    TransferPhase
)
from dropmo.transfer.chunker import MAX_CHUNK_SIZE
from tests.fakes import RecordingChannel

READY = {'type': 'ready'}
READY_ACK = {'type': 'ready-ack'}


def metadata_record(total_size, file_name='x.txt', mime_type='text/plain'):
    return {'type': 'metadata', 'file_name': file_name,
            'mime_type': mime_type, 'total_size': total_size}


async def open_receiver(**kwargs):
    """Receiver on an open recording channel, past the handshake."""
    channel = RecordingChannel('alice')
    session = ReceiverSession(channel, **kwargs)
    await session.attach()
    await channel.open()
    await channel.deliver(READY_ACK)
    return channel, session


class TestTwoPartyTransfer:
    """End to end over an in-process channel pair."""

    @pytest.mark.asyncio
    async def test_ten_byte_transfer(self, network, ten_bytes, ten_byte_metadata):
        receivers = []
        completed = []

        async def accept(channel):
            session = ReceiverSession(
                channel,
                on_complete=lambda *args: completed.append(args),
            )
            receivers.append(session)
            await session.attach()

        network.listen('bob', accept)
        channel = await network.connect('alice', 'bob')
        sender = SenderSession(channel, ten_bytes, ten_byte_metadata)
        await sender.attach()
        await channel.open()

        sent = await asyncio.wait_for(sender.wait(), 5)
        received = await asyncio.wait_for(receivers[0].wait(), 5)

        assert sent.succeeded
        assert sent.bytes_transferred == 10
        assert received.phase == TransferPhase.COMPLETE
        assert received.bytes_transferred == 10
        assert received.payload == ten_bytes
        assert received.peer_id == 'alice'
        assert completed == [('x.txt', 'text/plain', ten_bytes)]

        await channel.close()

    @pytest.mark.asyncio
    async def test_multi_chunk_transfer_reports_progress(self, network):
        data = bytes(range(256)) * 40  # 10,240 bytes
        metadata = TransferMetadata('data.bin', 'application/octet-stream', len(data))
        receivers = []
        sender_progress = []
        receiver_progress = []

        async def accept(channel):
            session = ReceiverSession(channel, on_progress=receiver_progress.append)
            receivers.append(session)
            await session.attach()

        network.listen('bob', accept)
        channel = await network.connect('alice', 'bob')
        sender = SenderSession(channel, data, metadata, chunk_size=1024,
                               on_progress=sender_progress.append)
        await sender.attach()
        await channel.open()

        await asyncio.wait_for(sender.wait(), 5)
        received = await asyncio.wait_for(receivers[0].wait(), 5)

        assert received.payload == data
        # One report on metadata, then one per chunk
        assert len(receiver_progress) == 11
        assert len(sender_progress) == 11
        assert receiver_progress[-1].progress_percent == 100
        assert [p.bytes_transferred for p in receiver_progress] == \
            [i * 1024 for i in range(11)]

        await channel.close()

    @pytest.mark.asyncio
    async def test_file_source(self, network, sample_file):
        path, content = sample_file
        metadata = TransferMetadata(path.name, 'application/octet-stream', len(content))
        receivers = []

        async def accept(channel):
            session = ReceiverSession(channel)
            receivers.append(session)
            await session.attach()

        network.listen('bob', accept)
        channel = await network.connect('alice', 'bob')
        sender = SenderSession(channel, path, metadata)
        await sender.attach()
        await channel.open()

        assert (await asyncio.wait_for(sender.wait(), 5)).succeeded
        received = await asyncio.wait_for(receivers[0].wait(), 5)
        assert received.payload == content

        await channel.close()


class TestReceiverSession:
    """Receiver phase handling, driven message by message."""

    @pytest.mark.asyncio
    async def test_sends_ready_on_open(self):
        channel = RecordingChannel('alice')
        session = ReceiverSession(channel)
        await session.attach()

        assert session.phase == TransferPhase.IDLE
        await channel.open()

        assert channel.sent == [READY]
        assert session.phase == TransferPhase.AWAITING_READY

    @pytest.mark.asyncio
    async def test_ready_sent_once_when_attached_after_open(self):
        channel = RecordingChannel('alice')
        await channel.open()

        session = ReceiverSession(channel)
        await session.attach()
        # A late open event must not produce a second ready
        await channel._emit_open()

        assert channel.sent == [READY]

    @pytest.mark.asyncio
    async def test_data_before_open_still_sends_ready(self):
        channel = RecordingChannel('alice')
        channel._open = True
        session = ReceiverSession(channel)
        channel.on_data(session.handle)

        await channel.deliver(READY_ACK)

        assert channel.sent == [READY]
        assert session.phase == TransferPhase.STREAMING_METADATA

    @pytest.mark.asyncio
    async def test_redundant_ack_is_accepted(self):
        channel, session = await open_receiver()

        await channel.deliver(READY_ACK)
        assert session.phase == TransferPhase.STREAMING_METADATA

        await channel.deliver(metadata_record(3))
        await channel.deliver(b'abc')
        assert session.phase == TransferPhase.COMPLETE
        assert session.payload == b'abc'

    @pytest.mark.asyncio
    async def test_zero_size_completes_on_metadata(self):
        completed = []
        progress = []
        channel, session = await open_receiver(
            on_complete=lambda *args: completed.append(args),
            on_progress=progress.append,
        )

        await channel.deliver(metadata_record(0, file_name='empty.txt'))

        assert session.phase == TransferPhase.COMPLETE
        assert session.payload == b''
        assert completed == [('empty.txt', 'text/plain', b'')]
        assert progress[-1].progress == 1.0

    @pytest.mark.asyncio
    async def test_chunk_before_metadata_fails(self):
        errors = []
        channel, session = await open_receiver(on_error=errors.append)

        await channel.deliver(b'abc')

        assert session.phase == TransferPhase.FAILED
        assert session.failed_in == TransferPhase.STREAMING_METADATA
        assert isinstance(session.error, ProtocolViolationError)
        assert errors == [session.error]
        assert channel.is_closed

    @pytest.mark.asyncio
    async def test_metadata_before_ack_fails(self):
        channel = RecordingChannel('alice')
        session = ReceiverSession(channel)
        await session.attach()
        await channel.open()

        await channel.deliver(metadata_record(10))

        assert session.phase == TransferPhase.FAILED
        assert isinstance(session.error, ProtocolViolationError)
        assert session.error.phase == 'awaiting_ready'

    @pytest.mark.asyncio
    async def test_second_metadata_fails(self):
        channel, session = await open_receiver()
        await channel.deliver(metadata_record(10))

        await channel.deliver(metadata_record(10))

        assert session.phase == TransferPhase.FAILED
        assert session.failed_in == TransferPhase.STREAMING_CHUNKS

    @pytest.mark.asyncio
    async def test_ready_from_sender_fails(self):
        channel, session = await open_receiver()

        await channel.deliver(READY)

        assert session.phase == TransferPhase.FAILED
        assert isinstance(session.error, ProtocolViolationError)

    @pytest.mark.asyncio
    async def test_unknown_record_fails(self):
        channel, session = await open_receiver()

        await channel.deliver({'type': 'bogus'})

        assert session.phase == TransferPhase.FAILED
        assert isinstance(session.error, ProtocolViolationError)
        assert session.error.phase == 'streaming_metadata'
        assert str(session.error).endswith('(phase: streaming_metadata)')

    @pytest.mark.asyncio
    async def test_overrun_is_size_mismatch(self):
        channel, session = await open_receiver()
        await channel.deliver(metadata_record(5))

        await channel.deliver(b'abc')
        await channel.deliver(b'defg')

        assert session.phase == TransferPhase.FAILED
        assert isinstance(session.error, SizeMismatchError)
        # The overrunning chunk is never counted
        assert session.bytes_transferred == 3

    @pytest.mark.asyncio
    async def test_close_mid_stream_fails(self):
        channel, session = await open_receiver()
        await channel.deliver(metadata_record(10))
        await channel.deliver(b'0123')

        await channel.close()

        result = await session.wait()
        assert result.phase == TransferPhase.FAILED
        assert isinstance(result.error, ChannelFailedError)
        assert result.error.bytes_transferred == 4
        assert result.bytes_transferred == 4
        assert result.payload is None

    @pytest.mark.asyncio
    async def test_channel_error_fails(self):
        channel, session = await open_receiver()

        await channel.fail(OSError("reset by peer"))

        assert session.phase == TransferPhase.FAILED
        assert isinstance(session.error, ChannelFailedError)

    @pytest.mark.asyncio
    async def test_messages_after_completion_are_ignored(self):
        channel, session = await open_receiver()
        await channel.deliver(metadata_record(1))
        await channel.deliver(b'a')

        await channel.deliver(b'b')

        assert session.phase == TransferPhase.COMPLETE
        assert session.payload == b'a'

    @pytest.mark.asyncio
    async def test_close_after_completion_keeps_result(self):
        channel, session = await open_receiver()
        await channel.deliver(metadata_record(1))
        await channel.deliver(b'a')

        await channel.close()

        assert (await session.wait()).succeeded

    @pytest.mark.asyncio
    async def test_callback_errors_do_not_fail_session(self):
        def broken(*args):
            raise RuntimeError("display crashed")

        channel, session = await open_receiver(on_progress=broken, on_complete=broken)
        await channel.deliver(metadata_record(2))
        await channel.deliver(b'ab')

        assert session.phase == TransferPhase.COMPLETE


class TestSenderSession:
    """Sender phase handling, driven message by message."""

    @pytest.mark.asyncio
    async def test_waits_for_ready_before_sending(self, ten_bytes, ten_byte_metadata):
        channel = RecordingChannel('bob')
        session = SenderSession(channel, ten_bytes, ten_byte_metadata)
        await session.attach()

        await channel.open()

        assert session.phase == TransferPhase.AWAITING_ACK
        assert channel.sent == []

    @pytest.mark.asyncio
    async def test_streams_after_ready(self, ten_bytes, ten_byte_metadata):
        channel = RecordingChannel('bob')
        session = SenderSession(channel, ten_bytes, ten_byte_metadata, chunk_size=4)
        await session.attach()
        await channel.open()

        await channel.deliver(READY)
        result = await asyncio.wait_for(session.wait(), 5)

        assert result.succeeded
        assert channel.sent == [
            READY_ACK, metadata_record(10), b'0123', b'4567', b'89',
        ]

    @pytest.mark.asyncio
    async def test_duplicate_ready_streams_once(self, ten_bytes, ten_byte_metadata):
        channel = RecordingChannel('bob')
        session = SenderSession(channel, ten_bytes, ten_byte_metadata)
        await session.attach()
        await channel.open()

        await channel.deliver(READY)
        await channel.deliver(READY)
        await asyncio.wait_for(session.wait(), 5)

        assert channel.records.count(READY_ACK) == 1
        assert channel.records.count(metadata_record(10)) == 1
        assert channel.chunks == [ten_bytes]

    @pytest.mark.asyncio
    async def test_zero_size_sends_metadata_only(self):
        channel = RecordingChannel('bob')
        session = SenderSession(channel, b'', TransferMetadata('e.txt', 'text/plain', 0))
        await session.attach()
        await channel.open()

        await channel.deliver(READY)
        result = await asyncio.wait_for(session.wait(), 5)

        assert result.succeeded
        assert channel.chunks == []

    @pytest.mark.asyncio
    async def test_metadata_from_receiver_fails(self, ten_bytes, ten_byte_metadata):
        channel = RecordingChannel('bob')
        session = SenderSession(channel, ten_bytes, ten_byte_metadata)
        await session.attach()
        await channel.open()

        await channel.deliver(metadata_record(10))

        assert session.phase == TransferPhase.FAILED
        assert session.failed_in == TransferPhase.AWAITING_ACK
        assert isinstance(session.error, ProtocolViolationError)
        assert channel.is_closed

    @pytest.mark.asyncio
    async def test_payload_from_receiver_fails(self, ten_bytes, ten_byte_metadata):
        channel = RecordingChannel('bob')
        session = SenderSession(channel, ten_bytes, ten_byte_metadata)
        await session.attach()
        await channel.open()

        await channel.deliver(b'unexpected')

        assert session.phase == TransferPhase.FAILED
        assert isinstance(session.error, ProtocolViolationError)

    @pytest.mark.asyncio
    async def test_short_source_is_size_mismatch(self, ten_bytes):
        channel = RecordingChannel('bob')
        metadata = TransferMetadata('x.txt', 'text/plain', 20)
        session = SenderSession(channel, ten_bytes, metadata)
        await session.attach()
        await channel.open()

        await channel.deliver(READY)
        result = await asyncio.wait_for(session.wait(), 5)

        assert result.phase == TransferPhase.FAILED
        assert isinstance(result.error, SizeMismatchError)

    @pytest.mark.asyncio
    async def test_send_failure_fails_session(self, ten_bytes, ten_byte_metadata):
        channel = RecordingChannel('bob')
        session = SenderSession(channel, ten_bytes, ten_byte_metadata)
        await session.attach()
        await channel.open()
        channel.send_error = ConnectionError("broken pipe")

        await channel.deliver(READY)
        result = await asyncio.wait_for(session.wait(), 5)

        assert result.phase == TransferPhase.FAILED
        assert isinstance(result.error, ChannelFailedError)

    @pytest.mark.asyncio
    async def test_ready_timeout(self, ten_bytes, ten_byte_metadata):
        errors = []
        channel = RecordingChannel('bob')
        session = SenderSession(channel, ten_bytes, ten_byte_metadata,
                                ready_timeout=0.05, on_error=errors.append)
        await session.attach()
        await channel.open()

        result = await asyncio.wait_for(session.wait(), 5)

        assert result.phase == TransferPhase.FAILED
        assert isinstance(result.error, ReadyTimeoutError)
        assert errors == [result.error]
        assert channel.is_closed

    @pytest.mark.asyncio
    async def test_ready_in_time_cancels_timeout(self, ten_bytes, ten_byte_metadata):
        channel = RecordingChannel('bob')
        session = SenderSession(channel, ten_bytes, ten_byte_metadata, ready_timeout=0.05)
        await session.attach()
        await channel.open()

        await channel.deliver(READY)
        result = await asyncio.wait_for(session.wait(), 5)
        await asyncio.sleep(0.1)

        assert result.succeeded
        assert session.phase == TransferPhase.COMPLETE

    @pytest.mark.asyncio
    async def test_close_before_ready_fails(self, ten_bytes, ten_byte_metadata):
        channel = RecordingChannel('bob')
        session = SenderSession(channel, ten_bytes, ten_byte_metadata)
        await session.attach()
        await channel.open()

        await channel.close()

        result = await session.wait()
        assert isinstance(result.error, ChannelFailedError)
        assert result.bytes_transferred == 0

    @pytest.mark.parametrize('chunk_size', [0, MAX_CHUNK_SIZE + 1])
    def test_rejects_invalid_chunk_size(self, chunk_size, ten_bytes, ten_byte_metadata):
        with pytest.raises(ValueError):
            SenderSession(RecordingChannel('bob'), ten_bytes, ten_byte_metadata,
                          chunk_size=chunk_size)
