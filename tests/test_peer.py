"""Tests for the peer node's inbound handling and storage."""

import asyncio

import pytest

from dropmo.peer import PeerConfig, PeerNode, generate_identifier
from dropmo.transfer import TransferMetadata, send_to_many


@pytest.fixture
def node(tmp_path):
    return PeerNode(PeerConfig(identifier='bob', download_dir=tmp_path))


class TestIdentity:

    def test_generated_identifier(self):
        identifier = generate_identifier()
        assert identifier.startswith('peer-')
        assert len(identifier) == len('peer-') + 8

    def test_node_generates_identifier_when_missing(self, tmp_path):
        node = PeerNode(PeerConfig(download_dir=tmp_path))
        assert node.identifier.startswith('peer-')

    def test_peers_exclude_self(self, node):
        node.signaling._peers = ['alice', 'bob', 'carol']
        assert node.get_peers() == ['alice', 'carol']


class TestStorage:

    @pytest.mark.asyncio
    async def test_store_numbers_collisions(self, node, tmp_path):
        metadata = TransferMetadata('x.txt', 'text/plain', 1)

        first = await node._store(metadata, b'1')
        second = await node._store(metadata, b'2')
        third = await node._store(metadata, b'3')

        assert first == tmp_path / 'x.txt'
        assert second == tmp_path / 'x (1).txt'
        assert third == tmp_path / 'x (2).txt'
        assert first.read_bytes() == b'1'

    @pytest.mark.asyncio
    async def test_concurrent_stores_never_overwrite(self, node, tmp_path):
        metadata = TransferMetadata('a.txt', 'text/plain', 1)

        paths = await asyncio.gather(*(node._store(metadata, bytes([i])) for i in range(5)))

        assert len(set(paths)) == 5
        assert sorted(p.read_bytes() for p in paths) == [bytes([i]) for i in range(5)]

    @pytest.mark.parametrize('name', ['../../etc/passwd', '/etc/passwd', '..\\..\\passwd'])
    def test_safe_name_stays_in_download_dir(self, node, tmp_path, name):
        assert node._safe_name(name) == 'passwd'
        assert node._numbered_path(node._safe_name(name), 0) == tmp_path / 'passwd'

    @pytest.mark.parametrize('name', ['', '.', '..'])
    def test_safe_name_fallback(self, node, name):
        assert node._safe_name(name) == 'download'

    @pytest.mark.asyncio
    async def test_store(self, node, tmp_path):
        metadata = TransferMetadata('hello.txt', 'text/plain', 5)

        path = await node._store(metadata, b'hello')

        assert path == tmp_path / 'hello.txt'
        assert path.read_bytes() == b'hello'


class TestInbound:

    @pytest.mark.asyncio
    async def test_received_file_is_saved(self, node, network, tmp_path):
        received = []
        done = asyncio.Event()

        def on_file(item):
            received.append(item)
            done.set()

        node.on_file_received(on_file)
        network.listen('bob', node._accept_channel)
        data = b'report contents'
        metadata = TransferMetadata('report.txt', 'text/plain', len(data))

        results = await send_to_many(network.connector('alice'), ['bob'], data, metadata)
        await asyncio.wait_for(done.wait(), 5)

        assert results['bob'].succeeded
        item = received[0]
        assert item.peer_id == 'alice'
        assert item.file_name == 'report.txt'
        assert item.mime_type == 'text/plain'
        assert item.size == len(data)
        assert item.path == tmp_path / 'report.txt'
        assert item.path.read_bytes() == data
        assert node.files_received == 1
        assert node.bytes_received == len(data)

    @pytest.mark.asyncio
    async def test_send_requires_running_peer(self, node, tmp_path):
        path = tmp_path / 'a.txt'
        path.write_text('a')

        with pytest.raises(RuntimeError):
            await node.send(path, ['alice'])
