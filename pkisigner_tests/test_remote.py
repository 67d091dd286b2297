import asyncio
import base64
import json
import os
import shutil
import tempfile
import threading
from contextlib import asynccontextmanager

import pytest
from cryptography.hazmat.primitives.asymmetric import padding

from pkisigner.config.remote import RemoteSignerConfig
from pkisigner.errors import (
    CommandTimeout,
    ConnectionRefused,
    ConnectTimeout,
    FramingError,
    RemoteAuthenticationFailed,
    RemoteOperationFailed,
)
from pkisigner.remote import softcards
from pkisigner.remote.client import (
    ConnectionState,
    RemoteConnection,
    RemoteSignerClient,
)
from pkisigner.remote.protocol import (
    RemoteCommand,
    RemoteSignRequest,
    RemoteSignResponse,
    ResponseFramer,
    wire_hash_algorithm,
)
from pkisigner.sign import RemoteSigner, async_sign_detached, verify_envelope
from pkisigner.sign.general import get_pyca_cryptography_hash_for_signing
from pkisigner_tests.samples import PAYLOAD, pki

DIGEST = bytes(range(32))

CLOSE = object()


def _ok(**kwargs) -> bytes:
    return json.dumps({'success': True, **kwargs}).encode('utf8') + b'\n'


def _fail(error: str) -> bytes:
    return json.dumps({'success': False, 'error': error}).encode('utf8') + b'\n'


class DummyDevice:
    """
    Minimal stand-in for the signing device. Requests are recorded, and
    answered by the ``responder`` callable. A ``None`` reply means the device
    stays silent, :data:`CLOSE` makes it hang up. Replies are sent after
    ``reply_delay`` seconds.
    """

    def __init__(self, responder, reply_delay=0):
        self.responder = responder
        self.reply_delay = reply_delay
        self.requests = []

    def commands(self):
        return [r['command'] for r in self.requests]

    async def handle(self, reader, writer):
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                request = json.loads(line)
                self.requests.append(request)
                reply = self.responder(request)
                if reply is CLOSE:
                    break
                if reply is None:
                    continue
                if self.reply_delay:
                    await asyncio.sleep(self.reply_delay)
                writer.write(reply)
                await writer.drain()
        finally:
            writer.close()


@asynccontextmanager
async def _tcp_device(responder, reply_delay=0, **config_kwargs):
    device = DummyDevice(responder, reply_delay=reply_delay)
    server = await asyncio.start_server(device.handle, '127.0.0.1', 0)
    port = server.sockets[0].getsockname()[1]
    config = RemoteSignerConfig(host='127.0.0.1', port=port, **config_kwargs)
    try:
        yield device, RemoteSignerClient(config)
    finally:
        server.close()
        await server.wait_closed()


@pytest.fixture
def socket_dir():
    # unix socket paths are limited in length, so avoid pytest's tmp_path
    path = tempfile.mkdtemp(prefix='rs')
    yield path
    shutil.rmtree(path, ignore_errors=True)


@asynccontextmanager
async def _unix_device(socket_dir, responder, **config_kwargs):
    device = DummyDevice(responder)
    socket_path = os.path.join(socket_dir, 'nserver')
    server = await asyncio.start_unix_server(device.handle, socket_path)
    config = RemoteSignerConfig(socket_path=socket_path, **config_kwargs)
    try:
        yield device, RemoteSignerClient(config)
    finally:
        server.close()
        await server.wait_closed()


# protocol


def test_request_encoding():
    request = RemoteSignRequest(
        RemoteCommand.SIGN_DATA,
        key_id='key1',
        card_name='card1',
        data_hash=DIGEST,
        hash_algorithm='sha256',
    )
    encoded = request.encode()
    assert encoded.endswith(b'\n')
    assert encoded.count(b'\n') == 1
    assert json.loads(encoded) == {
        'command': 'SIGN_DATA',
        'keyId': 'key1',
        'cardName': 'card1',
        'dataHash': base64.b64encode(DIGEST).decode('ascii'),
        'hashAlgorithm': 'SHA-256',
    }


def test_request_omits_unset_fields():
    encoded = RemoteSignRequest(RemoteCommand.PING).encode()
    assert json.loads(encoded) == {'command': 'PING'}


@pytest.mark.parametrize(
    'md,expected',
    [('sha256', 'SHA-256'), ('SHA384', 'SHA-384'), ('sha512', 'SHA-512')],
)
def test_wire_hash_algorithm(md, expected):
    assert wire_hash_algorithm(md) == expected


def test_response_decoding():
    sig = b'\x01\x02\x03'
    response = RemoteSignResponse.from_json_dict(
        {
            'success': True,
            'signature': base64.b64encode(sig).decode('ascii'),
            'certificates': [{'keyId': 'a'}],
            'data': 'whatever',
        }
    )
    assert response.success
    assert response.signature == sig
    assert response.certificates == [{'keyId': 'a'}]
    assert response.data == 'whatever'
    response.raise_for_status()


@pytest.mark.parametrize(
    'json_dict',
    [
        {},
        {'success': 'yes'},
        {'success': True, 'signature': 'not base64!'},
        {'success': True, 'certificates': 'abc'},
    ],
)
def test_response_decoding_errors(json_dict):
    with pytest.raises(RemoteOperationFailed):
        RemoteSignResponse.from_json_dict(json_dict)


def test_raise_for_status():
    with pytest.raises(RemoteOperationFailed, match='boom'):
        RemoteSignResponse(success=False, error='boom').raise_for_status()
    failure = RemoteSignResponse.failure(CommandTimeout('too slow'))
    assert failure.error == 'too slow'
    with pytest.raises(CommandTimeout):
        failure.raise_for_status()


def test_framer_document_mode():
    framer = ResponseFramer(newline_delimited=False, max_size=1024)
    assert framer.feed(b'{"succ') is None
    assert framer.feed(b'ess": tr') is None
    response = framer.feed(b'ue, "data": 1}{"success": false}')
    assert response.success and response.data == 1
    leftover = framer.next_response()
    assert leftover is not None and not leftover.success
    assert framer.next_response() is None
    assert framer.buffered == 0


def test_framer_document_mode_split_multibyte():
    framer = ResponseFramer(newline_delimited=False, max_size=1024)
    encoded = json.dumps({'success': True, 'data': 'é'}, ensure_ascii=False)
    encoded = encoded.encode('utf8')
    ix = encoded.index('é'.encode('utf8')) + 1
    assert framer.feed(encoded[:ix]) is None
    assert framer.feed(encoded[ix:]).data == 'é'


def test_framer_document_mode_split_number():
    framer = ResponseFramer(newline_delimited=False, max_size=1024)
    assert framer.feed(b'12') is None
    assert framer.feed(b'34') is None
    assert framer.feed(b'.') is None
    response = framer.feed(b'5 {"success": false}')
    assert response.success and response.data == 1234.5
    assert not framer.next_response().success

    # other scalars are self-delimiting
    assert framer.feed(b'"done"').data == 'done'
    assert framer.feed(b'true').data is True


def test_framer_line_mode():
    framer = ResponseFramer(newline_delimited=True, max_size=1024)
    assert framer.feed(b'{"success": true}') is None
    response = framer.feed(b'\nSTATUS OK\n')
    assert response.success
    leftover = framer.next_response()
    assert leftover.success and leftover.data == 'STATUS OK'
    assert framer.next_response() is None


def test_framer_overflow():
    framer = ResponseFramer(newline_delimited=True, max_size=16)
    framer.feed(b'x' * 10)
    with pytest.raises(FramingError, match='maximal size'):
        framer.feed(b'x' * 10)
    assert framer.buffered == 0


def test_framer_large_complete_response():
    framer = ResponseFramer(newline_delimited=False, max_size=16)
    response = framer.feed(_ok(data='x' * 32))
    assert response.success


# client


@pytest.mark.asyncio
async def test_ping_tcp():
    async with _tcp_device(lambda req: b'{"success": true}') as (dev, client):
        response = await client.ping()
    assert response.success
    assert dev.commands() == ['PING']


@pytest.mark.asyncio
async def test_ping_socket(socket_dir):
    async with _unix_device(socket_dir, lambda req: b'OK\n') as (dev, client):
        response = await client.ping()
    assert response.success
    assert response.data == 'OK'
    assert dev.commands() == ['STATUS']


def _signing_device(kind='rsa', auth_ok=True):
    arch = pki(kind)
    key = arch.signer_key_handle

    def responder(request):
        command = request['command']
        if command == 'AUTHENTICATE':
            return _ok() if auth_ok else _fail('bad passphrase')
        elif command in ('SIGN_HASH', 'SIGN_DATA'):
            digest = base64.b64decode(request['dataHash'])
            md = request['hashAlgorithm'].replace('-', '').lower()
            hash_algo = get_pyca_cryptography_hash_for_signing(
                md, prehashed=True
            )
            signature = key.sign(digest, padding.PKCS1v15(), hash_algo)
            return _ok(signature=base64.b64encode(signature).decode('ascii'))
        return _fail(f'unexpected command {command}')

    return responder


@pytest.mark.asyncio
async def test_sign_hash_with_softcard():
    async with _tcp_device(_signing_device()) as (dev, client):
        response = await client.sign_hash(
            key_id='key1',
            digest=DIGEST,
            hash_algorithm='sha256',
            card_name='card1',
            passphrase='1234',
        )
    assert response.success
    assert response.signature
    auth, sign = dev.requests
    assert auth == {
        'command': 'AUTHENTICATE',
        'cardName': 'card1',
        'passphrase': '1234',
    }
    assert sign['command'] == 'SIGN_DATA'
    assert sign['keyId'] == 'key1'
    assert sign['cardName'] == 'card1'
    assert sign['hashAlgorithm'] == 'SHA-256'
    assert base64.b64decode(sign['dataHash']) == DIGEST
    assert 'passphrase' not in sign


@pytest.mark.asyncio
async def test_sign_hash_without_softcard(socket_dir):
    async with _unix_device(socket_dir, _signing_device()) as (dev, client):
        response = await client.sign_hash(
            key_id='key1', digest=DIGEST, hash_algorithm='sha256'
        )
    assert response.success
    assert dev.commands() == ['SIGN_HASH']


@pytest.mark.asyncio
async def test_authentication_failure_stops_signing():
    async with _tcp_device(_signing_device(auth_ok=False)) as (dev, client):
        response = await client.sign_hash(
            key_id='key1',
            digest=DIGEST,
            hash_algorithm='sha256',
            card_name='card1',
            passphrase='wrong',
        )
    assert not response.success
    assert isinstance(response.exception, RemoteAuthenticationFailed)
    assert response.error == 'bad passphrase'
    assert dev.commands() == ['AUTHENTICATE']


@pytest.mark.asyncio
async def test_authenticate():
    async with _tcp_device(_signing_device()) as (dev, client):
        response = await client.authenticate('card1', '1234')
    assert response.success
    assert dev.commands() == ['AUTHENTICATE']


@pytest.mark.asyncio
async def test_device_error():
    async with _tcp_device(lambda req: _fail('no such key')) as (_, client):
        response = await client.get_certificate_details('nope')
    assert not response.success
    assert isinstance(response.exception, RemoteOperationFailed)
    assert response.error == 'no such key'


@pytest.mark.asyncio
async def test_list_certificates():
    certs = [{'keyId': 'key1', 'subject': 'CN=Signer'}]

    async with _tcp_device(lambda req: _ok(certificates=certs)) as (
        dev,
        client,
    ):
        response = await client.list_certificates()
    assert response.success
    assert response.certificates == certs
    assert dev.commands() == ['LIST_CERTIFICATES']


@pytest.mark.asyncio
async def test_command_timeout():
    async with _tcp_device(lambda req: None, timeout=0.2) as (_, client):
        response = await client.ping()
    assert not response.success
    assert isinstance(response.exception, CommandTimeout)


@pytest.mark.asyncio
async def test_read_timeout_starts_after_write(monkeypatch):
    original_drain = asyncio.StreamWriter.drain

    async def _slow_drain(writer):
        await asyncio.sleep(0.25)
        await original_drain(writer)

    # the reply takes longer than the timeout when counted from the write,
    # but not when counted from the end of the write
    async with _tcp_device(
        lambda req: b'{"success": true}', reply_delay=0.4, timeout=0.3
    ) as (dev, client):
        monkeypatch.setattr(asyncio.StreamWriter, 'drain', _slow_drain)
        response = await client.ping()
    assert response.success, response.error
    assert dev.commands() == ['PING']


@pytest.mark.asyncio
async def test_connection_closed_early():
    async with _tcp_device(lambda req: CLOSE) as (_, client):
        response = await client.ping()
    assert not response.success
    assert isinstance(response.exception, RemoteOperationFailed)
    assert 'closed' in response.error


@pytest.mark.asyncio
async def test_response_too_large():
    def responder(request):
        return b'{"success": true, "data": "' + b'x' * 4096

    async with _tcp_device(responder, max_response_size=512) as (_, client):
        response = await client.ping()
    assert not response.success
    assert isinstance(response.exception, FramingError)


@pytest.mark.asyncio
async def test_connection_refused(socket_dir):
    config = RemoteSignerConfig(
        socket_path=os.path.join(socket_dir, 'nothing-here')
    )
    response = await RemoteSignerClient(config).ping()
    assert not response.success
    assert isinstance(response.exception, ConnectionRefused)


@pytest.mark.asyncio
async def test_connect_timeout(monkeypatch):
    async def _hang(*args, **kwargs):
        await asyncio.sleep(10)

    monkeypatch.setattr(asyncio, 'open_connection', _hang)
    config = RemoteSignerConfig(
        host='127.0.0.1', port=1, timeout=5, connect_timeout=0.1
    )
    response = await RemoteSignerClient(config).ping()
    assert not response.success
    assert isinstance(response.exception, ConnectTimeout)


@pytest.mark.asyncio
async def test_connection_lifecycle():
    async with _tcp_device(lambda req: _ok()) as (dev, client):
        conn = client.connection()
        assert conn.state == ConnectionState.DISCONNECTED
        with pytest.raises(RemoteOperationFailed):
            await conn.send_command(RemoteSignRequest(RemoteCommand.PING))
        async with conn:
            assert conn.state == ConnectionState.CONNECTED
            first = await conn.send_command(
                RemoteSignRequest(RemoteCommand.PING)
            )
            second = await conn.send_command(
                RemoteSignRequest(RemoteCommand.STATUS)
            )
            assert first.success and second.success
        assert conn.state == ConnectionState.DISCONNECTED
        # closing twice is harmless
        await conn.close()
    assert dev.commands() == ['PING', 'STATUS']


@pytest.mark.asyncio
async def test_leftover_frames_discarded_on_close():
    def responder(request):
        return _ok(data=1) + _ok(data=2)

    async with _tcp_device(responder) as (_, client):
        conn = RemoteConnection(client.config)
        async with conn:
            response = await conn.send_command(
                RemoteSignRequest(RemoteCommand.PING)
            )
            assert response.data == 1
        assert conn._framer.buffered == 0


@pytest.mark.asyncio
async def test_unknown_softcard_is_rejected_locally(tmp_path):
    (tmp_path / 'card1').mkdir()
    (tmp_path / 'card1' / 'key_abc').write_text('')
    async with _tcp_device(_signing_device(), kmdata_path=str(tmp_path)) as (
        dev,
        client,
    ):
        response = await client.sign_hash(
            key_id='key1',
            digest=DIGEST,
            hash_algorithm='sha256',
            card_name='card2',
            passphrase='1234',
        )
        assert not response.success
        assert 'card2' in response.error
        assert dev.requests == []

        response = await client.sign_hash(
            key_id='key1',
            digest=DIGEST,
            hash_algorithm='sha256',
            card_name='card1',
            passphrase='1234',
        )
        assert response.success


@pytest.mark.asyncio
async def test_softcard_operations(tmp_path):
    (tmp_path / 'card1').mkdir()
    (tmp_path / 'card1' / 'signer.crt').write_text(
        'Subject: CN=Signer\nIssuer: CN=CA\n'
    )
    config = RemoteSignerConfig(host='localhost', kmdata_path=str(tmp_path))
    client = RemoteSignerClient(config)

    response = await client.list_softcards()
    assert [card.name for card in response.data] == ['card1']

    response = await client.get_softcard_details('card1')
    assert response.data.certificates == ('signer.crt',)

    response = await client.list_softcard_certificates()
    cert, = response.data
    assert cert.id == 'card1:signer.crt'
    assert cert.subject == 'CN=Signer'

    response = await client.get_softcard_details('card9')
    assert not response.success


@pytest.mark.asyncio
async def test_softcard_scan_off_event_loop(monkeypatch, tmp_path):
    scanned_in = []

    def _discover(root):
        scanned_in.append(threading.current_thread())
        return []

    monkeypatch.setattr(softcards, 'discover_softcards', _discover)
    config = RemoteSignerConfig(host='localhost', kmdata_path=str(tmp_path))
    response = await RemoteSignerClient(config).list_softcards()
    assert response.success
    assert response.data == []
    assert scanned_in and scanned_in[0] is not threading.main_thread()


@pytest.mark.asyncio
async def test_softcard_operations_unconfigured():
    client = RemoteSignerClient(RemoteSignerConfig(host='localhost'))
    response = await client.list_softcards()
    assert not response.success
    assert isinstance(response.exception, RemoteOperationFailed)


@pytest.mark.asyncio
async def test_remote_signer_end_to_end():
    arch = pki('rsa')
    async with _tcp_device(_signing_device()) as (dev, client):
        signer = RemoteSigner(
            client,
            key_id='key1',
            signing_cert=arch.signer,
            cert_chain=arch.chain,
            card_name='card1',
            passphrase='1234',
            digest_algorithm='sha512',
        )
        envelope = await async_sign_detached(PAYLOAD, signer)
    assert dev.commands() == ['AUTHENTICATE', 'SIGN_DATA']
    assert dev.requests[1]['hashAlgorithm'] == 'SHA-512'
    result = verify_envelope(envelope)
    assert result.verified
    assert len(result.chain) == 3
