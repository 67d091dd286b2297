"""
Asynchronous client for a remote signing device (HSM) reachable over TCP or
through a local socket.

Each logical operation opens a fresh connection, sends its command(s), waits
for the response(s) and closes the connection again, whatever the outcome.
Signing with a softcard-protected key takes two commands on the same
connection: ``AUTHENTICATE`` first, then the signing command, which is never
sent if authentication fails.

All public operations of :class:`RemoteSignerClient` return a
:class:`~.protocol.RemoteSignResponse`; errors are reported through that
object rather than raised. Use
:meth:`~.protocol.RemoteSignResponse.raise_for_status` to turn a failed
response into an exception.

There are no retries and no connection pooling.
"""

import asyncio
import enum
import logging
from typing import Awaitable, Callable, Optional

from ..config.remote import RemoteSignerConfig
from ..errors import (
    CommandTimeout,
    ConnectionRefused,
    ConnectTimeout,
    FramingError,
    RemoteAuthenticationFailed,
    RemoteOperationFailed,
    RemoteSignerError,
)
from . import softcards
from .protocol import (
    RemoteCommand,
    RemoteSignRequest,
    RemoteSignResponse,
    ResponseFramer,
)

__all__ = ['ConnectionState', 'RemoteConnection', 'RemoteSignerClient']

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class ConnectionState(enum.Enum):
    DISCONNECTED = enum.auto()
    CONNECTING = enum.auto()
    CONNECTED = enum.auto()
    AWAITING_RESPONSE = enum.auto()


class RemoteConnection:
    """
    A single connection to the remote signing device. Use as an asynchronous
    context manager: the connection is established on entry and closed on
    exit, even if the body raises or is cancelled.

    :param config:
        The connection settings.
    """

    def __init__(self, config: RemoteSignerConfig):
        self.config = config
        self.state = ConnectionState.DISCONNECTED
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._framer = self._new_framer()

    def _new_framer(self):
        return ResponseFramer(
            newline_delimited=self.config.uses_socket_path,
            max_size=self.config.max_response_size,
        )

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self):
        """
        Open the connection.

        :raises ConnectTimeout:
            if the connection could not be established in time.
        :raises ConnectionRefused:
            if the device refused the connection, or the socket path does
            not exist.
        """
        if self.state != ConnectionState.DISCONNECTED:
            raise RemoteOperationFailed("Connection is already open")
        cfg = self.config
        self.state = ConnectionState.CONNECTING
        logger.debug(f"Connecting to remote signer at {cfg.address}")
        if cfg.uses_socket_path:
            open_coro = asyncio.open_unix_connection(cfg.socket_path)
        else:
            open_coro = asyncio.open_connection(cfg.host, cfg.port)
        try:
            self._reader, self._writer = await asyncio.wait_for(
                open_coro, timeout=cfg.effective_connect_timeout
            )
        except asyncio.TimeoutError as e:
            self.state = ConnectionState.DISCONNECTED
            raise ConnectTimeout(
                f"Timed out after {cfg.effective_connect_timeout} seconds "
                f"while connecting to remote signer at {cfg.address}"
            ) from e
        except OSError as e:
            self.state = ConnectionState.DISCONNECTED
            raise ConnectionRefused(
                f"Could not connect to remote signer at {cfg.address}: {e}"
            ) from e
        self.state = ConnectionState.CONNECTED
        logger.debug(f"Connected to remote signer at {cfg.address}")

    async def send_command(
        self, request: RemoteSignRequest
    ) -> RemoteSignResponse:
        """
        Send a command and wait for the complete response. Sending the
        request and receiving the response are each allotted the configured
        command timeout.

        :param request:
            The command to send.
        :return:
            The response, as reported by the device.
        :raises CommandTimeout:
            if no complete response arrived in time.
        :raises FramingError:
            if the response exceeds the maximal response size.
        :raises RemoteOperationFailed:
            if the connection is not open, or was closed by the device
            before a complete response was received.
        """
        if self.state != ConnectionState.CONNECTED:
            raise RemoteOperationFailed(
                f"Cannot send {request.command.value}: connection is "
                f"{self.state.name.lower()}"
            )
        assert self._reader is not None and self._writer is not None
        cfg = self.config
        loop = asyncio.get_running_loop()
        command = request.command.value
        logger.debug(f"Sending {command} to remote signer at {cfg.address}")
        self.state = ConnectionState.AWAITING_RESPONSE
        try:
            self._writer.write(request.encode())
            await asyncio.wait_for(self._writer.drain(), timeout=cfg.timeout)
            deadline = loop.time() + cfg.timeout
            response = self._framer.next_response()
            while response is None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                chunk = await asyncio.wait_for(
                    self._reader.read(READ_CHUNK_SIZE), timeout=remaining
                )
                if not chunk:
                    raise RemoteOperationFailed(
                        f"Connection closed by remote signer before a "
                        f"complete response to {command} was received"
                    )
                response = self._framer.feed(chunk)
        except asyncio.TimeoutError as e:
            await self.close()
            raise CommandTimeout(
                f"No complete response to {command} within "
                f"{cfg.timeout} seconds"
            ) from e
        except (FramingError, RemoteSignerError):
            await self.close()
            raise
        except OSError as e:
            await self.close()
            raise RemoteOperationFailed(
                f"Connection error while executing {command}: {e}"
            ) from e
        self.state = ConnectionState.CONNECTED
        logger.debug(
            f"Received response to {command}: success={response.success}"
        )
        return response

    async def close(self):
        """
        Close the connection and discard any buffered data. Idempotent.
        """
        writer = self._writer
        self._reader = self._writer = None
        self._framer = self._new_framer()
        self.state = ConnectionState.DISCONNECTED
        if writer is None:
            return
        writer.close()
        try:
            await writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing connection: {e}")


def _require_success(
    response: RemoteSignResponse, command: RemoteCommand
) -> RemoteSignResponse:
    if not response.success:
        raise RemoteOperationFailed(
            response.error or f"{command.value} failed on the remote signer"
        )
    return response


class RemoteSignerClient:
    """
    Client for a remote signing device.

    :param config:
        Connection settings.
    """

    def __init__(self, config: RemoteSignerConfig):
        self.config = config

    def connection(self) -> RemoteConnection:
        """
        Create a new (unopened) connection to the device.
        """
        return RemoteConnection(self.config)

    async def _run(
        self,
        operation: str,
        fn: Callable[[], Awaitable[RemoteSignResponse]],
    ) -> RemoteSignResponse:
        try:
            return await fn()
        except (RemoteSignerError, FramingError) as e:
            logger.warning(f"Remote operation '{operation}' failed: {e}")
            return RemoteSignResponse.failure(e)

    async def _single_command(
        self, request: RemoteSignRequest
    ) -> RemoteSignResponse:
        async with self.connection() as conn:
            response = await conn.send_command(request)
        return _require_success(response, request.command)

    async def ping(self) -> RemoteSignResponse:
        """
        Check whether the device is reachable. In socket-path mode, this
        sends ``STATUS``; in TCP mode, ``PING``.
        """
        command = (
            RemoteCommand.STATUS
            if self.config.uses_socket_path
            else RemoteCommand.PING
        )
        return await self._run(
            'ping', lambda: self._single_command(RemoteSignRequest(command))
        )

    async def list_certificates(self) -> RemoteSignResponse:
        """
        Ask the device for the certificates it holds. The certificates
        are reported in the ``certificates`` field of the response.
        """
        return await self._run(
            'list certificates',
            lambda: self._single_command(
                RemoteSignRequest(RemoteCommand.LIST_CERTIFICATES)
            ),
        )

    async def get_certificate_details(self, key_id: str) -> RemoteSignResponse:
        """
        Ask the device for the certificate associated with a key.
        """
        return await self._run(
            'get certificate',
            lambda: self._single_command(
                RemoteSignRequest(RemoteCommand.GET_CERTIFICATE, key_id=key_id)
            ),
        )

    async def _authenticate(
        self, conn: RemoteConnection, card_name: str, passphrase: str
    ) -> RemoteSignResponse:
        response = await conn.send_command(
            RemoteSignRequest(
                RemoteCommand.AUTHENTICATE,
                card_name=card_name,
                passphrase=passphrase,
            )
        )
        if not response.success:
            raise RemoteAuthenticationFailed(
                response.error
                or f"Authentication to softcard '{card_name}' failed"
            )
        return response

    async def authenticate(
        self, card_name: str, passphrase: str
    ) -> RemoteSignResponse:
        """
        Authenticate to a softcard.
        """

        async def _auth():
            async with self.connection() as conn:
                return await self._authenticate(conn, card_name, passphrase)

        return await self._run('authenticate', _auth)

    def _check_softcard(self, card_name: str):
        root = self.config.kmdata_path
        if root is None:
            return
        card = softcards.get_softcard(root, card_name)
        if not card.is_valid:
            raise RemoteOperationFailed(
                f"Softcard '{card_name}' is not usable"
            )

    async def sign_hash(
        self,
        key_id: str,
        digest: bytes,
        hash_algorithm: str,
        card_name: Optional[str] = None,
        passphrase: Optional[str] = None,
    ) -> RemoteSignResponse:
        """
        Have the device sign a precomputed digest.

        If both ``card_name`` and ``passphrase`` are provided, the client
        authenticates to the softcard first, and only proceeds to sign if that
        succeeds. Keys on a softcard are used through ``SIGN_DATA``,
        other keys with ``SIGN_HASH``.

        :param key_id:
            Identifier of the key.
        :param digest:
            The digest to sign.
        :param hash_algorithm:
            The digest algorithm that produced ``digest``.
        :param card_name:
            Name of the softcard holding the key, if any.
        :param passphrase:
            Softcard passphrase.
        :return:
            A response carrying the raw signature in its ``signature`` field.
        """

        async def _sign():
            if card_name is not None:
                await asyncio.to_thread(self._check_softcard, card_name)
            async with self.connection() as conn:
                if card_name is not None and passphrase is not None:
                    await self._authenticate(conn, card_name, passphrase)
                command = (
                    RemoteCommand.SIGN_DATA
                    if card_name is not None
                    else RemoteCommand.SIGN_HASH
                )
                response = await conn.send_command(
                    RemoteSignRequest(
                        command,
                        key_id=key_id,
                        card_name=card_name,
                        data_hash=digest,
                        hash_algorithm=hash_algorithm,
                    )
                )
            return _require_success(response, command)

        return await self._run('sign', _sign)

    async def _filesystem_op(self, operation: str, fn: Callable):
        async def _op():
            root = self.config.kmdata_path
            if root is None:
                raise RemoteOperationFailed("No softcard store configured")
            # directory scans block, keep them off the event loop
            data = await asyncio.to_thread(fn, root)
            return RemoteSignResponse(success=True, data=data)

        return await self._run(operation, _op)

    async def list_softcards(self) -> RemoteSignResponse:
        """
        Scan the softcard store. The response's ``data`` field holds a list
        of :class:`~.softcards.SoftCard` objects.
        """
        return await self._filesystem_op(
            'list softcards', softcards.discover_softcards
        )

    async def get_softcard_details(self, card_name: str) -> RemoteSignResponse:
        """
        Look up a single softcard. The response's ``data`` field holds a
        :class:`~.softcards.SoftCard`.
        """
        return await self._filesystem_op(
            'get softcard',
            lambda root: softcards.get_softcard(root, card_name),
        )

    async def list_softcard_certificates(self) -> RemoteSignResponse:
        """
        Collect the certificate files of all softcards. The response's
        ``data`` field holds a list of
        :class:`~.softcards.SoftCardCertificate` objects.
        """
        return await self._filesystem_op(
            'list softcard certificates',
            softcards.collect_softcard_certificates,
        )
