"""
Wire format of the remote signing protocol.

Requests are single JSON objects terminated by a newline. Binary values
(digests, signatures) are transported as base64 strings. Responses are JSON
objects carrying at least a ``success`` flag. A response is complete when

* in TCP mode: the accumulated bytes parse as a JSON document;
* in socket-path mode: a newline terminator has been received. Lines that
  are not JSON are accepted as successful raw responses, since the device
  answers some status queries in plain text.
"""

import base64
import binascii
import enum
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import (
    FramingError,
    RemoteOperationFailed,
    RemoteSignerError,
    ValueErrorWithMessage,
)

__all__ = [
    'RemoteCommand',
    'RemoteSignRequest',
    'RemoteSignResponse',
    'ResponseFramer',
    'wire_hash_algorithm',
]

logger = logging.getLogger(__name__)


class RemoteCommand(enum.Enum):
    LIST_CERTIFICATES = 'LIST_CERTIFICATES'
    AUTHENTICATE = 'AUTHENTICATE'
    SIGN_HASH = 'SIGN_HASH'
    SIGN_DATA = 'SIGN_DATA'
    GET_CERTIFICATE = 'GET_CERTIFICATE'
    PING = 'PING'
    STATUS = 'STATUS'


_WIRE_HASH_NAMES = {
    'sha256': 'SHA-256',
    'sha384': 'SHA-384',
    'sha512': 'SHA-512',
}


def wire_hash_algorithm(md_algorithm: str) -> str:
    """
    Translate a digest algorithm name to the notation used by the device.
    """
    return _WIRE_HASH_NAMES.get(md_algorithm.lower(), md_algorithm.upper())


@dataclass(frozen=True)
class RemoteSignRequest:
    """
    A single command sent to the remote signing device.
    """

    command: RemoteCommand
    key_id: Optional[str] = None
    card_name: Optional[str] = None
    passphrase: Optional[str] = None
    data_hash: Optional[bytes] = None
    """
    Raw digest bytes; base64-encoded on the wire.
    """

    hash_algorithm: Optional[str] = None
    data: Optional[str] = None

    def as_json_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {'command': self.command.value}
        if self.key_id is not None:
            result['keyId'] = self.key_id
        if self.card_name is not None:
            result['cardName'] = self.card_name
        if self.passphrase is not None:
            result['passphrase'] = self.passphrase
        if self.data_hash is not None:
            result['dataHash'] = base64.b64encode(self.data_hash).decode(
                'ascii'
            )
        if self.hash_algorithm is not None:
            result['hashAlgorithm'] = wire_hash_algorithm(self.hash_algorithm)
        if self.data is not None:
            result['data'] = self.data
        return result

    def encode(self) -> bytes:
        return json.dumps(self.as_json_dict()).encode('utf8') + b'\n'


@dataclass(frozen=True)
class RemoteSignResponse:
    """
    Outcome of a remote operation. Operations of the client never raise;
    failures are reported by setting :attr:`success` to ``False`` and storing
    the corresponding error in :attr:`exception`.
    """

    success: bool
    data: Any = None
    error: Optional[str] = None
    certificates: Optional[List[Any]] = None
    signature: Optional[bytes] = None
    """
    Raw signature bytes; base64-encoded on the wire.
    """

    exception: Optional[Exception] = field(default=None, compare=False)
    """
    The typed error for a failed operation. Not part of the wire format.
    """

    @classmethod
    def from_json_dict(cls, json_dict: Dict[str, Any]) -> 'RemoteSignResponse':
        try:
            success = json_dict['success']
            if not isinstance(success, bool):
                raise TypeError("'success' must be a boolean")
            signature = json_dict.get('signature', None)
            if signature is not None:
                signature = base64.b64decode(signature, validate=True)
            certificates = json_dict.get('certificates', None)
            if certificates is not None and not isinstance(certificates, list):
                raise TypeError("'certificates' must be a list")
            error = json_dict.get('error', None)
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise RemoteOperationFailed(
                f"Could not process response from remote signer: {e}"
            ) from e
        return cls(
            success=success,
            data=json_dict.get('data', None),
            error=None if error is None else str(error),
            certificates=certificates,
            signature=signature,
        )

    @classmethod
    def failure(cls, exception: ValueErrorWithMessage) -> 'RemoteSignResponse':
        if isinstance(exception, RemoteSignerError):
            msg = exception.msg
        else:
            msg = str(exception)
        return cls(success=False, error=msg, exception=exception)

    def raise_for_status(self):
        """
        Raise the error associated with a failed operation, if any.
        """
        if self.success:
            return
        if self.exception is not None:
            raise self.exception
        raise RemoteOperationFailed(self.error or "Remote operation failed")


class ResponseFramer:
    """
    Accumulates bytes received from the device and cuts them into complete
    responses.

    :param newline_delimited:
        Whether responses are newline-terminated (socket-path mode).
    :param max_size:
        Maximal number of bytes to buffer for a single response.
    """

    def __init__(self, newline_delimited: bool, max_size: int):
        self.newline_delimited = newline_delimited
        self.max_size = max_size
        self._buffer = bytearray()
        self._decoder = json.JSONDecoder()

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> Optional[RemoteSignResponse]:
        """
        Add received bytes to the buffer, and return a response if the buffer
        now holds a complete one. Bytes following a complete response are
        retained for the next call.

        :raises FramingError:
            if the buffered data exceeds the maximal response size.
        """
        self._buffer.extend(chunk)
        response = self.next_response()
        if response is None and len(self._buffer) > self.max_size:
            size = len(self._buffer)
            self._buffer.clear()
            raise FramingError(
                f"Response exceeds the maximal size of {self.max_size} "
                f"bytes ({size} bytes buffered)"
            )
        return response

    def next_response(self) -> Optional[RemoteSignResponse]:
        if self.newline_delimited:
            return self._next_line()
        return self._next_document()

    def _next_line(self) -> Optional[RemoteSignResponse]:
        newline_ix = self._buffer.find(b'\n')
        if newline_ix == -1:
            return None
        line = bytes(self._buffer[:newline_ix]).strip()
        del self._buffer[:newline_ix + 1]
        text = line.decode('utf8', errors='replace')
        try:
            parsed = json.loads(text)
        except ValueError:
            logger.debug("Received non-JSON line from device")
            return RemoteSignResponse(success=True, data=text)
        return _response_from_parsed(parsed)

    def _next_document(self) -> Optional[RemoteSignResponse]:
        try:
            text = bytes(self._buffer).decode('utf8')
        except UnicodeDecodeError:
            # possibly a multibyte character split across reads
            return None
        stripped = text.lstrip()
        if not stripped:
            return None
        try:
            parsed, end = self._decoder.raw_decode(stripped)
        except ValueError:
            return None
        if _number_may_continue(parsed, stripped, end):
            return None
        consumed = len(
            text[:len(text) - len(stripped) + end].encode('utf8')
        )
        del self._buffer[:consumed]
        return _response_from_parsed(parsed)


_NUMBER_CHARS = frozenset('0123456789.eE+-')


def _number_may_continue(parsed, text: str, end: int) -> bool:
    # a top-level number is only complete once a delimiter follows it,
    # e.g. "12" may be the start of "1234", and "1." of "1.5"
    if isinstance(parsed, bool) or not isinstance(parsed, (int, float)):
        return False
    if text[end - 1] not in _NUMBER_CHARS:
        # NaN, Infinity
        return False
    return end == len(text) or text[end] in _NUMBER_CHARS


def _response_from_parsed(parsed) -> RemoteSignResponse:
    if isinstance(parsed, dict):
        return RemoteSignResponse.from_json_dict(parsed)
    return RemoteSignResponse(success=True, data=parsed)
