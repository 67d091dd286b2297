"""
The detached-combined container.

A detached-combined envelope bundles a detached CMS signature with the
payload it covers::

    u32be(L) || signature (L bytes of DER) || payload

For transport, the whole container is PEM-armored with the label
:const:`PEM_LABEL`. The length prefix must satisfy
``4 < L <= len(container) - 4``.
"""

import enum
import struct
from typing import Tuple, Union

from ..errors import FramingError
from ..keys import armor, detect, unarmor

__all__ = [
    'EnvelopeFormat',
    'PEM_LABEL',
    'pack_detached',
    'unpack_detached',
    'armor_envelope',
    'unarmor_envelope',
]

PEM_LABEL = 'PKCS11'
"""PEM label used for signed envelopes."""

LENGTH_PREFIX = struct.Struct('>I')


class EnvelopeFormat(enum.Enum):
    DETACHED = enum.auto()
    """Detached-combined container."""

    ENCAPSULATED = enum.auto()
    """Legacy CMS ``SignedData`` with the payload in ``eContent``."""


def pack_detached(signature_der: bytes, payload: bytes) -> bytes:
    """
    Frame a detached signature and its payload.

    :param signature_der:
        The DER-encoded ``ContentInfo``.
    :param payload:
        The signed payload.
    :return:
        The binary container.
    """
    return LENGTH_PREFIX.pack(len(signature_der)) + signature_der + payload


def unpack_detached(data: bytes) -> Tuple[bytes, bytes]:
    """
    Split a binary detached-combined container into the signature and the
    payload.

    :param data:
        The binary container.
    :return:
        A tuple ``(signature_der, payload)``.
    :raises FramingError:
        if the buffer is too short or the length prefix is out of bounds.
    """
    prefix_len = LENGTH_PREFIX.size
    if len(data) < prefix_len:
        raise FramingError(
            f"Buffer of {len(data)} bytes is too short to hold the "
            f"{prefix_len}-byte length prefix"
        )
    sig_len, = LENGTH_PREFIX.unpack_from(data, 0)
    available = len(data) - prefix_len
    if not (prefix_len < sig_len <= available):
        raise FramingError(
            f"Signature length {sig_len} declared at offset 0 is out of "
            f"bounds for a buffer of {len(data)} bytes"
        )
    sig_end = prefix_len + sig_len
    return data[prefix_len:sig_end], data[sig_end:]


def armor_envelope(data: bytes) -> bytes:
    return armor(PEM_LABEL, data)


def unarmor_envelope(data: Union[str, bytes]) -> bytes:
    """
    Strip PEM armor from an envelope if present; binary input is returned
    unchanged. Bytes only count as armored if they start with a PEM
    ``BEGIN`` marker, since a binary envelope may carry PEM text in its
    payload.
    """
    if isinstance(data, str):
        return unarmor(data)
    if detect(data):
        return unarmor(data)
    return data
