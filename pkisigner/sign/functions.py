"""
High-level signing entry points.

Both functions take a :class:`~pkisigner.sign.signers.Signer` (which bundles
the key handle, the signer's certificate and the rest of the chain) and a
payload, and return a signed envelope. By default, the envelope is
PEM-armored with the ``PKCS11`` label; pass ``armored=False`` to obtain the
binary form.
"""

import asyncio
import logging

from asn1crypto import cms

from ..errors import EncodingError
from .envelope import armor_envelope, pack_detached
from .signers import Signer

__all__ = [
    'async_sign_detached',
    'sign_detached',
    'async_sign_encapsulated',
    'sign_encapsulated',
    'encode_content_info',
]

logger = logging.getLogger(__name__)


def encode_content_info(content_info: cms.ContentInfo) -> bytes:
    try:
        return content_info.dump()
    except (ValueError, TypeError) as e:
        raise EncodingError(f"Failed to encode signed data: {e}") from e


async def async_sign_detached(
    payload: bytes, signer: Signer, armored: bool = True
) -> bytes:
    """
    Produce a detached-combined envelope: a length-prefixed detached CMS
    signature followed by the payload.

    :param payload:
        The data to sign.
    :param signer:
        The signer to use.
    :param armored:
        Whether to PEM-armor the result.
    :return:
        The signed envelope.
    """
    content_info = await signer.async_sign(payload, detached=True)
    sig_der = encode_content_info(content_info)
    logger.debug(
        f"Produced detached signature of {len(sig_der)} bytes over "
        f"{len(payload)} bytes of payload"
    )
    result = pack_detached(sig_der, payload)
    return armor_envelope(result) if armored else result


def sign_detached(payload: bytes, signer: Signer, armored: bool = True):
    """
    Synchronous wrapper around :func:`async_sign_detached`.
    """
    return asyncio.run(async_sign_detached(payload, signer, armored=armored))


async def async_sign_encapsulated(
    payload: bytes, signer: Signer, armored: bool = True
) -> bytes:
    """
    Produce a legacy encapsulated envelope, i.e. a CMS ``SignedData`` value
    with the payload embedded as ``eContent``.

    :param payload:
        The data to sign.
    :param signer:
        The signer to use.
    :param armored:
        Whether to PEM-armor the result.
    :return:
        The signed envelope.
    """
    content_info = await signer.async_sign(payload, detached=False)
    result = encode_content_info(content_info)
    return armor_envelope(result) if armored else result


def sign_encapsulated(payload: bytes, signer: Signer, armored: bool = True):
    """
    Synchronous wrapper around :func:`async_sign_encapsulated`.
    """
    return asyncio.run(
        async_sign_encapsulated(payload, signer, armored=armored)
    )
