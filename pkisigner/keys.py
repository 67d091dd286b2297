"""
Utilities for reading and writing PEM/DER-encoded key material.

PEM armor is produced through ``asn1crypto``. Unarmoring is stricter than
:func:`asn1crypto.pem.unarmor`: the base64 body must be well-formed (proper
padding, no stray characters), and an empty body is accepted so that
encoding and decoding are mutually inverse for any byte string.
"""

import base64
import binascii
import logging
import re
from typing import Optional, Union

from asn1crypto import keys, pem, x509
from cryptography.hazmat.primitives import serialization

from .errors import AsnDecodeError, InvalidBase64, MalformedInput

__all__ = [
    'armor',
    'unarmor',
    'detect',
    'load_cert_from_pemder',
    'load_certs_from_pemder',
    'load_certs_from_pemder_data',
    'load_private_key_from_pemder',
    'load_private_key_from_pemder_data',
    'translate_pyca_cryptography_key_to_asn1',
]

logger = logging.getLogger(__name__)

PEM_BEGIN_REGEX = re.compile(rb'-----BEGIN ([^-\r\n]+)-----')
PEM_END_TEMPLATE = b'-----END %s-----'
_WHITESPACE = re.compile(rb'\s+')


def _as_bytes(data: Union[str, bytes]) -> bytes:
    if isinstance(data, str):
        try:
            return data.encode('ascii')
        except UnicodeEncodeError as e:
            raise MalformedInput("PEM data must be ASCII text") from e
    return bytes(data)


def detect(data: Union[str, bytes]) -> bool:
    """
    Check whether a byte string looks like PEM-armored data, i.e. whether it
    starts with a ``BEGIN`` marker, possibly after some whitespace.

    Unlike :func:`asn1crypto.pem.detect`, markers further along in the data
    do not count: binary data may well contain PEM text.
    """
    if isinstance(data, str):
        data = data.encode('ascii', errors='ignore')
    return PEM_BEGIN_REGEX.match(data.lstrip()) is not None


def armor(label: str, der_bytes: bytes) -> bytes:
    """
    Wrap binary data in PEM armor. The base64 body is wrapped at 64
    characters per line.

    :param label:
        The PEM label, e.g. ``CERTIFICATE``.
    :param der_bytes:
        The data to armor.
    :return:
        The PEM-encoded data as ASCII bytes.
    """
    return pem.armor(label, der_bytes)


def unarmor(
    data: Union[str, bytes], expected_label: Optional[str] = None
) -> bytes:
    """
    Strip PEM armor from a single PEM block and decode the base64 body.

    If the input contains no ``BEGIN`` marker at all, it is interpreted as
    a bare base64 body.

    :param data:
        PEM text, as a string or ASCII bytes.
    :param expected_label:
        If not ``None``, the label of the PEM block must match this value.
    :return:
        The decoded binary data.
    :raises MalformedInput:
        if the markers are unbalanced or the label does not match.
    :raises InvalidBase64:
        if the body is not strictly valid base64.
    """
    data = _as_bytes(data)
    begin = PEM_BEGIN_REGEX.search(data)
    if begin is not None:
        label = begin.group(1)
        end_marker = PEM_END_TEMPLATE % label
        end_ix = data.find(end_marker, begin.end())
        if end_ix == -1:
            raise MalformedInput(
                f"PEM block labelled '{label.decode('ascii')}' has no "
                f"matching END marker"
            )
        if expected_label is not None and \
                label.decode('ascii') != expected_label:
            raise MalformedInput(
                f"Expected PEM label '{expected_label}', "
                f"found '{label.decode('ascii')}'"
            )
        body = data[begin.end():end_ix]
    else:
        if b'-----END ' in data:
            raise MalformedInput("PEM END marker without BEGIN marker")
        body = data

    body = _WHITESPACE.sub(b'', body)
    if len(body) % 4 != 0:
        raise InvalidBase64(
            f"Base64 body length {len(body)} is not a multiple of 4"
        )
    try:
        return base64.b64decode(body, validate=True)
    except binascii.Error as e:
        raise InvalidBase64(f"Invalid base64 data: {e}") from e


def load_certs_from_pemder(cert_files):
    """
    A convenience function to load PEM/DER-encoded certificates from files.

    :param cert_files:
        An iterable of file names.
    :return:
        A generator producing :class:`.asn1crypto.x509.Certificate` objects.
    """
    for cert_file in cert_files:
        with open(cert_file, 'rb') as f:
            cert_data_bytes = f.read()
        yield from load_certs_from_pemder_data(cert_data_bytes)


def load_certs_from_pemder_data(cert_data_bytes: bytes):
    """
    A convenience function to load PEM/DER-encoded certificates from
    binary data.

    :param cert_data_bytes:
        ``bytes`` object from which to extract certificates.
    :return:
        A generator producing :class:`.asn1crypto.x509.Certificate` objects.
    """
    # use the pattern from the asn1crypto docs
    # to distinguish PEM/DER and read multiple certs
    # from one PEM file (if necessary)
    if pem.detect(cert_data_bytes):
        pems = pem.unarmor(cert_data_bytes, multiple=True)
        for type_name, _, der in pems:
            if type_name is None or type_name.lower() == 'certificate':
                yield x509.Certificate.load(der)
            else:
                logger.debug(f"Skipping PEM block of type '{type_name}'")
    else:
        # no need to unarmor, just try to load it immediately
        yield x509.Certificate.load(cert_data_bytes)


def load_cert_from_pemder(cert_file):
    """
    A convenience function to load a single PEM/DER-encoded certificate
    from a file.

    :param cert_file:
        A file name.
    :return:
        An :class:`.asn1crypto.x509.Certificate` object.
    """
    certs = list(load_certs_from_pemder([cert_file]))
    if len(certs) != 1:
        raise ValueError(f"Number of certs in {cert_file} should be exactly 1")
    return certs[0]


def translate_pyca_cryptography_key_to_asn1(
    private_key,
) -> keys.PrivateKeyInfo:
    # keep keys as generic ASN.1 structures for introspection,
    # the pyca object is reconstructed when signing
    return keys.PrivateKeyInfo.load(
        private_key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )


def load_private_key_from_pemder(
    key_file, passphrase: Optional[bytes]
) -> keys.PrivateKeyInfo:
    """
    A convenience function to load PEM/DER-encoded keys from files.

    :param key_file:
        File to read the key from.
    :param passphrase:
        Key passphrase.
    :return:
        A private key encoded as an unencrypted PKCS#8 PrivateKeyInfo object.
    """
    with open(key_file, 'rb') as f:
        key_bytes = f.read()
    return load_private_key_from_pemder_data(key_bytes, passphrase=passphrase)


def load_private_key_from_pemder_data(
    key_bytes: bytes, passphrase: Optional[bytes]
) -> keys.PrivateKeyInfo:
    """
    A convenience function to load PEM/DER-encoded keys from binary data.

    :param key_bytes:
        ``bytes`` object to read the key from.
    :param passphrase:
        Key passphrase.
    :return:
        A private key encoded as an unencrypted PKCS#8 PrivateKeyInfo object.
    :raises AsnDecodeError:
        if the key could not be decoded (this includes wrong passphrases).
    """
    load_fun = (
        serialization.load_pem_private_key
        if pem.detect(key_bytes)
        else serialization.load_der_private_key
    )
    try:
        private_key = load_fun(key_bytes, password=passphrase)
    except (ValueError, TypeError) as e:
        raise AsnDecodeError(f"Failed to load private key: {e}") from e
    return translate_pyca_cryptography_key_to_asn1(private_key)
