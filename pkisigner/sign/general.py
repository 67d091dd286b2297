"""
General tools related to Cryptographic Message Syntax (CMS) signatures.

CMS is defined in :rfc:`5652`. To parse CMS messages, this package relies on
`asn1crypto <https://github.com/wbond/asn1crypto>`_.
"""

import hashlib
import logging
from dataclasses import dataclass
from typing import List, Optional

from asn1crypto import cms, x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from ..errors import AsnDecodeError, CMSExtractionError, SigningError

__all__ = [
    'DEFAULT_MD',
    'SUPPORTED_DIGEST_ALGORITHMS',
    'SignedDataCerts',
    'get_pyca_cryptography_hash',
    'get_pyca_cryptography_hash_for_signing',
    'compute_digest',
    'find_cms_attribute',
    'match_issuer_serial',
    'extract_signer_info',
    'extract_certificate_info',
    'load_signed_data',
]

logger = logging.getLogger(__name__)

DEFAULT_MD = 'sha256'
"""
Default digest algorithm used when producing signatures.
"""

SUPPORTED_DIGEST_ALGORITHMS = ('sha256', 'sha384', 'sha512')


def get_pyca_cryptography_hash(algorithm) -> hashes.HashAlgorithm:
    try:
        return getattr(hashes, algorithm.upper())()
    except AttributeError as e:
        raise SigningError(
            f"Digest algorithm '{algorithm}' is not supported"
        ) from e


def get_pyca_cryptography_hash_for_signing(algorithm, prehashed=False):
    hash_algo = get_pyca_cryptography_hash(algorithm)
    return Prehashed(hash_algo) if prehashed else hash_algo


def compute_digest(data: bytes, md_algorithm: str) -> bytes:
    """
    Compute a message digest.

    :param data:
        The data to hash.
    :param md_algorithm:
        The digest algorithm, as a lowercase name (``sha256``, ...).
    :return:
        The raw digest bytes.
    """
    try:
        h = hashlib.new(md_algorithm)
    except ValueError as e:
        raise SigningError(
            f"Digest algorithm '{md_algorithm}' is not supported"
        ) from e
    h.update(data)
    return h.digest()


def find_cms_attribute(attrs, name):
    """
    Find and return CMS attribute values of a given type.

    :param attrs:
        The :class:`.cms.CMSAttributes` object.
    :param name:
        The attribute type as a string (as defined in ``asn1crypto``).
    :return:
        The values associated with the requested type.
    :raises CMSExtractionError:
        if the attribute is absent or occurs more than once.
    """
    found_values = None
    for attr in attrs:
        if attr['type'].native == name:
            if found_values is not None:
                raise CMSExtractionError(
                    f"Attribute {name} was duplicated"
                )
            found_values = attr['values']
    if found_values is None:
        raise CMSExtractionError(f"Could not find attribute {name}")
    return found_values


def match_issuer_serial(
    expected_issuer_serial: cms.IssuerAndSerialNumber,
    cert: x509.Certificate,
) -> bool:
    """
    Match the issuer and serial number of an X.509 certificate against some
    expected identifier.

    :param expected_issuer_serial:
        A certificate identifier, as an issuer-and-serial-number structure.
    :param cert:
        An :class:`.x509.Certificate`.
    :return:
        ``True`` if there's a match, ``False`` otherwise.
    """
    issuer_and_serial = expected_issuer_serial
    return (
        cert.issuer == issuer_and_serial['issuer']
        and cert.serial_number == issuer_and_serial['serial_number'].native
    )


@dataclass(frozen=True)
class SignedDataCerts:
    """
    Value type to describe certificates included in a CMS signed data payload.
    """

    signer_cert: Optional[x509.Certificate]
    """
    The certificate identified as the signer's certificate, if present.
    """

    embedded_certs: List[x509.Certificate]
    """
    All certificates included in the ``certificates`` field, in the order
    in which they appear in the encoded structure.
    """


def extract_signer_info(signed_data: cms.SignedData) -> cms.SignerInfo:
    """
    Extract the unique ``SignerInfo`` entry of a CMS signed data value, or
    throw a :class:`CMSExtractionError`.

    :param signed_data:
        A CMS ``SignedData`` value.
    :return:
        A CMS ``SignerInfo`` value.
    :raises CMSExtractionError:
        If the number of ``SignerInfo`` values is not exactly one.
    """
    try:
        signer_info, = signed_data['signer_infos']
    except ValueError:
        raise CMSExtractionError(
            'signer_infos should contain exactly one entry'
        )
    return signer_info


def extract_certificate_info(signed_data: cms.SignedData) -> SignedDataCerts:
    """
    Extract and classify embedded certificates found in the ``certificates``
    field of the signed data value.

    :param signed_data:
        A CMS ``SignedData`` value.
    :return:
        A :class:`SignedDataCerts` object containing the embedded certificates.
    """
    certs = []
    cert_choices = signed_data['certificates']
    if cert_choices.native is None:
        cert_choices = ()
    for c in cert_choices:
        if c.name != 'certificate':
            logger.debug(
                f"Ignoring embedded certificate entry of type '{c.name}'"
            )
            continue
        certs.append(c.chosen)

    signer_info = extract_signer_info(signed_data)
    sid = signer_info['sid']
    signer_cert = None
    if sid.name == 'issuer_and_serial_number':
        signer_cert = next(
            (c for c in certs if match_issuer_serial(sid.chosen, c)), None
        )
    else:
        ski = sid.chosen.native
        signer_cert = next(
            (c for c in certs if c.key_identifier == ski), None
        )
    return SignedDataCerts(signer_cert=signer_cert, embedded_certs=certs)


def load_signed_data(der_bytes: bytes) -> cms.SignedData:
    """
    Decode a DER-encoded ``ContentInfo`` that wraps ``SignedData``, and
    force a full parse of the structure.

    :param der_bytes:
        The encoded ``ContentInfo``.
    :return:
        The ``SignedData`` value.
    :raises AsnDecodeError:
        if the data is not a well-formed ``ContentInfo``, or does not
        contain ``SignedData``.
    """
    try:
        content_info = cms.ContentInfo.load(der_bytes, strict=True)
        content_type = content_info['content_type'].native
    except (ValueError, TypeError) as e:
        raise AsnDecodeError(f"Failed to decode CMS structure: {e}") from e
    if content_type != 'signed_data':
        raise AsnDecodeError(
            f"Expected signed_data content, found '{content_type}'"
        )
    try:
        signed_data = content_info['content']
        # force a full parse of the structure
        signed_data.native
    except (ValueError, TypeError) as e:
        raise AsnDecodeError(f"Failed to decode SignedData: {e}") from e
    return signed_data
