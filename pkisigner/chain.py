"""
Certificate parsing and chain modelling.

A :class:`CertificateChain` is an ordered, non-empty sequence of certificates
with the signer's certificate first. When the chain is recovered from a
signed envelope, any self-signed certificate is moved to the end (it is taken
to be the root), while the remaining certificates keep the order in which
they were embedded. No attempt is made to reorder certificates by
issuer/subject linkage, nor to validate the chain.
"""

import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional, Tuple, Union

from asn1crypto import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization

from .errors import AsnDecodeError, MalformedInput, MissingPublicKey
from .keys import armor, unarmor

__all__ = [
    'CertificateChain',
    'CertificateSummary',
    'parse_chain',
    'parse_single',
    'name_attributes',
    'public_key_handle',
    'is_self_signed',
    'same_certificate',
    'order_embedded_certs',
]

logger = logging.getLogger(__name__)

CERT_BLOCK_REGEX = re.compile(
    r'-----BEGIN CERTIFICATE-----(.*?)-----END CERTIFICATE-----', re.DOTALL
)

ROLE_SIGNER = 'Signer'
ROLE_INTERMEDIATE = 'Intermediate CA'
ROLE_ROOT = 'Root CA'


def parse_single(der_bytes: bytes) -> x509.Certificate:
    """
    Parse a single DER-encoded X.509 certificate.

    The TBS structure is parsed eagerly, so structural problems surface here
    rather than at some later point of use.

    :param der_bytes:
        DER-encoded certificate.
    :return:
        An :class:`asn1crypto.x509.Certificate`.
    :raises AsnDecodeError:
        if the data is not a well-formed certificate.
    :raises MissingPublicKey:
        if the subject public key cannot be loaded.
    """
    try:
        cert = x509.Certificate.load(der_bytes, strict=True)
        # force a full parse
        cert.native
    except (ValueError, TypeError) as e:
        raise AsnDecodeError(f"Failed to decode certificate: {e}") from e
    public_key_handle(cert)
    return cert


def parse_chain(pem_text: Union[str, bytes]) -> 'CertificateChain':
    """
    Parse a blob of concatenated PEM-encoded certificates into a chain.
    Text outside the certificate blocks is ignored.

    :param pem_text:
        The PEM text.
    :return:
        A :class:`CertificateChain` with the certificates in input order.
    :raises MalformedInput:
        if there are no certificate blocks in the input.
    """
    if isinstance(pem_text, bytes):
        pem_text = pem_text.decode('ascii', errors='replace')
    bodies = CERT_BLOCK_REGEX.findall(pem_text)
    if not bodies:
        raise MalformedInput("No certificates found")
    return CertificateChain(tuple(parse_single(unarmor(b)) for b in bodies))


def public_key_handle(cert: x509.Certificate):
    """
    Load the subject public key of a certificate as a ``cryptography``
    public key object.
    """
    try:
        return serialization.load_der_public_key(cert.public_key.dump())
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise MissingPublicKey(
            f"Could not load public key of certificate with serial "
            f"{cert.serial_number:x}: {e}"
        ) from e


def name_attributes(name: x509.Name) -> List[Tuple[str, str]]:
    """
    Flatten a distinguished name into an ordered list of
    ``(attribute type, value)`` pairs.
    """
    result = []
    for rdn in name.chosen:
        for type_and_value in rdn:
            result.append(
                (
                    type_and_value['type'].native,
                    str(type_and_value['value'].native),
                )
            )
    return result


def is_self_signed(cert: x509.Certificate) -> bool:
    return cert.self_signed != 'no'


def same_certificate(cert1: x509.Certificate, cert2: x509.Certificate):
    return cert1.dump() == cert2.dump()


@dataclass(frozen=True)
class CertificateChain:
    """
    Ordered, non-empty sequence of certificates. Index 0 is the signer.
    """

    certs: Tuple[x509.Certificate, ...]

    def __post_init__(self):
        if not self.certs:
            raise MalformedInput("A certificate chain cannot be empty")

    def __iter__(self):
        return iter(self.certs)

    def __len__(self):
        return len(self.certs)

    def __getitem__(self, item):
        return self.certs[item]

    @property
    def signer(self) -> x509.Certificate:
        return self.certs[0]

    @property
    def root(self) -> Optional[x509.Certificate]:
        """
        The last certificate in the chain, if it is self-signed.
        """
        last = self.certs[-1]
        return last if is_self_signed(last) else None

    @property
    def intermediates(self) -> Tuple[x509.Certificate, ...]:
        end = -1 if len(self.certs) > 1 and self.root is not None else None
        return self.certs[1:end]

    def roles(self) -> List[Tuple[str, x509.Certificate]]:
        """
        Label each certificate in the chain with its role.
        """
        result = [(ROLE_SIGNER, self.signer)]
        result.extend((ROLE_INTERMEDIATE, c) for c in self.intermediates)
        if len(self.certs) > 1 and self.root is not None:
            result.append((ROLE_ROOT, self.certs[-1]))
        return result

    def as_pem(self) -> bytes:
        return b''.join(armor('CERTIFICATE', c.dump()) for c in self.certs)


def order_embedded_certs(
    signer: x509.Certificate, embedded: Iterable[x509.Certificate]
) -> CertificateChain:
    """
    Arrange the certificates embedded in a signed envelope into a chain:
    the signer's certificate first, a self-signed certificate (if any) last,
    and all others in between in the order they were embedded.

    :param signer:
        The certificate used to verify the signature.
    :param embedded:
        The certificates found in the envelope.
    """
    intermediates = []
    roots = []
    for cert in embedded:
        if same_certificate(cert, signer):
            continue
        if is_self_signed(cert):
            roots.append(cert)
        else:
            intermediates.append(cert)
    if len(roots) > 1:
        logger.debug(
            f"Envelope contains {len(roots)} self-signed certificates; "
            f"placing all of them at the end of the chain"
        )
    return CertificateChain(tuple([signer] + intermediates + roots))


@dataclass(frozen=True)
class CertificateSummary:
    """
    Display-oriented digest of a certificate.
    """

    subject: str
    issuer: str
    subject_attributes: List[Tuple[str, str]]
    issuer_attributes: List[Tuple[str, str]]
    serial_number: int
    not_valid_before: datetime
    not_valid_after: datetime

    @classmethod
    def from_cert(cls, cert: x509.Certificate) -> 'CertificateSummary':
        return cls(
            subject=cert.subject.human_friendly,
            issuer=cert.issuer.human_friendly,
            subject_attributes=name_attributes(cert.subject),
            issuer_attributes=name_attributes(cert.issuer),
            serial_number=cert.serial_number,
            not_valid_before=cert.not_valid_before,
            not_valid_after=cert.not_valid_after,
        )
