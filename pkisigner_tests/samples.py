"""
Test PKI material, generated once per test session.

Each architecture consists of a self-signed root, an intermediate CA and an
end-entity signer certificate.
"""

import functools
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from asn1crypto import keys, x509
from cryptography import x509 as pyca_x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, ed25519, rsa
from cryptography.x509.oid import NameOID

NOT_BEFORE = datetime(2020, 1, 1, tzinfo=timezone.utc)
NOT_AFTER = datetime(2040, 1, 1, tzinfo=timezone.utc)

DUMMY_PASSPHRASE = "secret"

PAYLOAD = b'Hello world!\n' * 32


def _generate_key(kind: str):
    if kind == 'rsa':
        return rsa.generate_private_key(public_exponent=65537, key_size=2048)
    elif kind == 'ecdsa':
        return ec.generate_private_key(ec.SECP256R1())
    elif kind == 'ed25519':
        return ed25519.Ed25519PrivateKey.generate()
    raise ValueError(kind)


def _name(common_name: str) -> pyca_x509.Name:
    return pyca_x509.Name(
        [
            pyca_x509.NameAttribute(NameOID.COUNTRY_NAME, 'BE'),
            pyca_x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'Testing'),
            pyca_x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        ]
    )


def _issue(
    subject: str,
    public_key,
    issuer: Optional[str],
    issuer_key,
    ca: bool,
    serial: int,
) -> x509.Certificate:
    builder = (
        pyca_x509.CertificateBuilder()
        .serial_number(serial)
        .subject_name(_name(subject))
        .issuer_name(_name(issuer or subject))
        .public_key(public_key)
        .not_valid_before(NOT_BEFORE)
        .not_valid_after(NOT_AFTER)
        .add_extension(
            pyca_x509.BasicConstraints(ca=ca, path_length=None),
            critical=True,
        )
    )
    if isinstance(issuer_key, ed25519.Ed25519PrivateKey):
        cert = builder.sign(issuer_key, None)
    else:
        cert = builder.sign(issuer_key, hashes.SHA256())
    return x509.Certificate.load(
        cert.public_bytes(serialization.Encoding.DER)
    )


def _to_asn1(private_key) -> keys.PrivateKeyInfo:
    return keys.PrivateKeyInfo.load(
        private_key.private_bytes(
            serialization.Encoding.DER,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )


@dataclass(frozen=True)
class SamplePKI:
    root: x509.Certificate
    interm: x509.Certificate
    signer: x509.Certificate
    signer_key_handle: object
    """The signer's private key, as a ``cryptography`` object."""

    @property
    def signer_key(self) -> keys.PrivateKeyInfo:
        return _to_asn1(self.signer_key_handle)

    @property
    def chain(self):
        """Issuer first, root last."""
        return [self.interm, self.root]

    def signer_key_pem(self, passphrase: Optional[bytes] = None) -> bytes:
        return self.signer_key_handle.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.BestAvailableEncryption(
                passphrase
            )
            if passphrase
            else serialization.NoEncryption(),
        )


@functools.lru_cache(maxsize=None)
def pki(kind: str) -> SamplePKI:
    """
    Build (or retrieve from cache) a test PKI. The CA keys are always RSA;
    ``kind`` determines the signer's key type.
    """
    root_key = _generate_key('rsa')
    interm_key = _generate_key('rsa')
    signer_key = _generate_key(kind)
    root = _issue(
        'Root CA', root_key.public_key(), None, root_key, ca=True, serial=1
    )
    interm = _issue(
        'Intermediate CA',
        interm_key.public_key(),
        'Root CA',
        root_key,
        ca=True,
        serial=2,
    )
    signer = _issue(
        f'Signer {kind.upper()}',
        signer_key.public_key(),
        'Intermediate CA',
        interm_key,
        ca=False,
        serial=0x1001,
    )
    return SamplePKI(
        root=root, interm=interm, signer=signer, signer_key_handle=signer_key
    )


@functools.lru_cache(maxsize=None)
def unrelated_rsa_key():
    return _generate_key('rsa')


@functools.lru_cache(maxsize=None)
def self_signed_signer():
    """
    A self-signed RSA certificate and its key.
    """
    key = _generate_key('rsa')
    cert = _issue(
        'Lone Signer', key.public_key(), None, key, ca=False, serial=0x2002
    )
    return cert, key


TESTING_PKI_KINDS = ('rsa', 'ecdsa')
