import pytest
from cryptography.hazmat.primitives import serialization

from pkisigner import chain
from pkisigner.errors import AsnDecodeError, MalformedInput
from pkisigner.keys import armor
from pkisigner_tests.samples import pki, self_signed_signer


def _pem(*certs):
    return b''.join(armor('CERTIFICATE', c.dump()) for c in certs)


def test_parse_single():
    arch = pki('rsa')
    cert = chain.parse_single(arch.signer.dump())
    assert cert.serial_number == 0x1001
    assert cert.subject.native['common_name'] == 'Signer RSA'


@pytest.mark.parametrize(
    'der', [b'', b'\x30\x00', b'\x04\x03abc', b'garbage']
)
def test_parse_single_garbage(der):
    with pytest.raises(AsnDecodeError):
        chain.parse_single(der)


def test_parse_single_truncated():
    der = pki('rsa').signer.dump()
    with pytest.raises(AsnDecodeError):
        chain.parse_single(der[:-10])


def test_parse_chain():
    arch = pki('ecdsa')
    pem_text = (
        b'Some preamble\n'
        + _pem(arch.signer, arch.interm)
        + b'in between\n'
        + _pem(arch.root)
    )
    parsed = chain.parse_chain(pem_text)
    assert len(parsed) == 3
    assert parsed.signer.dump() == arch.signer.dump()
    assert parsed.root.dump() == arch.root.dump()
    assert [c.dump() for c in parsed.intermediates] == [arch.interm.dump()]
    assert parsed.as_pem() == _pem(arch.signer, arch.interm, arch.root)


def test_parse_chain_str():
    arch = pki('rsa')
    parsed = chain.parse_chain(_pem(arch.signer).decode('ascii'))
    assert len(parsed) == 1
    assert parsed.root is None
    assert parsed.intermediates == ()


def test_parse_chain_empty():
    with pytest.raises(MalformedInput, match='No certificates found'):
        chain.parse_chain('nothing to see here')


def test_empty_chain_rejected():
    with pytest.raises(MalformedInput):
        chain.CertificateChain(())


def test_roles():
    arch = pki('rsa')
    parsed = chain.CertificateChain((arch.signer, arch.interm, arch.root))
    roles = [role for role, _ in parsed.roles()]
    assert roles == ['Signer', 'Intermediate CA', 'Root CA']


def test_roles_without_root():
    arch = pki('rsa')
    parsed = chain.CertificateChain((arch.signer, arch.interm))
    roles = [role for role, _ in parsed.roles()]
    assert roles == ['Signer', 'Intermediate CA']


def test_roles_lone_self_signed():
    cert, _ = self_signed_signer()
    parsed = chain.CertificateChain((cert,))
    assert [role for role, _ in parsed.roles()] == ['Signer']


def test_is_self_signed():
    arch = pki('rsa')
    assert chain.is_self_signed(arch.root)
    assert not chain.is_self_signed(arch.interm)
    assert not chain.is_self_signed(arch.signer)


@pytest.mark.parametrize(
    'embedded_order',
    [
        ('signer', 'interm', 'root'),
        ('root', 'signer', 'interm'),
        ('root', 'interm', 'signer'),
        ('interm', 'root'),
    ],
)
def test_order_embedded_certs(embedded_order):
    arch = pki('rsa')
    embedded = [getattr(arch, label) for label in embedded_order]
    ordered = chain.order_embedded_certs(arch.signer, embedded)
    assert [c.dump() for c in ordered] == [
        arch.signer.dump(),
        arch.interm.dump(),
        arch.root.dump(),
    ]


def test_name_attributes():
    arch = pki('rsa')
    attrs = chain.name_attributes(arch.signer.subject)
    assert attrs == [
        ('country_name', 'BE'),
        ('organization_name', 'Testing'),
        ('common_name', 'Signer RSA'),
    ]


def test_summary():
    arch = pki('rsa')
    summary = chain.CertificateSummary.from_cert(arch.signer)
    assert 'Signer RSA' in summary.subject
    assert 'Intermediate CA' in summary.issuer
    assert summary.serial_number == 0x1001
    assert summary.not_valid_before.year == 2020
    assert summary.not_valid_after.year == 2040


def test_public_key_handle():
    arch = pki('ecdsa')
    handle = chain.public_key_handle(arch.signer)
    expected = arch.signer_key_handle.public_key()
    assert handle.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ) == expected.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )
