import pytest

from pkisigner import keys
from pkisigner.errors import AsnDecodeError, InvalidBase64, MalformedInput
from pkisigner_tests.samples import DUMMY_PASSPHRASE, pki


@pytest.mark.parametrize(
    'data', [b'', b'\x00', b'\x00\x01\x02', bytes(range(256)) * 3]
)
def test_armor_unarmor(data):
    armored = keys.armor('PKCS11', data)
    assert armored.startswith(b'-----BEGIN PKCS11-----')
    assert keys.unarmor(armored) == data
    assert keys.unarmor(armored.decode('ascii'), expected_label='PKCS11') \
        == data


def test_armor_line_length():
    armored = keys.armor('PKCS11', b'\xaa' * 300)
    body_lines = armored.splitlines()[1:-1]
    assert all(len(line) <= 64 for line in body_lines)
    assert len(body_lines) > 1


def test_unarmor_bare_body():
    assert keys.unarmor('aGVsbG8=') == b'hello'


def test_unarmor_crlf():
    armored = keys.armor('CERTIFICATE', b'hello world').replace(b'\n', b'\r\n')
    assert keys.unarmor(armored) == b'hello world'


def test_unarmor_ignores_surrounding_text():
    armored = b'Subject: whatever\n' + keys.armor('PKCS11', b'xyz') + b'junk'
    assert keys.unarmor(armored) == b'xyz'


@pytest.mark.parametrize(
    'data',
    [
        '-----BEGIN PKCS11-----\naGVsbG8=\n',
        '-----BEGIN PKCS11-----\naGVsbG8=\n-----END CERTIFICATE-----\n',
        'aGVsbG8=\n-----END PKCS11-----\n',
    ],
)
def test_unarmor_unbalanced(data):
    with pytest.raises(MalformedInput):
        keys.unarmor(data)


def test_unarmor_wrong_label():
    armored = keys.armor('CERTIFICATE', b'hello')
    with pytest.raises(MalformedInput, match='Expected PEM label'):
        keys.unarmor(armored, expected_label='PKCS11')


@pytest.mark.parametrize(
    'body', ['aGVsbG8', 'aGVs*G8=', 'aGVsbG8==', '====']
)
def test_unarmor_bad_base64(body):
    data = f'-----BEGIN PKCS11-----\n{body}\n-----END PKCS11-----\n'
    with pytest.raises(InvalidBase64):
        keys.unarmor(data)


def test_unarmor_non_ascii():
    with pytest.raises(MalformedInput):
        keys.unarmor('-----BEGIN PKCS11-----\nä\n-----END PKCS11-----\n')


def test_detect():
    assert keys.detect(keys.armor('PKCS11', b'abc'))
    assert keys.detect(keys.armor('PKCS11', b'abc').decode('ascii'))
    assert not keys.detect(b'\x00\x00\x00\x10abc')
    assert keys.detect(b'\n  ' + keys.armor('PKCS11', b'abc'))
    # markers inside binary data do not count
    assert not keys.detect(b'\x00\x00\x00\x10' + keys.armor('PKCS11', b'abc'))


def test_load_certs_from_pemder(tmp_path):
    arch = pki('rsa')
    pem_file = tmp_path / 'chain.pem'
    pem_file.write_bytes(
        keys.armor('CERTIFICATE', arch.interm.dump())
        + keys.armor('CERTIFICATE', arch.root.dump())
    )
    der_file = tmp_path / 'signer.crt'
    der_file.write_bytes(arch.signer.dump())

    certs = list(keys.load_certs_from_pemder([str(pem_file), str(der_file)]))
    assert [c.dump() for c in certs] == [
        arch.interm.dump(),
        arch.root.dump(),
        arch.signer.dump(),
    ]
    with pytest.raises(ValueError, match='exactly 1'):
        keys.load_cert_from_pemder(str(pem_file))
    assert keys.load_cert_from_pemder(str(der_file)).dump() \
        == arch.signer.dump()


def test_load_certs_skips_other_blocks():
    arch = pki('rsa')
    data = keys.armor('PRIVATE KEY', b'\x00') + keys.armor(
        'CERTIFICATE', arch.signer.dump()
    )
    certs = list(keys.load_certs_from_pemder_data(data))
    assert len(certs) == 1


@pytest.mark.parametrize('kind', ['rsa', 'ecdsa'])
def test_load_private_key(tmp_path, kind):
    arch = pki(kind)
    key_file = tmp_path / 'key.pem'
    key_file.write_bytes(arch.signer_key_pem())
    key = keys.load_private_key_from_pemder(str(key_file), passphrase=None)
    assert key.dump() == arch.signer_key.dump()


def test_load_encrypted_private_key(tmp_path):
    arch = pki('rsa')
    passphrase = DUMMY_PASSPHRASE.encode('utf8')
    key_file = tmp_path / 'key.pem'
    key_file.write_bytes(arch.signer_key_pem(passphrase))
    key = keys.load_private_key_from_pemder(str(key_file), passphrase)
    assert key.algorithm == 'rsa'

    with pytest.raises(AsnDecodeError):
        keys.load_private_key_from_pemder(str(key_file), b'wrong')


def test_load_private_key_garbage():
    with pytest.raises(AsnDecodeError):
        keys.load_private_key_from_pemder_data(b'\x30\x03\x02\x01\x00', None)
