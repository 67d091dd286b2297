import os

import pytest

from pkisigner.errors import RemoteOperationFailed
from pkisigner.remote import softcards

CERT_TEXT = """Subject: CN=Signer, O=Testing
Issuer: CN=Intermediate CA, O=Testing
-----BEGIN CERTIFICATE-----
AAAA
-----END CERTIFICATE-----
"""


@pytest.fixture
def kmdata(tmp_path):
    (tmp_path / 'world').write_text('not a softcard')
    card_a = tmp_path / 'card-a'
    card_a.mkdir()
    (card_a / 'signer.crt').write_text(CERT_TEXT)
    (card_a / 'signer.key').write_text('')
    card_b = tmp_path / 'card-b'
    card_b.mkdir()
    (card_b / 'key_pkcs11_abcdef').write_text('')
    empty = tmp_path / 'empty'
    empty.mkdir()
    (empty / 'README').write_text('')
    return tmp_path


def test_discover_softcards(kmdata):
    cards = softcards.discover_softcards(str(kmdata))
    assert [c.name for c in cards] == ['card-a', 'card-b']
    card_a, card_b = cards
    assert card_a.is_valid and card_b.is_valid
    assert card_a.path == os.path.join(str(kmdata), 'card-a')
    assert card_a.certificates == ('signer.crt',)
    assert card_b.certificates == ()


def test_discover_missing_root(tmp_path):
    with pytest.raises(RemoteOperationFailed):
        softcards.discover_softcards(str(tmp_path / 'nope'))


@pytest.mark.skipif(
    hasattr(os, 'geteuid') and os.geteuid() == 0,
    reason='permissions are not enforced for root',
)
def test_unreadable_softcard(kmdata):
    locked = kmdata / 'locked'
    locked.mkdir()
    locked.chmod(0)
    try:
        cards = softcards.discover_softcards(str(kmdata))
    finally:
        locked.chmod(0o755)
    locked_card, = [c for c in cards if c.name == 'locked']
    assert not locked_card.is_valid


def test_get_softcard(kmdata):
    card = softcards.get_softcard(str(kmdata), 'card-b')
    assert card.name == 'card-b'
    with pytest.raises(RemoteOperationFailed, match='not found'):
        softcards.get_softcard(str(kmdata), 'card-c')
    with pytest.raises(RemoteOperationFailed, match='key material'):
        softcards.get_softcard(str(kmdata), 'empty')


@pytest.mark.parametrize('name', ['../card-a', 'card-a/..', ''])
def test_get_softcard_rejects_paths(kmdata, name):
    with pytest.raises(RemoteOperationFailed):
        softcards.get_softcard(str(kmdata / 'card-b'), name)


def test_scrape_pem_labels():
    assert softcards.scrape_pem_labels(CERT_TEXT) == (
        'CN=Signer, O=Testing',
        'CN=Intermediate CA, O=Testing',
    )
    assert softcards.scrape_pem_labels('-----BEGIN CERTIFICATE-----') == (
        'Unknown Subject',
        'Unknown Issuer',
    )


def test_collect_softcard_certificates(kmdata):
    cert, = softcards.collect_softcard_certificates(str(kmdata))
    assert cert.id == 'card-a:signer.crt'
    assert cert.card_name == 'card-a'
    assert cert.key_id == 'signer'
    assert cert.pem_data == CERT_TEXT
    assert cert.subject == 'CN=Signer, O=Testing'
    assert cert.issuer == 'CN=Intermediate CA, O=Testing'
