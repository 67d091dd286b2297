"""
Discovery of softcards in the key management data directory of the signing
device.

A softcard is a subdirectory of the store root. It is considered valid if it
contains at least one key-related file: a file ending in ``.key`` or ``.crt``,
or a file whose name contains ``key_``. Certificates associated with a
softcard are the ``.crt`` files it contains.

Directory contents are scanned afresh on every call; nothing is cached.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..errors import RemoteOperationFailed

__all__ = [
    'SoftCard',
    'SoftCardCertificate',
    'discover_softcards',
    'get_softcard',
    'collect_softcard_certificates',
    'scrape_pem_labels',
]

logger = logging.getLogger(__name__)

UNKNOWN_SUBJECT = 'Unknown Subject'
UNKNOWN_ISSUER = 'Unknown Issuer'

_SUBJECT_LINE = re.compile(r'^\s*Subject:\s*(.+?)\s*$', re.MULTILINE)
_ISSUER_LINE = re.compile(r'^\s*Issuer:\s*(.+?)\s*$', re.MULTILINE)


@dataclass(frozen=True)
class SoftCard:
    name: str
    """Name of the softcard (i.e. the directory name)."""

    path: str
    """Full path to the softcard directory."""

    is_valid: bool
    """Whether the directory could be read and holds key material."""

    certificates: Tuple[str, ...] = ()
    """File names of the certificates in the softcard directory."""


@dataclass(frozen=True)
class SoftCardCertificate:
    id: str
    """Identifier of the form ``<card name>:<file name>``."""

    card_name: str
    key_id: str
    """File name without the ``.crt`` extension."""

    pem_data: str
    subject: str
    issuer: str


def _is_key_file(file_name: str) -> bool:
    return (
        file_name.endswith('.key')
        or file_name.endswith('.crt')
        or 'key_' in file_name
    )


def _list_dir(root: str) -> List[str]:
    try:
        return sorted(os.listdir(root))
    except OSError as e:
        raise RemoteOperationFailed(
            f"Could not read softcard store at {root}: {e}"
        ) from e


def _inspect_card(root: str, name: str) -> Optional[SoftCard]:
    path = os.path.join(root, name)
    try:
        files = sorted(os.listdir(path))
    except OSError as e:
        logger.warning(f"Could not read softcard directory {path}: {e}")
        return SoftCard(name=name, path=path, is_valid=False)
    if not any(_is_key_file(f) for f in files):
        logger.debug(f"Directory {path} does not contain key material")
        return None
    return SoftCard(
        name=name,
        path=path,
        is_valid=True,
        certificates=tuple(f for f in files if f.endswith('.crt')),
    )


def discover_softcards(root: str) -> List[SoftCard]:
    """
    Scan the softcard store.

    Directories without key material are skipped; directories that cannot be
    read are reported as invalid softcards.

    :param root:
        Root directory of the softcard store.
    :return:
        A list of :class:`SoftCard` objects, sorted by name.
    :raises RemoteOperationFailed:
        if the root directory cannot be read.
    """
    result = []
    for name in _list_dir(root):
        if not os.path.isdir(os.path.join(root, name)):
            continue
        card = _inspect_card(root, name)
        if card is not None:
            result.append(card)
    return result


def get_softcard(root: str, card_name: str) -> SoftCard:
    """
    Look up a single softcard by name.

    :raises RemoteOperationFailed:
        if there is no such softcard.
    """
    path = os.path.join(root, card_name)
    if os.path.basename(os.path.normpath(path)) != card_name or \
            not os.path.isdir(path):
        raise RemoteOperationFailed(f"Softcard '{card_name}' not found")
    card = _inspect_card(root, card_name)
    if card is None:
        raise RemoteOperationFailed(
            f"Softcard '{card_name}' does not contain key material"
        )
    return card


def scrape_pem_labels(text: str) -> Tuple[str, str]:
    """
    Best-effort extraction of the subject and issuer from the textual
    preamble that some tools write in front of PEM blocks
    (``Subject: ...`` and ``Issuer: ...`` lines). This does not parse the
    certificate itself.

    :return:
        A tuple ``(subject, issuer)``, with placeholder values for anything
        that could not be found.
    """
    subject_match = _SUBJECT_LINE.search(text)
    issuer_match = _ISSUER_LINE.search(text)
    return (
        subject_match.group(1) if subject_match else UNKNOWN_SUBJECT,
        issuer_match.group(1) if issuer_match else UNKNOWN_ISSUER,
    )


def collect_softcard_certificates(root: str) -> List[SoftCardCertificate]:
    """
    Read the certificate files of all valid softcards.

    Unreadable certificate files are skipped with a warning.
    """
    result = []
    for card in discover_softcards(root):
        if not card.is_valid:
            continue
        for cert_file in card.certificates:
            cert_path = os.path.join(card.path, cert_file)
            try:
                with open(cert_path, 'r', errors='replace') as f:
                    pem_data = f.read()
            except OSError as e:
                logger.warning(
                    f"Could not read certificate file {cert_path}: {e}"
                )
                continue
            subject, issuer = scrape_pem_labels(pem_data)
            result.append(
                SoftCardCertificate(
                    id=f"{card.name}:{cert_file}",
                    card_name=card.name,
                    key_id=cert_file[:-len('.crt')],
                    pem_data=pem_data,
                    subject=subject,
                    issuer=issuer,
                )
            )
    return result
