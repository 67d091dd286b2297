import pytest
import yaml
from asn1crypto import pem
from click.testing import CliRunner

from pkisigner_tests.samples import DUMMY_PASSPHRASE, PAYLOAD, pki

INPUT_PATH = 'input.bin'
SIGNED_OUTPUT_PATH = 'output.p7'


def _const(v):
    def f(*_args, **_kwargs):
        return v

    return f


@pytest.fixture(scope="module", params=['rsa', 'ecdsa'])
def pki_arch_name(request):
    return request.param


@pytest.fixture(scope="module")
def pki_arch(pki_arch_name):
    return pki(pki_arch_name)


# cli_runner is autouse to ensure it gets priority in the dependency graph
@pytest.fixture(scope="function", autouse=True)
def cli_runner():
    runner = CliRunner()
    with runner.isolated_filesystem():
        with open(INPUT_PATH, 'wb') as outf:
            outf.write(PAYLOAD)
        yield runner


def _write_cert(cert, fname: str, use_pem: bool = True) -> str:
    with open(fname, 'wb') as outf:
        if use_pem:
            outf.write(pem.armor('CERTIFICATE', cert.dump()))
        else:
            outf.write(cert.dump())
    return fname


@pytest.fixture
def root_cert(pki_arch):
    return _write_cert(pki_arch.root, 'root.cert.pem')


@pytest.fixture
def user_cert(pki_arch):
    return _write_cert(pki_arch.signer, 'signer.crt', use_pem=False)


@pytest.fixture
def cert_chain(pki_arch, root_cert, user_cert):
    return (
        root_cert,
        _write_cert(pki_arch.interm, 'interm.cert.pem'),
        user_cert,
    )


def _write_user_key(pki_arch, passphrase=None) -> str:
    fname = 'signer.key.pem'
    with open(fname, 'wb') as outf:
        outf.write(pki_arch.signer_key_pem(passphrase))
    return fname


@pytest.fixture
def user_key(pki_arch):
    return _write_user_key(pki_arch)


@pytest.fixture
def encrypted_user_key(pki_arch):
    return _write_user_key(pki_arch, passphrase=DUMMY_PASSPHRASE.encode("utf8"))


def _write_config(config: dict, fname: str = 'pkisigner.yml'):
    with open(fname, 'w') as outf:
        yaml.dump(config, outf)
