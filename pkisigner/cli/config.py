from dataclasses import dataclass
from typing import Dict, Optional

import yaml

from ..config.errors import ConfigurationError
from ..config.local_keys import PemDerSignatureConfig
from ..config.logging import LogConfig, parse_logging_config
from ..config.remote import RemoteSignerConfig
from ..sign.general import DEFAULT_MD, SUPPORTED_DIGEST_ALGORITHMS

__all__ = ['CLIConfig', 'CLIRootConfig', 'parse_cli_config']


@dataclass
class CLIConfig:
    """
    CLI configuration settings.
    """

    remote_signer: Optional[RemoteSignerConfig]
    """
    Connection settings for the remote signing device, if configured.
    """

    pemder_setups: Dict[str, dict]
    """
    Named PEM/DER key material setups. The values in this dictionary are
    themselves dictionaries with the keys described in
    :class:`.PemDerSignatureConfig`.

    Callers should not process this information directly, but rely on
    :meth:`get_pemder_config` instead.
    """

    digest_algorithm: str
    """
    Digest algorithm to sign with (global default).
    """

    raw_config: dict
    """
    The raw config data parsed into a Python dictionary.
    """

    def get_pemder_config(self, name: str) -> PemDerSignatureConfig:
        """
        Retrieve a PEM/DER setup by name.

        :param name:
            The name of the setup.
        :return:
            A :class:`.PemDerSignatureConfig` object.
        """
        try:
            setup = dict(self.pemder_setups[name])
        except KeyError:
            raise ConfigurationError(f"There's no PEM/DER setup named '{name}'")
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"PEM/DER setup '{name}' should be a dictionary: {e}"
            )
        setup.setdefault('digest-algorithm', self.digest_algorithm)
        return PemDerSignatureConfig.from_config(setup)


@dataclass(frozen=True)
class CLIRootConfig:
    """
    Config settings that are only relevant to the CLI root and are not exposed
    to subcommands.
    """

    config: CLIConfig
    """
    General CLI config.
    """

    log_config: Dict[Optional[str], LogConfig]
    """
    Per-module logging configuration. The keys in this dictionary are
    module names, the :class:`.LogConfig` values define the logging settings.

    The ``None`` key houses the configuration for the root logger, if any.
    """


def parse_cli_config(yaml_str) -> CLIRootConfig:
    config_dict = yaml.safe_load(yaml_str) or {}
    if not isinstance(config_dict, dict):
        raise ConfigurationError("Configuration should be a dictionary")
    log_config_spec = config_dict.get('logging', {})
    return CLIRootConfig(
        log_config=parse_logging_config(log_config_spec),
        config=CLIConfig(
            **process_config_dict(config_dict), raw_config=config_dict
        ),
    )


def process_config_dict(config_dict: dict) -> dict:
    remote_signer_spec = config_dict.get('remote-signer', None)
    remote_signer = (
        RemoteSignerConfig.from_config(remote_signer_spec)
        if remote_signer_spec is not None
        else None
    )

    pemder_setups = config_dict.get('pemder-setups', {})
    if not isinstance(pemder_setups, dict):
        raise ConfigurationError("pemder-setups should be a dictionary")

    digest_algorithm = config_dict.get('digest-algorithm', DEFAULT_MD)
    if digest_algorithm not in SUPPORTED_DIGEST_ALGORITHMS:
        raise ConfigurationError(
            f"digest-algorithm must be one of "
            f"{', '.join(SUPPORTED_DIGEST_ALGORITHMS)}"
        )
    return dict(
        remote_signer=remote_signer,
        pemder_setups=pemder_setups,
        digest_algorithm=digest_algorithm,
    )
