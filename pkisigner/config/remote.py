from dataclasses import dataclass
from typing import Optional

from . import api
from .errors import ConfigurationError

__all__ = [
    'RemoteSignerConfig',
    'DEFAULT_SOCKET_PATH',
    'DEFAULT_KMDATA_PATH',
    'DEFAULT_PORT',
    'DEFAULT_TIMEOUT',
    'DEFAULT_MAX_RESPONSE_SIZE',
]

DEFAULT_SOCKET_PATH = '/opt/nfast/sockets/nserver'
DEFAULT_KMDATA_PATH = '/opt/nfast/kmdata/local'
DEFAULT_PORT = 9004
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RESPONSE_SIZE = 1024 * 1024


@dataclass(frozen=True)
class RemoteSignerConfig(api.ConfigurableMixin):
    """
    Connection settings for a remote signing device.

    Exactly one transport must be configured: either :attr:`host` (and
    optionally :attr:`port`) for TCP, or :attr:`socket_path` for a local
    socket. The configuration is passed explicitly to the client; nothing is
    read from the environment.
    """

    host: Optional[str] = None
    """
    Host name of the device, when connecting over TCP.
    """

    port: int = DEFAULT_PORT
    """
    TCP port of the device.
    """

    socket_path: Optional[str] = None
    """
    Filesystem path of the device's local socket.
    """

    kmdata_path: Optional[str] = None
    """
    Root directory of the softcard store. If set, softcards referenced in
    signing requests are required to exist there.
    """

    timeout: float = DEFAULT_TIMEOUT
    """
    Time allotted to each command (sending the request and receiving the
    full response), in seconds.
    """

    connect_timeout: Optional[float] = None
    """
    Time allotted to establishing a connection, in seconds.
    Defaults to :attr:`timeout`.
    """

    max_response_size: int = DEFAULT_MAX_RESPONSE_SIZE
    """
    Upper bound on the size of a single response, in bytes.
    """

    def __post_init__(self):
        if (self.host is None) == (self.socket_path is None):
            raise ConfigurationError(
                "Exactly one of 'host' and 'socket-path' must be specified."
            )
        if self.timeout <= 0:
            raise ConfigurationError("'timeout' must be positive.")
        if self.connect_timeout is not None and self.connect_timeout <= 0:
            raise ConfigurationError("'connect-timeout' must be positive.")
        if self.max_response_size <= 0:
            raise ConfigurationError("'max-response-size' must be positive.")

    @property
    def effective_connect_timeout(self) -> float:
        if self.connect_timeout is None:
            return self.timeout
        return self.connect_timeout

    @property
    def uses_socket_path(self) -> bool:
        return self.socket_path is not None

    @property
    def address(self) -> str:
        if self.socket_path is not None:
            return self.socket_path
        return f"{self.host}:{self.port}"

    @classmethod
    def process_entries(cls, config_dict):
        super().process_entries(config_dict)
        api.process_seconds(config_dict, 'timeout')
        api.process_seconds(config_dict, 'connect_timeout')
        api.process_integer(config_dict, 'port')
        api.process_integer(config_dict, 'max_response_size')
