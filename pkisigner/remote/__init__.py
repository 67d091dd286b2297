"""
Client for remote signing devices (HSMs) speaking a JSON-over-socket
protocol, and discovery of the softcards they manage.
"""

from .client import ConnectionState, RemoteConnection, RemoteSignerClient
from .protocol import RemoteCommand, RemoteSignRequest, RemoteSignResponse

__all__ = [
    'ConnectionState',
    'RemoteConnection',
    'RemoteSignerClient',
    'RemoteCommand',
    'RemoteSignRequest',
    'RemoteSignResponse',
]
