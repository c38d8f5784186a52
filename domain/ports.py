# domain/ports.py
from __future__ import annotations
from typing import Callable, Protocol

from domain.models import LogEvent, ProgressEvent


class CredentialProvider(Protocol):
    """
    Proveedor de token opaco. get_access_token() lanza NotAuthenticated si no
    hay credencial válida; invalidate() obliga a renovar en la siguiente llamada.
    """

    def get_access_token(self) -> str: ...

    def invalidate(self) -> None: ...


ProgressSink = Callable[[ProgressEvent], None]
LogSink = Callable[[LogEvent], None]
