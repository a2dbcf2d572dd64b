"""Session clients package.

The bridge client is imported lazily so importing the package never
requires the subprocess machinery.
"""

from .base import (
    ConnectionUpdate,
    CredentialsUpdate,
    MessagesUpsert,
    SessionClient,
    SessionEvent,
)

_LAZY_MAP: dict[str, tuple[str, str]] = {
    "BridgeSessionClient": (".bridge", "BridgeSessionClient"),
    "BridgeUnavailable": (".bridge", "BridgeUnavailable"),
    "BridgeError": (".bridge", "BridgeError"),
}


def __getattr__(name: str):
    if name in _LAZY_MAP:
        module_path, attr = _LAZY_MAP[name]
        import importlib

        module = importlib.import_module(module_path, __package__)
        value = getattr(module, attr)
        globals()[name] = value
        return value
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = [
    "ConnectionUpdate",
    "CredentialsUpdate",
    "MessagesUpsert",
    "SessionClient",
    "SessionEvent",
    "BridgeSessionClient",
    "BridgeUnavailable",
    "BridgeError",
]
