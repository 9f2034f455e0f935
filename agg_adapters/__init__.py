"""
Aggregator Adapters module.

One RemoteClient implementation per remote CI family, selected by the
node's declared kind.
"""

from agg_common.errors import ValidationError

from .base import BuildRef, RemoteClient
from .jenkins import JenkinsClient

ADAPTER_KINDS: dict[str, type[RemoteClient]] = {
    JenkinsClient.kind: JenkinsClient,
}


def get_client(kind: str) -> RemoteClient:
    """
    Instantiate the client for a remote family.

    Raises:
        ValidationError: If no adapter handles this kind
    """
    try:
        client_cls = ADAPTER_KINDS[kind]
    except KeyError:
        raise ValidationError(f"Unsupported node kind: {kind}") from None
    return client_cls()


def default_clients() -> dict[str, RemoteClient]:
    """One client instance per supported kind."""
    return {kind: get_client(kind) for kind in ADAPTER_KINDS}


__all__ = [
    "ADAPTER_KINDS",
    "BuildRef",
    "JenkinsClient",
    "RemoteClient",
    "default_clients",
    "get_client",
]
