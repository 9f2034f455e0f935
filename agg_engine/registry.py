"""
Node registry: the single source of truth for node identities and
credentials.

Reads go straight to the store. Updates and removals take an exclusive
per-node lock so two writers never interleave on the same node, while
writers on different nodes proceed independently.
"""

import asyncio
import logging
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from typing import Any

from agg_common.errors import DuplicateError, NotFound, ValidationError
from agg_common.models import Node, RemoteTarget
from agg_common.repository import NodeRepository

logger = logging.getLogger(__name__)

PATCHABLE_FIELDS = ("host", "port", "account", "credential", "kind", "name")
# Changing any of these makes cached remote state of the node meaningless
CONNECTION_FIELDS = ("host", "port", "account", "credential", "kind")

NodeListener = Callable[[str], Awaitable[None]]


class NodeRegistry:
    """
    Registry of remote node connections.

    Credentials are write-only through the public operations: add/update
    accept them, but get/list return copies without them. Only
    resolve_target() reads a credential, to build the per-call RemoteTarget.
    """

    def __init__(
        self,
        repository: NodeRepository,
        supported_kinds: set[str] | None = None,
    ):
        """
        Initialize the registry.

        Args:
            repository: Durable store for node entries
            supported_kinds: Node kinds accepted on add/update. None accepts any.
        """
        self.repository = repository
        self.supported_kinds = supported_kinds
        self._locks: dict[str, asyncio.Lock] = {}
        self._add_lock = asyncio.Lock()
        self._listeners: list[NodeListener] = []

    def add_listener(self, listener: NodeListener) -> None:
        """
        Register a coroutine called with the node id whenever a node is
        removed or its connection details change.
        """
        self._listeners.append(listener)

    async def _notify(self, node_id: str) -> None:
        for listener in self._listeners:
            await listener(node_id)

    def _lock_for(self, node_id: str) -> asyncio.Lock:
        lock = self._locks.get(node_id)
        if lock is None:
            lock = self._locks[node_id] = asyncio.Lock()
        return lock

    def _validate(self, node: Node) -> None:
        if not node.host or not node.host.strip():
            raise ValidationError("Node host must not be empty")
        if not isinstance(node.port, int) or not 1 <= node.port <= 65535:
            raise ValidationError(f"Node port out of range: {node.port}")
        if not node.account or not node.account.strip():
            raise ValidationError("Node account must not be empty")
        if self.supported_kinds is not None and node.kind not in self.supported_kinds:
            raise ValidationError(f"Unsupported node kind: {node.kind}")

    async def find_by_address(
        self, host: str, port: int, account: str
    ) -> Node | None:
        """Find a node by its (host, port, account) triple, credential stripped."""
        for node in await self.repository.list_nodes():
            if (node.host, node.port, node.account) == (host, port, account):
                return node.public_copy()
        return None

    async def add(self, node: Node) -> str:
        """
        Register a node.

        Args:
            node: Node to register. An empty id gets a generated UUID.

        Returns:
            The node id

        Raises:
            DuplicateError: If the id, or the (host, port, account) triple,
                            is already registered
            ValidationError: If host, port, account or kind is invalid
        """
        self._validate(node)

        async with self._add_lock:
            if not node.id:
                node.id = str(uuid.uuid4())
            elif await self.repository.get_node(node.id) is not None:
                raise DuplicateError(f"Node {node.id} already exists", node_id=node.id)

            existing = await self.find_by_address(node.host, node.port, node.account)
            if existing is not None:
                raise DuplicateError(
                    f"Node {node.account}@{node.host}:{node.port} already registered "
                    f"as {existing.id}",
                    node_id=existing.id,
                )

            node.created_at = datetime.now(UTC)
            node.updated_at = None
            await self.repository.put_node(node)

        logger.info(f"Registered node {node.id} ({node.account}@{node.host}:{node.port})")
        return node.id

    async def get(self, node_id: str) -> Node:
        """
        Get a node without its credential.

        Raises:
            NotFound: If the node is not registered
        """
        node = await self.repository.get_node(node_id)
        if node is None:
            raise NotFound(f"Node {node_id} not found", node_id=node_id)
        return node.public_copy()

    async def list(
        self,
        host: str | None = None,
        account: str | None = None,
        kind: str | None = None,
    ) -> list[Node]:
        """
        List nodes, credentials stripped.

        Args:
            host: Only nodes whose host contains this text
            account: Only nodes with exactly this account
            kind: Only nodes of this kind

        Returns:
            Matching nodes, oldest first
        """
        nodes = await self.repository.list_nodes()
        result = []
        for node in nodes:
            if host and host not in node.host:
                continue
            if account and node.account != account:
                continue
            if kind and node.kind != kind:
                continue
            result.append(node.public_copy())
        return result

    async def update(self, node_id: str, patch: dict[str, Any]) -> Node:
        """
        Apply a partial update to a node.

        Args:
            node_id: UUID of the node
            patch: Field -> new value. Unknown fields are rejected; None values
                   are ignored.

        Returns:
            The updated node, credential stripped

        Raises:
            NotFound: If the node is not registered
            DuplicateError: If the new address collides with another node
            ValidationError: If the patch is invalid
        """
        unknown = set(patch) - set(PATCHABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        changes = {key: value for key, value in patch.items() if value is not None}

        async with self._lock_for(node_id):
            node = await self.repository.get_node(node_id)
            if node is None:
                raise NotFound(f"Node {node_id} not found", node_id=node_id)

            connection_changed = any(
                key in CONNECTION_FIELDS and getattr(node, key) != value
                for key, value in changes.items()
            )
            for key, value in changes.items():
                setattr(node, key, value)
            self._validate(node)

            clash = await self.find_by_address(node.host, node.port, node.account)
            if clash is not None and clash.id != node_id:
                raise DuplicateError(
                    f"Node {node.account}@{node.host}:{node.port} already registered "
                    f"as {clash.id}",
                    node_id=clash.id,
                )

            node.updated_at = datetime.now(UTC)
            await self.repository.put_node(node)

        logger.info(f"Updated node {node_id} (fields: {', '.join(sorted(changes))})")
        if connection_changed:
            await self._notify(node_id)
        return node.public_copy()

    async def remove(self, node_id: str) -> None:
        """
        Remove a node and notify listeners so its cached state is dropped.

        Raises:
            NotFound: If the node is not registered
        """
        async with self._lock_for(node_id):
            deleted = await self.repository.delete_node(node_id)
            if not deleted:
                raise NotFound(f"Node {node_id} not found", node_id=node_id)
            self._locks.pop(node_id, None)

        logger.info(f"Removed node {node_id}")
        await self._notify(node_id)

    async def resolve_target(self, node_id: str) -> RemoteTarget:
        """
        Build the connection record for a registered node.

        Raises:
            NotFound: If the node is not registered
        """
        node = await self.repository.get_node(node_id)
        if node is None:
            raise NotFound(f"Node {node_id} not found", node_id=node_id)
        return RemoteTarget(
            host=node.host,
            port=node.port,
            account=node.account,
            password=node.credential,
            kind=node.kind,
            node_id=node.id,
        )
