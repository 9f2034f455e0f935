"""
Abstract repository interface for node registry persistence.

This module defines the key-value contract that any durable store must
follow, allowing easy swapping between SQLite, an external KV service, etc.
"""

from abc import ABC, abstractmethod

from .models import Node


class NodeRepository(ABC):
    """
    Abstract base class for node storage operations.

    Nodes are stored whole under their id. Implementations must provide
    async-safe access and handle their own connection management.
    Stored nodes include the credential; filtering it out is the registry's
    job, not the store's.
    """

    @abstractmethod
    async def put_node(self, node: Node) -> None:
        """
        Insert or replace a node under node.id.

        Args:
            node: Node object to persist (credential included)
        """
        pass

    @abstractmethod
    async def get_node(self, node_id: str) -> Node | None:
        """
        Retrieve a node by its ID.

        Args:
            node_id: UUID of the node to retrieve

        Returns:
            Node object if found, None otherwise
        """
        pass

    @abstractmethod
    async def list_nodes(self) -> list[Node]:
        """
        List all stored nodes, oldest first.

        Returns:
            List of Node objects
        """
        pass

    @abstractmethod
    async def delete_node(self, node_id: str) -> bool:
        """
        Delete a node.

        Args:
            node_id: UUID of the node to delete

        Returns:
            True if a node was deleted, False if it did not exist
        """
        pass

    @abstractmethod
    async def initialize(self) -> None:
        """
        Initialize the store (create tables, etc.).

        Called once at application startup.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Close connections and cleanup resources.

        Called at application shutdown.
        """
        pass
