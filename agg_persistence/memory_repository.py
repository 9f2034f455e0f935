"""
In-memory implementation of the node repository.

Nothing survives a restart. Used for ephemeral deployments and tests.
"""

from dataclasses import replace

from agg_common.models import Node
from agg_common.repository import NodeRepository


class InMemoryNodeRepository(NodeRepository):
    """Dict-backed node storage; copies on the way in and out."""

    def __init__(self) -> None:
        self._nodes: dict[str, Node] = {}

    async def initialize(self) -> None:
        pass

    async def close(self) -> None:
        pass

    async def put_node(self, node: Node) -> None:
        self._nodes[node.id] = replace(node)

    async def get_node(self, node_id: str) -> Node | None:
        node = self._nodes.get(node_id)
        return replace(node) if node else None

    async def list_nodes(self) -> list[Node]:
        nodes = sorted(self._nodes.values(), key=lambda n: n.created_at)
        return [replace(node) for node in nodes]

    async def delete_node(self, node_id: str) -> bool:
        return self._nodes.pop(node_id, None) is not None
