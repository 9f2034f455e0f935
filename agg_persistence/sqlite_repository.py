"""
SQLite implementation of the node repository.

Uses aiosqlite for async operations.
"""

from datetime import datetime

import aiosqlite

from agg_common.models import Node
from agg_common.repository import NodeRepository

_COLUMNS = "id, host, port, account, kind, name, credential, created_at, updated_at"


class SQLiteNodeRepository(NodeRepository):
    """
    SQLite-based node storage implementation.

    Uses a single database file with one table:
    - nodes: registered remote CI servers, credential included
    """

    def __init__(self, db_path: str = "agg_nodes.db"):
        """
        Initialize the SQLite repository.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = db_path
        self._connection: aiosqlite.Connection | None = None

    async def _get_connection(self) -> aiosqlite.Connection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.db_path)
        return self._connection

    async def initialize(self) -> None:
        """
        Create the nodes table if it doesn't exist.

        Schema:
        - nodes table: (id, host, port, account, kind, name, credential,
          created_at, updated_at)
        """
        conn = await self._get_connection()

        await conn.execute("""
            CREATE TABLE IF NOT EXISTS nodes (
                id TEXT PRIMARY KEY,
                host TEXT NOT NULL,
                port INTEGER NOT NULL,
                account TEXT NOT NULL,
                kind TEXT NOT NULL DEFAULT 'jenkins',
                name TEXT,
                credential TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT
            )
        """)

        # Address lookups back duplicate detection
        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_nodes_address
            ON nodes(host, port, account)
        """)

        await conn.commit()

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    @staticmethod
    def _row_to_node(row: tuple) -> Node:
        (
            node_id,
            host,
            port,
            account,
            kind,
            name,
            credential,
            created_at_str,
            updated_at_str,
        ) = row
        return Node(
            id=node_id,
            host=host,
            port=int(port),
            account=account,
            kind=kind,
            name=name,
            credential=credential,
            created_at=datetime.fromisoformat(created_at_str),
            updated_at=datetime.fromisoformat(updated_at_str)
            if updated_at_str
            else None,
        )

    async def put_node(self, node: Node) -> None:
        """
        Insert or replace a node.

        Args:
            node: Node object to persist
        """
        conn = await self._get_connection()

        await conn.execute(
            f"""
            INSERT OR REPLACE INTO nodes ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                node.id,
                node.host,
                node.port,
                node.account,
                node.kind,
                node.name,
                node.credential,
                node.created_at.isoformat(),
                node.updated_at.isoformat() if node.updated_at else None,
            ),
        )
        await conn.commit()

    async def get_node(self, node_id: str) -> Node | None:
        """
        Retrieve a node by its ID.

        Args:
            node_id: UUID of the node to retrieve

        Returns:
            Node object if found, None otherwise
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_COLUMNS} FROM nodes WHERE id = ?",
            (node_id,),
        )
        row = await cursor.fetchone()

        if row is None:
            return None
        return self._row_to_node(row)

    async def list_nodes(self) -> list[Node]:
        """
        List all nodes, oldest first.

        Returns:
            List of Node objects
        """
        conn = await self._get_connection()

        cursor = await conn.execute(
            f"SELECT {_COLUMNS} FROM nodes ORDER BY created_at ASC"
        )
        rows = await cursor.fetchall()

        return [self._row_to_node(row) for row in rows]

    async def delete_node(self, node_id: str) -> bool:
        """
        Delete a node.

        Args:
            node_id: UUID of the node to delete

        Returns:
            True if a row was deleted
        """
        conn = await self._get_connection()

        cursor = await conn.execute("DELETE FROM nodes WHERE id = ?", (node_id,))
        await conn.commit()

        return cursor.rowcount > 0
