"""Fleet node storage."""

from core.database import get_database
from models.node import Node


class NodeStore:
    def __init__(self):
        self.db = get_database()

    def _row_to_node(self, row: dict) -> Node:
        return Node(
            id=row["id"],
            name=row["name"],
            url=row["url"],
            token=row.get("token") or "",
            enabled=bool(row.get("enabled")),
            created_at=row["created_at"],
        )

    async def get(self, node_id: int) -> Node | None:
        row = await self.db.fetch_one("SELECT * FROM nodes WHERE id = ?", (node_id,))
        return self._row_to_node(row) if row else None

    async def list_nodes(self) -> list[Node]:
        rows = await self.db.fetch_all("SELECT * FROM nodes ORDER BY id")
        return [self._row_to_node(row) for row in rows]

    async def get_enabled(self, node_ids: list[int]) -> list[Node]:
        """Enabled nodes among ``node_ids``, in id order."""
        if not node_ids:
            return []
        placeholders = ", ".join(["?" for _ in node_ids])
        rows = await self.db.fetch_all(
            f"SELECT * FROM nodes WHERE enabled = 1 AND id IN ({placeholders}) ORDER BY id", tuple(node_ids)
        )
        return [self._row_to_node(row) for row in rows]

    async def create(self, node: Node) -> Node:
        node.id = await self.db.insert(
            "nodes",
            {
                "name": node.name,
                "url": node.url.rstrip("/"),
                "token": node.token,
                "enabled": node.enabled,
                "created_at": node.created_at.isoformat(),
            },
        )
        node.url = node.url.rstrip("/")
        return node

    async def delete(self, node_id: int) -> bool:
        return await self.db.delete("nodes", node_id)


_node_store: NodeStore | None = None


def get_node_store() -> NodeStore:
    global _node_store
    if _node_store is None:
        _node_store = NodeStore()
    return _node_store
