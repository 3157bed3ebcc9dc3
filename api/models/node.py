"""Fleet node models."""

from datetime import datetime

from pydantic import BaseModel, Field


class Node(BaseModel):
    """A peer proxy that receives certificate copies."""

    id: int | None = Field(None, description="Database identifier")
    name: str = Field(..., description="Environment name shown in notifications")
    url: str = Field(..., description="Base URL of the peer's API")
    token: str = Field(default="", description="Secret sent as X-Node-Secret")
    enabled: bool = Field(default=True)
    created_at: datetime = Field(default_factory=datetime.utcnow)


class NodeCreate(BaseModel):
    name: str = Field(..., min_length=1)
    url: str = Field(..., min_length=1, description="e.g. https://proxy-2.internal:8000")
    token: str = Field(default="")
    enabled: bool = Field(default=True)


class NodeResponse(BaseModel):
    id: int
    name: str
    url: str
    enabled: bool
    created_at: datetime

    @classmethod
    def from_node(cls, node: Node) -> "NodeResponse":
        return cls(id=node.id, name=node.name, url=node.url, enabled=node.enabled, created_at=node.created_at)
