"""
Fleet node endpoints.

Nodes are peer proxies that receive copies of certificates listed with
their id in a certificate's `sync_node_ids`.
"""

from fastapi import APIRouter, HTTPException

from core.node_store import get_node_store
from models.node import Node, NodeCreate, NodeResponse

router = APIRouter(prefix="/nodes", tags=["Fleet Nodes"])


@router.get("/", response_model=list[NodeResponse], summary="List Nodes")
async def list_nodes() -> list[NodeResponse]:
    nodes = await get_node_store().list_nodes()
    return [NodeResponse.from_node(node) for node in nodes]


@router.post(
    "/",
    response_model=NodeResponse,
    status_code=201,
    summary="Add Node",
    description="""
    Register a peer node. `url` is the base URL of the peer's API;
    `token` is sent as `X-Node-Secret` and must equal the peer's
    `NODE_SECRET`.
    """,
)
async def create_node(data: NodeCreate) -> NodeResponse:
    node = await get_node_store().create(Node(**data.model_dump()))
    return NodeResponse.from_node(node)


@router.delete("/{node_id}", summary="Remove Node", responses={404: {"description": "Node not found"}})
async def delete_node(node_id: int) -> dict:
    if not await get_node_store().delete(node_id):
        raise HTTPException(
            status_code=404,
            detail={
                "error": "node_not_found",
                "message": f"Node {node_id} not found",
                "suggestion": "Use GET /nodes/ to list nodes",
            },
        )
    return {"success": True, "message": f"Node {node_id} removed"}
