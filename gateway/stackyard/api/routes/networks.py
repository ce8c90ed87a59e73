"""Network endpoints."""

from typing import Dict, List

from fastapi import APIRouter, Depends, HTTPException, status

from stackyard.core.dependencies import get_network_service
from stackyard.models.network import DockerNetwork, NetworkCreate, NetworkPruneResult
from stackyard.services.networks import NetworkService, is_builtin_network

router = APIRouter()


@router.get("", response_model=List[DockerNetwork])
async def list_networks(networks: NetworkService = Depends(get_network_service)):
    return await networks.list_networks()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_network(
    request: NetworkCreate,
    networks: NetworkService = Depends(get_network_service),
) -> Dict:
    await networks.create_network(request)
    return {"message": f"Network {request.name} created"}


@router.post("/prune", response_model=NetworkPruneResult)
async def prune_networks(networks: NetworkService = Depends(get_network_service)):
    return await networks.prune()


@router.get("/{network_id}", response_model=DockerNetwork)
async def get_network(network_id: str, networks: NetworkService = Depends(get_network_service)):
    network = await networks.get_network(network_id)
    if not network:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Network {network_id} not found",
        )
    return network


@router.delete("/{network_id}")
async def remove_network(
    network_id: str,
    networks: NetworkService = Depends(get_network_service),
) -> Dict:
    if is_builtin_network(network_id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot delete built-in network {network_id}",
        )
    await networks.remove_network(network_id)
    return {"message": "Network deleted"}
