"""
Venue state readers for the OpportunityMonitor.

Concentrated venues are read with slot0() + liquidity(); constant-product
venues with getReserves(). The reserved venue type has no reader.
"""

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Dict

from .errors import VenueRevert
from .models import Venue, VenueState, VenueType
from .network import NetworkManager

logger = logging.getLogger(__name__)

V3_POOL_ABI = [
    {
        "inputs": [],
        "name": "slot0",
        "outputs": [
            {"name": "sqrtPriceX96", "type": "uint160"},
            {"name": "tick", "type": "int24"},
            {"name": "observationIndex", "type": "uint16"},
            {"name": "observationCardinality", "type": "uint16"},
            {"name": "observationCardinalityNext", "type": "uint16"},
            {"name": "feeProtocol", "type": "uint8"},
            {"name": "unlocked", "type": "bool"}
        ],
        "stateMutability": "view",
        "type": "function"
    },
    {
        "inputs": [],
        "name": "liquidity",
        "outputs": [{"name": "", "type": "uint128"}],
        "stateMutability": "view",
        "type": "function"
    }
]

V2_PAIR_ABI = [
    {
        "inputs": [],
        "name": "getReserves",
        "outputs": [
            {"name": "reserve0", "type": "uint112"},
            {"name": "reserve1", "type": "uint112"},
            {"name": "blockTimestampLast", "type": "uint32"}
        ],
        "stateMutability": "view",
        "type": "function"
    }
]


class VenueReader(ABC):
    @abstractmethod
    async def read_state(self, venue: Venue) -> VenueState:
        ...


class Web3VenueReader(VenueReader):
    def __init__(self, network: NetworkManager):
        self.network = network

    async def read_state(self, venue: Venue) -> VenueState:
        if venue.venue_type == VenueType.CONCENTRATED:
            slot0, liquidity = await asyncio.gather(
                self.network.contract_call(venue.address, V3_POOL_ABI, "slot0"),
                self.network.contract_call(venue.address, V3_POOL_ABI, "liquidity"),
            )
            return VenueState(
                address=venue.address,
                sqrt_price_x96=int(slot0[0]),
                tick=int(slot0[1]),
                liquidity=int(liquidity),
            )
        if venue.venue_type == VenueType.CONSTANT_PRODUCT:
            reserve0, reserve1, _ = await self.network.contract_call(venue.address, V2_PAIR_ABI, "getReserves")
            return VenueState(address=venue.address, reserve0=int(reserve0), reserve1=int(reserve1))
        raise VenueRevert("No reader for venue type", {"venue": venue.label, "venue_type": venue.venue_type.name})


class LocalVenueReader(VenueReader):
    """Reads the in-memory pools and pairs registered by address."""

    def __init__(self):
        self._venues: Dict[str, object] = {}

    def register(self, local_venue) -> None:
        self._venues[local_venue.address.lower()] = local_venue

    async def read_state(self, venue: Venue) -> VenueState:
        local = self._venues.get(venue.address.lower())
        if local is None:
            raise VenueRevert("Unknown venue", {"venue": venue.label})
        state = local.state()
        state.timestamp = time.time()
        return state
