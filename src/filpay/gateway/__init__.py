"""Chain gateway adapters."""

from filpay.gateway.base import ChainGateway
from filpay.gateway.stub import InMemoryChainGateway
from filpay.gateway.web3_gateway import (
    RAIL_INACTIVE_OR_SETTLED_SELECTOR,
    Web3ChainGateway,
    classify_chain_error,
)

__all__ = [
    "ChainGateway",
    "InMemoryChainGateway",
    "Web3ChainGateway",
    "RAIL_INACTIVE_OR_SETTLED_SELECTOR",
    "classify_chain_error",
]
