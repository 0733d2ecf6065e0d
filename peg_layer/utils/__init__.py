"""
Peg Layer Chain & Feed Clients
"""
from .chain_client import Web3ChainClient
from .reference_feed import ChainlinkFeedClient, HttpPriceFeedClient

__all__ = ["Web3ChainClient", "ChainlinkFeedClient", "HttpPriceFeedClient"]
