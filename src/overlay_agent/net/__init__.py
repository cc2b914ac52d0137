"""HTTP transport: resilient fetch and the block-explorer client."""

from .explorer import ExplorerClient
from .fetch import FetchResponse, ResilientFetch

__all__ = ["ExplorerClient", "FetchResponse", "ResilientFetch"]
