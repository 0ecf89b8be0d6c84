"""Cache coordination for the proxy."""

from .coordinator import CacheCoordinator, LoadResult
from .fanout import Branch, BranchAborted, BranchOverflow, FanOut

__all__ = ["Branch", "BranchAborted", "BranchOverflow", "CacheCoordinator", "FanOut", "LoadResult"]
