"""PowerChain - dependency-aware power orchestration for homelab fleets."""

__version__ = "0.1.0"
