"""
Repository Interfaces

The persistence contract the scheduling engine depends on. Implementations
live in the infrastructure layer.
"""

from .persistence_gateway import ProductionGateway

__all__ = ["ProductionGateway"]
