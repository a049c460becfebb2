"""Domain layer - tile artifact model."""
from domain.models import Tile

__all__ = [
    'Tile',
]
