# Database models

from .game_metadata import GameMetadataCache

__all__ = [
    "GameMetadataCache",
]
