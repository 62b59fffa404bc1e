from .storage import JsonFileStorage

__all__ = ["JsonFileStorage"]
