"""Load Generation Package"""

from .load_generator import LoadGenClient, LoadGeneratorDriver

__all__ = ["LoadGenClient", "LoadGeneratorDriver"]
