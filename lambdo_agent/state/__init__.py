# State module: the in-memory VM registry
from .registry import Registry, RegistryEntry

__all__ = ["Registry", "RegistryEntry"]
