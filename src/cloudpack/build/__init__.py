from .builder import ArtifactBuilder

__all__ = ["ArtifactBuilder"]
