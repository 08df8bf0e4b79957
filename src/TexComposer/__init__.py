"""TexComposer: pack texture role images into DDS composites and split them back."""

__version__ = "0.4.0"

__all__ = ["__version__"]
