"""Read and write th10-family ECL enemy-script files and their map files."""

__version__ = "12.0.0"
__all__ = ["__version__"]