"""video-grid — contact-sheet grids of the most distinct frames of a video."""

__version__ = "0.1.0"
