"""Work-item execution daemon for file-based bead queues."""

__version__ = "0.1.0"
