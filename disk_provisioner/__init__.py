"""Data-disk provisioning for object-storage hosts."""

from disk_provisioner.__version__ import __version__

__all__ = ["__version__"]
