"""Controllers, work queues and CSI response builders for LVM local volumes."""

__version__ = "0.1.0"

__all__ = ["lvmnode", "resources", "response", "snapshot", "version", "volume", "workqueue"]