from __future__ import annotations

# Re-export collaborator adapters for convenient imports
from .notifications import EmailNotifier, LogNotifier

__all__ = ["EmailNotifier", "LogNotifier"]
