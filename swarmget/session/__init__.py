"""Download coordination."""

from __future__ import annotations

from swarmget.session.coordinator import DownloadCoordinator, DownloadResult

__all__ = ["DownloadCoordinator", "DownloadResult"]
