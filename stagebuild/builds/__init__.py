"""Build orchestration module.

This module handles:
- Executing a resolved plan batch by batch on a worker pool
- Failure aggregation and cancellation
- Build reports and final filesystem export
"""

from stagebuild.builds.service import CancelToken, build, export_snapshot

__all__ = ["CancelToken", "build", "export_snapshot"]

# Access the reporting helpers via stagebuild.builds.report
