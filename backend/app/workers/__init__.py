"""
Background workers for the drop-ship pipeline.

Workers:
- recovery_loop: runs the Recovery Scheduler every RECOVERY_INTERVAL_SECONDS
  when RECOVERY_LOOP_ENABLED is set (otherwise /api/cron/process is called
  by an external scheduler)
"""

from app.workers.recovery_loop import run_recovery_loop, run_recovery_once

__all__ = [
    "run_recovery_loop",
    "run_recovery_once",
]
