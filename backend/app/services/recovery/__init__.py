"""Recovery Scheduler package.

One pass (:func:`run_recovery_cycle`) re-drives everything the event-driven
path may have missed: closed sales without orders, paid lots without
supplier orders, unpaid supplier orders, guard-failed lots awaiting refund,
and lots stuck in one status. It is invoked by the cron endpoint
(`app.routers.cron`) or the optional in-process loop
(`app.workers.recovery_loop`).
"""

from .scheduler import run_recovery_cycle
from .stuck_lots import handle_stuck_lots
from .quota import check_cj_quota

__all__ = ["run_recovery_cycle", "handle_stuck_lots", "check_cj_quota"]
