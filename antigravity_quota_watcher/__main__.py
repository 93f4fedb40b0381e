"""Run the tray watcher: ``python -m antigravity_quota_watcher``."""
from __future__ import annotations

import logging
import traceback

from .app import QuotaWatcher, crash_log


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%H:%M:%S',
    )
    try:
        app = QuotaWatcher()
        app.run()
    except Exception:
        logging.getLogger(__name__).exception('Watcher failed to start')
        crash_log(traceback.format_exc())


if __name__ == '__main__':
    main()
