#!/usr/bin/env python3
"""Run a single pass of one lifecycle engine, e.g. from cron or by hand."""
import argparse
import logging

from panel.core.logging import configure_logging
from panel.workers.scheduler import LifecycleScheduler

TICKS = {
    "billing": "billing_tick",
    "suspension": "escalator_tick",
    "cancellation": "cancellation_tick",
    "orphans": "orphan_tick",
}


def main():
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("engine", choices=sorted(TICKS))
    args = parser.parse_args()

    configure_logging()
    runner = LifecycleScheduler()
    logging.getLogger(__name__).info("Running one %s pass", args.engine)
    getattr(runner, TICKS[args.engine])()


if __name__ == "__main__":
    main()
