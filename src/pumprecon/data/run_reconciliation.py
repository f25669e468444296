"""
Run the daily reconciliation for one station from the command line.

Intended for a scheduler (cron, systemd timer) that triggers the run each
morning for the previous day. Exits with status 1 when any pump failed so the
scheduler can alert; the pumps that succeeded stay committed either way.

    pumprecon-reconcile --station-id 3 --date 2024-05-01 --force
"""

import argparse
import logging
import signal
import sys
import threading
from datetime import date, timedelta

from ..core.config import LOG_LEVEL, settings
from ..core.database import SessionLocal
from ..core.errors import PartialBatchFailure, ReconciliationError
from ..core.services.orchestrator import CalculationOrchestrator
from ..core.store import ReconciliationStore

logger = logging.getLogger(__name__)


def run(station_id: int, calculation_date: date, force: bool = False,
        session_factory=SessionLocal, cancel_event: threading.Event | None = None) -> int:
    db = session_factory()
    try:
        orchestrator = CalculationOrchestrator(ReconciliationStore(db), settings)
        result = orchestrator.calculate_for_date(
            station_id, calculation_date, force_recalculate=force, cancel_event=cancel_event
        )
        print(f"Station {station_id} on {calculation_date}: {result.calculated_count} pump(s), "
              f"volume {result.total_volume} L, revenue {result.total_revenue} ({result.state.value})")
        result.raise_for_failures()
    except PartialBatchFailure as e:
        for pump_id, err in e.failures:
            print(f"  pump {pump_id} failed: {err}", file=sys.stderr)
        return 1
    except ReconciliationError as e:
        logger.error("Reconciliation for station %s on %s failed: %s", station_id, calculation_date, e)
        return 1
    finally:
        db.close()
    return 0


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Reconcile pump meter readings for one station-day")
    parser.add_argument("--station-id", type=int, required=True)
    parser.add_argument(
        "--date",
        type=date.fromisoformat,
        default=date.today() - timedelta(days=1),
        help="Calculation date YYYY-MM-DD (default: yesterday)",
    )
    parser.add_argument("--force", action="store_true", help="Delete and recompute existing calculations")
    args = parser.parse_args(argv)

    logging.basicConfig(level=LOG_LEVEL, format='%(asctime)s - %(levelname)s - %(message)s')

    # SIGTERM stops after the pump in progress; finished pumps are kept
    cancel = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: cancel.set())

    sys.exit(run(args.station_id, args.date, args.force, cancel_event=cancel))


if __name__ == "__main__":
    main()
