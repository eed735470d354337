"""
Loan Metrics Backfill

Recomputes the metrics snapshot of every stored loan. Run after an import
or a schema change left snapshots stale:

    python -m lending_core.backfill --database-url sqlite:///lending.db
"""

import argparse
import sys
from typing import Dict, List, Optional

from .config import get_config
from .logging_config import setup_logging, get_logger, log_action
from .loans import LoanManager
from .system import LendingSystem
from .storage import create_storage

logger = get_logger("lending.backfill")


def backfill_loan_metrics(loan_manager: LoanManager, batch_size: int = 500) -> Dict[str, int]:
    """
    Recompute metrics for all loans in batches

    Args:
        loan_manager: Manager bound to the storage to backfill
        batch_size: Loans per progress log line (values below 1 count as 1)

    Returns:
        Counts of processed and failed loans
    """
    loan_ids: List[str] = [loan.id for loan in loan_manager.list_loans()]
    processed = 0
    failed = 0

    batch_size = max(batch_size, 1)
    for start in range(0, len(loan_ids), batch_size):
        batch = loan_ids[start:start + batch_size]
        for loan_id in batch:
            if loan_manager.recompute_loan_metrics(loan_id) is None:
                failed += 1
            else:
                processed += 1
        logger.info(f"Backfill progress: {start + len(batch)}/{len(loan_ids)} loans")

    log_action(
        logger, "info", "Loan metrics backfill finished",
        action="loan.metrics_backfilled",
        extra={"processed": processed, "failed": failed, "total": len(loan_ids)}
    )
    return {"processed": processed, "failed": failed, "total": len(loan_ids)}


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {value}")
    return number


def main(argv: Optional[List[str]] = None) -> int:
    config = get_config()

    parser = argparse.ArgumentParser(description="Recompute stored loan metrics")
    parser.add_argument(
        "--database-url",
        default=config.database_url,
        help="Storage to backfill (default: %(default)s)",
    )
    parser.add_argument(
        "--batch-size",
        type=_positive_int,
        default=config.backfill_batch_size,
        help="Loans per progress line (default: %(default)s)",
    )
    parser.add_argument(
        "--log-level",
        default=config.log_level,
        help="Logging level (default: %(default)s)",
    )
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level, log_format=config.log_format, log_file=config.log_file)

    system = LendingSystem(storage=create_storage(args.database_url), config=config)
    try:
        result = backfill_loan_metrics(system.loan_manager, args.batch_size)
    finally:
        system.close()

    return 1 if result["failed"] else 0


if __name__ == "__main__":
    sys.exit(main())
