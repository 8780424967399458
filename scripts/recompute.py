"""
CLI entry point for analytics recomputation (run by a scheduler).
"""

import argparse
import sys
from datetime import date, timedelta

from learncore.core.pipeline import LearningCore
from learncore.shared.config import settings
from learncore.shared.logging import setup_logging


def _parse_day(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}, expected YYYY-MM-DD") from e


def main(argv=None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description="learncore analytics recomputation")
    parser.add_argument(
        "--date",
        type=_parse_day,
        default=date.today() - timedelta(days=1),
        help="Day to compute (YYYY-MM-DD, default: yesterday)"
    )
    parser.add_argument(
        "--learner",
        action="append",
        dest="learners",
        help="Learner id to recompute (repeatable, default: all learners)"
    )
    parser.add_argument(
        "--weekly",
        action="store_true",
        help="Also roll up the 7 days ending on --date"
    )

    args = parser.parse_args(argv)

    # Setup logging
    setup_logging(settings.log_level, settings.log_file)

    core = LearningCore(use_llm=False)
    summary = core.recompute_analytics(args.date, args.learners, weekly=args.weekly)

    # Print summary
    print("\n" + "=" * 50)
    print("Analytics Recomputation Summary")
    print("=" * 50)
    print(f"Day: {summary.day.isoformat()}")
    print(f"Learners processed: {summary.learners}")
    print(f"Daily samples written: {summary.daily_samples}")
    print(f"Rollup samples written: {summary.rollup_samples}")
    print(f"Failures: {len(summary.failures)}")
    print("=" * 50)

    return 1 if summary.failures else 0


if __name__ == "__main__":
    sys.exit(main())
