#!/usr/bin/env python3
"""Command-line interface for batch grading an assignment's submissions."""

import argparse
import asyncio
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from autograde.libs.config_loader import ConfigType, load_all_configs
from .ai_adapter import PydanticAIGradingAdapter
from .batch_grader import BatchGrader, settings_from_configs
from .models import GradingConfig, ItemStatus, Submission
from .pipeline import SubmissionPipeline
from .stats import assignment_pipeline_stats, format_duration
from .stores import InMemoryGradingConfigStore, InMemoryJobStore, InMemorySubmissionStore

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
LOG = logging.getLogger(__name__)


def load_assignment_file(path: Path) -> Tuple[GradingConfig, List[Submission]]:
    """
    Read an assignment YAML with ``grading_config`` and ``submissions`` sections.

    Submissions without an ``assignment_id`` inherit the config's.
    """
    with open(path) as f:
        data: Dict[str, Any] = yaml.safe_load(f) or {}

    if 'grading_config' not in data:
        raise ValueError(f"{path} has no grading_config section")
    config = GradingConfig.model_validate(data['grading_config'])

    submissions = []
    for raw in data.get('submissions') or []:
        raw.setdefault('assignment_id', config.assignment_id)
        submissions.append(Submission.model_validate(raw))
    return config, submissions


def build_grader(configs: ConfigType, config: GradingConfig, submissions: List[Submission],
                 use_ai: bool, show_progress: bool) -> BatchGrader:
    submission_store = InMemorySubmissionStore(submissions)
    config_store = InMemoryGradingConfigStore([config])
    adapter = PydanticAIGradingAdapter(configs) if use_ai and config.ai_grading_enabled else None
    pipeline = SubmissionPipeline(submission_store, config_store, ai_adapter=adapter)
    return BatchGrader(configs, pipeline, InMemoryJobStore(), show_progress=show_progress)


def main():
    """Main entry point for autograde-batch command."""
    parser = argparse.ArgumentParser(
        description='Grade all submissions for an assignment through the grading pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Grade every submission in an assignment file
  autograde-batch --assignment quiz1.yaml

  # Smaller batches, more concurrency
  autograde-batch --assignment quiz1.yaml --batch-size 5 --max-concurrency 5

  # Rules only, publish results, save summary to a specific location
  autograde-batch --assignment quiz1.yaml --no-ai --auto-publish --summary results.yaml
        """
    )

    parser.add_argument(
        '--assignment', '-a',
        type=Path,
        required=True,
        help='Assignment YAML containing grading_config and submissions'
    )
    parser.add_argument(
        '--summary', '-o',
        type=Path,
        default=None,
        help='Path to save summary YAML file (default: grading_summary_TIMESTAMP.yaml next to the assignment)'
    )
    parser.add_argument(
        '--batch-size', '-b',
        type=int,
        default=None,
        help='Submissions per batch (overrides config value)'
    )
    parser.add_argument(
        '--max-concurrency', '-t',
        type=int,
        default=None,
        help='Maximum concurrent submissions within a batch (overrides config value)'
    )
    parser.add_argument(
        '--regrade',
        action='store_true',
        help='Grade submissions even if they are already auto-graded'
    )
    parser.add_argument(
        '--auto-publish',
        action='store_true',
        help='Publish results after grading'
    )
    parser.add_argument(
        '--no-ai',
        action='store_true',
        help='Use deterministic rules for every question'
    )
    parser.add_argument(
        '--progress',
        action='store_true',
        help='Show a progress bar'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.assignment.is_file():
        LOG.error(f"Assignment file does not exist: {args.assignment}")
        sys.exit(1)

    try:
        configs = load_all_configs()
    except Exception as e:
        LOG.error(f"Failed to load configuration: {e}")
        sys.exit(1)

    try:
        grading_config, submissions = load_assignment_file(args.assignment)
    except Exception as e:
        LOG.error(f"Failed to read assignment file: {e}")
        sys.exit(1)

    settings = settings_from_configs(
        configs,
        batch_size=args.batch_size,
        max_concurrency=args.max_concurrency,
        skip_already_graded=False if args.regrade else None,
        auto_publish=True if args.auto_publish else None,
        use_ai=False if args.no_ai else None,
    )
    batch_grader = build_grader(configs, grading_config, submissions,
                                use_ai=settings.use_ai, show_progress=args.progress)

    LOG.info(f"Starting batch grading of {len(submissions)} submissions for {grading_config.assignment_id}")
    try:
        job = asyncio.run(batch_grader.run_job(grading_config.assignment_id, settings))
    except Exception as e:
        LOG.error(f"Batch grading failed: {e}")
        sys.exit(1)

    if args.summary is None:
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        summary_path = args.assignment.parent / f"grading_summary_{timestamp}.yaml"
    else:
        summary_path = args.summary

    try:
        batch_grader.save_summary(job, summary_path)
    except Exception as e:
        LOG.error(f"Failed to save summary: {e}")

    graded = asyncio.run(batch_grader.submissions.query_by_assignment(grading_config.assignment_id))
    stats = assignment_pipeline_stats(graded)
    successful = [r for r in job.results if r.status == ItemStatus.SUCCESS]
    failed = [r for r in job.results if r.status == ItemStatus.FAILED]
    possible = grading_config.possible_points()

    print(f"\n{'='*60}")
    print(f"Batch Grading {job.status.value.title()}")
    print(f"{'='*60}")
    print(f"Total submissions: {job.progress.total}")
    print(f"Successfully graded: {job.progress.successful}")
    print(f"Failed: {job.progress.failed}")
    print(f"Skipped: {job.progress.skipped}")
    if job.timestamps.started and job.timestamps.completed:
        elapsed = (job.timestamps.completed - job.timestamps.started).total_seconds()
        print(f"Elapsed: {format_duration(elapsed)}")
    if job.total_tokens:
        print(f"AI usage: {job.total_tokens} tokens (${job.total_cost:.4f})")

    if successful and possible:
        avg_score = sum(r.score or 0 for r in successful) / len(successful)
        print(f"Average score: {avg_score:.1f}/{possible:.0f} ({avg_score/possible*100:.1f}%)")

        print(f"\nScore Distribution:")
        for result in successful:
            pct = (result.score or 0) / possible * 100
            print(f"  {result.submission_id}: {result.score:.1f}/{possible:.0f} ({pct:.1f}%)")

    if failed:
        print(f"\nFailed submissions:")
        for result in failed:
            print(f"  {result.submission_id}: {result.message}")

    print(f"\nPipeline stages: " + ", ".join(f"{k}={v}" for k, v in stats.stage_breakdown.items() if v))
    print(f"Summary saved to: {summary_path}")

    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
