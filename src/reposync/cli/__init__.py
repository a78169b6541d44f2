"""Command-line interface for RepoSync conversion runs."""

import argparse
import json
import logging
import sys
from typing import List, Optional, Set

from reposync.config import ConvertConfig, load_config
from reposync.context import RunContext
from reposync.errors import ConcurrentRunError, FatalConfigurationError
from reposync.ingestion.digest import DigestCache
from reposync.ingestion.info import InfoIndexer
from reposync.ingestion.pipeline import IndexingPipeline
from reposync.ingestion.submitter import BatchSubmitter
from reposync.ingestion.sweeper import ConsistencySweeper
from reposync.ingestion.worklist import QueueDatabase, WorkListStats, select_work
from reposync.locking import run_lock
from reposync.normalization.issues import IssueRightsResolver
from reposync.normalization.loader import DialectTransformer, MetadataNormalizer
from reposync.source import SourceLayout, short_ark
from reposync.storage.asset_store import AssetStore
from reposync.storage.database import RepoDatabase
from reposync.storage.search_index import SearchIndex
from reposync.units.converter import UnitConverter


def setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI.

    Every line carries the thread name so output from the index and batch
    workers can be told apart.

    Args:
        verbose: Enable verbose (DEBUG) logging
    """
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s - [%(threadName)s] %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    for noisy in ("botocore", "boto3", "urllib3", "s3transfer"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def open_database(config: ConvertConfig) -> RepoDatabase:
    database = RepoDatabase(config.database_url)
    database.create_tables()
    return database


def create_search_index(config: ConvertConfig, required: bool = True) -> Optional[SearchIndex]:
    """Search client for the configured endpoint.

    Raises:
        FatalConfigurationError: If ``required`` and no endpoint is configured
    """
    if not config.search_endpoint:
        if required:
            raise FatalConfigurationError("REPOSYNC_SEARCH_ENDPOINT is not set")
        return None
    return SearchIndex(
        endpoint=config.search_endpoint,
        backoff=config.retry_backoff,
        budget=config.retry_budget,
    )


def create_asset_store(config: ConvertConfig) -> Optional[AssetStore]:
    if not config.s3_bucket:
        return None
    return AssetStore(config.s3_bucket, config.s3_prefix, region=config.s3_region)


def create_pipeline(
    config: ConvertConfig,
    database: RepoDatabase,
    force: bool = False,
    no_search: bool = False,
) -> IndexingPipeline:
    """Wire up the item pipeline and its collaborators.

    Args:
        config: Run configuration
        database: Open repository database
        force: Reindex items even when their search document is unchanged
        no_search: Skip search uploads and only update the database

    Returns:
        Initialized IndexingPipeline instance
    """
    context = RunContext.from_database(database)
    layout = SourceLayout(config.data_root)
    normalizer = MetadataNormalizer(
        layout,
        context,
        IssueRightsResolver(database, context),
        transformer=DialectTransformer.from_config(config, layout),
        asset_store=create_asset_store(config),
        database=database,
        issue_covers_dir=config.issue_covers_dir,
        brand_dir=config.brand_dir,
    )
    digests = DigestCache(database.load_prior_states())
    sweeper = ConsistencySweeper(database, every=config.sweep_every)
    submitter = BatchSubmitter(
        database,
        None if no_search else create_search_index(config),
        context.ancestors_of,
        sweeper=sweeper,
        digests=digests,
        no_search=no_search,
    )
    return IndexingPipeline(
        normalizer,
        database,
        submitter,
        digests,
        context,
        layout,
        max_batch_bytes=config.max_batch_bytes,
        max_batch_items=config.max_batch_items,
        max_record_bytes=config.max_record_bytes,
        queue_depth=config.queue_depth,
        force=force,
        sweeper=sweeper,
    )


def _selected_ids(ids: List[str]) -> Optional[Set[str]]:
    return {short_ark(item_id) for item_id in ids} if ids else None


def cmd_units(args: argparse.Namespace) -> int:
    """Convert the unit hierarchy.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = load_config()
        with run_lock(config.lock_path):
            database = open_database(config)
            converter = UnitConverter(
                database,
                search_index=create_search_index(config, required=False),
                asset_store=create_asset_store(config),
                brand_dir=config.brand_dir,
                max_batch_bytes=config.max_batch_bytes,
                max_batch_items=config.max_batch_items,
            )
            tree = converter.convert(config.hierarchy_path, set(args.ids) if args.ids else None)

        print("\n" + "=" * 60)
        print("Unit Conversion Complete")
        print("=" * 60)
        print(f"Units in hierarchy: {len(tree.all_ids)}")
        print(f"Units converted:    {len(args.ids) if args.ids else len(tree.order)}")
        print("=" * 60 + "\n")
        return 0

    except ConcurrentRunError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.error(f"Error converting units: {e}", exc_info=args.verbose)
        return 1


def cmd_items(args: argparse.Namespace) -> int:
    """Convert and index items from the work queue.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = load_config()
        with run_lock(config.lock_path):
            database = open_database(config)
            pipeline = create_pipeline(config, database, force=args.force, no_search=args.no_search)

            logger.info("Scanning the work queue.")
            last_indexed = {
                item_id: prior.last_indexed for item_id, prior in database.load_prior_states().items()
            }
            worklist_stats = WorkListStats()
            work = select_work(
                QueueDatabase(config.queue_db_url).fetch_candidates(args.skip_to),
                last_indexed,
                selected=_selected_ids(args.ids),
                rescan=args.rescan or args.force,
                stats=worklist_stats,
            )
            stats = pipeline.run(work)

        print("\n" + "=" * 60)
        print("Item Conversion Complete")
        print("=" * 60)
        print(f"Queue candidates: {worklist_stats.candidates}")
        print(f"Up to date:       {worklist_stats.up_to_date}")
        for key in ("new", "changed", "data_only", "unchanged", "suppressed", "skipped", "failed"):
            print(f"{key.replace('_', ' ').capitalize() + ':':18s}{stats[key]}")
        print("=" * 60 + "\n")
        return 0

    except ConcurrentRunError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.error(f"Error converting items: {e}", exc_info=args.verbose)
        return 1


def cmd_info(args: argparse.Namespace) -> int:
    """Rebuild the informational (unit and page) search documents.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = load_config()
        with run_lock(config.lock_path):
            database = open_database(config)
            indexer = InfoIndexer(
                database,
                create_search_index(config),
                RunContext.from_database(database),
                max_batch_bytes=config.max_batch_bytes,
                max_batch_items=config.max_batch_items,
            )
            stats = indexer.run()

        print("\n" + "=" * 60)
        print("Info Index Complete")
        print("=" * 60)
        print(f"Added:     {stats['added']}")
        print(f"Deleted:   {stats['deleted']}")
        print(f"Unchanged: {stats['unchanged']}")
        print("=" * 60 + "\n")
        return 0

    except ConcurrentRunError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.error(f"Error indexing info pages: {e}", exc_info=args.verbose)
        return 1


def cmd_preview(args: argparse.Namespace) -> int:
    """Normalize one item and print what a run would do with it.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = load_config()
        with run_lock(config.lock_path):
            database = open_database(config)
            pipeline = create_pipeline(config, database, no_search=True)
            result = pipeline.preview(short_ark(args.item_id))

        print(json.dumps(result, indent=2, default=str, ensure_ascii=False))
        return 0

    except ConcurrentRunError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.error(f"Error previewing item: {e}", exc_info=args.verbose)
        return 1


def cmd_sweep(args: argparse.Namespace) -> int:
    """Delete orphaned sections and issues.

    Args:
        args: Command-line arguments

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    setup_logging(args.verbose)
    logger = logging.getLogger(__name__)

    try:
        config = load_config()
        with run_lock(config.lock_path):
            sections, issues = ConsistencySweeper(open_database(config)).sweep()

        print(f"Deleted {sections} sections and {issues} issues")
        return 0

    except ConcurrentRunError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.error(f"Error during sweep: {e}", exc_info=args.verbose)
        return 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="reposync",
        description="RepoSync: convert legacy repository content into a relational schema and search index",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose (DEBUG) logging"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # units command
    parser_units = subparsers.add_parser("units", help="Convert the unit hierarchy")
    parser_units.add_argument("ids", nargs="*", help="Only convert these units")
    parser_units.set_defaults(func=cmd_units)

    # items command
    parser_items = subparsers.add_parser("items", help="Convert and index items")
    parser_items.add_argument("ids", nargs="*", help="Only convert these items")
    mode = parser_items.add_mutually_exclusive_group()
    mode.add_argument(
        "--force", action="store_true", help="Reindex even if the search document is unchanged"
    )
    mode.add_argument(
        "--rescan", action="store_true", help="Look at every item regardless of timestamps"
    )
    parser_items.add_argument(
        "--no-search", action="store_true", help="Update the database only, skip search uploads"
    )
    parser_items.add_argument("--skip-to", metavar="ID", help="Start the queue scan at this item")
    parser_items.set_defaults(func=cmd_items)

    # info command
    parser_info = subparsers.add_parser("info", help="Index unit and page documents")
    parser_info.set_defaults(func=cmd_info)

    # preview command
    parser_preview = subparsers.add_parser("preview", help="Show how one item would be converted")
    parser_preview.add_argument("item_id", help="Item id, short or full ark")
    parser_preview.set_defaults(func=cmd_preview)

    # sweep command
    parser_sweep = subparsers.add_parser("sweep", help="Delete orphaned sections and issues")
    parser_sweep.set_defaults(func=cmd_sweep)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    if not hasattr(args, "func"):
        parser.print_help()
        return 1

    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
