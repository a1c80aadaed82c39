#!/usr/bin/env python3
"""
Repair Embeddings - Standalone Utility

Reports on the embeddings table, removes invalid/orphaned/duplicate rows and
regenerates embeddings for records that are missing a valid, current one
(e.g. captured while the embedding provider was unreachable).

Run this separately when needed, not as part of regular maintenance.

Usage:
    secondbrain-repair [--dry-run] [--cleanup] [--types observation decision ...]
"""

import sys
import argparse
import asyncio
import logging

from .config import load_config
from .knowledge_store import KnowledgeStore
from .models import SOURCE_TYPES


def print_health(health):
    print(f"  Total embeddings: {health['total']}")
    print(f"  Current model: {health['current_model']}")
    for source_type, count in sorted(health["by_type"].items()):
        print(f"    {source_type}: {count}")
    for model, count in sorted(health["by_model"].items()):
        print(f"    model {model}: {count}")
    print(f"  Invalid vectors: {len(health['invalid_vectors'])}")
    print(f"  Orphaned: {len(health['orphaned'])}")
    print(f"  Duplicates: {len(health['duplicates'])}")
    print(f"  Model mismatch: {len(health['model_mismatch'])}")


async def run_repair(store: KnowledgeStore, dry_run: bool = False, cleanup: bool = False,
                     source_types=None):
    """Health report, optional cleanup, then re-embed what is missing"""
    print("[EMBEDDING_HEALTH]")
    print_health(await store.embedding_health())

    results = {}
    if cleanup:
        print("\n[EMBEDDING_CLEANUP]")
        results["cleanup"] = await store.cleanup_embeddings(dry_run=dry_run)
        for key, value in results["cleanup"].items():
            print(f"  {key}: {value}")

    print("\n[EMBEDDING_REPAIR]")
    if dry_run:
        print("[DRY RUN MODE] No changes will be made")
    repair = await store.repair_embeddings(dry_run=dry_run, source_types=source_types)
    results["repair"] = repair

    print(f"  Records checked: {repair['checked']}")
    print(f"  Missing embeddings: {repair['missing']}")
    for source_id in repair["missing_ids"][:10]:
        print(f"    [MISSING] {source_id}")
    if dry_run:
        print(f"  Would repair: {repair['missing']}")
    else:
        print(f"  Successfully repaired: {repair['repaired']}")
        print(f"  Failed: {len(repair['failed'])}")
        if repair["failed"]:
            print(f"  Failed IDs: {', '.join(repair['failed'][:5])}")

    return results


async def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Check, clean up and repair stored embeddings"
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be changed without making changes"
    )
    parser.add_argument(
        "--cleanup",
        action="store_true",
        help="Also delete invalid, orphaned and duplicate embeddings"
    )
    parser.add_argument(
        "--types",
        nargs="+",
        choices=SOURCE_TYPES,
        help="Only repair these record types"
    )
    args = parser.parse_args(argv)

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config["log_level"], logging.INFO),
        stream=sys.stderr,
        format="%(asctime)s [%(levelname)s] [%(name)s] %(message)s",
    )

    print("=" * 60)
    print("EMBEDDING REPAIR UTILITY")
    print("=" * 60)
    print(f"Data dir: {config['data_dir']}")
    print(f"Provider: {config['embedding_provider']}")
    print(f"Mode: {'DRY RUN' if args.dry_run else 'REPAIR'}")
    print("=" * 60)
    print()

    store = KnowledgeStore(config)
    try:
        results = await run_repair(store, dry_run=args.dry_run, cleanup=args.cleanup,
                                   source_types=args.types)
    finally:
        await store.shutdown()

    print()
    print("=" * 60)
    return 1 if results["repair"]["failed"] else 0


def run():
    """Console script entry point"""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
