"""
Command Line Entry Point

Usage:
    metrics-backend populate --metrics m1 m2 --tenants t1 --years 2024 --months 01 02 --ttl 3600
    metrics-backend populate --volume 100000 --metrics m1 m2 --batch-size 1000
    metrics-backend fetch m1_t1_2024_01 m1_t1_2024_02 --skip-absent
    metrics-backend scan "m1_*"
    metrics-backend ttl m1_t1_2024_01
    metrics-backend delete "m1_*"
    metrics-backend export "m1_*" --directory data --name metric1
    metrics-backend build-dictionary metric1
    metrics-backend encode-files metric1 --output-folder transformed
    metrics-backend decode-files metric1 --input-folder transformed --output-folder regenerated
    metrics-backend aggregate metric1 --group-by channel platform --metrics metricValue1 metricValue2

Command results are printed to stdout as JSON; logs go to stderr.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

import structlog

from metrics_backend.codec import DictionaryCodec, load_dictionary
from metrics_backend.config import Settings, get_settings
from metrics_backend.config.logging import configure_logging
from metrics_backend.data import CampaignRecordFactory, RandomTupleFactory, SeedPools
from metrics_backend.errors import MetricsBackendError
from metrics_backend.ingestion import BulkPopulator
from metrics_backend.keyspace import KeyAxes, KeyScheme
from metrics_backend.retrieval import ParallelFetcher
from metrics_backend.serving.cache import close_redis, create_redis
from metrics_backend.transformation import (
    CacheSource,
    GroupByAggregator,
    find_sources,
    sort_groups,
    write_output,
)

logger = structlog.get_logger(__name__)


def _emit(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


def _dimension_sets(values: Optional[List[str]]) -> List[List[str]]:
    # "campaign,platform" -> ["campaign", "platform"]
    return [[label for label in value.split(",") if label] for value in values or []]


def _dictionary(path: Optional[str]):
    return load_dictionary(path) if path else None


def _seed_pools(path: Optional[str], settings: Settings) -> SeedPools:
    # --seed-pools, else DATA_INPUT_DIR when that folder exists
    folder = Path(path or settings.data.input_dir)
    if path or folder.is_dir():
        return SeedPools.from_directory(folder)
    return SeedPools.default()


# =============================================================================
# CACHE COMMANDS
# =============================================================================

async def cmd_populate(args: argparse.Namespace, settings: Settings) -> Any:
    pools = _seed_pools(args.seed_pools, settings)
    seed = args.seed if args.seed is not None else settings.population.seed
    record_factory = CampaignRecordFactory(
        pools,
        records_per_key=args.records_per_key or settings.population.records_per_key,
        seed=seed,
    )

    client = await create_redis(settings)
    try:
        populator = BulkPopulator(
            client,
            scheme=args.scheme,
            dictionary=_dictionary(args.dictionary),
            settings=settings,
        )

        if args.volume:
            tuple_factory = RandomTupleFactory(args.metrics or ["metric1"], seed=seed)
            result = await populator.populate_volume(
                args.volume,
                tuple_factory,
                record_factory,
                batch_size=args.batch_size,
                ttl=args.ttl,
                offset=args.offset,
            )
        else:
            axes = KeyAxes(
                metric_ids=args.metrics or [],
                tenant_ids=args.tenants or [],
                years=args.years or [],
                months=args.months or [],
                dimension_sets=_dimension_sets(args.dimensions),
            )
            result = await populator.populate(
                axes,
                record_factory,
                batch_size=args.batch_size,
                ttl=args.ttl,
                offset=args.offset,
            )
        return result.model_dump(mode="json")
    finally:
        await close_redis(client)


async def cmd_fetch(args: argparse.Namespace, settings: Settings) -> Any:
    client = await create_redis(settings)
    try:
        fetcher = ParallelFetcher(client, dictionary=_dictionary(args.dictionary), settings=settings)
        return await fetcher.fetch_many(args.keys, concurrency=args.concurrency, skip_absent=args.skip_absent)
    finally:
        await close_redis(client)


async def cmd_scan(args: argparse.Namespace, settings: Settings) -> Any:
    client = await create_redis(settings)
    try:
        return await ParallelFetcher(client, settings=settings).scan_keys(args.pattern)
    finally:
        await close_redis(client)


async def cmd_ttl(args: argparse.Namespace, settings: Settings) -> Any:
    client = await create_redis(settings)
    try:
        return await ParallelFetcher(client, settings=settings).key_ttls(args.keys)
    finally:
        await close_redis(client)


async def cmd_delete(args: argparse.Namespace, settings: Settings) -> Any:
    client = await create_redis(settings)
    try:
        deleted = await ParallelFetcher(client, settings=settings).delete_pattern(args.pattern)
        return {"pattern": args.pattern, "deleted": deleted}
    finally:
        await close_redis(client)


async def cmd_export(args: argparse.Namespace, settings: Settings) -> Any:
    client = await create_redis(settings)
    try:
        fetcher = ParallelFetcher(client, dictionary=_dictionary(args.dictionary), settings=settings)
        path = await fetcher.export_pages(args.pattern, args.directory or settings.data.data_dir, args.name)
        return {"path": str(path)}
    finally:
        await close_redis(client)


# =============================================================================
# FILE COMMANDS
# =============================================================================

def _codec(args: argparse.Namespace, settings: Settings) -> DictionaryCodec:
    return DictionaryCodec(args.data_dir or settings.data.data_dir, args.output_dir or settings.data.output_dir)


def _dictionary_path(args: argparse.Namespace, settings: Settings) -> Path:
    if args.dictionary:
        return Path(args.dictionary)
    return Path(args.data_dir or settings.data.data_dir) / settings.data.dictionary_file


async def cmd_build_dictionary(args: argparse.Namespace, settings: Settings) -> Any:
    codec = _codec(args, settings)
    dictionary = codec.build_from_files(args.pattern, settings.data.dictionary_file)
    return {
        "path": str(codec.data_dir / settings.data.dictionary_file),
        "key_codes": len(dictionary.key_codes),
        "value_codes": len(dictionary.value_codes),
    }


async def cmd_encode_files(args: argparse.Namespace, settings: Settings) -> Any:
    dictionary = load_dictionary(_dictionary_path(args, settings))
    written = _codec(args, settings).transform_files(args.pattern, dictionary, args.output_folder)
    return [str(path) for path in written]


async def cmd_decode_files(args: argparse.Namespace, settings: Settings) -> Any:
    dictionary = load_dictionary(_dictionary_path(args, settings))
    written = _codec(args, settings).regenerate_files(
        args.pattern, dictionary, args.input_folder, args.output_folder
    )
    return [str(path) for path in written]


async def cmd_aggregate(args: argparse.Namespace, settings: Settings) -> Any:
    aggregator = GroupByAggregator(concurrency=args.concurrency, settings=settings)

    if args.from_cache:
        client = await create_redis(settings)
        try:
            dictionary = _dictionary(args.dictionary)
            keys = await ParallelFetcher(client, settings=settings).scan_keys(args.pattern)
            sources = [CacheSource(client, key, dictionary) for key in keys]
            result = await aggregator.run(sources, args.group_by, args.metrics)
        finally:
            await close_redis(client)
    else:
        sources = find_sources(args.directory or settings.data.data_dir, args.pattern)
        result = await aggregator.run(sources, args.group_by, args.metrics)

    groups = result.groups
    if args.sort_by:
        groups = sort_groups(groups, args.sort_by, descending=args.descending)

    path = write_output(
        groups,
        args.output_dir or settings.aggregation.output_dir,
        settings.aggregation.output_name,
    )
    return {
        "path": str(path),
        "groups": len(groups),
        "records": result.record_count,
        "sources": result.source_count,
        "missing_values": result.missing_values,
        "invalid_values": result.invalid_values,
        "dropped_pages": result.dropped_pages,
        "skipped_items": result.skipped_items,
        "total_ms": round(result.total_ms, 2),
        "file_read_ms": round(result.file_read_ms, 2),
        "parse_ms": round(result.parse_ms, 2),
    }


COMMANDS = {
    "populate": cmd_populate,
    "fetch": cmd_fetch,
    "scan": cmd_scan,
    "ttl": cmd_ttl,
    "delete": cmd_delete,
    "export": cmd_export,
    "build-dictionary": cmd_build_dictionary,
    "encode-files": cmd_encode_files,
    "decode-files": cmd_decode_files,
    "aggregate": cmd_aggregate,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="metrics-backend",
        description="Metrics cache population, retrieval and aggregation",
    )
    parser.add_argument("--log-level", help="Override LOG_LEVEL")
    parser.add_argument("--log-format", choices=["json", "text"], help="Override LOG_FORMAT")
    sub = parser.add_subparsers(dest="command", required=True)

    populate = sub.add_parser("populate", help="Seed the cache with synthetic pages")
    populate.add_argument("--metrics", nargs="*", help="Metric ids")
    populate.add_argument("--tenants", nargs="*", help="Tenant ids")
    populate.add_argument("--years", nargs="*", type=int, help="Years")
    populate.add_argument("--months", nargs="*", help="Months, e.g. 01 02")
    populate.add_argument("--dimensions", nargs="*", help="Dimension sets, comma separated, e.g. campaign,platform")
    populate.add_argument("--volume", type=int, help="Write this many random partitions instead of the axes product")
    populate.add_argument("--scheme", choices=[s.value for s in KeyScheme], help="Key scheme")
    populate.add_argument("--batch-size", type=int, help="Keys per pipeline")
    populate.add_argument("--ttl", type=int, help="Expiry in seconds")
    populate.add_argument("--offset", type=int, default=0, help="Resume after this many keys")
    populate.add_argument("--records-per-key", type=int, help="Synthetic records per page")
    populate.add_argument("--seed", type=int, help="Random seed")
    populate.add_argument("--seed-pools", help="Folder of seed pool JSON files (default: DATA_INPUT_DIR)")
    populate.add_argument("--dictionary", help="Encode pages with this dictionary file")

    fetch = sub.add_parser("fetch", help="Fetch pages by key")
    fetch.add_argument("keys", nargs="+")
    fetch.add_argument("--concurrency", type=int)
    fetch.add_argument("--skip-absent", action="store_true", help="EXISTS pre-check before MGET")
    fetch.add_argument("--dictionary", help="Decode pages with this dictionary file")

    scan = sub.add_parser("scan", help="List keys matching a pattern")
    scan.add_argument("pattern")

    ttl = sub.add_parser("ttl", help="Remaining TTL per key")
    ttl.add_argument("keys", nargs="+")

    delete = sub.add_parser("delete", help="Delete keys matching a pattern")
    delete.add_argument("pattern")

    export = sub.add_parser("export", help="Archive matching pages as a *_records.json file")
    export.add_argument("pattern")
    export.add_argument("--directory", help="Target folder (defaults to DATA_DATA_DIR)")
    export.add_argument("--name", help="File stem")
    export.add_argument("--dictionary", help="Decode pages with this dictionary file")

    for name, help_text in [
        ("build-dictionary", "Build and save a dictionary from record files"),
        ("encode-files", "Write dictionary-encoded copies of record files"),
        ("decode-files", "Regenerate record files from encoded copies"),
    ]:
        command = sub.add_parser(name, help=help_text)
        command.add_argument("pattern", help="Substring of the record file names")
        command.add_argument("--data-dir", help="Defaults to DATA_DATA_DIR")
        command.add_argument("--output-dir", help="Defaults to DATA_OUTPUT_DIR")
        if name != "build-dictionary":
            command.add_argument("--dictionary", help="Dictionary file (defaults to <data-dir>/<DATA_DICTIONARY_FILE>)")
        if name == "encode-files":
            command.add_argument("--output-folder", default="transformed")
        if name == "decode-files":
            command.add_argument("--input-folder", default="transformed")
            command.add_argument("--output-folder", default="regenerated")

    aggregate = sub.add_parser("aggregate", help="Group and sum metrics")
    aggregate.add_argument("pattern", help="File name substring, or key glob with --from-cache")
    aggregate.add_argument("--group-by", nargs="+", required=True)
    aggregate.add_argument("--metrics", nargs="+", required=True)
    aggregate.add_argument("--directory", help="Source folder (defaults to DATA_DATA_DIR)")
    aggregate.add_argument("--from-cache", action="store_true", help="Aggregate cache keys matching the pattern")
    aggregate.add_argument("--dictionary", help="Decode cached pages with this dictionary file")
    aggregate.add_argument("--concurrency", type=int)
    aggregate.add_argument("--sort-by", help="Field or metric to sort the output by")
    aggregate.add_argument("--descending", action="store_true")
    aggregate.add_argument("--output-dir", help="Defaults to AGGREGATION_OUTPUT_DIR")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level, args.log_format)
    settings = get_settings()

    try:
        payload = asyncio.run(COMMANDS[args.command](args, settings))
    except MetricsBackendError as e:
        logger.error("Command failed", command=args.command, error=e.message)
        _emit(e.to_failure().model_dump())
        return 1

    _emit(payload)
    return 0


if __name__ == "__main__":
    sys.exit(main())
