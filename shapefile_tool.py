#!/usr/bin/env python
"""
Shapefile Tool
==============
Command line front end for the Shapefile feature store: inspect and query
datasets, buffer them into polygon datasets and convert to and from GeoJSON.

Usage:
    shapefile-tool info data/roads.shp
    shapefile-tool query data/roads.shp --filter "lanes >= 2 AND name LIKE 'Main%'" --limit 10
    shapefile-tool buffer data/roads.shp data/roads_buffer --distance 25
    shapefile-tool from-geojson plots.geojson data/plots
    shapefile-tool to-geojson data/plots --output plots_out.geojson
"""

import argparse
import json
import sys
import time
from pathlib import Path
from typing import List, Optional

from utils.logger import setup_logging, get_logger

from config.config_loader import load_config, load_store_settings
from bridge.geojson import (
    FieldNameMap, dataset_to_geojson, feature_to_geojson, field_map_path, geojson_to_shapefile
)
from core.errors import ShapefileError
from core.feature_store import open_dataset
from geometry_ops.pipeline import buffer_dataset


def _write_json(data, output: Optional[str], logger) -> None:
    text = json.dumps(data, indent=2, ensure_ascii=False)
    if output:
        Path(output).write_text(text, encoding='utf-8')
        logger.info(f"✓ Written: {output}")
    else:
        print(text)


def run_info(args, settings, logger) -> None:
    store = open_dataset(args.path, settings)
    info = store.describe(args.sample)

    logger.info(f"Dataset: {info['path']}")
    logger.info(f"  - Type name: {info['type_name']}")
    logger.info(f"  - Geometry type: {info['geometry_type']}")
    logger.info(f"  - CRS: {info['crs']}")
    logger.info(f"  - Encoding: {info['encoding']}")
    logger.info("  - Fields:")
    for field_info in info['fields']:
        logger.info(f"      {field_info['name']} ({field_info['type']}, "
                    f"{field_info['length']}.{field_info['decimals']})")
    logger.info(f"  - Feature count: {info['count']}")
    logger.info(f"  - Bounds: {info['bounds']}")
    logger.info(f"  - First {len(info['features'])} feature(s):")
    for feature in info['features']:
        logger.info(f"      {feature['id']}: {feature['attributes']} {feature['geometry']}")


def run_query(args, settings, logger) -> None:
    store = open_dataset(args.path, settings)
    field_map = FieldNameMap.load(field_map_path(store.files.stem, settings['field_map_suffix']))

    with store.scan(args.filter, args.limit) as features:
        collection = {
            'type': 'FeatureCollection',
            'features': [feature_to_geojson(feature, field_map) for feature in features],
        }
    logger.debug(f"Query matched {len(collection['features'])} feature(s)")
    _write_json(collection, args.output, logger)


def run_buffer(args, settings, logger) -> None:
    store = buffer_dataset(args.source, args.target, args.distance,
                           filter=args.filter,
                           segments_per_quarter_circle=args.segments,
                           settings=settings)
    logger.info(f"✓ {store.count()} buffered feature(s) in {store.files.stem}")


def run_from_geojson(args, settings, logger) -> None:
    with open(args.geojson_file, 'r', encoding='utf-8') as f:
        data = json.load(f)
    store = geojson_to_shapefile(data, args.target, crs=args.crs, settings=settings)
    logger.info(f"✓ {store.count()} feature(s) in {store.files.stem}")


def run_to_geojson(args, settings, logger) -> None:
    collection = dataset_to_geojson(args.path, args.filter, settings)
    logger.debug(f"Exported {len(collection['features'])} feature(s)")
    _write_json(collection, args.output, logger)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='shapefile-tool',
        description="Read, query, buffer and convert Shapefile datasets."
    )
    parser.add_argument('--config', default=None, help="Path to store_config.json")
    parser.add_argument('--log-dir', default=None, help="Directory for the log file")

    commands = parser.add_subparsers(dest='command', required=True)

    info = commands.add_parser('info', help="Show schema, CRS, count and first features")
    info.add_argument('path', help="Dataset stem or member file")
    info.add_argument('--sample', type=int, default=None, help="Number of features to show")
    info.set_defaults(handler=run_info)

    query = commands.add_parser('query', help="Print matching features as GeoJSON")
    query.add_argument('path', help="Dataset stem or member file")
    query.add_argument('--filter', default=None, help="Attribute filter, e.g. \"number > 1\"")
    query.add_argument('--limit', type=int, default=None, help="Maximum number of features")
    query.add_argument('--output', default=None, help="Write GeoJSON here instead of stdout")
    query.set_defaults(handler=run_query)

    buffer = commands.add_parser('buffer', help="Buffer a dataset into a polygon dataset")
    buffer.add_argument('source', help="Source dataset")
    buffer.add_argument('target', help="Target dataset")
    buffer.add_argument('--distance', type=float, required=True, help="Buffer distance in CRS units")
    buffer.add_argument('--filter', default=None, help="Attribute filter on the source")
    buffer.add_argument('--segments', type=int, default=None, help="Segments per quarter circle")
    buffer.set_defaults(handler=run_buffer)

    from_geojson = commands.add_parser('from-geojson', help="Write GeoJSON features to a dataset")
    from_geojson.add_argument('geojson_file', help="GeoJSON Feature or FeatureCollection file")
    from_geojson.add_argument('target', help="Target dataset (created or appended to)")
    from_geojson.add_argument('--crs', default=None, help="CRS of the coordinates (default EPSG:4326)")
    from_geojson.set_defaults(handler=run_from_geojson)

    to_geojson = commands.add_parser('to-geojson', help="Export a dataset as GeoJSON")
    to_geojson.add_argument('path', help="Dataset stem or member file")
    to_geojson.add_argument('--filter', default=None, help="Attribute filter")
    to_geojson.add_argument('--output', default=None, help="Output file (default stdout)")
    to_geojson.set_defaults(handler=run_to_geojson)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """
    Run one command.

    Parameters:
    -----------
    argv : Optional[List[str]]
        Command line arguments (defaults to sys.argv[1:])

    Returns:
    --------
    int
        Exit status: 0 on success, 1 on a store, configuration or file error
    """
    args = build_parser().parse_args(argv)
    start_time = time.time()

    log_file = setup_logging(Path(args.log_dir) if args.log_dir else None)
    logger = get_logger(__name__)

    logger.debug("=" * 80)
    logger.debug(f"SHAPEFILE TOOL - {args.command}")
    logger.debug("=" * 80)

    try:
        settings = load_store_settings(load_config(Path(args.config) if args.config else None))
        args.handler(args, settings, logger)

    except ShapefileError as e:
        logger.error("=" * 80)
        logger.error(f"✗ {args.command.upper()} FAILED")
        logger.error("=" * 80)
        logger.error(f"{e.kind}: {e.message}")
        logger.debug("Traceback:", exc_info=True)
        logger.error(f"See log file for details: {log_file}")
        return 1

    except (OSError, ValueError, KeyError) as e:
        logger.error(f"✗ {args.command} failed: {e}", exc_info=True)
        return 1

    logger.debug(f"Completed in {time.time() - start_time:.2f} seconds")
    return 0


def cli() -> None:
    sys.exit(main())


if __name__ == "__main__":
    cli()
