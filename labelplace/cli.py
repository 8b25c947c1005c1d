#!/usr/bin/env python3
"""
LabelPlace CLI

Command-line interface for the map label placement engine.

Usage:
    labelplace place <features.geojson> [options]
    labelplace settings [--config settings.yaml] [--write out.yaml]
"""

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import List, Optional

import yaml

from .engine.feature import Arrangement
from .engine.labeling_engine import LabelingEngine
from .engine.settings import EngineSettings, SearchMethod, load_engine_settings, save_engine_settings
from .index.spatial_index import BoundingBox
from .providers import GeoJsonProvider, register_provider
from .visualization.svg import write_svg

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )


def _load_settings(args) -> Optional[EngineSettings]:
    try:
        return load_engine_settings(args.config)
    except (ValueError, yaml.YAMLError) as e:
        print(f"Error: Cannot read settings: {e}")
        return None


def _data_extent(engine: LabelingEngine) -> Optional[BoundingBox]:
    """Bounds of every registered feature, with a small margin."""
    boxes = []
    for layer in engine.layers:
        for index in (layer.feature_index, layer.obstacle_index):
            bounds = index.bounds()
            if bounds is not None:
                boxes.append(bounds)
    if not boxes:
        return None
    min_x = min(b[0] for b in boxes)
    min_y = min(b[1] for b in boxes)
    max_x = max(b[2] for b in boxes)
    max_y = max(b[3] for b in boxes)
    margin = max(max_x - min_x, max_y - min_y, 1.0) * 0.05
    return (min_x - margin, min_y - margin, max_x + margin, max_y + margin)


def cmd_place(args):
    """Place labels for the features of a GeoJSON file."""
    settings = _load_settings(args)
    if settings is None:
        return 1

    # Command line overrides go through the same validation as the file
    overrides = {
        "max_point_candidates": args.max_point_candidates,
        "max_line_candidates": args.max_line_candidates,
        "max_polygon_candidates": args.max_polygon_candidates,
        "search_method": args.search,
    }
    data = settings.to_dict()
    data.update({k: v for k, v in overrides.items() if v is not None})
    if args.no_partial:
        data["show_partial_labels"] = False
    settings = EngineSettings.from_dict(data)

    input_path = Path(args.features)
    if not input_path.exists():
        print(f"Error: Path not found: {input_path}")
        return 1

    try:
        provider = GeoJsonProvider.from_file(
            input_path,
            name=args.layer_name or input_path.stem,
            arrangement=Arrangement(args.arrangement),
            default_priority=args.priority,
            display_all=args.display_all,
        )
    except (ValueError, KeyError, TypeError) as e:
        print(f"Error: Cannot read features: {e}")
        return 1

    engine = LabelingEngine.from_settings(settings)
    register_provider(engine, provider)
    print(f"Loaded {len(provider)} features from {input_path}")

    extent = tuple(args.extent) if args.extent else _data_extent(engine)
    if extent is None:
        print("Error: Nothing to label")
        return 1

    problem = engine.extract_problem(extent)
    solution = engine.solve_problem(problem, display_all=args.display_all)
    print(f"  Placed: {len(solution.labels)}")
    print(f"  Unplaced: {len(solution.unlabeled)}")
    print(f"  Cost: {solution.cost:.4f}")

    result = {
        "extent": list(extent),
        "outcome": solution.outcome.value,
        "cost": solution.cost,
        "labels": [lp.to_dict() for lp in solution.labels],
        "unplaced": [lp.to_dict() for lp in solution.unlabeled],
    }
    if args.output:
        with open(args.output, "w") as f:
            json.dump(result, f, indent=2, default=str)
        print(f"Saved labels to: {args.output}")
    else:
        print(json.dumps(result, indent=2, default=str))

    if args.svg:
        write_svg(args.svg, solution, problem, settings, extent)
        print(f"Saved SVG to: {args.svg}")

    return 0


def cmd_settings(args):
    """Print or write the effective engine settings."""
    settings = _load_settings(args)
    if settings is None:
        return 1
    if args.write:
        save_engine_settings(settings, args.write)
        print(f"Saved settings to: {args.write}")
    else:
        print(yaml.safe_dump({"labeling": settings.to_dict()}, sort_keys=False), end="")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="LabelPlace - Map Label Placement",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  labelplace place towns.geojson -o labels.json
  labelplace place roads.geojson --arrangement line --svg roads.svg
  labelplace place towns.geojson --extent 0 0 1000 800 --no-partial
  labelplace settings --config labeling.yaml
        """,
    )
    parser.add_argument('--version', action='version', version='labelplace 0.1.0')

    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    # Place command
    place_parser = subparsers.add_parser('place', help='Place labels for GeoJSON features')
    place_parser.add_argument('features', help='Path to a GeoJSON file')
    place_parser.add_argument('-c', '--config', help='Labeling settings YAML file')
    place_parser.add_argument('--extent', type=float, nargs=4,
                              metavar=('MINX', 'MINY', 'MAXX', 'MAXY'),
                              help='Map extent (default: bounds of the features)')
    place_parser.add_argument('--layer-name', help='Layer name (default: file name)')
    place_parser.add_argument('--arrangement', default=Arrangement.AROUND_POINT.value,
                              choices=[a.value for a in Arrangement],
                              help='Label arrangement (default: around_point)')
    place_parser.add_argument('--priority', type=float, default=0.5,
                              help='Layer priority, 0 (most important) to 1 (default: 0.5)')
    place_parser.add_argument('--max-point-candidates', type=int, help='Candidates per point')
    place_parser.add_argument('--max-line-candidates', type=int, help='Candidates per line')
    place_parser.add_argument('--max-polygon-candidates', type=int, help='Candidates per polygon')
    place_parser.add_argument('--search', choices=[m.value for m in SearchMethod],
                              help='Search method (default: popmusic_tabu_chain)')
    place_parser.add_argument('--no-partial', action='store_true',
                              help='Only keep labels fully inside the extent')
    place_parser.add_argument('--display-all', action='store_true',
                              help='Show every label, even conflicting ones')
    place_parser.add_argument('-o', '--output', help='Write placed labels as JSON')
    place_parser.add_argument('--svg', help='Write an SVG rendering')
    place_parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')

    # Settings command
    settings_parser = subparsers.add_parser('settings', help='Show effective labeling settings')
    settings_parser.add_argument('-c', '--config', help='Labeling settings YAML file')
    settings_parser.add_argument('--write', help='Write the settings to a YAML file')
    settings_parser.add_argument('-v', '--verbose', action='store_true', help='Verbose output')

    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 1

    _configure_logging(args.verbose)

    commands = {
        'place': cmd_place,
        'settings': cmd_settings,
    }
    return commands[args.command](args)


if __name__ == '__main__':
    sys.exit(main())
