"""
Text listings of a tree's structure, and the `wzkit-dump` command line tool that writes them.

Each node is listed as `<path> [<Type>]`, in pre-order and in stored child order. Links are listed as they are,
never followed.
"""

import argparse
import logging
import pathlib
import sys
from collections.abc import Iterable, Iterator
from typing import IO, Optional
from urllib.parse import urlparse

from wzkit.config import Settings, load_settings
from wzkit.errors import Cancelled, WzError, failure_kind
from wzkit.nodes import Canvas, Float32, Float64, Int16, Int32, Int64, Node, NodeTree, Vector2
from wzkit.parser import parse_bytes
from wzkit.source import archive_name, open_source


logger = logging.getLogger(__name__)

HEADER_TEMPLATE = '=== WZ Structure for {name} ==='


def _walk_with_paths(tree: NodeTree, root_label: str, cancel=None) -> Iterator[tuple[Node, str]]:
    stack = [(tree.root, root_label)]
    while stack:
        if cancel is not None and cancel.is_set():
            raise Cancelled(f"Dump of {root_label} was cancelled")

        node, path = stack.pop()
        yield node, path
        stack.extend(
            (child, f'{path}/{name}') for name, child in reversed(tree.children_of(node))
        )


def dump(tree: NodeTree, root_label: Optional[str] = None, cancel=None) -> Iterator[str]:
    """
    Lazily yields one `<path> [<Type>]` line per node. The root line is `root_label` (the tree's name by default).
    """
    for node, path in _walk_with_paths(tree, root_label or tree.name, cancel):
        yield f'{path} [{node.type_name}]'


def format_value(node: Node) -> str:
    kind = node.kind
    if isinstance(kind, (Int16, Int32, Int64, Float32, Float64)):
        return f' = {kind.value}'
    if isinstance(kind, Vector2):
        return f' = ({kind.x}, {kind.y})'
    if isinstance(kind, Canvas):
        return ' [PNG]'
    return ''


def dump_values(tree: NodeTree, root_label: Optional[str] = None, cancel=None) -> Iterator[str]:
    """
    Like `dump`, but shows numeric and vector values (`path = value`) and marks canvases, instead of naming types.
    """
    for node, path in _walk_with_paths(tree, root_label or tree.name, cancel):
        yield f'{path}{format_value(node)}'


def write_dump(lines: Iterable[str], out: IO[str], header: Optional[str] = None) -> int:
    count = 0
    if header is not None:
        print(header, file=out)
        print(file=out)
    for line in lines:
        print(line, file=out)
        count += 1
    return count


def default_output_path(input_path: str) -> pathlib.Path:
    parsed = urlparse(input_path)
    if parsed.scheme in ('http', 'https'):
        name = pathlib.PurePosixPath(parsed.path).name or 'archive'
        base = pathlib.Path(name)
    else:
        base = pathlib.Path(input_path)
    stem = base.name[:-len('.img')] if base.name.endswith('.img') else base.name
    return base.with_name(f'{stem}_structure.txt')


def root_label(input_path: str) -> str:
    return pathlib.PurePosixPath(archive_name(input_path)).stem


def init_logging(verbose: int):
    level = logging.WARNING - 10 * verbose
    logging.basicConfig(
        level=max(level, logging.DEBUG),
        style='{',
        format='[{asctime}] {levelname}: {message}',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr,
    )


def add_common_arguments(parser: argparse.ArgumentParser):
    parser.add_argument('--config', type=pathlib.Path, help='YAML settings file')
    parser.add_argument('--region', help='Key region (gms, kms, ems, bms); guessed when omitted')
    parser.add_argument('--version', type=int, dest='wz_version', help='Format version of .wz files')
    parser.add_argument('--cache-dir', type=pathlib.Path, help='Keep fetched archives in this directory')
    parser.add_argument('-v', '--verbose', action='count', default=0)


def settings_from_args(args: argparse.Namespace) -> Settings:
    settings = load_settings(args.config) if args.config else Settings()
    settings = settings.override(region=args.region, version=args.wz_version, cache_dir=args.cache_dir)
    # an unknown --region only shows up here
    settings.key()
    return settings


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog='wzkit-dump', description='Dump the node structure of a WZ archive to text')
    parser.add_argument('input', help='Path or URL of the .img / .wz file')
    parser.add_argument('output', nargs='?', help='Output text file (default: <input>_structure.txt)')
    parser.add_argument('--values', action='store_true', help='Show values instead of node types')
    parser.add_argument('--no-header', action='store_true', help='Omit the header comment block')
    add_common_arguments(parser)
    args = parser.parse_args(argv)

    try:
        settings = settings_from_args(args)
    except (OSError, ValueError) as e:
        print(f'ConfigError: {e}', file=sys.stderr)
        return 2

    init_logging(max(args.verbose, settings.verbosity))

    output = pathlib.Path(args.output) if args.output else default_output_path(args.input)
    name = root_label(args.input)

    try:
        data = open_source(settings).fetch(args.input)
        logger.info("Read %s (%d bytes)", args.input, len(data))
        tree = parse_bytes(data, name, key=settings.key(), version=settings.version)

        lines = dump_values(tree) if args.values else dump(tree)
        header = None if args.no_header or args.values else HEADER_TEMPLATE.format(name=args.input)
        with output.open('w', encoding='utf-8', newline='\n') as out:
            count = write_dump(lines, out, header)
    except WzError as e:
        print(f'{failure_kind(e)}: {e}', file=sys.stderr)
        return 1
    except OSError as e:
        print(f'OutputError: {e}', file=sys.stderr)
        return 1

    logger.info("Wrote %d nodes to %s", count, output)
    return 0


if __name__ == '__main__':
    sys.exit(main())
