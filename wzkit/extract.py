"""
The `wzkit-extract` command line tool: saves canvases as PNG files, animations as numbered frames with a timing
table, or the raw `.img` entries of a `.wz` file.
"""

import argparse
import csv
import logging
import pathlib
import sys
from typing import Optional

from wzkit.animation import DEFAULT_DELAY, AnimationAssembler, AnimationSequence
from wzkit.archive import WzArchive, is_safe_file_name
from wzkit.canvas import CanvasDecoder
from wzkit.dump import add_common_arguments, init_logging, root_label, settings_from_args
from wzkit.errors import Cancelled, DecodeError, LinkError, WzError, failure_kind
from wzkit.links import LinkResolver
from wzkit.nodes import Canvas, Node, NodeTree
from wzkit.parser import parse_bytes
from wzkit.source import open_source


logger = logging.getLogger(__name__)

FRAMES_TABLE = 'frames.csv'


def _relative_names(tree: NodeTree, node: Node, start: Node) -> list[str]:
    names = []
    current = node
    while current is not None and current is not start:
        names.append(current.name)
        current = tree.parent_of(current)
    return list(reversed(names)) or [node.name]


def export_canvases(tree: NodeTree, path: str, output_dir: pathlib.Path, cancel=None) -> int:
    """
    Saves every canvas at or below `path` as `<output_dir>/<path relative to it>.png`.

    Linked canvases are resolved and saved under the link's own name. Canvases that cannot be decoded, or whose
    names cannot be used as file names, are reported and skipped.

    Raises:
        Cancelled: If `cancel` gets set; files saved so far are left in place.
    """
    resolver = LinkResolver(tree)
    decoder = CanvasDecoder(tree)
    start = tree.get(path)
    root = output_dir.resolve()

    count = 0
    for node in tree.walk(start):
        if cancel is not None and cancel.is_set():
            raise Cancelled(f"Export of {tree.path_of(start)} was cancelled after {count} canvases")
        try:
            target = resolver.resolve_canvas(node)
        except LinkError as e:
            logger.warning("Skipping %s: %s", tree.path_of(node), e)
            continue
        if not isinstance(target.kind, Canvas):
            continue

        names = _relative_names(tree, node, start)
        out_path = output_dir.joinpath(*names[:-1], f'{names[-1]}.png')
        if not all(is_safe_file_name(name) for name in names) or root not in out_path.resolve().parents:
            logger.warning("Skipping %s: its name does not make a file name inside %s", tree.path_of(node), output_dir)
            continue

        try:
            image = decoder.decode(target)
        except DecodeError as e:
            logger.warning("Skipping %s: %s", tree.path_of(node), e)
            continue

        out_path.parent.mkdir(parents=True, exist_ok=True)
        image.save(out_path)
        logger.debug("Saved %s (%dx%d)", out_path, image.width, image.height)
        count += 1

    return count


def write_frames_table(sequence: AnimationSequence, out):
    writer = csv.writer(out)
    writer.writerow(['frame', 'file', 'delay', 'origin_x', 'origin_y'])
    for frame in sequence:
        writer.writerow([frame.number, f'{frame.number}.png', frame.delay, *frame.origin])


def export_animation(
    tree: NodeTree, path: str, output_dir: pathlib.Path, default_delay: int = DEFAULT_DELAY, cancel=None
) -> AnimationSequence:
    sequence = AnimationAssembler(tree, default_delay=default_delay).assemble(tree.get(path), cancel=cancel)

    output_dir.mkdir(parents=True, exist_ok=True)
    for frame in sequence:
        frame.image.save(output_dir / f'{frame.number}.png')
    with (output_dir / FRAMES_TABLE).open('w', encoding='utf-8', newline='') as out:
        write_frames_table(sequence, out)

    for skipped in sequence.skipped:
        logger.warning("Frame %s skipped: %s", skipped.name, skipped.reason)
    return sequence


def extract_images(filename, output_dir: pathlib.Path, settings) -> int:
    with WzArchive(filename, key=settings.key(), version=settings.version) as archive:
        archive.extractall(output_dir)
        return len(archive.index)


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(prog='wzkit-extract', description='Extract images from a WZ archive')
    parser.add_argument('input', help='Path or URL of the .img / .wz file')
    parser.add_argument('path', nargs='?', default='', help='Node to extract (default: the whole archive)')
    parser.add_argument('-o', '--output', type=pathlib.Path, default=pathlib.Path('extracted'), help='Output directory')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--animation', action='store_true', help='Assemble the node as an animation')
    mode.add_argument('--images', action='store_true', help='Extract the stored .img entries of a .wz file')
    add_common_arguments(parser)
    args = parser.parse_args(argv)

    try:
        settings = settings_from_args(args)
    except (OSError, ValueError) as e:
        print(f'ConfigError: {e}', file=sys.stderr)
        return 2

    init_logging(max(args.verbose, settings.verbosity))

    try:
        if args.images:
            count = extract_images(args.input, args.output, settings)
            logger.info("Extracted %d images to %s", count, args.output)
            return 0

        data = open_source(settings).fetch(args.input)
        tree = parse_bytes(data, root_label(args.input), key=settings.key(), version=settings.version)

        if args.animation:
            sequence = export_animation(tree, args.path, args.output, settings.default_delay)
            logger.info("Saved %d frames (%d ms) to %s", len(sequence), sequence.total_duration, args.output)
        else:
            count = export_canvases(tree, args.path, args.output)
            logger.info("Saved %d canvases to %s", count, args.output)
    except WzError as e:
        print(f'{failure_kind(e)}: {e}', file=sys.stderr)
        return 1
    except OSError as e:
        print(f'OutputError: {e}', file=sys.stderr)
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
