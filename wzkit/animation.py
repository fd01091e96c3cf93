"""
Turning a property full of numbered canvases into a timed frame sequence.
"""

import logging
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Optional

from wzkit.canvas import CanvasDecoder, DecodedImage
from wzkit.errors import Cancelled, DecodeError, LinkError, NotAFrame
from wzkit.links import LinkResolver
from wzkit.nodes import SCALAR_KINDS, Canvas, Node, NodeTree, StringValue, Vector2


logger = logging.getLogger(__name__)

DEFAULT_DELAY = 100

DELAY_PROPERTY = 'delay'
ORIGIN_PROPERTY = 'origin'

FRAME_NAME = re.compile(r'[0-9]+')


def frame_number(name: str) -> Optional[int]:
    """
    The frame number encoded in a child name, or None if the name is anything but plain ASCII digits.
    """
    return int(name) if FRAME_NAME.fullmatch(name) else None


@dataclass(frozen=True)
class AnimationFrame:
    number: int
    name: str
    image: DecodedImage
    delay: int
    origin: tuple[int, int] = (0, 0)


@dataclass
class AnimationSequence:
    frames: list[AnimationFrame] = field(default_factory=list)
    skipped: list[NotAFrame] = field(default_factory=list)

    def __len__(self):
        return len(self.frames)

    def __iter__(self) -> Iterator[AnimationFrame]:
        return iter(self.frames)

    def __getitem__(self, index: int) -> AnimationFrame:
        return self.frames[index]

    @property
    def durations(self) -> list[int]:
        return [frame.delay for frame in self.frames]

    @property
    def total_duration(self) -> int:
        return sum(self.durations)

    def frame_at(self, elapsed_ms: int, loop: bool = True) -> Optional[AnimationFrame]:
        """
        The frame on screen `elapsed_ms` after playback started. Without `loop`, the last frame is held at the end.
        """
        if not self.frames:
            return None

        total = self.total_duration
        if total <= 0:
            return self.frames[0]
        if loop:
            elapsed_ms %= total
        elif elapsed_ms >= total:
            return self.frames[-1]

        for frame in self.frames:
            if elapsed_ms < frame.delay:
                return frame
            elapsed_ms -= frame.delay

        return self.frames[-1]


class AnimationAssembler:
    def __init__(
        self,
        tree: NodeTree,
        decoder: Optional[CanvasDecoder] = None,
        resolver: Optional[LinkResolver] = None,
        default_delay: int = DEFAULT_DELAY,
    ):
        self.tree = tree
        self.decoder = decoder or CanvasDecoder(tree)
        self.resolver = resolver or LinkResolver(tree)
        self.default_delay = default_delay

    def frame_children(self, node: Node) -> list[tuple[int, str, Node]]:
        numbered = []
        for name, child in self.tree.children_of(node):
            number = frame_number(name)
            if number is not None:
                numbered.append((number, name, child))

        # stored order is not reliable, "10" may well come before "2"
        numbered.sort(key=lambda item: item[0])
        return numbered

    def assemble(self, node: Node, cancel=None) -> AnimationSequence:
        """
        Collects the children of `node` named with plain numbers, in ascending numeric order, as animation frames.

        Gaps in the numbering are fine. Children that are not (and do not link to) a usable canvas are left out and
        reported in the result's `skipped` list. A node without any frames gives an empty sequence.

        Raises:
            Cancelled: If `cancel` (anything with an `is_set()` method) gets set; it is checked before each frame.
        """
        sequence = AnimationSequence()

        for number, name, child in self.frame_children(node):
            if cancel is not None and cancel.is_set():
                raise Cancelled(f"Assembly of {self.tree.path_of(node)} was cancelled")

            try:
                sequence.frames.append(self._assemble_frame(number, name, child))
            except NotAFrame as e:
                logger.debug("Skipping frame %s of %s: %s", name, self.tree.path_of(node), e.reason)
                sequence.skipped.append(e)

        return sequence

    def _assemble_frame(self, number: int, name: str, child: Node) -> AnimationFrame:
        try:
            canvas = self.resolver.resolve_canvas(child)
        except LinkError as e:
            raise NotAFrame(name, str(e)) from e

        if not isinstance(canvas.kind, Canvas):
            raise NotAFrame(name, f"{self.tree.path_of(canvas)} is a {canvas.type_name} node")

        try:
            image = self.decoder.decode(canvas)
        except DecodeError as e:
            raise NotAFrame(name, str(e)) from e

        # metadata is looked up on the frame as stored first, then on the canvas it leads to
        holders = [child] if child is canvas else [child, canvas]

        return AnimationFrame(
            number=number,
            name=name,
            image=image,
            delay=self._read_delay(name, holders),
            origin=self._read_origin(name, holders),
        )

    def _property(self, name: str, holders: list[Node], prop: str) -> Optional[Node]:
        for holder in holders:
            found = self.tree.child(holder, prop)
            if found is not None:
                try:
                    return self.resolver.resolve(found)
                except LinkError as e:
                    raise NotAFrame(name, f"{prop}: {e}") from e
        return None

    def _read_delay(self, name: str, holders: list[Node]) -> int:
        prop = self._property(name, holders, DELAY_PROPERTY)
        if prop is None:
            return self.default_delay

        if isinstance(prop.kind, StringValue):
            try:
                return int(prop.kind.value.strip())
            except ValueError:
                raise NotAFrame(name, f"delay {prop.kind.value!r} is not a number") from None
        if isinstance(prop.kind, SCALAR_KINDS):
            return int(prop.kind.value)

        raise NotAFrame(name, f"delay is a {prop.type_name} node")

    def _read_origin(self, name: str, holders: list[Node]) -> tuple[int, int]:
        prop = self._property(name, holders, ORIGIN_PROPERTY)
        if prop is None:
            return 0, 0
        if not isinstance(prop.kind, Vector2):
            raise NotAFrame(name, f"origin is a {prop.type_name} node")
        return prop.kind.x, prop.kind.y
