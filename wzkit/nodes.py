"""
The in-memory model of a parsed WZ archive.

Nodes live in a flat arena owned by `NodeTree` and refer to each other by integer index. A node only knows the index
of its parent and an ordered name -> index mapping of its children, so the tree can be dropped as a unit and links
between nodes stay plain path strings until someone asks for them to be resolved.
"""

from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from typing import Optional, Union

from wzkit.crypto import KeyStream
from wzkit.cursor import ByteCursor
from wzkit.errors import NotFound


@dataclass(frozen=True)
class Archive:
    name: str
    data: bytes = field(repr=False)
    version: Optional[int] = None
    declared_size: int = 0
    base_offset: int = 0


@dataclass(frozen=True)
class Directory:
    pass


@dataclass(frozen=True)
class Image:
    offset: int
    size: int
    checksum: int = 0


@dataclass(frozen=True)
class Canvas:
    width: int
    height: int
    format_tag: int
    offset: int
    length: int


@dataclass(frozen=True)
class Null:
    pass


@dataclass(frozen=True)
class Int16:
    value: int


@dataclass(frozen=True)
class Int32:
    value: int


@dataclass(frozen=True)
class Int64:
    value: int


@dataclass(frozen=True)
class Float32:
    value: float


@dataclass(frozen=True)
class Float64:
    value: float


@dataclass(frozen=True)
class StringValue:
    value: str


@dataclass(frozen=True)
class Vector2:
    x: int
    y: int


@dataclass(frozen=True)
class Convex:
    pass


@dataclass(frozen=True)
class AudioBlob:
    offset: int
    length: int
    duration_ms: int
    format_tag: int
    header: bytes = field(repr=False, default=b'')


@dataclass(frozen=True)
class Link:
    path: str


NodeKind = Union[
    Directory, Image, Canvas, Null, Int16, Int32, Int64, Float32, Float64, StringValue, Vector2, Convex, AudioBlob,
    Link,
]

TYPE_NAMES: dict[type, str] = {
    Directory: 'Property',
    Image: 'Property',
    Canvas: 'PNG',
    Null: 'Null',
    Int16: 'Short',
    Int32: 'Int',
    Int64: 'Long',
    Float32: 'Float',
    Float64: 'Double',
    StringValue: 'String',
    Vector2: 'Vector',
    Convex: 'Convex',
    AudioBlob: 'Sound',
    Link: 'UOL',
}

SCALAR_KINDS = (Int16, Int32, Int64, Float32, Float64, StringValue)


def type_name(kind: NodeKind) -> str:
    return TYPE_NAMES[type(kind)]


class Node:
    __slots__ = ('index', 'name', 'kind', 'parent', 'children')

    index: int
    name: str
    kind: NodeKind
    parent: Optional[int]
    children: dict[str, int]

    def __init__(self, index: int, name: str, kind: NodeKind, parent: Optional[int]):
        self.index = index
        self.name = name
        self.kind = kind
        self.parent = parent
        self.children = {}

    @property
    def type_name(self) -> str:
        return type_name(self.kind)

    @property
    def value(self):
        """
        The payload of scalar nodes, (x, y) for vectors, the target path for links and None for everything else.
        """
        kind = self.kind
        if isinstance(kind, SCALAR_KINDS):
            return kind.value
        if isinstance(kind, Vector2):
            return kind.x, kind.y
        if isinstance(kind, Link):
            return kind.path
        return None

    def __repr__(self):
        return f'Node({self.index}, {self.name!r}, {self.kind!r})'


PathLike = Union[str, Sequence[str]]


def split_path(path: PathLike) -> list[str]:
    if isinstance(path, str):
        return [segment for segment in path.split('/') if segment]
    return list(path)


class NodeTree:
    """
    A parsed archive. Built once by `wzkit.parser.parse`, read-only afterwards.

    Traversal (`get`, `children_of`, `walk`) needs no locking. Children are always reported in the order they were
    stored in the archive.
    """

    archive: Archive
    key: KeyStream
    nodes: list[Node]

    def __init__(self, archive: Archive, key: KeyStream):
        self.archive = archive
        self.key = key
        self.nodes = []

    @property
    def name(self) -> str:
        return self.archive.name

    @property
    def root(self) -> Node:
        return self.nodes[0]

    def __len__(self):
        return len(self.nodes)

    def add_node(self, name: str, kind: NodeKind, parent: Optional[int]) -> Optional[Node]:
        """
        Appends a node to the arena. Only used while parsing.

        Returns None, without storing anything, if the parent already has a child with that name.
        """
        if parent is not None and name in self.nodes[parent].children:
            return None
        node = Node(len(self.nodes), name, kind, parent)
        self.nodes.append(node)
        if parent is not None:
            self.nodes[parent].children[name] = node.index
        return node

    def node(self, index: int) -> Node:
        return self.nodes[index]

    def parent_of(self, node: Node) -> Optional[Node]:
        return None if node.parent is None else self.nodes[node.parent]

    def child(self, node: Node, name: str) -> Optional[Node]:
        index = node.children.get(name)
        return None if index is None else self.nodes[index]

    def children_of(self, node: Node) -> list[tuple[str, Node]]:
        return [(name, self.nodes[index]) for name, index in node.children.items()]

    def child_names(self, path: PathLike = ()) -> list[str]:
        return list(self.get(path).children)

    def get(self, path: PathLike, start: Optional[Node] = None) -> Node:
        """
        Looks a node up by the names along the way to it, starting from `start` (the root by default).

        A leading segment equal to the root's own name is accepted and skipped, so both `Mob.img/0100100` and
        `0100100` find the same node.

        Raises:
            NotFound: If any segment has no matching child.
        """
        segments = split_path(path)
        node = self.root if start is None else start
        if start is None and segments and segments[0] == node.name and node.name not in node.children:
            segments = segments[1:]

        for segment in segments:
            found = self.child(node, segment)
            if found is None:
                raise NotFound('/'.join(split_path(path)))
            node = found

        return node

    def find(self, path: PathLike, start: Optional[Node] = None) -> Optional[Node]:
        try:
            return self.get(path, start)
        except NotFound:
            return None

    def path_of(self, node: Node) -> str:
        names = []
        current = node
        while current is not None:
            names.append(current.name)
            current = self.parent_of(current)
        return '/'.join(reversed(names))

    def containing_image(self, node: Node) -> Node:
        """
        The nearest `Image` ancestor of the node (or the node itself), falling back to the tree root.
        """
        current = node
        while current is not None:
            if isinstance(current.kind, Image):
                return current
            current = self.parent_of(current)
        return self.root

    def walk(self, start: Optional[Node] = None) -> Iterator[Node]:
        """
        Pre-order, depth-first traversal in stored child order.
        """
        stack = [self.root if start is None else start]
        while stack:
            node = stack.pop()
            yield node
            stack.extend(self.nodes[index] for index in reversed(node.children.values()))

    def cursor(self) -> ByteCursor:
        return ByteCursor(self.archive.data, self.key)

    def payload(self, node: Node) -> bytes:
        """
        The raw bytes stored for a canvas or sound node, exactly as they appear in the archive.
        """
        kind = node.kind
        if not isinstance(kind, (Canvas, AudioBlob)):
            raise TypeError(f"{self.path_of(node)} is a {node.type_name} node and has no payload")
        return self.cursor().seek_absolute(kind.offset).read_bytes(kind.length, f'payload of {node.name}')

    def __repr__(self):
        return f'NodeTree({self.name!r}, {len(self.nodes)} nodes)'
