import logging
import pathlib
from typing import TYPE_CHECKING, Optional

from pakal.archive import SimpleArchive, make_opener

from wzkit.crypto import KeyStream
from wzkit.nodes import Archive, Directory, Image, NodeTree
from wzkit.parser import parse_bytes, parse_directories

if TYPE_CHECKING:
    from pakal.archive import ArchiveIndex, SimpleEntry


logger = logging.getLogger(__name__)


def is_safe_file_name(name: str) -> bool:
    """
    Whether a node name can be used as one component of an output path without leaving the output directory.
    """
    return name not in ('', '.', '..') and '/' not in name and '\\' not in name and '\x00' not in name


def image_index(tree: NodeTree) -> dict[str, tuple[int, int]]:
    """
    Maps the slash separated path of every image below the root to its `(offset, size)` in the file.

    Entries whose names cannot be used as file names are left out, along with everything below them.
    """
    index = {}
    stack = [(tree.root, '')]
    while stack:
        node, path = stack.pop()
        for name, child in tree.children_of(node):
            if not is_safe_file_name(name):
                logger.warning("Leaving out %s: %r is not usable as a file name", tree.path_of(child), name)
                continue
            child_path = f'{path}/{name}' if path else name
            if isinstance(child.kind, Image):
                index[child_path] = (child.kind.offset, child.kind.size)
            elif isinstance(child.kind, Directory):
                stack.append((child, child_path))
    return index


class WzArchive(SimpleArchive):
    """
    A `PKG1` file seen as a plain archive of `.img` entries, for listing and extracting images as they are stored.
    """

    def __init__(self, fname, key: Optional[KeyStream] = None, version: Optional[int] = None):
        self.key = key
        self.version = version
        self.fname = fname
        self.directory: Optional[NodeTree] = None
        super().__init__(fname)

    def _create_index(self) -> 'ArchiveIndex[SimpleEntry]':
        self._stream.seek(0)
        data = self._stream.read()
        self.directory = parse_directories(Archive(pathlib.Path(self.fname).name, data), self.key, self.version)

        # the guessed key is needed again to read the extracted images
        self.key = self.directory.key
        self.version = self.directory.archive.version
        return image_index(self.directory)

    def load_image(self, name: str) -> NodeTree:
        with self.open(name, 'rb') as f:
            data = f.read()
        return parse_bytes(data, name.rsplit('/', 1)[-1], key=self.key)


open_archive = make_opener(WzArchive)
