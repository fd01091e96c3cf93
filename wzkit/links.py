"""
Following UOL (link) nodes, and the `_inlink` / `_outlink` redirections some canvases use to share pixel data.
"""

from typing import Optional

from wzkit.errors import LinkError, LinkErrorKind
from wzkit.nodes import Canvas, Link, Node, NodeTree, StringValue, split_path


PARENT_SEGMENT = '..'
INLINK = '_inlink'
OUTLINK = '_outlink'


class LinkResolver:
    """
    Resolves links against one tree.

    The resolver keeps no state between calls: every call carries its own visited set, so it can be shared freely
    between threads. Callers that resolve the same link repeatedly should memoize the result themselves.
    """

    def __init__(self, tree: NodeTree):
        self.tree = tree

    def resolve(self, node: Node) -> Node:
        """
        Follows a chain of links until reaching a node that is not a link. Non-link nodes are returned as they are.

        Raises:
            LinkError: `Dangling` if some path segment has no match, `Cycle` if the chain revisits a link.
        """
        return self._resolve(node, set())

    def _resolve(self, node: Node, visited: set[int]) -> Node:
        while isinstance(node.kind, Link):
            if node.index in visited:
                raise LinkError(LinkErrorKind.CYCLE, self.tree.path_of(node))
            visited.add(node.index)
            node = self._follow(node, visited)
        return node

    def _follow(self, link: Node, visited: set[int]) -> Node:
        path = link.kind.path
        if path.startswith('/'):
            current = self.tree.containing_image(link)
        else:
            current = self.tree.parent_of(link)
        return self._walk(current, path, visited)

    def _walk(self, start: Node, path: str, visited: set[int]) -> Node:
        current = start
        for segment in split_path(path):
            if segment == '.':
                continue
            if segment == PARENT_SEGMENT:
                current = self.tree.parent_of(current)
                if current is None:
                    raise LinkError(LinkErrorKind.DANGLING, path, segment)
                continue

            # links in the middle of a path lead to their target's children
            current = self._resolve(current, set(visited))
            found = self.tree.child(current, segment)
            if found is None:
                raise LinkError(LinkErrorKind.DANGLING, path, segment)
            current = found

        return current

    def resolve_path(self, path: str, start: Optional[Node] = None) -> Node:
        """
        Walks a slash-separated path from `start` (the root by default), following links met along the way and at
        the end.
        """
        visited: set[int] = set()
        node = self._walk(self.tree.root if start is None else start, path, visited)
        return self._resolve(node, visited)

    def resolve_canvas(self, node: Node) -> Node:
        """
        Finds the canvas whose pixels should be displayed for `node`.

        Links are followed first. A canvas carrying an `_inlink` string borrows the pixels of the canvas at that
        path within the same image; one carrying an `_outlink` borrows them from a path starting at the tree root.
        """
        visited: set[int] = set()
        node = self._resolve(node, visited)

        while isinstance(node.kind, Canvas):
            redirect = self._redirect(node, visited)
            if redirect is None:
                break
            node = redirect

        return node

    def _redirect(self, node: Node, visited: set[int]):
        for marker in (INLINK, OUTLINK):
            child = self.tree.child(node, marker)
            if child is None or not isinstance(child.kind, StringValue):
                continue

            if child.index in visited:
                raise LinkError(LinkErrorKind.CYCLE, self.tree.path_of(child))
            visited.add(child.index)

            path = child.kind.value
            if marker == INLINK:
                start = self.tree.containing_image(node)
            else:
                start = self.tree.root
                segments = split_path(path)
                if segments and segments[0] == start.name:
                    path = '/'.join(segments[1:])

            return self._resolve(self._walk(start, path, visited), visited)

        return None
