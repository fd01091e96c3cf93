from wzkit.animation import AnimationAssembler, AnimationFrame, AnimationSequence
from wzkit.canvas import CanvasDecoder, DecodedImage
from wzkit.crypto import KeyStream
from wzkit.cursor import ByteCursor
from wzkit.errors import (
    AssemblyError, Cancelled, DecodeError, FetchError, LinkError, NotAFrame, NotFound, OutOfBounds, ParseError, WzError,
)
from wzkit.links import LinkResolver
from wzkit.nodes import Archive, Node, NodeTree
from wzkit.parser import load_file, parse, parse_bytes
