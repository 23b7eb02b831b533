"""
Comfy Splice - Input Image Embedding
====================================

Some executors cannot read uploaded files or remote URLs from a graph. For
those, an image-loading node is rewritten into a ``LoadImageFromBase64``
node that carries the image bytes inline:

    {"class_type": "LoadImageFromBase64",
     "inputs": {"data": "<base64>"},
     "_meta": <original _meta, or a generated title>}

The node keeps its id, so every consumer of its IMAGE output stays wired.

Accepted image sources:
- ``bytes``: raw file contents
- ``pathlib.Path``: a local file, read at embed time
- ``str`` starting with ``http://`` or ``https://``: fetched with requests
- ``str`` data URL (``data:image/png;base64,...``): the payload is kept
- any other ``str``: treated as base64 that is already encoded

Usage:
    from comfy_splice.images import embed_images

    result = embed_images(graph, {"2": Path("photo.png")})
    graph = result.graph
"""

import base64
import binascii
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import NamedTuple, Union

import requests

from .config import settings
from .diagnostics import Diagnostic, Stage
from .exceptions import InputImageError
from .graph import Graph, Node, OperationKind
from .logging_config import get_logger

logger = get_logger(__name__)

__all__ = [
    "BASE64_LOADER",
    "ImageSource",
    "EmbedResult",
    "fetch_image",
    "encode_image",
    "embed_images",
]

BASE64_LOADER = "LoadImageFromBase64"

ImageSource = Union[bytes, bytearray, Path, str]


class EmbedResult(NamedTuple):
    graph: Graph
    diagnostics: list[Diagnostic]
    converted: list[str]


def fetch_image(url: str) -> bytes:
    """
    Download an image.

    Raises:
        InputImageError: On any transport failure or non-2xx response
    """
    timeout = (settings.http.connect_timeout, settings.http.read_timeout)
    try:
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        raise InputImageError(url, f"Failed to fetch image {url}: {e}", cause=e) from e
    return response.content


def encode_image(source: ImageSource, fetch: Callable[[str], bytes] = fetch_image) -> str:
    """
    Base64 text for ``source``.

    Raises:
        InputImageError: If the source cannot be read, fetched or decoded
    """
    if isinstance(source, (bytes, bytearray)):
        return base64.b64encode(bytes(source)).decode("ascii")

    if isinstance(source, Path):
        try:
            data = source.read_bytes()
        except OSError as e:
            raise InputImageError(str(source), f"Cannot read {source}: {e}", cause=e) from e
        return base64.b64encode(data).decode("ascii")

    if isinstance(source, str):
        if source.startswith(("http://", "https://")):
            return base64.b64encode(fetch(source)).decode("ascii")

        text = source.split(",", 1)[1] if source.startswith("data:") else source
        text = text.strip()
        if not text:
            raise InputImageError("<empty>", "Image string is empty")
        try:
            base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as e:
            raise InputImageError(
                source[:40], "Image string is neither a URL nor valid base64", cause=e
            ) from e
        return text

    raise InputImageError(type(source).__name__, f"Unsupported image source type: {type(source)}")


def _diag(code: str, message: str, node_id: str) -> Diagnostic:
    return Diagnostic(Stage.EMBED, code, message, node_id=node_id)


def embed_images(
    graph: Graph,
    images: Mapping[str, ImageSource],
    fetch: Callable[[str], bytes] = fetch_image,
) -> EmbedResult:
    """
    Rewrite the listed image loaders of a copy of ``graph`` to carry their image inline.

    Ids that are missing or that name a node which does not load an image are
    skipped with a diagnostic.

    Args:
        graph: Graph to rewrite (not mutated)
        images: Node id -> image source
        fetch: URL downloader, replaceable in tests

    Raises:
        InputImageError: If an image source cannot be turned into base64
    """
    result = graph.copy()
    diagnostics: list[Diagnostic] = []
    converted: list[str] = []

    for raw_id, source in images.items():
        node_id = str(raw_id)
        if node_id not in result:
            diagnostics.append(
                _diag("image-node-missing", f"Node {node_id} not found; image skipped", node_id)
            )
            continue
        node = result[node_id]
        if node.kind is not OperationKind.LOAD_IMAGE:
            diagnostics.append(
                _diag(
                    "not-an-image-loader",
                    f"Node {node_id} is {node.class_type}, not an image loader; image skipped",
                    node_id,
                )
            )
            continue

        data = encode_image(source, fetch)
        meta = node.body.get("_meta") or {"title": f"Base64 Image {node_id}"}
        result.add(Node(node_id, BASE64_LOADER, {"inputs": {"data": data}, "_meta": meta}))
        converted.append(node_id)

    if converted:
        logger.info(
            f"Embedded {len(converted)} input image(s)",
            extra={"node_ids": converted},
        )
    return EmbedResult(result, diagnostics, converted)
