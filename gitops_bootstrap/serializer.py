"""Serialization of a resource tree to YAML documents.

Every document in the tree is encoded before anything is written, so an
encoding failure never leaves partial output behind. The encoded files are
then handed to a `Sink`:

  - `StreamSink` writes every document to a single stream, each followed by
    a `---` separator, e.g. for `kubectl apply -f -`.
  - `DirectorySink` writes each document to its path below a root directory.
"""

from abc import ABC, abstractmethod
import logging
import os
from pathlib import Path
from typing import TextIO

import aiofiles
from mashumaro.exceptions import MissingField, InvalidFieldValue
import yaml

from .exceptions import SerializationError, WriteError
from .tree import ResourceTree

__all__ = [
    "serialize_tree",
    "write_tree",
    "Sink",
    "StreamSink",
    "DirectorySink",
]

_LOGGER = logging.getLogger(__name__)

DOCUMENT_SEPARATOR = "---\n"


def serialize_tree(tree: ResourceTree) -> list[tuple[str, str]]:
    """Return (path, YAML content) pairs for every document in path order."""
    result = []
    for path, doc in tree.items():
        try:
            content = yaml.dump(doc.to_doc(), sort_keys=False)
        except (yaml.YAMLError, MissingField, InvalidFieldValue, TypeError) as err:
            raise SerializationError(f"Unable to serialize {path}: {err}") from err
        result.append((path, content))
    return result


class Sink(ABC):
    """Destination for serialized files."""

    @abstractmethod
    async def write(self, path: str, content: str) -> None:
        """Write the content of the file at the path."""


class StreamSink(Sink):
    """Writes every document to a single text stream."""

    def __init__(self, stream: TextIO) -> None:
        """Initialize StreamSink."""
        self._stream = stream

    async def write(self, path: str, content: str) -> None:
        try:
            self._stream.write(content)
            self._stream.write(DOCUMENT_SEPARATOR)
        except (OSError, ValueError) as err:
            raise WriteError(f"Unable to write {path}: {err}") from err


class DirectorySink(Sink):
    """Writes every document to a file below a root directory."""

    def __init__(self, root: Path) -> None:
        """Initialize DirectorySink."""
        self._root = root

    async def write(self, path: str, content: str) -> None:
        target = self._root / path
        try:
            os.makedirs(target.parent, exist_ok=True)
            async with aiofiles.open(str(target), mode="w") as output:
                await output.write(content)
        except OSError as err:
            raise WriteError(f"Unable to write {target}: {err}") from err
        _LOGGER.debug("Wrote %s", target)


async def write_tree(tree: ResourceTree, sink: Sink) -> int:
    """Serialize the tree and write every file to the sink.

    Returns the number of files written.
    """
    files = serialize_tree(tree)
    for path, content in files:
        await sink.write(path, content)
    return len(files)
