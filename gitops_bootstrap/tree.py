"""A path-keyed tree of the files written by a bootstrap.

Resources are added to a directory that is aggregated by a kustomization, and
the kustomization of that directory is updated with the relative path of
every resource added. A kustomization owns every file below its directory
that is not below a deeper kustomization.

Example usage:
```
tree = ResourceTree()
tree.add_resource("environments/dev/base", "01-namespaces/dev.yaml", namespace)
validate_tree(tree)
```
"""

from collections.abc import Iterator
import logging
import posixpath

from .exceptions import ManifestIntegrityError
from .resources import (
    Document,
    Kustomization,
    NamedResource,
    Resource,
    create_kustomization,
)

__all__ = [
    "ResourceTree",
    "validate_kustomizations",
    "validate_references",
    "validate_tree",
]

_LOGGER = logging.getLogger(__name__)

KUSTOMIZATION_FILE = "kustomization.yaml"


def _check_path(path: str) -> None:
    parts = path.split("/")
    if path.startswith("/") or any(part in ("", ".", "..") for part in parts):
        raise ManifestIntegrityError(f"Invalid resource path '{path}'")


class ResourceTree:
    """Mapping of slash-delimited paths to the documents written there.

    Iteration is in lexicographic path order so output is stable.
    """

    def __init__(self) -> None:
        """Initialize ResourceTree."""
        self._docs: dict[str, Document] = {}
        self._existing: set[str] = set()

    def __getitem__(self, path: str) -> Document:
        return self._docs[path]

    def __contains__(self, path: object) -> bool:
        return path in self._docs

    def __len__(self) -> int:
        return len(self._docs)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self._docs))

    def items(self) -> list[tuple[str, Document]]:
        """Return (path, document) pairs in path order."""
        return [(path, self._docs[path]) for path in self]

    def set(self, path: str, doc: Document) -> None:
        """Write a document at a path that is not part of a kustomization."""
        _check_path(path)
        self._docs[path] = doc

    def kustomization(self, directory: str) -> Kustomization:
        """Return the kustomization of a directory, creating it if needed."""
        path = posixpath.join(directory, KUSTOMIZATION_FILE)
        _check_path(path)
        if (doc := self._docs.get(path)) is None:
            doc = create_kustomization()
            self._docs[path] = doc
        if not isinstance(doc, Kustomization):
            raise ManifestIntegrityError(f"Path '{path}' is not a kustomization")
        return doc

    def add_resource(self, directory: str, filename: str, resource: Resource) -> str:
        """Write a resource and list it in the kustomization of the directory.

        Adding a resource again at the same path replaces it without listing
        it twice. Returns the full path of the resource.
        """
        path = posixpath.join(directory, filename)
        _check_path(path)
        if posixpath.basename(path) == KUSTOMIZATION_FILE:
            raise ManifestIntegrityError(f"Resource may not be written to '{path}'")
        kustomization = self.kustomization(directory)
        self._docs[path] = resource
        self._existing.discard(path)
        if kustomization.add_resource(filename):
            _LOGGER.debug("Added %s to %s", filename, directory)
        return path

    def add_existing(self, directory: str, filename: str) -> str:
        """List a file written by a previous run in the kustomization.

        The file is not part of the tree and is left untouched in the output.
        """
        path = posixpath.join(directory, filename)
        _check_path(path)
        if path in self._docs:
            raise ManifestIntegrityError(f"Path '{path}' is already in the tree")
        self.kustomization(directory).add_resource(filename)
        self._existing.add(path)
        return path

    def existing(self) -> list[str]:
        """Return the paths of files written by a previous run."""
        return sorted(self._existing)

    def resources(self) -> list[Resource]:
        """Return all kubernetes resources in path order."""
        return [doc for _, doc in self.items() if isinstance(doc, Resource)]

    def kustomization_dirs(self) -> list[str]:
        """Return the directories with a kustomization, in path order."""
        return [
            posixpath.dirname(path)
            for path, doc in self.items()
            if isinstance(doc, Kustomization)
        ]


def _owner(path: str, dirs: list[str]) -> str | None:
    """Return the deepest kustomization directory containing the path."""
    owners = [d for d in dirs if path.startswith(f"{d}/")]
    return max(owners, key=len, default=None)


def validate_kustomizations(tree: ResourceTree) -> None:
    """Verify every kustomization lists exactly the files it owns."""
    dirs = tree.kustomization_dirs()
    owned: dict[str, set[str]] = {d: set() for d in dirs}
    paths = [path for path, doc in tree.items() if not isinstance(doc, Kustomization)]
    for path in paths + tree.existing():
        if (owner := _owner(path, dirs)) is not None:
            owned[owner].add(posixpath.relpath(path, owner))

    errors = []
    for directory in dirs:
        listed = tree.kustomization(directory).resources
        if len(listed) != len(set(listed)):
            errors.append(f"{directory} lists duplicate resources {listed}")
        if missing := owned[directory] - set(listed):
            errors.append(f"{directory} does not list {sorted(missing)}")
        if extra := set(listed) - owned[directory]:
            errors.append(f"{directory} lists files that don't exist {sorted(extra)}")
    if errors:
        raise ManifestIntegrityError("Invalid kustomizations: " + "; ".join(errors))


def validate_references(tree: ResourceTree) -> None:
    """Verify every reference between resources resolves to a resource."""
    provided: set[NamedResource] = set()
    for resource in tree.resources():
        provided.update(resource.provides())
    errors = []
    for resource in tree.resources():
        for ref in resource.references():
            if ref not in provided:
                errors.append(f"{resource.named_resource} refers to missing {ref}")
    if errors:
        raise ManifestIntegrityError("Invalid references: " + "; ".join(errors))


def validate_tree(tree: ResourceTree) -> None:
    """Run all consistency checks on the tree."""
    validate_kustomizations(tree)
    validate_references(tree)
