"""
Directory-tree sources for migration and code package files.

Discovery never touches the OS filesystem directly. It goes through a
MigrationSource, which only has to list a directory, read a file and walk
the tree. This lets migrations live on disk, inside an installed Python
package, or in memory.
"""

import posixpath
from abc import ABC, abstractmethod
from dataclasses import dataclass
from importlib.resources import files
from importlib.resources.abc import Traversable
from pathlib import Path
from typing import Iterator, Mapping


@dataclass(frozen=True)
class SourceEntry:
    """A single directory entry of a MigrationSource."""

    name: str
    is_dir: bool


def _clean(path: str) -> str:
    path = posixpath.normpath(path.strip("/")) if path else "."
    return "." if path in ("", ".") else path


class MigrationSource(ABC):
    """Abstract read-only directory tree.

    Paths are always relative, `/`-separated, and "." names the root.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Base name of the root directory."""
        pass

    @abstractmethod
    def list_dir(self, path: str = ".") -> list[SourceEntry]:
        """List the entries of a directory.

        Raises:
            FileNotFoundError: If the directory does not exist
        """
        pass

    @abstractmethod
    def read_file(self, path: str) -> str:
        """Read a text file.

        Raises:
            FileNotFoundError: If the file does not exist
        """
        pass

    def walk(self, path: str = ".") -> Iterator[str]:
        """Yield the relative path of every file below a directory, depth first."""
        path = _clean(path)
        for entry in sorted(self.list_dir(path), key=lambda e: e.name):
            child = entry.name if path == "." else f"{path}/{entry.name}"
            if entry.is_dir:
                yield from self.walk(child)
            else:
                yield child

    def exists(self, path: str) -> bool:
        path = _clean(path)
        if path == ".":
            return True
        parent, base = posixpath.split(path)
        try:
            return any(e.name == base for e in self.list_dir(parent or "."))
        except FileNotFoundError:
            return False

    def sub(self, path: str) -> "MigrationSource":
        """Return a source rooted at a subdirectory of this one."""
        return SubSource(self, _clean(path))


class DirectorySource(MigrationSource):
    """A source backed by a directory on the local filesystem."""

    def __init__(self, root: str | Path):
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    @property
    def name(self) -> str:
        return self._root.resolve().name

    def _path(self, path: str) -> Path:
        path = _clean(path)
        return self._root if path == "." else self._root / path

    def list_dir(self, path: str = ".") -> list[SourceEntry]:
        return [SourceEntry(p.name, p.is_dir()) for p in self._path(path).iterdir()]

    def read_file(self, path: str) -> str:
        return self._path(path).read_text(encoding="utf-8")

    def __repr__(self) -> str:
        return f"DirectorySource({str(self._root)!r})"


class PackageSource(MigrationSource):
    """A source backed by files shipped inside an importable Python package.

    Example:
        source = PackageSource("myapp", "migrations")
    """

    def __init__(self, package: str, path: str = "."):
        self._package = package
        self._base = _clean(path)

    def _traversable(self, path: str) -> Traversable:
        node = files(self._package)
        full = _clean(posixpath.join(self._base, _clean(path)))
        if full != ".":
            for part in full.split("/"):
                node = node.joinpath(part)
        return node

    @property
    def name(self) -> str:
        return self._package.rsplit(".", 1)[-1] if self._base == "." else posixpath.basename(self._base)

    def list_dir(self, path: str = ".") -> list[SourceEntry]:
        node = self._traversable(path)
        if not node.is_dir():
            raise FileNotFoundError(f"{self._package}:{path} is not a directory")
        return [SourceEntry(child.name, child.is_dir()) for child in node.iterdir()]

    def read_file(self, path: str) -> str:
        node = self._traversable(path)
        if not node.is_file():
            raise FileNotFoundError(f"{self._package}:{path}")
        return node.read_text(encoding="utf-8")


class MemorySource(MigrationSource):
    """A source built from a mapping of relative paths to file contents."""

    def __init__(self, contents: Mapping[str, str], name: str = "memory"):
        self._files = {_clean(k): v for k, v in contents.items()}
        self._name = name

    @property
    def name(self) -> str:
        return self._name

    def list_dir(self, path: str = ".") -> list[SourceEntry]:
        path = _clean(path)
        prefix = "" if path == "." else path + "/"
        entries: dict[str, bool] = {}
        for file_path in self._files:
            if not file_path.startswith(prefix):
                continue
            rest = file_path[len(prefix) :]
            head, sep, _ = rest.partition("/")
            entries[head] = entries.get(head, False) or bool(sep)
        if not entries and path != ".":
            raise FileNotFoundError(path)
        return [SourceEntry(name, is_dir) for name, is_dir in entries.items()]

    def read_file(self, path: str) -> str:
        try:
            return self._files[_clean(path)]
        except KeyError:
            raise FileNotFoundError(path) from None


class SubSource(MigrationSource):
    """A view of a subdirectory of another source."""

    def __init__(self, parent: MigrationSource, path: str):
        self._parent = parent
        self._path = path

    def _join(self, path: str) -> str:
        return _clean(posixpath.join(self._path, _clean(path)))

    @property
    def name(self) -> str:
        return posixpath.basename(self._path)

    def list_dir(self, path: str = ".") -> list[SourceEntry]:
        return self._parent.list_dir(self._join(path))

    def read_file(self, path: str) -> str:
        return self._parent.read_file(self._join(path))
