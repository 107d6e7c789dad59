"""Open-document state and URI <-> native path mapping.

The daemon works on native file paths; the editor identifies documents by
URI. Every request carries a full snapshot of each open document, so the
store below is the only document state the bridge keeps.
"""

import os
import re
from dataclasses import dataclass, field
from urllib.parse import quote, unquote, urlparse

_DRIVE_RE = re.compile(r"^/?[A-Za-z]:")

# Editor language id -> daemon filetype
_FILETYPES = {
    "objective-c": "objc",
    "objective-cpp": "objcpp",
}


# ---------------------------------------------------------------------------
# Path mapping
# ---------------------------------------------------------------------------


def uri_to_path(uri: str) -> str:
    """Convert a ``file:`` URI to a native path. Non-URIs are returned as-is."""
    parsed = urlparse(uri)
    if parsed.scheme != "file":
        return uri

    path = unquote(parsed.path)
    if parsed.netloc:
        # UNC share: file://server/share/x -> //server/share/x
        path = f"//{parsed.netloc}{path}"
    elif _DRIVE_RE.match(path):
        path = path[1:]

    if os.name == "nt":
        path = path.replace("/", "\\")
    return path


def path_to_uri(path: str) -> str:
    """Convert a native path to a ``file:`` URI (inverse of uri_to_path)."""
    path = path.replace("\\", "/")
    if path.startswith("//"):
        netloc, _, rest = path[2:].partition("/")
        return f"file://{netloc}/{quote(rest)}"
    if _DRIVE_RE.match(path) and not path.startswith("/"):
        path = "/" + path
    return "file://" + quote(path)


def to_filetype(language_id: str) -> str:
    """Map an editor language id to the daemon's filetype name."""
    return _FILETYPES.get(language_id, language_id)


# ---------------------------------------------------------------------------
# Documents
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FileSnapshot:
    path: str
    contents: str
    filetypes: tuple[str, ...]

    def to_wire(self) -> dict:
        return {"contents": self.contents, "filetypes": list(self.filetypes)}


@dataclass
class TextDocument:
    uri: str
    text: str
    language_id: str
    version: int = 0

    @property
    def path(self) -> str:
        return uri_to_path(self.uri)

    @property
    def filetype(self) -> str:
        return to_filetype(self.language_id)

    def snapshot(self) -> FileSnapshot:
        return FileSnapshot(self.path, self.text, (self.filetype,))


@dataclass
class DocumentStore:
    """Live set of documents the editor has open, keyed by URI."""

    _documents: dict[str, TextDocument] = field(default_factory=dict)

    def open(self, uri: str, text: str, language_id: str, version: int = 0) -> TextDocument:
        doc = TextDocument(uri, text, language_id, version)
        self._documents[uri] = doc
        return doc

    def change(self, uri: str, text: str, version: int | None = None) -> TextDocument:
        doc = self._documents[uri]
        doc.text = text
        doc.version = version if version is not None else doc.version + 1
        return doc

    def close(self, uri: str) -> None:
        self._documents.pop(uri, None)

    def get(self, uri: str) -> TextDocument | None:
        return self._documents.get(uri)

    def all(self) -> list[TextDocument]:
        return list(self._documents.values())

    def snapshots(self) -> dict[str, FileSnapshot]:
        """Snapshot of every open document, keyed by native path."""
        return {doc.path: doc.snapshot() for doc in self._documents.values()}

    def __contains__(self, uri: object) -> bool:
        return uri in self._documents

    def __len__(self) -> int:
        return len(self._documents)
