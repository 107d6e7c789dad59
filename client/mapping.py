"""Pure translations from daemon shapes to editor (LSP) shapes.

The daemon is 1-based with absolute file paths; the editor is 0-based with
URIs. Nothing in this module performs I/O.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from lsprotocol.types import (
    CodeAction,
    CodeActionKind,
    CompletionItem,
    CompletionItemKind,
    Diagnostic,
    DiagnosticSeverity,
    Hover,
    Location,
    MarkupContent,
    MarkupKind,
    Position,
    Range,
    TextEdit,
    WorkspaceEdit,
)

from client.documents import path_to_uri
from client.responses import (
    YcmChunk,
    YcmCompletion,
    YcmDiagnostic,
    YcmFixIt,
    YcmLocation,
    YcmRange,
)

DIAGNOSTIC_SOURCE = "ycmd"
FIXIT_CODE = "FixIt"

# GetType replies that mean "nothing to show" rather than an error
NO_TYPE_MESSAGES = frozenset({
    "Unknown type",
    "Internal error: cursor not valid",
})
TYPE_SEPARATOR = " => "

COMPLETION_KINDS = {
    "TYPE": CompletionItemKind.Interface,
    "STRUCT": CompletionItemKind.Interface,
    "ENUM": CompletionItemKind.Enum,
    "MEMBER": CompletionItemKind.Property,
    "MACRO": CompletionItemKind.Keyword,
    "NAMESPACE": CompletionItemKind.Module,
    "UNKNOWN": CompletionItemKind.Value,
    "FUNCTION": CompletionItemKind.Function,
    "VARIABLE": CompletionItemKind.Variable,
    "CLASS": CompletionItemKind.Class,
    "[File]": CompletionItemKind.File,
    "[Dir]": CompletionItemKind.File,
    "[File&Dir]": CompletionItemKind.File,
}

SEVERITIES = {
    "ERROR": DiagnosticSeverity.Error,
    "WARNING": DiagnosticSeverity.Warning,
}


# ---------------------------------------------------------------------------
# Coordinates
# ---------------------------------------------------------------------------


def to_position(location: YcmLocation) -> Position:
    return Position(line=location.line_num - 1, character=location.column_num - 1)


def to_ycm_location(position: Position, filepath: str) -> YcmLocation:
    return YcmLocation(
        filepath=filepath,
        line_num=position.line + 1,
        column_num=position.character + 1,
    )


def to_range(ycm_range: YcmRange) -> Range:
    return Range(start=to_position(ycm_range.start), end=to_position(ycm_range.end))


def same_path(a: str, b: str) -> bool:
    return os.path.normcase(os.path.normpath(a)) == os.path.normcase(os.path.normpath(b))


# ---------------------------------------------------------------------------
# Completions
# ---------------------------------------------------------------------------


def completion_kind(item: YcmCompletion) -> CompletionItemKind:
    return COMPLETION_KINDS.get(item.kind or item.extra_menu_info, CompletionItemKind.Text)


def to_completion_items(completions: list[YcmCompletion]) -> list[CompletionItem]:
    """Map daemon completions, keeping the daemon's order via zero-padded sort keys."""
    width = len(str(len(completions)))
    return [
        CompletionItem(
            label=it.menu_text or it.insertion_text,
            kind=completion_kind(it),
            detail=it.extra_menu_info or None,
            documentation=it.detailed_info or None,
            insert_text=it.insertion_text,
            sort_text=str(index).zfill(width),
        )
        for index, it in enumerate(completions)
    ]


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------


def diagnostic_range(item: YcmDiagnostic) -> Range | None:
    """Best available range: extent, else first range, else the point location."""
    extent = item.location_extent
    if extent is not None and extent.is_valid:
        return to_range(extent)
    if item.ranges and item.ranges[0].is_valid:
        return to_range(item.ranges[0])
    if item.location.is_valid:
        point = to_position(item.location)
        return Range(start=point, end=point)
    return None


def to_diagnostic(item: YcmDiagnostic) -> Diagnostic | None:
    rng = diagnostic_range(item)
    if rng is None:
        return None
    return Diagnostic(
        range=rng,
        message=item.text,
        severity=SEVERITIES.get(item.kind, DiagnosticSeverity.Information),
        code=FIXIT_CODE if item.fixit_available else None,
        source=DIAGNOSTIC_SOURCE,
    )


def included_file_diagnostic(item: YcmDiagnostic, filepath: str) -> Diagnostic:
    """Fold a diagnostic from an included file onto line 1 of ``filepath``."""
    try:
        relpath = os.path.relpath(item.location.filepath, os.path.dirname(filepath))
    except ValueError:
        # Different drives on Windows
        relpath = item.location.filepath
    start = Position(line=0, character=0)
    return Diagnostic(
        range=Range(start=start, end=start),
        message=f"In included file {relpath}:{item.location.line_num}: {item.text}",
        severity=SEVERITIES.get(item.kind, DiagnosticSeverity.Information),
        source=DIAGNOSTIC_SOURCE,
    )


def to_file_diagnostics(items: list[YcmDiagnostic], filepath: str) -> list[Diagnostic]:
    """Diagnostics for ``filepath``.

    Issues located in the file itself pass through. The first issue located
    in any other file (an included header) becomes one synthetic diagnostic
    prepended at line 1; the rest are dropped.
    """
    own: list[Diagnostic] = []
    synthetic: Diagnostic | None = None
    for item in items:
        if same_path(item.location.filepath, filepath):
            diagnostic = to_diagnostic(item)
            if diagnostic is not None:
                own.append(diagnostic)
        elif synthetic is None and item.location.filepath:
            synthetic = included_file_diagnostic(item, filepath)
    return [synthetic, *own] if synthetic is not None else own


# ---------------------------------------------------------------------------
# Hover / locations
# ---------------------------------------------------------------------------


def to_hover(message: str) -> Hover | None:
    if not message or message in NO_TYPE_MESSAGES:
        return None
    text = message.split(TYPE_SEPARATOR, 1)[0]
    return Hover(contents=MarkupContent(kind=MarkupKind.PlainText, value=text))


def to_location(location: YcmLocation) -> Location:
    point = to_position(location)
    return Location(uri=path_to_uri(location.filepath), range=Range(start=point, end=point))


def to_locations(response: Any) -> list[Location]:
    """GoTo replies are a single location or a list of them. Invalid locations are dropped."""
    if isinstance(response, dict):
        response = [response]
    if not isinstance(response, list):
        return []
    locations = [YcmLocation.model_validate(it) for it in response]
    return [to_location(loc) for loc in locations if loc.is_valid]


# ---------------------------------------------------------------------------
# FixIts
# ---------------------------------------------------------------------------


class EditKind(str, Enum):
    INSERT = "insert"
    REPLACE = "replace"
    DELETE = "delete"


@dataclass(frozen=True)
class ChunkEdit:
    kind: EditKind
    range: Range
    new_text: str = ""

    def to_text_edit(self) -> TextEdit:
        if self.kind is EditKind.INSERT:
            return TextEdit(range=Range(start=self.range.start, end=self.range.start), new_text=self.new_text)
        if self.kind is EditKind.DELETE:
            return TextEdit(range=self.range, new_text="")
        return TextEdit(range=self.range, new_text=self.new_text)


def classify_chunk(chunk: YcmChunk) -> ChunkEdit | None:
    """Equal ends + text: insert. Unequal + text: replace. Unequal + empty: delete.

    A chunk with equal ends and no text changes nothing and yields None, as
    does a chunk whose range lacks a line or column.
    """
    if not chunk.range.is_valid:
        return None
    start, end = chunk.range.start, chunk.range.end
    collapsed = start == end
    text = chunk.replacement_text
    rng = to_range(chunk.range)
    if collapsed and text:
        return ChunkEdit(EditKind.INSERT, rng, text)
    if not collapsed and text:
        return ChunkEdit(EditKind.REPLACE, rng, text)
    if not collapsed:
        return ChunkEdit(EditKind.DELETE, rng)
    return None


def group_chunks(chunks: list[YcmChunk]) -> dict[str, list[YcmChunk]]:
    """Group chunks by the file they start in, preserving order within each file."""
    groups: dict[str, list[YcmChunk]] = {}
    for chunk in chunks:
        groups.setdefault(chunk.range.start.filepath, []).append(chunk)
    return groups


def strip_path_prefix(text: str, filepath: str) -> str:
    """Drop a leading ``<filepath>:<line>:<col>:`` reference to the queried file."""
    if not filepath:
        return text
    pattern = re.compile(rf"^{re.escape(filepath)}(?::\d+)*:?\s*")
    return pattern.sub("", text, count=1)


@dataclass
class FixItAction:
    """One fix-it suggestion, with its edits grouped by absolute file path."""

    title: str
    edits: dict[str, list[ChunkEdit]] = field(default_factory=dict)

    def workspace_edit(self) -> WorkspaceEdit:
        return WorkspaceEdit(changes={
            path_to_uri(path): [edit.to_text_edit() for edit in edits]
            for path, edits in self.edits.items()
        })

    def to_code_action(self) -> CodeAction:
        return CodeAction(
            title=self.title,
            kind=CodeActionKind.QuickFix,
            edit=self.workspace_edit(),
        )


def to_fixit_action(fixit: YcmFixIt, filepath: str) -> FixItAction:
    edits: dict[str, list[ChunkEdit]] = {}
    for path, chunks in group_chunks(fixit.chunks).items():
        classified = [edit for edit in map(classify_chunk, chunks) if edit is not None]
        if classified:
            edits[path] = classified
    return FixItAction(title=strip_path_prefix(fixit.text, filepath), edits=edits)


def to_fixit_actions(fixits: list[YcmFixIt], filepath: str) -> list[FixItAction]:
    return [to_fixit_action(fixit, filepath) for fixit in fixits]
