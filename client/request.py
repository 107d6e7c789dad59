"""Request bodies for the ycmd HTTP API.

Three request kinds share one body shape:
- query:   plain request (completions, detailed_diagnostic)
- event:   fire-and-forget notification, carries ``event_name``
- command: completer command, carries ``command_arguments`` and
           ``completer_target`` so the daemon dispatches to the filetype's
           own completer
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping

from lsprotocol.types import Position

from client.documents import FileSnapshot

COMPLETER_TARGET = "filetype_default"

# Events
BUFFER_VISIT = "BufferVisit"
FILE_READY_TO_PARSE = "FileReadyToParse"
INSERT_LEAVE = "InsertLeave"
CURRENT_IDENTIFIER_FINISHED = "CurrentIdentifierFinished"

# Completer commands
GET_TYPE = "GetType"
GET_TYPE_IMPRECISE = "GetTypeImprecise"
GO_TO = "GoTo"
FIX_IT = "FixIt"


class RequestKind(str, Enum):
    QUERY = "query"
    EVENT = "event"
    COMMAND = "command"


@dataclass
class DaemonRequest:
    filepath: str
    working_dir: str
    line_num: int = 1
    column_num: int = 1
    file_data: dict[str, FileSnapshot] = field(default_factory=dict)
    event_name: str | None = None
    command_arguments: list[str] | None = None

    @property
    def kind(self) -> RequestKind:
        if self.event_name is not None:
            return RequestKind.EVENT
        if self.command_arguments is not None:
            return RequestKind.COMMAND
        return RequestKind.QUERY

    @property
    def endpoint(self) -> str:
        """Default endpoint for this request kind."""
        if self.kind is RequestKind.EVENT:
            return "event_notification"
        if self.kind is RequestKind.COMMAND:
            return "run_completer_command"
        return "completions"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "filepath": self.filepath,
            "working_dir": self.working_dir,
            "line_num": self.line_num,
            "column_num": self.column_num,
            "file_data": {path: snap.to_wire() for path, snap in self.file_data.items()},
        }
        if self.event_name is not None:
            payload["event_name"] = self.event_name
        if self.command_arguments is not None:
            payload["command_arguments"] = list(self.command_arguments)
            payload["completer_target"] = COMPLETER_TARGET
        return payload


def build_request(
    filepath: str,
    working_dir: str,
    documents: Mapping[str, FileSnapshot] | None = None,
    position: Position | None = None,
    event: str | None = None,
    command: str | None = None,
    arguments: Iterable[str] = (),
) -> DaemonRequest:
    """Assemble a request for ``filepath``.

    ``position`` is editor-side (0-based) and becomes 1-based on the wire;
    without one the cursor is line 1, column 1.
    """
    if event is not None and command is not None:
        raise ValueError("a request is either an event or a command, not both")

    request = DaemonRequest(
        filepath=filepath,
        working_dir=working_dir,
        file_data=dict(documents or {}),
    )
    if position is not None:
        request.line_num = position.line + 1
        request.column_num = position.character + 1
    if event is not None:
        request.event_name = event
    if command is not None:
        request.command_arguments = [command, *arguments]
    return request


def extra_conf_request(filepath: str) -> dict[str, str]:
    """Body for load_extra_conf_file / ignore_extra_conf_file."""
    return {"filepath": filepath}
