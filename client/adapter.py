"""Editor-facing operations on top of the daemon session.

Each operation snapshots the open documents, builds one daemon request,
sends it through the current session and maps the reply to lsprotocol
types. Failures never reach the editor as exceptions: a failed operation
logs and returns its empty result.
"""

import asyncio
import logging
from typing import Any, Protocol, TypeVar

from lsprotocol.types import CompletionItem, Diagnostic, Hover, Location, Position
from pydantic import BaseModel, TypeAdapter, ValidationError

from core.errors import BridgeError, ConfirmationKind, ConfirmationRequiredError
from core.logging import get_logger
from client.documents import DocumentStore, TextDocument
from client.mapping import (
    FixItAction,
    to_completion_items,
    to_file_diagnostics,
    to_fixit_actions,
    to_hover,
    to_locations,
)
from client.request import (
    BUFFER_VISIT,
    CURRENT_IDENTIFIER_FINISHED,
    FILE_READY_TO_PARSE,
    FIX_IT,
    GET_TYPE,
    GET_TYPE_IMPRECISE,
    GO_TO,
    INSERT_LEAVE,
    build_request,
    extra_conf_request,
)
from client.responses import YcmCompletions, YcmDiagnostic, YcmFixIts, YcmMessage
from daemon.session import SessionManager

LOAD = "Load"
IGNORE = "Ignore"

EXTRA_CONF_ENDPOINTS = {
    LOAD: "load_extra_conf_file",
    IGNORE: "ignore_extra_conf_file",
}

NO_EXTRA_CONF_WARNING = "[ycmd] No .ycm_extra_conf.py file detected, so no compile flags are available."

_diagnostic_list: TypeAdapter[list[YcmDiagnostic]] = TypeAdapter(list[YcmDiagnostic])

ModelT = TypeVar("ModelT", bound=BaseModel)


class EditorHost(Protocol):
    """What the bridge needs from the editor: warnings and a choice prompt."""

    def show_warning(self, message: str) -> None: ...

    async def ask(self, message: str, actions: list[str]) -> str | None: ...


class ProtocolAdapter:
    """Maps editor requests onto daemon requests.

    Lifecycle:
        1. Created once with the session manager, document store and host
        2. Operations are called concurrently by the editor front end
        3. shutdown() stops the daemon; drain() awaits pending prompts
    """

    def __init__(
        self,
        sessions: SessionManager,
        documents: DocumentStore,
        host: EditorHost,
        logger: logging.Logger | None = None,
    ) -> None:
        self.sessions = sessions
        self.documents = documents
        self.host = host
        self.log = logger or get_logger("adapter")
        if self.sessions.on_warning is None:
            self.sessions.on_warning = host.show_warning

        # extra_conf_file -> pending prompt task
        self._prompts: dict[str, asyncio.Task[None]] = {}

    # -- Queries --

    async def completion(self, uri: str, position: Position) -> list[CompletionItem]:
        body = await self._send(uri, "completion", position=position, endpoint="completions")
        completions = self._parse(YcmCompletions, body)
        if completions is None:
            return []
        return to_completion_items(completions.completions)

    async def hover(self, uri: str, position: Position) -> Hover | None:
        settings = self.sessions.settings
        command = GET_TYPE_IMPRECISE if settings and settings.use_imprecise_get_type else GET_TYPE
        body = await self._send(uri, "hover", position=position, command=command)
        reply = self._parse(YcmMessage, body)
        if reply is None:
            return None
        return to_hover(reply.message)

    async def definition(self, uri: str, position: Position) -> list[Location]:
        body = await self._send(uri, "definition", position=position, command=GO_TO)
        if body is None:
            return []
        try:
            return to_locations(body)
        except ValueError as e:
            self.log.warning(f"definition: unexpected reply: {e}")
            return []

    async def diagnostics(self, uri: str) -> list[Diagnostic]:
        doc = self.documents.get(uri)
        body = await self._send(uri, "diagnostics", event=FILE_READY_TO_PARSE)
        if doc is None or not isinstance(body, list):
            return []
        try:
            items = _diagnostic_list.validate_python(body)
            return to_file_diagnostics(items, doc.path)
        except ValueError as e:
            self.log.warning(f"diagnostics: unexpected reply: {e}")
            return []

    async def fixits(self, uri: str, position: Position) -> list[FixItAction]:
        doc = self.documents.get(uri)
        body = await self._send(uri, "fixits", position=position, command=FIX_IT)
        reply = self._parse(YcmFixIts, body)
        if doc is None or reply is None:
            return []
        try:
            return to_fixit_actions(reply.fixits, doc.path)
        except ValueError as e:
            self.log.warning(f"fixits: unexpected reply: {e}")
            return []

    async def detailed_diagnostic(self, uri: str, position: Position) -> str | None:
        body = await self._send(
            uri, "detailed_diagnostic", position=position, endpoint="detailed_diagnostic",
        )
        reply = self._parse(YcmMessage, body)
        if reply is None or not reply.message:
            return None
        return reply.message

    # -- Events --

    async def buffer_visit(self, uri: str) -> None:
        await self._send(uri, "buffer_visit", event=BUFFER_VISIT)

    async def insert_leave(self, uri: str) -> None:
        await self._send(uri, "insert_leave", event=INSERT_LEAVE)

    async def identifier_finished(self, uri: str) -> None:
        await self._send(uri, "identifier_finished", event=CURRENT_IDENTIFIER_FINISHED)

    async def document_changed(self, uri: str) -> None:
        await self.insert_leave(uri)
        await self.identifier_finished(uri)

    # -- Lifecycle --

    async def shutdown(self) -> None:
        for task in list(self._prompts.values()):
            task.cancel()
        await self.drain()
        await self.sessions.reset()

    async def drain(self) -> None:
        """Wait for every pending extra-config prompt to finish."""
        pending = list(self._prompts.values())
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    def enabled(self, doc: TextDocument) -> bool:
        settings = self.sessions.settings
        if settings is None:
            return True
        return doc.language_id in settings.enabled_languages

    # -- Internals --

    async def _send(
        self,
        uri: str,
        operation: str,
        position: Position | None = None,
        event: str | None = None,
        command: str | None = None,
        endpoint: str | None = None,
    ) -> Any:
        """Send one request for ``uri``. Returns None if nothing usable came back."""
        doc = self.documents.get(uri)
        if doc is None:
            self.log.debug(f"{operation}: {uri} is not open")
            return None
        if not self.enabled(doc):
            return None

        try:
            session = await self.sessions.current()
            request = build_request(
                doc.path,
                session.working_dir,
                self.documents.snapshots(),
                position=position,
                event=event,
                command=command,
            )
            return await session.send(endpoint or request.endpoint, request.to_payload())
        except ConfirmationRequiredError as e:
            self._handle_confirmation(e)
        except BridgeError as e:
            self.log.warning(f"{operation} failed for {doc.path}: {e}")
        return None

    def _parse(self, model: type[ModelT], body: Any) -> ModelT | None:
        if body is None:
            return None
        try:
            return model.model_validate(body)
        except ValidationError as e:
            self.log.warning(f"Unexpected {model.__name__} reply: {e}")
            return None

    def _handle_confirmation(self, error: ConfirmationRequiredError) -> None:
        if error.kind is ConfirmationKind.NO_EXTRA_CONF:
            self.host.show_warning(NO_EXTRA_CONF_WARNING)
            return

        path = error.extra_conf_file
        if not path or path in self._prompts:
            return
        task = asyncio.create_task(self._confirm_extra_conf(path))
        self._prompts[path] = task
        task.add_done_callback(lambda _: self._prompts.pop(path, None))

    async def _confirm_extra_conf(self, path: str) -> None:
        choice = await self.host.ask(f"[ycmd] Found {path}. Load?", [LOAD, IGNORE])
        endpoint = EXTRA_CONF_ENDPOINTS.get(choice or "")
        if endpoint is None:
            self.log.info(f"Extra config prompt for {path} dismissed")
            return

        self.log.info(f"{choice} extra config {path}")
        try:
            session = await self.sessions.current()
            await session.send(endpoint, extra_conf_request(path))
        except BridgeError as e:
            self.log.warning(f"{endpoint} failed for {path}: {e}")
