"""Wire protocol: one JSON object per WebSocket text frame.

Every frame carries exactly one tag:

    {"input": "ls\\n"}                       client -> server keystrokes
    {"output": "..."}                        server -> client shell output
    {"resize": [cols, rows]}                 window size change
    {"type": "version_check", ...}           handshake probe / reply
    {"type": "version_check", "error": ...}  fatal handshake failure
    {"type": "get_directory_structure"}      directory tree request
    {"fileSystem": {"readFile": "a.txt"}}    file-system request (one operation)
    {"fileSystem": {"fileContent": "..."}}   file-system reply

``decode`` never raises. Anything it cannot map onto exactly one variant
comes back as a ``DecodeError`` value so the caller can log and drop it
without tearing down the connection.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Union

from .version import SemVer


class ClientType(Enum):
    """Declared kind of client."""
    WEB = "web"
    ELECTRON = "electron"  # native/embedded client


VERSION_CHECK = "version_check"
GET_DIRECTORY_STRUCTURE = "get_directory_structure"

# Legacy alias: older web clients send {"resizer": [cols, rows]}.
_RESIZE_KEYS = ("resize", "resizer")
_TAG_KEYS = ("input", "output", "resize", "resizer", "type", "error", "fileSystem")

# File-system operations a client may ask for, keyed inside {"fileSystem": {...}}.
GET_CURRENT_DIRECTORY = "getCurrentDirectory"
LIST_DIRECTORY = "listDirectory"
READ_FILE = "readFile"
WRITE_FILE = "writeFile"
EXISTS = "exists"
FILE_SYSTEM_OPS = (GET_CURRENT_DIRECTORY, LIST_DIRECTORY, READ_FILE, WRITE_FILE, EXISTS)


@dataclass(frozen=True)
class VersionCheck:
    version: SemVer
    client_type: Optional[ClientType] = None


@dataclass(frozen=True)
class VersionError:
    reason: str


@dataclass(frozen=True)
class Input:
    data: str


@dataclass(frozen=True)
class Output:
    data: str


@dataclass(frozen=True)
class Resize:
    cols: int
    rows: int


@dataclass(frozen=True)
class DirectoryStructureRequest:
    path: Optional[str] = None


@dataclass(frozen=True)
class FileSystemRequest:
    """One file-system operation from a client.

    ``path`` is unset only for ``getCurrentDirectory``; ``content`` is set
    only for ``writeFile``.
    """
    op: str
    path: Optional[str] = None
    content: Optional[str] = None


@dataclass(frozen=True)
class FileSystemReply:
    payload: Dict[str, Any] = field(default_factory=dict)


Message = Union[
    VersionCheck,
    VersionError,
    Input,
    Output,
    Resize,
    DirectoryStructureRequest,
    FileSystemRequest,
    FileSystemReply,
]


@dataclass(frozen=True)
class DecodeError:
    """A frame that could not be decoded. Returned, never raised."""
    reason: str
    raw: str = ""


def encode(message: Message) -> str:
    """Serialize a message to its JSON frame."""
    if isinstance(message, Input):
        body: Dict[str, Any] = {"input": message.data}
    elif isinstance(message, Output):
        body = {"output": message.data}
    elif isinstance(message, Resize):
        body = {"resize": [message.cols, message.rows]}
    elif isinstance(message, VersionCheck):
        body = {"type": VERSION_CHECK, "version": message.version.to_dict()}
        if message.client_type is not None:
            body["clientType"] = message.client_type.value
    elif isinstance(message, VersionError):
        body = {"type": VERSION_CHECK, "error": message.reason}
    elif isinstance(message, DirectoryStructureRequest):
        body = {"type": GET_DIRECTORY_STRUCTURE}
        if message.path is not None:
            body["path"] = message.path
    elif isinstance(message, FileSystemRequest):
        if message.op == GET_CURRENT_DIRECTORY:
            arg: Any = True
        elif message.op == WRITE_FILE:
            arg = {"path": message.path, "content": message.content}
        else:
            arg = message.path
        body = {"fileSystem": {message.op: arg}}
    elif isinstance(message, FileSystemReply):
        body = {"fileSystem": message.payload}
    else:
        raise TypeError(f"not a wire message: {message!r}")
    return json.dumps(body, ensure_ascii=False, separators=(",", ":"))


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _truncate(raw: str, limit: int = 200) -> str:
    return raw if len(raw) <= limit else raw[:limit] + "..."


def decode(raw: Union[str, bytes]) -> Union[Message, DecodeError]:
    """Parse a frame into a message, or a ``DecodeError`` describing why not."""
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = bytes(raw).decode("utf-8")
        except UnicodeDecodeError:
            return DecodeError("frame is not valid UTF-8")
    try:
        body = json.loads(raw)
    except ValueError as e:
        return DecodeError(f"malformed JSON: {e}", _truncate(raw))
    if not isinstance(body, dict):
        return DecodeError("frame is not a JSON object", _truncate(raw))

    tags = [key for key in _TAG_KEYS if key in body]
    if not tags:
        return DecodeError("frame has no recognized tag", _truncate(raw))

    if "type" in body:
        # `error` rides along with a version_check type; nothing else may.
        extra = [t for t in tags if t not in ("type", "error")]
        if extra:
            return DecodeError(f"multiple tags: type + {', '.join(extra)}", _truncate(raw))
        return _decode_typed(body, raw)

    if len(tags) > 1:
        return DecodeError(f"multiple tags: {', '.join(tags)}", _truncate(raw))

    tag = tags[0]
    value = body[tag]
    if tag in ("input", "output"):
        if not isinstance(value, str):
            return DecodeError(f"{tag} must be a string", _truncate(raw))
        return Input(value) if tag == "input" else Output(value)
    if tag in _RESIZE_KEYS:
        return _decode_resize(value, raw)
    if tag == "error":
        if not isinstance(value, str):
            return DecodeError("error must be a string", _truncate(raw))
        return VersionError(value)
    if not isinstance(value, dict):
        return DecodeError("fileSystem must be an object", _truncate(raw))
    return _decode_file_system(value, raw)


def _decode_file_system(value: Dict[str, Any], raw: str) -> Union[Message, DecodeError]:
    ops = [key for key in value if key in FILE_SYSTEM_OPS]
    # A reply to `exists` carries a bool under the same key.
    if ops == [EXISTS] and isinstance(value[EXISTS], bool):
        ops = []
    if not ops:
        return FileSystemReply(value)
    if len(value) != 1:
        return DecodeError(f"fileSystem request must name one operation, got {sorted(value)}", _truncate(raw))

    op = ops[0]
    arg = value[op]
    if op == GET_CURRENT_DIRECTORY:
        return FileSystemRequest(op)
    if op == WRITE_FILE:
        if not isinstance(arg, dict):
            return DecodeError("writeFile must be an object with path and content", _truncate(raw))
        path, content = arg.get("path"), arg.get("content")
        if not isinstance(path, str) or not isinstance(content, str):
            return DecodeError("writeFile path and content must be strings", _truncate(raw))
        return FileSystemRequest(op, path, content)
    if not isinstance(arg, str):
        return DecodeError(f"{op} must be a path string", _truncate(raw))
    return FileSystemRequest(op, arg)


def _decode_resize(value: Any, raw: str) -> Union[Resize, DecodeError]:
    if not isinstance(value, (list, tuple)) or len(value) != 2:
        return DecodeError("resize must be a [cols, rows] pair", _truncate(raw))
    cols, rows = value
    if not (_is_int(cols) and _is_int(rows)) or cols < 0 or rows < 0:
        return DecodeError("resize values must be non-negative integers", _truncate(raw))
    return Resize(cols, rows)


def _decode_typed(body: Dict[str, Any], raw: str) -> Union[Message, DecodeError]:
    kind = body["type"]
    if kind == VERSION_CHECK:
        if "error" in body:
            if not isinstance(body["error"], str):
                return DecodeError("error must be a string", _truncate(raw))
            return VersionError(body["error"])
        version = SemVer.from_dict(body.get("version"))
        if version is None:
            return DecodeError("version_check without a valid version", _truncate(raw))
        client_type = body.get("clientType")
        if client_type is None:
            return VersionCheck(version)
        try:
            return VersionCheck(version, ClientType(client_type))
        except ValueError:
            return DecodeError(f"unknown clientType {client_type!r}", _truncate(raw))
    if "error" in body:
        return DecodeError(f"error is only valid on {VERSION_CHECK}", _truncate(raw))
    if kind == GET_DIRECTORY_STRUCTURE:
        path = body.get("path")
        if path is not None and not isinstance(path, str):
            return DecodeError("path must be a string", _truncate(raw))
        return DirectoryStructureRequest(path)
    return DecodeError(f"unknown message type {kind!r}", _truncate(raw))
